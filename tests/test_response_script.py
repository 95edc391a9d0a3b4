import pytest

from voice_orchestration.adapters.twiml import render_twiml
from voice_orchestration.config import Settings
from voice_orchestration.core.response_script import (
    Decision,
    End,
    Listen,
    ResponseScriptBuilder,
    Speak,
    Transfer,
)
from voice_orchestration.models import HandoffDirective


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def builder(settings):
    return ResponseScriptBuilder(settings)


class TestResponseScriptBuilder:
    """Tests for response script construction"""

    def test_greeting(self, builder, settings):
        script = builder.greeting()

        assert script.decision == Decision.GREET
        assert script.nodes[0] == Speak(settings.GREETING_TEXT, settings.TTS_VOICE_NAME, settings.TTS_LANGUAGE_CODE)
        listen = script.nodes[1]
        assert isinstance(listen, Listen)
        assert listen.prompt.text == settings.GREETING_PROMPT_TEXT
        assert listen.language == settings.STT_LANGUAGE_CODE
        assert listen.timeout == settings.LISTEN_TIMEOUT

    def test_continue(self, builder):
        script = builder.continue_turn("Su saldo es de diez mil pesos.")

        assert script.decision == Decision.CONTINUE
        assert script.find(Speak).text == "Su saldo es de diez mil pesos."
        assert script.find(Listen).prompt is None

    def test_handoff(self, builder, settings):
        directive = HandoffDirective(transfer_target="+56987654321", reason="Reclamo")
        script = builder.handoff("Entiendo.", directive)

        assert script.decision == Decision.HANDOFF
        assert script.find(Speak).text == f"Entiendo. {settings.HANDOFF_TRANSITION_TEXT}"
        assert script.find(Transfer) == Transfer("+56987654321", "{from_number}")
        assert script.find(Listen) is None

    def test_handoff_without_response_text(self, builder, settings):
        directive = HandoffDirective(transfer_target="+56987654321", reason="Reclamo")

        assert builder.handoff("", directive).find(Speak).text == settings.HANDOFF_TRANSITION_TEXT

    def test_error_always_listens(self, builder, settings):
        script = builder.error()

        assert script.decision == Decision.ERROR
        assert script.find(Speak).text == settings.ERROR_TEXT
        assert script.find(Listen) is not None
        assert script.find(End) is None

    def test_reprompt(self, builder, settings):
        assert builder.reprompt().find(Speak).text == settings.NO_INPUT_TEXT

    def test_end_call(self, builder):
        script = builder.end_call()

        assert script.decision == Decision.END
        assert script.nodes == (End(),)

    def test_build_dispatch(self, builder):
        directive = HandoffDirective(transfer_target="+56987654321", reason="Reclamo")

        assert builder.build(Decision.GREET) == builder.greeting()
        assert builder.build(Decision.CONTINUE, "hola") == builder.continue_turn("hola")
        assert builder.build(Decision.HANDOFF, "ok", directive) == builder.handoff("ok", directive)
        assert builder.build(Decision.ERROR) == builder.error()
        assert builder.build(Decision.END) == builder.end_call()

    def test_build_handoff_requires_directive(self, builder):
        with pytest.raises(ValueError):
            builder.build(Decision.HANDOFF, "ok")

    def test_scripts_are_deterministic(self, builder):
        assert builder.continue_turn("hola") == builder.continue_turn("hola")


class TestTwimlRendering:
    """Tests for TwiML output of response scripts"""

    def test_greeting_twiml(self, builder):
        xml = render_twiml(builder.greeting(), action_url="https://example.com/voice")

        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?><Response>')
        assert '<Say language="es-CL" voice="Polly.Lupe">' in xml or '<Say voice="Polly.Lupe" language="es-CL">' in xml
        assert '<Gather' in xml
        assert 'input="speech"' in xml
        assert 'timeout="5"' in xml
        assert 'speechTimeout="auto"' in xml
        assert 'action="https://example.com/voice"' in xml
        assert 'method="POST"' in xml
        # Prompt is nested inside the gather
        assert xml.index('<Gather') < xml.index('Por favor, dígame') < xml.index('</Gather>')

    def test_gather_without_action(self, builder):
        xml = render_twiml(builder.continue_turn("hola"))

        assert '<Gather' in xml
        assert 'action=' not in xml
        assert 'method=' not in xml

    def test_handoff_twiml(self, builder):
        directive = HandoffDirective(transfer_target="+56987654321", reason="Reclamo")
        xml = render_twiml(builder.handoff("Entiendo.", directive), from_number="+56911111111")

        assert 'callerId="+56911111111"' in xml
        assert '>+56987654321</Dial>' in xml
        assert '<Gather' not in xml

    def test_handoff_without_caller_number(self, builder):
        directive = HandoffDirective(transfer_target="+56987654321", reason="Reclamo")
        xml = render_twiml(builder.handoff("Entiendo.", directive))

        assert 'callerId' not in xml

    def test_end_twiml(self, builder):
        xml = render_twiml(builder.end_call())

        assert '<Hangup' in xml
        assert '<Say' not in xml
