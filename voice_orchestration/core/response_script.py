"""
Response scripts: the structured instruction tree returned to the telephony gateway.

Building a script reads no conversation state and has no side effects; the
same decision, text and directive always give the same script.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from ..config import Settings
from ..models import HandoffDirective


@dataclass(frozen=True)
class Speak:
    text: str
    voice: str
    language: str


@dataclass(frozen=True)
class Listen:
    input_mode: str
    timeout: int
    language: str
    hints: Optional[str] = None
    prompt: Optional[Speak] = None


@dataclass(frozen=True)
class Transfer:
    target: str
    caller_id_template: str


@dataclass(frozen=True)
class End:
    pass


Node = Union[Speak, Listen, Transfer, End]


class Decision(str, Enum):
    GREET = "greet"
    CONTINUE = "continue"
    HANDOFF = "handoff"
    ERROR = "error"
    END = "end"


@dataclass(frozen=True)
class ResponseScript:
    decision: Decision
    nodes: Tuple[Node, ...] = field(default_factory=tuple)

    def find(self, kind: type) -> Optional[Node]:
        for node in self.nodes:
            if isinstance(node, kind):
                return node
        return None


class ResponseScriptBuilder:
    def __init__(self, settings: Settings):
        self.voice = settings.TTS_VOICE_NAME
        self.speech_language = settings.TTS_LANGUAGE_CODE
        self.listen_language = settings.STT_LANGUAGE_CODE
        self.input_mode = settings.LISTEN_INPUT_MODE
        self.listen_timeout = settings.LISTEN_TIMEOUT
        self.hints = settings.LISTEN_HINTS
        self.caller_id_template = settings.CALLER_ID_TEMPLATE
        self.greeting_text = settings.GREETING_TEXT
        self.greeting_prompt = settings.GREETING_PROMPT_TEXT
        self.no_input_text = settings.NO_INPUT_TEXT
        self.error_text = settings.ERROR_TEXT
        self.transition_text = settings.HANDOFF_TRANSITION_TEXT

    def _speak(self, text: str) -> Speak:
        return Speak(text=text, voice=self.voice, language=self.speech_language)

    def _listen(self, prompt: Optional[str] = None) -> Listen:
        return Listen(
            input_mode=self.input_mode,
            timeout=self.listen_timeout,
            language=self.listen_language,
            hints=self.hints,
            prompt=self._speak(prompt) if prompt else None,
        )

    def build(self, decision: Decision, text: str = "",
              directive: Optional[HandoffDirective] = None) -> ResponseScript:
        if decision is Decision.GREET:
            return self.greeting()
        if decision is Decision.CONTINUE:
            return self.continue_turn(text)
        if decision is Decision.HANDOFF:
            if directive is None:
                raise ValueError("handoff script requires a directive")
            return self.handoff(text, directive)
        if decision is Decision.ERROR:
            return self.error(text or None)
        return self.end_call()

    def greeting(self) -> ResponseScript:
        return ResponseScript(Decision.GREET, (self._speak(self.greeting_text), self._listen(self.greeting_prompt)))

    def continue_turn(self, response_text: str) -> ResponseScript:
        return ResponseScript(Decision.CONTINUE, (self._speak(response_text), self._listen()))

    def handoff(self, response_text: str, directive: HandoffDirective) -> ResponseScript:
        spoken = response_text.strip()
        # Replayed handoffs already carry the transition sentence.
        if not spoken.endswith(self.transition_text):
            spoken = f"{spoken} {self.transition_text}".strip()
        return ResponseScript(Decision.HANDOFF, (
            self._speak(spoken),
            Transfer(target=directive.transfer_target, caller_id_template=self.caller_id_template),
        ))

    def error(self, error_text: Optional[str] = None) -> ResponseScript:
        # Errors never end the call; the caller is always re-prompted.
        return ResponseScript(Decision.ERROR, (self._speak(error_text or self.error_text), self._listen()))

    def reprompt(self) -> ResponseScript:
        return self.error(self.no_input_text)

    def end_call(self) -> ResponseScript:
        return ResponseScript(Decision.END, (End(),))
