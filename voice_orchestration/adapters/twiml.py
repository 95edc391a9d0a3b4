"""
Render response scripts as Twilio TwiML.
"""

from typing import Optional

from twilio.twiml.voice_response import VoiceResponse

from ..core.response_script import End, Listen, ResponseScript, Speak, Transfer


def render_twiml(script: ResponseScript, from_number: str = "", action_url: Optional[str] = None) -> str:
    response = VoiceResponse()
    for node in script.nodes:
        if isinstance(node, Speak):
            response.say(node.text, voice=node.voice, language=node.language)
        elif isinstance(node, Listen):
            gather = response.gather(
                input=node.input_mode,
                timeout=str(node.timeout),
                speech_timeout='auto',
                language=node.language,
                hints=node.hints,
                action=action_url,
                method='POST' if action_url else None,
            )
            if node.prompt is not None:
                gather.say(node.prompt.text, voice=node.prompt.voice, language=node.prompt.language)
        elif isinstance(node, Transfer):
            caller_id = node.caller_id_template.format(from_number=from_number) or None
            response.dial(node.target, caller_id=caller_id)
        elif isinstance(node, End):
            response.hangup()
    return str(response)
