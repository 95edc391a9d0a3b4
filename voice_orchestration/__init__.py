"""
Voice Orchestration Package

Telephone conversational agent backend:
- Twilio voice webhook and TwiML rendering
- Per-call conversation state and turn processing
- Dialogflow CX queries with context from earlier calls
- Human handoff detection
- Asynchronous transcript archival
"""

__version__ = "1.0.0"
__author__ = "KairosIA Team"
