"""
Core call-handling logic.

This module contains:
- The turn processor state machine
- Response script building
"""

from .response_script import Decision, ResponseScript, ResponseScriptBuilder
from .turn_processor import CallPhase, TurnOutcome, TurnProcessor

__all__ = [
    'CallPhase',
    'Decision',
    'ResponseScript',
    'ResponseScriptBuilder',
    'TurnOutcome',
    'TurnProcessor',
]
