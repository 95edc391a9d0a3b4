"""
Service layer modules.

This module contains:
- Asynchronous transcript forwarding to the history service
- The conversation history (archive) ingestion service
"""

from . import history_forwarder

__all__ = [
    'history_forwarder',
]
