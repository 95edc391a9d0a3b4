"""
Adapter modules for external systems.

This module contains adapters for:
- Conversation state persistence (in-memory, Supabase)
- Dialogflow CX intent detection
- OpenAI embeddings and Supabase vector search
- TwiML rendering (imported on demand, it depends on core)
"""

from . import session_store
from . import dialogflow_client
from . import embeddings
from . import context_retriever

__all__ = [
    'session_store',
    'dialogflow_client',
    'embeddings',
    'context_retriever',
]
