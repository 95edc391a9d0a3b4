"""
Context retrieval from earlier conversations of the same caller.

Similarity search is delegated to a Postgres function exposed through Supabase
RPC (pgvector). Results are scoped to (tenant_id, from_number).
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from supabase import Client, create_client

from ..config import Settings
from ..models import ContextSnippet

logger = logging.getLogger(__name__)


class ContextRetrievalError(Exception):
    pass


class ContextRetriever:
    def __init__(self, client: Client, function_name: str = "match_conversation_snippets",
                 timeout: float = 2.0):
        self.supabase = client
        self.function_name = function_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Client] = None) -> "ContextRetriever":
        if client is None:
            client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
        return cls(client, settings.CONTEXT_MATCH_FUNCTION, settings.CONTEXT_TIMEOUT_SECONDS)

    async def search(self, embedding: Sequence[float], tenant_id: str, from_number: str,
                     max_results: int) -> List[ContextSnippet]:
        params = {
            'query_embedding': list(embedding),
            'tenant_id': tenant_id,
            'from_number': from_number,
            'match_count': max_results,
        }
        try:
            rows = await asyncio.wait_for(asyncio.to_thread(self._rpc, params), timeout=self.timeout)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise ContextRetrievalError(f"context search timed out after {self.timeout}s") from e
        except Exception as e:
            raise ContextRetrievalError(f"context search failed: {e}") from e

        snippets = []
        for row in rows or []:
            text = row.get('text')
            if not text:
                continue
            metadata = {k: v for k, v in row.items() if k not in ('text', 'similarity')}
            snippets.append(ContextSnippet(
                text=text,
                relevance_score=float(row.get('similarity') or 0.0),
                metadata=metadata,
            ))
        return snippets[:max_results]

    def _rpc(self, params):
        return self.supabase.rpc(self.function_name, params).execute().data


def build_context_block(snippets: Sequence[ContextSnippet], header: str) -> str:
    """Concatenate retrieved snippets into the free-text block sent to the NLU engine."""
    if not snippets:
        return ""
    lines = [header]
    lines.extend(f"- {snippet.text}" for snippet in snippets)
    return "\n".join(lines) + "\n"
