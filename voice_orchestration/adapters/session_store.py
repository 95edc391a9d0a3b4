"""
Session store adapters for per-call ConversationState.

Both adapters enforce the turn-index guard: a save whose turn_index is older
than the stored one is rejected with StaleStateError, and saving the same
turn_index again is idempotent (last write wins at that index). A stored
handoff is never reset by a later save.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from supabase import Client, create_client

from ..models import ConversationState

logger = logging.getLogger(__name__)


class SessionStoreError(Exception):
    """Backend failure while loading or saving state."""


class StaleStateError(SessionStoreError):
    """The stored state is newer than the one being saved."""

    def __init__(self, call_id: str, stored_index: int, attempted_index: int):
        super().__init__(
            f"stale save for {call_id}: stored turn_index={stored_index}, attempted={attempted_index}"
        )
        self.call_id = call_id
        self.stored_index = stored_index
        self.attempted_index = attempted_index


class SessionStore(Protocol):
    async def load(self, call_id: str) -> Optional[ConversationState]:
        ...

    async def save(self, state: ConversationState) -> None:
        ...


def _check_not_stale(stored: ConversationState, state: ConversationState) -> None:
    if stored.turn_index > state.turn_index:
        raise StaleStateError(state.call_id, stored.turn_index, state.turn_index)
    if stored.handoff_occurred and not state.handoff_occurred:
        raise StaleStateError(state.call_id, stored.turn_index, state.turn_index)


class InMemorySessionStore:
    """Process-local store. States are kept serialized so callers never share instances."""

    def __init__(self):
        self._states: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def load(self, call_id: str) -> Optional[ConversationState]:
        raw = self._states.get(call_id)
        if raw is None:
            return None
        return ConversationState.model_validate(raw)

    async def save(self, state: ConversationState) -> None:
        async with self._lock:
            raw = self._states.get(state.call_id)
            if raw is not None:
                _check_not_stale(ConversationState.model_validate(raw), state)
            self._states[state.call_id] = state.model_dump(mode="json")
        logger.debug(f"💾 State saved for {state.call_id} at turn {state.turn_index}")

    def get_call_count(self) -> int:
        return len(self._states)


class SupabaseSessionStore:
    """Stores one row per call: call_id, turn_index, handoff_occurred and the full state as JSON."""

    def __init__(self, url: str, key: str, table: str = "conversation_states", client: Optional[Client] = None):
        if client is None:
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the supabase session store")
            client = create_client(url, key)
        self.supabase = client
        self.table = table
        logger.info(f"✅ Supabase session store initialized (table={table})")

    async def load(self, call_id: str) -> Optional[ConversationState]:
        try:
            result = await asyncio.to_thread(self._select, call_id)
        except Exception as e:
            raise SessionStoreError(f"load failed for {call_id}: {e}") from e
        if not result:
            return None
        return ConversationState.model_validate(result[0]["state"])

    async def save(self, state: ConversationState) -> None:
        try:
            applied = await asyncio.to_thread(self._conditional_update, state)
            if applied:
                return
            existing = await asyncio.to_thread(self._select, state.call_id)
            if not existing:
                await asyncio.to_thread(self._insert, state)
                return
        except Exception as e:
            raise SessionStoreError(f"save failed for {state.call_id}: {e}") from e
        stored = ConversationState.model_validate(existing[0]["state"])
        _check_not_stale(stored, state)
        # Guard rejected the update but the stored row is not newer; a concurrent
        # writer won the race in between.
        raise StaleStateError(state.call_id, stored.turn_index, state.turn_index)

    def _row(self, state: ConversationState) -> Dict[str, Any]:
        return {
            "call_id": state.call_id,
            "turn_index": state.turn_index,
            "handoff_occurred": state.handoff_occurred,
            "state": state.model_dump(mode="json"),
        }

    def _select(self, call_id: str):
        return self.supabase.table(self.table).select("*").eq("call_id", call_id).execute().data

    def _conditional_update(self, state: ConversationState) -> bool:
        query = (
            self.supabase.table(self.table)
            .update(self._row(state))
            .eq("call_id", state.call_id)
            .lte("turn_index", state.turn_index)
        )
        if not state.handoff_occurred:
            query = query.eq("handoff_occurred", False)
        return bool(query.execute().data)

    def _insert(self, state: ConversationState) -> None:
        self.supabase.table(self.table).insert(self._row(state)).execute()
