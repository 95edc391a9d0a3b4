"""
Conversation turn processing.

One inbound webhook event moves a call through the phases
NEW -> AWAITING_INPUT -> PROCESSING_TURN -> RESPONDING -> AWAITING_INPUT,
ending in HANDED_OFF once the NLU engine asks for a human, or in ERRORED
when the NLU query fails (the next event retries from the unchanged state).

Only the NLU query is allowed to abort a turn. Embeddings, context retrieval,
persistence and history forwarding all degrade to "nothing" on failure.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from ..adapters.context_retriever import build_context_block
from ..adapters.dialogflow_client import NLUError, NLUTimeoutError
from ..adapters.session_store import SessionStore, SessionStoreError, StaleStateError
from ..config import Settings
from ..models import (
    ContextSnippet,
    ConversationState,
    FullTranscriptPayload,
    HandoffDirective,
    NLUResult,
    Speaker,
    TranscriptEntry,
    TurnEvent,
)
from ..services.history_forwarder import build_transcript_payload
from ..utils import format_phone_number, generate_session_id, utcnow
from .response_script import ResponseScript, ResponseScriptBuilder

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 1.0


class CallPhase(str, Enum):
    NEW = "new"
    AWAITING_INPUT = "awaiting_input"
    PROCESSING_TURN = "processing_turn"
    RESPONDING = "responding"
    HANDED_OFF = "handed_off"
    ERRORED = "errored"


class NLUClient(Protocol):
    async def detect_intent(self, session_id: str, text: str, context_text: str = "") -> NLUResult:
        ...


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class Retriever(Protocol):
    async def search(self, embedding: Sequence[float], tenant_id: str, from_number: str,
                     max_results: int) -> List[ContextSnippet]:
        ...


class TranscriptSink(Protocol):
    def submit(self, payload: FullTranscriptPayload) -> None:
        ...


@dataclass
class TurnOutcome:
    script: ResponseScript
    phases: List[CallPhase]
    state: Optional[ConversationState]
    nlu_result: Optional[NLUResult] = None
    handoff: Optional[HandoffDirective] = None
    context_text: str = ""

    @property
    def phase(self) -> CallPhase:
        return self.phases[-1]


@dataclass
class _TurnContext:
    utterance: str
    context_text: str = ""
    embedding: Optional[List[float]] = field(default=None)


class TurnProcessor:
    def __init__(self, settings: Settings, store: SessionStore, nlu: NLUClient,
                 scripts: Optional[ResponseScriptBuilder] = None,
                 embedder: Optional[Embedder] = None,
                 retriever: Optional[Retriever] = None,
                 forwarder: Optional[TranscriptSink] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.store = store
        self.nlu = nlu
        self.scripts = scripts or ResponseScriptBuilder(settings)
        self.embedder = embedder
        self.retriever = retriever
        self.forwarder = forwarder
        self.clock = clock

    async def process(self, event: TurnEvent) -> TurnOutcome:
        try:
            state = await self.store.load(event.call_id)
        except SessionStoreError as e:
            logger.error(f"❌ Could not load state for {event.call_id}: {e}")
            return TurnOutcome(self.scripts.error(), [CallPhase.ERRORED], None)

        if state is None:
            return await self._start_call(event)

        if event.event_id and event.event_id == state.last_event_id:
            logger.info(f"🔁 Redelivered event {event.event_id} for {event.call_id}, replaying last response")
            return self._replay(state)

        if state.handoff_occurred:
            logger.warning(f"Event for {event.call_id} after handoff; ending call leg")
            return TurnOutcome(self.scripts.end_call(), [CallPhase.HANDED_OFF], state)

        utterance = self.normalize_input(event)
        if utterance is None:
            logger.info(f"🔇 No input detected for {event.call_id}, re-prompting")
            return TurnOutcome(self.scripts.reprompt(), [CallPhase.AWAITING_INPUT], state)

        return await self._process_turn(state, event, utterance)

    def normalize_input(self, event: TurnEvent) -> Optional[str]:
        """Speech wins over keypresses; neither means there is nothing to process."""
        if event.speech_result and event.speech_result.strip():
            return event.speech_result.strip()
        if event.digits and event.digits.strip():
            return self.settings.DIGITS_TEMPLATE.format(digits=event.digits.strip())
        return None

    def new_state(self, event: TurnEvent) -> ConversationState:
        now = self.clock()
        return ConversationState(
            call_id=event.call_id,
            tenant_id=self.settings.DEFAULT_TENANT_ID,
            from_number=event.from_number,
            to_number=event.to_number,
            started_at=now,
            last_updated_at=now,
            session_id=generate_session_id(event.call_id),
            last_event_id=event.event_id,
        )

    def detect_handoff(self, nlu_result: NLUResult) -> Optional[HandoffDirective]:
        payload = nlu_result.custom_payload or {}
        if payload.get("action") != self.settings.HANDOFF_ACTION:
            return None

        target = self.settings.TRANSFER_PHONE_NUMBER
        if isinstance(payload.get("transferNumber"), str) and payload["transferNumber"]:
            target = format_phone_number(payload["transferNumber"])

        reason = self.settings.DEFAULT_HANDOFF_REASON
        if isinstance(payload.get("reason"), str) and payload["reason"]:
            reason = payload["reason"]

        preserve_context = True
        if isinstance(payload.get("preserveContext"), bool):
            preserve_context = payload["preserveContext"]

        return HandoffDirective(transfer_target=target, reason=reason, preserve_context=preserve_context)

    def reply_text(self, nlu_result: NLUResult, directive: Optional[HandoffDirective]) -> str:
        """What the agent says this turn; never empty, so <Say> always has content."""
        text = nlu_result.response_text.strip()
        if text:
            return text
        if directive is not None:
            return self.settings.HANDOFF_TRANSITION_TEXT
        return self.settings.EMPTY_REPLY_TEXT

    async def _start_call(self, event: TurnEvent) -> TurnOutcome:
        state = self.new_state(event)
        try:
            await self.store.save(state)
        except SessionStoreError as e:
            # Without an initial state there is nothing to continue from.
            logger.error(f"❌ Could not create state for {event.call_id}: {e}")
            return TurnOutcome(self.scripts.error(), [CallPhase.NEW, CallPhase.ERRORED], None)

        logger.info(f"📞 New call {event.call_id} from {event.from_number} to {event.to_number}")
        return TurnOutcome(self.scripts.greeting(), [CallPhase.NEW, CallPhase.AWAITING_INPUT], state)

    async def _process_turn(self, state: ConversationState, event: TurnEvent, utterance: str) -> TurnOutcome:
        phases = [CallPhase.PROCESSING_TURN]
        working = state.model_copy(deep=True)
        turn = _TurnContext(utterance=utterance)

        turn.embedding = await self._embed(utterance, state.call_id)
        working.recent_turns.append(TranscriptEntry(
            speaker=Speaker.USER,
            text=utterance,
            timestamp=self.clock(),
            confidence=MAX_CONFIDENCE,
            embedding=turn.embedding,
        ))

        if turn.embedding is not None:
            turn.context_text = await self._retrieve_context(working, turn.embedding)

        try:
            nlu_result = await self._query_nlu(working.session_id, utterance, turn.context_text)
        except NLUError as e:
            logger.error(f"❌ NLU query failed for {state.call_id} at turn {state.turn_index}: {e}")
            phases.append(CallPhase.ERRORED)
            return TurnOutcome(self.scripts.error(), phases, state, context_text=turn.context_text)

        directive = self.detect_handoff(nlu_result)
        reply_text = self.reply_text(nlu_result, directive)
        if not nlu_result.response_text.strip():
            logger.warning(f"⚠️ NLU returned no text for {state.call_id}, speaking fallback reply")

        working.recent_turns.append(TranscriptEntry(
            speaker=Speaker.AGENT,
            text=reply_text,
            timestamp=self.clock(),
            confidence=MAX_CONFIDENCE,
            embedding=await self._embed(reply_text, state.call_id),
        ))
        working.turn_index += 1
        working.last_updated_at = self.clock()
        working.last_event_id = event.event_id

        if directive is not None:
            working.handoff_occurred = True
            working.handoff_reason = directive.reason
            working.handoff_at = self.clock()
            working.transfer_target = directive.transfer_target
            logger.info(f"🙋 Handoff for {state.call_id} to {directive.transfer_target}: {directive.reason}")

        phases.append(CallPhase.RESPONDING)
        await self._persist(working)
        self._forward(working, nlu_result)

        if directive is not None:
            script = self.scripts.handoff(reply_text, directive)
            phases.append(CallPhase.HANDED_OFF)
        else:
            script = self.scripts.continue_turn(reply_text)
            phases.append(CallPhase.AWAITING_INPUT)

        return TurnOutcome(script, phases, working, nlu_result=nlu_result, handoff=directive,
                           context_text=turn.context_text)

    async def _query_nlu(self, session_id: str, utterance: str, context_text: str) -> NLUResult:
        timeout = self.settings.NLU_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(
                self.nlu.detect_intent(session_id, utterance, context_text), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise NLUTimeoutError(f"NLU did not answer within {timeout}s") from e

    async def _embed(self, text: str, call_id: str) -> Optional[List[float]]:
        if self.embedder is None or not text.strip():
            return None
        try:
            return await asyncio.wait_for(self.embedder.embed(text), timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS)
        except Exception as e:
            logger.warning(f"⚠️ Embedding failed for {call_id}, continuing without: {e}")
            return None

    async def _retrieve_context(self, state: ConversationState, embedding: List[float]) -> str:
        if self.retriever is None:
            return ""
        try:
            snippets = await asyncio.wait_for(
                self.retriever.search(embedding, state.tenant_id, state.from_number,
                                      self.settings.CONTEXT_NEIGHBORS),
                timeout=self.settings.CONTEXT_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning(f"⚠️ Context retrieval failed for {state.call_id}, continuing without: {e}")
            return ""
        context_text = build_context_block(snippets, self.settings.CONTEXT_HEADER)
        if context_text:
            logger.info(f"📚 {len(snippets)} context snippets found for {state.call_id}")
        return context_text

    async def _persist(self, state: ConversationState) -> None:
        try:
            await self.store.save(state)
        except StaleStateError as e:
            logger.warning(f"⚠️ Newer state already stored for {state.call_id}, keeping it: {e}")
        except SessionStoreError as e:
            logger.error(f"❌ Could not persist state for {state.call_id}: {e}")

    def _forward(self, state: ConversationState, nlu_result: NLUResult) -> None:
        if self.forwarder is None:
            return
        try:
            self.forwarder.submit(build_transcript_payload(state, nlu_result, self.clock()))
        except Exception as e:
            logger.error(f"❌ Could not queue transcript for {state.call_id}: {e}")

    def _replay(self, state: ConversationState) -> TurnOutcome:
        last_agent = next(
            (entry for entry in reversed(state.recent_turns) if entry.speaker == Speaker.AGENT), None
        )
        if last_agent is None:
            return TurnOutcome(self.scripts.greeting(), [CallPhase.AWAITING_INPUT], state)
        if state.handoff_occurred:
            directive = HandoffDirective(
                transfer_target=state.transfer_target or self.settings.TRANSFER_PHONE_NUMBER,
                reason=state.handoff_reason or self.settings.DEFAULT_HANDOFF_REASON,
            )
            return TurnOutcome(self.scripts.handoff(last_agent.text, directive),
                               [CallPhase.HANDED_OFF], state, handoff=directive)
        return TurnOutcome(self.scripts.continue_turn(last_agent.text), [CallPhase.AWAITING_INPUT], state)
