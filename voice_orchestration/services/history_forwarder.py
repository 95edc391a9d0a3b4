"""
Asynchronous transcript forwarding to the conversation history service.

submit() never blocks the caller-facing response: payloads go on a bounded
queue drained by a small pool of worker tasks. Delivery is at-most-once; a
full queue, a transport error or a non-2xx answer is written to the
dead-letter log and dropped.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import httpx

from ..config import Settings
from ..models import ConversationState, FullTranscriptPayload, NLUResult
from ..utils import truncate_string, utcnow

logger = logging.getLogger(__name__)
dead_letter_logger = logging.getLogger("voice_orchestration.dead_letter")


def build_transcript_payload(state: ConversationState, nlu_result: Optional[NLUResult],
                             now: Optional[datetime] = None) -> FullTranscriptPayload:
    """Snapshot the call for archival. Duration is only known once the call was handed off."""
    end_at = None
    duration_seconds = None
    if state.handoff_occurred and state.handoff_at is not None:
        end_at = state.handoff_at
        duration_seconds = int((end_at - state.started_at).total_seconds())
    return FullTranscriptPayload(
        call_id=state.call_id,
        tenant_id=state.tenant_id,
        from_number=state.from_number,
        to_number=state.to_number,
        started_at=state.started_at,
        end_at=end_at,
        duration_seconds=duration_seconds,
        transcript_entries=list(state.recent_turns),
        nlu_metadata=nlu_result,
        handoff_occurred=state.handoff_occurred,
        handoff_reason=state.handoff_reason,
        handoff_at=state.handoff_at,
        created_at=now or utcnow(),
    )


class HistoryForwarder:
    def __init__(self, base_url: str, workers: int = 2, queue_size: int = 100,
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self.base_url = base_url.rstrip("/")
        self.workers = workers
        self.timeout = timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._client = client
        self._owns_client = client is None
        self._tasks: List[asyncio.Task] = []

        self.sent_count = 0
        self.failed_count = 0
        self.dropped_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "HistoryForwarder":
        return cls(
            settings.HISTORY_SERVICE_URL,
            workers=settings.HISTORY_WORKERS,
            queue_size=settings.HISTORY_QUEUE_SIZE,
            timeout=settings.HISTORY_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        self._start_workers()

    def _start_workers(self) -> None:
        if self.running:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"history-forwarder-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"📤 History forwarder started with {self.workers} workers -> {self.base_url or 'disabled'}")

    def submit(self, payload: FullTranscriptPayload) -> None:
        """Queue a payload for delivery without waiting for it."""
        if not self.enabled:
            logger.debug(f"History forwarding disabled, skipping transcript for {payload.call_id}")
            return
        if not self.running:
            # Lazily start on the current loop (e.g. when no startup hook ran).
            self._start_workers()
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped_count += 1
            self._dead_letter(payload, "queue_full")

    async def join(self) -> None:
        """Wait until every queued payload has been attempted."""
        await self._queue.join()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"History forwarder stopped with {self._queue.qsize()} payloads undelivered")
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _worker(self, n: int) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self._send(payload)
            except Exception as e:
                self.failed_count += 1
                self._dead_letter(payload, f"unexpected: {e}")
            finally:
                self._queue.task_done()

    async def _send(self, payload: FullTranscriptPayload) -> None:
        url = f"{self.base_url}/save-transcript"
        try:
            response = await self._client.post(url, json=payload.model_dump(mode="json"))
        except httpx.HTTPError as e:
            self.failed_count += 1
            self._dead_letter(payload, f"transport: {e}")
            return
        if not response.is_success:
            self.failed_count += 1
            self._dead_letter(payload, f"status {response.status_code}: {truncate_string(response.text, 200)}")
            return
        self.sent_count += 1
        logger.info(f"📤 Transcript for {payload.call_id} archived ({len(payload.transcript_entries)} entries)")

    def _dead_letter(self, payload: FullTranscriptPayload, reason: str) -> None:
        dead_letter_logger.error(
            f"❌ Transcript for {payload.call_id} not archived: {reason}",
            extra={"evt": "dead_letter", "call_id": payload.call_id, "reason": reason},
        )
