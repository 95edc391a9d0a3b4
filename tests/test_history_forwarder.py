import json
import logging
import pytest
from datetime import datetime, timedelta, timezone

import httpx

from voice_orchestration.models import ConversationState, NLUResult, Speaker, TranscriptEntry
from voice_orchestration.services.history_forwarder import HistoryForwarder, build_transcript_payload

STARTED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_state(handoff=False):
    return ConversationState(
        call_id="CA200",
        tenant_id="default",
        from_number="+56911111111",
        to_number="+56222222222",
        started_at=STARTED,
        last_updated_at=STARTED + timedelta(seconds=30),
        session_id="twilio-CA200",
        turn_index=1,
        recent_turns=[
            TranscriptEntry(speaker=Speaker.USER, text="quiero un agente", timestamp=STARTED),
            TranscriptEntry(speaker=Speaker.AGENT, text="Le transfiero.", timestamp=STARTED),
        ],
        handoff_occurred=handoff,
        handoff_reason="Solicitud del cliente" if handoff else None,
        handoff_at=STARTED + timedelta(seconds=95) if handoff else None,
    )


def make_payload():
    return build_transcript_payload(make_state(), NLUResult(session_id="twilio-CA200", response_text="ok"))


class TestBuildTranscriptPayload:
    def test_in_progress_call_has_no_duration(self):
        payload = build_transcript_payload(make_state(), None, STARTED)

        assert payload.call_id == "CA200"
        assert len(payload.transcript_entries) == 2
        assert payload.end_at is None
        assert payload.duration_seconds is None
        assert payload.created_at == STARTED

    def test_handoff_duration(self):
        payload = build_transcript_payload(make_state(handoff=True), None)

        assert payload.handoff_occurred is True
        assert payload.end_at == STARTED + timedelta(seconds=95)
        assert payload.duration_seconds == 95


class TestHistoryForwarder:
    """Tests for background transcript forwarding"""

    @pytest.fixture
    def received(self):
        return []

    def _client(self, received, status=200):
        def handler(request: httpx.Request):
            received.append((request.url.path, json.loads(request.content)))
            return httpx.Response(status, json={"status": "success" if status == 200 else "error"})

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_delivers_payload(self, received):
        forwarder = HistoryForwarder("http://history.local/", workers=1, client=self._client(received))
        await forwarder.start()

        forwarder.submit(make_payload())
        await forwarder.join()

        assert forwarder.sent_count == 1
        path, body = received[0]
        assert path == "/save-transcript"
        assert body["call_id"] == "CA200"
        assert body["transcript_entries"][0]["speaker"] == "user"
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_submit_does_not_wait_for_delivery(self, received):
        forwarder = HistoryForwarder("http://history.local", workers=1, client=self._client(received))

        forwarder.submit(make_payload())

        assert forwarder.running
        assert forwarder.sent_count == 0
        await forwarder.join()
        assert forwarder.sent_count == 1
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_error_status_goes_to_dead_letter(self, received, caplog):
        forwarder = HistoryForwarder("http://history.local", workers=1, client=self._client(received, 500))

        with caplog.at_level(logging.ERROR, logger="voice_orchestration.dead_letter"):
            forwarder.submit(make_payload())
            await forwarder.join()

        assert forwarder.failed_count == 1
        assert forwarder.sent_count == 0
        record = next(r for r in caplog.records if r.name == "voice_orchestration.dead_letter")
        assert record.call_id == "CA200"
        assert record.reason.startswith("status 500")
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_transport_error_goes_to_dead_letter(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        forwarder = HistoryForwarder("http://history.local", workers=1, client=client)

        forwarder.submit(make_payload())
        await forwarder.join()

        assert forwarder.failed_count == 1
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_full_queue_drops_payload(self, received, caplog):
        forwarder = HistoryForwarder("http://history.local", workers=1, queue_size=1,
                                     client=self._client(received))

        with caplog.at_level(logging.ERROR, logger="voice_orchestration.dead_letter"):
            forwarder.submit(make_payload())
            forwarder.submit(make_payload())
            forwarder.submit(make_payload())

        assert forwarder.dropped_count == 2
        assert sum(1 for r in caplog.records if getattr(r, "reason", None) == "queue_full") == 2

        await forwarder.join()
        assert forwarder.sent_count == 1
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        forwarder = HistoryForwarder("")

        forwarder.submit(make_payload())

        assert forwarder.enabled is False
        assert forwarder.running is False
        assert forwarder.sent_count == 0

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, received):
        forwarder = HistoryForwarder("http://history.local", workers=2, client=self._client(received))

        for _ in range(5):
            forwarder.submit(make_payload())
        await forwarder.stop()

        assert forwarder.sent_count == 5
        assert forwarder.running is False

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            HistoryForwarder("http://history.local", workers=0)
