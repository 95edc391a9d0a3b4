"""
Conversation history service: ingestion endpoint for archived call transcripts.

POST /save-transcript takes a FullTranscriptPayload, stores it in the transcript
archive and then refreshes the caller's context index. Only the archive write
can fail the request; the index refresh is best effort.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from supabase import Client, create_client

from ..config import Settings, get_settings
from ..models import FullTranscriptPayload

logger = logging.getLogger(__name__)


class TranscriptArchive(Protocol):
    async def save(self, payload: FullTranscriptPayload) -> None:
        ...

    async def update_vector_index(self, payload: FullTranscriptPayload) -> int:
        ...


def build_index_rows(payload: FullTranscriptPayload) -> List[Dict[str, Any]]:
    """One row per transcript entry that carries an embedding."""
    rows = []
    for i, entry in enumerate(payload.transcript_entries):
        if not entry.embedding:
            continue
        rows.append({
            'id': f"{payload.call_id}-{i}",
            'call_id': payload.call_id,
            'tenant_id': payload.tenant_id,
            'from_number': payload.from_number,
            'speaker': entry.speaker.value,
            'text': entry.text,
            'timestamp': entry.timestamp.isoformat(),
            'embedding': entry.embedding,
        })
    return rows


class SupabaseTranscriptArchive:
    def __init__(self, client: Client, transcript_table: str = "conversation_transcripts",
                 vector_table: str = "conversation_snippets"):
        self.supabase = client
        self.transcript_table = transcript_table
        self.vector_table = vector_table

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseTranscriptArchive":
        client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
        return cls(client, settings.TRANSCRIPT_TABLE, settings.VECTOR_TABLE)

    async def save(self, payload: FullTranscriptPayload) -> None:
        record = payload.model_dump(mode="json")
        await asyncio.to_thread(lambda: self.supabase.table(self.transcript_table).insert(record).execute())

    async def update_vector_index(self, payload: FullTranscriptPayload) -> int:
        rows = build_index_rows(payload)
        if not rows:
            return 0
        await asyncio.to_thread(lambda: self.supabase.table(self.vector_table).upsert(rows).execute())
        return len(rows)


def create_history_app(settings: Optional[Settings] = None,
                       archive: Optional[TranscriptArchive] = None) -> FastAPI:
    settings = settings or get_settings()
    if archive is None:
        archive = SupabaseTranscriptArchive.from_settings(settings)

    app = FastAPI(title="Conversation History Service")
    app.state.settings = settings
    app.state.archive = archive

    @app.post("/save-transcript")
    async def save_transcript(request: Request):
        body = await request.body()
        try:
            payload = FullTranscriptPayload.model_validate_json(body)
        except ValidationError as e:
            logger.error(f"Invalid transcript payload: {e.error_count()} errors")
            raise HTTPException(status_code=400, detail="invalid_payload")

        try:
            await archive.save(payload)
        except Exception as e:
            logger.error(f"❌ Error saving transcript for {payload.call_id}: {e}")
            raise HTTPException(status_code=500, detail=f"archive_failed: {e}")

        try:
            indexed = await archive.update_vector_index(payload)
            logger.info(f"✅ Transcript {payload.call_id} archived, {indexed} snippets indexed")
        except Exception as e:
            logger.error(f"⚠️ Vector index update failed for {payload.call_id}: {e}")

        return JSONResponse(content={"status": "success"})

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app
