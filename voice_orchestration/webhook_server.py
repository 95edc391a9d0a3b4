"""
Twilio voice webhook for the conversational agent.

Every <Gather> result posts back to the voice endpoint; each delivery is one
turn event for the turn processor, and the resulting script is answered as
TwiML. A call in progress always gets a spoken answer, never an HTTP error.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from twilio.request_validator import RequestValidator

from .adapters.context_retriever import ContextRetriever
from .adapters.dialogflow_client import DialogflowCXClient
from .adapters.embeddings import EmbeddingGenerator
from .adapters.session_store import InMemorySessionStore, SupabaseSessionStore
from .adapters.twiml import render_twiml
from .config import Settings, get_settings
from .core.turn_processor import TurnProcessor
from .models import TurnEvent
from .services.history_forwarder import HistoryForwarder
from .utils import truncate_string

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "I-Twilio-Idempotency-Token"


def build_processor(settings: Settings, forwarder: Optional[HistoryForwarder] = None) -> TurnProcessor:
    """Wire the turn processor from configuration; optional collaborators stay off when unconfigured."""
    if settings.SESSION_STORE == "supabase":
        store = SupabaseSessionStore(settings.SUPABASE_URL, settings.SUPABASE_KEY, settings.SESSION_TABLE)
    else:
        store = InMemorySessionStore()

    embedder = EmbeddingGenerator.from_settings(settings) if settings.OPENAI_API_KEY else None
    if embedder is None:
        logger.warning("Embeddings disabled: OPENAI_API_KEY not set; context retrieval will be skipped")

    retriever = None
    if settings.SUPABASE_URL and settings.SUPABASE_KEY:
        retriever = ContextRetriever.from_settings(settings)

    return TurnProcessor(
        settings,
        store=store,
        nlu=DialogflowCXClient.from_settings(settings),
        embedder=embedder,
        retriever=retriever,
        forwarder=forwarder,
    )


def create_app(settings: Optional[Settings] = None, processor: Optional[TurnProcessor] = None,
               forwarder: Optional[HistoryForwarder] = None) -> FastAPI:
    settings = settings or get_settings()
    if forwarder is None:
        forwarder = HistoryForwarder.from_settings(settings)
    if processor is None:
        processor = build_processor(settings, forwarder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await forwarder.start()
        yield
        logger.info("Shutting down voice orchestration service...")
        await forwarder.stop()

    app = FastAPI(title="Voice Orchestration Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.processor = processor
    app.state.forwarder = forwarder

    action_url = settings.PUBLIC_BASE_URL.rstrip("/") + settings.VOICE_ENDPOINT

    @app.post(settings.VOICE_ENDPOINT)
    async def voice_webhook(request: Request):
        form = await request.form()
        params = {k: v for k, v in form.items()}

        if settings.VALIDATE_TWILIO_SIGNATURE:
            expected_url = settings.PUBLIC_BASE_URL.rstrip("/") + settings.VOICE_ENDPOINT
            signature = request.headers.get("X-Twilio-Signature", "")
            validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
            if not signature or not validator.validate(expected_url, params, signature):
                raise HTTPException(status_code=403, detail="Invalid Twilio signature")

        call_sid = params.get("CallSid")
        if not call_sid:
            logger.error("Missing CallSid in webhook payload")
            raise HTTPException(status_code=400, detail="CallSid required")

        event = TurnEvent(
            call_id=call_sid,
            from_number=params.get("From", ""),
            to_number=params.get("To", ""),
            speech_result=params.get("SpeechResult") or None,
            digits=params.get("Digits") or None,
            event_id=request.headers.get(IDEMPOTENCY_HEADER),
        )
        if event.speech_result:
            logger.info(f"🎤 {call_sid}: '{truncate_string(event.speech_result, 100)}'")

        try:
            outcome = await processor.process(event)
            logger.info(f"📞 {call_sid} -> {outcome.phase.value} ({outcome.script.decision.value})")
            twiml = render_twiml(outcome.script, from_number=event.from_number, action_url=action_url)
        except Exception as e:
            logger.exception(f"❌ Unexpected error handling turn for {call_sid}: {e}")
            twiml = render_twiml(processor.scripts.error(), action_url=action_url)

        return Response(content=twiml, media_type="application/xml")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "history_forwarding": forwarder.enabled,
        }

    return app
