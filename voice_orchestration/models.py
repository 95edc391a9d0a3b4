from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Speaker(str, Enum):
    USER = "user"
    AGENT = "agent"


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    timestamp: datetime
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    embedding: Optional[List[float]] = None


class ConversationState(BaseModel):
    """Per-call conversation state, persisted between turns by the session store."""

    call_id: str
    tenant_id: str
    from_number: str = ""
    to_number: str = ""
    started_at: datetime
    last_updated_at: datetime
    session_id: str
    turn_index: int = Field(default=0, ge=0)
    recent_turns: List[TranscriptEntry] = Field(default_factory=list)
    handoff_occurred: bool = False
    handoff_reason: Optional[str] = None
    handoff_at: Optional[datetime] = None
    transfer_target: Optional[str] = None
    last_event_id: Optional[str] = None


class NLUResult(BaseModel):
    session_id: str
    intent_name: Optional[str] = None
    intent_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    parameters: Optional[Dict[str, Any]] = None
    page_id: Optional[str] = None
    response_text: str = ""
    custom_payload: Optional[Dict[str, Any]] = None


class HandoffDirective(BaseModel):
    transfer_target: str
    reason: str
    preserve_context: bool = True


class FullTranscriptPayload(BaseModel):
    """Archival record shipped to the conversation history service."""

    model_config = ConfigDict(frozen=True)

    call_id: str
    tenant_id: str
    from_number: str
    to_number: str
    started_at: datetime
    end_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    transcript_entries: List[TranscriptEntry] = Field(default_factory=list)
    nlu_metadata: Optional[NLUResult] = None
    handoff_occurred: bool = False
    handoff_reason: Optional[str] = None
    handoff_at: Optional[datetime] = None
    embedding: Optional[List[float]] = None
    created_at: datetime


class TurnEvent(BaseModel):
    """One inbound webhook delivery from the telephony gateway."""

    call_id: str
    from_number: str = ""
    to_number: str = ""
    speech_result: Optional[str] = None
    digits: Optional[str] = None
    event_id: Optional[str] = None


class ContextSnippet(BaseModel):
    text: str
    relevance_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
