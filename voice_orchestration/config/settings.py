"""
Runtime configuration for the voice orchestration service.

Values come from the environment (and a repo-root .env file when present).
A single Settings instance is built at process start and handed to every
component; nothing reads os.environ after that.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    # Google Cloud / Dialogflow CX
    GCP_PROJECT_ID: str = ""
    GCP_REGION: str = "us-central1"
    DIALOGFLOW_AGENT_ID: str = ""
    # Empty means GCP_REGION
    DIALOGFLOW_LOCATION: str = ""
    DIALOGFLOW_LANGUAGE_CODE: str = "es-CL"
    NLU_TIMEOUT_SECONDS: float = 8.0

    # Speech in/out
    STT_LANGUAGE_CODE: str = "es-CL"
    TTS_LANGUAGE_CODE: str = "es-CL"
    TTS_VOICE_NAME: str = "Polly.Lupe"
    LISTEN_INPUT_MODE: str = "speech"
    LISTEN_TIMEOUT: int = 5
    LISTEN_HINTS: Optional[str] = None

    # Spoken texts
    GREETING_TEXT: str = "Hola, soy KairosIA, su asistente virtual. ¿En qué puedo ayudarle hoy?"
    GREETING_PROMPT_TEXT: str = "Por favor, dígame en qué puedo ayudarle."
    NO_INPUT_TEXT: str = "No se detectó ninguna entrada. Por favor, inténtelo de nuevo."
    ERROR_TEXT: str = "Lo siento, ha ocurrido un error. Por favor, inténtelo de nuevo más tarde."
    HANDOFF_TRANSITION_TEXT: str = "Le transferiré con un agente humano. Por favor, espere un momento."
    EMPTY_REPLY_TEXT: str = "Disculpe, no tengo una respuesta para eso. ¿Puede decirlo de otra forma?"
    DIGITS_TEMPLATE: str = "Presionó {digits}"
    CONTEXT_HEADER: str = "Contexto adicional de conversaciones anteriores:"

    # Tenancy and handoff
    DEFAULT_TENANT_ID: str = "default"
    TRANSFER_PHONE_NUMBER: str = "+56912345678"
    DEFAULT_HANDOFF_REASON: str = "El cliente ha solicitado hablar con un agente humano"
    HANDOFF_ACTION: str = "LiveAgentHandoff"
    CALLER_ID_TEMPLATE: str = "{from_number}"

    # Embeddings / context retrieval
    OPENAI_API_KEY: str = ""
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 768
    EMBEDDING_TIMEOUT_SECONDS: float = 3.0
    CONTEXT_NEIGHBORS: int = 5
    CONTEXT_TIMEOUT_SECONDS: float = 2.0
    CONTEXT_MATCH_FUNCTION: str = "match_conversation_snippets"

    # Session store
    SESSION_STORE: str = "memory"
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""
    SESSION_TABLE: str = "conversation_states"
    TRANSCRIPT_TABLE: str = "conversation_transcripts"
    VECTOR_TABLE: str = "conversation_snippets"

    # History forwarding
    HISTORY_SERVICE_URL: str = ""
    HISTORY_WORKERS: int = 2
    HISTORY_QUEUE_SIZE: int = 100
    HISTORY_TIMEOUT_SECONDS: float = 10.0

    # Twilio webhook
    TWILIO_AUTH_TOKEN: str = ""
    VALIDATE_TWILIO_SIGNATURE: bool = False
    PUBLIC_BASE_URL: str = ""
    VOICE_ENDPOINT: str = "/voice"

    # Server / logging
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8080
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator("CALLER_ID_TEMPLATE")
    @classmethod
    def validate_caller_id_template(cls, value: str) -> str:
        try:
            value.format(from_number="+10000000000")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(f"CALLER_ID_TEMPLATE may only reference {{from_number}}: {e}") from e
        return value

    @property
    def dialogflow_location(self) -> str:
        return self.DIALOGFLOW_LOCATION or self.GCP_REGION


@lru_cache()
def get_settings() -> Settings:
    """Build the process-wide settings once, reading .env first."""
    load_dotenv()
    return Settings()
