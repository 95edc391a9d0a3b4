"""
Dialogflow CX client (the NLU engine).

Uses the discovery-based REST client from google-api-python-client against the
regional Dialogflow endpoint. The SDK call is blocking, so it runs in a worker
thread bounded by the configured timeout.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import google.auth
import google_auth_httplib2
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import Settings
from ..models import NLUResult

logger = logging.getLogger(__name__)

SCOPES = ['https://www.googleapis.com/auth/cloud-platform', 'https://www.googleapis.com/auth/dialogflow']


class NLUError(Exception):
    """Any failure to obtain an NLU result."""


class NLUSessionError(NLUError):
    """The session or agent was not found or the request was rejected as invalid."""


class NLUTransportError(NLUError):
    """Network or server-side failure talking to the NLU engine."""


class NLUTimeoutError(NLUError):
    """The NLU engine did not answer within the configured timeout."""


def build_detect_intent_body(text: str, language_code: str, context_text: str = "") -> Dict[str, Any]:
    body: Dict[str, Any] = {
        'queryInput': {
            'text': {'text': text},
            'languageCode': language_code,
        }
    }
    if context_text:
        body['queryParams'] = {'parameters': {'additional_context': context_text}}
    return body


def parse_detect_intent_response(session_id: str, response: Dict[str, Any]) -> NLUResult:
    """Extract an NLUResult from a detectIntent JSON response.

    The first text-bearing message is the spoken reply; the first
    payload-bearing message supplies the custom payload. Both scans follow
    response-message order.
    """
    query_result = response.get('queryResult') or {}
    messages = query_result.get('responseMessages') or []

    response_text = ""
    for message in messages:
        texts = (message.get('text') or {}).get('text') or []
        if texts:
            response_text = texts[0]
            break

    custom_payload: Optional[Dict[str, Any]] = None
    for message in messages:
        if message.get('payload') is not None:
            custom_payload = dict(message['payload'])
            break

    intent_name = None
    intent_confidence = None
    match = query_result.get('match')
    if match:
        intent_name = (match.get('intent') or {}).get('displayName')
        if match.get('confidence') is not None:
            intent_confidence = float(match['confidence'])

    page_id = (query_result.get('currentPage') or {}).get('name')

    return NLUResult(
        session_id=session_id,
        intent_name=intent_name,
        intent_confidence=intent_confidence,
        parameters=query_result.get('parameters'),
        page_id=page_id,
        response_text=response_text,
        custom_payload=custom_payload,
    )


class DialogflowCXClient:
    """Sends utterances to a Dialogflow CX agent session."""

    def __init__(self, project_id: str, location: str, agent_id: str, language_code: str,
                 timeout: float = 8.0, service=None):
        self.project_id = project_id
        self.location = location
        self.agent_id = agent_id
        self.language_code = language_code
        self.timeout = timeout
        self.service = service

    @classmethod
    def from_settings(cls, settings: Settings) -> "DialogflowCXClient":
        return cls(
            project_id=settings.GCP_PROJECT_ID,
            location=settings.dialogflow_location,
            agent_id=settings.DIALOGFLOW_AGENT_ID,
            language_code=settings.DIALOGFLOW_LANGUAGE_CODE,
            timeout=settings.NLU_TIMEOUT_SECONDS,
        )

    def session_path(self, session_id: str) -> str:
        return (f"projects/{self.project_id}/locations/{self.location}"
                f"/agents/{self.agent_id}/sessions/{session_id}")

    async def detect_intent(self, session_id: str, text: str, context_text: str = "",
                            language_code: Optional[str] = None) -> NLUResult:
        body = build_detect_intent_body(text, language_code or self.language_code, context_text)
        path = self.session_path(session_id)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self._execute, path, body), timeout=self.timeout
            )
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise NLUTimeoutError(f"detectIntent timed out after {self.timeout}s for {session_id}") from e
        except HttpError as e:
            status = getattr(e.resp, 'status', None)
            if status in (400, 404):
                raise NLUSessionError(f"detectIntent rejected session {session_id}: {status}") from e
            raise NLUTransportError(f"detectIntent failed for {session_id}: {status}") from e
        except Exception as e:
            raise NLUTransportError(f"detectIntent failed for {session_id}: {e}") from e

        result = parse_detect_intent_response(session_id, response)
        logger.info(f"🧠 NLU intent for {session_id}: {result.intent_name} ({result.intent_confidence})")
        return result

    def _get_service(self):
        if self.service is None:
            credentials, _ = google.auth.default(scopes=SCOPES)
            http = google_auth_httplib2.AuthorizedHttp(
                credentials, http=httplib2.Http(timeout=self.timeout)
            )
            client_options = None
            if self.location and self.location != 'global':
                client_options = {'api_endpoint': f"https://{self.location}-dialogflow.googleapis.com"}
            self.service = build('dialogflow', 'v3', http=http,
                                 client_options=client_options, cache_discovery=False)
            logger.info(f"Dialogflow CX service initialized for agent {self.agent_id} ({self.location})")
        return self.service

    def _execute(self, session_path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        sessions = self._get_service().projects().locations().agents().sessions()
        return sessions.detectIntent(session=session_path, body=body).execute()
