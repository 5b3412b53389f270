"""
REST client for the ElevenLabs API.

Every provider call made by the relay goes through ElevenLabsClient: signed
conversation URLs, text-to-speech, speech-to-text and the ConvAI knowledge
base endpoints. Each call opens a short-lived httpx.AsyncClient bounded by the
configured HTTP timeout.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from convai_relay.config.constants import (
    API_KEY_HEADER,
    DEFAULT_STT_MODEL_ID,
    LOGGER_NAME,
    TTS_MODEL_ID,
    TTS_VOICE_SETTINGS,
)
from convai_relay.config.settings import Settings
from convai_relay.errors import SigningError, UpstreamFetchError

logger = logging.getLogger(LOGGER_NAME)


class ElevenLabsClient:
    """
    Thin async wrapper around the ElevenLabs REST endpoints used by the relay.

    Args:
        settings: Relay configuration (API key, base host, timeouts)
        transport: Optional httpx transport, used by tests to stub the provider
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.http_base,
            headers={API_KEY_HEADER: self.settings.api_key},
            timeout=httpx.Timeout(self.settings.http_timeout),
            transport=self._transport,
        )

    @staticmethod
    def _ensure_ok(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        logger.error(f"ElevenLabs {action} failed: {response.status_code} {response.text[:200]}")
        raise UpstreamFetchError(
            f"{action} failed: {response.status_code}",
            status=response.status_code,
            body=response.text,
        )

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        """Send one request and raise UpstreamFetchError on network or HTTP failure."""
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"ElevenLabs {action} request failed: {e}")
            raise UpstreamFetchError(f"{action} request failed: {e}") from e
        self._ensure_ok(response, action)
        return response

    async def get_signed_url(self, agent_id: str) -> str:
        """
        Obtain a short-lived signed WebSocket URL for `agent_id`.

        Raises:
            SigningError: On network failure, non-2xx status or a body without `signed_url`
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    "/v1/convai/conversation/get-signed-url",
                    params={"agent_id": agent_id},
                )
        except httpx.HTTPError as e:
            raise SigningError(f"signed-url request failed: {e}") from e

        text = response.text
        if not response.is_success:
            raise SigningError(
                f"signed-url {response.status_code}: {text[:200]}",
                status=response.status_code,
                body=text,
            )
        try:
            signed_url = response.json().get("signed_url")
        except (ValueError, AttributeError):
            signed_url = None
        if not signed_url:
            raise SigningError(
                f"no signed_url in response: {text[:200]}",
                status=response.status_code,
                body=text,
            )
        return signed_url

    async def text_to_speech(self, voice_id: str, text: str) -> bytes:
        """Render `text` with `voice_id` and return MP3 bytes."""
        response = await self._request(
            "POST",
            f"/v1/text-to-speech/{voice_id}",
            "TTS",
            json={
                "text": text,
                "model_id": TTS_MODEL_ID,
                "optimize_streaming_latency": 0,
                "voice_settings": TTS_VOICE_SETTINGS,
            },
        )
        return response.content

    async def speech_to_text(
        self,
        filename: str,
        content: bytes,
        content_type: str,
        model_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Transcribe an uploaded audio file and return the provider JSON."""
        response = await self._request(
            "POST",
            "/v1/speech-to-text",
            "STT",
            files={"file": (filename, content, content_type)},
            data={
                "model_id": model_id or DEFAULT_STT_MODEL_ID,
                "language_code": "en",
                "timestamps_granularity": "word",
                "tag_audio_events": "false",
            },
        )
        return response.json()

    async def list_kb_documents(self, agent_id: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/v1/convai/knowledge-base",
            "List knowledge base",
            params={"agent_id": agent_id, "page_size": 100},
        )
        return response.json().get("documents") or []

    async def delete_kb_document(self, document_id: str, agent_id: str) -> None:
        await self._request(
            "DELETE",
            f"/v1/convai/knowledge-base/{document_id}",
            "Delete knowledge base document",
            params={"agent_id": agent_id},
        )

    async def create_kb_text_document(self, agent_id: str, name: str, text: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/v1/convai/knowledge-base/text",
            "KB document creation",
            params={"agent_id": agent_id},
            json={"text": text, "name": name},
        )
        return response.json()

    async def get_agent(self, agent_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v1/convai/agents/{agent_id}", "Get agent")
        return response.json()

    async def update_agent(self, agent_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PATCH", f"/v1/convai/agents/{agent_id}", "Agent update", json=payload
        )
        return response.json()
