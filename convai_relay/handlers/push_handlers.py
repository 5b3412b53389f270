"""
One-shot knowledge base pushes.

A push assembles a project's knowledge base and either posts it to the
configured ConvAI webhook (optionally HMAC-signed) or renders it to an MP3
file served under /media.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import httpx

from convai_relay.config.constants import (
    LOGGER_NAME,
    PUSH_MODE_CONVAI,
    PUSH_MODE_TTS,
    SIGNATURE_HEADER,
    WEBHOOK_USER_AGENT,
)
from convai_relay.config.settings import Settings
from convai_relay.errors import ConfigError, InvalidRequestError, WebhookError
from convai_relay.models.schemas import (
    ConvaiPushResult,
    KnowledgeBase,
    PushResult,
    TtsPushResult,
    WebhookPayload,
)
from convai_relay.services.elevenlabs_client import ElevenLabsClient
from convai_relay.services.projects import ProjectStore

logger = logging.getLogger(LOGGER_NAME)

MEDIA_PREFIX = "/media/"


def sign_payload(secret: str, body: str, timestamp: int) -> str:
    """
    Build the webhook signature header value.

    The signature is a hex HMAC-SHA256 over "<timestamp>.<body>".

    Returns:
        str: "t=<timestamp>,v0=<hex digest>"
    """
    message = f"{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"t={timestamp},v0={digest}"


def tts_filename(title: str) -> str:
    """Derive the audio file name from a title; whitespace runs become underscores."""
    return re.sub(r"\s+", "_", title) + ".mp3"


class PushDispatcher:
    """
    Sends assembled knowledge bases to the provider.

    Args:
        settings: Relay configuration
        store: Source of knowledge bases
        client: ElevenLabs REST client used for speech synthesis
        transport: Optional httpx transport for the webhook call
        clock: Returns the current unix time, replaceable in tests
    """

    def __init__(
        self,
        settings: Settings,
        store: ProjectStore,
        client: ElevenLabsClient,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.client = client
        self._transport = transport
        self._clock = clock

    def check_config(self, mode: str) -> None:
        """
        Verify the configuration needed by `mode`.

        Raises:
            InvalidRequestError: For an unknown mode
            ConfigError: Naming every missing variable
        """
        if mode == PUSH_MODE_CONVAI:
            fields = ("api_key", "webhook_url")
        elif mode == PUSH_MODE_TTS:
            fields = ("api_key", "voice_id")
        else:
            raise InvalidRequestError(f"Unknown mode: {mode}")
        missing = self.settings.missing(*fields)
        if missing:
            raise ConfigError(missing)

    async def push(self, project: str, mode: str) -> PushResult:
        """Assemble `project` and push it using `mode` ('convai' or 'tts')."""
        self.check_config(mode)
        logger.info(f"Push request: project={project}, mode={mode}")
        kb = await self.store.assemble_kb(project)
        if mode == PUSH_MODE_CONVAI:
            return await self.push_convai(kb)
        return await self.push_tts(kb)

    def build_webhook_request(self, kb: KnowledgeBase) -> Tuple[str, Dict[str, str]]:
        """Return the serialized body and headers for a webhook push."""
        payload = WebhookPayload(
            title=kb.title,
            knowledge_base=kb.text,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        body = json.dumps(payload.model_dump())
        headers = {"Content-Type": "application/json", "User-Agent": WEBHOOK_USER_AGENT}
        if self.settings.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_payload(
                self.settings.webhook_secret, body, int(self._clock())
            )
            logger.info("Added webhook signature")
        return body, headers

    async def push_convai(self, kb: KnowledgeBase) -> ConvaiPushResult:
        body, headers = self.build_webhook_request(kb)
        url = self.settings.webhook_url
        logger.info(f"Sending knowledge base '{kb.title}' to webhook: {url}")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.http_timeout), transport=self._transport
            ) as client:
                response = await client.post(url, content=body.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            raise WebhookError(f"Failed to send knowledge base to ConvAI: {e}") from e

        logger.info(f"Webhook response: {response.status_code} {response.text[:200]}")
        if not response.is_success:
            raise WebhookError(
                f"Webhook request failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        return ConvaiPushResult(
            status=response.status_code, title=kb.title, content_length=len(kb.text)
        )

    async def render_tts(self, kb: KnowledgeBase) -> str:
        """
        Render `kb` to an MP3 file under the output directory.

        Files are named after the title; a later render with the same name
        overwrites the earlier file.

        Returns:
            str: The file name relative to the output directory
        """
        audio = await self.client.text_to_speech(
            self.settings.voice_id, f"[{kb.title}] Knowledge Base:\n\n{kb.text}"
        )
        out_dir = Path(self.settings.output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        file_name = tts_filename(kb.title)
        await asyncio.to_thread((out_dir / file_name).write_bytes, audio)
        logger.info(f"Wrote {len(audio)} bytes of audio to {out_dir / file_name}")
        return file_name

    async def push_tts(self, kb: KnowledgeBase) -> TtsPushResult:
        file_name = await self.render_tts(kb)
        return TtsPushResult(file=f"{MEDIA_PREFIX}{file_name}")

    async def tts(self, project: str) -> str:
        """Render `project` to speech and return the media file name."""
        self.check_config(PUSH_MODE_TTS)
        kb = await self.store.assemble_kb(project)
        return await self.render_tts(kb)
