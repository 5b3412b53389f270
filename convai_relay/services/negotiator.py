"""
Credential negotiation for upstream ConvAI sessions.

The negotiator prefers a signed conversation URL. When signing fails it falls
back to the public agent endpoint and authenticates the handshake with the
API key header instead. The fallback is best-effort: a private agent will
reject the handshake and the proxy reports that to the client.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict
from urllib.parse import urlencode

from convai_relay.config.constants import API_KEY_HEADER, LOGGER_NAME
from convai_relay.config.settings import Settings
from convai_relay.errors import SigningError
from convai_relay.services.elevenlabs_client import ElevenLabsClient

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class UpstreamTarget:
    """Where and how to open the upstream WebSocket."""

    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    signed: bool = True


class SessionNegotiator:
    def __init__(self, settings: Settings, client: ElevenLabsClient):
        self.settings = settings
        self.client = client

    async def get_signed_url(self, agent_id: str) -> str:
        """Fetch a signed URL; raises SigningError on any failure."""
        return await self.client.get_signed_url(agent_id)

    def public_url(self, agent_id: str) -> str:
        query = urlencode({"agent_id": agent_id})
        return f"wss://{self.settings.base_host}/v1/convai/conversation?{query}"

    async def negotiate(self, agent_id: str) -> UpstreamTarget:
        """
        Resolve the upstream endpoint for `agent_id`.

        Returns:
            UpstreamTarget: Signed URL without extra headers, or the public URL
            carrying the API key header when signing failed
        """
        try:
            signed_url = await self.get_signed_url(agent_id)
            logger.info(f"Signed URL obtained: {signed_url.split('?')[0]}")
            return UpstreamTarget(url=signed_url)
        except SigningError as e:
            logger.warning(
                f"Signed URL unavailable (status={e.status}), falling back to public agent mode: {e.message}"
            )
            return UpstreamTarget(
                url=self.public_url(agent_id),
                headers={API_KEY_HEADER: self.settings.api_key},
                signed=False,
            )
