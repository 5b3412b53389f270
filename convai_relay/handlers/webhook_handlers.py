"""
Receiver for ConvAI knowledge base webhooks.

The webhook body carries {title, knowledge_base, ...}. The handler verifies the
optional signature and then replaces the agent's knowledge base with a single
text document: an existing document with the same title is deleted, a new one
is created and the agent is patched to reference only the new document.

Concurrent pushes of the same title are not serialized; a delete from one
request can interleave with the create of another.
"""

import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from convai_relay.config.constants import ACCEPTED_SIGNATURE_HEADERS, LOGGER_NAME
from convai_relay.config.settings import Settings
from convai_relay.errors import (
    ConfigError,
    InvalidRequestError,
    SignatureError,
    UpstreamFetchError,
)
from convai_relay.handlers.push_handlers import sign_payload
from convai_relay.models.schemas import KnowledgeBaseUpdate
from convai_relay.services.elevenlabs_client import ElevenLabsClient

logger = logging.getLogger(LOGGER_NAME)


def find_signature_header(headers: Mapping[str, str]) -> Optional[str]:
    """Return the first accepted signature header present in `headers`."""
    for name in ACCEPTED_SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def parse_signature_header(header: str) -> Tuple[int, str]:
    """
    Split "t=<timestamp>,v0=<hex>" into its parts.

    Raises:
        SignatureError: If either part is missing or the timestamp is not an integer
    """
    parts: Dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    try:
        return int(parts["t"]), parts["v0"]
    except (KeyError, ValueError) as e:
        raise SignatureError("Malformed signature header") from e


class ConvaiWebhookHandler:
    def __init__(self, settings: Settings, client: ElevenLabsClient):
        self.settings = settings
        self.client = client

    def verify_signature(self, raw_body: bytes, header: Optional[str]) -> bool:
        """
        Check the webhook signature when one is presented.

        Returns:
            True if a signature was verified, False if verification was skipped

        Raises:
            SignatureError: If a presented signature does not match the secret
        """
        if not header:
            logger.warning("No signature header found - accepting unsigned webhook")
            return False
        if not self.settings.webhook_secret:
            logger.warning("Signature header present but no webhook secret configured - skipping check")
            return False

        timestamp, digest = parse_signature_header(header)
        expected = sign_payload(
            self.settings.webhook_secret, raw_body.decode("utf-8", errors="replace"), timestamp
        )
        if not hmac.compare_digest(expected, f"t={timestamp},v0={digest}"):
            raise SignatureError("Webhook signature mismatch")
        logger.info("Webhook signature verified")
        return True

    @staticmethod
    def parse_payload(raw_body: bytes) -> Tuple[str, str]:
        """
        Extract (title, knowledge_base) from the webhook body.

        Raises:
            InvalidRequestError: For invalid JSON or missing fields
        """
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError as e:
            raise InvalidRequestError("Invalid JSON payload") from e
        if not isinstance(payload, dict) or not payload.get("title") or not payload.get("knowledge_base"):
            raise InvalidRequestError("Missing title or knowledge_base in payload")
        logger.info(
            f"Webhook payload: title={payload['title']}, kb_length={len(payload['knowledge_base'])}, "
            f"mode={payload.get('mode')}"
        )
        return payload["title"], payload["knowledge_base"]

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> KnowledgeBaseUpdate:
        """Verify, parse and apply one webhook delivery."""
        self.verify_signature(raw_body, find_signature_header(headers))
        title, content = self.parse_payload(raw_body)
        return await self.upsert(title, content)

    async def upsert(self, title: str, content: str) -> KnowledgeBaseUpdate:
        """
        Replace the agent's knowledge base with one text document named `title`.

        Raises:
            ConfigError: If the API key or agent id is not configured
            UpstreamFetchError: If creating the document or updating the agent fails
        """
        missing = self.settings.missing("api_key", "agent_id")
        if missing:
            raise ConfigError(missing)
        agent_id = self.settings.agent_id

        try:
            existing = await self.client.list_kb_documents(agent_id)
        except UpstreamFetchError as e:
            logger.warning(f"Could not fetch existing KB documents: {e.message}")
            existing = []
        logger.info(f"Found {len(existing)} existing KB documents")

        match = next((doc for doc in existing if doc.get("name") == title), None)
        if match is not None:
            try:
                await self.client.delete_kb_document(match["id"], agent_id)
                logger.info(f"Deleted existing KB document {match['id']}")
            except UpstreamFetchError as e:
                logger.warning(f"Could not delete existing KB document: {e.message}")

        created = await self.client.create_kb_text_document(agent_id, title, content)
        document_id = created.get("id")
        logger.info(f"Created KB document {document_id} ({created.get('name')})")

        agent = await self.client.get_agent(agent_id)
        updated = await self.client.update_agent(agent_id, self._association_payload(agent, title, document_id))

        entries = (
            updated.get("conversation_config", {}).get("agent", {}).get("prompt", {}).get("knowledge_base")
            or []
        )
        associated = any(entry.get("id") == document_id for entry in entries)
        if associated:
            logger.info("Knowledge base successfully associated with agent")
        else:
            logger.warning("Knowledge base may not be associated with the agent - check manually")

        return KnowledgeBaseUpdate(
            document_id=str(document_id),
            name=created.get("name") or title,
            agent_id=agent_id,
            associated=associated,
        )

    @staticmethod
    def _association_payload(agent: Dict[str, Any], title: str, document_id: Any) -> Dict[str, Any]:
        conversation_config = dict(agent.get("conversation_config") or {})
        agent_config = dict(conversation_config.get("agent") or {})
        prompt = dict(agent_config.get("prompt") or {})
        prompt["knowledge_base"] = [
            {"type": "text", "name": title, "id": document_id, "usage_mode": "prompt"}
        ]
        agent_config["prompt"] = prompt
        conversation_config["agent"] = agent_config
        return {"conversation_config": conversation_config}
