"""
Unit tests for the ConvAI webhook receiver and knowledge base upsert.
"""

import json

import httpx
import pytest

from convai_relay.errors import ConfigError, InvalidRequestError, SignatureError, UpstreamFetchError
from convai_relay.handlers.push_handlers import sign_payload
from convai_relay.handlers.webhook_handlers import (
    ConvaiWebhookHandler,
    find_signature_header,
    parse_signature_header,
)
from convai_relay.services.elevenlabs_client import ElevenLabsClient

BODY = json.dumps({"title": "cyber", "knowledge_base": "Intro text", "mode": "convai"}).encode()


class FakeProvider:
    """Records knowledge base API calls and answers them like the provider."""

    def __init__(self, documents=None, list_status=200, create_status=200, echo_association=True):
        self.documents = documents or []
        self.list_status = list_status
        self.create_status = create_status
        self.echo_association = echo_association
        self.calls = []

    def __call__(self, request):
        self.calls.append((request.method, request.url.path))
        path = request.url.path
        if request.method == "GET" and path == "/v1/convai/knowledge-base":
            return httpx.Response(self.list_status, json={"documents": self.documents})
        if request.method == "DELETE":
            return httpx.Response(200, json={})
        if request.method == "POST" and path == "/v1/convai/knowledge-base/text":
            body = json.loads(request.content)
            return httpx.Response(self.create_status, json={"id": "doc_new", "name": body["name"]})
        if request.method == "GET" and path == "/v1/convai/agents/agent_123":
            return httpx.Response(
                200,
                json={"conversation_config": {"agent": {"prompt": {"prompt": "Be helpful", "knowledge_base": []}}}},
            )
        if request.method == "PATCH":
            self.patch_body = json.loads(request.content)
            result = self.patch_body if self.echo_association else {"conversation_config": {}}
            return httpx.Response(200, json=result)
        return httpx.Response(404)


def make_handler(settings, provider):
    client = ElevenLabsClient(settings, transport=httpx.MockTransport(provider))
    return ConvaiWebhookHandler(settings, client)


def test_find_signature_header_accepts_all_names():
    for name in ("elevenlabs-signature", "x-elevenlabs-signature", "x-webhook-signature"):
        assert find_signature_header({name: "t=1,v0=ab"}) == "t=1,v0=ab"
    assert find_signature_header({"content-type": "application/json"}) is None


def test_parse_signature_header():
    assert parse_signature_header("t=1700000000, v0=abcdef") == (1700000000, "abcdef")
    with pytest.raises(SignatureError):
        parse_signature_header("v0=abcdef")
    with pytest.raises(SignatureError):
        parse_signature_header("t=soon,v0=abcdef")


def test_valid_signature_is_accepted(settings):
    settings = settings.model_copy(update={"webhook_secret": "whsec"})
    handler = make_handler(settings, FakeProvider())

    assert handler.verify_signature(BODY, sign_payload("whsec", BODY.decode(), 1700000000)) is True


def test_tampered_body_is_rejected(settings):
    settings = settings.model_copy(update={"webhook_secret": "whsec"})
    handler = make_handler(settings, FakeProvider())
    header = sign_payload("whsec", BODY.decode(), 1700000000)

    with pytest.raises(SignatureError):
        handler.verify_signature(BODY.replace(b"Intro", b"intro"), header)


def test_unsigned_or_unconfigured_is_accepted(settings):
    handler = make_handler(settings, FakeProvider())

    assert handler.verify_signature(BODY, None) is False
    assert handler.verify_signature(BODY, "t=1,v0=deadbeef") is False


@pytest.mark.parametrize("raw", [b"{not json", b"[]", json.dumps({"title": "only"}).encode()])
def test_parse_payload_rejects_bad_bodies(raw):
    with pytest.raises(InvalidRequestError):
        ConvaiWebhookHandler.parse_payload(raw)


@pytest.mark.asyncio
async def test_upsert_replaces_document_with_same_title(settings):
    provider = FakeProvider(documents=[{"id": "doc_old", "name": "cyber"}, {"id": "doc_x", "name": "other"}])
    handler = make_handler(settings, provider)

    update = await handler.handle(BODY, {})

    assert ("DELETE", "/v1/convai/knowledge-base/doc_old") in provider.calls
    assert ("DELETE", "/v1/convai/knowledge-base/doc_x") not in provider.calls
    prompt = provider.patch_body["conversation_config"]["agent"]["prompt"]
    assert prompt["prompt"] == "Be helpful"
    assert prompt["knowledge_base"] == [
        {"type": "text", "name": "cyber", "id": "doc_new", "usage_mode": "prompt"}
    ]
    assert update.document_id == "doc_new"
    assert update.agent_id == "agent_123"
    assert update.method == "prompt_knowledge_base"
    assert update.associated is True


@pytest.mark.asyncio
async def test_upsert_survives_list_failure(settings):
    provider = FakeProvider(list_status=500)

    update = await make_handler(settings, provider).upsert("cyber", "text")

    assert update.document_id == "doc_new"
    assert not any(method == "DELETE" for method, _ in provider.calls)


@pytest.mark.asyncio
async def test_upsert_reports_missing_association(settings):
    update = await make_handler(settings, FakeProvider(echo_association=False)).upsert("cyber", "text")

    assert update.associated is False


@pytest.mark.asyncio
async def test_upsert_create_failure(settings):
    with pytest.raises(UpstreamFetchError) as exc_info:
        await make_handler(settings, FakeProvider(create_status=400)).upsert("cyber", "text")

    assert exc_info.value.status == 400


@pytest.mark.asyncio
async def test_upsert_requires_agent(settings):
    settings = settings.model_copy(update={"agent_id": ""})

    with pytest.raises(ConfigError) as exc_info:
        await make_handler(settings, FakeProvider()).upsert("cyber", "text")

    assert exc_info.value.missing == ["ELEVENLABS_AGENT_ID"]
