"""
Unit tests for the ConvAI session proxy.

These tests drive SessionProxy with in-memory client and upstream sockets to
verify the session state machine, frame translation in both directions,
keepalive and idle handling, and symmetric teardown.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus
from websockets.http11 import Response
from websockets.protocol import State

from convai_relay.bot.session_proxy import SessionProxy
from convai_relay.models.session import SessionState
from convai_relay.services.negotiator import UpstreamTarget
from convai_relay.services.projects import ProjectStore

END = object()


class FakeClient:
    """In-memory stand-in for the browser-side Starlette WebSocket."""

    def __init__(self, headers=None):
        self.headers = headers or {}
        self.query_params = {}
        self.accepted = False
        self.sent = []
        self.close_calls = []
        self._incoming = asyncio.Queue()

    def push(self, frame):
        key = "bytes" if isinstance(frame, bytes) else "text"
        self._incoming.put_nowait({"type": "websocket.receive", key: frame})

    def disconnect(self, code=1000):
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    async def accept(self):
        self.accepted = True

    async def receive(self):
        return await self._incoming.get()

    async def send_text(self, data):
        self.sent.append(data)

    async def send_bytes(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_calls.append((code, reason))

    def messages(self):
        """JSON object frames sent to the client, in order."""
        parsed = []
        for frame in self.sent:
            if not isinstance(frame, str):
                continue
            try:
                data = json.loads(frame)
            except ValueError:
                continue
            if isinstance(data, dict):
                parsed.append(data)
        return parsed


class FakeUpstream:
    """In-memory stand-in for the upstream websockets connection."""

    def __init__(self, close_code=1000):
        self.state = State.OPEN
        self.sent = []
        self.close_calls = 0
        self.close_code = close_code
        self._frames = asyncio.Queue()

    def push(self, item):
        self._frames.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._frames.get()
        if item is END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, frame):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(frame)

    async def close(self):
        self.close_calls += 1
        self.state = State.CLOSED
        self._frames.put_nowait(END)


@pytest.fixture
def negotiator():
    negotiator = MagicMock()
    negotiator.negotiate = AsyncMock(
        return_value=UpstreamTarget(url="wss://api.elevenlabs.io/v1/convai/conversation?token=t")
    )
    return negotiator


@pytest.fixture
def quiet_settings(settings):
    """Settings whose timers never fire during a test."""
    return settings.model_copy(update={"keepalive_interval": 60.0, "idle_timeout": 60.0, "idle_check_interval": 30.0})


def make_connect(upstream, calls=None):
    async def connect(url, **kwargs):
        if calls is not None:
            calls.append((url, kwargs))
        return upstream

    return connect


async def run_proxy(proxy, timeout=2.0):
    await asyncio.wait_for(proxy.run(), timeout)


@pytest.mark.asyncio
async def test_upstream_audio_shapes_are_normalized(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream()
    upstream.push(json.dumps({"audio_base_64": "QUJD"}))
    upstream.push(json.dumps({"type": "audio", "audio_event": {"audio_base_64": "REVG", "mime": "audio/pcm"}}))
    upstream.push(json.dumps({"data": {"audio_base_64": "R0hJ"}}))
    upstream.push(json.dumps({"type": "pong", "event_id": 1}))
    agent_response = json.dumps({"type": "agent_response", "agent_response_event": {"agent_response": "Hi"}})
    upstream.push(agent_response)
    upstream.push("plain text")
    upstream.push(b"\x01\x02")
    upstream.push(END)

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    audio = [m for m in client.messages() if m.get("type") == "audio"]
    assert audio == [
        {"type": "audio", "audio_base_64": "QUJD", "mime": "audio/mpeg"},
        {"type": "audio", "audio_base_64": "REVG", "mime": "audio/pcm"},
        {"type": "audio", "audio_base_64": "R0hJ", "mime": "audio/mpeg"},
    ]
    assert agent_response in client.sent
    assert "plain text" in client.sent
    assert b"\x01\x02" in client.sent
    assert not any(m.get("type") == "pong" for m in client.messages())


@pytest.mark.asyncio
async def test_welcome_message_and_handshake(quiet_settings, negotiator):
    client = FakeClient(headers={"user-agent": "Browser/1.0", "accept-language": "en-GB", "cookie": "secret"})
    upstream = FakeUpstream()
    upstream.push(END)
    calls = []

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream, calls))
    await run_proxy(proxy)

    assert client.accepted
    welcome = client.messages()[0]
    assert welcome == {
        "type": "info",
        "text": "Connected to ElevenLabs ConvAI",
        "project": None,
        "title": None,
        "signed": True,
    }
    url, kwargs = calls[0]
    assert url.endswith("token=t")
    assert kwargs["additional_headers"] == {"accept-language": "en-GB"}
    assert kwargs["user_agent_header"] == "Browser/1.0"
    negotiator.negotiate.assert_awaited_once_with("agent_123")


@pytest.mark.asyncio
async def test_unsigned_fallback_sends_api_key(quiet_settings, negotiator):
    negotiator.negotiate.return_value = UpstreamTarget(
        url="wss://api.elevenlabs.io/v1/convai/conversation?agent_id=agent_123",
        headers={"xi-api-key": quiet_settings.api_key},
        signed=False,
    )
    client = FakeClient()
    upstream = FakeUpstream()
    upstream.push(END)
    calls = []

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream, calls))
    await run_proxy(proxy)

    assert calls[0][1]["additional_headers"]["xi-api-key"] == quiet_settings.api_key
    assert client.messages()[0]["signed"] is False


@pytest.mark.asyncio
async def test_project_knowledge_base_seeds_session(quiet_settings, negotiator, projects_dir):
    client = FakeClient()
    upstream = FakeUpstream()
    upstream.push(END)
    store = ProjectStore(quiet_settings)

    proxy = SessionProxy(
        client, quiet_settings, negotiator, store=store, project="cyber", connect=make_connect(upstream)
    )
    await run_proxy(proxy)

    assert json.loads(upstream.sent[0]) == {
        "type": "contextual_update",
        "text": "Intro text\n# Notes\nThreat model\nPhishing & vishing",
    }
    welcome = client.messages()[0]
    assert welcome["project"] == "cyber"
    assert welcome["title"] == "cyber"


@pytest.mark.asyncio
async def test_client_ping_is_answered_locally(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream()
    client.push(json.dumps({"type": "ping", "event_id": 42}))
    client.disconnect()

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    pongs = [m for m in client.messages() if m.get("type") == "pong"]
    assert pongs == [{"type": "pong", "event_id": 42}]
    assert upstream.sent == []


@pytest.mark.asyncio
async def test_client_frames_are_translated(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream()
    client.push(json.dumps({"user_audio_chunk": {"audio_base_64": "QUJD"}}))
    client.push(json.dumps({"user_audio_chunk": "REVG"}))
    client.push(json.dumps({"type": "user_message", "text": "hello"}))
    client.push(json.dumps({"type": "user_activity"}))
    client.push("not json")
    client.push(b"\x00\x01")
    client.disconnect()

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    assert upstream.sent == [
        json.dumps({"user_audio_chunk": "QUJD"}),
        json.dumps({"user_audio_chunk": "REVG"}),
        json.dumps({"type": "user_message", "text": "hello"}),
        json.dumps({"type": "user_activity"}),
        "not json",
        b"\x00\x01",
    ]


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream()
    client.disconnect()

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    assert proxy.state is SessionState.CLOSED
    assert upstream.close_calls == 1
    # The client is already gone and must not be closed again
    assert client.close_calls == []
    assert all(task.done() for task in proxy._timers)


@pytest.mark.asyncio
async def test_upstream_close_closes_client_once(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream(close_code=1000)
    upstream.push(END)

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)
    await proxy.close()

    assert proxy.state is SessionState.CLOSED
    assert client.close_calls == [(1000, "upstream closed")]
    assert client.messages()[-1] == {"type": "info", "text": "Connection closed (1000)"}
    assert len(proxy._timers) == 2
    assert all(task.done() for task in proxy._timers)


@pytest.mark.asyncio
async def test_upstream_error_closes_client_with_internal_error(quiet_settings, negotiator):
    client = FakeClient()
    upstream = FakeUpstream()
    upstream.push(ConnectionClosedError(None, None))

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    assert client.close_calls == [(1011, "upstream error")]
    assert client.messages()[-1]["type"] == "error"
    assert all(task.done() for task in proxy._timers)


@pytest.mark.asyncio
async def test_handshake_403_never_opens(quiet_settings, negotiator):
    client = FakeClient()

    async def connect(url, **kwargs):
        raise InvalidStatus(Response(403, "Forbidden", Headers(), b"agent is private"))

    proxy = SessionProxy(client, quiet_settings, negotiator, connect=connect)
    await run_proxy(proxy)

    errors = [m for m in client.messages() if m.get("type") == "error"]
    assert len(errors) == 1
    assert errors[0]["status"] == 403
    assert errors[0]["details"] == "agent is private"
    assert client.close_calls == [(1008, "upstream handshake failed")]
    assert proxy.state is SessionState.CLOSED
    assert proxy.session.reached_open is False
    assert not any(m.get("type") == "info" for m in client.messages())


@pytest.mark.asyncio
async def test_handshake_timeout(quiet_settings, negotiator):
    settings = quiet_settings.model_copy(update={"handshake_timeout": 0.05})
    client = FakeClient()

    async def connect(url, **kwargs):
        await asyncio.sleep(1)

    proxy = SessionProxy(client, settings, negotiator, connect=connect)
    await run_proxy(proxy)

    errors = [m for m in client.messages() if m.get("type") == "error"]
    assert len(errors) == 1
    assert "Timed out" in errors[0]["text"]
    assert client.close_calls[0][0] == 1011
    assert proxy.session.reached_open is False


@pytest.mark.asyncio
async def test_missing_configuration_fails_before_negotiation(quiet_settings, negotiator):
    settings = quiet_settings.model_copy(update={"api_key": ""})
    client = FakeClient()
    calls = []

    proxy = SessionProxy(client, settings, negotiator, connect=make_connect(FakeUpstream(), calls))
    await run_proxy(proxy)

    message = client.messages()[0]
    assert message["type"] == "error"
    assert message["error"] == "config_error"
    assert "ELEVENLABS_API_KEY" in message["text"]
    assert client.close_calls == [(1008, "setup failed")]
    assert calls == []
    negotiator.negotiate.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_project_fails_setup(quiet_settings, negotiator, projects_dir):
    client = FakeClient()
    store = ProjectStore(quiet_settings)

    proxy = SessionProxy(client, quiet_settings, negotiator, store=store, project="nope")
    await run_proxy(proxy)

    assert client.messages()[0]["error"] == "not_found"
    assert client.close_calls == [(1008, "setup failed")]


@pytest.mark.asyncio
async def test_idle_session_is_closed(settings, negotiator):
    settings = settings.model_copy(
        update={"keepalive_interval": 60.0, "idle_timeout": 0.05, "idle_check_interval": 0.02}
    )
    client = FakeClient()
    upstream = FakeUpstream()

    proxy = SessionProxy(client, settings, negotiator, connect=make_connect(upstream))
    await run_proxy(proxy)

    notice = client.messages()[-1]
    assert notice["type"] == "info"
    assert notice["text"] == "Session idle timeout"
    assert client.close_calls == [(1000, "idle timeout")]
    assert upstream.close_calls == 1


@pytest.mark.asyncio
async def test_keepalive_pings_upstream(settings, negotiator):
    settings = settings.model_copy(
        update={"keepalive_interval": 0.02, "idle_timeout": 60.0, "idle_check_interval": 30.0}
    )
    client = FakeClient()
    upstream = FakeUpstream()

    proxy = SessionProxy(client, settings, negotiator, connect=make_connect(upstream))
    task = asyncio.create_task(proxy.run())
    await asyncio.sleep(0.1)
    client.disconnect()
    await asyncio.wait_for(task, 2.0)

    assert json.dumps({"type": "ping"}) in upstream.sent


@pytest.mark.asyncio
async def test_message_before_upstream_open_is_rejected(quiet_settings, negotiator):
    client = FakeClient()
    proxy = SessionProxy(client, quiet_settings, negotiator)

    await proxy.handle_client_frame(json.dumps({"type": "user_message", "text": "hi"}))

    assert client.messages() == [{"type": "error", "text": "Not connected to upstream service"}]


@pytest.mark.asyncio
async def test_close_is_idempotent(quiet_settings, negotiator):
    client = FakeClient()
    proxy = SessionProxy(client, quiet_settings, negotiator)

    await proxy.close(1000, "done")
    await proxy.close(1011, "again")

    assert client.close_calls == [(1000, "done")]
    assert proxy.state is SessionState.CLOSED
