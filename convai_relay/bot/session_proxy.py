"""
Session proxy between a browser WebSocket and the ElevenLabs ConvAI endpoint.

One SessionProxy instance owns one client socket and at most one upstream
socket for its whole lifetime. The session is driven as an explicit state
machine (see convai_relay.models.session):

    INIT -> NEGOTIATING -> CONNECTING_UPSTREAM -> OPEN -> CLOSING -> CLOSED

- The client socket is accepted first so that setup failures can be reported
  as structured messages before closing.
- While OPEN, one receive loop per socket forwards and translates frames, a
  keepalive task pings upstream and an idle watchdog ends silent sessions.
- Whichever side ends first, close() tears down the other side exactly once
  and cancels every background task.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import websockets
from fastapi import WebSocket
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.protocol import State

from convai_relay.bot.message_translation import (
    Frame,
    extract_audio,
    is_ping,
    is_pong,
    make_pong,
    normalize_audio,
    parse_frame,
    translate_client_message,
)
from convai_relay.config.constants import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    FORWARDED_HANDSHAKE_HEADERS,
    LOGGER_NAME,
    MESSAGE_TYPE_CONTEXTUAL_UPDATE,
    MESSAGE_TYPE_ERROR,
    MESSAGE_TYPE_INFO,
    MESSAGE_TYPE_PING,
    PROXY_USER_AGENT,
    WS_MAX_SIZE,
)
from convai_relay.config.settings import Settings
from convai_relay.errors import (
    ConfigError,
    MessageFormatError,
    NotFoundError,
    ProxyHandshakeError,
    RelayError,
)
from convai_relay.models.schemas import KnowledgeBase
from convai_relay.models.session import SessionInfo, SessionState
from convai_relay.services.negotiator import SessionNegotiator, UpstreamTarget
from convai_relay.services.projects import ProjectStore

logger = logging.getLogger(LOGGER_NAME)

KEEPALIVE_FRAME = json.dumps({"type": MESSAGE_TYPE_PING})


class SessionProxy:
    """
    Bidirectional proxy for one ConvAI conversation.

    Args:
        websocket: The inbound client WebSocket (not yet accepted)
        settings: Relay configuration
        negotiator: Resolves the upstream URL and auth headers
        store: Project store used to seed the session with a knowledge base
        project: Optional project key whose knowledge base is sent as context
        agent_id: ConvAI agent id; defaults to the configured agent
        model: Model id, kept for logging and the welcome message
        connect: WebSocket connect function, replaceable in tests
    """

    def __init__(
        self,
        websocket: WebSocket,
        settings: Settings,
        negotiator: SessionNegotiator,
        store: Optional[ProjectStore] = None,
        project: Optional[str] = None,
        agent_id: Optional[str] = None,
        model: Optional[str] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.client = websocket
        self.settings = settings
        self.negotiator = negotiator
        self.store = store
        self._connect = connect

        self.session = SessionInfo(
            project=project,
            agent_id=agent_id or settings.agent_id,
            model=model or settings.model_id,
        )
        self.upstream = None
        self.knowledge_base: Optional[KnowledgeBase] = None
        self.signed = False

        self._client_closed = False
        self._close_code = CLOSE_NORMAL
        self._close_reason = ""
        self._pumps: List[asyncio.Task] = []
        self._timers: List[asyncio.Task] = []

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    def _log(self, level: int, text: str) -> None:
        logger.log(level, f"[ws] Session {self.session_id} {text}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Accept the client, connect upstream and relay until either side closes."""
        await self.client.accept()
        self.session.transition(SessionState.NEGOTIATING)
        self._log(
            logging.INFO,
            f"client connected (project={self.session.project}, model={self.session.model})",
        )

        try:
            target = await self._prepare()
            await self._open_upstream(target)
        except ProxyHandshakeError as e:
            self._log(logging.ERROR, f"upstream handshake failed: {e.message}")
            await self._fail(e.to_message(), e.close_code, "upstream handshake failed")
            return
        except RelayError as e:
            self._log(logging.ERROR, f"setup error: {e.message}")
            code = (
                CLOSE_POLICY_VIOLATION
                if isinstance(e, (ConfigError, NotFoundError))
                else CLOSE_INTERNAL_ERROR
            )
            message = {"type": MESSAGE_TYPE_ERROR, "error": e.code, "text": f"Setup failed: {e.message}"}
            await self._fail(message, code, "setup failed")
            return

        await self._on_open()
        await self._pump()

    async def _prepare(self) -> UpstreamTarget:
        missing = self.settings.missing("api_key")
        if not self.session.agent_id:
            missing.append("ELEVENLABS_AGENT_ID")
        if missing:
            raise ConfigError(missing)

        if self.session.project and self.store is not None:
            self.knowledge_base = await self.store.assemble_kb(self.session.project)
            self._log(logging.INFO, f"KB assembled: {self.knowledge_base.title}")

        target = await self.negotiator.negotiate(self.session.agent_id)
        self.signed = target.signed
        self.session.transition(SessionState.CONNECTING_UPSTREAM)
        return target

    def _handshake_headers(self, target: UpstreamTarget) -> Dict[str, str]:
        headers = dict(target.headers)
        # User-Agent travels as user_agent_header
        for name in FORWARDED_HANDSHAKE_HEADERS:
            value = self.client.headers.get(name)
            if value and name != "user-agent":
                headers[name] = value
        return headers

    async def _open_upstream(self, target: UpstreamTarget) -> None:
        """
        Perform the upstream WebSocket handshake.

        Raises:
            ProxyHandshakeError: On a non-101 response, timeout or network failure
        """
        timeout = self.settings.handshake_timeout
        try:
            self.upstream = await asyncio.wait_for(
                self._connect(
                    target.url,
                    additional_headers=self._handshake_headers(target),
                    user_agent_header=self.client.headers.get("user-agent") or PROXY_USER_AGENT,
                    max_size=WS_MAX_SIZE,
                    ping_interval=None,
                ),
                timeout=timeout,
            )
        except InvalidStatus as e:
            response = e.response
            body = response.body.decode("utf-8", errors="replace") if response.body else ""
            raise ProxyHandshakeError.from_status(response.status_code, body) from e
        except asyncio.TimeoutError as e:
            raise ProxyHandshakeError(f"Timed out connecting to ElevenLabs after {timeout}s") from e
        except (OSError, WebSocketException) as e:
            raise ProxyHandshakeError(f"Connection error: {e}") from e

    async def _on_open(self) -> None:
        self.session.transition(SessionState.OPEN)
        self.session.touch()
        self._log(logging.INFO, f"upstream connected (signed={self.signed})")

        title = self.knowledge_base.title if self.knowledge_base else self.session.project
        await self._send_client_json(
            {
                "type": MESSAGE_TYPE_INFO,
                "text": "Connected to ElevenLabs ConvAI",
                "project": self.session.project,
                "title": title,
                "signed": self.signed,
            }
        )
        if self.knowledge_base and self.knowledge_base.text:
            await self._send_upstream(
                json.dumps({"type": MESSAGE_TYPE_CONTEXTUAL_UPDATE, "text": self.knowledge_base.text})
            )

        self._timers = [
            asyncio.create_task(self._keepalive()),
            asyncio.create_task(self._idle_watch()),
        ]

    async def _pump(self) -> None:
        self._pumps = [
            asyncio.create_task(self._client_loop()),
            asyncio.create_task(self._upstream_loop()),
        ]
        idle_timer = self._timers[1]
        try:
            done, _ = await asyncio.wait(
                [*self._pumps, idle_timer], return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self._log(logging.ERROR, f"relay task failed: {task.exception()!r}")
                    self._close_code = CLOSE_INTERNAL_ERROR
        finally:
            await self.close(self._close_code, self._close_reason)

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """
        Tear down the session. Safe to call repeatedly and from either side.
        """
        if self.session.is_closing:
            return
        self.session.transition(SessionState.CLOSING)

        await self._cancel_tasks()
        await self._close_upstream()
        await self._close_client(code, reason)

        self.session.transition(SessionState.CLOSED)
        self._log(
            logging.INFO,
            f"closed after {self.session.duration():.1f}s (code={code}{', ' + reason if reason else ''})",
        )

    async def _fail(self, message: Dict[str, Any], code: int, reason: str) -> None:
        await self._notify_client(message)
        await self.close(code, reason)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._timers + self._pumps if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_upstream(self) -> None:
        if self.upstream is None:
            return
        try:
            await self.upstream.close()
        except Exception as e:
            self._log(logging.DEBUG, f"ignoring upstream close error: {e}")

    async def _close_client(self, code: int, reason: str) -> None:
        if self._client_closed:
            return
        self._client_closed = True
        try:
            await self.client.close(code=code, reason=reason or None)
        except Exception as e:
            self._log(logging.DEBUG, f"ignoring client close error: {e}")

    # ------------------------------------------------------------------
    # Receive loops
    # ------------------------------------------------------------------

    async def _client_loop(self) -> None:
        while True:
            message = await self.client.receive()
            if message["type"] == "websocket.disconnect":
                self._client_closed = True
                self._log(logging.INFO, f"client disconnected ({message.get('code')})")
                return
            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes")
            if frame is not None:
                await self.handle_client_frame(frame)

    async def _upstream_loop(self) -> None:
        try:
            async for frame in self.upstream:
                await self.handle_upstream_frame(frame)
        except ConnectionClosed as e:
            self._log(logging.WARNING, f"upstream connection error: {e}")
            self._close_code = CLOSE_INTERNAL_ERROR
            self._close_reason = "upstream error"
            await self._notify_client({"type": MESSAGE_TYPE_ERROR, "text": f"Connection error: {e}"})
            return

        code = getattr(self.upstream, "close_code", None)
        self._log(logging.INFO, f"upstream closed ({code})")
        self._close_reason = "upstream closed"
        await self._notify_client({"type": MESSAGE_TYPE_INFO, "text": f"Connection closed ({code})"})

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    async def handle_upstream_frame(self, frame: Frame) -> None:
        """Normalize audio, consume pongs and forward everything else unchanged."""
        if isinstance(frame, bytes):
            self.session.touch()
            await self._send_client(frame)
            return
        try:
            message = parse_frame(frame)
        except MessageFormatError as e:
            self._log(logging.DEBUG, f"forwarding unparsed upstream frame ({e.message})")
            self.session.touch()
            await self._send_client(frame)
            return

        if is_pong(message):
            return
        if not is_ping(message):
            self.session.touch()

        audio = extract_audio(message)
        if audio is not None:
            await self._send_client_json(normalize_audio(*audio))
            return

        message_type = message.get("type")
        if message_type and message_type != MESSAGE_TYPE_PING:
            self._log(logging.DEBUG, f"upstream message type: {message_type}")
        await self._send_client(frame)

    async def handle_client_frame(self, frame: Frame) -> None:
        """Answer pings locally and translate or forward everything else upstream."""
        message = None
        try:
            message = parse_frame(frame)
        except MessageFormatError as e:
            self._log(logging.DEBUG, f"forwarding unparsed client frame ({e.message})")

        if message is not None and is_ping(message):
            await self._send_client_json(make_pong(message))
            return
        self.session.touch()

        if not self.upstream_open:
            self._log(logging.WARNING, "client sent a message while upstream is not open")
            await self._send_client_json(
                {"type": MESSAGE_TYPE_ERROR, "text": "Not connected to upstream service"}
            )
            return

        if message is not None:
            translated = translate_client_message(message)
            if translated is not None:
                await self._send_upstream(json.dumps(translated))
                return
        await self._send_upstream(frame)

    @property
    def upstream_open(self) -> bool:
        return (
            self.upstream is not None
            and self.session.is_open
            and self.upstream.state is State.OPEN
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.settings.keepalive_interval)
            if not self.upstream_open:
                continue
            try:
                await self.upstream.send(KEEPALIVE_FRAME)
            except ConnectionClosed:
                return

    async def _idle_watch(self) -> None:
        while True:
            await asyncio.sleep(self.settings.idle_check_interval)
            idle = self.session.idle_for()
            if idle > self.settings.idle_timeout:
                self._log(logging.WARNING, f"idle for {idle:.1f}s, closing")
                await self._notify_client(
                    {"type": MESSAGE_TYPE_INFO, "text": "Session idle timeout", "idle_seconds": round(idle)}
                )
                self._close_code = CLOSE_NORMAL
                self._close_reason = "idle timeout"
                return

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send_upstream(self, frame: Frame) -> None:
        try:
            await self.upstream.send(frame)
        except ConnectionClosed as e:
            self._log(logging.WARNING, f"upstream send failed: {e}")
            await self._notify_client({"type": MESSAGE_TYPE_ERROR, "text": "Not connected to upstream service"})

    async def _send_client(self, frame: Frame) -> None:
        if self._client_closed:
            return
        if isinstance(frame, bytes):
            await self.client.send_bytes(frame)
        else:
            await self.client.send_text(frame)

    async def _send_client_json(self, data: Dict[str, Any]) -> None:
        await self._send_client(json.dumps(data))

    async def _notify_client(self, data: Dict[str, Any]) -> None:
        """Best-effort send used on error and shutdown paths."""
        try:
            await self._send_client_json(data)
        except Exception as e:
            self._log(logging.DEBUG, f"could not notify client: {e}")
