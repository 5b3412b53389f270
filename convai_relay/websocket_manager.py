"""
WebSocket connection manager for ConvAI proxy sessions.

This module implements the server side of the /ws endpoint, providing the
infrastructure to:
- Read the session parameters (project, model, agent_id) from the upgrade request
- Create one SessionProxy per browser connection
- Track active sessions for health reporting
- Guarantee cleanup when a session ends or fails unexpectedly

The WebSocketManager class is the entry point for every proxied conversation
between a browser client and the ElevenLabs ConvAI realtime endpoint.
"""

import logging
from typing import Any, Callable, Dict, Optional

import websockets
from fastapi import WebSocket

from convai_relay.bot.session_proxy import SessionProxy
from convai_relay.config.constants import CLOSE_INTERNAL_ERROR, LOGGER_NAME
from convai_relay.config.settings import Settings
from convai_relay.services.negotiator import SessionNegotiator
from convai_relay.services.projects import ProjectStore

logger = logging.getLogger(LOGGER_NAME)


class WebSocketManager:
    """Creates and tracks SessionProxy instances for inbound WebSocket connections.

    Each connection gets its own proxy; sessions never share sockets or timers.
    The only state shared between sessions is the read-only Settings.
    """

    def __init__(
        self,
        settings: Settings,
        negotiator: SessionNegotiator,
        store: ProjectStore,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.settings = settings
        self.negotiator = negotiator
        self.store = store
        self.connect = connect
        self.active_sessions: Dict[str, SessionProxy] = {}

    def create_session(self, websocket: WebSocket) -> SessionProxy:
        """Build a proxy for `websocket` from its query parameters."""
        params = websocket.query_params
        return SessionProxy(
            websocket,
            self.settings,
            self.negotiator,
            store=self.store,
            project=params.get("project") or None,
            agent_id=params.get("agent_id") or None,
            model=params.get("model") or None,
            connect=self.connect,
        )

    async def handle_websocket(self, websocket: WebSocket) -> Optional[SessionProxy]:
        """Handle a WebSocket connection throughout its lifecycle.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        Returns:
            The finished SessionProxy, mainly useful for inspection in tests
        """
        proxy = self.create_session(websocket)
        self.active_sessions[proxy.session_id] = proxy
        logger.info(f"Session {proxy.session_id} registered ({len(self.active_sessions)} active)")

        try:
            await proxy.run()
        except Exception as e:
            logger.error(f"Error in WebSocket session {proxy.session_id}: {e}", exc_info=True)
            await proxy.close(CLOSE_INTERNAL_ERROR, "proxy error")
        finally:
            self.active_sessions.pop(proxy.session_id, None)
            logger.info(f"Session {proxy.session_id} removed ({len(self.active_sessions)} active)")
        return proxy
