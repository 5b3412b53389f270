from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import WebSocket

from convai_relay.bot.session_proxy import SessionProxy
from convai_relay.services.projects import ProjectStore
from convai_relay.websocket_manager import WebSocketManager


@pytest.fixture
def websocket_manager(settings):
    return WebSocketManager(settings, MagicMock(), ProjectStore(settings))


@pytest.fixture
def websocket():
    websocket = AsyncMock(spec=WebSocket)
    websocket.query_params = {"project": "cyber", "agent_id": "agent_override", "model": ""}
    websocket.headers = {}
    return websocket


def test_create_session_reads_query_parameters(websocket_manager, websocket):
    """Test that the session takes project and agent from the query string"""
    proxy = websocket_manager.create_session(websocket)

    assert isinstance(proxy, SessionProxy)
    assert proxy.session.project == "cyber"
    assert proxy.session.agent_id == "agent_override"
    # Empty values fall back to the configured defaults
    assert proxy.session.model == "eleven_flash_v2"


def test_create_session_defaults(websocket_manager, websocket):
    websocket.query_params = {}

    proxy = websocket_manager.create_session(websocket)

    assert proxy.session.project is None
    assert proxy.session.agent_id == "agent_123"


@pytest.mark.asyncio
async def test_handle_websocket_tracks_session(websocket_manager, websocket):
    """Test that a session is registered while running and removed afterwards"""
    seen_active = []

    async def fake_run(self):
        seen_active.append(dict(websocket_manager.active_sessions))

    with patch.object(SessionProxy, "run", fake_run):
        proxy = await websocket_manager.handle_websocket(websocket)

    assert seen_active == [{proxy.session_id: proxy}]
    assert websocket_manager.active_sessions == {}


@pytest.mark.asyncio
async def test_handle_websocket_error_closes_session(websocket_manager, websocket):
    """Test that an unexpected proxy failure still closes the client"""
    with patch.object(SessionProxy, "run", AsyncMock(side_effect=RuntimeError("boom"))):
        with patch.object(SessionProxy, "close", AsyncMock()) as mock_close:
            await websocket_manager.handle_websocket(websocket)

    mock_close.assert_awaited_once_with(1011, "proxy error")
    assert websocket_manager.active_sessions == {}


@pytest.mark.asyncio
async def test_sessions_are_independent(websocket_manager, websocket):
    first = websocket_manager.create_session(websocket)
    second = websocket_manager.create_session(websocket)

    assert first.session_id != second.session_id
    assert first.session is not second.session
