"""Tests for the /ws endpoint loop."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect

from jerkyrank.services import Services
from jerkyrank.ws.router import websocket_endpoint
from tests.conftest import create_session, create_user, make_ws, sent_events


def _socket(services: Services, frames: list[str], cookies: dict[str, str] | None = None) -> MagicMock:
    ws = make_ws()
    ws.app = MagicMock()
    ws.app.state.services = services
    ws.cookies = cookies or {}
    ws.receive_text = AsyncMock(side_effect=[*frames, WebSocketDisconnect()])
    ws.send_json = AsyncMock()
    return ws


class TestWebSocketEndpoint:
    @pytest.mark.asyncio
    async def test_messages_dispatched_until_disconnect(self, services: Services) -> None:
        ws = _socket(services, [json.dumps({"event": "ping"}), json.dumps({"event": "subscribe:leaderboard"})])

        await websocket_endpoint(ws)

        ws.accept.assert_awaited_once()
        assert [m["event"] for m in sent_events(ws)] == ["pong", "subscription:confirmed"]
        assert services.bus.connection_count == 0

    @pytest.mark.asyncio
    async def test_invalid_frames_answered_with_errors(self, services: Services) -> None:
        ws = _socket(services, ["not json", "[1, 2]"])

        await websocket_endpoint(ws)

        replies = [call.args[0] for call in ws.send_json.call_args_list]
        assert replies == [
            {"event": "error", "data": {"message": "Invalid JSON"}},
            {"event": "error", "data": {"message": "Invalid message"}},
        ]

    @pytest.mark.asyncio
    async def test_session_cookie_authenticates(self, services: Services) -> None:
        user = await create_user(services.session_factory)
        await create_session(services.session_factory, user.id, "sess-cookie")
        seen: list[bool] = []

        async def check(*_args: object) -> None:
            seen.append(services.bus.has_authenticated_connection(user.id))

        services.bus.page_view = check  # type: ignore[method-assign]
        ws = _socket(services, [json.dumps({"event": "page:view", "data": {"page": "rank"}})], {"session_id": "sess-cookie"})

        await websocket_endpoint(ws)

        assert sent_events(ws)[0] == {"event": "authenticated", "data": {"userId": user.id}}
        assert seen == [True]
        assert services.bus.has_authenticated_connection(user.id) is False
