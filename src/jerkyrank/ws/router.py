"""WebSocket endpoint for live updates."""

import json
import uuid

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jerkyrank.ws.manager import NotificationBus

logger = structlog.get_logger()

router = APIRouter()

SESSION_COOKIE = "session_id"


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Single WebSocket endpoint with session authentication and room subscriptions.

    Protocol:
        Client -> Server:
            {"event": "auth", "data": {"sessionId": "..."}}
            {"event": "subscribe:leaderboard"}
            {"event": "unsubscribe:leaderboard"}
            {"event": "page:view", "data": {"page": "rank"}}
            {"event": "ping"}

        Server -> Client:
            {"event": "authenticated", "data": {"userId": 1}}
            {"event": "subscription:confirmed", "data": {"room": "leaderboard"}}
            {"event": "subscription:failed", "data": {"room": "...", "reason": "..."}}
            {"event": "pong", "data": {...}}
            {"event": "error", "data": {"message": "..."}}
    """
    bus: NotificationBus = websocket.app.state.services.bus
    conn_id = str(uuid.uuid4())
    await bus.connect(websocket, conn_id)

    try:
        # Browsers send the session cookie on the upgrade request.
        cookie_session = websocket.cookies.get(SESSION_COOKIE)
        if cookie_session:
            await bus.authenticate(conn_id, cookie_session)

        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"event": "error", "data": {"message": "Invalid message"}})
                continue

            await bus.handle_message(conn_id, msg.get("event"), msg.get("data"))

    except WebSocketDisconnect:
        await bus.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await bus.disconnect(conn_id)
