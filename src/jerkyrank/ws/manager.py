"""Notification bus over WebSocket connections.

Tracks connections, their rooms and the authenticated users behind them,
and fans server events out to rooms. Every public ``emit_*``/``broadcast_*``
method is fire-and-forget: it schedules delivery and returns immediately,
and delivery failures are logged, never raised.

Achievements and flavor coins aimed at a user with no authenticated
connection are held in a pending bundle for five minutes and delivered on
that user's next authentication.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from fastapi import WebSocket

from jerkyrank.auth.sessions import SessionUser
from jerkyrank.cache.substrate import CacheSubstrate
from jerkyrank.gamification.recent_achievements import RecentAchievementTracker, achievement_signature

logger = structlog.get_logger()

# Client-facing subscription names mapped to room names.
SUBSCRIPTION_ROOMS: dict[str, str] = {
    "leaderboard": "leaderboard",
    "activity-feed": "activity-feed",
    "live-users": "live-users",
    "customer-orders": "admin:customer-orders",
    "admin:customer-orders": "admin:customer-orders",
    "queue-monitor": "admin:queue-monitor",
    "admin:queue-monitor": "admin:queue-monitor",
}
ADMIN_ROOMS = {"live-users", "admin:customer-orders", "admin:queue-monitor"}

PENDING_TTL_SECONDS = 5 * 60
DELIVERED_NAMESPACE = "delivered"
QUEUEABLE_EVENTS = ("achievements:earned", "flavor_coins:earned")

Authenticator = Callable[[str | None], Awaitable[SessionUser | None]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def redact_last_name(last_name: str | None) -> str:
    return f"{last_name[0]}." if last_name else ""


def mask_email(email: str | None) -> str:
    if not email:
        return "unknown@***"
    return email.split("@", 1)[0] + "@***"


@dataclass
class ClientConnection:
    """One WebSocket connection."""

    websocket: WebSocket
    conn_id: str
    user: SessionUser | None = None
    rooms: set[str] = field(default_factory=set)
    current_page: str = "home"
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    messages_sent: int = 0

    @property
    def user_id(self) -> int | None:
        return self.user.id if self.user else None


@dataclass
class ActiveUser:
    """An authenticated user and every connection they hold."""

    user: SessionUser
    connection_ids: set[str] = field(default_factory=set)
    current_page: str = "home"
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)


@dataclass
class PendingMessage:
    message_id: str | None
    event: str
    items: list[dict[str, Any]]


@dataclass
class PendingBundle:
    messages: list[PendingMessage] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def achievements(self) -> list[dict[str, Any]]:
        return _unique_achievements(
            item for m in self.messages if m.event == "achievements:earned" for item in m.items
        )

    @property
    def coin_drops(self) -> list[dict[str, Any]]:
        return [item for m in self.messages if m.event == "flavor_coins:earned" for item in m.items]


def _unique_achievements(achievements: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    unique = []
    for achievement in achievements:
        signature = achievement_signature(achievement)
        if signature not in seen:
            seen.add(signature)
            unique.append(achievement)
    return unique


class NotificationBus:
    """Room-scoped publish/subscribe for live updates.

    With a Redis client the bus also publishes every emit on a pub/sub
    channel so other processes (a worker, another web replica) can deliver
    it to their own sockets. ``local_delivery=False`` makes a publish-only
    bus for processes that hold no sockets.

    Every process without a socket for the user queues the same message, so
    ``ledger`` records delivered message ids across processes: a live send
    marks the id, and draining a bundle claims each id first and drops the
    ones another process already delivered.
    """

    def __init__(
        self,
        room_prefix: str = "dev:",
        *,
        authenticator: Authenticator | None = None,
        suppressor: RecentAchievementTracker | None = None,
        ledger: CacheSubstrate | None = None,
        redis_client: aioredis.Redis | None = None,
        local_delivery: bool = True,
        pending_ttl: float = PENDING_TTL_SECONDS,
        publish_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.room_prefix = room_prefix
        self.instance_id = uuid.uuid4().hex
        self._authenticator = authenticator
        self._suppressor = suppressor
        self._ledger = ledger
        self._redis = redis_client
        self._local_delivery = local_delivery
        self._pending_ttl = pending_ttl
        self._publish_timeout = publish_timeout
        self._clock = clock

        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._active_users: dict[int, ActiveUser] = {}
        self._pending: dict[int, PendingBundle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def channel(self) -> str:
        """Redis pub/sub channel shared by every process of this environment."""
        return f"{self.room_prefix}bus"

    def room(self, name: str) -> str:
        return f"{self.room_prefix}{name}"

    def user_room(self, user_id: int) -> str:
        return self.room(f"user:{user_id}")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Task plumbing
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("bus_emit_without_loop")
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("bus_emit_failed", error=str(exc), exc_info=exc)

    async def drain(self) -> None:
        """Wait for every scheduled emit to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, conn_id: str) -> ClientConnection:
        await websocket.accept()
        client = ClientConnection(websocket=websocket, conn_id=conn_id)
        self._connections[conn_id] = client
        logger.info("ws_connected", conn_id=conn_id)
        return client

    async def disconnect(self, conn_id: str) -> None:
        client = self._connections.pop(conn_id, None)
        if client is None:
            return
        for room in client.rooms:
            self._rooms[room].discard(conn_id)
            if not self._rooms[room]:
                del self._rooms[room]

        user_id = client.user_id
        if user_id is not None:
            active = self._active_users.get(user_id)
            if active is not None:
                active.connection_ids.discard(conn_id)
                if not active.connection_ids:
                    del self._active_users[user_id]
                    logger.info("ws_user_offline", user_id=user_id)
            await self._broadcast_live_users()
        logger.info("ws_disconnected", conn_id=conn_id, user_id=user_id)

    def _join(self, client: ClientConnection, room: str) -> None:
        client.rooms.add(room)
        self._rooms[room].add(client.conn_id)

    def _leave(self, client: ClientConnection, room: str) -> None:
        client.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(client.conn_id)
            if not members:
                del self._rooms[room]

    def has_authenticated_connection(self, user_id: int) -> bool:
        active = self._active_users.get(user_id)
        return active is not None and bool(active.connection_ids)

    async def _send(self, client: ClientConnection, event: str, data: Any) -> bool:  # noqa: ANN401
        try:
            await client.websocket.send_text(json.dumps({"event": event, "data": data}, default=str))
        except Exception:
            logger.debug("ws_send_failed", conn_id=client.conn_id, event=event)
            await self.disconnect(client.conn_id)
            return False
        client.messages_sent += 1
        return True

    async def _send_room(self, room: str | None, event: str, data: Any) -> int:  # noqa: ANN401
        """Send to every member of a room, or to every connection when room is None."""
        conn_ids = list(self._connections) if room is None else list(self._rooms.get(room, ()))
        sent = 0
        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is not None and await self._send(client, event, data):
                sent += 1
        return sent

    # ------------------------------------------------------------------
    # Client protocol
    # ------------------------------------------------------------------

    async def handle_message(self, conn_id: str, event: str | None, data: Any) -> None:  # noqa: ANN401
        """Dispatch one client message."""
        client = self._connections.get(conn_id)
        if client is None:
            return
        client.last_activity = self._clock()
        data = data if isinstance(data, dict) else {}

        if event == "auth":
            await self.authenticate(conn_id, data.get("sessionId"))
        elif event == "ping":
            await self._send(client, "pong", {"timestamp": _now_iso()})
        elif event == "page:view":
            await self.page_view(conn_id, data.get("page"))
        elif event and event.startswith("subscribe:"):
            await self.subscribe(conn_id, event.split(":", 1)[1])
        elif event and event.startswith("unsubscribe:"):
            await self.unsubscribe(conn_id, event.split(":", 1)[1])
        else:
            await self._send(client, "error", {"message": f"Unknown event: {event}"})

    async def authenticate(self, conn_id: str, session_id: str | None) -> bool:
        """Bind a connection to the user behind a session id."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        user = await self._authenticator(session_id) if self._authenticator and session_id else None
        if user is None:
            await self._send(client, "auth:failed", {"reason": "Invalid or expired session"})
            return False

        if client.user is not None and client.user.id == user.id:
            await self._send(client, "authenticated", {"userId": user.id})
            return True
        if client.user is not None:
            await self._detach_user(client)

        self.attach_user(client, user)
        await self._drain_pending(user.id)
        await self._broadcast_live_users()
        await self._send(client, "authenticated", {"userId": user.id})
        return True

    def attach_user(self, client: ClientConnection, user: SessionUser) -> None:
        """Join the user's room and register the connection as active."""
        client.user = user
        self._join(client, self.user_room(user.id))
        active = self._active_users.get(user.id)
        if active is None:
            active = ActiveUser(user=user, current_page=client.current_page)
            self._active_users[user.id] = active
        active.user = user
        active.connection_ids.add(client.conn_id)
        active.last_activity = self._clock()
        logger.info("ws_authenticated", conn_id=client.conn_id, user_id=user.id)

    async def _detach_user(self, client: ClientConnection) -> None:
        user_id = client.user_id
        if user_id is None:
            return
        self._leave(client, self.user_room(user_id))
        active = self._active_users.get(user_id)
        if active is not None:
            active.connection_ids.discard(client.conn_id)
            if not active.connection_ids:
                del self._active_users[user_id]
        client.user = None

    async def subscribe(self, conn_id: str, name: str) -> bool:
        client = self._connections.get(conn_id)
        if client is None:
            return False
        room = SUBSCRIPTION_ROOMS.get(name)
        if room is None:
            await self._send(client, "subscription:failed", {"room": name, "reason": "Unknown room"})
            return False
        if room in ADMIN_ROOMS and not (client.user and client.user.is_admin):
            logger.warning("ws_subscription_denied", conn_id=conn_id, room=room, user_id=client.user_id)
            await self._send(client, "subscription:failed", {"room": name, "reason": "Admin access required"})
            return False

        self._join(client, self.room(room))
        await self._send(client, "subscription:confirmed", {"room": name, "timestamp": _now_iso()})
        if room == "live-users":
            await self._send(client, "live-users:update", self.live_users_payload())
        return True

    async def unsubscribe(self, conn_id: str, name: str) -> bool:
        client = self._connections.get(conn_id)
        room = SUBSCRIPTION_ROOMS.get(name)
        if client is None or room is None:
            return False
        self._leave(client, self.room(room))
        return True

    async def page_view(self, conn_id: str, page: str | None) -> None:
        client = self._connections.get(conn_id)
        if client is None or client.user is None:
            return
        now = self._clock()
        client.current_page = page or "unknown"
        client.last_activity = now
        active = self._active_users.get(client.user.id)
        if active is not None:
            active.current_page = client.current_page
            active.last_activity = now
        await self._broadcast_live_users()

    # ------------------------------------------------------------------
    # Live users
    # ------------------------------------------------------------------

    def live_users_payload(self) -> dict[str, Any]:
        """Active users with names redacted; full emails only for employees."""
        users = []
        for active in self._active_users.values():
            user = active.user
            users.append({
                "userId": user.id,
                "firstName": user.first_name,
                "lastName": redact_last_name(user.last_name),
                "email": user.email if user.is_admin else mask_email(user.email),
                "role": user.role,
                "currentPage": active.current_page,
                "connectionCount": len(active.connection_ids),
                "connectedAt": datetime.fromtimestamp(active.connected_at, timezone.utc).isoformat(),
                "lastActivity": datetime.fromtimestamp(active.last_activity, timezone.utc).isoformat(),
            })
        return {"users": users, "count": len(users), "timestamp": _now_iso()}

    async def _broadcast_live_users(self) -> None:
        room = self.room("live-users")
        if self._rooms.get(room):
            await self._send_room(room, "live-users:update", self.live_users_payload())

    # ------------------------------------------------------------------
    # Pending bundles
    # ------------------------------------------------------------------

    def _queue_pending(self, user_id: int, message_id: str | None, event: str, items: list[dict[str, Any]]) -> None:
        bundle = self._pending.get(user_id)
        if bundle is None:
            bundle = PendingBundle(timestamp=self._clock())
            self._pending[user_id] = bundle
        bundle.messages.append(PendingMessage(message_id, event, list(items)))
        bundle.timestamp = self._clock()
        logger.info("ws_pending_queued", user_id=user_id, event=event, items=len(items))

    def pending_for(self, user_id: int) -> PendingBundle | None:
        return self._pending.get(user_id)

    def _ledger_key(self, user_id: int, message_id: str) -> str:
        return f"user_{user_id}:{message_id}"

    async def _mark_delivered(self, user_id: int, message_id: str | None) -> None:
        if self._ledger is not None and message_id:
            await self._ledger.set(
                DELIVERED_NAMESPACE, self._ledger_key(user_id, message_id), "1", ttl=int(self._pending_ttl)
            )

    async def _claim(self, user_id: int, message_id: str | None) -> bool:
        """True when this process is the first to deliver the message."""
        if self._ledger is None or not message_id:
            return True
        return await self._ledger.add(
            DELIVERED_NAMESPACE, self._ledger_key(user_id, message_id), "1", ttl=int(self._pending_ttl)
        )

    async def _drain_pending(self, user_id: int) -> None:
        bundle = self._pending.pop(user_id, None)
        if bundle is None:
            return
        age = self._clock() - bundle.timestamp
        if age >= self._pending_ttl:
            logger.info("ws_pending_discarded", user_id=user_id, age_seconds=round(age))
            return

        claimed = PendingBundle(timestamp=bundle.timestamp)
        for message in bundle.messages:
            if await self._claim(user_id, message.message_id):
                claimed.messages.append(message)
        dropped = len(bundle.messages) - len(claimed.messages)
        if dropped:
            logger.info("ws_pending_already_delivered", user_id=user_id, messages=dropped)

        achievements, coins = claimed.achievements, claimed.coin_drops
        room = self.user_room(user_id)
        if achievements:
            await self._send_room(room, "achievements:earned", {"achievements": achievements})
        if coins:
            await self._send_room(room, "flavor_coins:earned", {"coins": coins})
        if achievements or coins:
            logger.info("ws_pending_delivered", user_id=user_id, achievements=len(achievements), coins=len(coins))

    def sweep_pending(self) -> int:
        """Discard bundles older than the pending TTL. Returns how many were dropped."""
        now = self._clock()
        stale = [uid for uid, bundle in self._pending.items() if now - bundle.timestamp > self._pending_ttl]
        for user_id in stale:
            del self._pending[user_id]
        if stale:
            logger.info("ws_pending_swept", count=len(stale))
        return len(stale)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep_pending()

    def start_sweeper(self, interval: float = PENDING_TTL_SECONDS) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        """Stop the sweeper and wait for in-flight emits."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.drain()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, message: dict[str, Any]) -> int:
        """Deliver one bus message to local sockets.

        ``message`` carries ``room`` (None for every connection), ``event``,
        ``data`` and, for user-scoped offline-queueable messages, ``userId``,
        ``queue`` and ``messageId``.
        """
        event = message["event"]
        data = message.get("data")
        user_id = message.get("userId")
        queueable = user_id is not None and message.get("queue") and event in QUEUEABLE_EVENTS
        if queueable and not self.has_authenticated_connection(user_id):
            key = "achievements" if event == "achievements:earned" else "coins"
            self._queue_pending(user_id, message.get("messageId"), event, (data or {}).get(key, []))
            return 0
        sent = await self._send_room(message.get("room"), event, data)
        if queueable and sent:
            await self._mark_delivered(user_id, message.get("messageId"))
        return sent

    async def _publish(self, message: dict[str, Any]) -> None:
        if self._redis is None:
            return
        body = json.dumps({**message, "origin": self.instance_id}, default=str)
        try:
            await asyncio.wait_for(self._redis.publish(self.channel, body), self._publish_timeout)
        except (aioredis.RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("bus_publish_failed", event=message.get("event"), error=str(exc))

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if self._local_delivery:
            await self.deliver(message)
        await self._publish(message)

    def emit_to_room(self, room: str | None, event: str, data: Any) -> None:  # noqa: ANN401
        """Fire-and-forget emit to a room (unprefixed name) or, with None, to everyone."""
        self._spawn(self._dispatch({"room": self.room(room) if room else None, "event": event, "data": data}))

    def emit_to_user(self, user_id: int, event: str, data: Any, *, queue: bool = False) -> None:  # noqa: ANN401
        self._spawn(self._dispatch(self._user_message(user_id, event, data, queue)))

    def _user_message(self, user_id: int, event: str, data: Any, queue: bool) -> dict[str, Any]:  # noqa: ANN401
        return {
            "room": self.user_room(user_id),
            "event": event,
            "data": data,
            "userId": user_id,
            "queue": queue,
            "messageId": uuid.uuid4().hex,
        }

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------

    def emit_achievements(self, user_id: int, achievements: list[dict[str, Any]]) -> None:
        """Deliver achievements not already sent to this user in the last five minutes."""
        if achievements:
            self._spawn(self._emit_achievements(user_id, achievements))

    async def _emit_achievements(self, user_id: int, achievements: list[dict[str, Any]]) -> None:
        kept = achievements
        if self._suppressor is not None:
            result = await self._suppressor.filter(user_id, achievements)
            kept = result.kept
            if result.skipped:
                logger.info(
                    "achievements_suppressed",
                    user_id=user_id,
                    signatures=[achievement_signature(a) for a in result.skipped],
                )
        if kept:
            await self._dispatch(self._user_message(user_id, "achievements:earned", {"achievements": kept}, True))

    def emit_flavor_coins(self, user_id: int, coins: list[dict[str, Any]]) -> None:
        if coins:
            self.emit_to_user(user_id, "flavor_coins:earned", {"coins": coins}, queue=True)

    def emit_profile_updated(self, user_id: int, profile: dict[str, Any]) -> None:
        self.emit_to_user(user_id, "profile:updated", {**profile, "timestamp": _now_iso()})

    def broadcast_streak_update(self, user_id: int, streak: dict[str, Any]) -> None:
        self.emit_to_user(user_id, "streak:updated", streak)
        current = streak.get("currentStreak") or 0
        if streak.get("continued") and current and current % 7 == 0:
            self.emit_to_room("activity-feed", "activity:new", {
                "type": "streak_milestone",
                "userId": user_id,
                "data": streak,
                "timestamp": _now_iso(),
            })

    def broadcast_leaderboard_update(self) -> None:
        self.emit_to_room("leaderboard", "leaderboard:updated", {"timestamp": _now_iso()})

    def broadcast_product_ranked(self, user_id: int, product_data: dict[str, Any], ranking: int) -> None:
        self.emit_to_room("activity-feed", "activity:new", {
            "type": "product_ranked",
            "userId": user_id,
            "data": {"productData": product_data, "ranking": ranking},
            "timestamp": _now_iso(),
        })
        self.broadcast_leaderboard_update()

    def broadcast_product_viewed(self, product_id: str, view_count: int) -> None:
        self.emit_to_room(None, "product:view-count", {
            "productId": product_id,
            "viewCount": view_count,
            "timestamp": _now_iso(),
        })

    def broadcast_customer_orders_update(self, data: dict[str, Any]) -> None:
        self.emit_to_room("admin:customer-orders", "customer-orders:updated", {**data, "timestamp": _now_iso()})
        logger.info("customer_orders_broadcast", action=data.get("action"), order_number=data.get("orderNumber"))

    def broadcast_product_webhook_update(self, data: dict[str, Any]) -> None:
        self.emit_to_room("admin:customer-orders", "product_webhook_update", {**data, "timestamp": _now_iso()})

    def broadcast_customer_webhook_update(self, data: dict[str, Any]) -> None:
        self.emit_to_room("admin:customer-orders", "customer_webhook_update", {**data, "timestamp": _now_iso()})

    def broadcast_queue_stats(self, stats: dict[str, Any]) -> None:
        self.emit_to_room("admin:queue-monitor", "queue:stats-update", {"stats": stats, "timestamp": _now_iso()})

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "authenticated_users": len(self._active_users),
            "rooms": {room: len(conns) for room, conns in self._rooms.items() if conns},
            "pending_bundles": len(self._pending),
            "in_flight": len(self._tasks),
        }
