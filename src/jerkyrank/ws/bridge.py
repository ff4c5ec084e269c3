"""Bridges bus messages published by other processes to local WebSocket clients.

The webhook worker holds no sockets; its bus publishes every emit on the
environment's pub/sub channel and each web process delivers it here.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from jerkyrank.ws.manager import NotificationBus

logger = structlog.get_logger()


class PubSubBridge:
    """Subscribes to the bus channel and delivers foreign messages locally."""

    def __init__(self, redis_client: aioredis.Redis, bus: NotificationBus) -> None:
        self.redis = redis_client
        self.bus = bus
        self._running = False

    async def handle(self, raw: str | bytes) -> int:
        """Deliver one published message. Returns the number of sockets reached."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=self.bus.channel)
            return 0
        if not isinstance(message, dict) or "event" not in message:
            logger.warning("pubsub_invalid_message", channel=self.bus.channel)
            return 0
        if message.get("origin") == self.bus.instance_id:
            return 0
        sent = await self.bus.deliver(message)
        if sent > 0:
            logger.debug("pubsub_delivered", event=message["event"], recipients=sent)
        return sent

    async def start(self) -> None:
        """Listen until :meth:`stop` is called."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.bus.channel)
        logger.info("pubsub_bridge_started", channel=self.bus.channel)

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    await self.handle(message.get("data", b""))
                except Exception:
                    logger.exception("pubsub_delivery_failed")
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
