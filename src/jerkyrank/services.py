"""The long-lived services of one process, built once at startup."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jerkyrank.auth.sessions import AdminPolicy, SessionAuthenticator
from jerkyrank.cache.coherence import CoherenceController
from jerkyrank.cache.named import NamedCaches
from jerkyrank.cache.substrate import CacheSubstrate
from jerkyrank.cache.warmer import CacheWarmer
from jerkyrank.config import Settings
from jerkyrank.customers.processor import CustomerProcessor
from jerkyrank.database import create_engine, create_session_factory
from jerkyrank.errors import ErrorSink
from jerkyrank.gamification.recent_achievements import RecentAchievementTracker
from jerkyrank.gamification.streak_service import StreakEngine
from jerkyrank.orders.processor import OrderProcessor
from jerkyrank.products.processor import ProductProcessor
from jerkyrank.products.repository import get_all_metadata
from jerkyrank.queue.event_queue import EventQueue
from jerkyrank.rankings.activity import RankingActivityService
from jerkyrank.rankings.aggregates import AggregateRecomputer
from jerkyrank.rankings.leaderboard import LeaderboardService
from jerkyrank.redis_client import close_redis, create_redis
from jerkyrank.webhooks.dispatcher import WebhookDispatcher
from jerkyrank.ws.manager import NotificationBus

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine | None
    session_factory: async_sessionmaker[AsyncSession]
    redis: aioredis.Redis | None
    queue_redis: aioredis.Redis | None
    error_sink: ErrorSink
    substrate: CacheSubstrate
    caches: NamedCaches
    suppressor: RecentAchievementTracker
    policy: AdminPolicy
    authenticator: SessionAuthenticator
    bus: NotificationBus
    streaks: StreakEngine
    recomputer: AggregateRecomputer
    coherence: CoherenceController
    orders: OrderProcessor
    products: ProductProcessor
    customers: CustomerProcessor
    dispatcher: WebhookDispatcher
    queue: EventQueue
    leaderboard: LeaderboardService
    rankings: RankingActivityService
    warmer: CacheWarmer
    background: set[asyncio.Task[Any]] = field(default_factory=set)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Run a coroutine past the current request; failures go to the error sink."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self.background.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self.background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self.error_sink.capture(t.exception(), task=name)  # type: ignore[arg-type]

        task.add_done_callback(_done)
        return task

    async def aclose(self) -> None:
        """Stop background work, then close pools and the engine."""
        self.queue.stop()
        await self.warmer.cancel()
        await self.bus.stop()
        if self.background:
            await asyncio.gather(*list(self.background), return_exceptions=True)
        if self.queue_redis is not None and self.queue_redis is not self.redis:
            await close_redis(self.queue_redis)
        await close_redis(self.redis)
        if self.engine is not None:
            await self.engine.dispose()


def register_default_warmers(services: Services) -> None:
    """Leaderboards, home stats and the two full maps the pages read most."""
    warmer = services.warmer

    for limit in (5, 10, 50):
        async def _leaderboard(limit: int = limit) -> None:
            await services.leaderboard.get_top_rankers(limit, "all_time", refresh=True)

        warmer.register(f"leaderboard:all_time:{limit}", _leaderboard)

    async def _home_stats() -> None:
        await services.leaderboard.get_home_stats(refresh=True)

    async def _ranking_stats() -> None:
        await services.caches.ranking_stats.set(await services.recomputer.recompute_all())

    async def _metadata() -> None:
        async with services.session_factory() as db:
            metadata = await get_all_metadata(db)
        await services.caches.metadata.set_all(metadata)

    warmer.register("home_stats", _home_stats)
    warmer.register("ranking_stats", _ranking_stats)
    warmer.register("metadata", _metadata)


def build_services(
    settings: Settings,
    *,
    redis_client: aioredis.Redis | None = None,
    queue_redis: aioredis.Redis | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    local_delivery: bool = True,
) -> Services:
    """Wire every service. Nothing connects until the caller starts them.

    Clients passed in (tests pass fakeredis and an SQLite session factory)
    are used as is; otherwise they are built from settings. An empty cache
    URL means memory-only caching and a queue that is never ready.
    """
    engine = None
    if session_factory is None:
        engine = create_engine(settings.database_url)
        session_factory = create_session_factory(engine)

    io_timeout = settings.remote_io_timeout_seconds
    if redis_client is None and settings.cache_redis_url:
        redis_client = create_redis(settings.cache_redis_url, timeout=io_timeout)
    if queue_redis is None:
        queue_url = settings.resolved_queue_redis_url
        if queue_url and queue_url != settings.cache_redis_url:
            queue_redis = create_redis(queue_url, max_connections=20, timeout=io_timeout)
        else:
            queue_redis = redis_client

    error_sink = ErrorSink()
    substrate = CacheSubstrate(
        redis_client,
        io_timeout=io_timeout,
        probe_interval=settings.cache_recovery_probe_seconds,
    )
    caches = NamedCaches(substrate)
    suppressor = RecentAchievementTracker(substrate)
    policy = AdminPolicy.from_settings(settings)
    authenticator = SessionAuthenticator(session_factory, policy)
    bus = NotificationBus(
        settings.room_prefix,
        authenticator=authenticator,
        suppressor=suppressor,
        ledger=substrate,
        redis_client=redis_client,
        local_delivery=local_delivery,
        pending_ttl=settings.bus_pending_ttl_seconds,
        publish_timeout=io_timeout,
    )
    streaks = StreakEngine(session_factory, caches.streak, bus)
    recomputer = AggregateRecomputer(session_factory, caches.purchase_history, caches.ranking_stats)
    coherence = CoherenceController(caches, recomputer, session_factory, suppressor, bus)

    orders = OrderProcessor(session_factory, bus)
    products = ProductProcessor(session_factory, bus)
    customers = CustomerProcessor(session_factory, bus)
    dispatcher = WebhookDispatcher(
        {orders.kind: orders, products.kind: products, customers.kind: customers},
        coherence,
    )
    queue = EventQueue(
        queue_redis,
        dispatcher.handle_job,
        consumer_name=settings.queue_consumer_name,
        concurrency=settings.queue_concurrency,
        rate_limit=settings.queue_rate_limit,
        rate_window=settings.queue_rate_window_seconds,
        max_attempts=settings.queue_max_attempts,
        backoff_seconds=settings.queue_backoff_seconds,
        io_timeout=io_timeout,
        stream_maxlen=settings.queue_stream_maxlen,
        dead_maxlen=settings.queue_dead_maxlen,
        error_sink=error_sink,
    )
    leaderboard = LeaderboardService(session_factory, caches)
    rankings = RankingActivityService(session_factory, caches, recomputer, streaks, bus)

    services = Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis_client,
        queue_redis=queue_redis,
        error_sink=error_sink,
        substrate=substrate,
        caches=caches,
        suppressor=suppressor,
        policy=policy,
        authenticator=authenticator,
        bus=bus,
        streaks=streaks,
        recomputer=recomputer,
        coherence=coherence,
        orders=orders,
        products=products,
        customers=customers,
        dispatcher=dispatcher,
        queue=queue,
        leaderboard=leaderboard,
        rankings=rankings,
        warmer=CacheWarmer(error_sink),
    )
    register_default_warmers(services)
    logger.info(
        "Services built (environment=%s, cache=%s, queue=%s)",
        settings.environment,
        "redis" if redis_client is not None else "memory",
        "redis" if queue_redis is not None else "disabled",
    )
    return services
