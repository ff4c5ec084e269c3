"""arq worker settings for the standalone webhook consumer.

Run with: arq jerkyrank.workers.settings.WorkerSettings

Deployments that consume in the web process (``JR_QUEUE_CONSUME_IN_APP``)
do not need this worker.
"""

from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from jerkyrank.config import get_settings
from jerkyrank.workers.webhook_worker import (
    publish_queue_stats,
    shutdown,
    startup,
    warm_caches,
)


def _redis_settings() -> RedisSettings:
    url = get_settings().resolved_queue_redis_url or "redis://localhost:6379/0"
    return RedisSettings.from_dsn(url)


class WorkerSettings:
    """arq worker settings for the webhook consumer."""

    functions = [warm_caches, publish_queue_stats]
    cron_jobs = [
        # Admin monitor refresh every 15 seconds
        cron(publish_queue_stats, second={0, 15, 30, 45}, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 4
    job_timeout = 300
    allow_abort_jobs = True
