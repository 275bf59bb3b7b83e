"""
Job Queue Configuration

ARQ worker settings for tracking webhook processing and the stale pickup sweep.

Run with:
    arq fulfillment.core.job_queue.WorkerSettings
"""
import logging
from typing import Optional
from urllib.parse import urlparse

from arq import create_pool, cron
from arq.connections import ArqRedis, RedisSettings

from fulfillment.core.config import settings
from fulfillment.jobs.pickup_jobs import sweep_stale_pickups
from fulfillment.jobs.tracking_jobs import (
    process_tracking_webhook,
    requeue_pending_webhooks,
)

logger = logging.getLogger(__name__)

_pool: Optional[ArqRedis] = None


def queue_redis_url() -> str:
    return settings.ARQ_REDIS_URL or settings.REDIS_URL


def parse_redis_url(url: str) -> RedisSettings:
    """Parse Redis URL into ARQ RedisSettings."""
    if not url:
        return RedisSettings()

    # redis://host:port/db or redis://:password@host:port/db
    parsed = urlparse(url)

    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0) if parsed.path else 0,
        ssl=parsed.scheme == "rediss",
    )


async def get_queue_pool() -> Optional[ArqRedis]:
    """Shared ARQ pool for enqueueing, or None when no Redis is configured."""
    global _pool

    url = queue_redis_url()
    if not url:
        return None
    if _pool is None:
        _pool = await create_pool(parse_redis_url(url))
        logger.info("Connected ARQ job queue")
    return _pool


async def close_queue_pool():
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None


class WorkerSettings:
    """
    ARQ Worker configuration.

    Schedules:
    - Stale pickup sweep: hourly at :05
    - Pending webhook requeue: every 10 minutes
    """

    functions = [
        process_tracking_webhook,
        sweep_stale_pickups,
        requeue_pending_webhooks,
    ]

    cron_jobs = [
        cron(
            sweep_stale_pickups,
            minute=5,
            unique=True,
        ),
        cron(
            requeue_pending_webhooks,
            minute={0, 10, 20, 30, 40, 50},
            unique=True,
        ),
    ]

    redis_settings = parse_redis_url(queue_redis_url())

    # Bounded webhook worker pool
    max_jobs = settings.WEBHOOK_WORKER_CONCURRENCY
    job_timeout = 300
    keep_result = 3600

    max_tries = 3
    retry_delay = 60
