"""Redis client and key layout for the submission job queue."""

import logging

from redis.asyncio import Redis

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client: Redis | None = None

# Ready jobs, FIFO list of serialized PipelineTaskJob payloads
PIPELINE_QUEUE = "pipeline:queue"
# Delayed cascades: sorted set of "submission:step" members scored by due time
CASCADE_SCHEDULE = "pipeline:scheduled"
# Delayed cascades: hash of "submission:step" -> serialized job
CASCADE_JOBS = "pipeline:scheduled_jobs"


def redis_key(*parts: str) -> str:
    """Build a namespaced Redis key, e.g. ``strategychain:pipeline:queue``."""
    return ":".join([settings.redis_key_prefix, *parts])


def pipeline_queue_key() -> str:
    return redis_key(PIPELINE_QUEUE)


def cascade_schedule_key() -> str:
    return redis_key(CASCADE_SCHEDULE)


def cascade_jobs_key() -> str:
    return redis_key(CASCADE_JOBS)


def get_redis_client() -> Redis:
    """Get the shared Redis client used by the API and the worker."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            health_check_interval=30,
        )
        logger.info("Redis client created", extra={"key_prefix": settings.redis_key_prefix})
    return _redis_client


async def close_redis() -> None:
    """Close Redis client connections."""
    global _redis_client
    if _redis_client is None:
        return

    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")
