"""
Backend selection, made once at startup.

"auto" probes Redis with an explicit PING; constructing a Redis client
succeeds even when the server is down, so construction is not a probe.
"""

import logging

import redis

logger = logging.getLogger(__name__)

BACKEND_CELERY = "celery"
BACKEND_MEMORY = "memory"


def redis_available(redis_url: str, timeout: float = 1.0) -> bool:
    client = redis.from_url(redis_url, socket_connect_timeout=timeout, socket_timeout=timeout)
    try:
        return bool(client.ping())
    except redis.RedisError as e:
        logger.warning(f"Redis PING failed: {e}")
        return False
    finally:
        client.close()


def resolve_queue_backend(configured: str, redis_url: str, shared_records: bool = True) -> str:
    """
    Pick the queue backend.

    Celery workers run in other processes, so they need a record store every
    process shares. With process-local records "auto" stays in memory and an
    explicit "celery" is a configuration error.
    """
    if configured not in ("auto", BACKEND_CELERY, BACKEND_MEMORY):
        raise ValueError(f"Unknown QUEUE_BACKEND: {configured!r}")
    if configured == BACKEND_CELERY and not shared_records:
        raise ValueError(
            "QUEUE_BACKEND=celery needs a shared record store; "
            "configure Supabase or set RECORD_STORE=supabase"
        )
    if configured != "auto":
        return configured
    if not shared_records:
        logger.warning("Migration records are process-local, using the in-memory job queue")
        return BACKEND_MEMORY
    if redis_available(redis_url):
        return BACKEND_CELERY
    logger.warning("Redis unavailable, using the non-durable in-memory job queue")
    return BACKEND_MEMORY
