"""
Queue health check endpoint.

Reports Redis connectivity and lane backlogs without broadcasting to
workers.
"""

from datetime import datetime, timezone

import redis
from fastapi import APIRouter, Depends

from svnmigrate.container import Container
from svnmigrate.dependencies import container
from svnmigrate.services.queue.base import LANES, PENDING_STATUSES
from svnmigrate.services.queue.factory import BACKEND_CELERY

router = APIRouter(tags=["health"])

MAX_HEALTHY_BACKLOG = 1000


@router.get("/queue-health")
async def queue_health(deps: Container = Depends(container)):
    """
    Returns:
        Backend in use, Redis connectivity and pending jobs per lane.
    """
    redis_ok = False
    queues = {}
    if deps.queue_backend == BACKEND_CELERY:
        r = redis.from_url(deps.settings.redis_url, decode_responses=True)
        try:
            r.ping()
            redis_ok = True
            # Celery keeps each queue as a Redis list named after it
            queues = {lane: r.llen(lane) or 0 for lane in LANES}
        except redis.RedisError:
            redis_ok = False
        finally:
            r.close()
    else:
        queues = {
            lane: sum(1 for j in deps.queue.list_jobs(lane) if j.status in PENDING_STATUSES)
            for lane in LANES
        }

    total_pending = sum(queues.values())
    backend_ok = redis_ok or deps.queue_backend != BACKEND_CELERY
    is_healthy = backend_ok and total_pending < MAX_HEALTHY_BACKLOG

    return {
        "status": "healthy" if is_healthy else "degraded",
        "backend": deps.queue_backend,
        "redis_connected": redis_ok,
        "queues": queues,
        "total_pending": total_pending,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
