"""
Redis-based per-migration lock.

Celery workers in different processes (and lanes) may pick up a full
migration and a sync for the same id; the lock keeps at most one of them
touching the workspace.
"""

import logging
from typing import Optional

import redis

from svnmigrate.core.config import get_settings

logger = logging.getLogger(__name__)

# Longer than any clone is expected to take
DEFAULT_LOCK_TTL = 12 * 60 * 60


def migration_lock_key(migration_id: str) -> str:
    return f"migration:{migration_id}"


class TaskLock:
    """Distributed task lock using Redis."""

    KEY_PREFIX = "tasklock:"

    def __init__(self, redis_url: Optional[str] = None):
        self.redis = redis.from_url(
            redis_url or get_settings().redis_url,
            decode_responses=True,
        )

    def acquire(
        self,
        lock_key: str,
        ttl_seconds: int = DEFAULT_LOCK_TTL,
        task_id: Optional[str] = None,
    ) -> bool:
        """
        Try to acquire a lock.

        Args:
            lock_key: Unique lock identifier (e.g., "migration:{id}")
            ttl_seconds: Lock expiration time
            task_id: Stored as the lock value to verify ownership on release

        Returns:
            True if lock acquired, False if already locked
        """
        full_key = f"{self.KEY_PREFIX}{lock_key}"
        acquired = self.redis.set(full_key, task_id or "1", nx=True, ex=ttl_seconds)
        if not acquired:
            holder = self.redis.get(full_key)
            logger.debug(f"Lock {lock_key} held by {holder}")
        return bool(acquired)

    def release(self, lock_key: str, task_id: Optional[str] = None) -> bool:
        """Release a lock; with task_id, only if that task holds it."""
        full_key = f"{self.KEY_PREFIX}{lock_key}"

        if task_id:
            current = self.redis.get(full_key)
            if current != task_id:
                logger.warning(
                    f"Lock {lock_key} not held by {task_id}, current holder: {current}"
                )
                return False

        return bool(self.redis.delete(full_key))

    def get_ttl(self, lock_key: str) -> int:
        """Remaining TTL of a lock (seconds)."""
        ttl = self.redis.ttl(f"{self.KEY_PREFIX}{lock_key}")
        return max(0, ttl)  # -1 / -2 mean no lock


_task_lock: Optional[TaskLock] = None


def get_task_lock() -> TaskLock:
    """Get the global TaskLock instance."""
    global _task_lock
    if _task_lock is None:
        _task_lock = TaskLock()
    return _task_lock
