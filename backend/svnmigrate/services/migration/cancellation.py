"""
Cooperative cancellation of in-flight migration steps.

A cancel request only flips a flag; ProcessRunner polls the token while a
command runs and terminates it. Two registries:
- LocalCancellation: threading.Event per migration (single process)
- RedisCancellation: a Redis key per migration, visible to Celery workers
"""

import logging
import threading
from typing import Dict, Protocol

import redis

logger = logging.getLogger(__name__)


class CancellationRegistry(Protocol):
    def token(self, migration_id: str):
        """Return a CancelToken for the migration."""
        ...

    def request(self, migration_id: str) -> None:
        ...

    def clear(self, migration_id: str) -> None:
        ...


class LocalCancellation:
    def __init__(self):
        self._events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def _event(self, migration_id: str) -> threading.Event:
        with self._lock:
            return self._events.setdefault(migration_id, threading.Event())

    def token(self, migration_id: str) -> threading.Event:
        return self._event(migration_id)

    def request(self, migration_id: str) -> None:
        self._event(migration_id).set()

    def clear(self, migration_id: str) -> None:
        with self._lock:
            event = self._events.pop(migration_id, None)
        if event is not None:
            event.clear()


class RedisCancelToken:
    def __init__(self, client: redis.Redis, key: str):
        self.client = client
        self.key = key

    def is_set(self) -> bool:
        try:
            return bool(self.client.exists(self.key))
        except redis.RedisError as e:
            logger.debug(f"Cancellation check failed for {self.key}: {e}")
            return False


class RedisCancellation:
    KEY_PREFIX = "cancel:migration:"
    # Outlives the longest expected step
    TTL_SECONDS = 24 * 60 * 60

    def __init__(self, client: redis.Redis):
        self.client = client

    def _key(self, migration_id: str) -> str:
        return f"{self.KEY_PREFIX}{migration_id}"

    def token(self, migration_id: str) -> RedisCancelToken:
        return RedisCancelToken(self.client, self._key(migration_id))

    def request(self, migration_id: str) -> None:
        self.client.set(self._key(migration_id), "1", ex=self.TTL_SECONDS)

    def clear(self, migration_id: str) -> None:
        self.client.delete(self._key(migration_id))
