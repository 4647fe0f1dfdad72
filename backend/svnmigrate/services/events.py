"""
Live migration notifications.

Engines report through an EventSink. Sinks are fire-and-forget: emit()
never raises into the caller and never blocks on a slow consumer.

Message format (all sinks):
    {...payload, "type": "migration:<kind>", "id": "<migration id>", "emitted_at": ...}
"""

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "svn-migration-events"


class EventKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    LOG = "log"
    COMPLETED = "completed"
    FAILED = "failed"
    SYNCING = "syncing"
    SYNCED = "synced"
    REGISTERED = "registered"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


def build_message(kind: EventKind, migration_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    # Envelope keys win over payload keys
    return {
        **payload,
        "type": f"migration:{kind.value}",
        "id": migration_id,
        "emitted_at": datetime.now(timezone.utc).isoformat(),
    }


@runtime_checkable
class EventSink(Protocol):
    def emit(self, kind: EventKind, migration_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        ...


class MemoryEventSink:
    """Keeps the most recent events in memory."""

    def __init__(self, maxlen: int = 10000):
        self.events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def emit(self, kind: EventKind, migration_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self.events.append(build_message(kind, migration_id, payload or {}))

    def of_type(self, kind: EventKind, migration_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                e for e in self.events
                if e["type"] == f"migration:{kind.value}"
                and (migration_id is None or e["id"] == migration_id)
            ]


class RedisEventSink:
    """
    Publishes events on a Redis pub/sub channel.

    Celery workers and the API process share the channel; the WebSocket
    relay in api/routers/websocket.py forwards it to browsers.
    """

    def __init__(self, redis_url: str, channel: str = EVENTS_CHANNEL):
        self.channel = channel
        self.redis = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=1,
            socket_connect_timeout=1,
        )

    def emit(self, kind: EventKind, migration_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        try:
            message = build_message(kind, migration_id, payload or {})
            self.redis.publish(self.channel, json.dumps(message, default=str))
        except Exception as e:
            logger.warning(
                f"Failed to publish migration:{kind.value}: {e}",
                extra={"migration_id": migration_id, "error": str(e)},
            )
