"""
Forward migration events to connected WebSocket clients.

Two sources, matching the queue backend:
- RedisEventForwarder: subscribes to the pub/sub channel that Celery
  workers publish on (RedisEventSink)
- BroadcastEventSink: in-process workers emit straight onto the API's
  event loop
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from svnmigrate.services.events import EVENTS_CHANNEL, EventKind, build_message
from svnmigrate.services.realtime import ConnectionManager, connection_manager

logger = logging.getLogger(__name__)


class RedisEventForwarder:
    """Relays the Redis events channel to ConnectionManager."""

    def __init__(
        self,
        redis_url: str,
        manager: ConnectionManager = connection_manager,
        channel: str = EVENTS_CHANNEL,
    ):
        self._url = redis_url
        self._manager = manager
        self._channel = channel
        self._client: Optional[aioredis.Redis] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("RedisEventForwarder is already running")
            return
        self._client = aioredis.from_url(self._url, decode_responses=True)
        self._task = asyncio.create_task(self._run())
        logger.info(f"Relaying {self._channel} to WebSocket clients")

    async def _run(self) -> None:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except (TypeError, ValueError) as e:
                    logger.warning(f"Dropping malformed event: {e}")
                    continue
                await self._manager.broadcast(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Event relay stopped: {e}", exc_info=True)
        finally:
            await pubsub.aclose()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


class BroadcastEventSink:
    """
    EventSink for in-process workers.

    Worker threads hand messages to the event loop bound with attach();
    before that (or without WebSocket clients) events are only logged.
    """

    def __init__(self, manager: ConnectionManager = connection_manager):
        self._manager = manager
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def detach(self) -> None:
        self._loop = None

    def emit(self, kind: EventKind, migration_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if kind is not EventKind.LOG:
            logger.info(f"migration:{kind.value}", extra={"migration_id": migration_id})
        loop = self._loop
        if loop is None or loop.is_closed() or self._manager.get_total_connections() == 0:
            return
        message = build_message(kind, migration_id, payload or {})
        try:
            asyncio.run_coroutine_threadsafe(self._manager.broadcast(message), loop)
        except RuntimeError as e:
            logger.warning(
                f"Failed to relay migration:{kind.value}: {e}",
                extra={"migration_id": migration_id, "error": str(e)},
            )
