"""
Object graph for one process.

Everything is wired by constructor injection here, once, after the queue
backend and record store have been selected. API processes and Celery
workers both call get_container(); tests call build_container() with
their own collaborators.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import redis

from svnmigrate.core.config import Settings, get_settings
from svnmigrate.services.db.memory import MemoryLogStore, MemoryMigrationStore
from svnmigrate.services.db.protocols import LogStore, MigrationRecordStore
from svnmigrate.services.event_relay import BroadcastEventSink
from svnmigrate.services.events import EventSink, RedisEventSink
from svnmigrate.services.migration.cancellation import (
    CancellationRegistry,
    LocalCancellation,
    RedisCancellation,
)
from svnmigrate.services.migration.engine import MigrationEngine
from svnmigrate.services.migration.orchestrator import MigrationOrchestrator
from svnmigrate.services.migration.pusher import GitLabPusher
from svnmigrate.services.migration.sync import SyncEngine
from svnmigrate.services.migration_service import MigrationService
from svnmigrate.services.queue.base import JobQueue, default_policies
from svnmigrate.services.queue.factory import BACKEND_CELERY, resolve_queue_backend
from svnmigrate.services.queue.memory import InMemoryJobQueue
from svnmigrate.services.vcs.lock_reconciler import LockReconciler
from svnmigrate.services.vcs.process_runner import ProcessRunner
from svnmigrate.services.vcs.svn_client import SvnClient
from svnmigrate.supabase_client import get_service_client, supabase_configured

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    queue_backend: str
    store: MigrationRecordStore
    logs: LogStore
    events: EventSink
    runner: ProcessRunner
    svn: SvnClient
    cancellation: CancellationRegistry
    orchestrator: MigrationOrchestrator
    queue: JobQueue
    service: MigrationService

    def close(self) -> None:
        self.queue.close()


def build_stores(settings: Settings) -> tuple[MigrationRecordStore, LogStore]:
    backend = settings.record_store
    if backend == "auto":
        backend = "supabase" if supabase_configured(settings) else "memory"
    if backend == "supabase":
        from svnmigrate.services.db.migrations import SupabaseLogStore, SupabaseMigrationStore
        client = get_service_client(settings)
        return SupabaseMigrationStore(client), SupabaseLogStore(client)
    if backend != "memory":
        raise ValueError(f"Unknown RECORD_STORE: {backend!r}")
    logger.warning("Using in-memory migration records; nothing survives a restart")
    return MemoryMigrationStore(), MemoryLogStore()


def build_container(
    settings: Optional[Settings] = None,
    *,
    queue_backend: Optional[str] = None,
    store: Optional[MigrationRecordStore] = None,
    logs: Optional[LogStore] = None,
    events: Optional[EventSink] = None,
    runner: Optional[ProcessRunner] = None,
    autostart: bool = True,
) -> Container:
    settings = settings or get_settings()
    if store is None or logs is None:
        store, logs = build_stores(settings)
    backend = resolve_queue_backend(
        queue_backend or settings.queue_backend,
        settings.redis_url,
        shared_records=not isinstance(store, MemoryMigrationStore),
    )

    redis_client = None
    if backend == BACKEND_CELERY:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        cancellation: CancellationRegistry = RedisCancellation(redis_client)
        events = events or RedisEventSink(settings.redis_url)
    else:
        cancellation = LocalCancellation()
        events = events or BroadcastEventSink()

    runner = runner or ProcessRunner(kill_grace_seconds=settings.kill_grace_seconds)
    svn = SvnClient(runner)
    engine_args = dict(
        store=store,
        logs=logs,
        events=events,
        runner=runner,
        svn=svn,
        pusher=GitLabPusher(runner),
        reconciler=LockReconciler(kill_grace_seconds=settings.kill_grace_seconds),
        temp_root=settings.temp_root,
        log_window=settings.git_svn_log_window,
    )
    orchestrator = MigrationOrchestrator(
        store=store,
        events=events,
        migration_engine=MigrationEngine(**engine_args),
        sync_engine=SyncEngine(**engine_args),
        cancellation=cancellation,
        temp_root=settings.temp_root,
        max_concurrent_migrations=settings.max_concurrent_migrations,
        max_concurrent_syncs=settings.max_concurrent_syncs,
    )

    policies = default_policies(
        max_concurrent_migrations=settings.max_concurrent_migrations,
        max_concurrent_syncs=settings.max_concurrent_syncs,
        max_attempts=settings.max_attempts,
        migration_backoff_seconds=settings.migration_backoff_seconds,
        sync_backoff_seconds=settings.sync_backoff_seconds,
    )
    if backend == BACKEND_CELERY:
        from svnmigrate.celery_app.celery import app as celery_app
        from svnmigrate.services.queue.celery_backend import CeleryJobQueue
        from svnmigrate.services.queue.registry import RedisJobRegistry
        queue: JobQueue = CeleryJobQueue(store, RedisJobRegistry(redis_client), cancellation, policies, celery_app)
    else:
        queue = InMemoryJobQueue(store, orchestrator.run, policies, cancellation, autostart=autostart)

    service = MigrationService(
        store=store,
        logs=logs,
        events=events,
        queue=queue,
        orchestrator=orchestrator,
        temp_root=settings.temp_root,
        job_retention_seconds=settings.job_retention_seconds,
    )
    logger.info(f"Container built: queue={backend}")
    return Container(
        settings=settings,
        queue_backend=backend,
        store=store,
        logs=logs,
        events=events,
        runner=runner,
        svn=svn,
        cancellation=cancellation,
        orchestrator=orchestrator,
        queue=queue,
        service=service,
    )


@lru_cache(maxsize=1)
def get_container() -> Container:
    """Get the process-wide Container."""
    return build_container()
