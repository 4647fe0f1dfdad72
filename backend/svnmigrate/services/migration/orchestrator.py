"""
Entry points for migration work: execute, sync, resume and cancel.

Both queue backends and direct callers go through MigrationOrchestrator.
It enforces one active operation per migration id within the process and
caps concurrent clones and syncs per lane.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from svnmigrate.exceptions import (
    CannotResumeError,
    ConflictError,
    NotFoundError,
    QueueExhaustedError,
    is_retryable,
)
from svnmigrate.schemas.migrations import JobType, Migration, MigrationRequest, MigrationStatus, ResumeFrom
from svnmigrate.services.db.protocols import MigrationRecordStore
from svnmigrate.services.events import EventKind, EventSink
from .cancellation import CancellationRegistry
from .engine import MigrationEngine
from .sync import SyncEngine
from .workspace import Workspace, delete_workspace_root

logger = logging.getLogger(__name__)

LANE_MIGRATION = "migration"
LANE_SYNC = "sync"


def lane_for(request: MigrationRequest) -> str:
    """Lane whose slot the request occupies; resuming from the last revision is a sync."""
    if request.type is JobType.SYNC:
        return LANE_SYNC
    if request.type is JobType.RESUME and request.resume_from is not ResumeFrom.BEGINNING:
        return LANE_SYNC
    return LANE_MIGRATION


class KeyedLock:
    """Non-blocking per-key mutual exclusion."""

    def __init__(self):
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held


class MigrationOrchestrator:
    def __init__(
        self,
        store: MigrationRecordStore,
        events: EventSink,
        migration_engine: MigrationEngine,
        sync_engine: SyncEngine,
        cancellation: CancellationRegistry,
        temp_root: Path,
        max_concurrent_migrations: int = 2,
        max_concurrent_syncs: int = 3,
    ):
        self.store = store
        self.events = events
        self.migration_engine = migration_engine
        self.sync_engine = sync_engine
        self.cancellation = cancellation
        self.temp_root = Path(temp_root)
        self.limits: Dict[str, int] = {
            LANE_MIGRATION: max_concurrent_migrations,
            LANE_SYNC: max_concurrent_syncs,
        }
        self._slots = {lane: threading.BoundedSemaphore(limit) for lane, limit in self.limits.items()}
        self._active = KeyedLock()

    @contextmanager
    def _claim(self, lane: str, migration_id: str, wait: bool = False) -> Iterator[None]:
        """
        Hold a lane slot and the migration's exclusive key.

        Direct callers get QueueExhaustedError on a full lane; queued jobs
        (wait=True) block until a slot frees up.
        """
        if not self._active.acquire(migration_id):
            raise ConflictError(f"Migration {migration_id} already has an operation in progress")
        slot = self._slots[lane]
        if not slot.acquire(blocking=wait):
            self._active.release(migration_id)
            raise QueueExhaustedError(lane, self.limits[lane])
        try:
            yield
        finally:
            slot.release()
            self._active.release(migration_id)

    def is_active(self, migration_id: str) -> bool:
        return self._active.is_held(migration_id)

    def execute(self, request: MigrationRequest, wait: bool = False) -> Migration:
        """Full clone and push."""
        with self._claim(LANE_MIGRATION, request.migration_id, wait):
            return self._execute(request)

    def sync(self, request: MigrationRequest, wait: bool = False) -> Migration:
        """Fetch, rebase and push new revisions."""
        with self._claim(LANE_SYNC, request.migration_id, wait):
            return self.sync_engine.sync(request, self._token(request.migration_id))

    def resume(self, request: MigrationRequest, wait: bool = False) -> Migration:
        """
        Continue an interrupted migration.

        From the beginning: discard the workspace and run a full migration.
        Otherwise: requires a last_synced_revision and runs a sync.

        Raises:
            CannotResumeError: no revision was ever synced
        """
        lane = lane_for(request)
        if request.resume_from is ResumeFrom.BEGINNING:
            with self._claim(lane, request.migration_id, wait):
                self._discard_workspace(request)
                self.events.emit(EventKind.RESUMED, request.migration_id, {"resume_from": ResumeFrom.BEGINNING.value})
                return self._execute(request)

        migration = self.store.find_by_id(request.migration_id)
        if migration is None:
            raise NotFoundError("Migration")
        if migration.last_synced_revision is None:
            raise CannotResumeError(request.migration_id)

        with self._claim(lane, request.migration_id, wait):
            self.events.emit(EventKind.RESUMED, request.migration_id, {
                "resume_from": ResumeFrom.LAST_REVISION.value,
                "last_synced_revision": migration.last_synced_revision,
            })
            return self.sync_engine.sync(request, self._token(request.migration_id))

    def run(self, request: MigrationRequest, final_attempt: bool = True) -> Migration:
        """
        Dispatch a queued job by type, waiting for a slot in its lane.

        An error raised before an engine took the record over (lane claim,
        resume preconditions) leaves the record pending. Unless the queue
        will retry the job, the record is failed here instead.
        """
        try:
            if request.type is JobType.SYNC:
                return self.sync(request, wait=True)
            if request.type is JobType.RESUME:
                return self.resume(request, wait=True)
            return self.execute(request, wait=True)
        except Exception as e:
            if final_attempt or not is_retryable(e):
                self.fail_unstarted(request, e)
            raise

    def cancel(self, migration_id: str) -> bool:
        """
        Request cancellation of any running step and mark the record cancelled.

        Returns False when the migration does not exist.
        """
        self.cancellation.request(migration_id)
        migration = self.store.find_by_id(migration_id)
        if migration is None:
            return False
        if migration.status in (MigrationStatus.COMPLETED, MigrationStatus.CANCELLED):
            return True
        self.store.update(migration_id, status=MigrationStatus.CANCELLED)
        self.events.emit(EventKind.CANCELLED, migration_id, {"previous_status": migration.status.value})
        logger.info("Migration cancelled", extra={"migration_id": migration_id})
        return True

    def fail_unstarted(self, request: MigrationRequest, error: Exception) -> None:
        """Fail a pending record whose queued job gave up before reaching an engine."""
        migration = self.store.find_by_id(request.migration_id)
        # Anything past pending was already settled by an engine or a cancel
        if migration is None or migration.status is not MigrationStatus.PENDING:
            return
        message = str(error)
        error_field = "last_sync_error" if request.type is JobType.SYNC else "error"
        self.store.update(
            request.migration_id,
            status=MigrationStatus.FAILED,
            metadata={**migration.metadata, error_field: message},
        )
        self.events.emit(EventKind.FAILED, request.migration_id, {"error": message, "job_type": request.type.value})
        logger.error(
            f"Queued {request.type.value} job failed before starting: {message}",
            extra={"migration_id": request.migration_id, "job_id": request.job_id, "error": message},
        )

    def _execute(self, request: MigrationRequest) -> Migration:
        return self.migration_engine.execute(request, self._token(request.migration_id))

    def _token(self, migration_id: str):
        # A stale cancel request must not kill the new run
        self.cancellation.clear(migration_id)
        return self.cancellation.token(migration_id)

    def _discard_workspace(self, request: MigrationRequest) -> None:
        migration: Optional[Migration] = self.store.find_by_id(request.migration_id)
        project_path = (migration.project_path if migration else None) or request.project_path
        if project_path:
            Workspace(self.temp_root, request.migration_id, project_path).delete()
        else:
            delete_workspace_root(self.temp_root, request.migration_id)
