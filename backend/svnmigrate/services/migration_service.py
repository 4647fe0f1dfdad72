"""
Migration management facade used by the HTTP layer.

Validates state transitions, turns records plus caller-supplied
credentials into job payloads and hands them to the JobQueue. Execution
itself happens in queue workers through MigrationOrchestrator.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from svnmigrate.exceptions import CannotResumeError, ConflictError, NotFoundError, ResumabilityError
from svnmigrate.schemas.migrations import (
    JobCredentials,
    JobType,
    Migration,
    MigrationCreate,
    MigrationLog,
    MigrationOptions,
    MigrationRequest,
    MigrationStatus,
    ResumeFrom,
)
from svnmigrate.services.db.protocols import LogStore, MigrationRecordStore
from svnmigrate.services.events import EventKind, EventSink
from svnmigrate.services.migration.orchestrator import MigrationOrchestrator
from svnmigrate.services.migration.workspace import Workspace, delete_workspace_root
from svnmigrate.services.queue.base import Job, JobQueue, JobStatus

logger = logging.getLogger(__name__)

IN_PROGRESS = (MigrationStatus.RUNNING, MigrationStatus.SYNCING)
RESUMABLE = (MigrationStatus.FAILED, MigrationStatus.CANCELLED)


class MigrationService:
    def __init__(
        self,
        store: MigrationRecordStore,
        logs: LogStore,
        events: EventSink,
        queue: JobQueue,
        orchestrator: MigrationOrchestrator,
        temp_root: Path,
        job_retention_seconds: int = 7 * 24 * 60 * 60,
    ):
        self.store = store
        self.logs = logs
        self.events = events
        self.queue = queue
        self.orchestrator = orchestrator
        self.temp_root = Path(temp_root)
        self.job_retention_seconds = job_retention_seconds

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, migration_id: str) -> Migration:
        migration = self.store.find_by_id(migration_id)
        if migration is None:
            raise NotFoundError("Migration")
        return migration

    def list(self) -> List[Migration]:
        return self.store.find_all()

    def get_logs(self, migration_id: str, limit: int = 100) -> List[MigrationLog]:
        self.get(migration_id)
        return self.logs.list(migration_id, limit)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def register(self, data: MigrationCreate) -> Migration:
        """Create a pending migration, optionally enqueuing the full import."""
        migration = self.store.create(Migration(
            id=str(uuid.uuid4()),
            svn_url=data.svn_url,
            gitlab_project_id=data.gitlab_project_id,
            gitlab_url=data.gitlab_url,
            status=MigrationStatus.PENDING,
            layout=data.layout,
            authors_mapping=data.authors_mapping,
            metadata={
                "project_name": data.project_name,
                "project_path": data.project_path,
                "options": data.options.model_dump(),
                "svn_username": data.svn_username,
            },
        ))
        self.events.emit(EventKind.REGISTERED, migration.id, {
            "svn_url": migration.svn_url,
            "project_name": data.project_name,
        })
        logger.info("Migration registered", extra={"migration_id": migration.id})

        if data.auto_start:
            credentials = JobCredentials(
                svn_username=data.svn_username,
                svn_password=data.svn_password,
                gitlab_token=data.gitlab_token,
            )
            migration = self._enqueue(migration, JobType.FULL, credentials)
        return migration

    def start(self, migration_id: str, credentials: JobCredentials) -> Migration:
        migration = self.get(migration_id)
        if migration.status is not MigrationStatus.PENDING:
            raise ConflictError(f"Migration is {migration.status.value}; only pending migrations can be started")
        return self._enqueue(migration, JobType.FULL, credentials)

    def sync(self, migration_id: str, credentials: JobCredentials) -> Migration:
        migration = self.get(migration_id)
        if self._busy(migration):
            raise ConflictError("Migration already has an operation in progress")
        if migration.last_synced_revision is None:
            raise ConflictError("Migration has not completed an initial import")
        return self._enqueue(migration, JobType.SYNC, credentials)

    def resume(
        self,
        migration_id: str,
        resume_from: ResumeFrom,
        credentials: JobCredentials,
    ) -> Migration:
        """
        Re-enqueue a failed or cancelled migration.

        Raises:
            ConflictError: migration is not failed or cancelled
            CannotResumeError: last_revision requested without a synced revision
            ResumabilityError: last_revision requested without a git-svn workspace
        """
        migration = self.get(migration_id)
        if migration.status not in RESUMABLE:
            raise ConflictError(f"Migration is {migration.status.value}; only failed or cancelled migrations can be resumed")
        if self._busy(migration):
            raise ConflictError("Migration already has an operation in progress")

        if resume_from is ResumeFrom.LAST_REVISION:
            if migration.last_synced_revision is None:
                raise CannotResumeError(migration_id)
            if not migration.project_path:
                raise ResumabilityError()
            if not Workspace(self.temp_root, migration_id, migration.project_path).has_bridge_metadata():
                raise ResumabilityError()

        migration = self._enqueue(migration, JobType.RESUME, credentials, resume_from)
        self.events.emit(EventKind.RESUMED, migration_id, {"resume_from": resume_from.value})
        return migration

    def stop(self, migration_id: str) -> Dict[str, int]:
        self.get(migration_id)
        result = self.queue.cancel(migration_id)
        self.orchestrator.cancel(migration_id)
        return result

    def delete(self, migration_id: str) -> None:
        migration = self.get(migration_id)
        self.queue.cancel(migration_id)
        self.orchestrator.cancellation.request(migration_id)
        if migration.project_path:
            Workspace(self.temp_root, migration_id, migration.project_path).delete()
        else:
            delete_workspace_root(self.temp_root, migration_id)
        removed_logs = self.logs.delete_for(migration_id)
        self.store.delete(migration_id)
        logger.info(
            f"Migration deleted with {removed_logs} log lines",
            extra={"migration_id": migration_id},
        )

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    def queue_status(self) -> Dict[str, Any]:
        return self.queue.status()

    def clean_queue(self, immediate: bool = False) -> Dict[str, Any]:
        return self.queue.cleanup(None if immediate else self.job_retention_seconds)

    def retry_job(self, job_id: str) -> Job:
        job = self.queue.get_job(job_id)
        if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise NotFoundError("Retryable job")
        self.store.update(job.migration_id, status=MigrationStatus.PENDING)
        return self.queue.retry(job_id) or job

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _busy(self, migration: Migration) -> bool:
        """Running per the record, queued, or executing in this process."""
        return (
            migration.status in IN_PROGRESS
            or self.queue.has_live_job(migration.id)
            or self.orchestrator.is_active(migration.id)
        )

    def build_request(
        self,
        migration: Migration,
        job_type: JobType,
        credentials: JobCredentials,
        resume_from: Optional[ResumeFrom] = None,
    ) -> MigrationRequest:
        metadata = migration.metadata
        return MigrationRequest(
            migration_id=migration.id,
            svn_url=migration.svn_url,
            svn_username=credentials.svn_username or metadata.get("svn_username"),
            svn_password=credentials.svn_password,
            gitlab_project_id=migration.gitlab_project_id,
            gitlab_url=migration.gitlab_url or "",
            gitlab_token=credentials.gitlab_token,
            project_name=metadata.get("project_name") or migration.id,
            project_path=metadata.get("project_path") or migration.id,
            layout=migration.layout,
            authors_mapping=migration.authors_mapping,
            options=MigrationOptions.model_validate(metadata.get("options") or {}),
            type=job_type,
            resume_from=resume_from,
        )

    def _enqueue(
        self,
        migration: Migration,
        job_type: JobType,
        credentials: JobCredentials,
        resume_from: Optional[ResumeFrom] = None,
    ) -> Migration:
        request = self.build_request(migration, job_type, credentials, resume_from)
        request.job_id = uuid.uuid4().hex
        # Record first: a worker may pick the job up immediately
        updated = self.store.update(
            migration.id,
            status=MigrationStatus.PENDING,
            metadata={**migration.metadata, "job_id": request.job_id},
        )
        job = self.queue.enqueue(request)
        if job_type is JobType.FULL:
            self.events.emit(EventKind.STARTED, migration.id, {"job_id": job.id, "queued": True})
        return updated or migration
