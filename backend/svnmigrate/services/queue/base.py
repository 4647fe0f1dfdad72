"""
Job queue contract shared by the Celery and in-memory backends.

A Job is only an envelope around a MigrationRequest. The migration record
is the durable source of truth; job state exists for scheduling, retry
accounting and the queue status endpoints.
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from svnmigrate.schemas.migrations import JobType, MigrationRequest, MigrationStatus
from svnmigrate.services.db.protocols import MigrationRecordStore
from svnmigrate.services.migration.orchestrator import LANE_MIGRATION, LANE_SYNC, lane_for

logger = logging.getLogger(__name__)

LANES = (LANE_MIGRATION, LANE_SYNC)

STALLED_ERROR = "Job stalled or was lost from the queue"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"  # waiting for a retry
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PENDING_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED)
LIVE_STATUSES = (JobStatus.WAITING, JobStatus.DELAYED, JobStatus.ACTIVE)
FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class LanePolicy:
    name: str
    concurrency: int
    max_attempts: int
    backoff_seconds: float

    def retry_delay(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) failed attempt."""
        return self.backoff_seconds * (2 ** max(0, attempt - 1))


def default_policies(
    max_concurrent_migrations: int = 2,
    max_concurrent_syncs: int = 3,
    max_attempts: int = 3,
    migration_backoff_seconds: float = 5,
    sync_backoff_seconds: float = 3,
) -> Dict[str, LanePolicy]:
    return {
        LANE_MIGRATION: LanePolicy(LANE_MIGRATION, max_concurrent_migrations, max_attempts, migration_backoff_seconds),
        LANE_SYNC: LanePolicy(LANE_SYNC, max_concurrent_syncs, max_attempts, sync_backoff_seconds),
    }


@dataclass
class Job:
    id: str
    lane: str
    migration_id: str
    type: JobType
    payload: Dict[str, Any]
    max_attempts: int
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    error: Optional[str] = None
    task_id: Optional[str] = None
    cancel_requested: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @classmethod
    def for_request(cls, request: MigrationRequest, max_attempts: int) -> "Job":
        job_id = request.job_id or uuid.uuid4().hex
        return cls(
            id=job_id,
            lane=lane_for(request),
            migration_id=request.migration_id,
            type=request.type,
            payload=request.model_copy(update={"job_id": job_id}).model_dump(mode="json"),
            max_attempts=max_attempts,
        )

    @property
    def request(self) -> MigrationRequest:
        return MigrationRequest.model_validate(self.payload)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_public(self) -> Dict[str, Any]:
        """Job view without the credential-bearing payload."""
        data = asdict(self)
        data.pop("payload")
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


class JobQueue(ABC):
    """
    Two lanes (migration, sync) with bounded concurrency and retries.

    Subclasses provide job storage and execution; status reporting,
    stalled-record reconciliation and cleanup are shared.
    """

    def __init__(self, store: MigrationRecordStore, policies: Dict[str, LanePolicy]):
        self.store = store
        self.policies = policies

    @abstractmethod
    def enqueue(self, request: MigrationRequest) -> Job:
        ...

    @abstractmethod
    def cancel(self, migration_id: str) -> Dict[str, int]:
        """
        Remove waiting/delayed jobs for the migration in both lanes and
        signal active ones. Returns {"removed": n, "signalled": m}.
        """
        ...

    @abstractmethod
    def retry(self, job_id: str) -> Optional[Job]:
        """Re-enqueue a failed or cancelled job with a fresh retry budget."""
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def list_jobs(self, lane: Optional[str] = None) -> List[Job]:
        ...

    @abstractmethod
    def remove_job(self, job_id: str) -> None:
        ...

    def close(self) -> None:
        pass

    def jobs_for(self, migration_id: str) -> List[Job]:
        return [j for j in self.list_jobs() if j.migration_id == migration_id]

    def has_live_job(self, migration_id: str) -> bool:
        return any(j.status in LIVE_STATUSES for j in self.jobs_for(migration_id))

    def status(self) -> Dict[str, Any]:
        """Per-lane job counts cross-checked against record status counts."""
        reconciled = self.reconcile_stalled()
        lanes: Dict[str, Any] = {}
        for lane in LANES:
            counts = Counter(j.status.value for j in self.list_jobs(lane))
            lanes[lane] = {s.value: counts.get(s.value, 0) for s in JobStatus}
            lanes[lane]["concurrency"] = self.policies[lane].concurrency

        record_counts = self.store.status_counts()
        lanes[LANE_MIGRATION]["actual_failed"] = record_counts.get(MigrationStatus.FAILED.value, 0)
        return {
            **lanes,
            "migration_table": record_counts,
            "reconciled": reconciled,
        }

    def reconcile_stalled(self) -> List[str]:
        """
        Fail records that claim to be running or syncing but have no live
        job behind them. Returns the affected migration ids.
        """
        live = {j.migration_id for j in self.list_jobs() if j.status in LIVE_STATUSES}
        reconciled = []
        for migration in self.store.find_all():
            if migration.status not in (MigrationStatus.RUNNING, MigrationStatus.SYNCING):
                continue
            if migration.id in live:
                continue
            self.store.update(
                migration.id,
                status=MigrationStatus.FAILED,
                metadata={**migration.metadata, "error": STALLED_ERROR},
            )
            reconciled.append(migration.id)
            logger.warning(
                f"Reconciled stalled migration from {migration.status.value} to failed",
                extra={"migration_id": migration.id},
            )
        return reconciled

    def cleanup(self, max_age_seconds: Optional[float] = None) -> Dict[str, Any]:
        """
        Prune finished jobs.

        With max_age_seconds, completed/failed/cancelled jobs older than that
        are removed. Without it, failed and cancelled jobs are removed
        immediately and records still pointing at them are marked failed.
        """
        now = time.time()
        cleaned: Dict[str, Counter] = {lane: Counter() for lane in LANES}
        orphaned_job_ids = set()

        for job in self.list_jobs():
            if max_age_seconds is None:
                if job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                    continue
                orphaned_job_ids.add(job.id)
            else:
                if not job.is_finished or now - (job.finished_at or job.updated_at) < max_age_seconds:
                    continue
            self.remove_job(job.id)
            cleaned[job.lane][job.status.value] += 1

        synced = self._fail_records_for_jobs(orphaned_job_ids) if orphaned_job_ids else []
        return {
            "cleaned": {lane: dict(counts) for lane, counts in cleaned.items()},
            "records_failed": synced,
        }

    def _fail_records_for_jobs(self, job_ids: set) -> List[str]:
        affected = []
        for migration in self.store.find_all():
            if migration.metadata.get("job_id") not in job_ids:
                continue
            if migration.status in (MigrationStatus.FAILED, MigrationStatus.COMPLETED, MigrationStatus.CANCELLED):
                continue
            self.store.update(
                migration.id,
                status=MigrationStatus.FAILED,
                metadata={**migration.metadata, "error": migration.metadata.get("error") or STALLED_ERROR},
            )
            affected.append(migration.id)
        return affected
