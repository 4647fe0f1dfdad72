"""
Durable job queue: Celery over Redis, one Celery queue per lane.

Jobs are mirrored in RedisJobRegistry so they can be listed, cancelled
and cleaned up by migration id. Waiting jobs are revoked; active ones are
signalled through the Redis cancellation flag polled by ProcessRunner.
"""

import logging
import uuid
from typing import Dict, List, Optional

from celery import Celery

from svnmigrate.schemas.migrations import MigrationRequest
from svnmigrate.services.db.protocols import MigrationRecordStore
from svnmigrate.services.migration.cancellation import RedisCancellation
from svnmigrate.services.migration.orchestrator import LANE_MIGRATION, LANE_SYNC, lane_for
from .base import LANES, PENDING_STATUSES, Job, JobQueue, JobStatus, LanePolicy
from .registry import RedisJobRegistry

logger = logging.getLogger(__name__)

TASK_NAMES = {
    LANE_MIGRATION: "run_migration_job",
    LANE_SYNC: "run_sync_job",
}


class CeleryJobQueue(JobQueue):
    def __init__(
        self,
        store: MigrationRecordStore,
        registry: RedisJobRegistry,
        cancellation: RedisCancellation,
        policies: Dict[str, LanePolicy],
        celery_app: Celery,
    ):
        super().__init__(store, policies)
        self.registry = registry
        self.cancellation = cancellation
        self.celery_app = celery_app

    def _dispatch(self, job: Job) -> Job:
        task_id = uuid.uuid4().hex
        job = self.registry.update(job.id, task_id=task_id, status=JobStatus.WAITING) or job
        self.celery_app.send_task(
            TASK_NAMES[job.lane],
            kwargs={"job_id": job.id},
            queue=job.lane,
            task_id=task_id,
        )
        return job

    def enqueue(self, request: MigrationRequest) -> Job:
        job = Job.for_request(request, self.policies[lane_for(request)].max_attempts)
        self.registry.save(job)
        job = self._dispatch(job)
        logger.info(
            f"Enqueued {job.type.value} job",
            extra={"migration_id": job.migration_id, "job_id": job.id, "lane": job.lane},
        )
        return job

    def cancel(self, migration_id: str) -> Dict[str, int]:
        removed = signalled = 0
        for job in self.registry.jobs_for_migration(migration_id):
            if job.status in PENDING_STATUSES:
                if job.task_id:
                    self.celery_app.control.revoke(job.task_id)
                self.registry.update(job.id, status=JobStatus.CANCELLED)
                removed += 1
            elif job.status is JobStatus.ACTIVE:
                self.registry.update(job.id, cancel_requested=True)
                signalled += 1
        if signalled:
            self.cancellation.request(migration_id)
        logger.info(
            f"Cancelled jobs: removed={removed} signalled={signalled}",
            extra={"migration_id": migration_id},
        )
        return {"removed": removed, "signalled": signalled}

    def retry(self, job_id: str) -> Optional[Job]:
        job = self.registry.get(job_id)
        if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            return None
        job = self.registry.update(
            job_id,
            status=JobStatus.WAITING,
            attempts=0,
            error=None,
            cancel_requested=False,
        ) or job
        return self._dispatch(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.registry.get(job_id)

    def list_jobs(self, lane: Optional[str] = None) -> List[Job]:
        if lane is not None:
            return self.registry.jobs_in_lane(lane)
        jobs: List[Job] = []
        for name in LANES:
            jobs.extend(self.registry.jobs_in_lane(name))
        return jobs

    def remove_job(self, job_id: str) -> None:
        job = self.registry.get(job_id)
        if job is not None:
            self.registry.delete(job)

    def close(self) -> None:
        self.registry.redis.close()
