"""
Non-durable in-process job queue.

Same external contract as the Celery backend. Each lane has a FIFO deque
and as many worker threads as its concurrency; retries are re-queued by a
threading.Timer. Nothing survives a restart.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from svnmigrate.exceptions import is_retryable
from svnmigrate.schemas.migrations import MigrationRequest
from svnmigrate.services.db.protocols import MigrationRecordStore
from svnmigrate.services.migration.cancellation import LocalCancellation
from svnmigrate.services.migration.orchestrator import lane_for
from .base import (
    LANES,
    PENDING_STATUSES,
    Job,
    JobQueue,
    JobStatus,
    LanePolicy,
)

logger = logging.getLogger(__name__)

# handler(request, final_attempt)
JobHandler = Callable[[MigrationRequest, bool], Any]


class InMemoryJobQueue(JobQueue):
    def __init__(
        self,
        store: MigrationRecordStore,
        handler: JobHandler,
        policies: Dict[str, LanePolicy],
        cancellation: LocalCancellation,
        autostart: bool = True,
    ):
        super().__init__(store, policies)
        self.handler = handler
        self.cancellation = cancellation
        self._jobs: Dict[str, Job] = {}
        self._pending: Dict[str, Deque[str]] = {lane: deque() for lane in LANES}
        self._timers: Dict[str, threading.Timer] = {}
        self._cond = threading.Condition()
        self._closed = False
        self._workers: List[threading.Thread] = []
        if autostart:
            self.start()

    def start(self) -> None:
        if self._workers:
            return
        for lane in LANES:
            for index in range(self.policies[lane].concurrency):
                worker = threading.Thread(
                    target=self._work,
                    args=(lane,),
                    name=f"{lane}-worker-{index}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)
        logger.info(
            "In-memory job queue started",
            extra={"lane": ",".join(f"{lane}={self.policies[lane].concurrency}" for lane in LANES)},
        )

    def enqueue(self, request: MigrationRequest) -> Job:
        job = Job.for_request(request, self.policies[lane_for(request)].max_attempts)
        with self._cond:
            self._jobs[job.id] = job
            self._pending[job.lane].append(job.id)
            self._cond.notify_all()
        logger.info(
            f"Enqueued {job.type.value} job",
            extra={"migration_id": job.migration_id, "job_id": job.id, "lane": job.lane},
        )
        return job

    def cancel(self, migration_id: str) -> Dict[str, int]:
        removed = signalled = 0
        with self._cond:
            for job in self._jobs.values():
                if job.migration_id != migration_id:
                    continue
                if job.status in PENDING_STATUSES:
                    timer = self._timers.pop(job.id, None)
                    if timer:
                        timer.cancel()
                    try:
                        self._pending[job.lane].remove(job.id)
                    except ValueError:
                        pass
                    self._finish(job, JobStatus.CANCELLED)
                    removed += 1
                elif job.status is JobStatus.ACTIVE:
                    job.cancel_requested = True
                    signalled += 1
        if signalled:
            self.cancellation.request(migration_id)
        logger.info(
            f"Cancelled jobs: removed={removed} signalled={signalled}",
            extra={"migration_id": migration_id},
        )
        return {"removed": removed, "signalled": signalled}

    def retry(self, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                return None
            job.status = JobStatus.WAITING
            job.attempts = 0
            job.error = None
            job.cancel_requested = False
            job.finished_at = None
            job.updated_at = time.time()
            self._pending[job.lane].append(job.id)
            self._cond.notify_all()
            return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            return self._jobs.get(job_id)

    def list_jobs(self, lane: Optional[str] = None) -> List[Job]:
        with self._cond:
            return [j for j in self._jobs.values() if lane is None or j.lane == lane]

    def remove_job(self, job_id: str) -> None:
        with self._cond:
            self._jobs.pop(job_id, None)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until no job is waiting, delayed or active."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while any(not j.is_finished for j in self._jobs.values()):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def _next_job(self, lane: str) -> Optional[Job]:
        with self._cond:
            while not self._closed:
                while self._pending[lane]:
                    job = self._jobs.get(self._pending[lane].popleft())
                    if job is not None and job.status is JobStatus.WAITING:
                        job.status = JobStatus.ACTIVE
                        job.attempts += 1
                        job.updated_at = time.time()
                        return job
                self._cond.wait()
            return None

    def _work(self, lane: str) -> None:
        while True:
            job = self._next_job(lane)
            if job is None:
                return
            self._run(job)

    def _run(self, job: Job) -> None:
        extra = {"migration_id": job.migration_id, "job_id": job.id, "lane": job.lane}
        logger.info(f"Processing: attempt={job.attempts}/{job.max_attempts}", extra=extra)
        start_time = time.monotonic()
        try:
            self.handler(job.request, job.attempts >= job.max_attempts)
        except Exception as e:
            extra = {**extra, "error": str(e), "duration_ms": int((time.monotonic() - start_time) * 1000)}
            with self._cond:
                job.error = str(e)
                if job.cancel_requested:
                    self._finish(job, JobStatus.CANCELLED)
                elif is_retryable(e) and job.attempts < job.max_attempts:
                    delay = self.policies[job.lane].retry_delay(job.attempts)
                    job.status = JobStatus.DELAYED
                    job.updated_at = time.time()
                    timer = threading.Timer(delay, self._requeue, args=(job.id,))
                    timer.daemon = True
                    self._timers[job.id] = timer
                    timer.start()
                    logger.warning(f"Retryable error, retrying in {delay}s: {e}", extra=extra)
                    return
                else:
                    self._finish(job, JobStatus.FAILED)
            logger.error(f"Job failed: {e}", extra=extra)
            return

        with self._cond:
            self._finish(job, JobStatus.CANCELLED if job.cancel_requested else JobStatus.COMPLETED)
        logger.info(
            "Completed successfully",
            extra={**extra, "duration_ms": int((time.monotonic() - start_time) * 1000)},
        )

    def _requeue(self, job_id: str) -> None:
        with self._cond:
            self._timers.pop(job_id, None)
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.DELAYED or self._closed:
                return
            job.status = JobStatus.WAITING
            job.updated_at = time.time()
            self._pending[job.lane].append(job.id)
            self._cond.notify_all()

    def _finish(self, job: Job, status: JobStatus) -> None:
        # Caller holds self._cond
        job.status = status
        job.finished_at = job.updated_at = time.time()
        self._cond.notify_all()
