"""
Migration and sync Celery tasks.

Design principles:
1. One task per lane; the job envelope lives in RedisJobRegistry and
   the task only carries its id
2. Core logic (run_job) is decoupled from Celery for unit testing
3. Redis lock per migration id: a job that finds it held is re-queued
   with backoff instead of running concurrently
"""

import logging
from typing import Any, Dict

from celery.exceptions import Retry

from svnmigrate.core.config import get_settings
from svnmigrate.exceptions import ConflictError, is_retryable
from svnmigrate.services.queue.base import JobStatus
from .celery import app
from .task_lock import get_task_lock, migration_lock_key
from .task_utils import TaskContext, build_task_result, retry_countdown

logger = logging.getLogger(__name__)

settings = get_settings()


def run_job(task, job_id: str, backoff_seconds: float) -> Dict[str, Any]:
    """
    Execute one registered job inside a bound Celery task.

    Registry status follows the task: active -> completed | delayed (retry
    scheduled) | failed | cancelled.
    """
    from svnmigrate.container import get_container

    container = get_container()
    registry = container.queue.registry
    job = registry.get(job_id)
    ctx = TaskContext.from_celery_task(task, job_id=job_id)

    if job is None or job.status is JobStatus.CANCELLED:
        logger.info("Job no longer registered or cancelled, skipping", extra=ctx.log_extra(reason="cancelled"))
        return build_task_result(ctx, success=True, skipped=True)

    ctx.extra.update(migration_id=job.migration_id, lane=job.lane)
    task_lock = get_task_lock()
    lock_key = migration_lock_key(job.migration_id)
    if not task_lock.acquire(lock_key, task_id=ctx.task_id):
        if task.request.retries >= task.max_retries:
            error = f"Migration {job.migration_id} stayed locked by another job"
            registry.update(job_id, status=JobStatus.FAILED, error=error)
            container.orchestrator.fail_unstarted(job.request, ConflictError(error))
            return build_task_result(ctx, success=False, error=error, job_id=job_id)
        countdown = retry_countdown(backoff_seconds, task.request.retries)
        logger.info(
            f"Migration locked by another job, retrying in {countdown}s",
            extra=ctx.log_extra(lock_key=lock_key, remaining_ttl=task_lock.get_ttl(lock_key)),
        )
        registry.update(job_id, status=JobStatus.DELAYED)
        raise task.retry(countdown=countdown)

    try:
        registry.update(job_id, status=JobStatus.ACTIVE, attempts=ctx.attempt)
        ctx.log_start(f"Running {job.type.value} job")
        container.orchestrator.run(job.request, final_attempt=task.request.retries >= task.max_retries)
        registry.update(job_id, status=JobStatus.COMPLETED, error=None)
        ctx.log_success()
        return build_task_result(ctx, success=True, job_id=job_id)

    except Retry:
        raise

    except Exception as e:
        ctx.log_error(e)
        current = registry.get(job_id)
        if current is not None and current.cancel_requested:
            registry.update(job_id, status=JobStatus.CANCELLED, error=str(e))
            return build_task_result(ctx, success=False, error=str(e), job_id=job_id)

        if is_retryable(e) and task.request.retries < task.max_retries:
            registry.update(job_id, status=JobStatus.DELAYED, error=str(e))
            raise task.retry(exc=e, countdown=retry_countdown(backoff_seconds, task.request.retries))

        registry.update(job_id, status=JobStatus.FAILED, error=str(e))
        return build_task_result(ctx, success=False, error=str(e), job_id=job_id)

    finally:
        task_lock.release(lock_key, ctx.task_id)


@app.task(
    bind=True,
    name="run_migration_job",
    max_retries=settings.max_attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_migration_job(self, job_id: str):
    """Full migration or resume, on the migration lane."""
    return run_job(self, job_id, settings.migration_backoff_seconds)


@app.task(
    bind=True,
    name="run_sync_job",
    max_retries=settings.max_attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_sync_job(self, job_id: str):
    """Incremental sync, on the sync lane."""
    return run_job(self, job_id, settings.sync_backoff_seconds)
