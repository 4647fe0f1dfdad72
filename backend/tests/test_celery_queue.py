from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from celery.exceptions import Retry

from svnmigrate.celery_app import tasks
from svnmigrate.exceptions import ConflictError, NotFoundError, ProcessCancelledError
from svnmigrate.schemas.migrations import JobType
from svnmigrate.services.migration.cancellation import RedisCancellation
from svnmigrate.services.queue.base import Job, JobStatus, default_policies
from svnmigrate.services.queue.celery_backend import CeleryJobQueue
from svnmigrate.services.queue.registry import RedisJobRegistry
from tests.fakes import FakeRedis, make_request


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def registry(redis_client):
    return RedisJobRegistry(redis_client)


@pytest.fixture
def celery_queue(store, registry, redis_client):
    return CeleryJobQueue(
        store,
        registry,
        RedisCancellation(redis_client),
        default_policies(),
        MagicMock(),
    )


class TestRedisJobRegistry:
    def test_save_and_get(self, registry):
        job = Job.for_request(make_request(), max_attempts=3)
        registry.save(job)

        loaded = registry.get(job.id)
        assert loaded.migration_id == "mig-1"
        assert loaded.type is JobType.FULL
        assert loaded.request.gitlab_token == "glpat-secret"
        assert registry.jobs_in_lane("migration")[0].id == job.id
        assert registry.jobs_for_migration("mig-1")[0].id == job.id

    def test_finished_at_follows_status(self, registry):
        job = Job.for_request(make_request(), max_attempts=3)
        registry.save(job)

        assert registry.update(job.id, status=JobStatus.FAILED).finished_at is not None
        assert registry.update(job.id, status=JobStatus.WAITING).finished_at is None

    def test_delete_removes_indexes(self, registry):
        job = Job.for_request(make_request(), max_attempts=3)
        registry.save(job)
        registry.delete(job)

        assert registry.get(job.id) is None
        assert registry.jobs_in_lane("migration") == []
        assert registry.jobs_for_migration("mig-1") == []


class TestCeleryJobQueue:
    def test_enqueue_sends_to_lane_queue(self, celery_queue):
        job = celery_queue.enqueue(make_request(type=JobType.SYNC))

        celery_queue.celery_app.send_task.assert_called_once()
        args, kwargs = celery_queue.celery_app.send_task.call_args
        assert args == ("run_sync_job",)
        assert kwargs["queue"] == "sync"
        assert kwargs["kwargs"] == {"job_id": job.id}
        assert celery_queue.get_job(job.id).task_id == kwargs["task_id"]

    def test_cancel_revokes_waiting_and_flags_active(self, celery_queue, registry, redis_client):
        waiting = celery_queue.enqueue(make_request())
        active = celery_queue.enqueue(make_request())
        registry.update(active.id, status=JobStatus.ACTIVE)

        assert celery_queue.cancel("mig-1") == {"removed": 1, "signalled": 1}

        celery_queue.celery_app.control.revoke.assert_called_once_with(registry.get(waiting.id).task_id)
        assert registry.get(waiting.id).status is JobStatus.CANCELLED
        assert registry.get(active.id).cancel_requested is True
        assert redis_client.exists("cancel:migration:mig-1")

    def test_retry_dispatches_with_new_task_id(self, celery_queue, registry):
        job = celery_queue.enqueue(make_request())
        first_task_id = registry.get(job.id).task_id
        registry.update(job.id, status=JobStatus.FAILED, attempts=3)

        retried = celery_queue.retry(job.id)

        assert retried.status is JobStatus.WAITING
        assert retried.attempts == 0
        assert retried.task_id != first_task_id
        assert celery_queue.celery_app.send_task.call_count == 2

    def test_retry_ignores_live_job(self, celery_queue):
        job = celery_queue.enqueue(make_request())
        assert celery_queue.retry(job.id) is None


class FakeTaskLock:
    def __init__(self, available=True):
        self.available = available
        self.released = []

    def acquire(self, lock_key, ttl_seconds=None, task_id=None):
        return self.available

    def release(self, lock_key, task_id=None):
        self.released.append(lock_key)
        return True

    def get_ttl(self, lock_key):
        return 60


class FakeTask:
    name = "run_migration_job"

    def __init__(self, retries=0, max_retries=2):
        self.request = SimpleNamespace(id="task-1", retries=retries)
        self.max_retries = max_retries
        self.retry_calls = []

    def retry(self, exc=None, countdown=None):
        self.retry_calls.append(countdown)
        return Retry()


class TestRunJob:
    @pytest.fixture
    def orchestrator(self):
        return MagicMock()

    @pytest.fixture
    def job(self, registry):
        job = Job.for_request(make_request(), max_attempts=3)
        registry.save(job)
        return job

    @pytest.fixture
    def lock(self, monkeypatch):
        lock = FakeTaskLock()
        monkeypatch.setattr(tasks, "get_task_lock", lambda: lock)
        return lock

    @pytest.fixture(autouse=True)
    def wired(self, monkeypatch, registry, orchestrator):
        deps = SimpleNamespace(queue=SimpleNamespace(registry=registry), orchestrator=orchestrator)
        monkeypatch.setattr("svnmigrate.container.get_container", lambda: deps)

    def test_success(self, job, lock, registry, orchestrator):
        result = tasks.run_job(FakeTask(), job.id, 5)

        assert result["success"] is True
        orchestrator.run.assert_called_once()
        assert orchestrator.run.call_args[0][0].migration_id == "mig-1"
        assert orchestrator.run.call_args.kwargs["final_attempt"] is False
        updated = registry.get(job.id)
        assert updated.status is JobStatus.COMPLETED
        assert updated.attempts == 1
        assert lock.released == ["migration:mig-1"]

    def test_busy_lock_requeues_with_backoff(self, job, lock, registry, orchestrator):
        lock.available = False
        task = FakeTask(retries=1)

        with pytest.raises(Retry):
            tasks.run_job(task, job.id, 5)

        assert task.retry_calls == [10]
        assert registry.get(job.id).status is JobStatus.DELAYED
        orchestrator.run.assert_not_called()

    def test_busy_lock_after_last_retry_fails(self, job, lock, registry, orchestrator):
        lock.available = False

        result = tasks.run_job(FakeTask(retries=2), job.id, 5)

        assert result["success"] is False
        assert registry.get(job.id).status is JobStatus.FAILED
        orchestrator.run.assert_not_called()
        request, error = orchestrator.fail_unstarted.call_args.args
        assert request.migration_id == "mig-1"
        assert "stayed locked" in str(error)

    def test_last_retry_is_flagged_final(self, job, lock, registry, orchestrator):
        tasks.run_job(FakeTask(retries=2), job.id, 5)

        assert orchestrator.run.call_args.kwargs["final_attempt"] is True

    def test_retryable_error(self, job, lock, registry, orchestrator):
        orchestrator.run.side_effect = ConflictError("push rejected")
        task = FakeTask()

        with pytest.raises(Retry):
            tasks.run_job(task, job.id, 3)

        assert task.retry_calls == [3]
        assert registry.get(job.id).status is JobStatus.DELAYED
        assert lock.released == ["migration:mig-1"]

    def test_non_retryable_error(self, job, lock, registry, orchestrator):
        orchestrator.run.side_effect = NotFoundError("Migration")

        result = tasks.run_job(FakeTask(), job.id, 3)

        assert result["success"] is False
        assert registry.get(job.id).status is JobStatus.FAILED

    def test_cancelled_while_running(self, job, lock, registry, orchestrator):
        def run(request, final_attempt):
            registry.update(job.id, cancel_requested=True)
            raise ProcessCancelledError("git svn clone")

        orchestrator.run.side_effect = run

        tasks.run_job(FakeTask(), job.id, 3)

        assert registry.get(job.id).status is JobStatus.CANCELLED

    def test_cancelled_job_is_skipped(self, job, lock, registry, orchestrator):
        registry.update(job.id, status=JobStatus.CANCELLED)

        result = tasks.run_job(FakeTask(), job.id, 3)

        assert result["skipped"] is True
        orchestrator.run.assert_not_called()
