import threading

import pytest

from svnmigrate.exceptions import (
    ConflictError,
    NotFoundError,
    ProcessCancelledError,
    ProcessExitError,
    ResumabilityError,
    is_retryable,
)
from svnmigrate.schemas.migrations import JobType, Migration, MigrationStatus, ResumeFrom
from svnmigrate.services.events import EventKind
from svnmigrate.services.migration.orchestrator import MigrationOrchestrator
from svnmigrate.services.queue.base import JobStatus, LanePolicy, default_policies
from svnmigrate.services.queue.memory import InMemoryJobQueue
from tests.fakes import make_git_svn_repo, make_request, revision_lines


def fast_policies(**overrides):
    params = dict(migration_backoff_seconds=0.01, sync_backoff_seconds=0.01)
    params.update(overrides)
    return default_policies(**params)


@pytest.fixture
def make_queue(store, cancellation):
    queues = []

    def factory(handler, **policy_overrides):
        queue = InMemoryJobQueue(store, handler, fast_policies(**policy_overrides), cancellation)
        queues.append(queue)
        return queue

    yield factory
    for queue in queues:
        queue.close()


def test_retry_delay_is_exponential():
    policy = LanePolicy("migration", 1, 3, 5)
    assert [policy.retry_delay(n) for n in (1, 2, 3)] == [5, 10, 20]


def test_error_classification():
    assert is_retryable(ProcessExitError("git svn clone", 128))
    assert is_retryable(ConflictError("locked"))
    assert not is_retryable(NotFoundError("Migration"))
    assert not is_retryable(ResumabilityError())
    assert not is_retryable(ProcessCancelledError("git svn fetch"))


def test_transient_failure_is_retried(make_queue, orchestrator, runner, store, events):
    runner.on("git", "svn", "clone", stdout=revision_lines(1, 2), effect=make_git_svn_repo)
    runner.on("git", "svn", "clone", returncode=128, stderr=["fatal: connection reset"], times=1)
    queue = make_queue(orchestrator.run)

    job = queue.enqueue(make_request())
    assert queue.wait_idle(10)

    job = queue.get_job(job.id)
    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 2
    assert store.find_by_id("mig-1").status is MigrationStatus.COMPLETED
    assert len(events.of_type(EventKind.COMPLETED, "mig-1")) == 1


def test_non_retryable_error_fails_immediately(make_queue):
    calls = []

    def handler(request, final_attempt):
        calls.append(request.migration_id)
        raise NotFoundError("Migration")

    queue = make_queue(handler)
    job = queue.enqueue(make_request())
    assert queue.wait_idle(5)

    job = queue.get_job(job.id)
    assert job.status is JobStatus.FAILED
    assert job.attempts == 1
    assert job.error == "Migration not found"
    assert calls == ["mig-1"]


def test_retries_stop_after_max_attempts(make_queue):
    def handler(request, final_attempt):
        raise ProcessExitError("git svn fetch", 1)

    queue = make_queue(handler, max_attempts=2)
    job = queue.enqueue(make_request(type=JobType.SYNC))
    assert queue.wait_idle(5)

    job = queue.get_job(job.id)
    assert job.lane == "sync"
    assert job.status is JobStatus.FAILED
    assert job.attempts == 2


def test_cancel_removes_waiting_and_signals_active(make_queue, cancellation):
    started = threading.Event()

    def handler(request, final_attempt):
        token = cancellation.token(request.migration_id)
        started.set()
        token.wait(5)
        if token.is_set():
            raise ProcessCancelledError("git svn clone")

    queue = make_queue(handler, max_concurrent_migrations=1)
    jobs = [queue.enqueue(make_request()) for _ in range(3)]
    assert started.wait(5)

    assert queue.cancel("mig-1") == {"removed": 2, "signalled": 1}
    assert queue.wait_idle(5)
    assert [queue.get_job(j.id).status for j in jobs] == [JobStatus.CANCELLED] * 3
    assert not queue.has_live_job("mig-1")


def test_retry_requeues_failed_job(make_queue):
    outcomes = [NotFoundError("Migration"), None]

    def handler(request, final_attempt):
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    queue = make_queue(handler)
    job = queue.enqueue(make_request())
    assert queue.wait_idle(5)
    assert queue.get_job(job.id).status is JobStatus.FAILED

    assert queue.retry(job.id) is not None
    assert queue.wait_idle(5)
    assert queue.get_job(job.id).status is JobStatus.COMPLETED
    assert queue.retry(job.id) is None


def test_status_reconciles_stalled_records(make_queue, store):
    store.create(Migration(
        id="stalled",
        svn_url="https://svn.example/repo",
        gitlab_project_id=1,
        status=MigrationStatus.RUNNING,
    ))
    queue = make_queue(lambda request, final_attempt: None)

    status = queue.status()

    assert status["reconciled"] == ["stalled"]
    assert store.find_by_id("stalled").status is MigrationStatus.FAILED
    assert status["migration"]["concurrency"] == 2
    assert status["sync"]["concurrency"] == 3
    assert status["migration"]["actual_failed"] == 1
    assert status["migration_table"] == {"failed": 1}


def test_immediate_cleanup_fails_orphaned_records(make_queue, store):
    def handler(request, final_attempt):
        raise NotFoundError("Migration")

    queue = make_queue(handler)
    job = queue.enqueue(make_request())
    assert queue.wait_idle(5)
    store.create(Migration(
        id="mig-1",
        svn_url="https://svn.example/repo",
        gitlab_project_id=42,
        status=MigrationStatus.PENDING,
        metadata={"job_id": job.id},
    ))

    result = queue.cleanup()

    assert result["cleaned"]["migration"] == {"failed": 1}
    assert result["records_failed"] == ["mig-1"]
    assert queue.get_job(job.id) is None
    assert store.find_by_id("mig-1").status is MigrationStatus.FAILED


def test_aged_cleanup_keeps_recent_jobs(make_queue):
    queue = make_queue(lambda request, final_attempt: None)
    job = queue.enqueue(make_request())
    assert queue.wait_idle(5)

    assert queue.cleanup(max_age_seconds=3600)["cleaned"]["migration"] == {}
    assert queue.get_job(job.id) is not None
    assert queue.cleanup(max_age_seconds=0)["cleaned"]["migration"] == {"completed": 1}


def test_public_job_view_hides_credentials(make_queue):
    queue = make_queue(lambda request, final_attempt: None)
    job = queue.enqueue(make_request())

    public = job.to_public()
    assert "payload" not in public
    assert "glpat-secret" not in str(public)


def test_queued_resume_shares_sync_lane_with_running_sync(make_queue, store, events, runner, migration_engine,
                                                          sync_engine, cancellation, temp_root):
    orchestrator = MigrationOrchestrator(
        store=store,
        events=events,
        migration_engine=migration_engine,
        sync_engine=sync_engine,
        cancellation=cancellation,
        temp_root=temp_root,
        max_concurrent_migrations=1,
        max_concurrent_syncs=1,
    )
    for migration_id in ("busy", "other"):
        store.create(Migration(
            id=migration_id,
            svn_url="https://svn.example/repo",
            gitlab_project_id=42,
            gitlab_url="https://gitlab.example",
            status=MigrationStatus.PENDING,
            last_synced_revision=7,
            metadata={"project_path": "repo"},
        ))
        (temp_root / migration_id / "repo" / ".git" / "svn").mkdir(parents=True)

    fetching = threading.Event()
    release = threading.Event()

    def fetch(argv, cwd):
        if f"{temp_root}/busy/" in f"{cwd}/":
            fetching.set()
            release.wait(5)

    runner.on("git", "svn", "fetch", stdout=revision_lines(8), effect=fetch)
    queue = make_queue(orchestrator.run, max_concurrent_migrations=1, max_concurrent_syncs=1, max_attempts=3)

    busy = queue.enqueue(make_request(migration_id="busy", type=JobType.SYNC))
    assert fetching.wait(5)
    other = queue.enqueue(make_request(
        migration_id="other", type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION,
    ))
    assert other.lane == "sync"

    release.set()
    assert queue.wait_idle(10)

    for job in (busy, other):
        job = queue.get_job(job.id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 1
    record = store.find_by_id("other")
    assert record.status is MigrationStatus.COMPLETED
    assert record.last_synced_revision == 8
    assert events.of_type(EventKind.FAILED) == []
