import threading

import pytest

from svnmigrate.exceptions import (
    CannotResumeError,
    ConflictError,
    NotFoundError,
    ProcessExitError,
    QueueExhaustedError,
)
from svnmigrate.schemas.migrations import JobType, Migration, MigrationStatus, ResumeFrom
from svnmigrate.services.events import EventKind
from svnmigrate.services.migration.orchestrator import (
    LANE_MIGRATION,
    LANE_SYNC,
    KeyedLock,
    MigrationOrchestrator,
    lane_for,
)
from tests.fakes import make_git_svn_repo, make_request, revision_lines


def seed(store, **fields):
    data = dict(
        id="mig-1",
        svn_url="https://svn.example/repo",
        gitlab_project_id=42,
        status=MigrationStatus.FAILED,
        metadata={"project_path": "repo"},
    )
    data.update(fields)
    return store.create(Migration(**data))


def test_lane_for():
    assert lane_for(make_request(type=JobType.SYNC)) == LANE_SYNC
    assert lane_for(make_request(type=JobType.FULL)) == LANE_MIGRATION
    assert lane_for(make_request(type=JobType.RESUME, resume_from=ResumeFrom.BEGINNING)) == LANE_MIGRATION
    # Resuming from the last revision is a fetch, so it takes a sync slot
    assert lane_for(make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION)) == LANE_SYNC


def test_keyed_lock():
    lock = KeyedLock()
    assert lock.acquire("a")
    assert not lock.acquire("a")
    assert lock.acquire("b")
    lock.release("a")
    assert lock.acquire("a")


def test_run_dispatches_full_migration(orchestrator, runner):
    runner.on("git", "svn", "clone", stdout=revision_lines(1), effect=make_git_svn_repo)

    migration = orchestrator.run(make_request())

    assert migration.status is MigrationStatus.COMPLETED
    assert not orchestrator.is_active("mig-1")


def test_resume_from_beginning_discards_workspace(orchestrator, runner, store, events, temp_root):
    seed(store, last_synced_revision=7)
    marker = temp_root / "mig-1" / "partial.txt"
    marker.parent.mkdir(parents=True)
    marker.write_text("left over")

    def clone(argv, cwd):
        assert not marker.exists()
        make_git_svn_repo(argv, cwd)

    runner.on("git", "svn", "clone", stdout=revision_lines(1, 2), effect=clone)

    migration = orchestrator.run(make_request(type=JobType.RESUME, resume_from=ResumeFrom.BEGINNING))

    assert migration.status is MigrationStatus.COMPLETED
    assert len(runner.commands("git", "svn", "clone")) == 1
    [resumed] = events.of_type(EventKind.RESUMED, "mig-1")
    assert resumed["resume_from"] == "beginning"


def test_resume_from_last_revision_syncs(orchestrator, runner, store, temp_root):
    seed(store, last_synced_revision=7)
    (temp_root / "mig-1" / "repo" / ".git" / "svn").mkdir(parents=True)
    runner.on("git", "svn", "fetch", stdout=revision_lines(8))

    migration = orchestrator.resume(make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION))

    assert migration.last_synced_revision == 8
    assert runner.commands("git", "svn", "clone") == []


def test_resume_without_synced_revision(orchestrator, store):
    seed(store)
    with pytest.raises(CannotResumeError):
        orchestrator.resume(make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION))


def test_resume_unknown_migration(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.resume(make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION))


def test_concurrent_operation_on_same_migration_conflicts(orchestrator, runner):
    assert orchestrator._active.acquire("mig-1")
    try:
        with pytest.raises(ConflictError):
            orchestrator.execute(make_request())
    finally:
        orchestrator._active.release("mig-1")
    assert runner.calls == []


def test_lane_capacity_exhausted(store, events, migration_engine, sync_engine, cancellation, temp_root):
    orchestrator = MigrationOrchestrator(
        store=store,
        events=events,
        migration_engine=migration_engine,
        sync_engine=sync_engine,
        cancellation=cancellation,
        temp_root=temp_root,
        max_concurrent_migrations=0,
    )

    with pytest.raises(QueueExhaustedError):
        orchestrator.execute(make_request())
    assert not orchestrator.is_active("mig-1")


def test_cancel_marks_record_and_signals_token(orchestrator, store, events, cancellation):
    seed(store, status=MigrationStatus.RUNNING)
    token = cancellation.token("mig-1")

    assert orchestrator.cancel("mig-1") is True

    assert token.is_set()
    assert store.find_by_id("mig-1").status is MigrationStatus.CANCELLED
    [cancelled] = events.of_type(EventKind.CANCELLED, "mig-1")
    assert cancelled["previous_status"] == "running"


def test_cancel_leaves_completed_migration(orchestrator, store, events):
    seed(store, status=MigrationStatus.COMPLETED)

    assert orchestrator.cancel("mig-1") is True
    assert store.find_by_id("mig-1").status is MigrationStatus.COMPLETED
    assert events.of_type(EventKind.CANCELLED) == []


def test_cancel_unknown_migration(orchestrator):
    assert orchestrator.cancel("missing") is False


def test_new_run_clears_stale_cancel_request(orchestrator, runner, cancellation):
    cancellation.request("mig-1")
    runner.on("git", "svn", "clone", stdout=revision_lines(1), effect=make_git_svn_repo)

    migration = orchestrator.execute(make_request())

    assert migration.status is MigrationStatus.COMPLETED


def make_orchestrator(store, events, migration_engine, sync_engine, cancellation, temp_root, **limits):
    return MigrationOrchestrator(
        store=store,
        events=events,
        migration_engine=migration_engine,
        sync_engine=sync_engine,
        cancellation=cancellation,
        temp_root=temp_root,
        **limits,
    )


def test_queued_resume_waits_for_sync_slot(store, events, runner, migration_engine, sync_engine, cancellation,
                                           temp_root):
    orchestrator = make_orchestrator(
        store, events, migration_engine, sync_engine, cancellation, temp_root,
        max_concurrent_migrations=1, max_concurrent_syncs=1,
    )
    seed(store, last_synced_revision=7)
    (temp_root / "mig-1" / "repo" / ".git" / "svn").mkdir(parents=True)
    runner.on("git", "svn", "fetch", stdout=revision_lines(8))
    request = make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION)

    # A direct caller is refused while the only sync slot is taken
    slot = orchestrator._slots[LANE_SYNC]
    slot.acquire()
    with pytest.raises(QueueExhaustedError):
        orchestrator.resume(request)

    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.run(request)))
    worker.start()
    worker.join(0.3)
    assert worker.is_alive()
    assert runner.commands("git", "svn", "fetch") == []

    slot.release()
    worker.join(5)
    assert not worker.is_alive()
    [migration] = results
    assert migration.last_synced_revision == 8
    assert store.find_by_id("mig-1").status is MigrationStatus.COMPLETED


def test_queued_job_failing_before_start_marks_record_failed(orchestrator, store, events):
    seed(store, status=MigrationStatus.PENDING)

    with pytest.raises(CannotResumeError):
        orchestrator.run(make_request(type=JobType.RESUME, resume_from=ResumeFrom.LAST_REVISION))

    record = store.find_by_id("mig-1")
    assert record.status is MigrationStatus.FAILED
    assert "no synced revision" in record.metadata["error"]
    [failed] = events.of_type(EventKind.FAILED, "mig-1")
    assert failed["type"] == "migration:failed"
    assert failed["job_type"] == "resume"


def test_retryable_claim_failure_leaves_record_pending_until_last_attempt(orchestrator, store, events):
    seed(store, status=MigrationStatus.PENDING)
    assert orchestrator._active.acquire("mig-1")
    try:
        with pytest.raises(ConflictError):
            orchestrator.run(make_request(), final_attempt=False)
        assert store.find_by_id("mig-1").status is MigrationStatus.PENDING
        assert events.of_type(EventKind.FAILED, "mig-1") == []

        with pytest.raises(ConflictError):
            orchestrator.run(make_request(), final_attempt=True)
        assert store.find_by_id("mig-1").status is MigrationStatus.FAILED
        assert len(events.of_type(EventKind.FAILED, "mig-1")) == 1
    finally:
        orchestrator._active.release("mig-1")


def test_engine_failure_is_not_reported_twice(orchestrator, runner, store, events):
    runner.on("git", "svn", "clone", returncode=128, stderr=["fatal: unable to access"])

    with pytest.raises(ProcessExitError):
        orchestrator.run(make_request())

    assert store.find_by_id("mig-1").status is MigrationStatus.FAILED
    assert len(events.of_type(EventKind.FAILED, "mig-1")) == 1
