import os
import tempfile

# Settings are read once per process; pin the in-process backends before
# anything imports svnmigrate.core.config.
_scratch = tempfile.mkdtemp(prefix="svnmigrate-tests-")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("RECORD_STORE", "memory")
os.environ.setdefault("LOG_DIR", os.path.join(_scratch, "logs"))
os.environ.setdefault("MIGRATION_TEMP_DIR", os.path.join(_scratch, "work"))

import pytest

from svnmigrate.services.db.memory import MemoryLogStore, MemoryMigrationStore
from svnmigrate.services.events import MemoryEventSink
from svnmigrate.services.migration.cancellation import LocalCancellation
from svnmigrate.services.migration.engine import MigrationEngine
from svnmigrate.services.migration.orchestrator import MigrationOrchestrator
from svnmigrate.services.migration.pusher import GitLabPusher
from svnmigrate.services.migration.sync import SyncEngine
from svnmigrate.services.vcs.lock_reconciler import LockReconciler
from svnmigrate.services.vcs.svn_client import SvnClient
from tests.fakes import FakeGitLabClient, FakeRunner


@pytest.fixture
def store():
    return MemoryMigrationStore()


@pytest.fixture
def logs():
    return MemoryLogStore()


@pytest.fixture
def events():
    return MemoryEventSink()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def temp_root(tmp_path):
    return (tmp_path / "work").resolve()


@pytest.fixture
def engine_args(store, logs, events, runner, temp_root):
    return dict(
        store=store,
        logs=logs,
        events=events,
        runner=runner,
        svn=SvnClient(runner),
        pusher=GitLabPusher(runner, client_factory=FakeGitLabClient),
        reconciler=LockReconciler(kill_grace_seconds=0.5),
        temp_root=temp_root,
        log_window=100,
    )


@pytest.fixture
def migration_engine(engine_args):
    return MigrationEngine(**engine_args)


@pytest.fixture
def sync_engine(engine_args):
    return SyncEngine(**engine_args)


@pytest.fixture
def cancellation():
    return LocalCancellation()


@pytest.fixture
def orchestrator(store, events, migration_engine, sync_engine, cancellation, temp_root):
    return MigrationOrchestrator(
        store=store,
        events=events,
        migration_engine=migration_engine,
        sync_engine=sync_engine,
        cancellation=cancellation,
        temp_root=temp_root,
    )
