"""
Full migration: git-svn clone followed by the initial push to GitLab.

State machine: running -> completed | failed (cancelled when the clone is
terminated by a cancel request).
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Any, List, Optional

from svnmigrate.exceptions import ProcessCancelledError, RemoteConnectionError
from svnmigrate.schemas.migrations import Migration, MigrationRequest, MigrationStatus
from svnmigrate.services.db.protocols import LogStore, MigrationRecordStore
from svnmigrate.services.events import EventKind, EventSink
from svnmigrate.services.vcs.lock_reconciler import LockReconciler
from svnmigrate.services.vcs.process_runner import CancelToken, ProcessRunner
from svnmigrate.services.vcs.svn_client import SvnClient
from .progress import OutputRouter, ProgressTracker
from .pusher import GitLabPusher
from .workspace import Workspace

logger = logging.getLogger(__name__)

SVN_CONFIG_DIR = ".subversion"


def monotonic_revision(previous: Optional[int], observed: Optional[int]) -> Optional[int]:
    """The later of two revisions, ignoring unknowns."""
    if observed is None:
        return previous
    if previous is None:
        return observed
    return max(previous, observed)


class EngineBase:
    """Shared plumbing for the clone and sync engines."""

    def __init__(
        self,
        store: MigrationRecordStore,
        logs: LogStore,
        events: EventSink,
        runner: ProcessRunner,
        svn: SvnClient,
        pusher: GitLabPusher,
        reconciler: LockReconciler,
        temp_root: Path,
        log_window: int = 100,
    ):
        self.store = store
        self.logs = logs
        self.events = events
        self.runner = runner
        self.svn = svn
        self.pusher = pusher
        self.reconciler = reconciler
        self.temp_root = Path(temp_root)
        self.log_window = log_window

    def _workspace(self, migration_id: str, project_path: str) -> Workspace:
        return Workspace(self.temp_root, migration_id, project_path)

    def _merge_metadata(self, migration_id: str, **updates: Any) -> dict:
        current = self.store.find_by_id(migration_id)
        metadata = dict(current.metadata) if current else {}
        metadata.update(updates)
        return metadata

    def _estimate_total(self, request: MigrationRequest) -> tuple[int, bool]:
        """
        HEAD revision of the source, or (0, estimated) when it cannot be read.
        """
        try:
            head = self.svn.head_revision(request.svn_url, request.svn_username, request.svn_password)
            return head, False
        except RemoteConnectionError as e:
            logger.warning(
                f"HEAD revision lookup failed, progress will be estimated: {e}",
                extra={"migration_id": request.migration_id, "error": str(e)},
            )
            return 0, True

    def _svn_auth_args(self, workspace: Workspace, request: MigrationRequest) -> List[str]:
        """
        git-svn cannot take a password on the command line; cache it in a
        workspace-private svn config dir and point git-svn at it.
        """
        args: List[str] = []
        if request.svn_username:
            args += ["--username", request.svn_username]
        if request.svn_username and request.svn_password:
            config_dir = workspace.root / SVN_CONFIG_DIR
            self.svn.cache_credentials(
                request.svn_url,
                request.svn_username,
                request.svn_password,
                config_dir,
            )
            args += ["--config-dir", str(config_dir)]
        return args

    def _forget_credentials(self, workspace: Workspace) -> None:
        config_dir = workspace.root / SVN_CONFIG_DIR
        if config_dir.exists():
            shutil.rmtree(config_dir, ignore_errors=True)

    def _fail(self, migration_id: str, error: Exception, job_kind: str) -> None:
        """Persist and announce a failure before the error propagates."""
        message = str(error)
        cancelled = isinstance(error, ProcessCancelledError)
        status = MigrationStatus.CANCELLED if cancelled else MigrationStatus.FAILED
        error_field = "last_sync_error" if job_kind == "sync" else "error"
        try:
            self.store.update(
                migration_id,
                status=status,
                metadata=self._merge_metadata(migration_id, **{error_field: message}),
            )
        except Exception as store_error:
            logger.error(
                f"Failed to persist failure state: {store_error}",
                extra={"migration_id": migration_id, "error": str(store_error)},
            )
        kind = EventKind.CANCELLED if cancelled else EventKind.FAILED
        self.events.emit(kind, migration_id, {"error": message, "job_type": job_kind})


class MigrationEngine(EngineBase):
    """Clone an SVN repository with git-svn and push it to GitLab."""

    def execute(self, request: MigrationRequest, cancel_token: Optional[CancelToken] = None) -> Migration:
        migration_id = request.migration_id
        start_time = time.monotonic()
        previous_revision = self._upsert_running(request)
        self.events.emit(EventKind.STARTED, migration_id, {
            "svn_url": request.svn_url,
            "project_name": request.project_name,
            "job_id": request.job_id,
        })

        workspace = self._workspace(migration_id, request.project_path)
        try:
            total, estimated = self._estimate_total(request)
            self.store.update(
                migration_id,
                total_revisions=total,
                is_estimated=estimated,
                current_revision=None,
            )

            workspace.create()
            authors_file = workspace.write_authors_file(request.authors_mapping)
            self.reconciler.reconcile(workspace.root)
            # A retried attempt restarts the clone from scratch
            if workspace.repo_path.exists():
                shutil.rmtree(workspace.repo_path)

            tracker = ProgressTracker(
                migration_id, self.store, self.events,
                total_revisions=total, is_estimated=estimated,
            )
            router = OutputRouter(migration_id, self.logs, self.events, tracker)

            router.log("info", f"Cloning {request.svn_url}")
            self.runner.run(
                "git",
                self.clone_args(request, workspace, authors_file),
                cwd=str(workspace.root),
                on_line=router,
                cancel_token=cancel_token,
                secrets=[request.svn_password],
            )
            for event in router.parser.flush():
                tracker.observe(event)
            tracker.flush()

            self.pusher.push(workspace.repo_path, request, on_line=router, cancel_token=cancel_token)

            migration = self.store.update(
                migration_id,
                status=MigrationStatus.COMPLETED,
                last_synced_revision=monotonic_revision(previous_revision, tracker.highest_revision),
                metadata=self._merge_metadata(
                    migration_id,
                    total_commits=tracker.total_commits,
                    error=None,
                ),
            )
        except Exception as e:
            logger.error(
                f"Migration failed: {e}",
                extra={"migration_id": migration_id, "error": str(e)},
            )
            self._fail(migration_id, e, "migration")
            raise
        finally:
            self._forget_credentials(workspace)

        self.events.emit(EventKind.COMPLETED, migration_id, {
            "last_revision": migration.last_synced_revision if migration else None,
            "total_commits": tracker.total_commits,
        })
        if not request.options.keep_temp_files:
            workspace.delete()

        logger.info(
            f"Migration completed: {tracker.total_commits} commits",
            extra={
                "migration_id": migration_id,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return migration

    def clone_args(self, request: MigrationRequest, workspace: Workspace, authors_file: Optional[Path]) -> List[str]:
        args = ["svn", "clone", request.svn_url]

        layout = request.layout
        if layout.is_standard:
            args.append("--stdlayout")
        else:
            if layout.trunk:
                args += ["--trunk", layout.trunk]
            if layout.branches:
                args += ["--branches", layout.branches]
            if layout.tags:
                args += ["--tags", layout.tags]

        if authors_file:
            args.append(f"--authors-file={authors_file}")
        args += ["--log-window-size", str(self.log_window)]
        args += self._svn_auth_args(workspace, request)

        # Always an absolute destination
        args.append(str(workspace.repo_path))
        return args

    def _upsert_running(self, request: MigrationRequest) -> Optional[int]:
        """Create or reset the record to running; returns the prior last_synced_revision."""
        metadata_updates = {
            "project_name": request.project_name,
            "project_path": request.project_path,
            "options": request.options.model_dump(),
            "svn_username": request.svn_username,
        }
        if request.job_id:
            metadata_updates["job_id"] = request.job_id

        existing = self.store.find_by_id(request.migration_id)
        if existing is None:
            self.store.create(Migration(
                id=request.migration_id,
                svn_url=request.svn_url,
                gitlab_project_id=request.gitlab_project_id,
                gitlab_url=request.gitlab_url,
                status=MigrationStatus.RUNNING,
                layout=request.layout,
                authors_mapping=request.authors_mapping,
                metadata=metadata_updates,
            ))
            return None

        self.store.update(
            request.migration_id,
            status=MigrationStatus.RUNNING,
            svn_url=request.svn_url,
            gitlab_project_id=request.gitlab_project_id,
            gitlab_url=request.gitlab_url,
            layout=request.layout,
            authors_mapping=request.authors_mapping,
            metadata={**existing.metadata, **metadata_updates},
        )
        return existing.last_synced_revision
