"""
Incremental sync: fetch new SVN revisions into an existing git-svn
workspace, rebase and push.

State machine: syncing -> completed | failed. last_synced_revision never
moves backwards.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from svnmigrate.exceptions import NotFoundError, ResumabilityError
from svnmigrate.schemas.migrations import Migration, MigrationRequest, MigrationStatus
from svnmigrate.services.events import EventKind
from svnmigrate.services.vcs.process_runner import CancelToken
from .engine import EngineBase, monotonic_revision
from .progress import OutputRouter, ProgressTracker
from .workspace import Workspace

logger = logging.getLogger(__name__)


class SyncEngine(EngineBase):
    def sync(self, request: MigrationRequest, cancel_token: Optional[CancelToken] = None) -> Migration:
        """
        Raises:
            NotFoundError: no migration record
            ResumabilityError: the workspace has no git-svn metadata
        """
        migration_id = request.migration_id
        migration = self.store.find_by_id(migration_id)
        if migration is None:
            raise NotFoundError("Migration")

        start_time = time.monotonic()
        workspace = self._workspace(migration_id, migration.project_path or request.project_path)
        baseline = migration.last_synced_revision
        try:
            if not workspace.has_bridge_metadata():
                raise ResumabilityError()

            self.store.update(migration_id, status=MigrationStatus.SYNCING)
            self.events.emit(EventKind.SYNCING, migration_id, {
                "last_synced_revision": baseline,
                "job_id": request.job_id,
            })

            self.reconciler.reconcile(workspace.root)
            total, estimated = self._estimate_total(request)
            tracker = ProgressTracker(
                migration_id, self.store, self.events,
                total_revisions=total, is_estimated=estimated, verb="Fetching",
            )
            router = OutputRouter(migration_id, self.logs, self.events, tracker)

            router.log("info", f"Fetching new revisions since r{baseline}" if baseline else "Fetching new revisions")
            self.runner.run(
                "git",
                self.fetch_args(request, workspace),
                cwd=str(workspace.repo_path),
                on_line=router,
                cancel_token=cancel_token,
                secrets=[request.svn_password],
            )
            for event in router.parser.flush():
                tracker.observe(event)
            tracker.flush()

            new_revisions = tracker.total_commits
            if new_revisions > 0:
                self.runner.run(
                    "git", ["svn", "rebase", "--local"],
                    cwd=str(workspace.repo_path),
                    on_line=router,
                    cancel_token=cancel_token,
                )
                self.pusher.push(workspace.repo_path, request, on_line=router, cancel_token=cancel_token)
                last_revision = monotonic_revision(baseline, tracker.highest_revision)
            else:
                router.log("info", "Already up to date")
                last_revision = baseline

            migration = self.store.update(
                migration_id,
                status=MigrationStatus.COMPLETED,
                last_synced_revision=last_revision,
                metadata=self._merge_metadata(
                    migration_id,
                    last_sync_at=datetime.now(timezone.utc).isoformat(),
                    last_sync_error=None,
                ),
            )
        except Exception as e:
            logger.error(
                f"Sync failed: {e}",
                extra={"migration_id": migration_id, "error": str(e)},
            )
            self._fail(migration_id, e, "sync")
            raise
        finally:
            self._forget_credentials(workspace)

        self.events.emit(EventKind.SYNCED, migration_id, {
            "new_revisions": new_revisions,
            "last_revision": last_revision,
        })
        logger.info(
            f"Sync completed: {new_revisions} new revisions",
            extra={
                "migration_id": migration_id,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return migration

    def fetch_args(self, request: MigrationRequest, workspace: Workspace) -> List[str]:
        args = ["svn", "fetch"]
        authors_file = workspace.write_authors_file(request.authors_mapping)
        if authors_file:
            args.append(f"--authors-file={authors_file}")
        args += ["--log-window-size", str(self.log_window)]
        args += self._svn_auth_args(workspace, request)
        return args

