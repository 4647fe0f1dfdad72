"""
Revision progress tracking for clone and fetch steps.

Every observed revision produces a progress event. Record writes are
throttled: the revised estimate is persisted at most once per
persist_interval seconds, plus once at the end of the step.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from svnmigrate.schemas.migrations import compute_percentage
from svnmigrate.services.db.protocols import LogStore, MigrationRecordStore
from svnmigrate.services.events import EventKind, EventSink
from svnmigrate.services.vcs.progress_parser import EventKind as LineKind
from svnmigrate.services.vcs.progress_parser import ProgressEvent, RevisionProgressParser

logger = logging.getLogger(__name__)

PERSIST_INTERVAL_SECONDS = 2.0


class ProgressTracker:
    """Folds ProgressEvents into counters, events and throttled record writes."""

    def __init__(
        self,
        migration_id: str,
        store: MigrationRecordStore,
        events: EventSink,
        total_revisions: int = 0,
        is_estimated: bool = True,
        verb: str = "Processing",
        persist_interval: float = PERSIST_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.migration_id = migration_id
        self.store = store
        self.events = events
        self.total_revisions = max(0, total_revisions)
        self.is_estimated = is_estimated or self.total_revisions == 0
        self.verb = verb
        self.persist_interval = persist_interval
        self.clock = clock

        self.current_revision: Optional[int] = None
        self.highest_revision: Optional[int] = None
        self.total_commits = 0
        self._dirty = False
        self._last_persist = clock()

    @property
    def percentage(self) -> Optional[int]:
        return compute_percentage(self.current_revision, self.total_revisions)

    def observe(self, event: ProgressEvent) -> None:
        if event.kind is not LineKind.REVISION or event.revision is None:
            return

        revision = event.revision
        self.current_revision = revision
        self.total_commits += 1
        if self.highest_revision is None or revision > self.highest_revision:
            self.highest_revision = revision
        if revision > self.total_revisions:
            # Denominator only ever grows
            self.total_revisions = revision
        self._dirty = True

        self.events.emit(EventKind.PROGRESS, self.migration_id, self.snapshot(
            message=f"{self.verb} revision {revision}",
        ))

        if self.clock() - self._last_persist >= self.persist_interval:
            self.flush()

    def flush(self) -> None:
        """Persist the current counters if anything changed since the last write."""
        if not self._dirty:
            return
        self.store.update(
            self.migration_id,
            current_revision=self.current_revision,
            total_revisions=self.total_revisions,
            is_estimated=self.is_estimated,
        )
        self._dirty = False
        self._last_persist = self.clock()

    def snapshot(self, **extra: Any) -> Dict[str, Any]:
        return {
            "current_revision": self.current_revision,
            "total_revisions": self.total_revisions,
            "total_commits": self.total_commits,
            "percentage": self.percentage,
            "is_estimated": self.is_estimated,
            **extra,
        }


class OutputRouter:
    """
    ProcessRunner line callback for git-svn steps.

    Sends every line to the log store and the live log stream, and feeds
    stdout through the revision parser into the tracker.
    """

    def __init__(
        self,
        migration_id: str,
        logs: LogStore,
        events: EventSink,
        tracker: Optional[ProgressTracker] = None,
    ):
        self.migration_id = migration_id
        self.logs = logs
        self.events = events
        self.tracker = tracker
        self.parser = RevisionProgressParser()

    def __call__(self, stream: str, line: str) -> None:
        level = "info" if stream == "stdout" else "warning"
        self.log(level, line)
        if stream == "stdout" and self.tracker is not None:
            for event in self.parser.feed(line + "\n"):
                self.tracker.observe(event)

    def log(self, level: str, message: str) -> None:
        try:
            self.logs.append(self.migration_id, level, message)
        except Exception as e:
            logger.warning(
                f"Failed to store log line: {e}",
                extra={"migration_id": self.migration_id, "error": str(e)},
            )
        self.events.emit(EventKind.LOG, self.migration_id, {"level": level, "message": message})
