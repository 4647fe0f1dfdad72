from svnmigrate.schemas.migrations import Migration, compute_percentage
from svnmigrate.services.events import EventKind
from svnmigrate.services.migration.progress import OutputRouter, ProgressTracker
from svnmigrate.services.vcs.progress_parser import EventKind as LineKind
from svnmigrate.services.vcs.progress_parser import ProgressEvent


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def revision(rev):
    return ProgressEvent(kind=LineKind.REVISION, raw_line=f"r{rev} = abc", revision=rev, commit="abc")


def make_tracker(store, events, **kwargs):
    store.create(Migration(id="mig-1", svn_url="https://svn.example/repo", gitlab_project_id=1))
    return ProgressTracker("mig-1", store, events, **kwargs)


class TestPercentage:
    def test_known_total(self):
        assert compute_percentage(50, 200) == 25

    def test_unknown_total(self):
        assert compute_percentage(5, 0) is None
        assert compute_percentage(None, 10) is None

    def test_clamped_to_hundred(self):
        assert compute_percentage(12, 10) == 100


class TestProgressTracker:
    def test_every_revision_emits_progress(self, store, events):
        tracker = make_tracker(store, events, total_revisions=200, is_estimated=False)
        tracker.observe(revision(50))

        [event] = events.of_type(EventKind.PROGRESS, "mig-1")
        assert event["current_revision"] == 50
        assert event["percentage"] == 25
        assert event["is_estimated"] is False

    def test_zero_total_is_estimated(self, store, events):
        tracker = make_tracker(store, events, total_revisions=0, is_estimated=False)
        tracker.observe(revision(7))

        assert tracker.is_estimated is True
        assert tracker.total_revisions == 7

    def test_total_grows_with_observed_revisions(self, store, events):
        tracker = make_tracker(store, events, total_revisions=5, is_estimated=False)
        tracker.observe(revision(9))
        assert tracker.total_revisions == 9

    def test_persists_at_most_once_per_interval(self, store, events):
        clock = FakeClock()
        tracker = make_tracker(store, events, total_revisions=100, is_estimated=False, clock=clock)

        tracker.observe(revision(1))
        tracker.observe(revision(2))
        assert store.find_by_id("mig-1").current_revision is None

        clock.now = 2.5
        tracker.observe(revision(3))
        assert store.find_by_id("mig-1").current_revision == 3

        tracker.observe(revision(4))
        assert store.find_by_id("mig-1").current_revision == 3

        tracker.flush()
        record = store.find_by_id("mig-1")
        assert record.current_revision == 4
        assert record.total_revisions == 100

    def test_highest_revision_tracks_maximum(self, store, events):
        tracker = make_tracker(store, events)
        for rev in (3, 5, 4):
            tracker.observe(revision(rev))
        assert tracker.highest_revision == 5
        assert tracker.total_commits == 3


class TestOutputRouter:
    def test_routes_lines_to_logs_and_tracker(self, store, logs, events):
        tracker = make_tracker(store, events, total_revisions=10, is_estimated=False)
        router = OutputRouter("mig-1", logs, events, tracker)

        router("stdout", "r1 = " + "a" * 40 + " (refs/remotes/origin/trunk)")
        router("stderr", "W: something odd")

        stored = logs.list("mig-1")
        assert {log.level for log in stored} == {"info", "warning"}
        assert tracker.current_revision == 1
        assert len(events.of_type(EventKind.LOG, "mig-1")) == 2
