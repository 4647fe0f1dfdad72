import subprocess
import sys

from svnmigrate.services.vcs.lock_reconciler import LockReconciler, is_bridge_command


def make_repo(root):
    git_dir = root / "repo" / ".git"
    (git_dir / "svn" / "refs" / "remotes" / "origin" / "trunk").mkdir(parents=True)
    (git_dir / "config").write_text('[svn-remote "svn"]\n\turl = https://svn.example/repo\n')
    (git_dir / "svn" / ".metadata").write_text("[svn-remote \"svn\"]\n\treposRoot = x\n")
    return git_dir


class TestLockReconciler:
    def test_missing_workspace_is_noop(self, tmp_path):
        result = LockReconciler().reconcile(tmp_path / "does-not-exist")

        assert not result.changed
        assert result.removed_files == []

    def test_second_run_is_noop(self, tmp_path):
        make_repo(tmp_path)
        reconciler = LockReconciler()

        first = reconciler.reconcile(tmp_path)
        second = reconciler.reconcile(tmp_path)

        assert first.changed
        assert not second.changed

    def test_removes_stale_index_lock_and_keeps_config(self, tmp_path):
        git_dir = make_repo(tmp_path)
        index_lock = git_dir / "index.lock"
        index_lock.write_text("")

        result = LockReconciler().reconcile(tmp_path)

        assert str(index_lock) in result.removed_files
        assert not index_lock.exists()
        assert (git_dir / "config").exists()
        assert (git_dir / "svn").is_dir()

    def test_removes_metadata_artifacts_recursively(self, tmp_path):
        git_dir = make_repo(tmp_path)
        top = git_dir / "svn" / ".metadata"
        nested = git_dir / "svn" / "refs" / "remotes" / "origin" / "trunk" / ".metadata"
        nested.write_text("")

        result = LockReconciler().reconcile(tmp_path)

        assert sorted(result.removed_files) == sorted([str(top), str(nested)])
        assert not top.exists()
        assert not nested.exists()

    def test_removes_nested_bridge_locks(self, tmp_path):
        git_dir = make_repo(tmp_path)
        nested = git_dir / "svn" / "refs" / "remotes" / "origin" / "trunk" / "index.lock"
        nested.write_text("")
        metadata_lock = git_dir / "svn" / ".metadata.lock"
        metadata_lock.write_text("")

        result = LockReconciler().reconcile(tmp_path)

        expected = [str(nested), str(metadata_lock), str(git_dir / "svn" / ".metadata")]
        assert sorted(result.removed_files) == sorted(expected)
        assert not LockReconciler().reconcile(tmp_path).changed

    def test_workspace_that_is_itself_a_repo(self, tmp_path):
        git_dir = make_repo(tmp_path)
        head_lock = git_dir / "HEAD.lock"
        head_lock.write_text("")

        result = LockReconciler().reconcile(tmp_path / "repo")

        assert str(head_lock) in result.removed_files
        assert not head_lock.exists()

    def test_kills_orphaned_bridge_process(self, tmp_path):
        make_repo(tmp_path)
        repo = tmp_path / "repo"
        # argv carries the bridge marker, cwd is inside the workspace
        orphan = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(60)", "git-svn", "fetch"],
            cwd=str(repo),
        )
        try:
            result = LockReconciler(kill_grace_seconds=2).reconcile(tmp_path)

            assert orphan.pid in result.killed_pids
            assert orphan.wait(timeout=5) is not None
        finally:
            if orphan.poll() is None:
                orphan.kill()

    def test_spares_non_bridge_process_referencing_workspace(self, tmp_path):
        workspace = tmp_path / "gitlab-svn-migrations" / "mig-1"
        make_repo(workspace)
        report = workspace / "report.txt"
        bystander = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(60)", str(report)],
            cwd=str(workspace / "repo"),
        )
        try:
            result = LockReconciler(kill_grace_seconds=1).reconcile(workspace)

            assert bystander.pid not in result.killed_pids
            assert bystander.poll() is None
        finally:
            bystander.kill()
            bystander.wait(timeout=5)


class TestIsBridgeCommand:
    def test_git_svn_executable(self):
        assert is_bridge_command(["/usr/lib/git-core/git-svn", "fetch"])

    def test_perl_wrapped_git_svn(self):
        assert is_bridge_command(["/usr/bin/perl", "/usr/lib/git-core/git-svn", "rebase", "--local"])

    def test_git_with_svn_subcommand(self):
        assert is_bridge_command(["git", "-C", "/tmp/ws/repo", "svn", "fetch"])

    def test_svn_substring_in_paths_is_ignored(self):
        assert not is_bridge_command(["python", "/tmp/gitlab-svn-migrations/mig-1/report.txt"])
        assert not is_bridge_command(["celery", "-A", "svnmigrate.celery_app", "worker"])
        assert not is_bridge_command(["svn", "info", "https://svn.example/repo"])
        assert not is_bridge_command(["git", "push", "gitlab", "--all"])
