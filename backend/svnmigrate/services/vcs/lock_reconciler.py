"""
Stale lock recovery for git-svn workspaces.

A crashed or killed clone/fetch leaves lock files behind (and sometimes a
still-running git-svn process). Any of these blocks every later operation
on the same workspace, so reconcile() runs before each (re)start.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import psutil

logger = logging.getLogger(__name__)

# Relative to the repository root
KNOWN_LOCK_FILES = (
    ".git/index.lock",
    ".git/HEAD.lock",
    ".git/config.lock",
    ".git/packed-refs.lock",
    ".git/shallow.lock",
    ".git/svn/.metadata.lock",
)

SVN_METADATA_DIR = ".git/svn"
# Swept recursively under SVN_METADATA_DIR; git-svn rebuilds .metadata from config
METADATA_ARTIFACTS = ("*.lock", ".metadata")

GIT_EXECUTABLES = ("git", "git.exe")
BRIDGE_EXECUTABLES = ("git-svn", "git-svn.exe")


def is_bridge_command(argv: List[str]) -> bool:
    """
    True for `git-svn ...` (including `perl .../git-svn ...`) or `git ... svn ...`.

    Tokens are compared whole, so paths that merely contain "svn" never match.
    """
    seen_git = False
    for token in argv:
        name = os.path.basename(token)
        if name in BRIDGE_EXECUTABLES:
            return True
        if name in GIT_EXECUTABLES:
            seen_git = True
        elif seen_git and token == "svn":
            return True
    return False


@dataclass
class ReconcileResult:
    removed_files: List[str] = field(default_factory=list)
    killed_pids: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed_files or self.killed_pids)


class LockReconciler:
    """
    Clears lock artifacts and orphaned git-svn processes for one workspace.

    Idempotent: a clean or missing workspace is a no-op.
    """

    def __init__(self, kill_grace_seconds: float = 5.0):
        self.kill_grace_seconds = kill_grace_seconds

    def reconcile(self, workspace_path: str | os.PathLike) -> ReconcileResult:
        result = ReconcileResult()
        workspace = Path(workspace_path)
        if not workspace.exists():
            return result

        # Processes first, otherwise they may recreate the locks we remove
        result.killed_pids = self._kill_orphans(workspace)

        for repo_root in self._repo_roots(workspace):
            for relative in KNOWN_LOCK_FILES:
                self._remove(repo_root / relative, result)
            metadata_dir = repo_root / SVN_METADATA_DIR
            if metadata_dir.is_dir():
                for pattern in METADATA_ARTIFACTS:
                    for artifact in metadata_dir.rglob(pattern):
                        self._remove(artifact, result)

        if result.changed:
            logger.warning(
                f"Reconciled workspace {workspace}: "
                f"removed {len(result.removed_files)} lock files, "
                f"killed {len(result.killed_pids)} processes",
                extra={"workspace": str(workspace)},
            )
        return result

    @staticmethod
    def _repo_roots(workspace: Path) -> List[Path]:
        """The workspace itself, or repositories one level below it."""
        if (workspace / ".git").is_dir():
            return [workspace]
        return [child for child in workspace.iterdir() if (child / ".git").is_dir()]

    @staticmethod
    def _remove(path: Path, result: ReconcileResult) -> None:
        if not path.is_file():
            return
        try:
            path.unlink()
            result.removed_files.append(str(path))
            logger.info(f"Removed stale lock file {path}")
        except FileNotFoundError:
            pass

    def _kill_orphans(self, workspace: Path) -> List[int]:
        workspace_str = str(workspace.resolve())
        own_pid = os.getpid()
        victims = []

        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.info["pid"] == own_pid:
                continue
            argv = proc.info["cmdline"] or []
            if not is_bridge_command(argv):
                continue
            if any(workspace_str in token for token in argv) or self._cwd_inside(proc, workspace_str):
                victims.append(proc)

        for proc in victims:
            logger.warning(
                f"Terminating orphaned git-svn process pid={proc.pid}",
                extra={"workspace": workspace_str},
            )
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(victims, timeout=self.kill_grace_seconds)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        return [proc.pid for proc in victims]

    @staticmethod
    def _cwd_inside(proc: psutil.Process, workspace_str: str) -> bool:
        try:
            cwd = proc.cwd()
        except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        return cwd == workspace_str or cwd.startswith(workspace_str + os.sep)
