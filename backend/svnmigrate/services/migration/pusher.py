"""
Push a git-svn working copy to its GitLab project.

git-svn imports SVN branches and tags as remote-tracking refs, so they are
promoted to local branches/tags first; then every branch and every tag is
pushed to the `gitlab` remote.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from svnmigrate.exceptions import ConflictError, ProcessExitError
from svnmigrate.schemas.migrations import MigrationRequest
from svnmigrate.services.vcs.gitlab_client import GitLabClient
from svnmigrate.services.vcs.process_runner import CancelToken, LineCallback, ProcessRunner

logger = logging.getLogger(__name__)

REMOTE_NAME = "gitlab"
SVN_REMOTE_PREFIX = "refs/remotes/origin/"
SVN_TAG_PREFIX = SVN_REMOTE_PREFIX + "tags/"
# Peg-revision refs such as "feature@123" are git-svn bookkeeping
REF_EXCLUSIONS = ("@",)
PUSH_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "[remote rejected]")

GitLabClientFactory = Callable[[str, str], GitLabClient]


class GitLabPusher:
    def __init__(
        self,
        runner: ProcessRunner,
        client_factory: GitLabClientFactory = GitLabClient,
    ):
        self.runner = runner
        self.client_factory = client_factory

    def push(
        self,
        repo_path: Path,
        request: MigrationRequest,
        on_line: Optional[LineCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        """
        Push all branches and tags.

        Raises:
            ConflictError: GitLab rejected the push
            NotFoundError / RemoteConnectionError: project lookup failed
        """
        client = self.client_factory(request.gitlab_url, request.gitlab_token)
        push_url = client.resolve_push_url(request.gitlab_project_id)
        secrets = [request.gitlab_token, push_url]

        self._ensure_remote(repo_path, push_url, secrets)
        self.promote_svn_refs(repo_path)

        if on_line:
            on_line("stdout", f"Pushing to GitLab project {request.gitlab_project_id}...")

        for args in (["push", REMOTE_NAME, "--all"], ["push", REMOTE_NAME, "--tags"]):
            try:
                self.runner.run(
                    "git", args,
                    cwd=str(repo_path),
                    on_line=on_line,
                    cancel_token=cancel_token,
                    secrets=secrets,
                )
            except ProcessExitError as e:
                tail = "\n".join(e.stderr_tail)
                if any(marker in tail for marker in PUSH_REJECTED_MARKERS):
                    raise ConflictError(f"GitLab rejected push: {e.stderr_tail[-1]}") from e
                raise

    def _ensure_remote(self, repo_path: Path, push_url: str, secrets: List[str]) -> None:
        """Add the remote, or re-point it when a previous attempt already added it."""
        remotes: List[str] = []
        self.runner.run(
            "git", ["remote"],
            cwd=str(repo_path),
            on_line=lambda stream, line: remotes.append(line.strip()) if stream == "stdout" else None,
        )
        action = "set-url" if REMOTE_NAME in remotes else "add"
        self.runner.run(
            "git", ["remote", action, REMOTE_NAME, push_url],
            cwd=str(repo_path),
            secrets=secrets,
        )

    def promote_svn_refs(self, repo_path: Path) -> int:
        """
        Copy refs/remotes/origin/* to local branches and tags.

        trunk is skipped (it is already the local default branch). Returns
        the number of refs written.
        """
        refs: List[tuple[str, str]] = []

        def on_line(stream: str, line: str) -> None:
            if stream != "stdout":
                return
            parts = line.split()
            if len(parts) == 2:
                refs.append((parts[0], parts[1]))

        self.runner.run(
            "git",
            ["for-each-ref", "--format=%(objectname) %(refname)", SVN_REMOTE_PREFIX],
            cwd=str(repo_path),
            on_line=on_line,
        )

        written = 0
        for sha, ref in refs:
            if any(exclusion in ref for exclusion in REF_EXCLUSIONS):
                continue
            if ref.startswith(SVN_TAG_PREFIX):
                target = "refs/tags/" + ref[len(SVN_TAG_PREFIX):]
            else:
                name = ref[len(SVN_REMOTE_PREFIX):]
                if name == "trunk":
                    continue
                target = "refs/heads/" + name
            self.runner.run("git", ["update-ref", target, sha], cwd=str(repo_path))
            written += 1

        if written:
            logger.info(f"Promoted {written} svn refs in {repo_path}")
        return written
