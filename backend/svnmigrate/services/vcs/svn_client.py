"""
Read-only Subversion introspection.

Wraps `svn info`, `svn log --quiet` and `svn list`. Output is consumed
line by line through ProcessRunner, never accumulated as one string.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from svnmigrate.exceptions import ProcessExitError, RemoteConnectionError
from svnmigrate.schemas.migrations import Layout
from .process_runner import ProcessRunner

logger = logging.getLogger(__name__)

INFO_LINE_RE = re.compile(r"^([^:]+):\s*(.+)$")
# r123 | username | 2024-01-01 12:00:00 +0000 (Mon, 01 Jan 2024) | 1 line
LOG_AUTHOR_RE = re.compile(r"^r\d+\s*\|\s*([^|]+?)\s*\|")

SVN_TIMEOUT = 120


def parse_info_line(line: str) -> Optional[tuple[str, str]]:
    """'Last Changed Rev: 42' -> ('last_changed_rev', '42')"""
    match = INFO_LINE_RE.match(line)
    if not match:
        return None
    key = re.sub(r"\s+", "_", match.group(1).strip().lower())
    return key, match.group(2).strip()


class SvnClient:
    """Thin `svn` CLI wrapper used for connection tests and estimates."""

    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    @staticmethod
    def _auth_args(username: Optional[str], password: Optional[str]) -> List[str]:
        args = ["--non-interactive"]
        if username:
            args += ["--username", username]
        if username and password:
            args += ["--password", password, "--no-auth-cache"]
        return args

    def info(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Parse `svn info` output into a dict with snake_case keys.

        Raises:
            RemoteConnectionError: server unreachable or credentials rejected
        """
        info: Dict[str, str] = {}

        def on_line(stream: str, line: str) -> None:
            if stream == "stdout":
                parsed = parse_info_line(line)
                if parsed:
                    info[parsed[0]] = parsed[1]

        try:
            self.runner.run(
                "svn",
                ["info", url, *self._auth_args(username, password)],
                on_line=on_line,
                timeout=SVN_TIMEOUT,
                secrets=[password],
            )
        except ProcessExitError as e:
            reason = e.stderr_tail[-1] if e.stderr_tail else f"exit code {e.code}"
            raise RemoteConnectionError("SVN", reason) from e
        return info

    def cache_credentials(
        self,
        url: str,
        username: str,
        password: str,
        config_dir: Path,
    ) -> None:
        """
        Store credentials in a private svn config dir so that git-svn,
        which only prompts for passwords, can authenticate non-interactively.

        Raises:
            RemoteConnectionError: credentials rejected
        """
        config_dir.mkdir(parents=True, exist_ok=True)
        args = [
            "info", url,
            "--non-interactive",
            "--config-dir", str(config_dir),
            "--username", username,
            "--password", password,
            "--config-option", "servers:global:store-passwords=yes",
            "--config-option", "servers:global:store-plaintext-passwords=yes",
        ]
        try:
            self.runner.run("svn", args, timeout=SVN_TIMEOUT, secrets=[password])
        except ProcessExitError as e:
            reason = e.stderr_tail[-1] if e.stderr_tail else f"exit code {e.code}"
            raise RemoteConnectionError("SVN", reason) from e

    def test_connection(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Dict[str, str]:
        return self.info(url, username, password)

    def head_revision(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> int:
        info = self.info(url, username, password)
        raw = info.get("revision") or info.get("last_changed_rev")
        if raw is None or not raw.isdigit():
            raise RemoteConnectionError("SVN", f"no revision in svn info for {url}")
        return int(raw)

    def extract_users(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> List[str]:
        """Distinct commit authors, sorted."""
        users: set[str] = set()

        def on_line(stream: str, line: str) -> None:
            if stream != "stdout":
                return
            match = LOG_AUTHOR_RE.match(line)
            if match and match.group(1):
                users.add(match.group(1))

        try:
            self.runner.run(
                "svn",
                ["log", url, "--quiet", *self._auth_args(username, password)],
                on_line=on_line,
                secrets=[password],
            )
        except ProcessExitError as e:
            reason = e.stderr_tail[-1] if e.stderr_tail else f"exit code {e.code}"
            raise RemoteConnectionError("SVN", f"failed to extract users: {reason}") from e
        return sorted(users)

    def list_directory(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> List[str]:
        """Directory entries without trailing slashes; empty on failure."""
        items: List[str] = []

        def on_line(stream: str, line: str) -> None:
            if stream == "stdout" and line.strip():
                items.append(line.strip().rstrip("/"))

        try:
            self.runner.run(
                "svn",
                ["list", url, *self._auth_args(username, password)],
                on_line=on_line,
                timeout=SVN_TIMEOUT,
                secrets=[password],
            )
        except ProcessExitError as e:
            logger.debug(f"svn list {url} failed: {e}")
            return []
        return items

    def preview(
        self,
        url: str,
        username: Optional[str],
        password: Optional[str],
        layout: Optional[Layout],
        authors_mapping: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        """
        Summarize what a migration would import.

        Only the connection check is fatal; branch, tag and user listing
        failures leave their fields empty.
        """
        preview: Dict[str, Any] = {
            "svn_info": self.test_connection(url, username, password),
            "branches": [],
            "tags": [],
            "estimated_size": "Unknown",
            "users_mapped": len(authors_mapping or {}),
            "users_total": 0,
        }
        base = url.rstrip("/")
        try:
            if layout and layout.branches:
                preview["branches"] = self.list_directory(f"{base}/{layout.branches}", username, password)
            if layout and layout.tags:
                preview["tags"] = self.list_directory(f"{base}/{layout.tags}", username, password)
            preview["users_total"] = len(self.extract_users(url, username, password))
        except RemoteConnectionError as e:
            logger.warning(f"Preview generation incomplete for {url}: {e}")
        return preview
