"""
On-disk workspace for one migration.

Layout:
    <temp_root>/<migration_id>/authors.txt        (only with an authors mapping)
    <temp_root>/<migration_id>/<project_path>/.git
"""

import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

from svnmigrate.exceptions import ValidationError

logger = logging.getLogger(__name__)

AUTHORS_FILE = "authors.txt"
# git-svn maps commits without svn:author to "(no author)"
NO_AUTHOR_USER = "(no author)"
NO_AUTHOR_IDENTITY = "no_author <no_author@no_author>"


def _safe_segment(value: str, what: str) -> str:
    path = PurePosixPath(value)
    if not value or path.is_absolute() or ".." in path.parts:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


class Workspace:
    """Path arithmetic and filesystem operations for a migration workspace."""

    def __init__(self, temp_root: Path, migration_id: str, project_path: str):
        self.temp_root = Path(temp_root).resolve()
        self.migration_id = _safe_segment(migration_id, "migration id")
        self.project_path = _safe_segment(project_path, "project path")

    @property
    def root(self) -> Path:
        return self.temp_root / self.migration_id

    @property
    def repo_path(self) -> Path:
        return self.root / self.project_path

    @property
    def authors_file(self) -> Path:
        return self.root / AUTHORS_FILE

    def exists(self) -> bool:
        return self.root.exists()

    def create(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def delete(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
            logger.info(
                f"Deleted workspace {self.root}",
                extra={"migration_id": self.migration_id},
            )

    def write_authors_file(self, mapping: Optional[Dict[str, str]]) -> Optional[Path]:
        """
        Write the git-svn authors file.

        Returns None (and writes nothing) when the mapping is empty. A
        written file always contains an entry for "(no author)".
        """
        if not mapping:
            return None

        entries = dict(mapping)
        entries.setdefault(NO_AUTHOR_USER, NO_AUTHOR_IDENTITY)
        content = "\n".join(f"{svn_user} = {identity}" for svn_user, identity in entries.items())
        self.create()
        self.authors_file.write_text(content + "\n", encoding="utf-8")
        return self.authors_file

    def has_bridge_metadata(self) -> bool:
        """True when the repository was initialized by git-svn."""
        git_dir = self.repo_path / ".git"
        if (git_dir / "svn").is_dir():
            return True
        config = git_dir / "config"
        if not config.is_file():
            return False
        return '[svn-remote "svn"]' in config.read_text(encoding="utf-8", errors="replace")


def delete_workspace_root(temp_root: Path, migration_id: str) -> None:
    """Delete a workspace when the project path is unknown."""
    root = Path(temp_root).resolve() / _safe_segment(migration_id, "migration id")
    if root.exists():
        shutil.rmtree(root, ignore_errors=True)
