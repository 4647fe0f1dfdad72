"""
Runtime configuration.

All settings come from the environment (optionally a local .env file).
Read once per process via get_settings().
"""

import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings snapshot."""

    redis_url: str
    supabase_url: str | None
    supabase_key: str | None
    temp_root: Path
    log_dir: Path
    gitlab_api_url: str

    # Queue lanes
    queue_backend: str  # auto | celery | memory
    record_store: str  # auto | supabase | memory
    max_concurrent_migrations: int
    max_concurrent_syncs: int
    max_attempts: int
    migration_backoff_seconds: int
    sync_backoff_seconds: int
    job_retention_seconds: int

    # Subprocess behavior
    git_svn_log_window: int
    kill_grace_seconds: float

    @classmethod
    def from_env(cls) -> "Settings":
        default_temp = Path(tempfile.gettempdir()) / "gitlab-svn-migrations"
        default_logs = Path(__file__).parent.parent.parent / "logs"
        return cls(
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or None,
            temp_root=Path(os.environ.get("MIGRATION_TEMP_DIR") or default_temp),
            log_dir=Path(os.environ.get("LOG_DIR") or default_logs),
            gitlab_api_url=os.environ.get("GITLAB_API_URL", "https://gitlab.com").rstrip("/"),
            queue_backend=os.environ.get("QUEUE_BACKEND", "auto").lower(),
            record_store=os.environ.get("RECORD_STORE", "auto").lower(),
            max_concurrent_migrations=_int_env("MAX_CONCURRENT_MIGRATIONS", 2),
            max_concurrent_syncs=_int_env("MAX_CONCURRENT_SYNCS", 3),
            max_attempts=_int_env("MIGRATION_MAX_ATTEMPTS", 3),
            migration_backoff_seconds=_int_env("MIGRATION_BACKOFF_SECONDS", 5),
            sync_backoff_seconds=_int_env("SYNC_BACKOFF_SECONDS", 3),
            job_retention_seconds=_int_env("JOB_RETENTION_SECONDS", 7 * 24 * 60 * 60),
            git_svn_log_window=_int_env("GIT_SVN_LOG_WINDOW", 100),
            kill_grace_seconds=float(os.environ.get("PROCESS_KILL_GRACE_SECONDS", "5")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide Settings instance."""
    return Settings.from_env()
