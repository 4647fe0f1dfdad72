"""Migration Pydantic schemas: job payloads, records and API models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MigrationStatus(str, Enum):
    """Migration record state machine."""
    PENDING = "pending"
    RUNNING = "running"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    """Kinds of work a queued job can carry."""
    FULL = "full"
    RESUME = "resume"
    SYNC = "sync"


class ResumeFrom(str, Enum):
    BEGINNING = "beginning"
    LAST_REVISION = "last_revision"


STANDARD_LAYOUT = ("trunk", "branches", "tags")


class Layout(BaseModel):
    """SVN repository layout (paths relative to the repository URL)."""
    trunk: Optional[str] = "trunk"
    branches: Optional[str] = "branches"
    tags: Optional[str] = "tags"

    @property
    def is_standard(self) -> bool:
        """True only when every path equals the conventional name."""
        return (self.trunk, self.branches, self.tags) == STANDARD_LAYOUT


class MigrationOptions(BaseModel):
    keep_temp_files: bool = False


class MigrationRequest(BaseModel):
    """
    Job payload for full, resume and sync jobs.

    Carries credentials, so it is never persisted on the migration record.
    """
    migration_id: str
    svn_url: str
    svn_username: Optional[str] = None
    svn_password: Optional[str] = None
    gitlab_project_id: int
    gitlab_url: str
    gitlab_token: str
    project_name: str
    project_path: str
    layout: Layout = Field(default_factory=Layout)
    authors_mapping: Dict[str, str] = Field(default_factory=dict)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    type: JobType = JobType.FULL
    resume_from: Optional[ResumeFrom] = None
    job_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_percentage(current: Optional[int], total: Optional[int]) -> Optional[int]:
    """Progress percentage, or None when no denominator is known."""
    if not total or total <= 0 or current is None:
        return None
    return min(100, round(current / total * 100))


class Migration(BaseModel):
    """Durable migration record."""
    id: str
    svn_url: str
    gitlab_project_id: int
    gitlab_url: Optional[str] = None
    status: MigrationStatus = MigrationStatus.PENDING
    last_synced_revision: Optional[int] = None
    current_revision: Optional[int] = None
    total_revisions: int = 0
    is_estimated: bool = True
    layout: Layout = Field(default_factory=Layout)
    authors_mapping: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def percentage(self) -> Optional[int]:
        return compute_percentage(self.current_revision, self.total_revisions)

    @property
    def project_path(self) -> Optional[str]:
        return self.metadata.get("project_path")


class MigrationLog(BaseModel):
    """Append-only log line belonging to a migration."""
    migration_id: str
    level: str
    message: str
    timestamp: datetime = Field(default_factory=_utcnow)


# =============================================================================
# API models
# =============================================================================

class SvnCredentials(BaseModel):
    svn_url: str
    svn_username: Optional[str] = None
    svn_password: Optional[str] = None


class PreviewRequest(SvnCredentials):
    layout: Layout = Field(default_factory=Layout)
    authors_mapping: Dict[str, str] = Field(default_factory=dict)


class JobCredentials(BaseModel):
    """Secrets supplied when a job is enqueued."""
    svn_username: Optional[str] = None
    svn_password: Optional[str] = None
    gitlab_token: str


class MigrationCreate(BaseModel):
    """Request model for registering (and optionally starting) a migration."""
    svn_url: str
    svn_username: Optional[str] = None
    svn_password: Optional[str] = None
    gitlab_project_id: int
    gitlab_url: str
    gitlab_token: str
    project_name: str
    project_path: str
    layout: Layout = Field(default_factory=Layout)
    authors_mapping: Dict[str, str] = Field(default_factory=dict)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    auto_start: bool = False


class ResumeRequest(JobCredentials):
    resume_from: ResumeFrom = ResumeFrom.LAST_REVISION


class MigrationResponse(BaseModel):
    id: str
    svn_url: str
    gitlab_project_id: int
    status: MigrationStatus
    last_synced_revision: Optional[int] = None
    current_revision: Optional[int] = None
    total_revisions: int = 0
    is_estimated: bool = True
    percentage: Optional[int] = None
    layout: Layout
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, migration: Migration) -> "MigrationResponse":
        return cls(
            **migration.model_dump(exclude={"authors_mapping", "gitlab_url"}),
            percentage=migration.percentage,
        )


class MigrationLogResponse(BaseModel):
    logs: List[MigrationLog]
