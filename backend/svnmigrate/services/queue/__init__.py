"""Two-lane job queue: Celery/Redis backend and in-process fallback."""

from .base import Job, JobQueue, JobStatus, LanePolicy, default_policies
from .memory import InMemoryJobQueue

__all__ = [
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "JobStatus",
    "LanePolicy",
    "default_policies",
]
