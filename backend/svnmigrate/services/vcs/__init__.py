"""
Version control plumbing: subprocess execution, git-svn output parsing,
lock recovery and remote lookups.
"""

from .gitlab_client import GitLabClient, build_push_url
from .lock_reconciler import LockReconciler, ReconcileResult
from .process_runner import CancelToken, ProcessHandle, ProcessResult, ProcessRunner, redact
from .progress_parser import EventKind, LineBuffer, ProgressEvent, RevisionProgressParser
from .svn_client import SvnClient

__all__ = [
    "CancelToken",
    "EventKind",
    "GitLabClient",
    "LineBuffer",
    "LockReconciler",
    "ProcessHandle",
    "ProcessResult",
    "ProcessRunner",
    "ProgressEvent",
    "ReconcileResult",
    "RevisionProgressParser",
    "SvnClient",
    "build_push_url",
    "redact",
]
