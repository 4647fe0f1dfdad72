"""Migration engines and the orchestrator that drives them."""

from .cancellation import LocalCancellation, RedisCancellation
from .engine import MigrationEngine
from .orchestrator import MigrationOrchestrator
from .pusher import GitLabPusher
from .sync import SyncEngine
from .workspace import Workspace

__all__ = [
    "GitLabPusher",
    "LocalCancellation",
    "MigrationEngine",
    "MigrationOrchestrator",
    "RedisCancellation",
    "SyncEngine",
    "Workspace",
]
