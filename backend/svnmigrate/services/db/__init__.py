"""Persistence adapters for migration records and logs."""

from .memory import MemoryLogStore, MemoryMigrationStore
from .protocols import LogStore, MigrationRecordStore

__all__ = [
    "LogStore",
    "MemoryLogStore",
    "MemoryMigrationStore",
    "MigrationRecordStore",
]
