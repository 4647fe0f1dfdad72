"""
Persistence contracts consumed by the migration engines.

Concrete implementations: Supabase (migrations.py) and in-process
memory (memory.py).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from svnmigrate.schemas.migrations import Migration, MigrationLog


@runtime_checkable
class MigrationRecordStore(Protocol):
    """Durable migration records. Last writer wins; no version checks."""

    def create(self, migration: Migration) -> Migration:
        ...

    def update(self, migration_id: str, **fields: Any) -> Optional[Migration]:
        """Apply a partial update; returns the new record or None if absent."""
        ...

    def find_by_id(self, migration_id: str) -> Optional[Migration]:
        ...

    def find_all(self) -> List[Migration]:
        """All records, newest first."""
        ...

    def delete(self, migration_id: str) -> bool:
        ...

    def status_counts(self) -> Dict[str, int]:
        ...


@runtime_checkable
class LogStore(Protocol):
    """Append-only migration log."""

    def append(
        self,
        migration_id: str,
        level: str,
        message: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        ...

    def list(self, migration_id: str, limit: int = 100) -> List[MigrationLog]:
        """Most recent entries first."""
        ...

    def delete_for(self, migration_id: str) -> int:
        ...
