"""
In-process record and log stores.

Same contract as the Supabase stores; used by the non-durable queue
fallback and by tests. Nothing survives a restart.
"""

import threading
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from svnmigrate.schemas.migrations import Migration, MigrationLog


class MemoryMigrationStore:
    def __init__(self):
        self._records: Dict[str, Migration] = {}
        self._lock = threading.Lock()

    def create(self, migration: Migration) -> Migration:
        with self._lock:
            self._records[migration.id] = migration.model_copy(deep=True)
            return migration.model_copy(deep=True)

    def update(self, migration_id: str, **fields: Any) -> Optional[Migration]:
        with self._lock:
            current = self._records.get(migration_id)
            if current is None:
                return None
            fields.setdefault("updated_at", datetime.now(timezone.utc))
            data = current.model_dump()
            data.update(fields)
            updated = Migration.model_validate(data)
            self._records[migration_id] = updated
            return updated.model_copy(deep=True)

    def find_by_id(self, migration_id: str) -> Optional[Migration]:
        with self._lock:
            record = self._records.get(migration_id)
            return record.model_copy(deep=True) if record else None

    def find_all(self) -> List[Migration]:
        with self._lock:
            records = [r.model_copy(deep=True) for r in self._records.values()]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def delete(self, migration_id: str) -> bool:
        with self._lock:
            return self._records.pop(migration_id, None) is not None

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(r.status.value for r in self._records.values()))


class MemoryLogStore:
    def __init__(self):
        self._logs: Dict[str, List[MigrationLog]] = defaultdict(list)
        self._lock = threading.Lock()

    def append(
        self,
        migration_id: str,
        level: str,
        message: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        entry = MigrationLog(
            migration_id=migration_id,
            level=level,
            message=message,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        with self._lock:
            self._logs[migration_id].append(entry)

    def list(self, migration_id: str, limit: int = 100) -> List[MigrationLog]:
        with self._lock:
            entries = list(self._logs.get(migration_id, []))
        return list(reversed(entries))[:limit]

    def delete_for(self, migration_id: str) -> int:
        with self._lock:
            return len(self._logs.pop(migration_id, []))
