"""
Supabase-backed migration records and logs.

Tables (see backend/sql/svn_migrations.sql):
- svn_migrations: one row per migration, JSON columns for layout,
  authors mapping and metadata
- svn_migration_logs: append-only log lines, cascade-deleted with the
  migration
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from svnmigrate.schemas.migrations import Layout, Migration, MigrationLog
from .base import BaseDbService

logger = logging.getLogger(__name__)

MIGRATION_FIELDS = {
    "svn_url",
    "gitlab_project_id",
    "gitlab_url",
    "status",
    "last_synced_revision",
    "current_revision",
    "total_revisions",
    "is_estimated",
    "layout",
    "authors_mapping",
    "metadata",
    "updated_at",
}


class SupabaseMigrationStore(BaseDbService):
    """MigrationRecordStore over the svn_migrations table."""

    table_name = "svn_migrations"

    def __init__(self, supabase: Client):
        super().__init__(supabase)

    def create(self, migration: Migration) -> Migration:
        row = self._dict_to_row(migration.model_dump(mode="json"))
        created = self._insert_one(row)
        logger.info(
            f"Created migration record {migration.id}",
            extra={"migration_id": migration.id},
        )
        return self._row_to_dict(created) if created else migration

    def update(self, migration_id: str, **fields: Any) -> Optional[Migration]:
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        if isinstance(fields.get("layout"), Layout):
            fields["layout"] = fields["layout"].model_dump()
        if "status" in fields and hasattr(fields["status"], "value"):
            fields["status"] = fields["status"].value

        update_data = self._prepare_update_data(fields, MIGRATION_FIELDS)
        row = self._update_one(migration_id, self._dict_to_row(update_data))
        return self._row_to_dict(row) if row else None

    def find_by_id(self, migration_id: str) -> Optional[Migration]:
        return self._get_one({"id": migration_id})

    def find_all(self) -> List[Migration]:
        return self._get_many(order_by="created_at", order_desc=True)

    def delete(self, migration_id: str) -> bool:
        return self._delete_where("id", migration_id) > 0

    def status_counts(self) -> Dict[str, int]:
        response = self._table().select("status").execute()
        return dict(Counter(row["status"] for row in response.data or []))

    @staticmethod
    def _dict_to_row(data: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(data)
        if "layout" in row:
            row["layout_config"] = row.pop("layout")
        return row

    def _row_to_dict(self, row: dict) -> Migration:
        data = dict(row)
        data["layout"] = data.pop("layout_config", None) or {}
        data["authors_mapping"] = data.get("authors_mapping") or {}
        data["metadata"] = data.get("metadata") or {}
        return Migration.model_validate(data)


class SupabaseLogStore(BaseDbService):
    """LogStore over the svn_migration_logs table."""

    table_name = "svn_migration_logs"

    def append(
        self,
        migration_id: str,
        level: str,
        message: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        timestamp = timestamp or datetime.now(timezone.utc)
        self._insert_one({
            "migration_id": migration_id,
            "level": level,
            "message": message,
            "timestamp": timestamp.isoformat(),
        })

    def list(self, migration_id: str, limit: int = 100) -> List[MigrationLog]:
        return self._get_many(
            filters={"migration_id": migration_id},
            order_by="timestamp",
            order_desc=True,
            limit=limit,
        )

    def delete_for(self, migration_id: str) -> int:
        return self._delete_where("migration_id", migration_id)

    def _row_to_dict(self, row: dict) -> MigrationLog:
        return MigrationLog.model_validate(row)
