"""
Base database service with unified patterns.

Provides:
- Unified single/multiple record fetching
- Consistent datetime handling
- Standardized error detection

Usage:
    class MigrationRepository(BaseDbService):
        table_name = "svn_migrations"

        def _row_to_dict(self, row: dict) -> dict:
            return {...}
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import Client

logger = logging.getLogger(__name__)


class BaseDbService:
    """
    Base class for Supabase-backed stores.

    Subclasses should:
    - Set `table_name` class attribute
    - Override `_row_to_dict()` / `_dict_to_row()` for conversion
    """

    table_name: str = ""  # Subclass must override

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _table(self):
        """Get table reference."""
        return self.supabase.table(self.table_name)

    # =========================================================================
    # Unified Record Fetching
    # =========================================================================

    def _get_one(self, filters: Dict[str, Any], select: str = "*") -> Optional[Any]:
        """
        Get a single record, or None when nothing matches.

        Uses .limit(1) instead of .single() to avoid exceptions on empty results.
        """
        try:
            query = self._table().select(select)
            for key, value in filters.items():
                query = query.eq(key, value)

            response = query.limit(1).execute()

            if response.data:
                return self._row_to_dict(response.data[0])
            return None

        except Exception as e:
            if self._is_not_found_error(e):
                return None
            logger.error(
                f"Error fetching {self.table_name}",
                extra={"filters": filters, "error": str(e)},
            )
            raise

    def _get_many(
        self,
        filters: Optional[Dict[str, Any]] = None,
        select: str = "*",
        order_by: Optional[str] = None,
        order_desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Get multiple records with optional filtering and ordering."""
        query = self._table().select(select)

        if filters:
            for key, value in filters.items():
                query = query.eq(key, value)

        if order_by:
            query = query.order(order_by, desc=order_desc)

        if limit:
            query = query.limit(limit)

        response = query.execute()
        return [self._row_to_dict(row) for row in response.data or []]

    # =========================================================================
    # Write Helpers
    # =========================================================================

    @staticmethod
    def _prepare_update_data(
        updates: Dict[str, Any],
        allowed_fields: Optional[set] = None,
    ) -> Dict[str, Any]:
        """
        Prepare update data with datetime conversion and field filtering.

        Unlike inserts, explicit None values are kept so that fields can be
        cleared.
        """
        update_data = {}

        for key, value in updates.items():
            if allowed_fields and key not in allowed_fields:
                continue

            if isinstance(value, datetime):
                value = value.isoformat()

            update_data[key] = value

        return update_data

    def _insert_one(self, row: Dict[str, Any]) -> Optional[dict]:
        response = self._table().insert(row).execute()
        return response.data[0] if response.data else None

    def _update_one(self, record_id: str, updates: Dict[str, Any], id_field: str = "id") -> Optional[dict]:
        """Update a single record by ID, returning the updated row."""
        if not updates:
            return None

        response = (
            self._table()
            .update(updates)
            .eq(id_field, record_id)
            .execute()
        )
        return response.data[0] if response.data else None

    def _delete_where(self, field: str, value: Any) -> int:
        """Delete matching records, returning how many were removed."""
        response = self._table().delete().eq(field, value).execute()
        return len(response.data or [])

    # =========================================================================
    # Row Conversion (subclass should override)
    # =========================================================================

    def _row_to_dict(self, row: dict) -> Any:
        return row

    # =========================================================================
    # Error Detection
    # =========================================================================

    @staticmethod
    def _is_not_found_error(e: Exception) -> bool:
        """Check if exception is a 'not found' error (PGRST116)."""
        return "PGRST116" in str(e)
