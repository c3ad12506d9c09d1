"""Durable audit storage in the append-only ``audit_entries`` table.

The application role is granted INSERT and SELECT only on this table,
so entries cannot be updated or deleted once written.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from therapychat.shared.database import ConnectionManager, RepositoryError

from .audit_logger import AuditAction, AuditEntity, AuditEntry

logger = logging.getLogger(__name__)


class AuditRepository:
    """PostgreSQL append-only audit table."""

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager

        logger.info("AUDIT_REPOSITORY_INITIALIZED", extra={"backend": "postgresql"})

    def append(self, entry: AuditEntry) -> None:
        """Insert one entry.

        Raises:
            RepositoryError: If the insert fails
        """
        query = """
            INSERT INTO audit_entries (
                entry_id, timestamp, action, entity_type, entity_id,
                actor_id, actor_role, details, previous_hash, entry_hash
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            entry.entry_id,
            entry.timestamp,
            entry.action.value,
            entry.entity_type.value,
            entry.entity_id,
            entry.actor_id,
            entry.actor_role,
            Json(entry.details),
            entry.previous_hash,
            entry.entry_hash,
        )

        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
        except Exception as e:
            logger.error(
                "POSTGRES_APPEND_FAILED",
                extra={"entry_id": entry.entry_id, "error": str(e)}
            )
            raise RepositoryError(f"Failed to append audit entry: {e}") from e

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        query = "SELECT * FROM audit_entries WHERE 1=1"
        params: List[Any] = []

        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type.value)
        if entity_id:
            query += " AND entity_id = %s"
            params.append(entity_id)
        if action:
            query += " AND action = %s"
            params.append(action.value)
        if actor_id:
            query += " AND actor_id = %s"
            params.append(actor_id)
        if start_date:
            query += " AND timestamp >= %s"
            params.append(start_date)
        if end_date:
            query += " AND timestamp <= %s"
            params.append(end_date)

        query += " ORDER BY timestamp DESC LIMIT %s"
        params.append(limit)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()

        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> AuditEntry:
        return AuditEntry(
            entry_id=row["entry_id"],
            timestamp=row["timestamp"],
            action=AuditAction(row["action"]),
            entity_type=AuditEntity(row["entity_type"]),
            entity_id=row["entity_id"],
            actor_id=row["actor_id"],
            actor_role=row["actor_role"],
            details=row["details"] or {},
            previous_hash=row["previous_hash"],
            entry_hash=row["entry_hash"],
        )
