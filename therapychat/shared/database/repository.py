"""Base repository for PostgreSQL tables.

Rows are read as dicts (``RealDictCursor``). Every read-modify-write goes
through ``update_locked`` which holds a row lock for the duration of the
mutation so concurrent writers see clean last-writer-wins transitions.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

import psycopg2

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository.

    Subclasses map rows to entities; this class owns the SQL shapes,
    transactions and error translation.
    """

    id_column = "id"

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
    ):
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @abstractmethod
    def _row_to_entity(self, row: Dict[str, Any]) -> T:
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Column name to value mapping; omit generated columns."""
        pass

    def find_by_id(self, entity_id: Any) -> Optional[T]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT * FROM {self.table_name} WHERE {self.id_column} = %s",
                    (entity_id,)
                )
                row = cur.fetchone()

        return self._row_to_entity(row) if row else None

    def find_where(
        self,
        clause: str,
        params: Sequence[Any] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        query = f"SELECT * FROM {self.table_name} WHERE {clause}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, tuple(params))
                rows = cur.fetchall()

        return [self._row_to_entity(row) for row in rows]

    def count_where(self, clause: str, params: Sequence[Any] = ()) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS total FROM {self.table_name} WHERE {clause}",
                    tuple(params)
                )
                row = cur.fetchone()

        return row["total"] if row else 0

    def insert(self, entity: T) -> T:
        """Insert a new row and return the stored entity.

        Raises:
            DuplicateError: If the primary or a unique key already exists
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))

        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )

        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, list(params.values()))
                row = cur.fetchone()
        except psycopg2.IntegrityError as e:
            logger.warning(
                "REPOSITORY_DUPLICATE",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise DuplicateError(str(e)) from e

        return self._row_to_entity(row)

    def update_locked(
        self,
        entity_id: Any,
        mutate: Callable[[T], T],
    ) -> Tuple[T, T]:
        """Atomically apply ``mutate`` to one row.

        The row is read with ``FOR UPDATE``; an exception raised by
        ``mutate`` rolls the transaction back and propagates.

        Returns:
            (previous entity, stored entity)

        Raises:
            NotFoundError: If no row has this id
        """
        with self.connection_manager.transaction() as cur:
            cur.execute(
                f"SELECT * FROM {self.table_name} WHERE {self.id_column} = %s FOR UPDATE",
                (entity_id,)
            )
            row = cur.fetchone()
            if row is None:
                raise NotFoundError(f"{self.table_name} {entity_id} not found")

            previous = self._row_to_entity(row)
            updated = mutate(previous)

            params = self._entity_to_params(updated)
            params.pop(self.id_column, None)
            assignments = ", ".join(f"{col} = %s" for col in params)
            cur.execute(
                f"UPDATE {self.table_name} SET {assignments} "
                f"WHERE {self.id_column} = %s RETURNING *",
                list(params.values()) + [entity_id]
            )
            stored = self._row_to_entity(cur.fetchone())

        return previous, stored
