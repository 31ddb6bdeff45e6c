"""
Durable store - document persistence for reports, schedules and deliveries.

Rows are JSON-safe dicts keyed by "id". Two backends share one contract:
an in-process MemoryStore and an SQLAlchemy-backed SQLStore.
"""

import copy
import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import StoreError

logger = logging.getLogger(__name__)

Predicate = Union[Callable[[Dict[str, Any]], bool], Dict[str, Any], None]

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _matches(row: Dict[str, Any], predicate: Predicate) -> bool:
    if predicate is None:
        return True
    if callable(predicate):
        return bool(predicate(row))
    return all(row.get(key) == value for key, value in predicate.items())


class DurableStore(ABC):
    """Abstract document store."""

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    @abstractmethod
    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        """Insert or replace the row with the same id."""
        pass

    @abstractmethod
    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def query(self, table: str, predicate: Predicate = None) -> List[Dict[str, Any]]:
        """Return rows matching a callable or an equality mapping."""
        pass

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> bool:
        pass


class MemoryStore(DurableStore):
    """Store that keeps deep copies of rows in process memory."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        if "id" not in row:
            raise StoreError("Row has no id", table)
        self._tables.setdefault(table, {})[row["id"]] = copy.deepcopy(row)

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        row = self._tables.get(table, {}).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def query(self, table: str, predicate: Predicate = None) -> List[Dict[str, Any]]:
        rows = self._tables.get(table, {}).values()
        return [copy.deepcopy(r) for r in rows if _matches(r, predicate)]

    async def delete(self, table: str, row_id: str) -> bool:
        return self._tables.get(table, {}).pop(row_id, None) is not None


class SQLStore(DurableStore):
    """
    Store backed by a relational database through SQLAlchemy.

    Each table holds (id, data, updated_at) with the row serialized as JSON
    in `data`. Tables are created on first use.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = None
        self._tables: set = set()

    @property
    def engine(self):
        """The SQLAlchemy engine (None until initialized)."""
        return self._engine

    async def initialize(self) -> None:
        """Create the engine."""
        from sqlalchemy import create_engine
        from sqlalchemy.pool import StaticPool

        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool

        try:
            self._engine = create_engine(self.database_url, **kwargs)
        except Exception as e:
            raise StoreError(f"Database connection failed: {e}")
        logger.info(f"SQLStore connected: {self.database_url.split('@')[-1]}")

    async def shutdown(self) -> None:
        if self._engine:
            self._engine.dispose()
            self._engine = None
        self._tables.clear()
        logger.info("SQLStore connection closed")

    def _ensure_table(self, conn, table: str) -> None:
        from sqlalchemy import text

        if table in self._tables:
            return
        if not _TABLE_NAME.match(table):
            raise StoreError("Invalid table name", table)
        conn.execute(text(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id VARCHAR(64) PRIMARY KEY, "
            "data TEXT NOT NULL, "
            "updated_at VARCHAR(40))"
        ))
        self._tables.add(table)

    def _connection(self):
        if self._engine is None:
            raise StoreError("Database not connected")
        return self._engine.begin()

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        from sqlalchemy import text

        if "id" not in row:
            raise StoreError("Row has no id", table)
        params = {
            "id": row["id"],
            "data": json.dumps(row, default=str),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            with self._connection() as conn:
                self._ensure_table(conn, table)
                result = conn.execute(
                    text(f"UPDATE {table} SET data = :data, updated_at = :updated_at WHERE id = :id"),
                    params,
                )
                if result.rowcount == 0:
                    conn.execute(
                        text(f"INSERT INTO {table} (id, data, updated_at) VALUES (:id, :data, :updated_at)"),
                        params,
                    )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Upsert failed: {e}", table)

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        from sqlalchemy import text

        try:
            with self._connection() as conn:
                self._ensure_table(conn, table)
                row = conn.execute(
                    text(f"SELECT data FROM {table} WHERE id = :id"), {"id": row_id}
                ).fetchone()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Query failed: {e}", table)
        return json.loads(row[0]) if row else None

    async def query(self, table: str, predicate: Predicate = None) -> List[Dict[str, Any]]:
        from sqlalchemy import text

        try:
            with self._connection() as conn:
                self._ensure_table(conn, table)
                rows = conn.execute(text(f"SELECT data FROM {table}")).fetchall()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Query failed: {e}", table)
        decoded = [json.loads(r[0]) for r in rows]
        return [r for r in decoded if _matches(r, predicate)]

    async def delete(self, table: str, row_id: str) -> bool:
        from sqlalchemy import text

        try:
            with self._connection() as conn:
                self._ensure_table(conn, table)
                result = conn.execute(text(f"DELETE FROM {table} WHERE id = :id"), {"id": row_id})
                deleted = result.rowcount > 0
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Delete failed: {e}", table)
        return deleted


def create_store(database_url: Optional[str]) -> DurableStore:
    """SQLStore for a configured URL, MemoryStore otherwise."""
    if database_url:
        return SQLStore(database_url)
    return MemoryStore()
