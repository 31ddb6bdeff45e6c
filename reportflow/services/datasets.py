"""
Dataset loaders - fetch the rows of one dataset definition.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import DatasetDefinition

logger = logging.getLogger(__name__)


def _project(row: Dict[str, Any], columns: List[str]) -> Dict[str, Any]:
    if not columns or "*" in columns:
        return dict(row)
    return {c: row.get(c) for c in columns}


class DatasetLoader(ABC):
    """Loads the ordered row set for a dataset."""

    @abstractmethod
    async def load(
        self,
        dataset: DatasetDefinition,
        parameters: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        pass


class MemoryDatasetLoader(DatasetLoader):
    """Serves rows from in-memory tables, keyed by table name."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._tables: Dict[str, List[Dict[str, Any]]] = dict(tables or {})

    def add_table(self, name: str, rows: List[Dict[str, Any]]) -> None:
        self._tables[name] = list(rows)

    async def load(
        self,
        dataset: DatasetDefinition,
        parameters: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        if dataset.table_name not in self._tables:
            raise LookupError(f"Unknown table: {dataset.table_name}")
        rows = [_project(r, dataset.columns) for r in self._tables[dataset.table_name]]
        if dataset.limit:
            rows = rows[:dataset.limit]
        return rows


class SQLDatasetLoader(DatasetLoader):
    """
    Selects dataset columns from a relational table.

    Scalar parameters whose names match a declared column are bound as
    equality conditions. The query runs in a worker thread.
    """

    def __init__(self, engine):
        self._engine = engine

    def build_query(self, dataset: DatasetDefinition, parameters: Dict[str, Any]):
        from sqlalchemy import column, literal_column, select, table

        if not dataset.columns or "*" in dataset.columns:
            stmt = select(literal_column("*")).select_from(table(dataset.table_name))
        else:
            cols = [column(c) for c in dataset.columns]
            stmt = select(*cols).select_from(table(dataset.table_name, *[column(c) for c in dataset.columns]))

        for name, value in parameters.items():
            if name in dataset.columns and isinstance(value, (str, int, float, bool)):
                stmt = stmt.where(column(name) == value)

        if dataset.limit:
            stmt = stmt.limit(dataset.limit)
        return stmt

    def _fetch(self, stmt) -> List[Dict[str, Any]]:
        with self._engine.connect() as conn:
            result = conn.execute(stmt)
            return [dict(row._mapping) for row in result.fetchall()]

    async def load(
        self,
        dataset: DatasetDefinition,
        parameters: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        stmt = self.build_query(dataset, parameters)
        rows = await asyncio.to_thread(self._fetch, stmt)
        logger.debug(f"Loaded {len(rows)} rows from {dataset.table_name}")
        return rows
