"""
Write-through repository: an in-memory map in front of a durable store.
"""

import logging
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from .database import DurableStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository(Generic[T]):
    """
    Keyed entity store.

    Writes go to the durable store first and only then to memory, so a
    failed write never leaves memory ahead of storage. Reads hit memory and
    fall back to the store on a miss.
    """

    def __init__(
        self,
        store: DurableStore,
        table: str,
        to_row: Callable[[T], dict],
        from_row: Callable[[dict], T],
    ):
        self._store = store
        self._table = table
        self._to_row = to_row
        self._from_row = from_row
        self._items: Dict[str, T] = {}

    @property
    def table(self) -> str:
        return self._table

    async def load(self) -> int:
        """Warm memory from the durable store. Returns number of rows loaded."""
        rows = await self._store.query(self._table)
        for row in rows:
            entity = self._from_row(row)
            self._items[row["id"]] = entity
        logger.debug(f"Loaded {len(rows)} rows from {self._table}")
        return len(rows)

    async def get(self, entity_id: str) -> Optional[T]:
        entity = self._items.get(entity_id)
        if entity is not None:
            return entity
        row = await self._store.get(self._table, entity_id)
        if row is None:
            return None
        entity = self._from_row(row)
        self._items[entity_id] = entity
        return entity

    async def put(self, entity: T) -> T:
        row = self._to_row(entity)
        await self._store.upsert(self._table, row)
        self._items[row["id"]] = entity
        return entity

    async def delete(self, entity_id: str) -> bool:
        deleted = await self._store.delete(self._table, entity_id)
        existed = self._items.pop(entity_id, None) is not None
        return deleted or existed

    def all(self) -> List[T]:
        """Entities currently held in memory."""
        return list(self._items.values())

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._items

    def __len__(self) -> int:
        return len(self._items)
