"""
Entity data access for tool handlers.

Tool handlers only see the DataAccess protocol: create / select / update /
delete / get_or_create against a named entity collection, filtered by
equality on columns.
The hosting server decides what backs it; InMemoryDataStore is the default.
"""

import asyncio
import copy
import uuid
from typing import Any, Mapping, Protocol

Row = dict[str, Any]


class DataAccess(Protocol):
    async def create(self, entity: str, values: Mapping[str, Any]) -> Row: ...

    async def select(self, entity: str, where: Mapping[str, Any] | None = None) -> list[Row]: ...

    async def update(
        self, entity: str, where: Mapping[str, Any], values: Mapping[str, Any]
    ) -> list[Row]: ...

    async def delete(self, entity: str, where: Mapping[str, Any]) -> int: ...

    async def get_or_create(
        self, entity: str, where: Mapping[str, Any], values: Mapping[str, Any]
    ) -> Row:
        """The first row matching where, or a new row of where plus values. Atomic."""
        ...


def _matches(row: Row, where: Mapping[str, Any] | None) -> bool:
    if not where:
        return True
    return all(row.get(column) == value for column, value in where.items())


class InMemoryDataStore:
    """
    Process-local DataAccess implementation.

    Rows get a generated "id" unless one is supplied. Values are copied on
    the way in and rows on the way out, so callers never share row objects
    with the store or with each other.
    """

    def __init__(self):
        self._tables: dict[str, list[Row]] = {}
        self._lock = asyncio.Lock()

    async def create(self, entity: str, values: Mapping[str, Any]) -> Row:
        row = copy.deepcopy(dict(values))
        row.setdefault("id", uuid.uuid4().hex)
        async with self._lock:
            self._tables.setdefault(entity, []).append(row)
            return copy.deepcopy(row)

    async def select(self, entity: str, where: Mapping[str, Any] | None = None) -> list[Row]:
        async with self._lock:
            rows = self._tables.get(entity, [])
            return [copy.deepcopy(r) for r in rows if _matches(r, where)]

    async def update(
        self, entity: str, where: Mapping[str, Any], values: Mapping[str, Any]
    ) -> list[Row]:
        if not where:
            raise ValueError("update requires a filter")
        async with self._lock:
            updated = []
            for row in self._tables.get(entity, []):
                if _matches(row, where):
                    row.update(copy.deepcopy(dict(values)))
                    updated.append(copy.deepcopy(row))
            return updated

    async def delete(self, entity: str, where: Mapping[str, Any]) -> int:
        if not where:
            raise ValueError("delete requires a filter")
        async with self._lock:
            rows = self._tables.get(entity, [])
            kept = [r for r in rows if not _matches(r, where)]
            self._tables[entity] = kept
            return len(rows) - len(kept)

    async def get_or_create(
        self, entity: str, where: Mapping[str, Any], values: Mapping[str, Any]
    ) -> Row:
        if not where:
            raise ValueError("get_or_create requires a filter")
        async with self._lock:
            rows = self._tables.setdefault(entity, [])
            for row in rows:
                if _matches(row, where):
                    return copy.deepcopy(row)
            row = copy.deepcopy({**values, **where})
            row.setdefault("id", uuid.uuid4().hex)
            rows.append(row)
            return copy.deepcopy(row)
