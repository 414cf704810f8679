"""In-memory implementation of the durable store."""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from ..errors import Conflict
from .store import Row, StoreMixin


class _InMemoryTransaction:
    """Buffers writes until commit so a failed transaction leaves no trace."""

    def __init__(self, tables: Dict[str, Dict[str, Row]]) -> None:
        self._tables = tables
        self._writes: Dict[Tuple[str, str], Optional[Row]] = {}

    def _current(self, table: str, key: str) -> Optional[Row]:
        if (table, key) in self._writes:
            return self._writes[(table, key)]
        return self._tables[table].get(key)

    async def get(self, table: str, key: str, for_update: bool = False) -> Optional[Row]:
        row = self._current(table, key)
        return row.model_copy(deep=True) if row is not None else None

    async def put(
        self, table: str, key: str, data: Any, expected_version: Optional[int] = None
    ) -> Row:
        existing = self._current(table, key)
        current_version = existing.version if existing is not None else 0
        if expected_version is not None and expected_version != current_version:
            raise Conflict(
                f"Version mismatch on {table}/{key}: expected {expected_version}, found {current_version}"
            )
        row = Row(table=table, key=key, version=current_version + 1, data=copy.deepcopy(data))
        self._writes[(table, key)] = row
        return row.model_copy(deep=True)

    async def delete(self, table: str, key: str, expected_version: Optional[int] = None) -> bool:
        existing = self._current(table, key)
        if existing is None:
            return False
        if expected_version is not None and expected_version != existing.version:
            raise Conflict(
                f"Version mismatch on {table}/{key}: expected {expected_version}, found {existing.version}"
            )
        self._writes[(table, key)] = None
        return True

    async def range(
        self,
        table: str,
        prefix: str = "",
        limit: Optional[int] = None,
        reverse: bool = False,
    ) -> list[Row]:
        keys = {k for k in self._tables[table] if k.startswith(prefix)}
        keys.update(k for (t, k) in self._writes if t == table and k.startswith(prefix))
        rows = []
        for key in sorted(keys, reverse=reverse):
            row = self._current(table, key)
            if row is None:
                continue
            rows.append(row.model_copy(deep=True))
            if limit is not None and len(rows) >= limit:
                break
        return rows

    def commit(self) -> None:
        for (table, key), row in self._writes.items():
            if row is None:
                self._tables[table].pop(key, None)
            else:
                self._tables[table][key] = row
        self._writes.clear()


class InMemoryStore(StoreMixin):
    """Store rows in local memory.

    Useful for tests or when no database is configured. Transactions are
    serialized by a single lock, which trivially gives SERIALIZABLE
    isolation and row locking. Data is not persisted across restarts.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Row]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        task = asyncio.current_task()
        if task is not None and self._owner is task:
            raise RuntimeError("Nested transactions are not supported")
        async with self._lock:
            self._owner = task
            try:
                tx = _InMemoryTransaction(self._tables)
                yield tx
                tx.commit()
            finally:
                self._owner = None

    def table_size(self, table: str) -> int:
        return len(self._tables[table])
