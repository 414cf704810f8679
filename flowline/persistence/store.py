"""Durable store abstraction: a transactional key-row store."""

from __future__ import annotations

from typing import Any, AsyncContextManager, Awaitable, Callable, Optional, Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Row(BaseModel):
    """A stored value with its optimistic version counter."""

    table: str
    key: str
    version: int
    data: Any


class Transaction(Protocol):
    """Operations available inside one serializable transaction.

    Reads observe earlier writes of the same transaction. ``put`` with
    ``expected_version=0`` inserts and fails with ``Conflict`` if the row
    exists; any other expected version must match the stored one.
    """

    async def get(self, table: str, key: str, for_update: bool = False) -> Optional[Row]:
        """Read one row, optionally taking a row lock."""

    async def put(
        self, table: str, key: str, data: Any, expected_version: Optional[int] = None
    ) -> Row:
        """Insert or update a row and return it with its new version."""

    async def delete(self, table: str, key: str, expected_version: Optional[int] = None) -> bool:
        """Delete a row; returns ``False`` if it did not exist."""

    async def range(
        self,
        table: str,
        prefix: str = "",
        limit: Optional[int] = None,
        reverse: bool = False,
    ) -> list[Row]:
        """Rows of ``table`` whose key starts with ``prefix``, ordered by key."""


class Store(Protocol):
    """Protocol for durable store backends."""

    def transaction(self) -> AsyncContextManager[Transaction]:
        """Open a transaction that commits on clean exit and rolls back on error."""

    async def tx(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` inside one transaction and return its result."""

    async def get(self, table: str, key: str) -> Optional[Row]:
        """Read one row in its own transaction."""

    async def put(
        self, table: str, key: str, data: Any, expected_version: Optional[int] = None
    ) -> Row:
        """Write one row in its own transaction."""

    async def delete(self, table: str, key: str, expected_version: Optional[int] = None) -> bool:
        """Delete one row in its own transaction."""

    async def range(
        self, table: str, prefix: str = "", limit: Optional[int] = None, reverse: bool = False
    ) -> list[Row]:
        """Range read in its own transaction."""

    async def close(self) -> None:
        """Release backend resources."""


class StoreMixin:
    """Single-operation conveniences built on ``transaction()``."""

    def transaction(self) -> AsyncContextManager[Transaction]:  # pragma: no cover - abstract
        raise NotImplementedError

    async def tx(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self.transaction() as tx:
            return await fn(tx)

    async def get(self, table: str, key: str) -> Optional[Row]:
        async with self.transaction() as tx:
            return await tx.get(table, key)

    async def put(
        self, table: str, key: str, data: Any, expected_version: Optional[int] = None
    ) -> Row:
        async with self.transaction() as tx:
            return await tx.put(table, key, data, expected_version=expected_version)

    async def delete(self, table: str, key: str, expected_version: Optional[int] = None) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(table, key, expected_version=expected_version)

    async def range(
        self, table: str, prefix: str = "", limit: Optional[int] = None, reverse: bool = False
    ) -> list[Row]:
        async with self.transaction() as tx:
            return await tx.range(table, prefix, limit=limit, reverse=reverse)

    async def close(self) -> None:
        pass
