"""SQL implementation of the durable store (SQLite, PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import JSON, Column, delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import Field, SQLModel

from ..errors import Conflict
from .store import Row, StoreMixin

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreRow(SQLModel, table=True):
    """One key-row of the flowline store."""

    __tablename__ = "flowline_rows"

    table_name: str = Field(primary_key=True, max_length=64)
    key: str = Field(primary_key=True, max_length=512)
    version: int = Field(default=1)
    data: dict = Field(sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=_utcnow)


_ROWS = StoreRow.__table__


class _SQLTransaction:
    def __init__(self, session: AsyncSession, lock_rows: bool) -> None:
        self._session = session
        self._lock_rows = lock_rows

    @staticmethod
    def _to_row(record: Any) -> Row:
        return Row(
            table=record.table_name, key=record.key, version=record.version, data=record.data
        )

    async def get(self, table: str, key: str, for_update: bool = False) -> Optional[Row]:
        stmt = select(_ROWS).where(_ROWS.c.table_name == table, _ROWS.c.key == key)
        if for_update and self._lock_rows:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        record = result.first()
        return self._to_row(record) if record is not None else None

    async def put(
        self, table: str, key: str, data: Any, expected_version: Optional[int] = None
    ) -> Row:
        if expected_version is None:
            existing = await self.get(table, key, for_update=True)
            expected_version = existing.version if existing is not None else 0

        if expected_version == 0:
            try:
                await self._session.execute(
                    insert(_ROWS).values(
                        table_name=table, key=key, version=1, data=data, updated_at=_utcnow()
                    )
                )
            except IntegrityError as exc:
                raise Conflict(f"Row {table}/{key} already exists") from exc
            return Row(table=table, key=key, version=1, data=data)

        result = await self._session.execute(
            update(_ROWS)
            .where(
                _ROWS.c.table_name == table,
                _ROWS.c.key == key,
                _ROWS.c.version == expected_version,
            )
            .values(version=expected_version + 1, data=data, updated_at=_utcnow())
        )
        if result.rowcount == 0:
            raise Conflict(f"Version mismatch on {table}/{key}: expected {expected_version}")
        return Row(table=table, key=key, version=expected_version + 1, data=data)

    async def delete(self, table: str, key: str, expected_version: Optional[int] = None) -> bool:
        stmt = delete(_ROWS).where(_ROWS.c.table_name == table, _ROWS.c.key == key)
        if expected_version is not None:
            stmt = stmt.where(_ROWS.c.version == expected_version)
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if expected_version is not None and await self.get(table, key) is not None:
                raise Conflict(f"Version mismatch on {table}/{key}: expected {expected_version}")
            return False
        return True

    async def range(
        self,
        table: str,
        prefix: str = "",
        limit: Optional[int] = None,
        reverse: bool = False,
    ) -> list[Row]:
        stmt = select(_ROWS).where(_ROWS.c.table_name == table)
        if prefix:
            stmt = stmt.where(_ROWS.c.key.startswith(prefix, autoescape=True))
        stmt = stmt.order_by(_ROWS.c.key.desc() if reverse else _ROWS.c.key)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [self._to_row(record) for record in result.all()]


class SQLStore(StoreMixin):
    """Persist rows in a relational database through SQLAlchemy's async engine."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self._is_sqlite = database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False} if self._is_sqlite else {}
        self.engine = create_async_engine(
            database_url, echo=echo, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        # SQLite allows a single writer; serialize transactions in-process
        self._write_lock = asyncio.Lock() if self._is_sqlite else None

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True
            logger.info(f"Initialized flowline store schema at {self.engine.url.render_as_string()}")

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SQLTransaction]:
        if not self._initialized:
            await self.init_db()
        if self._write_lock is None:
            async with self._session() as session:
                yield _SQLTransaction(session, lock_rows=True)
            return
        async with self._write_lock:
            async with self._session() as session:
                yield _SQLTransaction(session, lock_rows=False)

    async def close(self) -> None:
        await self.engine.dispose()
