"""Persistence layer for flowline state."""

from __future__ import annotations

from typing import Optional

from ..config import FlowlineConfig, load_config
from .inmemory import InMemoryStore
from .repository import Repository
from .sql import SQLStore
from .store import Row, Store, Transaction

_store_instance: Store | None = None


def get_store(database_url: Optional[str] = None, config: Optional[FlowlineConfig] = None) -> Store:
    """Factory function to obtain the durable store.

    The backend is selected from ``database_url``, given explicitly or taken
    from configuration (``DB_URL``/``DB_*`` environment variables included).
    When no database is configured, the process-wide in-memory store is
    returned (created on first use).
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = database_url or config.database.url

    if not database_url:
        if not isinstance(_store_instance, InMemoryStore):
            _store_instance = InMemoryStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        # plain sqlite URLs are upgraded to the async driver
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    elif database_url.startswith(("postgres://", "postgresql://")):
        _, rest = database_url.split("://", 1)
        database_url = f"postgresql+asyncpg://{rest}"
    elif not database_url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
        raise ValueError(f"Unsupported database backend: {database_url}")

    _store_instance = SQLStore(database_url, echo=config.database.echo)
    return _store_instance


def set_store(store: Optional[Store]) -> None:
    """Replace (or clear) the process-wide store instance."""
    global _store_instance
    _store_instance = store


__all__ = [
    "InMemoryStore",
    "Repository",
    "Row",
    "SQLStore",
    "Store",
    "Transaction",
    "get_store",
    "set_store",
]
