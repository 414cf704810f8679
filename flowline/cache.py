"""Report result cache with TTL, invalidation and single-flight.

An entry is keyed by ``(report_id, fingerprint)``. A miss claims the key by
writing a ``computing`` row inside a transaction, so across processes at
most one producer exists per key; the row lock expires after
``lock_ttl_ms`` in case the producer dies. Within a process, waiters share
the producer's future instead of polling the store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .clock import Clock
from .config import CacheConfig
from .models import CacheEntry, CacheStatus
from .persistence.repository import Repository
from .persistence.store import Store

logger = logging.getLogger(__name__)


def cache_key(report_id: str, fingerprint: str) -> str:
    return f"{report_id}/{fingerprint}"


class ResultCache:
    def __init__(self, store: Store, clock: Clock, config: Optional[CacheConfig] = None) -> None:
        self.store = store
        self.clock = clock
        self.config = config or CacheConfig()
        self._inflight: Dict[str, asyncio.Future] = {}

    async def peek(self, report_id: str, fingerprint: str) -> Optional[CacheEntry]:
        async with self.store.transaction() as tx:
            return await Repository(tx).get_cache_entry(cache_key(report_id, fingerprint))

    async def _claim(
        self, key: str, report_id: str, fingerprint: str, producer: str
    ) -> Tuple[str, Optional[CacheEntry]]:
        """Return ``("hit", entry)``, ``("wait", entry)`` or ``("produce", entry)``."""

        now = self.clock.now_ms()
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            entry = await repo.get_cache_entry(key, for_update=True)
            if entry is not None:
                if entry.status == CacheStatus.READY and (entry.expires_at or 0) > now:
                    entry.hits += 1
                    await repo.save_cache_entry(entry)
                    return "hit", entry
                if entry.status == CacheStatus.COMPUTING and (entry.lock_expires_at or 0) > now:
                    return "wait", entry
            claimed = CacheEntry(
                key=key,
                report_id=report_id,
                fingerprint=fingerprint,
                status=CacheStatus.COMPUTING,
                producer=producer,
                lock_expires_at=now + self.config.lock_ttl_ms,
            )
            if entry is not None:
                claimed.row_version = entry.row_version
                claimed.hits = entry.hits
            await repo.save_cache_entry(claimed)
            return "produce", claimed

    async def get_or_compute(
        self,
        report_id: str,
        fingerprint: str,
        compute: Callable[[], Awaitable[Any]],
        ttl_s: Optional[int] = None,
        producer: str = "",
    ) -> Tuple[Any, bool]:
        """Return ``(value, cache_hit)``, running ``compute`` only on a miss."""

        key = cache_key(report_id, fingerprint)
        while True:
            local = self._inflight.get(key)
            if local is not None:
                try:
                    value = await asyncio.shield(local)
                except asyncio.CancelledError:
                    if local.cancelled():
                        # the producer was cancelled, not us; try to claim again
                        continue
                    raise
                return value, True

            state, entry = await self._claim(key, report_id, fingerprint, producer)
            if state == "hit":
                logger.debug(f"Cache hit for {key}")
                return entry.value, True
            if state == "wait":
                value, found = await self._wait_for(key)
                if found:
                    return value, True
                continue
            return await self._produce(key, entry, compute, ttl_s), False

    async def _produce(
        self,
        key: str,
        claimed: CacheEntry,
        compute: Callable[[], Awaitable[Any]],
        ttl_s: Optional[int],
    ) -> Any:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await compute()
            ready = await self._store_ready(key, claimed, value, ttl_s)
        except BaseException as exc:
            self._inflight.pop(key, None)
            await self._release(key, claimed.producer)
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
                # nobody may be waiting; mark the exception as retrieved
                future.exception()
            raise
        self._inflight.pop(key, None)
        future.set_result(value)
        logger.info(f"Cached result for {key} until {ready.expires_at}")
        return value

    async def _store_ready(
        self, key: str, claimed: CacheEntry, value: Any, ttl_s: Optional[int]
    ) -> CacheEntry:
        ttl = self.config.ttl_s if ttl_s is None else ttl_s
        now = self.clock.now_ms()
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            current = await repo.get_cache_entry(key, for_update=True)
            ready = CacheEntry(
                key=key,
                report_id=claimed.report_id,
                fingerprint=claimed.fingerprint,
                status=CacheStatus.READY,
                value=value,
                computed_at=now,
                expires_at=now + ttl * 1000,
                producer=claimed.producer,
                hits=current.hits if current else 0,
            )
            ready.row_version = current.row_version if current else 0
            return await repo.save_cache_entry(ready)

    async def _release(self, key: str, producer: Optional[str]) -> None:
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            current = await repo.get_cache_entry(key, for_update=True)
            if current is not None and current.status == CacheStatus.COMPUTING and current.producer == producer:
                await repo.delete_cache_entry(key)

    async def _wait_for(self, key: str) -> Tuple[Any, bool]:
        """Poll until the producer in another process finishes or its lock lapses."""

        poll = self.config.wait_poll_ms / 1000
        while True:
            await asyncio.sleep(poll)
            async with self.store.transaction() as tx:
                entry = await Repository(tx).get_cache_entry(key)
            now = self.clock.now_ms()
            if entry is None:
                return None, False
            if entry.status == CacheStatus.READY and (entry.expires_at or 0) > now:
                return entry.value, True
            if entry.status == CacheStatus.COMPUTING and (entry.lock_expires_at or 0) <= now:
                return None, False

    async def invalidate(self, report_id: str, fingerprint: Optional[str] = None) -> int:
        """Drop ready entries of a report (or one fingerprint of it)."""

        prefix = cache_key(report_id, fingerprint) if fingerprint else f"{report_id}/"
        removed = 0
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            for entry in await repo.cache_entries(prefix):
                if entry.status == CacheStatus.READY:
                    await repo.delete_cache_entry(entry.key)
                    removed += 1
        logger.info(f"Invalidated {removed} cache entries for report {report_id}")
        return removed

    async def purge_expired(self) -> int:
        now = self.clock.now_ms()
        removed = 0
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            for entry in await repo.cache_entries():
                if entry.status == CacheStatus.READY and (entry.expires_at or 0) <= now:
                    await repo.delete_cache_entry(entry.key)
                    removed += 1
        return removed

    async def stats(self, report_id: Optional[str] = None) -> Dict[str, Any]:
        async with self.store.transaction() as tx:
            entries = await Repository(tx).cache_entries(f"{report_id}/" if report_id else "")
        now = self.clock.now_ms()
        return {
            "entries": len(entries),
            "live": sum(1 for e in entries if e.status == CacheStatus.READY and (e.expires_at or 0) > now),
            "computing": sum(1 for e in entries if e.status == CacheStatus.COMPUTING),
            "hits": sum(e.hits for e in entries),
        }
