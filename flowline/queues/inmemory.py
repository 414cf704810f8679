"""In-memory work queue for tests and single-process runs."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, List, Optional

from ..clock import Clock, SystemClock
from ..contracts import WorkItem, WorkPayload
from ..errors import QueueFull
from .base import BaseQueue

logger = logging.getLogger(__name__)


def pick_fair(ready: List[WorkItem], served: Dict[str, int]) -> WorkItem:
    """Choose the next item: top priority, then round-robin by definition, then FIFO."""

    top = max(item.priority for item in ready)
    heads: Dict[str, WorkItem] = {}
    for item in sorted(
        (i for i in ready if i.priority == top), key=lambda i: (i.visible_at, i.seq)
    ):
        heads.setdefault(item.payload.definition_id, item)
    return min(
        heads.values(),
        key=lambda i: (served.get(i.payload.definition_id, -1), i.visible_at, i.seq),
    )


class InMemoryQueue(BaseQueue):
    """Process-local queue with the full visibility and dead-letter semantics."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        visibility_ms: int = 30_000,
        max_attempts: int = 5,
        max_depth: Optional[int] = None,
        poll_interval_ms: int = 200,
    ) -> None:
        self.clock = clock or SystemClock()
        self.visibility_ms = visibility_ms
        self.max_attempts = max_attempts
        self.max_depth = max_depth
        self.poll_interval = poll_interval_ms / 1000
        self._items: Dict[str, WorkItem] = {}
        self._dead: Dict[str, WorkItem] = {}
        self._seq = itertools.count(1)
        self._turn = itertools.count()
        self._served: Dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._arrived = asyncio.Event()

    async def enqueue(
        self,
        payload: WorkPayload,
        priority: int = 5,
        delay_ms: int = 0,
        item_id: Optional[str] = None,
        enforce_limit: bool = True,
    ) -> WorkItem:
        async with self._lock:
            if item_id is not None and item_id in self._items:
                return self._items[item_id].model_copy(deep=True)
            if enforce_limit and self.max_depth is not None:
                waiting = sum(1 for i in self._items.values() if i.priority == priority)
                if waiting >= self.max_depth:
                    raise QueueFull(f"Queue depth limit {self.max_depth} reached for priority {priority}")
            now = self.clock.now_ms()
            item = WorkItem(
                id=item_id or f"wi-{next(self._ids)}",
                priority=priority,
                visible_at=now + max(delay_ms, 0),
                enqueued_at=now,
                seq=next(self._seq),
                payload=payload,
            )
            self._items[item.id] = item
            self._arrived.set()
            return item.model_copy(deep=True)

    def _expire(self, now: int) -> None:
        for item in list(self._items.values()):
            if item.reserved_by is None or item.visible_at > now:
                continue
            logger.warning(
                f"Work item {item.id} not acknowledged by {item.reserved_by}, redelivering"
            )
            item.reserved_by = None
            item.last_error = item.last_error or "visibility timeout expired"
            if item.delivered_count >= self.max_attempts:
                self._dead_letter(item)

    def _dead_letter(self, item: WorkItem) -> None:
        logger.warning(
            f"Work item {item.id} dead-lettered after {item.delivered_count} deliveries: {item.last_error}"
        )
        self._items.pop(item.id, None)
        self._dead[item.id] = item

    def _try_reserve(self, worker_id: str) -> Optional[WorkItem]:
        now = self.clock.now_ms()
        for item in self._items.values():
            if item.reserved_by == worker_id and item.visible_at > now:
                return item.model_copy(deep=True)
        self._expire(now)
        ready = [i for i in self._items.values() if i.reserved_by is None and i.visible_at <= now]
        if not ready:
            return None
        item = pick_fair(ready, self._served)
        self._served[item.payload.definition_id] = next(self._turn)
        item.delivered_count += 1
        item.reserved_by = worker_id
        item.visible_at = now + self.visibility_ms
        return item.model_copy(deep=True)

    async def reserve(self, worker_id: str, timeout: float = 0) -> Optional[WorkItem]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            async with self._lock:
                item = self._try_reserve(worker_id)
                if item is not None:
                    return item
                self._arrived.clear()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(
                    self._arrived.wait(), timeout=min(remaining, self.poll_interval)
                )
            except asyncio.TimeoutError:
                pass

    async def ack(self, item_id: str) -> bool:
        async with self._lock:
            return self._items.pop(item_id, None) is not None

    async def nack(self, item_id: str, error: Optional[str] = None, delay_ms: int = 0) -> None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return
            item.reserved_by = None
            item.last_error = error or item.last_error
            item.visible_at = self.clock.now_ms() + max(delay_ms, 0)
            if item.delivered_count >= self.max_attempts:
                self._dead_letter(item)
            else:
                self._arrived.set()

    async def depth(self, priority: Optional[int] = None) -> int:
        async with self._lock:
            if priority is None:
                return len(self._items)
            return sum(1 for i in self._items.values() if i.priority == priority)

    async def dead_letters(self) -> List[WorkItem]:
        async with self._lock:
            return [item.model_copy(deep=True) for item in self._dead.values()]

    async def requeue_dead_letter(self, item_id: str) -> bool:
        async with self._lock:
            item = self._dead.pop(item_id, None)
            if item is None:
                return False
            item.delivered_count = 0
            item.reserved_by = None
            item.visible_at = self.clock.now_ms()
            item.seq = next(self._seq)
            self._items[item.id] = item
            self._arrived.set()
            logger.info(f"Requeued dead-lettered work item {item_id}")
            return True

    def pending(self) -> List[WorkItem]:
        """Snapshot of queued and in-flight items (tests)."""
        return [item.model_copy(deep=True) for item in self._items.values()]
