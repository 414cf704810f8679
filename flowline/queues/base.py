"""Base work queue interface for flowline."""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..contracts import WorkItem, WorkPayload


class BaseQueue(metaclass=abc.ABCMeta):
    """Abstract durable work queue.

    Items are ordered by priority (higher first), then FIFO by
    ``(visible_at, seq)``; among ready items of the top priority the queue
    rotates over ``definition_id`` so one workflow cannot starve others.
    A reserved item stays invisible for ``visibility_ms``; if it is not
    acknowledged in time it is delivered again. Once an item has been
    delivered ``max_attempts`` times it is moved to the dead-letter list
    instead.
    """

    visibility_ms: int
    max_attempts: int
    max_depth: Optional[int]

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(
        self,
        payload: WorkPayload,
        priority: int = 5,
        delay_ms: int = 0,
        item_id: Optional[str] = None,
        enforce_limit: bool = True,
    ) -> WorkItem:
        """Add a work item; raises ``QueueFull`` past the depth limit.

        Enqueueing an ``item_id`` the queue already holds returns the
        existing item unchanged.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def reserve(self, worker_id: str, timeout: float = 0) -> Optional[WorkItem]:
        """Reserve the next ready item, waiting up to ``timeout`` seconds.

        A worker that still holds an unacknowledged reservation gets the
        same item back.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, item_id: str) -> bool:
        """Remove a reserved item. Unknown ids are ignored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, item_id: str, error: Optional[str] = None, delay_ms: int = 0) -> None:
        """Release a reserved item for redelivery after ``delay_ms``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def depth(self, priority: Optional[int] = None) -> int:
        """Number of items waiting or in flight, optionally for one priority."""
        raise NotImplementedError

    @abc.abstractmethod
    async def dead_letters(self) -> List[WorkItem]:
        raise NotImplementedError

    @abc.abstractmethod
    async def requeue_dead_letter(self, item_id: str) -> bool:
        """Move a dead-lettered item back to the queue with a fresh count."""
        raise NotImplementedError

    async def has_capacity(self, priority: int) -> bool:
        if self.max_depth is None:
            return True
        return await self.depth(priority) < self.max_depth

    async def stats(self) -> Dict[str, Any]:
        return {
            "depth": await self.depth(),
            "dead_letters": len(await self.dead_letters()),
        }
