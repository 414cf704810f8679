"""Transactional outbox: work items written with state, published after commit."""

from __future__ import annotations

import logging
from typing import Optional

from ..clock import Clock
from ..contracts import WorkPayload
from ..models import OutboxEntry
from ..persistence.repository import OUTBOX, Repository
from ..persistence.store import Store
from .base import BaseQueue

logger = logging.getLogger(__name__)


async def stage(
    repo: Repository,
    clock: Clock,
    item_id: str,
    payload: WorkPayload,
    priority: int,
    delay_ms: int = 0,
) -> OutboxEntry:
    """Record a work item in the outbox inside the caller's transaction."""

    seq = await repo.next_sequence("outbox")
    entry = OutboxEntry(
        id=f"{seq:012d}",
        item={
            "id": item_id,
            "priority": priority,
            "payload": payload.model_dump(mode="json"),
        },
        delay_ms=max(delay_ms, 0),
        created_at=clock.now_ms(),
    )
    return await repo.add_outbox(entry)


async def relay_outbox(
    store: Store, queue: BaseQueue, clock: Clock, limit: Optional[int] = None
) -> int:
    """Publish staged work items to the queue and remove them from the outbox.

    Item ids are fixed when staged, so relaying the same entry twice after a
    crash enqueues it once as long as the first copy is still queued.
    """

    async with store.transaction() as tx:
        entries = await Repository(tx).outbox_entries(limit=limit)

    published = 0
    for entry in entries:
        remaining = entry.created_at + entry.delay_ms - clock.now_ms()
        await queue.enqueue(
            WorkPayload.model_validate(entry.item["payload"]),
            priority=entry.item["priority"],
            delay_ms=max(remaining, 0),
            item_id=entry.item["id"],
            enforce_limit=False,
        )
        await store.delete(OUTBOX, entry.id)
        published += 1
    if published:
        logger.debug(f"Relayed {published} work items from the outbox")
    return published
