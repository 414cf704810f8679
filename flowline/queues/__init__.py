"""Work queue factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..clock import Clock
from ..config import FlowlineConfig, load_config
from .base import BaseQueue
from .inmemory import InMemoryQueue
from .outbox import relay_outbox, stage


def get_queue(
    backend: Optional[str] = None,
    config: Optional[FlowlineConfig] = None,
    clock: Optional[Clock] = None,
) -> BaseQueue:
    """Factory function to get the configured work queue."""

    config = config or load_config()
    queue_conf = config.queue
    backend = (backend or os.getenv("FLOWLINE_QUEUE") or queue_conf.backend).lower()

    if backend == "inmemory":
        return InMemoryQueue(
            clock=clock,
            visibility_ms=queue_conf.visibility_ms,
            max_attempts=queue_conf.max_attempts,
            max_depth=queue_conf.max_depth,
            poll_interval_ms=queue_conf.poll_interval_ms,
        )
    elif backend == "redis":
        from .redis import RedisQueue

        redis_conf = queue_conf.redis
        return RedisQueue(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            namespace=redis_conf.namespace,
            clock=clock,
            visibility_ms=queue_conf.visibility_ms,
            max_attempts=queue_conf.max_attempts,
            max_depth=queue_conf.max_depth,
            poll_interval_ms=queue_conf.poll_interval_ms,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseQueue", "InMemoryQueue", "get_queue", "relay_outbox", "stage"]
