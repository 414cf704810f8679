"""The engine: one object wiring store, queue, clock and every service together.

Collaborators are passed in explicitly so tests can swap the clock, the
store and the queue; anything left out is built from configuration.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Optional

import httpx

from .audit import AuditLog
from .cache import ResultCache
from .clock import Clock, IdGenerator, SystemClock
from .config import FlowlineConfig, load_config
from .control import ControlAPI
from .delivery import DeliveryRegistry
from .dispatch import TriggerDispatcher
from .events import EventBus, InMemoryEventBus
from .execute import StepExecutor, WorkerPool
from .handlers import HandlerRegistry
from .persistence import InMemoryStore, Store, get_store
from .queues import BaseQueue, InMemoryQueue, get_queue
from .reports import ReportRegistry, install_report_tasks
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        config: Optional[FlowlineConfig] = None,
        *,
        store: Optional[Store] = None,
        queue: Optional[BaseQueue] = None,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        handlers: Optional[HandlerRegistry] = None,
        deliveries: Optional[DeliveryRegistry] = None,
        events: Optional[EventBus] = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        rand: Callable[[], float] = random.random,
        scheduler_holder: Optional[str] = None,
    ) -> None:
        self.config = config or load_config()
        self.clock = clock or SystemClock()
        self.ids = ids or IdGenerator()
        self.store = store or get_store(config=self.config)
        self.queue = queue or get_queue(config=self.config, clock=self.clock)
        self.rand = rand
        self.http_client_factory = http_client_factory or httpx.AsyncClient

        self.audit = AuditLog(self.store, self.clock, self.ids)
        self.cache = ResultCache(self.store, self.clock, self.config.cache)
        self.handlers = handlers or HandlerRegistry.with_builtins()
        self.deliveries = deliveries or DeliveryRegistry.with_defaults(
            timeout=self.config.delivery.timeout_s, clock=self.clock
        )
        self.events = events or InMemoryEventBus(self.clock, self.ids)
        self.reports = ReportRegistry()
        install_report_tasks(self.handlers, self.reports)

        self.executor = StepExecutor(self)
        self.scheduler = Scheduler(self, holder=scheduler_holder)
        self.dispatcher = TriggerDispatcher(self)
        self.control = ControlAPI(self)

    @classmethod
    def in_memory(
        cls,
        config: Optional[FlowlineConfig] = None,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        **kwargs,
    ) -> "Engine":
        """Engine on an in-memory store and queue, for tests and ``flowline run``."""

        config = config or FlowlineConfig()
        clock = clock or SystemClock()
        queue = InMemoryQueue(
            clock=clock,
            visibility_ms=config.queue.visibility_ms,
            max_attempts=config.queue.max_attempts,
            max_depth=config.queue.max_depth,
            poll_interval_ms=config.queue.poll_interval_ms,
        )
        return cls(config, store=InMemoryStore(), queue=queue, clock=clock, ids=ids, **kwargs)

    async def start(self) -> "Engine":
        init_db = getattr(self.store, "init_db", None)
        if init_db is not None:
            await init_db()
        await self.queue.connect()
        await self.events.connect()
        await self.executor.relay()
        logger.info(f"Engine started ({type(self.store).__name__}, {type(self.queue).__name__})")
        return self

    async def close(self) -> None:
        await self.events.disconnect()
        await self.queue.disconnect()
        await self.store.close()

    async def __aenter__(self) -> "Engine":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def worker_pool(self, concurrency: int = 4, name: str = "worker") -> WorkerPool:
        return WorkerPool(self.executor, concurrency=concurrency, name=name)

    async def drain(self, max_items: int = 10_000) -> int:
        """Process every ready work item inline."""
        return await self.executor.run_until_idle(max_items=max_items)
