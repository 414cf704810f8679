"""Event bus contract and implementations.

``subscribe(topic)`` yields ``Event`` objects at least once; consumers
deduplicate by ``Event.id``.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field

from .clock import Clock, IdGenerator, SystemClock

logger = logging.getLogger(__name__)


class Event(BaseModel):
    id: str
    topic: str
    at: int
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus(metaclass=abc.ABCMeta):
    """Named-topic publish/subscribe."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(
        self, topic: str, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> Event:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Event]:
        """Yield events published to ``topic`` after subscribing.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError


class InMemoryEventBus(EventBus):
    """In-process fan-out bus for tests and single-process deployments."""

    def __init__(self, clock: Optional[Clock] = None, ids: Optional[IdGenerator] = None) -> None:
        self.clock = clock or SystemClock()
        self.ids = ids or IdGenerator()
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self.published: List[Event] = []

    async def publish(
        self, topic: str, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> Event:
        event = Event(
            id=event_id or self.ids.new_id(), topic=topic, at=self.clock.now_ms(), payload=payload
        )
        self.published.append(event)
        for queue in list(self._subscribers[topic]):
            queue.put_nowait(event)
        return event

    async def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Event]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[topic].append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        try:
            while True:
                timeout = None if deadline is None else deadline - loop.time()
                if timeout is not None and timeout <= 0:
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                yield event
        finally:
            self._subscribers[topic].remove(queue)


class RedisEventBus(EventBus):
    """Redis Streams bus; one stream per topic, read from the newest entry on."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "flowline",
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = f"{namespace}:events"
        self.clock = clock or SystemClock()
        self.ids = ids or IdGenerator()
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(
        self, topic: str, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> Event:
        if not self._redis:
            await self.connect()
        event = Event(
            id=event_id or self.ids.new_id(), topic=topic, at=self.clock.now_ms(), payload=payload
        )
        await self._redis.xadd(f"{self.namespace}:{topic}", {"event": event.model_dump_json()})
        return event

    async def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Event]:
        if not self._redis:
            await self.connect()
        stream = f"{self.namespace}:{topic}"
        last_id = "$"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        while deadline is None or loop.time() < deadline:
            entries = await self._redis.xread({stream: last_id}, block=1000, count=100)
            for _, messages in entries or []:
                for message_id, fields in messages:
                    last_id = message_id
                    try:
                        yield Event.model_validate(json.loads(fields["event"]))
                    except (KeyError, ValueError) as exc:
                        logger.warning(f"Skipping malformed event {message_id} on {topic}: {exc}")
