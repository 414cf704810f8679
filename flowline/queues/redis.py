"""Redis work queue for cross-process workers.

Each item is a hash ``{ns}:item:{id}``; ready items sit in one sorted set
per priority scored by ``visible_at``, reserved items in ``{ns}:inflight``
scored by their reservation deadline. State changes run as Lua scripts so
they are atomic on the server.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, List, Optional

import redis.asyncio as redis

from ..clock import Clock, SystemClock
from ..constants import MAX_PRIORITY, MIN_PRIORITY
from ..contracts import WorkItem, WorkPayload
from ..errors import NotFound, QueueFull
from .base import BaseQueue

logger = logging.getLogger(__name__)

ENQUEUE_LUA = """
local ns = ARGV[1]
local id = ARGV[2]
local priority = ARGV[3]
local key = ns .. ':item:' .. id
if redis.call('EXISTS', key) == 1 then
  return 0
end
local max_depth = tonumber(ARGV[8])
if ARGV[9] == '1' and max_depth >= 0 then
  local depth = tonumber(redis.call('HGET', ns .. ':depth', priority) or '0')
  if depth >= max_depth then
    return -1
  end
end
local seq = redis.call('INCR', ns .. ':seq')
redis.call('HSET', key, 'body', ARGV[5], 'priority', priority, 'definition_id', ARGV[6],
  'seq', seq, 'visible_at', ARGV[4], 'enqueued_at', ARGV[7], 'delivered_count', 0,
  'reserved_by', '', 'last_error', '', 'dead', '0')
redis.call('ZADD', ns .. ':ready:' .. priority, ARGV[4], id)
redis.call('HINCRBY', ns .. ':depth', priority, 1)
return seq
"""

RESERVE_LUA = """
local ns = ARGV[1]
local worker = ARGV[2]
local now = tonumber(ARGV[3])
local visibility = tonumber(ARGV[4])
local max_attempts = tonumber(ARGV[5])
local scan = tonumber(ARGV[6])
local min_p = tonumber(ARGV[7])
local max_p = tonumber(ARGV[8])
local inflight = ns .. ':inflight'
local workers = ns .. ':workers'

local held = redis.call('HGET', workers, worker)
if held then
  local deadline = redis.call('ZSCORE', inflight, held)
  if deadline and tonumber(deadline) > now then
    return held
  end
  redis.call('HDEL', workers, worker)
end

local expired = redis.call('ZRANGEBYSCORE', inflight, '-inf', now)
for _, id in ipairs(expired) do
  redis.call('ZREM', inflight, id)
  local key = ns .. ':item:' .. id
  local f = redis.call('HMGET', key, 'reserved_by', 'delivered_count', 'priority', 'last_error')
  if f[1] and f[1] ~= '' and redis.call('HGET', workers, f[1]) == id then
    redis.call('HDEL', workers, f[1])
  end
  if not f[4] or f[4] == '' then
    redis.call('HSET', key, 'last_error', 'visibility timeout expired')
  end
  redis.call('HSET', key, 'reserved_by', '', 'visible_at', now)
  if tonumber(f[2]) >= max_attempts then
    redis.call('HSET', key, 'dead', '1')
    redis.call('SADD', ns .. ':dead', id)
    redis.call('HINCRBY', ns .. ':depth', f[3], -1)
  else
    redis.call('ZADD', ns .. ':ready:' .. f[3], now, id)
  end
end

for p = max_p, min_p, -1 do
  local ready = ns .. ':ready:' .. p
  local ids = redis.call('ZRANGEBYSCORE', ready, '-inf', now, 'LIMIT', 0, scan)
  if #ids > 0 then
    local best, best_turn, best_vis, best_seq
    local seen = {}
    for _, id in ipairs(ids) do
      local f = redis.call('HMGET', ns .. ':item:' .. id, 'definition_id', 'visible_at', 'seq')
      if not seen[f[1]] then
        seen[f[1]] = true
        local turn = tonumber(redis.call('HGET', ns .. ':served', f[1]) or '-1')
        local vis = tonumber(f[2])
        local seq = tonumber(f[3])
        if best == nil or turn < best_turn or (turn == best_turn and (vis < best_vis or (vis == best_vis and seq < best_seq))) then
          best, best_turn, best_vis, best_seq = id, turn, vis, seq
        end
      end
    end
    local key = ns .. ':item:' .. best
    local def = redis.call('HGET', key, 'definition_id')
    redis.call('HSET', ns .. ':served', def, redis.call('INCR', ns .. ':turn'))
    redis.call('ZREM', ready, best)
    redis.call('HINCRBY', key, 'delivered_count', 1)
    redis.call('HSET', key, 'reserved_by', worker, 'visible_at', now + visibility)
    redis.call('ZADD', inflight, now + visibility, best)
    redis.call('HSET', workers, worker, best)
    return best
  end
end
return false
"""

ACK_LUA = """
local ns = ARGV[1]
local id = ARGV[2]
local key = ns .. ':item:' .. id
local f = redis.call('HMGET', key, 'priority', 'reserved_by', 'dead')
if not f[1] or f[3] == '1' then
  return 0
end
redis.call('ZREM', ns .. ':inflight', id)
redis.call('ZREM', ns .. ':ready:' .. f[1], id)
if f[2] ~= '' and redis.call('HGET', ns .. ':workers', f[2]) == id then
  redis.call('HDEL', ns .. ':workers', f[2])
end
redis.call('HINCRBY', ns .. ':depth', f[1], -1)
redis.call('DEL', key)
return 1
"""

NACK_LUA = """
local ns = ARGV[1]
local id = ARGV[2]
local key = ns .. ':item:' .. id
local f = redis.call('HMGET', key, 'priority', 'reserved_by', 'delivered_count', 'dead')
if not f[1] or f[4] == '1' then
  return 0
end
redis.call('ZREM', ns .. ':inflight', id)
if f[2] ~= '' and redis.call('HGET', ns .. ':workers', f[2]) == id then
  redis.call('HDEL', ns .. ':workers', f[2])
end
if ARGV[3] ~= '' then
  redis.call('HSET', key, 'last_error', ARGV[3])
end
redis.call('HSET', key, 'reserved_by', '', 'visible_at', ARGV[4])
if tonumber(f[3]) >= tonumber(ARGV[5]) then
  redis.call('HSET', key, 'dead', '1')
  redis.call('SADD', ns .. ':dead', id)
  redis.call('HINCRBY', ns .. ':depth', f[1], -1)
  return 2
end
redis.call('ZADD', ns .. ':ready:' .. f[1], ARGV[4], id)
return 1
"""

REQUEUE_LUA = """
local ns = ARGV[1]
local id = ARGV[2]
if redis.call('SREM', ns .. ':dead', id) == 0 then
  return 0
end
local key = ns .. ':item:' .. id
local priority = redis.call('HGET', key, 'priority')
local seq = redis.call('INCR', ns .. ':seq')
redis.call('HSET', key, 'dead', '0', 'delivered_count', 0, 'visible_at', ARGV[3], 'seq', seq)
redis.call('ZADD', ns .. ':ready:' .. priority, ARGV[3], id)
redis.call('HINCRBY', ns .. ':depth', priority, 1)
return 1
"""


class RedisQueue(BaseQueue):
    """Redis-backed queue with visibility timeouts and dead-lettering."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "flowline",
        clock: Optional[Clock] = None,
        visibility_ms: int = 30_000,
        max_attempts: int = 5,
        max_depth: Optional[int] = None,
        poll_interval_ms: int = 200,
        scan_limit: int = 100,
        client: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = f"{namespace}:queue"
        self.clock = clock or SystemClock()
        self.visibility_ms = visibility_ms
        self.max_attempts = max_attempts
        self.max_depth = max_depth
        self.poll_interval = poll_interval_ms / 1000
        self.scan_limit = scan_limit
        self._client = client
        self._redis: Optional[Any] = None
        self._scripts: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._prefix = uuid.uuid4().hex[:8]

    async def connect(self) -> None:
        """Connect to Redis (or adopt the client given) and register the queue scripts."""
        if self._client is not None:
            self._redis = self._client
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()
        for name, source in (
            ("enqueue", ENQUEUE_LUA),
            ("reserve", RESERVE_LUA),
            ("ack", ACK_LUA),
            ("nack", NACK_LUA),
            ("requeue", REQUEUE_LUA),
        ):
            self._scripts[name] = self._redis.register_script(source)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._scripts = {}

    async def _run(self, name: str, *args: Any) -> Any:
        if not self._scripts:
            await self.connect()
        return await self._scripts[name](args=[self.namespace, *args])

    async def _load(self, item_id: str) -> Optional[WorkItem]:
        fields = await self._redis.hgetall(f"{self.namespace}:item:{item_id}")
        if not fields:
            return None
        return WorkItem(
            id=item_id,
            priority=int(fields["priority"]),
            visible_at=int(fields["visible_at"]),
            enqueued_at=int(fields["enqueued_at"]),
            delivered_count=int(fields["delivered_count"]),
            seq=int(fields["seq"]),
            reserved_by=fields.get("reserved_by") or None,
            last_error=fields.get("last_error") or None,
            payload=WorkPayload.model_validate_json(fields["body"]),
        )

    async def enqueue(
        self,
        payload: WorkPayload,
        priority: int = 5,
        delay_ms: int = 0,
        item_id: Optional[str] = None,
        enforce_limit: bool = True,
    ) -> WorkItem:
        item_id = item_id or f"wi-{self._prefix}-{next(self._ids)}"
        now = self.clock.now_ms()
        result = await self._run(
            "enqueue",
            item_id,
            priority,
            now + max(delay_ms, 0),
            payload.model_dump_json(),
            payload.definition_id,
            now,
            -1 if self.max_depth is None else self.max_depth,
            "1" if enforce_limit else "0",
        )
        if int(result) == -1:
            raise QueueFull(f"Queue depth limit {self.max_depth} reached for priority {priority}")
        item = await self._load(item_id)
        if item is None:
            raise NotFound(f"Work item {item_id} disappeared right after enqueue")
        return item

    async def reserve(self, worker_id: str, timeout: float = 0) -> Optional[WorkItem]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            item_id = await self._run(
                "reserve",
                worker_id,
                self.clock.now_ms(),
                self.visibility_ms,
                self.max_attempts,
                self.scan_limit,
                MIN_PRIORITY,
                MAX_PRIORITY,
            )
            if item_id:
                return await self._load(item_id)
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(remaining, self.poll_interval))

    async def ack(self, item_id: str) -> bool:
        return bool(int(await self._run("ack", item_id)))

    async def nack(self, item_id: str, error: Optional[str] = None, delay_ms: int = 0) -> None:
        result = await self._run(
            "nack",
            item_id,
            error or "",
            self.clock.now_ms() + max(delay_ms, 0),
            self.max_attempts,
        )
        if int(result) == 2:
            logger.warning(f"Work item {item_id} dead-lettered: {error}")

    async def depth(self, priority: Optional[int] = None) -> int:
        if not self._redis:
            await self.connect()
        if priority is not None:
            return int(await self._redis.hget(f"{self.namespace}:depth", str(priority)) or 0)
        counts = await self._redis.hvals(f"{self.namespace}:depth")
        return sum(int(c) for c in counts)

    async def dead_letters(self) -> List[WorkItem]:
        if not self._redis:
            await self.connect()
        items = []
        for item_id in sorted(await self._redis.smembers(f"{self.namespace}:dead")):
            item = await self._load(item_id)
            if item is not None:
                items.append(item)
        return items

    async def requeue_dead_letter(self, item_id: str) -> bool:
        requeued = bool(int(await self._run("requeue", item_id, self.clock.now_ms())))
        if requeued:
            logger.info(f"Requeued dead-lettered work item {item_id}")
        return requeued
