import fakeredis
import pytest

from flowline.clock import ManualClock
from flowline.config import FlowlineConfig
from flowline.contracts import WorkPayload
from flowline.errors import QueueFull
from flowline.persistence import InMemoryStore, Repository
from flowline.queues import InMemoryQueue, get_queue, relay_outbox, stage
from flowline.queues.redis import RedisQueue


def _payload(definition_id="a", step_id="S"):
    return WorkPayload(instance_id=f"i-{definition_id}", step_id=step_id, attempt=1, definition_id=definition_id)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def queue(clock):
    return InMemoryQueue(clock=clock, visibility_ms=1_000, max_attempts=2, max_depth=3)


@pytest.mark.asyncio
async def test_higher_priority_first_then_fifo(queue):
    await queue.enqueue(_payload(step_id="low"), priority=2)
    await queue.enqueue(_payload(step_id="first"), priority=8)
    await queue.enqueue(_payload(step_id="second"), priority=8)

    order = []
    while (item := await queue.reserve("w")) is not None:
        order.append(item.payload.step_id)
        await queue.ack(item.id)
    assert order == ["first", "second", "low"]


@pytest.mark.asyncio
async def test_definitions_take_turns(clock):
    queue = InMemoryQueue(clock=clock)
    for definition_id in ("a", "a", "a", "b"):
        await queue.enqueue(_payload(definition_id))

    order = []
    while (item := await queue.reserve("w")) is not None:
        order.append(item.payload.definition_id)
        await queue.ack(item.id)
    assert order == ["a", "b", "a", "a"]


@pytest.mark.asyncio
async def test_delayed_items_become_visible_later(queue, clock):
    await queue.enqueue(_payload(), delay_ms=500)
    assert await queue.reserve("w") is None
    clock.advance(500)
    assert await queue.reserve("w") is not None


@pytest.mark.asyncio
async def test_unacknowledged_item_is_redelivered_after_visibility(queue, clock):
    item = await queue.enqueue(_payload())
    first = await queue.reserve("w1")
    assert first.id == item.id
    # the holder gets its reservation back
    assert (await queue.reserve("w1")).id == item.id
    assert await queue.reserve("w2") is None

    clock.advance(1_000)
    again = await queue.reserve("w2")
    assert again.id == item.id
    assert again.delivered_count == 2
    assert again.last_error == "visibility timeout expired"


@pytest.mark.asyncio
async def test_nack_and_dead_letter(queue, clock):
    item = await queue.enqueue(_payload())
    await queue.reserve("w")
    await queue.nack(item.id, error="boom", delay_ms=100)
    assert await queue.reserve("w") is None
    clock.advance(100)
    assert (await queue.reserve("w")).delivered_count == 2
    await queue.nack(item.id, error="boom again")

    assert await queue.depth() == 0
    dead = await queue.dead_letters()
    assert [d.id for d in dead] == [item.id]
    assert dead[0].last_error == "boom again"

    assert await queue.requeue_dead_letter(item.id)
    assert not await queue.requeue_dead_letter(item.id)
    revived = await queue.reserve("w")
    assert revived.delivered_count == 1
    assert await queue.stats() == {"depth": 1, "dead_letters": 0}


@pytest.mark.asyncio
async def test_depth_limit_per_priority(queue):
    for _ in range(3):
        await queue.enqueue(_payload())
    with pytest.raises(QueueFull):
        await queue.enqueue(_payload())
    assert not await queue.has_capacity(5)
    assert await queue.has_capacity(6)
    await queue.enqueue(_payload(), priority=6)
    # internal items bypass the limit
    await queue.enqueue(_payload(), enforce_limit=False)
    assert await queue.depth() == 5
    assert await queue.depth(5) == 4


@pytest.mark.asyncio
async def test_enqueue_with_known_id_is_idempotent(queue):
    first = await queue.enqueue(_payload(), item_id="x")
    second = await queue.enqueue(_payload(step_id="other"), item_id="x")
    assert second.payload.step_id == first.payload.step_id
    assert await queue.depth() == 1
    assert await queue.ack("x")
    assert not await queue.ack("x")


@pytest.mark.asyncio
async def test_outbox_relays_once(clock):
    store = InMemoryStore()
    queue = InMemoryQueue(clock=clock)
    async with store.transaction() as tx:
        repo = Repository(tx)
        await stage(repo, clock, "item-1", _payload(), priority=5)
        await stage(repo, clock, "item-2", _payload(step_id="later"), priority=5, delay_ms=5_000)

    clock.advance(2_000)
    assert await relay_outbox(store, queue, clock) == 2
    assert await relay_outbox(store, queue, clock) == 0
    assert {i.id: i.visible_at for i in queue.pending()} == {
        "item-1": clock.now_ms(),
        "item-2": clock.now_ms() + 3_000,
    }


@pytest.mark.asyncio
async def test_rolled_back_stage_is_never_published(clock):
    store = InMemoryStore()
    queue = InMemoryQueue(clock=clock)
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await stage(Repository(tx), clock, "item-1", _payload(), priority=5)
            raise RuntimeError("rollback")
    assert await relay_outbox(store, queue, clock) == 0


def test_get_queue_backends():
    config = FlowlineConfig()
    assert isinstance(get_queue(config=config), InMemoryQueue)
    assert isinstance(get_queue("redis", config=config), RedisQueue)
    with pytest.raises(ValueError):
        get_queue("carrier-pigeon", config=config)


@pytest.fixture
def redis_queue(clock):
    # scripts are registered on first use
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisQueue(clock=clock, visibility_ms=1_000, max_attempts=2, max_depth=3, client=client)


@pytest.mark.asyncio
async def test_redis_queue_orders_by_priority_then_fifo(redis_queue):
    await redis_queue.enqueue(_payload(step_id="low"), priority=2)
    await redis_queue.enqueue(_payload(step_id="first"), priority=8)
    await redis_queue.enqueue(_payload(step_id="second"), priority=8)

    order = []
    while (item := await redis_queue.reserve("w")) is not None:
        order.append(item.payload.step_id)
        assert await redis_queue.ack(item.id)
    assert order == ["first", "second", "low"]
    assert await redis_queue.depth() == 0


@pytest.mark.asyncio
async def test_redis_queue_redelivers_after_visibility(redis_queue, clock):
    item = await redis_queue.enqueue(_payload())
    assert (await redis_queue.reserve("w1")).id == item.id
    assert (await redis_queue.reserve("w1")).id == item.id
    assert await redis_queue.reserve("w2") is None

    clock.advance(1_000)
    again = await redis_queue.reserve("w2")
    assert again.id == item.id
    assert again.delivered_count == 2
    assert again.reserved_by == "w2"
    assert again.last_error == "visibility timeout expired"


@pytest.mark.asyncio
async def test_redis_queue_nack_and_dead_letter(redis_queue, clock):
    item = await redis_queue.enqueue(_payload())
    await redis_queue.reserve("w")
    await redis_queue.nack(item.id, error="boom", delay_ms=100)
    assert await redis_queue.reserve("w") is None
    clock.advance(100)
    assert (await redis_queue.reserve("w")).delivered_count == 2
    await redis_queue.nack(item.id, error="boom again")

    assert await redis_queue.depth() == 0
    dead = await redis_queue.dead_letters()
    assert [d.id for d in dead] == [item.id]
    assert dead[0].last_error == "boom again"
    assert not await redis_queue.ack(item.id)

    assert await redis_queue.requeue_dead_letter(item.id)
    assert not await redis_queue.requeue_dead_letter(item.id)
    assert (await redis_queue.reserve("w")).delivered_count == 1


@pytest.mark.asyncio
async def test_redis_queue_depth_limit_and_known_ids(redis_queue):
    first = await redis_queue.enqueue(_payload(), item_id="x")
    again = await redis_queue.enqueue(_payload(step_id="other"), item_id="x")
    assert again.payload.step_id == first.payload.step_id
    for _ in range(2):
        await redis_queue.enqueue(_payload())
    with pytest.raises(QueueFull):
        await redis_queue.enqueue(_payload())
    await redis_queue.enqueue(_payload(), enforce_limit=False)
    assert await redis_queue.depth(5) == 4
