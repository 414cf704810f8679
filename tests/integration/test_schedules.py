"""Cron bindings driven by the scheduler tick."""

import pytest

from flowline import Engine, FlowlineConfig, SequentialIds
from flowline.clock import from_iso
from flowline.config import QueueConfig
from flowline.errors import ValidationError
from flowline.models import TriggerKind
from flowline.scheduler import Scheduler

MIDNIGHT = from_iso("2024-01-01T00:00:00Z")
MINUTE = 60_000

GRAPH = {"steps": [{"id": "A", "kind": "task", "config": {"handler": "noop"}}]}


async def _scheduled(engine, cron="*/5 * * * *", name="cron", **trigger):
    definition = await engine.control.create_definition(
        name, GRAPH, trigger_kind="scheduled", trigger_config={"cron": cron, **trigger}
    )
    definition = await engine.control.activate_definition(definition.id)
    bindings = await engine.scheduler.bindings(definition.id)
    assert len(bindings) == 1
    return definition, bindings[0]


@pytest.mark.asyncio
async def test_binding_fires_on_time_and_moves_to_next_slot(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine)
    assert binding.next_fire_at == MIDNIGHT + 5 * MINUTE

    assert await engine.scheduler.tick() == []

    clock.set(MIDNIGHT + 5 * MINUTE)
    fired = await engine.scheduler.tick()
    assert len(fired) == 1

    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.next_fire_at == MIDNIGHT + 10 * MINUTE
    assert binding.last_fire_at == MIDNIGHT + 5 * MINUTE
    assert binding.fire_count == 1

    detail = await engine.control.get_instance(fired[0])
    assert detail.instance.trigger_kind == TriggerKind.SCHEDULED
    assert detail.instance.trigger_data["scheduledAt"] == "2024-01-01T00:05:00.000Z"
    assert detail.instance.trigger_data["catchUp"] is False

    await engine.drain()
    detail = await engine.control.get_instance(fired[0])
    assert detail.instance.status.value == "completed"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "policy, expected_fires, dropped",
    [
        ("once", ["2024-01-01T00:35:00.000Z"], 5),
        ("all", ["2024-01-01T00:30:00.000Z", "2024-01-01T00:35:00.000Z"], 4),
        ("none", [], 6),
    ],
)
async def test_catch_up_policy_after_outage(engine, clock, policy, expected_fires, dropped):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine, catchUpPolicy=policy)
    clock.set(MIDNIGHT + 5 * MINUTE)
    await engine.scheduler.tick()

    clock.set(MIDNIGHT + 37 * MINUTE)
    fired = await engine.scheduler.tick()

    scheduled_at = []
    for instance_id in fired:
        detail = await engine.control.get_instance(instance_id)
        assert detail.instance.trigger_data["catchUp"] is True
        scheduled_at.append(detail.instance.trigger_data["scheduledAt"])
    assert sorted(scheduled_at) == expected_fires

    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.dropped_count == dropped
    assert binding.next_fire_at == MIDNIGHT + 40 * MINUTE


@pytest.mark.asyncio
async def test_default_catch_up_policy_comes_from_config(clock):
    config = FlowlineConfig()
    config.scheduler.catchup_policy = "none"
    engine = Engine.in_memory(config, clock=clock, ids=SequentialIds())
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine)

    clock.set(MIDNIGHT + 22 * MINUTE)
    assert await engine.scheduler.tick() == []
    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.dropped_count == 4
    assert binding.next_fire_at == MIDNIGHT + 25 * MINUTE


@pytest.mark.asyncio
async def test_only_the_lease_holder_fires(engine, clock):
    clock.set(MIDNIGHT)
    await _scheduled(engine, cron="* * * * *")
    other = Scheduler(engine, holder="other")
    clock.set(MIDNIGHT + 50_000)
    assert await other.acquire_lease()

    clock.set(MIDNIGHT + MINUTE)
    assert await engine.scheduler.tick() == []

    # the other holder stops renewing; its lease lapses after lease + grace
    lapse = MIDNIGHT + 50_000 + engine.config.scheduler.lease_ms + engine.config.scheduler.lease_grace_ms
    clock.set(lapse - 1)
    assert not await engine.scheduler.acquire_lease()
    clock.set(lapse)
    assert len(await engine.scheduler.tick()) == 1
    assert not await other.acquire_lease()


@pytest.mark.asyncio
async def test_released_lease_can_be_taken_at_once(engine, clock):
    other = Scheduler(engine, holder="other")
    assert await other.acquire_lease()
    await other.release_lease()
    assert await engine.scheduler.acquire_lease()


@pytest.mark.asyncio
async def test_deactivation_removes_the_binding(engine, clock):
    clock.set(MIDNIGHT)
    definition, _ = await _scheduled(engine)
    await engine.control.deactivate_definition(definition.id)
    assert await engine.scheduler.bindings(definition.id) == []

    clock.set(MIDNIGHT + 5 * MINUTE)
    assert await engine.scheduler.tick() == []

    await engine.control.activate_definition(definition.id)
    (binding,) = await engine.scheduler.bindings(definition.id)
    assert binding.next_fire_at == MIDNIGHT + 10 * MINUTE


@pytest.mark.asyncio
async def test_disable_and_enable_skip_missed_fires(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine)
    await engine.scheduler.disable(binding.id)

    clock.set(MIDNIGHT + 12 * MINUTE)
    assert await engine.scheduler.tick() == []

    enabled = await engine.scheduler.enable(binding.id)
    assert enabled.next_fire_at == MIDNIGHT + 15 * MINUTE
    assert await engine.scheduler.tick() == []


@pytest.mark.asyncio
async def test_trigger_now_leaves_next_fire_alone(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine, input={"source": "cron"})

    instance_id = await engine.scheduler.trigger_now(binding.id, actor_id="ops")
    detail = await engine.control.get_instance(instance_id)
    assert detail.instance.input_data == {"source": "cron"}
    assert detail.instance.trigger_data["manual"] is True
    assert detail.instance.initiated_by == "ops"

    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.next_fire_at == MIDNIGHT + 5 * MINUTE
    assert binding.fire_count == 1


@pytest.mark.asyncio
async def test_end_date_disables_the_binding(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine, endAt="2024-01-01T00:07:00Z")

    clock.set(MIDNIGHT + 5 * MINUTE)
    assert len(await engine.scheduler.tick()) == 1
    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.enabled is False
    assert binding.next_fire_at is None
    history = await engine.control.get_history(binding.id)
    assert history[-1].event_kind == "schedule.expired"


@pytest.mark.asyncio
async def test_start_date_delays_the_first_fire(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(engine, cron="0 * * * *", startAt="2024-01-01T03:30:00Z")
    assert binding.next_fire_at == MIDNIGHT + 4 * 60 * MINUTE


@pytest.mark.asyncio
async def test_full_queue_defers_the_fire(clock):
    config = FlowlineConfig(queue=QueueConfig(max_depth=1))
    engine = Engine.in_memory(config, clock=clock, ids=SequentialIds(), rand=lambda: 0.5)
    clock.set(MIDNIGHT)
    definition, binding = await _scheduled(engine)
    await engine.control.start(definition.id)

    clock.set(MIDNIGHT + 5 * MINUTE)
    assert await engine.scheduler.tick() == []
    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.deferred_until == MIDNIGHT + 5 * MINUTE + 1_000
    assert binding.defer_count == 1
    assert binding.next_fire_at == MIDNIGHT + 5 * MINUTE

    await engine.drain()
    clock.advance(1_000)
    fired = await engine.scheduler.tick()
    assert len(fired) == 1
    binding = await engine.scheduler.get_binding(binding.id)
    assert binding.defer_count == 0
    assert binding.deferred_until is None


@pytest.mark.asyncio
async def test_frequency_preset_and_timezone(engine, clock):
    clock.set(MIDNIGHT)
    _, binding = await _scheduled(
        engine, cron=None, frequency="daily", runAt="08:00", timezone="Europe/Berlin"
    )
    assert binding.cron_expr == "0 8 * * *"
    # 08:00 in Berlin is 07:00 UTC in winter
    assert binding.next_fire_at == MIDNIGHT + 7 * 60 * MINUTE

    preview = engine.scheduler.preview(binding, count=2)
    assert preview["description"] == "At 08:00 every day"
    assert preview["nextExecutions"] == ["2024-01-01T07:00:00.000Z", "2024-01-02T07:00:00.000Z"]


@pytest.mark.asyncio
async def test_invalid_schedules_are_rejected(engine):
    with pytest.raises(ValidationError):
        await engine.control.create_definition(
            "bad", GRAPH, trigger_kind="scheduled", trigger_config={"cron": "61 * * * *"}
        )
    with pytest.raises(ValidationError):
        await engine.control.create_definition(
            "bad", GRAPH, trigger_kind="scheduled", trigger_config={"cron": "* * * *"}
        )
    with pytest.raises(ValidationError):
        await engine.control.create_definition(
            "bad",
            GRAPH,
            trigger_kind="scheduled",
            trigger_config={"cron": "* * * * *", "catchUpPolicy": "sometimes"},
        )
