"""Reports run as workflows: cache, shaping, export and delivery."""

import asyncio
import json

import pytest

from flowline.errors import NotFound, ValidationError
from flowline.models import DeliveryStatus, InstanceStatus
from flowline.reports import CallableQuerySource, ReportDelivery, ReportParameter, ReportSpec

ROWS = [
    {"region": "north", "total": 12},
    {"region": "south", "total": 40},
    {"region": "east", "total": 7},
]


def _spec(**overrides):
    values = dict(
        id="sales",
        name="Sales by region",
        query="select region, total from sales where year = :year",
        parameters=[ReportParameter(name="year", type="integer", required=True)],
        cache_ttl_seconds=60,
    )
    values.update(overrides)
    return ReportSpec(**values)


@pytest.mark.asyncio
async def test_report_run_shapes_exports_and_delivers(engine):
    source = CallableQuerySource(lambda query, params: ROWS)
    engine.reports.register_source("default", source)
    spec = _spec(
        format="csv",
        columns=["region", "total"],
        sort_by="total",
        descending=True,
        limit=2,
        delivery=ReportDelivery(adapter="memory", target={"to": "finance"}),
    )
    await engine.control.register_report(spec)

    instance = await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()

    detail = await engine.control.get_instance(instance.id)
    assert detail.instance.status == InstanceStatus.COMPLETED
    output = detail.instance.output_data
    assert output["reportId"] == "sales"
    assert output["format"] == "csv"
    assert output["rowCount"] == 2
    assert output["cacheHit"] is False
    assert output["artifactRef"] == f"sales/{instance.id}.csv"

    delivered = engine.deliveries.get("memory").delivered
    assert len(delivered) == 1
    assert delivered[0]["target"] == {"to": "finance"}
    assert delivered[0]["payload"]["content"] == "region,total\nsouth,40\nnorth,12\n"
    assert delivered[0]["payload"]["contentType"] == "text/csv"

    record = detail.deliveries[0]
    assert record.status == DeliveryStatus.DELIVERED
    assert record.report_id == "sales"
    assert record.parameter_fingerprint == output["fingerprint"]
    assert record.result_ref == output["artifactRef"]


@pytest.mark.asyncio
async def test_second_run_with_same_parameters_hits_the_cache(engine):
    source = CallableQuerySource(lambda query, params: ROWS)
    engine.reports.register_source("default", source)
    await engine.control.register_report(_spec())

    first = await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()
    second = await engine.control.run_report("sales", {"year": 2024})
    other_year = await engine.control.run_report("sales", {"year": 2023})
    await engine.drain()

    outputs = [(await engine.control.get_instance(i.id)).instance.output_data for i in (first, second, other_year)]
    assert [o["cacheHit"] for o in outputs] == [False, True, False]
    assert outputs[0]["fingerprint"] == outputs[1]["fingerprint"] != outputs[2]["fingerprint"]
    assert source.calls == 2

    stats = await engine.control.get_stats((await engine.control.get_instance(first.id)).instance.definition_id)
    assert stats["cacheHits"] == 1


@pytest.mark.asyncio
async def test_invalidate_forces_recompute(engine):
    source = CallableQuerySource(lambda query, params: ROWS)
    engine.reports.register_source("default", source)
    await engine.control.register_report(_spec())

    await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()
    assert await engine.control.invalidate_report("sales") == 1
    await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()
    assert source.calls == 2


@pytest.mark.asyncio
async def test_expired_entry_is_recomputed(engine, clock):
    source = CallableQuerySource(lambda query, params: ROWS)
    engine.reports.register_source("default", source)
    await engine.control.register_report(_spec(cache_ttl_seconds=10))

    await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()
    clock.advance(10_000)
    instance = await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()

    detail = await engine.control.get_instance(instance.id)
    assert detail.instance.output_data["cacheHit"] is False
    assert source.calls == 2


@pytest.mark.asyncio
async def test_concurrent_identical_runs_compute_once(engine):
    async def slow_rows(query, params):
        await asyncio.sleep(0.2)
        return ROWS

    source = CallableQuerySource(slow_rows)
    engine.reports.register_source("default", source)
    spec = _spec()
    await engine.control.register_report(spec)

    first = await engine.control.run_report("sales", {"year": 2024})
    second = await engine.control.run_report("sales", {"year": 2024})

    stop = asyncio.Event()

    async def watch():
        while True:
            details = [await engine.control.get_instance(i.id) for i in (first, second)]
            if all(d.instance.status.is_terminal for d in details):
                stop.set()
                return details
            await asyncio.sleep(0.02)

    workers = [engine.executor.run_worker(name, stop=stop) for name in ("w1", "w2")]
    details, *_ = await asyncio.wait_for(asyncio.gather(watch(), *workers), timeout=10)

    assert source.calls == 1
    assert all(d.instance.status == InstanceStatus.COMPLETED for d in details)
    assert sorted(d.instance.output_data["cacheHit"] for d in details) == [False, True]

    entry = await engine.cache.peek("sales", details[0].instance.output_data["fingerprint"])
    assert entry.expires_at == entry.computed_at + spec.cache_ttl_seconds * 1000


@pytest.mark.asyncio
async def test_failed_query_releases_the_cache_claim(engine, run_to_end):
    calls = []

    def flaky(query, params):
        calls.append(params)
        if len(calls) == 1:
            raise ConnectionError("database unavailable")
        return ROWS

    engine.reports.register_source("default", CallableQuerySource(flaky))
    await engine.control.register_report(_spec())

    instance = await engine.control.run_report("sales", {"year": 2024})
    detail = await run_to_end(instance.id)

    assert detail.instance.status == InstanceStatus.COMPLETED
    assert len(calls) == 2
    query_rows = [s for s in detail.steps if s.step_id == "query"]
    assert query_rows[0].error.kind == "network"


@pytest.mark.asyncio
async def test_run_report_checks_parameters_up_front(engine):
    engine.reports.register_source("default", CallableQuerySource(lambda query, params: ROWS))
    await engine.control.register_report(_spec())

    with pytest.raises(ValidationError) as excinfo:
        await engine.control.run_report("sales", {})
    assert "parameter 'year' is required" in excinfo.value.problems

    with pytest.raises(ValidationError):
        await engine.control.run_report("sales", {"year": "last"})

    with pytest.raises(NotFound):
        await engine.control.run_report("missing", {})


@pytest.mark.asyncio
async def test_reregistering_a_report_replaces_its_workflow(engine):
    engine.reports.register_source("default", CallableQuerySource(lambda query, params: ROWS))
    first = await engine.control.register_report(_spec())
    second = await engine.control.register_report(_spec(version="2", format="ndjson"))

    assert second.id != first.id
    assert (await engine.control.get_definition(first.id)).status.value == "inactive"

    instance = await engine.control.run_report("sales", {"year": 2024})
    await engine.drain()
    detail = await engine.control.get_instance(instance.id)
    assert detail.instance.definition_id == second.id
    assert detail.instance.output_data["format"] == "ndjson"


@pytest.mark.asyncio
async def test_scheduled_report_carries_parameters(engine, clock):
    engine.reports.register_source("default", CallableQuerySource(lambda query, params: ROWS))
    definition = await engine.control.register_report(
        _spec(), schedule={"cron": "0 * * * *", "parameters": {"year": 2024}}
    )

    assert definition.trigger_kind.value == "scheduled"
    assert definition.trigger_config["input"] == {"parameters": {"year": 2024}}
    bindings = await engine.scheduler.bindings()
    assert [b.definition_id for b in bindings] == [definition.id]

    clock.set(bindings[0].next_fire_at)
    fired = await engine.scheduler.tick()
    assert len(fired) == 1
    await engine.drain()

    detail = await engine.control.get_instance(fired[0])
    assert detail.instance.status == InstanceStatus.COMPLETED
    assert json.loads(json.dumps(detail.instance.output_data))["rowCount"] == 3
