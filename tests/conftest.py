import pytest

import flowline.persistence as persistence
from flowline import Engine, FlowlineConfig, ManualClock, SequentialIds


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep ambient flowline.yaml and DB_* variables out of the tests."""
    monkeypatch.setenv("FLOWLINE_CONFIG", str(tmp_path / "missing.yaml"))
    for name in ("DB_URL", "DB_NAME", "DB_DRIVER", "FLOWLINE_QUEUE", "MAX_ATTEMPTS", "QUEUE_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    yield
    persistence.set_store(None)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine(clock):
    # rand=0.5 makes the backoff jitter factor exactly 1
    return Engine.in_memory(FlowlineConfig(), clock=clock, ids=SequentialIds(), rand=lambda: 0.5)


@pytest.fixture
def deploy(engine):
    """Create and activate a definition; returns the active definition."""

    async def _deploy(graph, name="wf", **kwargs):
        definition = await engine.control.create_definition(name, graph, **kwargs)
        return await engine.control.activate_definition(definition.id)

    return _deploy


@pytest.fixture
def run_to_end(engine, clock):
    """Drain the queue, advancing the manual clock between rounds, until the instance ends."""

    async def _run(instance_id, step_ms=1_000, rounds=50):
        for _ in range(rounds):
            await engine.drain()
            detail = await engine.control.get_instance(instance_id)
            if detail.instance.status.is_terminal:
                return detail
            clock.advance(step_ms)
        return await engine.control.get_instance(instance_id)

    return _run


def chain(*steps):
    """Graph running ``steps`` one after another."""
    ids = [step["id"] for step in steps]
    return {
        "steps": list(steps),
        "connections": [{"from": a, "to": b} for a, b in zip(ids, ids[1:])],
    }


@pytest.fixture
def linear():
    return chain
