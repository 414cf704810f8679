"""Webhook and event triggers."""

import asyncio
import json

import pytest

from flowline.errors import InvalidTransition, Unauthorized, ValidationError
from flowline.models import InstanceStatus, TriggerKind
from flowline.signing import WebhookSigner

GRAPH = {"steps": [{"id": "A", "kind": "task", "config": {"handler": "echo"}}]}
SECRET = "s3cret"


async def _webhook(deploy):
    return await deploy(GRAPH, name="hook", trigger_kind="webhook", trigger_config={"secret": SECRET})


@pytest.mark.asyncio
async def test_signed_webhook_starts_an_instance(engine, deploy):
    definition = await _webhook(deploy)
    body = json.dumps({"order": 7})
    headers = {
        "X-Signature": WebhookSigner().sign(body, SECRET),
        "X-Timestamp": str(engine.clock.now_ms() // 1000),
        "Content-Type": "application/json",
    }

    instance = await engine.dispatcher.handle_webhook(definition.id, body, headers)
    assert instance.trigger_kind == TriggerKind.WEBHOOK
    assert instance.input_data == {"order": 7}
    assert "Content-Type" not in instance.trigger_data["headers"]

    await engine.drain()
    detail = await engine.control.get_instance(instance.id)
    assert detail.instance.status == InstanceStatus.COMPLETED
    assert detail.instance.output_data["order"] == 7


@pytest.mark.asyncio
async def test_webhook_signature_is_checked(engine, deploy):
    definition = await _webhook(deploy)
    body = '{"order": 7}'

    with pytest.raises(Unauthorized):
        await engine.dispatcher.handle_webhook(definition.id, body, {})
    with pytest.raises(Unauthorized):
        await engine.dispatcher.handle_webhook(
            definition.id, body, {"X-Signature": WebhookSigner().sign(body, "wrong")}
        )
    # header names are case-insensitive
    signature = WebhookSigner().sign(body, SECRET)
    instance = await engine.dispatcher.handle_webhook(definition.id, body, {"x-signature": signature})
    assert instance.input_data == {"order": 7}


@pytest.mark.asyncio
async def test_stale_webhook_is_refused(engine, deploy):
    definition = await _webhook(deploy)
    body = "{}"
    stale = engine.clock.now_ms() - engine.config.engine.webhook_skew_ms - 1000
    headers = {"X-Signature": WebhookSigner().sign(body, SECRET), "X-Timestamp": str(stale)}
    with pytest.raises(Unauthorized):
        await engine.dispatcher.handle_webhook(definition.id, body, headers)


@pytest.mark.asyncio
async def test_webhook_needs_a_webhook_definition(engine, deploy):
    definition = await deploy(GRAPH)
    with pytest.raises(InvalidTransition):
        await engine.dispatcher.handle_webhook(definition.id, "{}", {})

    with pytest.raises(ValidationError):
        await engine.control.create_definition("hook", GRAPH, trigger_kind="webhook")


@pytest.mark.asyncio
async def test_event_starts_matching_definitions_once(engine, deploy):
    big = await deploy(
        GRAPH, name="big", trigger_kind="event", trigger_config={"topic": "orders", "filter": "amount > 100"}
    )
    await deploy(GRAPH, name="other", trigger_kind="event", trigger_config={"topic": "refunds"})

    small = await engine.events.publish("orders", {"amount": 5})
    assert await engine.dispatcher.handle_event(small) == {"started": [], "woken": []}

    event = await engine.events.publish("orders", {"amount": 500})
    result = await engine.dispatcher.handle_event(event)
    assert len(result["started"]) == 1

    # redelivery of the same event is ignored
    assert await engine.dispatcher.handle_event(event) == {"started": [], "woken": []}

    await engine.drain()
    detail = await engine.control.get_instance(result["started"][0])
    assert detail.instance.definition_id == big.id
    assert detail.instance.trigger_data == {"eventId": event.id, "topic": "orders"}
    assert detail.instance.status == InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_event_wakes_waiting_steps(engine, deploy, linear):
    graph = linear(
        {"id": "W", "kind": "wait", "config": {"event": {"topic": "approvals"}}},
        {"id": "B", "kind": "task", "config": {"handler": "noop"}},
    )
    definition = await deploy(graph)
    instance = await engine.control.start(definition.id)
    await engine.drain()

    event = await engine.events.publish("approvals", {"by": "carol"})
    result = await engine.dispatcher.handle_event(event)
    assert result["started"] == []
    assert len(result["woken"]) == 1

    await engine.drain()
    detail = await engine.control.get_instance(instance.id)
    assert detail.instance.status == InstanceStatus.COMPLETED
    assert detail.steps[0].output == {"event": {"by": "carol"}}


@pytest.mark.asyncio
async def test_listen_consumes_the_bus(engine, deploy):
    await deploy(GRAPH, name="listener", trigger_kind="event", trigger_config={"topic": "orders"})

    listener = asyncio.create_task(engine.dispatcher.listen(["orders"], lifespan=0.5))
    await asyncio.sleep(0.05)
    await engine.events.publish("orders", {"amount": 1})
    assert await asyncio.wait_for(listener, timeout=5) == 1

    await engine.drain()
    instances = await engine.control.list_instances()
    assert len(instances) == 1
    assert instances[0].trigger_kind == TriggerKind.EVENT
