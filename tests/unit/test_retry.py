import asyncio

import httpx
import pytest

from flowline.config import DeliveryConfig, RetryConfig
from flowline.contracts import DefinitionGraph, RetryPolicy, StepSpec
from flowline.errors import FatalError, RetriableError, StepTimeout, classify_error
from flowline.retry import EffectiveRetryPolicy, compute_backoff, delivery_policy, resolve_policy


def _policy(**overrides):
    values = dict(
        max_attempts=4,
        initial_delay_ms=1_000,
        multiplier=2.0,
        max_delay_ms=60_000,
        retriable_errors=["transient", "timeout"],
        jitter=0.0,
    )
    values.update(overrides)
    return EffectiveRetryPolicy(**values)


def test_backoff_doubles_and_caps():
    policy = _policy(max_delay_ms=3_000)
    assert [compute_backoff(policy, attempt) for attempt in (1, 2, 3, 4)] == [1_000, 2_000, 3_000, 3_000]


def test_backoff_jitter_bounds():
    policy = _policy(jitter=0.1)
    assert compute_backoff(policy, 1, rand=lambda: 0.0) == 900
    assert compute_backoff(policy, 1, rand=lambda: 1.0) == 1_100
    assert compute_backoff(policy, 1, rand=lambda: 0.5) == 1_000


def test_allows_counts_attempts_and_kinds():
    policy = _policy(max_attempts=3)
    assert policy.allows(1, "transient")
    assert policy.allows(2, "timeout")
    assert not policy.allows(3, "transient")
    assert not policy.allows(1, "fatal")


def test_step_policy_wins_field_by_field():
    graph = DefinitionGraph.model_validate(
        {
            "steps": [{"id": "A", "kind": "task"}],
            "settings": {"retryPolicy": {"maxAttempts": 7, "initialDelay": 50}},
        }
    )
    step = StepSpec(id="A", kind="task", retry_policy=RetryPolicy(max_attempts=2))
    defaults = RetryConfig()

    policy = resolve_policy(step, graph, defaults)
    assert policy.max_attempts == 2
    assert policy.initial_delay_ms == 50
    assert policy.multiplier == defaults.multiplier
    assert policy.retriable_errors == defaults.retriable_errors

    bare = resolve_policy(StepSpec(id="B", kind="task"), None, defaults)
    assert bare.max_attempts == defaults.max_attempts


def test_delivery_policy_uses_its_own_settings():
    policy = delivery_policy(DeliveryConfig(max_attempts=2, initial_delay_ms=10))
    assert policy.max_attempts == 2
    assert policy.initial_delay_ms == 10
    assert policy.allows(1, "5xx")


def test_classify_error():
    request = httpx.Request("GET", "https://example.test")
    server_error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))
    client_error = httpx.HTTPStatusError("nope", request=request, response=httpx.Response(404, request=request))
    throttled = httpx.HTTPStatusError("slow", request=request, response=httpx.Response(429, request=request))

    assert classify_error(server_error) == "5xx"
    assert classify_error(throttled) == "5xx"
    assert classify_error(client_error) == "fatal"
    assert classify_error(httpx.ConnectError("down", request=request)) == "network"
    assert classify_error(ConnectionError()) == "network"
    assert classify_error(asyncio.TimeoutError()) == "timeout"
    assert classify_error(StepTimeout("slow")) == "timeout"
    assert classify_error(RetriableError("flaky", kind="network")) == "network"
    assert classify_error(FatalError("bad")) == "fatal"
    assert classify_error(KeyError("x")) == "error"


@pytest.mark.parametrize("kind", ["transient", "network", "timeout", "5xx"])
def test_default_retriable_kinds(kind):
    assert kind in RetryConfig().retriable_errors
