"""Step handlers.

A handler is an async callable taking a :class:`StepContext` and returning a
:class:`StepOutcome`, a dict (the step output) or ``None``. ``task`` steps
dispatch to named task handlers registered with :meth:`HandlerRegistry.task`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .clock import Clock
from .contracts import ChildSpec, DeliveryOutcome, DeliveryRequest, StepKind, StepOutcome, WaitSpec
from .delivery import DeliveryRegistry
from .errors import FatalError, NotFound, RetriableError, StepTimeout, ValidationError
from .expressions import evaluate, resolve_template

logger = logging.getLogger(__name__)

Handler = Callable[["StepContext"], Awaitable[Any]]


@dataclass
class StepContext:
    """Everything a handler may look at while running one step attempt."""

    instance_id: str
    definition_id: str
    step_id: str
    kind: StepKind
    attempt: int
    config: Dict[str, Any]
    input: Dict[str, Any]
    context: Dict[str, Any]
    clock: Clock
    deadline: Optional[int] = None
    idempotency_key: Optional[str] = None
    services: Dict[str, Any] = field(default_factory=dict)

    def remaining_ms(self) -> Optional[int]:
        if self.deadline is None:
            return None
        return self.deadline - self.clock.now_ms()

    def check_deadline(self) -> None:
        """Raise ``StepTimeout`` if the deadline has passed (for cooperative handlers)."""
        remaining = self.remaining_ms()
        if remaining is not None and remaining <= 0:
            raise StepTimeout(f"Step {self.step_id} passed its deadline")

    def resolve(self, value: Any) -> Any:
        return resolve_template(value, self.input)


class HandlerRegistry:
    """Maps step kinds and task names to handlers."""

    def __init__(self) -> None:
        self._kinds: Dict[StepKind, Handler] = {}
        self._tasks: Dict[str, Handler] = {}

    def kind(self, kind: StepKind) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self._kinds[StepKind(kind)] = fn
            return fn

        return decorator

    def task(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator registering a task handler under ``name``."""

        def decorator(fn: Handler) -> Handler:
            self._tasks[name] = fn
            return fn

        return decorator

    def register_task(self, name: str, fn: Handler) -> None:
        self._tasks[name] = fn

    def has_task(self, name: str) -> bool:
        return name in self._tasks

    def for_kind(self, kind: StepKind) -> Handler:
        try:
            return self._kinds[kind]
        except KeyError:
            raise NotFound(f"No handler for step kind {kind.value!r}") from None

    def for_task(self, name: str) -> Handler:
        try:
            return self._tasks[name]
        except KeyError:
            raise FatalError(f"No task handler named {name!r}") from None

    async def run(self, ctx: StepContext) -> StepOutcome:
        result = await self.for_kind(ctx.kind)(ctx)
        return StepOutcome.coerce(result)

    @classmethod
    def with_builtins(cls) -> "HandlerRegistry":
        registry = cls()
        install_builtins(registry)
        return registry


# ---------------------------------------------------------------------------
# Step kinds
# ---------------------------------------------------------------------------


def install_builtins(registry: HandlerRegistry) -> None:
    @registry.kind(StepKind.TASK)
    async def run_task(ctx: StepContext) -> Any:
        return await registry.for_task(ctx.config["handler"])(ctx)

    @registry.kind(StepKind.DECISION)
    async def run_decision(ctx: StepContext) -> StepOutcome:
        # branch conditions are evaluated by the runtime over the merged view
        return StepOutcome()

    @registry.kind(StepKind.PARALLEL)
    async def run_parallel(ctx: StepContext) -> StepOutcome:
        return StepOutcome()

    @registry.kind(StepKind.JOIN)
    async def run_join(ctx: StepContext) -> StepOutcome:
        return StepOutcome(output=dict(ctx.services.get("join_input", {})))

    @registry.kind(StepKind.SCRIPT)
    async def run_script(ctx: StepContext) -> Dict[str, Any]:
        scope = dict(ctx.input)
        output: Dict[str, Any] = {}
        for name, source in ctx.config["assign"].items():
            output[name] = scope[name] = evaluate(source, scope)
        return output

    @registry.kind(StepKind.WAIT)
    async def run_wait(ctx: StepContext) -> StepOutcome:
        now = ctx.clock.now_ms()
        if "durationMs" in ctx.config:
            return StepOutcome(wait=WaitSpec(until=now + int(ctx.resolve(ctx.config["durationMs"]))))
        if "until" in ctx.config:
            until = evaluate(ctx.config["until"], ctx.input)
            if not isinstance(until, (int, float)):
                raise ValidationError(f"wait.until of {ctx.step_id} must evaluate to epoch ms")
            return StepOutcome(wait=WaitSpec(until=int(until)))
        event = ctx.config["event"]
        timeout_ms = event.get("timeoutMs")
        return StepOutcome(
            wait=WaitSpec(
                topic=ctx.resolve(event["topic"]),
                filter=event.get("filter"),
                timeout_at=now + int(timeout_ms) if timeout_ms else None,
            )
        )

    @registry.kind(StepKind.SUBFLOW)
    async def run_subflow(ctx: StepContext) -> StepOutcome:
        mapping = ctx.config.get("inputMapping")
        child_input = ctx.resolve(mapping) if isinstance(mapping, dict) else {}
        resolve_definition = ctx.services["resolve_definition"]
        definition_id = await resolve_definition(
            ctx.config.get("definitionId"), ctx.config.get("definitionName")
        )
        return StepOutcome(child=ChildSpec(definition_id=definition_id, input=child_input))

    @registry.kind(StepKind.HTTP)
    async def run_http(ctx: StepContext) -> Dict[str, Any]:
        return await http_request(ctx)

    @registry.kind(StepKind.DELIVERY)
    async def run_delivery(ctx: StepContext) -> StepOutcome:
        deliveries: DeliveryRegistry = ctx.services["deliveries"]
        request = DeliveryRequest(
            adapter=ctx.config["adapter"],
            target=ctx.resolve(ctx.config.get("target", {})),
            payload=delivery_payload(ctx),
        )
        outcome = await attempt_delivery(deliveries, request)
        # delivery status lives on the delivery record, not in the context
        return StepOutcome(delivery=outcome, delivery_request=request)

    install_builtin_tasks(registry)


async def attempt_delivery(deliveries: DeliveryRegistry, request: DeliveryRequest) -> DeliveryOutcome:
    """Call the adapter once; an adapter raising counts as a retriable failure."""

    adapter = deliveries.get(request.adapter)
    try:
        return await adapter.deliver(request.target, request.payload)
    except Exception as exc:
        logger.warning(f"Delivery adapter {request.adapter} raised: {exc}")
        return DeliveryOutcome(status="failed", retriable=True, error=str(exc) or type(exc).__name__)


def delivery_payload(ctx: StepContext) -> Dict[str, Any]:
    """``config.payload`` resolved over the view, else the instance scope."""
    if "payload" in ctx.config:
        payload = ctx.resolve(ctx.config["payload"])
        return payload if isinstance(payload, dict) else {"value": payload}
    return dict(ctx.context)


async def http_request(ctx: StepContext) -> Dict[str, Any]:
    """Issue the request described by the step config through httpx."""

    config = ctx.resolve(ctx.config)
    factory: Callable[[], httpx.AsyncClient] = ctx.services.get(
        "http_client_factory", lambda: httpx.AsyncClient()
    )
    remaining = ctx.remaining_ms()
    timeout = remaining / 1000 if remaining is not None and remaining > 0 else None
    async with factory() as client:
        response = await client.request(
            config.get("method", "GET").upper(),
            config["url"],
            params=config.get("params"),
            headers=config.get("headers"),
            json=config.get("json"),
            content=config.get("body"),
            timeout=timeout,
        )
    status = response.status_code
    if status >= 500 or status == 429:
        raise RetriableError(f"HTTP {status} from {config['url']}", kind="5xx", details={"status": status})
    if status >= 400:
        raise FatalError(f"HTTP {status} from {config['url']}", details={"status": status})
    try:
        body: Any = response.json()
    except ValueError:
        body = response.text
    output = {"status": status, "body": body}
    result_key = ctx.config.get("resultKey")
    return {result_key: output} if result_key else output


# ---------------------------------------------------------------------------
# Built-in tasks
# ---------------------------------------------------------------------------


def install_builtin_tasks(registry: HandlerRegistry) -> None:
    @registry.task("noop")
    async def noop(ctx: StepContext) -> Dict[str, Any]:
        return {}

    @registry.task("set")
    async def set_values(ctx: StepContext) -> Dict[str, Any]:
        """Output ``config.values`` with templates resolved."""
        return dict(ctx.resolve(ctx.config.get("values", {})))

    @registry.task("echo")
    async def echo(ctx: StepContext) -> Dict[str, Any]:
        fields = ctx.config.get("fields")
        if fields is None:
            return dict(ctx.resolve(ctx.config.get("input", {})))
        return {name: ctx.input.get(name) for name in fields}

    @registry.task("fail")
    async def fail(ctx: StepContext) -> Dict[str, Any]:
        """Fail the first ``times`` attempts (all when unset), then succeed."""
        times = ctx.config.get("times")
        if times is None or ctx.attempt <= int(times):
            message = ctx.config.get("message", f"{ctx.step_id} failed on attempt {ctx.attempt}")
            if ctx.config.get("retriable", True):
                raise RetriableError(message, kind=ctx.config.get("errorKind"))
            raise FatalError(message)
        return dict(ctx.resolve(ctx.config.get("values", {})))

    @registry.task("sleep")
    async def sleep(ctx: StepContext) -> Dict[str, Any]:
        await asyncio.sleep(float(ctx.config.get("ms", 0)) / 1000)
        return {}
