"""Step execution engine for flowline workflows.

A worker reserves one work item, runs exactly one step attempt and commits
the step result, the instance context and the successor work items in one
transaction. Successors are written to the outbox and relayed to the queue
after commit, so a crash between the two never loses work.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .contracts import (
    ChildSpec,
    DeliveryOutcome,
    DeliveryRequest,
    StepError,
    StepKind,
    StepOutcome,
    StepSpec,
    WaitSpec,
    WorkItem,
    WorkItemKind,
    WorkPayload,
)
from .errors import (
    Conflict,
    FatalError,
    FlowlineError,
    IdempotencyMismatch,
    InvalidTransition,
    NotFound,
    StepTimeout,
    classify_error,
    error_message,
)
from .expressions import evaluate, resolve_template
from .handlers import StepContext, attempt_delivery
from .models import (
    INSTANCE_TRANSITIONS,
    STEP_TRANSITIONS,
    Barrier,
    BarrierRef,
    DefinitionStatus,
    DeliveryRecord,
    DeliveryStatus,
    EventSubscription,
    IdempotencyRecord,
    InstanceStatus,
    StepExecution,
    StepStatus,
    TriggerKind,
    WorkflowDefinition,
    WorkflowInstance,
)
from .persistence.repository import Repository
from .queues.outbox import relay_outbox, stage
from .retry import compute_backoff, delivery_policy, resolve_policy
from .runtime import (
    apply_output,
    entry_step,
    initial_context,
    join_input,
    matching_join,
    merged_view,
    project_input,
    project_output,
    select_successors,
)

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)

ACTIVE_STEP_STATUSES = (StepStatus.QUEUED, StepStatus.RUNNING)

# suspend_reason values
SUSPENDED_BY_WAIT = "wait"
SUSPENDED_BY_SIGNAL = "signal"


def split_execution_key(key: str) -> Tuple[str, str, int]:
    instance_id, step_id, attempt = key.rsplit("/", 2)
    return instance_id, step_id, int(attempt)


def request_hash(config: Dict[str, Any], view: Dict[str, Any]) -> str:
    """Fingerprint of a step's config resolved against its input."""
    resolved = resolve_template(config, view)
    encoded = json.dumps(resolved, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class _Attempt:
    """State carried from the claim transaction to the result transaction."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        step: StepExecution,
        view: Dict[str, Any],
    ) -> None:
        self.definition = definition
        self.instance = instance
        self.spec = spec
        self.step = step
        self.view = view


class StepExecutor:
    """Runs step attempts for work items pulled from the queue."""

    def __init__(self, engine: "Engine") -> None:
        self.engine = engine
        self.store = engine.store
        self.queue = engine.queue
        self.clock = engine.clock
        self.ids = engine.ids
        self.audit = engine.audit
        self.config = engine.config

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def relay(self) -> int:
        return await relay_outbox(self.store, self.queue, self.clock)

    async def run_worker(
        self,
        worker_id: str,
        lifespan: Optional[float] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> int:
        """Reserve and process items until ``stop`` is set or ``lifespan`` elapses.

        Args:
            worker_id: Identifier the queue records on reservations
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
            stop: Optional event that ends the loop when set
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        poll = self.config.queue.poll_interval_ms / 1000
        processed = 0
        await self.relay()
        logger.info(f"Worker {worker_id} started")
        while not (stop is not None and stop.is_set()):
            if deadline is not None and loop.time() >= deadline:
                break
            item = await self.queue.reserve(worker_id, timeout=poll)
            if item is None:
                await self.relay()
                continue
            await self.process(item)
            processed += 1
        logger.info(f"Worker {worker_id} stopped after {processed} items")
        return processed

    async def run_until_idle(self, worker_id: str = "inline", max_items: int = 10_000) -> int:
        """Process ready items until none is left; delayed items stay queued."""

        processed = 0
        while processed < max_items:
            await self.relay()
            item = await self.queue.reserve(worker_id, timeout=0)
            if item is None:
                break
            await self.process(item)
            processed += 1
        return processed

    async def process(self, item: WorkItem) -> None:
        """Handle one work item and acknowledge it, or release it for redelivery."""

        payload = item.payload
        try:
            if payload.kind == WorkItemKind.RUN:
                await self._run(payload)
            elif payload.kind == WorkItemKind.RESUME:
                await self._resume(payload)
            else:
                await self._redeliver(payload)
        except Conflict as exc:
            logger.warning(f"Conflict while processing {payload.execution_key}, retrying: {exc}")
            await self.queue.nack(item.id, error_message(exc), delay_ms=100)
            return
        except Exception as exc:
            logger.error(
                f"Work item {item.id} for {payload.execution_key} failed: {exc}", exc_info=True
            )
            await self.queue.nack(item.id, error_message(exc), delay_ms=1_000)
            return
        await self.queue.ack(item.id)
        await self.relay()

    # ------------------------------------------------------------------
    # Transitions (always inside the caller's transaction)
    # ------------------------------------------------------------------

    async def transition_instance(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        status: InstanceStatus,
        *,
        actor_id: Optional[str] = None,
        severity: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        before = instance.status
        if status not in INSTANCE_TRANSITIONS[before]:
            raise InvalidTransition(
                f"Instance {instance.id} cannot go from {before.value} to {status.value}"
            )
        now = self.clock.now_ms()
        instance.status = status
        if status == InstanceStatus.RUNNING:
            instance.suspend_reason = None
            if instance.started_at is None:
                instance.started_at = now
        if status.is_terminal:
            instance.completed_at = now
            instance.duration_ms = now - (instance.started_at or instance.created_at)
        await repo.save_instance(instance)

        if status == InstanceStatus.RUNNING and before == InstanceStatus.SUSPENDED:
            event_kind = "instance.resumed"
        else:
            event_kind = f"instance.{status.value}"
        await self.audit.append(
            repo,
            event_kind,
            instance.id,
            "instance",
            before={"status": before.value},
            after={"status": status.value},
            actor_id=actor_id,
            severity=severity,
            data=data,
        )
        logger.info(f"Instance {instance.id} {before.value} -> {status.value}")
        return instance

    async def transition_step(
        self,
        repo: Repository,
        step: StepExecution,
        status: StepStatus,
        *,
        severity: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> StepExecution:
        before = step.status
        if status not in STEP_TRANSITIONS[before]:
            raise InvalidTransition(
                f"Step {step.key} cannot go from {before.value} to {status.value}"
            )
        now = self.clock.now_ms()
        step.status = status
        if status == StepStatus.RUNNING:
            step.started_at = now
        elif status != StepStatus.COMPENSATED:
            step.completed_at = now
        if status != StepStatus.RUNNING:
            step.waiting = None
        await repo.save_step(step)
        await self.audit.append(
            repo,
            f"step.{status.value}",
            step.id,
            "step",
            before={"status": before.value},
            after={"status": status.value},
            severity=severity,
            data={**_step_ref(step), **(data or {})},
        )
        logger.info(f"Step {step.key} {before.value} -> {status.value}")
        return step

    async def cancel_step(self, repo: Repository, step: StepExecution, reason: str) -> None:
        """Cancel a queued or waiting row and drop its event subscription."""

        if step.waiting is not None and step.waiting.topic:
            await repo.delete_subscription(f"{step.waiting.topic}/{step.key}")
        await self.transition_step(repo, step, StepStatus.CANCELLED, data={"reason": reason})

    # ------------------------------------------------------------------
    # Instance creation and scheduling
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        input_data: Dict[str, Any],
        *,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
        trigger_data: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
        priority: Optional[int] = None,
        parent: Optional[WorkflowInstance] = None,
        parent_execution_key: Optional[str] = None,
        retry_of: Optional[WorkflowInstance] = None,
    ) -> WorkflowInstance:
        """Create a pending instance and dispatch its entry step."""

        graph = definition.definition
        context = initial_context(graph, input_data)
        first = entry_step(graph)
        settings = graph.effective_settings
        now = self.clock.now_ms()

        instance = WorkflowInstance(
            id=self.ids.new_id(),
            definition_id=definition.id,
            definition_name=definition.name,
            parent_instance_id=parent.id if parent else None,
            parent_execution_key=parent_execution_key,
            input_data=dict(input_data),
            context=context,
            created_at=now,
            deadline_at=now + settings.timeout if settings.timeout else None,
            priority=priority or settings.priority or self.config.engine.default_priority,
            initiated_by=initiated_by,
            trigger_kind=trigger_kind,
            trigger_data=dict(trigger_data or {}),
            retry_of=retry_of.id if retry_of else None,
            retry_count=retry_of.retry_count + 1 if retry_of else 0,
            current_step_id=first,
        )
        await repo.save_instance(instance)
        await self.audit.append(
            repo,
            "instance.created",
            instance.id,
            "instance",
            after={"status": instance.status.value},
            actor_id=initiated_by,
            data={
                "definitionId": definition.id,
                "definitionVersion": definition.version,
                "parentInstanceId": instance.parent_instance_id,
            },
        )
        await self.schedule(repo, instance, graph.step(first))
        await self.audit.append(
            repo,
            "instance.dispatched",
            instance.id,
            "instance",
            actor_id=initiated_by,
            data={"trigger": trigger_kind.value, "entryStep": first, "priority": instance.priority},
        )
        logger.info(
            f"Instance {instance.id} of {definition.name} v{definition.version} created "
            f"({trigger_kind.value}), entry step {first}"
        )
        return instance

    async def schedule(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        spec: StepSpec,
        *,
        input: Optional[Dict[str, Any]] = None,
        barriers: Optional[List[BarrierRef]] = None,
        delay_ms: int = 0,
        visit: Optional[int] = None,
        try_number: int = 1,
        compensation_for: Optional[str] = None,
    ) -> StepExecution:
        """Insert a queued StepExecution row and stage its work item."""

        attempt = await repo.next_sequence(f"attempt/{instance.id}/{spec.id}")
        if visit is None:
            visit = await repo.next_sequence(f"visit/{instance.id}/{spec.id}")
        now = self.clock.now_ms()
        step = StepExecution(
            id=self.ids.new_id(),
            instance_id=instance.id,
            step_id=spec.id,
            kind=spec.kind.value,
            attempt=attempt,
            visit=visit,
            try_number=try_number,
            queued_at=now,
            not_before=now + delay_ms if delay_ms else None,
            input=dict(input or {}),
            barriers=list(barriers or []),
            compensation_for=compensation_for,
        )
        # insert-only: a second row for the same execution key is a Conflict
        await repo.save_step(step)
        await self.audit.append(
            repo,
            "step.queued",
            step.id,
            "step",
            after={"status": step.status.value},
            data={**_step_ref(step), "delayMs": delay_ms},
        )
        await self.stage_item(repo, instance, step, WorkItemKind.RUN, delay_ms=delay_ms)
        return step

    async def stage_item(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        step: StepExecution,
        kind: WorkItemKind,
        *,
        delay_ms: int = 0,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = WorkPayload(
            instance_id=instance.id,
            step_id=step.step_id,
            attempt=step.attempt,
            definition_id=instance.definition_id,
            kind=kind,
            deadline=instance.deadline_at,
            data=data or {},
        )
        await stage(repo, self.clock, self.ids.new_id(), payload, instance.priority, delay_ms)

    async def restage_parked(self, repo: Repository, instance: WorkflowInstance) -> int:
        parked = list(instance.parked)
        instance.parked = []
        for payload in parked:
            await stage(repo, self.clock, self.ids.new_id(), payload, instance.priority)
        return len(parked)

    async def resolve_definition(
        self, definition_id: Optional[str], definition_name: Optional[str]
    ) -> str:
        """Id of the definition a subflow step names (by id, else the active one by name)."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            if definition_id:
                definition = await repo.get_definition(definition_id)
                return definition.id
            for definition in await repo.list_definitions():
                if definition.name == definition_name and definition.status == DefinitionStatus.ACTIVE:
                    return definition.id
        raise NotFound(f"No active definition named {definition_name!r}")

    # ------------------------------------------------------------------
    # Run a step attempt
    # ------------------------------------------------------------------

    async def _run(self, payload: WorkPayload) -> None:
        attempt = await self._claim(payload)
        if attempt is None:
            return
        outcome, error = await self._invoke(attempt)

        key = payload.execution_key
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(payload.instance_id, for_update=True)
            step = await repo.get_step(key, for_update=True)
            if step is None or step.status.is_terminal:
                return
            if instance.status.is_terminal:
                # the result of an attempt that outlived its instance is discarded
                await self.transition_step(
                    repo,
                    step,
                    StepStatus.CANCELLED,
                    data={"reason": f"instance {instance.status.value}", "discarded": error is None},
                )
                return
            definition = await repo.get_definition(instance.definition_id)
            spec = definition.definition.step(step.step_id)
            if error is not None:
                await self._fail(repo, definition, instance, spec, step, error)
            else:
                await self._succeed(repo, definition, instance, spec, step, outcome)

    async def _claim(self, payload: WorkPayload) -> Optional[_Attempt]:
        """Lock the step row and mark it running; ``None`` when there is nothing to run."""

        key = payload.execution_key
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.find_instance(payload.instance_id, for_update=True)
            step = await repo.get_step(key, for_update=True)
            if instance is None or step is None:
                logger.warning(f"Dropping work item for unknown step {key}")
                return None
            if step.status.is_terminal:
                logger.debug(f"Step {key} is already {step.status.value}")
                return None
            if instance.status.is_terminal:
                await self.cancel_step(repo, step, f"instance {instance.status.value}")
                return None
            if self._parked(instance):
                instance.parked.append(payload)
                await repo.save_instance(instance)
                logger.info(f"Parked {key} while instance {instance.id} is suspended")
                return None

            definition = await repo.get_definition(instance.definition_id)
            graph = definition.definition
            spec = graph.step(step.step_id)

            if step.status == StepStatus.RUNNING:
                if step.waiting is not None:
                    return None
                logger.warning(f"Re-running step {key} after an interrupted attempt")
                return _Attempt(definition, instance, spec, step, self._view(graph, spec, instance, step))

            max_steps = graph.effective_settings.max_steps or self.config.engine.max_steps
            if instance.step_count >= max_steps:
                await self.transition_step(repo, step, StepStatus.SKIPPED, data={"reason": "maxSteps"})
                await self._fail_instance(
                    repo,
                    instance,
                    StepError(kind="max_steps", message=f"Instance exceeded {max_steps} step executions"),
                )
                return None

            instance.step_count += 1
            instance.current_step_id = spec.id
            if instance.status == InstanceStatus.RUNNING:
                await repo.save_instance(instance)
            else:
                await self.transition_instance(repo, instance, InstanceStatus.RUNNING)
            await self.transition_step(repo, step, StepStatus.RUNNING)

            try:
                view = self._view(graph, spec, instance, step)
                if spec.idempotency_key_expr:
                    value = evaluate(spec.idempotency_key_expr, view)
                    step.idempotency_key = f"{definition.id}/{spec.id}/{value}"
                    step.request_hash = request_hash(spec.config, view)
                    prior = await repo.get_idempotency(step.idempotency_key)
                    if prior is not None and prior.request_hash not in (None, step.request_hash):
                        raise IdempotencyMismatch(
                            f"Idempotency key {value!r} was used with a different request",
                            details={"key": step.idempotency_key, "execution": prior.execution_key},
                        )
            except FlowlineError as exc:
                await self._fail(repo, definition, instance, spec, step, exc)
                return None
            if spec.idempotency_key_expr:
                if prior is not None:
                    logger.info(f"Step {key} reuses the output of {prior.execution_key}")
                    step.reused_from = prior.execution_key
                    await self._succeed(
                        repo, definition, instance, spec, step, StepOutcome(output=prior.output)
                    )
                    return None
                await repo.save_step(step)
            return _Attempt(definition, instance, spec, step, view)

    def _view(
        self, graph, spec: StepSpec, instance: WorkflowInstance, step: StepExecution
    ) -> Dict[str, Any]:
        view = project_input(graph, spec, instance.context)
        view.update(step.input)
        return view

    def _parked(self, instance: WorkflowInstance) -> bool:
        return (
            instance.status == InstanceStatus.SUSPENDED
            and instance.suspend_reason == SUSPENDED_BY_SIGNAL
        )

    def _services(self, attempt: _Attempt) -> Dict[str, Any]:
        engine = self.engine
        return {
            "engine": engine,
            "store": engine.store,
            "cache": engine.cache,
            "deliveries": engine.deliveries,
            "http_client_factory": engine.http_client_factory,
            "resolve_definition": self.resolve_definition,
            "join_input": attempt.step.input,
        }

    async def _invoke(self, attempt: _Attempt) -> Tuple[Optional[StepOutcome], Optional[BaseException]]:
        """Run the handler under the step and instance deadlines."""

        spec, step, instance = attempt.spec, attempt.step, attempt.instance
        now = self.clock.now_ms()
        deadlines = [d for d in (now + spec.timeout if spec.timeout else None, instance.deadline_at) if d]
        deadline = min(deadlines) if deadlines else None
        ctx = StepContext(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            step_id=spec.id,
            kind=spec.kind,
            attempt=step.try_number,
            config=spec.config,
            input=attempt.view,
            context=dict(instance.context),
            clock=self.clock,
            deadline=deadline,
            idempotency_key=step.idempotency_key,
            services=self._services(attempt),
        )
        try:
            if deadline is None:
                outcome = await self.engine.handlers.run(ctx)
            else:
                timeout = max(deadline - now, 0) / 1000
                outcome = await asyncio.wait_for(self.engine.handlers.run(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            limit = spec.timeout if spec.timeout else deadline - now
            return None, StepTimeout(f"Step {spec.id} timed out after {limit}ms")
        except Exception as exc:
            logger.warning(f"Step {step.key} raised {type(exc).__name__}: {exc}")
            return None, exc
        return outcome, None

    # ------------------------------------------------------------------
    # Success path
    # ------------------------------------------------------------------

    async def _succeed(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        step: StepExecution,
        outcome: StepOutcome,
    ) -> None:
        if outcome.wait is not None:
            await self._begin_wait(repo, definition, instance, step, outcome.wait)
            return
        if outcome.child is not None:
            await self._begin_child(repo, definition, instance, spec, step, outcome.child)
            return

        graph = definition.definition
        output = dict(outcome.output)
        try:
            context = apply_output(spec, instance.context, output)
            if step.compensation_for:
                successors: List[str] = []
            else:
                successors = select_successors(graph, spec, merged_view(graph, context), outcome.branch)
        except FlowlineError as exc:
            await self._fail(repo, definition, instance, spec, step, exc)
            return

        step.output = output
        step.cache_hit = outcome.cache_hit
        if outcome.delivery is not None and outcome.delivery_request is not None:
            record = await self._record_delivery(repo, instance, step, outcome)
            step.delivery_status = record.status
        await self.transition_step(repo, step, StepStatus.SUCCEEDED)
        if step.idempotency_key and not step.reused_from:
            if await repo.get_idempotency(step.idempotency_key) is None:
                await repo.save_idempotency(
                    IdempotencyRecord(
                        key=step.idempotency_key,
                        execution_key=step.key,
                        request_hash=step.request_hash,
                        output=output,
                        created_at=self.clock.now_ms(),
                    )
                )
        instance.context = context

        if step.compensation_for:
            await self._after_compensation(repo, definition, instance, step, succeeded=True)
            return
        await self._advance(repo, definition, instance, spec, step, successors, output)

    async def _advance(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        step: StepExecution,
        successors: List[str],
        output: Dict[str, Any],
    ) -> None:
        graph = definition.definition
        if spec.kind == StepKind.PARALLEL:
            barrier = Barrier(
                key=step.key,
                instance_id=instance.id,
                parallel_step_id=spec.id,
                join_step_id=matching_join(graph, spec.id),
                branches=successors,
                expected=len(successors),
                remaining=len(successors),
                parent_barriers=step.barriers,
            )
            await repo.save_barrier(barrier)
            for branch in successors:
                await self.schedule(
                    repo,
                    instance,
                    graph.step(branch),
                    barriers=[*step.barriers, BarrierRef(key=step.key, branch=branch)],
                )
        else:
            for target_id in successors:
                target = graph.step(target_id)
                if target.kind == StepKind.JOIN and step.barriers:
                    await self._arrive(repo, instance, target, step, output)
                else:
                    await self.schedule(repo, instance, target, barriers=step.barriers)
        await self.settle(repo, definition, instance)

    async def _arrive(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        join: StepSpec,
        step: StepExecution,
        output: Dict[str, Any],
    ) -> None:
        """Count one branch in at its join; the last one schedules the join."""

        ref = step.barriers[-1]
        barrier = await repo.get_barrier(ref.key, for_update=True)
        if barrier is None or barrier.join_step_id != join.id:
            logger.warning(f"Step {step.key} reached join {join.id} outside its parallel block")
            await self.schedule(repo, instance, join, barriers=step.barriers)
            return
        if barrier.fired:
            logger.warning(f"Join {join.id} of barrier {barrier.key} already fired")
            return
        first_arrival = ref.branch not in barrier.arrived
        barrier.arrived[ref.branch] = output
        if first_arrival:
            barrier.remaining -= 1
        fire = barrier.remaining == 0
        barrier.fired = fire
        await repo.save_barrier(barrier)
        logger.debug(f"Barrier {barrier.key}: {barrier.remaining}/{barrier.expected} branches pending")
        if fire:
            await self.schedule(
                repo, instance, join, input=join_input(barrier), barriers=barrier.parent_barriers
            )

    async def settle(
        self, repo: Repository, definition: WorkflowDefinition, instance: WorkflowInstance
    ) -> None:
        """Complete, suspend or just save the instance after one of its steps moved."""

        active = [s for s in await repo.steps_for(instance.id) if s.status in ACTIVE_STEP_STATUSES]
        if not active:
            await self._complete(repo, definition, instance)
            return
        if instance.status == InstanceStatus.RUNNING and all(s.waiting is not None for s in active):
            instance.suspend_reason = SUSPENDED_BY_WAIT
            await self.transition_instance(
                repo, instance, InstanceStatus.SUSPENDED, data={"waiting": [s.step_id for s in active]}
            )
            return
        await repo.save_instance(instance)

    async def _complete(
        self, repo: Repository, definition: WorkflowDefinition, instance: WorkflowInstance
    ) -> None:
        instance.output_data = project_output(definition.definition, instance.context)
        if instance.status == InstanceStatus.SUSPENDED:
            await self.transition_instance(repo, instance, InstanceStatus.RUNNING)
        await self.transition_instance(repo, instance, InstanceStatus.COMPLETED)
        await self.notify_parent(repo, instance)

    async def _begin_wait(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        step: StepExecution,
        wait: WaitSpec,
    ) -> None:
        now = self.clock.now_ms()
        step.waiting = wait
        await repo.save_step(step)
        await self.audit.append(
            repo,
            "step.waiting",
            step.id,
            "step",
            data={**_step_ref(step), **wait.model_dump(exclude_none=True)},
        )
        if wait.topic:
            await repo.save_subscription(
                EventSubscription(
                    key=f"{wait.topic}/{step.key}",
                    topic=wait.topic,
                    instance_id=instance.id,
                    definition_id=instance.definition_id,
                    step_id=step.step_id,
                    attempt=step.attempt,
                    filter=wait.filter,
                    created_at=now,
                )
            )
            if wait.timeout_at is not None:
                await self.stage_item(
                    repo,
                    instance,
                    step,
                    WorkItemKind.RESUME,
                    delay_ms=wait.timeout_at - now,
                    data={"reason": "timeout"},
                )
        else:
            await self.stage_item(
                repo,
                instance,
                step,
                WorkItemKind.RESUME,
                delay_ms=(wait.until or now) - now,
                data={"reason": "timer"},
            )
        logger.info(f"Step {step.key} waiting for {wait.topic or f'timer at {wait.until}'}")
        await self.settle(repo, definition, instance)

    async def _begin_child(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        step: StepExecution,
        child: ChildSpec,
    ) -> None:
        try:
            child_definition = await repo.get_definition(child.definition_id)
            if child_definition.status == DefinitionStatus.ARCHIVED:
                raise FatalError(f"Subflow definition {child_definition.id} is archived")
            child_instance = await self.create_instance(
                repo,
                child_definition,
                child.input,
                trigger_kind=TriggerKind.API,
                trigger_data={"parentStep": spec.id},
                initiated_by=instance.initiated_by,
                priority=instance.priority,
                parent=instance,
                parent_execution_key=step.key,
            )
        except FlowlineError as exc:
            await self._fail(repo, definition, instance, spec, step, exc)
            return
        step.waiting = WaitSpec()
        step.child_instance_id = child_instance.id
        await repo.save_step(step)
        await self.audit.append(
            repo,
            "step.waiting",
            step.id,
            "step",
            data={**_step_ref(step), "childInstanceId": child_instance.id},
        )
        await self.settle(repo, definition, instance)

    async def notify_parent(self, repo: Repository, instance: WorkflowInstance) -> None:
        """Resume the parent step of a child instance that reached a terminal state."""

        if not instance.parent_execution_key:
            return
        parent = await repo.find_instance(instance.parent_instance_id or "")
        if parent is None:
            return
        _, step_id, attempt = split_execution_key(instance.parent_execution_key)
        payload = WorkPayload(
            instance_id=parent.id,
            step_id=step_id,
            attempt=attempt,
            definition_id=parent.definition_id,
            kind=WorkItemKind.RESUME,
            deadline=parent.deadline_at,
            data={
                "reason": "child",
                "childInstanceId": instance.id,
                "status": instance.status.value,
                "output": instance.output_data or {},
                "error": instance.error.model_dump() if instance.error else None,
            },
        )
        await stage(repo, self.clock, self.ids.new_id(), payload, parent.priority)

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _fail(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        step: StepExecution,
        error: BaseException,
    ) -> None:
        graph = definition.definition
        kind = classify_error(error)
        policy = resolve_policy(spec, graph, self.config.retry)
        now = self.clock.now_ms()
        expired = instance.deadline_at is not None and now >= instance.deadline_at
        retry = not expired and policy.allows(step.try_number, kind)

        step.error = StepError(
            kind=kind,
            message=error_message(error),
            retriable=retry,
            details=dict(getattr(error, "details", {}) or {}),
        )
        await self.transition_step(
            repo, step, StepStatus.FAILED, severity="warning", data={"error": kind}
        )

        if retry:
            delay = compute_backoff(policy, step.try_number, self.engine.rand)
            logger.warning(
                f"Step {step.key} failed with {kind} (try {step.try_number}/{policy.max_attempts}), "
                f"retrying in {delay}ms"
            )
            await self.schedule(
                repo,
                instance,
                spec,
                input=step.input,
                barriers=step.barriers,
                delay_ms=delay,
                visit=step.visit,
                try_number=step.try_number + 1,
                compensation_for=step.compensation_for,
            )
            await repo.save_instance(instance)
            return

        logger.error(f"Step {step.key} failed for good: {step.error.message}")
        if step.compensation_for:
            await self._after_compensation(repo, definition, instance, step, succeeded=False)
            return
        if spec.compensation:
            await self.schedule(
                repo,
                instance,
                graph.step(spec.compensation),
                input={"error": step.error.model_dump(), "failedStep": spec.id},
                barriers=step.barriers,
                compensation_for=step.key,
            )
            await repo.save_instance(instance)
            return
        await self._unrecovered(repo, definition, instance, spec, step)

    async def _after_compensation(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        compensation: StepExecution,
        succeeded: bool,
    ) -> None:
        failed = await repo.get_step(compensation.compensation_for or "", for_update=True)
        if failed is None:
            await self._fail_instance(repo, instance, compensation.error)
            return
        if succeeded and failed.status == StepStatus.FAILED:
            failed.compensated_by = compensation.key
            await self.transition_step(repo, failed, StepStatus.COMPENSATED)
        spec = definition.definition.step(failed.step_id)
        await self._unrecovered(repo, definition, instance, spec, failed)

    async def _unrecovered(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        spec: StepSpec,
        failed: StepExecution,
    ) -> None:
        """Hand a final failure to the step's ``onError`` handler, else fail the instance."""

        on_error = spec.config.get("onError")
        if on_error:
            error = failed.error.model_dump() if failed.error else {}
            instance.context = {**instance.context, "error": {"stepId": spec.id, **error}}
            logger.info(f"Step {failed.key} failure caught by {on_error}")
            await self.schedule(
                repo, instance, definition.definition.step(on_error), barriers=failed.barriers
            )
            await repo.save_instance(instance)
            return
        await self._fail_instance(repo, instance, failed.error)

    async def _fail_instance(
        self, repo: Repository, instance: WorkflowInstance, error: Optional[StepError]
    ) -> None:
        instance.error = error
        for other in await repo.steps_for(instance.id):
            if other.status == StepStatus.QUEUED or (
                other.status == StepStatus.RUNNING and other.waiting is not None
            ):
                await self.cancel_step(repo, other, "instance failed")
                if other.child_instance_id:
                    await self.cancel_child(repo, other.child_instance_id, f"parent {instance.id} failed")
        if instance.status != InstanceStatus.RUNNING:
            await self.transition_instance(repo, instance, InstanceStatus.RUNNING)
        await self.transition_instance(
            repo,
            instance,
            InstanceStatus.FAILED,
            severity="error",
            data={"error": error.model_dump() if error else None},
        )
        await self.notify_parent(repo, instance)

    async def cancel_child(self, repo: Repository, child_id: str, reason: str) -> None:
        """Cancel a subflow instance whose parent failed, and its own children."""

        child = await repo.find_instance(child_id, for_update=True)
        if child is None or child.status.is_terminal:
            return
        for step in await repo.steps_for(child.id):
            if step.status == StepStatus.QUEUED or (
                step.status == StepStatus.RUNNING and step.waiting is not None
            ):
                await self.cancel_step(repo, step, reason)
                if step.child_instance_id:
                    await self.cancel_child(repo, step.child_instance_id, reason)
        child.cancel_reason = reason
        child.parked = []
        await self.transition_instance(
            repo, child, InstanceStatus.CANCELLED, severity="warning", data={"reason": reason}
        )

    # ------------------------------------------------------------------
    # Resume waiting steps
    # ------------------------------------------------------------------

    async def _resume(self, payload: WorkPayload) -> None:
        key = payload.execution_key
        data = payload.data
        reason = data.get("reason")
        now = self.clock.now_ms()
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.find_instance(payload.instance_id, for_update=True)
            step = await repo.get_step(key, for_update=True)
            if instance is None or step is None or step.status.is_terminal or step.waiting is None:
                logger.debug(f"Nothing to resume for {key}")
                return
            if instance.status.is_terminal:
                await self.cancel_step(repo, step, f"instance {instance.status.value}")
                return
            if self._parked(instance):
                instance.parked.append(payload)
                await repo.save_instance(instance)
                return

            wait = step.waiting
            output: Dict[str, Any] = {}
            error: Optional[FlowlineError] = None
            if reason == "timer":
                if wait.until is not None and wait.until > now:
                    await self.stage_item(
                        repo, instance, step, WorkItemKind.RESUME, delay_ms=wait.until - now, data=data
                    )
                    return
            elif reason == "timeout":
                if wait.timeout_at is not None and wait.timeout_at > now:
                    await self.stage_item(
                        repo, instance, step, WorkItemKind.RESUME,
                        delay_ms=wait.timeout_at - now, data=data,
                    )
                    return
                error = StepTimeout(f"No {wait.topic} event reached step {step.step_id} in time")
            elif reason == "event":
                output = {"event": data.get("payload", {})}
            elif reason == "child":
                if data.get("childInstanceId") != step.child_instance_id:
                    return
                if data.get("status") == InstanceStatus.COMPLETED.value:
                    output = dict(data.get("output") or {})
                else:
                    error = FatalError(
                        f"Subflow instance {step.child_instance_id} ended {data.get('status')}",
                        details={"childInstanceId": step.child_instance_id, "error": data.get("error")},
                    )
            else:
                logger.warning(f"Ignoring resume of {key} with unknown reason {reason!r}")
                return

            if wait.topic:
                await repo.delete_subscription(f"{wait.topic}/{step.key}")
            step.waiting = None
            if instance.status == InstanceStatus.SUSPENDED:
                await self.transition_instance(repo, instance, InstanceStatus.RUNNING, data={"reason": reason})
            definition = await repo.get_definition(instance.definition_id)
            spec = definition.definition.step(step.step_id)
            if error is not None:
                await self._fail(repo, definition, instance, spec, step, error)
            else:
                await self._succeed(repo, definition, instance, spec, step, StepOutcome(output=output))

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def _record_delivery(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        step: StepExecution,
        outcome: StepOutcome,
    ) -> DeliveryRecord:
        request = outcome.delivery_request
        context = instance.context
        record = DeliveryRecord(
            id=step.key,
            execution_key=step.key,
            instance_id=instance.id,
            step_id=step.step_id,
            definition_id=instance.definition_id,
            adapter=request.adapter,
            target=request.target,
            payload=request.payload,
            report_id=context.get("reportId"),
            parameter_fingerprint=context.get("fingerprint"),
            format=context.get("format"),
            result_ref=context.get("artifactRef"),
            created_at=self.clock.now_ms(),
        )
        await self._apply_delivery_outcome(repo, instance, record, outcome.delivery)
        return record

    async def _apply_delivery_outcome(
        self,
        repo: Repository,
        instance: WorkflowInstance,
        record: DeliveryRecord,
        outcome: DeliveryOutcome,
    ) -> None:
        now = self.clock.now_ms()
        record.attempts += 1
        record.next_attempt_at = None
        if outcome.status == DeliveryStatus.DELIVERED.value:
            record.status = DeliveryStatus.DELIVERED
            record.delivered_at = now
            record.provider_message_id = outcome.provider_message_id
            record.last_error = None
        elif outcome.status == DeliveryStatus.NOT_APPLICABLE.value:
            record.status = DeliveryStatus.NOT_APPLICABLE
        else:
            record.last_error = outcome.error
            policy = delivery_policy(self.config.delivery)
            if outcome.retriable and record.attempts < policy.max_attempts:
                delay = compute_backoff(policy, record.attempts, self.engine.rand)
                record.status = DeliveryStatus.PENDING
                record.next_attempt_at = now + delay
                instance_id, step_id, attempt = split_execution_key(record.execution_key)
                await stage(
                    repo,
                    self.clock,
                    self.ids.new_id(),
                    WorkPayload(
                        instance_id=instance_id,
                        step_id=step_id,
                        attempt=attempt,
                        definition_id=record.definition_id,
                        kind=WorkItemKind.REDELIVER,
                        data={"deliveryId": record.id},
                    ),
                    instance.priority,
                    delay,
                )
                logger.warning(
                    f"Delivery {record.id} via {record.adapter} failed ({outcome.error}), "
                    f"attempt {record.attempts}, retrying in {delay}ms"
                )
            else:
                record.status = DeliveryStatus.FAILED
                logger.error(f"Delivery {record.id} via {record.adapter} failed: {outcome.error}")
        await repo.save_delivery(record)
        await self.audit.append(
            repo,
            f"delivery.{record.status.value}",
            record.id,
            "delivery",
            after={"status": record.status.value, "attempts": record.attempts},
            severity="warning" if record.status == DeliveryStatus.FAILED else "info",
            data={"instanceId": record.instance_id, "adapter": record.adapter, "error": record.last_error},
        )

    async def _redeliver(self, payload: WorkPayload) -> None:
        delivery_id = payload.data.get("deliveryId", payload.execution_key)
        async with self.store.transaction() as tx:
            record = await Repository(tx).get_delivery(delivery_id)
        if record is None or record.status != DeliveryStatus.PENDING:
            return

        outcome = await attempt_delivery(
            self.engine.deliveries,
            DeliveryRequest(adapter=record.adapter or "", target=record.target, payload=record.payload),
        )

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            current = await repo.get_delivery(delivery_id, for_update=True)
            if current is None or current.status != DeliveryStatus.PENDING:
                return
            instance = await repo.get_instance(current.instance_id)
            await self._apply_delivery_outcome(repo, instance, current, outcome)
            step = await repo.get_step(current.execution_key, for_update=True)
            if step is not None:
                step.delivery_status = current.status
                await repo.save_step(step)


def _step_ref(step: StepExecution) -> Dict[str, Any]:
    return {
        "instanceId": step.instance_id,
        "stepId": step.step_id,
        "attempt": step.attempt,
        "key": step.key,
    }


class WorkerPool:
    """Runs several workers of one executor concurrently."""

    def __init__(self, executor: StepExecutor, concurrency: int = 4, name: str = "worker") -> None:
        self.executor = executor
        self.concurrency = concurrency
        self.name = name
        self._stop = asyncio.Event()

    async def run(self, lifespan: Optional[float] = None) -> int:
        results = await asyncio.gather(
            *(
                self.executor.run_worker(f"{self.name}-{i}", lifespan=lifespan, stop=self._stop)
                for i in range(self.concurrency)
            )
        )
        return sum(results)

    def stop(self) -> None:
        self._stop.set()
