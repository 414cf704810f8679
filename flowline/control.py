"""Control API: definition lifecycle, instance operations, stats and reports."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .contracts import DefinitionGraph
from .errors import AlreadyTerminal, Conflict, InvalidTransition, NotFound, ValidationError
from .models import (
    AuditRecord,
    DefinitionStatus,
    DeliveryRecord,
    InstanceStatus,
    StepExecution,
    StepStatus,
    TriggerKind,
    WorkflowDefinition,
    WorkflowInstance,
)
from .persistence.repository import Repository
from .reports import ReportSpec, build_report_workflow, resolve_parameters
from .scheduler import check_trigger_config
from .validation import parse_definition, validate_definition

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)

DEFINITION_TRANSITIONS: Dict[DefinitionStatus, frozenset] = {
    DefinitionStatus.DRAFT: frozenset({DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED}),
    DefinitionStatus.ACTIVE: frozenset({DefinitionStatus.INACTIVE, DefinitionStatus.ARCHIVED}),
    DefinitionStatus.INACTIVE: frozenset({DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED}),
    DefinitionStatus.ARCHIVED: frozenset(),
}

GraphInput = Union[str, bytes, Dict[str, Any], DefinitionGraph]


@dataclass
class CancelResult:
    cancelled: bool
    already_terminal: bool = False


@dataclass
class InstanceDetail:
    instance: WorkflowInstance
    steps: List[StepExecution] = field(default_factory=list)
    deliveries: List[DeliveryRecord] = field(default_factory=list)

    def to_public(self) -> Dict[str, Any]:
        return {
            **self.instance.to_public(),
            "steps": [s.to_public() for s in self.steps],
            "deliveries": [d.to_public() for d in self.deliveries],
        }


def next_minor(version: str) -> str:
    """``1.2.3`` -> ``1.3.0``."""
    parts = version.split(".")
    try:
        major, minor = int(parts[0]), int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        raise ValidationError(f"Definition version {version!r} is not semver") from None
    return f"{major}.{minor + 1}.0"


def _enum(enum_type, value):
    if value is None:
        return None
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Unknown {enum_type.__name__} {value!r}; expected one of {choices}") from None


def check_trigger(kind: TriggerKind, config: Dict[str, Any]) -> List[str]:
    if kind == TriggerKind.SCHEDULED:
        return check_trigger_config(config)
    if kind == TriggerKind.WEBHOOK and not config.get("secret"):
        return ["webhook trigger needs a 'secret'"]
    if kind == TriggerKind.EVENT and not config.get("topic"):
        return ["event trigger needs a 'topic'"]
    return []


class ControlAPI:
    """Operations exposed to callers; every mutation is audited."""

    def __init__(self, engine: "Engine") -> None:
        self.engine = engine
        self.store = engine.store
        self.clock = engine.clock
        self.ids = engine.ids
        self.audit = engine.audit

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _parse(self, definition: GraphInput) -> DefinitionGraph:
        return validate_definition(parse_definition(definition))

    @staticmethod
    def _check_trigger(kind: TriggerKind, config: Dict[str, Any]) -> None:
        problems = check_trigger(kind, config)
        if problems:
            raise ValidationError("Invalid trigger configuration", problems)

    async def create_definition(
        self,
        name: str,
        definition: GraphInput,
        *,
        trigger_kind: Union[TriggerKind, str] = TriggerKind.MANUAL,
        trigger_config: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        is_template: bool = False,
        description: Optional[str] = None,
        version: str = "1.0.0",
        actor_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Validate and store a new draft definition."""

        graph = self._parse(definition)
        kind = _enum(TriggerKind, trigger_kind)
        config = dict(trigger_config or {})
        self._check_trigger(kind, config)
        now = self.clock.now_ms()
        created = WorkflowDefinition(
            id=self.ids.new_id(),
            name=name,
            version=version,
            trigger_kind=kind,
            trigger_config=config,
            definition=graph,
            owner_id=owner_id,
            tags=list(tags or []),
            is_template=is_template,
            description=description,
            created_at=now,
            updated_at=now,
        )
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            await repo.save_definition(created)
            await self.audit.append(
                repo,
                "definition.created",
                created.id,
                "definition",
                after={"status": created.status.value, "version": created.version},
                actor_id=actor_id,
                data={"name": name},
            )
        logger.info(f"Created definition {name} v{version} ({created.id})")
        return created

    async def update_definition(
        self,
        definition_id: str,
        *,
        definition: Optional[GraphInput] = None,
        trigger_kind: Optional[Union[TriggerKind, str]] = None,
        trigger_config: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        expected_version: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Edit a draft in place, or derive a new draft from an active/inactive definition.

        ``expected_version`` guards against lost updates: a mismatch raises ``Conflict``.
        """

        graph = self._parse(definition) if definition is not None else None
        now = self.clock.now_ms()
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            current = await repo.get_definition(definition_id, for_update=True)
            if expected_version is not None and current.version != expected_version:
                raise Conflict(
                    f"Definition {definition_id} is at version {current.version}, not {expected_version}"
                )
            if current.status == DefinitionStatus.ARCHIVED:
                raise InvalidTransition(f"Definition {definition_id} is archived")

            kind = _enum(TriggerKind, trigger_kind) or current.trigger_kind
            config = dict(trigger_config) if trigger_config is not None else current.trigger_config
            self._check_trigger(kind, config)

            if current.status == DefinitionStatus.DRAFT:
                target = current
                event_kind = "definition.updated"
            else:
                # active graphs are immutable: changes land in a new draft
                target = current.model_copy(deep=True)
                target.id = self.ids.new_id()
                target.version = next_minor(current.version)
                target.status = DefinitionStatus.DRAFT
                target.previous_version_id = current.id
                target.activated_at = None
                target.created_at = now
                target.row_version = 0
                event_kind = "definition.versioned"

            before = {"version": current.version, "status": current.status.value}
            if graph is not None:
                target.definition = graph
            target.trigger_kind = kind
            target.trigger_config = config
            if description is not None:
                target.description = description
            if tags is not None:
                target.tags = list(tags)
            target.updated_at = now
            await repo.save_definition(target)
            await self.audit.append(
                repo,
                event_kind,
                target.id,
                "definition",
                before=before,
                after={"version": target.version, "status": target.status.value},
                actor_id=actor_id,
                data={"previousVersionId": target.previous_version_id},
            )
        logger.info(f"{event_kind} {target.name} v{target.version} ({target.id})")
        return target

    async def clone_definition(
        self,
        definition_id: str,
        name: Optional[str] = None,
        owner_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        source = await self.get_definition(definition_id)
        return await self.create_definition(
            name or f"{source.name} (copy)",
            source.definition,
            trigger_kind=source.trigger_kind,
            trigger_config=source.trigger_config,
            owner_id=owner_id if owner_id is not None else source.owner_id,
            tags=source.tags,
            description=source.description,
            actor_id=actor_id,
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        async with self.store.transaction() as tx:
            return await Repository(tx).get_definition(definition_id)

    async def list_definitions(
        self,
        status: Optional[Union[DefinitionStatus, str]] = None,
        name: Optional[str] = None,
        tag: Optional[str] = None,
        owner_id: Optional[str] = None,
        is_template: Optional[bool] = None,
    ) -> List[WorkflowDefinition]:
        async with self.store.transaction() as tx:
            definitions = await Repository(tx).list_definitions()
        wanted = _enum(DefinitionStatus, status)
        result = [
            d
            for d in definitions
            if (wanted is None or d.status == wanted)
            and (name is None or d.name == name)
            and (tag is None or tag in d.tags)
            and (owner_id is None or d.owner_id == owner_id)
            and (is_template is None or d.is_template == is_template)
        ]
        return sorted(result, key=lambda d: (d.name, d.created_at))

    async def _move_definition(
        self,
        repo: Repository,
        definition: WorkflowDefinition,
        status: DefinitionStatus,
        actor_id: Optional[str],
    ) -> None:
        before = definition.status
        if status not in DEFINITION_TRANSITIONS[before]:
            raise InvalidTransition(
                f"Definition {definition.id} cannot go from {before.value} to {status.value}"
            )
        definition.status = status
        definition.updated_at = self.clock.now_ms()
        if status == DefinitionStatus.ACTIVE:
            definition.activated_at = definition.updated_at
        await repo.save_definition(definition)
        if before == DefinitionStatus.ACTIVE and definition.trigger_kind == TriggerKind.SCHEDULED:
            await self.engine.scheduler.unbind(repo, definition.id)
        if status == DefinitionStatus.ACTIVE and definition.trigger_kind == TriggerKind.SCHEDULED:
            await self.engine.scheduler.bind(repo, definition)
        await self.audit.append(
            repo,
            f"definition.{status.value}",
            definition.id,
            "definition",
            before={"status": before.value},
            after={"status": status.value},
            actor_id=actor_id,
        )
        logger.info(f"Definition {definition.name} v{definition.version} {before.value} -> {status.value}")

    async def activate_definition(
        self, definition_id: str, actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        """Activate a definition; the previously active version of its name is deactivated."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            definition = await repo.get_definition(definition_id, for_update=True)
            if definition.status == DefinitionStatus.ACTIVE:
                return definition
            validate_definition(definition.definition)
            for other in await repo.list_definitions():
                if (
                    other.id != definition.id
                    and other.status == DefinitionStatus.ACTIVE
                    and other.name == definition.name
                    and other.owner_scope == definition.owner_scope
                ):
                    other = await repo.get_definition(other.id, for_update=True)
                    await self._move_definition(repo, other, DefinitionStatus.INACTIVE, actor_id)
            await self._move_definition(repo, definition, DefinitionStatus.ACTIVE, actor_id)
        return definition

    async def deactivate_definition(
        self, definition_id: str, actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            definition = await repo.get_definition(definition_id, for_update=True)
            await self._move_definition(repo, definition, DefinitionStatus.INACTIVE, actor_id)
        return definition

    async def archive_definition(
        self, definition_id: str, actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            definition = await repo.get_definition(definition_id, for_update=True)
            await self._move_definition(repo, definition, DefinitionStatus.ARCHIVED, actor_id)
        return definition

    async def export_definition(self, definition_id: str) -> Dict[str, Any]:
        """Portable document for :meth:`import_definition`."""

        definition = await self.get_definition(definition_id)
        return {
            "name": definition.name,
            "version": definition.version,
            "description": definition.description,
            "triggerKind": definition.trigger_kind.value,
            "triggerConfig": definition.trigger_config,
            "tags": definition.tags,
            "isTemplate": definition.is_template,
            "definition": definition.definition.to_dict(),
        }

    async def import_definition(
        self,
        document: Union[str, bytes, Dict[str, Any]],
        owner_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except ValueError as exc:
                raise ValidationError(f"Definition document is not JSON: {exc}") from exc
        if not isinstance(document, dict) or "name" not in document or "definition" not in document:
            raise ValidationError("Definition document needs 'name' and 'definition'")
        return await self.create_definition(
            document["name"],
            document["definition"],
            trigger_kind=document.get("triggerKind", TriggerKind.MANUAL),
            trigger_config=document.get("triggerConfig"),
            owner_id=owner_id,
            tags=document.get("tags"),
            is_template=bool(document.get("isTemplate", False)),
            description=document.get("description"),
            version=document.get("version", "1.0.0"),
            actor_id=actor_id,
        )

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def start(
        self,
        definition_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        *,
        initiated_by: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> WorkflowInstance:
        return await self.engine.dispatcher.start_instance(
            definition_id,
            input_data,
            trigger_kind=TriggerKind.API,
            initiated_by=initiated_by,
            priority=priority,
        )

    async def cancel(
        self, instance_id: str, reason: Optional[str] = None, actor_id: Optional[str] = None
    ) -> CancelResult:
        """Cancel an instance; a second cancel is a no-op.

        Queued and waiting steps are cancelled right away, a running step is
        cancelled by the executor when it reports back. Child instances are
        left alone.
        """

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(instance_id, for_update=True)
            if instance.status == InstanceStatus.CANCELLED:
                return CancelResult(cancelled=False, already_terminal=False)
            if instance.status.is_terminal:
                raise AlreadyTerminal(
                    f"Instance {instance_id} already {instance.status.value}",
                    details={"status": instance.status.value},
                )
            for step in await repo.steps_for(instance.id):
                if step.status == StepStatus.QUEUED or (
                    step.status == StepStatus.RUNNING and step.waiting is not None
                ):
                    await self.engine.executor.cancel_step(repo, step, "instance cancelled")
            instance.cancel_reason = reason
            instance.parked = []
            await self.engine.executor.transition_instance(
                repo,
                instance,
                InstanceStatus.CANCELLED,
                actor_id=actor_id,
                data={"reason": reason},
            )
            await self.engine.executor.notify_parent(repo, instance)
        await self.engine.executor.relay()
        return CancelResult(cancelled=True)

    async def retry(self, instance_id: str, actor_id: Optional[str] = None) -> WorkflowInstance:
        """Start a fresh instance with the input of a failed or cancelled one."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            original = await repo.get_instance(instance_id)
            if original.status not in (InstanceStatus.FAILED, InstanceStatus.CANCELLED):
                raise InvalidTransition(
                    f"Only failed or cancelled instances can be retried, {instance_id} is {original.status.value}"
                )
            definition = await repo.get_definition(original.definition_id)
            if definition.status == DefinitionStatus.ARCHIVED:
                raise InvalidTransition(f"Definition {definition.id} is archived")
            instance = await self.engine.executor.create_instance(
                repo,
                definition,
                original.input_data,
                trigger_kind=original.trigger_kind,
                trigger_data={**original.trigger_data, "retryOf": original.id},
                initiated_by=actor_id or original.initiated_by,
                priority=original.priority,
                retry_of=original,
            )
        await self.engine.executor.relay()
        logger.info(f"Instance {instance_id} retried as {instance.id}")
        return instance

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[Union[InstanceStatus, str]] = None,
        parent_instance_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[WorkflowInstance]:
        async with self.store.transaction() as tx:
            instances = await Repository(tx).list_instances()
        wanted = _enum(InstanceStatus, status)
        result = [
            i
            for i in instances
            if (definition_id is None or i.definition_id == definition_id)
            and (wanted is None or i.status == wanted)
            and (parent_instance_id is None or i.parent_instance_id == parent_instance_id)
        ]
        result.sort(key=lambda i: (i.created_at, i.id), reverse=True)
        return result[:limit]

    async def get_instance(self, instance_id: str) -> InstanceDetail:
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(instance_id)
            steps = await repo.steps_for(instance_id)
            deliveries = await repo.deliveries_for(instance_id)
        steps.sort(key=lambda s: (s.queued_at, s.attempt))
        return InstanceDetail(instance=instance, steps=steps, deliveries=deliveries)

    async def signal(
        self, instance_id: str, payload: Optional[Dict[str, Any]] = None, step_id: Optional[str] = None
    ) -> List[str]:
        """Deliver ``payload`` to the event waits of one instance."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(instance_id)
            topics = {
                s.waiting.topic
                for s in await repo.steps_for(instance_id)
                if s.waiting is not None
                and s.waiting.topic
                and s.status == StepStatus.RUNNING
                and (step_id is None or s.step_id == step_id)
            }
        if instance.status.is_terminal:
            raise AlreadyTerminal(f"Instance {instance_id} already {instance.status.value}")
        woken: List[str] = []
        for topic in sorted(topics):
            woken.extend(
                await self.engine.dispatcher.wake_waiters(
                    topic, dict(payload or {}), instance_id=instance_id, step_id=step_id
                )
            )
        if not woken:
            raise NotFound(f"No step of instance {instance_id} is waiting for a signal")
        return woken

    async def suspend(self, instance_id: str, actor_id: Optional[str] = None) -> WorkflowInstance:
        """Hold a running instance: its work items are parked until :meth:`resume`."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(instance_id, for_update=True)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidTransition(
                    f"Only running instances can be suspended, {instance_id} is {instance.status.value}"
                )
            instance.suspend_reason = "signal"
            await self.engine.executor.transition_instance(
                repo, instance, InstanceStatus.SUSPENDED, actor_id=actor_id, data={"reason": "signal"}
            )
        return instance

    async def resume(self, instance_id: str, actor_id: Optional[str] = None) -> WorkflowInstance:
        async with self.store.transaction() as tx:
            repo = Repository(tx)
            instance = await repo.get_instance(instance_id, for_update=True)
            if instance.status != InstanceStatus.SUSPENDED or instance.suspend_reason != "signal":
                raise InvalidTransition(f"Instance {instance_id} is not suspended by a signal")
            await self.engine.executor.transition_instance(
                repo, instance, InstanceStatus.RUNNING, actor_id=actor_id, data={"reason": "signal"}
            )
            restaged = await self.engine.executor.restage_parked(repo, instance)
            definition = await repo.get_definition(instance.definition_id)
            await self.engine.executor.settle(repo, definition, instance)
        logger.info(f"Instance {instance_id} resumed, {restaged} parked items released")
        await self.engine.executor.relay()
        return instance

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_stats(self, definition_id: str) -> Dict[str, Any]:
        """Execution statistics over every instance of a definition."""

        async with self.store.transaction() as tx:
            repo = Repository(tx)
            await repo.get_definition(definition_id)
            instances = [i for i in await repo.list_instances() if i.definition_id == definition_id]
            steps: List[StepExecution] = []
            deliveries: List[DeliveryRecord] = []
            for instance in instances:
                steps.extend(await repo.steps_for(instance.id))
                deliveries.extend(await repo.deliveries_for(instance.id))

        counts = Counter(i.status.value for i in instances)
        finished = [i for i in instances if i.status.is_terminal]
        durations = [i.duration_ms for i in finished if i.duration_ms is not None]
        last_completed = max(finished, key=lambda i: i.completed_at or 0, default=None)
        completed = counts.get(InstanceStatus.COMPLETED.value, 0)
        return {
            "definitionId": definition_id,
            "total": len(instances),
            "byStatus": {status.value: counts.get(status.value, 0) for status in InstanceStatus},
            "successRate": completed / len(finished) if finished else None,
            "avgDurationMs": sum(durations) / len(durations) if durations else None,
            "lastDurationMs": last_completed.duration_ms if last_completed else None,
            "failedSteps": dict(Counter(s.step_id for s in steps if s.status == StepStatus.FAILED)),
            "lastStartedAt": max((i.started_at for i in instances if i.started_at), default=None),
            "lastCompletedAt": last_completed.completed_at if last_completed else None,
            "cacheHits": sum(1 for s in steps if s.cache_hit),
            "deliveries": dict(Counter(d.status.value for d in deliveries)),
        }

    async def get_history(self, subject_id: str) -> List[AuditRecord]:
        return await self.audit.history(subject_id)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def register_report(
        self,
        spec: ReportSpec,
        schedule: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Register a report and activate the workflow that runs it.

        ``schedule`` is a scheduled trigger config (``cron`` or ``frequency``);
        its ``parameters`` key becomes the input of every scheduled run.
        """

        self.engine.reports.register_report(spec)
        graph = build_report_workflow(spec)
        trigger_kind = TriggerKind.MANUAL
        trigger_config: Dict[str, Any] = {}
        if schedule is not None:
            trigger_kind = TriggerKind.SCHEDULED
            trigger_config = {k: v for k, v in schedule.items() if k != "parameters"}
            trigger_config["input"] = {"parameters": dict(schedule.get("parameters") or {})}

        current = await self._active_definition(spec.definition_name, owner_id)
        if current is None:
            definition = await self.create_definition(
                spec.definition_name,
                graph,
                trigger_kind=trigger_kind,
                trigger_config=trigger_config,
                owner_id=owner_id,
                tags=["report"],
                description=spec.description or spec.name,
                actor_id=actor_id,
            )
        else:
            definition = await self.update_definition(
                current.id,
                definition=graph,
                trigger_kind=trigger_kind,
                trigger_config=trigger_config,
                actor_id=actor_id,
            )
        return await self.activate_definition(definition.id, actor_id=actor_id)

    async def _active_definition(
        self, name: str, owner_id: Optional[str] = None
    ) -> Optional[WorkflowDefinition]:
        matches = await self.list_definitions(status=DefinitionStatus.ACTIVE, name=name)
        scope = owner_id or "global"
        return next((d for d in matches if d.owner_scope == scope), None)

    async def run_report(
        self,
        report_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        initiated_by: Optional[str] = None,
    ) -> WorkflowInstance:
        spec = self.engine.reports.get(report_id)
        # fail fast on bad parameters instead of inside the workflow
        resolve_parameters(spec, parameters or {})
        definition = await self._active_definition(spec.definition_name)
        if definition is None:
            raise NotFound(f"Report {report_id} has no active workflow")
        return await self.start(
            definition.id, {"parameters": dict(parameters or {})}, initiated_by=initiated_by
        )

    async def invalidate_report(self, report_id: str) -> int:
        return await self.engine.cache.invalidate(report_id)
