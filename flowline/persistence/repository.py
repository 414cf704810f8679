"""Typed access to flowline entities inside one store transaction."""

from __future__ import annotations

from typing import List, Optional, Type, TypeVar

from ..errors import NotFound
from ..models import (
    Barrier,
    CacheEntry,
    DeliveryRecord,
    Entity,
    EventSubscription,
    ExportArtifact,
    IdempotencyRecord,
    Lease,
    OutboxEntry,
    ScheduleBinding,
    StepExecution,
    WorkflowDefinition,
    WorkflowInstance,
)
from .store import Transaction

E = TypeVar("E", bound=Entity)

# ---------------------------------------------------------------------------
# Table names
# ---------------------------------------------------------------------------

DEFINITIONS = "definitions"
INSTANCES = "instances"
STEPS = "step_executions"
BARRIERS = "barriers"
SCHEDULES = "schedules"
CACHE = "cache_entries"
DELIVERIES = "deliveries"
AUDIT = "audit"
AUDIT_BY_SUBJECT = "audit_by_subject"
AUDIT_ARCHIVE = "audit_archive"
LEASES = "leases"
SUBSCRIPTIONS = "subscriptions"
IDEMPOTENCY = "idempotency"
OUTBOX = "outbox"
ARTIFACTS = "artifacts"
COUNTERS = "counters"
SEEN_EVENTS = "seen_events"


class Repository:
    """Load and save entities through a transaction.

    New entities (``row_version == 0``) are inserted and fail with
    ``Conflict`` if the key is taken; loaded entities are written back
    under their ``row_version``.
    """

    def __init__(self, tx: Transaction) -> None:
        self.tx = tx

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _load(
        self, model: Type[E], table: str, key: str, for_update: bool = False
    ) -> Optional[E]:
        row = await self.tx.get(table, key, for_update=for_update)
        if row is None:
            return None
        entity = model.model_validate(row.data)
        entity.row_version = row.version
        return entity

    async def _require(
        self, model: Type[E], table: str, key: str, for_update: bool = False
    ) -> E:
        entity = await self._load(model, table, key, for_update=for_update)
        if entity is None:
            raise NotFound(f"{model.__name__} {key} not found")
        return entity

    async def _save(self, table: str, key: str, entity: E) -> E:
        data = entity.model_dump(mode="json", exclude={"row_version"})
        row = await self.tx.put(table, key, data, expected_version=entity.row_version)
        entity.row_version = row.version
        return entity

    async def _scan(self, model: Type[E], table: str, prefix: str = "") -> List[E]:
        entities = []
        for row in await self.tx.range(table, prefix):
            entity = model.model_validate(row.data)
            entity.row_version = row.version
            entities.append(entity)
        return entities

    async def next_sequence(self, name: str) -> int:
        """Increment and return the named counter."""
        row = await self.tx.get(COUNTERS, name, for_update=True)
        value = (row.data["value"] if row is not None else 0) + 1
        await self.tx.put(
            COUNTERS, name, {"value": value}, expected_version=row.version if row else 0
        )
        return value

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def get_definition(self, definition_id: str, for_update: bool = False) -> WorkflowDefinition:
        return await self._require(WorkflowDefinition, DEFINITIONS, definition_id, for_update)

    async def find_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return await self._load(WorkflowDefinition, DEFINITIONS, definition_id)

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self._save(DEFINITIONS, definition.id, definition)

    async def list_definitions(self) -> List[WorkflowDefinition]:
        return await self._scan(WorkflowDefinition, DEFINITIONS)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def get_instance(self, instance_id: str, for_update: bool = False) -> WorkflowInstance:
        return await self._require(WorkflowInstance, INSTANCES, instance_id, for_update)

    async def find_instance(
        self, instance_id: str, for_update: bool = False
    ) -> Optional[WorkflowInstance]:
        return await self._load(WorkflowInstance, INSTANCES, instance_id, for_update)

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        return await self._save(INSTANCES, instance.id, instance)

    async def list_instances(self) -> List[WorkflowInstance]:
        return await self._scan(WorkflowInstance, INSTANCES)

    # ------------------------------------------------------------------
    # Step executions
    # ------------------------------------------------------------------

    async def get_step(self, key: str, for_update: bool = False) -> Optional[StepExecution]:
        return await self._load(StepExecution, STEPS, key, for_update)

    async def save_step(self, step: StepExecution) -> StepExecution:
        return await self._save(STEPS, step.key, step)

    async def steps_for(self, instance_id: str) -> List[StepExecution]:
        return await self._scan(StepExecution, STEPS, f"{instance_id}/")

    # ------------------------------------------------------------------
    # Barriers
    # ------------------------------------------------------------------

    async def get_barrier(self, key: str, for_update: bool = False) -> Optional[Barrier]:
        return await self._load(Barrier, BARRIERS, key, for_update)

    async def save_barrier(self, barrier: Barrier) -> Barrier:
        return await self._save(BARRIERS, barrier.key, barrier)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def get_schedule(self, binding_id: str, for_update: bool = False) -> ScheduleBinding:
        return await self._require(ScheduleBinding, SCHEDULES, binding_id, for_update)

    async def save_schedule(self, binding: ScheduleBinding) -> ScheduleBinding:
        return await self._save(SCHEDULES, binding.id, binding)

    async def delete_schedule(self, binding_id: str) -> bool:
        return await self.tx.delete(SCHEDULES, binding_id)

    async def list_schedules(self) -> List[ScheduleBinding]:
        return await self._scan(ScheduleBinding, SCHEDULES)

    # ------------------------------------------------------------------
    # Cache, deliveries, artifacts
    # ------------------------------------------------------------------

    async def get_cache_entry(self, key: str, for_update: bool = False) -> Optional[CacheEntry]:
        return await self._load(CacheEntry, CACHE, key, for_update)

    async def save_cache_entry(self, entry: CacheEntry) -> CacheEntry:
        return await self._save(CACHE, entry.key, entry)

    async def delete_cache_entry(self, key: str) -> bool:
        return await self.tx.delete(CACHE, key)

    async def cache_entries(self, prefix: str = "") -> List[CacheEntry]:
        return await self._scan(CacheEntry, CACHE, prefix)

    async def get_delivery(self, delivery_id: str, for_update: bool = False) -> Optional[DeliveryRecord]:
        return await self._load(DeliveryRecord, DELIVERIES, delivery_id, for_update)

    async def save_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        return await self._save(DELIVERIES, record.id, record)

    async def deliveries_for(self, instance_id: str) -> List[DeliveryRecord]:
        return await self._scan(DeliveryRecord, DELIVERIES, f"{instance_id}/")

    async def get_artifact(self, ref: str) -> Optional[ExportArtifact]:
        return await self._load(ExportArtifact, ARTIFACTS, ref)

    async def save_artifact(self, artifact: ExportArtifact) -> ExportArtifact:
        return await self._save(ARTIFACTS, artifact.ref, artifact)

    # ------------------------------------------------------------------
    # Leases, subscriptions, idempotency, outbox
    # ------------------------------------------------------------------

    async def get_lease(self, name: str, for_update: bool = False) -> Optional[Lease]:
        return await self._load(Lease, LEASES, name, for_update)

    async def save_lease(self, lease: Lease) -> Lease:
        return await self._save(LEASES, lease.name, lease)

    async def save_subscription(self, subscription: EventSubscription) -> EventSubscription:
        return await self._save(SUBSCRIPTIONS, subscription.key, subscription)

    async def subscriptions_for(self, topic: str) -> List[EventSubscription]:
        return await self._scan(EventSubscription, SUBSCRIPTIONS, f"{topic}/")

    async def delete_subscription(self, key: str) -> bool:
        return await self.tx.delete(SUBSCRIPTIONS, key)

    async def get_idempotency(self, key: str) -> Optional[IdempotencyRecord]:
        return await self._load(IdempotencyRecord, IDEMPOTENCY, key)

    async def save_idempotency(self, record: IdempotencyRecord) -> IdempotencyRecord:
        return await self._save(IDEMPOTENCY, record.key, record)

    async def add_outbox(self, entry: OutboxEntry) -> OutboxEntry:
        return await self._save(OUTBOX, entry.id, entry)

    async def outbox_entries(self, limit: Optional[int] = None) -> List[OutboxEntry]:
        rows = await self.tx.range(OUTBOX, limit=limit)
        return [OutboxEntry.model_validate(row.data) for row in rows]

    async def remove_outbox(self, entry_id: str) -> bool:
        return await self.tx.delete(OUTBOX, entry_id)

    async def mark_event_seen(self, event_id: str, at: int) -> bool:
        """Record ``event_id``; returns ``False`` if it was already seen."""
        if await self.tx.get(SEEN_EVENTS, event_id) is not None:
            return False
        await self.tx.put(SEEN_EVENTS, event_id, {"at": at}, expected_version=0)
        return True
