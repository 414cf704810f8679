"""Data models for persisted flowline state.

Timestamps are epoch milliseconds. ``row_version`` is the optimistic
concurrency counter maintained by the store; callers never bump it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer

from .clock import to_iso
from .contracts import DefinitionGraph, StepError, WaitSpec, WorkPayload


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"
    API = "api"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INSTANCE_STATUSES


TERMINAL_INSTANCE_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)

INSTANCE_TRANSITIONS: Dict[InstanceStatus, frozenset] = {
    InstanceStatus.PENDING: frozenset({InstanceStatus.RUNNING, InstanceStatus.CANCELLED}),
    InstanceStatus.RUNNING: frozenset(
        {
            InstanceStatus.SUSPENDED,
            InstanceStatus.COMPLETED,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        }
    ),
    InstanceStatus.SUSPENDED: frozenset({InstanceStatus.RUNNING, InstanceStatus.CANCELLED}),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    COMPENSATED = "compensated"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.QUEUED, StepStatus.RUNNING)


STEP_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.QUEUED: frozenset(
        {StepStatus.RUNNING, StepStatus.SUCCEEDED, StepStatus.SKIPPED, StepStatus.CANCELLED}
    ),
    StepStatus.RUNNING: frozenset(
        {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELLED, StepStatus.SKIPPED}
    ),
    # a failed step whose compensation succeeded
    StepStatus.FAILED: frozenset({StepStatus.COMPENSATED}),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
    StepStatus.COMPENSATED: frozenset(),
}


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


class CacheStatus(str, Enum):
    COMPUTING = "computing"
    READY = "ready"


class Entity(BaseModel):
    """Base for stored rows."""

    row_version: int = 0

    def to_public(self) -> Dict[str, Any]:
        """Dump with ``*_at`` epoch fields rendered as ISO-8601."""
        data = self.model_dump(mode="json", exclude={"row_version"})
        return _iso_timestamps(data)


def _iso_timestamps(value: Any) -> Any:
    if isinstance(value, dict):
        converted = {}
        for key, item in value.items():
            if key.endswith("_at") and isinstance(item, int):
                converted[key] = to_iso(item)
            else:
                converted[key] = _iso_timestamps(item)
        return converted
    if isinstance(value, list):
        return [_iso_timestamps(item) for item in value]
    return value


class WorkflowDefinition(Entity):
    id: str
    name: str
    version: str = "1.0.0"
    status: DefinitionStatus = DefinitionStatus.DRAFT
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    definition: DefinitionGraph
    owner_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_template: bool = False
    description: Optional[str] = None
    previous_version_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    activated_at: Optional[int] = None

    @property
    def owner_scope(self) -> str:
        return self.owner_id or "global"

    @field_serializer("definition")
    def _dump_graph(self, graph: DefinitionGraph) -> Dict[str, Any]:
        # keep the graph exactly as authored: camelCase, unset fields omitted
        return graph.to_dict()


class WorkflowInstance(Entity):
    id: str
    definition_id: str
    definition_name: Optional[str] = None
    parent_instance_id: Optional[str] = None
    parent_execution_key: Optional[str] = None
    status: InstanceStatus = InstanceStatus.PENDING
    current_step_id: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = 0
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    duration_ms: Optional[int] = None
    deadline_at: Optional[int] = None
    retry_count: int = 0
    retry_of: Optional[str] = None
    initiated_by: Optional[str] = None
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    step_count: int = 0
    error: Optional[StepError] = None
    suspend_reason: Optional[str] = None
    parked: List[WorkPayload] = Field(default_factory=list)
    cancel_reason: Optional[str] = None


class BarrierRef(BaseModel):
    """Membership of a step execution in a parallel branch."""

    key: str
    branch: str


class StepExecution(Entity):
    id: str
    instance_id: str
    step_id: str
    kind: str
    attempt: int = Field(default=1, ge=1)
    visit: int = 1
    try_number: int = 1
    status: StepStatus = StepStatus.QUEUED
    queued_at: int = 0
    not_before: Optional[int] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[StepError] = None
    idempotency_key: Optional[str] = None
    request_hash: Optional[str] = None
    reused_from: Optional[str] = None
    barriers: List[BarrierRef] = Field(default_factory=list)
    waiting: Optional[WaitSpec] = None
    child_instance_id: Optional[str] = None
    compensation_for: Optional[str] = None
    compensated_by: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    cache_hit: Optional[bool] = None

    @property
    def key(self) -> str:
        return execution_key(self.instance_id, self.step_id, self.attempt)


def execution_key(instance_id: str, step_id: str, attempt: int) -> str:
    return f"{instance_id}/{step_id}/{attempt:06d}"


class Barrier(Entity):
    """Counter row written by a ``parallel`` step for its matching ``join``."""

    key: str
    instance_id: str
    parallel_step_id: str
    join_step_id: str
    branches: List[str]
    expected: int
    remaining: int
    arrived: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    fired: bool = False
    parent_barriers: List[BarrierRef] = Field(default_factory=list)


class ScheduleBinding(Entity):
    id: str
    definition_id: str
    cron_expr: str
    timezone: str = "UTC"
    next_fire_at: Optional[int] = None
    last_fire_at: Optional[int] = None
    enabled: bool = True
    start_at: Optional[int] = None
    end_at: Optional[int] = None
    catch_up_policy: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    fire_count: int = 0
    failure_count: int = 0
    dropped_count: int = 0
    last_error: Optional[str] = None
    deferred_until: Optional[int] = None
    defer_count: int = 0
    created_at: int = 0


class CacheEntry(Entity):
    key: str
    report_id: str
    fingerprint: str
    status: CacheStatus = CacheStatus.COMPUTING
    value: Any = None
    result_ref: Optional[str] = None
    computed_at: Optional[int] = None
    expires_at: Optional[int] = None
    producer: Optional[str] = None
    lock_expires_at: Optional[int] = None
    hits: int = 0


class DeliveryRecord(Entity):
    """Delivery side of a report execution, tracked apart from step status."""

    id: str
    execution_key: str
    instance_id: str
    step_id: str
    definition_id: str
    adapter: Optional[str] = None
    target: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    provider_message_id: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[int] = None
    delivered_at: Optional[int] = None
    report_id: Optional[str] = None
    parameter_fingerprint: Optional[str] = None
    format: Optional[str] = None
    result_ref: Optional[str] = None
    created_at: int = 0


class AuditRecord(BaseModel):
    """Immutable audit entry."""

    id: str
    seq: int
    event_kind: str
    subject_id: str
    subject_type: str
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    at: int
    severity: str = "info"
    data: Dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = ""
    hash: str = ""


class Lease(Entity):
    name: str
    holder: str
    acquired_at: int
    expires_at: int


class EventSubscription(Entity):
    key: str
    topic: str
    instance_id: str
    definition_id: str
    step_id: str
    attempt: int
    filter: Optional[str] = None
    created_at: int = 0


class IdempotencyRecord(Entity):
    key: str
    execution_key: str
    request_hash: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)
    created_at: int = 0


class OutboxEntry(Entity):
    id: str
    item: Dict[str, Any]
    delay_ms: int = 0
    created_at: int = 0


class ExportArtifact(Entity):
    ref: str
    report_id: str
    format: str
    content_type: str
    content: str
    size: int
    checksum: str
    created_at: int = 0
