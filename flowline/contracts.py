"""Wire contracts for flowline: definition format, work items and step outcomes."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import DEFINITION_SCHEMA_VERSIONS


class WireModel(BaseModel):
    """Base for JSON-facing models: camelCase on the wire, unknown fields rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


class StepKind(str, Enum):
    TASK = "task"
    DECISION = "decision"
    PARALLEL = "parallel"
    JOIN = "join"
    SUBFLOW = "subflow"
    WAIT = "wait"
    HTTP = "http"
    SCRIPT = "script"
    DELIVERY = "delivery"


class RetryPolicy(WireModel):
    """Retry settings; unset fields fall back to the enclosing level."""

    max_attempts: Optional[int] = Field(default=None, ge=1)
    initial_delay: Optional[int] = Field(default=None, ge=0, description="ms")
    multiplier: Optional[float] = Field(default=None, ge=1.0)
    max_delay: Optional[int] = Field(default=None, ge=0, description="ms")
    retriable_errors: Optional[List[str]] = None


class StepSpec(WireModel):
    """Defines one step in a workflow."""

    id: str = Field(min_length=1)
    kind: StepKind
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = Field(default=None, gt=0, description="ms")
    compensation: Optional[str] = None
    idempotency_key_expr: Optional[str] = None


class Connection(WireModel):
    """Directed edge between two steps."""

    source: str = Field(alias="from")
    to: str
    condition: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.condition is None or self.condition.strip() == "default"


class DefinitionSettings(WireModel):
    entry_step: Optional[str] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout: Optional[int] = Field(default=None, gt=0, description="ms")
    max_steps: Optional[int] = Field(default=None, gt=0)
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    output: Optional[List[str]] = None


class DefinitionGraph(WireModel):
    """Persisted JSON form of a workflow definition."""

    version: str = "1"
    steps: List[StepSpec]
    connections: List[Connection] = Field(default_factory=list)
    variables: Optional[Dict[str, Any]] = None
    settings: Optional[DefinitionSettings] = None

    @classmethod
    def from_json(cls, data: str | bytes) -> "DefinitionGraph":
        return cls.model_validate_json(data)

    @property
    def schema_supported(self) -> bool:
        return self.version in DEFINITION_SCHEMA_VERSIONS

    def step(self, step_id: str) -> StepSpec:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)

    def outgoing(self, step_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == step_id]

    def incoming(self, step_id: str) -> List[Connection]:
        return [c for c in self.connections if c.to == step_id]

    @property
    def effective_settings(self) -> DefinitionSettings:
        return self.settings or DefinitionSettings()


class StepError(BaseModel):
    """Error recorded against a step execution."""

    kind: str
    message: str
    retriable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkItemKind(str, Enum):
    RUN = "run"
    RESUME = "resume"
    REDELIVER = "redeliver"


class WorkPayload(BaseModel):
    instance_id: str
    step_id: str
    attempt: int = Field(ge=1)
    definition_id: str
    kind: WorkItemKind = WorkItemKind.RUN
    deadline: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def execution_key(self) -> str:
        return f"{self.instance_id}/{self.step_id}/{self.attempt:06d}"


class WorkItem(BaseModel):
    """Envelope exchanged over the work queue."""

    id: str
    priority: int = Field(default=5, ge=1, le=10)
    visible_at: int = 0
    enqueued_at: int = 0
    delivered_count: int = 0
    seq: int = 0
    reserved_by: Optional[str] = None
    last_error: Optional[str] = None
    payload: WorkPayload

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkItem":
        return cls.model_validate_json(data)


class WaitSpec(BaseModel):
    """Timer or event subscription registered by a ``wait`` step."""

    until: Optional[int] = None
    topic: Optional[str] = None
    filter: Optional[str] = None
    timeout_at: Optional[int] = None


class ChildSpec(BaseModel):
    """Child instance requested by a ``subflow`` step."""

    definition_id: str
    input: Dict[str, Any] = Field(default_factory=dict)


class DeliveryOutcome(BaseModel):
    """Result of a ``deliver(target, payload)`` call."""

    status: str
    provider_message_id: Optional[str] = None
    retriable: bool = False
    error: Optional[str] = None


class DeliveryRequest(BaseModel):
    """Adapter, target and payload of a delivery, kept for redelivery."""

    adapter: str
    target: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    """What a step handler hands back to the executor."""

    output: Dict[str, Any] = Field(default_factory=dict)
    branch: Optional[str] = None
    wait: Optional[WaitSpec] = None
    child: Optional[ChildSpec] = None
    delivery: Optional[DeliveryOutcome] = None
    delivery_request: Optional[DeliveryRequest] = None
    cache_hit: Optional[bool] = None

    @classmethod
    def coerce(cls, value: Any) -> "StepOutcome":
        if isinstance(value, StepOutcome):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls(output=value)
        if isinstance(value, BaseModel):
            return cls(output=value.model_dump(mode="json"))
        return cls(output={"result": value})
