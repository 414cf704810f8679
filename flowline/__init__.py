"""flowline: durable workflow execution and scheduled reports."""

from .clock import ManualClock, SequentialIds, SystemClock
from .config import FlowlineConfig, load_config
from .contracts import DefinitionGraph, StepKind, StepOutcome
from .control import CancelResult, ControlAPI, InstanceDetail
from .engine import Engine
from .errors import FlowlineError, ValidationError
from .handlers import HandlerRegistry, StepContext
from .persistence import get_store
from .queues import get_queue
from .reports import CallableQuerySource, ReportSpec, SQLQuerySource

__version__ = "0.1.0"
__all__ = [
    "CallableQuerySource",
    "CancelResult",
    "ControlAPI",
    "DefinitionGraph",
    "Engine",
    "FlowlineConfig",
    "FlowlineError",
    "HandlerRegistry",
    "InstanceDetail",
    "ManualClock",
    "ReportSpec",
    "SQLQuerySource",
    "SequentialIds",
    "StepContext",
    "StepKind",
    "StepOutcome",
    "SystemClock",
    "ValidationError",
    "get_queue",
    "get_store",
    "load_config",
]
