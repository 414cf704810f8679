"""Definition graph validation."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Union

import pydantic

from .constants import DEFINITION_SCHEMA_VERSIONS
from .contracts import DefinitionGraph, StepKind, StepSpec
from .errors import ExpressionError, ValidationError
from .expressions import compile_expression, template_expressions
from .runtime import (
    VARIABLE_SCOPES,
    VARIABLE_TYPES,
    _SPEC_KEYS,
    entry_step,
    is_variable_spec,
    matching_join,
    matches_type,
)

logger = logging.getLogger(__name__)

WAIT_MODES = ("durationMs", "until", "event")


def parse_definition(data: Union[str, bytes, Dict[str, Any], DefinitionGraph]) -> DefinitionGraph:
    """Parse definition JSON, turning schema errors into ``ValidationError``."""

    if isinstance(data, DefinitionGraph):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return DefinitionGraph.model_validate_json(data)
        return DefinitionGraph.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError("Invalid definition document", problems) from exc


def check_definition(graph: DefinitionGraph) -> List[str]:
    """Return every problem found in ``graph`` (empty when valid)."""

    problems: List[str] = []
    if graph.version not in DEFINITION_SCHEMA_VERSIONS:
        problems.append(f"unsupported schema version {graph.version!r}")
    if not graph.steps:
        problems.append("definition must contain at least one step")
        return problems

    ids = [step.id for step in graph.steps]
    for step_id, count in Counter(ids).items():
        if count > 1:
            problems.append(f"duplicate step id {step_id!r}")
    known = set(ids)

    for connection in graph.connections:
        for end in (connection.source, connection.to):
            if end not in known:
                problems.append(f"connection {connection.source}->{connection.to} references unknown step {end!r}")
    if problems:
        return problems

    for step in graph.steps:
        problems.extend(_check_step(graph, step, known))

    problems.extend(_check_cycles(graph))
    problems.extend(_check_variables(graph))

    settings = graph.effective_settings
    if settings.entry_step and settings.entry_step not in known:
        problems.append(f"settings.entryStep references unknown step {settings.entry_step!r}")
    elif not problems:
        try:
            entry_step(graph)
        except ValidationError as exc:
            problems.extend(exc.problems or [exc.message])
    return problems


def validate_definition(graph: DefinitionGraph) -> DefinitionGraph:
    problems = check_definition(graph)
    if problems:
        logger.debug(f"Definition rejected with {len(problems)} problems: {problems}")
        raise ValidationError("Invalid workflow definition", problems)
    return graph


def _expression_problem(where: str, source: Any) -> List[str]:
    try:
        compile_expression(source)
    except ExpressionError as exc:
        return [f"{where}: {exc.message}"]
    return []


def _check_step(graph: DefinitionGraph, step: StepSpec, known: set) -> List[str]:
    problems: List[str] = []
    where = f"step {step.id!r}"
    outgoing = graph.outgoing(step.id)
    config = step.config

    if step.compensation is not None:
        if step.compensation not in known:
            problems.append(f"{where}: compensation references unknown step {step.compensation!r}")
        elif step.compensation == step.id:
            problems.append(f"{where}: a step cannot compensate itself")
    on_error = config.get("onError")
    if on_error is not None and on_error not in known:
        problems.append(f"{where}: onError references unknown step {on_error!r}")
    if step.idempotency_key_expr:
        problems.extend(_expression_problem(f"{where} idempotencyKeyExpr", step.idempotency_key_expr))
    for source in template_expressions(config):
        problems.extend(_expression_problem(f"{where} config", source))
    mapping = config.get("outputMapping")
    if mapping is not None:
        if not isinstance(mapping, dict):
            problems.append(f"{where}: outputMapping must be an object")
        else:
            for target, source in mapping.items():
                problems.extend(_expression_problem(f"{where} outputMapping.{target}", source))

    if step.kind == StepKind.DECISION:
        if not outgoing:
            problems.append(f"{where}: decision needs at least one outgoing connection")
        defaults = [c for c in outgoing if c.is_default]
        if len(defaults) > 1:
            problems.append(f"{where}: decision has more than one default connection")
        for connection in outgoing:
            if not connection.is_default:
                problems.extend(
                    _expression_problem(f"{where} condition to {connection.to!r}", connection.condition)
                )
    elif step.kind == StepKind.PARALLEL:
        if len(outgoing) < 2:
            problems.append(f"{where}: parallel needs at least two outgoing connections")
        if any(c.condition is not None for c in outgoing):
            problems.append(f"{where}: parallel connections cannot carry conditions")
        if len(outgoing) >= 2:
            try:
                matching_join(graph, step.id)
            except ValidationError as exc:
                problems.append(f"{where}: {exc.message} ({'; '.join(exc.problems)})")
    else:
        if len(outgoing) > 1:
            problems.append(f"{where}: only decision and parallel steps may have several successors")
        if any(c.condition is not None for c in outgoing):
            problems.append(f"{where}: only decision connections may carry conditions")

    if step.kind == StepKind.JOIN and len(graph.incoming(step.id)) < 2:
        problems.append(f"{where}: join needs at least two inbound connections")
    if step.kind == StepKind.TASK and not isinstance(config.get("handler"), str):
        problems.append(f"{where}: task needs a 'handler' name")
    if step.kind == StepKind.SUBFLOW and not (config.get("definitionId") or config.get("definitionName")):
        problems.append(f"{where}: subflow needs 'definitionId' or 'definitionName'")
    if step.kind == StepKind.HTTP and not config.get("url"):
        problems.append(f"{where}: http needs a 'url'")
    if step.kind == StepKind.DELIVERY and not isinstance(config.get("adapter"), str):
        problems.append(f"{where}: delivery needs an 'adapter' name")
    if step.kind == StepKind.WAIT:
        modes = [mode for mode in WAIT_MODES if mode in config]
        if len(modes) != 1:
            problems.append(f"{where}: wait needs exactly one of {', '.join(WAIT_MODES)}")
        if "until" in config:
            problems.extend(_expression_problem(f"{where} until", config["until"]))
        event = config.get("event")
        if "event" in modes:
            if not isinstance(event, dict) or not event.get("topic"):
                problems.append(f"{where}: wait event needs a 'topic'")
            elif event.get("filter"):
                problems.extend(_expression_problem(f"{where} event filter", event["filter"]))
    if step.kind == StepKind.SCRIPT:
        assign = config.get("assign")
        if not isinstance(assign, dict) or not assign:
            problems.append(f"{where}: script needs an 'assign' mapping of expressions")
        else:
            for name, source in assign.items():
                problems.extend(_expression_problem(f"{where} assign.{name}", source))
    return problems


def _check_cycles(graph: DefinitionGraph) -> List[str]:
    """Every cycle must pass through a decision step (explicit loop)."""

    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    stack: List[str] = []
    on_stack: set = set()
    components: List[List[str]] = []
    counter = [0]

    def strongconnect(node: str) -> None:
        index[node] = low[node] = counter[0]
        counter[0] += 1
        stack.append(node)
        on_stack.add(node)
        for connection in graph.outgoing(node):
            target = connection.to
            if target not in index:
                strongconnect(target)
                low[node] = min(low[node], low[target])
            elif target in on_stack:
                low[node] = min(low[node], index[target])
        if low[node] == index[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            components.append(component)

    for step in graph.steps:
        if step.id not in index:
            strongconnect(step.id)

    problems = []
    for component in components:
        looping = len(component) > 1 or any(
            c.to == component[0] for c in graph.outgoing(component[0])
        )
        if not looping:
            continue
        if not any(graph.step(member).kind == StepKind.DECISION for member in component):
            problems.append(f"cycle through {sorted(component)} has no decision step")
    return problems


def _check_variables(graph: DefinitionGraph) -> List[str]:
    problems: List[str] = []
    for name, value in (graph.variables or {}).items():
        if not name.isidentifier():
            problems.append(f"variable {name!r} is not a valid identifier")
        if isinstance(value, dict) and "type" in value and set(value) <= _SPEC_KEYS:
            if value["type"] not in VARIABLE_TYPES:
                problems.append(f"variable {name!r} has unknown type {value['type']!r}")
            if value.get("scope", "global") not in VARIABLE_SCOPES:
                problems.append(f"variable {name!r} has unknown scope {value.get('scope')!r}")
            elif (
                is_variable_spec(value)
                and value["type"] in VARIABLE_TYPES
                and "default" in value
                and not matches_type(value["default"], value["type"])
            ):
                problems.append(f"variable {name!r} default does not match type {value['type']}")
        elif isinstance(value, dict) and "scope" in value and "type" not in value:
            problems.append(f"variable {name!r} declares a scope without a type")
    return problems
