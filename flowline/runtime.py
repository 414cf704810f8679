"""Workflow runtime: interprets a definition graph.

Context scoping is global (definition variables) -> instance -> step.
A step sees the merged view; its output is written to the instance scope,
either whole or through ``config.outputMapping``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

from .contracts import DefinitionGraph, StepKind, StepSpec
from .errors import NoBranchMatch, ValidationError
from .expressions import evaluate, evaluate_condition, resolve_template
from .models import Barrier

logger = logging.getLogger(__name__)

VARIABLE_TYPES = {"string", "number", "integer", "boolean", "object", "array", "any"}
VARIABLE_SCOPES = {"global", "instance"}
_SPEC_KEYS = {"type", "default", "scope", "required", "description"}

_PY_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


# ---------------------------------------------------------------------------
# Variables and scope
# ---------------------------------------------------------------------------


def is_variable_spec(value: Any) -> bool:
    """A typed variable spec is a mapping with ``type`` and only spec keys."""
    return isinstance(value, dict) and "type" in value and set(value) <= _SPEC_KEYS


def matches_type(value: Any, type_name: str) -> bool:
    if type_name == "any" or value is None:
        return True
    expected = _PY_TYPES[type_name]
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def global_variables(graph: DefinitionGraph) -> Dict[str, Any]:
    """Definition-level values visible to every step of every instance."""

    scope: Dict[str, Any] = {}
    for name, value in (graph.variables or {}).items():
        if is_variable_spec(value):
            if value.get("scope", "global") == "global":
                scope[name] = value.get("default")
        else:
            scope[name] = value
    return scope


def initial_context(graph: DefinitionGraph, input_data: Dict[str, Any]) -> Dict[str, Any]:
    """Instance scope at start: instance variable defaults overlaid with input.

    Declared instance variables are type-checked against the input.
    """

    context: Dict[str, Any] = {}
    problems: List[str] = []
    for name, value in (graph.variables or {}).items():
        if not is_variable_spec(value) or value.get("scope", "global") != "instance":
            continue
        if name in input_data:
            if not matches_type(input_data[name], value["type"]):
                problems.append(f"input {name!r} must be of type {value['type']}")
        elif value.get("required"):
            problems.append(f"input {name!r} is required")
        elif "default" in value:
            context[name] = value["default"]
    if problems:
        raise ValidationError("Invalid instance input", problems)
    context.update(input_data)
    return context


def merged_view(graph: DefinitionGraph, context: Dict[str, Any]) -> Dict[str, Any]:
    view = global_variables(graph)
    view.update(context)
    return view


def project_input(graph: DefinitionGraph, step: StepSpec, context: Dict[str, Any]) -> Dict[str, Any]:
    """The merged view a step receives, with its ``config.input`` resolved on top."""

    view = merged_view(graph, context)
    step_inputs = step.config.get("input")
    if isinstance(step_inputs, dict):
        view.update(resolve_template(step_inputs, view))
    return view


def apply_output(step: StepSpec, context: Dict[str, Any], output: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a step's output into the instance scope and return the new scope."""

    updated = dict(context)
    mapping = step.config.get("outputMapping")
    if isinstance(mapping, dict):
        source = dict(context)
        source.update(output)
        source["output"] = output
        for target, expression in mapping.items():
            updated[target] = evaluate(expression, source)
    else:
        updated.update(output)
    return updated


def project_output(graph: DefinitionGraph, context: Dict[str, Any]) -> Dict[str, Any]:
    names = graph.effective_settings.output
    if names is None:
        return dict(context)
    return {name: context.get(name) for name in names}


# ---------------------------------------------------------------------------
# Graph structure
# ---------------------------------------------------------------------------


def handler_targets(graph: DefinitionGraph) -> Set[str]:
    """Steps only reachable as compensation or error handlers."""

    targets: Set[str] = set()
    for step in graph.steps:
        if step.compensation:
            targets.add(step.compensation)
        on_error = step.config.get("onError")
        if isinstance(on_error, str):
            targets.add(on_error)
    return targets


def entry_step(graph: DefinitionGraph) -> str:
    """``settings.entryStep`` or the unique root of the graph."""

    configured = graph.effective_settings.entry_step
    if configured:
        if not graph.has_step(configured):
            raise ValidationError(f"Entry step {configured!r} does not exist")
        return configured
    inbound = {c.to for c in graph.connections}
    excluded = handler_targets(graph)
    roots = [s.id for s in graph.steps if s.id not in inbound and s.id not in excluded]
    if len(roots) != 1:
        raise ValidationError(
            "Cannot determine entry step",
            [f"expected exactly one step without inbound connections, found {roots}"],
        )
    return roots[0]


def matching_join(graph: DefinitionGraph, parallel_id: str, _seen: Optional[Set[str]] = None) -> str:
    """The single ``join`` step where every branch of ``parallel_id`` converges."""

    seen = _seen if _seen is not None else set()
    if parallel_id in seen:
        raise ValidationError(f"Parallel step {parallel_id!r} is nested within itself")
    seen.add(parallel_id)

    branches = [c.to for c in graph.outgoing(parallel_id)]
    joins: Set[str] = set()
    for branch in branches:
        joins |= _first_joins(graph, branch, seen)
    if len(joins) != 1:
        raise ValidationError(
            f"Parallel step {parallel_id!r} must fan in to exactly one join",
            [f"branches reach joins {sorted(joins)}"],
        )
    return joins.pop()


def _first_joins(graph: DefinitionGraph, start: str, nested: Set[str]) -> Set[str]:
    found: Set[str] = set()
    pending = [start]
    visited: Set[str] = set()
    while pending:
        node = pending.pop()
        if node in visited or not graph.has_step(node):
            continue
        visited.add(node)
        kind = graph.step(node).kind
        if kind == StepKind.JOIN:
            found.add(node)
            continue
        if kind == StepKind.PARALLEL:
            inner = matching_join(graph, node, set(nested))
            pending.extend(c.to for c in graph.outgoing(inner))
            continue
        pending.extend(c.to for c in graph.outgoing(node))
    return found


# ---------------------------------------------------------------------------
# Successor selection
# ---------------------------------------------------------------------------


def select_successors(
    graph: DefinitionGraph,
    step: StepSpec,
    view: Dict[str, Any],
    branch: Optional[str] = None,
) -> List[str]:
    """Step ids to run after ``step`` succeeded.

    A decision evaluates its conditions in connection order and takes the
    first that holds, else its default connection; a handler may instead
    name the branch explicitly. A parallel step fans out to every target.
    """

    outgoing = graph.outgoing(step.id)
    if step.kind == StepKind.PARALLEL:
        return [c.to for c in outgoing]

    if step.kind != StepKind.DECISION:
        return [c.to for c in outgoing]

    if branch is not None:
        for connection in outgoing:
            if connection.to == branch or connection.condition == branch:
                return [connection.to]
        raise NoBranchMatch(f"Decision {step.id!r} chose unknown branch {branch!r}")

    default = None
    for connection in outgoing:
        if connection.is_default:
            default = connection
            continue
        if evaluate_condition(connection.condition, view):
            logger.debug(f"Decision {step.id} took {connection.to} ({connection.condition})")
            return [connection.to]
    if default is not None:
        return [default.to]
    raise NoBranchMatch(f"No branch of decision {step.id!r} matched")


def join_input(barrier: Barrier) -> Dict[str, Any]:
    """Branch outputs merged in branch declaration order (later wins)."""

    merged: Dict[str, Any] = {}
    for branch in barrier.branches:
        merged.update(barrier.arrived.get(branch, {}))
    return merged
