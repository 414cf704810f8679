import pytest

from flowline.contracts import DefinitionGraph
from flowline.errors import NoBranchMatch, ValidationError
from flowline.models import Barrier
from flowline.runtime import (
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
from flowline.validation import check_definition, parse_definition, validate_definition


def task(step_id, **extra):
    return {"id": step_id, "kind": "task", "config": {"handler": "noop"}, **extra}


def graph(steps, connections=(), **extra):
    return parse_definition({"steps": list(steps), "connections": [dict(c) for c in connections], **extra})


def edge(source, target, condition=None):
    connection = {"from": source, "to": target}
    if condition is not None:
        connection["condition"] = condition
    return connection


DIAMOND = [
    {"id": "P", "kind": "parallel"},
    task("A"),
    task("B"),
    {"id": "J", "kind": "join"},
]
DIAMOND_EDGES = [edge("P", "A"), edge("P", "B"), edge("A", "J"), edge("B", "J")]


def test_parse_accepts_json_text_and_reports_schema_errors():
    parsed = parse_definition('{"steps": [{"id": "A", "kind": "task", "config": {"handler": "noop"}}]}')
    assert isinstance(parsed, DefinitionGraph)
    assert parse_definition(parsed) is parsed

    with pytest.raises(ValidationError) as excinfo:
        parse_definition({"steps": [{"id": "A", "kind": "teleport"}]})
    assert any(p.startswith("steps.0.kind") for p in excinfo.value.problems)


def test_valid_graphs_pass():
    assert check_definition(graph([task("A"), task("B")], [edge("A", "B")])) == []
    assert check_definition(graph(DIAMOND, DIAMOND_EDGES)) == []


@pytest.mark.parametrize(
    "steps, connections, fragment",
    [
        ([task("A"), task("A")], [], "duplicate step id 'A'"),
        ([task("A")], [edge("A", "Z")], "unknown step 'Z'"),
        ([task("A"), task("B"), task("C")], [edge("A", "B"), edge("A", "C")], "several successors"),
        ([task("A"), task("B")], [edge("A", "B", "x > 1")], "only decision connections"),
        ([{"id": "A", "kind": "task"}], [], "task needs a 'handler'"),
        ([{"id": "W", "kind": "wait", "config": {}}], [], "wait needs exactly one of"),
        ([{"id": "W", "kind": "wait", "config": {"event": {}}}], [], "wait event needs a 'topic'"),
        ([{"id": "S", "kind": "subflow"}], [], "subflow needs"),
        ([{"id": "H", "kind": "http"}], [], "http needs a 'url'"),
        ([{"id": "D", "kind": "delivery"}], [], "delivery needs an 'adapter'"),
        ([{"id": "S", "kind": "script", "config": {"assign": {"x": "1 +"}}}], [], "assign.x"),
        ([task("A", compensation="A")], [], "cannot compensate itself"),
        ([task("A", compensation="Z")], [], "compensation references unknown"),
        ([task("A"), task("B")], [], "expected exactly one step without inbound connections"),
    ],
)
def test_problems(steps, connections, fragment):
    problems = check_definition(graph(steps, connections))
    assert any(fragment in p for p in problems), problems


def test_cycle_needs_a_decision():
    looping = graph([task("A"), task("B")], [edge("A", "B"), edge("B", "A")], settings={"entryStep": "A"})
    assert any("no decision step" in p for p in check_definition(looping))

    loop = graph(
        [task("A"), {"id": "D", "kind": "decision"}, task("Done")],
        [edge("A", "D"), edge("D", "A", "n > 0"), edge("D", "Done", "default")],
        settings={"entryStep": "A"},
    )
    assert check_definition(loop) == []


def test_decision_rules():
    two_defaults = graph(
        [{"id": "D", "kind": "decision"}, task("A"), task("B")],
        [edge("D", "A"), edge("D", "B", "default")],
    )
    assert any("more than one default" in p for p in check_definition(two_defaults))

    bad_condition = graph([{"id": "D", "kind": "decision"}, task("A")], [edge("D", "A", "x >")])
    assert any("condition to 'A'" in p for p in check_definition(bad_condition))


def test_parallel_must_converge_on_one_join():
    steps = DIAMOND + [{"id": "K", "kind": "join"}, task("C")]
    edges = [edge("P", "A"), edge("P", "B"), edge("P", "C"), edge("A", "J"), edge("B", "J"), edge("C", "K"), edge("J", "K")]
    problems = check_definition(graph(steps, edges))
    assert any("exactly one join" in p for p in problems)


def test_nested_parallel_finds_the_outer_join():
    steps = [
        {"id": "P", "kind": "parallel"},
        {"id": "Q", "kind": "parallel"},
        task("A"),
        task("B"),
        {"id": "J1", "kind": "join"},
        task("C"),
        {"id": "J2", "kind": "join"},
    ]
    edges = [
        edge("P", "Q"),
        edge("P", "C"),
        edge("Q", "A"),
        edge("Q", "B"),
        edge("A", "J1"),
        edge("B", "J1"),
        edge("J1", "J2"),
        edge("C", "J2"),
    ]
    nested = graph(steps, edges)
    assert check_definition(nested) == []
    assert matching_join(nested, "Q") == "J1"
    assert matching_join(nested, "P") == "J2"


def test_variables_are_checked():
    bad = graph(
        [task("A")],
        variables={
            "count": {"type": "integer", "default": "one"},
            "mode": {"type": "colour"},
            "who": {"type": "string", "scope": "team"},
            "1st": 1,
        },
    )
    problems = check_definition(bad)
    assert any("'count' default does not match" in p for p in problems)
    assert any("unknown type 'colour'" in p for p in problems)
    assert any("unknown scope 'team'" in p for p in problems)
    assert any("'1st' is not a valid identifier" in p for p in problems)


def test_validate_definition_raises_with_every_problem():
    with pytest.raises(ValidationError) as excinfo:
        validate_definition(graph([task("A"), task("A")], [edge("A", "Z")]))
    assert len(excinfo.value.problems) == 2


def test_entry_step():
    assert entry_step(graph([task("A"), task("B")], [edge("A", "B")])) == "A"
    assert entry_step(graph([task("A"), task("B")], settings={"entryStep": "B"})) == "B"
    # compensation targets are not roots
    assert entry_step(graph([task("A", compensation="Undo"), task("Undo")])) == "A"


def test_select_successors_for_decisions():
    decision = graph(
        [{"id": "D", "kind": "decision"}, task("Big"), task("Mid"), task("Small")],
        [edge("D", "Big", "amount > 100"), edge("D", "Mid", "amount > 10"), edge("D", "Small", "default")],
    )
    step = decision.step("D")
    assert select_successors(decision, step, {"amount": 500}) == ["Big"]
    assert select_successors(decision, step, {"amount": 50}) == ["Mid"]
    assert select_successors(decision, step, {"amount": 1}) == ["Small"]
    assert select_successors(decision, step, {"amount": 1}, branch="Big") == ["Big"]
    with pytest.raises(NoBranchMatch):
        select_successors(decision, step, {}, branch="Nowhere")

    no_default = graph([{"id": "D", "kind": "decision"}, task("A")], [edge("D", "A", "ok")])
    with pytest.raises(NoBranchMatch):
        select_successors(no_default, no_default.step("D"), {"ok": False})


def test_select_successors_for_parallel():
    diamond = graph(DIAMOND, DIAMOND_EDGES)
    assert select_successors(diamond, diamond.step("P"), {}) == ["A", "B"]
    assert select_successors(diamond, diamond.step("J"), {}) == []


def test_scopes_and_projections():
    definition = graph(
        [task("A", config={"handler": "noop", "input": {"label": "${prefix + name}"}, "outputMapping": {"total": "price * qty"}})],
        variables={
            "prefix": "Mr ",
            "region": {"type": "string", "default": "eu"},
            "name": {"type": "string", "scope": "instance", "required": True},
            "qty": {"type": "integer", "scope": "instance", "default": 1},
        },
        settings={"output": ["total", "name"]},
    )

    with pytest.raises(ValidationError):
        initial_context(definition, {})
    with pytest.raises(ValidationError):
        initial_context(definition, {"name": "Bean", "qty": "two"})

    context = initial_context(definition, {"name": "Bean"})
    assert context == {"name": "Bean", "qty": 1}
    assert merged_view(definition, context) == {"prefix": "Mr ", "region": "eu", "name": "Bean", "qty": 1}

    step = definition.step("A")
    assert project_input(definition, step, context)["label"] == "Mr Bean"

    updated = apply_output(step, context, {"price": 4})
    assert updated == {"name": "Bean", "qty": 1, "total": 4}
    assert project_output(definition, updated) == {"total": 4, "name": "Bean"}


def test_join_input_merges_in_branch_order():
    barrier = Barrier(
        key="b",
        instance_id="i",
        parallel_step_id="P",
        join_step_id="J",
        branches=["A", "B"],
        expected=2,
        remaining=0,
        arrived={"B": {"x": "from B", "b": 1}, "A": {"x": "from A", "a": 1}},
    )
    assert join_input(barrier) == {"x": "from B", "a": 1, "b": 1}
