import pytest

from flowline.errors import ExpressionError
from flowline.expressions import (
    compile_expression,
    evaluate,
    evaluate_condition,
    lookup_path,
    resolve_template,
    template_expressions,
)

CONTEXT = {
    "amount": 120,
    "customer": {"name": "Ada", "tier": "gold", "tags": ["vip", "eu"]},
    "items": [{"sku": "a", "qty": 2}, {"sku": "b", "qty": 1}],
    "note": None,
}


@pytest.mark.parametrize(
    "source, expected",
    [
        ("amount > 100 and customer.tier == 'gold'", True),
        ("amount * 2 - 40", 200),
        ("customer.name + ' #' + amount", "Ada #120"),
        ("'vip' in customer.tags", True),
        ("items[0].qty + items[1]['qty']", 3),
        ("len(items)", 2),
        ("customer.missing", None),
        ("coalesce(note, 'n/a')", "n/a"),
        ("concat(customer.name, '-', amount)", "Ada-120"),
        ("customer.name.upper()", "ADA"),
        ("'big' if amount >= 100 else 'small'", "big"),
        ("true and not false", True),
        ("note == null", True),
        ("customer.tags[:1]", ["vip"]),
        ("{'a': amount}", {"a": 120}),
    ],
)
def test_evaluate(source, expected):
    assert evaluate(source, CONTEXT) == expected


@pytest.mark.parametrize(
    "source",
    [
        "__import__('os')",
        "customer.__class__",
        "open('/etc/passwd')",
        "[x for x in items]",
        "lambda: 1",
        "amount.bit_length()",
        "len(items, key=1)",
        "amount +",
        "",
    ],
)
def test_unsafe_or_invalid_syntax_is_rejected(source):
    with pytest.raises(ExpressionError):
        compile_expression(source)


@pytest.mark.parametrize(
    "source",
    [
        "unknown + 1",
        "amount / 0",
        "2 ** 1000",
        "((2 ** 64) ** 64) ** 64",
        "(2 ** 64) ** 63 * (2 ** 64) ** 63",
        "'x' * 1000000",
        "amount.name",
    ],
)
def test_runtime_errors_become_expression_errors(source):
    with pytest.raises(ExpressionError):
        evaluate(source, CONTEXT)


def test_compiled_expression_lists_free_names():
    expression = compile_expression("amount > limit and true")
    assert expression.names == frozenset({"amount", "limit"})


def test_condition_is_truthy():
    assert evaluate_condition("items", CONTEXT) is True
    assert evaluate_condition("note", CONTEXT) is False


def test_lookup_path():
    assert lookup_path(CONTEXT, "customer.name") == "Ada"
    assert lookup_path(CONTEXT, "items.1.sku") == "b"
    assert lookup_path(CONTEXT, "items.9.sku") is None
    assert lookup_path(CONTEXT, "customer.name.first") is None


def test_resolve_template():
    config = {
        "total": "${amount * 2}",
        "who": "$customer.name",
        "greeting": "Hello ${customer.name}, you owe ${amount}",
        "flags": ["${amount > 100}", "plain"],
        "count": 3,
    }
    assert resolve_template(config, CONTEXT) == {
        "total": 240,
        "who": "Ada",
        "greeting": "Hello Ada, you owe 120",
        "flags": [True, "plain"],
        "count": 3,
    }


def test_template_expressions_are_collected():
    value = {"a": "${x + 1}", "b": ["text ${y}", 4], "c": "$plain"}
    assert sorted(template_expressions(value)) == ["x + 1", "y"]


def test_large_but_bounded_integers_are_allowed():
    assert evaluate("(2 ** 64) ** 2", {}) == 2 ** 128
    assert evaluate("big * big", {"big": 2 ** 1000}) == 2 ** 2000
