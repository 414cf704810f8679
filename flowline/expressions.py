"""Sandboxed expression language.

Expressions use Python expression syntax restricted to a pure subset:
literals, names, arithmetic, comparison, boolean logic, conditional
expressions, indexing and slicing, ``a.b`` as a mapping lookup, and calls
to a fixed set of functions. There are no statements, no attribute access
on Python objects, no comprehensions and no I/O, so evaluation is
deterministic for a given context. ``true``, ``false`` and ``null`` are
accepted as aliases for the Python constants.

Templates (used in step configs) embed expressions as ``${expr}``; a string
that is exactly one ``${expr}`` evaluates to the typed value, and a string of
the form ``$name.path`` is a plain variable lookup.
"""

from __future__ import annotations

import ast
import functools
import operator
import re
from typing import Any, Callable, Dict, FrozenSet, Mapping

from .errors import ExpressionError

MAX_EXPRESSION_LENGTH = 4_000
MAX_POWER_EXPONENT = 64
MAX_INTEGER_BITS = 4_096
MAX_SEQUENCE_LENGTH = 100_000

_CONSTANT_NAMES = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_CMP_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "sorted": sorted,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "trim": lambda s: str(s).strip(),
    "contains": lambda container, item: item in container,
    "startswith": lambda s, prefix: str(s).startswith(prefix),
    "endswith": lambda s, suffix: str(s).endswith(suffix),
    "concat": lambda *parts: "".join(str(p) for p in parts),
    "join": lambda sep, items: str(sep).join(str(i) for i in items),
    "split": lambda s, sep=None: str(s).split(sep),
    "replace": lambda s, old, new: str(s).replace(old, new),
    "coalesce": _coalesce,
    "keys": lambda m: sorted(m.keys()),
}

# methods callable on strings, e.g. ``name.lower()``
STRING_METHODS: FrozenSet[str] = frozenset(
    {"lower", "upper", "strip", "startswith", "endswith", "split", "replace", "title"}
)


class Expression:
    """A parsed, validated expression ready for evaluation."""

    def __init__(self, source: str, tree: ast.Expression, names: FrozenSet[str]) -> None:
        self.source = source
        self.tree = tree
        self.names = names

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        try:
            return _Evaluator(context).visit(self.tree.body)
        except ExpressionError:
            raise
        except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError, OverflowError) as exc:
            raise ExpressionError(f"Error evaluating {self.source!r}: {exc}") from exc

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


class _Checker(ast.NodeVisitor):
    """Rejects any syntax outside the pure subset and collects free names."""

    ALLOWED = (
        ast.Expression,
        ast.BoolOp,
        ast.And,
        ast.Or,
        ast.BinOp,
        ast.UnaryOp,
        ast.Not,
        ast.USub,
        ast.UAdd,
        ast.Compare,
        ast.IfExp,
        ast.Constant,
        ast.Name,
        ast.Load,
        ast.Subscript,
        ast.Slice,
        ast.Attribute,
        ast.List,
        ast.Tuple,
        ast.Dict,
        ast.Call,
    ) + tuple(_BIN_OPS) + tuple(_CMP_OPS)

    def __init__(self) -> None:
        self.names: set[str] = set()

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, self.ALLOWED):
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            raise ExpressionError(f"Names may not start with an underscore: {node.id}")
        if node.id not in _CONSTANT_NAMES:
            self.names.add(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Attribute may not start with an underscore: {node.attr}")
        self.visit(node.value)

    def visit_Call(self, node: ast.Call) -> None:
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        if isinstance(node.func, ast.Name):
            if node.func.id not in FUNCTIONS:
                raise ExpressionError(f"Unknown function: {node.func.id}")
        elif isinstance(node.func, ast.Attribute):
            if node.func.attr not in STRING_METHODS:
                raise ExpressionError(f"Unknown method: {node.func.attr}")
            self.visit(node.func.value)
        else:
            raise ExpressionError("Only named functions can be called")
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError("Star arguments are not supported")
            self.visit(arg)


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        if node.id not in self.context:
            raise ExpressionError(f"Unknown name: {node.id}")
        return self.context[node.id]

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, Mapping):
            return value.get(node.attr)
        raise ExpressionError(f"Cannot read {node.attr!r} of {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        if isinstance(node.slice, ast.Slice):
            parts = [
                self.visit(part) if part is not None else None
                for part in (node.slice.lower, node.slice.upper, node.slice.step)
            ]
            return value[slice(*parts)]
        index = self.visit(node.slice)
        if isinstance(value, Mapping):
            return value.get(index)
        return value[index]

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Dict(self, node: ast.Dict) -> Any:
        if any(key is None for key in node.keys):
            raise ExpressionError("Dictionary unpacking is not supported")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)):
            if abs(right) > MAX_POWER_EXPONENT:
                raise ExpressionError(f"Exponent too large: {right}")
            if isinstance(left, int) and isinstance(right, int) and abs(left).bit_length() * right > MAX_INTEGER_BITS:
                raise ExpressionError("Power result too large")
        if isinstance(node.op, ast.Mult) and isinstance(left, int) and isinstance(right, int):
            if abs(left).bit_length() + abs(right).bit_length() > MAX_INTEGER_BITS:
                raise ExpressionError("Product too large")
        if isinstance(node.op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list)) and isinstance(count, int):
                    if len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise ExpressionError("Sequence repetition too large")
        if isinstance(node.op, ast.Add) and isinstance(left, str) and not isinstance(right, str):
            right = _stringify(right)
        elif isinstance(node.op, ast.Add) and isinstance(right, str) and not isinstance(left, str):
            left = _stringify(left)
        return _BIN_OPS[type(node.op)](left, right)

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        args = [self.visit(arg) for arg in node.args]
        if isinstance(node.func, ast.Name):
            return FUNCTIONS[node.func.id](*args)
        target = self.visit(node.func.value)
        if not isinstance(target, str):
            raise ExpressionError(f"{node.func.attr}() is only available on strings")
        return getattr(target, node.func.attr)(*args)


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@functools.lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    """Parse and check ``source``; raises ``ExpressionError`` when invalid."""

    if not isinstance(source, str) or not source.strip():
        raise ExpressionError("Expression must be a non-empty string")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression too long")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression {source!r}: {exc.msg}") from exc
    checker = _Checker()
    checker.visit(tree)
    return Expression(source, tree, frozenset(checker.names))


def evaluate(source: str, context: Mapping[str, Any]) -> Any:
    return compile_expression(source).evaluate(context)


def evaluate_condition(source: str, context: Mapping[str, Any]) -> bool:
    return bool(evaluate(source, context))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

_TEMPLATE = re.compile(r"\$\{([^{}]+)\}")
_VARIABLE = re.compile(r"^\$([A-Za-z][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)$")


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings and lists."""

    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def resolve_template(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve ``$var`` and ``${expr}`` references inside ``value``."""

    if isinstance(value, str):
        whole = _TEMPLATE.fullmatch(value.strip())
        if whole:
            return evaluate(whole.group(1), context)
        variable = _VARIABLE.match(value)
        if variable:
            return lookup_path(context, variable.group(1))
        if "${" in value:
            return _TEMPLATE.sub(lambda m: _stringify(evaluate(m.group(1), context)), value)
        return value
    if isinstance(value, dict):
        return {key: resolve_template(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_template(item, context) for item in value]
    return value


def template_expressions(value: Any) -> list[str]:
    """Every ``${expr}`` source embedded in ``value`` (for validation)."""

    found: list[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in _TEMPLATE.finditer(value))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(template_expressions(item))
    elif isinstance(value, list):
        for item in value:
            found.extend(template_expressions(item))
    return found
