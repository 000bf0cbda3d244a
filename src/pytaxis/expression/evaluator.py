"""Pure evaluation of condition ASTs and interpolation templates."""

from __future__ import annotations

from typing import Any

from pytaxis.errors import ExpressionTypeError
from pytaxis.expression.ast import BinaryOp, Expr, Literal, UnaryOp, VarRef
from pytaxis.expression.parser import REFERENCE_PATTERN, parse, parse_reference
from pytaxis.expression.scope import VariableContext


def evaluate(expr: Expr | str, scope: VariableContext) -> Any:
    """Evaluate an expression against a scope.

    Args:
        expr: Parsed AST, or source text which is parsed first
        scope: Variables visible to the expression

    Returns:
        The resulting scalar value

    Raises:
        ExpressionSyntaxError: If `expr` is text that does not parse
        UnresolvedReferenceError: If a reference is not bound in `scope`
        ExpressionTypeError: If operand types do not fit the operator
    """
    if isinstance(expr, str):
        expr = parse(expr)
    return _eval(expr, scope)


def evaluate_condition(expr: Expr | str, scope: VariableContext) -> bool:
    """Evaluate a `when` gate. The result must be a boolean.

    Raises:
        ExpressionTypeError: If the result is not a boolean
    """
    value = evaluate(expr, scope)
    if not isinstance(value, bool):
        raise ExpressionTypeError(
            f"condition must evaluate to a boolean, got {_type_name(value)} {value!r}"
        )
    return value


def interpolate(template: Any, scope: VariableContext) -> Any:
    """Substitute ``{{ reference }}`` occurrences in a template.

    A template made of exactly one reference yields the referenced value
    itself, preserving its type. Otherwise each reference is rendered as
    text. Non-string templates are returned unchanged.
    """
    if not isinstance(template, str):
        return template

    # Match inside the surrounding whitespace so positions stay relative to `template`
    start = len(template) - len(template.lstrip())
    whole = REFERENCE_PATTERN.fullmatch(template, start, len(template.rstrip()))
    if whole is not None:
        return scope.lookup(parse_reference(whole.group(1), template, whole.start()))

    def substitute(match) -> str:
        path = parse_reference(match.group(1), template, match.start())
        return _to_text(scope.lookup(path))

    return REFERENCE_PATTERN.sub(substitute, template)


def _eval(node: Expr, scope: VariableContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, VarRef):
        return scope.lookup(node.path)
    if isinstance(node, UnaryOp):
        operand = _eval(node.operand, scope)
        _require_bool(node.op, operand)
        return not operand
    if isinstance(node, BinaryOp):
        return _eval_binary(node, scope)
    raise ExpressionTypeError(f"unknown expression node {node!r}")


def _eval_binary(node: BinaryOp, scope: VariableContext) -> Any:
    op = node.op

    # Logical operators short-circuit
    if op in ("&&", "||"):
        left = _eval(node.left, scope)
        _require_bool(op, left)
        if op == "&&" and not left:
            return False
        if op == "||" and left:
            return True
        right = _eval(node.right, scope)
        _require_bool(op, right)
        return right

    left = _eval(node.left, scope)
    right = _eval(node.right, scope)

    if op == "==":
        return _equals(left, right)
    if op == "!=":
        return not _equals(left, right)

    _require_ordered(op, left, right)
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    raise ExpressionTypeError(f"unknown operator {op!r}")


def _category(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None:
        return "null"
    return type(value).__name__


def _equals(left: Any, right: Any) -> bool:
    if _category(left) != _category(right):
        return False
    return left == right


def _require_bool(op: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ExpressionTypeError(
            f"operator '{op}' requires boolean operands, got {_type_name(value)} {value!r}"
        )


def _require_ordered(op: str, left: Any, right: Any) -> None:
    lc, rc = _category(left), _category(right)
    if lc != rc or lc not in ("number", "string"):
        raise ExpressionTypeError(
            f"operator '{op}' cannot compare {_type_name(left)} with {_type_name(right)}"
        )


def _type_name(value: Any) -> str:
    return _category(value)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)
