"""Tagged AST for `when` conditions.

Conditions are parsed once into these nodes and evaluated against an
explicit VariableContext. No string evaluation is ever performed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Literal:
    """Constant string, number, boolean or null."""

    value: Any


@dataclass(frozen=True)
class VarRef:
    """A ``{{ path }}`` reference, e.g. ``env`` or ``tasks.build.outputs.image``."""

    path: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Expr


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Expr
    right: Expr


Expr = Union[Literal, VarRef, UnaryOp, BinaryOp]


def walk(node: Expr):
    """Yield every node of the tree, depth first."""
    yield node
    if isinstance(node, UnaryOp):
        yield from walk(node.operand)
    elif isinstance(node, BinaryOp):
        yield from walk(node.left)
        yield from walk(node.right)


def var_refs(node: Expr) -> set[str]:
    """Paths of all references in the tree."""
    return {n.path for n in walk(node) if isinstance(n, VarRef)}
