"""Expression evaluation for `when` gates and ``{{ }}`` interpolation.

Conditions are parsed into a small tagged AST (Literal, VarRef, UnaryOp,
BinaryOp) and evaluated against an explicit, immutable VariableContext.
Evaluation is pure: no I/O and no shared state.
"""

from pytaxis.expression.ast import BinaryOp, Expr, Literal, UnaryOp, VarRef, var_refs
from pytaxis.expression.evaluator import evaluate, evaluate_condition, interpolate
from pytaxis.expression.parser import parse, references, template_references
from pytaxis.expression.scope import OutputRef, ParamRef, VariableContext, parse_path

__all__ = [
    "Expr",
    "Literal",
    "VarRef",
    "UnaryOp",
    "BinaryOp",
    "var_refs",
    "parse",
    "template_references",
    "references",
    "evaluate",
    "evaluate_condition",
    "interpolate",
    "VariableContext",
    "OutputRef",
    "ParamRef",
    "parse_path",
]
