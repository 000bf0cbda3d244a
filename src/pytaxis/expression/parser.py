"""Recursive descent parser for condition expressions.

Grammar (lowest to highest precedence)::

    expr       := or_expr
    or_expr    := and_expr ( "||" and_expr )*
    and_expr   := comparison ( "&&" comparison )*
    comparison := unary ( ( "==" | "!=" | ">" | "<" | ">=" | "<=" ) unary )?
    unary      := "!" unary | primary
    primary    := STRING | NUMBER | "true" | "false" | "null"
                | "{{" path "}}" | "(" expr ")"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from pytaxis.errors import ExpressionSyntaxError
from pytaxis.expression.ast import BinaryOp, Expr, Literal, UnaryOp, VarRef, var_refs

REFERENCE_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*(\.[A-Za-z_][A-Za-z0-9_\-]*)*$")

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<ref>\{\{[^{}]*\}\})
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|>=|<=|&&|\|\||>|<|!|\(|\))
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = frozenset({"==", "!=", ">", "<", ">=", "<="})
_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_PATTERN.match(source, pos)
        if match is None:
            raise ExpressionSyntaxError(f"unexpected character {source[pos]!r}", source, pos)
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


def parse_reference(text: str, source: str = "", position: int = 0) -> str:
    """Validate the path inside ``{{ ... }}`` and return it stripped."""
    path = text.strip()
    if not _PATH_PATTERN.match(path):
        raise ExpressionSyntaxError(f"invalid reference {{{{{text}}}}}", source, position)
    return path


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def fail(self, message: str) -> ExpressionSyntaxError:
        token = self.peek()
        position = token.position if token else len(self.source)
        return ExpressionSyntaxError(message, self.source, position)

    def accept(self, text: str) -> bool:
        token = self.peek()
        if token is not None and token.kind == "op" and token.text == text:
            self.index += 1
            return True
        return False

    def parse(self) -> Expr:
        if not self.tokens:
            raise self.fail("empty expression")
        node = self.or_expr()
        if self.peek() is not None:
            raise self.fail(f"unexpected token {self.peek().text!r}")
        return node

    def or_expr(self) -> Expr:
        node = self.and_expr()
        while self.accept("||"):
            node = BinaryOp("||", node, self.and_expr())
        return node

    def and_expr(self) -> Expr:
        node = self.comparison()
        while self.accept("&&"):
            node = BinaryOp("&&", node, self.comparison())
        return node

    def comparison(self) -> Expr:
        node = self.unary()
        token = self.peek()
        if token is not None and token.kind == "op" and token.text in _COMPARISON_OPS:
            self.advance()
            node = BinaryOp(token.text, node, self.unary())
        return node

    def unary(self) -> Expr:
        if self.accept("!"):
            return UnaryOp("!", self.unary())
        return self.primary()

    def primary(self) -> Expr:
        token = self.peek()
        if token is None:
            raise self.fail("unexpected end of expression")

        if token.kind == "op" and token.text == "(":
            self.advance()
            node = self.or_expr()
            if not self.accept(")"):
                raise self.fail("expected ')'")
            return node

        self.advance()
        if token.kind == "ref":
            return VarRef(parse_reference(token.text[2:-2], self.source, token.position))
        if token.kind == "string":
            return Literal(_unquote(token.text))
        if token.kind == "number":
            text = token.text
            return Literal(float(text) if "." in text else int(text))
        if token.kind == "ident" and token.text in _KEYWORDS:
            return Literal(_KEYWORDS[token.text])

        self.index -= 1
        raise self.fail(f"unexpected token {token.text!r}")


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@lru_cache(maxsize=1024)
def parse(source: str) -> Expr:
    """Parse a condition expression into an AST.

    Results are cached: definitions are reused across many runs and
    the same `when` strings are evaluated repeatedly.

    Raises:
        ExpressionSyntaxError: If the text is not a valid expression
    """
    return _Parser(source).parse()


def template_references(template: str) -> set[str]:
    """Reference paths used in an interpolation template.

    Raises:
        ExpressionSyntaxError: If a reference path is malformed
    """
    refs = set()
    for match in REFERENCE_PATTERN.finditer(template):
        refs.add(parse_reference(match.group(1), template, match.start()))
    return refs


def references(source: Expr | str) -> set[str]:
    """Reference paths used by a parsed condition or a template string.

    Condition text and templates share the ``{{ path }}`` syntax, so a
    string is scanned without being parsed.
    """
    if isinstance(source, str):
        return template_references(source)
    return var_refs(source)
