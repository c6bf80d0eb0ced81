"""Closed expression grammar for invariants and guards.

Invariants and guards are not arbitrary code: they are small boolean
expressions over the run's captured variables, evaluated by a dedicated
interpreter.  Evaluation is total and side-effect free.

Grammar::

    expr     := or_expr
    or_expr  := and_expr (("||" | "or") and_expr)*
    and_expr := not_expr (("&&" | "and") not_expr)*
    not_expr := ("!" | "not") not_expr | compare
    compare  := atom (("==" | "!=" | "<" | "<=" | ">" | ">=") atom)?
    atom     := NUMBER | STRING | "true" | "false" | "null"
              | NAME ("." NAME)* | "(" expr ")"

Totality rules:

* an unknown variable (or missing dotted segment) evaluates to ``null``;
* an ordering comparison between incomparable values is ``false``;
* the truth value of any expression is Python truthiness of its value.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from playbook.exceptions import ExpressionSyntaxError

__all__ = [
    "FALSE",
    "TRUE",
    "And",
    "Compare",
    "Expression",
    "Literal",
    "Not",
    "Or",
    "Variable",
    "evaluate",
    "negate",
    "parse_expression",
    "referenced_variables",
    "render",
    "value_of",
]


# ---------------------------------------------------------------------------
# AST nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Variable:
    path: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Not:
    operand: Expression


@dataclass(frozen=True, slots=True)
class And:
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class Or:
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: Expression
    right: Expression


Expression = Literal | Variable | Not | And | Or | Compare

TRUE = Literal(True)
FALSE = Literal(False)

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<number>-?\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>==|!=|<=|>=|&&|\|\||[<>!()])
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)
_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        if source[pos].isspace():
            pos += 1
            continue
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise ExpressionSyntaxError(
                source, pos, f"unexpected character {source[pos]!r}"
            )
        kind = m.lastgroup or ""
        text = m.group(kind)
        if kind == "name" and text in ("and", "or", "not"):
            kind = "op"
        tokens.append(_Token(kind, text, pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------------
# Recursive-descent parser
# ---------------------------------------------------------------------------


class _Parser:
    __slots__ = ("_index", "_source", "_tokens")

    def __init__(self, source: str) -> None:
        self._source = source
        self._tokens = _tokenize(source)
        self._index = 0

    def parse(self) -> Expression:
        if not self._tokens:
            raise ExpressionSyntaxError(self._source, 0, "empty expression")
        expr = self._or()
        if self._index < len(self._tokens):
            tok = self._tokens[self._index]
            raise ExpressionSyntaxError(
                self._source, tok.pos, f"unexpected token {tok.text!r}"
            )
        return expr

    def _peek(self) -> _Token | None:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _accept(self, *texts: str) -> _Token | None:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in texts:
            self._index += 1
            return tok
        return None

    def _or(self) -> Expression:
        left = self._and()
        while self._accept("||", "or"):
            left = Or(left, self._and())
        return left

    def _and(self) -> Expression:
        left = self._not()
        while self._accept("&&", "and"):
            left = And(left, self._not())
        return left

    def _not(self) -> Expression:
        if self._accept("!", "not"):
            return Not(self._not())
        return self._compare()

    def _compare(self) -> Expression:
        left = self._atom()
        tok = self._accept(*_COMPARATORS)
        if tok is not None:
            return Compare(tok.text, left, self._atom())
        return left

    def _atom(self) -> Expression:
        tok = self._peek()
        if tok is None:
            raise ExpressionSyntaxError(
                self._source, len(self._source), "unexpected end of expression"
            )
        self._index += 1
        if tok.kind == "number":
            value = float(tok.text) if "." in tok.text else int(tok.text)
            return Literal(value)
        if tok.kind == "string":
            return Literal(_ESCAPE_RE.sub(r"\1", tok.text[1:-1]))
        if tok.kind == "name":
            if tok.text in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[tok.text])
            return Variable(tuple(tok.text.split(".")))
        if tok.text == "(":
            inner = self._or()
            if not self._accept(")"):
                raise ExpressionSyntaxError(
                    self._source, tok.pos, "unbalanced parenthesis"
                )
            return inner
        raise ExpressionSyntaxError(
            self._source, tok.pos, f"unexpected token {tok.text!r}"
        )


def parse_expression(source: str) -> Expression:
    """Parse *source* into an immutable expression tree.

    Raises
    ------
    ExpressionSyntaxError
        If *source* is not a well-formed expression.
    """
    return _Parser(source).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _lookup(path: tuple[str, ...], env: Mapping[str, Any]) -> Any:
    value: Any = env
    for segment in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(segment)
    return value


def value_of(expr: Expression, env: Mapping[str, Any]) -> Any:
    """Return the raw value of *expr* under *env* (never raises)."""
    match expr:
        case Literal(value=value):
            return value
        case Variable(path=path):
            return _lookup(path, env)
        case Not(operand=operand):
            return not value_of(operand, env)
        case And(left=left, right=right):
            return bool(value_of(left, env)) and bool(value_of(right, env))
        case Or(left=left, right=right):
            return bool(value_of(left, env)) or bool(value_of(right, env))
        case Compare(op=op, left=left, right=right):
            try:
                return bool(_COMPARATORS[op](value_of(left, env), value_of(right, env)))
            except TypeError:
                return False
    raise TypeError(f"not an expression node: {expr!r}")


def evaluate(expr: Expression | None, env: Mapping[str, Any]) -> bool:
    """Return the truth value of *expr* under *env*.

    An absent expression (``None``) imposes no constraint and is ``True``.
    """
    if expr is None:
        return True
    return bool(value_of(expr, env))


def negate(expr: Expression) -> Expression:
    """Return the logical negation of *expr* as a new expression."""
    if isinstance(expr, Not):
        return expr.operand
    return Not(expr)


def referenced_variables(expr: Expression | None) -> frozenset[str]:
    """Return the top-level variable names *expr* reads."""
    match expr:
        case None | Literal():
            return frozenset()
        case Variable(path=path):
            return frozenset({path[0]})
        case Not(operand=operand):
            return referenced_variables(operand)
        case And(left=left, right=right) | Or(left=left, right=right):
            return referenced_variables(left) | referenced_variables(right)
        case Compare(left=left, right=right):
            return referenced_variables(left) | referenced_variables(right)
    return frozenset()


def _render_literal(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return str(value)


def _render_operand(expr: Expression) -> str:
    if isinstance(expr, Compare):
        return f"({render(expr)})"
    return render(expr)


def render(expr: Expression) -> str:
    """Render *expr* back into grammar text that parses to an equal tree."""
    match expr:
        case Literal(value=value):
            return _render_literal(value)
        case Variable(path=path):
            return ".".join(path)
        case Not(operand=operand):
            return f"!({render(operand)})"
        case And(left=left, right=right):
            return f"({render(left)} && {render(right)})"
        case Or(left=left, right=right):
            return f"({render(left)} || {render(right)})"
        case Compare(op=op, left=left, right=right):
            return f"{_render_operand(left)} {op} {_render_operand(right)}"
    raise TypeError(f"not an expression node: {expr!r}")
