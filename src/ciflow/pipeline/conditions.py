"""Boolean gate expressions over the run input map.

Conditions are written as short strings on stages and steps::

    run_lint == true && (target != 'staging' || !skip_deploy)

They are parsed once into an immutable expression tree and evaluated by the
pure :func:`evaluate` function. ``&&``/``||`` (or ``and``/``or``) short-circuit
left to right, ``!``/``not`` negates, ``==``/``!=`` compare values.

Inputs are either booleans or strings. Flag strings such as ``"true"`` or
``"0"`` are normalized when compared against a boolean, so a pipeline invoked
with ``--input run_lint=false`` gates the same way as one given ``False``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from ciflow.exceptions import ConditionSyntaxError, UnresolvedInputError

InputValue = Union[bool, str]

TRUE_FLAGS = frozenset({"true", "1", "yes", "on"})
FALSE_FLAGS = frozenset({"false", "0", "no", "off", ""})


# ============================================================================
# Expression tree
# ============================================================================


@dataclass(frozen=True)
class Literal:
    """A constant boolean or string."""

    value: InputValue


@dataclass(frozen=True)
class Ref:
    """A reference to a named input."""

    name: str


@dataclass(frozen=True)
class Not:
    operand: ConditionExpression


@dataclass(frozen=True)
class And:
    left: ConditionExpression
    right: ConditionExpression


@dataclass(frozen=True)
class Or:
    left: ConditionExpression
    right: ConditionExpression


@dataclass(frozen=True)
class Eq:
    left: ConditionExpression
    right: ConditionExpression


@dataclass(frozen=True)
class Ne:
    left: ConditionExpression
    right: ConditionExpression


ConditionExpression = Union[Literal, Ref, Not, And, Or, Eq, Ne]


# ============================================================================
# Tokenizer
# ============================================================================

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<op>&&|\|\||==|!=|!|\(|\))
    | (?P<string>'[^']*'|"[^"]*")
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ConditionSyntaxError(
                f"Unexpected character {text[pos]!r}", expression=text, position=pos
            )
        kind = match.lastgroup or ""
        value = match.group()
        if kind == "ident" and value.lower() in _KEYWORD_OPS:
            tokens.append(_Token("op", _KEYWORD_OPS[value.lower()], pos))
        elif kind != "ws":
            tokens.append(_Token(kind, value, pos))
        pos = match.end()
    return tokens


# ============================================================================
# Parser
# ============================================================================


class _Parser:
    """Recursive-descent parser, lowest precedence first: || then && then !."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def parse(self) -> ConditionExpression:
        if not self.tokens:
            raise ConditionSyntaxError("Empty expression", expression=self.text)
        expr = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionSyntaxError(
                f"Unexpected token {token.text!r}",
                expression=self.text,
                position=token.pos,
            )
        return expr

    def _peek(self) -> _Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _accept(self, op: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "op" and token.text == op:
            self.index += 1
            return True
        return False

    def _or(self) -> ConditionExpression:
        expr = self._and()
        while self._accept("||"):
            expr = Or(expr, self._and())
        return expr

    def _and(self) -> ConditionExpression:
        expr = self._not()
        while self._accept("&&"):
            expr = And(expr, self._not())
        return expr

    def _not(self) -> ConditionExpression:
        if self._accept("!"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> ConditionExpression:
        left = self._primary()
        if self._accept("=="):
            return Eq(left, self._primary())
        if self._accept("!="):
            return Ne(left, self._primary())
        return left

    def _primary(self) -> ConditionExpression:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(
                "Unexpected end of expression",
                expression=self.text,
                position=len(self.text),
            )
        self.index += 1

        if token.kind == "op" and token.text == "(":
            expr = self._or()
            if not self._accept(")"):
                raise ConditionSyntaxError(
                    "Missing closing parenthesis",
                    expression=self.text,
                    position=token.pos,
                )
            return expr
        if token.kind == "string":
            return Literal(token.text[1:-1])
        if token.kind == "number":
            return Literal(token.text)
        if token.kind == "ident":
            lowered = token.text.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            return Ref(token.text)

        raise ConditionSyntaxError(
            f"Unexpected token {token.text!r}",
            expression=self.text,
            position=token.pos,
        )


@lru_cache(maxsize=512)
def parse_condition(text: str) -> ConditionExpression:
    """Parse a condition string into an expression tree.

    Args:
        text: Condition source, e.g. ``"run_lint == true"``.

    Returns:
        Immutable expression tree.

    Raises:
        ConditionSyntaxError: If the expression is malformed.
    """
    return _Parser(text).parse()


# ============================================================================
# Evaluation
# ============================================================================


def _truthy(value: InputValue) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in TRUE_FLAGS


def _as_flag(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in TRUE_FLAGS:
        return True
    if lowered in FALSE_FLAGS:
        return False
    return None


def _equals(left: InputValue, right: InputValue) -> bool:
    if isinstance(left, bool) and isinstance(right, bool):
        return left == right
    if isinstance(left, bool):
        return _as_flag(right) is left
    if isinstance(right, bool):
        return _as_flag(left) is right
    return left == right


def _value(expr: ConditionExpression, inputs: Mapping[str, InputValue]) -> InputValue:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Ref):
        if expr.name not in inputs:
            raise UnresolvedInputError(expr.name)
        return inputs[expr.name]
    return _evaluate(expr, inputs)


def _evaluate(expr: ConditionExpression, inputs: Mapping[str, InputValue]) -> bool:
    if isinstance(expr, And):
        return _evaluate(expr.left, inputs) and _evaluate(expr.right, inputs)
    if isinstance(expr, Or):
        return _evaluate(expr.left, inputs) or _evaluate(expr.right, inputs)
    if isinstance(expr, Not):
        return not _evaluate(expr.operand, inputs)
    if isinstance(expr, Eq):
        return _equals(_value(expr.left, inputs), _value(expr.right, inputs))
    if isinstance(expr, Ne):
        return not _equals(_value(expr.left, inputs), _value(expr.right, inputs))
    return _truthy(_value(expr, inputs))


def evaluate(
    expr: ConditionExpression | str,
    inputs: Mapping[str, InputValue],
) -> bool:
    """Evaluate a condition against the resolved input map.

    Args:
        expr: Parsed expression or condition source string.
        inputs: Resolved run inputs.

    Returns:
        The boolean outcome.

    Raises:
        UnresolvedInputError: If a referenced input is missing from ``inputs``.
        ConditionSyntaxError: If ``expr`` is a malformed string.
    """
    if isinstance(expr, str):
        expr = parse_condition(expr)
    return _evaluate(expr, inputs)


def references(expr: ConditionExpression | str) -> list[str]:
    """List the input names an expression references, in first-seen order."""
    if isinstance(expr, str):
        expr = parse_condition(expr)

    names: list[str] = []
    stack: list[ConditionExpression] = [expr]
    while stack:
        node = stack.pop()
        if isinstance(node, Ref):
            if node.name not in names:
                names.append(node.name)
        elif isinstance(node, Not):
            stack.append(node.operand)
        elif isinstance(node, (And, Or, Eq, Ne)):
            stack.append(node.right)
            stack.append(node.left)
    return names
