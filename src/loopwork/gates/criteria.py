"""
Gate criteria expressions.

A small boolean language evaluated against a run's deliverables and memory:

    championStrength > 30
    coverage.lines >= 80 and not blockers
    (status == "approved" or override) and risk <= 2

Grammar (lowest to highest precedence)::

    expr       := and_expr (("or" | "||") and_expr)*
    and_expr   := not_expr (("and" | "&&") not_expr)*
    not_expr   := ("not" | "!") not_expr | comparison
    comparison := operand (("==" | "!=" | ">=" | "<=" | ">" | "<") operand)?
    operand    := NUMBER | STRING | true | false | null | NAME | "(" expr ")"

NAME is a dotted field path. A reference that cannot be resolved makes the
whole expression FAIL with a reason; evaluation never raises.
"""

import operator
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import ParseError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>==|!=|>=|<=|&&|\|\||[<>!()])
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)
    )
    """,
    re.VERBOSE,
)

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_KEYWORDS = {"and", "or", "not", "true", "false", "null", "none"}

_ESCAPE_RE = re.compile(r"\\(.)")
_ESCAPES = {"\\": "\\", '"': '"', "'": "'", "n": "\n", "t": "\t"}


def _unescape(match: re.Match) -> str:
    # unknown escapes such as "C:\xyz" are kept verbatim
    return _ESCAPES.get(match.group(1), match.group(0))


Resolver = Callable[[str], Any]


class _Unresolved(Exception):
    def __init__(self, name: str):
        self.name = name


@dataclass(frozen=True)
class CriteriaResult:
    passed: bool
    reason: str | None = None
    references: tuple[str, ...] = ()


# ── AST ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Literal:
    value: Any

    def eval(self, resolve: Resolver) -> Any:
        return self.value


@dataclass(frozen=True)
class _Ref:
    name: str

    def eval(self, resolve: Resolver) -> Any:
        try:
            return resolve(self.name)
        except LookupError:
            raise _Unresolved(self.name) from None


@dataclass(frozen=True)
class _Not:
    operand: Any

    def eval(self, resolve: Resolver) -> bool:
        return not bool(self.operand.eval(resolve))


@dataclass(frozen=True)
class _Bool:
    op: str
    operands: tuple[Any, ...]

    def eval(self, resolve: Resolver) -> bool:
        if self.op == "and":
            return all(bool(o.eval(resolve)) for o in self.operands)
        return any(bool(o.eval(resolve)) for o in self.operands)


@dataclass(frozen=True)
class _Compare:
    op: str
    left: Any
    right: Any

    def eval(self, resolve: Resolver) -> bool:
        left, right = _coerce(self.left.eval(resolve), self.right.eval(resolve))
        return _COMPARATORS[self.op](left, right)


def _coerce(left: Any, right: Any) -> tuple[Any, Any]:
    """Make numeric strings comparable with numbers."""
    numeric = (int, float)
    if isinstance(left, numeric) and not isinstance(left, bool) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(right, numeric) and not isinstance(right, bool) and isinstance(left, str):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


# ── Parser ────────────────────────────────────────────────────────────────


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ParseError(f"unexpected character at {pos}: {text[pos:pos + 10]!r}")
        kind = match.lastgroup or ""
        value = match.group(kind)
        if kind == "name" and value.lower() in _KEYWORDS:
            kind = "keyword"
            value = value.lower()
        tokens.append((kind, value))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]):
        self.tokens = tokens
        self.pos = 0
        self.names: list[str] = []

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *values: str) -> str | None:
        tok = self.peek()
        if tok and tok[0] in ("op", "keyword") and tok[1] in values:
            self.pos += 1
            return tok[1]
        return None

    def parse(self) -> Any:
        node = self.parse_or()
        if self.peek() is not None:
            raise ParseError(f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Any:
        operands = [self.parse_and()]
        while self.accept("or", "||"):
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else _Bool("or", tuple(operands))

    def parse_and(self) -> Any:
        operands = [self.parse_not()]
        while self.accept("and", "&&"):
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else _Bool("and", tuple(operands))

    def parse_not(self) -> Any:
        if self.accept("not", "!"):
            return _Not(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self.parse_operand()
        op = self.accept(*_COMPARATORS)
        if op is None:
            return left
        return _Compare(op, left, self.parse_operand())

    def parse_operand(self) -> Any:
        tok = self.peek()
        if tok is None:
            raise ParseError("unexpected end of expression")
        kind, value = tok
        self.pos += 1
        match kind:
            case "number":
                return _Literal(float(value) if "." in value else int(value))
            case "string":
                return _Literal(_ESCAPE_RE.sub(_unescape, value[1:-1]))
            case "keyword" if value in ("true", "false"):
                return _Literal(value == "true")
            case "keyword" if value in ("null", "none"):
                return _Literal(None)
            case "name":
                self.names.append(value)
                return _Ref(value)
            case "op" if value == "(":
                node = self.parse_or()
                if not self.accept(")"):
                    raise ParseError("missing closing parenthesis")
                return node
        raise ParseError(f"unexpected token {value!r}")


@dataclass(frozen=True)
class Criteria:
    """A compiled criteria expression."""

    source: str
    _root: Any = field(repr=False, compare=False)
    references: tuple[str, ...] = ()

    def evaluate(self, resolve: Resolver) -> CriteriaResult:
        """Evaluate against a resolver.

        Args:
            resolve: Callable mapping a dotted name to its value; must raise
                LookupError (KeyError) for unknown names.
        """
        try:
            passed = bool(self._root.eval(resolve))
        except _Unresolved as e:
            return CriteriaResult(False, f"unresolved reference '{e.name}'", self.references)
        except TypeError as e:
            return CriteriaResult(False, f"type error: {e}", self.references)
        reason = None if passed else f"criteria not met: {self.source}"
        return CriteriaResult(passed, reason, self.references)


def parse_criteria(expression: str) -> Criteria:
    """Compile a criteria expression.

    Raises:
        ParseError: If the expression is empty or malformed.
    """
    if not expression or not expression.strip():
        raise ParseError("empty criteria expression")
    try:
        parser = _Parser(_tokenize(expression))
        root = parser.parse()
    except ParseError as e:
        raise ParseError(f"invalid criteria {expression!r}: {e.message}") from e
    return Criteria(
        source=expression.strip(),
        _root=root,
        references=tuple(dict.fromkeys(parser.names)),
    )
