"""
Condition expression language for PolicyGate rules.

Conditions are a closed boolean language over a flat variable namespace.
There are no function calls, loops or assignments, so every condition
parses into a finite tree and evaluation always terminates.

Grammar (lowest precedence first):
    or_expr     := and_expr ("||" and_expr)*
    and_expr    := unary ("&&" unary)*
    unary       := "!" unary | comparison
    comparison  := primary (cmp_op primary | ("in" | "not in") (array | path))?
    primary     := literal | path | "(" or_expr ")"
    array       := "[" (literal ("," literal)*)? "]"
    literal     := string | number | true | false | null
    cmp_op      := "==" | "!=" | "<" | "<=" | ">" | ">="

Examples:
    payload.amount > 10000
    task.action == "read" && agent.role == "guest"
    !(context.userRole in ["admin", "owner"])
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from policygate.errors import (
    ERROR_CONDITION_TOO_DEEP,
    ERROR_CONDITION_TOO_LONG,
    ConditionParseError,
    TypeMismatchError,
    UnknownVariableError,
)

DEFAULT_MAX_DEPTH = 32
DEFAULT_MAX_LENGTH = 4096

COMPARISON_OPERATORS = ("==", "!=", "<", "<=", ">", ">=")

# Operator seen from the other side, for normalizing `literal op path`
MIRRORED_OPERATORS = {"==": "==", "!=": "!=", "<": ">", "<=": ">=", ">": "<", ">=": "<="}


# =============================================================================
# Tokens
# =============================================================================


@dataclass(frozen=True)
class Token:
    """A lexical token with its source offset."""

    kind: str
    value: Any
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<op>&&|\|\||==|!=|<=|>=|<|>|!)
  | (?P<punct>[()\[\],])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}

_KEYWORDS = {"true": True, "false": False, "null": None}


def _unescape(body: str) -> str:
    out = []
    chars = iter(body)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def tokenize(text: str) -> list[Token]:
    """Split a condition into tokens, ending with an EOF token."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ConditionParseError(
                condition=text,
                position=pos,
                detail=f"unexpected character {text[pos]!r}",
            )
        kind = match.lastgroup
        raw = match.group()
        if kind == "string":
            tokens.append(Token("literal", _unescape(raw[1:-1]), pos))
        elif kind == "number":
            try:
                value: Any = float(raw) if any(c in raw for c in ".eE") else int(raw)
            except ValueError as e:
                # int() refuses literals past sys.get_int_max_str_digits()
                raise ConditionParseError(
                    condition=text,
                    position=pos,
                    detail=f"numeric literal too long ({len(raw)} digits)",
                ) from e
            tokens.append(Token("literal", value, pos))
        elif kind in ("op", "punct"):
            tokens.append(Token(raw, raw, pos))
        elif kind == "name":
            if raw in _KEYWORDS:
                tokens.append(Token("literal", _KEYWORDS[raw], pos))
            elif raw == "in":
                tokens.append(Token("in", raw, pos))
            elif raw == "not":
                tokens.append(Token("not", raw, pos))
            else:
                tokens.append(Token("path", raw, pos))
        pos = match.end()
    tokens.append(Token("eof", None, len(text)))
    return tokens


# =============================================================================
# Syntax Tree
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Var:
    path: str


@dataclass(frozen=True)
class ArrayLiteral:
    items: tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "&&" | "||"
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Membership:
    left: "Node"
    right: "ArrayLiteral | Var"
    negated: bool = False


Node = Literal | Var | ArrayLiteral | Not | BoolOp | Compare | Membership


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser with a nesting budget."""

    def __init__(self, text: str, max_depth: int) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.depth = 0
        self.max_depth = max_depth

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _error(self, detail: str, token: Token | None = None) -> ConditionParseError:
        token = token or self.current
        return ConditionParseError(condition=self.text, position=token.pos, detail=detail)

    def _expect(self, kind: str) -> Token:
        if self.current.kind != kind:
            found = "end of input" if self.current.kind == "eof" else repr(self.current.value)
            raise self._error(f"expected '{kind}', found {found}")
        return self._advance()

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise ConditionParseError(
                condition=self.text,
                position=self.current.pos,
                detail=f"nesting deeper than {self.max_depth}",
                code=ERROR_CONDITION_TOO_DEEP,
            )

    def parse(self) -> Node:
        if self.current.kind == "eof":
            raise self._error("empty condition")
        node = self._parse_or()
        if self.current.kind != "eof":
            raise self._error(f"unexpected {self.current.value!r}")
        if isinstance(node, ArrayLiteral):
            raise self._error("an array is not a condition", self.tokens[0])
        return node

    def _parse_or(self) -> Node:
        operands = [self._parse_and()]
        while self.current.kind == "||":
            self._advance()
            operands.append(self._parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("||", tuple(operands))

    def _parse_and(self) -> Node:
        operands = [self._parse_unary()]
        while self.current.kind == "&&":
            self._advance()
            operands.append(self._parse_unary())
        return operands[0] if len(operands) == 1 else BoolOp("&&", tuple(operands))

    def _parse_unary(self) -> Node:
        if self.current.kind == "!":
            self._advance()
            self._enter()
            operand = self._parse_unary()
            self.depth -= 1
            return Not(operand)
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        left_token = self.current
        left = self._parse_primary()
        kind = self.current.kind

        if kind in COMPARISON_OPERATORS:
            if isinstance(left, ArrayLiteral):
                raise self._error("arrays may only follow 'in'", left_token)
            self._advance()
            right_token = self.current
            right = self._parse_primary()
            if isinstance(right, ArrayLiteral):
                raise self._error("arrays may only follow 'in'", right_token)
            if self.current.kind in COMPARISON_OPERATORS:
                raise self._error("comparisons cannot be chained")
            return Compare(kind, left, right)

        if kind in ("in", "not"):
            if isinstance(left, ArrayLiteral):
                raise self._error("arrays may only follow 'in'", left_token)
            negated = kind == "not"
            self._advance()
            if negated:
                self._expect("in")
            right_token = self.current
            right = self._parse_primary()
            if not isinstance(right, (ArrayLiteral, Var)):
                raise self._error("'in' requires an array or a variable", right_token)
            return Membership(left, right, negated)

        return left

    def _parse_primary(self) -> Node:
        token = self.current
        if token.kind == "literal":
            self._advance()
            return Literal(token.value)
        if token.kind == "path":
            self._advance()
            return Var(token.value)
        if token.kind == "(":
            self._advance()
            self._enter()
            node = self._parse_or()
            self.depth -= 1
            self._expect(")")
            return node
        if token.kind == "[":
            self._advance()
            items: list[Any] = []
            while self.current.kind != "]":
                if self.current.kind != "literal":
                    raise self._error("array items must be literals")
                items.append(self._advance().value)
                if self.current.kind == ",":
                    self._advance()
                elif self.current.kind != "]":
                    raise self._error("expected ',' or ']'")
            self._advance()
            return ArrayLiteral(tuple(items))
        if token.kind == "eof":
            raise self._error("unexpected end of input")
        raise self._error(f"unexpected {token.value!r}")


# =============================================================================
# Evaluation
# =============================================================================


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _same_value(left: Any, right: Any) -> bool:
    """Equality without coercion; values of different kinds are unequal."""
    if left is None or right is None:
        return left is None and right is None
    return _kind(left) == _kind(right) and left == right


class Expression:
    """
    A parsed, reusable condition.

    Usage:
        expr = compile_condition('payload.amount > 10000')
        expr.evaluate({"payload.amount": 50000})  # True
    """

    def __init__(self, text: str, root: Node) -> None:
        self.text = text
        self.root = root

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"

    @property
    def variables(self) -> frozenset[str]:
        """Every dotted path the condition reads."""
        found: set[str] = set()
        _collect_vars(self.root, found)
        return frozenset(found)

    def evaluate(self, namespace: Mapping[str, Any]) -> bool:
        """
        Evaluate against a flattened namespace.

        Raises:
            UnknownVariableError: A referenced path is absent
            TypeMismatchError: Operands have incompatible types
        """
        return self._truth(self.root, namespace)

    def _truth(self, node: Node, ns: Mapping[str, Any]) -> bool:
        if isinstance(node, BoolOp):
            if node.op == "&&":
                return all(self._truth(op, ns) for op in node.operands)
            return any(self._truth(op, ns) for op in node.operands)
        if isinstance(node, Not):
            return not self._truth(node.operand, ns)
        if isinstance(node, Compare):
            return self._compare(node.op, self._value(node.left, ns), self._value(node.right, ns))
        if isinstance(node, Membership):
            return self._member(node, ns)

        value = self._value(node, ns)
        if not isinstance(value, bool):
            raise TypeMismatchError(
                condition=self.text,
                operator="truth test",
                left_type=_kind(value),
                right_type="boolean",
            )
        return value

    def _value(self, node: Node, ns: Mapping[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Var):
            if node.path not in ns:
                raise UnknownVariableError(condition=self.text, variable=node.path)
            return ns[node.path]
        return self._truth(node, ns)

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        left_kind, right_kind = _kind(left), _kind(right)

        if op in ("==", "!="):
            if left is None or right is None:
                equal = left is None and right is None
            elif left_kind != right_kind:
                raise TypeMismatchError(
                    condition=self.text, operator=op, left_type=left_kind, right_type=right_kind
                )
            else:
                equal = left == right
            return equal if op == "==" else not equal

        if left_kind != right_kind or left_kind not in ("number", "string"):
            raise TypeMismatchError(
                condition=self.text, operator=op, left_type=left_kind, right_type=right_kind
            )
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right

    def _member(self, node: Membership, ns: Mapping[str, Any]) -> bool:
        needle = self._value(node.left, ns)
        if isinstance(node.right, ArrayLiteral):
            haystack: Any = node.right.items
        else:
            haystack = self._value(node.right, ns)
            if not isinstance(haystack, (list, tuple)):
                raise TypeMismatchError(
                    condition=self.text,
                    operator="in",
                    left_type=_kind(needle),
                    right_type=_kind(haystack),
                )
        found = any(_same_value(needle, item) for item in haystack)
        return not found if node.negated else found


def _collect_vars(node: Node, found: set[str]) -> None:
    if isinstance(node, Var):
        found.add(node.path)
    elif isinstance(node, Not):
        _collect_vars(node.operand, found)
    elif isinstance(node, BoolOp):
        for operand in node.operands:
            _collect_vars(operand, found)
    elif isinstance(node, (Compare, Membership)):
        _collect_vars(node.left, found)
        _collect_vars(node.right, found)


# =============================================================================
# Canonical Form
# =============================================================================


def render(node: Node) -> str:
    """
    Render a node in canonical form.

    Operands of && and || are sorted and `literal op path` is flipped to
    `path op' literal`, so commutated conditions render identically.
    """
    if isinstance(node, Literal):
        return json.dumps(node.value)
    if isinstance(node, Var):
        return node.path
    if isinstance(node, ArrayLiteral):
        return "[" + ", ".join(json.dumps(item) for item in node.items) + "]"
    if isinstance(node, Not):
        return f"!({render(node.operand)})"
    if isinstance(node, BoolOp):
        parts = sorted({render(op) for op in node.operands})
        if len(parts) == 1:
            return parts[0]
        return "(" + f" {node.op} ".join(parts) + ")"
    if isinstance(node, Compare):
        left, right, op = node.left, node.right, node.op
        if isinstance(left, Literal) and not isinstance(right, Literal):
            left, right, op = right, left, MIRRORED_OPERATORS[op]
        if op in ("==", "!=") and isinstance(left, Var) and isinstance(right, Var):
            left, right = sorted((left, right), key=lambda v: v.path)
        return f"{render(left)} {op} {render(right)}"
    keyword = "not in" if node.negated else "in"
    right = node.right
    if isinstance(right, ArrayLiteral):
        right = ArrayLiteral(tuple(sorted(right.items, key=json.dumps)))
    return f"{render(node.left)} {keyword} {render(right)}"


def conjuncts(node: Node) -> tuple[Node, ...]:
    """Top-level && operands, flattened through nested && groups."""
    if isinstance(node, BoolOp) and node.op == "&&":
        out: list[Node] = []
        for operand in node.operands:
            out.extend(conjuncts(operand))
        return tuple(out)
    return (node,)


# =============================================================================
# Public API
# =============================================================================


@lru_cache(maxsize=2048)
def _compile_cached(text: str, max_depth: int) -> Expression:
    return Expression(text, _Parser(text, max_depth).parse())


def compile_condition(
    text: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> Expression:
    """
    Parse a condition string.

    Raises:
        ConditionParseError: If the text is not valid condition syntax
    """
    if len(text) > max_length:
        raise ConditionParseError(
            condition=text[:80],
            detail=f"condition longer than {max_length} characters",
            code=ERROR_CONDITION_TOO_LONG,
        )
    return _compile_cached(text, max_depth)


def evaluate_condition(text: str, namespace: Mapping[str, Any], **limits: int) -> bool:
    """Parse (cached) and evaluate a condition in one step."""
    return compile_condition(text, **limits).evaluate(namespace)
