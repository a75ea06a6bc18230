"""
Sandboxed evaluator for compiled formula expressions.

Supported grammar, lowest to highest precedence::

    ternary     := or ( "?" ternary ":" ternary )?
    or          := and ( "||" and )*
    and         := equality ( "&&" equality )*
    equality    := relational ( ("==" | "!=" | "===" | "!==") relational )*
    relational  := additive ( ("<" | "<=" | ">" | ">=") additive )*
    additive    := term ( ("+" | "-") term )*
    term        := unary ( ("*" | "/" | "%") unary )*
    unary       := ("-" | "+" | "!") unary | primary
    primary     := NUMBER | "(" ternary ")"

Values are floats or booleans. Booleans count as 1/0 in arithmetic and
``&&``/``||`` return one of their operands. Division by zero yields an
infinity or NaN instead of raising. A final result that is a boolean, NaN
or infinite evaluates to 0, and so does any malformed expression.
"""
import logging
import math
import re
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Tuple, Union

from soildose.services.formula_compiler import ExpressionError, compile_formula

logger = logging.getLogger(__name__)

Value = Union[float, bool]
Node = Tuple

TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%!<>?:()])"
    r")"
)

EQUALITY_OPS = ("==", "!=", "===", "!==")
RELATIONAL_OPS = ("<", "<=", ">", ">=")
ADDITIVE_OPS = ("+", "-")
MULTIPLICATIVE_OPS = ("*", "/", "%")
UNARY_OPS = ("-", "+", "!")

PARSE_CACHE_SIZE = 2048


def tokenize(text: str) -> List[Tuple[str, Any]]:
    """Split an expression into ``("num", float)`` and ``("op", str)`` tokens."""
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    length = len(text)
    while pos < length:
        if text[pos].isspace():
            pos += 1
            continue
        match = TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionError(f"Unexpected character {text[pos]!r} at position {pos}")
        if match.group("number") is not None:
            tokens.append(("num", float(match.group("number"))))
        else:
            tokens.append(("op", match.group("op")))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing tuple nodes."""

    def __init__(self, tokens: List[Tuple[str, Any]]):
        self.tokens = tokens
        self.pos = 0

    def peek_op(self) -> Optional[str]:
        if self.pos < len(self.tokens) and self.tokens[self.pos][0] == "op":
            return self.tokens[self.pos][1]
        return None

    def expect(self, op: str) -> None:
        if self.peek_op() != op:
            raise ExpressionError(f"Expected '{op}' at token {self.pos}")
        self.pos += 1

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self.ternary()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Unexpected token {self.tokens[self.pos][1]!r}")
        return node

    def ternary(self) -> Node:
        condition = self.logical_or()
        if self.peek_op() != "?":
            return condition
        self.pos += 1
        when_true = self.ternary()
        self.expect(":")
        when_false = self.ternary()
        return ("ternary", condition, when_true, when_false)

    def logical_or(self) -> Node:
        node = self.logical_and()
        while self.peek_op() == "||":
            self.pos += 1
            node = ("or", node, self.logical_and())
        return node

    def logical_and(self) -> Node:
        node = self.binary_level(0)
        while self.peek_op() == "&&":
            self.pos += 1
            node = ("and", node, self.binary_level(0))
        return node

    _LEVELS = (EQUALITY_OPS, RELATIONAL_OPS, ADDITIVE_OPS, MULTIPLICATIVE_OPS)

    def binary_level(self, level: int) -> Node:
        if level == len(self._LEVELS):
            return self.unary()
        node = self.binary_level(level + 1)
        while self.peek_op() in self._LEVELS[level]:
            op = self.peek_op()
            self.pos += 1
            node = ("binary", op, node, self.binary_level(level + 1))
        return node

    def unary(self) -> Node:
        op = self.peek_op()
        if op in UNARY_OPS:
            self.pos += 1
            return ("unary", op, self.unary())
        return self.primary()

    def primary(self) -> Node:
        if self.pos >= len(self.tokens):
            raise ExpressionError("Unexpected end of expression")
        kind, value = self.tokens[self.pos]
        if kind == "num":
            self.pos += 1
            return ("num", value)
        if value == "(":
            self.pos += 1
            node = self.ternary()
            self.expect(")")
            return node
        raise ExpressionError(f"Unexpected token {value!r}")


@lru_cache(maxsize=PARSE_CACHE_SIZE)
def parse_expression(text: str) -> Node:
    """Parse an expression into a syntax tree. Results are cached by text."""
    return _Parser(tokenize(text)).parse()


def _as_number(value: Value) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    return value


def _truthy(value: Value) -> bool:
    if isinstance(value, bool):
        return value
    return value != 0 and not math.isnan(value)


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _remainder(left: float, right: float) -> float:
    if right == 0 or not math.isfinite(left) or math.isnan(right):
        return math.nan
    return math.fmod(left, right)


def _binary(op: str, left: Value, right: Value) -> Value:
    if op == "===":
        return isinstance(left, bool) == isinstance(right, bool) and _as_number(left) == _as_number(right)
    if op == "!==":
        return not (isinstance(left, bool) == isinstance(right, bool) and _as_number(left) == _as_number(right))

    a = _as_number(left)
    b = _as_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        return _divide(a, b)
    if op == "%":
        return _remainder(a, b)
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise ExpressionError(f"Unknown operator {op!r}")


def evaluate_node(node: Node) -> Value:
    """Walk a syntax tree produced by ``parse_expression``."""
    while node[0] == "ternary":
        node = node[2] if _truthy(evaluate_node(node[1])) else node[3]

    kind = node[0]
    if kind == "num":
        return node[1]
    if kind == "unary":
        operand = evaluate_node(node[2])
        if node[1] == "!":
            return not _truthy(operand)
        number = _as_number(operand)
        return -number if node[1] == "-" else number
    if kind == "and":
        left = evaluate_node(node[1])
        return evaluate_node(node[2]) if _truthy(left) else left
    if kind == "or":
        left = evaluate_node(node[1])
        return left if _truthy(left) else evaluate_node(node[2])
    if kind == "binary":
        return _binary(node[1], evaluate_node(node[2]), evaluate_node(node[3]))
    raise ExpressionError(f"Unknown node type {kind!r}")


def evaluate_expression(expression: str) -> float:
    """
    Evaluate a compiled expression to a finite float.

    Never raises: syntax errors, boolean results and non-finite results all
    evaluate to 0 and are logged.
    """
    text = (expression or "").strip()
    if not text:
        return 0.0
    try:
        result = evaluate_node(parse_expression(text))
    except (ExpressionError, RecursionError, ArithmeticError) as e:
        logger.warning(f"[Formula] Could not evaluate expression {text!r}: {e}")
        return 0.0

    if isinstance(result, bool) or not math.isfinite(result):
        logger.debug(f"[Formula] Non-numeric result {result!r} for {text!r}, using 0")
        return 0.0
    return float(result)


def evaluate_formula(
    formula: str,
    variables: Optional[Mapping[str, Any]] = None,
    soil: Optional[Mapping[str, Any]] = None
) -> float:
    """Compile a formula against variables and a soil dictionary and evaluate it."""
    try:
        compiled = compile_formula(formula, variables, soil)
    except ExpressionError as e:
        logger.warning(f"[Formula] Could not compile formula {formula!r}: {e}")
        return 0.0
    return evaluate_expression(compiled)
