"""
Formula compiler.

Turns a user-authored formula into a plain numeric expression:
- ``@name@`` placeholders are replaced by global variable values
- ``#name#`` placeholders are replaced by soil-analysis column values
- decimal commas (``12,5``) become decimal points
- ``if (...) { return ... } else if ... else { return ... }`` chains are
  rewritten into a nested ternary expression

The output is consumed by ``expression_evaluator``; nothing here executes code.
"""
import math
import re
from typing import Any, List, Mapping, Optional, Tuple

VARIABLE_PLACEHOLDER_RE = re.compile(r"@([^@]+)@")
COLUMN_PLACEHOLDER_RE = re.compile(r"#([^#]+)#")
DECIMAL_COMMA_RE = re.compile(r"(\d),(\d)")
NUMBER_TEXT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
IF_KEYWORD_RE = re.compile(r"\bif\b")
RETURN_RE = re.compile(r"^\s*return\b")


class ExpressionError(ValueError):
    """Raised when a formula cannot be compiled, parsed or evaluated."""
    pass


def parse_number(value: Any) -> Optional[float]:
    """
    Parse a value as a finite number.

    Text is accepted after its first decimal comma becomes a point and
    surrounding whitespace is trimmed. Returns None when the value is not
    numeric.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    text = str(value).replace(",", ".", 1).strip()
    if not text:
        return None
    if not NUMBER_TEXT_RE.match(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def to_number(value: Any) -> float:
    """Numeric coercion used in arithmetic contexts: anything non-numeric is 0."""
    number = parse_number(value)
    return 0.0 if number is None else number


def coerce_cell(value: Any) -> Any:
    """Numeric cells become floats; other cells keep their original value."""
    number = parse_number(value)
    return value if number is None else number


def format_number(value: float) -> str:
    text = repr(float(value))
    if value < 0:
        return f"({text})"
    return text


def _lookup(mapping: Optional[Mapping[str, Any]], key: str) -> Any:
    if not mapping:
        return None
    if key in mapping:
        return mapping[key]
    lowered = key.lower()
    for name, value in mapping.items():
        if str(name).strip().lower() == lowered:
            return value
    return None


def substitute_placeholders(
    text: str,
    variables: Optional[Mapping[str, Any]] = None,
    soil: Optional[Mapping[str, Any]] = None
) -> str:
    """Replace ``@var@`` and ``#column#`` placeholders with numeric literals."""
    expr = str(text or "")
    expr = VARIABLE_PLACEHOLDER_RE.sub(
        lambda m: format_number(to_number(_lookup(variables, m.group(1).strip()))),
        expr
    )
    expr = COLUMN_PLACEHOLDER_RE.sub(
        lambda m: format_number(to_number(_lookup(soil, m.group(1).strip()))),
        expr
    )
    return expr


def normalize_decimal_commas(text: str) -> str:
    return DECIMAL_COMMA_RE.sub(r"\1.\2", text)


def _skip_spaces(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def _read_keyword(text: str, pos: int, keyword: str) -> Optional[int]:
    """Return the position after ``keyword`` at ``pos``, or None."""
    end = pos + len(keyword)
    if text[pos:end] != keyword:
        return None
    if end < len(text) and (text[end].isalnum() or text[end] == "_"):
        return None
    return end


def _read_enclosed(text: str, pos: int, opener: str, closer: str) -> Tuple[str, int]:
    """Read a balanced ``opener ... closer`` group starting at ``pos``."""
    if pos >= len(text) or text[pos] != opener:
        raise ExpressionError(f"Expected '{opener}' at position {pos}")
    depth = 0
    for index in range(pos, len(text)):
        char = text[index]
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[pos + 1:index], index + 1
    raise ExpressionError(f"Unbalanced '{opener}' starting at position {pos}")


def _return_value(block: str) -> str:
    body = block.strip()
    match = RETURN_RE.match(body)
    if not match:
        raise ExpressionError("Conditional block without 'return'")
    body = body[match.end():].strip()
    while body.endswith(";"):
        body = body[:-1].rstrip()
    if not body:
        raise ExpressionError("Empty 'return' value")
    return body


def if_else_to_ternary(text: str) -> str:
    """
    Rewrite an if / else-if / else chain into a nested ternary expression.

    ``if (a) { return x } else if (b) { return y } else { return z }``
    becomes ``(a) ? (x) : (b) ? (y) : (z)``. Without a final ``else`` the
    fallback is a ``return`` written after the chain, or ``0``.
    """
    branches: List[Tuple[str, str]] = []
    fallback = "0"
    has_else = False
    pos = _skip_spaces(text, 0)

    while True:
        after_if = _read_keyword(text, pos, "if")
        if after_if is None:
            raise ExpressionError(f"Expected 'if' at position {pos}")
        pos = _skip_spaces(text, after_if)
        condition, pos = _read_enclosed(text, pos, "(", ")")
        pos = _skip_spaces(text, pos)
        block, pos = _read_enclosed(text, pos, "{", "}")
        branches.append((condition.strip(), _return_value(block)))

        pos = _skip_spaces(text, pos)
        after_else = _read_keyword(text, pos, "else")
        if after_else is None:
            break
        pos = _skip_spaces(text, after_else)
        if _read_keyword(text, pos, "if") is not None:
            continue
        block, pos = _read_enclosed(text, pos, "{", "}")
        fallback = _return_value(block)
        has_else = True
        pos = _skip_spaces(text, pos)
        break

    # A return after an else-less chain is reached when no branch matched.
    if not has_else and RETURN_RE.match(text[pos:]):
        fallback = _return_value(text[pos:])
        pos = len(text)

    if pos < len(text) and text[pos:].strip(" ;\n\t\r"):
        raise ExpressionError(f"Unexpected text after conditional chain: {text[pos:].strip()!r}")

    parts = [f"({condition}) ? ({value}) : " for condition, value in branches]
    return "".join(parts) + f"({fallback})"


def compile_formula(
    formula: str,
    variables: Optional[Mapping[str, Any]] = None,
    soil: Optional[Mapping[str, Any]] = None
) -> str:
    """Compile a formula into an expression ready for ``evaluate_expression``."""
    expr = substitute_placeholders(formula, variables, soil)
    expr = normalize_decimal_commas(expr)
    if IF_KEYWORD_RE.search(expr):
        return if_else_to_ternary(expr)
    if RETURN_RE.match(expr):
        return _return_value(expr)
    return expr.strip()
