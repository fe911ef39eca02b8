"""
Prompt templating.

Replaces every ``{{ expression }}`` block of a template with the value of
a CEL expression (https://github.com/google/cel-spec) evaluated against a
context dict, e.g. ``{{ inputs.topic.title }}`` or
``{{ prompt != null ? prompt : "" }}``.

Rendering: ``null`` renders as an empty string, strings as-is, numbers and
booleans in their literal form, lists and maps as compact JSON.

``\\{{`` renders a literal ``{{`` without evaluating anything.
"""

import json
import logging
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import celpy
from celpy import celtypes

logger = logging.getLogger(__name__)

_BLOCK_PATTERN = re.compile(r"\\\{\{|\{\{([\s\S]*?)\}\}")

_environment = celpy.Environment()


class TemplateError(Exception):
    """A template expression failed to parse or evaluate."""

    def __init__(
        self,
        message: str,
        expression: str = "",
        line: int = 0,
        column: int = 0,
        start: int = 0,
        end: int = 0,
    ):
        self.reason = message
        self.expression = expression
        self.line = line
        self.column = column
        self.start = start
        self.end = end
        if line:
            message = (
                f"Template evaluation error at {line}:{column} (chars {start}-{end}): "
                f"\n  Expression: {{{{ {expression} }}}}\n  Message: {message}"
            )
        super().__init__(message)


class ExpressionError(Exception):
    """A CEL expression failed to compile or evaluate."""


@lru_cache(maxsize=256)
def _program(expr: str) -> celpy.Runner:
    return _environment.program(_environment.compile(expr))


def _activation(context: dict[str, Any]) -> dict[str, Any]:
    # Plain JSON first, so pydantic dumps and tuples convert cleanly
    plain = json.loads(json.dumps(context, default=str))
    return {name: celpy.json_to_cel(value) for name, value in plain.items()}


def to_python(value: Any) -> Any:
    """Convert a CEL result to plain Python values."""
    if value is None:
        return None
    if isinstance(value, celtypes.BoolType | bool):
        return bool(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, bytes):
        return bytes(value)
    if isinstance(value, Mapping):
        return {to_python(k): to_python(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_python(item) for item in value]
    return str(value)


def evaluate_expression(expr: str, context: dict[str, Any]) -> Any:
    """
    Evaluate a single CEL expression against a context.

    Raises:
        ExpressionError: If the expression does not compile or fails to evaluate
    """
    try:
        result = _program(expr).evaluate(_activation(context))
        # Some evaluation errors come back as values instead of being raised
        if isinstance(result, Exception):
            raise result
    except Exception as e:
        raise ExpressionError(str(e) or type(e).__name__) from e
    return to_python(result)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _line_col(text: str, index: int) -> tuple[int, int]:
    before = text[:index]
    line = before.count("\n") + 1
    column = len(before) - (before.rfind("\n") + 1) + 1
    return line, column


def evaluate_template(template: str, context: dict[str, Any]) -> str:
    """
    Render a template against a context.

    Args:
        template: Text with ``{{ expression }}`` blocks
        context: Variables visible to the expressions

    Returns:
        The rendered text

    Raises:
        TemplateError: If any expression fails, pointing at its location
    """

    def replace(match: re.Match) -> str:
        if match.group(1) is None:
            return "{{"
        expr = match.group(1).strip()
        try:
            return render_value(evaluate_expression(expr, context))
        except ExpressionError as e:
            line, column = _line_col(template, match.start())
            logger.debug(f"Template expression failed at {line}:{column}: {e}")
            raise TemplateError(
                str(e),
                expression=expr,
                line=line,
                column=column,
                start=match.start(),
                end=match.end(),
            ) from e

    return _BLOCK_PATTERN.sub(replace, template)
