from __future__ import annotations

import ast
import asyncio
import logging
import math
import operator
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from parley.models import Tool, ToolResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

BUILTIN_TOOLS: list[Tool] = [
    Tool(
        name="current_time",
        description="Current date and time, ISO 8601, in the given IANA timezone.",
        parameters={
            "type": "object",
            "properties": {
                "timezone": {"type": "string", "description": "IANA zone name, e.g. 'Europe/Paris'. Defaults to UTC."},
            },
            "required": [],
        },
    ),
    Tool(
        name="calculate",
        description=(
            "Evaluate an arithmetic expression. Supports + - * / // % ** and parentheses, "
            "plus sqrt, log, sin, cos, tan, abs, round, min, max, pi and e."
        ),
        parameters={
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "Expression to evaluate, e.g. '2 * (3 + 4)'"},
            },
            "required": ["expression"],
        },
    ),
]


# ---------------------------------------------------------------------------
# Arithmetic evaluator
# ---------------------------------------------------------------------------

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS = {
    "sqrt": math.sqrt,
    "log": math.log,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
}

_CONSTANTS = {"pi": math.pi, "e": math.e}

MAX_EXPONENT = 1000
# Below the interpreter's int-to-str limit so results can always be rendered.
MAX_RESULT_DIGITS = 4000
_MAX_RESULT_BITS = int(MAX_RESULT_DIGITS * math.log2(10))


def evaluate(expression: str) -> int | float:
    """Evaluate an arithmetic expression without ``eval``. Raises ``ValueError``."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"invalid expression: {expression!r}") from e
    return _eval(tree.body)


def _eval(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _eval(node.left), _eval(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        result = _BINARY_OPS[type(node.op)](left, right)
        if isinstance(result, int) and result.bit_length() > _MAX_RESULT_BITS:
            raise ValueError(f"result exceeds {MAX_RESULT_DIGITS} digits")
        return result
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval(node.operand))
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _FUNCTIONS[node.func.id](*(_eval(arg) for arg in node.args))
    raise ValueError(f"unsupported syntax: {ast.unparse(node)}")


def _check_power(base: Any, exponent: Any) -> None:
    if abs(exponent) > MAX_EXPONENT:
        raise ValueError(f"exponent too large: {exponent}")
    if isinstance(base, int) and abs(base) > 1 and exponent > 0:
        if math.log10(abs(base)) * exponent > MAX_RESULT_DIGITS:
            raise ValueError(f"result exceeds {MAX_RESULT_DIGITS} digits")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class BuiltinToolExecutor:
    """Executes the tools in ``BUILTIN_TOOLS``. Each tool is a ``_tool_<name>`` method."""

    def __init__(self) -> None:
        self.stats: dict[str, int] = {t.name: 0 for t in BUILTIN_TOOLS}

    @property
    def tools(self) -> list[Tool]:
        return list(BUILTIN_TOOLS)

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        method = getattr(self, f"_tool_{name}", None)
        if method is None:
            return ToolResult(name=name, success=False, error=f"unknown tool '{name}'")
        try:
            data = await asyncio.to_thread(method, **arguments)
        except (TypeError, ValueError, ArithmeticError) as e:
            logger.debug("Builtin tool %s failed: %s", name, e)
            return ToolResult(name=name, success=False, error=f"Error executing {name}: {e}")
        self.stats[name] += 1
        return ToolResult(name=name, success=True, data=data)

    def _tool_current_time(self, timezone: str = "UTC") -> str:
        try:
            zone = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{timezone}'") from e
        return datetime.now(zone).isoformat(timespec="seconds")

    def _tool_calculate(self, expression: str) -> dict[str, Any]:
        return {"expression": expression, "result": evaluate(str(expression))}
