"""Tools available to every service descriptor by name."""

from __future__ import annotations

import ast
import operator
from datetime import datetime, timezone

from .tools import tool

_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _OPERATORS:
        return _OPERATORS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _OPERATORS:
        return _OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


@tool(description="Evaluate an arithmetic expression such as '(2 + 3) * 4'.")
def calculator(expression: str) -> str:
    try:
        value = _evaluate(ast.parse(expression, mode="eval"))
    except (SyntaxError, ValueError, ZeroDivisionError) as exc:
        return f"Error: {exc}"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


@tool(description="Current date and time in UTC, ISO 8601.")
def current_time() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@tool(description="Count the words in a piece of text.")
def word_count(text: str) -> int:
    return len(text.split())


BUILTIN_TOOLS = [calculator, current_time, word_count]
