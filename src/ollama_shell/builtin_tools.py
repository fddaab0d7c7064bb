"""Built-in tools offered to the model: an expression calculator and a URL opener."""

from __future__ import annotations

import ast
from collections.abc import Callable
import logging
import math
from urllib.parse import urlparse
import webbrowser

from simpleeval import DEFAULT_OPERATORS, SimpleEval, safe_power

from .tooling import ToolParameter, ToolRegistry, ToolSpec

LOGGER = logging.getLogger(__name__)

CALCULATOR_TOOL = "math_calculator"
OPEN_URL_TOOL = "open_url"

_MATH_FUNCTIONS: dict[str, Callable[..., float]] = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "log": math.log,
    "exp": math.exp,
    "abs": abs,
    "floor": math.floor,
    "ceil": math.ceil,
    "pow": safe_power,
}
_MATH_NAMES = {"pi": math.pi, "e": math.e}

# Models write powers as 2^3 far more often than 2**3.
_OPERATORS = {**DEFAULT_OPERATORS, ast.BitXor: safe_power}


def _format_number(value: object) -> str:
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_expression(args: list[str]) -> str:
    """Evaluate a single arithmetic expression and return the result as text."""
    if len(args) != 1:
        return "Operation failed as a single operand is needed"

    evaluator = SimpleEval(
        operators=_OPERATORS,
        functions=_MATH_FUNCTIONS,
        names=_MATH_NAMES,
    )
    try:
        return _format_number(evaluator.eval(args[0]))
    except Exception as exc:  # noqa: BLE001 - the result text goes back to the model.
        LOGGER.info(
            "tools.calculator.failed",
            extra={"event": "tools.calculator.failed", "error": str(exc)},
        )
        return f"Operation failed: {exc}"


def make_open_url_body(
    opener: Callable[[str], object] | None = None,
) -> Callable[[list[str]], str]:
    """Return an open_url tool body bound to ``opener``."""
    open_fn = opener or webbrowser.open

    def _open_url(args: list[str]) -> str:
        if len(args) != 1:
            return "Operation failed as a single URL argument is needed"

        url = args[0].strip()
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return "Failed to parse URL"

        try:
            opened = open_fn(url)
        except Exception as exc:  # noqa: BLE001 - the result text goes back to the model.
            return f"Operation failed: {exc}"
        if opened is False:
            return "Failed to open URL"
        return "URL successfully opened"

    return _open_url


def calculator_tool() -> ToolSpec:
    return ToolSpec(
        name=CALCULATOR_TOOL,
        description="A function computing the result of arbitrary mathematical expressions",
        body=evaluate_expression,
        parameters=(
            ToolParameter("expression", "string", "Expression to evaluate"),
        ),
        required=frozenset({"expression"}),
    )


def open_url_tool(opener: Callable[[str], object] | None = None) -> ToolSpec:
    return ToolSpec(
        name=OPEN_URL_TOOL,
        description="Use this to open an URL for the User.",
        body=make_open_url_body(opener),
        parameters=(
            ToolParameter("url", "string", "URL to open as correct HTTP(s) address"),
        ),
        required=frozenset({"url"}),
    )


def register_default_tools(
    registry: ToolRegistry,
    calculator: bool = True,
    open_url: bool = True,
    opener: Callable[[str], object] | None = None,
) -> ToolRegistry:
    """Register the built-in tools selected by the flags and return ``registry``."""
    if calculator:
        registry.register(calculator_tool())
    if open_url:
        registry.register(open_url_tool(opener))
    return registry
