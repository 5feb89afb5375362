"""
Edge conditions: extraction from edge labels and fail-safe evaluation.

Supported label directives:
    when: <expr>     traverse when expr is true
    unless: <expr>   traverse when expr is false
    if: <expr>       same as when:

Expressions use the safe_eval subset plus a few conveniences from the
machine language: {{ node.attr }} template references, ===/!==, &&, ||
and a leading ! for negation. Evaluation never raises; any failure is
logged and treated as False.
"""

import logging
import re
from collections.abc import Mapping
from typing import Any

from dygram.errors import ConditionEvaluationError
from dygram.graph.machine import MachineEdge, MachineSnapshot
from dygram.graph.safe_eval import safe_eval

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_]\w*)\.([A-Za-z_]\w*)\s*\}\}")
STRING_LITERAL_PATTERN = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

# Keywords that mark a condition as depending on external calls
NON_SIMPLE_MARKERS = ("tool", "external", "api", "call")

RESERVED_NAMES = ("errorCount", "errors", "activeState")


def _extract_directive(text: str, keyword: str) -> str | None:
    for pattern in (
        rf'{keyword}:\s*"([^"]+)"',
        rf"{keyword}:\s*'([^']+)'",
        rf"{keyword}:\s*([^;]+)",
    ):
        match = re.search(rf"\b{pattern}", text, re.IGNORECASE)
        if match:
            return match.group(1).strip()
    return None


def extract_condition(edge: MachineEdge) -> str | None:
    """
    Return the edge's condition as an evaluable expression, or None.

    An "unless:" directive is returned already negated.
    """
    text = edge.text
    if not text:
        return None

    when = _extract_directive(text, "when")
    if when:
        return when

    unless = _extract_directive(text, "unless")
    if unless:
        return f"not ({unless})"

    return _extract_directive(text, "if")


def is_simple_condition(condition: str | None) -> bool:
    """A condition is simple when it only reads attributes and runtime counters."""
    if not condition:
        return True
    return not any(marker in condition for marker in NON_SIMPLE_MARKERS)


def _rewrite_operators(code: str) -> str:
    code = TEMPLATE_PATTERN.sub(r"\1.\2", code)
    code = code.replace("===", "==").replace("!==", "!=")
    code = code.replace("&&", " and ").replace("||", " or ")
    return re.sub(r"!(?!=)", " not ", code)


def normalize_expression(expr: str) -> str:
    """
    Rewrite template references and C-style operators into Python syntax.

    String literals are left untouched.
    """
    parts = STRING_LITERAL_PATTERN.split(expr)
    # Odd indices are the captured literals
    return "".join(
        part if i % 2 else _rewrite_operators(part) for i, part in enumerate(parts)
    ).strip()


def evaluate_condition(condition: str | None, scope: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition against a scope. Missing conditions are true.

    Never raises: any error (unknown identifier, type mismatch, syntax)
    yields False.
    """
    if not condition:
        return True

    try:
        return _evaluate_strict(condition, scope)
    except ConditionEvaluationError as e:
        logger.warning(f"      ⚠ Condition evaluation failed: {condition}")
        logger.warning(f"         Error: {e}")
        logger.debug(f"         Available names: {sorted(scope.keys())}")
        return False


def _evaluate_strict(condition: str, scope: Mapping[str, Any]) -> bool:
    context = {"true": True, "false": False, "null": None, **scope}
    try:
        return bool(safe_eval(normalize_expression(condition), context))
    except Exception as e:
        raise ConditionEvaluationError(str(e)) from e


def build_condition_scope(
    snapshot: MachineSnapshot,
    node_name: str,
    readable: Mapping[str, list[str] | None],
    shared_context: Mapping[str, Mapping[str, Any]],
    error_count: int = 0,
    active_state: str = "",
) -> dict[str, Any]:
    """
    Build the names visible to conditions evaluated at a node.

    Args:
        snapshot: Snapshot the step runs against
        node_name: Node whose outgoing edges are being evaluated
        readable: Context node name -> permitted fields (None = all) the
            node can read
        shared_context: Runtime values written by earlier effects
        error_count: Failures recorded so far in the run
        active_state: Most recent state-kind node entered by the path

    Returns:
        {node_name: {attr: value}} for the node itself and each readable
        context, plus the built-in counters (which win over node names)
    """
    scope: dict[str, Any] = {}

    node = snapshot.get_node(node_name)
    if node is not None and node.attributes:
        scope[node.name] = node.attrs()

    for context_name, fields in readable.items():
        context_node = snapshot.get_node(context_name)
        if context_node is None:
            continue
        values = dict(context_node.attrs())
        values.update(shared_context.get(context_name, {}))
        if fields is not None:
            values = {k: v for k, v in values.items() if k in fields}
        scope[context_name] = values

    for name in RESERVED_NAMES:
        if name in scope:
            logger.debug(f"Node '{name}' shadows a built-in condition variable")

    scope["errorCount"] = error_count
    scope["errors"] = error_count
    scope["activeState"] = active_state
    return scope
