"""
Workflow routing — which outgoing connection(s) a completed step follows.

Connection conditions come in two shapes:

    {"decision": "approved"}                                  decision match
    {"field": "amount", "operator": "greater_than", "value": 500}
                                                              form predicate

Conditional nodes take exactly one edge: a matching decision, else the
first satisfied form predicate, else the default (unconditioned) edge,
else the first edge. Other nodes take every matching edge, or every
unconditioned edge when nothing matches, so one step can fork.
"""

from __future__ import annotations

import logging
from datetime import datetime

from opsgate.core.exceptions import ValidationError
from opsgate.services.workflow_graph import edge_decision, is_unconditioned

logger = logging.getLogger(__name__)

_TRUTHY = (True, "true", "yes")
_FALSY = (False, "false", "no")


def _to_number(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return None


def _is_empty(value) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and not value)


def _compare_numbers(field_value, expected, op) -> bool:
    left, right = _to_number(field_value), _to_number(expected)
    if left is None or right is None:
        return False
    return op(left, right)


def _compare_dates(field_value, expected, op) -> bool:
    left, right = _to_datetime(field_value), _to_datetime(expected)
    if left is None or right is None:
        return False
    return op(left, right)


def evaluate_form_condition(condition: dict, form_data: dict | None) -> bool:
    """Return True if ``form_data`` satisfies the connection's form predicate."""
    field = condition.get("field")
    operator = condition.get("operator")
    if not field or not operator:
        return False

    form_data = form_data or {}
    value = form_data.get(field)
    expected = condition.get("value")
    text = "" if value is None else str(value).lower()
    expected_text = "" if expected is None else str(expected).lower()

    if operator == "equals":
        return text == expected_text
    if operator == "contains":
        return expected_text in text
    if operator == "starts_with":
        return text.startswith(expected_text)
    if operator == "ends_with":
        return text.endswith(expected_text)
    if operator == "is_empty":
        return _is_empty(value)
    if operator == "is_not_empty":
        return not _is_empty(value)
    if operator == "greater_than":
        return _compare_numbers(value, expected, lambda a, b: a > b)
    if operator == "less_than":
        return _compare_numbers(value, expected, lambda a, b: a < b)
    if operator == "greater_or_equal":
        return _compare_numbers(value, expected, lambda a, b: a >= b)
    if operator == "less_or_equal":
        return _compare_numbers(value, expected, lambda a, b: a <= b)
    if operator == "between":
        return (
            _compare_numbers(value, expected, lambda a, b: a >= b)
            and _compare_numbers(value, condition.get("value2"), lambda a, b: a <= b)
        )
    if operator == "before":
        return _compare_dates(value, expected, lambda a, b: a < b)
    if operator == "after":
        return _compare_dates(value, expected, lambda a, b: a > b)
    if operator == "is_checked":
        return value in _TRUTHY
    if operator == "is_not_checked":
        return value in _FALSY or not value

    logger.warning("Unknown form condition operator %r", operator)
    return False


def _edge_matches(edge: dict, decision: str | None, form_data: dict | None) -> bool:
    wanted = edge_decision(edge)
    if wanted:
        return decision is not None and wanted == decision
    condition = edge.get("condition") or {}
    if condition.get("field"):
        return evaluate_form_condition(condition, form_data)
    return False


def choose_conditional_edge(edges: list[dict], decision: str | None, form_data: dict | None) -> dict | None:
    """Pick the single edge a conditional node routes through."""
    if not edges:
        return None
    for edge in edges:
        if edge_decision(edge) and _edge_matches(edge, decision, form_data):
            return edge
    for edge in edges:
        if not edge_decision(edge) and _edge_matches(edge, decision, form_data):
            return edge
    for edge in edges:
        if is_unconditioned(edge):
            return edge
    return edges[0]


def next_edges(node: dict, edges: list[dict], decision: str | None, form_data: dict | None) -> list[dict]:
    """Edges followed when a step at a non-conditional ``node`` completes.

    Raises:
        ValidationError: the node has outgoing edges but every one carries
            a condition and none matches (e.g. an approval step advanced
            without a decision).
    """
    if not edges:
        return []
    matched = [e for e in edges if _edge_matches(e, decision, form_data)]
    if matched:
        return matched
    defaults = [e for e in edges if is_unconditioned(e)]
    if defaults:
        return defaults
    raise ValidationError(
        f"No outgoing path of \"{node.get('label')}\" matches decision {decision!r}",
        details={
            "node_id": node["id"],
            "decision": decision,
            "expected": sorted({edge_decision(e) for e in edges if edge_decision(e)}),
        },
    )
