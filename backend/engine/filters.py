"""
Filter engine.

A widget's filters form a conjunction: a response survives only if every
predicate holds. Each predicate resolves its field through the resolver and
applies one operator from a small, string-named vocabulary.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.config import LOGGER_NAME
from core.models import Filter, FormDesign, ProcessedResponse
from core.utils import is_blank, normalize_scalar, to_datetime, to_number
from engine.fallbacks import DEFAULT_FALLBACKS, FallbackPolicy
from engine.resolver import design_for, resolve_field_value

logger = logging.getLogger(LOGGER_NAME)


# ---------------------------------------------------------------------------
# Operator implementations: (value, filter_value) -> bool, value not None
# ---------------------------------------------------------------------------

def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else [value]


def _equals(value: Any, fv: Any) -> bool:
    if isinstance(value, list):
        wanted = {normalize_scalar(f) for f in _as_list(fv)}
        return any(normalize_scalar(v) in wanted for v in value)
    a, b = to_number(value), to_number(fv)
    if a is not None and b is not None:
        return a == b
    return normalize_scalar(value) == normalize_scalar(fv)


def _numeric(cmp: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def op(value: Any, fv: Any) -> bool:
        a, b = to_number(value), to_number(fv)
        return a is not None and b is not None and cmp(a, b)
    return op


def _text(cmp: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def op(value: Any, fv: Any) -> bool:
        needle = str(fv).lower()
        return any(cmp(str(v).lower(), needle) for v in _as_list(value))
    return op


def _in(value: Any, fv: Any) -> bool:
    if not isinstance(fv, list):
        return False
    wanted = {normalize_scalar(f) for f in fv}
    return any(normalize_scalar(v) in wanted for v in _as_list(value))


def _not_in(value: Any, fv: Any) -> bool:
    if not isinstance(fv, list):
        return True
    return not _in(value, fv)


def _dates(cmp: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(value: Any, fv: Any) -> bool:
        dv, df = to_datetime(value), to_datetime(fv)
        return dv is not None and df is not None and cmp(dv, df)
    return op


def _date_range(value: Any, fv: Any) -> bool:
    if not isinstance(fv, dict) or not fv.get("from") or not fv.get("to"):
        return False
    dv = to_datetime(value)
    lo, hi = to_datetime(fv["from"]), to_datetime(fv["to"])
    if dv is None or lo is None or hi is None:
        return False
    return lo <= dv <= hi


def _is_bool(flag: bool) -> Callable[[Any, Any], bool]:
    text = "true" if flag else "false"

    def op(value: Any, fv: Any) -> bool:
        return value is flag or str(value).lower() == text
    return op


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _equals,
    "equals": _equals,
    "neq": lambda v, f: not _equals(v, f),
    "not_equals": lambda v, f: not _equals(v, f),
    "gt": _numeric(lambda a, b: a > b),
    "greater_than": _numeric(lambda a, b: a > b),
    "gte": _numeric(lambda a, b: a >= b),
    "greater_than_equal": _numeric(lambda a, b: a >= b),
    "lt": _numeric(lambda a, b: a < b),
    "less_than": _numeric(lambda a, b: a < b),
    "lte": _numeric(lambda a, b: a <= b),
    "less_than_equal": _numeric(lambda a, b: a <= b),
    "contains": _text(lambda s, n: n in s),
    "starts_with": _text(lambda s, n: s.startswith(n)),
    "ends_with": _text(lambda s, n: s.endswith(n)),
    "in": _in,
    "not_in": _not_in,
    "date_eq": _dates(lambda a, b: a.date() == b.date()),
    "date_before": _dates(lambda a, b: a < b),
    "date_after": _dates(lambda a, b: a > b),
    "date_range": _date_range,
    "is_true": _is_bool(True),
    "is_false": _is_bool(False),
}

_NULL_OPERATORS = {"is_null", "is_empty"}
_NOT_NULL_OPERATORS = {"is_not_null", "is_not_empty"}

SUPPORTED_OPERATORS = frozenset(_OPERATORS) | _NULL_OPERATORS | _NOT_NULL_OPERATORS


def evaluate_condition(
    value: Any,
    operator: str,
    filter_value: Any,
    policy: FallbackPolicy = DEFAULT_FALLBACKS,
) -> bool:
    """Evaluate a single predicate against an already-resolved value."""
    if operator in _NULL_OPERATORS:
        return is_blank(value)
    if operator in _NOT_NULL_OPERATORS:
        return not is_blank(value)
    if value is None:
        return False
    op = _OPERATORS.get(operator)
    if op is None:
        logger.warning("Unknown filter operator: %s", operator)
        return policy.unknown_operator_passes
    return op(value, filter_value)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def passes_filters(
    response: ProcessedResponse,
    filters: Sequence[Filter],
    form_designs: Dict[str, FormDesign],
    policy: FallbackPolicy = DEFAULT_FALLBACKS,
) -> bool:
    design = design_for(form_designs, response.form_id)
    for flt in filters:
        value = resolve_field_value(response, flt.field_id, flt.system_field, design)
        if not evaluate_condition(value, flt.operator, flt.value, policy):
            return False
    return True


def apply_filters(
    responses: List[ProcessedResponse],
    filters: Optional[Sequence[Filter]],
    form_designs: Dict[str, FormDesign],
    policy: FallbackPolicy = DEFAULT_FALLBACKS,
) -> List[ProcessedResponse]:
    """Keep the responses that pass every filter; no filters keeps everything."""
    if not filters:
        return responses
    return [r for r in responses if passes_filters(r, filters, form_designs, policy)]
