"""
Aggregation engine.

Reduces a set of responses (or already-resolved values) to one number.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from core.config import LOGGER_NAME
from core.models import FormDesign, ProcessedResponse, SystemField
from core.utils import to_number
from engine.fallbacks import DEFAULT_FALLBACKS, FallbackPolicy
from engine.resolver import resolve_field_value

logger = logging.getLogger(LOGGER_NAME)


def numeric_projection(values: Iterable[Any]) -> List[float]:
    """Flatten one level of lists and keep everything that coerces to a number."""
    out: List[float] = []
    for value in values:
        items = value if isinstance(value, list) else [value]
        for item in items:
            n = to_number(item)
            if n is not None:
                out.append(n)
    return out


def _percentile(p: float) -> Callable[[np.ndarray], float]:
    def fn(arr: np.ndarray) -> float:
        ordered = np.sort(arr)
        idx = min(max(int(math.floor(len(ordered) * p)), 0), len(ordered) - 1)
        return float(ordered[idx])
    return fn


def _mode(arr: np.ndarray) -> float:
    # np.unique sorts ascending, argmax picks the first maximum.
    uniques, counts = np.unique(arr, return_counts=True)
    return float(uniques[int(np.argmax(counts))])


_REDUCERS: Dict[str, Callable[[np.ndarray], float]] = {
    "sum": lambda a: float(np.sum(a)),
    "mean": lambda a: float(np.mean(a)),
    "median": lambda a: float(np.median(a)),
    "p50": lambda a: float(np.median(a)),
    "mode": _mode,
    "min": lambda a: float(np.min(a)),
    "max": lambda a: float(np.max(a)),
    "std": lambda a: float(np.std(a, ddof=0)),
    "variance": lambda a: float(np.var(a, ddof=0)),
    "p10": _percentile(0.10),
    "p25": _percentile(0.25),
    "p75": _percentile(0.75),
    "p90": _percentile(0.90),
}


def aggregate_values(
    values: Sequence[Any],
    aggregation: Optional[str],
    policy: FallbackPolicy = DEFAULT_FALLBACKS,
) -> float:
    """Aggregate already-resolved values. ``count`` counts the values given."""
    agg = (aggregation or "count").lower()
    if agg == "count":
        return float(len(values))

    nums = numeric_projection(values)
    if not nums:
        return 0.0

    reducer = _REDUCERS.get(agg)
    if reducer is None:
        logger.warning("Unknown aggregation '%s', using %s", aggregation, policy.unknown_aggregation)
        reducer = _REDUCERS[policy.unknown_aggregation]
    return reducer(np.asarray(nums, dtype=float))


def calculate_aggregation(
    responses: Sequence[ProcessedResponse],
    aggregation: Optional[str],
    field_id: Optional[str] = None,
    system_field: Optional[SystemField] = None,
    form_design: Optional[FormDesign] = None,
    policy: FallbackPolicy = DEFAULT_FALLBACKS,
) -> float:
    """Aggregate one field across responses. ``count`` is the number of responses."""
    if (aggregation or "count").lower() == "count":
        return float(len(responses))
    values = [
        resolve_field_value(r, field_id, system_field, form_design) for r in responses
    ]
    return aggregate_values(values, aggregation, policy)
