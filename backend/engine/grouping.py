"""
Grouping engine.

Partitions responses into ordered buckets, either by a categorical field
or by a UTC time bucket, and orders bucket keys for display.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from core.config import LOGGER_NAME
from core.models import FormDesign, GroupBy, GroupKind, ProcessedResponse, SortSpec, TimeBucket
from core.utils import epoch_ms, stringify, to_datetime, to_iso
from engine.resolver import resolve_field_value

logger = logging.getLogger(LOGGER_NAME)

ALL_KEY = "all"
MISSING_KEY = "missing"

SortValue = Union[int, float, None]


@dataclass
class GroupBucket:
    responses: List[ProcessedResponse] = field(default_factory=list)
    sort_value: SortValue = None

    def __len__(self) -> int:
        return len(self.responses)


# ---------------------------------------------------------------------------
# Time buckets
# ---------------------------------------------------------------------------

def time_bucket_key(dt: datetime, bucket: Optional[TimeBucket]) -> Tuple[str, SortValue]:
    """Return ``(key, sort_value)`` for a datetime in the given bucket (UTC)."""
    dt = dt.astimezone(timezone.utc)
    bucket = bucket or TimeBucket.day

    if bucket is TimeBucket.year:
        return f"{dt.year:04d}", dt.year
    if bucket is TimeBucket.quarter:
        q = (dt.month - 1) // 3 + 1
        return f"{dt.year:04d}-Q{q}", dt.year * 4 + q
    if bucket is TimeBucket.month:
        return f"{dt.year:04d}-{dt.month:02d}", dt.year * 12 + dt.month - 1
    if bucket is TimeBucket.week:
        iso_year, iso_week, _ = dt.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}", iso_year * 53 + iso_week
    if bucket is TimeBucket.hour:
        start = dt.replace(minute=0, second=0, microsecond=0)
        return start.strftime("%Y-%m-%d %H:00"), epoch_ms(start)
    if bucket is TimeBucket.minute:
        start = dt.replace(second=0, microsecond=0)
        return start.strftime("%Y-%m-%d %H:%M"), epoch_ms(start)
    if bucket is TimeBucket.whole:
        return to_iso(dt), epoch_ms(dt)

    start = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return start.strftime("%Y-%m-%d"), epoch_ms(start)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def _categorical_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list) and not value:
        return None
    key = stringify(value)
    return key if key != "" else None


def group_responses(
    responses: Sequence[ProcessedResponse],
    group_by: Optional[GroupBy],
    form_design: Optional[FormDesign] = None,
) -> Dict[str, GroupBucket]:
    """
    Group responses by the configured field.

    Buckets keep the order in which their keys first appear. A response
    whose group value is missing (or, for time grouping, unparsable) lands in
    ``"missing"`` when include_missing is set and is dropped otherwise.
    """
    groups: Dict[str, GroupBucket] = {}

    if group_by is None or group_by.kind is GroupKind.none:
        groups[ALL_KEY] = GroupBucket(list(responses))
        return groups

    dropped = 0
    for response in responses:
        value = resolve_field_value(
            response, group_by.field_id, group_by.system_field, form_design
        )
        key: Optional[str] = None
        sort_value: SortValue = None

        if group_by.kind is GroupKind.time:
            dt = to_datetime(value)
            if dt is not None:
                key, sort_value = time_bucket_key(dt, group_by.time_bucket)
        else:
            key = _categorical_key(value)

        if key is None:
            if not group_by.include_missing:
                dropped += 1
                continue
            key = MISSING_KEY

        bucket = groups.get(key)
        if bucket is None:
            bucket = groups[key] = GroupBucket(sort_value=sort_value)
        bucket.responses.append(response)

    if dropped:
        logger.debug("Grouping dropped %d responses with no group value", dropped)
    return groups


# ---------------------------------------------------------------------------
# Key ordering
# ---------------------------------------------------------------------------

def compute_sorted_group_keys(
    keys: Sequence[str],
    grouped: Mapping[str, GroupBucket],
    sort: Optional[SortSpec],
    group_by: Optional[GroupBy] = None,
    agg_matrix: Optional[Mapping[str, Mapping[str, float]]] = None,
    primary_metric_id: Optional[str] = None,
) -> List[str]:
    """
    Order group keys for display.

    ``agg_matrix`` maps metric id -> group key -> aggregated value. Ties
    always fall back to ascending key order.
    """
    keys = list(keys)
    if sort is None or sort.by in (None, "", "none"):
        return keys

    descending = (sort.order or "asc").lower() == "desc"
    is_time = group_by is not None and group_by.kind is GroupKind.time

    def primary(k: str) -> float:
        bucket = grouped.get(k)
        if agg_matrix is not None and primary_metric_id is not None:
            row = agg_matrix.get(primary_metric_id) or {}
            if k in row:
                return float(row[k] or 0.0)
        return float(len(bucket) if bucket is not None else 0)

    if sort.by == "value":
        metric = primary
    elif sort.by == "time" and is_time:
        def metric(k: str) -> float:
            bucket = grouped.get(k)
            if bucket is None or bucket.sort_value is None:
                return float("inf")
            return float(bucket.sort_value)
    else:
        # alpha, or time on a non-time grouping
        return sorted(keys, reverse=descending)

    # Two stable passes: key ascending first, then the primary measure.
    ordered = sorted(keys)
    return sorted(ordered, key=metric, reverse=descending)
