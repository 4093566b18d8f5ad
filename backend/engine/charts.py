"""
Chart processors: card, bar, line, pie, histogram, scatter, calendar-heatmap.

Each processor takes the validated widget config, the filtered responses
and the form designs keyed by form id, and returns a finished payload.
None of them raise on empty input; they return the empty payload instead.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.config import LOGGER_NAME
from core.models import (
    BarPayload,
    BinLabel,
    CalendarHeatmapPayload,
    CardPayload,
    DateValue,
    FormDesign,
    GroupBy,
    GroupKind,
    HistogramPayload,
    LinePayload,
    PayloadBase,
    PiePayload,
    Point,
    ProcessedResponse,
    ScatterPayload,
    Series,
    Slice,
    SystemField,
    VisualizationType,
    WidgetConfig,
)
from core.utils import day_key, stringify, to_datetime, to_number
from engine.aggregation import calculate_aggregation, numeric_projection
from engine.data import DateWindow, resolve_date_range
from engine.grouping import compute_sorted_group_keys, group_responses
from engine.payloads import base_fields, build_empty_payload
from engine.resolver import design_for, resolve_field_value, resolve_identifier

logger = logging.getLogger(LOGGER_NAME)

Designs = Dict[str, FormDesign]

MAX_BINS = 50


@dataclass
class _Target:
    """The single field a card/pie/histogram/heatmap widget reads."""
    form_id: str
    field_id: Optional[str]
    system_field: Optional[SystemField]
    aggregation: str


def _primary_target(config: WidgetConfig) -> Optional[_Target]:
    # The legacy source picks the form; the metric picks the field and aggregation.
    metric = config.metrics[0] if config.metrics else None
    source = config.sources[0] if config.sources else None
    if metric is None and source is None:
        return None
    form_id = (source.form_id if source else None) or (metric.form_id if metric else None)
    field_id = (metric.field_id if metric else None) or (source.field_id if source else None)
    system_field = (metric.system_field if metric else None) or (source.system_field if source else None)
    aggregation = (metric.aggregation if metric else None) or config.aggregation or "count"
    return _Target(form_id, field_id, system_field, aggregation)


def _of_form(responses: Sequence[ProcessedResponse], form_id: str) -> List[ProcessedResponse]:
    return [r for r in responses if r.form_id == str(form_id)]


# ---------------------------------------------------------------------------
# Card
# ---------------------------------------------------------------------------

def process_card(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    target = _primary_target(config)
    if target is None:
        return build_empty_payload(config)

    design = design_for(form_designs, target.form_id)
    relevant = _of_form(responses, target.form_id)

    if config.is_value_mode and relevant:
        raw = resolve_field_value(relevant[0], target.field_id, target.system_field, design)
        value = to_number(raw)
        value = value if value is not None else 0.0
    else:
        value = calculate_aggregation(
            relevant, target.aggregation, target.field_id, target.system_field, design
        )

    return CardPayload(
        **base_fields(config),
        value=value,
        stat_label=target.aggregation.upper(),
        empty=not relevant,
    )


# ---------------------------------------------------------------------------
# Bar / line
# ---------------------------------------------------------------------------

def _series_payload(
    config: WidgetConfig, labels: List[str], series: List[Series], empty: bool
) -> PayloadBase:
    if config.visualization_type is VisualizationType.bar:
        return BarPayload(**base_fields(config), categories=labels, series=series, empty=empty)
    return LinePayload(**base_fields(config), x=labels, series=series, empty=empty)


def _value_mode_series(
    config: WidgetConfig, responses: Sequence[ProcessedResponse], form_designs: Designs
) -> PayloadBase:
    labels: List[str] = []
    series = [Series(name=m.display_name, data=[], metric_id=m.id) for m in config.metrics]

    for response in responses:
        design = design_for(form_designs, response.form_id)
        identifier = resolve_identifier(response, config.value_mode_field_id, design)
        if identifier is None:
            continue
        labels.append(stringify(identifier))
        for metric, s in zip(config.metrics, series):
            value = 0.0
            if response.form_id == metric.form_id:
                n = to_number(resolve_field_value(
                    response, metric.field_id, metric.system_field, design
                ))
                if n is not None:
                    value = n
            s.data.append(value)

    return _series_payload(config, labels, series, empty=not labels)


def process_series(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    """Bar and line widgets; one series per metric."""
    if config.is_value_mode:
        return _value_mode_series(config, responses, form_designs)
    if not config.metrics:
        return build_empty_payload(config)

    primary = config.metrics[0]
    group_by = config.group_by or GroupBy(kind=GroupKind.none)
    grouped = group_responses(
        responses, group_by, design_for(form_designs, primary.form_id)
    )

    # metric id -> group key -> value
    agg_matrix: Dict[str, Dict[str, float]] = {}
    for metric in config.metrics:
        design = design_for(form_designs, metric.form_id)
        row = agg_matrix.setdefault(metric.id, {})
        for key, bucket in grouped.items():
            row[key] = calculate_aggregation(
                _of_form(bucket.responses, metric.form_id),
                metric.aggregation or "count",
                metric.field_id,
                metric.system_field,
                design,
            )

    keys = compute_sorted_group_keys(
        list(grouped), grouped, config.sort, group_by, agg_matrix, primary.id
    )
    if config.top_n:
        keys = keys[: config.top_n]

    series = [
        Series(
            name=m.display_name,
            data=[agg_matrix[m.id].get(k, 0.0) for k in keys],
            metric_id=m.id,
        )
        for m in config.metrics
    ]
    return _series_payload(config, keys, series, empty=not keys)


# ---------------------------------------------------------------------------
# Pie
# ---------------------------------------------------------------------------

def process_pie(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    if config.is_value_mode:
        metric = config.metrics[0] if config.metrics else None
        if metric is None:
            return build_empty_payload(config)
        design = design_for(form_designs, metric.form_id)
        slices: List[Slice] = []
        for response in _of_form(responses, metric.form_id):
            label = resolve_identifier(response, config.value_mode_field_id, design)
            if label is None:
                continue
            n = to_number(resolve_field_value(response, metric.field_id, metric.system_field, design))
            if n is not None:
                slices.append(Slice(label=stringify(label), value=n))
        return PiePayload(**base_fields(config), slices=slices, empty=not slices)

    target = _primary_target(config)
    if target is None:
        return build_empty_payload(config)
    design = design_for(form_designs, target.form_id)
    relevant = _of_form(responses, target.form_id)
    if not relevant:
        return build_empty_payload(config)

    if config.group_by is not None:
        group_by = config.group_by
    elif target.field_id:
        group_by = GroupBy(kind=GroupKind.categorical, field_id=target.field_id)
    else:
        group_by = GroupBy(kind=GroupKind.none)

    if group_by.kind is GroupKind.none:
        value = calculate_aggregation(
            relevant, target.aggregation, target.field_id, target.system_field, design
        )
        slices = [Slice(label="All", value=value)] if value > 0 else []
        return PiePayload(**base_fields(config), slices=slices, empty=not slices)

    grouped = group_responses(relevant, group_by, design)
    slices = [
        Slice(
            label=key,
            value=calculate_aggregation(
                bucket.responses, target.aggregation, target.field_id, target.system_field, design
            ),
        )
        for key, bucket in grouped.items()
    ]
    slices = sorted((s for s in slices if s.value > 0), key=lambda s: s.value, reverse=True)
    if config.top_n:
        slices = slices[: config.top_n]
    return PiePayload(**base_fields(config), slices=slices, empty=not slices)


# ---------------------------------------------------------------------------
# Histogram
# ---------------------------------------------------------------------------

def histogram_bin_count(n_values: int, strategy: str = "auto", bins: Optional[int] = None) -> int:
    if strategy == "fixed" and bins:
        return max(1, min(MAX_BINS, int(bins)))
    return min(max(math.ceil(math.log2(n_values)) + 1, 5), MAX_BINS)


def process_histogram(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    target = _primary_target(config)
    if target is None:
        return build_empty_payload(config)
    design = design_for(form_designs, target.form_id)
    relevant = _of_form(responses, target.form_id)

    values = numeric_projection(
        resolve_field_value(r, target.field_id, target.system_field, design) for r in relevant
    )
    if not values:
        return build_empty_payload(config)

    lo, hi = min(values), max(values)
    if lo == hi:
        return HistogramPayload(
            **base_fields(config),
            bins=[BinLabel(label=f"{lo:.1f}-{hi:.1f}")],
            series=[Series(name="Frequency", data=[float(len(values))])],
        )

    binning = config.options.histogram.binning if config.options.histogram else None
    bin_count = histogram_bin_count(
        len(values),
        binning.strategy if binning else "auto",
        binning.bins if binning else None,
    )
    width = (hi - lo) / bin_count

    arr = np.asarray(values, dtype=float)
    idx = np.minimum(np.floor((arr - lo) / width).astype(int), bin_count - 1)
    counts = np.bincount(idx, minlength=bin_count)

    labels = []
    for i in range(bin_count):
        start = lo + i * width
        end = hi if i == bin_count - 1 else start + width
        labels.append(BinLabel(label=f"{start:.1f}-{end:.1f}"))

    return HistogramPayload(
        **base_fields(config),
        bins=labels,
        series=[Series(name="Frequency", data=[float(c) for c in counts])],
    )


# ---------------------------------------------------------------------------
# Scatter
# ---------------------------------------------------------------------------

def process_scatter(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    if len(config.metrics) < 2:
        return build_empty_payload(config)
    x_metric, y_metric = config.metrics[0], config.metrics[1]

    if x_metric.form_id != y_metric.form_id:
        logger.warning(
            "Scatter across forms is not supported (%s vs %s)", x_metric.form_id, y_metric.form_id
        )
        return build_empty_payload(
            config, errors=["Scatter metrics must come from the same form"]
        )

    design = design_for(form_designs, x_metric.form_id)
    points: List[Point] = []
    for response in _of_form(responses, x_metric.form_id):
        x = to_number(resolve_field_value(response, x_metric.field_id, x_metric.system_field, design))
        y = to_number(resolve_field_value(response, y_metric.field_id, y_metric.system_field, design))
        if x is not None and y is not None:
            points.append(Point(x=x, y=y))

    if not points:
        return build_empty_payload(config)

    name = f"{x_metric.label or 'X'} vs {y_metric.label or 'Y'}"
    return ScatterPayload(**base_fields(config), series=[Series(name=name, points=points)])


# ---------------------------------------------------------------------------
# Calendar heatmap
# ---------------------------------------------------------------------------

def _start_of_day(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def process_calendar_heatmap(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    target = _primary_target(config)
    if target is None:
        return build_empty_payload(config)
    design = design_for(form_designs, target.form_id)
    relevant = _of_form(responses, target.form_id)
    if not relevant:
        return build_empty_payload(config)

    date_field = target.field_id
    date_system = target.system_field
    if not date_field and not date_system:
        date_system = SystemField.submission_date

    dated = []
    for response in relevant:
        dt = to_datetime(resolve_field_value(response, date_field, date_system, design))
        if dt is not None:
            dated.append((dt, response))

    start, end = window or resolve_date_range(config.date_range)
    if start is None:
        start = min((dt for dt, _ in dated), default=end - timedelta(days=30))

    by_day: Dict[str, List[ProcessedResponse]] = {}
    for dt, response in dated:
        if start <= dt <= end:
            by_day.setdefault(day_key(dt), []).append(response)

    show_empty = bool(
        config.options.calendar_heatmap and config.options.calendar_heatmap.show_empty_dates
    )
    values: List[DateValue] = []
    day = _start_of_day(start)
    while day <= end:
        key = day_key(day)
        value = calculate_aggregation(
            by_day.get(key, []), target.aggregation, target.field_id, target.system_field, design
        )
        if value > 0 or show_empty:
            values.append(DateValue(date=key, value=value))
        day += timedelta(days=1)

    return CalendarHeatmapPayload(
        **base_fields(config),
        values=values,
        start_date=day_key(start),
        end_date=day_key(end),
        empty=not values,
    )
