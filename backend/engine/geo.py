"""
Geographic processors: choropleth map, bubble map and flow map.

Countries are always keyed by their canonical name so spelling variants
of one country land in the same bucket.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.config import LOGGER_NAME
from core.models import (
    Bubble,
    BubbleMapPayload,
    CountryEntry,
    Flow,
    FlowCity,
    FlowMapPayload,
    FormDesign,
    MapMetric,
    MapPayload,
    PayloadBase,
    PrimaryCityIndicator,
    ProcessedResponse,
    WidgetConfig,
)
from core.utils import canonicalize_country_name, is_blank, normalize_scalar, stringify
from engine.aggregation import calculate_aggregation
from engine.data import DateWindow
from engine.filters import apply_filters
from engine.payloads import base_fields, build_empty_payload
from engine.resolver import design_for, resolve_field_value

logger = logging.getLogger(LOGGER_NAME)

Designs = Dict[str, FormDesign]


def _place(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    text = stringify(value).strip()
    return text or None


def _country_of(response: ProcessedResponse, field_id: str, design: Optional[FormDesign]) -> Optional[str]:
    raw = _place(resolve_field_value(response, field_id, None, design))
    return canonicalize_country_name(raw) if raw else None


# ---------------------------------------------------------------------------
# Map
# ---------------------------------------------------------------------------

def _latest_per_country(
    responses: Sequence[ProcessedResponse],
    form_id: str,
    country_field_id: str,
    value_field_id: str,
    design: Optional[FormDesign],
) -> Dict[str, Tuple[Any, datetime]]:
    latest: Dict[str, Tuple[Any, datetime]] = {}
    for response in responses:
        if response.form_id != form_id:
            continue
        country = _country_of(response, country_field_id, design)
        if country is None:
            continue
        current = latest.get(country)
        if current is None or response.created_at > current[1]:
            value = resolve_field_value(response, value_field_id, None, design)
            latest[country] = (value, response.created_at)
    return latest


def _metric_label(metric: MapMetric, design: Optional[FormDesign]) -> str:
    if metric.label:
        return metric.label
    question = design.get_question(metric.value_field_id) if design else None
    return (question.label if question else None) or metric.value_field_id


def _map_region(metrics: Sequence[MapMetric], form_designs: Designs) -> Optional[str]:
    for metric in metrics:
        design = design_for(form_designs, metric.form_id)
        question = design.get_question(metric.country_field_id) if design else None
        if question is not None and question.country_level:
            return question.country_level
    return None


def process_map(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    """
    Latest value per country for each map metric.

    Metrics are merged per canonical country; a country that one metric
    never saw gets None under that metric's label.
    """
    map_opts = config.options.map
    if map_opts is None or not map_opts.metrics:
        return build_empty_payload(config)
    metrics = map_opts.metrics

    per_metric: List[Dict[str, Tuple[Any, datetime]]] = []
    labels: List[str] = []
    for metric in metrics:
        design = design_for(form_designs, metric.form_id)
        per_metric.append(_latest_per_country(
            responses, str(metric.form_id), metric.country_field_id, metric.value_field_id, design
        ))
        labels.append(_metric_label(metric, design))

    countries: Dict[str, CountryEntry] = {}
    for latest in per_metric:
        for country in latest:
            countries.setdefault(country, CountryEntry())
    for country, entry in countries.items():
        for label, latest in zip(labels, per_metric):
            hit = latest.get(country)
            entry.values[label] = hit[0] if hit else None

    appearance = map_opts.appearance
    source = appearance.options_source
    if appearance.coloring_mode == "options" and source is not None:
        country_field = source.country_field_id or next(
            (m.country_field_id for m in metrics if str(m.form_id) == str(source.form_id)), None
        )
        if country_field:
            colors = {normalize_scalar(k): v for k, v in appearance.option_colors.items()}
            options = _latest_per_country(
                responses, str(source.form_id), country_field, source.field_id,
                design_for(form_designs, source.form_id),
            )
            for country, entry in countries.items():
                hit = options.get(country)
                if hit is not None and hit[0] is not None:
                    entry.color_value = colors.get(normalize_scalar(hit[0]))

    meta = config.wire()
    region = _map_region(metrics, form_designs)
    if region:
        meta.setdefault("options", {}).setdefault("map", {})["region"] = region

    logger.debug("Map widget resolved %d countries", len(countries))
    return MapPayload(**base_fields(config, meta), countries=countries, empty=not countries)


# ---------------------------------------------------------------------------
# Bubble map
# ---------------------------------------------------------------------------

def process_bubble_map(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    opts = config.options.bubble_map
    if opts is None or not opts.metric.form_id or not opts.metric.city_field_id:
        return build_empty_payload(config)
    metric = opts.metric
    form_id = str(metric.form_id)
    design = design_for(form_designs, form_id)

    relevant = [r for r in responses if r.form_id == form_id]
    relevant = apply_filters(relevant, opts.filters, form_designs)

    groups: Dict[Tuple[str, str], List[ProcessedResponse]] = {}
    for response in relevant:
        country = _country_of(response, metric.country_field_id, design) if metric.country_field_id else ""
        city = _place(resolve_field_value(response, metric.city_field_id, None, design))
        if country is None or city is None:
            continue
        groups.setdefault((country, city), []).append(response)

    aggregation = metric.aggregation or ("sum" if metric.value_field_id else "count")
    bubbles = [
        Bubble(
            country=country,
            city=city,
            value=calculate_aggregation(
                bucket, aggregation, metric.value_field_id or None, None, design
            ),
            count=len(bucket),
        )
        for (country, city), bucket in groups.items()
    ]
    bubbles.sort(key=lambda b: (-b.value, b.country, b.city))
    return BubbleMapPayload(**base_fields(config), bubbles=bubbles, empty=not bubbles)


# ---------------------------------------------------------------------------
# Flow map
# ---------------------------------------------------------------------------

def _is_primary(
    response: ProcessedResponse,
    indicator: Optional[PrimaryCityIndicator],
    design: Optional[FormDesign],
) -> bool:
    """Whether city1 is the primary city for this response."""
    if indicator is None or not indicator.field_id:
        return True
    value = resolve_field_value(response, indicator.field_id, None, design)
    wanted = normalize_scalar(indicator.value)
    items = value if isinstance(value, list) else [value]
    return any(normalize_scalar(v) == wanted for v in items)


def process_flow_map(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    opts = config.options.flow_map
    if opts is None or not opts.metric.form_id:
        return build_empty_payload(config)
    metric = opts.metric
    if not metric.city1_field_id or not metric.city2_field_id:
        return build_empty_payload(config)
    form_id = str(metric.form_id)
    design = design_for(form_designs, form_id)

    relevant = [r for r in responses if r.form_id == form_id]
    relevant = apply_filters(relevant, opts.filters, form_designs)

    pairs: Dict[Tuple[str, str], List[ProcessedResponse]] = {}
    for response in relevant:
        city1 = _place(resolve_field_value(response, metric.city1_field_id, None, design))
        city2 = _place(resolve_field_value(response, metric.city2_field_id, None, design))
        if city1 is None or city2 is None:
            continue
        if not _is_primary(response, metric.primary_city_indicator, design):
            city1, city2 = city2, city1
        pairs.setdefault((city1, city2), []).append(response)

    aggregation = metric.aggregation or ("sum" if metric.value_field_id else "count")
    flows = [
        Flow(
            source=source,
            target=target,
            value=calculate_aggregation(
                bucket, aggregation, metric.value_field_id or None, None, design
            ),
            count=len(bucket),
        )
        for (source, target), bucket in pairs.items()
    ]
    flows.sort(key=lambda f: (-f.value, f.source, f.target))

    sources = {f.source for f in flows}
    names = sources | {f.target for f in flows}
    cities = [
        FlowCity(name=name, role="primary" if name in sources else "secondary")
        for name in sorted(names)
    ]

    meta = config.wire()
    if metric.region:
        meta.setdefault("options", {}).setdefault("flowMap", {})["region"] = metric.region

    return FlowMapPayload(**base_fields(config, meta), flows=flows, cities=cities, empty=not flows)
