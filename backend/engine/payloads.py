"""
Payload construction helpers shared by the processors.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from core.models import (
    BarPayload,
    BubbleMapPayload,
    CalendarHeatmapPayload,
    CardPayload,
    CctPayload,
    CrosstabPayload,
    FlowMapPayload,
    HistogramPayload,
    LinePayload,
    MapPayload,
    PayloadBase,
    PiePayload,
    ScatterPayload,
    VisualizationType,
    WidgetConfig,
)

PAYLOAD_TYPES: Dict[VisualizationType, Type[PayloadBase]] = {
    VisualizationType.card: CardPayload,
    VisualizationType.bar: BarPayload,
    VisualizationType.line: LinePayload,
    VisualizationType.pie: PiePayload,
    VisualizationType.histogram: HistogramPayload,
    VisualizationType.scatter: ScatterPayload,
    VisualizationType.calendar_heatmap: CalendarHeatmapPayload,
    VisualizationType.map: MapPayload,
    VisualizationType.bubble_map: BubbleMapPayload,
    VisualizationType.flow_map: FlowMapPayload,
    VisualizationType.crosstab: CrosstabPayload,
    VisualizationType.cct: CctPayload,
}


def base_fields(config: WidgetConfig, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"title": config.title, "meta": meta if meta is not None else config.wire()}


def build_empty_payload(config: WidgetConfig, errors: Optional[list] = None) -> PayloadBase:
    """The "nothing to render" payload for the widget's visualization type."""
    cls = PAYLOAD_TYPES[config.visualization_type]
    return cls(**base_fields(config), empty=True, errors=errors or None)


def error_payload(message: str) -> CardPayload:
    return CardPayload(
        title="Error",
        value=None,
        stat_label="Failed to load data",
        meta={},
        errors=[message],
        empty=True,
    )
