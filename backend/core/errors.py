from __future__ import annotations


class WidgetEngineError(Exception):
    # Base class for failures the engine raises on purpose.
    pass


class WidgetNotFoundError(WidgetEngineError):
    # Widget or its config does not exist. Surfaced to the caller as-is.
    def __init__(self, widget_id: str) -> None:
        super().__init__(f"Widget '{widget_id}' not found")
        self.widget_id = widget_id


class UnsupportedVisualizationError(WidgetEngineError):
    # visualizationType outside the closed set of chart kinds.
    def __init__(self, visualization_type: object) -> None:
        super().__init__(f"Unsupported visualization type: {visualization_type}")
        self.visualization_type = visualization_type


class WidgetConfigError(WidgetEngineError):
    # Config failed validation (bad shapes, value-mode form mismatch, ...).
    pass
