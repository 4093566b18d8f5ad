"""
Core Pydantic models for the widget data engine.

All domain types live here so every module shares the same vocabulary.
Attributes are snake_case; the wire format (configs stored by the
dashboard, payloads consumed by the renderer) is camelCase.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .answers import normalize_answers
from .utils import to_datetime


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class VisualizationType(str, Enum):
    card = "card"
    bar = "bar"
    line = "line"
    pie = "pie"
    histogram = "histogram"
    scatter = "scatter"
    calendar_heatmap = "calendar-heatmap"
    map = "map"
    bubble_map = "bubble-map"
    flow_map = "flow-map"
    crosstab = "crosstab"
    cct = "cct"


class MetricMode(str, Enum):
    aggregation = "aggregation"
    value = "value"


class SystemField(str, Enum):
    response_id = "responseId"
    submission_date = "submissionDate"


class GroupKind(str, Enum):
    none = "none"
    categorical = "categorical"
    time = "time"


class TimeBucket(str, Enum):
    year = "year"
    quarter = "quarter"
    month = "month"
    week = "week"
    day = "day"
    hour = "hour"
    minute = "minute"
    whole = "whole"


# Aggregations and filter operators stay plain strings on the config models:
# unknown values are tolerated and handled by the engine's fallback policy.
AGGREGATIONS = (
    "count", "sum", "mean", "median", "mode", "min", "max", "std",
    "variance", "p10", "p25", "p50", "p75", "p90",
)


# ---------------------------------------------------------------------------
# Responses & form designs
# ---------------------------------------------------------------------------

class ProcessedResponse(WireModel):
    """One form submission, normalized for a single pipeline run."""
    id: str
    form_id: str
    answers: Any = Field(default=None, alias="responses")
    created_at: datetime
    process_id: Optional[str] = None
    applicant_process_id: Optional[str] = None
    user_id: Optional[str] = None

    _answer_map: Dict[str, Any] = PrivateAttr(default_factory=dict)

    @field_validator("id", "form_id", "process_id", "applicant_process_id", "user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("created_at", mode="before")
    @classmethod
    def _utc_created_at(cls, v: Any) -> Any:
        return to_datetime(v) or v

    def model_post_init(self, __context: Any) -> None:
        self._answer_map = normalize_answers(self.answers)

    def answer(self, question_id: str) -> Any:
        return self._answer_map.get(question_id)

    @property
    def answer_ids(self) -> List[str]:
        return list(self._answer_map.keys())


class Question(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    type: Optional[str] = None
    label: Optional[str] = None
    options: Optional[List[Any]] = None
    country_level: Optional[str] = Field(default=None, alias="countryLevel")


class FormSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    title: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)


class FormDesign(WireModel):
    """Question tree of one form. A bare list of sections is accepted too."""
    form_id: Optional[str] = None
    sections: List[FormSection] = Field(default_factory=list)

    _index: Dict[str, Question] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_section_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"sections": data}
        return data

    def model_post_init(self, __context: Any) -> None:
        for section in self.sections:
            for question in section.questions:
                self._index.setdefault(question.id, question)

    def get_question(self, field_id: Optional[str]) -> Optional[Question]:
        if not field_id:
            return None
        return self._index.get(field_id)


# ---------------------------------------------------------------------------
# Widget configuration
# ---------------------------------------------------------------------------

class FieldRef(WireModel):
    form_id: Optional[str] = None
    field_id: Optional[str] = None
    system_field: Optional[SystemField] = None

    @model_validator(mode="after")
    def _single_reference(self) -> "FieldRef":
        if self.field_id and self.system_field:
            raise ValueError("set either fieldId or systemField, not both")
        return self


class Metric(FieldRef):
    id: str
    label: Optional[str] = None
    form_id: str
    aggregation: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or f"Metric {self.id}"


class Source(FieldRef):
    form_id: str


class Filter(FieldRef):
    id: Optional[str] = None
    operator: str
    value: Any = None


class GroupBy(WireModel):
    kind: GroupKind = GroupKind.none
    field_id: Optional[str] = None
    system_field: Optional[SystemField] = None
    time_bucket: Optional[TimeBucket] = None
    include_missing: bool = False


class DateRange(WireModel):
    preset: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None


class SortSpec(WireModel):
    by: str = "none"          # none | alpha | time | value
    order: str = "asc"        # asc | desc


class Binning(WireModel):
    strategy: str = "auto"    # auto | fixed
    bins: Optional[int] = None


class HistogramOptions(WireModel):
    binning: Binning = Field(default_factory=Binning)


class CalendarHeatmapOptions(WireModel):
    show_empty_dates: bool = False


class MapMetric(WireModel):
    form_id: str
    country_field_id: str
    value_field_id: str
    label: Optional[str] = None


class OptionsSource(WireModel):
    form_id: str
    field_id: str
    country_field_id: Optional[str] = None


class MapAppearance(WireModel):
    model_config = ConfigDict(extra="allow")

    coloring_mode: str = "solid"
    options_source: Optional[OptionsSource] = None
    option_colors: Dict[str, str] = Field(default_factory=dict)


class MapOptions(WireModel):
    metrics: List[MapMetric] = Field(default_factory=list)
    appearance: MapAppearance = Field(default_factory=MapAppearance)


class BubbleMetric(WireModel):
    form_id: str = ""
    country_field_id: str = ""
    city_field_id: str = ""
    value_field_id: str = ""
    aggregation: Optional[str] = None


class BubbleMapOptions(WireModel):
    model_config = ConfigDict(extra="allow")

    metric: BubbleMetric = Field(default_factory=BubbleMetric)
    filters: List[Filter] = Field(default_factory=list)


class PrimaryCityIndicator(WireModel):
    field_id: str = ""
    value: Any = ""


class FlowMetric(WireModel):
    form_id: str = ""
    region: Optional[str] = None
    city1_field_id: str = ""
    city2_field_id: str = ""
    value_field_id: str = ""
    aggregation: Optional[str] = None
    primary_city_indicator: Optional[PrimaryCityIndicator] = None


class FlowMapOptions(WireModel):
    model_config = ConfigDict(extra="allow")

    metric: FlowMetric = Field(default_factory=FlowMetric)
    filters: List[Filter] = Field(default_factory=list)


class CrosstabAxis(FieldRef):
    form_id: str
    include_missing: bool = False


class CrosstabValue(FieldRef):
    form_id: str
    aggregation: str = "count"


class CrosstabOptions(WireModel):
    row: CrosstabAxis
    column: CrosstabAxis
    value: CrosstabValue
    row_axis_title: Optional[str] = None
    col_axis_title: Optional[str] = None
    column_axis_title: Optional[str] = None


class CctFactor(WireModel):
    field_id: str
    label: Optional[str] = None


class CctMeasure(WireModel):
    field_id: str
    aggregation: str = "count"
    label: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.field_id}:{self.aggregation}"


class CctOptions(WireModel):
    form_id: str
    factors: List[CctFactor] = Field(default_factory=list)
    measures: List[CctMeasure] = Field(default_factory=list)


class WidgetOptions(WireModel):
    model_config = ConfigDict(extra="allow")

    histogram: Optional[HistogramOptions] = None
    calendar_heatmap: Optional[CalendarHeatmapOptions] = None
    map: Optional[MapOptions] = None
    bubble_map: Optional[BubbleMapOptions] = None
    flow_map: Optional[FlowMapOptions] = None
    crosstab: Optional[CrosstabOptions] = None
    cct: Optional[CctOptions] = None


class Appearance(WireModel):
    model_config = ConfigDict(extra="allow")

    show_row_totals: bool = False
    show_column_totals: bool = False
    show_grand_total: bool = False


class WidgetConfig(WireModel):
    """What a widget computes. Immutable for the duration of a run."""
    title: str = ""
    visualization_type: VisualizationType
    metric_mode: MetricMode = MetricMode.aggregation
    metrics: List[Metric] = Field(default_factory=list)
    sources: List[Source] = Field(default_factory=list)
    aggregation: Optional[str] = None
    group_by: Optional[GroupBy] = None
    date_range: Optional[DateRange] = None
    filters: List[Filter] = Field(default_factory=list)
    sort: Optional[SortSpec] = None
    top_n: Optional[int] = Field(default=None, alias="topN")
    value_mode_field_id: Optional[str] = None
    options: WidgetOptions = Field(default_factory=WidgetOptions)
    appearance: Appearance = Field(default_factory=Appearance)

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_options(cls, data: Any) -> Any:
        # Older configs keep these blocks at the top level.
        if not isinstance(data, dict):
            return data
        lifted = None
        for key in ("crosstab", "cct", "bubbleMap", "flowMap"):
            if key in data and not (data.get("options") or {}).get(key):
                lifted = lifted or dict(data)
                options = dict(lifted.get("options") or {})
                options[key] = lifted.pop(key)
                lifted["options"] = options
        return lifted or data

    @model_validator(mode="after")
    def _value_mode_single_form(self) -> "WidgetConfig":
        if self.metric_mode is MetricMode.value:
            form_ids = {m.form_id for m in self.metrics}
            if len(form_ids) > 1:
                raise ValueError("value-mode metrics must all reference the same formId")
        return self

    @property
    def is_value_mode(self) -> bool:
        return self.metric_mode is MetricMode.value

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class Point(BaseModel):
    x: float
    y: float


class Series(WireModel):
    name: str
    data: Optional[List[float]] = None
    metric_id: Optional[str] = None
    points: Optional[List[Point]] = None


class Slice(BaseModel):
    label: str
    value: float


class BinLabel(BaseModel):
    label: str


class DateValue(BaseModel):
    date: str
    value: float


class CountryEntry(WireModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    color_value: Optional[str] = None


class Bubble(BaseModel):
    country: str
    city: str
    value: float
    count: int


class Flow(BaseModel):
    source: str
    target: str
    value: float
    count: int


class FlowCity(BaseModel):
    name: str
    role: Literal["primary", "secondary"]


class MeasureLabel(BaseModel):
    id: str
    label: str


class PayloadBase(WireModel):
    title: str = ""
    meta: Dict[str, Any] = Field(default_factory=dict)
    empty: bool = False
    errors: Optional[List[str]] = None

    def wire(self) -> Dict[str, Any]:
        """camelCase JSON dict; top-level None fields are dropped."""
        data = self.model_dump(by_alias=True, mode="json")
        return {k: v for k, v in data.items() if v is not None}


class CardPayload(PayloadBase):
    type: Literal["card"] = "card"
    value: Optional[float] = 0.0
    stat_label: str = "No Data"


class BarPayload(PayloadBase):
    type: Literal["bar"] = "bar"
    categories: List[str] = Field(default_factory=list)
    series: List[Series] = Field(default_factory=list)


class LinePayload(PayloadBase):
    type: Literal["line"] = "line"
    x: List[str] = Field(default_factory=list)
    series: List[Series] = Field(default_factory=list)


class PiePayload(PayloadBase):
    type: Literal["pie"] = "pie"
    slices: List[Slice] = Field(default_factory=list)


class HistogramPayload(PayloadBase):
    type: Literal["histogram"] = "histogram"
    bins: List[BinLabel] = Field(default_factory=list)
    series: List[Series] = Field(default_factory=list)


class ScatterPayload(PayloadBase):
    type: Literal["scatter"] = "scatter"
    series: List[Series] = Field(default_factory=list)


class CalendarHeatmapPayload(PayloadBase):
    type: Literal["calendar-heatmap"] = "calendar-heatmap"
    values: List[DateValue] = Field(default_factory=list)
    start_date: str = ""
    end_date: str = ""


class MapPayload(PayloadBase):
    type: Literal["map"] = "map"
    countries: Dict[str, CountryEntry] = Field(default_factory=dict)


class BubbleMapPayload(PayloadBase):
    type: Literal["bubble-map"] = "bubble-map"
    bubbles: List[Bubble] = Field(default_factory=list)


class FlowMapPayload(PayloadBase):
    type: Literal["flow-map"] = "flow-map"
    flows: List[Flow] = Field(default_factory=list)
    cities: List[FlowCity] = Field(default_factory=list)


class CrosstabPayload(PayloadBase):
    type: Literal["crosstab"] = "crosstab"
    rows: List[str] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    values: List[List[float]] = Field(default_factory=list)
    row_totals: Optional[List[float]] = None
    col_totals: Optional[List[float]] = None
    grand_total: Optional[float] = None


class CctPayload(PayloadBase):
    type: Literal["cct"] = "cct"
    factors: List[str] = Field(default_factory=list)
    measures: List[MeasureLabel] = Field(default_factory=list)
    combinations: List[List[str]] = Field(default_factory=list)
    values: List[List[Optional[float]]] = Field(default_factory=list)


WidgetDataPayload = Annotated[
    Union[
        CardPayload,
        BarPayload,
        LinePayload,
        PiePayload,
        HistogramPayload,
        ScatterPayload,
        CalendarHeatmapPayload,
        MapPayload,
        BubbleMapPayload,
        FlowMapPayload,
        CrosstabPayload,
        CctPayload,
    ],
    Field(discriminator="type"),
]

payload_adapter: TypeAdapter = TypeAdapter(WidgetDataPayload)
