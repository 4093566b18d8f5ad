"""
Tabular processors: crosstab and custom cross-tabulation (CCT).
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from core.answers import find_answer_by_label
from core.config import LOGGER_NAME
from core.models import (
    CctPayload,
    CrosstabAxis,
    CrosstabPayload,
    FormDesign,
    MeasureLabel,
    PayloadBase,
    ProcessedResponse,
    WidgetConfig,
)
from core.utils import stringify, to_number
from engine.aggregation import aggregate_values
from engine.data import DateWindow
from engine.payloads import base_fields, build_empty_payload
from engine.resolver import design_for, resolve_field_value

logger = logging.getLogger(LOGGER_NAME)

Designs = Dict[str, FormDesign]

MISSING = "Missing"


# ---------------------------------------------------------------------------
# Crosstab
# ---------------------------------------------------------------------------

def latest_by_applicant_process(
    responses: Sequence[ProcessedResponse], form_id: str
) -> Dict[str, ProcessedResponse]:
    """Latest response of a form per applicant process (response id when there is none)."""
    index: Dict[str, ProcessedResponse] = {}
    for response in responses:
        if response.form_id != str(form_id):
            continue
        key = str(response.applicant_process_id or response.id)
        existing = index.get(key)
        if existing is None or response.created_at > existing.created_at:
            index[key] = response
    return index


def _first_checked(value: Any) -> Any:
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and item.get("checked") and item.get("option"):
                return str(item["option"])
    return value


def _axis_value(
    axis: CrosstabAxis,
    ap_id: str,
    value_response: ProcessedResponse,
    value_form_id: str,
    index: Dict[str, ProcessedResponse],
    form_designs: Designs,
    axis_title: Optional[str],
) -> Any:
    resolved = None
    if str(axis.form_id) == str(value_form_id):
        resolved = resolve_field_value(
            value_response, axis.field_id, axis.system_field,
            design_for(form_designs, value_form_id),
        )
    else:
        other = index.get(ap_id)
        if other is not None:
            resolved = resolve_field_value(
                other, axis.field_id, axis.system_field,
                design_for(form_designs, axis.form_id),
            )
    if resolved is None and axis_title:
        resolved = _first_checked(find_answer_by_label(value_response.answers, axis_title))
    return resolved


def _cell_key(value: Any) -> str:
    return stringify(value).strip()


def process_crosstab(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    cx = config.options.crosstab
    if cx is None:
        return build_empty_payload(config)
    row, column, value = cx.row, cx.column, cx.value
    col_title = cx.col_axis_title or cx.column_axis_title
    aggregation = value.aggregation or "count"
    is_count = aggregation.lower() == "count"

    row_index = latest_by_applicant_process(responses, row.form_id)
    col_index = latest_by_applicant_process(responses, column.form_id)
    value_index = latest_by_applicant_process(responses, value.form_id)
    value_design = design_for(form_designs, value.form_id)

    records: List[Tuple[str, str, float]] = []
    skipped = 0
    for ap_id, v_resp in value_index.items():
        r_val = _axis_value(
            row, ap_id, v_resp, value.form_id, row_index, form_designs, cx.row_axis_title
        )
        if r_val is None and not row.include_missing:
            skipped += 1
            continue
        c_val = _axis_value(
            column, ap_id, v_resp, value.form_id, col_index, form_designs, col_title
        )
        if c_val is None and not column.include_missing:
            skipped += 1
            continue

        if is_count:
            contribution = 1.0
        else:
            contribution = to_number(resolve_field_value(
                v_resp, value.field_id, value.system_field, value_design
            ))
            if contribution is None:
                skipped += 1
                continue

        records.append((
            _cell_key(MISSING if r_val is None else r_val),
            _cell_key(MISSING if c_val is None else c_val),
            contribution,
        ))

    if skipped:
        logger.debug("Crosstab skipped %d of %d responses", skipped, len(value_index))
    if not records:
        return build_empty_payload(config)

    # pivot_table sorts rows and columns ascending; absent cells are 0.
    frame = pd.DataFrame.from_records(records, columns=["row", "column", "value"])
    table = frame.pivot_table(
        index="row",
        columns="column",
        values="value",
        aggfunc=lambda s: aggregate_values(list(s), aggregation),
        fill_value=0.0,
    ).astype(float)

    appearance = config.appearance
    row_totals = table.sum(axis=1).tolist() if appearance.show_row_totals else None
    col_totals = table.sum(axis=0).tolist() if appearance.show_column_totals else None
    grand_total = float(table.to_numpy().sum()) if appearance.show_grand_total else None

    return CrosstabPayload(
        **base_fields(config),
        rows=[str(r) for r in table.index],
        columns=[str(c) for c in table.columns],
        values=table.to_numpy().tolist(),
        row_totals=row_totals,
        col_totals=col_totals,
        grand_total=grand_total,
    )


# ---------------------------------------------------------------------------
# CCT
# ---------------------------------------------------------------------------

def process_cct(
    config: WidgetConfig,
    responses: Sequence[ProcessedResponse],
    form_designs: Designs,
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    """
    Custom cross-tabulation.

    Every combination of distinct factor values is listed, even those no
    response falls into; their measures are None.
    """
    cct = config.options.cct
    if cct is None or not cct.factors or not cct.measures:
        return build_empty_payload(config)
    design = design_for(form_designs, cct.form_id)
    if design is None:
        logger.debug("CCT form design %s not found", cct.form_id)
        return build_empty_payload(config)

    relevant = [r for r in responses if r.form_id == str(cct.form_id)]
    factor_ids = [f.field_id for f in cct.factors]

    distinct: List[set] = [set() for _ in factor_ids]
    combos: Dict[Tuple[str, ...], List[ProcessedResponse]] = {}
    for response in relevant:
        keys = []
        for i, field_id in enumerate(factor_ids):
            raw = resolve_field_value(response, field_id, None, design)
            if raw is None:
                keys.append(None)
                continue
            key = stringify(raw)
            distinct[i].add(key)
            keys.append(key)
        if None not in keys:
            combos.setdefault(tuple(keys), []).append(response)

    if not any(distinct):
        return build_empty_payload(config)

    combinations = [list(c) for c in itertools.product(*(sorted(d) for d in distinct))]
    values: List[List[Optional[float]]] = []
    for combo in combinations:
        bucket = combos.get(tuple(combo), [])
        row: List[Optional[float]] = []
        for measure in cct.measures:
            if measure.aggregation == "count":
                contributions = [1.0] * len(bucket)
            else:
                contributions = [
                    n for n in (
                        to_number(resolve_field_value(r, measure.field_id, None, design))
                        for r in bucket
                    ) if n is not None
                ]
            row.append(aggregate_values(contributions, measure.aggregation) if contributions else None)
        values.append(row)

    def label_of(field_id: str, explicit: Optional[str]) -> str:
        question = design.get_question(field_id)
        return explicit or (question.label if question else None) or field_id

    return CctPayload(
        **base_fields(config),
        factors=[label_of(f.field_id, f.label) for f in cct.factors],
        measures=[
            MeasureLabel(id=m.key, label=label_of(m.field_id, m.label)) for m in cct.measures
        ],
        combinations=combinations,
        values=values,
        empty=not combinations,
    )
