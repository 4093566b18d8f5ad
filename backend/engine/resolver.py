"""
Field value resolver.

Takes one response + a field reference and returns the value the rest of
the pipeline works with, after question-type coercion.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional, Union

from core.config import LOGGER_NAME
from core.models import FormDesign, ProcessedResponse, SystemField
from core.utils import to_datetime

logger = logging.getLogger(LOGGER_NAME)

_DAY_MS = 24 * 60 * 60 * 1000.0


# ---------------------------------------------------------------------------
# Question-type coercions
# ---------------------------------------------------------------------------

def _paragraph(raw: Any) -> Any:
    parsed = raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return raw
    if isinstance(parsed, dict) and isinstance(parsed.get("blocks"), list):
        return "\n".join(
            str(block.get("text", "")) if isinstance(block, dict) else ""
            for block in parsed["blocks"]
        )
    return raw


def _phone_number(raw: Any) -> Any:
    if isinstance(raw, str) and raw and not raw.startswith("+"):
        return f"+{raw}"
    return raw


def _checkbox(raw: Any) -> Any:
    if isinstance(raw, list):
        return [
            opt.get("option") for opt in raw
            if isinstance(opt, dict) and opt.get("checked")
        ]
    return raw


def _date(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("date")
    return raw if isinstance(raw, str) else None


def _datetime(raw: Any) -> Any:
    if isinstance(raw, dict) and raw.get("date") and raw.get("time"):
        return f"{raw['date']}T{raw['time']}:00"
    return raw


def _date_range(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return 0
    start = to_datetime(raw.get("start"))
    end = to_datetime(raw.get("end"))
    if start is None or end is None:
        return 0
    diff_ms = abs((end - start).total_seconds()) * 1000.0
    return math.ceil(diff_ms / _DAY_MS)


def _lookup(raw: Any) -> Any:
    if isinstance(raw, list):
        return [item.get("response") if isinstance(item, dict) else None for item in raw]
    return raw


_COERCIONS = {
    "Paragraph": _paragraph,
    "Phone Number": _phone_number,
    "Checkbox": _checkbox,
    "Date": _date,
    "DateTime": _datetime,
    "DateRange": _date_range,
    "From Database": _lookup,
    "Lookup": _lookup,
}


def coerce_by_question_type(question_type: Optional[str], raw: Any) -> Any:
    """Apply the coercion registered for a question type; unknown types pass through."""
    handler = _COERCIONS.get(question_type or "")
    return handler(raw) if handler else raw


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_system_field(response: ProcessedResponse, system_field: Union[str, SystemField]) -> Any:
    key = system_field.value if isinstance(system_field, SystemField) else str(system_field)
    if key == SystemField.response_id.value:
        return response.id
    if key == SystemField.submission_date.value:
        return response.created_at
    return None


def resolve_field_value(
    response: ProcessedResponse,
    field_id: Optional[str] = None,
    system_field: Optional[Union[str, SystemField]] = None,
    form_design: Optional[FormDesign] = None,
) -> Any:
    """
    Resolve a field or system pseudo-field on one response.

    systemField takes precedence over fieldId. Without a form design the raw
    answer is returned untouched.
    """
    if system_field:
        return resolve_system_field(response, system_field)
    if not field_id:
        return None

    raw = response.answer(field_id)
    if raw is None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Could not resolve field %s on response %s (form %s); available ids: %s",
                field_id, response.id, response.form_id, response.answer_ids[:25],
            )
        return None

    question = form_design.get_question(field_id) if form_design else None
    if question is None:
        return raw
    return coerce_by_question_type(question.type, raw)


def resolve_identifier(
    response: ProcessedResponse,
    identifier_field: Optional[str],
    form_design: Optional[FormDesign],
) -> Any:
    """Resolve a value-mode identifier; ``$name`` selects a system field."""
    if not identifier_field:
        return response.id
    if identifier_field.startswith("$"):
        wanted = identifier_field[1:].lower()
        for sf in SystemField:
            if sf.value.lower() == wanted:
                return resolve_system_field(response, sf)
        return None
    return resolve_field_value(response, identifier_field, None, form_design)


def design_for(form_designs: Dict[str, FormDesign], form_id: Optional[str]) -> Optional[FormDesign]:
    if form_id is None:
        return None
    return form_designs.get(str(form_id))
