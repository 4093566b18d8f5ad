"""
Input preparation: date windows, referenced forms, record normalization.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from core.config import LOGGER_NAME
from core.models import DateRange, ProcessedResponse, WidgetConfig
from core.utils import to_datetime

logger = logging.getLogger(LOGGER_NAME)

PRESET_DAYS: Dict[str, int] = {
    "last-7-days": 7,
    "last-30-days": 30,
    "last-3-months": 90,
    "last-6-months": 180,
    "last-12-months": 365,
}

DateWindow = Tuple[Optional[datetime], datetime]


def resolve_date_range(
    date_range: Optional[DateRange],
    now: Optional[datetime] = None,
    default_days: int = 30,
) -> DateWindow:
    """
    Turn a date-range config into ``(start, end)`` in UTC.

    ``start`` is None for the ``all`` preset. Custom ranges run to the end of
    the ``to`` day. Missing or unknown presets fall back to the last
    ``default_days`` days.
    """
    now = to_datetime(now) if now is not None else datetime.now(timezone.utc)
    preset = date_range.preset if date_range else None

    if preset == "all":
        return None, now

    if preset == "custom":
        start = to_datetime(date_range.from_)
        end = to_datetime(date_range.to)
        if end is None:
            end = now
        else:
            end = end.replace(hour=23, minute=59, second=59, microsecond=999000)
        return start, end

    days = PRESET_DAYS.get(preset or "", default_days)
    if preset and preset not in PRESET_DAYS:
        logger.debug("Unknown date range preset '%s', using last %d days", preset, days)
    return now - timedelta(days=days), now


def get_unique_form_ids(config: WidgetConfig) -> List[str]:
    """Every form the widget reads from, in first-seen order."""
    seen: Dict[str, None] = {}

    def add(form_id: Any) -> None:
        if form_id:
            seen.setdefault(str(form_id), None)

    for metric in config.metrics:
        add(metric.form_id)
    for source in config.sources:
        add(source.form_id)

    opts = config.options
    if opts.map is not None:
        for m in opts.map.metrics:
            add(m.form_id)
        if opts.map.appearance.options_source is not None:
            add(opts.map.appearance.options_source.form_id)
    if opts.bubble_map is not None:
        add(opts.bubble_map.metric.form_id)
    if opts.flow_map is not None:
        add(opts.flow_map.metric.form_id)
    if opts.crosstab is not None:
        add(opts.crosstab.row.form_id)
        add(opts.crosstab.column.form_id)
        add(opts.crosstab.value.form_id)
    if opts.cct is not None:
        add(opts.cct.form_id)

    return list(seen)


def normalize_responses(records: Iterable[Dict[str, Any]]) -> List[ProcessedResponse]:
    """Adapt raw response-store records into ProcessedResponse objects.

    Records that cannot be read (no id or no timestamp) are skipped and
    logged rather than failing the whole widget.
    """
    out: List[ProcessedResponse] = []
    for record in records:
        if isinstance(record, ProcessedResponse):
            out.append(record)
            continue
        applicant_process = record.get("applicantProcess") or {}
        try:
            out.append(ProcessedResponse(
                id=record.get("id"),
                form_id=record.get("formId", record.get("form_id")),
                answers=record.get("responses", record.get("answers")),
                created_at=record.get("createdAt", record.get("created_at")),
                user_id=applicant_process.get("applicantId") or record.get("userId"),
                process_id=applicant_process.get("processId") or record.get("processId"),
                applicant_process_id=record.get("applicantProcessId"),
            ))
        except ValidationError as e:
            logger.warning("Skipping unreadable response %s: %s", record.get("id"), e.error_count())
    return out
