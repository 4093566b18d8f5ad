"""
Shared coercion helpers.

Pure functions with no I/O. Every engine stage goes through
these so "5" and 5, or a Date and its ISO string, compare the same way
everywhere.
"""

from __future__ import annotations

import json
import math
import re
import unicodedata
from datetime import date, datetime, timezone
from typing import Any, Optional

import numpy as np
import pandas as pd


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------

_LEADING_FLOAT = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def to_number(x: Any) -> Optional[float]:
    """Coerce a scalar to a finite float, or None.

    Strings are read by their leading numeric prefix ("12 kg" -> 12.0);
    datetimes become epoch milliseconds. Booleans and containers are not
    numbers.
    """
    if x is None or isinstance(x, (bool, np.bool_)):
        return None
    if isinstance(x, (datetime, date)):
        return epoch_ms(to_datetime(x))
    if isinstance(x, (int, float, np.integer, np.floating)):
        n = float(x)
        return n if math.isfinite(n) else None
    if isinstance(x, str):
        m = _LEADING_FLOAT.match(x)
        if not m:
            return None
        n = float(m.group(1))
        return n if math.isfinite(n) else None
    return None


def format_number(n: float) -> str:
    """Render a number the way it is shown in keys: 5.0 -> '5', 2.5 -> '2.5'."""
    if isinstance(n, float) and n.is_integer():
        return str(int(n))
    return str(n)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def to_datetime(x: Any) -> Optional[datetime]:
    """Parse a value into an aware UTC datetime, or None.

    Naive datetimes are taken to be UTC. Numbers are epoch milliseconds.
    """
    if x is None or x == "" or isinstance(x, (bool, np.bool_)):
        return None
    if isinstance(x, pd.Timestamp):
        if pd.isna(x):
            return None
        x = x.to_pydatetime()
    if isinstance(x, datetime):
        if x.tzinfo is None:
            return x.replace(tzinfo=timezone.utc)
        return x.astimezone(timezone.utc)
    if isinstance(x, date):
        return datetime(x.year, x.month, x.day, tzinfo=timezone.utc)
    if isinstance(x, (int, float, np.integer, np.floating)):
        n = float(x)
        if not math.isfinite(n):
            return None
        try:
            return datetime.fromtimestamp(n / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(x, str):
        try:
            ts = pd.to_datetime(x.strip(), utc=True, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
        if ts is None or pd.isna(ts):
            return None
        return ts.to_pydatetime()
    return None


def epoch_ms(dt: datetime) -> float:
    return dt.timestamp() * 1000.0


def to_iso(dt: datetime) -> str:
    """UTC ISO-8601 with millisecond precision: 2024-01-15T08:30:00.000Z."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def day_key(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Comparison / keys
# ---------------------------------------------------------------------------

def normalize_scalar(x: Any) -> str:
    """Normalized text used for equality and set-membership comparisons."""
    if x is None:
        return ""
    if isinstance(x, (datetime, date)):
        return to_iso(to_datetime(x))
    if isinstance(x, (bool, np.bool_)):
        return "true" if x else "false"
    if isinstance(x, (int, float, np.integer, np.floating)):
        return format_number(float(x)) if isinstance(x, (float, np.floating)) else str(int(x))
    return str(x).strip().lower()


def stringify(x: Any) -> str:
    """Stable label for a resolved value (group keys, categories, slices)."""
    if isinstance(x, (datetime, date)):
        return to_iso(to_datetime(x))
    if isinstance(x, (bool, np.bool_)):
        return "true" if x else "false"
    if isinstance(x, (float, np.floating)):
        return format_number(float(x))
    if isinstance(x, list):
        return ",".join(stringify(v) for v in x)
    if isinstance(x, dict):
        return json.dumps(x, sort_keys=True, default=str)
    return str(x)


def is_blank(x: Any) -> bool:
    if isinstance(x, list):
        return len(x) == 0
    return x is None or x == ""


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------

_COUNTRY_ALIASES = {
    "cote divoire": "cote divoire",
    "cote d ivoire": "cote divoire",
    "ivory coast": "cote divoire",
    "drc": "democratic republic of the congo",
    "dr congo": "democratic republic of the congo",
    "congo kinshasa": "democratic republic of the congo",
    "congo brazzaville": "republic of the congo",
    "cape verde": "cabo verde",
    "swaziland": "eswatini",
    "sao tome": "sao tome and principe",
    "the gambia": "gambia",
}


def canonicalize_country_name(name: Any) -> str:
    """Fold spelling variants of a country onto one key.

    "Côte d'Ivoire", "Cote d'Ivoire" and "Ivory Coast" all become
    "cote divoire".
    """
    text = unicodedata.normalize("NFD", str(name or ""))
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = "".join(c for c in text if c.isalnum() or c == " ")
    text = " ".join(text.split()).lower()
    return _COUNTRY_ALIASES.get(text, text)
