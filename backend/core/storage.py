"""
Storage ports: where responses and form designs come from, and where
computed payloads are cached.

The engine only talks to the two protocols below. The in-memory versions
back the tests and local runs; production wires its own database and
cache clients behind the same methods.
"""

from __future__ import annotations

import copy
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .config import Settings
from .utils import to_datetime

WIDGET_DATA_PREFIX = "widget-data"
WIDGET_SANDBOX_PREFIX = "widget-sandbox-data"


def cache_key(widget_id: str, sandbox: bool = False) -> str:
    prefix = WIDGET_SANDBOX_PREFIX if sandbox else WIDGET_DATA_PREFIX
    return f"{prefix}:{widget_id}"


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ResponseStore(Protocol):
    async def list_responses(
        self,
        form_ids: Sequence[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[Dict[str, Any]]:
        ...

    async def get_form_design(self, form_id: str) -> Optional[Any]:
        ...


class CacheStore(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        ...

    async def delete(self, keys: Iterable[str]) -> None:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryResponseStore:
    """Raw response records and form designs held in dicts."""

    def __init__(
        self,
        responses: Optional[Iterable[Dict[str, Any]]] = None,
        form_designs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.responses: List[Dict[str, Any]] = list(responses or [])
        self.form_designs: Dict[str, Any] = dict(form_designs or {})
        self.list_calls = 0

    def add_response(self, record: Dict[str, Any]) -> None:
        self.responses.append(record)

    def set_form_design(self, form_id: str, design: Any) -> None:
        self.form_designs[str(form_id)] = design

    async def list_responses(
        self,
        form_ids: Sequence[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[Dict[str, Any]]:
        self.list_calls += 1
        wanted = {str(f) for f in form_ids}
        out = []
        for record in self.responses:
            if str(record.get("formId")) not in wanted:
                continue
            created = to_datetime(record.get("createdAt"))
            if created is None:
                continue
            if start is not None and created < start:
                continue
            if end is not None and created > end:
                continue
            out.append(record)
        return out

    async def get_form_design(self, form_id: str) -> Optional[Any]:
        return self.form_designs.get(str(form_id))


class InMemoryCacheStore:
    """TTL cache with least-recently-used eviction once max_entries is reached."""

    def __init__(self, max_entries: int = 512, clock=time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "InMemoryCacheStore":
        return cls(max_entries=settings.cache_max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0] > self._clock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return copy.deepcopy(payload)

    async def set(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        self._entries[key] = (self._clock() + ttl, copy.deepcopy(payload))
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._entries.pop(key, None)
