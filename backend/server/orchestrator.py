"""
Widget data orchestrator: runs the aggregation pipeline for one widget.

    cache lookup -> validate config -> load designs + responses
    -> normalize -> filter -> visualization handler -> cache store

I/O (stores, cache) is awaited; the CPU-bound shaping runs in a thread
pool executor so the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from core.config import LOGGER_NAME, Settings
from core.errors import UnsupportedVisualizationError, WidgetConfigError, WidgetNotFoundError
from core.models import FormDesign, PayloadBase, VisualizationType, WidgetConfig, payload_adapter
from core.storage import CacheStore, ResponseStore, cache_key
from engine.charts import (
    process_calendar_heatmap,
    process_card,
    process_histogram,
    process_pie,
    process_scatter,
    process_series,
)
from engine.data import DateWindow, get_unique_form_ids, normalize_responses, resolve_date_range
from engine.filters import apply_filters
from engine.geo import process_bubble_map, process_flow_map, process_map
from engine.payloads import build_empty_payload, error_payload
from engine.tables import process_cct, process_crosstab

logger = logging.getLogger(LOGGER_NAME)

ConfigInput = Union[WidgetConfig, Mapping[str, Any]]
Handler = Callable[..., PayloadBase]

HANDLERS: Dict[VisualizationType, Handler] = {
    VisualizationType.card: process_card,
    VisualizationType.bar: process_series,
    VisualizationType.line: process_series,
    VisualizationType.pie: process_pie,
    VisualizationType.histogram: process_histogram,
    VisualizationType.scatter: process_scatter,
    VisualizationType.calendar_heatmap: process_calendar_heatmap,
    VisualizationType.map: process_map,
    VisualizationType.bubble_map: process_bubble_map,
    VisualizationType.flow_map: process_flow_map,
    VisualizationType.crosstab: process_crosstab,
    VisualizationType.cct: process_cct,
}

_unhandled = set(VisualizationType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for visualization types: {sorted(v.value for v in _unhandled)}")


def parse_widget_config(config: ConfigInput) -> WidgetConfig:
    """Validate a stored widget config; dicts use the camelCase wire names."""
    if isinstance(config, WidgetConfig):
        return config
    if not isinstance(config, Mapping):
        raise WidgetConfigError(f"Widget config must be an object, got {type(config).__name__}")

    vt = config.get("visualizationType", config.get("visualization_type"))
    if vt not in {v.value for v in VisualizationType}:
        raise UnsupportedVisualizationError(vt)
    try:
        return WidgetConfig.model_validate(dict(config))
    except ValidationError as e:
        raise WidgetConfigError(f"Invalid widget config: {e.errors()[0].get('msg', e)}") from e


def shape_payload(
    config: WidgetConfig,
    records: Sequence[Any],
    form_designs: Dict[str, FormDesign],
    window: Optional[DateWindow] = None,
) -> PayloadBase:
    """normalize -> filter -> dispatch. Pure and synchronous."""
    responses = normalize_responses(records)
    filtered = apply_filters(responses, config.filters, form_designs)
    if not filtered:
        return build_empty_payload(config)
    handler = HANDLERS[config.visualization_type]
    return handler(config, filtered, form_designs, window)


class WidgetDataService:
    """Computes widget payloads against a response store, caching non-empty results."""

    def __init__(
        self,
        response_store: ResponseStore,
        cache_store: CacheStore,
        settings: Optional[Settings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.response_store = response_store
        self.cache_store = cache_store
        self.settings = settings or Settings.from_env()
        self._executor = executor or ThreadPoolExecutor(max_workers=self.settings.executor_workers)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -- pipeline ------------------------------------------------------------

    async def _load_designs(self, form_ids: Sequence[str]) -> Dict[str, FormDesign]:
        raws = await asyncio.gather(*(self.response_store.get_form_design(f) for f in form_ids))
        designs: Dict[str, FormDesign] = {}
        for form_id, raw in zip(form_ids, raws):
            if raw is None:
                continue
            try:
                designs[form_id] = FormDesign.model_validate(raw)
            except ValidationError as e:
                logger.warning("Ignoring unreadable design for form %s: %s", form_id, e.error_count())
        return designs

    async def _run(self, config: ConfigInput) -> PayloadBase:
        cfg = parse_widget_config(config)
        form_ids = get_unique_form_ids(cfg)
        window = resolve_date_range(cfg.date_range, default_days=self.settings.default_range_days)

        designs, records = await asyncio.gather(
            self._load_designs(form_ids),
            self.response_store.list_responses(form_ids, window[0], window[1]),
        )
        if not records:
            return build_empty_payload(cfg)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, shape_payload, cfg, records, designs, window
        )

    async def _cached_payload(self, key: str) -> Optional[PayloadBase]:
        """Cached payload for ``key``; an unreachable cache or a corrupt entry is a miss."""
        try:
            cached = await self.cache_store.get(key)
            if cached is None:
                return None
            return payload_adapter.validate_python(copy.deepcopy(cached))
        except ValidationError as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e.error_count())
        except Exception as e:
            logger.warning("Cache lookup for %s failed: %s", key, e)
        return None

    # -- public API ----------------------------------------------------------

    async def compute_widget_data(
        self,
        widget_id: str,
        config: Optional[ConfigInput],
        *,
        sandbox: bool = False,
        timeout: Optional[float] = None,
    ) -> PayloadBase:
        """
        Compute (or fetch from cache) the payload for one widget.

        A missing config raises WidgetNotFoundError. Every other failure,
        including a deadline overrun, comes back as an error card payload.
        """
        if config is None:
            raise WidgetNotFoundError(widget_id)

        key = cache_key(widget_id, sandbox)
        cached = await self._cached_payload(key)
        if cached is not None:
            logger.info("Widget %s served from cache", widget_id)
            return cached

        deadline = timeout if timeout is not None else self.settings.compute_timeout_seconds
        try:
            if deadline and deadline > 0:
                payload = await asyncio.wait_for(self._run(config), deadline)
            else:
                payload = await self._run(config)
        except asyncio.TimeoutError:
            logger.warning("Widget %s timed out after %.1fs", widget_id, deadline)
            return error_payload(f"Widget data computation timed out after {deadline:g}s")
        except Exception as e:
            logger.exception("Failed to compute data for widget %s", widget_id)
            return error_payload(str(e) or type(e).__name__)

        if not payload.empty:
            try:
                await self.cache_store.set(key, payload.wire(), self.settings.cache_ttl_seconds)
            except Exception as e:
                logger.warning("Could not cache widget %s: %s", widget_id, e)
        logger.info("Widget %s computed (%s, empty=%s)", widget_id, payload.type, payload.empty)
        return payload

    async def compute_many(
        self,
        requests: Iterable[Tuple[str, Optional[ConfigInput]]],
        *,
        sandbox: bool = False,
    ) -> Dict[str, PayloadBase]:
        """Compute independent widgets concurrently, keyed by widget id."""
        requests = list(requests)
        payloads = await asyncio.gather(*(
            self.compute_widget_data(widget_id, config, sandbox=sandbox)
            for widget_id, config in requests
        ))
        return {widget_id: p for (widget_id, _), p in zip(requests, payloads)}

    async def invalidate(self, widget_ids: Iterable[str], sandbox: Optional[bool] = None) -> List[str]:
        """Drop cached payloads. ``sandbox=None`` drops both variants."""
        variants = (False, True) if sandbox is None else (sandbox,)
        keys = [cache_key(w, v) for w in widget_ids for v in variants]
        if keys:
            await self.cache_store.delete(keys)
            logger.info("Invalidated %d cache entries", len(keys))
        return keys

    async def invalidate_for_forms(
        self,
        form_ids: Iterable[str],
        widgets: Iterable[Tuple[str, ConfigInput]],
    ) -> List[str]:
        """Invalidate every widget whose config reads from one of ``form_ids``."""
        changed = {str(f) for f in form_ids}
        affected: List[str] = []
        for widget_id, config in widgets:
            try:
                cfg = parse_widget_config(config)
            except (WidgetConfigError, UnsupportedVisualizationError):
                logger.debug("Skipping widget %s with unreadable config", widget_id)
                continue
            if changed.intersection(get_unique_form_ids(cfg)):
                affected.append(widget_id)
        if affected:
            await self.invalidate(affected)
        return affected
