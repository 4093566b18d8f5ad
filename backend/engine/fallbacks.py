"""
Degradation rules for config the engine does not understand.

An unknown filter operator lets responses through and an unknown
aggregation is computed as a mean. Both are logged. Callers that want
stricter behavior pass their own policy.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FallbackPolicy:
    unknown_operator_passes: bool = True
    unknown_aggregation: str = "mean"


DEFAULT_FALLBACKS = FallbackPolicy()
