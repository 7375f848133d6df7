#!/usr/bin/env python3
"""geofuse.errors

Error taxonomy shared by the three engines.

Two kinds of "failure" live here and they are deliberately different:
- Exceptions (ConfigurationError, GranularityMismatch, IndicatorError, EmptyInput)
  mean the inputs or the config are wrong.
- EmptyResult is a value, not an exception. Engines return it when the inputs
  are fine but nothing survives (no scored features, a filter stage with zero
  candidates, a grid with zero cells). Callers report it; they don't crash on it.
"""

from __future__ import annotations

from dataclasses import dataclass


class FusionError(Exception):
    """Base class for geofuse errors."""


class ConfigurationError(FusionError, ValueError):
    """Bad engine configuration. Raised before any computation starts."""


class GranularityMismatch(FusionError, ValueError):
    """An indicator declares a granularity tag with no known truncation rule."""

    def __init__(self, indicator: str, granularity: str):
        self.indicator = indicator
        self.granularity = granularity
        super().__init__(
            f"Indicator '{indicator}' declares granularity '{granularity}', "
            "which has no truncation rule"
        )


class IndicatorError(FusionError, ValueError):
    """An indicator table violates its invariants (columns, one value per key/period)."""


class EmptyInput(FusionError):
    """A helper was handed an empty collection it cannot compute over."""


@dataclass(frozen=True)
class EmptyResult:
    """Typed empty-result marker.

    stage: which step produced nothing (e.g. "features", "containment", "grid")
    reason: human-readable explanation, surfaced by the CLI
    """

    stage: str
    reason: str

    def __str__(self) -> str:
        return f"empty result at stage '{self.stage}': {self.reason}"
