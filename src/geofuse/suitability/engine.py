#!/usr/bin/env python3
"""engine.py

Raster suitability index: min-max normalize each layer, orient it, take a
weighted sum, then mask out exclusion areas.

    suitability = sum(weight_i * directed_i)
    directed_i  = normalized_i            (invert=False)
                = 1 - normalized_i        (invert=True, e.g. slope, distance to road)

Notes:
- Min/max come from the full, unmasked layer. Masking happens last, so
  excluding an area never shifts the values of the cells that remain.
- A flat layer (max == min) normalizes to zeros, not NaN.
- Excluded cells get the no-data sentinel, which is kept outside [0, 1] so it
  can't be confused with "computed, low suitability".
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
from rasterio.features import geometry_mask

from geofuse.config import DEFAULT_NODATA
from geofuse.errors import ConfigurationError, EmptyResult
from geofuse.suitability.grid import Grid

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


@dataclass
class RasterLayer:
    name: str
    values: np.ndarray
    weight: float
    invert: bool = False


@dataclass
class SuitabilityField:
    values: np.ndarray
    grid: Grid
    nodata: float = DEFAULT_NODATA

    @property
    def valid_mask(self) -> np.ndarray:
        return self.values != self.nodata


@dataclass
class SuitabilityResult:
    """field is None when `empty` is set; stats holds (min, max) per layer."""

    field: Optional[SuitabilityField]
    empty: Optional[EmptyResult] = None
    stats: Dict[str, Tuple[float, float]] = dataclass_field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.empty is None


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------

def layer_range(values: np.ndarray) -> Tuple[float, float]:
    """(min, max) over finite cells; (nan, nan) if there are none."""
    arr = np.asarray(values, dtype=float)
    finite = np.isfinite(arr)
    if not finite.any():
        return (math.nan, math.nan)
    return (float(arr[finite].min()), float(arr[finite].max()))


def minmax_normalize(values: np.ndarray) -> np.ndarray:
    """(v - min) / (max - min) over finite cells.

    A flat layer returns zeros. Non-finite cells stay NaN.
    """
    arr = np.asarray(values, dtype=float)
    lo, hi = layer_range(arr)
    finite = np.isfinite(arr)
    out = np.full(arr.shape, np.nan)
    if math.isnan(lo):
        return out
    if hi == lo:
        out[finite] = 0.0
        return out
    out[finite] = (arr[finite] - lo) / (hi - lo)
    return out


# -----------------------------------------------------------------------------
# Validation and masking
# -----------------------------------------------------------------------------

def check_weights(weights: Dict[str, Any], tolerance: float = WEIGHT_TOLERANCE) -> None:
    """Layer count and weights only (name -> weight), so a loader can call it
    before reading or deriving any raster.
    """
    if len(weights) < 2:
        raise ConfigurationError(f"Suitability needs at least two layers, got {len(weights)}")
    for name, weight in weights.items():
        try:
            w = float(weight)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Layer '{name}': weight must be a number, got {weight!r}") from e
        if not math.isfinite(w) or w < 0:
            raise ConfigurationError(f"Layer '{name}': weight must be a finite non-negative number, got {w}")

    total = sum(float(w) for w in weights.values())
    if abs(total - 1.0) > tolerance:
        raise ConfigurationError(f"Layer weights must sum to 1, got {total:.6f}: {weights}")


def check_nodata(nodata: float) -> None:
    if math.isnan(nodata) or 0.0 <= nodata <= 1.0:
        raise ConfigurationError(f"nodata sentinel must lie outside [0, 1], got {nodata}")


def validate_layers(layers: Sequence[RasterLayer], grid: Grid, tolerance: float = WEIGHT_TOLERANCE) -> None:
    """Reject bad layer sets before anything is computed."""
    names = [layer.name for layer in layers]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate layer names: {dupes}")
    check_weights({layer.name: layer.weight for layer in layers}, tolerance)

    for layer in layers:
        shape = np.shape(layer.values)
        if tuple(shape) != tuple(grid.shape):
            raise ConfigurationError(f"Layer '{layer.name}' has shape {shape}, grid is {grid.shape}")


def _geometries(collection: Any, grid: Grid):
    gdf = collection
    if getattr(gdf, "crs", None) is not None and grid.crs is not None and gdf.crs != grid.crs:
        gdf = gdf.to_crs(grid.crs)
    geoms = getattr(gdf, "geometry", gdf)
    return [g for g in geoms if g is not None and not g.is_empty]


def exclusion_mask(exclusions: Iterable[Any], grid: Grid) -> np.ndarray:
    """True for every cell whose centre falls inside any exclusion polygon."""
    mask = np.zeros(grid.shape, dtype=bool)
    if grid.size == 0:
        return mask
    for collection in exclusions:
        geoms = _geometries(collection, grid)
        if not geoms:
            continue
        mask |= geometry_mask(geoms, out_shape=grid.shape, transform=grid.transform, invert=True)
    return mask


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------

def compute_suitability(
    layers: Sequence[RasterLayer],
    grid: Grid,
    exclusions: Iterable[Any] = (),
    *,
    nodata: float = DEFAULT_NODATA,
    tolerance: float = WEIGHT_TOLERANCE,
) -> SuitabilityResult:
    """Weighted suitability field over `grid`.

    Cells missing (non-finite) in any layer and cells inside any exclusion
    collection hold `nodata`. A zero-cell grid, or a layer with no finite
    cell, returns an EmptyResult (stage "grid" or the layer name).

    Raises ConfigurationError (before computing) for fewer than two layers,
    weights not summing to 1, shape mismatches, or a nodata value in [0, 1].
    """
    validate_layers(layers, grid, tolerance)
    check_nodata(nodata)
    if grid.size == 0:
        return SuitabilityResult(None, EmptyResult("grid", "grid has zero cells"))

    stats: Dict[str, Tuple[float, float]] = {}
    for layer in layers:
        stats[layer.name] = layer_range(layer.values)
        if math.isnan(stats[layer.name][0]):
            return SuitabilityResult(None, EmptyResult(layer.name, "layer has no valid cells"), stats)

    total = np.zeros(grid.shape, dtype=float)
    missing = np.zeros(grid.shape, dtype=bool)
    for layer in layers:
        directed = minmax_normalize(layer.values)
        if stats[layer.name][0] == stats[layer.name][1]:
            logger.info("Layer %s is flat; it normalizes to zeros", layer.name)
        if layer.invert:
            directed = 1.0 - directed
        missing |= ~np.isfinite(directed)
        total += float(layer.weight) * np.nan_to_num(directed, nan=0.0)

    excluded = exclusion_mask(exclusions, grid)
    values = np.clip(total, 0.0, 1.0)
    values[missing | excluded] = nodata
    logger.info(
        "Suitability: %d cells, %d excluded, %d missing",
        grid.size, int(excluded.sum()), int((missing & ~excluded).sum()),
    )
    return SuitabilityResult(SuitabilityField(values, grid, nodata), None, stats)
