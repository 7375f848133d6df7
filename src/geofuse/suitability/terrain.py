#!/usr/bin/env python3
"""terrain.py

Derived layers for the suitability engine:
- slope (degrees) from a DEM
- planar distance from every cell centre to a feature collection (roads, ...)

Both need a grid in a projected CRS: elevation and distance are in metres, so
cell sizes must be too.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import shapely

from geofuse.errors import ConfigurationError, EmptyInput
from geofuse.suitability.grid import Grid, require_planar_grid


def slope_degrees(dem: np.ndarray, grid: Grid) -> np.ndarray:
    """Slope in degrees from central differences (edges: one-sided).

    Non-finite DEM cells propagate to their neighbours' slope as NaN.
    """
    require_planar_grid(grid, "Slope")
    arr = np.asarray(dem, dtype=float)
    if arr.shape != tuple(grid.shape):
        raise ConfigurationError(f"DEM shape {arr.shape} does not match grid {grid.shape}")
    if arr.shape[0] < 2 or arr.shape[1] < 2:
        raise ConfigurationError(f"Slope needs a DEM of at least 2x2 cells, got {arr.shape}")
    xres, yres = grid.cell_size
    dz_dy, dz_dx = np.gradient(arr, yres, xres)
    return np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))


def distance_to_features(features: Any, grid: Grid) -> np.ndarray:
    """Distance from each cell centre to the nearest feature (0 on/inside one).

    Raises EmptyInput when there are no features to measure against.
    """
    require_planar_grid(grid, "Distance")
    gdf = features
    if getattr(gdf, "crs", None) is not None and grid.crs is not None and gdf.crs != grid.crs:
        gdf = gdf.to_crs(grid.crs)
    geoms = [g for g in getattr(gdf, "geometry", gdf) if g is not None and not g.is_empty]
    if not geoms:
        raise EmptyInput("No features found to measure distance to; check the AOI and source layer.")
    target = shapely.union_all(geoms)
    xs, ys = grid.cell_centers()
    points = shapely.points(xs, ys)
    return shapely.distance(points, target).astype(float)
