#!/usr/bin/env python3
"""grid.py

The shared grid every suitability layer lives on: an affine transform, a
(rows, cols) shape and an optional CRS.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np
from affine import Affine
from rasterio.crs import CRS
from rasterio.transform import from_origin

from geofuse.errors import ConfigurationError


BBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class Grid:
    transform: Affine
    shape: Tuple[int, int]
    crs: Optional[Any] = None

    @property
    def size(self) -> int:
        return int(self.shape[0]) * int(self.shape[1])

    @property
    def cell_size(self) -> Tuple[float, float]:
        """(x size, y size) in CRS units."""
        return (abs(self.transform.a), abs(self.transform.e))

    @classmethod
    def from_bbox(cls, bbox: BBox, resolution: float, crs: Optional[Any] = None) -> "Grid":
        """North-up grid covering bbox at a square resolution (partial cells round up)."""
        xmin, ymin, xmax, ymax = bbox
        if resolution <= 0:
            raise ConfigurationError(f"Grid resolution must be positive, got {resolution}")
        # round before ceil so 0.07 / 0.001 doesn't become 71 cells
        width = int(math.ceil(round((xmax - xmin) / resolution, 9)))
        height = int(math.ceil(round((ymax - ymin) / resolution, 9)))
        return cls(from_origin(xmin, ymax, resolution, resolution), (max(height, 0), max(width, 0)), crs)

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """x and y coordinates of every cell centre, each shaped like the grid."""
        rows, cols = np.indices(self.shape, dtype=float)
        t = self.transform
        xs = t.c + (cols + 0.5) * t.a + (rows + 0.5) * t.b
        ys = t.f + (cols + 0.5) * t.d + (rows + 0.5) * t.e
        return xs, ys

    def aligned_with(self, other: "Grid") -> bool:
        """Same shape and transform, and the same CRS when both declare one."""
        if tuple(self.shape) != tuple(other.shape):
            return False
        if not self.transform.almost_equals(other.transform):
            return False
        if self.crs is None or other.crs is None:
            return True
        return CRS.from_user_input(self.crs) == CRS.from_user_input(other.crs)

    def is_geographic(self) -> bool:
        if self.crs is None:
            return False
        return CRS.from_user_input(self.crs).is_geographic


def require_planar_grid(grid: Grid, what: str) -> None:
    if grid.is_geographic():
        raise ConfigurationError(f"{what} needs a projected grid CRS in metres, got {grid.crs}")
