#!/usr/bin/env python3
"""rasters.py

GeoTIFF I/O for the suitability engine and the `suitability:` config loader.

Config shape:

    suitability:
      nodata: -9999
      grid:                         # optional; otherwise the first raster layer's grid
        bbox: [xmin, ymin, xmax, ymax]
        resolution: 30
        crs: EPSG:32734
      layers:
        - name: slope
          derive: slope             # slope (degrees) from a DEM
          dem: data/interim/dem.tif
          weight: 0.4
          invert: true
        - name: road_access
          derive: distance          # distance from each cell to features
          features: {path: data/raw/roads.gpkg}
          weight: 0.6
          invert: true
        - name: rainfall
          path: data/interim/rain.tif   # plain raster on the same grid
          weight: 0.0
      exclusions:
        - {path: data/raw/protected.gpkg}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import geopandas as gpd
import numpy as np
import rasterio

from geofuse.config import DEFAULT_NODATA, coerce_bbox, require_keys, resolve_path
from geofuse.errors import ConfigurationError
from geofuse.suitability.engine import RasterLayer, SuitabilityField, check_nodata, check_weights
from geofuse.suitability.grid import Grid
from geofuse.suitability.terrain import distance_to_features, slope_degrees
from geofuse.vectors import read_features


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


# -----------------------------------------------------------------------------
# GeoTIFF I/O
# -----------------------------------------------------------------------------

def read_raster_layer(path: Path, band: int = 1) -> Tuple[np.ndarray, Grid]:
    """Read one band as float with nodata cells set to NaN."""
    if not path.exists():
        raise SystemExit(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        if src.crs is None:
            raise SystemExit(f"Raster has no CRS: {path}")
        data = src.read(band).astype(float)
        nodata = src.nodata
        if nodata is not None and not np.isnan(nodata):
            data[data == nodata] = np.nan
        grid = Grid(src.transform, (src.height, src.width), src.crs)
    return data, grid


def write_field(field: SuitabilityField, out_path: Path) -> None:
    """Write a suitability field as a single-band float32 GeoTIFF."""
    profile = {
        "driver": "GTiff",
        "height": field.grid.shape[0],
        "width": field.grid.shape[1],
        "count": 1,
        "dtype": "float32",
        "crs": field.grid.crs,
        "transform": field.grid.transform,
        "nodata": field.nodata,
        "compress": "deflate",
    }
    _ensure_dir(out_path.parent)
    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(field.values.astype("float32"), 1)


# -----------------------------------------------------------------------------
# Config -> layers
# -----------------------------------------------------------------------------

def _grid_from_config(block: Dict[str, Any]) -> Grid:
    require_keys(block, ["bbox", "resolution"], "suitability.grid")
    bbox = coerce_bbox(block["bbox"])
    if bbox is None:
        raise ConfigurationError(f"suitability.grid.bbox must be [xmin, ymin, xmax, ymax], got {block['bbox']!r}")
    return Grid.from_bbox(bbox, float(block["resolution"]), block.get("crs"))


_DERIVE_KEYS = {None: ["path"], "slope": ["dem"], "distance": ["features"]}


def check_layer_entries(section: Dict[str, Any]) -> None:
    """Validate the `suitability:` layer list without reading any file.

    Checks entry shape, derive kinds and their required keys, layer names,
    weights and the nodata sentinel.
    """
    entries = section.get("layers")
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("suitability: must have a non-empty 'layers:' list.")
    for i, entry in enumerate(entries):
        where = f"suitability.layers[{i}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        require_keys(entry, ["name", "weight"], where)
        derive = entry.get("derive")
        if derive not in _DERIVE_KEYS:
            raise ConfigurationError(f"{where}: unknown derive {derive!r} (slope | distance)")
        require_keys(entry, _DERIVE_KEYS[derive], where)
        if derive == "distance" and (not isinstance(entry["features"], dict) or "path" not in entry["features"]):
            raise ConfigurationError(f"{where}.features must be a mapping with a path")

    names = [str(e["name"]) for e in entries]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate layer names: {dupes}")
    check_weights({str(e["name"]): e["weight"] for e in entries})
    check_nodata(float(section.get("nodata", DEFAULT_NODATA)))


def _require_aligned(layer_grid: Grid, grid: Grid, what: str) -> None:
    if not layer_grid.aligned_with(grid):
        raise ConfigurationError(
            f"{what} is not on the suitability grid: "
            f"shape {layer_grid.shape} vs {grid.shape}, "
            f"origin ({layer_grid.transform.c}, {layer_grid.transform.f}) vs ({grid.transform.c}, {grid.transform.f}), "
            f"cell {layer_grid.cell_size} vs {grid.cell_size}, crs {layer_grid.crs} vs {grid.crs}"
        )


def load_suitability(
    section: Dict[str, Any],
    base_dir: Optional[Path] = None,
) -> Tuple[List[RasterLayer], Grid, List[gpd.GeoDataFrame], float]:
    """Build (layers, grid, exclusions, nodata) from the `suitability:` section.

    Every raster read (plain layers and DEMs) must sit on the same grid: the
    configured `grid:` block, or else the first raster read.
    """
    check_layer_entries(section)
    entries = section["layers"]

    grid: Optional[Grid] = _grid_from_config(section["grid"]) if section.get("grid") else None

    # Plain rasters first: the first one defines the grid when none is configured.
    loaded: Dict[int, np.ndarray] = {}
    for i, entry in enumerate(entries):
        derive = entry.get("derive")
        if derive is None:
            path = resolve_path(entry["path"], base_dir)
            values, layer_grid = read_raster_layer(path)
            grid = grid or layer_grid
            _require_aligned(layer_grid, grid, f"Layer '{entry['name']}' ({path})")
            loaded[i] = values
        elif derive == "slope":
            path = resolve_path(entry["dem"], base_dir)
            dem, dem_grid = read_raster_layer(path)
            grid = grid or dem_grid
            _require_aligned(dem_grid, grid, f"DEM for layer '{entry['name']}' ({path})")
            loaded[i] = slope_degrees(dem, grid)

    if grid is None:
        raise ConfigurationError("suitability: no 'grid:' block and no raster layer to take the grid from")

    layers: List[RasterLayer] = []
    for i, entry in enumerate(entries):
        if entry.get("derive") == "distance":
            features = read_features(resolve_path(entry["features"]["path"], base_dir),
                                     layer=entry["features"].get("layer"))
            values = distance_to_features(features, grid)
        else:
            values = loaded[i]
        layers.append(
            RasterLayer(
                name=str(entry["name"]),
                values=values,
                weight=entry["weight"],
                invert=bool(entry.get("invert", False)),
            )
        )

    exclusions: List[gpd.GeoDataFrame] = []
    for i, block in enumerate(section.get("exclusions") or []):
        if not isinstance(block, dict):
            raise ConfigurationError(f"suitability.exclusions[{i}] must be a mapping")
        require_keys(block, ["path"], f"suitability.exclusions[{i}]")
        exclusions.append(read_features(resolve_path(block["path"], base_dir), layer=block.get("layer")))

    nodata = float(section.get("nodata", DEFAULT_NODATA))
    return layers, grid, exclusions, nodata
