#!/usr/bin/env python3
"""vectors.py

Feature-collection helpers shared by the join and filter engines.

A feature collection is a GeoDataFrame with:
- a unique string `key` column (hierarchical region code, building id, ...)
- a valid geometry column
- any number of numeric attribute columns

Notes:
- Keys are normalized so " DE111 " and "DE111" match.
- Area and distance are only computed in a planar CRS (metres). Geographic
  degrees are rejected, not silently converted.
- Geometries are made valid before any area/distance computation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import geopandas as gpd
import pandas as pd

from geofuse.errors import ConfigurationError


KEY = "key"


# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------

def normalize_key(x: Any) -> str:
    """Normalize a feature/region key to a comparable string.

    Strips whitespace and upper-cases alphabetic codes ("de111" -> "DE111").
    Returns empty string for missing inputs.
    """
    if x is None:
        return ""
    try:
        if pd.isna(x):
            return ""
    except (TypeError, ValueError):
        pass
    if isinstance(x, float) and x.is_integer():
        x = int(x)
    return str(x).strip().upper()


def ensure_keys(gdf: gpd.GeoDataFrame, key_column: str = KEY) -> gpd.GeoDataFrame:
    """Return a copy with a normalized, unique `key` column.

    Raises ValueError on missing or duplicate keys: identifiers must be unique
    within a collection.
    """
    if key_column not in gdf.columns:
        raise ValueError(f"Key column '{key_column}' not found. Available columns: {list(gdf.columns)}")
    out = gdf.copy()
    if key_column != KEY:
        if KEY in out.columns:
            out = out.drop(columns=KEY)
        out = out.rename(columns={key_column: KEY})
    out[KEY] = out[KEY].apply(normalize_key)
    blank = out[KEY] == ""
    if blank.any():
        raise ValueError(f"{int(blank.sum())} feature(s) have a missing key")
    dupes = out[KEY][out[KEY].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate feature keys: {sorted(dupes)[:10]}")
    return out


# -----------------------------------------------------------------------------
# Geometry hygiene
# -----------------------------------------------------------------------------

def make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Return a copy with invalid geometries repaired and empty ones dropped."""
    gdf = gdf.copy()
    if len(gdf) == 0:
        return gdf
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        gdf.loc[invalid, gdf.geometry.name] = gdf.geometry[invalid].make_valid()
    return gdf[~(gdf.geometry.isna() | gdf.geometry.is_empty)].copy()


def require_planar(gdf: gpd.GeoDataFrame, what: str = "features") -> None:
    """Area and distance need a projected CRS in linear units.

    Raises ConfigurationError for a missing CRS or a geographic (degree) CRS.
    """
    if gdf.crs is None:
        raise ConfigurationError(f"{what} have no CRS; can't compute area/distance safely.")
    if gdf.crs.is_geographic:
        raise ConfigurationError(
            f"{what} are in a geographic CRS ({gdf.crs.to_string()}); "
            "reproject to a projected CRS in metres first."
        )


def align_crs(reference: gpd.GeoDataFrame, target: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Reproject `reference` into `target`'s CRS when they differ."""
    if reference.crs is None:
        if target.crs is None:
            return reference
        raise ConfigurationError("Reference collection has no CRS; can't align it with the candidates.")
    if target.crs is not None and reference.crs != target.crs:
        return reference.to_crs(target.crs)
    return reference


def planar_area(gdf: gpd.GeoDataFrame) -> pd.Series:
    """Planar area in CRS units squared (m² for a metric CRS)."""
    require_planar(gdf)
    return gdf.geometry.area.astype(float)


# -----------------------------------------------------------------------------
# I/O
# -----------------------------------------------------------------------------

def read_features(
    path: Path,
    *,
    layer: Optional[str] = None,
    key_column: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """Read a vector file into a feature collection.

    Requires a CRS. When `key_column` is given it is renamed to `key` and
    normalized; otherwise the collection is returned as read (reference layers
    such as roads don't need keys).
    """
    if not path.exists():
        raise SystemExit(f"Vector file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.crs is None:
        raise SystemExit(
            f"{path} has no CRS (.prj missing or unreadable). "
            "Fix that first; everything downstream depends on CRS."
        )
    if key_column:
        gdf = ensure_keys(gdf, key_column)
    return gdf


def read_table(path: Path) -> pd.DataFrame:
    """Read an indicator table (CSV, or parquet with the `parquet` extra installed)."""
    if not path.exists():
        raise SystemExit(f"Indicator table not found: {path}")
    if path.suffix.lower() in (".parquet", ".pq"):
        return pd.read_parquet(path)
    return pd.read_csv(path)


def write_features(
    gdf: gpd.GeoDataFrame,
    out_gpkg: Path,
    *,
    layer: str,
    target_crs: Optional[str] = None,
    qa_csv: Optional[Path] = None,
) -> gpd.GeoDataFrame:
    """Write a scored/filtered collection to GeoPackage (plus optional QA CSV).

    Returns the written frame (reprojected to target_crs if given).
    """
    out = gdf.to_crs(target_crs) if target_crs else gdf
    out_gpkg.parent.mkdir(parents=True, exist_ok=True)
    out.to_file(out_gpkg, layer=layer, driver="GPKG")

    if qa_csv:
        qa_csv.parent.mkdir(parents=True, exist_ok=True)
        qa = pd.DataFrame(out.drop(columns=out.geometry.name))
        qa.to_csv(qa_csv, index=False)
    return out
