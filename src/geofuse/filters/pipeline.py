#!/usr/bin/env python3
"""pipeline.py

Ordered filter pipeline: candidates go through each stage in sequence, each
stage narrowing the set.

The first stage that leaves zero candidates ends the run. That is reported
as an EmptyResult naming the stage, never as an exception and never as a
silent empty frame, so a caller can tell "no parcel contained any building"
apart from "every building was too close to a highway".

Every stage is validated before the first one runs (fail fast on config).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd

from geofuse.config import require_keys, resolve_path
from geofuse.errors import ConfigurationError, EmptyResult
from geofuse.filters.stages import STAGE_KINDS, AreaThresholdStage, ContainmentStage, build_stage
from geofuse.vectors import make_valid, read_features, require_planar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageCount:
    name: str
    n_in: int
    n_out: int


@dataclass
class FilterResult:
    """Surviving features, per-stage counts, and the empty marker (if any)."""

    features: gpd.GeoDataFrame
    counts: List[StageCount] = field(default_factory=list)
    empty: Optional[EmptyResult] = None

    @property
    def ok(self) -> bool:
        return self.empty is None


def validate_pipeline(features: gpd.GeoDataFrame, stages: Sequence[Any]) -> None:
    """Check stage kinds, names, references and column dependencies up front."""
    if not stages:
        raise ConfigurationError("Filter pipeline has no stages")
    names = [s.name for s in stages]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate stage names: {dupes}")

    available = set(features.columns)
    for stage in stages:
        if not hasattr(stage, "apply") or not hasattr(stage, "validate"):
            raise ConfigurationError(f"Not a filter stage: {stage!r}")
        stage.validate(available)
        available |= stage.provides()


def run_pipeline(features: gpd.GeoDataFrame, stages: Sequence[Any]) -> FilterResult:
    """Run `stages` in order over `features`.

    Returns a FilterResult with the survivors (carrying every diagnostic column
    the stages attached) and one StageCount per stage that ran.

    Raises ConfigurationError before any stage runs if the pipeline is invalid
    or the candidates aren't in a planar CRS.
    """
    validate_pipeline(features, stages)

    if len(features) == 0:
        return FilterResult(features.copy(), [], EmptyResult("input", "no candidate features"))
    require_planar(features, "candidate features")

    current = make_valid(features)
    if not current.index.is_unique:
        current = current.reset_index(drop=True)

    counts: List[StageCount] = []
    for stage in stages:
        n_in = len(current)
        current = stage.apply(current)
        counts.append(StageCount(stage.name, n_in, len(current)))
        logger.info("Stage %s (%s): %d -> %d", stage.name, stage.kind, n_in, len(current))
        if len(current) == 0:
            return FilterResult(
                current,
                counts,
                EmptyResult(stage.name, f"no candidates survived the {stage.kind} stage"),
            )
    return FilterResult(current, counts, None)


# -----------------------------------------------------------------------------
# Config -> pipeline
# -----------------------------------------------------------------------------

def select_reference(gdf: gpd.GeoDataFrame, where: Optional[Dict[str, str]]) -> gpd.GeoDataFrame:
    """Keep reference rows whose columns match case-insensitive regexes.

    Rows with a missing value in a filtered column are dropped.
    """
    if not where:
        return gdf
    mask = None
    for column, pattern in where.items():
        if column not in gdf.columns:
            raise ConfigurationError(f"where: column '{column}' not found. Available: {list(gdf.columns)}")
        rx = re.compile(str(pattern), re.IGNORECASE)
        hit = gdf[column].apply(lambda v: isinstance(v, str) and rx.search(v) is not None).astype(bool)
        mask = hit if mask is None else (mask & hit)
    return gdf[mask].copy()


def _load_layer(block: Dict[str, Any], base_dir: Optional[Path], crs: Optional[str], key_column=None):
    require_keys(block, ["path"], "qualify layer")
    gdf = read_features(resolve_path(block["path"], base_dir), layer=block.get("layer"), key_column=key_column)
    gdf = select_reference(gdf, block.get("where"))
    if crs:
        gdf = gdf.to_crs(crs)
    return gdf


def check_stage_entries(section: Dict[str, Any]) -> None:
    """Validate the `qualify:` stage list without reading any layer.

    Checks entry shape, stage kinds, threshold/reference presence and
    duplicate names.
    """
    require_keys(section, ["candidates", "stages"], "qualify")
    if not isinstance(section["candidates"], dict):
        raise ConfigurationError("qualify.candidates must be a mapping")
    entries = section["stages"]
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("qualify.stages must be a non-empty list")

    names: List[str] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"qualify.stages[{i}] must be a mapping")
        kind = entry.get("kind")
        if kind is None:
            raise ConfigurationError(f"qualify.stages[{i}] has no 'kind'")
        cls = STAGE_KINDS.get(str(kind).strip().lower())
        if cls is None:
            raise ConfigurationError(f"Unknown stage kind: {kind!r}. Known kinds: {sorted(STAGE_KINDS)}")
        name = entry.get("name") or cls.kind
        if cls is not ContainmentStage and entry.get("threshold") is None:
            raise ConfigurationError(f"Stage '{name}' ({kind}) needs a threshold")
        ref = entry.get("reference")
        if cls is not AreaThresholdStage:
            if not isinstance(ref, dict) or "path" not in ref:
                raise ConfigurationError(f"Stage '{name}' ({kind}) needs a reference mapping with a path")
        names.append(name)

    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate stage names: {dupes}")


def load_pipeline(
    section: Dict[str, Any],
    base_dir: Optional[Path] = None,
) -> Tuple[gpd.GeoDataFrame, List[Any]]:
    """Build candidates and stages from the `qualify:` section of a run config.

    Example:
        qualify:
          crs: EPSG:32735            # planar working CRS (metres)
          candidates: {path: buildings.gpkg, key_column: osm_id}
          stages:
            - kind: containment
              name: parcel
              reference: {path: landuse.gpkg, where: {landuse: "residential|commercial"}}
              attributes: [landuse]
            - kind: area
              name: parcel_area
              threshold: 1000
              column: parcel_area_m2
            - kind: distance
              name: highway
              reference: {path: highways.gpkg}
              threshold: 250
              column: dist_to_highway_m
    """
    check_stage_entries(section)
    crs = section.get("crs")
    cand_block = section["candidates"]
    candidates = _load_layer(cand_block, base_dir, crs, key_column=cand_block.get("key_column"))

    stages: List[Any] = []
    for entry in section["stages"]:
        options = dict(entry)
        kind = options.pop("kind")
        ref_block = options.pop("reference", None)
        reference = None
        if isinstance(ref_block, dict):
            reference = _load_layer(ref_block, base_dir, crs)
        threshold = options.pop("threshold", None)
        stages.append(build_stage(kind, reference, threshold, **options))
    return candidates, stages
