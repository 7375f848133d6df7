#!/usr/bin/env python3
"""stages.py

Filter stages for the qualifying-features pipeline.

Each stage consumes a candidate GeoDataFrame and returns a narrower one,
optionally attaching diagnostic columns:

- containment: keep candidates *within* a reference polygon; attach the
  matched reference's id, planar area and selected attributes
- area:        keep candidates whose planar area (or an attached area column)
               is >= threshold
- distance:    keep candidates whose distance to the union of a reference
               collection is > threshold; attach the distance (`dist_to_<name>_m`)

Boundary semantics of "within" are those of shapely's `within` predicate:
a candidate that lies inside a reference polygon and touches its boundary
from the inside is contained; one that only shares boundary with it, or
crosses it, is not.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Set

import geopandas as gpd
import pandas as pd

from geofuse.errors import ConfigurationError
from geofuse.vectors import align_crs, make_valid, planar_area, require_planar

logger = logging.getLogger(__name__)


def _check_threshold(value: Any, stage: str) -> float:
    try:
        t = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Stage '{stage}': threshold must be a number, got {value!r}") from e
    if math.isnan(t):
        raise ConfigurationError(f"Stage '{stage}': threshold must not be NaN")
    return t


def _check_reference(reference: Any, stage: str) -> None:
    if not isinstance(reference, gpd.GeoDataFrame):
        raise ConfigurationError(f"Stage '{stage}' needs a reference GeoDataFrame")
    if len(reference) > 0:
        require_planar(reference, f"Stage '{stage}' reference features")


# -----------------------------------------------------------------------------
# Stages
# -----------------------------------------------------------------------------

@dataclass
class ContainmentStage:
    """Keep candidates lying within at least one reference polygon.

    When several reference polygons contain a candidate, the largest one is
    matched, so a later area threshold on `<prefix>_area_m2` keeps the
    candidate if *any* containing polygon passes.
    """

    reference: gpd.GeoDataFrame
    name: str = "containment"
    attributes: Sequence[str] = ()
    prefix: Optional[str] = None

    kind = "containment"

    @property
    def label(self) -> str:
        return self.prefix or self.name

    def provides(self) -> Set[str]:
        p = self.label
        return {f"{p}_id", f"{p}_area_m2"} | {f"{p}_{a}" for a in self.attributes}

    def validate(self, available: Set[str]) -> None:
        _check_reference(self.reference, self.name)
        missing = [a for a in self.attributes if a not in self.reference.columns]
        if missing:
            raise ConfigurationError(
                f"Stage '{self.name}': reference has no attribute(s) {missing}. "
                f"Available: {list(self.reference.columns)}"
            )

    def apply(self, candidates: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        p = self.label
        out_cols = [f"{p}_id", f"{p}_area_m2"] + [f"{p}_{a}" for a in self.attributes]
        if len(self.reference) == 0:
            logger.warning("Stage %s: reference collection is empty; nothing can be contained", self.name)
            empty = candidates.iloc[0:0].copy()
            for c in out_cols:
                empty[c] = pd.Series(dtype=object)
            return empty

        ref = make_valid(align_crs(self.reference, candidates))
        ref = ref.copy()
        ref["_ref_id"] = ref.index
        ref["_ref_area"] = ref.geometry.area.astype(float)
        keep_cols = ["_ref_id", "_ref_area", *self.attributes, ref.geometry.name]
        ref = ref[keep_cols].rename(columns={a: f"_ref_attr_{a}" for a in self.attributes})

        joined = gpd.sjoin(candidates, ref, how="inner", predicate="within")
        # largest containing polygon first, then one row per candidate
        joined = joined.sort_values("_ref_area", ascending=False, kind="mergesort")
        joined = joined[~joined.index.duplicated(keep="first")]
        joined = joined.loc[[i for i in candidates.index if i in joined.index]]

        renames = {"_ref_id": f"{p}_id", "_ref_area": f"{p}_area_m2"}
        renames.update({f"_ref_attr_{a}": f"{p}_{a}" for a in self.attributes})
        joined = joined.drop(columns=["index_right"], errors="ignore").rename(columns=renames)
        return joined


@dataclass
class AreaThresholdStage:
    """Keep candidates whose planar area is >= threshold (inclusive).

    column=None computes each candidate's own area into `area_m2`; otherwise
    the named column (e.g. a matched parcel's area) is compared.
    """

    threshold: float
    name: str = "area"
    column: Optional[str] = None

    kind = "area"

    def provides(self) -> Set[str]:
        return {"area_m2"} if self.column is None else set()

    def validate(self, available: Set[str]) -> None:
        _check_threshold(self.threshold, self.name)
        if self.column is not None and self.column not in available:
            raise ConfigurationError(
                f"Stage '{self.name}': area column '{self.column}' is not produced by any earlier stage "
                "or present on the candidates"
            )

    def apply(self, candidates: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        out = candidates.copy()
        column = self.column
        if column is None:
            column = "area_m2"
            out[column] = planar_area(out)
        return out[out[column].astype(float) >= float(self.threshold)]


@dataclass
class DistanceThresholdStage:
    """Keep candidates farther than `threshold` from every reference feature.

    Distance is the minimum planar distance to the union of the reference
    collection. An empty reference collection means nothing qualifies: the
    predicate can't be satisfied against a reference set that doesn't exist.
    """

    reference: gpd.GeoDataFrame
    threshold: float
    name: str = "distance"
    column: Optional[str] = None

    kind = "distance"

    @property
    def distance_column(self) -> str:
        return self.column or f"dist_to_{self.name}_m"

    def provides(self) -> Set[str]:
        return {self.distance_column}

    def validate(self, available: Set[str]) -> None:
        _check_reference(self.reference, self.name)
        _check_threshold(self.threshold, self.name)

    def apply(self, candidates: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        col = self.distance_column
        ref = make_valid(align_crs(self.reference, candidates)) if len(self.reference) else self.reference
        if len(ref) == 0:
            logger.warning("Stage %s: reference collection is empty; no candidate qualifies", self.name)
            empty = candidates.iloc[0:0].copy()
            empty[col] = pd.Series(dtype=float)
            return empty

        target = ref.geometry.union_all()
        out = candidates.copy()
        out[col] = out.geometry.distance(target).astype(float)
        return out[out[col] > float(self.threshold)]


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------

STAGE_KINDS = {
    "containment": ContainmentStage,
    "within": ContainmentStage,
    "area": AreaThresholdStage,
    "area_threshold": AreaThresholdStage,
    "distance": DistanceThresholdStage,
    "distance_threshold": DistanceThresholdStage,
}


def build_stage(
    kind: str,
    reference: Optional[gpd.GeoDataFrame] = None,
    threshold: Optional[float] = None,
    **options: Any,
):
    """Build a stage from a (kind, reference, threshold) tuple plus options.

    Raises ConfigurationError for an unknown kind or a missing
    reference/threshold.
    """
    cls = STAGE_KINDS.get(str(kind).strip().lower())
    if cls is None:
        raise ConfigurationError(f"Unknown stage kind: {kind!r}. Known kinds: {sorted(STAGE_KINDS)}")
    name = options.pop("name", None) or cls.kind

    if cls is not ContainmentStage and threshold is None:
        raise ConfigurationError(f"Stage '{name}' ({kind}) needs a threshold")
    if cls is not AreaThresholdStage and reference is None:
        raise ConfigurationError(f"Stage '{name}' ({kind}) needs a reference collection")

    if cls is ContainmentStage:
        options["attributes"] = tuple(options.get("attributes") or ())
        args = {"reference": reference}
    elif cls is AreaThresholdStage:
        args = {"threshold": threshold}
    else:
        args = {"reference": reference, "threshold": threshold}
    try:
        return cls(name=name, **args, **options)
    except TypeError as e:
        raise ConfigurationError(f"Stage '{name}' ({kind}): unsupported options {sorted(options)}") from e
