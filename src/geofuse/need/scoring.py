#!/usr/bin/env python3
"""scoring.py

Rank normalization, composite scoring and banding (regional need score).

Pipeline for one run:
1. join every indicator onto the feature keys (indicators.join_indicator)
2. rank-normalize each indicator over the features that have a value for it
3. composite score = mean of the available ranks per feature
4. drop features with zero available indicators
5. split the scored features into K equal-count bands; top band = priority

Ranks and bands depend on the whole population of features known at call
time, so this is a batch computation: adding a feature means recomputing
everything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

from geofuse.config import granularity_rules
from geofuse.errors import ConfigurationError, EmptyResult, GranularityMismatch, IndicatorError
from geofuse.need.indicators import IndicatorSpec, join_indicator, resolve_granularity
from geofuse.vectors import KEY, ensure_keys, normalize_key

logger = logging.getLogger(__name__)

RESERVED_COLUMNS = {KEY, "score", "band", "priority", "n_indicators", "geometry"}


@dataclass
class ScoreResult:
    """Output of compute_need_score.

    features: scored GeoDataFrame, or None when `empty` is set
    excluded: indicator name -> reason it didn't contribute
    used: indicators that contributed at least one value
    """

    features: Optional[gpd.GeoDataFrame]
    empty: Optional[EmptyResult] = None
    excluded: Dict[str, str] = field(default_factory=dict)
    used: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.empty is None


# -----------------------------------------------------------------------------
# Normalization and banding
# -----------------------------------------------------------------------------

def rank_normalize(values: pd.Series, reverse: bool = False) -> pd.Series:
    """Percentile rank in [0, 1] over the non-missing values.

    rank = (average_rank - 1) / (n - 1); ties share their average rank.
    A lone value sits at 0.5. reverse=True returns 1 - rank.
    Missing values stay missing.
    """
    out = pd.Series(np.nan, index=values.index, dtype=float)
    valid = values.dropna()
    n = len(valid)
    if n == 0:
        return out
    if n == 1:
        ranks = pd.Series(0.5, index=valid.index)
    else:
        ranks = (valid.rank(method="average") - 1.0) / (n - 1)
    if reverse:
        ranks = 1.0 - ranks
    out.loc[valid.index] = ranks.astype(float)
    return out


def assign_bands(scores: pd.Series, k: int = 10) -> pd.Series:
    """Split defined scores into k equal-count bands, 1 (lowest) .. k (highest).

    band = floor(k * (r - 1) / n) + 1, with r the 1-based position in score
    order. Exact ties keep input order. Missing scores get no band.
    """
    if k < 1:
        raise ConfigurationError(f"Band count must be >= 1, got {k}")
    valid = scores.dropna()
    n = len(valid)
    if n == 0:
        return pd.Series(dtype="int64")
    position = valid.rank(method="first").astype("int64")
    return ((position - 1) * k // n + 1).astype("int64")


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------

def _check_indicator_names(indicators: Sequence[IndicatorSpec]) -> None:
    names = [spec.name for spec in indicators]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate indicator names: {dupes}")
    clash = sorted(RESERVED_COLUMNS.intersection(names))
    if clash:
        raise ConfigurationError(f"Indicator names clash with output columns: {clash}")


def compute_need_score(
    features: gpd.GeoDataFrame,
    indicators: Sequence[IndicatorSpec],
    *,
    bands: int = 10,
    rules: Optional[Dict[str, int]] = None,
    key_prefix: Optional[str] = None,
) -> ScoreResult:
    """Join, normalize, aggregate and band indicators onto a feature collection.

    Args:
        features: GeoDataFrame with a `key` column (hierarchical region codes)
        indicators: one IndicatorSpec per source
        bands: number of equal-count bands (default deciles)
        rules: granularity tag -> prefix length (defaults: NUTS levels)
        key_prefix: only score features whose key starts with this (e.g. "DE")

    Returns:
        ScoreResult. Empty feature sets, all-excluded indicators, or zero scored
        features come back as an EmptyResult marker, never an exception.

    Raises:
        ConfigurationError: bad band count, duplicate/reserved indicator names,
            invalid granularity declarations. Raised before any join runs.
    """
    if bands < 1:
        raise ConfigurationError(f"Band count must be >= 1, got {bands}")
    _check_indicator_names(indicators)
    rules = granularity_rules() if rules is None else rules

    excluded: Dict[str, str] = {}
    runnable: List[IndicatorSpec] = []
    for spec in indicators:
        try:
            resolve_granularity(spec.granularity, rules, spec.name)
        except GranularityMismatch as e:
            excluded[spec.name] = str(e)
            logger.warning("Excluding indicator %s: %s", spec.name, e)
            continue
        runnable.append(spec)

    if len(features) == 0:
        return ScoreResult(None, EmptyResult("features", "feature collection is empty"), excluded)
    feats = ensure_keys(features)
    if key_prefix:
        prefix = normalize_key(key_prefix)
        feats = feats[feats[KEY].str.startswith(prefix)].copy()
    if feats.empty:
        return ScoreResult(None, EmptyResult("features", f"no feature key starts with '{key_prefix}'"), excluded)

    raw: Dict[str, pd.Series] = {}
    ranks: Dict[str, pd.Series] = {}
    for spec in runnable:
        try:
            values = join_indicator(feats, spec, rules)
        except IndicatorError as e:
            excluded[spec.name] = str(e)
            logger.warning("Excluding indicator %s: %s", spec.name, e)
            continue
        if values.notna().sum() == 0:
            excluded[spec.name] = "no values matched any feature key"
            logger.warning("Excluding indicator %s: no values matched any feature key", spec.name)
            continue
        raw[spec.name] = values
        ranks[spec.name] = rank_normalize(values, reverse=spec.reverse)
        logger.info("Indicator %s: %d/%d features matched", spec.name, int(values.notna().sum()), len(feats))

    used = list(raw)
    if not used:
        return ScoreResult(
            None,
            EmptyResult("indicators", "no indicator contributed any value"),
            excluded,
        )

    rank_table = pd.DataFrame(ranks, index=feats.index)
    n_available = rank_table.notna().sum(axis=1)
    keep = n_available > 0
    if not keep.any():
        return ScoreResult(None, EmptyResult("score", "no feature has a defined score"), excluded, used)

    out = feats.loc[keep].copy()
    for name in used:
        out[name] = raw[name].loc[keep]
        out[f"r_{name}"] = rank_table.loc[keep, name]
    out["n_indicators"] = n_available.loc[keep].astype("int64")
    out["score"] = rank_table.loc[keep].mean(axis=1, skipna=True)
    out["band"] = assign_bands(out["score"], bands)
    out["priority"] = out["band"] == bands

    dropped = int((~keep).sum())
    if dropped:
        logger.info("Dropped %d feature(s) with no indicator values", dropped)
    return ScoreResult(out, None, excluded, used)
