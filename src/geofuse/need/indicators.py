#!/usr/bin/env python3
"""indicators.py

Indicator tables: period selection, granularity resolution, and the join onto
feature keys.

An indicator table is a long table as delivered by a statistics provider:

    key     period  value   [dimension columns: sex, age, unit, ...]
    DE111   2019    212.4
    DE111   2021    215.0
    DE11    2022    18.3     <- coarser unit (e.g. NUTS-2)

Each indicator is handled on its own:
- dimension filters pick one series out of a multi-dimension table
- the most recent period is selected per key, independently per indicator
  (indicators don't have to share a reference period)
- indicators published at a coarser level join through a declared truncation
  rule (prefix length or callable), never an inferred one
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import geopandas as gpd
import pandas as pd

from geofuse.config import as_list, require_keys, resolve_path
from geofuse.errors import ConfigurationError, GranularityMismatch, IndicatorError
from geofuse.vectors import KEY, normalize_key, read_table


Granularity = Union[None, str, int, Callable[[str], str]]


@dataclass
class IndicatorSpec:
    """One indicator source.

    granularity:
        None      -> same level as the feature keys
        str       -> tag looked up in the granularity rules ("nuts2" -> 4 chars)
        int       -> explicit prefix length
        callable  -> explicit key -> coarse-key rule
    reverse:
        invert the rank (higher raw value -> lower normalized score)
    period_column:
        None means the table already holds one value per key
    """

    name: str
    table: pd.DataFrame
    granularity: Granularity = None
    reverse: bool = False
    key_column: str = KEY
    value_column: str = "value"
    period_column: Optional[str] = "period"
    filters: Optional[Dict[str, Any]] = None


# -----------------------------------------------------------------------------
# Granularity
# -----------------------------------------------------------------------------

def _prefix_rule(n: int) -> Callable[[str], str]:
    def truncate(key: str) -> str:
        return key[:n]
    return truncate


def resolve_granularity(
    granularity: Granularity,
    rules: Dict[str, int],
    indicator: str = "?",
) -> Optional[Callable[[str], str]]:
    """Turn a declared granularity into a key -> coarse-key function.

    Returns None when the indicator sits at the features' own level.
    Raises GranularityMismatch for a tag with no rule.
    """
    if granularity is None:
        return None
    if callable(granularity):
        return granularity
    if isinstance(granularity, bool):
        raise ConfigurationError(f"Indicator '{indicator}': granularity must be a tag, length, or callable")
    if isinstance(granularity, int):
        if granularity <= 0:
            raise ConfigurationError(f"Indicator '{indicator}': prefix length must be positive, got {granularity}")
        return _prefix_rule(granularity)
    tag = str(granularity).strip().lower()
    lengths = {str(k).strip().lower(): v for k, v in rules.items()}
    if tag not in lengths:
        raise GranularityMismatch(indicator, str(granularity))
    return _prefix_rule(int(lengths[tag]))


# -----------------------------------------------------------------------------
# Table hygiene
# -----------------------------------------------------------------------------

def _require_columns(table: pd.DataFrame, columns: List[str], indicator: str) -> None:
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise IndicatorError(
            f"Indicator '{indicator}' table is missing columns {missing}. "
            f"Available columns: {list(table.columns)}"
        )


def apply_filters(
    table: pd.DataFrame,
    filters: Optional[Dict[str, Any]],
    indicator: str = "?",
) -> pd.DataFrame:
    """Keep rows matching every `column: value | [values]` filter."""
    if not filters:
        return table
    _require_columns(table, list(filters), indicator)
    mask = pd.Series(True, index=table.index)
    for column, wanted in filters.items():
        values = [str(v) for v in as_list(wanted)]
        mask &= table[column].astype(str).isin(values)
    return table[mask]


def select_latest_period(
    table: pd.DataFrame,
    *,
    key_column: str = KEY,
    value_column: str = "value",
    period_column: Optional[str] = "period",
    indicator: str = "?",
) -> pd.Series:
    """Return one value per key: the one from the most recent period.

    Rows with a missing key or a non-numeric/missing value are dropped first,
    so "most recent" means most recent *available*. Values from different
    periods are never averaged.

    Raises IndicatorError when a (key, period) pair holds more than one value.
    """
    columns = [key_column, value_column] + ([period_column] if period_column else [])
    _require_columns(table, columns, indicator)

    df = table[columns].copy()
    df[key_column] = df[key_column].apply(normalize_key)
    df[value_column] = pd.to_numeric(df[value_column], errors="coerce")
    df = df[(df[key_column] != "") & df[value_column].notna()]
    if period_column:
        df = df[df[period_column].notna()]

    by = [key_column, period_column] if period_column else [key_column]
    dupes = df.duplicated(subset=by, keep=False)
    if dupes.any():
        sample = df.loc[dupes, by].drop_duplicates().head(5).values.tolist()
        raise IndicatorError(
            f"Indicator '{indicator}' has more than one value per {tuple(by)}: {sample}. "
            "Add dimension filters to pick a single series."
        )

    if period_column:
        df = df.sort_values([key_column, period_column], kind="mergesort")
        df = df.drop_duplicates(subset=[key_column], keep="last")
    return df.set_index(key_column)[value_column].astype(float)


# -----------------------------------------------------------------------------
# Join
# -----------------------------------------------------------------------------

def join_indicator(
    features: gpd.GeoDataFrame,
    spec: IndicatorSpec,
    rules: Dict[str, int],
) -> pd.Series:
    """Join one indicator onto the feature keys.

    Returns a float Series aligned to `features.index`; features with no value
    hold NaN. Coarse indicators join on the truncated feature key.
    """
    rule = resolve_granularity(spec.granularity, rules, spec.name)
    table = apply_filters(spec.table, spec.filters, spec.name)
    latest = select_latest_period(
        table,
        key_column=spec.key_column,
        value_column=spec.value_column,
        period_column=spec.period_column,
        indicator=spec.name,
    )
    join_keys = features[KEY] if rule is None else features[KEY].map(rule)
    return join_keys.map(latest).astype(float).rename(spec.name)


# -----------------------------------------------------------------------------
# Config -> specs
# -----------------------------------------------------------------------------

def load_indicator_specs(section: Dict[str, Any], base_dir: Optional[Path] = None) -> List[IndicatorSpec]:
    """Build IndicatorSpecs from the `need.indicators` list of a run config.

    Each entry:
        name: unemp
        path: data/raw/lfst_r_lfu3rt.csv
        key_column: geo
        value_column: values
        period_column: year
        granularity: nuts2      # optional
        reverse: false          # optional
        filters: {sex: T, age: Y15-74, unit: PC_ACT}   # optional
    """
    entries = section.get("indicators")
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("need: must have a non-empty 'indicators:' list.")

    specs: List[IndicatorSpec] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"need.indicators[{i}] must be a mapping")
        require_keys(entry, ["name", "path"], f"need.indicators[{i}]")
        table = read_table(resolve_path(entry["path"], base_dir))
        specs.append(
            IndicatorSpec(
                name=str(entry["name"]),
                table=table,
                granularity=entry.get("granularity"),
                reverse=bool(entry.get("reverse", False)),
                key_column=str(entry.get("key_column", KEY)),
                value_column=str(entry.get("value_column", "value")),
                period_column=entry.get("period_column", "period"),
                filters=entry.get("filters"),
            )
        )
    return specs
