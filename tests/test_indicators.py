#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from geofuse.config import DEFAULT_GRANULARITY_RULES
from geofuse.errors import ConfigurationError, GranularityMismatch, IndicatorError
from geofuse.need.indicators import (
    IndicatorSpec,
    apply_filters,
    join_indicator,
    load_indicator_specs,
    resolve_granularity,
    select_latest_period,
)


def _features(keys):
    return gpd.GeoDataFrame({"key": keys}, geometry=[box(i, 0, i + 1, 1) for i in range(len(keys))])


def test_latest_period_per_key():
    table = pd.DataFrame({
        "key": ["A", "A", "A", "B"],
        "period": [2019, 2021, 2020, 2018],
        "value": [1.0, 3.0, 2.0, 9.0],
    })
    latest = select_latest_period(table)
    assert latest.to_dict() == {"A": 3.0, "B": 9.0}


def test_latest_available_period_skips_missing_values():
    table = pd.DataFrame({
        "key": ["A", "A"],
        "period": [2020, 2021],
        "value": ["4.5", ":"],  # ":" is the provider's missing marker
    })
    assert select_latest_period(table).to_dict() == {"A": 4.5}


def test_duplicate_key_period_raises():
    table = pd.DataFrame({"key": ["A", "A"], "period": [2021, 2021], "value": [1.0, 2.0]})
    with pytest.raises(IndicatorError):
        select_latest_period(table, indicator="unemp")


def test_no_period_column_means_one_value_per_key():
    table = pd.DataFrame({"code": ["a", "b"], "v": [1, 2]})
    latest = select_latest_period(table, key_column="code", value_column="v", period_column=None)
    assert latest.to_dict() == {"A": 1.0, "B": 2.0}


def test_missing_columns_raise():
    with pytest.raises(IndicatorError):
        select_latest_period(pd.DataFrame({"geo": ["A"], "value": [1]}))


def test_filters_pick_one_series():
    table = pd.DataFrame({
        "key": ["A", "A", "B", "B"],
        "period": [2021] * 4,
        "sex": ["T", "F", "T", "F"],
        "value": [5.0, 6.0, 7.0, 8.0],
    })
    picked = apply_filters(table, {"sex": "T"})
    assert picked["value"].tolist() == [5.0, 7.0]
    assert select_latest_period(picked).to_dict() == {"A": 5.0, "B": 7.0}


def test_resolve_granularity_forms():
    rules = DEFAULT_GRANULARITY_RULES
    assert resolve_granularity(None, rules) is None
    assert resolve_granularity("NUTS2", rules)("DE111") == "DE11"
    assert resolve_granularity(2, rules)("DE111") == "DE"
    assert resolve_granularity(lambda k: k[:3], rules)("DE111") == "DE1"


def test_unknown_granularity_tag_is_mismatch():
    with pytest.raises(GranularityMismatch) as exc:
        resolve_granularity("county", DEFAULT_GRANULARITY_RULES, "arope")
    assert exc.value.indicator == "arope"
    assert exc.value.granularity == "county"


def test_non_positive_prefix_length_rejected():
    with pytest.raises(ConfigurationError):
        resolve_granularity(0, DEFAULT_GRANULARITY_RULES)


def test_join_indicator_leaves_unmatched_missing():
    feats = _features(["DE111", "DE121", "FR101"])
    table = pd.DataFrame({"key": ["DE11", "DE12"], "period": [2022, 2022], "value": [20.0, 30.0]})
    joined = join_indicator(feats, IndicatorSpec("arope", table, granularity="nuts2"), DEFAULT_GRANULARITY_RULES)
    assert joined.iloc[:2].tolist() == [20.0, 30.0]
    assert pd.isna(joined.iloc[2])
    assert joined.name == "arope"


def test_load_indicator_specs_from_config(tmp_path):
    (tmp_path / "unemp.csv").write_text("geo,year,values\nDE11,2021,3.1\n", encoding="utf-8")
    section = {
        "indicators": [
            {
                "name": "unemp",
                "path": "unemp.csv",
                "key_column": "geo",
                "value_column": "values",
                "period_column": "year",
                "granularity": "nuts2",
                "reverse": True,
            }
        ]
    }
    (spec,) = load_indicator_specs(section, tmp_path)
    assert spec.name == "unemp"
    assert spec.reverse is True
    assert spec.table["geo"].tolist() == ["DE11"]


def test_load_indicator_specs_requires_list():
    with pytest.raises(ConfigurationError):
        load_indicator_specs({"indicators": []})
