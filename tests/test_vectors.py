#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from geofuse.errors import ConfigurationError
from geofuse import vectors as vx


def test_normalize_key_strings_and_numbers():
    assert vx.normalize_key(" de111 ") == "DE111"
    assert vx.normalize_key("DE111") == "DE111"
    assert vx.normalize_key(7) == "7"
    assert vx.normalize_key(7.0) == "7"


def test_normalize_key_emptyish_inputs():
    assert vx.normalize_key(None) == ""
    assert vx.normalize_key("") == ""
    assert vx.normalize_key(" ") == ""
    assert vx.normalize_key(float("nan")) == ""


def test_ensure_keys_renames_and_normalizes():
    gdf = gpd.GeoDataFrame({"NUTS_ID": ["de111", "DE112 "]}, geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)])
    out = vx.ensure_keys(gdf, "NUTS_ID")
    assert out["key"].tolist() == ["DE111", "DE112"]
    assert "NUTS_ID" not in out.columns
    # input untouched
    assert gdf["NUTS_ID"].tolist() == ["de111", "DE112 "]


def test_ensure_keys_rejects_duplicates_after_normalizing():
    gdf = gpd.GeoDataFrame({"key": ["de111", "DE111"]}, geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)])
    with pytest.raises(ValueError):
        vx.ensure_keys(gdf)


def test_ensure_keys_rejects_missing_keys():
    gdf = gpd.GeoDataFrame({"key": ["DE111", None]}, geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)])
    with pytest.raises(ValueError):
        vx.ensure_keys(gdf)


def test_make_valid_repairs_bowtie():
    bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])
    gdf = gpd.GeoDataFrame({"id": [1]}, geometry=[bowtie], crs="EPSG:32735")
    assert not gdf.geometry.is_valid.all()
    out = vx.make_valid(gdf)
    assert out.geometry.is_valid.all()
    assert out.geometry.area.iloc[0] == pytest.approx(2.0)


def test_make_valid_drops_empty_geometries():
    gdf = gpd.GeoDataFrame({"id": [1, 2]}, geometry=[box(0, 0, 1, 1), Polygon()], crs="EPSG:32735")
    assert vx.make_valid(gdf)["id"].tolist() == [1]


def test_require_planar_rejects_degrees_and_missing_crs():
    geo = gpd.GeoDataFrame(geometry=[box(28, -15, 28.1, -14.9)], crs="EPSG:4326")
    with pytest.raises(ConfigurationError):
        vx.require_planar(geo)
    with pytest.raises(ConfigurationError):
        vx.require_planar(gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)]))


def test_planar_area_in_square_metres():
    gdf = gpd.GeoDataFrame(geometry=[box(0, 0, 40, 25)], crs="EPSG:32735")
    assert vx.planar_area(gdf).tolist() == [1000.0]


def test_align_crs_reprojects_reference():
    ref = gpd.GeoDataFrame(geometry=[box(28.0, -15.5, 28.01, -15.49)], crs="EPSG:4326")
    target = gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)], crs="EPSG:32735")
    assert vx.align_crs(ref, target).crs == target.crs


def test_write_features_with_qa_csv(tmp_path):
    gdf = gpd.GeoDataFrame({"key": ["A"], "score": [0.5]}, geometry=[box(0, 0, 1, 1)], crs="EPSG:32735")
    out_gpkg = tmp_path / "out" / "scored.gpkg"
    qa_csv = tmp_path / "out" / "scored.csv"
    written = vx.write_features(gdf, out_gpkg, layer="scored", target_crs="EPSG:4326", qa_csv=qa_csv)

    assert out_gpkg.exists()
    assert written.crs.to_epsg() == 4326
    assert qa_csv.read_text().splitlines()[0] == "key,score"
    back = vx.read_features(out_gpkg, layer="scored", key_column="key")
    assert back["key"].tolist() == ["A"]


def test_read_features_missing_file_exits(tmp_path):
    with pytest.raises(SystemExit):
        vx.read_features(tmp_path / "nope.gpkg")


def test_read_table_parquet(tmp_path):
    pytest.importorskip("pyarrow")
    table = pd.DataFrame({"key": ["DE111", "DE112"], "period": [2021, 2022], "value": [1.5, 2.5]})
    table.to_parquet(tmp_path / "unemp.parquet", index=False)
    back = vx.read_table(tmp_path / "unemp.parquet")
    assert back["key"].tolist() == ["DE111", "DE112"]
    assert back["value"].tolist() == [1.5, 2.5]


def test_read_table_csv(tmp_path):
    (tmp_path / "unemp.csv").write_text("key,period,value\nDE111,2021,1.5\n")
    assert vx.read_table(tmp_path / "unemp.csv")["value"].tolist() == [1.5]
