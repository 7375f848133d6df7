#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import LineString, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from geofuse.errors import ConfigurationError, EmptyInput
from geofuse.suitability.engine import (
    RasterLayer,
    compute_suitability,
    exclusion_mask,
    minmax_normalize,
)
from geofuse.suitability.grid import Grid
from geofuse.suitability.terrain import distance_to_features, slope_degrees

CRS = "EPSG:32735"


def _grid(n=4, res=1.0, crs=CRS):
    return Grid.from_bbox((0.0, 0.0, n * res, n * res), res, crs)


def _ramp(shape):
    return np.arange(shape[0] * shape[1], dtype=float).reshape(shape)


# -----------------------------------------------------------------------------
# Grid
# -----------------------------------------------------------------------------

def test_grid_from_bbox_rounds_partial_cells_up():
    g = Grid.from_bbox((0.0, 0.0, 10.5, 5.0), 1.0)
    assert g.shape == (5, 11)
    assert g.transform.c == 0.0
    assert g.transform.f == 5.0


def test_aligned_with_compares_shape_transform_and_crs():
    g = _grid(n=4, res=10.0)
    assert g.aligned_with(_grid(n=4, res=10.0))
    assert g.aligned_with(_grid(n=4, res=10.0, crs=None))
    assert not g.aligned_with(_grid(n=4, res=5.0))
    assert not g.aligned_with(Grid.from_bbox((5.0, 0.0, 45.0, 40.0), 10.0, CRS))
    assert not g.aligned_with(_grid(n=4, res=10.0, crs="EPSG:4326"))


def test_cell_centers_are_half_a_cell_in():
    xs, ys = _grid(n=2).cell_centers()
    assert xs.tolist() == [[0.5, 1.5], [0.5, 1.5]]
    assert ys.tolist() == [[1.5, 1.5], [0.5, 0.5]]


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------

def test_minmax_normalize_basic():
    out = minmax_normalize(np.array([0.0, 5.0, 10.0]))
    assert out.tolist() == [0.0, 0.5, 1.0]


def test_flat_layer_normalizes_to_zeros():
    out = minmax_normalize(np.full((3, 3), 7.0))
    assert np.array_equal(out, np.zeros((3, 3)))


def test_minmax_normalize_keeps_missing_cells():
    out = minmax_normalize(np.array([1.0, np.nan, 3.0]))
    assert out[0] == 0.0 and out[2] == 1.0
    assert np.isnan(out[1])


# -----------------------------------------------------------------------------
# compute_suitability
# -----------------------------------------------------------------------------

def test_weighted_sum_with_inversion():
    g = _grid(n=2)
    a = RasterLayer("a", np.array([[0.0, 1.0], [2.0, 3.0]]), 0.5)
    b = RasterLayer("b", np.array([[0.0, 1.0], [2.0, 3.0]]), 0.5, invert=True)
    res = compute_suitability([a, b], g)
    assert res.ok
    # a and its inverse cancel out to a constant 0.5
    assert np.allclose(res.field.values, 0.5)


def test_values_stay_in_unit_interval():
    g = _grid(n=5)
    rng = np.random.default_rng(3)
    layers = [
        RasterLayer("x", rng.normal(size=g.shape), 0.3),
        RasterLayer("y", rng.normal(size=g.shape) * 100, 0.3, invert=True),
        RasterLayer("z", rng.uniform(size=g.shape), 0.4),
    ]
    vals = compute_suitability(layers, g).field.values
    assert ((vals >= 0) & (vals <= 1)).all()


def test_flat_layer_contributes_zero():
    g = _grid(n=2)
    ramp = np.array([[0.0, 1.0], [2.0, 4.0]])
    res = compute_suitability([RasterLayer("flat", np.ones(g.shape), 0.5), RasterLayer("ramp", ramp, 0.5)], g)
    assert np.allclose(res.field.values, 0.5 * minmax_normalize(ramp))
    assert res.stats["flat"] == (1.0, 1.0)


def test_masking_does_not_change_unmasked_cells():
    g = _grid(n=4)
    layers = [RasterLayer("a", _ramp(g.shape), 0.6), RasterLayer("b", _ramp(g.shape)[::-1], 0.4, invert=True)]
    excl = gpd.GeoDataFrame(geometry=[box(0, 0, 2, 2)], crs=CRS)

    plain = compute_suitability(layers, g).field
    masked = compute_suitability(layers, g, [excl], nodata=-9999.0).field

    keep = masked.valid_mask
    assert (~keep).sum() == 4
    assert np.array_equal(masked.values[keep], plain.values[keep])
    assert (masked.values[~keep] == -9999.0).all()


def test_exclusion_uses_cell_centres():
    g = _grid(n=4)
    # covers the centres at x=1.5 but not x=0.5 in the bottom two rows
    excl = gpd.GeoDataFrame(geometry=[box(0.6, 0, 2, 2)], crs=CRS)
    mask = exclusion_mask([excl], g)
    expected = np.zeros((4, 4), dtype=bool)
    expected[2:, 1] = True
    assert np.array_equal(mask, expected)


def test_missing_cell_in_any_layer_is_nodata():
    g = _grid(n=2)
    a = np.array([[0.0, np.nan], [2.0, 3.0]])
    res = compute_suitability([RasterLayer("a", a, 0.5), RasterLayer("b", _ramp(g.shape), 0.5)], g, nodata=-1.0)
    assert res.field.values[0, 1] == -1.0
    assert res.field.valid_mask.sum() == 3


def test_weights_must_sum_to_one():
    g = _grid(n=2)
    with pytest.raises(ConfigurationError):
        compute_suitability([RasterLayer("a", _ramp(g.shape), 0.5), RasterLayer("b", _ramp(g.shape), 0.4)], g)


def test_negative_weight_rejected():
    g = _grid(n=2)
    with pytest.raises(ConfigurationError):
        compute_suitability([RasterLayer("a", _ramp(g.shape), 1.5), RasterLayer("b", _ramp(g.shape), -0.5)], g)


def test_single_layer_rejected():
    g = _grid(n=2)
    with pytest.raises(ConfigurationError):
        compute_suitability([RasterLayer("a", _ramp(g.shape), 1.0)], g)


def test_shape_mismatch_rejected():
    g = _grid(n=2)
    with pytest.raises(ConfigurationError):
        compute_suitability([RasterLayer("a", _ramp((2, 2)), 0.5), RasterLayer("b", _ramp((3, 3)), 0.5)], g)


def test_nodata_inside_unit_interval_rejected():
    g = _grid(n=2)
    layers = [RasterLayer("a", _ramp(g.shape), 0.5), RasterLayer("b", _ramp(g.shape), 0.5)]
    with pytest.raises(ConfigurationError):
        compute_suitability(layers, g, nodata=0.0)


def test_zero_cell_grid_is_empty_result():
    g = Grid.from_bbox((0.0, 0.0, 0.0, 5.0), 1.0, CRS)
    assert g.size == 0
    layers = [RasterLayer("a", np.zeros(g.shape), 0.5), RasterLayer("b", np.zeros(g.shape), 0.5)]
    res = compute_suitability(layers, g)
    assert not res.ok
    assert res.empty.stage == "grid"
    assert res.field is None


def test_layer_without_valid_cells_is_empty_result():
    g = _grid(n=3)
    layers = [RasterLayer("a", np.full(g.shape, np.nan), 0.5), RasterLayer("b", _ramp(g.shape), 0.5)]
    res = compute_suitability(layers, g)
    assert not res.ok
    assert res.empty.stage == "a"
    assert res.field is None


# -----------------------------------------------------------------------------
# Terrain helpers
# -----------------------------------------------------------------------------

def test_slope_of_unit_ramp_is_45_degrees():
    g = _grid(n=4, res=10.0)
    dem = np.tile(np.arange(4) * 10.0, (4, 1))
    assert np.allclose(slope_degrees(dem, g), 45.0)


def test_slope_of_flat_dem_is_zero():
    g = _grid(n=3, res=30.0)
    assert np.allclose(slope_degrees(np.full(g.shape, 1200.0), g), 0.0)


def test_slope_rejects_geographic_grid():
    g = _grid(n=3, res=0.01, crs="EPSG:4326")
    with pytest.raises(ConfigurationError):
        slope_degrees(np.zeros(g.shape), g)


def test_distance_to_features_from_cell_centres():
    g = Grid.from_bbox((0.0, 0.0, 3.0, 1.0), 1.0, CRS)
    road = gpd.GeoDataFrame(geometry=[LineString([(0, -10), (0, 10)])], crs=CRS)
    dist = distance_to_features(road, g)
    assert np.allclose(dist, [[0.5, 1.5, 2.5]])


def test_distance_to_no_features_raises():
    g = _grid(n=2)
    empty = gpd.GeoDataFrame(geometry=[], crs=CRS)
    with pytest.raises(EmptyInput):
        distance_to_features(empty, g)
