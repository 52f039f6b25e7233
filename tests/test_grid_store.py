#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import GeometryCollection, LineString, Point, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from econovelty.errors import ConfigurationError
from econovelty.grid import store


def _grid(values, res=1.0, name="g") -> store.Grid:
    values = np.asarray(values, dtype="float64")
    top = values.shape[0] * res
    return store.Grid(values, from_origin(0.0, top, res, res), "EPSG:4326", name)


def test_grid_values_are_read_only_copies():
    src = np.arange(4.0).reshape(2, 2)
    g = _grid(src)
    src[0, 0] = 99
    assert g.values[0, 0] == 0
    with pytest.raises(ValueError):
        g.values[0, 0] = 1


def test_grid_bounds_and_valid():
    g = _grid([[1, np.nan], [3, 4]])
    assert g.bounds == (0.0, 0.0, 2.0, 2.0)
    assert g.valid.tolist() == [[True, False], [True, True]]


def test_with_values_shape_mismatch():
    with pytest.raises(ConfigurationError, match="shape"):
        _grid(np.zeros((2, 2))).with_values(np.zeros((3, 3)))


def test_require_aligned_detects_different_transform():
    a = _grid(np.zeros((2, 2)))
    b = _grid(np.zeros((2, 2)), res=2.0)
    store.require_aligned(a, _grid(np.ones((2, 2))))
    with pytest.raises(ConfigurationError, match="not aligned"):
        store.require_aligned(a, b)


def test_active_cells_order_and_scatter():
    ref = _grid([[1, np.nan], [np.nan, 4]])
    active = store.active_cells(ref)
    assert len(active) == 2
    assert active.gather(ref.values).tolist() == [1.0, 4.0]
    stack = np.stack([ref.values, ref.values * 10])
    assert active.gather(stack).shape == (2, 2)
    out = active.scatter(np.array([7.0, 8.0]))
    assert out[0, 0] == 7.0 and out[1, 1] == 8.0
    assert np.isnan(out[0, 1])


def test_write_then_load_keeps_missing(tmp_path):
    g = _grid([[1.5, np.nan], [3, 4]], name="layer")
    path = store.write(g, tmp_path / "layer.tif")
    back = store.load(path)
    assert back.aligned_with(g)
    assert np.isnan(back.values[0, 1])
    assert back.values[0, 0] == pytest.approx(1.5)


def test_write_skips_existing(tmp_path, capsys):
    path = tmp_path / "g.tif"
    store.write(_grid(np.zeros((2, 2))), path)
    store.write(_grid(np.ones((2, 2))), path)
    assert "[SKIP]" in capsys.readouterr().out
    assert store.load(path).values.sum() == 0


def test_load_stack_requires_one_grid(tmp_path):
    a = store.write(_grid(np.zeros((2, 2)), name="a"), tmp_path / "a.tif")
    b = store.write(_grid(np.ones((2, 2)), name="b"), tmp_path / "b.tif")
    grids = store.load_stack([a, b], reference=_grid(np.zeros((2, 2))))
    assert [g.name for g in grids] == ["a", "b"]
    assert grids[1].values.sum() == 4

    c = store.write(_grid(np.zeros((2, 2)), res=2.0, name="c"), tmp_path / "c.tif")
    with pytest.raises(ConfigurationError, match="not aligned"):
        store.load_stack([a, c])


def test_load_missing_raster(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        store.load(tmp_path / "missing.tif")


def test_resample_nearest_to_finer_grid():
    coarse = _grid([[1, 2], [3, 4]], res=2.0)
    fine = _grid(np.zeros((4, 4)), res=1.0)
    out = store.resample(coarse, fine, "nearest")
    assert out.aligned_with(fine)
    assert np.array_equal(out.values, np.kron([[1, 2], [3, 4]], np.ones((2, 2))))


def test_resample_exact_requires_alignment():
    with pytest.raises(ConfigurationError):
        store.resample(_grid(np.zeros((2, 2)), res=2.0), _grid(np.zeros((4, 4))), "exact")
    with pytest.raises(ConfigurationError, match="Unknown resampling"):
        store.resample(_grid(np.zeros((2, 2))), _grid(np.zeros((2, 2))), "cubic")


def test_bounds_to_slices_clips_to_grid():
    t = from_origin(0.0, 4.0, 1.0, 1.0)
    assert store.bounds_to_slices((1.2, 0.5, 2.5, 3.0), t, (4, 4)) == (slice(1, 4), slice(1, 3))
    assert store.bounds_to_slices((-10, -10, 10, 10), t, (4, 4)) == (slice(0, 4), slice(0, 4))
    assert store.bounds_to_slices((10, 10, 12, 12), t, (4, 4)) is None


def test_coverage_fraction_full_and_half_cells():
    ref = _grid(np.zeros((4, 4)))
    full = store.coverage_fraction(box(0, 3, 1, 4), ref).values
    assert full[0, 0] == pytest.approx(1.0)
    assert full.sum() == pytest.approx(1.0)
    half = store.coverage_fraction(box(0, 3, 0.5, 4), ref).values
    assert half[0, 0] == pytest.approx(0.5)


def test_majority_mask_is_union_of_majority_cells():
    ref = _grid(np.zeros((4, 4)))
    geoms = [box(0, 3, 2, 4), box(2, 0, 2.3, 1), None]
    mask = store.majority_mask(geoms, ref)
    assert mask.sum() == 2
    assert mask[0, 0] and mask[0, 1]
    assert not mask[3, 2]


def test_majority_mask_adds_up_adjacent_geometries():
    ref = _grid(np.zeros((2, 2)))
    # each strip covers 0.4 of cell (0, 0); together 0.8
    west = box(0, 1, 0.4, 2)
    east = box(0.4, 1, 0.8, 2)
    assert not store.majority_mask([west], ref).any()
    mask = store.majority_mask([west, east], ref)
    assert mask.tolist() == [[True, False], [False, False]]


def test_majority_mask_overlap_is_not_double_counted():
    ref = _grid(np.zeros((2, 2)))
    strip = box(0, 1, 0.3, 2)
    assert not store.majority_mask([strip, strip, box(0.1, 1, 0.3, 2)], ref).any()


def test_polygonal_part_drops_lines_and_points():
    poly = box(0, 0, 1, 1)
    mixed = GeometryCollection([poly, LineString([(1, 1), (2, 2)]), Point(5, 5)])
    assert store.polygonal_part(mixed).equals(poly)
    assert store.polygonal_part(poly) is poly
    assert store.polygonal_part(LineString([(0, 0), (1, 1)])) is None
    assert store.polygonal_part(GeometryCollection()) is None
    assert store.polygonal_part(None) is None


def test_add_coverage_only_touches_the_geometry_window():
    ref = _grid(np.zeros((4, 4)))
    cover = np.full((4, 4), 0.25)
    store.add_coverage(cover, box(1, 2, 2, 3), ref)
    assert cover[1, 1] == pytest.approx(1.25)
    assert cover.sum() == pytest.approx(16 * 0.25 + 1.0)
