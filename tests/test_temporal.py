#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
from rasterio.transform import from_origin

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from econovelty.errors import ConfigurationError
from econovelty.grid.store import ActiveCells, Grid, active_cells
from econovelty.novelty import temporal as tp


YEARS = [-20000.0, -15000.0, -10000.0, -5000.0, 0.0]


def _cells(*series) -> np.ndarray:
    """(H, n) array from one time series per cell."""
    return np.array(series, dtype="float64").T


def _stack(series_by_cell, shape=(2, 2)) -> np.ndarray:
    """(T, rows, cols) stack from one series per cell in row-major order."""
    arr = np.array(series_by_cell, dtype="float64").T
    return arr.reshape((arr.shape[0],) + shape)


def test_flat_triplet_above_baseline_has_magnitude_ten():
    hist = _cells([20] * 5, [10] * 5)
    base = _cells([10, 10, 10], [10, 10, 10])
    novel, magnitude, direction = tp.novelty_flags(hist, base)
    assert novel[1:-1, 0].all()
    assert np.allclose(magnitude[1:-1, 0], 10.0)
    assert (direction[1:-1, 0] == 1).all()
    # equal to the baseline is never novel
    assert not novel[:, 1].any()
    assert np.isnan(magnitude[:, 1]).all()


def test_below_baseline_magnitude_is_distance_from_min():
    novel, magnitude, direction = tp.novelty_flags(_cells([0] * 5), _cells([5, 6, 7]))
    assert novel[1:-1, 0].all()
    assert np.allclose(magnitude[1:-1, 0], 5.0)
    assert (direction[1:-1, 0] == -1).all()


def test_endpoints_are_never_evaluated():
    novel, _, _ = tp.novelty_flags(_cells([99, 0, 0, 0, 99]), _cells([1, 2, 3]))
    assert not novel[0].any() and not novel[-1].any()


def test_tolerance_widens_the_triplet():
    hist = _cells([20, 11, 20])
    base = _cells([8, 9, 10])
    assert tp.novelty_flags(hist, base)[0][1, 0]
    assert tp.novelty_flags(hist, base, k=1.0)[0][1, 0]
    # mean - 2 sd drops below the baseline max
    assert not tp.novelty_flags(hist, base, k=2.0)[0][1, 0]


def test_walk_back_modes():
    novel = np.zeros((6, 2), dtype=bool)
    novel[2, 0] = True                 # isolated old novelty
    novel[[1, 3, 4], 1] = True         # run 3-4 near the present, a gap, then 1
    assert tp.walk_back(novel, "earliest").tolist() == [2, 1]
    assert tp.walk_back(novel, "contiguous").tolist() == [-1, 3]
    with pytest.raises(ConfigurationError, match="walk mode"):
        tp.walk_back(novel, "latest")


def test_detect_novelty_floor_and_missing_cells():
    hist = _stack([[20] * 5, [10] * 5, [20, 20, np.nan, 20, 20], [20] * 5])
    base = _stack([[10] * 3] * 4)
    active = ActiveCells(np.array([0, 1, 2]), (2, 2))  # cell 3 inactive
    year, magnitude, direction = tp.detect_novelty(hist, YEARS, base, active)

    assert year[0, 0] == -15000.0        # oldest evaluable step
    assert magnitude[0, 0] == 10.0 and direction[0, 0] == 1
    assert year[0, 1] == YEARS[0]        # never novel -> stable floor
    assert np.isnan(magnitude[0, 1])
    assert np.isnan(year[1, 0])          # incomplete series
    assert np.isnan(year[1, 1])          # inactive


def test_detect_novelty_explicit_floor():
    hist = _stack([[10] * 5] * 4)
    base = _stack([[10] * 3] * 4)
    active = ActiveCells(np.arange(4), (2, 2))
    year, _, _ = tp.detect_novelty(hist, YEARS, base, active, floor=-50000)
    assert (year == -50000).all()


def test_novelty_year_stays_in_range_or_floor():
    rng = np.random.default_rng(3)
    hist = rng.normal(0, 3, size=(5, 6, 6))
    base = rng.normal(0, 1, size=(4, 6, 6))
    t = from_origin(0, 6, 1, 1)
    ref = Grid(np.where(rng.random((6, 6)) < 0.8, 1.0, np.nan), t)
    result = tp.detect_from_grids(
        [Grid(h, t) for h in hist], YEARS, [Grid(b, t) for b in base], ref, k=0.5, name="tas",
    )
    years = result.year.values[ref.valid]
    assert np.isin(years, YEARS).all()
    assert np.isnan(result.year.values[~ref.valid]).all()
    assert result.year.name == "tas_year"


def test_detect_novelty_rejects_bad_inputs():
    active = active_cells(Grid(np.ones((2, 2)), from_origin(0, 2, 1, 1)))
    hist = np.zeros((5, 2, 2))
    with pytest.raises(ConfigurationError, match="at least 3"):
        tp.detect_novelty(hist, YEARS, np.zeros((2, 2, 2)), active)
    with pytest.raises(ConfigurationError, match="strictly increasing"):
        tp.detect_novelty(hist, YEARS[::-1], np.zeros((3, 2, 2)), active)
    with pytest.raises(ConfigurationError, match="years"):
        tp.detect_novelty(hist, YEARS[:3], np.zeros((3, 2, 2)), active)
    with pytest.raises(ConfigurationError, match="k must be"):
        tp.detect_novelty(hist, YEARS, np.zeros((3, 2, 2)), active, k=-1)


def test_years_from_bp():
    assert tp.years_from_bp([0, 1950, 21000]).tolist() == [1950.0, 0.0, -19050.0]


def test_order_series_sorts_oldest_first():
    paths = [Path("tas_6000BP.tif"), Path("tas_21000BP.tif"), Path("tas_12000BP.tif")]
    ordered, years = tp.order_series(paths, r"(\d+)BP", "bp")
    assert [p.name for p in ordered] == ["tas_21000BP.tif", "tas_12000BP.tif", "tas_6000BP.tif"]
    assert years.tolist() == [-19050.0, -10050.0, -4050.0]


def test_order_series_errors():
    with pytest.raises(ConfigurationError, match="Cannot read a year"):
        tp.order_series([Path("tas_modern.tif")], r"(\d+)BP", "bp")
    with pytest.raises(ConfigurationError, match="Duplicate"):
        tp.order_series([Path("a_100.tif"), Path("b_100.tif")])
    with pytest.raises(ConfigurationError, match="time axis"):
        tp.order_series([Path("a_100.tif")], time_axis="ka")
