#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin
from shapely.geometry import GeometryCollection, LineString, Point, Polygon, box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from econovelty.errors import ConfigurationError
from econovelty.grid import store
from econovelty.grid.store import Grid
from econovelty.randomize import engine as en
from econovelty.regions.classify import LabelGrid
from econovelty.registry import prep_geometries as pg


T = from_origin(0, 10, 1, 1)
CRS = "EPSG:4326"
CATEGORIES = ("Tropical", "Arid")

# Tropical = columns 0-4, Arid = columns 5-9
PA_TROP = box(1, 6, 3, 8)     # 4 Tropical cells (rows 2-3, cols 1-2)
PA_SPLIT = box(4, 0, 6, 2)    # 2 Tropical + 2 Arid cells (rows 8-9, cols 4-5)
PA_ARID = box(6, 4, 8, 6)     # 4 Arid cells (rows 4-5, cols 6-7)


def _inputs(arid_candidates=None) -> en.EngineInputs:
    codes = np.zeros((10, 10), dtype="int32")
    codes[:, 5:] = 1
    labels = LabelGrid(codes, CATEGORIES, T, None, "climate")
    ref = Grid(np.ones((10, 10)), T, CRS, "reference")

    protected = en.build_protected_mask([PA_TROP, PA_SPLIT, PA_ARID], ref)
    if arid_candidates is not None:
        protected[:, 5:] = True
        protected[0, 7:7 + arid_candidates] = False

    rng = np.random.default_rng(5)
    base = np.where(protected, 100.0, rng.random((10, 10)))
    metrics = {
        "climate": ref.with_values(base, name="climate"),
        "total": ref.with_values(base / 2, name="total"),
    }
    return en.build_inputs(metrics, labels, protected)


class RecordingRng:
    """Delegates to a real Generator and remembers every choice() call."""

    def __init__(self, seed):
        self._rng = np.random.default_rng(seed)
        self.calls = []

    def choice(self, a, size=None, replace=True):
        self.calls.append((a, size, replace))
        return self._rng.choice(a, size=size, replace=replace)


def test_settings_validation_and_config():
    s = en.RandomizationSettings.from_config({"n_trials": "200", "seed": 7, "workers": 0})
    assert (s.n_trials, s.seed, s.workers, s.expand_factor) == (200, 7, 0, 10.0)
    with pytest.raises(ConfigurationError):
        en.RandomizationSettings(n_trials=0)
    with pytest.raises(ConfigurationError):
        en.RandomizationSettings(coverage_threshold=1.5)


def test_build_protected_mask_marks_polygon_cells():
    inputs = _inputs()
    assert inputs.protected.sum() == 12
    assert inputs.protected[2:4, 1:3].all()
    assert inputs.active.all()
    with pytest.raises(ValueError):
        inputs.protected[0, 0] = True


def test_build_inputs_active_excludes_missing_metric_cells():
    labels = LabelGrid(np.zeros((10, 10)), CATEGORIES, T)
    vals = np.ones((10, 10))
    vals[0, 0] = np.nan
    inputs = en.build_inputs({"m": Grid(vals, T)}, labels, np.zeros((10, 10), dtype=bool))
    assert inputs.active.sum() == 99
    with pytest.raises(ConfigurationError):
        en.build_inputs({}, labels, np.zeros((10, 10), dtype=bool))


def test_observed_trial_is_inside_mean_and_trials_have_size_n():
    inputs = _inputs()
    settings = en.RandomizationSettings(n_trials=1000, seed=1)
    rng = RecordingRng(1)
    out = en.evaluate_polygon("PA_trop", PA_TROP, inputs, settings, rng=rng)

    observed = out[out["status"] == en.STATUS_OBSERVED]
    assert len(observed) == 1
    assert observed["region"].iloc[0] == "Tropical"
    assert observed["n_cells"].iloc[0] == 4
    assert observed["n_candidates"].iloc[0] == 44   # 50 Tropical cells, 6 protected
    assert observed["climate"].iloc[0] == pytest.approx(inputs.metrics["climate"][2:4, 1:3].mean())

    trials = out[out["status"] == en.STATUS_TRIAL]
    assert trials["trial"].tolist() == list(range(1, 1001))
    assert len(rng.calls) == 1000
    assert all(size == 4 and replace is False for _, size, replace in rng.calls)
    # protected cells (value 100) are never drawn
    assert (trials["climate"] < 1.0).all()


def test_polygon_spanning_regions_gets_one_unit_per_region():
    out = en.evaluate_polygon("PA_split", PA_SPLIT, _inputs(), en.RandomizationSettings(n_trials=5))
    units = out[out["status"] == en.STATUS_OBSERVED]
    assert units["region"].tolist() == ["Tropical", "Arid"]
    assert units["n_cells"].tolist() == [2, 2]
    assert len(out) == 2 * (1 + 5)


def test_too_few_candidates_is_infeasible():
    inputs = _inputs(arid_candidates=3)
    out = en.evaluate_polygon("PA_arid", PA_ARID, inputs, en.RandomizationSettings(n_trials=10))
    assert len(out) == 1
    row = out.iloc[0]
    assert row["status"] == en.STATUS_INFEASIBLE
    assert row["region"] == "Arid"
    assert row["n_cells"] == 4 and row["n_candidates"] == 3
    assert pd.isna(row["trial"])
    assert np.isnan(row["climate"]) and np.isnan(row["total"])


def test_exactly_enough_candidates_is_feasible():
    inputs = _inputs(arid_candidates=3)
    arid_three = box(6, 4, 9, 5)   # 3 cells
    out = en.evaluate_polygon("PA_three", arid_three, inputs, en.RandomizationSettings(n_trials=3))
    assert (out["status"] == en.STATUS_INFEASIBLE).sum() == 0
    # every trial uses all three candidates, so every trial mean is the same
    trials = out[out["status"] == en.STATUS_TRIAL]
    assert np.allclose(trials["climate"], trials["climate"].iloc[0])


def test_no_overlap_and_no_cells():
    inputs = _inputs()
    settings = en.RandomizationSettings(n_trials=5)
    far = en.evaluate_polygon("far", box(50, 50, 51, 51), inputs, settings)
    assert far["status"].tolist() == [en.STATUS_NO_OVERLAP]
    sliver = en.evaluate_polygon("sliver", box(1.1, 1.1, 1.2, 1.2), inputs, settings)
    assert sliver["status"].tolist() == [en.STATUS_NO_CELLS]
    assert pd.isna(sliver["region"].iloc[0])


def test_geometry_without_area_gives_no_cells_row():
    settings = en.RandomizationSettings(n_trials=5)
    for geom in (Point(1, 1), LineString([(1, 1), (3, 3)]), None):
        out = en.evaluate_polygon("pt", geom, _inputs(), settings)
        assert out["status"].tolist() == [en.STATUS_NO_CELLS]


def test_collection_is_reduced_to_its_polygon():
    inputs = _inputs()
    settings = en.RandomizationSettings(n_trials=20, seed=3)
    mixed = GeometryCollection([PA_TROP, LineString([(1, 6), (0.5, 5.5)])])
    pd.testing.assert_frame_equal(
        en.evaluate_polygon("PA_trop", mixed, inputs, settings),
        en.evaluate_polygon("PA_trop", PA_TROP, inputs, settings),
    )


def test_polygon_rng_is_stable_per_polygon():
    a = en.polygon_rng(42, "PA_1").random(5)
    b = en.polygon_rng(42, "PA_1").random(5)
    c = en.polygon_rng(42, "PA_2").random(5)
    assert np.array_equal(a, b)
    assert not np.array_equal(a, c)


def _polygons() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"polygon_id": ["PA_split", "PA_trop", "far", "PA_arid"]},
        geometry=[PA_SPLIT, PA_TROP, box(50, 50, 51, 51), PA_ARID],
        crs=CRS,
    )


def test_run_randomization_sorted_output():
    trials = en.run_randomization(_polygons(), _inputs(), en.RandomizationSettings(n_trials=4), verbose=False)
    assert list(trials.columns) == en.META_COLUMNS + ["climate", "total"]
    assert trials["polygon_id"].drop_duplicates().tolist() == ["PA_arid", "PA_split", "PA_trop", "far"]
    split = trials[trials["polygon_id"] == "PA_split"]
    assert split["region"].tolist() == ["Tropical"] * 5 + ["Arid"] * 5
    assert split["trial"].tolist() == [0, 1, 2, 3, 4] * 2


def test_results_do_not_depend_on_worker_count():
    inputs = _inputs()
    one = en.run_randomization(_polygons(), inputs, en.RandomizationSettings(n_trials=50, seed=9, workers=1),
                               verbose=False)
    two = en.run_randomization(_polygons(), inputs, en.RandomizationSettings(n_trials=50, seed=9, workers=2),
                               verbose=False)
    pd.testing.assert_frame_equal(one, two)


def test_run_randomization_rejects_duplicate_ids():
    polys = _polygons()
    polys.loc[1, "polygon_id"] = "PA_split"
    with pytest.raises(ConfigurationError, match="Duplicate"):
        en.run_randomization(polys, _inputs(), en.RandomizationSettings(n_trials=2), verbose=False)


def test_resolve_workers_bounded_by_cores():
    assert 1 <= en.resolve_workers(0)
    assert en.resolve_workers(1) == 1
    assert en.resolve_workers(10_000) <= 10_000


def test_write_and_read_trials(tmp_path):
    trials = en.run_randomization(_polygons(), _inputs(), en.RandomizationSettings(n_trials=2), verbose=False)
    for name in ("trials.parquet", "trials.csv"):
        path = en.write_trials(trials, tmp_path / name)
        back = en.read_trials(path)
        assert len(back) == len(trials)
        assert back["trial"].dtype == "Int64"
    with pytest.raises(SystemExit, match="exists"):
        en.write_trials(trials, tmp_path / "trials.csv")


# -----------------------------------------------------------------------------
# Search window locality
# -----------------------------------------------------------------------------

def _open_inputs(size, window, inside) -> en.EngineInputs:
    """One-region grid: 1.0 inside the search window, 1000.0 beyond it, 5.0 in the protected polygon."""
    transform = from_origin(0, size, 1, 1)
    labels = LabelGrid(np.zeros((size, size), dtype="int32"), CATEGORIES, transform, None, "climate")
    values = np.full((size, size), 1000.0)
    values[window] = 1.0
    values[inside] = 5.0
    protected = np.zeros((size, size), dtype=bool)
    protected[inside] = True
    metrics = {"climate": Grid(values, transform, CRS, "climate")}
    return en.build_inputs(metrics, labels, protected)


def test_candidates_come_only_from_the_search_window():
    # box(28, 28, 30, 30) grows by 10x its 2-unit size to x, y in [8, 50]
    inside = (slice(30, 32), slice(28, 30))
    inputs = _open_inputs(60, (slice(10, 52), slice(8, 50)), inside)
    out = en.evaluate_polygon("PA_mid", box(28, 28, 30, 30), inputs, en.RandomizationSettings(n_trials=200))

    observed = out[out["status"] == en.STATUS_OBSERVED]
    assert observed["n_cells"].iloc[0] == 4
    assert observed["n_candidates"].iloc[0] == 42 * 42 - 4
    assert observed["climate"].iloc[0] == pytest.approx(5.0)
    trials = out[out["status"] == en.STATUS_TRIAL]
    assert len(trials) == 200
    assert (trials["climate"] == 1.0).all()


def test_search_window_is_clipped_at_the_grid_edge():
    # box(0, 0, 2, 2) sits in the bottom-left corner; its window is clipped to [0, 22]
    inside = (slice(58, 60), slice(0, 2))
    inputs = _open_inputs(60, (slice(38, 60), slice(0, 22)), inside)
    out = en.evaluate_polygon("PA_corner", box(0, 0, 2, 2), inputs, en.RandomizationSettings(n_trials=50))

    observed = out[out["status"] == en.STATUS_OBSERVED]
    assert observed["n_candidates"].iloc[0] == 22 * 22 - 4
    assert (out.loc[out["status"] == en.STATUS_TRIAL, "climate"] == 1.0).all()


def test_coverage_is_rasterized_under_the_polygon_only(monkeypatch):
    shapes = []
    real_rasterize = store.rasterize

    def recording_rasterize(geoms, out_shape, **kwargs):
        shapes.append(out_shape)
        return real_rasterize(geoms, out_shape=out_shape, **kwargs)

    monkeypatch.setattr(store, "rasterize", recording_rasterize)
    inputs = _open_inputs(100, (slice(0, 100), slice(0, 100)), (slice(86, 90), slice(10, 14)))
    out = en.evaluate_polygon("PA_small", box(10, 10, 14, 14), inputs, en.RandomizationSettings(n_trials=5))

    assert shapes == [(40, 40)]
    assert out.loc[out["status"] == en.STATUS_OBSERVED, "n_cells"].iloc[0] == 16


# -----------------------------------------------------------------------------
# Registry output feeding the engine
# -----------------------------------------------------------------------------

def test_repaired_polygon_with_spike_runs_alongside_valid_ones():
    # PA_TROP's outline with a dangling spike at its south-west corner
    spiked = Polygon([(1, 6), (3, 6), (3, 8), (1, 8), (1, 6), (0.5, 5.5), (1, 6)])
    raw = gpd.GeoDataFrame({"WDPAID": [1, 2]}, geometry=[spiked, PA_ARID], crs=CRS)
    polygons = pg.prep_geometries({"pa": {"kind": "PA", "id_field": "WDPAID"}}, None, sources={"pa": raw})
    assert set(polygons.geometry.geom_type) <= {"Polygon", "MultiPolygon"}

    trials = en.run_randomization(polygons, _inputs(), en.RandomizationSettings(n_trials=10), verbose=False)
    observed = trials[trials["status"] == en.STATUS_OBSERVED]
    assert observed["polygon_id"].tolist() == ["PA_1", "PA_2"]
    assert observed["region"].tolist() == ["Tropical", "Arid"]
    assert observed["n_cells"].tolist() == [4, 4]
