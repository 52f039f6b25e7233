#!/usr/bin/env python3
"""econovelty.randomize.engine

Matched randomization of novelty inside protected / key-biodiversity polygons.

For every polygon, independently:

  Setup           bbox of the polygon, grown by `expand_factor` x its own
                  width/height, clipped to the study extent. All further work
                  happens inside that window.
  RegionPartition cells covered > 0.5 by the polygon ("inside") are grouped by
                  climate region. Their mean novelty is trial 0 (observed).
  PerRegionTrial  candidate pool = window cells of the same climate region
                  that are active and NOT protected. If the pool is smaller
                  than the inside count, the region is infeasible (null row).
                  Otherwise N trials, each a fresh sample without replacement
                  of exactly the inside count.
  Done            all rows for all regions of the polygon.

Polygons that miss the study extent, have no areal part, or cover no active
cell by majority yield one null row each. Nothing about one polygon affects another.

Design notes:
- EngineInputs is an immutable snapshot (read-only arrays) built once, before
  any task runs. The protected mask is the union over ALL protected polygons,
  computed once, never per polygon.
- Seeding is per polygon: each polygon draws from a stream derived from
  (run seed, polygon id), so trial tables do not depend on worker count or
  completion order.
- Parallel runs use a ProcessPoolExecutor whose initializer hands the
  snapshot to each worker once at pool start.
"""

from __future__ import annotations

import os
import zlib
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds

from econovelty.config import BBox, expand_bbox, get_float, get_int, intersect_bbox
from econovelty.errors import ConfigurationError
from econovelty.grid.store import Grid, add_coverage, bounds_to_slices, majority_mask, polygonal_part, require_aligned
from econovelty.regions.classify import LabelGrid


STATUS_OBSERVED = "observed"
STATUS_TRIAL = "trial"
STATUS_INFEASIBLE = "infeasible"
STATUS_NO_OVERLAP = "no_overlap"
STATUS_NO_CELLS = "no_cells"

META_COLUMNS = ["polygon_id", "region", "trial", "status", "n_cells", "n_candidates"]


# -----------------------------------------------------------------------------
# Settings and inputs
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class RandomizationSettings:
    n_trials: int = 1000
    seed: int = 0
    workers: int = 1
    expand_factor: float = 10.0
    coverage_threshold: float = 0.5
    supersample: int = 10

    def __post_init__(self) -> None:
        if self.n_trials < 1:
            raise ConfigurationError(f"n_trials must be >= 1, got {self.n_trials}")
        if self.seed < 0:
            raise ConfigurationError(f"seed must be >= 0, got {self.seed}")
        if self.workers < 0:
            raise ConfigurationError(f"workers must be >= 0 (0 = all cores), got {self.workers}")
        if self.expand_factor < 0:
            raise ConfigurationError(f"expand_factor must be >= 0, got {self.expand_factor}")
        if not 0.0 <= self.coverage_threshold < 1.0:
            raise ConfigurationError(f"coverage_threshold must be in [0, 1), got {self.coverage_threshold}")
        if self.supersample < 1:
            raise ConfigurationError(f"supersample must be >= 1, got {self.supersample}")

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "RandomizationSettings":
        """Build settings from the `randomization:` block of novelty.yaml."""
        defaults = cls()
        return cls(
            n_trials=get_int(section, "n_trials", defaults.n_trials, minimum=1),
            seed=get_int(section, "seed", defaults.seed, minimum=0),
            workers=get_int(section, "workers", defaults.workers, minimum=0),
            expand_factor=get_float(section, "expand_factor", defaults.expand_factor),
            coverage_threshold=get_float(section, "coverage_threshold", defaults.coverage_threshold),
            supersample=get_int(section, "supersample", defaults.supersample, minimum=1),
        )


@dataclass(frozen=True, eq=False)
class EngineInputs:
    """Read-only snapshot shared by every polygon task."""

    metrics: Mapping[str, np.ndarray]
    regions: LabelGrid
    protected: np.ndarray
    active: np.ndarray
    transform: Affine
    crs: Optional[CRS] = None

    def __post_init__(self) -> None:
        if not self.metrics:
            raise ConfigurationError("EngineInputs needs at least one novelty metric")
        shape = self.regions.shape
        frozen: Dict[str, np.ndarray] = {}
        for name, arr in self.metrics.items():
            a = np.array(arr, dtype="float64", copy=True)
            if a.shape != shape:
                raise ConfigurationError(f"Metric '{name}' shape {a.shape} != region grid shape {shape}")
            a.setflags(write=False)
            frozen[name] = a
        object.__setattr__(self, "metrics", frozen)
        for attr in ("protected", "active"):
            a = np.array(getattr(self, attr), dtype=bool, copy=True)
            if a.shape != shape:
                raise ConfigurationError(f"'{attr}' mask shape {a.shape} != region grid shape {shape}")
            a.setflags(write=False)
            object.__setattr__(self, attr, a)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.regions.shape

    @property
    def metric_names(self) -> List[str]:
        return list(self.metrics)

    @property
    def bounds(self) -> BBox:
        west, south, east, north = array_bounds(self.shape[0], self.shape[1], self.transform)
        return (west, south, east, north)


def build_protected_mask(
    geometries: Iterable,
    reference: Grid,
    threshold: float = 0.5,
    supersample: int = 10,
) -> np.ndarray:
    """Global protected / not-protected mask: union of majority-covered cells."""
    return majority_mask(geometries, reference, threshold=threshold, supersample=supersample)


def build_inputs(
    metrics: Mapping[str, Grid],
    regions: LabelGrid,
    protected: np.ndarray,
) -> EngineInputs:
    """Assemble the snapshot; active cells = classified and defined for every metric."""
    grids = list(metrics.values())
    if not grids:
        raise ConfigurationError("build_inputs needs at least one novelty metric grid")
    require_aligned(*grids)
    reference = grids[0]
    if regions.shape != reference.shape or not regions.transform.almost_equals(reference.transform):
        raise ConfigurationError("Region grid is not aligned with the novelty grids")
    active = regions.valid.copy()
    for g in grids:
        active &= g.valid
    return EngineInputs(
        metrics={name: g.values for name, g in metrics.items()},
        regions=regions,
        protected=protected,
        active=active,
        transform=reference.transform,
        crs=reference.crs,
    )


def polygon_rng(seed: int, polygon_id: Any) -> np.random.Generator:
    """Random stream for one polygon, fixed by (run seed, polygon id)."""
    key = zlib.crc32(str(polygon_id).encode("utf-8"))
    return np.random.default_rng(np.random.SeedSequence(entropy=seed, spawn_key=(key,)))


# -----------------------------------------------------------------------------
# Per-polygon evaluation
# -----------------------------------------------------------------------------

def _row(polygon_id, region, trial, status, n_cells, n_candidates, names, values=None) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "polygon_id": polygon_id,
        "region": region,
        "trial": trial,
        "status": status,
        "n_cells": n_cells,
        "n_candidates": n_candidates,
    }
    for i, name in enumerate(names):
        row[name] = np.nan if values is None else float(values[i])
    return row


def _frame(rows: List[Dict[str, Any]], names: Sequence[str]) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=META_COLUMNS + list(names))
    for col in ("trial", "n_cells", "n_candidates"):
        df[col] = pd.to_numeric(df[col]).astype("Int64")
    for name in names:
        df[name] = df[name].astype("float64")
    return df


def evaluate_polygon(
    polygon_id: Any,
    geometry,
    inputs: EngineInputs,
    settings: RandomizationSettings,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Observed and randomized mean novelty for one polygon, per climate region."""
    names = inputs.metric_names
    # stray lines / points left by geometry repair cannot cover cells
    geometry = polygonal_part(geometry)
    if geometry is None:
        return _frame([_row(polygon_id, None, None, STATUS_NO_CELLS, 0, None, names)], names)
    if rng is None:
        rng = polygon_rng(settings.seed, polygon_id)

    # --- Setup ---
    search = intersect_bbox(expand_bbox(geometry.bounds, settings.expand_factor), inputs.bounds)
    slices = bounds_to_slices(search, inputs.transform, inputs.shape) if search is not None else None
    if slices is None:
        return _frame([_row(polygon_id, None, None, STATUS_NO_OVERLAP, 0, None, names)], names)
    rows, cols = slices

    window_transform = inputs.transform * Affine.translation(cols.start, rows.start)
    window = Grid(np.zeros((rows.stop - rows.start, cols.stop - cols.start)), window_transform, inputs.crs)
    cover = add_coverage(np.zeros(window.shape), geometry, window, supersample=settings.supersample)

    active = inputs.active[rows, cols]
    regions = inputs.regions.codes[rows, cols]
    protected = inputs.protected[rows, cols]
    values = np.stack([inputs.metrics[n][rows, cols] for n in names])

    # --- RegionPartition ---
    inside = (cover > settings.coverage_threshold) & active
    if not inside.any():
        return _frame([_row(polygon_id, None, None, STATUS_NO_CELLS, 0, None, names)], names)

    out: List[Dict[str, Any]] = []
    for code in np.unique(regions[inside]):
        label = inputs.regions.label(int(code))
        in_region = inside & (regions == code)
        n_cells = int(in_region.sum())

        # --- PerRegionTrial ---
        pool = values[:, active & ~protected & (regions == code)]
        n_candidates = pool.shape[1]
        if n_candidates < n_cells:
            out.append(_row(polygon_id, label, None, STATUS_INFEASIBLE, n_cells, n_candidates, names))
            continue

        observed = values[:, in_region].mean(axis=1)
        out.append(_row(polygon_id, label, 0, STATUS_OBSERVED, n_cells, n_candidates, names, observed))
        for trial in range(1, settings.n_trials + 1):
            pick = rng.choice(n_candidates, size=n_cells, replace=False)
            out.append(_row(polygon_id, label, trial, STATUS_TRIAL, n_cells, n_candidates, names, pool[:, pick].mean(axis=1)))

    # --- Done ---
    return _frame(out, names)


# -----------------------------------------------------------------------------
# Whole-run execution
# -----------------------------------------------------------------------------

# Per-worker copy of the snapshot, installed once by the pool initializer.
_WORKER_STATE: Dict[str, Any] = {}


def _init_worker(inputs: EngineInputs, settings: RandomizationSettings) -> None:
    _WORKER_STATE["inputs"] = inputs
    _WORKER_STATE["settings"] = settings


def _run_task(task: Tuple[Any, Any]) -> pd.DataFrame:
    polygon_id, geometry = task
    return evaluate_polygon(polygon_id, geometry, _WORKER_STATE["inputs"], _WORKER_STATE["settings"])


def resolve_workers(requested: int) -> int:
    """Bound the pool size by available cores (0 = use all cores)."""
    cores = os.cpu_count() or 1
    if requested <= 0:
        return cores
    return min(requested, cores)


def assemble_trials(frames: Sequence[pd.DataFrame], categories: Sequence[str], names: Sequence[str]) -> pd.DataFrame:
    """Concatenate task outputs and order them by polygon id, region order, trial."""
    if not frames:
        return _frame([], names)
    df = pd.concat(frames, ignore_index=True)
    rank = {c: i for i, c in enumerate(categories)}
    df["_region_rank"] = df["region"].map(rank).fillna(-1)
    df["_trial_rank"] = df["trial"].fillna(-1).astype("int64")
    df = df.sort_values(["polygon_id", "_region_rank", "_trial_rank"], kind="mergesort")
    return df.drop(columns=["_region_rank", "_trial_rank"]).reset_index(drop=True)


def run_randomization(
    polygons: gpd.GeoDataFrame,
    inputs: EngineInputs,
    settings: RandomizationSettings,
    *,
    id_column: str = "polygon_id",
    verbose: bool = True,
) -> pd.DataFrame:
    """Evaluate every (pre-filtered) polygon and return the trial table.

    A ConfigurationError raised by any task aborts the whole run; queued
    tasks are cancelled, running ones finish.
    """
    if id_column not in polygons.columns:
        raise ConfigurationError(f"Polygon table has no '{id_column}' column")
    if polygons[id_column].duplicated().any():
        dupes = polygons.loc[polygons[id_column].duplicated(), id_column].tolist()[:10]
        raise ConfigurationError(f"Duplicate polygon ids: {dupes}")
    if polygons.crs is not None and inputs.crs is not None and CRS.from_user_input(polygons.crs) != inputs.crs:
        polygons = polygons.to_crs(inputs.crs)

    tasks = list(zip(polygons[id_column].tolist(), polygons.geometry.tolist()))
    workers = resolve_workers(settings.workers)
    names = inputs.metric_names
    if verbose:
        print(f"[RANDOMIZE] {len(tasks)} polygons, {settings.n_trials} trials, {workers} worker(s), seed={settings.seed}")

    frames: List[pd.DataFrame] = []
    if workers == 1 or len(tasks) <= 1:
        for i, (pid, geom) in enumerate(tasks, start=1):
            frames.append(evaluate_polygon(pid, geom, inputs, settings))
            if verbose and (i % 100 == 0 or i == len(tasks)):
                print(f"[RANDOMIZE] {i}/{len(tasks)} polygons done")
    else:
        with ProcessPoolExecutor(max_workers=workers, initializer=_init_worker, initargs=(inputs, settings)) as pool:
            futures = [pool.submit(_run_task, task) for task in tasks]
            try:
                for i, fut in enumerate(as_completed(futures), start=1):
                    frames.append(fut.result())
                    if verbose and (i % 100 == 0 or i == len(tasks)):
                        print(f"[RANDOMIZE] {i}/{len(tasks)} polygons done")
            except ConfigurationError:
                pool.shutdown(wait=True, cancel_futures=True)
                raise

    trials = assemble_trials(frames, inputs.regions.categories, names)
    if verbose:
        units = trials[trials["status"] != STATUS_TRIAL]
        counts = units["status"].value_counts().to_dict()
        print(f"[RANDOMIZE] done: {len(trials)} rows; unit status counts: {counts}")
    return trials


def write_trials(trials: pd.DataFrame, path: Path, overwrite: bool = False) -> Path:
    """Persist the trial table (parquet, or CSV for a .csv path)."""
    path = Path(path)
    if path.exists() and not overwrite:
        raise SystemExit(f"Output exists: {path} (use --overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".csv":
        trials.to_csv(path, index=False)
    else:
        trials.to_parquet(path, index=False)
    print(f"Wrote trial table -> {path} ({len(trials)} rows)")
    return path


def read_trials(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Trial table not found: {path}")
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path)
        for col in ("trial", "n_cells", "n_candidates"):
            df[col] = df[col].astype("Int64")
        return df
    return pd.read_parquet(path)
