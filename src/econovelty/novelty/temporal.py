#!/usr/bin/env python3
"""econovelty.novelty.temporal

Per-cell temporal novelty: how far back from the present do past conditions
look novel compared with the modern baseline?

Inputs per cell:
- historical window: H values ordered oldest -> newest, with a strictly
  increasing `years` vector (calendar years; negative = BCE)
- modern baseline window: M >= 3 values

For every historical step t with both neighbours available (1 <= t <= H-2)
the triplet {t-1, t, t+1} is compared with the baseline range. Optionally the
triplet is widened by mean +/- k * sd(triplet). A step is novel when the whole
(widened) triplet lies strictly above the baseline max or strictly below the
baseline min.

Walk modes (from the most recent evaluable step back to the oldest):
- "earliest":   the oldest novel step, ignoring non-novel steps in between
- "contiguous": only a run of novel steps starting at the step nearest the
                baseline counts; the oldest step of that run is reported

Cells with no novel step get the stable floor (default: the oldest year of the
historical window, which can never itself be flagged). Inactive cells and
cells with an incomplete series stay missing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from econovelty.errors import ConfigurationError
from econovelty.grid.store import ActiveCells, Grid, active_cells, require_aligned


WALK_MODES = ("earliest", "contiguous")


@dataclass(frozen=True, eq=False)
class NoveltyResult:
    year: Grid
    magnitude: Grid
    direction: Grid


# -----------------------------------------------------------------------------
# Step-level flags
# -----------------------------------------------------------------------------

def novelty_flags(
    historical: np.ndarray,
    baseline: np.ndarray,
    k: Optional[float] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Flag novel historical steps for a batch of cells.

    Parameters
    ----------
    historical : (H, n) array, oldest first
    baseline : (M, n) array
    k : tolerance multiplier in triplet-sd units (None = no widening)

    Returns
    -------
    novel : (H, n) bool
    magnitude : (H, n) float, NaN where not novel
    direction : (H, n) int8, +1 above baseline, -1 below, 0 otherwise
    """
    historical = np.asarray(historical, dtype="float64")
    baseline = np.asarray(baseline, dtype="float64")
    n_steps = historical.shape[0]

    novel = np.zeros(historical.shape, dtype=bool)
    magnitude = np.full(historical.shape, np.nan)
    direction = np.zeros(historical.shape, dtype="int8")
    if n_steps < 3:
        return novel, magnitude, direction

    triplet = np.stack([historical[:-2], historical[1:-1], historical[2:]])
    lo = triplet.min(axis=0)
    hi = triplet.max(axis=0)
    mean = triplet.mean(axis=0)
    if k is not None:
        sd = triplet.std(axis=0, ddof=1)
        lo = np.minimum(lo, mean - k * sd)
        hi = np.maximum(hi, mean + k * sd)

    base_max = baseline.max(axis=0)
    base_min = baseline.min(axis=0)

    # NaN comparisons are False, so incomplete cells are never flagged here
    above = lo > base_max
    below = hi < base_min

    novel[1:-1] = above | below
    magnitude[1:-1] = np.where(above, lo - base_max, np.where(below, base_min - mean, np.nan))
    direction[1:-1] = np.where(above, 1, np.where(below, -1, 0))
    return novel, magnitude, direction


def walk_back(novel: np.ndarray, mode: str = "earliest") -> np.ndarray:
    """Index of the reported novel step per cell, -1 where none.

    `novel` is (H, n), oldest first; the walk starts at step H-2 (the most
    recent step with two neighbours) and moves toward step 1.
    """
    if mode not in WALK_MODES:
        raise ConfigurationError(f"Unknown novelty walk mode '{mode}' (choose from {WALK_MODES})")
    n_steps, n_cells = novel.shape
    out = np.full(n_cells, -1, dtype="int64")
    if n_steps < 3:
        return out

    if mode == "earliest":
        evaluable = novel[1:-1]
        found = evaluable.any(axis=0)
        out[found] = 1 + evaluable.argmax(axis=0)[found]
        return out

    # evaluable steps, most recent first
    steps = novel[1:-1][::-1]
    not_novel = ~steps
    run_length = np.where(not_novel.any(axis=0), not_novel.argmax(axis=0), steps.shape[0])
    has_run = run_length > 0
    out[has_run] = (n_steps - 2) - (run_length[has_run] - 1)
    return out


# -----------------------------------------------------------------------------
# Cell-level detection
# -----------------------------------------------------------------------------

def _check_years(years: Sequence[float], n_steps: int) -> np.ndarray:
    years_arr = np.asarray(years, dtype="float64")
    if years_arr.shape != (n_steps,):
        raise ConfigurationError(f"Got {years_arr.size} years for {n_steps} historical layers")
    if n_steps > 1 and not np.all(np.diff(years_arr) > 0):
        raise ConfigurationError("Historical years must be strictly increasing (oldest first)")
    return years_arr


def detect_novelty(
    historical: np.ndarray,
    years: Sequence[float],
    baseline: np.ndarray,
    active: ActiveCells,
    *,
    k: Optional[float] = None,
    mode: str = "earliest",
    floor: Optional[float] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Novelty year / magnitude / direction for stacked (T, rows, cols) arrays.

    Returns three 2-D float arrays on the active-cell grid shape.
    """
    historical = np.asarray(historical, dtype="float64")
    baseline = np.asarray(baseline, dtype="float64")
    if historical.ndim != 3 or baseline.ndim != 3:
        raise ConfigurationError("historical and baseline must be (time, rows, cols) stacks")
    if baseline.shape[0] < 3:
        raise ConfigurationError(f"Baseline window needs at least 3 layers, got {baseline.shape[0]}")
    if k is not None and k < 0:
        raise ConfigurationError(f"Tolerance k must be >= 0, got {k}")
    if mode not in WALK_MODES:
        raise ConfigurationError(f"Unknown novelty walk mode '{mode}' (choose from {WALK_MODES})")

    n_steps = historical.shape[0]
    years_arr = _check_years(years, n_steps)

    shape = active.shape
    year_out = np.full(shape, np.nan)
    mag_out = np.full(shape, np.nan)
    dir_out = np.full(shape, np.nan)
    if n_steps < 3 or len(active) == 0:
        return year_out, mag_out, dir_out

    hist = active.gather(historical)
    base = active.gather(baseline)
    complete = np.isfinite(hist).all(axis=0) & np.isfinite(base).all(axis=0)

    novel, magnitude, direction = novelty_flags(hist, base, k=k)
    step = walk_back(novel, mode=mode)

    stable_floor = years_arr[0] if floor is None else float(floor)
    cols = np.arange(step.size)
    found = (step >= 0) & complete

    year_vals = np.where(found, years_arr[np.clip(step, 0, None)], stable_floor)
    year_vals = np.where(complete, year_vals, np.nan)
    mag_vals = np.where(found, magnitude[np.clip(step, 0, None), cols], np.nan)
    dir_vals = np.where(found, direction[np.clip(step, 0, None), cols], np.nan)

    return active.scatter(year_vals), active.scatter(mag_vals), active.scatter(dir_vals)


def detect_from_grids(
    historical: Sequence[Grid],
    years: Sequence[float],
    baseline: Sequence[Grid],
    reference: Grid,
    *,
    k: Optional[float] = None,
    mode: str = "earliest",
    floor: Optional[float] = None,
    name: str = "novelty",
) -> NoveltyResult:
    """Grid-in / grid-out wrapper around detect_novelty().

    The reference grid defines the active cells (terrestrial study domain).
    All inputs must already be aligned with it.
    """
    require_aligned(reference, *historical, *baseline)
    active = active_cells(reference)
    hist = np.stack([g.values for g in historical]) if historical else np.empty((0,) + reference.shape)
    base = np.stack([g.values for g in baseline]) if baseline else np.empty((0,) + reference.shape)
    year, magnitude, direction = detect_novelty(hist, years, base, active, k=k, mode=mode, floor=floor)
    return NoveltyResult(
        year=reference.with_values(year, name=f"{name}_year"),
        magnitude=reference.with_values(magnitude, name=f"{name}_magnitude"),
        direction=reference.with_values(direction, name=f"{name}_direction"),
    )


def years_from_bp(years_bp: Sequence[float], present: float = 1950.0) -> np.ndarray:
    """Convert 'years before present' labels into calendar years."""
    return present - np.asarray(years_bp, dtype="float64")


TIME_AXES = ("calendar", "bp")


def order_series(
    paths: Sequence[Path],
    pattern: str = r"(-?\d+)",
    time_axis: str = "calendar",
) -> Tuple[List[Path], np.ndarray]:
    """Read the time label out of each file name and sort oldest first.

    `pattern` is a regex whose first group holds the label; on the "bp" axis
    labels are years before present and get converted to calendar years.
    """
    if time_axis not in TIME_AXES:
        raise ConfigurationError(f"Unknown time axis '{time_axis}' (choose from {TIME_AXES})")
    labelled = []
    for p in paths:
        p = Path(p)
        m = re.search(pattern, p.stem)
        if m is None:
            raise ConfigurationError(f"Cannot read a year from '{p.name}' with pattern {pattern!r}")
        labelled.append((float(m.group(1)), p))

    labels = np.array([lab for lab, _ in labelled], dtype="float64")
    years = years_from_bp(labels) if time_axis == "bp" else labels
    order = np.argsort(years, kind="stable")
    years = years[order]
    if years.size > 1 and not np.all(np.diff(years) > 0):
        raise ConfigurationError(f"Duplicate time labels among {[p.name for _, p in labelled]}")
    return [labelled[i][1] for i in order], years
