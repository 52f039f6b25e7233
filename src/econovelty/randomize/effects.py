#!/usr/bin/env python3
"""econovelty.randomize.effects

Turn a trial table into paired effect sizes (observed vs. randomized null).

One output row per (polygon, region, metric):
- observed      trial-0 mean inside the polygon
- null_mean     mean over the randomized trials
- null_sd       sample sd over the randomized trials
- effect        observed - null_mean
- z             effect / null_sd (NaN when the null has no spread)
- percentile    share of trials below observed (ties count half)

Infeasible / no-overlap / no-cell units are kept with NaN statistics so the
number of excluded polygons/regions stays auditable downstream.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from econovelty.randomize.engine import META_COLUMNS, STATUS_OBSERVED, STATUS_TRIAL


EFFECT_COLUMNS = [
    "polygon_id", "region", "metric", "status", "n_cells", "n_trials",
    "observed", "null_mean", "null_sd", "effect", "z", "percentile",
]


def metric_columns(trials: pd.DataFrame) -> List[str]:
    return [c for c in trials.columns if c not in META_COLUMNS]


def _unit_status(status: pd.Series) -> str:
    """Return "ok" when the unit has an observed row, else its null-row status."""
    if (status == STATUS_OBSERVED).any():
        return "ok"
    return str(status.iloc[0])


def summarize_effects(trials: pd.DataFrame, metrics: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Effect sizes per polygon, region and metric."""
    names = list(metrics) if metrics is not None else metric_columns(trials)
    missing = [m for m in names if m not in trials.columns]
    if missing:
        raise ValueError(f"Trial table has no metric columns {missing}")

    records: List[Dict[str, object]] = []
    for (pid, region), group in trials.groupby(["polygon_id", "region"], dropna=False, sort=False):
        status = _unit_status(group["status"])
        obs_rows = group[group["status"] == STATUS_OBSERVED]
        null_rows = group[group["status"] == STATUS_TRIAL]
        n_cells = group["n_cells"].iloc[0]
        for name in names:
            rec: Dict[str, object] = {
                "polygon_id": pid,
                "region": region,
                "metric": name,
                "status": status,
                "n_cells": n_cells,
                "n_trials": int(len(null_rows)),
                "observed": np.nan,
                "null_mean": np.nan,
                "null_sd": np.nan,
                "effect": np.nan,
                "z": np.nan,
                "percentile": np.nan,
            }
            if status == "ok" and len(null_rows):
                observed = float(obs_rows[name].iloc[0])
                null = null_rows[name].to_numpy(dtype="float64")
                null_mean = float(null.mean())
                null_sd = float(null.std(ddof=1)) if null.size > 1 else np.nan
                effect = observed - null_mean
                rec.update(
                    observed=observed,
                    null_mean=null_mean,
                    null_sd=null_sd,
                    effect=effect,
                    z=effect / null_sd if null_sd and np.isfinite(null_sd) else np.nan,
                    percentile=float(((null < observed).sum() + 0.5 * (null == observed).sum()) / null.size),
                )
            records.append(rec)

    out = pd.DataFrame(records, columns=EFFECT_COLUMNS)
    out["n_cells"] = out["n_cells"].astype("Int64")
    return out


def exclusion_counts(trials: pd.DataFrame) -> pd.DataFrame:
    """Number of polygon/region units per outcome (ok, infeasible, no_overlap, no_cells)."""
    units = trials.groupby(["polygon_id", "region"], dropna=False, sort=False)["status"].agg(_unit_status)
    counts = units.value_counts().rename_axis("status").reset_index(name="units")
    polygons = trials.groupby("polygon_id", sort=False)["status"].agg(_unit_status)
    poly_counts = polygons.value_counts().rename_axis("status").reset_index(name="polygons")
    return counts.merge(poly_counts, on="status", how="outer").fillna(0).astype({"units": "int64", "polygons": "int64"})
