#!/usr/bin/env python3
"""econovelty.novelty.normalize

Rescale heterogeneous novelty layers to [0, 1] and merge them into composites.

Pipeline (build_composites):
1. scale_unit() every input layer
2. fill_policy(): missing-but-terrestrial cells -> fill value (0, "assume no
   novelty"); cells outside the climate-novelty mask -> missing
3. per-category composite (equal-weight mean of that category's layers)
4. total composite, either
   - "categories":  mean of the category composites (default), or
   - "sub_metrics": mean of an explicit list of layers/composites
     (e.g. 2 climate + 2 defaunation layers + the community-change composite)

Filling with 0 is a deliberate, documented underestimate of novelty where a
biotic layer has no data. It is never applied outside the climate mask.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from econovelty.errors import ConfigurationError, DegenerateScaleError
from econovelty.grid.store import Grid, require_aligned


TOTAL_MODES = ("categories", "sub_metrics")


def scale_unit(grid: Grid, on_degenerate: str = "raise") -> Grid:
    """Shift to a minimum of 0 and divide by the shifted maximum.

    Infinite values are clamped to 0 before the range is taken. A grid with
    zero range (or no finite values) cannot be scaled: by default this raises
    DegenerateScaleError; with on_degenerate="missing" an all-missing grid is
    returned and a warning printed.
    """
    if on_degenerate not in ("raise", "missing"):
        raise ConfigurationError(f"on_degenerate must be 'raise' or 'missing', got {on_degenerate!r}")
    values = np.array(grid.values)
    values[np.isinf(values)] = 0.0
    finite = np.isfinite(values)

    span = 0.0
    if finite.any():
        shifted = values - values[finite].min()
        span = float(shifted[finite].max())

    if span == 0.0:
        msg = f"Grid '{grid.name}' has zero range; cannot rescale to [0, 1]"
        if on_degenerate == "raise":
            raise DegenerateScaleError(msg)
        print(f"[COMBINE] warning: {msg}; emitting an all-missing layer")
        return grid.with_values(np.full(grid.shape, np.nan))

    return grid.with_values(shifted / span)


def combine_pair(a: Grid, b: Grid, name: Optional[str] = None) -> Grid:
    """Element-wise mean of two grids; missing if either is missing."""
    require_aligned(a, b)
    return a.with_values((a.values + b.values) / 2.0, name=name if name is not None else a.name)


def fill_policy(grid: Grid, reference_mask: Grid, fill_value: float = 0.0) -> Grid:
    """Fill missing cells inside the reference mask; blank everything outside it.

    Idempotent for a fixed mask and fill value.
    """
    require_aligned(reference_mask, grid)
    inside = reference_mask.valid
    values = np.where(np.isnan(grid.values) & inside, fill_value, grid.values)
    values = np.where(inside, values, np.nan)
    return grid.with_values(values)


def composite_index(metrics: Sequence[Grid], name: str = "total") -> Grid:
    """Equal-weight mean of any number of aligned grids (NaN propagates).

    Values are sorted along the metric axis before summing so the result does
    not depend on the order the metrics are supplied in.
    """
    if not metrics:
        raise ConfigurationError(f"Composite '{name}' needs at least one input grid")
    require_aligned(*metrics)
    stack = np.sort(np.stack([m.values for m in metrics]), axis=0)
    mean = stack.sum(axis=0) / len(metrics)
    return metrics[0].with_values(np.clip(mean, 0.0, 1.0), name=name)


# -----------------------------------------------------------------------------
# Full composite build
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class NoveltyComposites:
    layers: Dict[str, Grid] = field(default_factory=dict)
    categories: Dict[str, Grid] = field(default_factory=dict)
    total: Optional[Grid] = None

    def all_grids(self) -> Dict[str, Grid]:
        out = dict(self.categories)
        if self.total is not None:
            out["total"] = self.total
        return out


def _category_composite(grids: Sequence[Grid], name: str) -> Grid:
    if len(grids) == 2:
        return combine_pair(grids[0], grids[1], name=name)
    return composite_index(grids, name=name)


def build_composites(
    layers: Mapping[str, Grid],
    categories: Mapping[str, Sequence[str]],
    *,
    anchor: str = "climate",
    total_mode: str = "categories",
    total_parts: Optional[Sequence[str]] = None,
    fill_value: float = 0.0,
    on_degenerate: str = "raise",
    verbose: bool = False,
) -> NoveltyComposites:
    """Scale, fill and combine raw novelty layers into category and total composites.

    Parameters
    ----------
    layers : raw layer grids by name (all aligned to the reference grid)
    categories : category name -> names of its layers
    anchor : category whose composite defines the terrestrial mask
    total_mode : "categories" or "sub_metrics"
    total_parts : names (layers or categories) averaged in "sub_metrics" mode
    """
    if total_mode not in TOTAL_MODES:
        raise ConfigurationError(f"Unknown total mode '{total_mode}' (choose from {TOTAL_MODES})")
    if anchor not in categories:
        raise ConfigurationError(f"Anchor category '{anchor}' not among categories {sorted(categories)}")
    for category, names in categories.items():
        if not names:
            raise ConfigurationError(f"Category '{category}' lists no layers")
        missing = [n for n in names if n not in layers]
        if missing:
            raise ConfigurationError(f"Category '{category}' references unknown layers: {missing}")

    scaled: Dict[str, Grid] = {}
    for category, names in categories.items():
        for n in names:
            if n not in scaled:
                raw = layers[n]
                scaled[n] = scale_unit(raw.with_values(raw.values, name=n), on_degenerate=on_degenerate)
    require_aligned(*scaled.values())

    mask = _category_composite([scaled[n] for n in categories[anchor]], name=anchor)
    if verbose:
        print(f"[COMBINE] anchor '{anchor}': {int(mask.valid.sum())} cells in mask")

    filled = {n: fill_policy(g, mask, fill_value) for n, g in scaled.items()}

    composites: Dict[str, Grid] = {}
    for category, names in categories.items():
        composites[category] = _category_composite([filled[n] for n in names], name=category)
        if verbose:
            print(f"[COMBINE] {category}: {len(names)} layers")

    if total_mode == "categories":
        total = composite_index(list(composites.values()), name="total")
    else:
        if not total_parts:
            raise ConfigurationError("total_mode 'sub_metrics' needs a non-empty total_parts list")
        parts = []
        for part in total_parts:
            if part in composites:
                parts.append(composites[part])
            elif part in filled:
                parts.append(filled[part])
            else:
                raise ConfigurationError(f"Unknown total part '{part}' (not a layer or category)")
        total = composite_index(parts, name="total")

    return NoveltyComposites(layers=filled, categories=composites, total=total)
