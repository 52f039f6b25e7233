#!/usr/bin/env python3
"""econovelty.regions.classify

Map raw numeric classification grids (Koppen-Geiger codes, biome codes, ...)
onto a closed, ordered set of semantic categories.

- LookupTable: code -> category, plus the ordered category list
- classify(): one vectorised join per grid; unknown codes are a configuration
  error, never passed through
- fill_gaps_modal(): after resampling from a different native grid, fill
  coastline/edge gaps (missing in the labels, valid in the reference) with the
  modal label of an odd-sized neighbourhood. Labelled cells are never touched.

Notes:
- Codes are normalised to ints, so 7, 7.0 and "07" all match.
- Category order is the order listed in the lookup config.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine

from econovelty.config import load_lookup_tables
from econovelty.errors import ConfigurationError
from econovelty.grid.store import Grid, resample


MISSING = -1


def _normalize_code(x) -> int:
    """Normalize a classification code to an int. Handles 7, 7.0, '07', ' 7 '."""
    try:
        as_float = float(str(x).strip())
    except ValueError as e:
        raise ConfigurationError(f"Classification code {x!r} is not numeric") from e
    if not np.isfinite(as_float) or as_float != int(as_float):
        raise ConfigurationError(f"Classification code {x!r} is not an integer")
    return int(as_float)


# -----------------------------------------------------------------------------
# Lookup tables
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class LookupTable:
    name: str
    categories: Tuple[str, ...]
    codes: Mapping[int, str]

    @classmethod
    def from_config(cls, name: str, table: Mapping[str, Any]) -> "LookupTable":
        """Build and validate a table from its YAML block.

        Every code maps to exactly one category, and every category it maps
        to must appear in the ordered `categories` list.
        """
        categories = table.get("categories")
        codes = table.get("codes")
        if not isinstance(categories, list) or not categories:
            raise ConfigurationError(f"Lookup '{name}' needs a non-empty 'categories:' list")
        if len(set(categories)) != len(categories):
            raise ConfigurationError(f"Lookup '{name}' lists duplicate categories")
        if not isinstance(codes, dict) or not codes:
            raise ConfigurationError(f"Lookup '{name}' needs a non-empty 'codes:' mapping")

        mapping: Dict[int, str] = {}
        for raw_code, category in codes.items():
            code = _normalize_code(raw_code)
            if code in mapping:
                raise ConfigurationError(f"Lookup '{name}': code {code} listed twice")
            if category not in categories:
                raise ConfigurationError(
                    f"Lookup '{name}': code {code} maps to '{category}', which is not in categories {categories}"
                )
            mapping[code] = str(category)
        return cls(name=name, categories=tuple(str(c) for c in categories), codes=mapping)

    def category_index(self, category: str) -> int:
        return self.categories.index(category)


def load_lookup(path: Path, name: str) -> LookupTable:
    """Load one named lookup table from a lookups YAML."""
    tables = load_lookup_tables(path)
    if name not in tables:
        raise ConfigurationError(f"Lookup '{name}' not found in {path} (have: {sorted(tables)})")
    return LookupTable.from_config(name, tables[name])


# -----------------------------------------------------------------------------
# Label grids
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class LabelGrid:
    """Per-cell category index (MISSING where unclassified) on a reference grid."""

    codes: np.ndarray
    categories: Tuple[str, ...]
    transform: Affine
    crs: Optional[CRS] = None
    name: str = ""

    def __post_init__(self) -> None:
        arr = np.array(self.codes, dtype="int32", copy=True)
        if arr.ndim != 2:
            raise ConfigurationError(f"LabelGrid '{self.name}' must be 2-D")
        if arr.size and arr.max(initial=MISSING) >= len(self.categories):
            raise ConfigurationError(f"LabelGrid '{self.name}' holds an index outside its categories")
        arr.setflags(write=False)
        object.__setattr__(self, "codes", arr)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.codes.shape  # type: ignore[return-value]

    @property
    def valid(self) -> np.ndarray:
        return self.codes != MISSING

    def label(self, index: int) -> str:
        return self.categories[index]

    def with_codes(self, codes: np.ndarray) -> "LabelGrid":
        return LabelGrid(codes, self.categories, self.transform, self.crs, self.name)

    def as_grid(self) -> Grid:
        """Category indices as a float Grid (NaN = missing), e.g. for writing to disk."""
        values = np.where(self.valid, self.codes, np.nan)
        return Grid(values, self.transform, self.crs, self.name)

    def counts(self) -> Dict[str, int]:
        """Number of cells per category, in category order."""
        binned = np.bincount(self.codes[self.valid], minlength=len(self.categories))
        return {c: int(n) for c, n in zip(self.categories, binned)}


def classify(raw: Grid, lookup: LookupTable) -> LabelGrid:
    """Replace raw numeric codes with category indices via the lookup table."""
    valid = raw.valid
    uniq, inverse = np.unique(raw.values[valid], return_inverse=True)

    non_integral = uniq[uniq != np.round(uniq)]
    if non_integral.size:
        raise ConfigurationError(
            f"Grid '{raw.name}' holds non-integer class codes (e.g. {non_integral[:5].tolist()}); "
            "was it resampled with a continuous method?"
        )
    uniq_int = uniq.astype("int64")
    unknown = sorted(int(c) for c in uniq_int if int(c) not in lookup.codes)
    if unknown:
        raise ConfigurationError(
            f"Grid '{raw.name}' holds codes missing from lookup '{lookup.name}': {unknown}"
        )

    index_by_category = {c: i for i, c in enumerate(lookup.categories)}
    per_code = np.array([index_by_category[lookup.codes[int(c)]] for c in uniq_int], dtype="int32")

    out = np.full(raw.shape, MISSING, dtype="int32")
    if per_code.size:
        out[valid] = per_code[inverse.ravel()]
    return LabelGrid(out, lookup.categories, raw.transform, raw.crs, lookup.name)


def fill_gaps_modal(labels: LabelGrid, reference: Grid, window: int = 11) -> LabelGrid:
    """Fill reference-valid gaps with the modal label of their window.

    Only cells missing in `labels` but valid in `reference` change. Votes
    come from the original labels, so the result does not depend on the
    order gaps are visited. Ties go to the lowest category index; gaps with
    no labelled neighbour stay missing.
    """
    if window < 1 or window % 2 == 0:
        raise ConfigurationError(f"Gap-fill window must be a positive odd number, got {window}")
    if labels.shape != reference.shape:
        raise ConfigurationError(f"Labels {labels.shape} and reference {reference.shape} differ in shape")

    src = labels.codes
    out = np.array(src)
    half = window // 2
    n_categories = len(labels.categories)
    n_rows, n_cols = src.shape

    gaps = np.argwhere(~labels.valid & reference.valid)
    for r, c in gaps:
        block = src[max(r - half, 0):min(r + half + 1, n_rows), max(c - half, 0):min(c + half + 1, n_cols)]
        votes = block[block != MISSING]
        if votes.size:
            out[r, c] = int(np.bincount(votes, minlength=n_categories).argmax())
    return labels.with_codes(out)


def classify_resampled(
    raw: Grid,
    reference: Grid,
    lookup: LookupTable,
    *,
    method: str = "mode",
    window: int = 11,
    verbose: bool = False,
) -> LabelGrid:
    """Resample a categorical grid onto the reference, classify, and fill edge gaps."""
    if method not in ("nearest", "mode", "exact"):
        raise ConfigurationError(f"Categorical grids need nearest/mode/exact resampling, got '{method}'")
    resampled = resample(raw, reference, method)
    labels = classify(resampled, lookup)
    filled = fill_gaps_modal(labels, reference, window=window)
    if verbose:
        before = int((~labels.valid & reference.valid).sum())
        after = int((~filled.valid & reference.valid).sum())
        print(f"[CLASSIFY] {lookup.name}: filled {before - after} of {before} edge gaps (window={window})")
    return filled


def labels_from_grid(grid: Grid, categories: Tuple[str, ...]) -> LabelGrid:
    """Read back a grid written by LabelGrid.as_grid() (float indices, NaN = missing)."""
    values = grid.values
    valid = grid.valid
    if valid.any() and (values[valid] != np.round(values[valid])).any():
        raise ConfigurationError(f"Grid '{grid.name}' does not hold category indices")
    codes = np.full(grid.shape, MISSING, dtype="int32")
    codes[valid] = values[valid].astype("int32")
    if valid.any() and codes[valid].min() < 0:
        raise ConfigurationError(f"Grid '{grid.name}' holds negative category indices")
    return LabelGrid(codes, tuple(categories), grid.transform, grid.crs, grid.name)
