#!/usr/bin/env python3
"""econovelty.grid.store

Uniform access to 2-D scalar grids and polygon geometry sets.

Every other component reads its inputs through this module:
- Grid: immutable value array (NaN = missing) + affine transform + CRS
- ActiveCells: the ordered set of terrestrial / data-complete cells of a
  reference grid, computed once and shared so that every component enumerates
  cells in the same order
- resample(): bring a grid onto the reference grid (nearest / mode / bilinear)
- coverage_fraction(): fraction of each cell covered by a polygon
- majority_mask(): cells covered by more than half by a union of polygons

Design notes:
- All functions are pure. There is no module-level grid cache; callers hold
  whichever grids they need for the lifetime of their computation.
- Grid values are stored as read-only float64 arrays. Producers create new
  grids with Grid.with_values(); consumers never write into an existing one.

Required deps (typical conda geo stack): rasterio, geopandas, numpy
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.features import rasterize
from rasterio.transform import Affine, array_bounds
from rasterio.warp import reproject
from shapely.ops import unary_union

from econovelty.errors import ConfigurationError


BBox = Tuple[float, float, float, float]

RESAMPLING_METHODS = {
    "nearest": Resampling.nearest,
    "mode": Resampling.mode,
    "bilinear": Resampling.bilinear,
}


# -----------------------------------------------------------------------------
# Grid
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Grid:
    """A 2-D grid of real-or-missing values on a fixed extent/resolution."""

    values: np.ndarray
    transform: Affine
    crs: Optional[CRS] = None
    name: str = ""

    def __post_init__(self) -> None:
        arr = np.array(self.values, dtype="float64", copy=True)
        if arr.ndim != 2:
            raise ConfigurationError(f"Grid '{self.name}' must be 2-D, got shape {arr.shape}")
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)
        if self.crs is not None and not isinstance(self.crs, CRS):
            object.__setattr__(self, "crs", CRS.from_user_input(self.crs))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape  # type: ignore[return-value]

    @property
    def bounds(self) -> BBox:
        """(xmin, ymin, xmax, ymax) of the grid's outer cell edges."""
        west, south, east, north = array_bounds(self.shape[0], self.shape[1], self.transform)
        return (west, south, east, north)

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of non-missing cells."""
        return np.isfinite(self.values)

    def aligned_with(self, other: "Grid") -> bool:
        """Same shape, transform and CRS (a missing CRS matches anything)."""
        if self.shape != other.shape:
            return False
        if not self.transform.almost_equals(other.transform):
            return False
        if self.crs is not None and other.crs is not None and self.crs != other.crs:
            return False
        return True

    def with_values(self, values: np.ndarray, name: Optional[str] = None) -> "Grid":
        """New grid on the same extent with different values."""
        values = np.asarray(values)
        if values.shape != self.shape:
            raise ConfigurationError(
                f"Cannot build grid '{name or self.name}': shape {values.shape} != {self.shape}"
            )
        return Grid(values, self.transform, self.crs, name if name is not None else self.name)

    def subgrid(self, rows: slice, cols: slice) -> "Grid":
        """Window of this grid with its own (window) transform."""
        transform = self.transform * Affine.translation(cols.start or 0, rows.start or 0)
        return Grid(self.values[rows, cols], transform, self.crs, self.name)


def require_aligned(*grids: Grid) -> None:
    """Raise ConfigurationError unless every grid is aligned with the first."""
    if not grids:
        return
    first = grids[0]
    for g in grids[1:]:
        if not first.aligned_with(g):
            raise ConfigurationError(
                f"Grid '{g.name}' is not aligned with '{first.name}' "
                f"(shape {g.shape} vs {first.shape}); resample it to the reference grid first."
            )


# -----------------------------------------------------------------------------
# Active cells
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ActiveCells:
    """Ordered flat indices of a reference grid's active (non-missing) cells."""

    indices: np.ndarray
    shape: Tuple[int, int]

    def __post_init__(self) -> None:
        idx = np.array(self.indices, dtype="int64", copy=True)
        idx.setflags(write=False)
        object.__setattr__(self, "indices", idx)

    def __len__(self) -> int:
        return int(self.indices.size)

    def mask(self) -> np.ndarray:
        out = np.zeros(self.shape[0] * self.shape[1], dtype=bool)
        out[self.indices] = True
        return out.reshape(self.shape)

    def gather(self, values: np.ndarray) -> np.ndarray:
        """Pick active-cell values out of a (..., rows, cols) array -> (..., n_active)."""
        values = np.asarray(values)
        if values.shape[-2:] != self.shape:
            raise ConfigurationError(f"Array shape {values.shape[-2:]} does not match active-cell grid {self.shape}")
        flat = values.reshape(values.shape[:-2] + (-1,))
        return flat[..., self.indices]

    def scatter(self, values: np.ndarray, fill: float = np.nan) -> np.ndarray:
        """Place per-active-cell values back into a 2-D array, `fill` elsewhere."""
        out = np.full(self.shape[0] * self.shape[1], fill, dtype="float64")
        out[self.indices] = values
        return out.reshape(self.shape)


def active_cells(reference: Grid) -> ActiveCells:
    """Active-cell index set of a reference grid (row-major order)."""
    return ActiveCells(np.flatnonzero(reference.valid), reference.shape)


# -----------------------------------------------------------------------------
# Raster I/O
# -----------------------------------------------------------------------------

def load(path: Path, name: Optional[str] = None, band: int = 1) -> Grid:
    """Read one band of a raster into a Grid (nodata -> NaN)."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Raster not found: {path}")
    with rasterio.open(path) as src:
        data = src.read(band, masked=True)
        values = np.ma.filled(data.astype("float64"), np.nan)
        return Grid(values, src.transform, src.crs, name or path.stem)


def load_stack(paths: Sequence[Path], reference: Optional[Grid] = None) -> List[Grid]:
    """Load several rasters that must share one grid (e.g. one file per time bin)."""
    grids = [load(p) for p in paths]
    if reference is not None:
        grids = [reference] + grids
        require_aligned(*grids)
        return grids[1:]
    require_aligned(*grids)
    return grids


def write(grid: Grid, path: Path, overwrite: bool = False) -> Path:
    """Write a grid as a single-band float32 GeoTIFF with NaN nodata."""
    path = Path(path)
    if path.exists() and not overwrite:
        print(f"[SKIP] {path} exists (use --overwrite)")
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    profile = {
        "driver": "GTiff",
        "height": grid.shape[0],
        "width": grid.shape[1],
        "count": 1,
        "dtype": "float32",
        "crs": grid.crs,
        "transform": grid.transform,
        "nodata": np.nan,
        "compress": "deflate",
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(grid.values.astype("float32"), 1)
    return path


def load_geometries(path: Path, layer: Optional[str] = None) -> gpd.GeoDataFrame:
    """Read a polygon layer (GeoPackage, shapefile, ...)."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Geometry file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.crs is None:
        raise ConfigurationError(f"{path} has no CRS; everything downstream depends on CRS.")
    return gdf


# -----------------------------------------------------------------------------
# Resampling
# -----------------------------------------------------------------------------

def resample(grid: Grid, reference: Grid, method: str) -> Grid:
    """Bring `grid` onto the reference grid.

    method: "nearest" or "mode" for categorical data, "bilinear" for
    continuous data, "exact" when the grid must already be aligned (copy).
    """
    if method == "exact":
        require_aligned(reference, grid)
        return grid.with_values(grid.values)
    if method not in RESAMPLING_METHODS:
        raise ConfigurationError(f"Unknown resampling method '{method}' (choose from {sorted(RESAMPLING_METHODS)} or 'exact')")
    if grid.aligned_with(reference):
        return grid.with_values(grid.values)

    src_crs = grid.crs or reference.crs
    dst_crs = reference.crs or grid.crs
    if src_crs is None:
        raise ConfigurationError(f"Cannot resample '{grid.name}': neither grid has a CRS")

    dst = np.full(reference.shape, np.nan, dtype="float64")
    reproject(
        source=np.array(grid.values),
        destination=dst,
        src_transform=grid.transform,
        src_crs=src_crs,
        src_nodata=np.nan,
        dst_transform=reference.transform,
        dst_crs=dst_crs,
        dst_nodata=np.nan,
        resampling=RESAMPLING_METHODS[method],
    )
    return Grid(dst, reference.transform, dst_crs, grid.name)


# -----------------------------------------------------------------------------
# Geometry coverage
# -----------------------------------------------------------------------------

def bounds_to_slices(bounds: BBox, transform: Affine, shape: Tuple[int, int]) -> Optional[Tuple[slice, slice]]:
    """Row/col slices of the cells touched by `bounds`, clipped to the grid.

    Returns None when the bounds fall entirely outside the grid.
    """
    inv = ~transform
    corners = [inv * (x, y) for x in (bounds[0], bounds[2]) for y in (bounds[1], bounds[3])]
    cols = [c[0] for c in corners]
    rows = [c[1] for c in corners]
    r0 = max(int(np.floor(min(rows))), 0)
    r1 = min(int(np.ceil(max(rows))), shape[0])
    c0 = max(int(np.floor(min(cols))), 0)
    c1 = min(int(np.ceil(max(cols))), shape[1])
    if r0 >= r1 or c0 >= c1:
        return None
    return slice(r0, r1), slice(c0, c1)


def coverage_fraction(geometry, reference: Grid, supersample: int = 10) -> Grid:
    """Per-cell fraction of area covered by `geometry`, in [0, 1].

    Rasterizes on a grid `supersample` times finer than the reference and
    block-averages back. This is an approximation of the areal integral,
    good to 1/supersample**2 per cell.
    """
    if supersample < 1:
        raise ConfigurationError(f"supersample must be >= 1, got {supersample}")
    height, width = reference.shape
    if geometry is None or geometry.is_empty:
        return reference.with_values(np.zeros(reference.shape), name="coverage")

    fine_transform = reference.transform * Affine.scale(1.0 / supersample)
    burned = rasterize(
        [(geometry, 1)],
        out_shape=(height * supersample, width * supersample),
        transform=fine_transform,
        fill=0,
        dtype="uint8",
    )
    frac = burned.reshape(height, supersample, width, supersample).mean(axis=(1, 3))
    return reference.with_values(frac, name="coverage")


def polygonal_part(geometry):
    """Polygon / MultiPolygon content of a geometry, or None when it has none.

    make_valid() on real-world park boundaries often returns a
    GeometryCollection holding the repaired polygon plus stray lines or
    points; only the areal part can cover cells.
    """
    if geometry is None or geometry.is_empty:
        return None
    if geometry.geom_type in ("Polygon", "MultiPolygon"):
        return geometry
    if geometry.geom_type == "GeometryCollection":
        parts = [p for p in (polygonal_part(g) for g in geometry.geoms) if p is not None]
        if parts:
            return unary_union(parts)
    return None


def add_coverage(cover: np.ndarray, geometry, reference: Grid, supersample: int = 10) -> np.ndarray:
    """Add the coverage fraction of `geometry` into `cover` (shaped like `reference`).

    Only the cells under the geometry's own bounding box are rasterized.
    """
    if geometry is None or geometry.is_empty:
        return cover
    slices = bounds_to_slices(geometry.bounds, reference.transform, reference.shape)
    if slices is None:
        return cover
    rows, cols = slices
    cover[rows, cols] += coverage_fraction(geometry, reference.subgrid(rows, cols), supersample=supersample).values
    return cover


def majority_mask(geometries: Iterable, reference: Grid, threshold: float = 0.5, supersample: int = 10) -> np.ndarray:
    """Cells whose coverage by the union of all geometries exceeds `threshold`.

    Overlapping geometries are merged first, so adjacent parks that share a
    cell add up; the disjoint parts of the union are then rasterized one by
    one inside their own bounding windows.
    """
    parts = [p for p in (polygonal_part(g) for g in geometries) if p is not None]
    cover = np.zeros(reference.shape)
    if not parts:
        return cover > threshold
    merged = unary_union(parts)
    for part in getattr(merged, "geoms", [merged]):
        add_coverage(cover, part, reference, supersample=supersample)
    return np.minimum(cover, 1.0) > threshold
