#!/usr/bin/env python3
"""prep_geometries.py

Turn raw protected-area (WDPA-style) and key-biodiversity-area polygon layers
into one clean, filtered GeoPackage of comparison polygons, based on the
inclusion rules listed in a YAML config (geometries.yaml).

This module exposes:
1. select_geometries() - apply include/exclude attribute rules to one layer
2. prep_geometries()   - full pipeline, called by `python -m econovelty.registry`

The randomization engine consumes the output as-is and never re-derives
these filters.

Example (via econovelty.registry):
  python -m econovelty.registry prep-geometries \
    --out-gpkg data/interim/vectors/geometries.gpkg

Notes:
- Attribute values are normalised so "02", 2 and "2" match, and text is
  compared case-insensitively.
- Every output row gets a stable `polygon_id` of the form "<kind>_<source id>".
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import geopandas as gpd
import pandas as pd

from econovelty.errors import ConfigurationError
from econovelty.grid.store import load_geometries, polygonal_part


OUTPUT_COLUMNS = ["polygon_id", "kind", "source_id", "status", "category", "area_km2", "geometry"]


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _normalize_value(x) -> str:
    """Normalize an attribute value to a comparable string.

    Handles ints, '02', ' Ia ', 2.0, etc. Returns empty string for missing values.
    """
    if x is None or (isinstance(x, float) and pd.isna(x)):
        return ""
    s = str(x).strip()
    if re.fullmatch(r"-?\d+(\.0+)?", s):
        return str(int(float(s)))
    return s.lower()


def _require_field(gdf: gpd.GeoDataFrame, field: str, layer_name: str) -> None:
    if field not in gdf.columns:
        cols = [c for c in gdf.columns if c != gdf.geometry.name]
        raise ConfigurationError(f"Layer '{layer_name}' has no field '{field}'. Available columns: {cols}")


def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Fix invalid geometries, keep their polygonal parts, drop the ones left empty."""
    gdf = gdf.copy()
    gdf["geometry"] = [polygonal_part(g) for g in gdf.geometry.make_valid()]
    return gdf[~gdf.geometry.is_empty & gdf.geometry.notna()].copy()


def _compute_area_km2(gdf: gpd.GeoDataFrame, area_crs: str) -> List[float]:
    """Compute polygon area in km² using an equal-area CRS."""
    if gdf.crs is None:
        raise ConfigurationError("Input geometries have no CRS; can't compute area safely.")
    tmp = gdf.to_crs(area_crs)
    return (tmp.geometry.area / 1_000_000.0).astype(float).tolist()


# -----------------------------------------------------------------------------
# Attribute filtering
# -----------------------------------------------------------------------------

def select_geometries(
    gdf: gpd.GeoDataFrame,
    *,
    include: Optional[Mapping[str, List[Any]]] = None,
    exclude: Optional[Mapping[str, List[Any]]] = None,
    layer_name: str = "layer",
) -> gpd.GeoDataFrame:
    """Keep rows whose fields match every `include` list and none of the `exclude` lists."""
    keep = pd.Series(True, index=gdf.index)
    for field, allowed in (include or {}).items():
        _require_field(gdf, field, layer_name)
        wanted = {_normalize_value(v) for v in allowed}
        keep &= gdf[field].map(_normalize_value).isin(wanted)
    for field, banned in (exclude or {}).items():
        _require_field(gdf, field, layer_name)
        unwanted = {_normalize_value(v) for v in banned}
        keep &= ~gdf[field].map(_normalize_value).isin(unwanted)
    return gdf[keep].copy()


# -----------------------------------------------------------------------------
# Core function (called by CLI)
# -----------------------------------------------------------------------------

def prep_geometries(
    layers: Mapping[str, Dict[str, Any]],
    out_gpkg: Optional[Path],
    *,
    out_layer: str = "geometries",
    target_crs: str = "EPSG:4326",
    area_crs: str = "EPSG:6933",
    sources: Optional[Mapping[str, gpd.GeoDataFrame]] = None,
) -> gpd.GeoDataFrame:
    """Filter, clean and merge PA/KBA layers into one comparison-polygon table.

    Args:
        layers: layer name -> config block with keys
            path, layer (optional), kind, id_field, status_field (optional),
            category_field (optional), include (optional), exclude (optional)
        out_gpkg: Output GeoPackage path (None = don't write)
        out_layer: Layer name in the output GeoPackage
        target_crs: CRS for output geometries (should match the reference grid)
        area_crs: equal-area CRS for area calculations (default: EPSG:6933, global)
        sources: already-loaded layers by name (skips reading `path`)

    Returns:
        The merged GeoDataFrame with OUTPUT_COLUMNS.
    """
    if not layers:
        raise ConfigurationError("No geometry layers configured")

    frames = []
    for name, cfg in layers.items():
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Geometry layer '{name}' must be a mapping")
        kind = str(cfg.get("kind", name))
        id_field = cfg.get("id_field")
        if not id_field:
            raise ConfigurationError(f"Geometry layer '{name}' needs an 'id_field'")

        if sources is not None and name in sources:
            gdf = sources[name]
        else:
            if not cfg.get("path"):
                raise ConfigurationError(f"Geometry layer '{name}' needs a 'path'")
            gdf = load_geometries(Path(cfg["path"]), layer=cfg.get("layer"))

        if gdf.empty:
            raise ConfigurationError(f"Geometry layer '{name}' contains zero features. Wrong file?")
        _require_field(gdf, id_field, name)

        n_in = len(gdf)
        sel = select_geometries(gdf, include=cfg.get("include"), exclude=cfg.get("exclude"), layer_name=name)
        sel = _make_valid(sel)
        print(f"[REGISTRY] {name}: kept {len(sel)} of {n_in} polygons")
        if sel.empty:
            continue

        out = gpd.GeoDataFrame(
            {
                "kind": kind,
                "source_id": sel[id_field].map(_normalize_value).values,
                "status": sel[cfg["status_field"]].astype(str).values if cfg.get("status_field") else "",
                "category": sel[cfg["category_field"]].astype(str).values if cfg.get("category_field") else "",
            },
            geometry=sel.geometry.values,
            crs=sel.crs,
        )
        out["polygon_id"] = kind + "_" + out["source_id"]
        if out["polygon_id"].duplicated().any():
            # multipart records sharing one id become one polygon
            out = out.dissolve(by="polygon_id", as_index=False, aggfunc="first")
        out["area_km2"] = _compute_area_km2(out, area_crs=area_crs)
        frames.append(out.to_crs(target_crs))

    if not frames:
        raise ConfigurationError("No polygons left after applying the inclusion rules")

    merged = gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), crs=target_crs)
    merged = merged[OUTPUT_COLUMNS].sort_values("polygon_id").reset_index(drop=True)

    if out_gpkg is not None:
        out_gpkg.parent.mkdir(parents=True, exist_ok=True)
        merged.to_file(out_gpkg, layer=out_layer, driver="GPKG")
        print(f"Wrote {len(merged)} polygons -> {out_gpkg} (layer={out_layer})")

    for kind, n in merged["kind"].value_counts().sort_index().items():
        print(f"  - {kind}: {n} polygons, {merged.loc[merged['kind'] == kind, 'area_km2'].sum():.1f} km2")

    return merged
