#!/usr/bin/env python3
"""econovelty.registry

Comparison-polygon CLI for econovelty.

This is one of several econovelty subsystem CLIs:
- econovelty.registry  → comparison polygons (this file)
- econovelty.novelty   → temporal detection + metric combination
- econovelty.regions   → region labels + protected mask
- econovelty.randomize → matched randomization + effect sizes

econovelty.registry is the source of truth for WHICH polygons get compared.
The randomization engine consumes its output as-is.

Responsibilities:
- Apply the inclusion rules in geometries.yaml to the raw PA / KBA layers
- Fix invalid geometries, assign stable polygon ids, compute areas
- Emit versioned artifacts (GeoPackage, bounds parquet)

Outputs:
- data/interim/vectors/geometries.gpkg          → canonical polygons
- data/interim/tables/geometries_bounds.parquet → per-polygon bounds + area

Examples:
  python -m econovelty.registry prep-geometries
  python -m econovelty.registry --dry-run prep-geometries
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from econovelty.config import DEFAULT_GEOMETRIES_YAML, load_yaml, require_section
from econovelty.errors import ConfigurationError


# -----------------------------------------------------------------------------
# Default output paths
# -----------------------------------------------------------------------------

DEFAULT_GEOMETRIES_GPKG = Path("data/interim/vectors/geometries.gpkg")
DEFAULT_BOUNDS_PARQUET = Path("data/interim/tables/geometries_bounds.parquet")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for econovelty.registry."""
    ap = argparse.ArgumentParser(
        prog="econovelty.registry",
        description="Comparison polygons for econovelty (protected areas, KBAs)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Registry outputs:
  data/interim/vectors/geometries.gpkg           # Canonical polygons
  data/interim/tables/geometries_bounds.parquet  # Computed bounds
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--geometries-yaml",
        type=Path,
        default=DEFAULT_GEOMETRIES_YAML,
        help=f"Path to geometries YAML (default: {DEFAULT_GEOMETRIES_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- prep-geometries ---
    prep = sub.add_parser(
        "prep-geometries",
        help="Filter and clean PA / KBA polygons",
        description="""
Process raw polygon layers into the canonical comparison set.

This command:
1. Reads layer paths and inclusion rules from geometries YAML
2. Drops marine / proposed records, keeps approved IUCN categories
3. Fixes invalid geometries, dissolves multipart records sharing an id
4. Computes equal-area size and bounding boxes
5. Writes canonical outputs
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prep.add_argument("--out-gpkg", type=Path, default=None, help="Output GeoPackage path (default: from YAML)")
    prep.add_argument(
        "--out-bounds",
        type=Path,
        default=DEFAULT_BOUNDS_PARQUET,
        help=f"Output bounds parquet (default: {DEFAULT_BOUNDS_PARQUET})",
    )
    prep.add_argument("--layer", default=None, help="Layer name in output GeoPackage (default: from YAML)")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_prep_geometries(args: argparse.Namespace) -> int:
    cfg = load_yaml(args.geometries_yaml)
    layers = require_section(cfg, "layers", str(args.geometries_yaml))
    output = cfg.get("output") or {}
    out_gpkg = args.out_gpkg or Path(output.get("gpkg", DEFAULT_GEOMETRIES_GPKG))
    out_layer = args.layer or str(output.get("layer", "geometries"))

    if args.dry_run:
        print("[dry-run] Would prepare comparison polygons:")
        for name, lcfg in layers.items():
            print(f"  {name}: {lcfg.get('path')} (kind={lcfg.get('kind', name)})")
        print(f"  Output GeoPackage: {out_gpkg} (layer={out_layer})")
        print(f"  Output bounds: {args.out_bounds}")
        return 0

    if out_gpkg.exists() and not args.overwrite:
        print(f"[SKIP] {out_gpkg} exists (use --overwrite)")
        return 0
    if out_gpkg.exists():
        out_gpkg.unlink()

    # Lazy import to keep CLI startup fast
    from econovelty.registry.prep_geometries import prep_geometries

    gdf = prep_geometries(
        layers,
        out_gpkg,
        out_layer=out_layer,
        target_crs=str(output.get("target_crs", "EPSG:4326")),
        area_crs=str(output.get("area_crs", "EPSG:6933")),
    )
    _write_bounds_parquet(gdf, args.out_bounds)
    return 0


def _write_bounds_parquet(gdf, out_path: Path) -> None:
    """Per-polygon bounds and area, for QA of the comparison set."""
    import pandas as pd

    bounds = gdf.geometry.bounds
    df = pd.DataFrame(gdf[["polygon_id", "kind", "area_km2"]])
    df["xmin"] = bounds["minx"].values
    df["ymin"] = bounds["miny"].values
    df["xmax"] = bounds["maxx"].values
    df["ymax"] = bounds["maxy"].values

    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(out_path, index=False)
    print(f"Wrote bounds -> {out_path}")
    print(f"  {len(df)} polygons with computed bounds")


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for econovelty.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "prep-geometries": _handle_prep_geometries,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
