#!/usr/bin/env python3
"""econovelty.regions

Region label and protected-mask CLI.

Responsibilities:
- classify: resample raw classification grids (Koppen-Geiger, biomes) onto the
  reference grid, map codes to categories via lookups.yaml, fill edge gaps
- protected-mask: rasterize the union of all comparison polygons by majority
  coverage (cells that can never be picked as randomization candidates)

Outputs:
- data/processed/regions/<name>.tif          → category index per cell
- data/processed/regions/protected_mask.tif  → 1 protected, 0 not

Examples:
  python -m econovelty.regions classify --region climate
  python -m econovelty.regions protected-mask --overwrite
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from econovelty.config import (
    DEFAULT_LOOKUPS_YAML,
    DEFAULT_NOVELTY_YAML,
    get_float,
    get_int,
    load_yaml,
    require_section,
)
from econovelty.errors import ConfigurationError


DEFAULT_REGIONS_DIR = Path("data/processed/regions")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for econovelty.regions."""
    ap = argparse.ArgumentParser(
        prog="econovelty.regions",
        description="Region labels and protected mask on the reference grid",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_NOVELTY_YAML,
        help=f"Path to novelty YAML (default: {DEFAULT_NOVELTY_YAML})",
    )
    ap.add_argument(
        "--lookups-yaml",
        type=Path,
        default=DEFAULT_LOOKUPS_YAML,
        help=f"Path to lookups YAML (default: {DEFAULT_LOOKUPS_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- classify ---
    cls = sub.add_parser(
        "classify",
        help="Classify raw code grids into category labels",
        description="""
Resample each configured classification grid onto the reference grid (mode or
nearest), replace raw codes with category indices from lookups.yaml, and fill
coastline gaps with the modal neighbour label.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    cls.add_argument(
        "--region",
        action="append",
        default=None,
        help="Region grid to process (repeatable; default: all configured grids)",
    )

    # --- protected-mask ---
    sub.add_parser(
        "protected-mask",
        help="Rasterize the union of comparison polygons",
        description="""
Mark every reference cell covered more than the coverage threshold by any
comparison polygon. Randomization never draws candidates from these cells.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_classify(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = require_section(cfg, "regions", str(args.config))
    grids = require_section(section, "grids", "regions")
    wanted = args.region or list(grids)
    unknown = [r for r in wanted if r not in grids]
    if unknown:
        raise ConfigurationError(f"Unknown region grids {unknown} (configured: {list(grids)})")
    out_dir = Path(section.get("output_dir", DEFAULT_REGIONS_DIR))
    reference_path = Path(cfg.get("reference_grid", ""))

    if args.dry_run:
        print("[dry-run] Would classify region grids:")
        print(f"  Reference grid: {reference_path}")
        print(f"  Lookups YAML: {args.lookups_yaml}")
        for name in wanted:
            print(f"  {name}: {grids[name].get('path')} (lookup={grids[name].get('lookup', name)})")
        print(f"  Output dir: {out_dir}")
        return 0

    # Lazy import
    from econovelty.grid.store import load, write
    from econovelty.regions.classify import classify_resampled, load_lookup

    reference = load(reference_path, name="reference")
    for name in wanted:
        gcfg = grids[name]
        if not gcfg.get("path"):
            raise ConfigurationError(f"Region grid '{name}' needs a 'path'")
        lookup = load_lookup(args.lookups_yaml, str(gcfg.get("lookup", name)))
        labels = classify_resampled(
            load(Path(gcfg["path"]), name=name),
            reference,
            lookup,
            method=str(gcfg.get("resampling", "mode")),
            window=get_int(gcfg, "window", 11, minimum=1),
            verbose=True,
        )
        out = labels.as_grid()
        write(out.with_values(out.values, name=name), out_dir / f"{name}.tif", overwrite=args.overwrite)
        for category, n in labels.counts().items():
            print(f"  - {category}: {n} cells")
    return 0


def _handle_protected_mask(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = require_section(cfg, "regions", str(args.config))
    mcfg = require_section(section, "protected_mask", "regions")
    rcfg = cfg.get("randomization") or {}
    threshold = get_float(rcfg, "coverage_threshold", 0.5)
    supersample = get_int(rcfg, "supersample", 10, minimum=1)
    gpkg = Path(mcfg.get("geometries", "data/interim/vectors/geometries.gpkg"))
    out_path = Path(mcfg.get("output", DEFAULT_REGIONS_DIR / "protected_mask.tif"))
    reference_path = Path(cfg.get("reference_grid", ""))

    if args.dry_run:
        print("[dry-run] Would build protected mask:")
        print(f"  Geometries: {gpkg} (layer={mcfg.get('layer')})")
        print(f"  Reference grid: {reference_path}")
        print(f"  Coverage threshold: {threshold} (supersample={supersample})")
        print(f"  Output: {out_path}")
        return 0

    import numpy as np

    from econovelty.grid.store import load, load_geometries, write
    from econovelty.randomize.engine import build_protected_mask

    reference = load(reference_path, name="reference")
    polygons = load_geometries(gpkg, layer=mcfg.get("layer"))
    if reference.crs is not None:
        polygons = polygons.to_crs(reference.crs)

    mask = build_protected_mask(polygons.geometry, reference, threshold=threshold, supersample=supersample)
    values = np.where(reference.valid, mask.astype("float64"), np.nan)
    write(reference.with_values(values, name="protected_mask"), out_path, overwrite=args.overwrite)
    print(f"[CLASSIFY] protected mask: {int(mask.sum())} cells from {len(polygons)} polygons -> {out_path}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for econovelty.regions CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "classify": _handle_classify,
        "protected-mask": _handle_protected_mask,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    cfg = load_yaml(args.config)
    try:
        return handler(args, cfg)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
