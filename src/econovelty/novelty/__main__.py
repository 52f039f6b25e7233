#!/usr/bin/env python3
"""econovelty.novelty

Novelty metric CLI.

This is one of several econovelty subsystem CLIs:
- econovelty.registry  → comparison polygons (PA / KBA)
- econovelty.novelty   → temporal detection + metric combination (this file)
- econovelty.regions   → region labels + protected mask
- econovelty.randomize → matched randomization + effect sizes

Responsibilities:
- detect: per-cell novelty year / magnitude / direction for each configured
  climate variable (historical window vs. modern baseline)
- combine: rescale all novelty layers to [0, 1], apply the fill policy on the
  climate mask, and write per-category and total composites

Outputs:
- data/processed/novelty/detection/<variable>_{year,magnitude,direction}.tif
- data/processed/novelty/composites/<category>.tif, total.tif

Examples:
  python -m econovelty.novelty detect --variable temperature
  python -m econovelty.novelty combine --overwrite
  python -m econovelty.novelty --dry-run combine
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from econovelty.config import DEFAULT_NOVELTY_YAML, get_float, load_yaml, require_section
from econovelty.errors import ConfigurationError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for econovelty.novelty."""
    ap = argparse.ArgumentParser(
        prog="econovelty.novelty",
        description="Temporal novelty detection and novelty composites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m econovelty.registry   # Comparison polygons
  python -m econovelty.novelty    # Novelty metrics (this)
  python -m econovelty.regions    # Region labels + protected mask
  python -m econovelty.randomize  # Matched randomization
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_NOVELTY_YAML,
        help=f"Path to novelty YAML (default: {DEFAULT_NOVELTY_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- detect ---
    detect = sub.add_parser(
        "detect",
        help="Novelty year / magnitude / direction per climate variable",
        description="""
For each configured variable, load the historical series (one raster per time
step, year read from the file name) and the modern baseline rasters, then
write three grids: novelty year, magnitude and direction (+1 above, -1 below).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    detect.add_argument(
        "--variable",
        action="append",
        default=None,
        help="Variable to process (repeatable; default: all configured variables)",
    )
    detect.add_argument("--k", type=float, default=None, help="Override tolerance k")
    detect.add_argument(
        "--mode",
        choices=["earliest", "contiguous"],
        default=None,
        help="Override walk mode",
    )

    # --- combine ---
    sub.add_parser(
        "combine",
        help="Rescale layers and build category / total composites",
        description="""
Rescale every configured novelty layer to [0, 1], fill missing terrestrial
cells inside the climate mask, and write one composite per category plus the
total composite.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_detect(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = require_section(cfg, "detection", str(args.config))
    variables = require_section(section, "variables", "detection")
    wanted = args.variable or list(variables)
    unknown = [v for v in wanted if v not in variables]
    if unknown:
        raise ConfigurationError(f"Unknown variables {unknown} (configured: {list(variables)})")

    k = args.k if args.k is not None else get_float(section, "k", None)
    mode = args.mode or str(section.get("mode", "earliest"))
    floor = get_float(section, "floor", None)
    time_axis = str(section.get("time_axis", "calendar"))
    out_dir = Path(section.get("output_dir", "data/processed/novelty/detection"))
    reference_path = Path(cfg.get("reference_grid", ""))

    if args.dry_run:
        print("[dry-run] Would detect temporal novelty:")
        print(f"  Reference grid: {reference_path}")
        print(f"  Variables: {wanted}")
        print(f"  k={k} mode={mode} floor={floor} time_axis={time_axis}")
        print(f"  Output dir: {out_dir}")
        return 0

    # Lazy import to keep CLI startup fast
    from econovelty.grid.store import load, resample, write
    from econovelty.novelty.temporal import detect_from_grids, order_series

    reference = load(reference_path, name="reference")
    for var in wanted:
        vcfg = variables[var]
        hist_paths = sorted(Path().glob(str(vcfg.get("historical_glob", ""))))
        base_paths = sorted(Path().glob(str(vcfg.get("baseline_glob", ""))))
        if not hist_paths:
            raise ConfigurationError(f"No historical rasters match {vcfg.get('historical_glob')!r}")
        hist_paths, years = order_series(hist_paths, str(vcfg.get("year_pattern", r"(-?\d+)")), time_axis)
        method = str(vcfg.get("resampling", "exact"))

        print(f"[DETECT] {var}: {len(hist_paths)} historical steps ({years[0]:.0f} .. {years[-1]:.0f}), "
              f"{len(base_paths)} baseline layers")
        historical = [resample(load(p), reference, method) for p in hist_paths]
        baseline = [resample(load(p), reference, method) for p in base_paths]

        result = detect_from_grids(historical, years, baseline, reference, k=k, mode=mode, floor=floor, name=var)
        for grid in (result.year, result.magnitude, result.direction):
            write(grid, out_dir / f"{grid.name}.tif", overwrite=args.overwrite)
        n_novel = int(result.magnitude.valid.sum())
        print(f"[DETECT] {var}: {n_novel} novel cells -> {out_dir}")
    return 0


def _handle_combine(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = require_section(cfg, "combine", str(args.config))
    layer_cfg = require_section(section, "layers", "combine")
    categories = require_section(section, "categories", "combine")
    out_dir = Path(section.get("output_dir", "data/processed/novelty/composites"))
    reference_path = Path(cfg.get("reference_grid", ""))

    if args.dry_run:
        print("[dry-run] Would build novelty composites:")
        print(f"  Reference grid: {reference_path}")
        for category, names in categories.items():
            print(f"  {category}: {names}")
        print(f"  Total mode: {section.get('total_mode', 'categories')}")
        print(f"  Output dir: {out_dir}")
        return 0

    from econovelty.grid.store import load, resample, write
    from econovelty.novelty.normalize import build_composites

    reference = load(reference_path, name="reference")
    layers = {}
    for name, lcfg in layer_cfg.items():
        if not isinstance(lcfg, dict) or not lcfg.get("path"):
            raise ConfigurationError(f"Layer '{name}' needs a 'path'")
        layers[name] = resample(load(Path(lcfg["path"]), name=name), reference, str(lcfg.get("resampling", "exact")))

    composites = build_composites(
        layers,
        categories,
        anchor=str(section.get("anchor", "climate")),
        total_mode=str(section.get("total_mode", "categories")),
        total_parts=section.get("total_parts"),
        fill_value=get_float(section, "fill_value", 0.0),
        on_degenerate=str(section.get("on_degenerate", "raise")),
        verbose=True,
    )
    for name, grid in composites.all_grids().items():
        write(grid, out_dir / f"{name}.tif", overwrite=args.overwrite)
    print(f"[COMBINE] wrote {len(composites.all_grids())} composites -> {out_dir}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for econovelty.novelty CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "detect": _handle_detect,
        "combine": _handle_combine,
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
