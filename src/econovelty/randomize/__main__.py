#!/usr/bin/env python3
"""econovelty.randomize

Matched randomization CLI.

Responsibilities:
- run: compare mean novelty inside each comparison polygon with random,
  climate-matched, unprotected cells nearby; write the trial table
- summarize: turn the trial table into per-polygon effect sizes and print how
  many polygons/regions were excluded and why

Inputs (all produced by the other subsystems):
- novelty composites      (econovelty.novelty combine)
- climate region labels   (econovelty.regions classify)
- protected mask          (econovelty.regions protected-mask)
- comparison polygons     (econovelty.registry prep-geometries)

Examples:
  python -m econovelty.randomize run --workers 8
  python -m econovelty.randomize run --limit 20 --trials 50   # quick look
  python -m econovelty.randomize summarize
"""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import Any, Dict, List, Optional

from econovelty.config import (
    DEFAULT_LOOKUPS_YAML,
    DEFAULT_NOVELTY_YAML,
    format_bbox,
    get_str_list,
    load_yaml,
    require_section,
)
from econovelty.errors import ConfigurationError


DEFAULT_TRIALS_PATH = Path("data/processed/randomization/trials.parquet")
DEFAULT_EFFECTS_PATH = Path("data/processed/randomization/effects.csv")


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for econovelty.randomize."""
    ap = argparse.ArgumentParser(
        prog="econovelty.randomize",
        description="Matched randomization of novelty inside protected areas",
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

    # --- run ---
    run = sub.add_parser(
        "run",
        help="Run the randomization and write the trial table",
        description="""
For every comparison polygon and every climate region it covers: trial 0 is
the observed mean novelty of the covered cells; trials 1..N are means of
equally many random unprotected cells of the same region in a search window
around the polygon. Regions without enough candidates get one infeasible row.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run.add_argument("--trials", type=int, default=None, help="Override number of trials")
    run.add_argument("--seed", type=int, default=None, help="Override run seed")
    run.add_argument("--workers", type=int, default=None, help="Override worker count (0 = all cores)")
    run.add_argument("--limit", type=int, default=None, help="Only process the first N polygons")
    run.add_argument("--out", type=Path, default=None, help="Output trial table (.parquet or .csv)")

    # --- summarize ---
    summ = sub.add_parser(
        "summarize",
        help="Effect sizes and exclusion counts from a trial table",
    )
    summ.add_argument("--trials-path", type=Path, default=None, help="Trial table to read")
    summ.add_argument("--out", type=Path, default=None, help="Output effects CSV")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_run(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = require_section(cfg, "randomization", str(args.config))
    combine = require_section(cfg, "combine", str(args.config))
    regions = require_section(cfg, "regions", str(args.config))

    # Lazy import (geopandas / rasterio are slow to load)
    from econovelty.randomize.engine import RandomizationSettings

    settings = RandomizationSettings.from_config(section)
    overrides = {
        "n_trials": args.trials,
        "seed": args.seed,
        "workers": args.workers,
    }
    settings = dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})

    metric_names = get_str_list(section, "metrics")
    region_name = str(section.get("region", "climate"))
    metrics_dir = Path(combine.get("output_dir", "data/processed/novelty/composites"))
    regions_dir = Path(regions.get("output_dir", "data/processed/regions"))
    mask_path = Path((regions.get("protected_mask") or {}).get("output", regions_dir / "protected_mask.tif"))
    gpkg = Path(section.get("geometries", "data/interim/vectors/geometries.gpkg"))
    out_path = args.out or Path(section.get("output", DEFAULT_TRIALS_PATH))

    if args.dry_run:
        print("[dry-run] Would run matched randomization:")
        print(f"  Metrics: {metric_names} from {metrics_dir}")
        print(f"  Region labels: {regions_dir / f'{region_name}.tif'}")
        print(f"  Protected mask: {mask_path}")
        print(f"  Polygons: {gpkg} (layer={section.get('geometries_layer')})")
        print(f"  Settings: {settings}")
        print(f"  Output: {out_path}")
        return 0

    if out_path.exists() and not args.overwrite:
        print(f"[SKIP] {out_path} exists (use --overwrite)")
        return 0

    import numpy as np

    from econovelty.grid.store import load, load_geometries, require_aligned
    from econovelty.randomize.engine import build_inputs, run_randomization, write_trials
    from econovelty.regions.classify import labels_from_grid, load_lookup

    rcfg = require_section(regions, "grids", "regions").get(region_name) or {}
    lookup = load_lookup(args.lookups_yaml, str(rcfg.get("lookup", region_name)))

    metrics = {m: load(metrics_dir / f"{m}.tif", name=m) for m in metric_names}
    labels = labels_from_grid(load(regions_dir / f"{region_name}.tif", name=region_name), lookup.categories)
    mask_grid = load(mask_path, name="protected_mask")
    require_aligned(mask_grid, *metrics.values())
    protected = np.nan_to_num(mask_grid.values, nan=0.0) > 0.5

    inputs = build_inputs(metrics, labels, protected)
    print(
        f"[RANDOMIZE] {int(inputs.active.sum())} active cells, {int(protected.sum())} protected, "
        f"extent {format_bbox(inputs.bounds, precision=3)}"
    )

    polygons = load_geometries(gpkg, layer=section.get("geometries_layer"))
    if args.limit is not None:
        polygons = polygons.sort_values("polygon_id").head(args.limit)

    trials = run_randomization(polygons, inputs, settings)
    write_trials(trials, out_path, overwrite=args.overwrite)
    return 0


def _handle_summarize(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    section = cfg.get("randomization") or {}
    trials_path = args.trials_path or Path(section.get("output", DEFAULT_TRIALS_PATH))
    out_path = args.out or Path(section.get("effects_output", DEFAULT_EFFECTS_PATH))

    if args.dry_run:
        print("[dry-run] Would summarize effects:")
        print(f"  Trial table: {trials_path}")
        print(f"  Output: {out_path}")
        return 0

    if out_path.exists() and not args.overwrite:
        print(f"[SKIP] {out_path} exists (use --overwrite)")
        return 0

    from econovelty.randomize.effects import exclusion_counts, summarize_effects
    from econovelty.randomize.engine import read_trials

    trials = read_trials(trials_path)
    effects = summarize_effects(trials)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    effects.to_csv(out_path, index=False)
    print(f"Wrote effects -> {out_path} ({len(effects)} rows)")

    print("[RANDOMIZE] outcome counts:")
    for _, row in exclusion_counts(trials).iterrows():
        print(f"  - {row['status']}: {row['units']} polygon/region units, {row['polygons']} polygons")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for econovelty.randomize CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "run": _handle_run,
        "summarize": _handle_summarize,
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
