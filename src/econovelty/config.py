#!/usr/bin/env python3
"""econovelty.config

Shared configuration utilities for econovelty CLI subsystems.

This module provides common helpers used across econovelty.novelty,
econovelty.regions, econovelty.randomize, etc.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Bbox helpers work on (xmin, ymin, xmax, ymax) tuples in the reference grid CRS.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from econovelty.errors import ConfigurationError


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def require_section(data: Dict[str, Any], key: str, source: str = "config") -> Dict[str, Any]:
    """Return `data[key]` if it is a mapping, else raise ConfigurationError."""
    section = data.get(key)
    if not isinstance(section, dict):
        raise ConfigurationError(f"{source} missing mapping section '{key}:'")
    return section


def load_lookup_tables(path: Path) -> Dict[str, Dict[str, Any]]:
    """Load classification lookup tables.

    Expects structure like:
        lookups:
          climate:
            categories: [Tropical, Arid, ...]
            codes:
              1: Tropical
              ...

    Returns the raw mapping of table name -> table dict. Validation of the
    code/category relationship happens in econovelty.regions.classify.
    """
    data = load_yaml(path)
    tables = data.get("lookups")
    if not isinstance(tables, dict) or not tables:
        raise ConfigurationError(f"{path} must have a top-level 'lookups:' mapping.")
    return tables


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Search windows of the randomization engine; format_bbox for CLI output.

def expand_bbox(b: BBox, factor: float) -> BBox:
    """Grow a bbox on every side by `factor` times its own width (x) and height (y)."""
    width = b[2] - b[0]
    height = b[3] - b[1]
    return (b[0] - factor * width, b[1] - factor * height, b[2] + factor * width, b[3] + factor * height)


def intersect_bbox(a: BBox, b: BBox) -> Optional[BBox]:
    """Intersection of two bboxes, or None when they do not overlap."""
    xmin = max(a[0], b[0])
    ymin = max(a[1], b[1])
    xmax = min(a[2], b[2])
    ymax = min(a[3], b[3])
    if xmin >= xmax or ymin >= ymax:
        return None
    return (xmin, ymin, xmax, ymax)


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Typed accessors
# -----------------------------------------------------------------------------

def get_int(section: Dict[str, Any], key: str, default: int, *, minimum: Optional[int] = None) -> int:
    """Read an integer setting, checking an optional lower bound."""
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting '{key}' must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"Setting '{key}' must be >= {minimum}, got {value}")
    return value


def get_float(section: Dict[str, Any], key: str, default: Optional[float]) -> Optional[float]:
    """Read an optional float setting (None stays None)."""
    raw = section.get(key, default)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting '{key}' must be a number, got {raw!r}") from e


def get_str_list(section: Dict[str, Any], key: str) -> List[str]:
    """Read a non-empty list of strings."""
    raw = section.get(key)
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"Setting '{key}' must be a non-empty list")
    return [str(v) for v in raw]


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_NOVELTY_YAML = Path("config/novelty.yaml")
DEFAULT_LOOKUPS_YAML = Path("config/lookups.yaml")
DEFAULT_GEOMETRIES_YAML = Path("config/geometries.yaml")
