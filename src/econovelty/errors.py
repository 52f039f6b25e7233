"""Project-level exception types for econovelty."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised for fatal setup problems (bad config, missing lookup codes, misaligned grids).

    These abort a run before any per-polygon work starts.
    """


class DegenerateScaleError(ConfigurationError):
    """Raised when a grid has zero range and cannot be rescaled to [0, 1]."""
