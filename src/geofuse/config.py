#!/usr/bin/env python3
"""geofuse.config

Shared configuration utilities for the geofuse CLI and engines.

A run is described by one YAML file with one top-level section per engine:

    need:        # Join & Normalize (regional need score)
    qualify:     # Spatial filter pipeline (qualifying buildings)
    suitability: # Raster suitability index

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Granularity rules are declared data (tag -> prefix length), never inferred.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from geofuse.errors import ConfigurationError


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


def load_section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return one engine section (need / qualify / suitability) of a run config."""
    section = data.get(name)
    if not isinstance(section, dict):
        raise ConfigurationError(f"Run config must have a top-level '{name}:' mapping.")
    return section


def require_keys(block: Dict[str, Any], keys: Iterable[str], where: str) -> None:
    """Raise ConfigurationError if any of `keys` is missing from a config block."""
    missing = [k for k in keys if k not in block]
    if missing:
        raise ConfigurationError(f"{where} is missing required keys: {missing}")


def resolve_path(value: Any, base_dir: Optional[Path] = None) -> Path:
    """Resolve a config path relative to the config file's directory."""
    p = Path(str(value))
    if base_dir is not None and not p.is_absolute():
        p = base_dir / p
    return p


# -----------------------------------------------------------------------------
# Granularity rules
# -----------------------------------------------------------------------------
# Hierarchical region codes (NUTS-style): shorter prefixes are coarser units.
# "DE" (country) -> "DE1" -> "DE11" -> "DE111".

DEFAULT_GRANULARITY_RULES: Dict[str, int] = {
    "nuts0": 2,
    "nuts1": 3,
    "nuts2": 4,
    "nuts3": 5,
}


def granularity_rules(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """Merge user-declared granularity rules over the defaults.

    Each rule maps a tag to a fixed prefix length. Lengths must be positive ints.
    Tags are matched case-insensitively ("LAU" and "lau" are the same rule).
    """
    rules = dict(DEFAULT_GRANULARITY_RULES)
    for tag, length in (overrides or {}).items():
        try:
            n = int(length)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Granularity rule '{tag}' must be an integer prefix length, got {length!r}"
            ) from e
        if n <= 0:
            raise ConfigurationError(f"Granularity rule '{tag}' must be positive, got {n}")
        rules[str(tag).strip().lower()] = n
    return rules


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used for raster grids (bbox -> grid) and CLI summaries.

def coerce_bbox(x: Any) -> Optional[Tuple[float, float, float, float]]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid, missing, or has zero/negative extent.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmax <= xmin or ymax <= ymin:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: Tuple[float, float, float, float], precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


def as_list(x: Any) -> List[Any]:
    """Wrap scalars in a list; pass lists/tuples through."""
    if x is None:
        return []
    if isinstance(x, (list, tuple)):
        return list(x)
    return [x]


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------

DEFAULT_RUN_YAML = Path("config/run.yaml")
DEFAULT_OUTPUT_DIR = Path("data/processed")
DEFAULT_NODATA = -9999.0
