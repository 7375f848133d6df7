#!/usr/bin/env python3
"""geofuse

Command-line entrypoint for the three geofuse engines:
- need-score   → join regional indicators, rank, score, band, flag priority
- qualify      → run the spatial filter pipeline (containment / area / distance)
- suitability  → weighted raster suitability index with exclusion masking

All three read one run config (YAML), one section each. Outputs are plain
GeoPackage / GeoTIFF files for whatever renders the maps.

Design notes:
- Lazy-imports the engines to keep CLI startup fast
- All subcommands support --dry-run for safe exploration
- An empty result (nothing scored, no candidate survived) is reported with the
  stage that produced it and exits 0; config errors exit non-zero

Examples:
  # Regional need score, top decile flagged as priority
  python -m geofuse --config config/run.yaml need-score \
    --out-gpkg data/processed/need_score.gpkg --key-prefix DE

  # Buildings on parcels >= 1000 m² and > 250 m from highways
  python -m geofuse --config config/run.yaml qualify \
    --out-gpkg data/processed/qualified_buildings.gpkg --target-crs EPSG:4326

  # Land suitability index
  python -m geofuse --config config/run.yaml suitability \
    --out-tif data/processed/suitability.tif
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from geofuse.config import (
    load_yaml,
    load_section,
    require_keys,
    resolve_path,
    granularity_rules,
    coerce_bbox,
    format_bbox,
    DEFAULT_RUN_YAML,
    DEFAULT_OUTPUT_DIR,
)
from geofuse.errors import ConfigurationError, EmptyInput


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for geofuse.

    Structure:
    - Global args: apply to all subcommands (--config, --dry-run, etc.)
    - Subcommands: one per engine
    """
    ap = argparse.ArgumentParser(
        prog="geofuse",
        description="Geospatial indicator fusion: need scores, spatial filters, suitability",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_RUN_YAML,
        help=f"Path to run config YAML (default: {DEFAULT_RUN_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without computing or writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )
    ap.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log engine diagnostics (stage counts, excluded indicators)",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- need-score ---
    need = sub.add_parser(
        "need-score",
        help="Composite need score from regional indicators",
        description="""
Join indicator tables onto region features and compute a composite score.

This command:
1. Reads region features and indicator tables listed under `need:`
2. Selects the latest period per key, independently per indicator
3. Joins coarse indicators through declared granularity rules
4. Rank-normalizes each indicator and averages the available ranks
5. Splits scores into equal-count bands; the top band is flagged priority
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    need.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_OUTPUT_DIR / "need_score.gpkg",
        help="Output GeoPackage path",
    )
    need.add_argument("--layer", default="need_score", help="Layer name in output GeoPackage")
    need.add_argument("--bands", type=int, default=None, help="Number of bands (default: config or 10)")
    need.add_argument("--key-prefix", default=None, help="Only score features whose key starts with this (e.g. DE)")
    need.add_argument("--target-crs", default=None, help="Reproject output to this CRS")
    need.add_argument("--qa-csv", type=Path, default=None, help="Optional attribute-only CSV")

    # --- qualify ---
    qualify = sub.add_parser(
        "qualify",
        help="Run the spatial filter pipeline",
        description="""
Filter candidate features through the ordered stages listed under `qualify:`.

Stages run in order; the first stage that leaves no candidates ends the run
and is reported by name.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    qualify.add_argument(
        "--out-gpkg",
        type=Path,
        default=DEFAULT_OUTPUT_DIR / "qualified.gpkg",
        help="Output GeoPackage path",
    )
    qualify.add_argument("--layer", default="qualified", help="Layer name in output GeoPackage")
    qualify.add_argument("--target-crs", default=None, help="Reproject output to this CRS (e.g. EPSG:4326)")
    qualify.add_argument("--qa-csv", type=Path, default=None, help="Optional attribute-only CSV")

    # --- suitability ---
    suit = sub.add_parser(
        "suitability",
        help="Weighted raster suitability index",
    )
    suit.add_argument(
        "--out-tif",
        type=Path,
        default=DEFAULT_OUTPUT_DIR / "suitability.tif",
        help="Output GeoTIFF path",
    )

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------
# Each handler:
# 1. Loads its config section
# 2. Lazy-imports the engine
# 3. Runs it and reports (including empty results)
# 4. Writes outputs unless --dry-run

def _skip_existing(path: Path, overwrite: bool) -> bool:
    if path.exists() and not overwrite:
        print(f"[SKIP] {path} exists (use --overwrite)")
        return True
    return False


def _handle_need_score(args: argparse.Namespace) -> int:
    """Handle the need-score subcommand."""
    cfg = load_yaml(args.config)
    section = load_section(cfg, "need")
    require_keys(section, ["features", "indicators"], "need")
    base_dir = args.config.parent
    bands = args.bands if args.bands is not None else int(section.get("bands", 10))
    key_prefix = args.key_prefix or section.get("key_prefix")

    if args.dry_run:
        print("[dry-run] Would compute need score:")
        print(f"  Features: {section['features'].get('path')}")
        print(f"  Indicators: {[i.get('name') for i in section['indicators']]}")
        print(f"  Bands: {bands}  Key prefix: {key_prefix or '-'}")
        print(f"  Output GeoPackage: {args.out_gpkg}")
        return 0
    if _skip_existing(args.out_gpkg, args.overwrite):
        return 0

    # Lazy import: avoids loading geopandas until needed
    from geofuse.need.indicators import load_indicator_specs
    from geofuse.need.scoring import compute_need_score
    from geofuse.vectors import read_features, write_features

    feats_block = section["features"]
    require_keys(feats_block, ["path"], "need.features")
    features = read_features(
        resolve_path(feats_block["path"], base_dir),
        layer=feats_block.get("layer"),
        key_column=feats_block.get("key_column", "key"),
    )
    specs = load_indicator_specs(section, base_dir)

    result = compute_need_score(
        features,
        specs,
        bands=bands,
        rules=granularity_rules(section.get("granularity_rules")),
        key_prefix=key_prefix,
    )

    for name, reason in result.excluded.items():
        print(f"[need] excluded indicator {name}: {reason}")
    if not result.ok:
        print(f"[need] {result.empty}")
        return 0

    out = write_features(
        result.features,
        args.out_gpkg,
        layer=args.layer,
        target_crs=args.target_crs,
        qa_csv=args.qa_csv,
    )
    priority = out[out["priority"]]
    print(f"[need] Wrote {len(out)} scored features -> {args.out_gpkg} (layer={args.layer})")
    print(f"[need] Indicators used: {result.used}")
    if priority.empty:
        print(f"[need] No feature in the top band ({bands}); too few features for {bands} bands?")
    else:
        print(f"[need] {len(priority)} priority feature(s):")
        for _, row in priority.sort_values("score", ascending=False).iterrows():
            print(f"  - {row['key']} | score={row['score']:.3f} | indicators={row['n_indicators']}")
    return 0


def _handle_qualify(args: argparse.Namespace) -> int:
    """Handle the qualify subcommand."""
    cfg = load_yaml(args.config)
    section = load_section(cfg, "qualify")

    from geofuse.filters.pipeline import check_stage_entries

    check_stage_entries(section)
    if args.dry_run:
        print("[dry-run] Would run filter pipeline:")
        for stage in section.get("stages") or []:
            print(f"  - {stage.get('name', stage.get('kind'))} ({stage.get('kind')}) threshold={stage.get('threshold', '-')}")
        print(f"  Output GeoPackage: {args.out_gpkg}")
        return 0
    if _skip_existing(args.out_gpkg, args.overwrite):
        return 0

    from geofuse.filters.pipeline import load_pipeline, run_pipeline
    from geofuse.vectors import write_features

    candidates, stages = load_pipeline(section, args.config.parent)
    result = run_pipeline(candidates, stages)

    for count in result.counts:
        print(f"[qualify] {count.name}: {count.n_in} -> {count.n_out}")
    if not result.ok:
        print(f"[qualify] {result.empty}")
        return 0

    write_features(
        result.features,
        args.out_gpkg,
        layer=args.layer,
        target_crs=args.target_crs,
        qa_csv=args.qa_csv,
    )
    print(f"[qualify] Total qualifying features: {len(result.features)} -> {args.out_gpkg}")
    return 0


def _handle_suitability(args: argparse.Namespace) -> int:
    """Handle the suitability subcommand."""
    cfg = load_yaml(args.config)
    section = load_section(cfg, "suitability")

    from geofuse.suitability.rasters import check_layer_entries

    check_layer_entries(section)
    if args.dry_run:
        print("[dry-run] Would compute suitability:")
        for layer in section.get("layers") or []:
            print(f"  - {layer.get('name')} weight={layer.get('weight')} invert={layer.get('invert', False)}")
        grid_block = section.get("grid") or {}
        bbox = coerce_bbox(grid_block.get("bbox"))
        if bbox:
            print(f"  Grid: {format_bbox(bbox, 1)} @ {grid_block.get('resolution')} ({grid_block.get('crs', '-')})")
        else:
            print("  Grid: from first raster layer")
        print(f"  Exclusions: {len(section.get('exclusions') or [])}")
        print(f"  Output GeoTIFF: {args.out_tif}")
        return 0
    if _skip_existing(args.out_tif, args.overwrite):
        return 0

    from geofuse.suitability.engine import compute_suitability
    from geofuse.suitability.rasters import load_suitability, write_field

    layers, grid, exclusions, nodata = load_suitability(section, args.config.parent)
    result = compute_suitability(layers, grid, exclusions, nodata=nodata)
    if not result.ok:
        print(f"[suitability] {result.empty}")
        return 0

    for name, (lo, hi) in result.stats.items():
        flat = " (flat: contributes zeros)" if lo == hi else ""
        print(f"[suitability] {name}: min={lo:.3f} max={hi:.3f}{flat}")
    field = result.field
    n_valid = int(field.valid_mask.sum())
    print(f"[suitability] {n_valid}/{grid.size} cells scored, {grid.size - n_valid} no-data")
    write_field(field, args.out_tif)
    print(f"[suitability] Wrote -> {args.out_tif}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for the geofuse CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "need-score": _handle_need_score,
        "qualify": _handle_qualify,
        "suitability": _handle_suitability,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except ConfigurationError as e:
        raise SystemExit(f"[config] {e}") from e
    except (EmptyInput, ValueError) as e:
        raise SystemExit(f"[input] {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
