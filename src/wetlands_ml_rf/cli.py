"""Command-line interface for seasonal wetland classification runs."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import LabelMode, RunConfig, config_to_dict
from .errors import ConfigurationError, WetlandsError
from .jobs import JobRunner
from .pipeline import run_pipeline
from .seasons import SEASON_ORDER, plan_windows
from .topography import DEFAULT_TPI_RADII, write_topography_layers

LOGGER = logging.getLogger(__name__)


def _add_logging(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )


def _configure_run(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="JSON run configuration; other options override it.")
    parser.add_argument("--region", help="Region name (county) or 'all' for the national extent.")
    parser.add_argument("--label", type=Path, help="Label raster (classes 1-3, 0 = no data).")
    parser.add_argument(
        "--validation-label",
        type=Path,
        help="Independent validation label raster (required with --label-mode dual).",
    )
    parser.add_argument("--years", nargs="+", type=int, help="Years to composite (e.g., 2020 2021)")
    parser.add_argument(
        "--seasons",
        nargs="+",
        choices=list(SEASON_ORDER),
        help="Seasons to composite for every year",
    )
    parser.add_argument(
        "--label-mode",
        choices=[mode.value for mode in LabelMode],
        help="vmi / digitized split one label raster; dual uses separate training and validation rasters.",
    )
    parser.add_argument("--topography-dir", type=Path, help="Directory holding {layer}.tif topographic rasters.")
    parser.add_argument("--boundaries", type=Path, help="Administrative boundary layer with a LANSKOD attribute.")
    parser.add_argument(
        "--stac-url",
        help="STAC API endpoint for Sentinel-1 GRD and Sentinel-2 L2A; band asset keys come from the config.",
    )
    parser.add_argument("--output-dir", type=Path, help="Directory for exported artifacts")
    parser.add_argument(
        "--on-empty-window",
        choices=["fail", "skip"],
        help="Abort on a window without imagery, or leave the window out and continue.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Log diagnostics (accuracies, kappa) under the interactive timeout.",
    )
    _add_logging(parser)


def _configure_windows(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--years", nargs="+", type=int, required=True, help="Years to plan")
    parser.add_argument(
        "--seasons",
        nargs="+",
        choices=list(SEASON_ORDER),
        default=list(SEASON_ORDER),
        help="Seasons to plan for every year",
    )
    _add_logging(parser)


def _configure_topography(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dem", type=Path, required=True, help="DEM GeoTIFF to derive layers from.")
    parser.add_argument("--output-dir", type=Path, required=True, help="Directory to write {layer}.tif files to.")
    parser.add_argument(
        "--tpi-radii",
        nargs="+",
        type=float,
        default=list(DEFAULT_TPI_RADII),
        help="TPI radii in meters; the first is written as tpi.tif.",
    )
    _add_logging(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Seasonal Sentinel-1/Sentinel-2 random forest wetland classification.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    _configure_run(subparsers.add_parser("run", help="Composite, sample, train, evaluate and export."))
    _configure_windows(subparsers.add_parser("windows", help="Print the seasonal windows for years/seasons."))
    _configure_topography(
        subparsers.add_parser("topography", help="Derive slope and TPI layers from a DEM.")
    )
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    overrides: Dict[str, Any] = {
        "region": args.region,
        "label_path": args.label,
        "validation_label_path": args.validation_label,
        "years": tuple(args.years) if args.years else None,
        "seasons": tuple(args.seasons) if args.seasons else None,
        "label_mode": LabelMode(args.label_mode) if args.label_mode else None,
        "topography_dir": args.topography_dir,
        "boundaries_path": args.boundaries,
        "stac_url": args.stac_url,
        "on_empty_window": args.on_empty_window,
        "verbose": args.verbose,
    }
    if args.config is not None:
        config = RunConfig.from_json(args.config).with_overrides(**overrides)
    else:
        if args.region is None or args.label is None:
            raise ConfigurationError("--region and --label are required without --config.")
        config = RunConfig(**{key: value for key, value in overrides.items() if value is not None})
    if args.output_dir is not None:
        config = replace(config, export=replace(config.export, output_dir=args.output_dir))
    return config


def _run(args: argparse.Namespace) -> None:
    config = config_from_args(args)
    LOGGER.debug("Run configuration: %s", json.dumps(config_to_dict(config)))
    with JobRunner() as runner:
        result = run_pipeline(config, runner=runner)
        statuses = runner.wait_all()
    failed = [job_id for job_id, status in statuses.items() if status == "FAILED"]
    for name, path in result.outputs.items():
        LOGGER.info("%s -> %s", name, path)
    if failed:
        raise WetlandsError(f"Run {result.label}: {len(failed)} export job(s) failed: {failed}")


def _windows(args: argparse.Namespace) -> None:
    for window in plan_windows(args.years, args.seasons):
        print(f"{window.label}\t{window.start_date.isoformat()}\t{window.end_date.isoformat()}")


def _topography(args: argparse.Namespace) -> None:
    if not args.dem.exists():
        raise ConfigurationError(f"DEM not found: {args.dem}")
    written = write_topography_layers(args.dem, args.output_dir, tuple(args.tpi_radii))
    LOGGER.info("Topographic layers ready: %s", ", ".join(sorted(written)))


COMMANDS = {"run": _run, "windows": _windows, "topography": _topography}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper()))
    try:
        COMMANDS[args.command](args)
    except WetlandsError as exc:
        LOGGER.error("%s", exc)
        return 1
    return 0


__all__ = ["build_parser", "config_from_args", "main"]


if __name__ == "__main__":
    sys.exit(main())
