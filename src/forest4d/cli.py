import argparse
import sys
import logging
from typing import Any, Dict, List, Optional

from forest4d.config import PipelineConfig
from forest4d.exceptions import Forest4DError
from forest4d.lidar.classify import TerrainType

def setup_logging(level: int = logging.INFO) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# argparse destinations forwarded to PipelineConfig when given on the command line
CONFIG_OPTIONS = (
    "output_root", "year", "generate_dsm", "generate_dtm", "generate_chm", "generate_hillshade",
    "compute_rumple", "compute_canopy_cover", "compute_density", "overwrite", "correction_path",
    "metric_resolution", "base_resolution", "chunk_size", "buffer", "workers", "max_edge",
    "reclassify_ground", "crs",
)

def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Collects the configuration options explicitly set on the command line."""
    overrides = {name: getattr(args, name, None) for name in CONFIG_OPTIONS}
    if getattr(args, "all_metrics", False):
        overrides.update(compute_rumple=True, compute_canopy_cover=True, compute_density=True)
    return {k: v for k, v in overrides.items() if v is not None}

def build_config(args: argparse.Namespace) -> PipelineConfig:
    """
    Resolves the run configuration from a YAML file and/or command-line options.

    Command-line options take precedence over the file.
    """
    overrides = config_overrides(args)
    if args.config:
        return PipelineConfig.from_yaml(args.config, **overrides)
    return PipelineConfig.from_mapping(overrides)

def run_pipeline(args: argparse.Namespace) -> None:
    from forest4d.scheduler import process_catalog, summarize

    try:
        config = build_config(args)
    except (Forest4DError, FileNotFoundError) as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        results = process_catalog(args.input, config)
    except (Forest4DError, FileNotFoundError) as e:
        logging.error(f"Run aborted: {e}")
        sys.exit(1)

    summary = summarize(results)
    if summary.failed_tiles:
        logging.warning(f"{len(summary.failed_tiles)} tile(s) failed, see the log above.")

def run_reclassify(args: argparse.Namespace) -> None:
    from forest4d.reclassify import reclassify_catalog

    try:
        outcomes = reclassify_catalog(
            args.input,
            args.output,
            workers=args.workers,
            overwrite=args.overwrite,
            terrain=TerrainType[args.terrain.upper()],
            cloth_resolution=args.cloth_resolution
        )
    except FileNotFoundError as e:
        logging.error(f"Run aborted: {e}")
        sys.exit(1)

    written = sum(1 for o in outcomes.values() if o.status.value == "written")
    logging.info(f"Reclassified {written} of {len(outcomes)} tile(s) into {args.output}")

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forest4d",
        description="Terrain and canopy structure rasters from tiled lidar point clouds"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enables debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        help="Derives DSM, DTM, CHM and structural metrics for every tile of a directory."
    )
    run_parser.add_argument("input", help="Directory holding the LAS/LAZ tiles.")
    run_parser.add_argument("--config", help="YAML configuration file. Command-line options take precedence.")
    run_parser.add_argument("--output", dest="output_root", help="Output root directory.")
    run_parser.add_argument("--year", help="Acquisition year tag embedded in every filename.")

    run_parser.add_argument("--no-dsm", dest="generate_dsm", action="store_false", default=None,
                            help="Do not write the DSM.")
    run_parser.add_argument("--no-dtm", dest="generate_dtm", action="store_false", default=None,
                            help="Do not write the DTM.")
    run_parser.add_argument("--no-chm", dest="generate_chm", action="store_false", default=None,
                            help="Do not write the CHM.")
    run_parser.add_argument("--hillshade", dest="generate_hillshade", action="store_true", default=None,
                            help="Write a hillshade next to each elevation product.")

    run_parser.add_argument("--rumple", dest="compute_rumple", action="store_true", default=None,
                            help="Compute the rumple index.")
    run_parser.add_argument("--canopy-cover", dest="compute_canopy_cover", action="store_true", default=None,
                            help="Compute the canopy cover fraction.")
    run_parser.add_argument("--density", dest="compute_density", action="store_true", default=None,
                            help="Compute the above-threshold point density.")
    run_parser.add_argument("--all-metrics", action="store_true", help="Compute every structural metric.")

    run_parser.add_argument("--no-overwrite", dest="overwrite", action="store_false", default=None,
                            help="Keep existing outputs untouched.")
    run_parser.add_argument("--correction", dest="correction_path",
                            help="Vertical correction grid (e.g. a GTX geoid model).")
    run_parser.add_argument("--metric-resolution", type=float, help="Cell size of the structural metrics.")
    run_parser.add_argument("--resolution", dest="base_resolution", type=float,
                            help="Cell size of the DSM, DTM and CHM.")
    run_parser.add_argument("--chunk-size", type=float,
                            help="Catalog chunk size, 0 keeps file-native tiles.")
    run_parser.add_argument("--buffer", type=float, help="Margin loaded around each tile.")
    run_parser.add_argument("--workers", type=int, help="Number of worker processes.")
    run_parser.add_argument("--max-edge", type=float, help="Longest TIN edge kept in the DSM and CHM.")
    run_parser.add_argument("--reclassify-ground", action="store_true", default=None,
                            help="Classify ground points before building the terrain model.")
    run_parser.add_argument("--crs", help="CRS assigned to tiles that carry none (e.g. EPSG:32612).")

    reclass_parser = subparsers.add_parser(
        "reclassify",
        help="Re-runs ground classification on every tile and writes the reclassified files."
    )
    reclass_parser.add_argument("input", help="Directory holding the LAS/LAZ tiles.")
    reclass_parser.add_argument("--output", required=True, help="Destination directory.")
    reclass_parser.add_argument("--workers", type=int, default=4, help="Number of worker processes.")
    reclass_parser.add_argument("--overwrite", action="store_true", help="Replace existing outputs.")
    reclass_parser.add_argument(
        "--terrain",
        choices=[t.name.lower() for t in TerrainType],
        default="relief",
        help="Terrain type used to parameterize the cloth simulation."
    )
    reclass_parser.add_argument("--cloth-resolution", type=float, default=1.0, help="Cloth grid size.")

    return parser

def main(argv: Optional[List[str]] = None) -> None:
    """
    Parses command-line arguments and routes execution to the requested subcommand.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "run":
        run_pipeline(args)
    elif args.command == "reclassify":
        run_reclassify(args)

if __name__ == "__main__":
    main()
