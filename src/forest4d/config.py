# src/forest4d/config.py

"""
This module defines the immutable run configuration shared by the scheduler and every tile pipeline.

A configuration is built once per run, either directly, from a mapping, or
from a YAML file, and is then passed by value into each worker task.
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Union, Optional, Dict, Any

import yaml

from forest4d.exceptions import ConfigError

log = logging.getLogger(__name__)

__all__ = [
    "PipelineConfig"
]

@dataclass(frozen=True)
class PipelineConfig:
    """
    Options recognised by the tile pipeline.

    Args:
        output_root (Path): Directory receiving one subfolder per product.
        year (Union[int, str]): Acquisition year tag embedded in every output filename.
        generate_dsm (bool): Write the Digital Surface Model.
        generate_dtm (bool): Write the (vertically corrected) Digital Terrain Model.
        generate_chm (bool): Write the Canopy Height Model.
        generate_hillshade (bool): Write a hillshade next to each written elevation product.
        compute_rumple (bool): Write the rumple (roughness) index.
        compute_canopy_cover (bool): Write the canopy-cover fraction.
        compute_density (bool): Write the above-threshold point density.
        overwrite (bool): Replace existing outputs; when False existing files are kept untouched.
        correction_path (Optional[Path]): Vertical correction grid (e.g. a GTX geoid model).
        metric_resolution (float): Cell size of the structural metrics.
        base_resolution (float): Cell size of the DSM, DTM and CHM.
        chunk_size (float): Catalog chunk size, 0 processes each file as one tile.
        buffer (float): Margin loaded around each tile to avoid edge artifacts.
        workers (int): Number of worker processes.
        max_edge (float): Longest triangle edge kept when interpolating the DSM.
        surface_tolerance (float): Vertical tolerance defining rumple surface points.
        cover_threshold (float): Height above which a first return counts as canopy.
        density_threshold (float): Height above which a return counts toward the density.
        reclassify_ground (bool): Always run ground classification before building the terrain.
        crs (Optional[str]): CRS used when the tiles carry none.
    """
    output_root: Path
    year: Union[int, str]

    generate_dsm: bool = True
    generate_dtm: bool = True
    generate_chm: bool = True
    generate_hillshade: bool = False

    compute_rumple: bool = False
    compute_canopy_cover: bool = False
    compute_density: bool = False

    overwrite: bool = True
    correction_path: Optional[Path] = None

    metric_resolution: float = 10.0
    base_resolution: float = 1.0
    chunk_size: float = 0.0
    buffer: float = 20.0
    workers: int = 4

    max_edge: float = 3.0
    surface_tolerance: float = 0.5
    cover_threshold: float = 1.0
    density_threshold: float = 2.0

    reclassify_ground: bool = False
    crs: Optional[str] = None

    def __post_init__(self):
        # Frozen dataclasses need object.__setattr__ to coerce field types
        object.__setattr__(self, "output_root", Path(self.output_root))
        if self.correction_path is not None:
            object.__setattr__(self, "correction_path", Path(self.correction_path))

        if str(self.year).strip() == "":
            raise ConfigError("An acquisition year tag is required.")
        if self.metric_resolution <= 0 or self.base_resolution <= 0:
            raise ConfigError(
                f"Resolutions must be positive (base={self.base_resolution}, metric={self.metric_resolution})."
            )
        if self.chunk_size < 0:
            raise ConfigError(f"chunk_size must be >= 0, got {self.chunk_size}")
        if self.buffer < 0:
            raise ConfigError(f"buffer must be >= 0, got {self.buffer}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.max_edge < 0:
            raise ConfigError(f"max_edge must be >= 0, got {self.max_edge}")

    @property
    def any_metric(self) -> bool:
        return self.compute_rumple or self.compute_canopy_cover or self.compute_density

    def with_options(self, **changes) -> 'PipelineConfig':
        """Returns a copy with some options replaced, the original is left untouched."""
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> 'PipelineConfig':
        """
        Builds a configuration from a plain mapping, rejecting unknown keys.

        Args:
            values (Dict[str, Any]): Option names and values.

        Returns:
            PipelineConfig: Validated configuration.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration option(s): {', '.join(unknown)}")

        missing = [name for name in ("output_root", "year") if values.get(name) is None]
        if missing:
            raise ConfigError(f"Missing required configuration option(s): {', '.join(missing)}")

        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides) -> 'PipelineConfig':
        """
        Loads a configuration from a YAML file.

        The document may hold the options at its top level or under a `pipeline` key.
        Keyword overrides whose value is not None take precedence over the file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ConfigError: If the file is malformed or holds invalid options.
        """
        config_file = Path(path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file}")

        try:
            with open(config_file, 'r') as fh:
                document = yaml.safe_load(fh) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing configuration file {config_file}: {e}") from e

        if not isinstance(document, dict):
            raise ConfigError(f"Configuration file {config_file} must contain a mapping.")

        values = dict(document.get("pipeline", document))
        values.update({k: v for k, v in overrides.items() if v is not None})

        log.debug(f"Loaded configuration from {config_file}")
        return cls.from_mapping(values)
