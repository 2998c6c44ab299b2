# src/forest4d/writer.py

"""
This module enforces the output naming convention, the directory-per-product layout and the overwrite policy.

    {output_root}/{subfolder}/{tile_name}_{year}_{suffix}.tif
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from forest4d.raster.layer import Raster
from forest4d.raster.io import save

log = logging.getLogger(__name__)

__all__ = [
    "Product",
    "OutcomeStatus",
    "Outcome",
    "OutputWriter"
]

HILLSHADE_SUFFIX = "hillshade"

class Product(Enum):
    """
    Raster products written per tile, with their subfolder and filename suffix.
    """
    DSM = ("DSM_Tiles", "dsm")
    DTM = ("DTM_Tiles", "dtm")
    CHM = ("CHM_Tiles", "chm")
    ROUGHNESS = ("Rumple_Tiles", "rumple")
    CANOPY_COVER = ("Canopy_Cover_Tiles", "canopycover")
    DENSITY = ("Density_Tiles", "densitygt2m")

    def __init__(self, subfolder: str, suffix: str):
        self.subfolder = subfolder
        self.suffix = suffix

    @property
    def is_elevation(self) -> bool:
        return self in (Product.DSM, Product.DTM, Product.CHM)

class OutcomeStatus(Enum):
    WRITTEN = "written"
    SKIPPED_EMPTY = "skipped_empty"
    SKIPPED_EXISTS = "skipped_exists"
    FAILED = "failed"

@dataclass(frozen=True)
class Outcome:
    """
    What happened to one output of one tile.

    Args:
        status (OutcomeStatus): Final state of the output.
        path (Optional[Path]): Destination path, when one was determined.
        reason (Optional[str]): Why nothing was written (empty input, error message).
    """
    status: OutcomeStatus
    path: Optional[Path] = None
    reason: Optional[str] = None

    @classmethod
    def written(cls, path: Path) -> 'Outcome':
        return cls(OutcomeStatus.WRITTEN, path=path)

    @classmethod
    def skipped_exists(cls, path: Path) -> 'Outcome':
        return cls(OutcomeStatus.SKIPPED_EXISTS, path=path, reason="output exists")

    @classmethod
    def skipped_empty(cls, reason: str) -> 'Outcome':
        return cls(OutcomeStatus.SKIPPED_EMPTY, reason=reason)

    @classmethod
    def failed(cls, reason: str, path: Optional[Path] = None) -> 'Outcome':
        return cls(OutcomeStatus.FAILED, path=path, reason=reason)

    def __str__(self) -> str:
        if self.reason and self.status is not OutcomeStatus.WRITTEN:
            return f"{self.status.value} ({self.reason})"
        return self.status.value

class OutputWriter:
    """
    Decides where each product goes and whether it may be (re)written.

    Args:
        output_root (Union[str, Path]): Root output directory.
        year (Union[int, str]): Acquisition year tag.
        overwrite (bool): Replace existing files when True, keep them untouched otherwise.
    """

    def __init__(self, output_root: Union[str, Path], year: Union[int, str], overwrite: bool = True):
        self.output_root = Path(output_root)
        self.year = year
        self.overwrite = overwrite

    def path_for(self, product: Product, tile_name: str) -> Path:
        return self.output_root / product.subfolder / f"{tile_name}_{self.year}_{product.suffix}.tif"

    @staticmethod
    def hillshade_path_for(parent: Path) -> Path:
        """Hillshade of an elevation product, written beside it."""
        parent = Path(parent)
        return parent.with_name(f"{parent.stem}_{HILLSHADE_SUFFIX}{parent.suffix}")

    def should_write(self, path: Path) -> bool:
        return self.overwrite or not Path(path).exists()

    def ensure_layout(self):
        """Creates every product subfolder under the output root."""
        for product in Product:
            (self.output_root / product.subfolder).mkdir(parents=True, exist_ok=True)

    def write(
        self,
        raster: Raster,
        path: Path,
        save_fn: Optional[Callable[[Raster, Path], Path]] = None
        ) -> Outcome:
        """
        Writes `raster` to `path` unless the overwrite policy forbids it.

        Args:
            raster (Raster): Product to write.
            path (Path): Destination, usually from `path_for`.
            save_fn (Optional[Callable]): Writer to use instead of `forest4d.raster.io.save`.

        Returns:
            Outcome: WRITTEN or SKIPPED_EXISTS.

        Raises:
            RasterIOError: If the destination cannot be written.
        """
        path = Path(path)
        if not self.should_write(path):
            log.debug(f"Keeping existing {path.name}")
            return Outcome.skipped_exists(path)

        (save_fn or save)(raster, path)
        log.debug(f"Wrote {path}")
        return Outcome.written(path)
