# src/forest4d/correction.py

"""
This module implements the vertical correction protocol.

A correction grid (typically a geoid model in GTX format) holds the offset
between ellipsoidal and orthometric heights. It is resampled onto each target
grid with bilinear interpolation and added to it.

Terrain rasters carry their vertical reference in their type: `RawTerrain`
is expressed in the reference of the points and is the only terrain accepted
for height normalization, `CorrectedTerrain` is the only terrain written as
the DTM product.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np
from rasterio.warp import Resampling

from forest4d.exceptions import CorrectionError, RasterError
from forest4d.raster.layer import Raster, NODATA_VAL
from forest4d.raster.io import load as load_raster
from forest4d.raster.geom import align_to

log = logging.getLogger(__name__)

__all__ = [
    "RawTerrain",
    "CorrectedTerrain",
    "VerticalCorrection"
]

@dataclass(frozen=True)
class RawTerrain:
    """Terrain model in the vertical reference of the raw points (ellipsoidal)."""
    raster: Raster

@dataclass(frozen=True)
class CorrectedTerrain:
    """Terrain model after vertical correction (orthometric), or unchanged when no correction is configured."""
    raster: Raster
    corrected: bool = False

class VerticalCorrection:
    """
    Loads a correction grid once and applies it to target rasters.

    Without a path every operation is the identity.

    Args:
        path (Optional[Union[str, Path]]): Correction grid readable by rasterio (GTX, GeoTIFF, ...).
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._grid: Optional[Raster] = None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self) -> Raster:
        """
        Reads the correction grid, caching it for subsequent calls.

        Raises:
            CorrectionError: If no path is configured or the file cannot be read.
        """
        if self.path is None:
            raise CorrectionError("No correction grid configured.")

        if self._grid is None:
            try:
                self._grid = load_raster(self.path)
            except (FileNotFoundError, RasterError) as e:
                raise CorrectionError(f"Cannot load correction grid {self.path}: {e}") from e
            log.debug(f"Correction grid loaded from {self.path.name} {self._grid.shape}")

        return self._grid

    def resample(self, correction: Raster, target: Raster) -> Raster:
        """Bilinearly resamples `correction` onto the grid of `target`."""
        try:
            return align_to(correction, target, resampling=Resampling.bilinear)
        except RasterError as e:
            raise CorrectionError(f"Cannot align correction grid onto target: {e}") from e

    def apply(self, raster: Raster) -> Raster:
        """
        Adds the resampled correction to `raster`.

        Cells where either the raster or the correction is undefined become nodata.

        Returns:
            Raster: A new corrected raster; `raster` itself when no correction is configured.
        """
        if not self.enabled:
            return raster

        offset = self.resample(self.load(), raster)

        nodata = raster.nodata if raster.nodata is not None else NODATA_VAL
        valid = raster.valid_mask & offset.valid_mask
        result = np.full(raster.shape, nodata, dtype=np.float32)
        corrected = raster.data.astype(np.float64) + offset.data.astype(np.float64)
        result[:, valid] = corrected[:, valid].astype(np.float32)

        uncovered = int(np.count_nonzero(raster.valid_mask & ~offset.valid_mask))
        if uncovered:
            log.warning(f"Correction grid does not cover {uncovered} defined cell(s), left undefined")

        corrected_raster = raster.with_data(result)
        corrected_raster.nodata = nodata
        return corrected_raster

    def correct_terrain(self, terrain: RawTerrain) -> CorrectedTerrain:
        """Turns the normalization terrain into the terrain written as the DTM product."""
        if not isinstance(terrain, RawTerrain):
            raise TypeError(f"Expected RawTerrain, got {type(terrain).__name__}")
        return CorrectedTerrain(raster=self.apply(terrain.raster), corrected=self.enabled)
