# src/forest4d/raster/layer.py

"""
This module defines the in-memory raster envelope passed between pipeline stages.
"""

import copy
import logging
from typing import Union, Optional, Dict, Any, Tuple

import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from forest4d.exceptions import RasterValidationError

log = logging.getLogger(__name__)

__all__ = [
    "Raster",
    "NODATA_VAL"
]

NODATA_VAL = -9999.0

class Raster:
    """
    The unit of data exchanged between the stages of the tile pipeline.

    A Raster is an in-memory "Envelope" that synchronizes:
    1. The 'Heavy' Data: A NumPy array of pixels.
    2. The 'Light' Context: Geospatial metadata (CRS, Transform).

    Every DSM, DTM, CHM and metric grid produced for a tile lives in one of these
    until it is handed to the output writer, so no stage needs to round-trip
    through disk to hand its product to the next one.

    Attributes:
        data (np.ndarray): The pixel array in (Bands, Height, Width) format.
        transform (Affine): The affine transform matrix.
        crs (CRS | None): The Coordinate Reference System.
        nodata (float | int | None): The value representing missing data.
        band_names (Dict[str, int]): Mapping of semantic names to 1-based band indices.
    """

    def __init__(
        self,
        data: np.ndarray,
        transform: Affine,
        crs: Optional[CRS] = None,
        nodata: Optional[Union[float, int]] = NODATA_VAL,
        band_names: Optional[Dict[str, int]] = None
    ):
        """
        Initialize a Raster object.

        Args:
            data: Input array. Must be 2D (Height, Width) or 3D (Bands, Height, Width).
                  2D arrays are automatically promoted to 3D (1, Height, Width).
            transform: Geospatial transform (maps pixels to coordinates).
            crs: Coordinate Reference System, None when the source carried none.
            nodata: Value indicating no data.
            band_names: Optional mapping of names to band indices ('CHM': 1).

        Raises:
            RasterValidationError: If dimensions mismatch or types are incorrect.
        """
        self.validate_inputs(data, transform)

        # Enforce 3D structure (Bands, Height, Width)
        if data.ndim == 2:
            data = data[np.newaxis, :, :]

        self._data = data
        self.transform = transform
        self.crs = crs
        self.nodata = nodata
        self.band_names = band_names or {}

    @staticmethod
    def validate_inputs(data: np.ndarray, transform: Affine):
        """Internal validation logic."""
        if not isinstance(data, np.ndarray):
            raise TypeError(f"Data must be numpy.ndarray, got {type(data)}")

        if data.ndim not in (2, 3):
            raise RasterValidationError(f"Data must be 2D or 3D, got shape {data.shape}")

        if not isinstance(transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(transform)}")

    # Dynamic metadata properties

    @property
    def data(self) -> np.ndarray:
        """Access the raw pixel data."""
        return self._data

    @data.setter
    def data(self, new_data: np.ndarray):
        if new_data.ndim == 2:
            new_data = new_data[np.newaxis, :, :]

        if new_data.ndim != 3:
            raise RasterValidationError(f"New data must be 2D or 3D, got {new_data.ndim}D")

        self._data = new_data

    @property
    def width(self) -> int:
        return self._data.shape[2]

    @property
    def height(self) -> int:
        return self._data.shape[1]

    @property
    def count(self) -> int:
        return self._data.shape[0]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (Bands, Height, Width)."""
        return self._data.shape

    @property
    def resolution(self) -> Tuple[float, float]:
        """Returns the (x, y) pixel size in CRS units."""
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in CRS units."""
        return rasterio.transform.array_bounds(self.height, self.width, self.transform)

    @property
    def profile(self) -> Dict[str, Any]:
        """
        Generates a Rasterio-compliant profile based on current state.
        """
        profile = {
            'driver': 'GTiff',
            'dtype': self._data.dtype,
            'nodata': self.nodata,
            'width': self.width,
            'height': self.height,
            'count': self.count,
            'crs': self.crs,
            'transform': self.transform,
            'compress': 'lzw'
        }
        # GeoTIFF block sizes must be multiples of 16, small tiles stay striped
        if self.width >= 256 and self.height >= 256:
            profile['tiled'] = True
        return profile

    @property
    def valid_mask(self) -> np.ndarray:
        """
        Boolean (Height, Width) mask of cells holding data in the first band.

        A cell is invalid when it equals the nodata value or is NaN.
        """
        band = self._data[0]
        mask = ~np.isnan(band) if np.issubdtype(band.dtype, np.floating) else np.ones(band.shape, dtype=bool)
        if self.nodata is not None and not np.isnan(self.nodata):
            mask &= band != self.nodata
        return mask

    @property
    def is_empty(self) -> bool:
        """True when no cell of the raster holds data."""
        return self._data.size == 0 or not np.any(self.valid_mask)

    def filled(self, value: float = np.nan) -> np.ndarray:
        """
        Returns a float copy of the first band with invalid cells replaced by `value`.
        """
        band = self._data[0].astype(np.float64)
        band[~self.valid_mask] = value
        return band

    def with_data(self, data: np.ndarray) -> 'Raster':
        """Returns a new Raster on the same grid holding `data`."""
        return Raster(
            data=data,
            transform=self.transform,
            crs=self.crs,
            nodata=self.nodata,
            band_names=self.band_names.copy()
        )

    def masked_by(self, other: 'Raster') -> 'Raster':
        """
        Returns a copy where every cell undefined in `other` is set to nodata.

        Both rasters must share the same grid.
        """
        if other.shape[1:] != self.shape[1:] or other.transform != self.transform:
            raise RasterValidationError(
                f"Cannot mask {self.shape} raster with a {other.shape} raster on a different grid"
            )

        nodata = self.nodata if self.nodata is not None else NODATA_VAL
        out = self._data.copy()
        out[:, ~other.valid_mask] = nodata

        masked = self.with_data(out)
        masked.nodata = nodata
        return masked

    def copy(self) -> 'Raster':
        """Returns a deep copy of the Raster."""
        return Raster(
            data=self._data.copy(),
            transform=copy.deepcopy(self.transform),
            crs=copy.deepcopy(self.crs),
            nodata=self.nodata,
            band_names=self.band_names.copy()
        )

    def __repr__(self) -> str:
        """Returns a string representation of the Raster object based on its metadata."""
        return (f"<Raster shape={self.shape} dtype={self._data.dtype} "
                f"crs={self.crs} bounds={self.bounds}>")
