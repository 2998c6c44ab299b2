# src/forest4d/raster/terrain.py

"""
This module derives terrain visualisation layers (slope, aspect, hillshade) from elevation rasters.
"""

import logging
from typing import Tuple

import numpy as np

from .layer import Raster, NODATA_VAL

log = logging.getLogger(__name__)

__all__ = [
    "slope_aspect",
    "hillshade"
]

def slope_aspect(elevation: Raster) -> Tuple[np.ndarray, np.ndarray]:
    """
    Computes slope and aspect of an elevation raster, both in radians.

    Aspect is the azimuth of the downslope direction, measured clockwise from north.
    Undefined cells are temporarily filled with the median elevation so that
    finite differences do not bleed NaN into their neighbours; they are restored
    to NaN in the outputs.

    Args:
        elevation (Raster): Single band elevation raster (DSM, DTM or CHM).

    Returns:
        Tuple[np.ndarray, np.ndarray]: (slope, aspect) arrays shaped (Height, Width).
    """
    valid = elevation.valid_mask
    z = elevation.filled(np.nan)
    fill = np.nanmedian(z) if np.any(valid) else 0.0
    z = np.where(valid, z, fill)

    res_x, res_y = elevation.resolution
    if z.shape[0] < 2 or z.shape[1] < 2:
        flat = np.zeros(z.shape, dtype=np.float64)
        flat[~valid] = np.nan
        return flat, flat.copy()

    # Rows run from north to south, so the northward derivative flips sign
    dz_drow, dz_dcol = np.gradient(z, res_y, res_x)
    dz_east = dz_dcol
    dz_north = -dz_drow

    slope = np.arctan(np.hypot(dz_east, dz_north))
    aspect = np.mod(np.arctan2(-dz_east, -dz_north), 2.0 * np.pi)

    slope[~valid] = np.nan
    aspect[~valid] = np.nan
    return slope, aspect

def hillshade(
    elevation: Raster,
    altitude: float = 45.0,
    azimuth: float = 0.0
) -> Raster:
    """
    Generates a shaded relief raster from an elevation raster.

    The illumination model combines slope and aspect as
    sin(altitude) * cos(slope) + cos(altitude) * sin(slope) * cos(azimuth - aspect),
    clipped to [0, 1].

    Args:
        elevation (Raster): Elevation raster.
        altitude (float): Sun elevation angle above the horizon, in degrees.
        azimuth (float): Sun direction clockwise from north, in degrees.

    Returns:
        Raster: Hillshade on the same grid, nodata where the elevation is undefined.
    """
    slope, aspect = slope_aspect(elevation)

    alt = np.deg2rad(altitude)
    az = np.deg2rad(azimuth)

    shade = np.sin(alt) * np.cos(slope) + np.cos(alt) * np.sin(slope) * np.cos(az - aspect)
    shade = np.clip(shade, 0.0, 1.0)
    shade[np.isnan(slope)] = NODATA_VAL

    return Raster(
        data=shade.astype(np.float32),
        transform=elevation.transform,
        crs=elevation.crs,
        nodata=NODATA_VAL,
        band_names={"hillshade": 1}
    )
