# src/forest4d/lidar/normalize.py

"""
This module implements height normalization of point clouds against a terrain raster.
"""

import logging

import numpy as np
from scipy import ndimage

from forest4d.raster.layer import Raster

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "sample_raster",
    "normalize_height"
]

def sample_raster(raster: Raster, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Bilinearly samples the first band of a raster at point locations.

    Returns:
        np.ndarray: Sampled values, NaN outside the raster or next to undefined cells.
    """
    grid = raster.filled(np.nan)

    # Fractional pixel coordinates, shifted so that integer positions hit cell centers
    cols, rows = ~raster.transform * (x, y)
    cols = np.asarray(cols) - 0.5
    rows = np.asarray(rows) - 0.5

    sampled = ndimage.map_coordinates(grid, [rows, cols], order=1, mode='nearest')

    # Points beyond the outer cell edges have no terrain under them
    outside = (rows < -0.5) | (rows > raster.height - 0.5) | (cols < -0.5) | (cols > raster.width - 0.5)
    sampled[outside] = np.nan
    return sampled

def normalize_height(pc: PointCloud, terrain: Raster) -> PointCloud:
    """
    Subtracts the terrain elevation under each point from its z value.

    Points without a defined terrain elevation are dropped.

    Args:
        pc (PointCloud): Point cloud in the same vertical reference as `terrain`.
        terrain (Raster): Terrain model raster.

    Returns:
        PointCloud: Ground-relative heights.
    """
    if pc.is_empty:
        return pc

    ground = sample_raster(terrain, pc.x, pc.y)
    defined = np.isfinite(ground)

    dropped = len(pc) - int(np.count_nonzero(defined))
    if dropped:
        log.debug(f"{dropped} points without terrain dropped during normalization")

    kept = pc.subset(defined)
    return kept.with_z(kept.z - ground[defined])
