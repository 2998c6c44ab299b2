# src/forest4d/lidar/rasterize.py

"""
This module implements the grid definition shared by all lidar-derived rasters and functions to rasterize point clouds onto it.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import logging
import math

import numpy as np
from rasterio.transform import Affine
from rasterio.crs import CRS
from numba import jit

from forest4d.raster.layer import Raster, NODATA_VAL

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "GridSpec",
    "points_to_grid",
    "NODATA_VAL"
]

def _create_affine_transform(min_x: float, max_y: float, resolution: float) -> Affine:
    """
    Generates affine coordinate reference transforms for empty grids.

    Args:
        min_x (float): Minimum X coordinate of the grid.
        max_y (float): Maximum Y coordinate of the grid.
        resolution (float): Geographic units per pixel.

    Returns:
        Affine: Affine transformation object for georeferencing the raster grid.
    """
    # Translate spatial coordinates into discrete pixel space through a combination of scaling and translation
    return Affine.translation(min_x, max_y) * Affine.scale(resolution, -resolution)

@dataclass(frozen=True)
class GridSpec:
    """
    North-up raster grid onto which points are interpolated or aggregated.

    Args:
        min_x (float): X coordinate of the left edge.
        max_y (float): Y coordinate of the top edge.
        width (int): Number of columns.
        height (int): Number of rows.
        resolution (float): Cell size in CRS units.
    """
    min_x: float
    max_y: float
    width: int
    height: int
    resolution: float

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        resolution: float
        ) -> 'GridSpec':
        """
        Builds the smallest grid anchored at the top-left corner of `bounds` that covers them.
        """
        if resolution <= 0:
            raise ValueError(f"Grid resolution must be positive, got {resolution}")

        min_x, min_y, max_x, max_y = bounds
        # A tolerance keeps exact multiples from growing an extra column of float noise
        width = max(1, math.ceil((max_x - min_x) / resolution - 1e-9))
        height = max(1, math.ceil((max_y - min_y) / resolution - 1e-9))
        return cls(min_x=min_x, max_y=max_y, width=width, height=height, resolution=resolution)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def transform(self) -> Affine:
        return _create_affine_transform(self.min_x, self.max_y, self.resolution)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return (
            self.min_x,
            self.max_y - self.height * self.resolution,
            self.min_x + self.width * self.resolution,
            self.max_y
        )

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Returns flattened (x, y) coordinates of every cell center in row-major order."""
        cols = self.min_x + (np.arange(self.width) + 0.5) * self.resolution
        rows = self.max_y - (np.arange(self.height) + 0.5) * self.resolution
        xx, yy = np.meshgrid(cols, rows)
        return xx.ravel(), yy.ravel()

    def cell_index(self, x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Maps coordinates to (rows, cols, inside) where `inside` flags points falling on the grid.

        Points lying exactly on the right or bottom edge are assigned to the last column or row.
        """
        cols = np.floor((x - self.min_x) / self.resolution).astype(np.int64)
        rows = np.floor((self.max_y - y) / self.resolution).astype(np.int64)

        right_edge = np.isclose(x, self.min_x + self.width * self.resolution)
        bottom_edge = np.isclose(y, self.max_y - self.height * self.resolution)
        cols[right_edge & (cols == self.width)] = self.width - 1
        rows[bottom_edge & (rows == self.height)] = self.height - 1

        inside = (rows >= 0) & (rows < self.height) & (cols >= 0) & (cols < self.width)
        return rows, cols, inside

    def to_raster(
        self,
        data: np.ndarray,
        crs: Optional[CRS],
        nodata: Optional[float] = NODATA_VAL,
        name: Optional[str] = None
        ) -> Raster:
        return Raster(
            data=data,
            transform=self.transform,
            crs=crs,
            nodata=nodata,
            band_names={name: 1} if name else None
        )

@jit(nopython=True, cache=True)
def _rasterize_chunk(
    grid: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    z: np.ndarray
    ):
    """
    Keeps the highest z of every cell, in place. Explicit loops for numba.
    """
    for i in range(len(rows)):
        r = rows[i]
        c = cols[i]
        if z[i] > grid[r, c]:
            grid[r, c] = z[i]

def points_to_grid(
    source: PointCloud,
    grid: GridSpec,
    nodata: float = NODATA_VAL
) -> Raster:
    """
    Rasterizes a point cloud onto a grid as a highest-hit surface.

    Args:
        source (PointCloud): Points to rasterize.
        grid (GridSpec): Target grid.
        nodata (float): Filler value for cells without points.

    Returns:
        Raster: Highest z per cell, geo-aligned with `grid`.
    """
    # -inf so any real point wins, swapped for nodata afterwards
    values = np.full(grid.shape, -np.inf, dtype=np.float32)

    if len(source) > 0:
        rows, cols, inside = grid.cell_index(source.x, source.y)
        if np.any(inside):
            _rasterize_chunk(
                values,
                rows[inside],
                cols[inside],
                source.z[inside].astype(np.float32)
            )

    values[values == -np.inf] = nodata
    return grid.to_raster(values, crs=source.crs, nodata=nodata)
