# src/forest4d/lidar/metrics.py

"""
This module implements per-cell structural metrics computed from point clouds.

Metric functions follow a common signature `fn(x, y, z) -> float` and are
applied to the points of each grid cell by `aggregate_grid`.
"""

import logging
from typing import Callable, Optional

import numpy as np
from scipy.spatial import Delaunay, QhullError

from forest4d.raster.layer import Raster, NODATA_VAL

from .layer import PointCloud
from .rasterize import GridSpec, points_to_grid

log = logging.getLogger(__name__)

__all__ = [
    "CellMetric",
    "aggregate_grid",
    "rumple_index",
    "height_fraction",
    "filter_surface_points"
]

CellMetric = Callable[[np.ndarray, np.ndarray, np.ndarray], float]

def rumple_index(x: np.ndarray, y: np.ndarray, z: np.ndarray) -> float:
    """
    Ratio between the 3D area of the triangulated surface and its 2D footprint.

    A flat surface scores 1; rougher canopies score higher.

    Returns:
        float: The rumple index, NaN when fewer than 3 non-collinear points are available.
    """
    if len(x) < 3:
        return np.nan

    xy = np.column_stack((x - x.min(), y - y.min()))
    try:
        tri = Delaunay(xy)
    except QhullError:
        return np.nan

    p = np.column_stack((xy, z))[tri.simplices]
    u = p[:, 1] - p[:, 0]
    v = p[:, 2] - p[:, 0]

    area_3d = 0.5 * np.linalg.norm(np.cross(u, v), axis=1).sum()
    area_2d = 0.5 * np.abs(u[:, 0] * v[:, 1] - u[:, 1] * v[:, 0]).sum()

    if area_2d <= 0:
        return np.nan
    return float(area_3d / area_2d)

def height_fraction(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    threshold: float = 2.0
    ) -> float:
    """
    Fraction of points of a cell whose (normalized) height exceeds `threshold`.

    Used with a 1 unit threshold on first returns for canopy cover and a
    2 unit threshold on all returns for the above-threshold density.
    """
    if len(z) == 0:
        return np.nan
    return float(np.count_nonzero(z > threshold) / len(z))

def aggregate_grid(
    pc: PointCloud,
    fn: CellMetric,
    grid: GridSpec,
    name: Optional[str] = None
    ) -> Raster:
    """
    Applies a metric function to the points of every grid cell.

    Args:
        pc (PointCloud): Points to aggregate.
        fn (CellMetric): Metric evaluated as fn(x, y, z) on each non-empty cell.
        grid (GridSpec): Output grid, usually at the metric resolution.
        name (Optional[str]): Band name written into the raster.

    Returns:
        Raster: float32 grid, nodata for empty cells and undefined metric values.
    """
    values = np.full(grid.shape, NODATA_VAL, dtype=np.float32)

    if len(pc) > 0:
        rows, cols, inside = grid.cell_index(pc.x, pc.y)
        idx = np.flatnonzero(inside)
        cell = rows[idx] * grid.width + cols[idx]

        order = np.argsort(cell, kind='stable')
        cell_sorted = cell[order]
        point_idx = idx[order]
        cells, starts = np.unique(cell_sorted, return_index=True)
        ends = np.append(starts[1:], len(cell_sorted))

        flat = values.ravel()
        for c, start, end in zip(cells, starts, ends):
            members = point_idx[start:end]
            value = fn(pc.x[members], pc.y[members], pc.z[members])
            if value is not None and np.isfinite(value):
                flat[c] = value
        values = flat.reshape(grid.shape)

    return grid.to_raster(values, crs=pc.crs, name=name)

def filter_surface_points(
    pc: PointCloud,
    tolerance: float = 0.5,
    resolution: float = 1.0
    ) -> PointCloud:
    """
    Keeps the points lying within `tolerance` of the local surface top.

    The local top is the highest return of the `resolution` sized cell a point falls in.

    Args:
        pc (PointCloud): Unnormalized point cloud.
        tolerance (float): Vertical distance below the local top still considered surface.
        resolution (float): Size of the cells defining the local top.

    Returns:
        PointCloud: Surface points.
    """
    if pc.is_empty:
        return pc

    grid = GridSpec.from_bounds(pc.bounds, resolution)
    top = points_to_grid(pc, grid).filled(np.nan)

    rows, cols, inside = grid.cell_index(pc.x, pc.y)
    keep = np.zeros(len(pc), dtype=bool)
    local_top = top[rows[inside], cols[inside]]
    keep[inside] = pc.z[inside] >= local_top - tolerance

    return pc.subset(keep)
