# src/forest4d/lidar/interpolate.py

"""
This module implements triangulated irregular network (TIN) interpolation of point clouds onto raster grids.

Surfaces are built from a Delaunay triangulation of the selected points and
evaluated at cell centers with barycentric (linear) weights. Triangles with an
edge longer than `max_edge` are discarded so that gaps in the data stay
undefined instead of being bridged by long, flat facets.
"""

import logging
from typing import Optional

import numpy as np
from scipy.spatial import Delaunay, QhullError

from forest4d.raster.layer import Raster, NODATA_VAL

from .layer import PointCloud
from .rasterize import GridSpec

log = logging.getLogger(__name__)

__all__ = [
    "tin_surface",
    "highest_points"
]

def highest_points(pc: PointCloud, resolution: float) -> PointCloud:
    """
    Keeps the highest point of each cell of a `resolution` sized grid.

    Thinning to the local maxima removes returns hidden below the surface
    before triangulation and bounds the triangulation size.

    Args:
        pc (PointCloud): Input points.
        resolution (float): Size of the thinning cells.

    Returns:
        PointCloud: One point per occupied cell.
    """
    if pc.is_empty:
        return pc

    grid = GridSpec.from_bounds(pc.bounds, resolution)
    rows, cols, inside = grid.cell_index(pc.x, pc.y)
    idx = np.flatnonzero(inside)
    if len(idx) == 0:
        return pc.subset(np.zeros(len(pc), dtype=bool))

    cell = rows[idx] * grid.width + cols[idx]
    # Sort by cell then by descending z so the first entry of each cell is its maximum
    order = np.lexsort((-pc.z[idx], cell))
    _, first = np.unique(cell[order], return_index=True)

    keep = np.zeros(len(pc), dtype=bool)
    keep[idx[order[first]]] = True
    return pc.subset(keep)

def _long_edge_simplices(points: np.ndarray, simplices: np.ndarray, max_edge: float) -> np.ndarray:
    """Returns a boolean flag per triangle telling whether any of its edges exceeds `max_edge`."""
    a = points[simplices[:, 0]]
    b = points[simplices[:, 1]]
    c = points[simplices[:, 2]]
    longest = np.maximum.reduce([
        np.hypot(*(a - b).T),
        np.hypot(*(b - c).T),
        np.hypot(*(c - a).T)
    ])
    return longest > max_edge

def tin_surface(
    pc: PointCloud,
    grid: GridSpec,
    max_edge: float = 0.0,
    name: Optional[str] = None
) -> Raster:
    """
    Interpolates a continuous surface through the points of `pc` with a Delaunay TIN.

    Args:
        pc (PointCloud): Points defining the surface (already selected, e.g. ground or surface points).
        grid (GridSpec): Output grid.
        max_edge (float): Maximum triangle edge length, 0 keeps every triangle.
        name (Optional[str]): Band name written into the raster.

    Returns:
        Raster: Interpolated surface, nodata outside the triangulation.
    """
    values = np.full(grid.shape, NODATA_VAL, dtype=np.float32)

    # Duplicate XY locations break the triangulation; keep the highest z at each location
    xy = np.column_stack((pc.x, pc.y))
    if len(xy) > 0:
        order = np.lexsort((-pc.z, pc.y, pc.x))
        xy_sorted = xy[order]
        unique_mask = np.ones(len(order), dtype=bool)
        unique_mask[1:] = np.any(xy_sorted[1:] != xy_sorted[:-1], axis=1)
        xy = xy_sorted[unique_mask]
        z = pc.z[order][unique_mask]
    else:
        z = pc.z

    if len(xy) < 3:
        log.debug(f"Only {len(xy)} distinct points, surface left undefined")
        return grid.to_raster(values, crs=pc.crs, name=name)

    # Shifting to a local origin avoids precision loss with projected coordinates
    origin = xy.min(axis=0)
    local = xy - origin
    try:
        tri = Delaunay(local)
    except QhullError:
        log.debug("Degenerate point layout, surface left undefined")
        return grid.to_raster(values, crs=pc.crs, name=name)

    cx, cy = grid.cell_centers()
    centers = np.column_stack((cx - origin[0], cy - origin[1]))
    simplex = tri.find_simplex(centers)
    inside = simplex >= 0

    if max_edge > 0:
        too_long = _long_edge_simplices(local, tri.simplices, max_edge)
        inside[inside] = ~too_long[simplex[inside]]

    if np.any(inside):
        s = simplex[inside]
        pts = centers[inside]
        # Barycentric coordinates from the triangulation's affine transforms
        trans = tri.transform[s]
        partial = np.einsum('ijk,ik->ij', trans[:, :2, :], pts - trans[:, 2, :])
        weights = np.column_stack((partial, 1.0 - partial.sum(axis=1)))
        interpolated = np.sum(weights * z[tri.simplices[s]], axis=1)

        flat = values.ravel()
        flat[np.flatnonzero(inside)] = interpolated.astype(np.float32)
        values = flat.reshape(grid.shape)

    return grid.to_raster(values, crs=pc.crs, name=name)
