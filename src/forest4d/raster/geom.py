# src/forest4d/raster/geom.py

"""
This module provides grid operations between rasters: alignment onto a reference grid and cropping.
"""

import logging
from typing import Tuple

import numpy as np
from rasterio.warp import Resampling, reproject as rio_reproject
from rasterio.windows import Window, from_bounds
from rasterio.windows import transform as window_transform

from forest4d.exceptions import RasterValidationError

from .layer import Raster, NODATA_VAL

log = logging.getLogger(__name__)

__all__ = [
    "align_to",
    "crop",
    "same_grid"
]

def same_grid(a: Raster, b: Raster, atol: float = 1e-6) -> bool:
    """Strictly verify two rasters share the exact same pixel grid."""
    return (
        a.shape[1:] == b.shape[1:] and
        np.allclose(np.array(a.transform), np.array(b.transform), atol=atol)
    )

def align_to(
    source: Raster,
    reference: Raster,
    resampling: Resampling = Resampling.bilinear
) -> Raster:
    """
    Warps `source` onto the grid (CRS, transform, dimensions) of `reference`.

    Cells of the reference grid that the source does not cover are returned as nodata.
    When only one of the two rasters carries a CRS, both are assumed to share it.

    Args:
        source (Raster): Raster to resample.
        reference (Raster): Raster whose grid defines the output.
        resampling (Resampling): Interpolation method (default: Bilinear).

    Returns:
        Raster: A new Raster on the reference grid.
    """
    src_crs = source.crs or reference.crs
    dst_crs = reference.crs or source.crs

    if src_crs is None:
        raise RasterValidationError(
            "Cannot align rasters that both lack a CRS. "
            "Set a fallback CRS in the pipeline configuration."
        )

    if src_crs == dst_crs and same_grid(source, reference):
        return source.copy()

    src_nodata = source.nodata if source.nodata is not None else NODATA_VAL
    src_data = source.data.astype(np.float32)

    new_data = np.full((source.count, reference.height, reference.width), NODATA_VAL, dtype=np.float32)

    log.debug(f"Aligning {source.shape} raster onto {reference.shape} grid (Resampling: {resampling.name})")

    rio_reproject(
        source=src_data,
        destination=new_data,
        src_transform=source.transform,
        src_crs=src_crs,
        src_nodata=src_nodata,
        dst_transform=reference.transform,
        dst_crs=dst_crs,
        dst_nodata=NODATA_VAL,
        resampling=resampling
    )

    return Raster(
        data=new_data,
        transform=reference.transform,
        crs=dst_crs,
        nodata=NODATA_VAL,
        band_names=source.band_names.copy()
    )

def crop(raster: Raster, bounds: Tuple[float, float, float, float]) -> Raster:
    """
    Crop raster to specific geographic bounds.

    Args:
        raster (Raster): Input raster.
        bounds (Tuple): (minx, miny, maxx, maxy) in the same CRS as the raster.

    Returns:
        Raster: A new cropped Raster object.
    """
    minx, miny, maxx, maxy = bounds

    # Calculate the window in pixel coordinates
    window = from_bounds(minx, miny, maxx, maxy, transform=raster.transform)

    # Rounding offsets snaps to the nearest pixel grid (avoids half-pixels)
    row_off = int(round(window.row_off))
    col_off = int(round(window.col_off))
    height = int(np.ceil(window.height - 1e-9))
    width = int(np.ceil(window.width - 1e-9))

    # Handle boundary conditions (clamping to image dimensions)
    row_start = max(0, row_off)
    row_end = min(raster.height, row_off + height)
    col_start = max(0, col_off)
    col_end = min(raster.width, col_off + width)

    new_data = raster.data[:, row_start:row_end, col_start:col_end].copy()

    # Transform is derived from the clamped slice so the origin matches the data
    clamped = Window(col_start, row_start, col_end - col_start, row_end - row_start)
    new_transform = window_transform(clamped, raster.transform)

    return Raster(
        data=new_data,
        transform=new_transform,
        crs=raster.crs,
        nodata=raster.nodata,
        band_names=raster.band_names.copy()
    )
