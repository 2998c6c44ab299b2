# src/forest4d/raster/io.py

"""
This module reads and writes the single-band GeoTIFF products of the pipeline.

Correction grids (GeoTIFF, GTX or any other GDAL format) are read through the
same `load` function.
"""

import logging
from pathlib import Path
from typing import Union, Optional

import rasterio
from rasterio.errors import RasterioError
from rasterio.windows import Window

from forest4d.exceptions import RasterIOError

from .layer import Raster

log = logging.getLogger(__name__)

__all__ = [
    "load",
    "save"
]

def load(
    path: Union[str, Path],
    band: int = 1,
    window: Optional[Window] = None
) -> Raster:
    """
    Reads one band of a raster file.

    Args:
        path (Union[str, Path]): Raster file in any GDAL-readable format.
        band (int): 1-based band to read.
        window (Optional[Window]): Subset to read instead of the full extent.

    Returns:
        Raster: The band with its grid, CRS and nodata. The band description,
            when present, becomes the band name.

    Raises:
        FileNotFoundError: If `path` does not exist.
        RasterIOError: If GDAL cannot read the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster file not found: {path}")

    log.debug(f"Reading band {band} of {path.name}")

    try:
        with rasterio.open(path) as src:
            transform = src.transform if window is None else src.window_transform(window)
            desc = src.descriptions[band - 1]

            return Raster(
                data=src.read([band], window=window),
                transform=transform,
                crs=src.crs,
                nodata=src.nodata,
                band_names={desc: 1} if desc else None
            )
    except (RasterioError, IndexError) as e:
        raise RasterIOError(f"Failed to read band {band} of {path}: {e}") from e

def save(
    raster: Raster,
    path: Union[str, Path],
    **profile_kwargs
) -> Path:
    """
    Writes a Raster to a GeoTIFF, creating parent folders and replacing any existing file.

    Band names are stored as band descriptions so `load` can restore them.
    Extra keyword arguments override the creation profile derived from the raster.
    """
    path = Path(path)
    profile = {**raster.profile, **profile_kwargs}

    log.debug(f"Writing {raster.height}x{raster.width} raster to {path}")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(raster.data)
            for name, idx in (raster.band_names or {}).items():
                if 1 <= idx <= raster.count:
                    dst.set_band_description(idx, name)
    except (RasterioError, OSError) as e:
        raise RasterIOError(f"Failed to write raster to {path}: {e}") from e

    return path
