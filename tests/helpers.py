# tests/helpers.py

import hashlib

import numpy as np
import rasterio
from forest4d.raster.layer import Raster

def assert_grid_match(r1: Raster, r2: Raster):
    """Strictly verify two rasters share the exact same grid."""
    assert r1.crs == r2.crs, \
        f"CRS mismatch: {r1.crs} != {r2.crs}"

    assert r1.shape == r2.shape, \
        f"Shape mismatch: {r1.shape} != {r2.shape}"

    assert np.allclose(np.array(r1.transform), np.array(r2.transform), atol=1e-9), \
        "Transform mismatch (Pixel alignment error)"

def read_masked(path) -> np.ma.MaskedArray:
    """Reads band 1 of a raster file with nodata cells masked."""
    with rasterio.open(path) as src:
        return src.read(1, masked=True)

def file_digest(path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()

def output_files(root) -> dict:
    """Maps every .tif under `root` (relative path) to its pixel values."""
    return {
        str(p.relative_to(root)): read_masked(p).filled(np.nan)
        for p in sorted(root.rglob("*.tif"))
    }
