# src/forest4d/raster/__init__.py
#
# Copyright (c) The forest4d project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides the in-memory raster envelope,
disk I/O, grid alignment and terrain derivatives used by the tile pipeline.
"""
# Core data structure
from .layer import (
    Raster,
    NODATA_VAL
)

# I/O operations
from .io import (
    load,
    save
)

# Geometry utilities
from .geom import (
    align_to,
    crop,
    same_grid
)

# Terrain derivatives
from .terrain import (
    slope_aspect,
    hillshade
)

__all__ = [
    # Layer
    "Raster",
    "NODATA_VAL",

    # I/O
    "load",
    "save",

    # Geom utilities
    "align_to",
    "crop",
    "same_grid",

    # Terrain
    "slope_aspect",
    "hillshade"
]
