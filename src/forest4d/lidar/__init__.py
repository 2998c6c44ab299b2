# src/forest4d/lidar/__init__.py
#
# Copyright (c) The forest4d project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The lidar subpackage provides point cloud loading, TIN interpolation,
ground classification, height normalization and per-cell structural metrics.
"""

# Data structure
from .layer import (
    PointCloud,
    read_bounds,
    read_crs
)

# Grids and rasterization
from .rasterize import (
    GridSpec,
    points_to_grid,
    NODATA_VAL
)
from .interpolate import (
    tin_surface,
    highest_points
)

# Ground classification and normalization
from .classify import (
    TerrainType,
    GROUND_CLASS,
    classify_ground
)
from .normalize import (
    sample_raster,
    normalize_height
)

# Structural metrics
from .metrics import (
    CellMetric,
    aggregate_grid,
    rumple_index,
    height_fraction,
    filter_surface_points
)

# Engine facade
from .engine import (
    PointCloudEngine
)

__all__ = [
    # Data structure
    "PointCloud",
    "read_bounds",
    "read_crs",

    # Grids and rasterization
    "GridSpec",
    "points_to_grid",
    "NODATA_VAL",
    "tin_surface",
    "highest_points",

    # Ground classification and normalization
    "TerrainType",
    "GROUND_CLASS",
    "classify_ground",
    "sample_raster",
    "normalize_height",

    # Structural metrics
    "CellMetric",
    "aggregate_grid",
    "rumple_index",
    "height_fraction",
    "filter_surface_points",

    # Engine
    "PointCloudEngine",
]
