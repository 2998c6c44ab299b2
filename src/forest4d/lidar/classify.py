# src/forest4d/lidar/classify.py

"""
This module implements ground classification of lidar point clouds with the Cloth Simulation Filter.
"""

from enum import Enum
import logging

import numpy as np
import CSF

from .layer import PointCloud

log = logging.getLogger(__name__)

__all__ = [
    "TerrainType",
    "GROUND_CLASS",
    "UNCLASSIFIED_CLASS",
    "classify_ground"
]

# ASPRS LAS classification codes
GROUND_CLASS = 2
UNCLASSIFIED_CLASS = 1

class TerrainType(Enum):
    """
    Defines terrain types used in topographical filtering parameterization.

    Options:
    FLAT: Represents areas with minimal elevation variation, such as plains or agricultural fields.
    RELIEF: Represents areas with moderate elevation variation, such as rolling hills or mixed terrain.
    HIGH_RELIEF: Represents areas with significant elevation variation, such as mountainous regions or deep valleys
    """
    FLAT = 1
    RELIEF = 2
    HIGH_RELIEF = 3

def _get_csf_params(
    terrain: TerrainType
    ) -> dict:
    """
    Extracts configuration parameters for the Cloth Simulation Filter framework.

    Args:
        terrain (TerrainType): Macro level topographical structure. See TerrainType enum for options.

    Returns:
        dict: Dictionary of parameters to configure the CSF algorithm based on terrain type.
    """
    if terrain == TerrainType.FLAT:
        return {"rigidness": 3, "slope_smoothing": False}
    elif terrain == TerrainType.RELIEF:
        return {"rigidness": 2, "slope_smoothing": True}
    elif terrain == TerrainType.HIGH_RELIEF:
        return {"rigidness": 1, "slope_smoothing": True}
    return {"rigidness": 2, "slope_smoothing": True}

def classify_ground(
    pc: PointCloud,
    terrain: TerrainType = TerrainType.RELIEF,
    cloth_resolution: float = 1.0,
    class_threshold: float = 0.5
    ) -> PointCloud:
    """
    Labels ground returns with a Cloth Simulation Filter.

    Every point is reassigned: ground points receive class 2 and all others class 1,
    the previous classification is discarded.

    Args:
        pc (PointCloud): Point cloud to classify.
        terrain (TerrainType): Macro level topographical structure.
        cloth_resolution (float): Size of the simulated cloth grid.
        class_threshold (float): Distance to the cloth under which a point is ground.

    Returns:
        PointCloud: Copy of the cloud with the new classification.
    """
    if pc.is_empty:
        return pc

    params = _get_csf_params(terrain)

    # Set up the CSF filter with the configured parameters
    csf = CSF.CSF()
    csf.params.cloth_resolution = cloth_resolution
    csf.params.bSloopSmooth = params["slope_smoothing"]
    csf.params.time_step = 0.65
    csf.params.rigidness = params["rigidness"]
    csf.params.class_threshold = class_threshold

    # Shifting the cloud to a local origin avoids issues with large coordinate values
    x_local = pc.x - np.min(pc.x)
    y_local = pc.y - np.min(pc.y)

    points = np.vstack((x_local, y_local, pc.z)).transpose()
    csf.setPointCloud(points)

    ground_idx = CSF.VecInt()
    off_ground_idx = CSF.VecInt()
    csf.do_filtering(ground_idx, off_ground_idx, False)

    classification = np.full(len(pc), UNCLASSIFIED_CLASS, dtype=np.uint8)
    classification[np.array(ground_idx, dtype=np.int64)] = GROUND_CLASS

    log.debug(f"CSF labelled {len(ground_idx)} of {len(pc)} points as ground")

    return PointCloud(
        x=pc.x, y=pc.y, z=pc.z,
        classification=classification,
        return_number=pc.return_number,
        min_x=pc.min_x, max_x=pc.max_x, min_y=pc.min_y, max_y=pc.max_y, max_z=pc.max_z,
        crs=pc.crs
    )
