# src/forest4d/lidar/layer.py

"""
This module defines the core data structure for lidar point clouds, along with methods for loading and basic manipulation.
"""

from pathlib import Path
from dataclasses import dataclass
from typing import Union, Generator, Optional, Sequence, Tuple
import logging

import laspy
import numpy as np
import psutil
from rasterio.crs import CRS

from forest4d.exceptions import PointCloudIOError

log = logging.getLogger(__name__)

__all__ = [
    "PointCloud",
    "read_bounds",
    "read_crs"
]

# x, y, z as float64 plus classification and return number
BYTES_PER_POINT = 3 * 8 + 2

Bounds = Tuple[float, float, float, float]

def read_bounds(path: Union[str, Path]) -> Bounds:
    """
    Reads the (min_x, min_y, max_x, max_y) extent of a LAS/LAZ file from its header only.

    Args:
        path (Union[str, Path]): Target .las or .laz file.

    Returns:
        Bounds: Header extent of the file.
    """
    path = Path(path)
    try:
        with laspy.open(path) as fh:
            header = fh.header
            return (header.x_min, header.y_min, header.x_max, header.y_max)
    except Exception as e:
        raise PointCloudIOError(f"Failed to read LAS header from {path}: {e}") from e

def read_crs(path: Union[str, Path]) -> Optional[CRS]:
    """
    Extracts the coordinate reference system recorded in a LAS/LAZ header, if any.

    Returns:
        Optional[CRS]: rasterio CRS, or None when the header carries no usable CRS.
    """
    try:
        with laspy.open(path) as fh:
            parsed = fh.header.parse_crs()
    except Exception as e:
        log.debug(f"Could not parse CRS from {Path(path).name}: {e}")
        return None

    if parsed is None:
        return None
    return CRS.from_wkt(parsed.to_wkt())

@dataclass
class PointCloud:
    """
    Core data structure for holding LiDAR point cloud data and bounding properties.

    Primary point cloud attributes:
        x (np.ndarray): X coordinates of points.
        y (np.ndarray): Y coordinates of points.
        z (np.ndarray): Z coordinates (elevation) of points.
        classification (np.ndarray): Point classifications (2 for ground, etc.).
        return_number (np.ndarray): Return number for each point (1 for first return, etc.).

    Secondary attributes for global bounding properties, useful for spatial referencing and rasterization:
        min_x (float): Minimum X coordinate covered by the point cloud.
        max_x (float): Maximum X coordinate covered by the point cloud.
        min_y (float): Minimum Y coordinate covered by the point cloud.
        max_y (float): Maximum Y coordinate covered by the point cloud.
        max_z (float): Maximum Z coordinate in the point cloud.
        crs (CRS | None): Coordinate reference system of the coordinates.
    """
    x: np.ndarray
    y: np.ndarray
    z: np.ndarray
    classification: np.ndarray
    return_number: np.ndarray

    min_x: float
    max_x: float
    min_y: float
    max_y: float
    max_z: float

    crs: Optional[CRS] = None

    def __len__(self) -> int:
        return len(self.x)

    @property
    def is_empty(self) -> bool:
        return len(self.x) == 0

    @property
    def bounds(self) -> Bounds:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def subset(self, mask: np.ndarray) -> 'PointCloud':
        """
        Returns a new PointCloud holding the points selected by a boolean mask.

        The bounding attributes are inherited so that rasters derived from the
        subset stay aligned with those derived from the full cloud.
        """
        z = self.z[mask]
        return PointCloud(
            x=self.x[mask],
            y=self.y[mask],
            z=z,
            classification=self.classification[mask],
            return_number=self.return_number[mask],
            min_x=self.min_x, max_x=self.max_x, min_y=self.min_y, max_y=self.max_y,
            max_z=float(np.max(z)) if len(z) > 0 else 0.0,
            crs=self.crs
        )

    def with_z(self, z: np.ndarray) -> 'PointCloud':
        """Returns a copy of the cloud with replaced elevations (used by height normalization)."""
        return PointCloud(
            x=self.x, y=self.y, z=z,
            classification=self.classification,
            return_number=self.return_number,
            min_x=self.min_x, max_x=self.max_x, min_y=self.min_y, max_y=self.max_y,
            max_z=float(np.max(z)) if len(z) > 0 else 0.0,
            crs=self.crs
        )

    def first_returns(self) -> 'PointCloud':
        return self.subset(self.return_number == 1)

    @classmethod
    def empty(cls, bounds: Bounds, crs: Optional[CRS] = None) -> 'PointCloud':
        min_x, min_y, max_x, max_y = bounds
        return cls(
            x=np.empty(0), y=np.empty(0), z=np.empty(0),
            classification=np.empty(0, dtype=np.uint8), return_number=np.empty(0, dtype=np.uint8),
            min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y, max_z=0.0,
            crs=crs
        )

    @classmethod
    def from_las(
        cls,
        las: laspy.LasData,
        crs: Optional[CRS] = None
        ) -> 'PointCloud':
        """
        Wraps the points of an already read LAS/LAZ file, bounds taken from its header.

        Arrays are copies, so the LasData can be modified and written back
        without touching the cloud.
        """
        header = las.header
        return cls(
            x=np.array(las.x),
            y=np.array(las.y),
            z=np.array(las.z),
            classification=np.array(las.classification),
            return_number=np.array(las.return_number),
            min_x=header.x_min,
            max_x=header.x_max,
            min_y=header.y_min,
            max_y=header.y_max,
            max_z=header.z_max,
            crs=crs
        )

    @classmethod
    def iter_chunks(
        cls,
        path: Union[str, Path],
        chunk_size: int = 1_000_000
        ) -> Generator['PointCloud', None, None]:
        """
        Iterates over a LiDAR file in chunks to maintain strict memory safety.

        Args:
            path (Union[str, Path]): Target .las or .laz file.
            chunk_size (int): Number of points to stream per chunk.

        Yields:
            Generator[PointCloud, None, None]: Sequential point cloud fragments inheriting global bounding attributes.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Lidar file not found: {path}")

        with laspy.open(path) as fh:
            header = fh.header
            for chunk in fh.chunk_iterator(chunk_size):
                yield cls(
                    # Map laspy point attributes to our PointCloud structure
                    x=np.array(chunk.x),
                    y=np.array(chunk.y),
                    z=np.array(chunk.z),
                    classification=np.array(chunk.classification),
                    return_number=np.array(chunk.return_number),
                    min_x=header.x_min,
                    max_x=header.x_max,
                    min_y=header.y_min,
                    max_y=header.y_max,
                    max_z=header.z_max
                )

    @classmethod
    def from_files(
        cls,
        paths: Sequence[Union[str, Path]],
        bounds: Bounds,
        crs: Optional[CRS] = None,
        chunk_size: int = 1_000_000
        ) -> 'PointCloud':
        """
        Loads every point of several files that falls inside `bounds`.

        This is how a buffered tile is assembled: the tile's own file plus the
        margin points borrowed from its neighbours. Files are streamed in chunks
        and clipped on the fly so neighbours are never loaded whole.

        Args:
            paths (Sequence[Union[str, Path]]): Source .las or .laz files.
            bounds (Bounds): (min_x, min_y, max_x, max_y) clip extent, inclusive.
            crs (Optional[CRS]): CRS to use when the first file carries none.
            chunk_size (int): Number of points to stream per chunk.

        Returns:
            PointCloud: Clipped point cloud whose bounding attributes equal `bounds`.
        """
        if not paths:
            raise ValueError("At least one source file is required.")

        _check_memory(paths)

        min_x, min_y, max_x, max_y = bounds
        parts = []

        for path in paths:
            try:
                for chunk in cls.iter_chunks(path, chunk_size=chunk_size):
                    inside = (
                        (chunk.x >= min_x) & (chunk.x <= max_x) &
                        (chunk.y >= min_y) & (chunk.y <= max_y)
                    )
                    if np.any(inside):
                        parts.append(chunk.subset(inside))
            except FileNotFoundError:
                raise
            except Exception as e:
                raise PointCloudIOError(f"Failed to read {path}: {e}") from e

        file_crs = read_crs(paths[0]) or crs

        if not parts:
            return cls.empty(bounds, crs=file_crs)

        z = np.concatenate([p.z for p in parts])
        return cls(
            x=np.concatenate([p.x for p in parts]),
            y=np.concatenate([p.y for p in parts]),
            z=z,
            classification=np.concatenate([p.classification for p in parts]),
            return_number=np.concatenate([p.return_number for p in parts]),
            min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y,
            max_z=float(np.max(z)),
            crs=file_crs
        )

def _check_memory(paths: Sequence[Union[str, Path]]):
    """
    Logs a warning when the declared point count of `paths` may not fit in available RAM.
    """
    total_points = 0
    for path in paths:
        try:
            with laspy.open(path) as fh:
                total_points += fh.header.point_count
        except Exception:
            # Unreadable files are reported by the loader itself
            continue

    required = total_points * BYTES_PER_POINT
    available = psutil.virtual_memory().available
    if required > available:
        log.warning(
            f"Loading {total_points} points needs ~{required / 1024**3:.2f} GB "
            f"but only {available / 1024**3:.2f} GB is available."
        )
