# src/forest4d/exceptions.py

"""
Exception hierarchy shared by the forest4d subpackages.
"""

__all__ = [
    "Forest4DError",
    "ConfigError",
    "RasterError",
    "RasterIOError",
    "RasterValidationError",
    "PointCloudError",
    "PointCloudIOError",
    "CorrectionError"
]

class Forest4DError(Exception):
    """Base class for every error raised by forest4d."""

class ConfigError(Forest4DError, ValueError):
    """Raised when a pipeline configuration is incomplete or inconsistent."""

class RasterError(Forest4DError):
    """Base class for raster related failures."""

class RasterIOError(RasterError, IOError):
    """Raised when a raster cannot be read from or written to disk."""

class RasterValidationError(RasterError, ValueError):
    """Raised when raster dimensions or metadata are inconsistent."""

class PointCloudError(Forest4DError):
    """Base class for point cloud related failures."""

class PointCloudIOError(PointCloudError, IOError):
    """Raised when a LAS/LAZ file cannot be read or written."""

class CorrectionError(Forest4DError):
    """Raised when a vertical correction grid cannot be loaded or aligned."""
