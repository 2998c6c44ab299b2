# src/forest4d/lidar/engine.py

"""
This module exposes the point-cloud operations used by the tile pipeline behind a single picklable facade.

The pipeline only talks to an engine object, which keeps the product logic
independent from how points are read, interpolated and written, and lets
tests substitute a scripted engine.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union, TYPE_CHECKING

from rasterio.crs import CRS

from forest4d.raster.layer import Raster
from forest4d.raster import io as raster_io

from .layer import PointCloud
from .rasterize import GridSpec
from .interpolate import tin_surface, highest_points
from .classify import classify_ground, TerrainType, GROUND_CLASS
from .normalize import normalize_height
from .metrics import aggregate_grid, filter_surface_points, CellMetric

if TYPE_CHECKING:
    from forest4d.catalog import TileDescriptor

log = logging.getLogger(__name__)

__all__ = [
    "PointCloudEngine"
]

@dataclass
class PointCloudEngine:
    """
    Default point-cloud engine backed by laspy, scipy and the Cloth Simulation Filter.

    Args:
        crs (Optional[Union[str, CRS]]): CRS assigned to tiles whose files carry none.
        terrain (TerrainType): Terrain type used to parameterize ground classification.
        cloth_resolution (float): Cloth grid size used by ground classification.
        chunk_size (int): Points streamed per read when loading a tile.
    """
    crs: Optional[Union[str, CRS]] = None
    terrain: TerrainType = TerrainType.RELIEF
    cloth_resolution: float = 1.0
    chunk_size: int = 1_000_000

    def load(self, tile: 'TileDescriptor') -> PointCloud:
        """Loads the buffered point set of a tile from its source files."""
        fallback = CRS.from_user_input(self.crs) if self.crs else None
        pc = PointCloud.from_files(
            tile.source_paths,
            tile.buffered_bounds,
            crs=fallback,
            chunk_size=self.chunk_size
        )
        log.debug(f"Tile {tile.name}: {len(pc)} points loaded from {len(tile.source_paths)} file(s)")
        return pc

    def interpolate_surface(
        self,
        pc: PointCloud,
        grid: GridSpec,
        max_edge: float = 0.0,
        name: Optional[str] = None
        ) -> Raster:
        """
        Interpolates the top surface through the highest first returns.

        Points are thinned to the highest return of half-resolution cells so the
        triangulation follows the canopy top rather than returns below it.
        """
        first = pc.first_returns()
        if first.is_empty:
            first = pc
        top = highest_points(first, grid.resolution / 2.0)
        return tin_surface(top, grid, max_edge=max_edge, name=name)

    def interpolate_terrain(
        self,
        pc: PointCloud,
        grid: GridSpec,
        name: Optional[str] = None
        ) -> Raster:
        """Interpolates the bare-earth surface through the ground-classified points."""
        ground = pc.subset(pc.classification == GROUND_CLASS)
        return tin_surface(ground, grid, max_edge=0.0, name=name)

    def classify_ground(self, pc: PointCloud) -> PointCloud:
        return classify_ground(pc, terrain=self.terrain, cloth_resolution=self.cloth_resolution)

    def normalize(self, pc: PointCloud, terrain: Raster) -> PointCloud:
        return normalize_height(pc, terrain)

    def filter_surface_points(self, pc: PointCloud, tolerance: float, resolution: float = 1.0) -> PointCloud:
        return filter_surface_points(pc, tolerance=tolerance, resolution=resolution)

    def aggregate_grid(
        self,
        pc: PointCloud,
        fn: CellMetric,
        grid: GridSpec,
        name: Optional[str] = None
        ) -> Raster:
        return aggregate_grid(pc, fn, grid, name=name)

    def write_raster(self, raster: Raster, path: Union[str, Path]) -> Path:
        return raster_io.save(raster, path)

    def read_raster(self, path: Union[str, Path]) -> Raster:
        return raster_io.load(path)
