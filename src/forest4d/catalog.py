# src/forest4d/catalog.py

"""
This module enumerates the point cloud tiles of an input directory as immutable, buffered work units.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple, Sequence, Union

from forest4d.lidar.layer import read_bounds
from forest4d.exceptions import PointCloudIOError

log = logging.getLogger(__name__)

__all__ = [
    "TileDescriptor",
    "RejectedFile",
    "TileCatalog"
]

Bounds = Tuple[float, float, float, float]

def _intersects(a: Bounds, b: Bounds) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]

@dataclass(frozen=True)
class TileDescriptor:
    """
    A single unit of work.

    Args:
        name (str): Tile identity used in every output filename.
        source_paths (Tuple[Path, ...]): Primary file first, then neighbours overlapping the buffer.
        bounds (Bounds): Nominal (min_x, min_y, max_x, max_y) extent written to disk.
        buffer (float): Margin loaded on every side of the nominal extent.
    """
    name: str
    source_paths: Tuple[Path, ...]
    bounds: Bounds
    buffer: float = 0.0

    @property
    def primary_path(self) -> Path:
        return self.source_paths[0]

    @property
    def buffered_bounds(self) -> Bounds:
        min_x, min_y, max_x, max_y = self.bounds
        b = self.buffer
        return (min_x - b, min_y - b, max_x + b, max_y + b)

    def grid_bounds(self, resolution: float) -> Bounds:
        """
        Buffered extent snapped so the nominal extent starts on a cell edge.

        The margin is rounded up to a whole number of cells, which keeps the
        crop back to the nominal extent exact.
        """
        pad = math.ceil(self.buffer / resolution - 1e-9) * resolution
        min_x, min_y, max_x, max_y = self.bounds
        width = math.ceil((max_x - min_x) / resolution - 1e-9) * resolution
        height = math.ceil((max_y - min_y) / resolution - 1e-9) * resolution
        # Anchored at the top-left corner, like every grid
        return (min_x - pad, max_y - height - pad, min_x + width + pad, max_y + pad)

@dataclass(frozen=True)
class RejectedFile:
    """A matching file the catalog could not turn into a tile, kept so the run can report it."""
    name: str
    path: Path
    reason: str

class TileCatalog:
    """
    Lists point cloud files under a root directory and turns them into TileDescriptors.

    Args:
        chunk_size (float): 0 keeps file-native boundaries, otherwise the size of square chunks.
        buffer (float): Margin added around each tile.
        pattern (Sequence[str]): Glob patterns of the files to include.
    """

    def __init__(
        self,
        chunk_size: float = 0.0,
        buffer: float = 20.0,
        pattern: Sequence[str] = ("*.las", "*.laz")
    ):
        if chunk_size < 0:
            raise ValueError(f"chunk_size must be >= 0, got {chunk_size}")
        if buffer < 0:
            raise ValueError(f"buffer must be >= 0, got {buffer}")

        self.chunk_size = chunk_size
        self.buffer = buffer
        self.pattern = tuple(pattern)
        self.rejected: List[RejectedFile] = []

    def list_files(self, root: Union[str, Path]) -> List[Path]:
        """Returns the matching files directly under `root`, sorted by name."""
        root = Path(root)
        if not root.is_dir():
            raise FileNotFoundError(f"Input directory not found: {root}")

        found = set()
        for pat in self.pattern:
            found.update(p for p in root.glob(pat) if p.is_file())
        return sorted(found, key=lambda p: p.name)

    def enumerate(self, root: Union[str, Path]) -> List[TileDescriptor]:
        """
        Enumerates the tiles found under `root`.

        The result is deterministic for a fixed directory listing. Files whose
        header cannot be read, and files whose stem repeats an earlier file's,
        are logged and listed in `rejected` instead.

        Args:
            root (Union[str, Path]): Input directory.

        Returns:
            List[TileDescriptor]: One descriptor per file, or per chunk when chunking.
        """
        self.rejected = []
        extents = []
        stems = {}
        for path in self.list_files(root):
            if path.stem in stems:
                reason = f"tile name '{path.stem}' already taken by {stems[path.stem].name}"
                log.error(f"Skipping {path.name}: {reason}")
                self.rejected.append(RejectedFile(name=path.name, path=path, reason=reason))
                continue
            stems[path.stem] = path
            try:
                extents.append((path, read_bounds(path)))
            except PointCloudIOError as e:
                log.error(f"Skipping unreadable tile {path.name}: {e}")
                self.rejected.append(RejectedFile(name=path.stem, path=path, reason=f"unreadable: {e}"))

        if self.chunk_size > 0 and extents:
            log.warning(
                f"Re-chunking {len(extents)} file(s) with chunk_size={self.chunk_size}. "
                "Input that is already tiled should use chunk_size=0 (file-native boundaries)."
            )

        tiles = []
        for path, extent in extents:
            for name, bounds in self._partition(path, extent):
                buffered = (
                    bounds[0] - self.buffer, bounds[1] - self.buffer,
                    bounds[2] + self.buffer, bounds[3] + self.buffer
                )
                neighbours = [
                    other for other, other_extent in extents
                    if other != path and self.buffer > 0 and _intersects(buffered, other_extent)
                ]
                tiles.append(TileDescriptor(
                    name=name,
                    source_paths=(path, *neighbours),
                    bounds=bounds,
                    buffer=self.buffer
                ))

        log.info(f"Catalog: {len(tiles)} tile(s) from {len(extents)} file(s) in {root}")
        return tiles

    def _partition(self, path: Path, extent: Bounds) -> List[Tuple[str, Bounds]]:
        if self.chunk_size == 0:
            return [(path.stem, extent)]

        min_x, min_y, max_x, max_y = extent
        size = self.chunk_size
        n_cols = max(1, math.ceil((max_x - min_x) / size - 1e-9))
        n_rows = max(1, math.ceil((max_y - min_y) / size - 1e-9))

        if n_cols == 1 and n_rows == 1:
            return [(path.stem, extent)]

        chunks = []
        for row in range(n_rows):
            for col in range(n_cols):
                x0 = min_x + col * size
                y0 = min_y + row * size
                bounds = (x0, y0, min(x0 + size, max_x), min(y0 + size, max_y))
                chunks.append((f"{path.stem}_{col}_{row}", bounds))
        return chunks
