# src/forest4d/reclassify.py

"""
This module re-runs ground classification over a whole directory of tiles and writes the reclassified LAS/LAZ files.

Every point attribute is preserved except the classification, which is
rewritten by the Cloth Simulation Filter (2 for ground, 1 for the rest).
Tiles whose output already exists are skipped unless overwrite is requested.
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Union

import laspy
from tqdm import tqdm

from forest4d.catalog import TileCatalog
from forest4d.lidar.classify import TerrainType, classify_ground
from forest4d.lidar.layer import PointCloud
from forest4d.writer import Outcome

log = logging.getLogger(__name__)

__all__ = [
    "ReclassifyTask",
    "reclassify_file",
    "reclassify_catalog"
]

@dataclass(frozen=True)
class ReclassifyTask:
    source: Path
    output_dir: Path
    overwrite: bool = False
    terrain: TerrainType = TerrainType.RELIEF
    cloth_resolution: float = 1.0

    @property
    def destination(self) -> Path:
        return self.output_dir / self.source.name

def reclassify_file(task: ReclassifyTask) -> Outcome:
    """
    Classifies the ground points of one file and writes the result under the same filename.

    Never raises: unreadable or empty tiles are reported through the returned Outcome.
    """
    out_file = task.destination
    if out_file.exists() and not task.overwrite:
        log.info(f"Skipping (already exists): {task.source.name}")
        return Outcome.skipped_exists(out_file)

    try:
        las = laspy.read(task.source)
    except Exception as e:
        log.error(f"Failed to read {task.source.name}: {e}")
        return Outcome.failed(f"unreadable: {e}")

    if len(las.points) == 0:
        log.warning(f"Empty tile: {task.source.name}")
        return Outcome.skipped_empty("no points in tile")

    pc = PointCloud.from_las(las)

    try:
        classified = classify_ground(pc, terrain=task.terrain, cloth_resolution=task.cloth_resolution)
        las.classification = classified.classification
        out_file.parent.mkdir(parents=True, exist_ok=True)
        las.write(out_file)
    except Exception as e:
        log.error(f"Failed to reclassify {task.source.name}: {e}")
        return Outcome.failed(f"{type(e).__name__}: {e}")

    log.info(f"Saved: {out_file.name}")
    return Outcome.written(out_file)

def reclassify_catalog(
    input_root: Union[str, Path],
    output_dir: Union[str, Path],
    workers: int = 4,
    overwrite: bool = False,
    terrain: TerrainType = TerrainType.RELIEF,
    cloth_resolution: float = 1.0
) -> Dict[str, Outcome]:
    """
    Reclassifies every tile of `input_root` into `output_dir`.

    Tiles are processed file by file (no chunking, no buffer).

    Args:
        input_root (Union[str, Path]): Directory of LAS/LAZ tiles.
        output_dir (Union[str, Path]): Destination directory, created when missing.
        workers (int): Number of worker processes.
        overwrite (bool): Replace existing outputs.
        terrain (TerrainType): Terrain type used to parameterize the filter.
        cloth_resolution (float): Cloth grid size.

    Returns:
        Dict[str, Outcome]: Outcome per source filename.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # Every listed file gets an outcome, unreadable ones included
    sources = TileCatalog(chunk_size=0, buffer=0).list_files(input_root)
    tasks = [
        ReclassifyTask(
            source=source,
            output_dir=output_dir,
            overwrite=overwrite,
            terrain=terrain,
            cloth_resolution=cloth_resolution
        )
        for source in sources
    ]

    outcomes: Dict[str, Outcome] = {}
    if not tasks:
        return outcomes

    if workers <= 1 or len(tasks) == 1:
        for task in tqdm(tasks, desc="Reclassifying", unit="tile"):
            outcomes[task.source.name] = reclassify_file(task)
        return outcomes

    with ProcessPoolExecutor(max_workers=min(workers, len(tasks))) as executor:
        futures = {executor.submit(reclassify_file, task): task for task in tasks}
        for future in tqdm(as_completed(futures), total=len(futures), desc="Reclassifying", unit="tile"):
            task = futures[future]
            try:
                outcomes[task.source.name] = future.result()
            except Exception as e:
                log.error(f"Tile {task.source.name} failed in its worker: {e}")
                outcomes[task.source.name] = Outcome.failed(f"{type(e).__name__}: {e}")

    return outcomes
