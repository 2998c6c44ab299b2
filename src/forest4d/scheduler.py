# src/forest4d/scheduler.py

"""
This module distributes tile pipelines across a fixed pool of worker processes.

Each tile is one `TileTask` (tile + configuration + engine) handed to a
module-level worker function. The worker guards the whole pipeline run and
the parent guards the future, so a crashing tile only ever produces a failed
`PipelineResult` and never stops the other tiles.
"""

import logging
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from tqdm import tqdm

from forest4d.catalog import TileCatalog, TileDescriptor
from forest4d.config import PipelineConfig
from forest4d.correction import VerticalCorrection
from forest4d.lidar.engine import PointCloudEngine
from forest4d.pipeline import TilePipeline, PipelineResult
from forest4d.writer import OutputWriter, OutcomeStatus

log = logging.getLogger(__name__)

__all__ = [
    "TileTask",
    "RunSummary",
    "run_task",
    "run",
    "summarize",
    "log_summary",
    "process_catalog"
]

@dataclass(frozen=True)
class TileTask:
    """
    Everything a worker needs to process one tile.

    Args:
        tile (TileDescriptor): Tile to process.
        config (PipelineConfig): Immutable run configuration.
        engine (Optional[PointCloudEngine]): Engine to use, the default engine when None.
    """
    tile: TileDescriptor
    config: PipelineConfig
    engine: Optional[PointCloudEngine] = None

def run_task(task: TileTask) -> PipelineResult:
    """
    Worker entry point: runs the pipeline for one tile and never raises.
    """
    try:
        return TilePipeline(task.config, engine=task.engine).run(task.tile)
    except Exception as e:
        log.exception(f"Tile {task.tile.name} crashed: {e}")
        return PipelineResult.failure(task.tile.name, task.config.year, f"{type(e).__name__}: {e}")

def run(
    tiles: Sequence[TileDescriptor],
    config: PipelineConfig,
    engine: Optional[PointCloudEngine] = None
) -> List[PipelineResult]:
    """
    Processes every tile, in parallel when `config.workers` > 1.

    Results come back in completion order.

    Args:
        tiles (Sequence[TileDescriptor]): Tiles from the catalog.
        config (PipelineConfig): Run configuration.
        engine (Optional[PointCloudEngine]): Engine shared by value with every task.

    Returns:
        List[PipelineResult]: One result per tile.
    """
    tasks = [TileTask(tile=tile, config=config, engine=engine) for tile in tiles]
    if not tasks:
        log.info("No tiles to process")
        return []

    workers = min(config.workers, len(tasks))
    log.info(f"Processing {len(tasks)} tile(s) with {workers} worker(s)")

    if workers == 1:
        return [run_task(task) for task in tqdm(tasks, desc="Tiles", unit="tile")]

    results = []
    with ProcessPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(run_task, task): task for task in tasks}

        for future in tqdm(as_completed(futures), total=len(futures), desc="Tiles", unit="tile"):
            task = futures[future]
            try:
                results.append(future.result())
            except Exception as e:
                # Worker process died or the result could not be transferred back
                log.error(f"Tile {task.tile.name} failed in its worker: {e}")
                results.append(
                    PipelineResult.failure(task.tile.name, config.year, f"{type(e).__name__}: {e}")
                )

    return results

@dataclass
class RunSummary:
    """
    Aggregated view of a run.

    Args:
        tiles (int): Number of tiles processed.
        counts (Dict[str, Dict[str, int]]): Stage label -> outcome status -> count.
        skipped (List[Tuple[str, str]]): (tile name, reason) of every tile that ended early.
    """
    tiles: int = 0
    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    skipped: List[Tuple[str, str]] = field(default_factory=list)

    def count(self, stage: str, status: Union[str, OutcomeStatus]) -> int:
        key = status.value if isinstance(status, OutcomeStatus) else status
        return self.counts.get(stage, {}).get(key, 0)

    @property
    def failed_tiles(self) -> List[str]:
        return [name for name, reason in self.skipped if reason.startswith("failed")]

def summarize(results: Sequence[PipelineResult]) -> RunSummary:
    """Counts outcomes per stage and per status and lists the tiles that ended early."""
    counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    skipped = []

    for result in sorted(results, key=lambda r: r.tile_name):
        for stage, outcome in result.stage_outcomes.items():
            counts[stage.label][outcome.status.value] += 1

        if result.error is not None:
            skipped.append((result.tile_name, f"failed: {result.error}"))
        elif result.terminal_stage is not None:
            terminal = result.stage_outcomes.get(result.terminal_stage)
            status = terminal.status.value if terminal is not None else "skipped"
            skipped.append((result.tile_name, f"{status} at {result.terminal_stage.label}: {result.terminal_reason}"))

    return RunSummary(
        tiles=len(results),
        counts={stage: dict(statuses) for stage, statuses in counts.items()},
        skipped=skipped
    )

def log_summary(summary: RunSummary):
    log.info(f"Run finished: {summary.tiles} tile(s), {len(summary.skipped)} ended early")
    for stage, statuses in summary.counts.items():
        details = ", ".join(f"{status}={n}" for status, n in sorted(statuses.items()))
        log.info(f"  {stage}: {details}")
    for name, reason in summary.skipped:
        log.warning(f"  {name}: {reason}")

def process_catalog(
    input_root: Union[str, Path],
    config: PipelineConfig,
    engine: Optional[PointCloudEngine] = None
) -> List[PipelineResult]:
    """
    Full run: enumerates the catalog, checks the correction grid, creates the
    output layout, processes every tile and logs a summary.

    Args:
        input_root (Union[str, Path]): Directory of LAS/LAZ tiles.
        config (PipelineConfig): Run configuration.
        engine (Optional[PointCloudEngine]): Engine override, mostly for tests.

    Returns:
        List[PipelineResult]: One result per tile, plus a LOAD failure for every file
            the catalog rejected.

    Raises:
        FileNotFoundError: If the input directory doesn't exist.
        CorrectionError: If a correction grid is configured but cannot be read.
    """
    catalog = TileCatalog(chunk_size=config.chunk_size, buffer=config.buffer)
    tiles = catalog.enumerate(input_root)
    rejected = [
        PipelineResult.load_failure(f.name, config.year, f.reason) for f in catalog.rejected
    ]

    if config.correction_path is not None:
        # Fail before scheduling rather than once per tile
        VerticalCorrection(config.correction_path).load()
        log.info(f"Vertical correction: {config.correction_path}")

    OutputWriter(config.output_root, config.year, overwrite=config.overwrite).ensure_layout()

    results = rejected + run(tiles, config, engine=engine)
    log_summary(summarize(results))
    return results
