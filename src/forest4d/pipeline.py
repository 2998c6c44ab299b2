# src/forest4d/pipeline.py

"""
This module implements the per-tile derivation pipeline.

One `TilePipeline.run` call drives a tile through an explicit, ordered stage table:

    LOAD -> DSM -> TERRAIN -> NORMALIZE -> CHM -> DTM -> metrics

with optional hillshades after each elevation product. Every stage returns a
`StageResult` (ok, empty or failed). Exceptions never leave a stage: they are
turned into a failed result at the stage boundary. Empty or failed results of
the core stages end the tile, while metric and hillshade stages only lose
their own output.

The terrain is used twice and in two vertical references: the uncorrected
`RawTerrain` normalizes the points, and only afterwards is it corrected into
the `CorrectedTerrain` written as the DTM. The CHM therefore never depends on
the correction grid.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from forest4d.catalog import TileDescriptor
from forest4d.config import PipelineConfig
from forest4d.correction import VerticalCorrection, RawTerrain, CorrectedTerrain
from forest4d.lidar.classify import GROUND_CLASS
from forest4d.lidar.engine import PointCloudEngine
from forest4d.lidar.layer import PointCloud
from forest4d.lidar.metrics import rumple_index, height_fraction
from forest4d.lidar.rasterize import GridSpec
from forest4d.raster.geom import crop
from forest4d.raster.layer import Raster
from forest4d.raster.terrain import hillshade
from forest4d.writer import OutputWriter, Outcome, OutcomeStatus, Product

log = logging.getLogger(__name__)

__all__ = [
    "Stage",
    "StageResult",
    "PipelineResult",
    "TilePipeline"
]

class Stage(Enum):
    """
    Pipeline stages in execution order.

    Terminal stages end the tile on an empty or failed result.
    """
    LOAD = ("load", True)
    DSM = ("dsm", True)
    DSM_HILLSHADE = ("dsm_hillshade", False)
    TERRAIN = ("terrain", True)
    NORMALIZE = ("normalize", True)
    CHM = ("chm", True)
    CHM_HILLSHADE = ("chm_hillshade", False)
    DTM = ("dtm", True)
    DTM_HILLSHADE = ("dtm_hillshade", False)
    ROUGHNESS = ("roughness", False)
    CANOPY_COVER = ("canopy_cover", False)
    DENSITY = ("density", False)

    def __init__(self, label: str, terminal: bool):
        self.label = label
        self.terminal = terminal

    def __str__(self) -> str:
        return self.label

PRODUCT_STAGES = {
    Product.DSM: Stage.DSM,
    Product.DTM: Stage.DTM,
    Product.CHM: Stage.CHM,
    Product.ROUGHNESS: Stage.ROUGHNESS,
    Product.CANOPY_COVER: Stage.CANOPY_COVER,
    Product.DENSITY: Stage.DENSITY,
}

HILLSHADE_STAGES = {
    Product.DSM: Stage.DSM_HILLSHADE,
    Product.DTM: Stage.DTM_HILLSHADE,
    Product.CHM: Stage.CHM_HILLSHADE,
}

@dataclass(frozen=True)
class StageResult:
    """
    Typed result of one stage: `ok(value)`, `empty(reason)` or `failed(reason)`.

    For stages producing a file, the value of an ok result is its Outcome.
    """
    status: str
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value: Any = None) -> 'StageResult':
        return cls("ok", value=value)

    @classmethod
    def empty(cls, reason: str) -> 'StageResult':
        return cls("empty", reason=reason)

    @classmethod
    def failed(cls, reason: str) -> 'StageResult':
        return cls("failed", reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @property
    def is_empty(self) -> bool:
        return self.status == "empty"

    def to_outcome(self) -> Optional[Outcome]:
        if self.is_ok:
            return self.value if isinstance(self.value, Outcome) else None
        if self.is_empty:
            return Outcome.skipped_empty(self.reason)
        return Outcome.failed(self.reason)

@dataclass
class PipelineResult:
    """
    Record of what happened to one tile.

    Args:
        tile_name (str): Tile identity.
        year (Any): Acquisition year tag.
        stage_outcomes (Dict[Stage, Outcome]): Outcomes in execution order.
            Intermediate stages appear only when they ended the tile.
        terminal_stage (Optional[Stage]): Stage that ended the tile early, if any.
        terminal_reason (Optional[str]): Why the tile ended early.
        error (Optional[str]): Set when processing crashed outside the stage guards.
    """
    tile_name: str
    year: Any
    stage_outcomes: Dict[Stage, Outcome] = field(default_factory=dict)
    terminal_stage: Optional[Stage] = None
    terminal_reason: Optional[str] = None
    error: Optional[str] = None

    def record(self, stage: Stage, outcome: Outcome):
        self.stage_outcomes[stage] = outcome

    def terminate(self, stage: Stage, reason: str):
        self.terminal_stage = stage
        self.terminal_reason = reason

    @property
    def skipped(self) -> bool:
        return self.terminal_stage is not None or self.error is not None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(
            o.status is OutcomeStatus.FAILED for o in self.stage_outcomes.values()
        )

    @property
    def reason(self) -> Optional[str]:
        return self.error or self.terminal_reason

    @property
    def written_paths(self) -> List[Path]:
        return [
            o.path for o in self.stage_outcomes.values()
            if o.status is OutcomeStatus.WRITTEN and o.path is not None
        ]

    def outcome(self, stage: Stage) -> Optional[Outcome]:
        return self.stage_outcomes.get(stage)

    @classmethod
    def failure(cls, tile_name: str, year: Any, reason: str) -> 'PipelineResult':
        """Result of a tile whose processing crashed outside the stage guards."""
        return cls(tile_name=tile_name, year=year, error=reason)

    @classmethod
    def load_failure(cls, tile_name: str, year: Any, reason: str) -> 'PipelineResult':
        """Result of a tile whose source could not be opened: FAILED at LOAD, nothing written."""
        result = cls(tile_name=tile_name, year=year)
        result.record(Stage.LOAD, Outcome.failed(reason))
        result.terminate(Stage.LOAD, reason)
        return result

@dataclass
class _TileState:
    """Intermediate products of one tile, discarded when the tile is done."""
    tile: TileDescriptor
    grid: Optional[GridSpec] = None
    metric_grid: Optional[GridSpec] = None
    points: Optional[PointCloud] = None
    dsm: Optional[Raster] = None
    raw_terrain: Optional[RawTerrain] = None
    normalized: Optional[PointCloud] = None
    outcomes: Dict[Product, Outcome] = field(default_factory=dict)

class TilePipeline:
    """
    Drives one tile at a time through the derivation stages.

    Args:
        config (PipelineConfig): Run configuration.
        engine (Optional[PointCloudEngine]): Point cloud engine, built from the configuration when omitted.
        correction (Optional[VerticalCorrection]): Correction provider, built from `config.correction_path` when omitted.
    """

    def __init__(
        self,
        config: PipelineConfig,
        engine: Optional[PointCloudEngine] = None,
        correction: Optional[VerticalCorrection] = None
    ):
        self.config = config
        self.engine = engine if engine is not None else PointCloudEngine(crs=config.crs)
        self.correction = correction if correction is not None else VerticalCorrection(config.correction_path)
        self.writer = OutputWriter(config.output_root, config.year, overwrite=config.overwrite)

        self._stages: Tuple[Tuple[Stage, Callable[[_TileState], StageResult]], ...] = (
            (Stage.LOAD, self._load),
            (Stage.DSM, self._surface_model),
            (Stage.DSM_HILLSHADE, partial(self._hillshade, Product.DSM)),
            (Stage.TERRAIN, self._terrain_model),
            (Stage.NORMALIZE, self._normalize),
            (Stage.CHM, self._canopy_height_model),
            (Stage.CHM_HILLSHADE, partial(self._hillshade, Product.CHM)),
            (Stage.DTM, self._corrected_terrain_model),
            (Stage.DTM_HILLSHADE, partial(self._hillshade, Product.DTM)),
            (Stage.ROUGHNESS, self._roughness),
            (Stage.CANOPY_COVER, self._canopy_cover),
            (Stage.DENSITY, self._density),
        )

    def enabled_products(self) -> List[Product]:
        c = self.config
        flags = {
            Product.DSM: c.generate_dsm,
            Product.DTM: c.generate_dtm,
            Product.CHM: c.generate_chm,
            Product.ROUGHNESS: c.compute_rumple,
            Product.CANOPY_COVER: c.compute_canopy_cover,
            Product.DENSITY: c.compute_density,
        }
        return [p for p, enabled in flags.items() if enabled]

    def run(self, tile: TileDescriptor) -> PipelineResult:
        """
        Processes one tile.

        Args:
            tile (TileDescriptor): Tile to process.

        Returns:
            PipelineResult: Outcome of every stage that produced or withheld an output.
        """
        result = PipelineResult(tile_name=tile.name, year=self.config.year)

        if self._up_to_date(tile, result):
            log.info(f"Tile {tile.name}: every output exists, nothing to do")
            return result

        state = _TileState(tile=tile)

        for stage, step in self._stages:
            stage_result = self._guarded(stage, step, state)
            outcome = stage_result.to_outcome()
            if outcome is not None:
                result.record(stage, outcome)

            if stage_result.is_ok:
                continue

            if stage.terminal:
                result.terminate(stage, stage_result.reason)
                log.warning(f"Tile {tile.name} skipped at stage {stage}: {stage_result.reason}")
                break

            if stage_result.is_empty:
                log.info(f"Tile {tile.name}: {stage} omitted ({stage_result.reason})")

        written = len(result.written_paths)
        log.info(f"Tile {tile.name} done: {written} file(s) written")
        return result

    def _guarded(self, stage: Stage, step: Callable[[_TileState], StageResult], state: _TileState) -> StageResult:
        try:
            return step(state)
        except Exception as e:
            log.error(f"Tile {state.tile.name}: stage {stage} failed: {e}")
            return StageResult.failed(f"{type(e).__name__}: {e}")

    def _up_to_date(self, tile: TileDescriptor, result: PipelineResult) -> bool:
        """Records SKIPPED_EXISTS for every output when overwrite is off and all of them exist."""
        if self.config.overwrite:
            return False

        expected = []
        for product in self.enabled_products():
            path = self.writer.path_for(product, tile.name)
            expected.append((PRODUCT_STAGES[product], path))
            if self.config.generate_hillshade and product in HILLSHADE_STAGES:
                expected.append((HILLSHADE_STAGES[product], self.writer.hillshade_path_for(path)))

        if not expected or not all(path.exists() for _, path in expected):
            return False

        for stage, path in expected:
            result.record(stage, Outcome.skipped_exists(path))
        return True

    def _write(self, state: _TileState, product: Product, raster: Raster) -> Outcome:
        path = self.writer.path_for(product, state.tile.name)
        outcome = self.writer.write(raster, path, save_fn=self.engine.write_raster)
        state.outcomes[product] = outcome
        return outcome

    # Core stages

    def _load(self, state: _TileState) -> StageResult:
        points = self.engine.load(state.tile)
        if points is None or len(points) == 0:
            return StageResult.empty("no points in tile")

        base = self.config.base_resolution
        state.points = points
        state.grid = GridSpec.from_bounds(state.tile.grid_bounds(base), base)
        state.metric_grid = GridSpec.from_bounds(state.tile.bounds, self.config.metric_resolution)
        return StageResult.ok()

    def _surface_model(self, state: _TileState) -> StageResult:
        surface = self.engine.interpolate_surface(
            state.points, state.grid, max_edge=self.config.max_edge, name="dsm"
        )
        surface = crop(surface, state.tile.bounds)
        if surface.is_empty:
            return StageResult.empty("surface model is undefined everywhere")

        # Orthometric surface heights when a correction grid is configured
        state.dsm = self.correction.apply(surface)
        if state.dsm.is_empty:
            return StageResult.empty("surface model is undefined after vertical correction")

        if not self.config.generate_dsm:
            return StageResult.ok()
        return StageResult.ok(self._write(state, Product.DSM, state.dsm))

    def _terrain_model(self, state: _TileState) -> StageResult:
        points = state.points
        if self.config.reclassify_ground or not (points.classification == GROUND_CLASS).any():
            log.debug(f"Tile {state.tile.name}: classifying ground points")
            points = self.engine.classify_ground(points)
            state.points = points

        terrain = self.engine.interpolate_terrain(points, state.grid, name="dtm")
        if terrain.is_empty:
            return StageResult.empty("no ground surface could be interpolated")

        state.raw_terrain = RawTerrain(terrain)
        return StageResult.ok()

    def _normalize(self, state: _TileState) -> StageResult:
        raw = state.raw_terrain
        if not isinstance(raw, RawTerrain):
            raise TypeError("Normalization requires the uncorrected terrain model")

        normalized = self.engine.normalize(state.points, raw.raster)
        if normalized is None or len(normalized) == 0:
            return StageResult.empty("no points left after height normalization")

        state.normalized = normalized
        return StageResult.ok()

    def _canopy_height_model(self, state: _TileState) -> StageResult:
        chm = self.engine.interpolate_surface(
            state.normalized, state.grid, max_edge=self.config.max_edge, name="chm"
        )
        chm = crop(chm, state.tile.bounds).masked_by(state.dsm)
        if chm.is_empty:
            return StageResult.empty("canopy height model is undefined everywhere")

        if not self.config.generate_chm:
            return StageResult.ok()
        return StageResult.ok(self._write(state, Product.CHM, chm))

    def _corrected_terrain_model(self, state: _TileState) -> StageResult:
        corrected: CorrectedTerrain = self.correction.correct_terrain(state.raw_terrain)
        dtm = crop(corrected.raster, state.tile.bounds).masked_by(state.dsm)

        if not self.config.generate_dtm:
            return StageResult.ok()
        return StageResult.ok(self._write(state, Product.DTM, dtm))

    # Optional stages

    def _hillshade(self, product: Product, state: _TileState) -> StageResult:
        parent = state.outcomes.get(product)
        if not self.config.generate_hillshade or parent is None:
            return StageResult.ok()

        target = self.writer.hillshade_path_for(parent.path)
        # A rewritten parent always gets a fresh hillshade
        if parent.status is not OutcomeStatus.WRITTEN and not self.writer.should_write(target):
            return StageResult.ok(Outcome.skipped_exists(target))

        shade = hillshade(self.engine.read_raster(parent.path))
        self.engine.write_raster(shade, target)
        return StageResult.ok(Outcome.written(target))

    def _metric(
        self,
        state: _TileState,
        product: Product,
        enabled: bool,
        compute: Callable[[_TileState], StageResult]
        ) -> StageResult:
        if not enabled:
            return StageResult.ok()

        # Existing outputs are neither recomputed nor rewritten
        path = self.writer.path_for(product, state.tile.name)
        if not self.writer.should_write(path):
            return StageResult.ok(Outcome.skipped_exists(path))

        computed = compute(state)
        if not computed.is_ok:
            return computed
        return StageResult.ok(self._write(state, product, computed.value))

    def _roughness(self, state: _TileState) -> StageResult:
        def compute(s: _TileState) -> StageResult:
            surface = self.engine.filter_surface_points(
                s.points, tolerance=self.config.surface_tolerance, resolution=self.config.base_resolution
            )
            if surface is None or len(surface) == 0:
                return StageResult.empty("no surface points")
            return StageResult.ok(self.engine.aggregate_grid(surface, rumple_index, s.metric_grid, name="rumple"))

        return self._metric(state, Product.ROUGHNESS, self.config.compute_rumple, compute)

    def _canopy_cover(self, state: _TileState) -> StageResult:
        def compute(s: _TileState) -> StageResult:
            first = s.normalized.first_returns()
            if len(first) == 0:
                return StageResult.empty("no first returns")
            fn = partial(height_fraction, threshold=self.config.cover_threshold)
            return StageResult.ok(self.engine.aggregate_grid(first, fn, s.metric_grid, name="canopy_cover"))

        return self._metric(state, Product.CANOPY_COVER, self.config.compute_canopy_cover, compute)

    def _density(self, state: _TileState) -> StageResult:
        def compute(s: _TileState) -> StageResult:
            if s.normalized is None or len(s.normalized) == 0:
                return StageResult.empty("no normalized points")
            fn = partial(height_fraction, threshold=self.config.density_threshold)
            return StageResult.ok(self.engine.aggregate_grid(s.normalized, fn, s.metric_grid, name="density"))

        return self._metric(state, Product.DENSITY, self.config.compute_density, compute)
