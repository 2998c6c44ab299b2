# tests/unit/test_reclassify.py

import laspy
import numpy as np

from forest4d.reclassify import ReclassifyTask, reclassify_catalog, reclassify_file
from forest4d.writer import OutcomeStatus

def test_reclassify_writes_ground_classes(las_tile_factory, tiles_dir, tmp_path):
    las_tile_factory("t1", n_points=3000, classified=False)
    out_dir = tmp_path / "reclassified"

    outcomes = reclassify_catalog(tiles_dir, out_dir, workers=1)

    assert outcomes["t1.las"].status is OutcomeStatus.WRITTEN
    las = laspy.read(out_dir / "t1.las")
    classes = set(np.unique(np.array(las.classification)).tolist())
    assert classes <= {1, 2}
    assert 2 in classes
    assert len(las.points) == 3000

def test_existing_outputs_are_skipped(las_tile_factory, tiles_dir, tmp_path):
    source = las_tile_factory("t1", n_points=500)
    out_dir = tmp_path / "reclassified"
    out_dir.mkdir()
    (out_dir / "t1.las").write_bytes(b"keep me")

    outcome = reclassify_file(ReclassifyTask(source=source, output_dir=out_dir))

    assert outcome.status is OutcomeStatus.SKIPPED_EXISTS
    assert (out_dir / "t1.las").read_bytes() == b"keep me"

def test_empty_tiles_are_reported_not_written(las_tile_factory, tmp_path):
    source = las_tile_factory("empty", n_points=0)
    out_dir = tmp_path / "reclassified"

    outcome = reclassify_file(ReclassifyTask(source=source, output_dir=out_dir))

    assert outcome.status is OutcomeStatus.SKIPPED_EMPTY
    assert not (out_dir / "empty.las").exists()

def test_unreadable_files_get_a_failed_outcome(las_tile_factory, tiles_dir, tmp_path):
    las_tile_factory("good", n_points=500)
    (tiles_dir / "broken.las").write_bytes(b"not a LAS file")
    out_dir = tmp_path / "reclassified"

    outcomes = reclassify_catalog(tiles_dir, out_dir, workers=1)

    assert set(outcomes) == {"good.las", "broken.las"}
    assert outcomes["broken.las"].status is OutcomeStatus.FAILED
    assert outcomes["broken.las"].reason.startswith("unreadable")
    assert not (out_dir / "broken.las").exists()
