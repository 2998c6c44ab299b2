# tests/unit/test_raster.py

import pytest
import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from forest4d import raster
from forest4d.raster import Raster, NODATA_VAL
from forest4d.exceptions import RasterIOError, RasterValidationError

from helpers import assert_grid_match

def _raster(data, x0=0.0, y0=10.0, res=1.0, crs="EPSG:32610", nodata=NODATA_VAL):
    transform = Affine.translation(x0, y0) * Affine.scale(res, -res)
    return Raster(
        np.asarray(data, dtype=np.float32),
        transform,
        crs=CRS.from_user_input(crs) if crs else None,
        nodata=nodata
    )

def test_raster_promotes_2d_and_reports_metadata():
    r = _raster(np.zeros((4, 5)))

    assert r.shape == (1, 4, 5)
    assert r.width == 5 and r.height == 4
    assert r.resolution == (1.0, 1.0)
    assert r.bounds == (0.0, 6.0, 5.0, 10.0)
    assert r.profile['nodata'] == NODATA_VAL
    assert 'tiled' not in r.profile

def test_valid_mask_handles_nan_and_nodata():
    data = np.array([[1.0, NODATA_VAL], [np.nan, 4.0]])
    r = _raster(data)

    assert r.valid_mask.tolist() == [[True, False], [False, True]]
    assert not r.is_empty
    assert _raster(np.full((2, 2), NODATA_VAL)).is_empty

def test_filled_replaces_invalid_cells():
    r = _raster(np.array([[1.0, NODATA_VAL]]))
    filled = r.filled(np.nan)

    assert filled[0, 0] == 1.0
    assert np.isnan(filled[0, 1])

def test_masked_by_propagates_undefined_cells():
    values = _raster(np.ones((2, 2)))
    mask = _raster(np.array([[1.0, NODATA_VAL], [1.0, 1.0]]))

    masked = values.masked_by(mask)

    assert masked.valid_mask.tolist() == [[True, False], [True, True]]
    # The source raster is left untouched
    assert values.valid_mask.all()

def test_masked_by_rejects_different_grids():
    with pytest.raises(RasterValidationError):
        _raster(np.ones((2, 2))).masked_by(_raster(np.ones((3, 3))))

def test_save_and_load_round_trip(tmp_path):
    r = _raster(np.arange(12, dtype=np.float32).reshape(3, 4))
    r.band_names = {"dsm": 1}
    path = raster.save(r, tmp_path / "nested" / "out.tif")

    loaded = raster.load(path)

    assert_grid_match(loaded, r)
    assert np.array_equal(loaded.data, r.data)
    assert loaded.nodata == NODATA_VAL
    assert loaded.band_names == {"dsm": 1}

def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        raster.load(tmp_path / "missing.tif")

def test_save_to_unwritable_destination_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(RasterIOError):
        raster.save(_raster(np.ones((2, 2))), blocker / "out.tif")

def test_crop_to_bounds_keeps_alignment():
    r = _raster(np.arange(100, dtype=np.float32).reshape(10, 10))

    cropped = raster.crop(r, (2.0, 3.0, 6.0, 8.0))

    assert cropped.shape == (1, 5, 4)
    assert cropped.transform.c == 2.0
    assert cropped.transform.f == 8.0
    assert cropped.data[0, 0, 0] == r.data[0, 2, 2]

def test_align_to_bilinear_resamples_onto_reference():
    # Linear ramp along x on a 2 m grid, resampled onto a 1 m grid
    coarse = _raster(np.tile(np.arange(5, dtype=np.float32), (5, 1)), res=2.0)
    reference = _raster(np.zeros((10, 10)), res=1.0)

    aligned = raster.align_to(coarse, reference)

    assert_grid_match(aligned, reference)
    row = aligned.data[0, 5]
    inner = row[2:8]
    assert np.all(np.diff(inner) > 0)

def test_align_to_borrows_missing_crs():
    source = _raster(np.ones((5, 5)), res=2.0, crs=None)
    reference = _raster(np.zeros((10, 10)))

    aligned = raster.align_to(source, reference)
    assert aligned.crs == reference.crs

def test_align_to_without_any_crs_raises():
    source = _raster(np.ones((5, 5)), res=2.0, crs=None)
    reference = _raster(np.zeros((10, 10)), crs=None)

    with pytest.raises(RasterValidationError):
        raster.align_to(source, reference)

def test_hillshade_flat_surface_equals_sine_of_altitude():
    flat = _raster(np.full((6, 6), 100.0))

    shade = raster.hillshade(flat, altitude=45.0)

    assert np.allclose(shade.data, np.sin(np.deg2rad(45.0)))
    assert shade.band_names == {"hillshade": 1}

def test_hillshade_lights_slopes_facing_the_sun():
    # Terrain rising to the south, so slopes face north toward an azimuth 0 sun
    rows = np.arange(8, dtype=np.float32)[:, None]
    facing_north = _raster(np.tile(rows * 1.0, (1, 8)))
    facing_south = _raster(np.tile(-rows * 1.0, (1, 8)))

    lit = raster.hillshade(facing_north).data[0, 4, 4]
    shadowed = raster.hillshade(facing_south).data[0, 4, 4]

    assert lit > shadowed

def test_slope_aspect_keeps_undefined_cells_undefined():
    data = np.full((5, 5), 10.0)
    data[2, 2] = NODATA_VAL

    slope, aspect = raster.slope_aspect(_raster(data))

    assert np.isnan(slope[2, 2]) and np.isnan(aspect[2, 2])
    assert np.allclose(slope[0, 0], 0.0)

def test_hillshade_written_file_carries_nodata(tmp_path):
    data = np.full((5, 5), 10.0)
    data[0, 0] = NODATA_VAL
    shade = raster.hillshade(_raster(data))

    path = raster.save(shade, tmp_path / "hs.tif")
    with rasterio.open(path) as src:
        band = src.read(1, masked=True)

    assert band.mask[0, 0]
    assert not band.mask[4, 4]
