# tests/conftest.py

import pytest
import numpy as np
import laspy
import rasterio
from rasterio.transform import Affine
from rasterio.crs import CRS

from forest4d.config import PipelineConfig

# Projected coordinates somewhere in UTM zone 10N
ORIGIN = (500_000.0, 4_100_000.0)
TEST_CRS = "EPSG:32610"
TILE_SIZE = 50.0

def ground_elevation(x, y):
    """Gently sloping synthetic terrain, in tile-local coordinates."""
    return 100.0 + 0.05 * x + 0.02 * y

def synthetic_points(n_points, size=TILE_SIZE, seed=0):
    """
    Returns local (x, y, z, classification, return_number) arrays of a small forest:
    ground returns everywhere plus three conical crowns.
    """
    rng = np.random.default_rng(seed)

    n_ground = int(n_points * 0.6)
    n_veg = n_points - n_ground

    gx = rng.uniform(0, size, n_ground)
    gy = rng.uniform(0, size, n_ground)
    gz = ground_elevation(gx, gy)

    centers = [(0.3 * size, 0.3 * size), (0.7 * size, 0.6 * size), (0.4 * size, 0.75 * size)]
    per_crown = np.array_split(np.arange(n_veg), len(centers))

    vx, vy, vz = [], [], []
    for (cx, cy), idx in zip(centers, per_crown):
        r = 5.0 * np.sqrt(rng.uniform(0, 1, len(idx)))
        theta = rng.uniform(0, 2 * np.pi, len(idx))
        x = cx + r * np.cos(theta)
        y = cy + r * np.sin(theta)
        vx.append(x)
        vy.append(y)
        vz.append(ground_elevation(x, y) + 15.0 - 2.0 * r)

    x = np.concatenate([gx] + vx)
    y = np.concatenate([gy] + vy)
    z = np.concatenate([gz] + vz)

    classification = np.concatenate([np.full(n_ground, 2), np.full(n_veg, 5)]).astype(np.uint8)
    return_number = np.ones(n_points, dtype=np.uint8)
    return x, y, z, classification, return_number

def write_las(path, x, y, z, classification, return_number, offset=ORIGIN):
    header = laspy.LasHeader(point_format=3, version="1.2")
    header.scales = np.array([0.01, 0.01, 0.01])
    header.offsets = np.array([offset[0], offset[1], 0.0])

    las = laspy.LasData(header)
    if len(x) > 0:
        las.x = x
        las.y = y
        las.z = z
        las.classification = classification
        las.return_number = return_number
        las.number_of_returns = return_number
    las.write(str(path))
    return path

@pytest.fixture
def tiles_dir(tmp_path):
    d = tmp_path / "tiles"
    d.mkdir()
    return d

@pytest.fixture
def las_tile_factory(tiles_dir):
    """
    Fixture: writes synthetic LAS tiles.

    The tile covers [origin, origin + size] in both directions. n_points=0 gives an empty file.
    classified=False writes every point as class 1 so ground has to be classified.
    """
    def _create(
        name="tile_a",
        origin=ORIGIN,
        size=TILE_SIZE,
        n_points=10_000,
        classified=True,
        seed=0,
        directory=None
    ):
        path = (directory or tiles_dir) / f"{name}.las"
        if n_points == 0:
            empty = np.empty(0)
            return write_las(path, empty, empty, empty, empty, empty, offset=origin)

        x, y, z, classification, return_number = synthetic_points(n_points, size=size, seed=seed)
        if not classified:
            classification = np.ones_like(classification)
        return write_las(
            path, x + origin[0], y + origin[1], z, classification, return_number, offset=origin
        )

    return _create

@pytest.fixture
def config_factory(tmp_path):
    """Fixture: builds a single-worker configuration writing under tmp_path/out."""
    def _create(**overrides):
        values = dict(
            output_root=tmp_path / "out",
            year=2021,
            crs=TEST_CRS,
            workers=1,
            buffer=5.0,
            metric_resolution=10.0,
        )
        values.update(overrides)
        return PipelineConfig(**values)

    return _create

@pytest.fixture
def correction_factory(tmp_path):
    """
    Fixture: writes a vertical correction grid (GeoTIFF, 5 m cells) covering the test area.

    The offset varies linearly from `base` so that bilinear resampling is exercised.
    """
    def _create(name="geoid.tif", base=-20.0, gradient=0.01, crs=TEST_CRS, margin=200.0):
        path = tmp_path / name
        res = 5.0
        size = int((TILE_SIZE + 2 * margin) / res)
        west = ORIGIN[0] - margin
        north = ORIGIN[1] + TILE_SIZE + margin

        cols = np.arange(size)
        data = base + gradient * np.tile(cols, (size, 1)).astype(np.float32)

        profile = {
            'driver': 'GTiff',
            'height': size,
            'width': size,
            'count': 1,
            'dtype': 'float32',
            'crs': CRS.from_user_input(crs),
            'transform': Affine.translation(west, north) * Affine.scale(res, -res),
            'nodata': -9999.0
        }
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(data.astype(np.float32), 1)
        return path

    return _create
