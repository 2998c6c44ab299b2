# tests/unit/test_lidar.py

import pytest
import numpy as np
from rasterio.transform import Affine

from forest4d.lidar import (
    PointCloud,
    GridSpec,
    points_to_grid,
    tin_surface,
    highest_points,
    normalize_height,
    sample_raster,
    aggregate_grid,
    rumple_index,
    height_fraction,
    filter_surface_points,
    read_bounds,
    NODATA_VAL
)
from forest4d.raster import Raster

from conftest import ORIGIN, TILE_SIZE

def make_cloud(x, y, z, classification=None, return_number=None, bounds=None):
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    z = np.asarray(z, dtype=np.float64)
    if classification is None:
        classification = np.full(len(x), 2, dtype=np.uint8)
    if return_number is None:
        return_number = np.ones(len(x), dtype=np.uint8)
    if bounds is None:
        bounds = (x.min(), y.min(), x.max(), y.max())
    return PointCloud(
        x=x, y=y, z=z,
        classification=np.asarray(classification, dtype=np.uint8),
        return_number=np.asarray(return_number, dtype=np.uint8),
        min_x=bounds[0], max_x=bounds[2], min_y=bounds[1], max_y=bounds[3],
        max_z=float(z.max()) if len(z) else 0.0
    )

def grid_cloud(size=10, spacing=1.0, fn=lambda x, y: np.zeros_like(x)):
    """Regular point lattice over [0, size] including the edges."""
    coords = np.arange(0, size + spacing / 2, spacing)
    xx, yy = np.meshgrid(coords, coords)
    x, y = xx.ravel(), yy.ravel()
    return make_cloud(x, y, fn(x, y), bounds=(0.0, 0.0, float(size), float(size)))

# --- Grid definition ---

def test_gridspec_from_bounds_covers_extent():
    grid = GridSpec.from_bounds((0.0, 0.0, 10.0, 5.0), 2.0)

    assert grid.shape == (3, 5)
    assert grid.bounds == (0.0, -1.0, 10.0, 5.0)
    assert grid.transform == Affine(2.0, 0.0, 0.0, 0.0, -2.0, 5.0)

def test_gridspec_rejects_non_positive_resolution():
    with pytest.raises(ValueError):
        GridSpec.from_bounds((0, 0, 1, 1), 0)

def test_cell_index_folds_far_edges_into_last_cell():
    grid = GridSpec.from_bounds((0.0, 0.0, 4.0, 4.0), 1.0)
    rows, cols, inside = grid.cell_index(np.array([4.0, 0.0, 5.0]), np.array([0.0, 4.0, 2.0]))

    assert inside.tolist() == [True, True, False]
    assert (rows[0], cols[0]) == (3, 3)
    assert (rows[1], cols[1]) == (0, 0)

def test_points_to_grid_keeps_highest_hit():
    pc = make_cloud([0.5, 0.6, 1.5], [0.5, 0.4, 0.5], [1.0, 3.0, 2.0], bounds=(0, 0, 2, 1))
    grid = GridSpec.from_bounds(pc.bounds, 1.0)

    high = points_to_grid(pc, grid)

    assert high.data[0].tolist() == [[3.0, 2.0]]

def test_points_to_grid_marks_empty_cells_as_nodata():
    pc = make_cloud([0.5], [0.5], [1.0], bounds=(0, 0, 2, 1))
    grid = GridSpec.from_bounds(pc.bounds, 1.0)

    high = points_to_grid(pc, grid)
    assert high.data[0, 0, 1] == NODATA_VAL

# --- TIN interpolation ---

def test_tin_reproduces_a_plane():
    pc = grid_cloud(fn=lambda x, y: 2.0 * x + 3.0 * y + 10.0)
    grid = GridSpec.from_bounds(pc.bounds, 1.0)

    surface = tin_surface(pc, grid)

    cx, cy = grid.cell_centers()
    expected = (2.0 * cx + 3.0 * cy + 10.0).reshape(grid.shape)
    assert np.allclose(surface.data[0], expected, atol=1e-4)

def test_tin_leaves_cells_outside_the_hull_undefined():
    pc = grid_cloud(size=4)
    grid = GridSpec.from_bounds((-4.0, -4.0, 8.0, 8.0), 1.0)

    surface = tin_surface(pc, grid)

    assert not surface.valid_mask[0, 0]
    assert surface.valid_mask[6, 6]

def test_tin_max_edge_drops_long_triangles():
    # Two clusters 20 units apart, bridged only by long triangles
    left = grid_cloud(size=2)
    right_x = left.x + 20.0
    pc = make_cloud(
        np.concatenate([left.x, right_x]),
        np.concatenate([left.y, left.y]),
        np.zeros(2 * len(left)),
        bounds=(0.0, 0.0, 22.0, 2.0)
    )
    grid = GridSpec.from_bounds(pc.bounds, 1.0)

    bridged = tin_surface(pc, grid, max_edge=0.0)
    gapped = tin_surface(pc, grid, max_edge=3.0)

    assert bridged.valid_mask[1, 10]
    assert not gapped.valid_mask[1, 10]
    assert gapped.valid_mask[1, 1]

def test_tin_with_too_few_points_is_empty():
    pc = make_cloud([0.0, 1.0], [0.0, 1.0], [1.0, 2.0])
    surface = tin_surface(pc, GridSpec.from_bounds((0, 0, 2, 2), 1.0))
    assert surface.is_empty

def test_tin_with_collinear_points_is_empty():
    pc = make_cloud([0.0, 1.0, 2.0, 3.0], [0.0, 1.0, 2.0, 3.0], [1.0, 2.0, 3.0, 4.0])
    surface = tin_surface(pc, GridSpec.from_bounds((0, 0, 3, 3), 1.0))
    assert surface.is_empty

def test_highest_points_keeps_one_maximum_per_cell():
    pc = make_cloud([0.2, 0.7, 1.5], [0.2, 0.7, 0.5], [1.0, 5.0, 2.0], bounds=(0, 0, 2, 1))

    top = highest_points(pc, 1.0)

    assert sorted(top.z.tolist()) == [2.0, 5.0]

# --- Normalization ---

def test_sample_raster_is_bilinear_between_centers():
    transform = Affine.translation(0.0, 2.0) * Affine.scale(1.0, -1.0)
    terrain = Raster(np.array([[0.0, 10.0], [0.0, 10.0]], dtype=np.float32), transform)

    sampled = sample_raster(terrain, np.array([1.0, 0.5, 5.0]), np.array([1.0, 1.5, 1.0]))

    assert sampled[0] == pytest.approx(5.0)
    assert sampled[1] == pytest.approx(0.0)
    assert np.isnan(sampled[2])

def test_normalize_height_subtracts_terrain_and_drops_uncovered_points():
    pc = grid_cloud(fn=lambda x, y: 100.0 + x)
    grid = GridSpec.from_bounds(pc.bounds, 1.0)
    terrain = tin_surface(pc, grid)

    above = make_cloud([2.5, 50.0], [2.5, 50.0], [105.0, 105.0], bounds=pc.bounds)
    normalized = normalize_height(above, terrain)

    assert len(normalized) == 1
    assert normalized.z[0] == pytest.approx(2.5, abs=1e-3)

# --- Metrics ---

def test_rumple_index_of_a_flat_surface_is_one():
    x, y = np.meshgrid(np.arange(5.0), np.arange(5.0))
    assert rumple_index(x.ravel(), y.ravel(), np.zeros(25)) == pytest.approx(1.0)

def test_rumple_index_grows_with_roughness():
    x, y = np.meshgrid(np.arange(5.0), np.arange(5.0))
    z = np.where((x + y) % 2 == 0, 0.0, 2.0).ravel()
    assert rumple_index(x.ravel(), y.ravel(), z) > 1.5

def test_rumple_index_undefined_for_degenerate_cells():
    assert np.isnan(rumple_index(np.array([0.0, 1.0]), np.array([0.0, 1.0]), np.array([0.0, 1.0])))
    assert np.isnan(rumple_index(np.arange(4.0), np.arange(4.0), np.zeros(4)))

def test_height_fraction_counts_strictly_above_threshold():
    z = np.array([0.5, 1.0, 1.5, 3.0])
    assert height_fraction(z, z, z, threshold=1.0) == pytest.approx(0.5)
    assert height_fraction(z, z, z, threshold=2.0) == pytest.approx(0.25)

def test_aggregate_grid_applies_function_per_cell():
    pc = make_cloud(
        [1.0, 2.0, 3.0, 12.0],
        [1.0, 2.0, 3.0, 2.0],
        [0.0, 3.0, 3.0, 0.5],
        bounds=(0.0, 0.0, 20.0, 10.0)
    )
    grid = GridSpec.from_bounds(pc.bounds, 10.0)

    result = aggregate_grid(pc, lambda x, y, z: height_fraction(x, y, z, 2.0), grid, name="density")

    assert result.shape == (1, 1, 2)
    assert result.data[0, 0, 0] == pytest.approx(2.0 / 3.0)
    assert result.data[0, 0, 1] == pytest.approx(0.0)
    assert result.band_names == {"density": 1}

def test_aggregate_grid_marks_empty_and_undefined_cells_as_nodata():
    pc = make_cloud([1.0, 2.0], [1.0, 2.0], [0.0, 1.0], bounds=(0.0, 0.0, 20.0, 10.0))
    grid = GridSpec.from_bounds(pc.bounds, 10.0)

    result = aggregate_grid(pc, rumple_index, grid)

    assert result.is_empty

def test_filter_surface_points_keeps_points_near_the_local_top():
    pc = make_cloud(
        [0.2, 0.4, 0.6, 1.5],
        [0.5, 0.5, 0.5, 0.5],
        [10.0, 9.7, 5.0, 2.0],
        bounds=(0.0, 0.0, 2.0, 1.0)
    )

    surface = filter_surface_points(pc, tolerance=0.5, resolution=1.0)

    assert sorted(surface.z.tolist()) == [2.0, 9.7, 10.0]

# --- Loading ---

def test_read_bounds_uses_header_extent(las_tile_factory):
    path = las_tile_factory(n_points=500)
    min_x, min_y, max_x, max_y = read_bounds(path)

    assert ORIGIN[0] <= min_x < max_x <= ORIGIN[0] + TILE_SIZE
    assert ORIGIN[1] <= min_y < max_y <= ORIGIN[1] + TILE_SIZE

def test_from_files_clips_neighbours_to_bounds(las_tile_factory):
    a = las_tile_factory("a", n_points=1000)
    b = las_tile_factory("b", origin=(ORIGIN[0] + TILE_SIZE, ORIGIN[1]), n_points=1000, seed=1)

    bounds = (ORIGIN[0], ORIGIN[1], ORIGIN[0] + TILE_SIZE + 5.0, ORIGIN[1] + TILE_SIZE)
    pc = PointCloud.from_files([a, b], bounds)

    assert len(pc) > 1000
    assert pc.x.max() <= bounds[2]
    assert pc.bounds == bounds

def test_from_files_with_no_points_in_bounds_is_empty(las_tile_factory):
    a = las_tile_factory("a", n_points=100)

    pc = PointCloud.from_files([a], (0.0, 0.0, 1.0, 1.0))

    assert pc.is_empty
