"""
Unit tests for results module.
"""

import os

import numpy as np
import pandas as pd
import pytest
import rasterio
import xarray as xr
from affine import Affine

from agflood.results import (
    list_flow_areas, read_projection, read_area_series, compute_cell_metrics, step_lengths,
    mesh_spacing, grid_from_cells, cells_to_grid, write_geotiff, extract_scenario_rasters,
    extract_batch, load_raster_index, NODATA, EXTENT_NODATA
)
from ras_fixtures import make_plan_hdf, write_raster, AREA, CRS

# Expected grids for the scale-1 plan (north row first)
DEPTH_GRID = np.array([
    [1.0, 0.0, 0.0],
    [1.5, 0.5, 0.0],
    [2.0, 1.0, 0.0],
])
EXTENT_GRID = (DEPTH_GRID > 0.05).astype(np.uint8)


def _read(path):
    with rasterio.open(path) as src:
        return src.read(1), src.profile


def test_list_flow_areas_and_projection(plan_hdf, workspace):
    assert list_flow_areas(plan_hdf) == [AREA]
    assert read_projection(plan_hdf) == CRS
    bare = make_plan_hdf(str(workspace / 'bare.p01.hdf'), projection=None)
    assert read_projection(bare) is None
    with pytest.raises(FileNotFoundError):
        list_flow_areas(str(workspace / 'absent.hdf'))


def test_read_area_series(plan_hdf):
    ds = read_area_series(plan_hdf)
    assert isinstance(ds, xr.Dataset)
    # perimeter cell without minimum elevation is dropped
    assert ds.sizes['cell'] == 9
    assert ds['time'].values.tolist() == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert float(ds['depth'].max()) == pytest.approx(2.0)
    np.testing.assert_allclose(ds['velocity'].values, 0.5 * ds['depth'].values)
    np.testing.assert_allclose(ds['water_surface'].values, ds['depth'].values + 10.0)


def test_read_area_series_depth_from_water_surface(workspace):
    path = make_plan_hdf(str(workspace / 'wse.p01.hdf'), include_depth=False)
    ds = read_area_series(path)
    assert float(ds['depth'].isel(cell=0).max()) == pytest.approx(2.0)


def test_read_area_series_face_velocity(workspace):
    path = make_plan_hdf(str(workspace / 'face.p01.hdf'), velocity='face')
    ds = read_area_series(path)
    np.testing.assert_allclose(ds['velocity'].values, 0.5 * ds['depth'].values)


def test_read_area_series_without_velocity(workspace):
    path = make_plan_hdf(str(workspace / 'novel.p01.hdf'), velocity=None)
    assert 'velocity' not in read_area_series(path)


def test_read_area_series_unknown_area(plan_hdf):
    with pytest.raises(KeyError):
        read_area_series(plan_hdf, area='Other')


def test_step_lengths():
    assert step_lengths([0.0, 1.0, 3.0]).tolist() == [1.0, 2.0, 2.0]
    assert step_lengths([5.0]).tolist() == [0.0]


def test_compute_cell_metrics(plan_hdf):
    metrics = compute_cell_metrics(read_area_series(plan_hdf), depth_threshold=0.05)
    np.testing.assert_allclose(metrics['max_depth'].values, [2.0, 1.0, 0.0, 1.5, 0.5, 0.0, 1.0, 0.0, 0.0])
    assert metrics['time_of_peak_hours'].values[0] == 2.0
    assert metrics['duration_hours'].values.tolist() == [3.0, 3.0, 0.0, 3.0, 3.0, 0.0, 3.0, 0.0, 0.0]
    assert metrics['inundated'].values.tolist() == [1, 1, 0, 1, 1, 0, 1, 0, 0]
    assert float(metrics['max_velocity'].values[0]) == pytest.approx(1.0)


def test_duration_depends_on_threshold(plan_hdf):
    # cell 4 peaks at 0.5 m and is above 0.3 m only at the peak step
    metrics = compute_cell_metrics(read_area_series(plan_hdf), depth_threshold=0.3)
    assert metrics['duration_hours'].values[4] == 1.0
    with pytest.raises(ValueError):
        compute_cell_metrics(read_area_series(plan_hdf), depth_threshold=-1)


def test_grid_from_cells():
    x = np.tile([5.0, 15.0, 25.0], 3)
    y = np.repeat([5.0, 15.0, 25.0], 3)
    assert mesh_spacing(x, y) == pytest.approx(10.0)
    transform, shape = grid_from_cells(x, y)
    assert shape == (3, 3)
    assert transform == Affine(10.0, 0.0, 0.0, 0.0, -10.0, 30.0)


def test_cells_to_grid_masks_far_pixels():
    x = np.array([5.0, 15.0])
    y = np.array([5.0, 5.0])
    transform = Affine(10.0, 0.0, 0.0, 0.0, -10.0, 10.0)
    grid = cells_to_grid(x, y, np.array([1.0, 2.0]), transform, (1, 6), max_distance=12.0)
    assert grid[0, :2].tolist() == [1.0, 2.0]
    assert grid[0, 2] == 2.0
    assert np.isnan(grid[0, 3:]).all()
    with pytest.raises(ValueError):
        cells_to_grid(x, y, np.array([1.0, 2.0]), transform, (1, 6), method='cubic')


def test_write_geotiff_nodata(workspace):
    path = write_geotiff(str(workspace / 'out.tif'), np.array([[1.0, np.nan]]),
                         Affine(1, 0, 0, 0, -1, 1), CRS)
    data, profile = _read(path)
    assert profile['nodata'] == NODATA
    assert data.tolist() == [[1.0, NODATA]]


def test_extract_scenario_rasters(plan_hdf, workspace):
    paths = extract_scenario_rasters(plan_hdf, str(workspace / 'rasters'), 'RP10')
    assert set(paths) == {'depth_max', 'velocity_max', 'duration', 'extent', 'cells'}

    depth, profile = _read(paths['depth_max'])
    np.testing.assert_allclose(depth, DEPTH_GRID)
    assert profile['crs'].to_epsg() == 26915
    assert profile['transform'] == Affine(10.0, 0.0, 0.0, 0.0, -10.0, 30.0)

    extent, extent_profile = _read(paths['extent'])
    assert extent_profile['nodata'] == EXTENT_NODATA
    np.testing.assert_array_equal(extent, EXTENT_GRID)

    duration, _ = _read(paths['duration'])
    np.testing.assert_allclose(duration, 3.0 * EXTENT_GRID)
    velocity, _ = _read(paths['velocity_max'])
    np.testing.assert_allclose(velocity, 0.5 * DEPTH_GRID)

    cells = xr.open_dataset(paths['cells'])
    assert cells.sizes['cell'] == 9
    cells.close()


def test_extract_is_deterministic(plan_hdf, workspace):
    first = extract_scenario_rasters(plan_hdf, str(workspace / 'one'), 'RP10')
    second = extract_scenario_rasters(plan_hdf, str(workspace / 'two'), 'RP10')
    for kind in ('depth_max', 'velocity_max', 'duration', 'extent'):
        np.testing.assert_array_equal(_read(first[kind])[0], _read(second[kind])[0])


def test_extract_on_terrain(plan_hdf, workspace):
    dem = write_raster(str(workspace / 'dem.tif'), np.full((3, 3), 10.5))
    paths = extract_scenario_rasters(plan_hdf, str(workspace / 'rasters'), 'RP10', terrain=dem)
    depth, _ = _read(paths['depth_max'])
    # peak water surface 12.0 over terrain 10.5
    assert depth[2, 0] == pytest.approx(1.5)
    # cell 4 peaks at 10.5, level with the terrain
    assert depth[1, 1] == pytest.approx(0.0)
    assert depth[0, 2] == pytest.approx(0.0)


def test_extract_batch(plan_hdf, workspace, capsys):
    status = pd.DataFrame([
        {'scenario_id': 'RP10', 'return_period': 10.0, 'state': 'ok', 'results_file': plan_hdf},
        {'scenario_id': 'RP50', 'return_period': 50.0, 'state': 'failed', 'results_file': 'missing.hdf'},
        {'scenario_id': 'RP100', 'return_period': 100.0, 'state': 'skipped',
         'results_file': str(workspace / 'absent.p01.hdf')},
    ])
    out_dir = str(workspace / 'rasters')
    extracted = extract_batch(status, out_dir, depth_threshold=0.05)
    assert list(extracted) == ['RP10']
    assert '[ERR]  RP100' in capsys.readouterr().out

    index = load_raster_index(out_dir)
    assert set(index['kind']) == {'depth_max', 'velocity_max', 'duration', 'extent', 'cells'}
    assert (index['return_period'] == 10.0).all()
    assert os.path.exists(index.loc[index['kind'] == 'depth_max', 'path'].iloc[0])


def test_extract_batch_nothing_completed(workspace):
    status = pd.DataFrame([{'scenario_id': 'RP10', 'return_period': 10.0, 'state': 'timeout',
                            'results_file': 'x.hdf'}])
    with pytest.raises(ValueError):
        extract_batch(status, str(workspace / 'rasters'))
