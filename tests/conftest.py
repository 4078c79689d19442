"""
Shared fixtures: synthetic HEC-RAS project, plan results, rasters and fields.
"""

import tempfile
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from ras_fixtures import make_project, make_plan_hdf, write_raster, CRS

FAKE_ENGINE = str(Path(__file__).parent / 'fake_engine.py')


@pytest.fixture
def workspace():
    """Temporary folder removed after the test."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def ras_project(workspace):
    """Pristine HEC-RAS project folder."""
    return make_project(str(workspace / 'project'))


@pytest.fixture
def plan_hdf(workspace):
    """Plan results HDF with cell velocities."""
    return make_plan_hdf(str(workspace / 'Farm.p01.hdf'))


@pytest.fixture
def base_hydrograph():
    """Hourly triangular hydrograph peaking at 30 m3/s."""
    return pd.DataFrame({
        'time_hours': [0.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
        'discharge_cms': [5.0, 10.0, 20.0, 30.0, 20.0, 10.0, 5.0],
    })


@pytest.fixture
def annual_peaks():
    """Synthetic 40-year annual maximum series from a Gumbel distribution."""
    rng = np.random.default_rng(42)
    return rng.gumbel(loc=100.0, scale=25.0, size=40)


@pytest.fixture
def fields_gdf():
    """Three fields on the 3 x 3 mesh grid (10 m pixels, origin 0, 30)."""
    return gpd.GeoDataFrame(
        {
            'field_id': ['A', 'B', 'C'],
            'crop': ['corn', 'soy', 'rice'],
        },
        geometry=[box(0, 0, 20, 20), box(20, 0, 30, 20), box(0, 20, 30, 30)],
        crs=CRS,
    )


@pytest.fixture
def fields_file(workspace, fields_gdf):
    path = str(workspace / 'fields.gpkg')
    fields_gdf.to_file(path, driver='GPKG')
    return path


@pytest.fixture
def depth_raster(workspace):
    """Depth grid matching the scale-1 plan results."""
    array = np.array([
        [1.0, 0.0, 0.0],
        [1.5, 0.5, 0.0],
        [2.0, 1.0, 0.0],
    ])
    return write_raster(str(workspace / 'RP10_depth_max.tif'), array)


@pytest.fixture
def extent_raster(workspace):
    array = np.array([
        [1, 0, 0],
        [1, 1, 0],
        [1, 1, 0],
    ])
    return write_raster(str(workspace / 'RP10_extent.tif'), array, nodata=255, dtype='uint8')


@pytest.fixture
def custom_engine():
    """Engine settings that run fake_engine.py in the given mode."""
    def _engine(mode='ok'):
        return {
            'name': 'custom',
            'executable': None,
            'command': ['{python}', FAKE_ENGINE, '{project}', '{plan_suffix}', mode],
        }
    return _engine
