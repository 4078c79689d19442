"""
Builders for synthetic HEC-RAS projects, plan HDF files and rasters.

Shared by the test fixtures and by fake_engine.py, which runs in a
separate interpreter.
"""

import os

import h5py
import numpy as np
import rasterio
from affine import Affine

AREA = 'Farm Area'
CRS = 'EPSG:26915'
MIN_ELEVATION = 10.0
SPACING = 10.0

# 3 x 3 mesh, cell k = row * 3 + col counted from the south-west corner
CELL_X = np.tile([5.0, 15.0, 25.0], 3)
CELL_Y = np.repeat([5.0, 15.0, 25.0], 3)
PEAK_DEPTH = np.array([2.0, 1.0, 0.0,
                       1.5, 0.5, 0.0,
                       1.0, 0.0, 0.0])
HOURS = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
SHAPE = np.array([0.0, 0.5, 1.0, 0.5, 0.0])

TIME_SERIES = 'Results/Unsteady/Output/Output Blocks/Base Output/Unsteady Time Series'

PRJ_TEXT = [
    "Proj Title=Farm Levee",
    "Current Plan=p01",
    "Default Exp/Contr=0.3,0.1",
    "SI Units",
    "Geom File=g01",
    "Unsteady File=u01",
    "Plan File=p01",
    "Y Axis Title=Elevation",
]

PLAN_TEXT = [
    "Plan Title=Base plan",
    "Program Version=6.30",
    "Short Identifier=Base",
    "Simulation Date=01JAN2000,0000,02JAN2000,0000",
    "Geom File=g01",
    "Flow File=u01",
    "Computation Interval=10SEC",
    "Output Interval=1HOUR",
]

FLOW_TEXT = [
    "Flow Title=Base flow",
    "Program Version=6.30",
    "Use Restart= 0 ",
    "Boundary Location=Creek           ,Upper           ,1000    ,        ,                ,                ",
    "Interval=1HOUR",
    "Flow Hydrograph= 5 ",
    "      10      20      30      20      10",
    "Stage Hydrograph TW Check=0",
    "Flow Hydrograph QMult= 1 ",
    "DSS Path=",
    "Use DSS=False",
    "Boundary Location=Creek           ,Tributary       ,500     ,        ,                ,                ",
    "Interval=1HOUR",
    "Flow Hydrograph= 3 ",
    "       5       8       5",
    "DSS Path=",
    "Use DSS=False",
    "Boundary Location=Creek           ,Lower           ,0       ,        ,                ,                ",
    "Friction Slope=0.001,0",
]

GEOM_TEXT = [
    "Geom Title=Farm terrain",
    "Program Version=6.30",
    "Storage Area=Farm Area      ,5,5",
]


def _write(path, lines):
    with open(path, 'w', encoding='latin-1', newline='') as f:
        f.write('\r\n'.join(lines) + '\r\n')


def make_project(project_dir):
    """Write a minimal HEC-RAS project (Windows line endings) and return its folder."""
    os.makedirs(project_dir, exist_ok=True)
    _write(os.path.join(project_dir, 'Farm.prj'), PRJ_TEXT)
    _write(os.path.join(project_dir, 'Farm.p01'), PLAN_TEXT)
    _write(os.path.join(project_dir, 'Farm.u01'), FLOW_TEXT)
    _write(os.path.join(project_dir, 'Farm.g01'), GEOM_TEXT)
    # GIS projection file sharing the extension
    with open(os.path.join(project_dir, 'Albers.prj'), 'w') as f:
        f.write('PROJCS["NAD83 / UTM zone 15N"]')
    return project_dir


def make_plan_hdf(path, scale=1.0, velocity='cell', include_depth=True, projection=CRS):
    """
    Write a plan results HDF for the 3 x 3 mesh plus one perimeter cell.

    Depth at cell k and step t is scale * PEAK_DEPTH[k] * SHAPE[t].
    Velocity magnitude is half the depth ('cell' writes X/Y components,
    'face' writes face velocities, None writes nothing).
    """
    depth = scale * np.outer(SHAPE, PEAK_DEPTH)
    # perimeter cell: no minimum elevation, never wet
    depth = np.column_stack([depth, np.zeros(len(HOURS))])
    coords = np.column_stack([np.append(CELL_X, 100.0), np.append(CELL_Y, 100.0)])
    min_elev = np.append(np.full(9, MIN_ELEVATION), np.nan)
    wse = depth + np.nan_to_num(min_elev, nan=MIN_ELEVATION)

    with h5py.File(path, 'w') as f:
        if projection:
            f.attrs['Projection'] = np.bytes_(projection)
        geom = f.create_group(f'Geometry/2D Flow Areas/{AREA}')
        geom.create_dataset('Cells Center Coordinate', data=coords)
        geom.create_dataset('Cells Minimum Elevation', data=min_elev)

        ts = f.create_group(TIME_SERIES)
        ts.create_dataset('Time', data=HOURS / 24.0)
        res = ts.create_group(f'2D Flow Areas/{AREA}')
        res.create_dataset('Water Surface', data=wse)
        if include_depth:
            res.create_dataset('Depth', data=depth)

        if velocity == 'cell':
            res.create_dataset('Cell Velocity - Velocity X', data=0.3 * depth)
            res.create_dataset('Cell Velocity - Velocity Y', data=0.4 * depth)
        elif velocity == 'face':
            # one private face per cell, so the cell mean equals that face
            n = depth.shape[1]
            info = np.column_stack([np.arange(n), np.ones(n, dtype=int)])
            geom.create_dataset('Cells Face and Orientation Info', data=info)
            geom.create_dataset('Cells Face and Orientation Values',
                                data=np.column_stack([np.arange(n), np.ones(n, dtype=int)]))
            res.create_dataset('Face Velocity', data=-0.5 * depth)
    return path


def write_raster(path, array, transform=None, crs=CRS, nodata=-9999.0, dtype='float32'):
    """Single-band GeoTIFF on the 3 x 3 mesh grid unless `transform` is given."""
    array = np.asarray(array)
    transform = transform or Affine(SPACING, 0.0, 0.0, 0.0, -SPACING, 30.0)
    with rasterio.open(path, 'w', driver='GTiff', height=array.shape[0], width=array.shape[1],
                       count=1, dtype=dtype, crs=crs, transform=transform, nodata=nodata) as dst:
        dst.write(array.astype(dtype), 1)
    return path
