# src/agflood/results.py
"""
Module: results.py
Responsibilities:
- Read 2D flow area geometry and unsteady time series from HEC-RAS plan HDF5
- Derive per-cell maximum depth, maximum velocity, inundation duration and
  time of peak
- Map mesh-cell values onto a regular grid (own grid or a terrain raster)
- Write depth (m), velocity (m/s), duration (h) and binary extent GeoTIFFs
- Extract rasters for every completed scenario of a batch
"""
import logging
import os
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

import h5py
import numpy as np
import pandas as pd
import rasterio
import xarray as xr
from affine import Affine
from scipy.interpolate import griddata
from scipy.spatial import cKDTree

from agflood.parallel import process_in_parallel

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
GEOMETRY_AREAS = '/Geometry/2D Flow Areas'
TIME_SERIES = '/Results/Unsteady/Output/Output Blocks/Base Output/Unsteady Time Series'
NODATA = -9999.0
EXTENT_NODATA = 255
DEFAULT_DEPTH_THRESHOLD = 0.05
RASTER_KINDS = ('depth_max', 'velocity_max', 'duration', 'extent')
RASTER_INDEX_NAME = 'raster_index.csv'


def list_flow_areas(hdf_path: str) -> List[str]:
    """Names of the 2D flow areas in a plan or geometry HDF file."""
    if not os.path.exists(hdf_path):
        raise FileNotFoundError(f"HDF file not found: {hdf_path}")
    with h5py.File(hdf_path, 'r') as f:
        if GEOMETRY_AREAS not in f:
            return []
        group = f[GEOMETRY_AREAS]
        return [name for name in group if isinstance(group[name], h5py.Group)]


def read_projection(hdf_path: str) -> Optional[str]:
    """Projection WKT stored on the HDF root, or None."""
    with h5py.File(hdf_path, 'r') as f:
        wkt = f.attrs.get('Projection')
    if wkt is None:
        return None
    if isinstance(wkt, bytes):
        wkt = wkt.decode('utf-8')
    wkt = str(wkt).strip()
    return wkt or None


def _cell_velocity_from_faces(geom: h5py.Group, face_velocity: np.ndarray, n_cells: int) -> Optional[np.ndarray]:
    """Mean absolute face velocity of each cell, shape (time, n_cells)."""
    if 'Cells Face and Orientation Info' not in geom or 'Cells Face and Orientation Values' not in geom:
        return None
    info = np.asarray(geom['Cells Face and Orientation Info'][:n_cells], dtype=np.int64)
    faces = np.asarray(geom['Cells Face and Orientation Values'][:, 0], dtype=np.int64)
    starts, counts = info[:, 0], info[:, 1]
    total = int(counts.sum())
    cell_ids = np.repeat(np.arange(n_cells), counts)
    offsets = np.arange(total) - np.repeat(np.cumsum(counts) - counts, counts)
    face_idx = faces[np.repeat(starts, counts) + offsets]

    speed = np.abs(face_velocity[:, face_idx]).T
    sums = np.zeros((n_cells, face_velocity.shape[0]))
    np.add.at(sums, cell_ids, speed)
    with np.errstate(invalid='ignore', divide='ignore'):
        mean = sums / counts[:, None]
    mean[counts == 0] = np.nan
    return mean.T


def read_area_series(hdf_path: str, area: Optional[str] = None) -> xr.Dataset:
    """
    Read depth (and velocity when derivable) time series for one 2D area.

    Depth comes from the 'Depth' dataset, or from 'Water Surface' minus
    'Cells Minimum Elevation' clipped at zero. Velocity comes from cell
    velocity components, or from the mean absolute velocity of each cell's
    faces. Cells without a minimum elevation (perimeter ghost cells) are
    dropped.

    Parameters
    ----------
    hdf_path : str
        Plan results HDF file (.p##.hdf)
    area : str, optional
        2D flow area name; first area when None

    Returns
    -------
    xr.Dataset
        dims (time, cell); variables 'depth', optionally 'velocity' and
        'water_surface'; coords 'time' (hours), 'x', 'y'

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    KeyError
        If the area, time stamps or a depth source are missing
    """
    areas = list_flow_areas(hdf_path)
    if not areas:
        raise KeyError(f"No 2D flow areas in {hdf_path}")
    if area is None:
        if len(areas) > 1:
            logger.warning(f"Multiple 2D areas found -- using first area: {areas[0]}")
        area = areas[0]
    elif area not in areas:
        raise KeyError(f"2D flow area '{area}' not found (available: {', '.join(areas)})")

    with h5py.File(hdf_path, 'r') as f:
        geom = f[f"{GEOMETRY_AREAS}/{area}"]
        coords = np.asarray(geom['Cells Center Coordinate'][:], dtype=float)
        min_elev = None
        if 'Cells Minimum Elevation' in geom:
            min_elev = np.asarray(geom['Cells Minimum Elevation'][:], dtype=float)

        time_path = f"{TIME_SERIES}/Time"
        res_path = f"{TIME_SERIES}/2D Flow Areas/{area}"
        if time_path not in f or res_path not in f:
            raise KeyError(f"No unsteady time series for area '{area}' in {hdf_path}")
        hours = np.asarray(f[time_path][:], dtype=float) * 24.0
        res = f[res_path]

        wse = np.asarray(res['Water Surface'][:], dtype=float) if 'Water Surface' in res else None
        if 'Depth' in res:
            depth = np.asarray(res['Depth'][:], dtype=float)
        elif wse is not None and min_elev is not None:
            n = min(wse.shape[1], min_elev.shape[0])
            depth = np.clip(wse[:, :n] - min_elev[:n], 0.0, None)
        else:
            raise KeyError(f"No depth source ('Depth' or 'Water Surface' + minimum elevation) for area '{area}'")

        n = min(depth.shape[1], coords.shape[0])
        velocity = None
        if 'Cell Velocity - Velocity X' in res and 'Cell Velocity - Velocity Y' in res:
            vx = np.asarray(res['Cell Velocity - Velocity X'][:, :n], dtype=float)
            vy = np.asarray(res['Cell Velocity - Velocity Y'][:, :n], dtype=float)
            velocity = np.hypot(vx, vy)
        elif 'Face Velocity' in res:
            velocity = _cell_velocity_from_faces(geom, np.asarray(res['Face Velocity'][:], dtype=float), n)
        if velocity is None:
            logger.warning(f"No velocity output for area '{area}'; velocity raster will be skipped")

    if wse is None and min_elev is not None:
        wse = depth[:, :n] + min_elev[:n]

    keep = np.ones(n, dtype=bool)
    if min_elev is not None:
        keep &= np.isfinite(min_elev[:n])
    cell_ids = np.arange(n)[keep]

    data_vars = {'depth': (('time', 'cell'), depth[:, :n][:, keep])}
    if velocity is not None:
        data_vars['velocity'] = (('time', 'cell'), velocity[:, :n][:, keep])
    if wse is not None:
        data_vars['water_surface'] = (('time', 'cell'), wse[:, :n][:, keep])

    ds = xr.Dataset(
        data_vars=data_vars,
        coords={
            'time': hours,
            'cell': cell_ids,
            'x': ('cell', coords[:n, 0][keep]),
            'y': ('cell', coords[:n, 1][keep]),
        },
        attrs={'area': area, 'source': os.path.basename(hdf_path)},
    )
    logger.info(f"Read {ds.sizes['cell']} cells x {ds.sizes['time']} steps from area '{area}'")
    return ds


def _nanmax_and_argmax(arr: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    filled = np.where(np.isnan(arr), -np.inf, arr)
    idx = np.argmax(filled, axis=0)
    peak = np.take_along_axis(filled, idx[None, :], axis=0)[0]
    peak[np.isneginf(peak)] = np.nan
    return peak, idx


def step_lengths(hours: np.ndarray) -> np.ndarray:
    """Forward step lengths; the last step repeats the previous length."""
    hours = np.asarray(hours, dtype=float)
    if hours.size < 2:
        return np.zeros(hours.size)
    dt = np.diff(hours)
    return np.append(dt, dt[-1])


def compute_cell_metrics(ds: xr.Dataset, depth_threshold: float = DEFAULT_DEPTH_THRESHOLD) -> xr.Dataset:
    """
    Summarise a depth/velocity time series per cell.

    Parameters
    ----------
    ds : xr.Dataset
        Output of read_area_series
    depth_threshold : float
        Depth (m) above which a cell counts as inundated

    Returns
    -------
    xr.Dataset
        Per cell: 'max_depth', 'time_of_peak_hours', 'duration_hours',
        'inundated', plus 'max_velocity' and 'max_water_surface' when present
    """
    if depth_threshold < 0:
        raise ValueError(f"depth_threshold must be >= 0, got {depth_threshold}")

    hours = ds['time'].values
    depth = ds['depth'].values
    max_depth, peak_idx = _nanmax_and_argmax(depth)
    wet = np.nan_to_num(depth, nan=0.0) > depth_threshold
    duration = (wet * step_lengths(hours)[:, None]).sum(axis=0)

    data_vars = {
        'max_depth': ('cell', max_depth),
        'time_of_peak_hours': ('cell', hours[peak_idx] if hours.size else np.full(max_depth.shape, np.nan)),
        'duration_hours': ('cell', duration.astype(float)),
        'inundated': ('cell', (np.nan_to_num(max_depth, nan=0.0) > depth_threshold).astype(np.int8)),
    }
    if 'velocity' in ds:
        data_vars['max_velocity'] = ('cell', _nanmax_and_argmax(ds['velocity'].values)[0])
    if 'water_surface' in ds:
        data_vars['max_water_surface'] = ('cell', _nanmax_and_argmax(ds['water_surface'].values)[0])

    out = xr.Dataset(
        data_vars=data_vars,
        coords={'cell': ds['cell'].values, 'x': ('cell', ds['x'].values), 'y': ('cell', ds['y'].values)},
        attrs=dict(ds.attrs, depth_threshold=float(depth_threshold)),
    )
    n_wet = int(out['inundated'].sum())
    logger.info(f"{n_wet} of {out.sizes['cell']} cells inundated above {depth_threshold} m")
    return out


def mesh_spacing(x: np.ndarray, y: np.ndarray) -> float:
    """Median nearest-neighbour distance between cell centres."""
    pts = np.column_stack([x, y])
    if len(pts) < 2:
        raise ValueError("At least two cells are needed to estimate mesh spacing")
    dists, _ = cKDTree(pts).query(pts, k=2)
    spacing = float(np.median(dists[:, 1]))
    if spacing <= 0:
        raise ValueError("Cell centres overlap; cannot estimate mesh spacing")
    return spacing


def grid_from_cells(x: np.ndarray, y: np.ndarray, cell_size: Optional[float] = None) -> Tuple[Affine, Tuple[int, int]]:
    """
    North-up grid covering the cell centres.

    Returns
    -------
    (Affine, (height, width))
    """
    if cell_size is None:
        cell_size = mesh_spacing(x, y)
    minx, maxx = float(np.min(x)), float(np.max(x))
    miny, maxy = float(np.min(y)), float(np.max(y))
    width = int(np.ceil((maxx - minx) / cell_size)) + 1
    height = int(np.ceil((maxy - miny) / cell_size)) + 1
    transform = Affine(cell_size, 0.0, minx - cell_size / 2.0, 0.0, -cell_size, maxy + cell_size / 2.0)
    return transform, (height, width)


def pixel_centers(transform: Affine, shape: Tuple[int, int]) -> np.ndarray:
    """(height*width, 2) array of pixel-centre coordinates, row-major."""
    height, width = shape
    cols, rows = np.meshgrid(np.arange(width) + 0.5, np.arange(height) + 0.5)
    xs = transform.c + cols * transform.a + rows * transform.b
    ys = transform.f + cols * transform.d + rows * transform.e
    return np.column_stack([xs.ravel(), ys.ravel()])


def cells_to_grid(
    x: np.ndarray,
    y: np.ndarray,
    values: np.ndarray,
    transform: Affine,
    shape: Tuple[int, int],
    method: str = 'nearest',
    max_distance: Optional[float] = None
) -> np.ndarray:
    """
    Map cell-centre values onto a grid.

    Pixels farther than `max_distance` from any cell with a finite value are
    NaN; the default is 1.5 times the larger of mesh spacing and pixel size.
    """
    if method not in ('nearest', 'linear'):
        raise ValueError(f"Unknown interpolation method: {method}")
    values = np.asarray(values, dtype=float)
    valid = np.isfinite(values)
    out = np.full(shape[0] * shape[1], np.nan)
    if valid.sum() == 0:
        return out.reshape(shape)

    pts = np.column_stack([x, y])[valid]
    vals = values[valid]
    pix = pixel_centers(transform, shape)

    if max_distance is None:
        spacing = mesh_spacing(pts[:, 0], pts[:, 1]) if len(pts) > 1 else abs(transform.a)
        max_distance = 1.5 * max(spacing, abs(transform.a), abs(transform.e))

    dist, idx = cKDTree(pts).query(pix)
    if method == 'nearest' or len(pts) < 3:
        out = vals[idx]
    else:
        out = griddata(pts, vals, pix, method='linear')
        gaps = np.isnan(out)
        out[gaps] = vals[idx[gaps]]
    out = np.where(dist > max_distance, np.nan, out)
    return out.reshape(shape)


def write_geotiff(
    path: str,
    array: np.ndarray,
    transform: Affine,
    crs: Any = None,
    nodata: float = NODATA,
    dtype: str = 'float32'
) -> str:
    """Write a single-band GeoTIFF; NaN becomes `nodata`."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    data = np.asarray(array, dtype=float)
    data = np.where(np.isnan(data), nodata, data).astype(dtype)
    profile = {
        'driver': 'GTiff',
        'height': data.shape[0],
        'width': data.shape[1],
        'count': 1,
        'dtype': dtype,
        'crs': crs,
        'transform': transform,
        'nodata': nodata,
        'compress': 'deflate',
    }
    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(data, 1)
    return path


def _read_terrain(terrain: str) -> Tuple[np.ndarray, Affine, Any]:
    if not os.path.exists(terrain):
        raise FileNotFoundError(f"Terrain raster not found: {terrain}")
    with rasterio.open(terrain) as src:
        dem = src.read(1, masked=True).astype(float).filled(np.nan)
        return dem, src.transform, src.crs


def extract_scenario_rasters(
    hdf_path: str,
    output_dir: str,
    scenario_id: str,
    terrain: Optional[str] = None,
    cell_size: Optional[float] = None,
    depth_threshold: float = DEFAULT_DEPTH_THRESHOLD,
    method: str = 'nearest',
    max_distance: Optional[float] = None,
    area: Optional[str] = None
) -> Dict[str, str]:
    """
    Derive depth, velocity, duration and extent rasters for one scenario.

    Without terrain the grid is built from the mesh and depth is the cell
    maximum depth. With terrain the grid follows the terrain raster and
    depth is max(water surface - terrain, 0) inside inundated cells.

    Returns
    -------
    dict
        {'depth_max': path, 'velocity_max': path (when available),
         'duration': path, 'extent': path, 'cells': path}
    """
    ds = read_area_series(hdf_path, area=area)
    metrics = compute_cell_metrics(ds, depth_threshold=depth_threshold)
    x, y = metrics['x'].values, metrics['y'].values
    crs = read_projection(hdf_path)

    def to_grid(values):
        return cells_to_grid(x, y, values, transform, shape, method=method, max_distance=max_distance)

    if terrain:
        dem, transform, terrain_crs = _read_terrain(terrain)
        shape = dem.shape
        crs = terrain_crs or crs
        wet = to_grid(metrics['inundated'].values.astype(float))
        if 'max_water_surface' in metrics:
            wse = to_grid(metrics['max_water_surface'].values)
            depth = np.clip(wse - dem, 0.0, None)
            depth = np.where(np.isnan(wet), np.nan, np.where(wet > 0.5, depth, 0.0))
        else:
            logger.warning("No water surface available; depth raster uses cell depths on the terrain grid")
            depth = to_grid(metrics['max_depth'].values)
        depth = np.where(np.isnan(dem), np.nan, depth)
    else:
        transform, shape = grid_from_cells(x, y, cell_size)
        depth = to_grid(metrics['max_depth'].values)

    inside = ~np.isnan(depth)
    flooded = np.nan_to_num(depth, nan=0.0) > depth_threshold
    duration = np.where(flooded, to_grid(metrics['duration_hours'].values), np.where(inside, 0.0, np.nan))
    extent = np.where(inside, flooded.astype(np.uint8), EXTENT_NODATA).astype(np.uint8)

    os.makedirs(output_dir, exist_ok=True)
    prefix = os.path.join(output_dir, scenario_id)
    paths = {
        'depth_max': write_geotiff(f"{prefix}_depth_max.tif", depth, transform, crs),
        'duration': write_geotiff(f"{prefix}_duration.tif", duration, transform, crs),
    }
    if 'max_velocity' in metrics:
        velocity = np.where(inside, to_grid(metrics['max_velocity'].values), np.nan)
        velocity = np.where(flooded, velocity, np.where(inside, 0.0, np.nan))
        paths['velocity_max'] = write_geotiff(f"{prefix}_velocity_max.tif", velocity, transform, crs)
    paths['extent'] = write_geotiff(f"{prefix}_extent.tif", extent, transform, crs,
                                    nodata=EXTENT_NODATA, dtype='uint8')

    cells_path = f"{prefix}_cells.nc"
    metrics.to_netcdf(cells_path)
    paths['cells'] = cells_path

    logger.info(f"Extracted {len(paths)} outputs for {scenario_id}: "
                f"max depth {np.nanmax(depth) if inside.any() else float('nan'):.2f} m, "
                f"{int(flooded.sum())} flooded pixels")
    return paths


def _extract_one(row: Dict[str, Any], output_dir: str, options: Dict[str, Any]) -> Dict[str, Any]:
    """
    Top-level helper for ProcessPoolExecutor. Never raises.
    """
    sid = row['scenario_id']
    try:
        paths = extract_scenario_rasters(row['results_file'], output_dir, sid, **options)
        return {'scenario_id': sid, 'return_period': row.get('return_period'), 'paths': paths,
                'message': f"[OK]   {sid} → {paths['depth_max']}"}
    except Exception as e:
        logger.error(f"Error extracting rasters for {sid}: {type(e).__name__}: {e}")
        return {'scenario_id': sid, 'return_period': row.get('return_period'), 'paths': None,
                'message': f"[ERR]  {sid}: {type(e).__name__}: {e}"}


def extract_batch(
    status: pd.DataFrame,
    output_dir: str,
    workers: int = 1,
    **options
) -> Dict[str, Dict[str, str]]:
    """
    Extract rasters for every scenario whose run succeeded.

    Parameters
    ----------
    status : pd.DataFrame
        Batch status table (executor.run_batch / load_batch_status)
    output_dir : str
        Raster output folder
    workers : int
        Parallel extraction processes (0 = all cores)
    **options
        Passed to extract_scenario_rasters

    Returns
    -------
    dict
        scenario_id -> {kind: path}; also written to 'raster_index.csv'
    """
    done = status[status['state'].isin(['ok', 'skipped'])]
    skipped = sorted(set(status['scenario_id']) - set(done['scenario_id']))
    for sid in skipped:
        logger.warning(f"Skipping extraction for {sid}: run did not complete")
    if done.empty:
        raise ValueError("No completed scenarios to extract")

    rows = done.to_dict('records')
    func = partial(_extract_one, output_dir=output_dir, options=options)
    results = process_in_parallel(rows, func, max_workers=(workers if workers and workers > 0 else None),
                                  desc="Extracting rasters")

    extracted = {}
    index_rows = []
    for i, res in enumerate(results):
        print(f"[{i+1}/{len(results)}] {res['message']}")
        if res['paths'] is None:
            continue
        extracted[res['scenario_id']] = res['paths']
        for kind, path in res['paths'].items():
            index_rows.append({'scenario_id': res['scenario_id'], 'return_period': res['return_period'],
                               'kind': kind, 'path': path})

    logger.info(f"Extraction complete: {len(extracted)} succeeded, "
                f"{len(results) - len(extracted)} failed, {len(skipped)} skipped")
    os.makedirs(output_dir, exist_ok=True)
    pd.DataFrame(index_rows, columns=['scenario_id', 'return_period', 'kind', 'path']).to_csv(
        os.path.join(output_dir, RASTER_INDEX_NAME), index=False)
    return extracted


def load_raster_index(output_dir: str) -> pd.DataFrame:
    """Read 'raster_index.csv' written by extract_batch."""
    path = os.path.join(output_dir, RASTER_INDEX_NAME)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Raster index not found: {path}")
    return pd.read_csv(path)
