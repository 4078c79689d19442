# src/agflood/zonal.py
"""
Module: zonal.py
Responsibilities:
- Load agricultural field polygons and check their identifiers
- Compute zonal statistics of scenario rasters per field (rasterstats)
- Assemble the per-field, per-return-period statistics table
- Attach static field attributes (roughness, elevation) and external yields
- Annualise a statistic over exceedance probability
- Write the table as CSV, Parquet or GeoPackage
"""
import logging
import os
from typing import Dict, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterstats import zonal_stats

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_STATS = ('mean', 'max')
# raster kind -> column prefix
RASTER_PREFIXES = {
    'depth_max': 'depth',
    'velocity_max': 'velocity',
    'duration': 'duration',
}


def load_fields(path: str, id_field: str = 'field_id') -> gpd.GeoDataFrame:
    """
    Load field polygons.

    Parameters
    ----------
    path : str
        Any vector format geopandas reads (GeoPackage, Shapefile, GeoJSON)
    id_field : str
        Column holding the field identifier

    Returns
    -------
    gpd.GeoDataFrame
        Fields with non-null, unique identifiers

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    KeyError
        If the identifier column is missing
    ValueError
        If the layer is empty or identifiers are null or duplicated
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Field layer not found: {path}")
    fields = gpd.read_file(path)
    if fields.empty:
        raise ValueError(f"Field layer contains no features: {path}")
    if id_field not in fields.columns:
        raise KeyError(f"Field layer missing '{id_field}' column (columns: {', '.join(map(str, fields.columns))})")
    if fields[id_field].isna().any():
        raise ValueError(f"Field layer has {int(fields[id_field].isna().sum())} features without '{id_field}'")
    dupes = fields[id_field][fields[id_field].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate field identifiers: {dupes[:10]}")

    empty = fields.geometry.isna() | fields.geometry.is_empty
    if empty.any():
        logger.warning(f"Dropping {int(empty.sum())} fields without geometry")
        fields = fields[~empty]

    logger.info(f"Loaded {len(fields)} fields from {os.path.basename(path)}")
    return fields.reset_index(drop=True)


def _align_crs(fields: gpd.GeoDataFrame, raster_path: str) -> gpd.GeoDataFrame:
    with rasterio.open(raster_path) as src:
        raster_crs = src.crs
    if raster_crs is None or fields.crs is None:
        if raster_crs is not None or fields.crs is not None:
            logger.warning(f"CRS missing on fields or {os.path.basename(raster_path)}; assuming they match")
        return fields
    if fields.crs != raster_crs:
        return fields.to_crs(raster_crs)
    return fields


def zonal_summary(
    fields: gpd.GeoDataFrame,
    raster_path: str,
    stats: Sequence[str] = DEFAULT_STATS,
    prefix: str = 'value',
    id_field: str = 'field_id',
    all_touched: bool = False
) -> pd.DataFrame:
    """
    Zonal statistics of one raster over every field.

    Returns
    -------
    pd.DataFrame
        `id_field` plus '<prefix>_<stat>' columns; NaN where a field has no
        valid pixels
    """
    if not os.path.exists(raster_path):
        raise FileNotFoundError(f"Raster not found: {raster_path}")
    aligned = _align_crs(fields, raster_path)
    records = zonal_stats(aligned.geometry, raster_path, stats=list(stats), all_touched=all_touched)
    df = pd.DataFrame(records, columns=list(stats)).astype(float)
    df.columns = [f"{prefix}_{s}" for s in df.columns]
    df.insert(0, id_field, fields[id_field].values)
    return df


def inundated_fraction(
    fields: gpd.GeoDataFrame,
    extent_path: str,
    id_field: str = 'field_id',
    all_touched: bool = False
) -> pd.DataFrame:
    """
    Share of each field's valid pixels flagged as flooded in an extent raster.
    """
    aligned = _align_crs(fields, extent_path)
    counts = zonal_stats(aligned.geometry, extent_path, categorical=True, all_touched=all_touched)
    fractions = []
    for c in counts:
        wet = c.get(1, 0)
        total = wet + c.get(0, 0)
        fractions.append(wet / total if total else np.nan)
    return pd.DataFrame({id_field: fields[id_field].values, 'inundated_fraction': fractions})


def aggregate_scenario(
    fields: gpd.GeoDataFrame,
    rasters: Dict[str, str],
    scenario_id: str,
    return_period: float,
    stats: Sequence[str] = DEFAULT_STATS,
    id_field: str = 'field_id',
    all_touched: bool = False
) -> pd.DataFrame:
    """
    One row per field for one scenario.

    Parameters
    ----------
    rasters : dict
        Raster kind ('depth_max', 'velocity_max', 'duration', 'extent') -> path

    Returns
    -------
    pd.DataFrame
        id_field, scenario_id, return_period, annual_exceedance_probability,
        depth_*, velocity_*, duration_*, inundated_fraction
    """
    table = pd.DataFrame({id_field: fields[id_field].values})
    table['scenario_id'] = scenario_id
    table['return_period'] = float(return_period)
    table['annual_exceedance_probability'] = 1.0 / float(return_period)

    for kind, prefix in RASTER_PREFIXES.items():
        if kind in rasters:
            summary = zonal_summary(fields, rasters[kind], stats, prefix, id_field, all_touched)
            table = table.merge(summary, on=id_field, how='left')
    if 'extent' in rasters:
        table = table.merge(inundated_fraction(fields, rasters['extent'], id_field, all_touched),
                            on=id_field, how='left')

    logger.info(f"Aggregated {scenario_id} over {len(table)} fields")
    return table


def aggregate_batch(
    fields: gpd.GeoDataFrame,
    raster_index: pd.DataFrame,
    stats: Sequence[str] = DEFAULT_STATS,
    id_field: str = 'field_id',
    all_touched: bool = False
) -> pd.DataFrame:
    """
    Per-field statistics for every scenario listed in a raster index.

    Parameters
    ----------
    raster_index : pd.DataFrame
        Columns scenario_id, return_period, kind, path (results.extract_batch)

    Returns
    -------
    pd.DataFrame
        Long table sorted by field then return period
    """
    required = {'scenario_id', 'return_period', 'kind', 'path'}
    missing = required - set(raster_index.columns)
    if missing:
        raise KeyError(f"Raster index missing columns: {', '.join(sorted(missing))}")
    if raster_index.empty:
        raise ValueError("Raster index is empty")

    tables = []
    for (sid, rp), group in raster_index.groupby(['scenario_id', 'return_period'], sort=False):
        rasters = dict(zip(group['kind'], group['path']))
        tables.append(aggregate_scenario(fields, rasters, sid, rp, stats, id_field, all_touched))

    table = pd.concat(tables, ignore_index=True)
    return table.sort_values([id_field, 'return_period'], kind='mergesort').reset_index(drop=True)


def add_static_attributes(
    table: pd.DataFrame,
    fields: gpd.GeoDataFrame,
    static_rasters: Dict[str, str],
    id_field: str = 'field_id'
) -> pd.DataFrame:
    """Add '<name>_mean' columns from rasters that do not vary by scenario."""
    for name, path in (static_rasters or {}).items():
        summary = zonal_summary(fields, path, ['mean'], name, id_field)
        table = table.merge(summary, on=id_field, how='left')
        logger.info(f"Added static attribute {name}_mean from {os.path.basename(path)}")
    return table


def merge_yields(table: pd.DataFrame, yields_path: str, id_field: str = 'field_id') -> pd.DataFrame:
    """
    Join externally modelled yields on field id (and return period when given).

    Raises
    ------
    FileNotFoundError
        If the yield table does not exist
    KeyError
        If it lacks the field identifier column
    """
    if not os.path.exists(yields_path):
        raise FileNotFoundError(f"Yield table not found: {yields_path}")
    yields = pd.read_csv(yields_path)
    if id_field not in yields.columns:
        raise KeyError(f"Yield table missing '{id_field}' column")

    keys = [id_field]
    if 'return_period' in yields.columns:
        yields['return_period'] = yields['return_period'].astype(float)
        keys.append('return_period')
    clash = [c for c in yields.columns if c in table.columns and c not in keys]
    if clash:
        yields = yields.rename(columns={c: f"{c}_yield" for c in clash})

    yields[id_field] = yields[id_field].astype(table[id_field].dtype)
    merged = table.merge(yields, on=keys, how='left')
    n_missing = int(merged[[c for c in yields.columns if c not in keys]].isna().all(axis=1).sum())
    if n_missing:
        logger.warning(f"{n_missing} rows have no matching yield record")
    return merged


def expected_annual_value(table: pd.DataFrame, column: str, id_field: str = 'field_id') -> pd.DataFrame:
    """
    Integrate a statistic over annual exceedance probability per field.

    Uses the trapezoidal rule between the modelled probabilities; missing
    values count as zero unless the field has no values at all.

    Returns
    -------
    pd.DataFrame
        id_field and 'ea_<column>'
    """
    if column not in table.columns:
        raise KeyError(f"Column '{column}' not in table")
    rows = []
    for fid, group in table.groupby(id_field, sort=True):
        g = group.sort_values('annual_exceedance_probability')
        p = g['annual_exceedance_probability'].to_numpy(dtype=float)
        v = g[column].to_numpy(dtype=float)
        if np.isnan(v).all() or len(v) < 2:
            value = np.nan
        else:
            v = np.nan_to_num(v, nan=0.0)
            value = float(np.sum(np.diff(p) * (v[1:] + v[:-1]) / 2.0))
        rows.append({id_field: fid, f"ea_{column}": value})
    return pd.DataFrame(rows)


def write_table(
    table: pd.DataFrame,
    path: str,
    fields: Optional[gpd.GeoDataFrame] = None,
    id_field: str = 'field_id'
) -> str:
    """
    Write the statistics table by extension: .csv, .parquet or .gpkg.

    GeoPackage output joins field geometry and requires `fields`.
    """
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    ext = os.path.splitext(path)[1].lower()
    if ext == '.csv':
        table.to_csv(path, index=False)
    elif ext == '.parquet':
        table.to_parquet(path, index=False)
    elif ext == '.gpkg':
        if fields is None:
            raise ValueError("GeoPackage output needs the field polygons")
        geo = fields[[id_field, 'geometry']].merge(table, on=id_field, how='right')
        gpd.GeoDataFrame(geo, geometry='geometry', crs=fields.crs).to_file(path, layer='field_stats', driver='GPKG')
    else:
        raise ValueError(f"Unsupported output format '{ext}' (use .csv, .parquet or .gpkg)")
    logger.info(f"Saved {len(table)} rows to {path}")
    return path
