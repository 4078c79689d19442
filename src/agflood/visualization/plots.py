# src/agflood/visualization/plots.py
"""
Module: plots.py
Responsibilities:
- Plot the design hydrographs of a scenario set
- Map a result GeoTIFF with optional field outlines
- Plot per-field statistics against return period
"""
import logging
import os
from typing import List, Optional, Sequence

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import rasterio
import seaborn as sns
from rasterio.plot import plotting_extent

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

FIG_SIZES = {
    'small': (6, 4),
    'medium': (8, 6),
    'wide': (12, 6),
    'map': (10, 8)
}

# Default colormap per raster kind, keyed on the filename suffix
RASTER_CMAPS = {
    'depth_max': 'Blues',
    'velocity_max': 'magma_r',
    'duration': 'viridis',
    'extent': 'Blues',
}


def save_figure(fig, filename, dpi=150, bbox_inches='tight', **kwargs):
    """
    Save and close a figure, adding .png when no extension is given.
    """
    if not os.path.splitext(filename)[1]:
        filename = f"{filename}.png"
    os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
    fig.savefig(filename, dpi=dpi, bbox_inches=bbox_inches, **kwargs)
    plt.close(fig)
    logger.info(f"Figure saved to {filename}")
    return filename


def plot_hydrographs(scenarios: Sequence, output_path: str) -> str:
    """
    Plot every scenario hydrograph on one set of axes.

    Parameters
    ----------
    scenarios : sequence of Scenario
        Scenarios with `hydrograph` frames (time_hours, discharge_cms)
    output_path : str
        Figure path

    Returns
    -------
    str
        Path of the saved figure
    """
    if not scenarios:
        raise ValueError("No scenarios to plot")
    fig, ax = plt.subplots(figsize=FIG_SIZES['medium'])
    colors = sns.color_palette('viridis', len(scenarios))
    for color, sc in zip(colors, sorted(scenarios, key=lambda s: s.return_period)):
        hydro = sc.hydrograph
        ax.plot(hydro['time_hours'], hydro['discharge_cms'], color=color,
                label=f"{sc.scenario_id} ({sc.peak_discharge:.0f} m³/s)")
    ax.set_xlabel('Time (hours)')
    ax.set_ylabel('Discharge (m³/s)')
    ax.set_title('Design hydrographs')
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=9)
    return save_figure(fig, output_path)


def _raster_kind(path: str) -> Optional[str]:
    stem = os.path.splitext(os.path.basename(path))[0]
    for kind in RASTER_CMAPS:
        if stem.endswith(kind):
            return kind
    return None


def plot_raster(
    raster_path: str,
    output_path: str,
    fields=None,
    title: Optional[str] = None,
    cmap: Optional[str] = None
) -> str:
    """
    Map a single-band raster, nodata masked, with field outlines on top.

    `fields` is a GeoDataFrame; it is reprojected to the raster CRS when
    both carry one.
    """
    if not os.path.exists(raster_path):
        raise FileNotFoundError(f"Raster not found: {raster_path}")
    with rasterio.open(raster_path) as src:
        data = src.read(1, masked=True)
        extent = plotting_extent(src)
        crs = src.crs

    kind = _raster_kind(raster_path)
    cmap = cmap or RASTER_CMAPS.get(kind, 'viridis')
    fig, ax = plt.subplots(figsize=FIG_SIZES['map'])
    image = ax.imshow(data, extent=extent, cmap=cmap, interpolation='nearest')
    fig.colorbar(image, ax=ax, shrink=0.7, label=kind or 'value')

    if fields is not None and len(fields):
        outlines = fields.to_crs(crs) if (crs is not None and fields.crs is not None) else fields
        outlines.boundary.plot(ax=ax, color='black', linewidth=0.6)

    ax.set_title(title or os.path.basename(raster_path))
    ax.set_xlabel('Easting')
    ax.set_ylabel('Northing')
    return save_figure(fig, output_path)


def plot_field_statistic(
    table: pd.DataFrame,
    column: str,
    output_path: str,
    field_ids: Optional[List] = None,
    id_field: str = 'field_id'
) -> str:
    """
    Plot a statistic against return period, one line per field.

    Return period is shown on a log axis.
    """
    if column not in table.columns:
        raise KeyError(f"Column '{column}' not in table")
    data = table if field_ids is None else table[table[id_field].isin(field_ids)]
    if data.empty:
        raise ValueError("No rows to plot")

    fig, ax = plt.subplots(figsize=FIG_SIZES['medium'])
    for fid, group in data.groupby(id_field):
        g = group.sort_values('return_period')
        ax.plot(g['return_period'], g[column], marker='o', label=str(fid))
    ax.set_xscale('log')
    ax.set_xlabel('Return period (years)')
    ax.set_ylabel(column)
    ax.grid(True, which='both', alpha=0.3)
    if data[id_field].nunique() <= 15:
        ax.legend(title=id_field, fontsize=8)
    return save_figure(fig, output_path)


def plot_statistic_distribution(table: pd.DataFrame, column: str, output_path: str) -> str:
    """Box plot of a statistic across fields for each return period."""
    if column not in table.columns:
        raise KeyError(f"Column '{column}' not in table")
    data = table[['return_period', column]].dropna()
    if data.empty:
        raise ValueError(f"No values in column '{column}'")
    order = np.sort(data['return_period'].unique())
    fig, ax = plt.subplots(figsize=FIG_SIZES['wide'])
    sns.boxplot(x='return_period', y=column, data=data, order=order, ax=ax, color='#6BAED6')
    sns.stripplot(x='return_period', y=column, data=data, order=order, ax=ax,
                  color='black', size=3, alpha=0.5)
    ax.set_xlabel('Return period (years)')
    ax.set_ylabel(column)
    return save_figure(fig, output_path)
