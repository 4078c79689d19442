"""
Visualization package for flood scenario results.

Modules:
- plots: scenario hydrographs, result rasters and per-field statistics
"""

from agflood.visualization.plots import (
    save_figure,
    plot_hydrographs,
    plot_raster,
    plot_field_statistic,
    plot_statistic_distribution
)
