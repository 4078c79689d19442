# src/agflood/scenarios.py
"""
Module: scenarios.py
Responsibilities:
- Load inflow hydrographs (discharge in m3/s vs time in hours)
- Fit Gumbel / GEV distributions to annual maximum discharge
- Compute design peak discharge for each return period
- Scale a base hydrograph shape to a design peak
- Enumerate return-period scenarios and persist them with a JSON manifest
"""
import glob
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union, Any

import numpy as np
import pandas as pd
from scipy.stats import genextreme, gumbel_r, kstest

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
MIN_ANNUAL_PEAKS = 5
TIME_ALIASES = ['time_hours', 'time', 'hours', 'hour', 't', 'time_h', 'datetime', 'date', 'timestamp']
DISCHARGE_ALIASES = ['discharge_cms', 'discharge', 'flow', 'q', 'flow_cms', 'discharge_m3s']
MANIFEST_NAME = 'scenarios.json'
_DISTRIBUTIONS = {
    'gumbel': gumbel_r,
    'gev': genextreme,
}


@dataclass
class Scenario:
    """One return-period flood scenario and its inflow hydrograph."""
    scenario_id: str
    return_period: float
    hydrograph: pd.DataFrame = field(repr=False)
    peak_discharge: float
    source: str = 'scaled'

    @property
    def annual_exceedance_probability(self) -> float:
        return 1.0 / self.return_period

    @property
    def duration_hours(self) -> float:
        return float(self.hydrograph['time_hours'].iloc[-1])


def _match_column(columns: Sequence[str], aliases: Sequence[str]) -> Optional[str]:
    lookup = {str(c).strip().lower(): c for c in columns}
    for alias in aliases:
        if alias in lookup:
            return lookup[alias]
    return None


def validate_hydrograph(df: pd.DataFrame) -> None:
    """
    Check a normalised hydrograph.

    Raises
    ------
    ValueError
        If there are fewer than two points, times do not increase, or any
        discharge is negative or not finite
    """
    if len(df) < 2:
        raise ValueError(f"Hydrograph needs at least 2 points, got {len(df)}")
    t = df['time_hours'].to_numpy(dtype=float)
    q = df['discharge_cms'].to_numpy(dtype=float)
    if not np.isfinite(t).all():
        raise ValueError("Hydrograph times contain NaN or Inf values")
    if np.any(np.diff(t) <= 0):
        raise ValueError("Hydrograph times must be strictly increasing")
    if not np.isfinite(q).all():
        raise ValueError("Hydrograph discharge contains NaN or Inf values")
    if np.any(q < 0):
        raise ValueError("Hydrograph discharge must be non-negative")


def normalize_hydrograph(df: pd.DataFrame) -> pd.DataFrame:
    """
    Sort by time, drop duplicate times and shift the record to start at 0 h.

    Parameters
    ----------
    df : pd.DataFrame
        Columns 'time_hours' and 'discharge_cms'

    Returns
    -------
    pd.DataFrame
        Clean hydrograph with a fresh RangeIndex
    """
    out = df[['time_hours', 'discharge_cms']].astype(float)
    out = out.sort_values('time_hours', kind='mergesort')
    n_before = len(out)
    out = out.drop_duplicates(subset='time_hours', keep='first')
    if len(out) < n_before:
        logger.info(f"Dropped {n_before - len(out)} duplicate hydrograph times")
    if len(out):
        out['time_hours'] = out['time_hours'] - out['time_hours'].iloc[0]
    out = out.reset_index(drop=True)
    validate_hydrograph(out)
    return out


def _time_to_hours(times: pd.Series) -> pd.Series:
    """Numeric hours as given, or timestamps as hours since the first one."""
    hours = pd.to_numeric(times, errors='coerce')
    if hours.notna().any() or times.isna().all():
        return hours
    stamps = pd.to_datetime(times, errors='coerce')
    if stamps.isna().all():
        return hours
    return (stamps - stamps.min()).dt.total_seconds() / 3600.0


def load_hydrograph(path: str) -> pd.DataFrame:
    """
    Load a discharge time series from CSV or whitespace-delimited text.

    Recognised headers are time ('time', 'hours', 'datetime', ...) and
    discharge ('discharge', 'flow', 'q', ...); otherwise the first two
    numeric columns are used. A time column of timestamps becomes hours
    since the first timestamp.

    Parameters
    ----------
    path : str
        Hydrograph file

    Returns
    -------
    pd.DataFrame
        Columns 'time_hours' and 'discharge_cms', first time at 0

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    ValueError
        If the file cannot be parsed or the series is invalid
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Hydrograph file not found: {path}")

    try:
        if path.lower().endswith('.csv'):
            df = pd.read_csv(path)
        else:
            df = pd.read_csv(path, sep=r'\s+', engine='python')
    except pd.errors.EmptyDataError:
        raise ValueError(f"Hydrograph file is empty: {path}")
    except pd.errors.ParserError as e:
        raise ValueError(f"Error parsing hydrograph file {path}: {e}")

    t_col = _match_column(df.columns, TIME_ALIASES)
    q_col = _match_column(df.columns, DISCHARGE_ALIASES)
    if t_col is None or q_col is None:
        if pd.to_numeric(pd.Series(df.columns, dtype=str), errors='coerce').notna().all():
            # headerless file: the header row is data
            sep = ',' if path.lower().endswith('.csv') else r'\s+'
            df = pd.read_csv(path, header=None, sep=sep, engine='python')
        numeric = df.apply(pd.to_numeric, errors='coerce').dropna(axis=1, how='all')
        if numeric.shape[1] < 2:
            raise ValueError(f"Hydrograph file needs time and discharge columns: {path}")
        t_col, q_col = numeric.columns[0], numeric.columns[1]
        logger.warning(f"No recognised headers in {os.path.basename(path)}; "
                       f"using columns '{t_col}' (time) and '{q_col}' (discharge)")

    hydro = pd.DataFrame({
        'time_hours': _time_to_hours(df[t_col]),
        'discharge_cms': pd.to_numeric(df[q_col], errors='coerce'),
    }).dropna(how='all')

    hydro = normalize_hydrograph(hydro)
    logger.info(f"Loaded hydrograph {os.path.basename(path)}: {len(hydro)} points, "
                f"peak {hydro['discharge_cms'].max():.2f} m3/s over {hydro['time_hours'].iloc[-1]:.1f} h")
    return hydro


def load_annual_peaks(path: str) -> np.ndarray:
    """
    Load annual maximum discharge from a CSV with a 'peak'/'discharge' column
    (or a single numeric column).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Annual peaks file not found: {path}")
    df = pd.read_csv(path)
    col = _match_column(df.columns, ['peak', 'peak_discharge', 'annual_peak'] + DISCHARGE_ALIASES)
    if col is None:
        numeric = df.select_dtypes(include=[np.number])
        if numeric.empty:
            raise ValueError(f"No numeric peak discharge column in {path}")
        col = numeric.columns[-1]
    return pd.to_numeric(df[col], errors='coerce').to_numpy(dtype=float)


def fit_annual_peaks(peaks: Union[Sequence[float], np.ndarray], distribution: str = 'gumbel') -> Dict[str, Any]:
    """
    Fit an extreme value distribution to annual maximum discharge.

    Parameters
    ----------
    peaks : array-like
        Annual maxima (m3/s). NaNs are ignored.
    distribution : str
        'gumbel' (scipy gumbel_r) or 'gev' (scipy genextreme)

    Returns
    -------
    dict
        {
          'distribution': name,
          'params': [shape?, loc, scale],
          'n_years': n,
          'diagnostics': {'aic': aic, 'ks_pvalue': p}
        }

    Raises
    ------
    ValueError
        If the distribution is unknown or the sample is too small / invalid
    """
    if distribution not in _DISTRIBUTIONS:
        raise ValueError(f"Unknown distribution: {distribution}. Valid: {', '.join(_DISTRIBUTIONS)}")

    arr = np.asarray(peaks, dtype=float).ravel()
    arr = arr[~np.isnan(arr)]
    if arr.size < MIN_ANNUAL_PEAKS:
        raise ValueError(f"Insufficient annual peaks ({arr.size}), minimum required: {MIN_ANNUAL_PEAKS}")
    if not np.isfinite(arr).all() or np.any(arr <= 0):
        raise ValueError("Annual peaks must be finite and positive")
    if np.std(arr) == 0:
        raise ValueError("Annual peaks have zero variance (all values are identical)")

    dist = _DISTRIBUTIONS[distribution]
    logger.info(f"Fitting {distribution} distribution to {arr.size} annual peaks")
    params = dist.fit(arr)

    log_like = float(np.sum(dist.logpdf(arr, *params)))
    k = len(params)
    aic = 2 * k - 2 * log_like
    ks_pvalue = float(kstest(arr, dist.cdf, args=params).pvalue)

    return {
        'distribution': distribution,
        'params': [float(p) for p in params],
        'n_years': int(arr.size),
        'diagnostics': {
            'log_likelihood': log_like,
            'aic': float(aic),
            'ks_pvalue': ks_pvalue,
        },
    }


def design_discharge(fit: Dict[str, Any], return_periods: Sequence[float]) -> pd.DataFrame:
    """
    Compute design peak discharge for each return period.

    Parameters
    ----------
    fit : dict
        Output of fit_annual_peaks
    return_periods : list of float
        Return periods in years, each > 1

    Returns
    -------
    pd.DataFrame
        Columns ['return_period', 'annual_exceedance_probability', 'peak_discharge']
    """
    periods = np.asarray(return_periods, dtype=float)
    if periods.size == 0:
        raise ValueError("At least one return period is required")
    if not np.isfinite(periods).all() or np.any(periods <= 1):
        raise ValueError("All return periods must be finite and greater than 1 year")

    dist = _DISTRIBUTIONS[fit['distribution']]
    aep = 1.0 / periods
    peaks = dist.ppf(1.0 - aep, *fit['params'])

    return pd.DataFrame({
        'return_period': periods,
        'annual_exceedance_probability': aep,
        'peak_discharge': peaks.astype(float),
    })


def scale_hydrograph(base: pd.DataFrame, peak: float) -> pd.DataFrame:
    """
    Scale a hydrograph so its maximum discharge equals `peak`.

    Timing and shape are unchanged.
    """
    base_peak = float(base['discharge_cms'].max())
    if base_peak <= 0:
        raise ValueError("Base hydrograph has zero peak discharge; cannot scale")
    if not np.isfinite(peak) or peak < 0:
        raise ValueError(f"Target peak must be finite and non-negative, got {peak}")
    scaled = base.copy()
    scaled['discharge_cms'] = base['discharge_cms'] * (peak / base_peak)
    return scaled


def scenario_id_for(return_period: float) -> str:
    """'RP100' for 100, 'RP2_5' for 2.5."""
    rp = float(return_period)
    if rp.is_integer():
        return f"RP{int(rp)}"
    return "RP" + f"{rp:g}".replace('.', '_')


def find_hydrograph_files(hydrograph_dir: str) -> Dict[float, str]:
    """
    Map return period to file for names like 'inflow_RP100.csv' or 'rp2_5.txt'.
    """
    if not os.path.isdir(hydrograph_dir):
        raise NotADirectoryError(f"Hydrograph directory not found: {hydrograph_dir}")
    pattern = re.compile(r'rp[_-]?(\d+(?:[._]\d+)?)', re.IGNORECASE)
    found = {}
    for path in sorted(glob.glob(os.path.join(hydrograph_dir, '*'))):
        if not path.lower().endswith(('.csv', '.txt', '.dat')):
            continue
        m = pattern.search(os.path.basename(path))
        if m:
            rp = float(m.group(1).replace('_', '.'))
            if rp in found:
                logger.warning(f"Multiple hydrographs for RP{rp:g}; keeping {os.path.basename(found[rp])}")
                continue
            found[rp] = path
    return found


def build_scenarios(
    return_periods: Sequence[float],
    base_hydrograph: Optional[pd.DataFrame] = None,
    design: Optional[pd.DataFrame] = None,
    hydrograph_dir: Optional[str] = None
) -> List[Scenario]:
    """
    Enumerate one scenario per return period.

    A hydrograph file in `hydrograph_dir` matching the return period wins;
    otherwise `base_hydrograph` is scaled to the design peak from `design`.

    Parameters
    ----------
    return_periods : list of float
        Return periods in years (duplicates collapsed)
    base_hydrograph : pd.DataFrame, optional
        Shape used for scaled scenarios
    design : pd.DataFrame, optional
        Output of design_discharge
    hydrograph_dir : str, optional
        Directory of per-return-period hydrograph files

    Returns
    -------
    list[Scenario]
        Sorted by return period

    Raises
    ------
    ValueError
        If a return period has neither a file nor a design peak + base shape
    """
    periods = sorted({float(rp) for rp in return_periods})
    if not periods:
        raise ValueError("At least one return period is required")
    if any(rp <= 1 for rp in periods):
        raise ValueError("All return periods must be greater than 1 year")

    files = find_hydrograph_files(hydrograph_dir) if hydrograph_dir else {}
    design_lookup = {}
    if design is not None:
        design_lookup = dict(zip(design['return_period'].astype(float), design['peak_discharge'].astype(float)))

    scenarios = []
    for rp in periods:
        sid = scenario_id_for(rp)
        if rp in files:
            hydro = load_hydrograph(files[rp])
            source = files[rp]
        elif base_hydrograph is not None and rp in design_lookup:
            hydro = scale_hydrograph(base_hydrograph, design_lookup[rp])
            source = 'scaled'
        else:
            raise ValueError(f"No hydrograph source for return period {rp:g} "
                             f"(provide a hydrograph file or a base hydrograph with annual peaks)")
        peak = float(hydro['discharge_cms'].max())
        scenarios.append(Scenario(sid, rp, hydro, peak, source))
        logger.info(f"Scenario {sid}: peak {peak:.2f} m3/s ({source})")

    return scenarios


def write_scenarios(scenarios: Sequence[Scenario], out_dir: str) -> str:
    """
    Save each hydrograph as '<id>.csv' and a 'scenarios.json' manifest.

    Returns
    -------
    str
        Path of the manifest
    """
    os.makedirs(out_dir, exist_ok=True)
    entries = []
    for sc in scenarios:
        csv_name = f"{sc.scenario_id}.csv"
        sc.hydrograph.to_csv(os.path.join(out_dir, csv_name), index=False)
        entries.append({
            'scenario_id': sc.scenario_id,
            'return_period': sc.return_period,
            'annual_exceedance_probability': sc.annual_exceedance_probability,
            'peak_discharge': sc.peak_discharge,
            'duration_hours': sc.duration_hours,
            'source': sc.source,
            'hydrograph': csv_name,
        })
    manifest = os.path.join(out_dir, MANIFEST_NAME)
    with open(manifest, 'w') as f:
        json.dump({'scenarios': entries}, f, indent=2)
    logger.info(f"Wrote {len(entries)} scenarios to {manifest}")
    return manifest


def read_scenarios(out_dir: str) -> List[Scenario]:
    """Load scenarios written by write_scenarios."""
    manifest = os.path.join(out_dir, MANIFEST_NAME)
    if not os.path.exists(manifest):
        raise FileNotFoundError(f"Scenario manifest not found: {manifest}")
    with open(manifest, 'r') as f:
        entries = json.load(f).get('scenarios', [])
    scenarios = []
    for entry in entries:
        hydro = load_hydrograph(os.path.join(out_dir, entry['hydrograph']))
        scenarios.append(Scenario(
            entry['scenario_id'],
            float(entry['return_period']),
            hydro,
            float(entry['peak_discharge']),
            entry.get('source', 'scaled'),
        ))
    return sorted(scenarios, key=lambda s: s.return_period)
