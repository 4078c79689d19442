# src/agflood/config.py
"""
Module: config.py
Responsibilities:
- Hold default run settings for the scenario batch pipeline
- Load a JSON run configuration and merge it over the defaults
- Resolve relative paths against the configuration file location
- Apply command-line overrides
- Validate settings and report every problem at once
"""
import copy
import json
import logging
import os
from typing import Any, Dict, List, Optional

from agflood.ras_project import INTERVALS

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
DEFAULT_RETURN_PERIODS = [2, 5, 10, 25, 50, 100]
VALID_DISTRIBUTIONS = ('gumbel', 'gev')
VALID_ENGINES = ('hecras', 'custom')
VALID_MODES = ('sequential', 'parallel')
VALID_METHODS = ('nearest', 'linear')

DEFAULTS: Dict[str, Any] = {
    'project_dir': None,
    'project_file': None,
    'plan': 'p01',
    'boundary_location': None,
    'work_dir': 'outputs/scenarios',
    'results_dir': 'outputs/rasters',
    'stats_path': 'outputs/field_stats.csv',
    'return_periods': DEFAULT_RETURN_PERIODS,
    'hydrograph': None,
    'hydrograph_dir': None,
    'annual_peaks': None,
    'distribution': 'gumbel',
    'simulation_start': '01JAN2000,0000',
    'output_interval': None,
    'engine': {
        'name': 'hecras',
        'executable': 'Ras.exe',
        'command': None,
        'timeout': None,
        'workers': 1,
        'mode': 'sequential',
    },
    'extraction': {
        'terrain': None,
        'cell_size': None,
        'depth_threshold': 0.05,
        'method': 'nearest',
        'max_distance': None,
        'area': None,
        'workers': 1,
    },
    'fields': None,
    'field_id': 'field_id',
    'stats': ['mean', 'max'],
    'static_rasters': {},
    'yields': None,
}

# Keys holding filesystem paths, resolved relative to the config file
PATH_KEYS = ['project_dir', 'work_dir', 'results_dir', 'stats_path', 'hydrograph',
             'hydrograph_dir', 'annual_peaks', 'fields', 'yields']
NESTED_PATH_KEYS = [('extraction', 'terrain')]


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `updates` into `base` (in place) and return it."""
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    """Remove None entries at every level (unset command-line flags)."""
    cleaned = {}
    for key, value in values.items():
        if isinstance(value, dict):
            value = _drop_none(value)
            if not value:
                continue
        if value is not None:
            cleaned[key] = value
    return cleaned


def _resolve(path: Optional[str], root: str) -> Optional[str]:
    if path is None or os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(root, path))


def resolve_paths(config: Dict[str, Any], root: str) -> Dict[str, Any]:
    """
    Make every relative path in `config` relative to `root`.

    Parameters
    ----------
    config : dict
        Configuration dictionary (modified in place)
    root : str
        Directory the relative paths refer to

    Returns
    -------
    dict
        The same dictionary
    """
    for key in PATH_KEYS:
        config[key] = _resolve(config.get(key), root)
    for section, key in NESTED_PATH_KEYS:
        config[section][key] = _resolve(config[section].get(key), root)
    config['static_rasters'] = {
        name: _resolve(path, root) for name, path in (config.get('static_rasters') or {}).items()
    }
    return config


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Check a merged configuration for type and range problems.

    Parameters
    ----------
    config : dict
        Merged configuration

    Returns
    -------
    list[str]
        Human-readable problems; empty when the configuration is usable
    """
    problems = []

    periods = config.get('return_periods')
    if not isinstance(periods, (list, tuple)) or not periods:
        problems.append("return_periods must be a non-empty list")
    else:
        for rp in periods:
            if not isinstance(rp, (int, float)) or isinstance(rp, bool) or not rp > 1:
                problems.append(f"return period must be a number greater than 1, got {rp!r}")

    if config.get('distribution') not in VALID_DISTRIBUTIONS:
        problems.append(f"distribution must be one of {', '.join(VALID_DISTRIBUTIONS)}")

    engine = config.get('engine') or {}
    if engine.get('name') not in VALID_ENGINES:
        problems.append(f"engine.name must be one of {', '.join(VALID_ENGINES)}")
    if engine.get('name') == 'custom' and not engine.get('command'):
        problems.append("engine.command is required for the custom engine")
    if engine.get('mode') not in VALID_MODES:
        problems.append(f"engine.mode must be one of {', '.join(VALID_MODES)}")
    workers = engine.get('workers')
    if not isinstance(workers, int) or workers < 0:
        problems.append(f"engine.workers must be a non-negative integer, got {workers!r}")
    timeout = engine.get('timeout')
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        problems.append(f"engine.timeout must be positive seconds, got {timeout!r}")

    extraction = config.get('extraction') or {}
    if extraction.get('method') not in VALID_METHODS:
        problems.append(f"extraction.method must be one of {', '.join(VALID_METHODS)}")
    threshold = extraction.get('depth_threshold')
    if not isinstance(threshold, (int, float)) or threshold < 0:
        problems.append(f"extraction.depth_threshold must be >= 0, got {threshold!r}")
    for key in ('cell_size', 'max_distance'):
        value = extraction.get(key)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            problems.append(f"extraction.{key} must be positive, got {value!r}")

    interval = config.get('output_interval')
    if interval is not None and str(interval).upper() not in INTERVALS.values():
        problems.append(f"output_interval must be a HEC-RAS interval such as 1HOUR, got {interval!r}")

    stats = config.get('stats')
    if not isinstance(stats, (list, tuple)) or not stats:
        problems.append("stats must be a non-empty list of statistic names")

    if not isinstance(config.get('field_id'), str) or not config.get('field_id'):
        problems.append("field_id must be a column name")

    return problems


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build the run configuration: defaults, then JSON file, then overrides.

    Parameters
    ----------
    path : str, optional
        JSON configuration file
    overrides : dict, optional
        Values that win over the file (typically from the command line);
        None values are ignored

    Returns
    -------
    dict
        Validated configuration

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist
    ValueError
        If the file is not valid JSON or the merged configuration is invalid
    """
    config = copy.deepcopy(DEFAULTS)

    if path is not None:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Configuration file not found: {path}")
        try:
            with open(path, 'r') as f:
                user = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error parsing configuration file {path}: {e}")
        if not isinstance(user, dict):
            raise ValueError(f"Configuration file must contain a JSON object: {path}")
        unknown = sorted(set(user) - set(DEFAULTS))
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
            for key in unknown:
                user.pop(key)
        _deep_update(config, user)
        resolve_paths(config, os.path.dirname(os.path.abspath(path)))
        logger.info(f"Loaded configuration from {path}")

    if overrides:
        _deep_update(config, _drop_none(overrides))

    problems = validate_config(config)
    if problems:
        raise ValueError("Invalid configuration:\n  " + "\n  ".join(problems))

    return config


def save_config(config: Dict[str, Any], path: str) -> None:
    """Write a configuration to JSON (used to record what a run used)."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)
