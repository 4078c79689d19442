# src/agflood/cli.py

"""
CLI wrapper for the agricultural flood scenario pipeline.

Sub-commands:
  scenarios : Build return-period scenarios and their hydrographs
  prepare   : Clone the HEC-RAS project once per scenario and apply its inflow
  run       : Execute the engine for every prepared scenario
  extract   : Derive depth / velocity / duration / extent rasters
  zonal     : Per-field statistics table
  pipeline  : All of the above in order
  status    : Print the batch status table

Exit codes: 0 success, 1 one or more scenarios failed, 2 configuration or
input error.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import pandas as pd

from agflood import __version__
from agflood.config import load_config, save_config, VALID_DISTRIBUTIONS, VALID_MODES
from agflood.scenarios import (
    load_hydrograph, load_annual_peaks, fit_annual_peaks, design_discharge,
    build_scenarios, write_scenarios, read_scenarios
)
from agflood.ras_project import prepare_scenario, load_prepared
from agflood.executor import run_batch, load_batch_status
from agflood.results import extract_batch, load_raster_index
from agflood.zonal import (
    load_fields, aggregate_batch, add_static_attributes, merge_yields,
    expected_annual_value, write_table
)

# Configure logging
logging.basicConfig(level=logging.INFO,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

SCENARIO_SUBDIR = 'scenarios'
RUN_CONFIG_NAME = 'run_config.json'
FIT_NAME = 'frequency_fit.json'
FAILED_STATES = ('failed', 'timeout')
ANNUALISED_COLUMNS = ('depth_mean', 'inundated_fraction')


def _scenario_dir(config: Dict[str, Any]) -> str:
    return os.path.join(config['work_dir'], SCENARIO_SUBDIR)


def build_scenario_set(config: Dict[str, Any], plot: bool = False) -> List:
    """
    Build scenarios from the configured hydrograph sources and write them
    to '<work_dir>/scenarios'.
    """
    design = None
    if config.get('annual_peaks'):
        peaks = load_annual_peaks(config['annual_peaks'])
        fit = fit_annual_peaks(peaks, config['distribution'])
        design = design_discharge(fit, config['return_periods'])
        logger.info(f"{fit['distribution']} fit to {fit['n_years']} years: "
                    f"AIC={fit['diagnostics']['aic']:.2f}, KS p={fit['diagnostics']['ks_pvalue']:.3f}")
        os.makedirs(_scenario_dir(config), exist_ok=True)
        with open(os.path.join(_scenario_dir(config), FIT_NAME), 'w') as f:
            json.dump(fit, f, indent=2)

    base = load_hydrograph(config['hydrograph']) if config.get('hydrograph') else None
    scenarios = build_scenarios(config['return_periods'], base_hydrograph=base, design=design,
                                hydrograph_dir=config.get('hydrograph_dir'))
    write_scenarios(scenarios, _scenario_dir(config))

    if plot:
        from agflood.visualization import plot_hydrographs
        plot_hydrographs(scenarios, os.path.join(_scenario_dir(config), 'hydrographs.png'))
    return scenarios


def prepare_all(config: Dict[str, Any], scenarios: Optional[List] = None) -> List[Dict[str, Any]]:
    """Create one project copy per scenario under the work directory."""
    if not config.get('project_dir'):
        raise ValueError("project_dir is not configured")
    if not os.path.isdir(config['project_dir']):
        raise NotADirectoryError(f"Project directory not found: {config['project_dir']}")
    if scenarios is None:
        scenarios = read_scenarios(_scenario_dir(config))

    prepared = []
    for i, scenario in enumerate(scenarios):
        prepared.append(prepare_scenario(
            config['project_dir'], scenario, config['work_dir'],
            plan=config['plan'],
            boundary=config.get('boundary_location'),
            simulation_start=config['simulation_start'],
            project_file=config.get('project_file'),
            output_interval=config.get('output_interval'),
        ))
        print(f"[{i+1}/{len(scenarios)}] [OK]   {scenario.scenario_id} → {prepared[-1]['project_dir']}")
    return prepared


def run_all(config: Dict[str, Any], prepared: Optional[List[Dict[str, Any]]] = None,
            force: bool = False) -> pd.DataFrame:
    """Run the engine for every prepared scenario."""
    if prepared is None:
        prepared = load_prepared(config['work_dir'])
    engine = config['engine']
    return run_batch(prepared, engine,
                     workers=engine['workers'],
                     mode=engine['mode'],
                     timeout=engine.get('timeout'),
                     skip_existing=not force,
                     work_dir=config['work_dir'])


def extract_all(config: Dict[str, Any], status: Optional[pd.DataFrame] = None) -> Dict[str, Dict[str, str]]:
    """Rasters for every scenario whose run completed."""
    if status is None:
        status = load_batch_status(config['work_dir'])
    options = dict(config['extraction'])
    workers = options.pop('workers', 1)
    return extract_batch(status, config['results_dir'], workers=workers, **options)


def aggregate_all(config: Dict[str, Any], output_format: Optional[str] = None,
                  plot: bool = False) -> pd.DataFrame:
    """
    Per-field statistics for every extracted scenario, written to stats_path.

    An '<stem>_annual.csv' table of expected annual values is written next
    to it when the table has more than one return period.
    """
    if not config.get('fields'):
        raise ValueError("fields is not configured")
    id_field = config['field_id']
    fields = load_fields(config['fields'], id_field)
    index = load_raster_index(config['results_dir'])

    table = aggregate_batch(fields, index, stats=config['stats'], id_field=id_field)
    table = add_static_attributes(table, fields, config.get('static_rasters') or {}, id_field)
    if config.get('yields'):
        table = merge_yields(table, config['yields'], id_field)

    stem, ext = os.path.splitext(config['stats_path'])
    if output_format:
        ext = f".{output_format}"
    write_table(table, stem + ext, fields=fields, id_field=id_field)

    if table['return_period'].nunique() > 1:
        annual = None
        for column in ANNUALISED_COLUMNS:
            if column in table.columns:
                ea = expected_annual_value(table, column, id_field)
                annual = ea if annual is None else annual.merge(ea, on=id_field)
        if annual is not None:
            write_table(annual, f"{stem}_annual.csv", id_field=id_field)

    if plot:
        from agflood.visualization import plot_field_statistic, plot_statistic_distribution
        plot_dir = os.path.join(os.path.dirname(os.path.abspath(config['stats_path'])), 'plots')
        if 'depth_mean' in table.columns:
            plot_field_statistic(table, 'depth_mean', os.path.join(plot_dir, 'depth_mean_by_field.png'),
                                 id_field=id_field)
            plot_statistic_distribution(table, 'depth_mean', os.path.join(plot_dir, 'depth_mean_distribution.png'))
    return table


def _failed(status: pd.DataFrame) -> bool:
    return bool(status['state'].isin(FAILED_STATES).any())


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Configuration values given on the command line."""
    return {
        'project_dir': getattr(args, 'project_dir', None),
        'work_dir': getattr(args, 'work_dir', None),
        'results_dir': getattr(args, 'results_dir', None),
        'return_periods': getattr(args, 'return_periods', None),
        'distribution': getattr(args, 'distribution', None),
        'yields': getattr(args, 'yields', None),
        'engine': {
            'workers': getattr(args, 'workers', None) if args.command in ('run', 'pipeline') else None,
            'mode': getattr(args, 'mode', None),
            'timeout': getattr(args, 'timeout', None),
        },
        'extraction': {
            'workers': getattr(args, 'workers', None) if args.command == 'extract' else None,
        },
    }


def _configure_logging(log_file: Optional[str], verbose: bool) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='agflood', description='Agricultural flood scenario pipeline')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--config', default=None, help='JSON run configuration')
    parser.add_argument('--log-file', default=None, help='Also write log messages to this file')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--work-dir', default=None, help='Folder for scenario copies (overrides config)')
    parser.add_argument('--results-dir', default=None, help='Folder for rasters (overrides config)')
    sub = parser.add_subparsers(dest='command', required=True)

    def add_scenario_args(p):
        p.add_argument('--return-periods', nargs='+', type=float, default=None,
                       help='Return periods in years')
        p.add_argument('--distribution', choices=VALID_DISTRIBUTIONS, default=None,
                       help='Distribution fitted to annual peaks')

    def add_run_args(p):
        p.add_argument('--workers', type=int, default=None,
                       help='Parallel engine processes (0=all cores)')
        p.add_argument('--mode', choices=VALID_MODES, default=None, help='Execution mode')
        p.add_argument('--timeout', type=float, default=None, help='Per-scenario timeout in seconds')
        p.add_argument('--force', action='store_true', help='Re-run scenarios that already have results')

    p_scen = sub.add_parser('scenarios', help='Build return-period scenarios')
    add_scenario_args(p_scen)
    p_scen.add_argument('--plot', action='store_true', help='Plot the hydrographs')

    p_prep = sub.add_parser('prepare', help='Clone and modify the project per scenario')
    p_prep.add_argument('--project-dir', default=None, help='Pristine HEC-RAS project folder')

    p_run = sub.add_parser('run', help='Execute the engine for prepared scenarios')
    add_run_args(p_run)

    p_ext = sub.add_parser('extract', help='Derive rasters from engine results')
    p_ext.add_argument('--workers', type=int, default=None,
                       help='Parallel extraction processes (0=all cores)')

    p_zon = sub.add_parser('zonal', help='Per-field statistics')
    p_zon.add_argument('--yields', default=None, help='CSV of externally modelled yields')
    p_zon.add_argument('--format', dest='output_format', choices=['csv', 'gpkg', 'parquet'], default=None,
                       help='Output format (default: from stats_path extension)')
    p_zon.add_argument('--plot', action='store_true', help='Plot field statistics')

    p_pipe = sub.add_parser('pipeline', help='Scenarios, prepare, run, extract and zonal in order')
    add_scenario_args(p_pipe)
    add_run_args(p_pipe)
    p_pipe.add_argument('--project-dir', default=None, help='Pristine HEC-RAS project folder')
    p_pipe.add_argument('--yields', default=None, help='CSV of externally modelled yields')
    p_pipe.add_argument('--format', dest='output_format', choices=['csv', 'gpkg', 'parquet'], default=None,
                        help='Output format of the field table')
    p_pipe.add_argument('--plot', action='store_true', help='Write figures')

    sub.add_parser('status', help='Print the batch status table')
    return parser


def _pipeline(config: Dict[str, Any], args: argparse.Namespace) -> int:
    save_config(config, os.path.join(config['work_dir'], RUN_CONFIG_NAME))
    scenarios = build_scenario_set(config, plot=args.plot)
    prepared = prepare_all(config, scenarios)
    status = run_all(config, prepared, force=args.force)
    if not status['state'].isin(['ok', 'skipped']).any():
        logger.error("No scenario completed; stopping before extraction")
        return EXIT_FAILED
    extract_all(config, status)
    if config.get('fields'):
        aggregate_all(config, args.output_format, plot=args.plot)
    else:
        logger.warning("fields is not configured; skipping zonal statistics")
    return EXIT_FAILED if _failed(status) else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_file, args.verbose)

    try:
        config = load_config(args.config, _overrides(args))
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return EXIT_CONFIG

    try:
        if args.command == 'scenarios':
            build_scenario_set(config, plot=args.plot)
            return EXIT_OK

        if args.command == 'prepare':
            prepare_all(config)
            return EXIT_OK

        if args.command == 'run':
            status = run_all(config, force=args.force)
            return EXIT_FAILED if _failed(status) else EXIT_OK

        if args.command == 'extract':
            status = load_batch_status(config['work_dir'])
            extracted = extract_all(config, status)
            return EXIT_FAILED if len(extracted) < status['state'].isin(['ok', 'skipped']).sum() else EXIT_OK

        if args.command == 'zonal':
            aggregate_all(config, args.output_format, plot=args.plot)
            return EXIT_OK

        if args.command == 'pipeline':
            return _pipeline(config, args)

        if args.command == 'status':
            status = load_batch_status(config['work_dir'])
            with pd.option_context('display.max_colwidth', 60, 'display.width', 200):
                print(status[[c for c in ('scenario_id', 'return_period', 'state', 'returncode',
                                          'elapsed_s', 'error_type', 'message') if c in status.columns]].to_string(index=False))
            return EXIT_FAILED if _failed(status) else EXIT_OK
    except (FileNotFoundError, NotADirectoryError, KeyError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_CONFIG

    parser.error(f"Unknown command: {args.command}")


if __name__ == '__main__':
    sys.exit(main())
