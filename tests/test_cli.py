"""
Unit tests for cli module.
"""

import json
import os

import pandas as pd
import pytest

from agflood.cli import build_parser, main, EXIT_OK, EXIT_FAILED, EXIT_CONFIG
from conftest import FAKE_ENGINE


@pytest.fixture
def run_config(workspace, ras_project, fields_file, annual_peaks):
    """Configuration file driving the fake engine over two return periods."""
    pd.DataFrame({'year': range(1981, 2021), 'peak': annual_peaks}).to_csv(workspace / 'peaks.csv', index=False)
    (workspace / 'shape.csv').write_text("time,flow\n0,5\n1,10\n2,20\n3,30\n4,20\n5,10\n6,5\n")

    def _config(mode='ok', **extra):
        config = {
            'project_dir': 'project',
            'work_dir': 'work',
            'results_dir': 'rasters',
            'stats_path': 'stats/field_stats.csv',
            'return_periods': [10, 100],
            'hydrograph': 'shape.csv',
            'annual_peaks': 'peaks.csv',
            'engine': {
                'name': 'custom',
                'command': ['{python}', FAKE_ENGINE, '{project}', '{plan_suffix}', mode],
            },
            'fields': os.path.basename(fields_file),
        }
        config.update(extra)
        path = workspace / f'run_{mode}.json'
        path.write_text(json.dumps(config))
        return str(path)
    return _config


def test_parser_setup():
    parser = build_parser()
    args = parser.parse_args(['--config', 'run.json', 'run', '--workers', '2', '--mode', 'parallel', '--force'])
    assert args.command == 'run'
    assert args.workers == 2
    assert args.mode == 'parallel'
    assert args.force is True
    with pytest.raises(SystemExit):
        parser.parse_args(['run', '--mode', 'cluster'])


def test_pipeline_end_to_end(workspace, run_config, capsys):
    code = main(['--config', run_config(), '--log-file', str(workspace / 'logs' / 'run.log'), 'pipeline'])
    assert code == EXIT_OK

    work = workspace / 'work'
    assert (work / 'scenarios' / 'scenarios.json').exists()
    assert (work / 'scenarios' / 'frequency_fit.json').exists()
    assert (work / 'run_config.json').exists()
    status = pd.read_csv(work / 'batch_status.csv')
    assert status['scenario_id'].tolist() == ['RP10', 'RP100']
    assert (status['state'] == 'ok').all()

    stats = pd.read_csv(workspace / 'stats' / 'field_stats.csv')
    assert len(stats) == 6
    a = stats[stats['field_id'] == 'A'].sort_values('return_period')
    # deeper flooding for the rarer event
    assert a['depth_mean'].iloc[1] > a['depth_mean'].iloc[0]
    assert (workspace / 'stats' / 'field_stats_annual.csv').exists()
    assert (workspace / 'logs' / 'run.log').stat().st_size > 0

    out = capsys.readouterr().out
    assert '[OK]   RP100' in out


def test_step_by_step_commands(workspace, run_config, capsys):
    config = run_config()
    assert main(['--config', config, 'scenarios', '--return-periods', '5', '50']) == EXIT_OK
    assert main(['--config', config, 'prepare']) == EXIT_OK
    assert sorted(p for p in os.listdir(workspace / 'work') if p.startswith('RP')) == ['RP5', 'RP50']
    assert main(['--config', config, 'run']) == EXIT_OK
    assert main(['--config', config, 'extract']) == EXIT_OK
    assert main(['--config', config, 'zonal', '--format', 'gpkg']) == EXIT_OK
    assert (workspace / 'stats' / 'field_stats.gpkg').exists()

    capsys.readouterr()
    assert main(['--config', config, 'status']) == EXIT_OK
    out = capsys.readouterr().out
    assert 'RP50' in out and 'ok' in out


def test_failed_runs_exit_one(workspace, run_config):
    config = run_config('fail')
    code = main(['--config', config, 'pipeline'])
    assert code == EXIT_FAILED
    status = pd.read_csv(workspace / 'work' / 'batch_status.csv')
    assert (status['state'] == 'failed').all()
    assert main(['--config', config, 'status']) == EXIT_FAILED


def test_config_errors_exit_two(workspace, run_config):
    assert main(['--config', str(workspace / 'absent.json'), 'status']) == EXIT_CONFIG
    assert main(['--config', run_config(return_periods=[0.5]), 'scenarios']) == EXIT_CONFIG
    # nothing has been run yet
    assert main(['--config', run_config(), 'status']) == EXIT_CONFIG
    assert main(['--config', run_config(fields=None), 'zonal']) == EXIT_CONFIG
