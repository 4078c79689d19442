"""
Unit tests for config module.
"""

import json
import os

import pytest

from agflood.config import DEFAULTS, load_config, save_config, validate_config


def _write_json(path, data):
    with open(path, 'w') as f:
        json.dump(data, f)
    return str(path)


def test_defaults_are_valid():
    config = load_config()
    assert config['plan'] == 'p01'
    assert config['engine']['mode'] == 'sequential'
    assert config['engine']['workers'] == 1
    assert validate_config(config) == []


def test_load_config_does_not_mutate_defaults(workspace):
    path = _write_json(workspace / 'run.json', {'engine': {'workers': 4}, 'return_periods': [10]})
    load_config(path)
    assert DEFAULTS['engine']['workers'] == 1
    assert DEFAULTS['return_periods'] == [2, 5, 10, 25, 50, 100]


def test_nested_sections_merge(workspace):
    path = _write_json(workspace / 'run.json', {'engine': {'workers': 4, 'mode': 'parallel'}})
    config = load_config(path)
    assert config['engine']['workers'] == 4
    assert config['engine']['mode'] == 'parallel'
    assert config['engine']['executable'] == 'Ras.exe'


def test_relative_paths_resolve_against_config_folder(workspace):
    sub = workspace / 'cfg'
    sub.mkdir()
    path = _write_json(sub / 'run.json', {
        'project_dir': 'model',
        'fields': '../gis/fields.gpkg',
        'extraction': {'terrain': 'dem.tif'},
        'static_rasters': {'roughness': 'n.tif'},
    })
    config = load_config(path)
    assert config['project_dir'] == os.path.normpath(str(sub / 'model'))
    assert config['fields'] == os.path.normpath(str(workspace / 'gis' / 'fields.gpkg'))
    assert config['extraction']['terrain'] == os.path.normpath(str(sub / 'dem.tif'))
    assert config['static_rasters']['roughness'] == os.path.normpath(str(sub / 'n.tif'))


def test_unknown_keys_are_dropped(workspace):
    path = _write_json(workspace / 'run.json', {'colour': 'blue', 'plan': 'p02'})
    config = load_config(path)
    assert 'colour' not in config
    assert config['plan'] == 'p02'


def test_overrides_win_and_none_is_ignored(workspace):
    path = _write_json(workspace / 'run.json', {'engine': {'workers': 4, 'timeout': 60}})
    config = load_config(path, {'engine': {'workers': 2, 'timeout': None}, 'plan': None})
    assert config['engine']['workers'] == 2
    assert config['engine']['timeout'] == 60
    assert config['plan'] == 'p01'


def test_invalid_values_reported_together(workspace):
    path = _write_json(workspace / 'run.json', {
        'return_periods': [1, 10],
        'distribution': 'weibull',
        'engine': {'mode': 'cluster'},
    })
    with pytest.raises(ValueError) as excinfo:
        load_config(path)
    message = str(excinfo.value)
    assert 'greater than 1' in message
    assert 'distribution' in message
    assert 'engine.mode' in message


def test_output_interval_must_be_known_token():
    config = load_config()
    config['output_interval'] = '15min'
    assert validate_config(config) == []
    config['output_interval'] = '7MIN'
    assert any('output_interval' in p for p in validate_config(config))


def test_custom_engine_needs_command():
    config = load_config()
    config['engine'] = dict(config['engine'], name='custom', command=None)
    problems = validate_config(config)
    assert any('engine.command' in p for p in problems)


def test_missing_and_malformed_files(workspace):
    with pytest.raises(FileNotFoundError):
        load_config(str(workspace / 'absent.json'))
    bad = workspace / 'bad.json'
    bad.write_text('{"plan": ')
    with pytest.raises(ValueError):
        load_config(str(bad))


def test_save_config_round_trip(workspace):
    config = load_config(overrides={'return_periods': [10, 100]})
    path = str(workspace / 'out' / 'run_config.json')
    save_config(config, path)
    assert load_config(path)['return_periods'] == [10, 100]
