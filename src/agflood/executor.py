# src/agflood/executor.py
"""
Module: executor.py
Responsibilities:
- Build the engine command line for a prepared scenario
- Run one scenario in its own working directory with timeout
- Capture stdout/stderr to 'compute.log' and scan it for error states
- Record per-scenario status ('status.json') and a batch table ('batch_status.csv')
- Run a batch sequentially or in parallel, one process per scenario
"""
import concurrent.futures
import json
import logging
import multiprocessing
import os
import re
import shutil
import subprocess
import sys
import time
from datetime import datetime
from functools import partial
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
LOG_NAME = 'compute.log'
STATUS_NAME = 'status.json'
BATCH_STATUS_NAME = 'batch_status.csv'
STATUS_COLUMNS = ['scenario_id', 'return_period', 'state', 'returncode', 'elapsed_s',
                  'results_file', 'project_dir', 'error_type', 'message', 'errors', 'completed',
                  'started', 'finished']
ERROR_PATTERN = re.compile(
    r'\berrors?\b|unhandled exception|computations? (?:failed|aborted)|\bfatal\b',
    re.IGNORECASE)
# Volume accounting and percent error lines are mass-balance summaries
NOT_ERROR_PATTERN = re.compile(r'\b(?:0|no) errors?\b|volume accounting error|percent error', re.IGNORECASE)
COMPLETE_MARKERS = ('Complete Process', 'Finished Unsteady Flow Simulation')


class SimulationError(RuntimeError):
    """An engine run failed or timed out."""

    def __init__(self, scenario_id: str, returncode: Optional[int], errors: Sequence[str], message: str = ''):
        self.scenario_id = scenario_id
        self.returncode = returncode
        self.errors = list(errors)
        detail = message or '; '.join(self.errors[:3]) or f"exit code {returncode}"
        super().__init__(f"Scenario {scenario_id} failed: {detail}")


def build_command(engine: Dict[str, Any], prepared: Dict[str, Any]) -> List[str]:
    """
    Engine command line for one prepared scenario.

    'hecras' runs '<exe> -c <project.prj> <project.p##>'. 'custom' formats
    each item of engine['command'] with {exe}, {project}, {plan},
    {plan_suffix}, {scenario_dir} and {python}.
    """
    name = engine.get('name', 'hecras')
    exe = engine.get('executable') or ''
    if name == 'hecras':
        return [exe, '-c', prepared['project_file'], prepared['plan_file']]
    if name == 'custom':
        template = engine.get('command')
        if not template:
            raise ValueError("Custom engine requires a 'command' list")
        values = {
            'exe': exe,
            'project': prepared['project_file'],
            'plan': prepared['plan_file'],
            'plan_suffix': prepared.get('plan', ''),
            'scenario_dir': prepared['project_dir'],
            'python': sys.executable,
        }
        return [str(part).format(**values) for part in template]
    raise ValueError(f"Unknown engine: {name}")


def locate_executable(path: str) -> str:
    """
    Return the absolute path of an executable given as a path or a name on PATH.

    Raises
    ------
    FileNotFoundError
        If it cannot be found
    """
    if path and os.path.isfile(path):
        return os.path.abspath(path)
    found = shutil.which(path) if path else None
    if not found:
        raise FileNotFoundError(f"Engine executable not found: {path!r}")
    return found


def scan_compute_log(text: str) -> Dict[str, Any]:
    """
    Pick error lines and the completion marker out of engine output.

    Returns
    -------
    dict
        {'errors': [...], 'completed': bool}
    """
    errors = []
    for line in text.splitlines():
        if ERROR_PATTERN.search(line) and not NOT_ERROR_PATTERN.search(line):
            errors.append(line.strip())
    completed = any(marker in text for marker in COMPLETE_MARKERS)
    return {'errors': errors, 'completed': completed}


def _read_text(path: str) -> str:
    if not os.path.exists(path):
        return ''
    with open(path, 'r', encoding='latin-1', errors='replace') as f:
        return f.read()


def read_status(scenario_dir: str) -> Optional[Dict[str, Any]]:
    path = os.path.join(scenario_dir, STATUS_NAME)
    if not os.path.exists(path):
        return None
    with open(path, 'r') as f:
        return json.load(f)


def _write_status(scenario_dir: str, record: Dict[str, Any]) -> None:
    with open(os.path.join(scenario_dir, STATUS_NAME), 'w') as f:
        json.dump(record, f, indent=2)


def run_scenario(
    prepared: Dict[str, Any],
    engine: Dict[str, Any],
    timeout: Optional[float] = None,
    skip_existing: bool = True,
    raise_on_error: bool = False
) -> Dict[str, Any]:
    """
    Run the engine for one prepared scenario.

    Parameters
    ----------
    prepared : dict
        Output of ras_project.prepare_scenario
    engine : dict
        Engine settings ('name', 'executable', 'command')
    timeout : float, optional
        Seconds before the engine process is killed
    skip_existing : bool
        Skip when results exist from a previous successful run
    raise_on_error : bool
        Raise SimulationError instead of returning a failed record

    Returns
    -------
    dict
        scenario_id, return_period, state ('ok' | 'failed' | 'timeout' |
        'skipped'), returncode, elapsed_s, results_file, project_dir,
        message, errors, completed, started, finished
    """
    sid = prepared['scenario_id']
    scenario_dir = prepared['project_dir']
    results_file = prepared['results_file']
    record = {
        'scenario_id': sid,
        'return_period': prepared.get('return_period'),
        'state': 'failed',
        'returncode': None,
        'elapsed_s': 0.0,
        'results_file': results_file,
        'project_dir': scenario_dir,
        'error_type': None,
        'message': '',
        'errors': [],
        'completed': False,
        'started': None,
        'finished': None,
    }

    previous = read_status(scenario_dir)
    if skip_existing and os.path.exists(results_file) and previous and previous.get('state') in ('ok', 'skipped'):
        logger.info(f"Results for {sid} already exist, skipping")
        record.update(previous)
        record['state'] = 'skipped'
        record['message'] = 'results already present'
        return record

    if os.path.exists(results_file):
        os.remove(results_file)

    cmd = build_command(engine, prepared)
    log_path = os.path.join(scenario_dir, LOG_NAME)
    record['started'] = datetime.now().isoformat(timespec='seconds')
    start = time.time()
    logger.info(f"Running {sid}: {' '.join(cmd)}")

    try:
        with open(log_path, 'w') as log:
            proc = subprocess.run(cmd, cwd=scenario_dir, stdout=log, stderr=subprocess.STDOUT,
                                  timeout=timeout, check=False)
        record['returncode'] = proc.returncode
    except subprocess.TimeoutExpired:
        record['state'] = 'timeout'
        record['error_type'] = 'Timeout'
        record['message'] = f"timed out after {timeout:g} s"
    except OSError as e:
        record['error_type'] = type(e).__name__
        record['message'] = str(e)

    record['elapsed_s'] = round(time.time() - start, 3)
    record['finished'] = datetime.now().isoformat(timespec='seconds')

    text = _read_text(log_path) + '\n' + _read_text(prepared['plan_file'] + '.computeMsgs.txt')
    scan = scan_compute_log(text)
    record['errors'] = scan['errors']
    record['completed'] = scan['completed']

    if record['state'] != 'timeout' and not record['message']:
        if record['returncode'] != 0:
            record['message'] = f"engine exited with code {record['returncode']}"
        elif scan['errors']:
            record['message'] = scan['errors'][0]
        elif not os.path.exists(results_file):
            record['message'] = f"results file not written: {os.path.basename(results_file)}"
        else:
            record['state'] = 'ok'
            record['message'] = 'completed'
    if record['state'] != 'ok' and not record['error_type']:
        record['error_type'] = 'EngineError'

    _write_status(scenario_dir, record)

    if record['state'] == 'ok':
        logger.info(f"{sid} completed in {record['elapsed_s']:.1f} s")
    else:
        logger.error(f"{sid} {record['state']}: {record['message']}")
        if raise_on_error:
            raise SimulationError(sid, record['returncode'], record['errors'], record['message'])
    return record


def _run_one(prepared: Dict[str, Any], engine: Dict[str, Any], timeout: Optional[float],
             skip_existing: bool) -> Dict[str, Any]:
    """
    Top-level helper for ProcessPoolExecutor. Never raises.
    """
    try:
        return run_scenario(prepared, engine, timeout=timeout, skip_existing=skip_existing)
    except Exception as e:
        logger.error(f"Error running scenario {prepared.get('scenario_id')}: {type(e).__name__}: {e}")
        return {
            'scenario_id': prepared.get('scenario_id'),
            'return_period': prepared.get('return_period'),
            'state': 'failed',
            'returncode': None,
            'elapsed_s': 0.0,
            'results_file': prepared.get('results_file'),
            'project_dir': prepared.get('project_dir'),
            'error_type': type(e).__name__,
            'message': str(e),
            'errors': [],
            'completed': False,
            'started': None,
            'finished': None,
        }


def format_status(record: Dict[str, Any]) -> str:
    """One-line status: '[OK]   id → path', '[SKIP] id - reason' or '[ERR]  id: Type: message'."""
    sid = record.get('scenario_id')
    state = record.get('state')
    if state == 'ok':
        return f"[OK]   {sid} → {record.get('results_file')}"
    if state == 'skipped':
        return f"[SKIP] {sid} - {record.get('message') or 'already processed'}"
    return f"[ERR]  {sid}: {record.get('error_type') or 'EngineError'}: {record.get('message')}"


def run_batch(
    prepared_list: Sequence[Dict[str, Any]],
    engine: Dict[str, Any],
    workers: int = 1,
    mode: str = 'sequential',
    timeout: Optional[float] = None,
    skip_existing: bool = True,
    work_dir: Optional[str] = None
) -> pd.DataFrame:
    """
    Run every prepared scenario and collect a status table.

    Parameters
    ----------
    prepared_list : list of dict
        Prepared scenarios
    engine : dict
        Engine settings
    workers : int
        Parallel engine processes (0 = all cores); ignored when sequential
    mode : str
        'sequential' or 'parallel'
    timeout : float, optional
        Per-scenario timeout in seconds
    skip_existing : bool
        Skip scenarios with existing successful results
    work_dir : str, optional
        Where to write 'batch_status.csv' (parent of the first scenario
        directory when None)

    Returns
    -------
    pd.DataFrame
        One row per scenario, sorted by return period
    """
    if mode not in ('sequential', 'parallel'):
        raise ValueError(f"Unknown execution mode: {mode}")
    prepared_list = list(prepared_list)
    if not prepared_list:
        raise ValueError("No prepared scenarios to run")

    if engine.get('name', 'hecras') == 'hecras':
        engine = dict(engine, executable=locate_executable(engine.get('executable')))

    num_workers = 1
    if mode == 'parallel':
        num_workers = workers if workers and workers > 0 else multiprocessing.cpu_count()
        num_workers = min(num_workers, len(prepared_list))
    logger.info(f"Running {len(prepared_list)} scenario(s) {mode}ly with {num_workers} worker(s)...")

    func = partial(_run_one, engine=engine, timeout=timeout, skip_existing=skip_existing)

    records = []
    success_count = 0
    error_count = 0
    skip_count = 0

    def _tally(i, record):
        nonlocal success_count, error_count, skip_count
        print(f"[{i+1}/{len(prepared_list)}] {format_status(record)}")
        if record['state'] == 'ok':
            success_count += 1
        elif record['state'] == 'skipped':
            skip_count += 1
        else:
            error_count += 1
        records.append(record)

    if num_workers == 1:
        for i, prepared in enumerate(prepared_list):
            _tally(i, func(prepared))
    else:
        with concurrent.futures.ProcessPoolExecutor(max_workers=num_workers) as executor:
            for i, record in enumerate(executor.map(func, prepared_list)):
                _tally(i, record)

    logger.info(f"Batch complete: {success_count} succeeded, {error_count} failed, {skip_count} skipped")

    df = pd.DataFrame(records)
    df = df[[c for c in STATUS_COLUMNS if c in df.columns] + [c for c in df.columns if c not in STATUS_COLUMNS]]
    df['errors'] = df['errors'].apply(lambda errs: ' | '.join(errs) if isinstance(errs, list) else errs)
    df = df.sort_values('return_period', kind='mergesort').reset_index(drop=True)

    out_dir = work_dir or os.path.dirname(os.path.abspath(prepared_list[0]['project_dir']))
    os.makedirs(out_dir, exist_ok=True)
    df.to_csv(os.path.join(out_dir, BATCH_STATUS_NAME), index=False)
    return df


def load_batch_status(work_dir: str) -> pd.DataFrame:
    """Read 'batch_status.csv' written by run_batch."""
    path = os.path.join(work_dir, BATCH_STATUS_NAME)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Batch status not found: {path}")
    return pd.read_csv(path)
