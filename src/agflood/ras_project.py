# src/agflood/ras_project.py
"""
Module: ras_project.py
Responsibilities:
- Locate the HEC-RAS project file and the plan / flow / geometry files it lists
- Read and rewrite 'Key=Value' lines in project, plan and unsteady flow files
- Read and write fixed-width (8-character) flow hydrograph blocks
- Resample a hydrograph onto a HEC-RAS interval
- Set the plan simulation window
- Clone a project into a per-scenario working directory and apply a scenario

HEC-RAS text files are written back with their original line endings so that
preparing the same scenario twice gives byte-identical files.
"""
import glob
import json
import logging
import math
import os
import shutil
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple, Any

import numpy as np
import pandas as pd

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Constants
FIELD_WIDTH = 8
VALUES_PER_LINE = 10
ENCODING = 'latin-1'
DATE_FORMAT = '%d%b%Y,%H%M'
SCENARIO_FILE = 'scenario.json'
RESULT_PATTERNS = ('*.p[0-9][0-9].hdf', '*.p[0-9][0-9].tmp.hdf', '*.computeMsgs.txt',
                   '*.bco[0-9][0-9]', 'compute.log', 'status.json', SCENARIO_FILE)
# HEC-RAS interval tokens keyed by minutes
INTERVALS = {
    1: '1MIN', 2: '2MIN', 3: '3MIN', 4: '4MIN', 5: '5MIN', 6: '6MIN', 10: '10MIN',
    12: '12MIN', 15: '15MIN', 20: '20MIN', 30: '30MIN', 60: '1HOUR', 120: '2HOUR',
    180: '3HOUR', 240: '4HOUR', 360: '6HOUR', 480: '8HOUR', 720: '12HOUR',
    1440: '1DAY', 10080: '1WEEK',
}


# ---------------------------------------------------------------------------
# Line-oriented file access
# ---------------------------------------------------------------------------

def _read_lines(path: str) -> Tuple[List[str], str]:
    """Return lines without terminators and the file's line ending."""
    with open(path, 'r', encoding=ENCODING, newline='') as f:
        text = f.read()
    eol = '\r\n' if '\r\n' in text else '\n'
    lines = text.split(eol)
    if lines and lines[-1] == '':
        lines.pop()
    return lines, eol


def _write_lines(path: str, lines: Sequence[str], eol: str) -> None:
    with open(path, 'w', encoding=ENCODING, newline='') as f:
        f.write(eol.join(lines) + eol)


def _key_of(line: str) -> Optional[str]:
    if '=' not in line:
        return None
    return line.split('=', 1)[0].strip()


def read_key_values(path: str) -> Dict[str, List[str]]:
    """
    Collect every 'Key=Value' line of a HEC-RAS text file.

    Returns
    -------
    dict
        Key -> list of values in file order (keys such as 'Plan File' repeat)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"HEC-RAS file not found: {path}")
    lines, _ = _read_lines(path)
    values: Dict[str, List[str]] = {}
    for line in lines:
        key = _key_of(line)
        if key:
            values.setdefault(key, []).append(line.split('=', 1)[1].strip())
    return values


def set_key_value(path: str, key: str, value: str) -> int:
    """
    Replace every line starting with 'key=' (appended when absent).

    Returns
    -------
    int
        Number of lines replaced (0 when appended)
    """
    lines, eol = _read_lines(path)
    n = 0
    for i, line in enumerate(lines):
        if _key_of(line) == key:
            lines[i] = f"{key}={value}"
            n += 1
    if n == 0:
        lines.append(f"{key}={value}")
    _write_lines(path, lines, eol)
    return n


# ---------------------------------------------------------------------------
# Project structure
# ---------------------------------------------------------------------------

def find_project_file(project_dir: str, project_file: Optional[str] = None) -> str:
    """
    Return the HEC-RAS project (.prj) path.

    The first '*.prj' containing 'Proj Title=' is used when `project_file`
    is not given (GIS projection files share the extension).
    """
    if not os.path.isdir(project_dir):
        raise NotADirectoryError(f"Project directory not found: {project_dir}")
    if project_file:
        path = project_file if os.path.isabs(project_file) else os.path.join(project_dir, project_file)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Project file not found: {path}")
        return path

    for path in sorted(glob.glob(os.path.join(project_dir, '*.prj'))):
        with open(path, 'r', encoding=ENCODING) as f:
            head = f.read(4096)
        if 'Proj Title=' in head:
            return path
    raise FileNotFoundError(f"No HEC-RAS project file (*.prj with 'Proj Title=') in {project_dir}")


def list_project_files(prj_path: str) -> Dict[str, List[str]]:
    """
    List the plan, unsteady flow and geometry suffixes referenced by a project.

    Returns
    -------
    dict
        {'plans': ['p01', ...], 'flows': ['u01', ...], 'geometries': ['g01', ...]}
    """
    kv = read_key_values(prj_path)
    return {
        'plans': kv.get('Plan File', []),
        'flows': kv.get('Unsteady File', []),
        'geometries': kv.get('Geom File', []),
    }


def _sibling(prj_path: str, suffix: str) -> str:
    stem = os.path.splitext(prj_path)[0]
    return f"{stem}.{suffix}"


def resolve_plan(prj_path: str, plan: str = 'p01') -> Dict[str, str]:
    """
    Resolve plan, flow and results paths for one plan of a project.

    Raises
    ------
    KeyError
        If the project does not list the plan
    ValueError
        If the plan does not reference an unsteady flow file
    """
    plan = plan.lower()
    files = list_project_files(prj_path)
    if plan not in [p.lower() for p in files['plans']]:
        raise KeyError(f"Plan '{plan}' is not listed in {os.path.basename(prj_path)} "
                       f"(plans: {', '.join(files['plans']) or 'none'})")
    plan_path = _sibling(prj_path, plan)
    if not os.path.exists(plan_path):
        raise FileNotFoundError(f"Plan file not found: {plan_path}")

    flow = (read_key_values(plan_path).get('Flow File') or [''])[0].lower()
    if not flow.startswith('u'):
        raise ValueError(f"Plan {plan} uses flow file '{flow}'; only unsteady flow (u##) plans are supported")
    flow_path = _sibling(prj_path, flow)
    if not os.path.exists(flow_path):
        raise FileNotFoundError(f"Unsteady flow file not found: {flow_path}")

    return {
        'plan': plan,
        'plan_file': plan_path,
        'flow_file': flow_path,
        'results_file': plan_path + '.hdf',
    }


# ---------------------------------------------------------------------------
# Fixed-width values
# ---------------------------------------------------------------------------

def format_value(value: float, width: int = FIELD_WIDTH) -> str:
    """
    Render a number right-aligned in `width` characters.

    Integers print without decimals; other values keep as many decimals as
    fit; values that cannot fit use exponent notation.
    """
    v = float(value)
    if not math.isfinite(v):
        raise ValueError(f"Cannot write non-finite value {value!r}")

    text = None
    if v.is_integer() and len(str(int(v))) <= width:
        text = str(int(v))
    else:
        for decimals in range(width - 2, -1, -1):
            candidate = f"{v:.{decimals}f}"
            if len(candidate) <= width:
                text = candidate.rstrip('0').rstrip('.') if '.' in candidate else candidate
                break
        if text is None:
            for decimals in range(3, -1, -1):
                candidate = f"{v:.{decimals}E}"
                if len(candidate) <= width:
                    text = candidate
                    break
    if text is None or len(text) > width:
        raise ValueError(f"Value {value!r} does not fit in {width} characters")
    if text in ('-0', ''):
        text = '0'
    return text.rjust(width)


def format_fixed_width(values: Sequence[float], width: int = FIELD_WIDTH,
                       per_line: int = VALUES_PER_LINE) -> List[str]:
    """Lay values out `per_line` to a line, each `width` characters wide."""
    cells = [format_value(v, width) for v in values]
    return [''.join(cells[i:i + per_line]) for i in range(0, len(cells), per_line)]


def parse_fixed_width(lines: Sequence[str], count: int, width: int = FIELD_WIDTH) -> List[float]:
    """Read `count` numbers from fixed-width data lines."""
    values = []
    for line in lines:
        for start in range(0, len(line), width):
            chunk = line[start:start + width].strip()
            if chunk:
                values.append(float(chunk))
            if len(values) == count:
                return values
    if len(values) < count:
        raise ValueError(f"Expected {count} values, found {len(values)}")
    return values


# ---------------------------------------------------------------------------
# Unsteady flow hydrographs
# ---------------------------------------------------------------------------

def boundary_label(location: str) -> str:
    """'River   ,Reach  ,1000 ,,' -> 'River,Reach,1000'."""
    return ','.join(part.strip() for part in location.split(',') if part.strip())


def _scan_flow_blocks(lines: Sequence[str]) -> List[Dict[str, Any]]:
    blocks = []
    boundary = None
    interval_idx = None
    i = 0
    while i < len(lines):
        key = _key_of(lines[i])
        if key == 'Boundary Location':
            boundary = boundary_label(lines[i].split('=', 1)[1])
            interval_idx = None
        elif key == 'Interval':
            interval_idx = i
        elif key == 'Flow Hydrograph':
            count = int(float(lines[i].split('=', 1)[1].strip() or 0))
            n_lines = math.ceil(count / VALUES_PER_LINE)
            data = lines[i + 1:i + 1 + n_lines]
            blocks.append({
                'boundary': boundary,
                'interval': lines[interval_idx].split('=', 1)[1].strip() if interval_idx is not None else None,
                'interval_index': interval_idx,
                'header_index': i,
                'data_end': i + 1 + n_lines,
                'values': parse_fixed_width(data, count) if count else [],
            })
            i += 1 + n_lines
            continue
        i += 1
    return blocks


def read_flow_hydrographs(u_path: str) -> List[Dict[str, Any]]:
    """
    Read every flow hydrograph boundary of an unsteady flow file.

    Returns
    -------
    list[dict]
        [{'boundary': label, 'interval': '1HOUR', 'values': [...]}, ...]
    """
    if not os.path.exists(u_path):
        raise FileNotFoundError(f"Unsteady flow file not found: {u_path}")
    lines, _ = _read_lines(u_path)
    return [{k: b[k] for k in ('boundary', 'interval', 'values')} for b in _scan_flow_blocks(lines)]


def interval_string(hours: float) -> str:
    """HEC-RAS interval token for a time step in hours, e.g. 1.0 -> '1HOUR'."""
    minutes = hours * 60.0
    key = int(round(minutes))
    if key not in INTERVALS or not math.isclose(minutes, key, abs_tol=1e-6):
        raise ValueError(f"Interval of {hours} h has no HEC-RAS equivalent "
                         f"(valid minutes: {', '.join(str(m) for m in INTERVALS)})")
    return INTERVALS[key]


def coarsest_interval_within(hours: float) -> Optional[str]:
    """Largest HEC-RAS interval token not longer than `hours` (None when below 1MIN)."""
    fitting = [m for m in INTERVALS if m <= hours * 60.0 + 1e-4]
    return INTERVALS[max(fitting)] if fitting else None


def interval_hours(token: str) -> float:
    """Inverse of interval_string."""
    for minutes, name in INTERVALS.items():
        if name == token.strip().upper():
            return minutes / 60.0
    raise ValueError(f"Unknown HEC-RAS interval: {token}")


def resample_hydrograph(hydrograph: pd.DataFrame, step_hours: float) -> pd.DataFrame:
    """
    Linearly interpolate a hydrograph onto a regular grid of `step_hours`.

    The grid starts at the first time and covers the last time (the final
    point is extended to the next whole step with the last discharge).
    """
    if step_hours <= 0:
        raise ValueError(f"step_hours must be positive, got {step_hours}")
    t = hydrograph['time_hours'].to_numpy(dtype=float)
    q = hydrograph['discharge_cms'].to_numpy(dtype=float)
    n_steps = int(math.ceil((t[-1] - t[0]) / step_hours - 1e-9))
    grid = t[0] + step_hours * np.arange(n_steps + 1)
    return pd.DataFrame({
        'time_hours': grid,
        'discharge_cms': np.interp(grid, t, q),
    })


def _infer_step(hydrograph: pd.DataFrame) -> Optional[float]:
    dt = np.diff(hydrograph['time_hours'].to_numpy(dtype=float))
    if len(dt) and np.allclose(dt, dt[0], rtol=1e-6, atol=1e-9):
        return float(dt[0])
    return None


def set_flow_hydrograph(
    u_path: str,
    hydrograph: pd.DataFrame,
    boundary: Optional[str] = None,
    step_hours: Optional[float] = None
) -> Dict[str, Any]:
    """
    Replace the data of one flow hydrograph boundary.

    Parameters
    ----------
    u_path : str
        Unsteady flow file (.u##)
    hydrograph : pd.DataFrame
        Columns 'time_hours', 'discharge_cms'
    boundary : str, optional
        Text contained in the boundary label; first flow hydrograph when None
    step_hours : float, optional
        Output interval, which must be a HEC-RAS interval. Defaults to the
        hydrograph's own regular spacing (the coarsest HEC-RAS interval
        within it when the spacing has no token), otherwise the interval
        already in the file

    Returns
    -------
    dict
        {'boundary': label, 'interval': token, 'n_values': n}

    Raises
    ------
    ValueError
        If the file has no flow hydrograph or the match is ambiguous
    KeyError
        If no boundary matches `boundary`
    """
    lines, eol = _read_lines(u_path)
    blocks = _scan_flow_blocks(lines)
    if not blocks:
        raise ValueError(f"No 'Flow Hydrograph=' boundary in {u_path}")

    if boundary is None:
        block = blocks[0]
    else:
        matches = [b for b in blocks if b['boundary'] and boundary.lower() in b['boundary'].lower()]
        if not matches:
            labels = ', '.join(str(b['boundary']) for b in blocks)
            raise KeyError(f"Boundary '{boundary}' not found in {os.path.basename(u_path)} (available: {labels})")
        if len(matches) > 1:
            raise ValueError(f"Boundary '{boundary}' is ambiguous: {', '.join(b['boundary'] for b in matches)}")
        block = matches[0]

    if step_hours is not None:
        token = interval_string(step_hours)
    else:
        file_token = block['interval'] or '1HOUR'
        inferred = _infer_step(hydrograph)
        token = file_token if inferred is None else (coarsest_interval_within(inferred) or file_token)
        step_hours = interval_hours(token)
        if inferred is not None and not math.isclose(step_hours, inferred, rel_tol=1e-6):
            logger.warning(f"Hydrograph step of {inferred:g} h has no HEC-RAS interval; resampling to {token}")

    regular = resample_hydrograph(hydrograph, step_hours)
    values = regular['discharge_cms'].tolist()
    new_block = [f"Flow Hydrograph= {len(values)} "] + format_fixed_width(values)

    lines[block['header_index']:block['data_end']] = new_block
    if block['interval_index'] is not None:
        lines[block['interval_index']] = f"Interval={token}"
    else:
        lines.insert(block['header_index'], f"Interval={token}")

    _write_lines(u_path, lines, eol)
    logger.info(f"Wrote {len(values)} flow values at {token} to boundary "
                f"'{block['boundary']}' in {os.path.basename(u_path)}")
    return {'boundary': block['boundary'], 'interval': token, 'n_values': len(values)}


# ---------------------------------------------------------------------------
# Plan files
# ---------------------------------------------------------------------------

def parse_ras_datetime(text: str) -> datetime:
    """Parse 'DDMONYYYY,HHMM' (HEC-RAS allows '2400' for midnight)."""
    date_part, _, time_part = text.strip().partition(',')
    time_part = time_part.strip() or '0000'
    extra = timedelta(0)
    if time_part == '2400':
        time_part = '0000'
        extra = timedelta(days=1)
    try:
        return datetime.strptime(f"{date_part.strip()},{time_part}", DATE_FORMAT) + extra
    except ValueError:
        raise ValueError(f"Invalid HEC-RAS date '{text}', expected DDMONYYYY,HHMM")


def format_ras_datetime(value: datetime) -> str:
    return value.strftime(DATE_FORMAT).upper()


def simulation_date_string(start: str, duration_hours: float) -> str:
    """'01JAN2000,0000' + 48 h -> '01JAN2000,0000,03JAN2000,0000'."""
    if duration_hours <= 0:
        raise ValueError(f"Simulation duration must be positive, got {duration_hours}")
    begin = parse_ras_datetime(start)
    end = begin + timedelta(hours=float(duration_hours))
    return f"{format_ras_datetime(begin)},{format_ras_datetime(end)}"


def set_simulation_window(p_path: str, start: str, duration_hours: float) -> str:
    """Set 'Simulation Date=' in a plan file and return the new value."""
    value = simulation_date_string(start, duration_hours)
    set_key_value(p_path, 'Simulation Date', value)
    return value


# ---------------------------------------------------------------------------
# Scenario working copies
# ---------------------------------------------------------------------------

def clone_project(project_dir: str, dest_dir: str, exclude_results: bool = True) -> str:
    """
    Copy a project folder to `dest_dir`, replacing any previous copy.

    Result HDF files, compute logs and scenario markers are not copied when
    `exclude_results` is set.
    """
    src = os.path.abspath(project_dir)
    dst = os.path.abspath(dest_dir)
    if not os.path.isdir(src):
        raise NotADirectoryError(f"Project directory not found: {project_dir}")
    if dst == src or dst.startswith(src + os.sep):
        raise ValueError(f"Scenario directory {dest_dir} must not be inside the project directory")

    if os.path.exists(dst):
        shutil.rmtree(dst)
    ignore = shutil.ignore_patterns(*RESULT_PATTERNS) if exclude_results else None
    shutil.copytree(src, dst, ignore=ignore)
    return dst


def prepare_scenario(
    project_dir: str,
    scenario,
    work_dir: str,
    plan: str = 'p01',
    boundary: Optional[str] = None,
    simulation_start: str = '01JAN2000,0000',
    project_file: Optional[str] = None,
    step_hours: Optional[float] = None,
    output_interval: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create the working copy of a project for one scenario.

    Clones the project to '<work_dir>/<scenario_id>', writes the scenario
    hydrograph into the flow file used by `plan`, sets the plan title, short
    identifier and simulation window, and records 'scenario.json'.

    Parameters
    ----------
    project_dir : str
        Pristine HEC-RAS project folder
    scenario : Scenario
        Scenario to apply
    work_dir : str
        Parent folder of the scenario copies
    plan : str
        Plan suffix, e.g. 'p01'
    boundary : str, optional
        Flow hydrograph boundary to replace (first one when None)
    simulation_start : str
        'DDMONYYYY,HHMM'
    project_file : str, optional
        Project file name when the folder holds several
    step_hours : float, optional
        Flow interval written to the file
    output_interval : str, optional
        'Output Interval=' token for the plan, e.g. '15MIN'

    Returns
    -------
    dict
        Prepared scenario: scenario_id, return_period, project_dir,
        project_file, plan, plan_file, flow_file, results_file
    """
    sid = scenario.scenario_id
    src_prj = find_project_file(project_dir, project_file)
    scenario_dir = clone_project(project_dir, os.path.join(work_dir, sid))
    prj_path = os.path.join(scenario_dir, os.path.basename(src_prj))

    paths = resolve_plan(prj_path, plan)
    bc = set_flow_hydrograph(paths['flow_file'], scenario.hydrograph, boundary=boundary, step_hours=step_hours)

    set_key_value(paths['flow_file'], 'Flow Title', f"{sid} inflow")
    set_key_value(paths['plan_file'], 'Plan Title', f"{sid} plan")
    set_key_value(paths['plan_file'], 'Short Identifier', sid[:12])
    window = set_simulation_window(paths['plan_file'], simulation_start, scenario.duration_hours)
    if output_interval:
        token = output_interval.strip().upper()
        interval_hours(token)
        set_key_value(paths['plan_file'], 'Output Interval', token)

    prepared = {
        'scenario_id': sid,
        'return_period': float(scenario.return_period),
        'project_dir': scenario_dir,
        'project_file': prj_path,
        'plan': paths['plan'],
        'plan_file': paths['plan_file'],
        'flow_file': paths['flow_file'],
        'results_file': paths['results_file'],
        'boundary': bc['boundary'],
        'interval': bc['interval'],
        'simulation_date': window,
        'peak_discharge': float(scenario.peak_discharge),
    }
    with open(os.path.join(scenario_dir, SCENARIO_FILE), 'w') as f:
        json.dump(prepared, f, indent=2, sort_keys=True)

    logger.info(f"Prepared {sid} in {scenario_dir} ({window})")
    return prepared


def load_prepared(work_dir: str) -> List[Dict[str, Any]]:
    """Read every 'scenario.json' below `work_dir`, sorted by return period."""
    prepared = []
    for path in glob.glob(os.path.join(work_dir, '*', SCENARIO_FILE)):
        with open(path, 'r') as f:
            prepared.append(json.load(f))
    if not prepared:
        raise FileNotFoundError(f"No prepared scenarios found in {work_dir}")
    return sorted(prepared, key=lambda p: p['return_period'])
