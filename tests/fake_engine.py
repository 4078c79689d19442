"""
Stand-in for the hydraulic engine used by the executor and CLI tests.

Usage: fake_engine.py <project.prj> <plan suffix> [ok|fail|hang|noresult|errorlog]

'ok' writes '<project>.p##.hdf' with depths scaled by the peak inflow
divided by 30 (the base project's peak).
"""

import sys
import time

from agflood.ras_project import read_flow_hydrographs, resolve_plan
from ras_fixtures import make_plan_hdf

BASE_PEAK = 30.0


def main(argv):
    project, plan = argv[1], argv[2]
    mode = argv[3] if len(argv) > 3 else 'ok'
    paths = resolve_plan(project, plan)

    print("Starting Unsteady Flow Simulation")
    if mode == 'hang':
        time.sleep(60)
    if mode == 'fail':
        print("ERROR: Unsteady computations failed at 01JAN2000 0300")
        return 3
    if mode == 'noresult':
        print("Complete Process")
        return 0

    peak = max(read_flow_hydrographs(paths['flow_file'])[0]['values'])
    make_plan_hdf(paths['results_file'], scale=peak / BASE_PEAK)
    if mode == 'errorlog':
        print("Error: matrix solution went unstable")
    print("Finished Unsteady Flow Simulation")
    print("Complete Process")
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
