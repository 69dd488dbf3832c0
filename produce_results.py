"""
Run the scenarios of model configuration files, and write tables of
their results.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import argparse
import multiprocessing
from pathlib import Path

from tracer_pool_models import PoolModelData
from tracer_pool_models.scenarios import (
    run_all_scenarios,
    get_results,
    get_bias_and_rmse
)
from tracer_pool_models.path import DUMPPATH


TABLEPATH = DUMPPATH / 'tables'


if __name__ == '__main__': # if-condition necessary when multiprocessing

    multiprocessing.freeze_support() # may be necessary on Windows (not tested)

    parser = argparse.ArgumentParser(
        prog='python -m produce_results',
        description='Run scenarios of model configuration files,'
            ' produce result tables',
        epilog=''
    )
    parser.add_argument('configs', nargs='+', metavar='CONFIG',
        help='model configuration file(s) with [model] and [grid] sections'
    )
    parser.add_argument('-njobs',
        help='number of CPU cores on which to run the scenarios in parallel'
    )
    parser.add_argument('-tables', metavar='DIR',
        help=f'directory of the result tables (default: {TABLEPATH})'
    )

    cmdline_arguments = parser.parse_args()
    njobs = cmdline_arguments.njobs
    njobs = 1 if njobs is None else int(njobs)
    tablepath = TABLEPATH if cmdline_arguments.tables is None \
        else Path(cmdline_arguments.tables)

    scenarios = [PoolModelData.from_config(c) for c in cmdline_arguments.configs]

    if njobs > 1:
        print(f'Running scenarios in parallel with njobs={njobs}')
    results = run_all_scenarios(scenarios, njobs=njobs, datasets='all')

    #############################
    ### PRODUCE RESULT TABLES ###
    #############################

    error = {}

    for data, success in results:
        path = tablepath / data.name
        if success:
            for ds in data.available_datasets():
                if ds not in ('predicted', 'observed', 'error'):
                    data.to_csv(ds, path / f'{ds}.csv')
        if data.observations is not None:
            # NaN predictions for failed scenarios
            predicted, error[data.name] = get_results(data, success)
            path.mkdir(parents=True, exist_ok=True)
            predicted.to_csv(path / 'predicted.csv')

    if error:
        bias, rmse = get_bias_and_rmse(error)
        bias.to_csv(tablepath / 'all_bias.csv', float_format='%.3g')
        rmse.to_csv(tablepath / 'all_rmse.csv', float_format='%.3g')

    failed = [data.name for data, success in results if not success]
    if failed:
        print(f'Failed scenarios: {failed}')
