"""
Methods for running scenarios, in parallel, and comparing their output
to observations.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import multiprocessing
import numpy as np
import pandas as pd
from loguru import logger

from tracer_pool_models.errors import TracerModelError


__all__ = [
    'run_scenario',
    'run_all_scenarios',
    'get_results',
    'get_bias_and_rmse'
]


def run_scenario(data, datasets=None, *, force_rerun=False):
    """
    Parameters
    ----------
    data : PoolModelData
        scenario to run
    datasets : list of str or 'all', optional
        datasets to compute; default: ``['output']``, plus ``['predicted',
        'observed', 'error']`` if the scenario has observations;
        'all': every dataset the scenario has the inputs for
    force_rerun : bool, default False
        if True, empty the cache and compute all datasets again

    Returns
    -------
    data : PoolModelData
        the same scenario, with `datasets` cached
    success : bool
        whether the scenario run was successful
    """

    if datasets is None:
        datasets = ['output']
        if data.observations is not None:
            datasets += ['predicted', 'observed', 'error']
    elif datasets == 'all':
        datasets = data.available_datasets()

    if force_rerun:
        data.purge_cache()

    logger.info(f'Running {data}.')
    try:
        for ds in datasets:
            data.get(ds)
    except TracerModelError as e:
        logger.exception(e)
        logger.error(f'Failed to run {data}.')
        success = False
    else:
        logger.success(f'Finished running {data}.')
        success = True

    return data, success


def _run_scenario_for_multiprocessing(args):
    data, kwargs = args
    return run_scenario(data, **kwargs)


def run_all_scenarios(scenarios, njobs=1, **kwargs):
    """
    Run all `scenarios` on `njobs` CPU cores. With ``njobs > 1``, the
    scenarios (and their models) must be picklable.

    Returns
    -------
    list of (PoolModelData, bool)
        Scenarios with their computed datasets, and success flags
    """

    if njobs == 1: # run on 1 core
        return [run_scenario(data, **kwargs) for data in scenarios]

    list_of_args = [(data, kwargs) for data in scenarios]
    with multiprocessing.Pool(njobs) as pool:
        return pool.map(_run_scenario_for_multiprocessing, list_of_args)


def get_results(data, success=True):
    """Predicted values and errors of a scenario run, or frames of the
    right shape filled with NaN if the run failed."""
    if success:
        predicted = data.predicted
        error = data.error
    else:
        observed = data.observed
        columns = [c for c in ('mass', 'delta') if c in observed.columns]
        predicted = pd.DataFrame(columns=columns, index=observed.index,
            dtype='float')
        error = pd.DataFrame(columns=columns, index=observed.index,
            dtype='float')
    return predicted, error


def get_bias_and_rmse(error):
    """
    Parameters
    ----------
    error : dict
        Error (predicted minus observed) of each scenario, by name

    Returns
    -------
    bias, rmse : pandas.DataFrame
        One column per scenario plus their `average`, one row per variable
    """
    columns = list(error)
    index = pd.Index(['mass', 'delta'])
    bias = pd.DataFrame(columns=columns, index=index, dtype='float')
    rmse = pd.DataFrame(columns=columns, index=index, dtype='float')
    for name, err in error.items():
        bias[name] = err.mean(axis=0)
        rmse[name] = np.sqrt((err * err).mean(axis=0))
    bias['average'] = bias.mean(axis=1)
    rmse['average'] = rmse.mean(axis=1)
    return bias, rmse
