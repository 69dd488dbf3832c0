"""
Integrate pool masses forward in time, ``dx/dt = A(t, x) x + u(t)``.

Decay rates of different pools commonly span several orders of magnitude,
so only solvers that cope with stiff systems are accepted.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd
import scipy.optimize
from scipy.integrate import solve_ivp
from loguru import logger

from tracer_pool_models.config import get_solver_options
from tracer_pool_models.errors import (
    InvalidConfiguration, IntegrationFailure, warn_degenerate
)
from tracer_pool_models.utils import as_time_grid


__all__ = [
    'Trajectory',
    'integrate',
    'solve',
    'spin_up',
    'find_steady_state',
    'STIFF_METHODS'
]


STIFF_METHODS = ('LSODA', 'BDF', 'Radau')


class Trajectory:
    """
    Pool masses (and optionally isotope masses) on a time grid.

    Attributes
    ----------
    times : numpy.ndarray of shape (ntimes,)
    mass : numpy.ndarray of shape (ntimes, npools)
    isotope_mass : numpy.ndarray of shape (ntimes, npools) or None
    pool_names : list of str
    """

    def __init__(self, times, mass, pool_names, isotope_mass=None):
        self.times = np.asarray(times, dtype=np.float64)
        self.mass = np.asarray(mass, dtype=np.float64)
        self.isotope_mass = None if isotope_mass is None \
            else np.asarray(isotope_mass, dtype=np.float64)
        self.pool_names = list(pool_names)
        for arr in (self.times, self.mass, self.isotope_mass):
            if arr is not None:
                arr.setflags(write=False)

    @property
    def total_mass(self):
        return self.mass.sum(axis=1)

    @property
    def total_isotope_mass(self):
        if self.isotope_mass is None:
            return None
        return self.isotope_mass.sum(axis=1)

    @property
    def final_state(self):
        return self.mass[-1].copy()

    def to_frame(self):
        """Mass of each pool, and isotope mass in columns `<pool>_iso`."""
        df = pd.DataFrame(self.mass, index=pd.Index(self.times, name='time'),
            columns=self.pool_names)
        if self.isotope_mass is not None:
            iso = pd.DataFrame(self.isotope_mass, index=df.index,
                columns=[p + '_iso' for p in self.pool_names])
            df = pd.concat([df, iso], axis=1)
        return df

    def __len__(self):
        return len(self.times)

    def __repr__(self):
        iso = '' if self.isotope_mass is None else ' with isotopes'
        return (self.__class__.__name__ + f'({len(self.times)} times'
            f' {self.times[0]}..{self.times[-1]}, {len(self.pool_names)}'
            f' pools{iso})')



class _EvaluationBudgetExhausted(Exception):
    pass


def _options(overrides):
    options = get_solver_options()
    for name, value in overrides.items():
        if value is not None:
            options[name] = value
    if options['method'] not in STIFF_METHODS:
        raise InvalidConfiguration(
            f'Solver method "{options["method"]}" is not suited for stiff'
            f' systems, use one of {STIFF_METHODS}')
    return options


def solve(rhs, y0, times, jac=None, *, method=None, rtol=None, atol=None,
        max_step=None, max_evaluations=None, cancel=None):
    """
    Solve ``dy/dt = rhs(t, y)`` and return `y` at every time of `times`.
    Options left as `None` are taken from the ``[solver]`` configuration.

    Parameters
    ----------
    rhs : callable
        ``rhs(t, y) -> dy/dt``
    y0 : numpy.ndarray
        State at ``times[0]``
    times : array_like
        Strictly increasing output times, not necessarily uniform
    jac : callable, optional
        ``jac(t, y) -> d(rhs)/dy``
    cancel : CancellationFlag, optional
        Checked at every evaluation of `rhs`

    Returns
    -------
    numpy.ndarray of shape (len(times), len(y0))

    Raises
    ------
    IntegrationFailure
        Solver failed, evaluation budget exhausted, or non-finite result
    """
    options = _options(dict(method=method, rtol=rtol, atol=atol,
        max_step=max_step, max_evaluations=max_evaluations))
    times = as_time_grid(times)
    y0 = np.asarray(y0, dtype=np.float64)

    if len(times) == 1:
        return y0[np.newaxis, :].copy()

    budget = options['max_evaluations']
    nfev = 0

    def fun(t, y):
        nonlocal nfev
        nfev += 1
        if nfev > budget:
            raise _EvaluationBudgetExhausted
        if cancel is not None:
            cancel.check()
        return rhs(t, y)

    kwargs = {} if jac is None else {'jac': jac}

    try:
        sol = solve_ivp(fun, (times[0], times[-1]), y0,
            method=options['method'], t_eval=times, rtol=options['rtol'],
            atol=options['atol'], max_step=options['max_step'], **kwargs)
    except _EvaluationBudgetExhausted:
        raise IntegrationFailure(
            f'Solver exceeded the budget of {budget} evaluations'
            f' between t={times[0]} and t={times[-1]}') from None

    if not sol.success:
        raise IntegrationFailure(
            f'Solver {options["method"]} failed: {sol.message}',
            status=sol.status)

    y = sol.y.T
    if y.shape[0] != len(times) or not np.all(np.isfinite(y)):
        raise IntegrationFailure('Solver returned an incomplete or'
            ' non-finite solution', status=sol.status)

    logger.debug(f'Solved {len(y0)} ODEs with {options["method"]} from'
        f' t={times[0]} to t={times[-1]} in {nfev} evaluations')
    return y


def _check_state(x0, model):
    x0 = np.asarray(x0, dtype=np.float64)
    if x0.shape != (model.n_pools,):
        raise InvalidConfiguration(
            f'Initial state has shape {x0.shape} but {model} has'
            f' {model.n_pools} pools')
    if not np.all(np.isfinite(x0)) or np.any(x0 < 0):
        raise InvalidConfiguration(f'Bad initial state {x0}')
    return x0


def _check_nonnegative(mass, what='pool mass'):
    scale = max(np.abs(mass).max(), 1.)
    if mass.min() < -1e-6 * scale:
        warn_degenerate(f'Negative {what} in solution: min {mass.min():.3g}')


def mass_rhs(model):
    """Right-hand side and Jacobian (or `None`) of the mass ODEs."""
    if model.is_linear:
        def rhs(t, x):
            return model.matrix(t) @ x + model.input_vector(t)
        def jac(t, x):
            return model.matrix(t)
    else:
        def rhs(t, x):
            return model.matrix(t, x) @ x + model.input_vector(t)
        jac = None
    return rhs, jac


def integrate(model, times, x0=None, **options):
    """
    Pool masses of `model` at each of `times`.

    Parameters
    ----------
    model : MatrixModel
    times : array_like
        Strictly increasing output times; the run starts at ``times[0]``
    x0 : array_like, optional
        Masses at ``times[0]``. Default: ``model.initial_mass``
    **options
        `method`, `rtol`, `atol`, `max_step`, `max_evaluations`,
        `cancel`, see :py:func:`solve`

    Returns
    -------
    Trajectory

    Raises
    ------
    IntegrationFailure
    """
    x0 = _check_state(model.initial_state() if x0 is None else x0, model)
    times = as_time_grid(times)
    rhs, jac = mass_rhs(model)
    mass = solve(rhs, x0, times, jac, **options)
    _check_nonnegative(mass)
    return Trajectory(times, mass, model.pool_names)


def find_steady_state(func, x0, bounds=(None, None), name='x'):
    """
    Find a steady state solution `x` such that `func(x) = 0` with
    first guess `x0`. First try with `scipy.optimize.fsolve(func, x0)`,
    but if that fails or the result is out of bounds, then try again with
    `scipy.optimize.least_squares(func, x0, bounds=bounds)`.

    Parameters
    ----------
    func
        function taking a vector as its sole argument and returning
        a vector of same length
    x0 : np.ndarray
        first guess for the steady state solution
    bounds : (lo, hi), default (None, None)
        lower and upper bounds of the solution vector; `lo` and `hi` can
        be `None`, scalar, or np.ndarray vector with length of `x0`
    name : str, default 'x'
        name of the quantity for which to find a steady state

    Returns
    -------
    x : np.ndarray
        steady state solution vector
    success : bool
        whether `x` is a good steady state solution
    """

    lo, hi = bounds
    x, _, ier, _ = scipy.optimize.fsolve(func, x0, full_output=True)
    success = ier == 1 and (lo is None or all(x >= lo)) \
        and (hi is None or all(x <= hi))

    if not success:
        logger.debug(
            f'scipy.optimize.fsolve failed to find steady state of {name}.'
            ' Falling back to scipy.optimize.least_squares.'
        )
        ls_bounds = (
            -np.inf if lo is None else lo,
            np.inf if hi is None else hi
        )
        x0 = np.clip(x0, *ls_bounds)
        sol = scipy.optimize.least_squares(func, x0, bounds=ls_bounds)
        x = sol.x
        success = sol.success

        if not success:
            logger.warning(
                f'scipy.optimize.least_squares failed to find {name}'
                f' steady state. STATUS: {sol.status}. MESSAGE: {sol.message}'
            )

    return x, success


def spin_up(model, t_ref=0., spinup=None, **options):
    """
    Initial state in equilibrium with the forcing at time `t_ref`.

    Linear models: ``-A^{-1} u`` (raises :py:class:`SingularSystemMatrix`).
    Non-linear models: root of the mass balance, and if no root is found,
    the state after integrating the frozen forcing for `spinup` time units
    (default: ten times the slowest turnover time).
    """
    if model.is_linear:
        return model.steady_state(t_ref)

    A0 = model.matrix
    u = model.input_vector(t_ref)
    func = lambda x: A0(t_ref, x) @ x + u

    x0 = model.initial_state()
    if not np.any(x0 > 0):
        x0 = np.ones(model.n_pools)
    x, success = find_steady_state(func, x0, bounds=(0, None), name='mass')
    if success:
        return x

    if spinup is None:
        positive = model.decay_rates[model.decay_rates > 0]
        spinup = 10. / positive.min() if len(positive) else 1000.
    logger.warning(f'Spinning up {model} for {spinup:.4g} time units instead')

    frozen = lambda t, x: func(x)
    mass = solve(frozen, x0, [t_ref - spinup, t_ref], **options)
    return mass[-1]
