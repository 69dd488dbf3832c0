"""
Age and transit-time distributions of a pool model in steady state,
following Metzler & Sierra (2018) and Sierra et al. (2018):

* system age density ``f(a) = z^T exp(A a) eta``
* pool age densities ``f_i(a) = (exp(A a) u)_i / x*_i``
* transit-time density ``f(a) = z^T exp(A a) beta``

where ``z^T = -1^T A`` is the release rate of each pool,
``x* = -A^{-1} u`` the steady-state masses, ``eta = x* / sum(x*)`` and
``beta = u / sum(u)``.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd
import scipy.linalg
import scipy.optimize
from loguru import logger

from tracer_pool_models.builder import steady_state_mass
from tracer_pool_models.errors import InvalidConfiguration, warn_degenerate
from tracer_pool_models.integrator import spin_up
from tracer_pool_models.utils import as_time_grid, trapezoid_weights


__all__ = [
    'linearize',
    'system_age_density',
    'pool_age_density',
    'transit_time_density',
    'mean_system_age',
    'mean_pool_ages',
    'mean_transit_time',
    'system_age_quantile',
    'transit_time_quantile',
    'summarize',
    'AgeDistribution',
    'age_distributions'
]


DEFAULT_QUANTILES = (0.05, 0.5, 0.95)


def linearize(model, t_ref=0., x=None):
    """
    Transfer-rate matrix and input vector of `model` frozen at `t_ref`.
    Non-linear models are linearized around `x`, by default their
    steady state at `t_ref`.
    """
    if model.is_linear:
        A = model.matrix(t_ref)
    else:
        if x is None:
            x = spin_up(model, t_ref)
        A = model.matrix(t_ref, x)
    return A, model.input_vector(t_ref)


def _check_system(A, u):
    A = np.asarray(A, dtype=np.float64)
    u = np.asarray(u, dtype=np.float64)
    n = len(u)
    if u.ndim != 1 or A.shape != (n, n):
        raise InvalidConfiguration(
            f'Incompatible shapes of A {A.shape} and u {u.shape}')
    if not u.sum() > 0:
        raise InvalidConfiguration('Age distributions need a positive input')
    return A, u


def _check_ages(ages):
    ages = as_time_grid(ages, 'ages')
    if ages[0] < 0:
        raise InvalidConfiguration('`ages` must be non-negative')
    return ages


class _Propagator:
    """Apply ``exp(A a)`` to a vector for many ages `a`."""

    def __init__(self, A):
        self.A = A
        self.eigen = None
        w, V = np.linalg.eig(A)
        with np.errstate(all='ignore'):
            cond = np.linalg.cond(V)
        if np.isfinite(cond) and cond < 1 / np.sqrt(np.finfo(np.float64).eps):
            self.eigen = w, V, np.linalg.inv(V)
        else:
            logger.debug('Transfer-rate matrix is not well diagonalizable,'
                ' using scipy.linalg.expm for each age')

    def __call__(self, ages, vec):
        """``exp(A a) vec`` for each of `ages`, shape (nages, n)."""
        if self.eigen is None:
            return np.array([scipy.linalg.expm(self.A * a) @ vec for a in ages])
        w, V, Vinv = self.eigen
        coeffs = Vinv @ vec
        return np.real((np.exp(np.outer(ages, w)) * coeffs) @ V.T)


def _check_density(density, name):
    scale = max(np.abs(density).max(), 1e-300)
    if density.min() < -1e-8 * scale:
        warn_degenerate(f'Negative {name} density: min {density.min():.3g}')


def system_age_density(A, u, ages, mass=None):
    """
    Density of the age of mass in the system, at each of `ages`.

    Parameters
    ----------
    A : array_like of shape (n, n)
    u : array_like of shape (n,)
    ages : array_like
        Strictly increasing non-negative ages
    mass : array_like of shape (n,), optional
        Mass distribution over pools. Default: steady state ``-A^{-1} u``

    Raises
    ------
    SingularSystemMatrix
    """
    A, u = _check_system(A, u)
    ages = _check_ages(ages)
    x = steady_state_mass(A, u) if mass is None \
        else np.asarray(mass, dtype=np.float64)
    eta = x / x.sum()
    z = -A.sum(axis=0)
    density = _Propagator(A)(ages, eta) @ z
    _check_density(density, 'system age')
    return density


def pool_age_density(A, u, ages):
    """Age density of each pool, shape (nages, npools). Pools without
    steady-state mass have undefined densities, returned as NaN."""
    A, u = _check_system(A, u)
    ages = _check_ages(ages)
    x = steady_state_mass(A, u)
    empty = ~(x > 0)
    if np.any(empty):
        logger.warning(f'Pools {np.nonzero(empty)[0].tolist()} have no'
            ' steady-state mass, their age density is undefined')
    density = _Propagator(A)(ages, u) / np.where(empty, np.nan, x)
    _check_density(density[:, ~empty], 'pool age')
    return density


def transit_time_density(A, u, ages):
    """Density of the time that mass leaving the system spent in it."""
    A, u = _check_system(A, u)
    ages = _check_ages(ages)
    steady_state_mass(A, u) # singular check
    beta = u / u.sum()
    z = -A.sum(axis=0)
    density = _Propagator(A)(ages, beta) @ z
    _check_density(density, 'transit time')
    return density


def mean_system_age(A, u):
    A, u = _check_system(A, u)
    x = steady_state_mass(A, u)
    return steady_state_mass(A, x).sum() / x.sum()


def mean_pool_ages(A, u):
    A, u = _check_system(A, u)
    x = steady_state_mass(A, u)
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(x > 0, steady_state_mass(A, x) / x, np.nan)


def mean_transit_time(A, u):
    A, u = _check_system(A, u)
    return steady_state_mass(A, u).sum() / u.sum()


def _quantile(A, weights, q, mean):
    """Root of ``1 - 1^T exp(A a) weights = q`` by Brent's method."""
    q = float(q)
    if not 0 <= q < 1:
        raise InvalidConfiguration(f'Quantile must be in [0, 1), got {q}')
    if q == 0:
        return 0.

    def excess(a):
        return 1 - (scipy.linalg.expm(A * a) @ weights).sum() - q

    hi = max(mean, np.finfo(np.float64).eps)
    for _ in range(200):
        if excess(hi) >= 0:
            break
        hi *= 2
    else:
        raise InvalidConfiguration(f'Cannot bracket quantile {q}')
    return scipy.optimize.brentq(excess, 0., hi, xtol=1e-10 * hi, rtol=1e-12)


def system_age_quantile(A, u, q):
    """Exact quantile `q` of the steady-state system age."""
    A, u = _check_system(A, u)
    x = steady_state_mass(A, u)
    return _quantile(A, x / x.sum(), q, mean_system_age(A, u))


def transit_time_quantile(A, u, q):
    """Exact quantile `q` of the steady-state transit time."""
    A, u = _check_system(A, u)
    return _quantile(A, u / u.sum(), q, mean_transit_time(A, u))


def _cumulative(ages, density):
    steps = np.diff(ages) * (density[1:] + density[:-1]) / 2
    return np.concatenate([[0.], np.cumsum(steps)])


def _interpolate_quantile(ages, cdf, q):
    i = np.searchsorted(cdf, q, side='left')
    if i == 0:
        return ages[0]
    lo, hi = cdf[i-1], cdf[i]
    return ages[i-1] + (q - lo) / (hi - lo) * (ages[i] - ages[i-1])


def summarize(ages, density, quantiles=DEFAULT_QUANTILES):
    """
    Mean and quantiles of a density sampled on `ages`.

    The cumulative distribution is integrated with the trapezoid rule.
    A quantile is interpolated linearly between the two samples whose
    cumulative probabilities bracket it. Where the age axis does not
    reach the requested probability, the quantile is NaN and a warning
    is issued. The mean is taken over the part of the distribution
    covered by the axis.

    Returns
    -------
    mean : float
    quantile_values : numpy.ndarray
    mass_fraction : float
        Integral of the density over `ages`
    """
    ages = _check_ages(ages)
    density = np.asarray(density, dtype=np.float64)
    if density.shape != ages.shape:
        raise InvalidConfiguration(
            f'Density has shape {density.shape}, expected {ages.shape}')

    mass_fraction = trapezoid_weights(ages) @ density
    cdf = _cumulative(ages, density)
    mean = (trapezoid_weights(ages) @ (ages * density)) / mass_fraction

    values = []
    for q in np.atleast_1d(quantiles):
        if not 0 <= q <= 1:
            raise InvalidConfiguration(f'Quantile must be in [0, 1], got {q}')
        if q > cdf[-1]:
            warn_degenerate(f'Age axis up to {ages[-1]} holds only'
                f' {cdf[-1]:.4g} of the distribution, quantile {q} undefined')
            values.append(np.nan)
        else:
            values.append(_interpolate_quantile(ages, cdf, q))

    return mean, np.array(values), mass_fraction



class AgeDistribution:
    """
    Age (or transit-time) density on an age axis, with summaries.

    Attributes
    ----------
    ages, density : numpy.ndarray
    pool_density : numpy.ndarray of shape (nages, npools) or None
    quantiles : numpy.ndarray
        Requested probabilities
    mean : float
        Numerical mean over the axis
    quantile_values : numpy.ndarray
    mass_fraction : float
        Share of the distribution covered by the axis
    exact_mean : float or None
        Analytic mean, when known
    """

    def __init__(self, ages, density, kind='system age', pool_density=None,
            pool_names=None, quantiles=DEFAULT_QUANTILES, exact_mean=None):
        self.kind = kind
        self.ages = _check_ages(ages)
        self.density = np.asarray(density, dtype=np.float64)
        self.pool_density = None if pool_density is None \
            else np.asarray(pool_density, dtype=np.float64)
        self.pool_names = pool_names
        self.quantiles = np.atleast_1d(np.asarray(quantiles, dtype=np.float64))
        self.exact_mean = exact_mean
        self.mean, self.quantile_values, self.mass_fraction = \
            summarize(self.ages, self.density, self.quantiles)

    def quantile(self, q):
        return summarize(self.ages, self.density, [q])[1][0]

    def summary(self):
        index = ['mean', 'mass_fraction'] + [f'q{q:g}' for q in self.quantiles]
        values = [self.mean, self.mass_fraction, *self.quantile_values]
        return pd.Series(values, index=index, name=self.kind)

    def to_frame(self):
        df = pd.DataFrame({'density': self.density},
            index=pd.Index(self.ages, name='age'))
        if self.pool_density is not None:
            names = self.pool_names or [
                f'pool{i+1}' for i in range(self.pool_density.shape[1])]
            for j, pool in enumerate(names):
                df[pool] = self.pool_density[:, j]
        return df

    def __repr__(self):
        return (self.__class__.__name__ + f'({self.kind}, mean={self.mean:.4g},'
            f' {len(self.ages)} ages {self.ages[0]}..{self.ages[-1]})')



def age_distributions(model, ages, t_ref=0., quantiles=DEFAULT_QUANTILES,
        x=None):
    """
    Steady-state system age (with pool ages) and transit-time
    distributions of `model` frozen at `t_ref`.

    Returns
    -------
    dict
        `'age'` and `'transit_time'` :py:class:`AgeDistribution`

    Raises
    ------
    SingularSystemMatrix
    """
    A, u = linearize(model, t_ref, x)
    age = AgeDistribution(
        ages, system_age_density(A, u, ages), 'system age',
        pool_density=pool_age_density(A, u, ages),
        pool_names=model.pool_names, quantiles=quantiles,
        exact_mean=mean_system_age(A, u))
    transit_time = AgeDistribution(
        ages, transit_time_density(A, u, ages), 'transit time',
        quantiles=quantiles, exact_mean=mean_transit_time(A, u))
    if age.mass_fraction < 0.99:
        logger.warning(f'Age axis of {model} covers only'
            f' {age.mass_fraction:.3g} of the system age distribution')
    return {'age': age, 'transit_time': transit_time}
