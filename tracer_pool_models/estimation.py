"""
Estimate model parameters from observed mass and signature time series.

A :py:class:`CostFunction` composes model building, integration and
derived signatures into a pure function of a parameter vector. It is
minimized with bounded least squares (:py:func:`fit`) and explored with
a random-walk Metropolis sampler (:py:func:`sample`). Parameter vectors
outside the box constraints are never evaluated.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import multiprocessing
import numpy as np
import pandas as pd
import scipy.optimize
from loguru import logger

from tracer_pool_models.config import get_estimation_options, get_mcmc_options
from tracer_pool_models.derived import delta
from tracer_pool_models.errors import (
    InvalidConfiguration, IntegrationFailure, SingularSystemMatrix,
    FitDidNotConverge, UndefinedRatio
)
from tracer_pool_models.integrator import integrate, spin_up
from tracer_pool_models.source_curve import decimal_years


__all__ = [
    'Observations',
    'CostFunction',
    'fit',
    'FitResult',
    'sample',
    'MCMCResult',
    'sample_chains',
    'gelman_rubin',
    'evaluate_candidates'
]


OUT_OF_BOUNDS_POLICIES = ('reject', 'reflect')


def _as_series(data, name):
    if data is None:
        return None
    if isinstance(data, pd.Series):
        series = data.copy()
    else:
        times, values = data
        series = pd.Series(np.asarray(values), index=np.asarray(times))
    if isinstance(series.index, pd.DatetimeIndex):
        series.index = decimal_years(series.index)
    series = series.astype('float').dropna()
    series.index = pd.Index(np.asarray(series.index, dtype='float'), name='time')
    series.name = name
    if not len(series):
        raise InvalidConfiguration(f'No valid {name} observations')
    return series.sort_index()


def _scale(series, sd, name):
    if series is None:
        return None
    if sd is None:
        sd = series.std(ddof=1) if len(series) > 1 else np.nan
    sd = np.broadcast_to(np.asarray(sd, dtype=np.float64), series.shape)
    if not np.all(np.isfinite(sd)) or np.any(sd <= 0):
        logger.warning(f'Standard deviation of {name} observations is'
            ' undefined or zero, using 1 instead')
        sd = np.ones(series.shape)
    return sd



class Observations:
    """
    Observed total mass and system signature over time. The two series
    have independent time supports.

    Parameters
    ----------
    mass, delta : pandas.Series or (times, values), optional
        Observed values indexed by time (decimal time, or dates)
    mass_sd, delta_sd : float or array_like, optional
        Scale of the residuals of each series.
        Default: sample standard deviation of the series
    """

    def __init__(self, mass=None, delta=None, mass_sd=None, delta_sd=None):
        self.mass = _as_series(mass, 'mass')
        self.delta = _as_series(delta, 'delta')
        if self.mass is None and self.delta is None:
            raise InvalidConfiguration('Need mass or delta observations')
        self.mass_sd = _scale(self.mass, mass_sd, 'mass')
        self.delta_sd = _scale(self.delta, delta_sd, 'delta')

    @classmethod
    def read_csv(cls, path, time_column, mass_column=None, delta_column=None,
            *, read_kw=None, **kwargs):
        """Observations from the columns of one table; rows missing a
        value are dropped from that series only."""
        df = pd.read_csv(path, **(read_kw or {}))
        def column(name):
            if name is None:
                return None
            return df.set_index(time_column)[name]
        return cls(column(mass_column), column(delta_column), **kwargs)

    @property
    def times(self):
        """Sorted unique times of all observations."""
        series = [s for s in (self.mass, self.delta) if s is not None]
        return np.unique(np.concatenate([s.index.values for s in series]))

    def __len__(self):
        return sum(len(s) for s in (self.mass, self.delta) if s is not None)

    def residuals(self, mass=None, delta=None):
        """Scaled residuals `(predicted - observed) / sd`, mass first."""
        parts = []
        if self.mass is not None:
            parts.append((np.asarray(mass) - self.mass.values) / self.mass_sd)
        if self.delta is not None:
            parts.append((np.asarray(delta) - self.delta.values) / self.delta_sd)
        return np.concatenate(parts)

    def to_frame(self):
        return pd.concat([s for s in (self.mass, self.delta) if s is not None],
            axis=1).sort_index()

    def __repr__(self):
        n = lambda s: 0 if s is None else len(s)
        return (self.__class__.__name__ +
            f'({n(self.mass)} mass, {n(self.delta)} delta)')



class CostFunction:
    """
    Weighted sum of squared residuals of a model against observations.

    Parameters
    ----------
    model_factory : callable
        ``model_factory(**parameters) -> MatrixModel``. Must be picklable
        (e.g. a module-level function) to evaluate in a process pool.
    observations : Observations
    names : list of str
        Names of the parameters, in the order of the parameter vector
    bounds : (lo, hi)
        Lower and upper bounds, scalars or vectors; use `numpy.inf` for
        unbounded parameters
    coupler : IsotopeCoupler, optional
        Required to compare with delta observations
    t_start : float, optional
        Start of the simulation. Default: first observation time
    spinup : bool, default True
        Start in steady state with the forcing at `t_start`; otherwise
        start from the initial state of the model
    record : bool, default True
        Keep every evaluated parameter vector in :py:attr:`history`
    solver_options : dict, optional
        Passed on to the integrator
    """

    def __init__(self, model_factory, observations, names, bounds,
            coupler=None, t_start=None, spinup=True, record=True,
            solver_options=None):

        self.model_factory = model_factory
        self.observations = observations
        self.names = list(names)
        d = len(self.names)

        lo, hi = bounds
        lo = np.broadcast_to(np.asarray(lo, dtype=np.float64), (d,)).copy()
        hi = np.broadcast_to(np.asarray(hi, dtype=np.float64), (d,)).copy()
        if np.any(np.isnan(lo)) or np.any(np.isnan(hi)) or np.any(lo >= hi):
            raise InvalidConfiguration(f'Bad parameter bounds {lo}, {hi}')
        self.bounds = (lo, hi)

        if observations.delta is not None and coupler is None:
            raise InvalidConfiguration(
                'Delta observations need an IsotopeCoupler')
        self.coupler = coupler

        times = observations.times
        if t_start is None:
            t_start = times[0]
        if t_start > times[0]:
            raise InvalidConfiguration(
                f'Simulation starts at {t_start}, after the first'
                f' observation at {times[0]}')
        self.t_start = float(t_start)
        self.grid = np.union1d([self.t_start], times)
        self.spinup = spinup
        self.record = record
        self.solver_options = dict(solver_options or {})
        self.history = []


    @property
    def ndim(self):
        return len(self.names)

    @property
    def evaluated(self):
        """Evaluated parameter vectors, shape (nevaluations, ndim)."""
        return np.array(self.history).reshape(-1, self.ndim)


    def in_bounds(self, theta):
        theta = np.asarray(theta, dtype=np.float64)
        lo, hi = self.bounds
        return bool(np.all(np.isfinite(theta))
            and np.all(theta >= lo) and np.all(theta <= hi))


    def _check(self, theta):
        theta = np.asarray(theta, dtype=np.float64)
        if theta.shape != (self.ndim,):
            raise InvalidConfiguration(
                f'Parameter vector has shape {theta.shape}, expected'
                f' {(self.ndim,)}')
        if not self.in_bounds(theta):
            raise InvalidConfiguration(
                f'Parameters {dict(zip(self.names, theta))} out of bounds')
        return theta


    def model(self, theta):
        theta = self._check(theta)
        return self.model_factory(**dict(zip(self.names, theta)))


    def simulate(self, theta):
        """Trajectory of the model with parameters `theta` on :py:attr:`grid`."""
        model = self.model(theta)
        if self.coupler is None:
            x0 = spin_up(model, self.t_start) if self.spinup else None
            return integrate(model, self.grid, x0, **self.solver_options)
        if self.spinup:
            x0, isotope0 = self.coupler.steady_state(model, self.t_start)
        else:
            x0, isotope0 = None, None
        return self.coupler.integrate(
            model, self.grid, x0, isotope0, **self.solver_options)


    def predict(self, theta):
        """Predicted mass and delta at the times of the observations."""
        trajectory = self.simulate(theta)
        obs = self.observations
        mass = delta_ = None
        if obs.mass is not None:
            i = np.searchsorted(self.grid, obs.mass.index.values)
            mass = pd.Series(trajectory.total_mass[i], index=obs.mass.index,
                name='mass')
        if obs.delta is not None:
            i = np.searchsorted(self.grid, obs.delta.index.values)
            delta_ = pd.Series(delta(trajectory.total_isotope_mass[i],
                trajectory.total_mass[i], self.coupler.standard_ratio),
                index=obs.delta.index, name='delta')
        return mass, delta_


    def residuals(self, theta):
        """
        Scaled residual vector of the parameter vector `theta`.

        Raises
        ------
        InvalidConfiguration
            If `theta` is out of bounds; it is not evaluated
        """
        theta = self._check(theta)
        if self.record:
            self.history.append(theta.copy())
        mass, delta_ = self.predict(theta)
        return self.observations.residuals(mass, delta_)


    def __call__(self, theta):
        r = self.residuals(theta)
        return float(r @ r)


    def __repr__(self):
        return (self.__class__.__name__ + f'({self.names}, {self.observations},'
            f' {len(self.history)} evaluations)')



def _covariance(jac, residuals):
    """Parameter covariance ``s^2 (J^T J)^{-1}``."""
    m, d = jac.shape
    s2 = residuals @ residuals / (m - d) if m > d else np.nan
    JTJ = jac.T @ jac
    with np.errstate(all='ignore'):
        cond = np.linalg.cond(JTJ)
    if np.isfinite(cond) and cond * np.finfo(np.float64).eps < 1:
        inverse = np.linalg.inv(JTJ)
    else:
        logger.warning('Jacobian is rank-deficient, covariance from'
            ' pseudo-inverse')
        inverse = np.linalg.pinv(JTJ)
    return s2 * inverse



class FitResult:
    """
    Attributes
    ----------
    names : list of str
    parameters : numpy.ndarray
    cost : float
        Sum of squared scaled residuals
    residuals : numpy.ndarray
    covariance : numpy.ndarray
    converged : bool
    status : int
        Status of :py:func:`scipy.optimize.least_squares`
    message : str
    nfev : int
    """

    def __init__(self, names, parameters, cost, residuals, covariance,
            converged, status, message, nfev):
        self.names = list(names)
        self.parameters = np.asarray(parameters, dtype=np.float64)
        self.cost = float(cost)
        self.residuals = np.asarray(residuals, dtype=np.float64)
        self.covariance = np.asarray(covariance, dtype=np.float64)
        self.converged = bool(converged)
        self.status = status
        self.message = message
        self.nfev = nfev

    @property
    def standard_errors(self):
        return np.sqrt(np.diag(self.covariance))

    def as_dict(self):
        return dict(zip(self.names, self.parameters))

    def raise_for_status(self):
        """Raise :py:class:`FitDidNotConverge` if not converged."""
        if not self.converged:
            raise FitDidNotConverge(self)

    def summary(self):
        return pd.DataFrame({'value': self.parameters,
            'sd': self.standard_errors}, index=pd.Index(self.names, name='parameter'))

    def __repr__(self):
        flag = 'converged' if self.converged else 'NOT converged'
        return (self.__class__.__name__ + f'({self.as_dict()}, cost={self.cost:.4g},'
            f' {flag})')


def fit(cost, x0, *, max_nfev=None, ftol=None, xtol=None, gtol=None,
        diff_step=None):
    """
    Minimize `cost` with bounded least squares
    (:py:func:`scipy.optimize.least_squares`, trust region reflective).
    Iterates stay inside the bounds of `cost`.
    Tolerances left as `None` are taken from ``[estimation]``.

    Returns
    -------
    FitResult
        Not converged if the evaluation budget ran out; call
        :py:meth:`FitResult.raise_for_status` to turn that into an error
    """
    options = get_estimation_options()
    for name, value in dict(max_nfev=max_nfev, ftol=ftol, xtol=xtol,
            gtol=gtol).items():
        if value is not None:
            options[name] = value

    x0 = np.asarray(x0, dtype=np.float64)
    if not cost.in_bounds(x0):
        raise InvalidConfiguration(f'Starting point {x0} out of bounds')

    logger.info(f'Fitting parameters {cost.names} from {x0}')
    sol = scipy.optimize.least_squares(cost.residuals, x0, bounds=cost.bounds,
        method='trf', max_nfev=options['max_nfev'], ftol=options['ftol'],
        xtol=options['xtol'], gtol=options['gtol'], diff_step=diff_step)

    result = FitResult(cost.names, sol.x, 2 * sol.cost, sol.fun,
        _covariance(sol.jac, sol.fun), sol.status > 0, sol.status,
        sol.message, sol.nfev)

    if result.converged:
        logger.success(f'Fit converged after {sol.nfev} evaluations: {result}')
    else:
        logger.warning(str(FitDidNotConverge(result)))
    return result



def _reflect(x, lo, hi):
    """Fold `x` back into the box ``[lo, hi]``."""
    x = x.copy()
    both = np.isfinite(lo) & np.isfinite(hi)
    width = hi - lo
    y = np.mod(x - lo, 2 * width, where=both, out=np.zeros_like(x))
    y = np.where(y > width, 2 * width - y, y)
    x = np.where(both, lo + y, x)
    x = np.where(~both & np.isfinite(lo) & (x < lo), 2 * lo - x, x)
    x = np.where(~both & np.isfinite(hi) & (x > hi), 2 * hi - x, x)
    return x


def _cholesky(cov):
    try:
        return np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        raise InvalidConfiguration(
            'Proposal covariance must be symmetric positive definite') from None


def _proposal_cov(proposal_cov, d):
    cov = np.asarray(proposal_cov, dtype=np.float64)
    if cov.ndim <= 1:
        cov = np.diag(np.broadcast_to(cov, (d,)))
    if cov.shape != (d, d):
        raise InvalidConfiguration(
            f'Proposal covariance has shape {cov.shape}, expected {(d, d)}')
    return cov


def _adapted_cholesky(chain, L):
    d = chain.shape[1]
    cov = np.atleast_2d(np.cov(chain.T)) * 2.38**2 / d + 1e-12 * np.eye(d)
    try:
        return np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        logger.debug('Chain covariance not positive definite, keeping proposal')
        return L



class MCMCResult:
    """
    Attributes
    ----------
    names : list of str
    chain : numpy.ndarray of shape (n_iter, ndim)
        State after each iteration; a rejected proposal repeats the
        previous state
    costs : numpy.ndarray of shape (n_iter,)
    accepted : numpy.ndarray of bool
    burn_in : int
    n_outside : int
        Number of proposals that fell outside the bounds
    proposal_cov : numpy.ndarray
        Final proposal covariance
    """

    def __init__(self, names, chain, costs, accepted, burn_in, n_outside,
            proposal_cov):
        self.names = list(names)
        self.chain = chain
        self.costs = costs
        self.accepted = accepted
        self.burn_in = burn_in
        self.n_outside = n_outside
        self.proposal_cov = proposal_cov

    @property
    def samples(self):
        return self.chain[self.burn_in:]

    @property
    def acceptance_rate(self):
        return float(self.accepted.mean())

    def summary(self):
        s = self.samples
        return pd.DataFrame({
            'mean': s.mean(axis=0),
            'sd': s.std(axis=0, ddof=1) if len(s) > 1 else np.nan,
            '2.5%': np.percentile(s, 2.5, axis=0),
            '50%': np.percentile(s, 50, axis=0),
            '97.5%': np.percentile(s, 97.5, axis=0)
        }, index=pd.Index(self.names, name='parameter'))

    def to_frame(self):
        df = pd.DataFrame(self.chain, columns=self.names,
            index=pd.RangeIndex(len(self.chain), name='iteration'))
        df['cost'] = self.costs
        df['accepted'] = self.accepted
        return df

    def __repr__(self):
        return (self.__class__.__name__ + f'({len(self.chain)} iterations,'
            f' burn-in {self.burn_in}, acceptance {self.acceptance_rate:.2f})')


def sample(cost, x0, proposal_cov, n_iter=None, burn_in=None, seed=None,
        out_of_bounds=None, update_every=None, cancel=None):
    """
    Random-walk Metropolis sampling of ``exp(-cost/2)``.

    A Gaussian proposal `y` from the current state `x` is accepted if
    ``log(U) < -(cost(y) - cost(x)) / 2`` with ``U ~ Uniform(0, 1)``.
    Proposals outside the bounds of `cost` are never evaluated: they are
    either rejected, or reflected into the box. Proposals inside the
    bounds for which the model cannot be built, made stationary or
    integrated, or whose signature is undefined, get an infinite cost and
    are rejected. The starting point must be valid.

    Parameters
    ----------
    cost : CostFunction
    x0 : array_like
        Starting point inside the bounds, typically a fit result
    proposal_cov : array_like
        Covariance matrix of the proposal, or vector of variances
    n_iter, burn_in : int, optional
        Default: ``[mcmc]`` configuration
    seed : int, numpy.random.SeedSequence, optional
        Default: ``[mcmc] seed``
    out_of_bounds : {'reject', 'reflect'}, optional
        Default: ``[mcmc] out_of_bounds``
    update_every : int, optional
        Adapt the proposal covariance to ``2.38^2 / ndim`` times the
        covariance of the chain every `update_every` iterations during
        burn-in. Default: no adaptation
    cancel : CancellationFlag, optional
        Checked before every iteration

    Returns
    -------
    MCMCResult
    """
    options = get_mcmc_options()
    n_iter = options['n_iter'] if n_iter is None else int(n_iter)
    burn_in = options['burn_in'] if burn_in is None else int(burn_in)
    seed = options['seed'] if seed is None else seed
    out_of_bounds = options['out_of_bounds'] if out_of_bounds is None \
        else out_of_bounds

    if out_of_bounds not in OUT_OF_BOUNDS_POLICIES:
        raise InvalidConfiguration(f'Bad out-of-bounds policy'
            f' "{out_of_bounds}", expected one of {OUT_OF_BOUNDS_POLICIES}')
    if n_iter < 1 or not 0 <= burn_in < n_iter:
        raise InvalidConfiguration(
            f'Need 0 <= burn_in < n_iter, got {burn_in} and {n_iter}')

    x = np.asarray(x0, dtype=np.float64).copy()
    if not cost.in_bounds(x):
        raise InvalidConfiguration(f'Starting point {x} out of bounds')
    d = len(x)
    L = _cholesky(_proposal_cov(proposal_cov, d))
    lo, hi = cost.bounds
    rng = np.random.default_rng(seed)

    c = cost(x)
    if not np.isfinite(c):
        raise InvalidConfiguration(f'Cost at starting point {x} is {c}')

    chain = np.empty((n_iter, d))
    costs = np.empty(n_iter)
    accepted = np.zeros(n_iter, dtype=bool)
    n_outside = 0

    logger.info(f'Sampling {cost.names} for {n_iter} iterations from {x}')

    for i in range(n_iter):
        if cancel is not None:
            cancel.check()

        proposal = x + L @ rng.standard_normal(d)
        log_u = np.log(rng.uniform())

        if not cost.in_bounds(proposal):
            n_outside += 1
            if out_of_bounds == 'reflect':
                proposal = _reflect(proposal, lo, hi)
            if not cost.in_bounds(proposal):
                proposal = None

        if proposal is not None:
            try:
                c_new = cost(proposal)
            except (InvalidConfiguration, IntegrationFailure,
                    SingularSystemMatrix, UndefinedRatio) as e:
                logger.debug(f'Rejected proposal {proposal}: {e}')
                c_new = np.inf
            if log_u < -(c_new - c) / 2:
                x, c = proposal, c_new
                accepted[i] = True

        chain[i] = x
        costs[i] = c

        if update_every and i < burn_in and (i + 1) % update_every == 0 \
                and i + 1 > d:
            L = _adapted_cholesky(chain[:i+1], L)

    result = MCMCResult(cost.names, chain, costs, accepted, burn_in,
        n_outside, L @ L.T)
    logger.info(f'Finished {result}, {n_outside} proposals out of bounds')
    return result



def _sample_for_multiprocessing(args):
    cost, x0, proposal_cov, seed, kwargs = args
    return sample(cost, x0, proposal_cov, seed=seed, **kwargs)


def sample_chains(cost, starts, proposal_cov, seed=None, njobs=1, **kwargs):
    """
    Run one independent chain from each row of `starts` on `njobs` CPU
    cores. Chains get independent random streams spawned from `seed`.
    With ``njobs > 1``, evaluations are recorded in the worker copies of
    `cost` only.

    Returns
    -------
    list of MCMCResult
    """
    starts = np.atleast_2d(np.asarray(starts, dtype=np.float64))
    if seed is None:
        seed = get_mcmc_options()['seed']
    seeds = np.random.SeedSequence(seed).spawn(len(starts))
    list_of_args = [(cost, x0, proposal_cov, s, kwargs)
        for x0, s in zip(starts, seeds)]

    if njobs == 1:
        chains = [_sample_for_multiprocessing(args) for args in list_of_args]
    else:
        with multiprocessing.Pool(njobs) as pool:
            chains = pool.map(_sample_for_multiprocessing, list_of_args)

    if len(chains) > 1:
        rhat = gelman_rubin(chains)
        logger.info(f'Gelman-Rubin R-hat: {dict(zip(cost.names, rhat))}')
    return chains


def gelman_rubin(chains):
    """
    Potential scale reduction factor (R-hat) of each parameter, from the
    post-burn-in samples of several chains. Values near 1 indicate
    convergence.

    Parameters
    ----------
    chains : list of MCMCResult, or array_like of shape (nchains, nsamples, ndim)
    """
    x = np.asarray([c.samples if isinstance(c, MCMCResult) else c
        for c in chains], dtype=np.float64)
    if x.ndim == 2:
        x = x[..., np.newaxis]
    m, n = x.shape[:2]
    if m < 2 or n < 2:
        raise InvalidConfiguration('Need at least 2 chains of 2 samples')

    chain_means = x.mean(axis=1)
    W = x.var(axis=1, ddof=1).mean(axis=0)
    B = n * chain_means.var(axis=0, ddof=1)
    var_hat = (n - 1) / n * W + B / n
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.where(W > 0, np.sqrt(var_hat / W), np.inf)


def evaluate_candidates(cost, candidates, njobs=1):
    """
    Cost of each candidate parameter vector (rows of `candidates`),
    evaluated independently on `njobs` CPU cores. Candidates out of
    bounds are not evaluated and get an infinite cost.
    """
    candidates = np.atleast_2d(np.asarray(candidates, dtype=np.float64))
    costs = np.full(len(candidates), np.inf)
    inside = np.array([cost.in_bounds(c) for c in candidates], dtype=bool)

    if njobs == 1:
        values = [cost(c) for c in candidates[inside]]
    else:
        with multiprocessing.Pool(njobs) as pool:
            values = pool.map(cost, candidates[inside])
        if cost.record:
            cost.history.extend(c.copy() for c in candidates[inside])

    costs[inside] = values
    return costs
