"""
Build the transfer-rate matrix `A(t)` and input vector `u(t)` of a
compartmental (pool) model from decay rates and transfer fractions.

The matrix is assembled as ``A = (T - I) @ diag(k * xi(t) * psi(x))`` where

* ``k`` are the decay rates of the pools (1/time),
* ``T[i,j]`` is the proportion of the outflow of pool `j` going to pool `i`,
* ``xi(t)`` is an optional environmental rate modifier
  (e.g. temperature and moisture scalars),
* ``psi(x)`` is an optional state-dependent rate modifier for
  mildly non-linear models.

Named topologies (series, parallel, feedback) are presets of `T`.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

from configparser import ConfigParser

import numpy as np
from loguru import logger

from tracer_pool_models.errors import InvalidConfiguration, SingularSystemMatrix
from tracer_pool_models.forcing import ForcingSeries


__all__ = [
    'MatrixModel',
    'series_transfer',
    'parallel_transfer',
    'feedback_transfer',
    'transfer_from_topology',
    'steady_state_mass',
    'model_from_config',
    'read_model_config'
]


def series_transfer(npools, fractions):
    """Pool `i` passes `fractions[i]` of its outflow on to pool `i+1`."""
    T = np.zeros((npools, npools))
    idx = np.arange(npools - 1)
    T[idx + 1, idx] = fractions
    return T


def parallel_transfer(npools):
    """Independent pools, no transfers."""
    return np.zeros((npools, npools))


def feedback_transfer(npools, fractions, backward_fractions):
    """Series transfers plus `backward_fractions[i]` of the outflow of
    pool `i+1` flowing back into pool `i`."""
    T = series_transfer(npools, fractions)
    idx = np.arange(npools - 1)
    T[idx, idx + 1] = backward_fractions
    return T


TOPOLOGIES = ('series', 'parallel', 'feedback')


def transfer_from_topology(topology, npools, fractions=0.,
        backward_fractions=0.):
    if topology == 'series':
        return series_transfer(npools, fractions)
    elif topology == 'parallel':
        return parallel_transfer(npools)
    elif topology == 'feedback':
        return feedback_transfer(npools, fractions, backward_fractions)
    raise InvalidConfiguration(
        f'Unknown topology "{topology}", expected one of {TOPOLOGIES}')


def steady_state_mass(A, u):
    """
    Steady state ``x = -A^{-1} u`` of ``dx/dt = A x + u``.

    Raises
    ------
    SingularSystemMatrix
        If `A` is singular or too ill-conditioned to be inverted
    """
    A = np.asarray(A, dtype=np.float64)
    u = np.asarray(u, dtype=np.float64)
    with np.errstate(all='ignore'):
        cond = np.linalg.cond(A)
    if not np.isfinite(cond) or cond * np.finfo(np.float64).eps > 1:
        raise SingularSystemMatrix(
            f'Transfer-rate matrix is singular (condition number {cond:.3g})')
    try:
        return np.linalg.solve(A, -u)
    except np.linalg.LinAlgError as e:
        raise SingularSystemMatrix(str(e)) from e


def _vector(value, n, name, *, nonnegative=True):
    arr = np.array(value, dtype=np.float64)
    if arr.ndim == 0:
        arr = np.full(n, float(arr))
    if arr.shape != (n,):
        raise InvalidConfiguration(
            f'`{name}` has shape {arr.shape} but the model has {n} pools')
    if not np.all(np.isfinite(arr)):
        raise InvalidConfiguration(f'`{name}` has non-finite values')
    if nonnegative and np.any(arr < 0):
        raise InvalidConfiguration(f'`{name}` has negative values: {arr}')
    return arr


def _check_forcing(forcing, n, name):
    if forcing.ncolumns not in (1, n):
        raise InvalidConfiguration(
            f'`{name}` has {forcing.ncolumns} columns but the model'
            f' has {n} pools')
    if forcing.min < 0:
        raise InvalidConfiguration(f'`{name}` has negative values')



class MatrixModel:
    """
    Declarative pool model. Instances are immutable; use
    :py:meth:`with_parameters` to derive a modified model.

    Parameters
    ----------
    decay_rates : array_like of shape (npools,)
        Decay rate of each pool (1/time), non-negative
    transfer : array_like of shape (npools, npools), optional
        `transfer[i,j]` is the proportion of pool `j`'s outflow
        directed to pool `i`. Column sums must not exceed 1; the rest
        of the outflow leaves the system (release, e.g. respiration).
        Default: no transfers.
    inputs : float, array_like, ForcingSeries, or callable, default 0
        External input rate. A scalar (or scalar series) is the total
        input, split among pools with `input_partition`. A vector (or
        series with one column per pool) gives the input of each pool.
        A callable takes the time and returns either of those.
    input_partition : array_like of shape (npools,), optional
        Fractions of a total input going to each pool, summing to 1.
        Default: everything goes into the first pool.
    initial_mass : array_like of shape (npools,), optional
        Mass of each pool at the start of a run. Default: zeros.
    initial_delta : float or array_like of shape (npools,), optional
        Signature (permil) of each pool at the start of a run.
        Default: signature of the inputs at the start of the run.
    lag : float, default 0
        Transport time of inputs: input at time `t` is `inputs(t - lag)`.
        Before the first record of a :py:class:`ForcingSeries`, its
        `before_record` policy applies. Constant inputs do not change.
    modifier : float, array_like, ForcingSeries, or callable, optional
        Environmental multiplier of the decay rates, scalar or per pool
    state_modifier : callable, optional
        Function of the pool masses returning a multiplier of the decay
        rates (scalar or per pool). Makes the model non-linear.
    pool_names : list of str, optional
        Default: ``['pool1', 'pool2', ...]``
    """

    def __init__(self, decay_rates, transfer=None, inputs=0.,
            input_partition=None, initial_mass=None, initial_delta=None,
            lag=0., modifier=None, state_modifier=None, pool_names=None):

        self._kwargs = dict(
            decay_rates=decay_rates, transfer=transfer, inputs=inputs,
            input_partition=input_partition, initial_mass=initial_mass,
            initial_delta=initial_delta, lag=lag, modifier=modifier,
            state_modifier=state_modifier, pool_names=pool_names
        )

        k = np.atleast_1d(np.asarray(decay_rates, dtype=np.float64))
        if k.ndim != 1 or len(k) == 0:
            raise InvalidConfiguration('`decay_rates` must be a non-empty vector')
        n = len(k)
        k = _vector(k, n, 'decay_rates')

        if transfer is None:
            T = np.zeros((n, n))
        else:
            T = np.array(transfer, dtype=np.float64)
        if T.shape != (n, n):
            raise InvalidConfiguration(
                f'`transfer` has shape {T.shape}, expected {(n, n)}')
        if not np.all(np.isfinite(T)) or np.any(T < 0):
            raise InvalidConfiguration(
                '`transfer` must be finite and non-negative')
        if np.any(np.diag(T) != 0):
            raise InvalidConfiguration('`transfer` must have a zero diagonal')
        colsum = T.sum(axis=0)
        if np.any(colsum > 1 + 1e-12):
            bad = np.nonzero(colsum > 1 + 1e-12)[0]
            raise InvalidConfiguration(
                f'Transfer fractions out of pools {bad.tolist()} sum to more'
                f' than 1: {colsum[bad].tolist()}')

        if input_partition is None:
            partition = np.zeros(n)
            partition[0] = 1.
        else:
            partition = _vector(input_partition, n, 'input_partition')
            if not np.isclose(partition.sum(), 1):
                raise InvalidConfiguration(
                    f'`input_partition` sums to {partition.sum()}, not 1')

        if isinstance(inputs, ForcingSeries):
            _check_forcing(inputs, n, 'inputs')
        elif not callable(inputs):
            inputs = np.asarray(inputs, dtype=np.float64)
            if inputs.ndim == 0:
                inputs = _vector(inputs * partition, n, 'inputs')
            else:
                inputs = _vector(inputs, n, 'inputs')

        if initial_mass is None:
            x0 = np.zeros(n)
        else:
            x0 = _vector(initial_mass, n, 'initial_mass')

        if initial_delta is not None:
            initial_delta = _vector(initial_delta, n, 'initial_delta',
                nonnegative=False)

        lag = float(lag)
        if not np.isfinite(lag) or lag < 0:
            raise InvalidConfiguration(f'`lag` must be non-negative, got {lag}')

        if isinstance(modifier, ForcingSeries):
            _check_forcing(modifier, n, 'modifier')
        elif modifier is not None and not callable(modifier):
            modifier = _vector(modifier, n, 'modifier')

        if state_modifier is not None and not callable(state_modifier):
            raise InvalidConfiguration('`state_modifier` must be callable')

        if pool_names is None:
            pool_names = [f'pool{i+1}' for i in range(n)]
        pool_names = [str(p) for p in pool_names]
        if len(pool_names) != n or len(set(pool_names)) != n:
            raise InvalidConfiguration(
                f'Need {n} unique pool names, got {pool_names}')

        for arr in (k, T, partition, x0):
            arr.setflags(write=False)
        if isinstance(inputs, np.ndarray):
            inputs.setflags(write=False)

        self.decay_rates = k
        self.transfer = T
        self.input_partition = partition
        self.initial_mass = x0
        self.initial_delta = initial_delta
        self.lag = lag
        self.pool_names = pool_names
        self._inputs = inputs
        self._modifier = modifier
        self._state_modifier = state_modifier


    @classmethod
    def from_topology(cls, topology, decay_rates, fractions=0.,
            backward_fractions=0., **kwargs):
        """Build a model with a preset transfer structure.

        Parameters
        ----------
        topology : {'series', 'parallel', 'feedback'}
        decay_rates : array_like of shape (npools,)
        fractions : float or array_like of shape (npools-1,)
            Forward transfer fractions (series and feedback)
        backward_fractions : float or array_like of shape (npools-1,)
            Backward transfer fractions (feedback)
        **kwargs
            Other parameters of :py:class:`MatrixModel`
        """
        npools = len(np.atleast_1d(decay_rates))
        T = transfer_from_topology(
            topology, npools, fractions, backward_fractions)
        return cls(decay_rates, T, **kwargs)


    def with_parameters(self, **changes):
        """New model with some constructor arguments replaced."""
        unknown = set(changes) - set(self._kwargs)
        if unknown:
            raise InvalidConfiguration(f'Unknown model parameters: {unknown}')
        kwargs = dict(self._kwargs)
        kwargs.update(changes)
        return self.__class__(**kwargs)


    @property
    def n_pools(self) -> int:
        return len(self.decay_rates)

    @property
    def is_linear(self) -> bool:
        return self._state_modifier is None

    @property
    def is_time_varying(self) -> bool:
        return not isinstance(self._inputs, np.ndarray) or (
            self._modifier is not None
            and not isinstance(self._modifier, np.ndarray))


    def modifier_at(self, t):
        """Environmental rate multiplier of each pool at time `t`."""
        if self._modifier is None:
            return np.ones(self.n_pools)
        if isinstance(self._modifier, np.ndarray):
            return self._modifier
        xi = np.asarray(self._modifier(t), dtype=np.float64)
        return np.broadcast_to(xi, (self.n_pools,))


    def effective_rates(self, t=0., x=None):
        """Decay rates after applying environmental and state modifiers."""
        rates = self.decay_rates * self.modifier_at(t)
        if self._state_modifier is not None:
            if x is None:
                raise InvalidConfiguration(
                    'Non-linear model needs the pool masses `x`')
            rates = rates * np.asarray(self._state_modifier(x), dtype=np.float64)
        return rates


    def matrix(self, t=0., x=None):
        """Transfer-rate matrix `A` at time `t` (and masses `x`)."""
        rates = self.effective_rates(t, x)
        return (self.transfer - np.eye(self.n_pools)) * rates


    def input_vector(self, t=0.):
        """Input rate of each pool at time `t`, lagged by :py:attr:`lag`."""
        if isinstance(self._inputs, np.ndarray):
            return self._inputs
        u = np.asarray(self._inputs(t - self.lag), dtype=np.float64)
        if u.ndim == 0 or u.shape == (1,):
            return u.item() * self.input_partition
        if u.shape != (self.n_pools,):
            raise InvalidConfiguration(
                f'Inputs of shape {u.shape} at t={t}, expected {(self.n_pools,)}')
        return u


    def release_rates(self, t=0., x=None):
        """Rate at which each pool releases mass out of the system
        (decay rate times the fraction of outflow not transferred)."""
        return self.effective_rates(t, x) * (1 - self.transfer.sum(axis=0))


    def steady_state(self, t=0.):
        """Steady-state masses of the linear model frozen at time `t`."""
        if not self.is_linear:
            raise InvalidConfiguration(
                'Use `tracer_pool_models.integrator.spin_up`'
                ' for non-linear models')
        return steady_state_mass(self.matrix(t), self.input_vector(t))


    def initial_state(self):
        return self.initial_mass.copy()


    def __repr__(self):
        kind = 'linear' if self.is_linear else 'non-linear'
        return (self.__class__.__name__ +
            f'({self.n_pools} pools {self.pool_names}, {kind},'
            f' lag={self.lag})')



def _parse_vector(text):
    return [float(v) for v in text.replace(',', ' ').split()]


def _parse_matrix(text):
    return [_parse_vector(row) for row in text.split(';') if row.strip()]


def _parse_grid(text):
    """Comma-separated values, or ``start:stop:step`` with inclusive stop."""
    text = text.strip()
    if ':' in text:
        start, stop, step = (float(v) for v in text.split(':'))
        num = int(round((stop - start) / step)) + 1
        return np.linspace(start, start + (num - 1) * step, num)
    return np.array(_parse_vector(text))


def model_from_config(config):
    """
    Build a :py:class:`MatrixModel` from a mapping, e.g. a section
    of a :py:class:`configparser.ConfigParser`.
    String values are parsed: vectors are separated by commas or
    whitespace, matrix rows by semicolons.

    Keys: `decay_rates` (required), `transfer` or `topology` with
    `fractions` and `backward_fractions`, `inputs`, `input_partition`,
    `initial_mass`, `initial_delta`, `lag`, `pool_names`.
    """
    config = dict(config)

    def get(name, parse=_parse_vector):
        value = config.get(name)
        if isinstance(value, str):
            value = parse(value)
        return value

    def unwrap(value):
        if isinstance(value, list) and len(value) == 1:
            return value[0]
        return value

    if 'decay_rates' not in config:
        raise InvalidConfiguration('Model configuration needs `decay_rates`')

    kwargs = {}
    for name in ('input_partition', 'initial_mass', 'initial_delta'):
        if config.get(name) is not None:
            kwargs[name] = get(name)
    if config.get('inputs') is not None:
        kwargs['inputs'] = unwrap(get('inputs'))
    if config.get('lag') is not None:
        kwargs['lag'] = float(config['lag'])
    if config.get('pool_names') is not None:
        names = config['pool_names']
        if isinstance(names, str):
            names = names.replace(',', ' ').split()
        kwargs['pool_names'] = names

    decay_rates = get('decay_rates')

    if config.get('transfer') is not None:
        if config.get('topology') is not None:
            raise InvalidConfiguration(
                'Specify either `transfer` or `topology`, not both')
        return MatrixModel(decay_rates, get('transfer', _parse_matrix), **kwargs)

    topology = str(config.get('topology', 'parallel')).strip()
    fractions = unwrap(get('fractions')) if 'fractions' in config else 0.
    backward = unwrap(get('backward_fractions')) \
        if 'backward_fractions' in config else 0.
    return MatrixModel.from_topology(
        topology, decay_rates, fractions, backward, **kwargs)


def read_model_config(path):
    """
    Read a model configuration file with a ``[model]`` section
    (see :py:func:`model_from_config`) and an optional ``[grid]``
    section with `times`, `ages`, and `quantiles`.

    Returns
    -------
    model : MatrixModel
    grid : dict
        Parsed `times`, `ages` (numpy.ndarray), `quantiles` (list)
    """
    config = ConfigParser()
    if not config.read(path):
        raise FileNotFoundError(f'No such model config file: {path}')
    if not config.has_section('model'):
        raise InvalidConfiguration(f'No [model] section in {path}')

    model = model_from_config(config['model'])

    grid = {}
    if config.has_section('grid'):
        section = config['grid']
        for name in ('times', 'ages'):
            if name in section:
                grid[name] = _parse_grid(section[name])
        if 'quantiles' in section:
            grid['quantiles'] = _parse_vector(section['quantiles'])

    logger.debug(f'Read model configuration {model} from {path}')
    return model, grid
