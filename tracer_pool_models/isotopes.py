"""
Couple a second, isotope-labelled state vector to the pool masses.

For every pool, the isotope mass ``x*`` follows the same transfers as the
total mass, decays radioactively, and enters with the signature of the
source curve::

    dx/dt  = A(t, x) x  + u(t)
    dx*/dt = A(t, x) x* - lambda x* + u(t) R_in(t)

where ``R_in(t)`` is the isotope ratio of the source at ``t - lag``,
decayed during the transport time `lag`. Isotope masses are expressed in
units of mass times isotope ratio; with the default standard ratio of 1,
isotope mass over mass is the fraction modern.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
from loguru import logger

from tracer_pool_models.builder import steady_state_mass
from tracer_pool_models.config import get_isotope_options
from tracer_pool_models.derived import delta_to_ratio
from tracer_pool_models.errors import InvalidConfiguration
from tracer_pool_models.integrator import (
    Trajectory, solve, spin_up, _check_state, _check_nonnegative
)
from tracer_pool_models.source_curve import SourceCurve
from tracer_pool_models.utils import as_time_grid


__all__ = ['IsotopeCoupler']


class IsotopeCoupler:
    """
    Parameters
    ----------
    source_curve : SourceCurve or float
        Signature (permil) of new inputs over time; a float is a constant
    half_life : float, optional
        Half-life of the isotope, in the time units of the model.
        `numpy.inf` for a stable isotope. Default: ``[isotope] half_life``
    standard_ratio : float, optional
        Isotope ratio of the reference standard.
        Default: ``[isotope] standard_ratio``
    """

    def __init__(self, source_curve, half_life=None, standard_ratio=None):
        options = get_isotope_options()
        if not isinstance(source_curve, SourceCurve):
            source_curve = SourceCurve.constant(float(source_curve))
        if half_life is None:
            half_life = options['half_life']
        if standard_ratio is None:
            standard_ratio = options['standard_ratio']
        half_life = float(half_life)
        if not half_life > 0:
            raise InvalidConfiguration(f'Bad half-life {half_life}')
        if not standard_ratio > 0:
            raise InvalidConfiguration(f'Bad standard ratio {standard_ratio}')

        self.source_curve = source_curve
        self.half_life = half_life
        self.decay_constant = np.log(2) / half_life
        self.standard_ratio = float(standard_ratio)


    def entry_ratio(self, t, lag=0.):
        """Isotope ratio of inputs entering the pools at time `t`."""
        t = np.asarray(t, dtype=np.float64)
        ratio = self.source_curve.ratio_at(t - lag, self.standard_ratio)
        return ratio * np.exp(-self.decay_constant * lag)


    def initial_isotope_mass(self, model, x0, t0):
        """Isotope masses from ``model.initial_delta``, or from the
        signature of the inputs at `t0` if the model has none."""
        if model.initial_delta is None:
            ratio = self.entry_ratio(t0, model.lag)
        else:
            ratio = delta_to_ratio(model.initial_delta, self.standard_ratio)
        return np.asarray(x0, dtype=np.float64) * ratio


    def rhs(self, model):
        """Right-hand side and Jacobian (or `None`) of the augmented ODEs
        for the state ``[x, x*]``."""
        n = model.n_pools
        lam = self.decay_constant
        lag = model.lag
        entry_ratio = self.entry_ratio
        linear = model.is_linear

        def rhs(t, y):
            x, xi = y[:n], y[n:]
            A = model.matrix(t) if linear else model.matrix(t, x)
            u = model.input_vector(t)
            return np.concatenate([
                A @ x + u,
                A @ xi - lam * xi + u * entry_ratio(t, lag)
            ])

        if not linear:
            return rhs, None

        def jac(t, y):
            A = model.matrix(t)
            J = np.zeros((2*n, 2*n))
            J[:n, :n] = A
            J[n:, n:] = A - lam * np.eye(n)
            return J

        return rhs, jac


    def integrate(self, model, times, x0=None, isotope0=None, **options):
        """
        Pool masses and isotope masses of `model` at each of `times`.

        Parameters
        ----------
        model : MatrixModel
        times : array_like
            Strictly increasing output times; the run starts at ``times[0]``
        x0 : array_like, optional
            Masses at ``times[0]``. Default: ``model.initial_mass``
        isotope0 : array_like, optional
            Isotope masses at ``times[0]``.
            Default: :py:meth:`initial_isotope_mass`
        **options
            Solver options, see :py:func:`tracer_pool_models.integrator.solve`

        Returns
        -------
        Trajectory
            with :py:attr:`Trajectory.isotope_mass`

        Raises
        ------
        IntegrationFailure
        """
        times = as_time_grid(times)
        x0 = _check_state(model.initial_state() if x0 is None else x0, model)
        if isotope0 is None:
            isotope0 = self.initial_isotope_mass(model, x0, times[0])
        isotope0 = np.asarray(isotope0, dtype=np.float64)
        if isotope0.shape != x0.shape:
            raise InvalidConfiguration(
                f'Initial isotope masses have shape {isotope0.shape},'
                f' expected {x0.shape}')

        rhs, jac = self.rhs(model)
        y = solve(rhs, np.concatenate([x0, isotope0]), times, jac, **options)
        n = model.n_pools
        _check_nonnegative(y[:, :n])
        _check_nonnegative(y[:, n:], 'isotope mass')
        return Trajectory(times, y[:, :n], model.pool_names, y[:, n:])


    def steady_state(self, model, t_ref=0.):
        """
        Steady-state masses and isotope masses under the forcing and
        source signature at time `t_ref`.

        Returns
        -------
        x, isotope : numpy.ndarray

        Raises
        ------
        SingularSystemMatrix
        """
        x = spin_up(model, t_ref)
        A = model.matrix(t_ref) if model.is_linear else model.matrix(t_ref, x)
        u = model.input_vector(t_ref)
        R_in = self.entry_ratio(t_ref, model.lag)
        isotope = steady_state_mass(
            A - self.decay_constant * np.eye(model.n_pools), u * R_in)
        logger.debug(f'Steady state of {model} at t={t_ref}: mass {x},'
            f' isotope mass {isotope}')
        return x, isotope


    def __repr__(self):
        return (self.__class__.__name__ + f'({self.source_curve!r},'
            f' half_life={self.half_life}, standard_ratio={self.standard_ratio})')
