"""
Stateless transforms from mass and isotope-mass trajectories to release
fluxes and isotopic signatures in delta notation,
``delta = (R / R_std - 1) * 1000``.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd
from loguru import logger

from tracer_pool_models.config import get_isotope_options
from tracer_pool_models.errors import (
    InvalidConfiguration, UndefinedRatio, warn_degenerate
)


__all__ = [
    'delta_to_ratio',
    'ratio_to_delta',
    'delta',
    'release_flux',
    'release_isotope_flux',
    'pool_delta',
    'system_delta',
    'respired_delta',
    'check_plausible',
    'derive_output'
]


def _standard_ratio(standard_ratio):
    if standard_ratio is None:
        return get_isotope_options()['standard_ratio']
    return standard_ratio


def delta_to_ratio(delta, standard_ratio=1.):
    return (np.asarray(delta, dtype=np.float64) / 1000 + 1) * standard_ratio


def ratio_to_delta(ratio, standard_ratio=1.):
    return (np.asarray(ratio, dtype=np.float64) / standard_ratio - 1) * 1000


def delta(isotope_mass, mass, standard_ratio=None, on_zero='raise'):
    """
    Signature (permil) of `isotope_mass` over `mass`.

    Parameters
    ----------
    isotope_mass, mass : array_like
        Broadcastable arrays
    standard_ratio : float, optional
        Default: ``[isotope] standard_ratio``
    on_zero : {'raise', 'flag'}
        Where `mass` is zero (or negative), raise :py:class:`UndefinedRatio`,
        or return NaN at those points and log a warning

    Raises
    ------
    UndefinedRatio
    """
    if on_zero not in ('raise', 'flag'):
        raise InvalidConfiguration(f'Bad `on_zero` policy "{on_zero}"')
    standard_ratio = _standard_ratio(standard_ratio)
    isotope_mass, mass = np.broadcast_arrays(
        np.asarray(isotope_mass, dtype=np.float64),
        np.asarray(mass, dtype=np.float64))

    undefined = ~(mass > 0)
    if np.any(undefined):
        where = np.nonzero(undefined)
        message = f'Isotope ratio undefined at {undefined.sum()} point(s)' \
            ' with zero mass'
        if on_zero == 'raise':
            raise UndefinedRatio(message, where)
        logger.warning(message + ', flagged as NaN')

    safe_mass = np.where(undefined, 1., mass)
    ratio = np.where(undefined, np.nan, isotope_mass / safe_mass)
    return ratio_to_delta(ratio, standard_ratio)


def release_flux(model, trajectory):
    """Mass leaving the system from each pool per unit time,
    shape (ntimes, npools)."""
    return _release_rates(model, trajectory) * trajectory.mass


def release_isotope_flux(model, trajectory):
    _require_isotopes(trajectory)
    return _release_rates(model, trajectory) * trajectory.isotope_mass


def _release_rates(model, trajectory):
    if model.n_pools != trajectory.mass.shape[1]:
        raise InvalidConfiguration(
            f'{model} does not match trajectory with pools'
            f' {trajectory.pool_names}')
    if model.is_linear:
        return np.array([model.release_rates(t) for t in trajectory.times])
    return np.array([model.release_rates(t, x)
        for t, x in zip(trajectory.times, trajectory.mass)])


def _require_isotopes(trajectory):
    if trajectory.isotope_mass is None:
        raise InvalidConfiguration(
            'Trajectory has no isotope masses; integrate with'
            ' `IsotopeCoupler.integrate`')


def pool_delta(trajectory, standard_ratio=None, on_zero='raise'):
    _require_isotopes(trajectory)
    return delta(trajectory.isotope_mass, trajectory.mass,
        standard_ratio, on_zero)


def system_delta(trajectory, standard_ratio=None, on_zero='raise'):
    """Signature of the whole system, total isotope mass over total mass."""
    _require_isotopes(trajectory)
    return delta(trajectory.total_isotope_mass, trajectory.total_mass,
        standard_ratio, on_zero)


def respired_delta(model, trajectory, standard_ratio=None, on_zero='raise'):
    """
    Signature of the mass released from the system. This is the pool
    signatures averaged with the release flux of each pool as weights,
    so it always lies between the smallest and largest pool signature.
    """
    _require_isotopes(trajectory)
    rates = _release_rates(model, trajectory)
    flux = (rates * trajectory.mass).sum(axis=1)
    isotope_flux = (rates * trajectory.isotope_mass).sum(axis=1)
    return delta(isotope_flux, flux, standard_ratio, on_zero)


def check_plausible(values, name='delta'):
    """
    Warn with :py:class:`DegenerateResultWarning` if any finite signature
    is outside ``[isotope] plausible_min`` .. ``plausible_max``.

    Returns
    -------
    bool
        `True` if all finite values are plausible
    """
    options = get_isotope_options()
    lo, hi = options['plausible_min'], options['plausible_max']
    values = np.asarray(values, dtype=np.float64)
    finite = values[np.isfinite(values)]
    bad = (finite < lo) | (finite > hi)
    if np.any(bad):
        warn_degenerate(
            f'{bad.sum()} value(s) of {name} outside the plausible range'
            f' [{lo}, {hi}]: min {finite.min():.4g}, max {finite.max():.4g}')
        return False
    return True


def derive_output(model, trajectory, standard_ratio=None, on_zero='flag'):
    """
    Table of derived quantities over time.

    Columns: `total_mass`, `total_release`, and for each pool `<pool>`
    (mass) and `<pool>_release`. With isotopes, also `system_delta`,
    `respired_delta` and `<pool>_delta`.
    """
    index = pd.Index(trajectory.times, name='time')
    flux = release_flux(model, trajectory)
    output = pd.DataFrame(index=index, dtype='float')
    output['total_mass'] = trajectory.total_mass
    output['total_release'] = flux.sum(axis=1)

    has_isotopes = trajectory.isotope_mass is not None
    if has_isotopes:
        output['system_delta'] = system_delta(
            trajectory, standard_ratio, on_zero)
        output['respired_delta'] = respired_delta(
            model, trajectory, standard_ratio, on_zero)
        deltas = pool_delta(trajectory, standard_ratio, on_zero)

    for j, pool in enumerate(trajectory.pool_names):
        output[pool] = trajectory.mass[:, j]
        output[pool+'_release'] = flux[:, j]
        if has_isotopes:
            output[pool+'_delta'] = deltas[:, j]

    if has_isotopes:
        check_plausible(output['system_delta'].values, 'system delta')
    return output
