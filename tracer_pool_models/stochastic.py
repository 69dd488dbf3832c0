"""
Distribution of isotopic signatures over the mass of a system in steady
state. Each age cohort carries the signature of the source at the time it
entered the system, decayed over its age; cohort masses from an age
density are then binned into a histogram of signatures.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd
from numba import njit
from loguru import logger

from tracer_pool_models.derived import ratio_to_delta
from tracer_pool_models.errors import InvalidConfiguration
from tracer_pool_models.utils import as_time_grid, trapezoid_weights


__all__ = ['cohort_deltas', 'isotope_distribution', 'IsotopeDistribution']


@njit
def _histogram(values, weights, lo, hi, nbins):
    """Bins ``[lo + i*w, lo + (i+1)*w)``, except the last one which
    also includes `hi`."""
    hist = np.zeros(nbins, dtype=np.float64)
    width = (hi - lo) / nbins
    for i in range(len(values)):
        if weights[i] == 0:
            continue
        j = int((values[i] - lo) / width)
        if j >= nbins: # value == hi
            j = nbins - 1
        elif j < 0:
            j = 0
        hist[j] += weights[i]
    return hist


def cohort_deltas(ages, t_obs, coupler, lag=0.):
    """
    Signature (permil) at time `t_obs` of mass that entered the pools
    `ages` time units earlier.
    """
    ages = np.asarray(ages, dtype=np.float64)
    ratio = coupler.entry_ratio(t_obs - ages, lag) \
        * np.exp(-coupler.decay_constant * ages)
    return ratio_to_delta(ratio, coupler.standard_ratio)


def _cohort_mass(ages, density, mass):
    density = np.asarray(density, dtype=np.float64)
    mass = np.asarray(mass, dtype=np.float64)
    if density.ndim == 1:
        if density.shape != ages.shape:
            raise InvalidConfiguration(
                f'Density has shape {density.shape}, expected {ages.shape}')
        per_age = density * mass.sum()
    elif density.ndim == 2:
        if density.shape != (len(ages), len(mass)):
            raise InvalidConfiguration(
                f'Pool densities have shape {density.shape}, expected'
                f' {(len(ages), len(mass))}')
        used = mass > 0
        per_age = density[:, used] @ mass[used]
    else:
        raise InvalidConfiguration('Density must be 1-D or 2-D')
    if not np.all(np.isfinite(per_age)):
        raise InvalidConfiguration('Density has non-finite values')
    return trapezoid_weights(ages) * np.clip(per_age, 0, None)


def isotope_distribution(ages, density, mass, coupler, t_obs, n_bins=50,
        lag=0.):
    """
    Histogram of the signatures of the mass in the system at `t_obs`.

    Parameters
    ----------
    ages : array_like
        Strictly increasing non-negative age axis
    density : array_like
        System age density of shape (nages,), or pool age densities of
        shape (nages, npools)
    mass : float or array_like of shape (npools,)
        Steady-state mass of the system, or of each pool
    coupler : IsotopeCoupler
        Provides the source signature and the decay constant
    t_obs : float
        Time of observation
    n_bins : int, default 50
        Number of equal-width bins between the smallest and largest
        cohort signature
    lag : float, default 0
        Transport time of inputs

    Returns
    -------
    IsotopeDistribution
    """
    ages = as_time_grid(ages, 'ages')
    if ages[0] < 0:
        raise InvalidConfiguration('`ages` must be non-negative')
    n_bins = int(n_bins)
    if n_bins < 1:
        raise InvalidConfiguration(f'Need at least one bin, got {n_bins}')

    weights = _cohort_mass(ages, density, mass)
    if not weights.sum() > 0:
        raise InvalidConfiguration('Age density carries no mass')
    deltas = cohort_deltas(ages, t_obs, coupler, lag)

    carried = deltas[weights > 0]
    lo, hi = carried.min(), carried.max()
    if hi - lo <= 1e-9 * max(abs(lo), abs(hi), 1.):
        logger.debug(f'All cohorts have signature {lo:.4g}, widening range')
        lo, hi = lo - 0.5, hi + 0.5

    hist = _histogram(deltas, weights, lo, hi, n_bins)
    edges = np.linspace(lo, hi, n_bins + 1)
    mean = (weights @ deltas) / weights.sum()
    return IsotopeDistribution(edges, hist, mean)



class IsotopeDistribution:
    """
    Histogram of isotopic signatures over the mass of a system.

    Attributes
    ----------
    edges : numpy.ndarray of shape (nbins+1,)
    mass : numpy.ndarray of shape (nbins,)
        Mass of each bin, zero for empty bins
    mean : float
        Mass-weighted mean signature of the cohorts
    """

    def __init__(self, edges, mass, mean):
        self.edges = np.asarray(edges, dtype=np.float64)
        self.mass = np.asarray(mass, dtype=np.float64)
        self.mean = float(mean)

    @property
    def centers(self):
        return (self.edges[1:] + self.edges[:-1]) / 2

    @property
    def widths(self):
        return np.diff(self.edges)

    @property
    def total_mass(self):
        return self.mass.sum()

    @property
    def density(self):
        """Probability density (1/permil), integrates to 1."""
        return self.mass / (self.total_mass * self.widths)

    @property
    def binned_mean(self):
        """Mean computed from the bin centers."""
        return (self.centers @ self.mass) / self.total_mass

    def to_frame(self):
        return pd.DataFrame({
            'lower': self.edges[:-1],
            'upper': self.edges[1:],
            'mass': self.mass,
            'density': self.density
        }, index=pd.Index(self.centers, name='delta'))

    def __len__(self):
        return len(self.mass)

    def __repr__(self):
        return (self.__class__.__name__ + f'({len(self)} bins'
            f' {self.edges[0]:.4g}..{self.edges[-1]:.4g}, mean={self.mean:.4g})')
