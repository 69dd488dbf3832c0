"""
Isotopic signature of the tracer source (e.g. atmospheric Delta14C of CO2)
as an immutable, interpolated function of calendar time.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd
import scipy.interpolate

from tracer_pool_models.errors import InvalidConfiguration
from tracer_pool_models.utils import as_time_grid


__all__ = ['SourceCurve', 'decimal_years']


def decimal_years(index):
    """Convert a :py:class:`pandas.DatetimeIndex` to decimal years."""
    index = pd.DatetimeIndex(index)
    start = pd.to_datetime(index.year.astype(str), format='%Y')
    end = pd.to_datetime((index.year + 1).astype(str), format='%Y')
    fraction = (index - start) / (end - start)
    return np.asarray(index.year + fraction, dtype=np.float64)


class SourceCurve:
    """
    Signature (delta notation, permil) of new tracer inputs over time.

    Built once from immutable (time, signature) pairs and shared read-only
    by every model evaluation.

    Parameters
    ----------
    times : array_like
        Strictly increasing calendar times (years)
    values : array_like
        Signature in permil at `times`
    kind : {'pchip', 'linear', 'cubic'}, default 'pchip'
        Interpolation between records
    extrapolation : {'constant', 'linear', 'raise'}, default 'constant'
        Policy outside the records, identical before the first and after
        the last record. 'constant' holds the nearest end value,
        'linear' extends the end segment, 'raise' refuses the query.
    """

    interpolation_kinds = ('pchip', 'linear', 'cubic')
    extrapolation_policies = ('constant', 'linear', 'raise')

    def __init__(self, times, values, kind='pchip', extrapolation='constant'):

        times = as_time_grid(times, 'times')
        values = np.atleast_1d(np.array(values, dtype=np.float64))

        if values.shape != times.shape:
            raise InvalidConfiguration(
                f'Got {len(times)} times but {values.shape} values')
        if not np.all(np.isfinite(values)):
            raise InvalidConfiguration('Source signature has non-finite values')
        if kind not in self.interpolation_kinds:
            raise InvalidConfiguration(f'Unknown interpolation kind "{kind}"')
        if extrapolation not in self.extrapolation_policies:
            raise InvalidConfiguration(
                f'Unknown extrapolation policy "{extrapolation}"')

        times.setflags(write=False)
        values.setflags(write=False)
        self._times = times
        self._values = values
        self._kind = kind
        self._extrapolation = extrapolation

        if len(times) < 3 or kind == 'linear':
            self._spline = None
        elif kind == 'pchip':
            self._spline = scipy.interpolate.PchipInterpolator(
                times, values, extrapolate=False)
        else:
            self._spline = scipy.interpolate.CubicSpline(
                times, values, extrapolate=False)


    def _interpolate(self, t):
        if self._spline is None:
            return np.interp(t, self._times, self._values)
        return self._spline(t)


    @classmethod
    def constant(cls, value):
        """Curve with the same signature at all times."""
        return cls([0.], [value], kind='linear', extrapolation='constant')

    @classmethod
    def from_series(cls, series, **kwargs):
        """Build from a :py:class:`pandas.Series` indexed by time.
        A :py:class:`pandas.DatetimeIndex` is converted to decimal years."""
        series = series.dropna().sort_index()
        if isinstance(series.index, pd.DatetimeIndex):
            times = decimal_years(series.index)
        else:
            times = series.index.values.astype(np.float64)
        return cls(times, series.values, **kwargs)

    @classmethod
    def read_csv(cls, path, time_column, value_column, *, read_kw=None, **kwargs):
        """Read (time, signature) columns of a CSV file with pandas."""
        df = pd.read_csv(path, **(read_kw or {}))
        series = df.set_index(time_column)[value_column]
        return cls.from_series(series, **kwargs)


    @property
    def times(self):
        return self._times

    @property
    def values(self):
        return self._values

    @property
    def extrapolation(self):
        return self._extrapolation

    @property
    def span(self):
        return self._times[0], self._times[-1]


    def value_at(self, t):
        """Signature (permil) at time(s) `t`."""
        t = np.asarray(t, dtype=np.float64)
        scalar = t.ndim == 0
        t = np.atleast_1d(t)

        first, last = self.span
        before, after = t < first, t > last
        inside = ~(before | after)

        if (before.any() or after.any()) and self._extrapolation == 'raise':
            raise InvalidConfiguration(
                f'Source curve queried outside of its records [{first}, {last}]')

        result = np.empty_like(t)
        result[inside] = self._interpolate(t[inside])

        if self._extrapolation == 'linear' and len(self._times) > 1:
            slope_first = (self._values[1] - self._values[0]) \
                / (self._times[1] - self._times[0])
            slope_last = (self._values[-1] - self._values[-2]) \
                / (self._times[-1] - self._times[-2])
            result[before] = self._values[0] + slope_first * (t[before] - first)
            result[after] = self._values[-1] + slope_last * (t[after] - last)
        else:
            result[before] = self._values[0]
            result[after] = self._values[-1]

        return result[0] if scalar else result

    __call__ = value_at


    def ratio_at(self, t, standard_ratio=1.):
        """Isotope ratio at time(s) `t`."""
        return (self.value_at(t) / 1000 + 1) * standard_ratio


    def __repr__(self):
        first, last = self.span
        return (self.__class__.__name__ +
            f'({len(self._times)} records, {first}..{last},'
            f' kind="{self._kind}", extrapolation="{self._extrapolation}")')
