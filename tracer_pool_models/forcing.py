"""
Time-indexed forcing: external inputs and environmental rate modifiers.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import numpy as np
import pandas as pd

from tracer_pool_models.errors import InvalidConfiguration
from tracer_pool_models.source_curve import decimal_years
from tracer_pool_models.utils import as_time_grid


__all__ = ['ForcingSeries']


class ForcingSeries:
    """
    Piecewise-defined time series, evaluated at arbitrary times.

    Parameters
    ----------
    times : array_like
        Strictly increasing times of the records
    values : array_like
        Shape (len(times),) for a scalar series or
        (len(times), npools) for one column per pool
    interpolation : {'linear', 'previous'}, default 'linear'
        'previous' holds each record until the next one (step function)
    before_record : {'zero', 'constant', 'raise'}, default 'zero'
        Value before the first record: zero, the first record, or error
    after_record : {'constant', 'raise'}, default 'constant'
        Value after the last record: the last record, or error
    """

    def __init__(self, times, values, interpolation='linear',
            before_record='zero', after_record='constant'):

        times = as_time_grid(times, 'times')
        values = np.array(values, dtype=np.float64)

        if values.shape[:1] != times.shape or values.ndim > 2:
            raise InvalidConfiguration(
                f'Forcing values of shape {values.shape} do not match'
                f' {len(times)} times')
        if not np.all(np.isfinite(values)):
            raise InvalidConfiguration('Forcing has non-finite values')
        if interpolation not in ('linear', 'previous'):
            raise InvalidConfiguration(
                f'Unknown interpolation "{interpolation}"')
        if before_record not in ('zero', 'constant', 'raise'):
            raise InvalidConfiguration(
                f'Unknown before_record policy "{before_record}"')
        if after_record not in ('constant', 'raise'):
            raise InvalidConfiguration(
                f'Unknown after_record policy "{after_record}"')

        times.setflags(write=False)
        values.setflags(write=False)
        self.times = times
        self.values = values
        self.interpolation = interpolation
        self.before_record = before_record
        self.after_record = after_record


    @classmethod
    def from_pandas(cls, data, **kwargs):
        """From a Series or DataFrame (one column per pool) indexed by time."""
        data = data.sort_index()
        if isinstance(data.index, pd.DatetimeIndex):
            times = decimal_years(data.index)
        else:
            times = data.index.values.astype(np.float64)
        return cls(times, data.values, **kwargs)


    @property
    def ncolumns(self):
        return 1 if self.values.ndim == 1 else self.values.shape[1]

    @property
    def min(self):
        return self.values.min()


    def value_at(self, t):
        t = float(t)
        first, last = self.times[0], self.times[-1]

        if t < first:
            if self.before_record == 'raise':
                raise InvalidConfiguration(
                    f'Forcing requested at t={t}, before first record {first}')
            if self.before_record == 'zero':
                return np.zeros_like(self.values[0])
            return self.values[0].copy()

        if t > last:
            if self.after_record == 'raise':
                raise InvalidConfiguration(
                    f'Forcing requested at t={t}, after last record {last}')
            return self.values[-1].copy()

        i = np.searchsorted(self.times, t, side='right') - 1
        if self.interpolation == 'previous' or i == len(self.times) - 1:
            return self.values[i].copy()
        w = (t - self.times[i]) / (self.times[i+1] - self.times[i])
        return (1 - w) * self.values[i] + w * self.values[i+1]

    __call__ = value_at


    def __repr__(self):
        return (self.__class__.__name__ +
            f'({len(self.times)} records, {self.times[0]}..{self.times[-1]},'
            f' interpolation="{self.interpolation}")')
