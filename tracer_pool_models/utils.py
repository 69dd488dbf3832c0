"""
Small helpers shared by the engine modules.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import time
import numpy as np

from tracer_pool_models.errors import Cancelled, InvalidConfiguration


__all__ = ['CancellationFlag', 'trapezoid_weights', 'as_time_grid']


class CancellationFlag:
    """
    Cooperative cancellation for long integrations and MCMC chains.
    
    Parameters
    ----------
    timeout : float, optional
        Seconds from creation after which :py:meth:`check` raises
    """

    def __init__(self, timeout=None):
        self._cancelled = False
        if timeout is None:
            self._deadline = None
        else:
            self._deadline = time.monotonic() + float(timeout)

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._deadline is not None and time.monotonic() > self._deadline

    def check(self):
        """Raise :py:class:`Cancelled` if cancelled or past the deadline."""
        if self.cancelled:
            raise Cancelled('Run cancelled' + (
                '' if self._cancelled else ' (deadline exceeded)'))

    def __getstate__(self):
        # deadline is relative to this process's monotonic clock
        state = self.__dict__.copy()
        state['_deadline'] = None
        return state


def trapezoid_weights(x):
    """Quadrature weights `w` such that `w @ f(x)` is the trapezoid rule."""
    x = np.asarray(x, dtype=np.float64)
    w = np.zeros_like(x)
    if len(x) < 2:
        return w
    dx = np.diff(x)
    w[:-1] += dx / 2
    w[1:] += dx / 2
    return w


def as_time_grid(times, name='times'):
    """Cast to a strictly increasing 1-D float array."""
    times = np.atleast_1d(np.array(times, dtype=np.float64))
    if times.ndim != 1 or len(times) == 0:
        raise InvalidConfiguration(f'`{name}` must be a non-empty 1-D sequence')
    if not np.all(np.isfinite(times)):
        raise InvalidConfiguration(f'`{name}` contains non-finite values')
    if np.any(np.diff(times) <= 0):
        raise InvalidConfiguration(f'`{name}` must be strictly increasing')
    return times
