"""
Exceptions and warnings raised by the ``tracer_pool_models`` engine.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import warnings

import numpy as np
from loguru import logger


__all__ = [
    'TracerModelError',
    'InvalidConfiguration',
    'IntegrationFailure',
    'SingularSystemMatrix',
    'UndefinedRatio',
    'FitDidNotConverge',
    'Cancelled',
    'DegenerateResultWarning',
    'warn_degenerate'
]


class TracerModelError(Exception):
    """Base class of all errors raised by ``tracer_pool_models``."""


class InvalidConfiguration(TracerModelError, ValueError):
    """Malformed rates, fractions, dimensions or grids.
    Raised before any computation takes place."""


class IntegrationFailure(TracerModelError):
    """The ODE solver did not reach the end of the time grid."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class SingularSystemMatrix(TracerModelError, np.linalg.LinAlgError):
    """Transfer-rate matrix cannot be inverted, so no steady state exists."""


class UndefinedRatio(TracerModelError, ZeroDivisionError):
    """Isotope ratio requested where the (pool) mass is zero.

    Attributes
    ----------
    where : tuple of numpy.ndarray
        Indices of the offending entries, as returned by `numpy.nonzero`
    """

    def __init__(self, message, where=()):
        super().__init__(message)
        self.where = where


class FitDidNotConverge(TracerModelError):
    """Optimizer exhausted its budget. The best-found result is attached."""

    def __init__(self, result):
        super().__init__(
            f'Fit did not converge after {result.nfev} function evaluations'
            f' (status {result.status}): {result.message}'
        )
        self.result = result


class Cancelled(TracerModelError):
    """Run was stopped through a :py:class:`CancellationFlag`."""


class DegenerateResultWarning(UserWarning):
    """Result was computed but is numerically degenerate, e.g. a
    negative density or a signature outside the plausible range."""


def warn_degenerate(message):
    logger.warning(message)
    warnings.warn(message, DegenerateResultWarning, stacklevel=3)
