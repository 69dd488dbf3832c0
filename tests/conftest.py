import numpy as np
import pytest

from tracer_pool_models import MatrixModel, IsotopeCoupler, SourceCurve


@pytest.fixture
def one_pool():
    """k = 0.1/year, unit input, empty at the start."""
    return MatrixModel([0.1], inputs=1.)


@pytest.fixture
def series_model():
    """Two pools in series: k = (0.2, 0.015), transfer fraction 0.15."""
    return MatrixModel.from_topology('series', [0.2, 0.015], 0.15, inputs=1.)


@pytest.fixture
def bomb_curve():
    """Coarse atmospheric radiocarbon bomb peak."""
    return SourceCurve(
        [1900., 1955., 1964., 1980., 2000., 2020.],
        [-20., -20., 800., 300., 100., 0.]
    )


@pytest.fixture
def bomb_coupler(bomb_curve):
    return IsotopeCoupler(bomb_curve)


@pytest.fixture
def modern_coupler():
    """Constant source signature of 0 permil."""
    return IsotopeCoupler(0.)


def random_model(n, seed):
    """Random valid linear model with `n` pools, all receiving input."""
    rng = np.random.default_rng(seed)
    k = 10 ** rng.uniform(-2.5, 0, n)
    T = rng.uniform(0, 1, (n, n))
    np.fill_diagonal(T, 0)
    T *= rng.uniform(0.1, 0.9, n) / T.sum(axis=0)
    partition = rng.dirichlet(np.ones(n))
    return MatrixModel(k, T, inputs=rng.uniform(0.5, 2.),
        input_partition=partition)
