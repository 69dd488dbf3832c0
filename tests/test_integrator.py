import numpy as np
import pytest

from tracer_pool_models import (
    MatrixModel, ForcingSeries, CancellationFlag, integrate, spin_up,
    find_steady_state, InvalidConfiguration, IntegrationFailure, Cancelled
)


def test_one_pool_approach_to_steady_state(one_pool):
    trajectory = integrate(one_pool, np.linspace(0, 10, 11))
    expected = 10 * (1 - np.exp(-1)) # 6.32
    assert abs(trajectory.mass[-1, 0] - expected) <= 0.01 * expected


def test_one_pool_long_run(one_pool):
    trajectory = integrate(one_pool, [0., 100., 200.])
    assert trajectory.mass[-1, 0] == pytest.approx(10., rel=1e-6)


def test_uncoupled_series_is_independent_decays():
    model = MatrixModel.from_topology('series', [0.2, 0.05], 0.,
        initial_mass=[3., 2.])
    times = np.linspace(0, 50, 26)
    trajectory = integrate(model, times)
    expected = np.column_stack([3 * np.exp(-0.2 * times),
        2 * np.exp(-0.05 * times)])
    np.testing.assert_allclose(trajectory.mass, expected, rtol=1e-6, atol=1e-9)


def test_ramp_input():
    # u(t) = t, x(0) = 0: x(t) = t/k - (1 - exp(-k t)) / k^2
    model = MatrixModel([0.1], inputs=ForcingSeries([0., 20.], [0., 20.]))
    trajectory = integrate(model, [0., 5., 10.])
    assert trajectory.mass[-1, 0] == pytest.approx(100 * np.exp(-1), rel=1e-6)


def test_single_time_returns_initial_state():
    model = MatrixModel([0.1], inputs=1., initial_mass=[4.])
    trajectory = integrate(model, [5.])
    assert trajectory.mass.shape == (1, 1)
    assert trajectory.mass[0, 0] == 4.


def test_explicit_initial_state(series_model):
    x0 = series_model.steady_state()
    trajectory = integrate(series_model, [0., 10., 100.], x0)
    np.testing.assert_allclose(trajectory.mass, np.tile(x0, (3, 1)), rtol=1e-6)


@pytest.mark.parametrize('times', [[0., 0.], [1., 0.], [0., np.inf], []])
def test_bad_time_grid(one_pool, times):
    with pytest.raises(InvalidConfiguration):
        integrate(one_pool, times)


def test_non_stiff_method_refused(one_pool):
    with pytest.raises(InvalidConfiguration):
        integrate(one_pool, [0., 1.], method='RK45')


def test_evaluation_budget(series_model):
    with pytest.raises(IntegrationFailure):
        integrate(series_model, [0., 1000.], method='BDF', max_evaluations=5)


def test_cancellation(series_model):
    flag = CancellationFlag()
    flag.cancel()
    with pytest.raises(Cancelled):
        integrate(series_model, [0., 100.], method='BDF', cancel=flag)


def test_trajectory_frame(series_model):
    trajectory = integrate(series_model, [0., 1., 2.])
    df = trajectory.to_frame()
    assert list(df.columns) == ['pool1', 'pool2']
    assert list(df.index) == [0., 1., 2.]
    assert not trajectory.mass.flags.writeable
    assert trajectory.total_mass == pytest.approx(trajectory.mass.sum(axis=1))


def test_spin_up_linear(series_model):
    assert spin_up(series_model) == pytest.approx([5., 10.])


def test_spin_up_non_linear():
    # dx/dt = 1 - 0.01 x^2
    model = MatrixModel([0.1], inputs=1., state_modifier=lambda x: x / 10)
    assert spin_up(model) == pytest.approx([10.], rel=1e-6)


def test_find_steady_state_respects_bounds():
    # roots at -2 and 2, start next to the negative one
    func = lambda x: x**2 - 4
    x, success = find_steady_state(func, np.array([-1.5]), bounds=(1, None))
    assert success
    assert x == pytest.approx([2.], rel=1e-4)
