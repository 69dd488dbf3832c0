import numpy as np
import pytest

from tracer_pool_models import (
    MatrixModel, ForcingSeries, InvalidConfiguration, SingularSystemMatrix,
    transfer_from_topology, model_from_config, read_model_config
)


def test_one_pool_steady_state(one_pool):
    assert one_pool.steady_state() == pytest.approx([10.])


def test_series_steady_state(series_model):
    # pool 2: 0.15 * 0.2 * 5 / 0.015
    assert series_model.steady_state() == pytest.approx([5., 10.])


def test_series_matrix(series_model):
    A = series_model.matrix()
    np.testing.assert_allclose(A, [[-0.2, 0.], [0.03, -0.015]])


def test_release_rates(series_model):
    assert series_model.release_rates() == pytest.approx([0.17, 0.015])


def test_topologies():
    T = transfer_from_topology('feedback', 3, [0.5, 0.4], [0.1, 0.2])
    np.testing.assert_allclose(T, [
        [0., 0.1, 0.],
        [0.5, 0., 0.2],
        [0., 0.4, 0.]
    ])
    assert not transfer_from_topology('parallel', 3).any()
    with pytest.raises(InvalidConfiguration):
        transfer_from_topology('ring', 3)


@pytest.mark.parametrize('kwargs', [
    dict(decay_rates=[-0.1]),
    dict(decay_rates=[]),
    dict(decay_rates=[0.1, 0.1], transfer=[[0., 0.], [1.2, 0.]]),
    dict(decay_rates=[0.1, 0.1], transfer=[[0.]]),
    dict(decay_rates=[0.1, 0.1], transfer=[[0.1, 0.], [0., 0.]]),
    dict(decay_rates=[0.1, 0.1], input_partition=[0.5, 0.6]),
    dict(decay_rates=[0.1, 0.1], inputs=[1., 2., 3.]),
    dict(decay_rates=[0.1, 0.1], pool_names=['a', 'a']),
    dict(decay_rates=[0.1], lag=-1.),
    dict(decay_rates=[0.1], initial_mass=[np.nan]),
])
def test_invalid_configuration(kwargs):
    with pytest.raises(InvalidConfiguration):
        MatrixModel(**kwargs)


def test_singular_matrix():
    model = MatrixModel([0.1, 0.], inputs=1.)
    with pytest.raises(SingularSystemMatrix):
        model.steady_state()


def test_lagged_forcing_inputs():
    inputs = ForcingSeries([0., 10.], [0., 10.])
    model = MatrixModel([0.1, 0.1], inputs=inputs, lag=2.)
    assert model.input_vector(5.) == pytest.approx([3., 0.])
    assert model.input_vector(1.) == pytest.approx([0., 0.]) # before record


def test_constant_inputs_ignore_lag():
    model = MatrixModel([0.1], inputs=2., lag=5.)
    assert model.input_vector(0.) == pytest.approx([2.])


def test_input_partition():
    model = MatrixModel([0.1, 0.1], inputs=2., input_partition=[0.25, 0.75])
    assert model.input_vector() == pytest.approx([0.5, 1.5])


def test_modifier_scales_rates(one_pool):
    slow = one_pool.with_parameters(modifier=0.5)
    assert slow.steady_state() == pytest.approx([20.])
    assert one_pool.steady_state() == pytest.approx([10.])


def test_non_linear_model():
    model = MatrixModel([0.1], inputs=1., state_modifier=lambda x: x / 10)
    assert not model.is_linear
    np.testing.assert_allclose(model.matrix(0., np.array([10.])), [[-0.1]])
    with pytest.raises(InvalidConfiguration):
        model.steady_state()


def test_arrays_are_read_only_copies():
    k = np.array([0.1, 0.2])
    model = MatrixModel(k)
    assert not model.decay_rates.flags.writeable
    assert k.flags.writeable
    k[0] = 1.
    assert model.decay_rates[0] == 0.1


def test_model_from_config():
    model = model_from_config({
        'decay_rates': '0.2, 0.015',
        'topology': 'series',
        'fractions': '0.15',
        'inputs': '1',
        'pool_names': 'fast slow'
    })
    assert model.pool_names == ['fast', 'slow']
    assert model.steady_state() == pytest.approx([5., 10.])


def test_model_from_config_with_transfer_matrix():
    model = model_from_config({
        'decay_rates': '0.2 0.015',
        'transfer': '0 0; 0.15 0',
        'inputs': '1'
    })
    assert model.steady_state() == pytest.approx([5., 10.])


def test_read_model_config(tmp_path):
    path = tmp_path / 'series.ini'
    path.write_text(
        '[model]\n'
        'decay_rates = 0.2, 0.015\n'
        'topology = series\n'
        'fractions = 0.15\n'
        'inputs = 1\n'
        '[grid]\n'
        'times = 0:10:1\n'
        'ages = 0, 1, 2\n'
        'quantiles = 0.5, 0.9\n'
    )
    model, grid = read_model_config(path)
    assert model.n_pools == 2
    assert grid['times'] == pytest.approx(np.arange(11.))
    assert grid['ages'] == pytest.approx([0., 1., 2.])
    assert grid['quantiles'] == [0.5, 0.9]


def test_read_missing_model_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_model_config(tmp_path / 'nope.ini')
