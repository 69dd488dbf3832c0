import numpy as np
import pytest

from tracer_pool_models import (
    MatrixModel, SingularSystemMatrix, InvalidConfiguration,
    DegenerateResultWarning, linearize, system_age_density, pool_age_density,
    transit_time_density, mean_system_age, mean_pool_ages, mean_transit_time,
    system_age_quantile, transit_time_quantile, summarize, AgeDistribution,
    age_distributions
)

from conftest import random_model


AGES = np.linspace(0, 2000, 20001)


def test_one_pool_density(one_pool):
    A, u = linearize(one_pool)
    ages = np.linspace(0, 50, 11)
    expected = 0.1 * np.exp(-0.1 * ages)
    assert system_age_density(A, u, ages) == pytest.approx(expected)
    assert transit_time_density(A, u, ages) == pytest.approx(expected)
    assert pool_age_density(A, u, ages)[:, 0] == pytest.approx(expected)


def test_densities_integrate_to_one(series_model):
    A, u = linearize(series_model)
    for density in (system_age_density(A, u, AGES),
            transit_time_density(A, u, AGES)):
        _, _, mass_fraction = summarize(AGES, density)
        assert mass_fraction == pytest.approx(1., abs=1e-4)


@pytest.mark.parametrize('n, seed', [(2, 0), (2, 1), (3, 2), (3, 3), (5, 4)])
def test_random_model_densities_integrate_to_one(n, seed):
    A, u = linearize(random_model(n, seed))
    # fine steps for the fastest pools, long tail for the slowest mode
    slowest = np.min(np.abs(np.linalg.eigvals(A).real))
    ages = np.concatenate([np.linspace(0, 20, 2001),
        np.geomspace(20.01, 40 / slowest, 20000)])
    for density in (system_age_density(A, u, ages),
            transit_time_density(A, u, ages)):
        _, _, mass_fraction = summarize(ages, density)
        assert mass_fraction == pytest.approx(1., abs=1e-3)


def test_analytic_means(series_model):
    A, u = linearize(series_model)
    # pool 2 mass, 10, is 1/0.015 years old on top of pool 1's 5 years
    assert mean_pool_ages(A, u) == pytest.approx([5., 5. + 1 / 0.015])
    assert mean_system_age(A, u) == pytest.approx(
        (5 * 5 + 10 * (5 + 1 / 0.015)) / 15)
    assert mean_transit_time(A, u) == pytest.approx(15.)


def test_numerical_means_match_analytic(series_model):
    A, u = linearize(series_model)
    mean, _, _ = summarize(AGES, system_age_density(A, u, AGES))
    assert mean == pytest.approx(mean_system_age(A, u), rel=1e-4)
    mean, _, _ = summarize(AGES, transit_time_density(A, u, AGES))
    assert mean == pytest.approx(mean_transit_time(A, u), rel=1e-4)


def test_transit_time_grows_with_slower_pool():
    means = []
    for k2 in (0.05, 0.02, 0.01):
        model = MatrixModel.from_topology('series', [0.2, k2], 0.15, inputs=1.)
        means.append(mean_transit_time(*linearize(model)))
    assert means[0] < means[1] < means[2]


def test_exact_quantiles(one_pool):
    A, u = linearize(one_pool)
    assert system_age_quantile(A, u, 0.5) == pytest.approx(np.log(2) / 0.1)
    assert transit_time_quantile(A, u, 0.95) == pytest.approx(
        -np.log(0.05) / 0.1)
    assert system_age_quantile(A, u, 0.) == 0.
    with pytest.raises(InvalidConfiguration):
        system_age_quantile(A, u, 1.)


def test_numerical_median_matches_exact(series_model):
    A, u = linearize(series_model)
    _, (median,), _ = summarize(AGES, system_age_density(A, u, AGES), [0.5])
    assert median == pytest.approx(system_age_quantile(A, u, 0.5), rel=1e-3)


def test_quantile_interpolation():
    mean, values, mass_fraction = summarize([0., 1., 2.], [0.5, 0.5, 0.5],
        [0.25, 0.75])
    assert values == pytest.approx([0.5, 1.5])
    assert mean == pytest.approx(1.)
    assert mass_fraction == pytest.approx(1.)


def test_quantile_beyond_axis(one_pool):
    A, u = linearize(one_pool)
    ages = np.linspace(0, 5, 51)
    with pytest.warns(DegenerateResultWarning):
        _, values, mass_fraction = summarize(ages,
            system_age_density(A, u, ages), [0.1, 0.5])
    assert mass_fraction == pytest.approx(1 - np.exp(-0.5), rel=1e-4)
    assert values[0] == pytest.approx(-np.log(0.9) / 0.1, rel=1e-3)
    assert np.isnan(values[1])


def test_empty_pool_density():
    model = MatrixModel([0.1, 0.2], inputs=1.) # no input or transfer to pool 2
    A, u = linearize(model)
    density = pool_age_density(A, u, [0., 1.])
    assert np.all(np.isfinite(density[:, 0]))
    assert np.all(np.isnan(density[:, 1]))
    assert np.isnan(mean_pool_ages(A, u)[1])


def test_singular_matrix():
    A = np.array([[-0.1, 0.], [0.1, 0.]])
    with pytest.raises(SingularSystemMatrix):
        transit_time_density(A, [1., 0.], [0., 1.])
    with pytest.raises(SingularSystemMatrix):
        mean_system_age(A, [1., 0.])


def test_defective_matrix():
    # two identical pools in series: transit time is Gamma(2, 0.1)
    model = MatrixModel.from_topology('series', [0.1, 0.1], 1., inputs=1.)
    A, u = linearize(model)
    ages = np.linspace(0, 100, 21)
    assert transit_time_density(A, u, ages) == pytest.approx(
        0.01 * ages * np.exp(-0.1 * ages), abs=1e-8)
    assert mean_transit_time(A, u) == pytest.approx(20.)


def test_non_linear_model_is_linearized():
    model = MatrixModel([0.1], inputs=1., state_modifier=lambda x: x / 10)
    A, u = linearize(model)
    assert A[0, 0] == pytest.approx(-0.1, rel=1e-6)
    assert mean_system_age(A, u) == pytest.approx(10., rel=1e-6)


def test_bad_inputs():
    with pytest.raises(InvalidConfiguration):
        system_age_density([[-0.1]], [0.], [0., 1.])
    with pytest.raises(InvalidConfiguration):
        system_age_density([[-0.1]], [1.], [-1., 1.])


def test_age_distributions(series_model):
    result = age_distributions(series_model, AGES, quantiles=[0.5, 0.9])
    age, transit_time = result['age'], result['transit_time']
    assert age.exact_mean == pytest.approx(mean_system_age(
        *linearize(series_model)))
    assert transit_time.mean == pytest.approx(15., rel=1e-4)
    assert list(age.summary().index) == ['mean', 'mass_fraction', 'q0.5', 'q0.9']
    assert list(age.to_frame().columns) == ['density', 'pool1', 'pool2']
    assert list(transit_time.to_frame().columns) == ['density']
    assert age.quantile(0.5) == pytest.approx(age.quantile_values[0])


def test_age_distribution_from_samples():
    dist = AgeDistribution([0., 1., 2.], [0.5, 0.5, 0.5], 'transit time',
        quantiles=[0.5])
    assert dist.quantile_values == pytest.approx([1.])
    assert dist.summary().name == 'transit time'
