import numpy as np
import pandas as pd
import pytest

from tracer_pool_models import (
    MatrixModel, Observations, CostFunction, fit, sample, sample_chains,
    gelman_rubin, evaluate_candidates, MCMCResult, InvalidConfiguration,
    IntegrationFailure, FitDidNotConverge
)


TRUTH = np.array([0.05, 2.])
BOUNDS = ([0.001, 0.1], [1., 10.])
OBS_TIMES = np.arange(1955., 2021., 5.)


def one_pool_factory(k, u):
    return MatrixModel([k], inputs=u)


def split_factory(f1, f2):
    """Pool 0 passes fractions f1 and f2 to pools 1 and 2."""
    T = np.zeros((3, 3))
    T[1, 0], T[2, 0] = f1, f2
    return MatrixModel([0.1, 0.05, 0.02], T, inputs=1.)


class QuadraticCost:
    """Stands in for a CostFunction: cost of an independent Gaussian."""

    def __init__(self, mean, sd, bounds=(-np.inf, np.inf), fail_above=np.inf):
        self.mean = np.asarray(mean, dtype=np.float64)
        self.sd = np.asarray(sd, dtype=np.float64)
        d = len(self.mean)
        self.names = [f'p{i}' for i in range(d)]
        lo, hi = bounds
        self.bounds = (np.broadcast_to(np.asarray(lo, dtype=np.float64), (d,)),
            np.broadcast_to(np.asarray(hi, dtype=np.float64), (d,)))
        self.fail_above = fail_above
        self.record = True
        self.history = []

    def in_bounds(self, theta):
        lo, hi = self.bounds
        return bool(np.all(theta >= lo) and np.all(theta <= hi))

    def __call__(self, theta):
        assert self.in_bounds(theta)
        self.history.append(np.array(theta))
        if theta[0] > self.fail_above:
            raise IntegrationFailure('synthetic failure')
        z = (theta - self.mean) / self.sd
        return float(z @ z)


@pytest.fixture
def observations(bomb_coupler):
    template = Observations(mass=(OBS_TIMES, np.ones(len(OBS_TIMES))),
        delta=(OBS_TIMES, np.zeros(len(OBS_TIMES))), mass_sd=0.1, delta_sd=2.)
    cost = CostFunction(one_pool_factory, template, ['k', 'u'], BOUNDS,
        coupler=bomb_coupler, t_start=1950.)
    mass, delta = cost.predict(TRUTH)
    return Observations(mass, delta, mass_sd=0.1, delta_sd=2.)


@pytest.fixture
def noisy_cost(observations, bomb_coupler):
    rng = np.random.default_rng(2024)
    mass = observations.mass + rng.normal(0, 0.1, len(observations.mass))
    delta = observations.delta + rng.normal(0, 2., len(observations.delta))
    noisy = Observations(mass, delta, mass_sd=0.1, delta_sd=2.)
    return CostFunction(one_pool_factory, noisy, ['k', 'u'], BOUNDS,
        coupler=bomb_coupler, t_start=1950.)


@pytest.fixture
def cost(observations, bomb_coupler):
    return CostFunction(one_pool_factory, observations, ['k', 'u'], BOUNDS,
        coupler=bomb_coupler, t_start=1950.)


def test_observations_defaults():
    obs = Observations(mass=pd.Series([1., 2., 3.], index=[2000., 2001., 2002.]),
        delta=([2001.5], [40.]))
    assert obs.mass_sd == pytest.approx([1., 1., 1.])
    assert obs.delta_sd == pytest.approx([1.]) # single value, no spread
    assert obs.times == pytest.approx([2000., 2001., 2001.5, 2002.])
    assert len(obs) == 4
    assert obs.residuals([1., 2., 4.], [38.]) == pytest.approx([0., 0., 1., -2.])


def test_observations_from_dates():
    dates = pd.to_datetime(['2000-01-01', '2010-01-01'])
    obs = Observations(delta=pd.Series([10., np.nan], index=dates))
    assert obs.times == pytest.approx([2000.])
    assert obs.mass is None


def test_observations_read_csv(tmp_path):
    path = tmp_path / 'obs.csv'
    path.write_text('year,soc,d14c\n2000,40,\n2005,41,20\n2010,42,10\n')
    obs = Observations.read_csv(path, 'year', 'soc', 'd14c', delta_sd=5.)
    assert list(obs.mass.index) == [2000., 2005., 2010.]
    assert list(obs.delta.index) == [2005., 2010.]
    assert obs.delta_sd == pytest.approx([5., 5.])


def test_no_observations():
    with pytest.raises(InvalidConfiguration):
        Observations()


def test_delta_observations_need_coupler(observations):
    with pytest.raises(InvalidConfiguration):
        CostFunction(one_pool_factory, observations, ['k', 'u'], BOUNDS)


def test_start_after_first_observation(observations, bomb_coupler):
    with pytest.raises(InvalidConfiguration):
        CostFunction(one_pool_factory, observations, ['k', 'u'], BOUNDS,
            coupler=bomb_coupler, t_start=1960.)


def test_cost_at_truth_is_zero(cost):
    assert cost(TRUTH) == pytest.approx(0., abs=1e-8)
    assert cost(TRUTH * [1.2, 1.]) > 1.
    assert cost.evaluated.shape == (2, 2)


def test_out_of_bounds_not_evaluated(cost):
    with pytest.raises(InvalidConfiguration):
        cost.residuals([2., 1.])
    with pytest.raises(InvalidConfiguration):
        cost.residuals([0.05])
    assert cost.history == []


def test_fit_recovers_parameters(noisy_cost):
    result = fit(noisy_cost, [0.1, 1.])
    assert result.converged
    result.raise_for_status()
    assert result.parameters == pytest.approx(TRUTH, rel=0.1)
    assert result.as_dict()['u'] == pytest.approx(2., rel=0.1)
    assert result.covariance.shape == (2, 2)
    sd = result.summary()['sd'].values
    assert np.all(np.isfinite(sd)) and np.all(sd > 0)
    assert noisy_cost(result.parameters) > 0
    assert all(noisy_cost.in_bounds(theta) for theta in noisy_cost.evaluated)


def test_fit_budget_exhausted(cost):
    result = fit(cost, [0.1, 1.], max_nfev=1)
    assert not result.converged
    with pytest.raises(FitDidNotConverge) as exc_info:
        result.raise_for_status()
    assert exc_info.value.result is result


def test_fit_starting_point_out_of_bounds(cost):
    with pytest.raises(InvalidConfiguration):
        fit(cost, [5., 1.])


def test_sample_moments():
    target = QuadraticCost([1., -2.], [0.5, 2.])
    result = sample(target, [1., -2.], [0.5**2 * 2.4, 2.**2 * 2.4],
        n_iter=20000, burn_in=2000, seed=42)
    assert isinstance(result, MCMCResult)
    assert result.samples.shape == (18000, 2)
    assert result.samples.mean(axis=0) == pytest.approx([1., -2.], abs=0.2)
    assert result.samples.std(axis=0) == pytest.approx([0.5, 2.], rel=0.1)
    assert 0.1 < result.acceptance_rate < 0.9
    assert list(result.summary().index) == ['p0', 'p1']


def test_rejected_proposals_repeat_state():
    result = sample(QuadraticCost([0.], [1.]), [0.], [4.], n_iter=500,
        burn_in=0, seed=1)
    rejected = np.nonzero(~result.accepted)[0]
    rejected = rejected[rejected > 0]
    assert len(rejected) > 0
    np.testing.assert_array_equal(result.chain[rejected],
        result.chain[rejected - 1])


def test_sample_is_reproducible():
    a = sample(QuadraticCost([0.], [1.]), [0.], [1.], n_iter=200, burn_in=0,
        seed=7)
    b = sample(QuadraticCost([0.], [1.]), [0.], [1.], n_iter=200, burn_in=0,
        seed=7)
    np.testing.assert_array_equal(a.chain, b.chain)


@pytest.mark.parametrize('policy', ['reject', 'reflect'])
def test_sample_stays_in_bounds(policy):
    target = QuadraticCost([0.5, 0.5], [1., 1.], bounds=(0., 1.))
    result = sample(target, [0.5, 0.5], [0.25, 0.25], n_iter=1000, burn_in=100,
        seed=3, out_of_bounds=policy)
    assert result.n_outside > 0
    assert np.all((result.chain >= 0) & (result.chain <= 1))
    for theta in target.history:
        assert target.in_bounds(theta)


def test_failed_integration_is_rejected():
    target = QuadraticCost([0.], [1.], fail_above=0.5)
    result = sample(target, [0.], [1.], n_iter=500, burn_in=0, seed=5)
    assert result.chain.max() <= 0.5
    assert np.all(np.isfinite(result.costs))


def test_adaptation_during_burn_in_only():
    target = QuadraticCost([0., 0.], [1., 1.])
    adapted = sample(target, [0., 0.], [9., 9.], n_iter=2000,
        burn_in=1000, seed=11, update_every=100)
    assert np.all(np.diag(adapted.proposal_cov) < 20.)
    assert np.all(np.diag(adapted.proposal_cov) > 0.3)

    fixed = sample(target, [0., 0.], [9., 9.], n_iter=2000, burn_in=0,
        seed=11, update_every=100)
    np.testing.assert_allclose(fixed.proposal_cov, 9 * np.eye(2))


def test_bad_sampler_settings():
    target = QuadraticCost([0.], [1.], bounds=(-1., 1.))
    with pytest.raises(InvalidConfiguration):
        sample(target, [2.], [1.], n_iter=10, burn_in=0)
    with pytest.raises(InvalidConfiguration):
        sample(target, [0.], [1.], n_iter=10, burn_in=10)
    with pytest.raises(InvalidConfiguration):
        sample(target, [0.], [1.], n_iter=10, burn_in=0, out_of_bounds='clip')
    with pytest.raises(InvalidConfiguration):
        sample(target, [0.], [[-1.]], n_iter=10, burn_in=0)


def test_gelman_rubin():
    rng = np.random.default_rng(0)
    mixed = rng.standard_normal((4, 1000, 2))
    assert gelman_rubin(mixed) == pytest.approx([1., 1.], abs=0.01)
    apart = mixed + np.arange(4)[:, np.newaxis, np.newaxis] * 5
    assert np.all(gelman_rubin(apart) > 1.5)
    with pytest.raises(InvalidConfiguration):
        gelman_rubin(mixed[:1])


def test_sample_chains():
    target = QuadraticCost([0.], [1.])
    chains = sample_chains(target, [[-1.], [0.], [1.]], [2.], seed=9,
        n_iter=2000, burn_in=500)
    assert len(chains) == 3
    assert not np.array_equal(chains[0].chain[-100:], chains[1].chain[-100:])
    assert gelman_rubin(chains) == pytest.approx([1.], abs=0.1)
    again = sample_chains(target, [[-1.], [0.], [1.]], [2.], seed=9,
        n_iter=2000, burn_in=500)
    np.testing.assert_array_equal(chains[2].chain, again[2].chain)


def test_evaluate_candidates():
    target = QuadraticCost([0., 0.], [1., 1.], bounds=(-1., 1.))
    costs = evaluate_candidates(target, [[0., 0.], [1., 0.], [2., 0.]])
    assert costs.tolist() == [0., 1., np.inf]
    assert len(target.history) == 2


def test_mcmc_on_cost_function(cost):
    result = sample(cost, TRUTH, [1e-6, 1e-3], n_iter=50, burn_in=10, seed=0)
    assert len(cost.history) > 1
    assert all(cost.in_bounds(theta) for theta in cost.history)
    assert all(cost.in_bounds(theta) for theta in result.chain)
    assert list(result.to_frame().columns) == ['k', 'u', 'cost', 'accepted']


def test_invalid_model_proposals_are_rejected():
    obs = Observations(mass=([1960., 1980.], [20., 25.]))
    cost = CostFunction(split_factory, obs, ['f1', 'f2'], ([0., 0.], [1., 1.]),
        t_start=1950.)
    result = sample(cost, [0.3, 0.3], [0.09, 0.09], n_iter=300, burn_in=0,
        seed=0)
    assert np.all(result.chain.sum(axis=1) <= 1.)
    assert np.all(np.isfinite(result.costs))
    # proposals with f1 + f2 > 1 were tried and did not enter the chain
    assert any(theta.sum() > 1. for theta in cost.history)
    with pytest.raises(InvalidConfiguration):
        sample(cost, [0.7, 0.7], [0.09, 0.09], n_iter=10, burn_in=0)
