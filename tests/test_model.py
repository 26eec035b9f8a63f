"""Tests for the hierarchical model densities and starting values."""

import numpy as np
import pytest
import jax.numpy as jnp
from jax import random, vmap
from scipy import stats

from spikeinfer.models import HierarchicalModel, MCMCState, PriorConfig
from spikeinfer.models.hierarchical import METROPOLIS_BLOCKS

# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def model(tiny_dataset):
    return HierarchicalModel(tiny_dataset)


@pytest.fixture
def state():
    return MCMCState(
        mu=jnp.array([150.0, 80.0]),
        delta=jnp.array([0.3, 1.2]),
        phi=jnp.array([0.8, 1.1, 1.2, 0.9]),
        s=jnp.array([0.5, 0.7, 0.4, 0.6]),
        nu=jnp.array([0.45, 0.5, 0.55, 0.5]),
        theta=jnp.array([0.3]),
    )


# ------------------------------------------------------------------------------
# Likelihood
# ------------------------------------------------------------------------------


class TestLikelihood:
    def test_biological_matches_scipy(self, model, tiny_dataset, state):
        loglik = np.asarray(model.biological_log_likelihood(state))
        assert loglik.shape == (2, 4)

        mean = np.outer(state.mu, state.phi * state.nu)
        n = 1.0 / np.asarray(state.delta)[:, None]
        expected = stats.nbinom.logpmf(
            tiny_dataset.biological_counts, n, n / (n + mean)
        )
        np.testing.assert_allclose(loglik, expected, rtol=1e-4, atol=1e-3)

    def test_spikes_match_scipy(self, model, tiny_dataset, state):
        loglik = np.asarray(model.spike_log_likelihood(state))
        assert loglik.shape == (3, 4)

        rate = np.outer(tiny_dataset.spike_mu, state.nu)
        expected = stats.poisson.logpmf(tiny_dataset.spike_counts, rate)
        np.testing.assert_allclose(loglik, expected, rtol=1e-4, atol=1e-3)

    def test_matrices(self, model, state):
        bio, spikes = model.log_likelihood_matrices(state)
        assert bio.shape == (2, 4)
        assert spikes.shape == (3, 4)

    def test_nu_prior_matches_scipy(self, model, state):
        logp = np.asarray(model.nu_log_prior(state.nu, state.s, state.theta))
        theta = float(state.theta[0])
        expected = stats.gamma.logpdf(
            state.nu, a=1.0 / theta, scale=np.asarray(state.s) * theta
        )
        np.testing.assert_allclose(logp, expected, rtol=1e-4, atol=1e-4)


# ------------------------------------------------------------------------------
# Log targets
# ------------------------------------------------------------------------------


class TestLogTargets:
    @pytest.mark.parametrize("block", METROPOLIS_BLOCKS)
    def test_shapes_and_finiteness(self, model, state, block):
        target = model.log_target(block, state)
        assert target.shape == getattr(state, block).shape
        assert jnp.all(jnp.isfinite(target))

    def test_mu_target_includes_jacobian(self, model, state):
        loc, scale = model.priors.mu
        loglik = model.biological_log_likelihood(state).sum(axis=1)
        logprior = stats.lognorm.logpdf(
            state.mu, s=scale, scale=np.exp(loc)
        )
        expected = np.asarray(loglik) + logprior + np.log(state.mu)
        np.testing.assert_allclose(
            model.mu_log_target(state), expected, rtol=1e-4, atol=1e-3
        )

    def test_mu_target_differences_track_log_joint(self, model, state):
        # Changing one gene's mu moves its own log target and the log joint
        # by the same amount (up to the Jacobian term)
        new = state._replace(mu=state.mu.at[0].multiply(1.3))
        d_target = model.mu_log_target(new)[0] - model.mu_log_target(state)[0]
        d_joint = model.log_joint(new) - model.log_joint(state)
        np.testing.assert_allclose(
            d_target - np.log(1.3), d_joint, rtol=1e-3, atol=1e-2
        )

    def test_theta_segments_by_batch(self, batched_dataset):
        model = HierarchicalModel(batched_dataset)
        init = model.initial_state()
        assert init.theta.shape == (2,)
        assert model.theta_log_target(init).shape == (2,)

    def test_priors_are_used(self, tiny_dataset, state):
        wide = HierarchicalModel(tiny_dataset, PriorConfig(delta=(0.0, 10.0)))
        narrow = HierarchicalModel(tiny_dataset, PriorConfig(delta=(0.0, 0.1)))
        assert not np.allclose(
            wide.delta_log_target(state), narrow.delta_log_target(state)
        )


# ------------------------------------------------------------------------------
# Conjugate update
# ------------------------------------------------------------------------------


class TestSampleS:
    def test_positive_and_reproducible(self, model, state, rng_key):
        s1 = model.sample_s(rng_key, state)
        s2 = model.sample_s(rng_key, state)
        assert s1.shape == (4,)
        assert jnp.all(s1 > 0)
        np.testing.assert_array_equal(s1, s2)

    def test_matches_conjugate_mean(self, model, state):
        # E[1/s] = (a_s + 1/theta) / (b_s + nu/theta)
        keys = random.split(random.PRNGKey(0), 4000)
        inv_s = 1.0 / np.asarray(vmap(lambda k: model.sample_s(k, state))(keys))
        a_s, b_s = model.priors.s
        theta = float(state.theta[0])
        expected = (a_s + 1.0 / theta) / (b_s + np.asarray(state.nu) / theta)
        np.testing.assert_allclose(inv_s.mean(axis=0), expected, rtol=0.05)


# ------------------------------------------------------------------------------
# Starting values
# ------------------------------------------------------------------------------


class TestInitialState:
    def test_defaults(self, model):
        init = model.initial_state()
        for name in MCMCState._fields:
            assert jnp.all(getattr(init, name) > 0)
        np.testing.assert_allclose(float(init.phi.mean()), 1.0, rtol=1e-5)
        # Expression of A is twice that of B
        np.testing.assert_allclose(
            float(init.mu[0] / init.mu[1]), 2.0, rtol=1e-3
        )

    def test_overrides(self, model):
        init = model.initial_state(
            {"mu": [10.0, 20.0], "theta": 0.7, "phi": [2.0, 2.0, 2.0, 2.0]}
        )
        np.testing.assert_allclose(init.mu, [10.0, 20.0])
        np.testing.assert_allclose(init.theta, [0.7])
        np.testing.assert_allclose(init.phi, np.ones(4))

    def test_theta_by_batch_label(self, batched_dataset):
        model = HierarchicalModel(batched_dataset)
        init = model.initial_state({"theta": {1: 0.2, 3: 0.9}})
        np.testing.assert_allclose(init.theta, [0.2, 0.9])

    @pytest.mark.parametrize(
        "init",
        [
            {"mu": [1.0, 2.0, 3.0]},
            {"delta": [1.0, -1.0]},
            {"nu": [1.0, np.nan, 1.0, 1.0]},
            {"rho": [1.0]},
        ],
    )
    def test_invalid_overrides(self, model, init):
        with pytest.raises(ValueError):
            model.initial_state(init)
