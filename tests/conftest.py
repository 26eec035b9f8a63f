"""
Shared test fixtures and configuration for spikeinfer tests.
"""

import pytest
import numpy as np
import os


def pytest_addoption(parser):
    parser.addoption(
        "--device",
        default="cpu",
        choices=["cpu", "gpu"],
        help="Device to run tests on: cpu or gpu",
    )


def pytest_configure(config):
    """Configure JAX device before any imports happen."""
    device = config.getoption("--device")
    if device == "cpu":
        os.environ["JAX_PLATFORM_NAME"] = "cpu"
    else:
        # Remove the environment variable to allow JAX to use GPU
        if "JAX_PLATFORM_NAME" in os.environ:
            del os.environ["JAX_PLATFORM_NAME"]


@pytest.fixture(scope="session")
def device_type(request):
    return request.config.getoption("--device")


@pytest.fixture(scope="session")
def rng_key():
    """Provide a consistent random key for tests."""
    # Import JAX here to ensure environment is configured first
    from jax import random

    return random.PRNGKey(42)


# ------------------------------------------------------------------------------
# Datasets
# ------------------------------------------------------------------------------

SPIKE_MOLECULES = {"ERCC-1": 10.0, "ERCC-2": 50.0, "ERCC-3": 200.0}


@pytest.fixture
def tiny_dataset():
    """3 spike-ins, 2 biological genes (A = 2 x B), 4 cells."""
    from spikeinfer import Dataset

    capture = np.array([0.4, 0.5, 0.6, 0.5])
    spikes = np.outer([10.0, 50.0, 200.0], capture)
    gene_b = 100.0 * capture
    counts = np.rint(np.vstack([2.0 * gene_b, gene_b, spikes])).astype(int)
    return Dataset(
        counts=counts,
        gene_names=["A", "B", "ERCC-1", "ERCC-2", "ERCC-3"],
        cell_names=[f"cell{j}" for j in range(4)],
        is_spike=[False, False, True, True, True],
        spike_input_molecules=SPIKE_MOLECULES,
    )


@pytest.fixture
def batched_dataset():
    """Small dataset whose cells belong to two batches (labels 1 and 3)."""
    from spikeinfer import Dataset

    rng = np.random.default_rng(0)
    n_cells = 12
    nu = rng.gamma(10.0, 0.1, size=n_cells)
    spike_mu = np.array([20.0, 80.0, 300.0])
    mu = np.array([50.0, 120.0, 30.0, 200.0])
    counts = np.vstack(
        [
            rng.poisson(np.outer(mu, nu)),
            rng.poisson(np.outer(spike_mu, nu)),
        ]
    )
    return Dataset(
        counts=counts,
        gene_names=["g1", "g2", "g3", "g4", "ERCC-1", "ERCC-2", "ERCC-3"],
        cell_names=[f"c{j}" for j in range(n_cells)],
        is_spike=[False] * 4 + [True] * 3,
        spike_input_molecules={
            "ERCC-1": 20.0,
            "ERCC-2": 80.0,
            "ERCC-3": 300.0,
        },
        batch=np.array([1] * 6 + [3] * 6),
    )


def simulate_dataset(
    mu,
    delta,
    n_cells=100,
    theta=0.25,
    size_prior=(100.0, 99.0),
    spike_mu=(5.0, 10.0, 20.0, 40.0, 80.0, 150.0, 300.0, 600.0, 1200.0),
    seed=0,
):
    """Draw counts from the spike-in Poisson-Gamma hierarchy.

    Size factors follow ``InverseGamma(*size_prior)`` and capture
    efficiencies ``nu_j ~ Gamma(1/theta, rate 1/(s_j theta))``, the same
    hierarchy the sampler fits.
    """
    from spikeinfer import Dataset

    rng = np.random.default_rng(seed)
    mu = np.asarray(mu, dtype=float)
    delta = np.asarray(delta, dtype=float)
    spike_mu = np.asarray(spike_mu, dtype=float)

    phi = rng.gamma(20.0, 1.0 / 20.0, size=n_cells)
    phi = phi / phi.mean()
    a_s, b_s = size_prior
    s = 1.0 / rng.gamma(a_s, 1.0 / b_s, size=n_cells)
    nu = rng.gamma(1.0 / theta, s * theta)
    rho = rng.gamma(
        1.0 / delta[:, None], delta[:, None], size=(mu.size, n_cells)
    )

    bio = rng.poisson(mu[:, None] * rho * (phi * nu)[None, :])
    spikes = rng.poisson(np.outer(spike_mu, nu))
    spike_names = [f"ERCC-{k:05d}" for k in range(spike_mu.size)]
    return Dataset(
        counts=np.vstack([bio, spikes]),
        gene_names=[f"gene{i:03d}" for i in range(mu.size)] + spike_names,
        cell_names=[f"cell{j:03d}" for j in range(n_cells)],
        is_spike=[False] * mu.size + [True] * spike_mu.size,
        spike_input_molecules=dict(zip(spike_names, spike_mu)),
    )


@pytest.fixture(scope="session")
def planted_variability():
    """50 genes with planted high, low and intermediate over-dispersion."""
    rng = np.random.default_rng(7)
    n_high, n_low, n_mid = 10, 10, 30
    delta = np.concatenate(
        [
            np.full(n_high, 3.0),
            np.full(n_low, 0.005),
            rng.uniform(0.25, 0.5, size=n_mid),
        ]
    )
    mu = rng.uniform(200.0, 400.0, size=delta.size)
    size_prior = (100.0, 99.0)
    dataset = simulate_dataset(
        mu, delta, n_cells=100, theta=0.25, size_prior=size_prior, seed=11
    )
    names = dataset.biological_names
    return {
        "dataset": dataset,
        "theta": 0.25,
        # Tight size factors leave the spread of nu to theta
        "priors": {"s": size_prior},
        "high": names[:n_high],
        "low": names[n_high : n_high + n_low],
        "mid": names[n_high + n_low :],
    }


# ------------------------------------------------------------------------------
# Chains
# ------------------------------------------------------------------------------


@pytest.fixture
def make_chain():
    """Factory for MCMCChain objects built from arrays, no sampling."""
    from spikeinfer import MCMCChain

    def _make(
        mu,
        delta,
        phi=None,
        s=None,
        nu=None,
        theta=None,
        genes=None,
        cells=None,
        batches=("1",),
    ):
        mu = np.atleast_2d(np.asarray(mu, dtype=float))
        delta = np.atleast_2d(np.asarray(delta, dtype=float))
        n_draws, n_genes = mu.shape
        n_cells = 3 if cells is None else len(cells)
        ones = np.ones((n_draws, n_cells))
        params = {
            "mu": mu,
            "delta": delta,
            "phi": ones if phi is None else np.asarray(phi, dtype=float),
            "s": ones if s is None else np.asarray(s, dtype=float),
            "nu": ones if nu is None else np.asarray(nu, dtype=float),
            "theta": (
                np.full((n_draws, len(batches)), 0.5)
                if theta is None
                else np.asarray(theta, dtype=float).reshape(n_draws, -1)
            ),
        }
        genes = genes or [f"g{i}" for i in range(n_genes)]
        cells = cells or [f"c{j}" for j in range(n_cells)]
        return MCMCChain(
            parameters=params,
            entity_names={
                "mu": list(genes),
                "delta": list(genes),
                "phi": list(cells),
                "s": list(cells),
                "nu": list(cells),
                "theta": list(batches),
            },
        )

    return _make
