"""
Hierarchical Poisson-Gamma model for spike-in calibrated scRNA-seq counts.

Generative structure, for biological gene ``i``, spike-in gene ``k`` and cell
``j`` in batch ``b(j)``:

    x_kj | nu_j          ~ Poisson(nu_j * mu_k)          (mu_k known)
    x_ij | rho_ij, ...   ~ Poisson(phi_j * nu_j * mu_i * rho_ij)
    rho_ij | delta_i     ~ Gamma(1 / delta_i, 1 / delta_i)
    nu_j | s_j, theta_b  ~ Gamma(1 / theta_b, 1 / (s_j * theta_b))

with priors

    mu_i    ~ LogNormal(mu_loc, mu_scale)
    delta_i ~ LogNormal(delta_loc, delta_scale)
    phi_j   ~ Gamma(a_phi, a_phi), renormalized to mean one
    s_j     ~ InverseGamma(a_s, b_s)
    theta_b ~ Gamma(a_theta, b_theta)

The latent ``rho_ij`` are integrated out, so biological counts follow a
Negative Binomial with mean ``phi_j nu_j mu_i`` and concentration
``1 / delta_i``. All densities are evaluated in log space with
``numpyro.distributions``.

Every ``*_log_target`` method returns the log full conditional of one
parameter block *on the log scale* (i.e. including the ``log x`` Jacobian of
the log transform), one value per conditionally independent entity, which is
exactly what a log-scale random-walk Metropolis step needs.
"""

from typing import Mapping, NamedTuple, Optional, Tuple

import numpy as np
import jax.numpy as jnp
from jax import random, ops
import numpyro.distributions as dist

from ..core.dataset import Dataset
from .config import PriorConfig

# ==============================================================================
# Model state
# ==============================================================================


class MCMCState(NamedTuple):
    """Current value of every sampled parameter block."""

    mu: jnp.ndarray  # (n_biological,)
    delta: jnp.ndarray  # (n_biological,)
    phi: jnp.ndarray  # (n_cells,)
    s: jnp.ndarray  # (n_cells,)
    nu: jnp.ndarray  # (n_cells,)
    theta: jnp.ndarray  # (n_batches,)


# Blocks updated by log-scale random-walk Metropolis steps
METROPOLIS_BLOCKS = ("mu", "delta", "phi", "nu", "theta")

# Minimum value used when building data-driven starting values
_INIT_FLOOR = 1e-3

# ==============================================================================
# Hierarchical model
# ==============================================================================


class HierarchicalModel:
    """Log densities of the spike-in Poisson-Gamma hierarchy.

    Parameters
    ----------
    dataset : Dataset
        Counts and spike-in information.
    priors : PriorConfig, optional
        Prior hyper-parameters. Defaults to ``PriorConfig()``.
    """

    def __init__(self, dataset: Dataset, priors: Optional[PriorConfig] = None):
        self.dataset = dataset
        self.priors = priors if priors is not None else PriorConfig()

        self.counts = jnp.asarray(dataset.biological_counts, dtype=jnp.float32)
        self.spike_counts = jnp.asarray(
            dataset.spike_counts, dtype=jnp.float32
        )
        self.spike_mu = jnp.asarray(dataset.spike_mu, dtype=jnp.float32)
        self.batch_index = jnp.asarray(dataset.batch_index)
        self.n_batches = dataset.n_batches

    # --------------------------------------------------------------------------
    # Likelihood
    # --------------------------------------------------------------------------

    def biological_log_likelihood(self, state: MCMCState) -> jnp.ndarray:
        """Negative Binomial log-pmf of biological counts.

        Returns
        -------
        jnp.ndarray
            Shape ``(n_biological, n_cells)``.
        """
        mean = state.mu[:, None] * (state.phi * state.nu)[None, :]
        concentration = jnp.broadcast_to(
            1.0 / state.delta[:, None], mean.shape
        )
        return dist.NegativeBinomial2(mean, concentration).log_prob(
            self.counts
        )

    def spike_log_likelihood(self, state: MCMCState) -> jnp.ndarray:
        """Poisson log-pmf of spike-in counts.

        Returns
        -------
        jnp.ndarray
            Shape ``(n_spikes, n_cells)``.
        """
        rate = self.spike_mu[:, None] * state.nu[None, :]
        return dist.Poisson(rate).log_prob(self.spike_counts)

    def log_likelihood_matrices(
        self, state: MCMCState
    ) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """Biological and spike-in log-pmf matrices (genes x cells)."""
        return (
            self.biological_log_likelihood(state),
            self.spike_log_likelihood(state),
        )

    # --------------------------------------------------------------------------
    # Priors
    # --------------------------------------------------------------------------

    def _cell_theta(self, theta: jnp.ndarray) -> jnp.ndarray:
        """Technical over-dispersion of the batch each cell belongs to."""
        return theta[self.batch_index]

    def nu_log_prior(self, nu, s, theta) -> jnp.ndarray:
        """``Gamma(1/theta_b, 1/(s_j theta_b))`` log density per cell."""
        cell_theta = self._cell_theta(theta)
        return dist.Gamma(1.0 / cell_theta, 1.0 / (s * cell_theta)).log_prob(
            nu
        )

    # --------------------------------------------------------------------------
    # Log full conditionals (log scale, per entity)
    # --------------------------------------------------------------------------

    def mu_log_target(self, state: MCMCState) -> jnp.ndarray:
        """Log full conditional of ``log mu_i`` for each biological gene."""
        loc, scale = self.priors.mu
        loglik = self.biological_log_likelihood(state).sum(axis=1)
        logprior = dist.LogNormal(loc, scale).log_prob(state.mu)
        return loglik + logprior + jnp.log(state.mu)

    def delta_log_target(self, state: MCMCState) -> jnp.ndarray:
        """Log full conditional of ``log delta_i`` for each biological gene."""
        loc, scale = self.priors.delta
        loglik = self.biological_log_likelihood(state).sum(axis=1)
        logprior = dist.LogNormal(loc, scale).log_prob(state.delta)
        return loglik + logprior + jnp.log(state.delta)

    def phi_log_target(self, state: MCMCState) -> jnp.ndarray:
        """Log full conditional of ``log phi_j`` for each cell."""
        a_phi = self.priors.phi
        loglik = self.biological_log_likelihood(state).sum(axis=0)
        logprior = dist.Gamma(a_phi, a_phi).log_prob(state.phi)
        return loglik + logprior + jnp.log(state.phi)

    def nu_log_target(self, state: MCMCState) -> jnp.ndarray:
        """Log full conditional of ``log nu_j`` for each cell."""
        loglik = self.biological_log_likelihood(state).sum(
            axis=0
        ) + self.spike_log_likelihood(state).sum(axis=0)
        logprior = self.nu_log_prior(state.nu, state.s, state.theta)
        return loglik + logprior + jnp.log(state.nu)

    def theta_log_target(self, state: MCMCState) -> jnp.ndarray:
        """Log full conditional of ``log theta_b`` for each batch."""
        a_theta, b_theta = self.priors.theta
        per_cell = self.nu_log_prior(state.nu, state.s, state.theta)
        loglik = ops.segment_sum(
            per_cell, self.batch_index, num_segments=self.n_batches
        )
        logprior = dist.Gamma(a_theta, b_theta).log_prob(state.theta)
        return loglik + logprior + jnp.log(state.theta)

    def log_target(self, block: str, state: MCMCState) -> jnp.ndarray:
        """Dispatch to the log full conditional of ``block``."""
        return getattr(self, f"{block}_log_target")(state)

    # --------------------------------------------------------------------------
    # Conjugate update
    # --------------------------------------------------------------------------

    def sample_s(self, rng_key, state: MCMCState) -> jnp.ndarray:
        """Exact Gibbs draw of the cell size factors.

        With ``s_j ~ InverseGamma(a_s, b_s)`` and the Gamma prior of ``nu_j``
        the full conditional is
        ``1/s_j | nu_j, theta_b ~ Gamma(a_s + 1/theta_b, b_s + nu_j/theta_b)``.
        """
        a_s, b_s = self.priors.s
        cell_theta = self._cell_theta(state.theta)
        shape = a_s + 1.0 / cell_theta
        rate = b_s + state.nu / cell_theta
        inv_s = random.gamma(rng_key, shape) / rate
        return 1.0 / inv_s

    # --------------------------------------------------------------------------
    # Joint density
    # --------------------------------------------------------------------------

    def log_joint(self, state: MCMCState) -> jnp.ndarray:
        """Log joint density of counts and parameters (rho integrated out)."""
        mu_loc, mu_scale = self.priors.mu
        delta_loc, delta_scale = self.priors.delta
        a_s, b_s = self.priors.s
        a_theta, b_theta = self.priors.theta
        return (
            self.biological_log_likelihood(state).sum()
            + self.spike_log_likelihood(state).sum()
            + dist.LogNormal(mu_loc, mu_scale).log_prob(state.mu).sum()
            + dist.LogNormal(delta_loc, delta_scale)
            .log_prob(state.delta)
            .sum()
            + dist.Gamma(self.priors.phi, self.priors.phi)
            .log_prob(state.phi)
            .sum()
            + dist.InverseGamma(a_s, b_s).log_prob(state.s).sum()
            + self.nu_log_prior(state.nu, state.s, state.theta).sum()
            + dist.Gamma(a_theta, b_theta).log_prob(state.theta).sum()
        )

    # --------------------------------------------------------------------------
    # Starting values
    # --------------------------------------------------------------------------

    def initial_state(
        self, init: Optional[Mapping[str, object]] = None
    ) -> MCMCState:
        """Build data-driven starting values, optionally overridden.

        Parameters
        ----------
        init : Mapping[str, object], optional
            Starting values for any of ``mu``, ``delta``, ``phi``, ``s``,
            ``nu`` and ``theta``. ``theta`` may be given as a mapping from
            batch label to value. Supplied ``phi`` is rescaled to mean one.

        Returns
        -------
        MCMCState

        Raises
        ------
        ValueError
            If an override has the wrong shape, is not strictly positive, or
            names an unknown block.
        """
        ds = self.dataset
        bio = ds.biological_counts.astype(np.float64)
        spikes = ds.spike_counts.astype(np.float64)

        # Capture efficiency from spike-ins
        nu = spikes.sum(axis=0) / ds.spike_mu.sum()
        positive = nu[nu > 0]
        fallback = np.median(positive) if positive.size else 1.0
        nu = np.where(nu > 0, nu, fallback)

        # Cell normalizing constants from biological library sizes
        size = bio.sum(axis=0) / nu
        size = np.where(size > 0, size, _INIT_FLOOR)
        phi = size / size.mean()

        # Moment estimates of expression and over-dispersion
        normalized = bio / (phi * nu)[None, :]
        mu = np.maximum(normalized.mean(axis=1), _INIT_FLOOR)
        excess = (normalized.var(axis=1) - mu) / mu**2
        delta = np.clip(excess, _INIT_FLOOR, 10.0)

        values = {
            "mu": mu,
            "delta": delta,
            "phi": phi,
            "s": nu.copy(),
            "nu": nu,
            "theta": np.full(ds.n_batches, 0.5),
        }
        if init:
            values.update(self._validate_init(init, values))
        values["phi"] = values["phi"] / values["phi"].mean()

        return MCMCState(
            **{
                k: jnp.asarray(values[k], dtype=jnp.float32)
                for k in MCMCState._fields
            }
        )

    def _validate_init(self, init, defaults) -> dict:
        """Check user-supplied starting values against block shapes."""
        out = {}
        for name, value in init.items():
            if name not in defaults:
                raise ValueError(
                    f"Unknown parameter block '{name}'; expected one of "
                    f"{list(MCMCState._fields)}"
                )
            if name == "theta" and isinstance(value, Mapping):
                missing = set(self.dataset.batch_ids) - set(value)
                if missing:
                    raise ValueError(
                        f"Initial theta missing batches {sorted(missing)}"
                    )
                value = [value[b] for b in self.dataset.batch_ids]
            array = np.asarray(value, dtype=np.float64).reshape(-1)
            if array.size == 1 and defaults[name].size > 1:
                array = np.full(defaults[name].shape, array[0])
            if array.shape != defaults[name].shape:
                raise ValueError(
                    f"Initial '{name}' must have shape "
                    f"{defaults[name].shape}, got {array.shape}"
                )
            if not np.all(np.isfinite(array)) or np.any(array <= 0):
                raise ValueError(
                    f"Initial '{name}' must be finite and strictly positive"
                )
            out[name] = array
        return out
