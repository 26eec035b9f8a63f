"""
Metropolis-within-Gibbs kernel and adaptive proposal scaling.

Every Metropolis block uses a symmetric Gaussian random walk on the log
scale. Entities inside a block (genes for ``mu`` and ``delta``, cells for
``phi`` and ``nu``, batches for ``theta``) are conditionally independent given
the other blocks, so they are proposed and accepted jointly but
independently in a single vectorized step.

Proposal scales follow the adaptive scheme of Roberts & Rosenthal (2009):
after every batch of iterations inside the adaptation window, each entity's
log standard deviation moves up when its acceptance rate in the batch
exceeds the target and down otherwise, by ``min(max_step, 1/sqrt(batch))``.
"""

from typing import Callable, NamedTuple, Tuple

import jax.numpy as jnp
from jax import random

from ..models.hierarchical import MCMCState, HierarchicalModel

# ==============================================================================
# Containers
# ==============================================================================


class ProposalScales(NamedTuple):
    """Log standard deviation of the random walk, per block and entity."""

    mu: jnp.ndarray
    delta: jnp.ndarray
    phi: jnp.ndarray
    nu: jnp.ndarray
    theta: jnp.ndarray


class AcceptanceCounts(NamedTuple):
    """Running number of accepted proposals per block and entity."""

    mu: jnp.ndarray
    delta: jnp.ndarray
    phi: jnp.ndarray
    nu: jnp.ndarray
    theta: jnp.ndarray
    nonfinite: jnp.ndarray  # scalar, rejected non-finite proposals


def initial_scales(state: MCMCState, scale: float) -> ProposalScales:
    """Uniform initial log proposal scales matching the block shapes."""
    log_scale = jnp.log(scale)
    return ProposalScales(
        *(
            jnp.full_like(getattr(state, name), log_scale)
            for name in ProposalScales._fields
        )
    )


def zero_counts(state: MCMCState) -> AcceptanceCounts:
    """Acceptance counters set to zero."""
    return AcceptanceCounts(
        *(
            jnp.zeros_like(getattr(state, name), dtype=jnp.int32)
            for name in ProposalScales._fields
        ),
        nonfinite=jnp.zeros((), dtype=jnp.int32),
    )


# ==============================================================================
# Metropolis update
# ==============================================================================


def metropolis_update(
    rng_key,
    current: jnp.ndarray,
    log_scale: jnp.ndarray,
    log_target: Callable[[jnp.ndarray], jnp.ndarray],
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """One vectorized log-scale random-walk Metropolis step.

    Parameters
    ----------
    rng_key : random.PRNGKey
        Key for the proposal and the acceptance draw.
    current : jnp.ndarray
        Current strictly positive values, one per entity.
    log_scale : jnp.ndarray
        Log standard deviation of the random walk, one per entity.
    log_target : Callable
        Maps a vector of values to the per-entity log target on the log
        scale.

    Returns
    -------
    new : jnp.ndarray
        Updated values.
    accepted : jnp.ndarray
        Boolean acceptance indicator per entity.
    nonfinite : jnp.ndarray
        Boolean indicator of proposals rejected for a non-finite log target.
    """
    key_prop, key_accept = random.split(rng_key)
    step = jnp.exp(log_scale) * random.normal(key_prop, current.shape)
    proposal = current * jnp.exp(step)

    target_prop = log_target(proposal)
    target_curr = log_target(current)
    nonfinite = ~jnp.isfinite(target_prop) | ~(proposal > 0)
    # Non-finite proposals never become the current state
    log_ratio = jnp.where(nonfinite, -jnp.inf, target_prop - target_curr)
    log_u = jnp.log(random.uniform(key_accept, current.shape))
    accepted = (log_u < log_ratio) & ~nonfinite
    return jnp.where(accepted, proposal, current), accepted, nonfinite


# ==============================================================================
# Full sweep
# ==============================================================================


def gibbs_sweep(
    model: HierarchicalModel,
    state: MCMCState,
    scales: ProposalScales,
    counts: AcceptanceCounts,
    rng_key,
) -> Tuple[MCMCState, AcceptanceCounts, jnp.ndarray]:
    """Update every block once, in the fixed order mu, delta, phi, nu, s, theta.

    After the ``phi`` block the normalizing constants are rescaled to mean
    one and ``mu`` is multiplied by the same factor, which leaves the
    likelihood unchanged.

    Returns
    -------
    state : MCMCState
        State after the sweep.
    counts : AcceptanceCounts
        Updated acceptance counters.
    rng_key : random.PRNGKey
        Key to use for the next sweep.
    """
    rng_key, k_mu, k_delta, k_phi, k_nu, k_s, k_theta = random.split(
        rng_key, 7
    )
    nonfinite = counts.nonfinite

    mu, acc_mu, bad = metropolis_update(
        k_mu,
        state.mu,
        scales.mu,
        lambda v: model.mu_log_target(state._replace(mu=v)),
    )
    state = state._replace(mu=mu)
    nonfinite = nonfinite + bad.sum()

    delta, acc_delta, bad = metropolis_update(
        k_delta,
        state.delta,
        scales.delta,
        lambda v: model.delta_log_target(state._replace(delta=v)),
    )
    state = state._replace(delta=delta)
    nonfinite = nonfinite + bad.sum()

    phi, acc_phi, bad = metropolis_update(
        k_phi,
        state.phi,
        scales.phi,
        lambda v: model.phi_log_target(state._replace(phi=v)),
    )
    factor = phi.mean()
    state = state._replace(phi=phi / factor, mu=state.mu * factor)
    nonfinite = nonfinite + bad.sum()

    nu, acc_nu, bad = metropolis_update(
        k_nu,
        state.nu,
        scales.nu,
        lambda v: model.nu_log_target(state._replace(nu=v)),
    )
    state = state._replace(nu=nu)
    nonfinite = nonfinite + bad.sum()

    state = state._replace(s=model.sample_s(k_s, state))

    theta, acc_theta, bad = metropolis_update(
        k_theta,
        state.theta,
        scales.theta,
        lambda v: model.theta_log_target(state._replace(theta=v)),
    )
    state = state._replace(theta=theta)
    nonfinite = nonfinite + bad.sum()

    counts = AcceptanceCounts(
        mu=counts.mu + acc_mu,
        delta=counts.delta + acc_delta,
        phi=counts.phi + acc_phi,
        nu=counts.nu + acc_nu,
        theta=counts.theta + acc_theta,
        nonfinite=nonfinite,
    )
    return state, counts, rng_key


# ==============================================================================
# Adaptation
# ==============================================================================


def adapt_scales(
    scales: ProposalScales,
    batch_accepted: AcceptanceCounts,
    batch_size: int,
    batch_number: int,
    target_acceptance: float,
    max_step: float,
) -> ProposalScales:
    """Move each log proposal scale toward the target acceptance rate.

    Parameters
    ----------
    scales : ProposalScales
        Current log proposal scales.
    batch_accepted : AcceptanceCounts
        Acceptances accumulated over the last batch.
    batch_size : int
        Number of iterations in the batch.
    batch_number : int
        1-based index of the batch.
    target_acceptance : float
        Target acceptance rate.
    max_step : float
        Upper bound of the change of a log scale.

    Returns
    -------
    ProposalScales
    """
    step = min(max_step, batch_number**-0.5)
    updated = []
    for name in ProposalScales._fields:
        rate = getattr(batch_accepted, name) / batch_size
        updated.append(
            getattr(scales, name)
            + jnp.where(rate > target_acceptance, step, -step)
        )
    return ProposalScales(*updated)
