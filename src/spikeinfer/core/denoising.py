"""
Denoised expression from posterior draws.

Given a draw of the model parameters, the biological noise factor of gene
``i`` in cell ``j`` has the conjugate full conditional

    rho_ij | x_ij, ... ~ Gamma(1/delta_i + x_ij, 1/delta_i + phi_j nu_j mu_i)

so its conditional mean is ``(x_ij + 1/delta_i) / (phi_j nu_j mu_i +
1/delta_i)``. The denoised rate ``mu_i * rho_ij`` is averaged over draws.
"""

from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd
import jax.numpy as jnp
from jax import jit

from ..exceptions import EmptyChain

if TYPE_CHECKING:
    from ..mcmc.results import MCMCChain
    from .dataset import Dataset

# ==============================================================================
# Kernels
# ==============================================================================


@jit
def _denoised_rate_sum(counts, mu, delta, phi, nu):
    """Sum over a batch of draws of ``mu_i * E[rho_ij | ...]``.

    ``counts`` has shape ``(n_genes, n_cells)``; the parameters have a
    leading draw axis.
    """
    inv_delta = 1.0 / delta[:, :, None]
    mean = mu[:, :, None] * (phi * nu)[:, None, :]
    rho = (counts[None, :, :] + inv_delta) / (mean + inv_delta)
    return jnp.sum(mu[:, :, None] * rho, axis=0)


def _check_chain(dataset: "Dataset", chain: "MCMCChain") -> None:
    if chain.n_draws == 0:
        raise EmptyChain("Cannot denoise counts: the chain holds no draws")
    if dataset.biological_names != list(chain.entity_names["mu"]):
        raise ValueError("Dataset genes do not match the chain")
    if list(dataset.cell_names) != list(chain.entity_names["nu"]):
        raise ValueError("Dataset cells do not match the chain")


# ==============================================================================
# Denoised rates
# ==============================================================================


def denoised_rates(
    dataset: "Dataset",
    chain: "MCMCChain",
    batch_size: Optional[int] = 100,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Posterior mean denoised expression rate of every biological gene and
    cell.

    Parameters
    ----------
    dataset : Dataset
        Dataset the chain was fitted on.
    chain : MCMCChain
        Posterior draws.
    batch_size : int, optional
        Number of draws processed per device call. ``None`` processes all
        draws at once.
    verbose : bool, default=False
        Print progress messages.

    Returns
    -------
    pd.DataFrame
        Biological genes x cells.

    Raises
    ------
    EmptyChain
        If the chain holds no draws.
    ValueError
        If the dataset and chain identifiers disagree.
    """
    _check_chain(dataset, chain)
    n_draws = chain.n_draws
    if batch_size is None:
        batch_size = n_draws
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    counts = jnp.asarray(dataset.biological_counts, dtype=jnp.float32)
    params = {
        name: chain.parameters[name] for name in ("mu", "delta", "phi", "nu")
    }

    if verbose:
        print(
            f"Denoising {dataset.n_biological} genes x {dataset.n_cells} "
            f"cells with {n_draws} posterior draws..."
        )

    total = np.zeros((dataset.n_biological, dataset.n_cells))
    for start in range(0, n_draws, batch_size):
        stop = min(start + batch_size, n_draws)
        batch = {
            k: jnp.asarray(v[start:stop], dtype=jnp.float32)
            for k, v in params.items()
        }
        total += np.asarray(
            _denoised_rate_sum(counts, **batch), dtype=np.float64
        )

    return pd.DataFrame(
        total / n_draws,
        index=pd.Index(dataset.biological_names, name="gene"),
        columns=list(dataset.cell_names),
    )


# ==============================================================================
# Denoised counts
# ==============================================================================


def denoised_counts(dataset: "Dataset", chain: "MCMCChain") -> pd.DataFrame:
    """
    Counts with cell-specific technical and normalizing effects removed.

    Biological genes are divided by ``phi_j * nu_j`` and spike-in genes by
    ``nu_j``, using posterior means of ``phi`` and ``nu``.

    Returns
    -------
    pd.DataFrame
        All genes x cells, in the row order of ``dataset``.
    """
    _check_chain(dataset, chain)
    phi = chain.parameters["phi"].mean(axis=0)
    nu = chain.parameters["nu"].mean(axis=0)

    counts = dataset.counts.astype(np.float64)
    scale = np.where(
        dataset.is_spike[:, None], nu[None, :], (phi * nu)[None, :]
    )
    return pd.DataFrame(
        counts / scale,
        index=pd.Index(list(dataset.gene_names), name="gene"),
        columns=list(dataset.cell_names),
    )
