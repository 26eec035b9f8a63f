"""Variance decomposition of gene expression from posterior draws.

For a gene with expression rate ``mu`` in a typical cell (normalizing
constant times size factor ``PhiS``) the Poisson-Gamma hierarchy gives

    E[X]   = m = PhiS * mu
    Var[X] = m + m^2 * (theta + delta * (theta + 1))

so, dividing by ``m^2``, the squared coefficient of variation splits into a
shot-noise term ``1/m``, a technical term ``theta`` and a biological term
``delta * (theta + 1)``. Each share is its term over the total

    D = 1/m + theta + delta * (theta + 1)

and the biological share is the quantity ``sigma`` used for variability
testing.
"""

import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import numpy as np
import pandas as pd

from ..exceptions import DegenerateVariance, EmptyChain

if TYPE_CHECKING:
    from ..core.dataset import Dataset
    from ..mcmc.results import MCMCChain

# ------------------------------------------------------------------------------
# VarianceDecomposition class
# ------------------------------------------------------------------------------


@dataclass
class VarianceDecomposition:
    """Per-gene technical, biological and shot-noise variance shares.

    Attributes
    ----------
    gene_names : List[str]
        Biological gene identifiers.
    technical : np.ndarray
        Posterior mean technical share per gene.
    biological : np.ndarray
        Posterior mean biological share per gene.
    shot_noise : np.ndarray
        Posterior mean shot-noise share per gene.
    sigma : np.ndarray
        Biological share of every draw, shape ``(n_draws, n_genes)``.
        Columns of degenerate genes are NaN.
    degenerate : np.ndarray
        Boolean flag of genes whose decomposition is undefined.
    batch : int, optional
        Batch the decomposition refers to; ``None`` for all cells.
    """

    gene_names: List[str]
    technical: np.ndarray
    biological: np.ndarray
    shot_noise: np.ndarray
    sigma: np.ndarray
    degenerate: np.ndarray
    batch: Optional[int] = None

    @property
    def n_genes(self) -> int:
        return len(self.gene_names)

    @property
    def n_draws(self) -> int:
        return self.sigma.shape[0]

    def to_dataframe(self) -> pd.DataFrame:
        """Shares per gene as a DataFrame indexed by gene identifier."""
        return pd.DataFrame(
            {
                "technical": self.technical,
                "biological": self.biological,
                "shot_noise": self.shot_noise,
            },
            index=pd.Index(self.gene_names, name="gene"),
        )

    def __repr__(self) -> str:
        return (
            f"VarianceDecomposition(n_genes={self.n_genes}, "
            f"n_draws={self.n_draws}, "
            f"n_degenerate={int(self.degenerate.sum())}, batch={self.batch})"
        )


# ------------------------------------------------------------------------------
# Decomposition
# ------------------------------------------------------------------------------


def _batch_position(chain: "MCMCChain", batch: int) -> int:
    """Column of ``batch`` in the ``theta`` draws."""
    labels = chain.entity_names["theta"]
    if str(batch) not in labels:
        raise KeyError(f"Unknown batch {batch}; available batches: {labels}")
    return labels.index(str(batch))


def decompose(
    dataset: Optional["Dataset"],
    chain: "MCMCChain",
    batch: Optional[int] = None,
) -> VarianceDecomposition:
    """Decompose the expression variance of every biological gene.

    For each draw, ``PhiS`` is the median over cells of ``phi_j * s_j`` and
    ``theta`` the median of the batch over-dispersions (or, when ``batch``
    is given, the median over that batch's cells and that batch's
    ``theta_b``). Shares are computed per draw and averaged.

    Parameters
    ----------
    dataset : Dataset, optional
        Dataset the chain was fitted on. Required to select the cells of a
        batch; otherwise only used to check that gene identifiers agree.
    chain : MCMCChain
        Posterior draws.
    batch : int, optional
        Restrict the typical cell to one batch.

    Returns
    -------
    VarianceDecomposition

    Raises
    ------
    EmptyChain
        If the chain holds no draws.
    KeyError
        If ``batch`` is not one of the chain's batches.
    ValueError
        If ``batch`` is given without a dataset, or the dataset does not
        match the chain.

    Warns
    -----
    DegenerateVariance
        When some genes have a zero or non-finite total in any draw; their
        shares are NaN.
    """
    if chain.n_draws == 0:
        raise EmptyChain("Cannot decompose variance: the chain holds no draws")
    if dataset is not None and dataset.biological_names != list(
        chain.entity_names["mu"]
    ):
        raise ValueError("Dataset genes do not match the chain")

    mu = chain.parameters["mu"]
    delta = chain.parameters["delta"]
    phi_s = chain.parameters["phi"] * chain.parameters["s"]
    theta_draws = chain.parameters["theta"]

    if batch is None:
        typical = np.median(phi_s, axis=1)
        theta = np.median(theta_draws, axis=1)
    else:
        if dataset is None:
            raise ValueError("A dataset is needed to decompose one batch")
        cells = dataset.cells_in_batch(batch)
        typical = np.median(phi_s[:, cells], axis=1)
        theta = theta_draws[:, _batch_position(chain, batch)]

    # Per draw (rows) and gene (columns)
    theta = theta[:, None]
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        shot = 1.0 / (typical[:, None] * mu)
        bio = delta * (theta + 1.0)
        total = shot + theta + bio
        sigma = bio / total
        technical = theta / total
        shot_share = shot / total

    degenerate = np.any(~np.isfinite(total) | (total == 0), axis=0)
    for share in (sigma, technical, shot_share):
        degenerate |= np.any(~np.isfinite(share), axis=0)
    if degenerate.any():
        warnings.warn(
            f"Variance decomposition is undefined for {int(degenerate.sum())} "
            "gene(s); their shares are reported as NaN.",
            DegenerateVariance,
            stacklevel=2,
        )
    sigma[:, degenerate] = np.nan

    def _mean(share):
        out = share.mean(axis=0)
        out[degenerate] = np.nan
        return out

    return VarianceDecomposition(
        gene_names=list(chain.entity_names["mu"]),
        technical=_mean(technical),
        biological=_mean(sigma),
        shot_noise=_mean(shot_share),
        sigma=sigma,
        degenerate=degenerate,
        batch=batch,
    )
