"""Highly and lowly variable gene detection from posterior tail probabilities.

A gene is highly variable (HVG) when its biological variance share
``sigma_i`` is likely to exceed ``gamma``, and lowly variable (LVG) when it
is likely to fall below ``gamma``:

    pi_i^HVG = P(sigma_i > gamma | data)
    pi_i^LVG = P(sigma_i < gamma | data)

estimated by the fraction of posterior draws on the corresponding side.
Genes with ``pi_i > alpha`` are flagged; ``alpha`` is either fixed by the
caller or calibrated to a target EFDR.
"""

from typing import Optional

import numpy as np

from ._decomposition import VarianceDecomposition
from ._error_control import (
    DEFAULT_TARGET_EFDR,
    compute_efdr,
    compute_efnr,
    find_evidence_threshold,
)
from .results import VariabilityTest


def tail_probability(
    decomposition: VarianceDecomposition,
    var_threshold: float,
    upper: bool = True,
) -> np.ndarray:
    """Fraction of draws with ``sigma`` above (or below) ``var_threshold``.

    Degenerate genes get NaN.
    """
    sigma = decomposition.sigma
    if sigma.shape[0] == 0:
        return np.full(sigma.shape[1], np.nan)
    side = sigma > var_threshold if upper else sigma < var_threshold
    prob = side.mean(axis=0)
    prob[decomposition.degenerate] = np.nan
    return prob


def _detect(
    kind: str,
    decomposition: VarianceDecomposition,
    var_threshold: float,
    evidence_threshold: Optional[float],
    efdr: float,
    evidence_grid: Optional[np.ndarray],
) -> VariabilityTest:
    if not 0.0 < var_threshold < 1.0:
        raise ValueError(
            f"var_threshold must be in (0, 1), got {var_threshold}"
        )
    prob = tail_probability(decomposition, var_threshold, upper=kind == "HVG")

    grid = efdr_grid = efnr_grid = None
    target = None
    if evidence_threshold is None:
        target = efdr
        alpha, grid, efdr_grid, efnr_grid = find_evidence_threshold(
            prob, target_efdr=efdr, grid=evidence_grid
        )
    else:
        if not 0.0 <= evidence_threshold < 1.0:
            raise ValueError(
                "evidence_threshold must be in [0, 1), got "
                f"{evidence_threshold}"
            )
        alpha = float(evidence_threshold)

    # NaN comparisons are False, so degenerate genes are never flagged
    with np.errstate(invalid="ignore"):
        flagged = prob > alpha

    return VariabilityTest(
        kind=kind,
        gene_names=list(decomposition.gene_names),
        probability=prob,
        flagged=flagged,
        var_threshold=float(var_threshold),
        evidence_threshold=alpha,
        efdr=float(compute_efdr(prob, alpha)),
        efnr=float(compute_efnr(prob, alpha)),
        target_efdr=target,
        grid=grid,
        efdr_grid=efdr_grid,
        efnr_grid=efnr_grid,
    )


def detect_hvg(
    decomposition: VarianceDecomposition,
    var_threshold: float,
    evidence_threshold: Optional[float] = None,
    efdr: float = DEFAULT_TARGET_EFDR,
    evidence_grid: Optional[np.ndarray] = None,
) -> VariabilityTest:
    """Flag highly variable genes.

    Parameters
    ----------
    decomposition : VarianceDecomposition
        Output of :func:`decompose`.
    var_threshold : float
        Threshold ``gamma`` on the biological variance share, in (0, 1).
    evidence_threshold : float, optional
        Fixed evidence threshold ``alpha``. If ``None`` it is calibrated so
        that the EFDR is as close as possible to ``efdr``.
    efdr : float, default=0.10
        Target expected false discovery rate.
    evidence_grid : np.ndarray, optional
        Thresholds scanned during calibration.

    Returns
    -------
    VariabilityTest
        An empty flagged set is a valid outcome.
    """
    return _detect(
        "HVG",
        decomposition,
        var_threshold,
        evidence_threshold,
        efdr,
        evidence_grid,
    )


def detect_lvg(
    decomposition: VarianceDecomposition,
    var_threshold: float,
    evidence_threshold: Optional[float] = None,
    efdr: float = DEFAULT_TARGET_EFDR,
    evidence_grid: Optional[np.ndarray] = None,
) -> VariabilityTest:
    """Flag lowly variable genes (``sigma`` below ``var_threshold``).

    Same parameters as :func:`detect_hvg`.
    """
    return _detect(
        "LVG",
        decomposition,
        var_threshold,
        evidence_threshold,
        efdr,
        evidence_grid,
    )
