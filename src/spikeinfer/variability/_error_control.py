"""Bayesian error control for variability testing.

Given per-gene posterior tail probabilities ``pi_i``, flagging the genes
with ``pi_i > alpha`` has

- **EFDR** (expected false discovery rate): the mean of ``1 - pi_i`` over
  the flagged genes, and
- **EFNR** (expected false negative rate): the mean of ``pi_i`` over the
  genes left unflagged.

Scanning ``alpha`` over a grid and choosing the value whose EFDR is closest
to a target calibrates the evidence threshold.
"""

import warnings
from typing import Optional, Tuple

import numpy as np

# Default calibration settings
DEFAULT_TARGET_EFDR = 0.10
DEFAULT_FALLBACK_EVIDENCE = 0.90


def evidence_grid(
    start: float = 0.5, stop: float = 0.9995, step: float = 0.00025
) -> np.ndarray:
    """Candidate evidence thresholds ``start, start + step, ..., stop``."""
    if not 0.0 <= start <= stop < 1.0 or step <= 0:
        raise ValueError(
            f"Invalid evidence grid: start={start}, stop={stop}, step={step}"
        )
    n = int(round((stop - start) / step)) + 1
    return start + step * np.arange(n)


# --------------------------------------------------------------------------
# EFDR / EFNR
# --------------------------------------------------------------------------


def _valid(probs) -> np.ndarray:
    """Sorted tail probabilities of genes with a defined decomposition."""
    probs = np.asarray(probs, dtype=np.float64)
    return np.sort(probs[np.isfinite(probs)])


def _split(probs, evidence_threshold):
    """Split the genes at each threshold without a genes x grid matrix.

    Returns the number of genes at or below each threshold, the sum of
    their tail probabilities, the number of genes above it, and the sum
    of ``1 - pi`` over those.
    """
    probs = _valid(probs)
    alpha = np.asarray(evidence_threshold, dtype=np.float64)
    # Prefix sums of pi and suffix sums of 1 - pi over the sorted genes
    kept_sums = np.concatenate([[0.0], np.cumsum(probs)])
    false_sums = np.concatenate([np.cumsum((1.0 - probs)[::-1])[::-1], [0.0]])
    n_kept = np.searchsorted(probs, alpha, side="right")
    return (
        n_kept,
        kept_sums[n_kept],
        probs.size - n_kept,
        false_sums[n_kept],
    )


def compute_efdr(probs, evidence_threshold) -> np.ndarray:
    """Expected false discovery rate when flagging ``probs > threshold``.

    Parameters
    ----------
    probs : array-like
        Posterior tail probability per gene. NaN entries are ignored.
    evidence_threshold : float or array-like
        One or several thresholds.

    Returns
    -------
    np.ndarray
        EFDR per threshold (a 0-d array for a scalar threshold); NaN where
        no gene is flagged.
    """
    _, _, n_flagged, false_sum = _split(probs, evidence_threshold)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(n_flagged > 0, false_sum / n_flagged, np.nan)


def compute_efnr(probs, evidence_threshold) -> np.ndarray:
    """Expected false negative rate when flagging ``probs > threshold``.

    NaN where every gene is flagged.
    """
    n_kept, kept_sum, _, _ = _split(probs, evidence_threshold)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(n_kept > 0, kept_sum / n_kept, np.nan)



# --------------------------------------------------------------------------
# Threshold search
# --------------------------------------------------------------------------


def find_evidence_threshold(
    probs,
    target_efdr: float = DEFAULT_TARGET_EFDR,
    grid: Optional[np.ndarray] = None,
) -> Tuple[float, np.ndarray, np.ndarray, np.ndarray]:
    """Evidence threshold whose EFDR is closest to ``target_efdr``.

    As the threshold grows the flagged set can only shrink, so a single
    scan over the grid visits every distinct flagged set. Ties are resolved
    in favor of the smallest threshold.

    Parameters
    ----------
    probs : array-like
        Posterior tail probability per gene.
    target_efdr : float, default=0.10
        Target expected false discovery rate.
    grid : np.ndarray, optional
        Candidate thresholds; defaults to :func:`evidence_grid`.

    Returns
    -------
    threshold : float
        Selected evidence threshold.
    grid : np.ndarray
        Thresholds scanned.
    efdr : np.ndarray
        EFDR at each grid point.
    efnr : np.ndarray
        EFNR at each grid point.

    Warns
    -----
    UserWarning
        If the EFDR is undefined on the whole grid (no gene would ever be
        flagged); the threshold then falls back to 0.90.
    """
    if not 0.0 < target_efdr < 1.0:
        raise ValueError(f"target_efdr must be in (0, 1), got {target_efdr}")
    grid = evidence_grid() if grid is None else np.asarray(grid, dtype=float)
    if grid.ndim != 1 or grid.size == 0:
        raise ValueError("grid must be a non-empty 1-D array")

    efdr = compute_efdr(probs, grid)
    efnr = compute_efnr(probs, grid)

    defined = np.isfinite(efdr)
    if not defined.any():
        warnings.warn(
            "EFDR is undefined for every evidence threshold in the grid; "
            f"falling back to {DEFAULT_FALLBACK_EVIDENCE}.",
            UserWarning,
            stacklevel=2,
        )
        return DEFAULT_FALLBACK_EVIDENCE, grid, efdr, efnr

    distance = np.where(defined, np.abs(efdr - target_efdr), np.inf)
    # argmin returns the first of equally distant thresholds
    best = int(np.argmin(distance))
    return float(grid[best]), grid, efdr, efnr
