"""Highest posterior density intervals and mode estimates from draws."""

import numpy as np

# ==============================================================================
# Helpers
# ==============================================================================


def _as_draws(samples) -> np.ndarray:
    """Return ``samples`` as a float64 array of shape (n_draws, n_entities)."""
    samples = np.asarray(samples, dtype=np.float64)
    if samples.ndim == 1:
        samples = samples[:, None]
    if samples.ndim != 2:
        raise ValueError(
            f"Expected draws of shape (n_draws,) or (n_draws, n_entities), "
            f"got {samples.shape}"
        )
    if samples.shape[0] == 0:
        raise ValueError("At least one draw is required")
    return samples


def _shortest_window(sorted_draws: np.ndarray, width: int):
    """Start index of the narrowest window of ``width`` sorted draws.

    Ties are resolved in favor of the first (lowest) window.
    """
    n = sorted_draws.shape[0]
    spans = sorted_draws[width - 1 :] - sorted_draws[: n - width + 1]
    return np.argmin(spans, axis=0)


# ==============================================================================
# HPD interval
# ==============================================================================


def hpd_interval(samples, prob: float = 0.95):
    """
    Highest posterior density interval of each column of ``samples``.

    The draws of every entity are sorted and a window holding
    ``ceil(prob * n)`` consecutive draws slides over them; the interval is
    the narrowest such window (the first one when several are equally
    narrow).

    Parameters
    ----------
    samples : array-like
        Draws of shape ``(n_draws,)`` or ``(n_draws, n_entities)``.
    prob : float, default=0.95
        Posterior mass covered by the interval, in ``(0, 1]``.

    Returns
    -------
    lower, upper : np.ndarray
        Interval bounds, one per entity.

    Raises
    ------
    ValueError
        If ``prob`` is outside ``(0, 1]`` or there are no draws.
    """
    if not 0.0 < prob <= 1.0:
        raise ValueError(f"prob must be in (0, 1], got {prob}")
    draws = np.sort(_as_draws(samples), axis=0)
    n = draws.shape[0]

    # Round before ceil so that e.g. 0.95 * 100 gives 95, not 96
    width = int(np.ceil(round(prob * n, 8)))
    width = min(max(width, 1), n)

    start = _shortest_window(draws, width)
    cols = np.arange(draws.shape[1])
    return draws[start, cols], draws[start + width - 1, cols]


# ==============================================================================
# Mode
# ==============================================================================


def shorth_mode(samples) -> np.ndarray:
    """
    Deterministic mode estimate of each column of ``samples``.

    The mode is the midpoint of the shortest window holding
    ``max(2, ceil(sqrt(n)))`` sorted draws.

    Parameters
    ----------
    samples : array-like
        Draws of shape ``(n_draws,)`` or ``(n_draws, n_entities)``.

    Returns
    -------
    np.ndarray
        Mode estimate, one per entity.
    """
    draws = np.sort(_as_draws(samples), axis=0)
    n = draws.shape[0]
    if n == 1:
        return draws[0].copy()

    width = min(max(2, int(np.ceil(np.sqrt(n)))), n)
    start = _shortest_window(draws, width)
    cols = np.arange(draws.shape[1])
    return 0.5 * (draws[start, cols] + draws[start + width - 1, cols])
