"""
Posterior summaries of MCMC chains.
"""

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

from ..exceptions import EmptyChain
from ..stats.hpd import hpd_interval, shorth_mode

if TYPE_CHECKING:
    from .results import MCMCChain

SUMMARY_COLUMNS = ["mean", "median", "mode", "hpd_lower", "hpd_upper"]


def summarize(
    chain: "MCMCChain", parameter: str, prob: float = 0.95
) -> pd.DataFrame:
    """
    Per-entity posterior summary of one parameter block.

    Parameters
    ----------
    chain : MCMCChain
        Chain holding the retained draws.
    parameter : str
        Parameter block (``"mu"``, ``"delta"``, ``"phi"``, ``"s"``, ``"nu"``
        or ``"theta"``).
    prob : float, default=0.95
        Posterior mass of the HPD interval.

    Returns
    -------
    pd.DataFrame
        Indexed by entity identifier, with columns ``mean``, ``median``,
        ``mode``, ``hpd_lower`` and ``hpd_upper``.

    Raises
    ------
    KeyError
        If ``parameter`` is not a block of the chain.
    EmptyChain
        If the chain holds no draws.
    """
    if parameter not in chain.parameters:
        raise KeyError(
            f"Unknown parameter '{parameter}'; available: "
            f"{list(chain.parameters)}"
        )
    draws = chain.parameters[parameter]
    if draws.shape[0] == 0:
        raise EmptyChain(
            f"Cannot summarize '{parameter}': the chain holds no draws"
        )

    lower, upper = hpd_interval(draws, prob)
    return pd.DataFrame(
        {
            "mean": draws.mean(axis=0),
            "median": np.median(draws, axis=0),
            "mode": shorth_mode(draws),
            "hpd_lower": lower,
            "hpd_upper": upper,
        },
        index=pd.Index(chain.entity_names[parameter], name=parameter),
        columns=SUMMARY_COLUMNS,
    )
