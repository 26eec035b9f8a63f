"""
MCMC (Markov Chain Monte Carlo) execution.

This module is the public entry point of the sampler: it validates the run
configuration, builds the model, runs the inference engine and packages the
result as an ``MCMCChain``.
"""

import concurrent.futures
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from ..core.dataset import Dataset
from ..exceptions import InvalidConfiguration
from ..mcmc import MCMCChain, MCMCInferenceEngine
from ..models.config import MCMCConfig, PriorConfig
from ..models.hierarchical import HierarchicalModel

# ==============================================================================
# Configuration helpers
# ==============================================================================


def _build_config(cls, values: Mapping[str, Any]):
    """Instantiate a pydantic config, re-raising as ``InvalidConfiguration``."""
    try:
        return cls(**values)
    except ValidationError as e:
        raise InvalidConfiguration(str(e)) from e


def _build_priors(
    priors: Optional[Union[PriorConfig, Mapping[str, Any]]],
) -> PriorConfig:
    if priors is None:
        return PriorConfig()
    if isinstance(priors, PriorConfig):
        return priors
    return _build_config(PriorConfig, dict(priors))


# ==============================================================================
# Single chain
# ==============================================================================


def run_mcmc(
    dataset: Dataset,
    n_iterations: int,
    thin: int = 1,
    burn_in: int = 0,
    initial_state: Optional[Mapping[str, Any]] = None,
    *,
    priors: Optional[Union[PriorConfig, Mapping[str, Any]]] = None,
    adaptation_window: Optional[int] = None,
    seed: int = 42,
    persist_draws: Optional[Union[str, Path]] = None,
    run_name: str = "run",
    progress: bool = True,
    cancel_event: Optional[Any] = None,
    **mcmc_kwargs,
) -> MCMCChain:
    """
    Sample the posterior of the spike-in hierarchical model.

    Runs ``n_iterations`` adaptive Metropolis-within-Gibbs sweeps and keeps
    iteration ``i`` (1-based) when ``i > burn_in`` and
    ``(i - burn_in) % thin == 0``, i.e. exactly
    ``(n_iterations - burn_in) // thin`` draws.

    Parameters
    ----------
    dataset : Dataset
        Counts and spike-in information.
    n_iterations : int
        Total number of sweeps (at least 1).
    thin : int, default=1
        Thinning period (at least 1).
    burn_in : int, default=0
        Number of initial sweeps discarded; must be below ``n_iterations``.
    initial_state : Mapping[str, Any], optional
        Starting values for any parameter block.
    priors : PriorConfig or dict, optional
        Prior hyper-parameters.
    adaptation_window : int, optional
        Number of initial sweeps during which proposal scales adapt.
        Defaults to ``burn_in``.
    seed : int, default=42
        Seed of the random stream; runs are reproducible given the seed.
    persist_draws : str or Path, optional
        Directory to stream retained draws to instead of holding them in
        memory. The returned chain is read back from these files.
    run_name : str, default="run"
        Identifier of the persisted files.
    progress : bool, default=True
        Display a progress bar.
    cancel_event : object with ``is_set()``, optional
        For cooperative cancellation (e.g. ``threading.Event``).
    **mcmc_kwargs
        Further ``MCMCConfig`` fields (``adaptation_batch_size``,
        ``target_acceptance``, ``max_adaptation_step``,
        ``initial_proposal_scale``).

    Returns
    -------
    MCMCChain

    Raises
    ------
    InvalidConfiguration
        If the run configuration or priors are invalid.

    Examples
    --------
    >>> chain = run_mcmc(dataset, n_iterations=20000, thin=10, burn_in=10000)
    >>> chain.summarize("mu").head()
    """
    config = _build_config(
        MCMCConfig,
        dict(
            n_iterations=n_iterations,
            thin=thin,
            burn_in=burn_in,
            adaptation_window=adaptation_window,
            seed=seed,
            persist_draws=persist_draws,
            run_name=run_name,
            **mcmc_kwargs,
        ),
    )
    model = HierarchicalModel(dataset, _build_priors(priors))

    run = MCMCInferenceEngine.run_inference(
        model=model,
        config=config,
        initial_state=initial_state,
        progress=progress,
        cancel_event=cancel_event,
    )
    return MCMCChain.from_sampler(run, dataset)


# ==============================================================================
# Independent chains
# ==============================================================================


def run_chains(
    dataset: Dataset,
    n_iterations: int,
    thin: int = 1,
    burn_in: int = 0,
    seeds: Sequence[int] = (0, 1, 2, 3),
    max_workers: Optional[int] = None,
    run_name: str = "run",
    **kwargs,
) -> List[MCMCChain]:
    """
    Run independent chains, one per seed, concurrently.

    Chains share nothing but the (immutable) dataset; each owns its random
    stream. Progress bars are disabled. Persisted chains get the run name
    ``<run_name>_seed<seed>``.

    Parameters
    ----------
    dataset : Dataset
        Counts and spike-in information.
    n_iterations, thin, burn_in : int
        As in :func:`run_mcmc`.
    seeds : Sequence[int], default=(0, 1, 2, 3)
        One seed per chain; must be distinct.
    max_workers : int, optional
        Size of the thread pool. Defaults to one thread per chain.
    run_name : str, default="run"
        Prefix of the per-chain run names.
    **kwargs
        Passed on to :func:`run_mcmc`.

    Returns
    -------
    List[MCMCChain]
        In the order of ``seeds``.
    """
    seeds = list(seeds)
    if not seeds:
        raise InvalidConfiguration("At least one seed is required")
    if len(set(seeds)) != len(seeds):
        raise InvalidConfiguration(f"Chain seeds must be distinct: {seeds}")
    kwargs.pop("progress", None)

    futures = []
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers or len(seeds)
    ) as executor:
        for seed in seeds:
            future = executor.submit(
                run_mcmc,
                dataset,
                n_iterations,
                thin,
                burn_in,
                seed=seed,
                run_name=f"{run_name}_seed{seed}",
                progress=False,
                **kwargs,
            )
            futures.append(future)
        concurrent.futures.wait(
            futures, return_when=concurrent.futures.ALL_COMPLETED
        )
    return [f.result() for f in futures]
