"""
Inference engine for MCMC.

This module handles the execution of the adaptive Metropolis-within-Gibbs
sampler: the jitted sweep, proposal adaptation, burn-in and thinning,
streaming of retained draws and cooperative cancellation.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import jax.numpy as jnp
from jax import random, jit
from rich.progress import (
    Progress,
    TextColumn,
    BarColumn,
    TaskProgressColumn,
    TimeRemainingColumn,
    MofNCompleteColumn,
)

from ..core.serialization import ChainWriter
from ..exceptions import NonFiniteProposal
from ..models.config import MCMCConfig
from ..models.hierarchical import HierarchicalModel, MCMCState
from ._adaptation import (
    AcceptanceCounts,
    ProposalScales,
    adapt_scales,
    gibbs_sweep,
    initial_scales,
    zero_counts,
)

# ==============================================================================
# MCMCRunResult class
# ==============================================================================


@dataclass
class MCMCRunResult:
    """Raw output of one sampler run.

    Attributes
    ----------
    draws : Dict[str, np.ndarray]
        Retained draws per block, shape ``(n_retained, n_entities)``. Empty
        when draws were streamed to disk.
    iterations : np.ndarray
        1-based iteration index of every retained draw.
    acceptance_rates : Dict[str, np.ndarray]
        Per-entity acceptance rate of each Metropolis block after
        adaptation (over the whole run if there was no post-adaptation
        iteration).
    proposal_scales : Dict[str, np.ndarray]
        Final random-walk standard deviations (frozen after adaptation).
    n_nonfinite : int
        Number of proposals rejected for a non-finite log density.
    cancelled : bool
        Whether the run stopped early on request.
    persisted_to : Optional[str]
        Directory holding the streamed draws, if any.
    """

    draws: Dict[str, np.ndarray]
    iterations: np.ndarray
    acceptance_rates: Dict[str, np.ndarray]
    proposal_scales: Dict[str, np.ndarray]
    n_nonfinite: int = 0
    cancelled: bool = False
    persisted_to: Optional[str] = None
    config: Optional[MCMCConfig] = field(default=None, repr=False)


# ==============================================================================
# MCMC Inference Engine
# ==============================================================================


class MCMCInferenceEngine:
    """Handles MCMC inference execution."""

    @staticmethod
    def run_inference(
        model: HierarchicalModel,
        config: MCMCConfig,
        initial_state: Optional[Mapping[str, Any]] = None,
        progress: bool = True,
        cancel_event: Optional[Any] = None,
    ) -> MCMCRunResult:
        """Execute the adaptive Metropolis-within-Gibbs sampler.

        Parameters
        ----------
        model : HierarchicalModel
            Model holding the data and prior hyper-parameters.
        config : MCMCConfig
            Validated run configuration.
        initial_state : Mapping[str, Any], optional
            Starting values overriding the data-driven defaults.
        progress : bool, default=True
            Display a ``rich`` progress bar.
        cancel_event : object with ``is_set()``, optional
            Checked between iterations; when set, the run stops and the
            draws retained so far are returned.

        Returns
        -------
        MCMCRunResult
        """
        state = model.initial_state(initial_state)
        scales = initial_scales(state, config.initial_proposal_scale)
        counts = zero_counts(state)
        rng_key = random.PRNGKey(config.seed)

        # JIT compile the full sweep; data and priors are baked in
        sweep = jit(
            lambda state, scales, counts, key: gibbs_sweep(
                model, state, scales, counts, key
            )
        )

        n_adapt = config.n_adaptation
        batch_start, batch_start_iter = counts, 0
        batch_number = 0
        # Acceptances are reported after adaptation stops
        post_adapt_start = counts if n_adapt == 0 else None
        n_completed = 0

        writer = None
        if config.persist_draws is not None:
            writer = ChainWriter(
                directory=config.persist_draws,
                run_name=config.run_name,
                entity_names=_entity_names(model),
            )
        retained: Dict[str, List[np.ndarray]] = {
            name: [] for name in MCMCState._fields
        }
        iterations: List[int] = []
        cancelled = False

        # Progress bar setup - matches the SVI loop format
        progress_ctx = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[acc_info]}"),
            disable=not progress,
        )
        display_interval = max(1, config.n_iterations // 20)

        try:
            with progress_ctx as pbar:
                task = pbar.add_task(
                    "MCMC sampling",
                    total=config.n_iterations,
                    acc_info="adapting" if n_adapt > 0 else "",
                )

                for iteration in range(1, config.n_iterations + 1):
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        pbar.console.print(
                            f"[bold yellow]Sampling cancelled at iteration "
                            f"{iteration - 1}[/bold yellow] "
                            f"({len(iterations)} draws retained)"
                        )
                        break

                    state, counts, rng_key = sweep(
                        state, scales, counts, rng_key
                    )
                    n_completed = iteration

                    # Adapt proposal scales at the end of each batch
                    if (
                        iteration <= n_adapt
                        and iteration % config.adaptation_batch_size == 0
                    ):
                        batch_number += 1
                        scales = adapt_scales(
                            scales,
                            _difference(counts, batch_start),
                            config.adaptation_batch_size,
                            batch_number,
                            config.target_acceptance,
                            config.max_adaptation_step,
                        )
                        batch_start, batch_start_iter = counts, iteration
                    if iteration == n_adapt:
                        post_adapt_start = counts

                    if config.is_retained(iteration):
                        draw = {
                            name: np.asarray(
                                getattr(state, name), dtype=np.float64
                            )
                            for name in MCMCState._fields
                        }
                        if writer is not None:
                            writer.write(draw)
                        else:
                            for name, value in draw.items():
                                retained[name].append(value)
                        iterations.append(iteration)

                    adapting = iteration <= n_adapt
                    if adapting:
                        start = batch_start
                        n_since = iteration - batch_start_iter
                    else:
                        start, n_since = post_adapt_start, iteration - n_adapt
                    if iteration % display_interval == 0 and n_since > 0:
                        pbar.update(
                            task,
                            advance=1,
                            acc_info=_acceptance_info(
                                counts, start, n_since, adapting
                            ),
                        )
                    else:
                        pbar.update(task, advance=1)
        finally:
            if writer is not None:
                writer.close()

        reference = post_adapt_start
        n_reference = n_completed - n_adapt
        if reference is None or n_reference <= 0:
            reference, n_reference = zero_counts(state), max(n_completed, 1)
        accepted = _difference(counts, reference)
        acceptance_rates = {
            name: np.asarray(getattr(accepted, name)) / n_reference
            for name in ProposalScales._fields
        }

        n_nonfinite = int(counts.nonfinite)
        if n_nonfinite > 0:
            warnings.warn(
                f"{n_nonfinite} proposals had a non-finite log density and "
                "were rejected.",
                NonFiniteProposal,
                stacklevel=2,
            )

        draws = {}
        if writer is None:
            draws = {
                name: _stack(values, getattr(state, name).shape[0])
                for name, values in retained.items()
            }

        return MCMCRunResult(
            draws=draws,
            iterations=np.asarray(iterations, dtype=np.int64),
            acceptance_rates=acceptance_rates,
            proposal_scales={
                name: np.exp(np.asarray(getattr(scales, name)))
                for name in ProposalScales._fields
            },
            n_nonfinite=n_nonfinite,
            cancelled=cancelled,
            persisted_to=(
                None if writer is None else str(config.persist_draws)
            ),
            config=config,
        )


# ==============================================================================
# Helpers
# ==============================================================================


def _entity_names(model: HierarchicalModel) -> Dict[str, List[str]]:
    """Column identifiers of every parameter block."""
    ds = model.dataset
    cells = list(ds.cell_names)
    return {
        "mu": ds.biological_names,
        "delta": ds.biological_names,
        "phi": cells,
        "s": cells,
        "nu": cells,
        "theta": [str(b) for b in ds.batch_ids],
    }


def _difference(
    counts: AcceptanceCounts, start: AcceptanceCounts
) -> AcceptanceCounts:
    """Acceptances accumulated since ``start``."""
    return AcceptanceCounts(*(a - b for a, b in zip(counts, start)))


def _acceptance_info(counts, start, n, adapting) -> str:
    """Mean acceptance rates over the last ``n`` iterations, for display."""
    accepted = _difference(counts, start)
    rates = ", ".join(
        f"{name}: {float(jnp.mean(getattr(accepted, name))) / n:.2f}"
        for name in ProposalScales._fields
    )
    label = "adapting" if adapting else "acc."
    return f"{label} {rates}"


def _stack(values: List[np.ndarray], n_entities: int) -> np.ndarray:
    """Stack retained draws, keeping the entity axis when empty."""
    if not values:
        return np.empty((0, n_entities), dtype=np.float64)
    return np.stack(values, axis=0)
