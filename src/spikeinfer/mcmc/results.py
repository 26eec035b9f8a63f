"""
Results class for spikeinfer MCMC inference.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Union

import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size

from ..core.serialization import (
    PERSISTED_BLOCKS,
    read_persisted_draws,
    write_draws,
)
from ..exceptions import EmptyChain
from ._summary import summarize

if TYPE_CHECKING:
    from ..core.dataset import Dataset
    from ..variability import VariabilityTest, VarianceDecomposition
    from .inference_engine import MCMCRunResult

# ==============================================================================
# MCMCChain class
# ==============================================================================


@dataclass
class MCMCChain:
    """
    Retained posterior draws of one MCMC run.

    Every parameter block is stored as a ``float64`` array of shape
    ``(n_draws, n_entities)``; ``entity_names`` holds the column identifiers
    of each block (biological gene names for ``mu`` and ``delta``, cell
    names for ``phi``, ``s`` and ``nu``, batch labels for ``theta``).

    Attributes
    ----------
    parameters : Dict[str, np.ndarray]
        Draws per parameter block.
    entity_names : Dict[str, List[str]]
        Column identifiers per parameter block.
    run_name : str
        Identifier used in persisted file names.
    iterations : np.ndarray, optional
        1-based sampler iteration of every retained draw. Not available for
        chains read back from disk.
    acceptance_rates : Dict[str, np.ndarray]
        Per-entity acceptance rates of the Metropolis blocks.
    proposal_scales : Dict[str, np.ndarray]
        Final random-walk standard deviations of the Metropolis blocks.
    n_nonfinite : int
        Proposals rejected for a non-finite log density.
    cancelled : bool
        Whether the run was stopped before completing.
    """

    parameters: Dict[str, np.ndarray]
    entity_names: Dict[str, List[str]]
    run_name: str = "run"
    iterations: Optional[np.ndarray] = None
    acceptance_rates: Dict[str, np.ndarray] = field(default_factory=dict)
    proposal_scales: Dict[str, np.ndarray] = field(default_factory=dict)
    n_nonfinite: int = 0
    cancelled: bool = False

    def __post_init__(self):
        missing = [b for b in PERSISTED_BLOCKS if b not in self.parameters]
        if missing:
            raise KeyError(f"Chain is missing parameter blocks {missing}")

        parameters = {}
        entity_names = {}
        for block in PERSISTED_BLOCKS:
            draws = np.ascontiguousarray(
                self.parameters[block], dtype=np.float64
            )
            if draws.ndim != 2:
                raise ValueError(
                    f"Draws of '{block}' must be 2-D (draws x entities), "
                    f"got shape {draws.shape}"
                )
            names = [str(n) for n in self.entity_names[block]]
            if len(names) != draws.shape[1]:
                raise ValueError(
                    f"'{block}' has {draws.shape[1]} columns but "
                    f"{len(names)} entity names"
                )
            parameters[block] = draws
            entity_names[block] = names
        self.parameters = parameters
        self.entity_names = entity_names

        n_draws = {b: d.shape[0] for b, d in parameters.items()}
        if len(set(n_draws.values())) > 1:
            raise ValueError(
                f"Parameter blocks hold different numbers of draws: {n_draws}"
            )

    # --------------------------------------------------------------------------
    # Construction
    # --------------------------------------------------------------------------

    @classmethod
    def from_sampler(
        cls, run: "MCMCRunResult", dataset: "Dataset"
    ) -> "MCMCChain":
        """Package the output of :class:`MCMCInferenceEngine`.

        When the draws were streamed to disk they are read back, so the
        chain holds exactly what was persisted.

        Parameters
        ----------
        run : MCMCRunResult
            Raw sampler output.
        dataset : Dataset
            Dataset the sampler ran on; provides the entity identifiers.

        Returns
        -------
        MCMCChain
        """
        run_name = run.config.run_name if run.config is not None else "run"
        metadata = dict(
            iterations=run.iterations,
            acceptance_rates=run.acceptance_rates,
            proposal_scales=run.proposal_scales,
            n_nonfinite=run.n_nonfinite,
            cancelled=run.cancelled,
        )

        if run.persisted_to is not None:
            chain = cls.from_persisted_draws(run.persisted_to, run_name)
            for key, value in metadata.items():
                setattr(chain, key, value)
            return chain

        cells = list(dataset.cell_names)
        return cls(
            parameters=run.draws,
            entity_names={
                "mu": dataset.biological_names,
                "delta": dataset.biological_names,
                "phi": cells,
                "s": cells,
                "nu": cells,
                "theta": [str(b) for b in dataset.batch_ids],
            },
            run_name=run_name,
            **metadata,
        )

    @classmethod
    def from_persisted_draws(
        cls, directory: Union[str, Path], run_name: str = "run"
    ) -> "MCMCChain":
        """Rebuild a chain from ``chain_<block>_<run_name>.csv`` files."""
        draws, entity_names = read_persisted_draws(directory, run_name)
        return cls(
            parameters=draws, entity_names=entity_names, run_name=run_name
        )

    def to_persisted_draws(
        self, directory: Union[str, Path], run_name: Optional[str] = None
    ) -> None:
        """Write the chain in the persisted CSV format."""
        write_draws(
            directory,
            run_name if run_name is not None else self.run_name,
            self.parameters,
            self.entity_names,
        )

    # --------------------------------------------------------------------------
    # Access
    # --------------------------------------------------------------------------

    @property
    def n_draws(self) -> int:
        """Number of retained draws."""
        return self.parameters["mu"].shape[0]

    def __len__(self) -> int:
        return self.n_draws

    def __getitem__(self, parameter: str) -> np.ndarray:
        if parameter not in self.parameters:
            raise KeyError(
                f"Unknown parameter '{parameter}'; available: "
                f"{list(self.parameters)}"
            )
        return self.parameters[parameter]

    def to_dataframe(self, parameter: str) -> pd.DataFrame:
        """Draws of one block as a draws x entities DataFrame."""
        return pd.DataFrame(
            self[parameter], columns=self.entity_names[parameter]
        )

    def _require_draws(self, what: str) -> None:
        if self.n_draws == 0:
            raise EmptyChain(f"Cannot {what}: the chain holds no draws")

    # --------------------------------------------------------------------------
    # Summaries
    # --------------------------------------------------------------------------

    def summarize(self, parameter: str, prob: float = 0.95) -> pd.DataFrame:
        """Posterior mean, median, mode and HPD interval per entity."""
        return summarize(self, parameter, prob)

    def summary(self, prob: float = 0.95) -> Dict[str, pd.DataFrame]:
        """Summaries of every parameter block."""
        return {b: summarize(self, b, prob) for b in PERSISTED_BLOCKS}

    def posterior_means(self) -> Dict[str, np.ndarray]:
        """Posterior mean of every parameter block."""
        self._require_draws("compute posterior means")
        return {b: d.mean(axis=0) for b, d in self.parameters.items()}

    def effective_sample_size(self, parameter: str) -> pd.Series:
        """
        Effective sample size of each entity of ``parameter``.

        Uses ``numpyro.diagnostics.effective_sample_size`` on the single
        chain. At least two draws are required.
        """
        draws = self[parameter]
        if draws.shape[0] < 2:
            raise EmptyChain(
                "At least two draws are needed for the effective sample size"
            )
        ess = effective_sample_size(draws[None, :, :])
        return pd.Series(
            np.asarray(ess, dtype=np.float64),
            index=self.entity_names[parameter],
            name="ess",
        )

    # --------------------------------------------------------------------------
    # Downstream analyses
    # --------------------------------------------------------------------------

    def decompose(
        self,
        dataset: Optional["Dataset"] = None,
        batch: Optional[int] = None,
    ) -> "VarianceDecomposition":
        """Technical, biological and shot-noise variance shares per gene."""
        from ..variability import decompose

        return decompose(dataset, self, batch=batch)

    def detect_hvg(
        self,
        var_threshold: float,
        dataset: Optional["Dataset"] = None,
        batch: Optional[int] = None,
        **kwargs,
    ) -> "VariabilityTest":
        """Highly variable genes, see ``variability.detect_hvg``."""
        from ..variability import detect_hvg

        return detect_hvg(
            self.decompose(dataset, batch), var_threshold, **kwargs
        )

    def detect_lvg(
        self,
        var_threshold: float,
        dataset: Optional["Dataset"] = None,
        batch: Optional[int] = None,
        **kwargs,
    ) -> "VariabilityTest":
        """Lowly variable genes, see ``variability.detect_lvg``."""
        from ..variability import detect_lvg

        return detect_lvg(
            self.decompose(dataset, batch), var_threshold, **kwargs
        )

    def denoised_rates(self, dataset: "Dataset", **kwargs) -> pd.DataFrame:
        """Posterior mean denoised expression rates (genes x cells)."""
        from ..core.denoising import denoised_rates

        return denoised_rates(dataset, self, **kwargs)

    def __repr__(self) -> str:
        shapes = ", ".join(
            f"{b}={d.shape[1]}" for b, d in self.parameters.items()
        )
        return (
            f"MCMCChain(run_name={self.run_name!r}, n_draws={self.n_draws}, "
            f"{shapes}, cancelled={self.cancelled})"
        )
