"""
spikeinfer: Bayesian inference for spike-in calibrated single-cell data

Adaptive Metropolis-within-Gibbs sampling of a hierarchical Poisson-Gamma
model of scRNA-seq counts, with posterior summaries, variance decomposition,
highly/lowly variable gene detection and denoised expression rates.
"""

# Suppress known warnings from dependencies BEFORE any imports
import warnings

# Suppress FutureWarnings from anndata about deprecated __version__ usage
warnings.filterwarnings(
    "ignore",
    message=".*__version__ is deprecated.*",
    category=FutureWarning,
)

from .exceptions import (
    DegenerateVariance,
    EmptyChain,
    InconsistentSpikeInfo,
    InvalidConfiguration,
    NonFiniteProposal,
)
from .core import Dataset, denoised_counts, denoised_rates, infer_spike_flags
from .models.config import MCMCConfig, PriorConfig
from .models import HierarchicalModel
from .mcmc import MCMCChain, summarize
from .inference import run_chains, run_mcmc
from .variability import (
    VariabilityTest,
    VarianceDecomposition,
    decompose,
    detect_hvg,
    detect_lvg,
)

from . import stats
from . import data_loader

__version__ = "0.1.0"

__all__ = [
    # Data
    "Dataset",
    "infer_spike_flags",
    "data_loader",
    # Configuration
    "PriorConfig",
    "MCMCConfig",
    # Model and sampler
    "HierarchicalModel",
    "run_mcmc",
    "run_chains",
    "MCMCChain",
    # Downstream analyses
    "summarize",
    "decompose",
    "VarianceDecomposition",
    "detect_hvg",
    "detect_lvg",
    "VariabilityTest",
    "denoised_rates",
    "denoised_counts",
    "stats",
    # Errors and warnings
    "InvalidConfiguration",
    "InconsistentSpikeInfo",
    "EmptyChain",
    "NonFiniteProposal",
    "DegenerateVariance",
]
