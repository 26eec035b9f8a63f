"""
Markov Chain Monte Carlo (MCMC) module for spike-in calibrated scRNA-seq
data.

This module implements an adaptive Metropolis-within-Gibbs sampler for the
hierarchical Poisson-Gamma model and the chain object holding its draws.
"""

from ._summary import summarize
from .inference_engine import MCMCInferenceEngine, MCMCRunResult
from .results import MCMCChain

__all__ = [
    "MCMCChain",
    "MCMCInferenceEngine",
    "MCMCRunResult",
    "summarize",
]
