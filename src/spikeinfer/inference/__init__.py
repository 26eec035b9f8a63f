"""
Inference entry points for spikeinfer.
"""

from .mcmc import run_chains, run_mcmc

__all__ = ["run_mcmc", "run_chains"]
