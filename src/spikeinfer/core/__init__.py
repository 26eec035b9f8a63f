"""Core data structures and utilities for spikeinfer."""

from .dataset import Dataset, infer_spike_flags
from .denoising import denoised_counts, denoised_rates
from .serialization import ChainWriter, read_persisted_draws

__all__ = [
    "Dataset",
    "infer_spike_flags",
    "denoised_rates",
    "denoised_counts",
    "ChainWriter",
    "read_persisted_draws",
]
