"""Model definitions for spikeinfer."""

from .config import MCMCConfig, PriorConfig
from .hierarchical import METROPOLIS_BLOCKS, HierarchicalModel, MCMCState

__all__ = [
    "HierarchicalModel",
    "MCMCState",
    "METROPOLIS_BLOCKS",
    "PriorConfig",
    "MCMCConfig",
]
