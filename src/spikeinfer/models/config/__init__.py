"""
Configuration system for spikeinfer.

Uses Pydantic for validation. All configs are immutable.
"""

from .groups import PriorConfig, MCMCConfig

__all__ = [
    "PriorConfig",
    "MCMCConfig",
]
