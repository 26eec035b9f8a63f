"""Statistics functions for spikeinfer."""

# HPD functions
from .hpd import hpd_interval, shorth_mode

__all__ = [
    "hpd_interval",
    "shorth_mode",
]
