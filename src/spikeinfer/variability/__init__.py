"""
Variance decomposition and variability testing.

This module splits the posterior expression variance of every gene into
technical, biological and shot-noise shares and flags highly (HVG) and
lowly (LVG) variable genes with EFDR-calibrated evidence thresholds.
"""

from ._decomposition import VarianceDecomposition, decompose
from ._detection import detect_hvg, detect_lvg, tail_probability
from ._error_control import (
    compute_efdr,
    compute_efnr,
    evidence_grid,
    find_evidence_threshold,
)
from .results import VariabilityTest

__all__ = [
    # Decomposition
    "VarianceDecomposition",
    "decompose",
    # Detection
    "detect_hvg",
    "detect_lvg",
    "tail_probability",
    # Error control
    "compute_efdr",
    "compute_efnr",
    "evidence_grid",
    "find_evidence_threshold",
    # Results
    "VariabilityTest",
]
