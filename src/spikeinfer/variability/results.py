"""VariabilityTest: structured results of HVG / LVG detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd


@dataclass
class VariabilityTest:
    """Outcome of a highly or lowly variable gene test.

    Attributes
    ----------
    kind : str
        ``"HVG"`` or ``"LVG"``.
    gene_names : List[str]
        Biological gene identifiers.
    probability : np.ndarray
        Posterior tail probability per gene (NaN for degenerate genes).
    flagged : np.ndarray
        Boolean flag per gene.
    var_threshold : float
        Threshold ``gamma`` on the biological variance share.
    evidence_threshold : float
        Threshold ``alpha`` applied to the tail probabilities.
    efdr, efnr : float
        Expected false discovery / negative rates at ``evidence_threshold``
        (NaN when undefined).
    target_efdr : float, optional
        EFDR target used for calibration; ``None`` for a fixed threshold.
    grid, efdr_grid, efnr_grid : np.ndarray, optional
        Scanned thresholds and the error rates at each of them.
    """

    kind: str
    gene_names: List[str]
    probability: np.ndarray
    flagged: np.ndarray
    var_threshold: float
    evidence_threshold: float
    efdr: float
    efnr: float
    target_efdr: Optional[float] = None
    grid: Optional[np.ndarray] = field(default=None, repr=False)
    efdr_grid: Optional[np.ndarray] = field(default=None, repr=False)
    efnr_grid: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def n_flagged(self) -> int:
        """Number of flagged genes."""
        return int(self.flagged.sum())

    @property
    def flagged_genes(self) -> List[str]:
        """Identifiers of flagged genes, in gene order."""
        return [g for g, f in zip(self.gene_names, self.flagged) if f]

    def to_dataframe(self) -> pd.DataFrame:
        """Per-gene probabilities and flags indexed by gene identifier."""
        return pd.DataFrame(
            {
                "probability": self.probability,
                self.kind: self.flagged,
            },
            index=pd.Index(self.gene_names, name="gene"),
        )

    def error_rates(self) -> pd.DataFrame:
        """EFDR and EFNR over the scanned evidence thresholds."""
        if self.grid is None:
            raise ValueError(
                "No threshold scan available: the evidence threshold was fixed"
            )
        return pd.DataFrame(
            {
                "evidence_threshold": self.grid,
                "efdr": self.efdr_grid,
                "efnr": self.efnr_grid,
            }
        )

    def summary(self) -> str:
        """One-paragraph human-readable description of the test."""
        lines = [
            f"{self.kind} detection: {self.n_flagged} of "
            f"{len(self.gene_names)} genes flagged",
            f"  variance threshold : {self.var_threshold:.3f}",
            f"  evidence threshold : {self.evidence_threshold:.4f}",
            f"  EFDR               : {self.efdr:.4f}",
            f"  EFNR               : {self.efnr:.4f}",
        ]
        if self.target_efdr is not None:
            lines.append(f"  target EFDR        : {self.target_efdr:.4f}")
        return "\n".join(lines)
