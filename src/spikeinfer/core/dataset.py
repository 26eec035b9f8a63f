"""
Immutable container for spike-in calibrated count data.

A ``Dataset`` holds the genes x cells matrix of raw molecule counts together
with the technical spike-in information needed by the hierarchical model:
which rows are spike-ins, how many molecules of each spike-in were added, and
(optionally) the batch each cell belongs to.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from ..exceptions import InconsistentSpikeInfo

if TYPE_CHECKING:
    from anndata import AnnData

# ==============================================================================
# Helpers
# ==============================================================================


def infer_spike_flags(
    gene_names: Sequence[str], prefix: str = "ERCC-"
) -> np.ndarray:
    """Flag spike-in genes from a naming convention.

    The ``Dataset`` constructor never relies on gene names to identify
    spike-ins; this helper exists for callers whose data follow a naming
    convention (ERCC spike-ins by default).

    Parameters
    ----------
    gene_names : Sequence[str]
        Gene identifiers.
    prefix : str, default="ERCC-"
        Prefix identifying spike-in genes.

    Returns
    -------
    np.ndarray
        Boolean array, ``True`` for spike-in genes.
    """
    return np.array([str(g).startswith(prefix) for g in gene_names])


def _read_only(array: np.ndarray) -> np.ndarray:
    """Return a private, non-writeable copy of ``array``."""
    out = np.array(array, copy=True)
    out.setflags(write=False)
    return out


# ==============================================================================
# Dataset
# ==============================================================================


@dataclass(frozen=True, eq=False)
class Dataset:
    """Counts, spike-in information and batch labels for one experiment.

    Parameters
    ----------
    counts : array-like
        Non-negative integer matrix of shape ``(n_genes, n_cells)``.
    gene_names : Sequence[str]
        Unique gene identifiers, one per row of ``counts``.
    cell_names : Sequence[str]
        Unique cell identifiers, one per column of ``counts``.
    is_spike : array-like of bool
        ``True`` for technical spike-in genes.
    spike_input_molecules : Mapping[str, float]
        Input molecule count of every spike-in gene (and only those).
    batch : array-like of int, optional
        Batch label per cell. If ``None`` every cell belongs to batch 1.

    Raises
    ------
    InconsistentSpikeInfo
        If the spike-in flags and ``spike_input_molecules`` disagree, an
        input molecule count is not positive, or there are no spike-ins.
    ValueError
        For malformed counts, identifiers or batch labels.
    """

    counts: np.ndarray
    gene_names: Sequence[str]
    cell_names: Sequence[str]
    is_spike: np.ndarray
    spike_input_molecules: Mapping[str, float]
    batch: Optional[np.ndarray] = None

    # Derived attributes, filled in __post_init__
    batch_ids: tuple = field(init=False, repr=False)
    batch_index: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        counts = np.asarray(self.counts)
        if counts.ndim != 2:
            raise ValueError(
                "counts must be a 2-D genes x cells matrix, got "
                f"{counts.ndim}-D"
            )
        if not np.issubdtype(counts.dtype, np.number):
            raise ValueError("counts must be numeric")
        if not np.all(np.isfinite(counts)):
            raise ValueError("counts must be finite")
        if np.any(counts < 0):
            raise ValueError("counts must be non-negative")
        if not np.all(np.equal(np.mod(counts, 1), 0)):
            raise ValueError("counts must be integer valued")
        counts = counts.astype(np.int64)
        n_genes, n_cells = counts.shape

        gene_names = [str(g) for g in self.gene_names]
        cell_names = [str(c) for c in self.cell_names]
        if len(gene_names) != n_genes:
            raise ValueError(
                f"Expected {n_genes} gene names, got {len(gene_names)}"
            )
        if len(cell_names) != n_cells:
            raise ValueError(
                f"Expected {n_cells} cell names, got {len(cell_names)}"
            )
        if len(set(gene_names)) != n_genes:
            raise ValueError("Gene identifiers must be unique")
        if len(set(cell_names)) != n_cells:
            raise ValueError("Cell identifiers must be unique")

        is_spike = np.asarray(self.is_spike, dtype=bool)
        if is_spike.shape != (n_genes,):
            raise ValueError(
                f"is_spike must have one entry per gene ({n_genes}), got "
                f"shape {is_spike.shape}"
            )

        # Spike-in flags and molecule counts must describe the same genes
        molecules = {
            str(k): float(v) for k, v in self.spike_input_molecules.items()
        }
        flagged = {g for g, s in zip(gene_names, is_spike) if s}
        missing = sorted(flagged - set(molecules))
        unexpected = sorted(set(molecules) - flagged)
        if missing or unexpected:
            raise InconsistentSpikeInfo(
                "Spike-in flags and input molecule counts disagree: "
                f"{len(missing)} flagged spike-ins without molecule counts "
                f"{missing[:5]}, {len(unexpected)} molecule counts for genes "
                f"not flagged as spike-ins {unexpected[:5]}",
                missing=missing,
                unexpected=unexpected,
            )
        if not flagged:
            raise InconsistentSpikeInfo(
                "At least one spike-in gene is required"
            )
        bad = [
            g for g, v in molecules.items() if not (np.isfinite(v) and v > 0)
        ]
        if bad:
            raise InconsistentSpikeInfo(
                f"Input molecule counts must be positive, got invalid values "
                f"for {bad[:5]}",
                unexpected=bad,
            )
        if is_spike.all():
            raise ValueError("At least one biological gene is required")

        if self.batch is None:
            batch = np.ones(n_cells, dtype=np.int64)
        else:
            batch = np.asarray(self.batch)
            if batch.shape != (n_cells,):
                raise ValueError(
                    f"batch must have one label per cell ({n_cells}), got "
                    f"shape {batch.shape}"
                )
            if not np.issubdtype(batch.dtype, np.number):
                raise ValueError(
                    f"batch labels must be integers, got dtype {batch.dtype}"
                )
            if not np.all(np.equal(np.mod(batch, 1), 0)):
                raise ValueError("batch labels must be integers")
            batch = batch.astype(np.int64)
        batch_ids, batch_index = np.unique(batch, return_inverse=True)

        # Frozen dataclass: bypass __setattr__ for normalized fields
        object.__setattr__(self, "counts", _read_only(counts))
        object.__setattr__(self, "gene_names", tuple(gene_names))
        object.__setattr__(self, "cell_names", tuple(cell_names))
        object.__setattr__(self, "is_spike", _read_only(is_spike))
        object.__setattr__(self, "spike_input_molecules", dict(molecules))
        object.__setattr__(self, "batch", _read_only(batch))
        object.__setattr__(
            self, "batch_ids", tuple(int(b) for b in batch_ids)
        )
        object.__setattr__(
            self, "batch_index", _read_only(batch_index.astype(np.int32))
        )

    # --------------------------------------------------------------------------
    # Alternate constructors
    # --------------------------------------------------------------------------

    @classmethod
    def from_dataframe(
        cls,
        counts: pd.DataFrame,
        spike_input_molecules: Mapping[str, float],
        is_spike: Optional[Sequence[bool]] = None,
        batch: Optional[Sequence[int]] = None,
    ) -> "Dataset":
        """Build a dataset from a genes x cells DataFrame.

        Parameters
        ----------
        counts : pd.DataFrame
            Counts with gene identifiers as index and cell identifiers as
            columns.
        spike_input_molecules : Mapping[str, float]
            Input molecule count per spike-in gene.
        is_spike : Sequence[bool], optional
            Spike-in flags. If ``None``, the genes listed in
            ``spike_input_molecules`` are flagged.
        batch : Sequence[int], optional
            Batch label per cell.

        Returns
        -------
        Dataset
        """
        gene_names = [str(g) for g in counts.index]
        if is_spike is None:
            keys = {str(k) for k in spike_input_molecules}
            is_spike = [g in keys for g in gene_names]
        return cls(
            counts=counts.to_numpy(),
            gene_names=gene_names,
            cell_names=[str(c) for c in counts.columns],
            is_spike=np.asarray(is_spike, dtype=bool),
            spike_input_molecules=spike_input_molecules,
            batch=None if batch is None else np.asarray(batch),
        )

    @classmethod
    def from_anndata(
        cls,
        adata: "AnnData",
        spike_input_molecules: Mapping[str, float],
        is_spike: Optional[Sequence[bool]] = None,
        batch_key: Optional[str] = None,
        layer: Optional[str] = None,
    ) -> "Dataset":
        """Build a dataset from an AnnData object (cells x genes).

        Parameters
        ----------
        adata : AnnData
            Annotated data matrix with cells as observations.
        spike_input_molecules : Mapping[str, float]
            Input molecule count per spike-in gene.
        is_spike : Sequence[bool], optional
            Spike-in flags per gene. If ``None``, the genes listed in
            ``spike_input_molecules`` are flagged.
        batch_key : str, optional
            Column of ``adata.obs`` holding integer batch labels.
        layer : str, optional
            Layer holding raw counts. If ``None``, ``adata.X`` is used.

        Returns
        -------
        Dataset
        """
        matrix = adata.X if layer is None else adata.layers[layer]
        if hasattr(matrix, "toarray"):
            matrix = matrix.toarray()
        gene_names = [str(g) for g in adata.var_names]
        if is_spike is None:
            keys = {str(k) for k in spike_input_molecules}
            is_spike = [g in keys for g in gene_names]
        batch = None
        if batch_key is not None:
            column = adata.obs[batch_key]
            # Categorical columns hold labels in their categories' dtype
            if isinstance(column.dtype, pd.CategoricalDtype):
                column = column.astype(column.cat.categories.dtype)
            batch = column.to_numpy()
        return cls(
            counts=np.asarray(matrix).T,
            gene_names=gene_names,
            cell_names=[str(c) for c in adata.obs_names],
            is_spike=np.asarray(is_spike, dtype=bool),
            spike_input_molecules=spike_input_molecules,
            batch=batch,
        )

    # --------------------------------------------------------------------------
    # Dimensions
    # --------------------------------------------------------------------------

    @property
    def n_genes(self) -> int:
        """Number of genes (biological and spike-in)."""
        return self.counts.shape[0]

    @property
    def n_cells(self) -> int:
        """Number of cells."""
        return self.counts.shape[1]

    @property
    def n_spikes(self) -> int:
        """Number of spike-in genes."""
        return int(self.is_spike.sum())

    @property
    def n_biological(self) -> int:
        """Number of biological genes."""
        return self.n_genes - self.n_spikes

    @property
    def n_batches(self) -> int:
        """Number of distinct batches."""
        return len(self.batch_ids)

    # --------------------------------------------------------------------------
    # Views
    # --------------------------------------------------------------------------

    @property
    def biological_names(self) -> list:
        """Identifiers of biological genes, in row order."""
        return [g for g, s in zip(self.gene_names, self.is_spike) if not s]

    @property
    def spike_names(self) -> list:
        """Identifiers of spike-in genes, in row order."""
        return [g for g, s in zip(self.gene_names, self.is_spike) if s]

    @property
    def biological_counts(self) -> np.ndarray:
        """Counts of biological genes, shape ``(n_biological, n_cells)``."""
        return self.counts[~self.is_spike]

    @property
    def spike_counts(self) -> np.ndarray:
        """Counts of spike-in genes, shape ``(n_spikes, n_cells)``."""
        return self.counts[self.is_spike]

    @property
    def spike_mu(self) -> np.ndarray:
        """Input molecules of spike-in genes, ordered as ``spike_counts``."""
        return np.array(
            [self.spike_input_molecules[g] for g in self.spike_names],
            dtype=np.float64,
        )

    def cells_in_batch(self, batch_id: int) -> np.ndarray:
        """Boolean mask of the cells belonging to ``batch_id``."""
        if batch_id not in self.batch_ids:
            raise KeyError(
                f"Unknown batch {batch_id}; available batches: "
                f"{list(self.batch_ids)}"
            )
        return self.batch == batch_id

    def to_dataframe(self) -> pd.DataFrame:
        """Counts as a genes x cells DataFrame."""
        return pd.DataFrame(
            np.asarray(self.counts),
            index=list(self.gene_names),
            columns=list(self.cell_names),
        )

    def __repr__(self) -> str:
        return (
            f"Dataset(n_biological={self.n_biological}, "
            f"n_spikes={self.n_spikes}, n_cells={self.n_cells}, "
            f"n_batches={self.n_batches})"
        )
