import os
from typing import Dict, Optional

import numpy as np
import pandas as pd
import anndata as ad

from .core.dataset import Dataset, infer_spike_flags

# ==============================================================================
# Data Loader
# ==============================================================================


def load_spike_info(path: str) -> Dict[str, float]:
    """
    Read spike-in input molecules from a two-column CSV file.

    The first column holds spike-in gene identifiers and the second the
    number of input molecules. A header row is expected.
    """
    spike_df = pd.read_csv(path, comment="#")
    if spike_df.shape[1] < 2:
        raise ValueError(
            f"Spike-in table {path} must have a gene and a molecule column"
        )
    genes = spike_df.iloc[:, 0].astype(str)
    molecules = spike_df.iloc[:, 1].astype(float)
    return dict(zip(genes, molecules))


def load_batches(path: str, cell_names) -> np.ndarray:
    """
    Read per-cell batch labels from a two-column CSV file (cell, batch),
    ordered as ``cell_names``.
    """
    batch_df = pd.read_csv(path, comment="#")
    if batch_df.shape[1] < 2:
        raise ValueError(
            f"Batch table {path} must have a cell and a batch column"
        )
    labels = pd.Series(
        batch_df.iloc[:, 1].to_numpy(), index=batch_df.iloc[:, 0].astype(str)
    )
    missing = [c for c in cell_names if c not in labels.index]
    if missing:
        raise ValueError(
            f"{len(missing)} cells have no batch label, e.g. {missing[:5]}"
        )
    return labels.loc[list(cell_names)].to_numpy()


def load_dataset(
    counts_path: str,
    spike_info_path: str,
    batch_path: Optional[str] = None,
    spike_prefix: Optional[str] = None,
    layer: Optional[str] = None,
) -> Dataset:
    """
    Load raw counts and spike-in information into a ``Dataset``.

    No quality control filtering is applied: counts are used as given.

    Parameters
    ----------
    counts_path : str
        CSV file with genes as rows (first column holds gene identifiers)
        and cells as columns, or an ``.h5ad`` file with cells as
        observations.
    spike_info_path : str
        Two-column CSV file mapping spike-in genes to input molecules.
    batch_path : str, optional
        Two-column CSV file mapping cells to integer batch labels.
    spike_prefix : str, optional
        Flag spike-ins by gene name prefix (e.g. ``"ERCC-"``) instead of by
        membership in the spike-in table. The two must still agree.
    layer : str, optional
        AnnData layer holding raw counts (``.h5ad`` input only).

    Returns
    -------
    Dataset
    """
    print(f"Loading data from {counts_path}...")
    molecules = load_spike_info(spike_info_path)

    _, extension = os.path.splitext(counts_path)
    if extension == ".h5ad":
        adata = ad.read_h5ad(counts_path)
        gene_names = [str(g) for g in adata.var_names]
        batch_key = None
        if batch_path is not None:
            batch_key = "batch"
            adata.obs[batch_key] = load_batches(
                batch_path, [str(c) for c in adata.obs_names]
            )
        dataset = Dataset.from_anndata(
            adata,
            molecules,
            is_spike=_spike_flags(gene_names, molecules, spike_prefix),
            batch_key=batch_key,
            layer=layer,
        )
    elif extension == ".csv":
        counts_df = pd.read_csv(counts_path, comment="#", index_col=0)
        gene_names = [str(g) for g in counts_df.index]
        batch = None
        if batch_path is not None:
            batch = load_batches(
                batch_path, [str(c) for c in counts_df.columns]
            )
        dataset = Dataset.from_dataframe(
            counts_df,
            molecules,
            is_spike=_spike_flags(gene_names, molecules, spike_prefix),
            batch=batch,
        )
    else:
        raise ValueError(
            f"Unsupported file format: {extension}. Please use .csv or .h5ad"
        )

    print(f"Loaded {dataset}")
    return dataset


def _spike_flags(gene_names, molecules, spike_prefix):
    """Spike-in flags by name prefix, or by membership in the table."""
    if spike_prefix is not None:
        return infer_spike_flags(gene_names, spike_prefix)
    return np.array([g in molecules for g in gene_names])
