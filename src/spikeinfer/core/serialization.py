"""Plain-text persistence of MCMC draws.

Each parameter block is stored in its own CSV file named
``chain_<block>_<run_name>.csv``. The header row holds the entity identifiers
(gene names for ``mu`` and ``delta``, cell names for ``phi``, ``s`` and
``nu``, batch labels for ``theta``) and every following row is one retained
draw. Floats are written with ``repr`` so that reading them back with
``float_precision="round_trip"`` recovers the exact values.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple, Union

import numpy as np
import pandas as pd

# Parameter blocks stored on disk, in column-file order
PERSISTED_BLOCKS = ("mu", "delta", "phi", "s", "nu", "theta")

PathLike = Union[str, Path]


def chain_file(directory: PathLike, block: str, run_name: str) -> Path:
    """Path of the CSV file holding the draws of ``block``."""
    return Path(directory) / f"chain_{block}_{run_name}.csv"


# ==============================================================================
# Writing
# ==============================================================================


class ChainWriter:
    """Stream retained draws to one CSV file per parameter block.

    Parameters
    ----------
    directory : str or Path
        Output directory, created if missing.
    run_name : str
        Suffix identifying the run in the file names.
    entity_names : Mapping[str, Sequence[str]]
        Column identifiers of every block in ``PERSISTED_BLOCKS``.

    Notes
    -----
    Files are opened on construction, so an existing run with the same name
    in ``directory`` is overwritten. Use as a context manager or call
    :meth:`close` when done.
    """

    def __init__(
        self,
        directory: PathLike,
        run_name: str,
        entity_names: Mapping[str, Sequence[str]],
    ):
        missing = [b for b in PERSISTED_BLOCKS if b not in entity_names]
        if missing:
            raise KeyError(f"No entity names given for blocks {missing}")

        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.run_name = run_name
        self.entity_names = {
            b: [str(e) for e in entity_names[b]] for b in PERSISTED_BLOCKS
        }
        self.n_written = 0

        self._handles = {}
        self._writers = {}
        for block in PERSISTED_BLOCKS:
            handle = open(
                chain_file(self.directory, block, run_name),
                "w",
                newline="",
                encoding="utf-8",
            )
            writer = csv.writer(handle)
            writer.writerow(self.entity_names[block])
            self._handles[block] = handle
            self._writers[block] = writer

    # --------------------------------------------------------------------------

    def write(self, draw: Mapping[str, np.ndarray]) -> None:
        """Append one draw (one value per entity of every block)."""
        if not self._writers:
            raise ValueError("Cannot write to a closed ChainWriter")
        for block in PERSISTED_BLOCKS:
            values = np.asarray(draw[block], dtype=np.float64).reshape(-1)
            if values.size != len(self.entity_names[block]):
                raise ValueError(
                    f"Draw of '{block}' has {values.size} values, expected "
                    f"{len(self.entity_names[block])}"
                )
            self._writers[block].writerow([repr(float(v)) for v in values])
        self.n_written += 1

    # --------------------------------------------------------------------------

    def close(self) -> None:
        """Flush and close every file. Safe to call more than once."""
        for handle in self._handles.values():
            handle.close()
        self._handles = {}
        self._writers = {}

    def __enter__(self) -> "ChainWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def write_draws(
    directory: PathLike,
    run_name: str,
    draws: Mapping[str, np.ndarray],
    entity_names: Mapping[str, Sequence[str]],
) -> None:
    """Write in-memory draws (draws x entities per block) in one go."""
    with ChainWriter(directory, run_name, entity_names) as writer:
        n_draws = np.asarray(draws[PERSISTED_BLOCKS[0]]).shape[0]
        for i in range(n_draws):
            writer.write({b: np.asarray(draws[b])[i] for b in PERSISTED_BLOCKS})


# ==============================================================================
# Reading
# ==============================================================================


def read_persisted_draws(
    directory: PathLike, run_name: str
) -> Tuple[Dict[str, np.ndarray], Dict[str, List[str]]]:
    """Read the draws written by :class:`ChainWriter`.

    Parameters
    ----------
    directory : str or Path
        Directory holding the ``chain_<block>_<run_name>.csv`` files.
    run_name : str
        Run suffix used when writing.

    Returns
    -------
    draws : Dict[str, np.ndarray]
        ``float64`` array of shape ``(n_draws, n_entities)`` per block.
    entity_names : Dict[str, List[str]]
        Column identifiers per block.

    Raises
    ------
    FileNotFoundError
        If any block file is missing.
    ValueError
        If the blocks hold different numbers of draws.
    """
    draws = {}
    entity_names = {}
    for block in PERSISTED_BLOCKS:
        path = chain_file(directory, block, run_name)
        if not path.exists():
            raise FileNotFoundError(
                f"Missing persisted draws for '{block}': {path}"
            )
        df = pd.read_csv(
            path,
            float_precision="round_trip",
            dtype=np.float64,
            encoding="utf-8",
        )
        draws[block] = np.ascontiguousarray(df.to_numpy(dtype=np.float64))
        entity_names[block] = [str(c) for c in df.columns]

    n_draws = {b: d.shape[0] for b, d in draws.items()}
    if len(set(n_draws.values())) > 1:
        raise ValueError(
            f"Persisted blocks hold different numbers of draws: {n_draws}"
        )
    return draws, entity_names
