"""Loading spectra bundles and persisting per-micrograph fit tables."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

MICROGRAPH_COLUMN = "rlnMicrographName"
COORD_X_COLUMN = "rlnCoordinateX"
COORD_Y_COLUMN = "rlnCoordinateY"


@dataclass
class SpectraBundle:
    """Particle table plus the aligned ``(pc, s, sh)`` spectra stacks."""

    table: pd.DataFrame
    obs: np.ndarray
    pred: np.ndarray
    ctf: Optional[np.ndarray] = None

    @property
    def box_size(self) -> int:
        return int(self.obs.shape[1])


def load_spectra_bundle(path: str | Path) -> SpectraBundle:
    """Read an ``.npz`` file holding ``obs`` and ``pred`` half-spectra stacks.

    Optional arrays: ``ctf`` (real, same shape), ``coord_x``/``coord_y``
    (particle coordinates) and ``micrograph`` (one name per particle).
    """

    with np.load(path, allow_pickle=False) as data:
        if "obs" not in data or "pred" not in data:
            raise KeyError(f"{path} must contain 'obs' and 'pred' arrays")
        obs = np.asarray(data["obs"])
        pred = np.asarray(data["pred"])
        ctf = np.asarray(data["ctf"], dtype=np.float64) if "ctf" in data else None
        pc = obs.shape[0]
        columns = {
            MICROGRAPH_COLUMN: (
                data["micrograph"].astype(str) if "micrograph" in data
                else np.full(pc, Path(path).stem)
            ),
            COORD_X_COLUMN: data["coord_x"] if "coord_x" in data else np.zeros(pc),
            COORD_Y_COLUMN: data["coord_y"] if "coord_y" in data else np.zeros(pc),
        }

    if obs.ndim != 3 or obs.shape != pred.shape:
        raise ValueError(
            f"obs and pred must be matching (pc, s, sh) stacks, got {obs.shape} and {pred.shape}"
        )
    if ctf is not None and ctf.shape != obs.shape:
        raise ValueError(f"ctf shape {ctf.shape} does not match spectra {obs.shape}")
    return SpectraBundle(pd.DataFrame(columns), obs, pred, ctf)


def micrograph_groups(table: pd.DataFrame) -> list[tuple[str, np.ndarray]]:
    """Return ``(name, row_positions)`` per micrograph in order of first appearance."""

    if MICROGRAPH_COLUMN not in table:
        return [("micrograph", np.arange(len(table)))]
    codes, names = pd.factorize(table[MICROGRAPH_COLUMN])
    return [(str(name), np.flatnonzero(codes == i)) for i, name in enumerate(names)]


def split_by_micrograph(table: pd.DataFrame) -> list[pd.DataFrame]:
    """Split a particle table into one table per micrograph."""

    return [
        table.iloc[rows].reset_index(drop=True)
        for _, rows in micrograph_groups(table)
    ]


def output_root(table: pd.DataFrame, output_dir: str | Path) -> str:
    """Output file prefix for the micrograph the particles of *table* belong to.

    The micrograph's relative directory is kept below *output_dir*, so
    micrographs sharing a file name in different directories get distinct
    prefixes. Root anchors and ``..`` components are dropped.
    """

    if not (MICROGRAPH_COLUMN in table and len(table)):
        return str(Path(output_dir) / "micrograph")
    micrograph = Path(str(table[MICROGRAPH_COLUMN].iloc[0]))
    parts = [
        part for part in micrograph.with_suffix("").parts
        if part not in (micrograph.anchor, "..", ".")
    ]
    return str(Path(output_dir).joinpath(*parts))


def write_fit_table(table: pd.DataFrame, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, index=False)
    return path
