"""Interfaces of the collaborators the motion-parameter search relies on.

None of these are implemented here: the trajectory solver, the reference
projector, the observation model and the CTF model are supplied by the
surrounding refinement program.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import numpy as np
import pandas as pd


@dataclass
class MicrographData:
    """Full-resolution data of one micrograph as returned by the solver.

    Attributes
    ----------
    movie:
        ``(pc, fc, s, sh)`` complex observed spectra per particle and frame.
    movie_cc:
        ``(pc, fc, h, w)`` real correlation maps, zero shift at ``[0, 0]``.
    positions:
        ``(pc, 2)`` particle positions in pixels.
    initial_track:
        ``(pc, fc, 2)`` starting displacements.
    global_motion:
        ``(fc, 2)`` global-motion placeholder.
    """

    movie: np.ndarray
    movie_cc: np.ndarray
    positions: np.ndarray
    initial_track: np.ndarray
    global_motion: np.ndarray


@dataclass
class MicrographLoad:
    """Outcome of a micrograph load: either data or the reason it was skipped."""

    data: Optional[MicrographData] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.data is not None

    @classmethod
    def loaded(cls, data: MicrographData) -> "MicrographLoad":
        return cls(data=data)

    @classmethod
    def skipped(cls, reason: str) -> "MicrographLoad":
        return cls(reason=reason)


class TrajectorySolver(Protocol):
    def is_ready(self) -> bool:
        ...

    def damage_weights(self) -> Sequence[np.ndarray]:
        """Per-frame ``(s, sh)`` dose-damage weights."""
        ...

    def load_micrograph(
        self, table: pd.DataFrame, filters: Sequence[np.ndarray]
    ) -> MicrographLoad:
        """Load movie spectra and correlation maps computed with ``filters``."""
        ...

    def optimize(
        self,
        cc_maps: np.ndarray,
        initial_track: np.ndarray,
        sig_vel: float,
        sig_acc: float,
        sig_div: float,
        positions: np.ndarray,
        global_motion: np.ndarray,
    ) -> np.ndarray:
        """Return refined ``(pc, fc, 2)`` tracks for sigmas in solver units."""
        ...

    def normalize_sig_vel(self, sig_vel: float) -> float:
        ...

    def normalize_sig_div(self, sig_div: float) -> float:
        ...

    def normalize_sig_acc(self, sig_acc: float) -> float:
        ...


class ReferenceProjector(Protocol):
    k_out: float

    def predict(
        self, table: pd.DataFrame, particle: int, obs_model: "ObservationModel", opposite: bool
    ) -> np.ndarray:
        """Predicted ``(s, sh)`` spectrum; ``opposite`` selects the other half-set."""
        ...


class ObservationModel(Protocol):
    def pixel_size(self, optics_group: int = 0) -> float:
        ...

    def ang_to_pix(self, a: float, s: int) -> float:
        ...

    def pix_to_ang(self, p: float, s: int) -> float:
        ...


class CtfModel(Protocol):
    def image(self, table: pd.DataFrame, particle: int, s: int, angpix: float) -> np.ndarray:
        """Real ``(s, sh)`` CTF of one particle."""
        ...
