"""Typed records shared by the B-factor fit and the motion-parameter search."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class RadialProfile:
    """Per-radius weighted sums reduced from complex half-spectra.

    ``t_rad[r]`` holds the weighted predicted self-energy and ``s_rad[r]`` the
    weighted cross term between observation and prediction.
    """

    t_rad: np.ndarray
    s_rad: np.ndarray

    def __post_init__(self) -> None:
        t_rad = np.array(self.t_rad, dtype=np.float64)
        s_rad = np.array(self.s_rad, dtype=np.float64)
        if t_rad.ndim != 1 or t_rad.shape != s_rad.shape:
            raise ValueError("t_rad and s_rad must be 1-D arrays of equal length")
        t_rad.setflags(write=False)
        s_rad.setflags(write=False)
        object.__setattr__(self, "t_rad", t_rad)
        object.__setattr__(self, "s_rad", s_rad)

    @property
    def sh(self) -> int:
        return int(self.t_rad.shape[0])

    def __add__(self, other: "RadialProfile") -> "RadialProfile":
        return RadialProfile(self.t_rad + other.t_rad, self.s_rad + other.s_rad)


@dataclass(frozen=True)
class FitResult:
    """Fitted (B-factor, scale) pair.

    ``brackets`` lists the search intervals visited from the outermost to the
    innermost level; it is empty for converted (physical) results.
    """

    bfactor: float
    scale: float
    brackets: tuple[tuple[float, float], ...] = field(default=(), compare=False)

    def __iter__(self):
        yield self.bfactor
        yield self.scale


@dataclass(frozen=True)
class MotionSigmas:
    """Physical motion-prior standard deviations."""

    s_vel: float
    s_div: float
    s_acc: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.s_vel, self.s_div, self.s_acc)


@dataclass
class ScoreSums:
    """Running sums of the cross-validated correlation score."""

    cross: float = 0.0
    self1: float = 0.0
    self2: float = 0.0

    def __iadd__(self, other: "ScoreSums") -> "ScoreSums":
        self.cross += other.cross
        self.self1 += other.self1
        self.self2 += other.self2
        return self

    def __add__(self, other: "ScoreSums") -> "ScoreSums":
        return ScoreSums(
            self.cross + other.cross,
            self.self1 + other.self1,
            self.self2 + other.self2,
        )

    def score(self) -> float:
        """Return ``cross / sqrt(self1 * self2)``, or 0 when that is undefined."""
        wg = self.self1 * self.self2
        if wg > 0.0:
            return self.cross / math.sqrt(wg)
        return 0.0


@dataclass(frozen=True)
class MotionParamResult:
    """Outcome of a hyperparameter search, rounded to the search resolution."""

    sigmas: MotionSigmas
    raw: MotionSigmas
    score: float
    n_params: int
    n_evaluations: int = 0

    def command_line(self) -> str:
        return (
            f"--s_vel {self.sigmas.s_vel:.6f} "
            f"--s_div {self.sigmas.s_div:.6f} "
            f"--s_acc {self.sigmas.s_acc:.6f}"
        )
