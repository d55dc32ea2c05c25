"""Objectives mapping simplex coordinates to motion-prior sigmas and scores.

The three sigmas differ by orders of magnitude in their natural range, so the
simplex works on ``x = sigma * scale`` where a unit step has a comparable
effect on every coordinate.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

from cryofit.motion.alignment_cache import AlignmentCache
from cryofit.motion.protocols import TrajectorySolver
from cryofit.types import MotionSigmas, ScoreSums

logger = logging.getLogger(__name__)

VEL_SCALE = 1000.0
DIV_SCALE = 1.0
ACC_SCALE = 10000.0

SCALES = np.array([VEL_SCALE, DIV_SCALE, ACC_SCALE])


def normalize_sigmas(solver: TrajectorySolver, sigmas: MotionSigmas) -> MotionSigmas:
    """Convert physical sigmas into the trajectory solver's internal units."""
    return MotionSigmas(
        solver.normalize_sig_vel(sigmas.s_vel),
        solver.normalize_sig_div(sigmas.s_div),
        solver.normalize_sig_acc(sigmas.s_acc),
    )


def evaluate_params(
    cache: AlignmentCache,
    solver: TrajectorySolver,
    sig_vals: Sequence[MotionSigmas],
) -> np.ndarray:
    """Cross-validated score of every candidate in ``sig_vals`` over the whole cache."""

    sig_px = [normalize_sigmas(solver, sig) for sig in sig_vals]
    sums = [ScoreSums() for _ in sig_vals]

    for i, sig in enumerate(sig_px):
        logger.debug("        evaluating: %s", sig_vals[i])
        tracks = cache.run_trial(solver, sig)
        pctot = 0
        for entry, entry_tracks in zip(cache, tracks):
            pctot += entry.particle_count
            logger.debug(
                "    micrograph %d / %d: %d particles [%d total]",
                entry.index + 1, len(cache), entry.particle_count, pctot,
            )
            sums[i] += cache.score_tracks(entry, entry_tracks)

    return np.array([s.score() for s in sums], dtype=np.float64)


class HyperparameterObjective(ABC):
    """Negated cross-validated score as a function of simplex coordinates."""

    n_params = 3

    def __init__(self, cache: AlignmentCache, solver: TrajectorySolver):
        self.cache = cache
        self.solver = solver
        self.n_evaluations = 0

    @abstractmethod
    def problem_to_motion(self, x: Sequence[float]) -> MotionSigmas:
        """Map simplex coordinates to physical sigmas."""

    def __call__(self, x: Sequence[float]) -> float:
        sigmas = self.problem_to_motion(x)
        score = float(evaluate_params(self.cache, self.solver, [sigmas])[0])
        self.n_evaluations += 1
        logger.info(
            "%d: \t %f \t %f \t %f \t %f",
            self.n_evaluations, sigmas.s_vel, sigmas.s_div, sigmas.s_acc, score,
        )
        return -score


class TwoParameterObjective(HyperparameterObjective):
    """Searches velocity and divergence; acceleration stays fixed."""

    n_params = 2

    def __init__(self, cache: AlignmentCache, solver: TrajectorySolver, s_acc: float):
        super().__init__(cache, solver)
        self.s_acc = float(s_acc)

    @staticmethod
    def motion_to_problem(s_vel: float, s_div: float) -> np.ndarray:
        return np.array([s_vel * VEL_SCALE, s_div * DIV_SCALE])

    def problem_to_motion(self, x: Sequence[float]) -> MotionSigmas:
        return MotionSigmas(abs(x[0]) / VEL_SCALE, abs(x[1]) / DIV_SCALE, self.s_acc)


class ThreeParameterObjective(HyperparameterObjective):
    """Searches velocity, divergence and acceleration.

    Acceleration keeps its sign: a non-positive value disables that prior.
    """

    n_params = 3

    @staticmethod
    def motion_to_problem(s_vel: float, s_div: float, s_acc: float) -> np.ndarray:
        return np.array([s_vel * VEL_SCALE, s_div * DIV_SCALE, s_acc * ACC_SCALE])

    def problem_to_motion(self, x: Sequence[float]) -> MotionSigmas:
        return MotionSigmas(
            abs(x[0]) / VEL_SCALE, abs(x[1]) / DIV_SCALE, x[2] / ACC_SCALE
        )
