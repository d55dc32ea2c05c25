"""Estimation of motion-prior hyperparameters on a random subset of micrographs."""

from __future__ import annotations

import gc
import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from cryofit.config.models import MotionParamOptions
from cryofit.config.validation import ConfigurationError, ensure_exclusive
from cryofit.fitting.nelder_mead import nelder_mead
from cryofit.io.data_loading import MICROGRAPH_COLUMN
from cryofit.motion.alignment_cache import AlignmentCache
from cryofit.motion.objective import (
    SCALES,
    ThreeParameterObjective,
    TwoParameterObjective,
    normalize_sigmas,
)
from cryofit.motion.protocols import ObservationModel, ReferenceProjector, TrajectorySolver
from cryofit.types import MotionParamResult, MotionSigmas

logger = logging.getLogger(__name__)

DISABLED_SIGMA = -1.0


def select_micrographs(
    particle_counts: Sequence[int],
    min_particles: int,
    rng: np.random.Generator,
) -> tuple[list[int], int]:
    """Visit micrographs in a random order until ``min_particles`` are collected.

    Micrographs with fewer than two particles are skipped since motion cannot
    be estimated on a single particle.  Returns the selected indices in
    visiting order and the number of particles they hold.
    """

    keys = rng.random(len(particle_counts))
    order = np.argsort(keys, kind="stable")

    selected: list[int] = []
    total = 0
    for m in order:
        pcm = int(particle_counts[m])
        if pcm < 2:
            continue
        selected.append(int(m))
        total += pcm
        if total >= min_particles:
            break
    return selected, total


def round_to_resolution(sigmas: MotionSigmas, conv: float) -> MotionSigmas:
    """Round every sigma to ``conv / 2`` in simplex coordinates.

    ``conv / 2`` is the smallest radius of the simplex at convergence, so
    finer digits carry no information.
    """

    x = np.asarray(sigmas.as_tuple()) * SCALES
    half = 0.5 * conv
    rounded = [half * int(2.0 * xi / conv + 0.5) / scale for xi, scale in zip(x, SCALES)]
    return MotionSigmas(*rounded)


class MotionParamEstimator:
    """Drive the alignment cache and the simplex search.

    ``init`` validates the options and collaborators and picks the
    micrographs; ``run`` performs the search and returns the rounded
    hyperparameters.
    """

    def __init__(self, options: MotionParamOptions | None = None):
        self.options = options or MotionParamOptions()
        self.ready = False
        self.selected: list[int] = []
        self.tables: list[pd.DataFrame] = []

    def anything_to_do(self) -> bool:
        return self.options.estimate_two or self.options.estimate_three

    def _resolve_frequencies(self, obs_model: ObservationModel, s: int) -> None:
        opts = self.options

        ensure_exclusive(
            opts.k_cutoff, opts.k_cutoff_angst,
            what="Cutoff frequency", flags="k_cutoff or k_cutoff_angst",
        )
        ensure_exclusive(
            opts.k_eval, opts.k_eval_angst,
            what="Evaluation frequency", flags="k_eval or k_eval_angst",
        )

        k_cutoff, k_cutoff_angst = opts.k_cutoff, opts.k_cutoff_angst
        if k_cutoff_angst > 0.0 and k_cutoff < 0.0:
            k_cutoff = obs_model.ang_to_pix(k_cutoff_angst, s)
        elif k_cutoff > 0.0 and k_cutoff_angst < 0.0:
            k_cutoff_angst = obs_model.pix_to_ang(k_cutoff, s)

        if self.anything_to_do() and k_cutoff < 0.0:
            raise ConfigurationError(
                "Parameter estimation requires a freq. cutoff (k_cutoff or k_cutoff_angst)."
            )

        if opts.k_eval < 0.0 and opts.k_eval_angst > 0.0:
            k_eval = obs_model.ang_to_pix(opts.k_eval_angst, s)
            k_eval_angst = opts.k_eval_angst
        elif opts.k_eval > 0.0 and opts.k_eval_angst < 0.0:
            k_eval = opts.k_eval
            k_eval_angst = obs_model.pix_to_ang(opts.k_eval, s)
        else:
            k_eval, k_eval_angst = k_cutoff, k_cutoff_angst

        self.k_cutoff, self.k_cutoff_angst = float(k_cutoff), float(k_cutoff_angst)
        self.k_eval, self.k_eval_angst = float(k_eval), float(k_eval_angst)

    def init(
        self,
        tables: Sequence[pd.DataFrame],
        solver: TrajectorySolver,
        reference: ReferenceProjector,
        obs_model: ObservationModel,
        s: int,
        fc: int,
        *,
        n_threads: int = 1,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        opts = self.options

        if solver is None or not solver.is_ready():
            raise ConfigurationError(
                "MotionParamEstimator initialized before the trajectory solver."
            )
        if reference is None:
            raise ConfigurationError("MotionParamEstimator requires a reference projector.")
        if obs_model is None:
            raise ConfigurationError("MotionParamEstimator requires an observation model.")
        if opts.estimate_two and opts.estimate_three:
            raise ConfigurationError(
                "Only 2 or 3 parameters can be estimated (estimate_two or estimate_three), not both."
            )

        self.solver = solver
        self.reference = reference
        self.obs_model = obs_model
        self.s = int(s)
        self.fc = int(fc)
        self.n_threads = max(1, int(n_threads))
        self.k_out = float(reference.k_out)

        self._resolve_frequencies(obs_model, self.s)

        logger.info(
            " + maximum frequency to consider for alignment: %g A (%g px)",
            self.k_cutoff_angst, self.k_cutoff,
        )
        logger.info(
            " + frequency range to consider for evaluation:  %g - %g A (%g - %g px)",
            self.k_eval_angst, obs_model.pix_to_ang(self.k_out, self.s),
            self.k_eval, self.k_out,
        )

        self.rng = rng if rng is not None else np.random.default_rng(opts.seed)
        counts = [len(table) for table in tables]
        self.selected, total = select_micrographs(counts, opts.min_particles, self.rng)
        self.tables = [tables[m] for m in self.selected]

        logger.info(" + micrographs randomly selected for parameter optimization:")
        for m in self.selected:
            table = tables[m]
            name = table[MICROGRAPH_COLUMN].iloc[0] if MICROGRAPH_COLUMN in table else ""
            logger.info("        %d: %s", m, name)

        if total >= opts.min_particles:
            logger.info(" + %d particles found in %d micrographs", total, len(self.selected))
        else:
            logger.warning(
                "   - Warning: this dataset does not contain %d particles (min_particles) "
                "in micrographs with at least 2 particles",
                opts.min_particles,
            )

        self.ready = True

    def run(self) -> Optional[MotionParamResult]:
        if not self.ready:
            raise ConfigurationError("MotionParamEstimator.run: MotionParamEstimator not initialized.")
        if not self.anything_to_do():
            return None

        opts = self.options
        cache = AlignmentCache(
            self.s, self.fc, self.k_eval + 2.0, self.k_out,
            max_range=opts.max_range, n_threads=self.n_threads,
        )
        cache.build(
            self.tables, self.solver, self.reference, self.obs_model, self.k_cutoff,
            normalize_sigmas(self.solver, MotionSigmas(opts.s_vel_0, opts.s_div_0, opts.s_acc_0)),
        )
        if not len(cache):
            logger.warning("no micrograph could be loaded; all candidate scores will be zero")

        logger.info("\nit: \t s_vel: \t s_div: \t s_acc: \t fsc:\n")

        if opts.estimate_two:
            objective = TwoParameterObjective(cache, self.solver, opts.s_acc_0)
            x0 = objective.motion_to_problem(opts.s_vel_0, opts.s_div_0)
        else:
            objective = ThreeParameterObjective(cache, self.solver)
            x0 = objective.motion_to_problem(opts.s_vel_0, opts.s_div_0, opts.s_acc_0)

        res = nelder_mead(objective, x0, opts.initial_step, opts.conv, opts.max_iters)
        raw = objective.problem_to_motion(res.x)
        rounded = round_to_resolution(raw, opts.conv)

        if opts.estimate_two:
            s_acc = opts.s_acc_0
        elif raw.s_acc <= 0.0:
            s_acc = DISABLED_SIGMA
        else:
            s_acc = rounded.s_acc

        result = MotionParamResult(
            sigmas=MotionSigmas(rounded.s_vel, rounded.s_div, s_acc),
            raw=raw,
            score=-res.fun,
            n_params=objective.n_params,
            n_evaluations=objective.n_evaluations,
        )
        logger.info("\ngood parameters: %s\n", result.command_line())

        del objective, cache
        gc.collect()
        return result
