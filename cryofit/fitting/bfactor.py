"""Recursive grid-refinement fit of B-factors and scale factors.

The B-factor ``B`` models an exponential decay ``exp(-B r^2 / 4)`` of the
amplitude ratio between observed and predicted spectra at radius ``r``.  For
every candidate ``B`` the optimal linear scale ``a`` has a closed form, so the
search only scans ``B`` on a grid and narrows the bracket around the best
candidate ``depth`` times.  After the full recursion the bracket width is
``(B1 - B0) * (2 / (steps - 1)) ** depth``.

Two residuals are available:

``"radial"``
    Works on :class:`~cryofit.types.RadialProfile` sums and minimises the
    linearised residual ``sum_r t_r a^2 b_r^2 - 2 a b_r s_r``.  This is the
    default.
``"spectral"``
    Works on the full 2-D half-spectra and minimises
    ``sum w |obs - a b_r pred|^2``.  It is slower but does not rely on radial
    symmetry.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from numba import njit, prange

from cryofit import diagnostics
from cryofit.config.models import BFactorOptions
from cryofit.config.validation import ConfigurationError
from cryofit.fitting.radial import accumulate_profiles, particle_profiles
from cryofit.io.data_loading import output_root, write_fit_table
from cryofit.motion.protocols import CtfModel, ObservationModel, ReferenceProjector
from cryofit.types import FitResult, RadialProfile
from cryofit.utils.filters import hollow_weight, radius_map

logger = logging.getLogger(__name__)

RESIDUAL_STRATEGIES = ("radial", "spectral")

RADIAL_EPS = 1e-10
SPECTRAL_EPS = 1e-20

BFACTOR_COLUMN = "rlnCtfBfactor"
SCALE_COLUMN = "rlnCtfScalefactor"


@njit
def _search_radial(t_rad, s_rad, b0, b1, min_scale, steps, depth):
    sh = t_rad.shape[0]
    brackets = np.empty((depth + 1, 2), dtype=np.float64)
    sig = np.empty(sh, dtype=np.float64)
    best_b = b0
    best_a = 1.0

    for level in range(depth + 1):
        brackets[level, 0] = b0
        brackets[level, 1] = b1
        min_err = np.inf
        best_b = b0
        best_a = 1.0

        for st in range(steps):
            b = b0 + st * (b1 - b0) / (steps - 1)

            num = 0.0
            denom = 0.0
            for r in range(sh):
                sig[r] = math.exp(-b * r * r / 4.0)
                num += s_rad[r] * sig[r]
                denom += t_rad[r] * sig[r] * sig[r]

            if denom > RADIAL_EPS:
                a = num / denom
            else:
                a = num / RADIAL_EPS
            if a < min_scale:
                a = min_scale

            # sum_r t_r (a b_r - s_r / t_r)^2 without the B-independent s_r^2 / t_r
            err = 0.0
            for r in range(sh):
                err += t_rad[r] * a * a * sig[r] * sig[r] - 2.0 * a * sig[r] * s_rad[r]

            if err < min_err:
                min_err = err
                best_b = b
                best_a = a

        if level < depth:
            h = (b1 - b0) / (steps - 1.0)
            next_b0 = best_b - h
            next_b1 = best_b + h
            if next_b0 < b0:
                next_b0 = b0
            if next_b1 > b1:
                next_b1 = b1
            b0 = next_b0
            b1 = next_b1

    return best_b, best_a, brackets


@njit
def _search_spectral(obs, pred, weight, radius, b0, b1, min_scale, steps, depth):
    s, sh = obs.shape
    brackets = np.empty((depth + 1, 2), dtype=np.float64)
    sig = np.empty(sh, dtype=np.float64)
    best_b = b0
    best_a = 1.0

    for level in range(depth + 1):
        brackets[level, 0] = b0
        brackets[level, 1] = b1
        min_err = np.inf
        best_b = b0
        best_a = 1.0

        for st in range(steps):
            b = b0 + st * (b1 - b0) / (steps - 1)
            for r in range(sh):
                sig[r] = math.exp(-b * r * r / 4.0)

            num = 0.0
            denom = 0.0
            for y in range(s):
                for x in range(sh):
                    r = radius[y, x]
                    if r >= sh:
                        continue
                    vx = pred[y, x]
                    vy = obs[y, x]
                    vw = weight[y, x]
                    vb = sig[r]
                    num += vw * vb * (vx.real * vy.real + vx.imag * vy.imag)
                    denom += vw * vb * vb * (vx.real * vx.real + vx.imag * vx.imag)

            if denom > SPECTRAL_EPS:
                a = num / denom
            else:
                a = num / SPECTRAL_EPS
            if a < min_scale:
                a = min_scale

            err = 0.0
            for y in range(s):
                for x in range(sh):
                    r = radius[y, x]
                    if r >= sh:
                        continue
                    d = obs[y, x] - a * sig[r] * pred[y, x]
                    err += weight[y, x] * (d.real * d.real + d.imag * d.imag)

            if err < min_err:
                min_err = err
                best_b = b
                best_a = a

        if level < depth:
            h = (b1 - b0) / (steps - 1.0)
            next_b0 = best_b - h
            next_b1 = best_b + h
            if next_b0 < b0:
                next_b0 = b0
            if next_b1 > b1:
                next_b1 = b1
            b0 = next_b0
            b1 = next_b1

    return best_b, best_a, brackets


@njit(parallel=True)
def _search_radial_many(t_rads, s_rads, b0, b1, min_scale, steps, depth):
    pc = t_rads.shape[0]
    out = np.empty((pc, 2), dtype=np.float64)
    for p in prange(pc):
        b, a, _ = _search_radial(t_rads[p], s_rads[p], b0, b1, min_scale, steps, depth)
        out[p, 0] = b
        out[p, 1] = a
    return out


@njit(parallel=True)
def _search_spectral_many(obs, pred, weight, radius, b0, b1, min_scale, steps, depth):
    pc = obs.shape[0]
    out = np.empty((pc, 2), dtype=np.float64)
    for p in prange(pc):
        b, a, _ = _search_spectral(
            obs[p], pred[p], weight, radius, b0, b1, min_scale, steps, depth
        )
        out[p, 0] = b
        out[p, 1] = a
    return out


def _check_grid(b0: float, b1: float, steps: int, depth: int) -> None:
    if steps < 2:
        raise ValueError("steps must be at least 2")
    if depth < 0:
        raise ValueError("depth must be non-negative")
    if b1 < b0:
        raise ValueError(f"invalid B-factor bounds [{b0}, {b1}]")


def search_radial(
    profile: RadialProfile,
    b0: float,
    b1: float,
    min_scale: float,
    steps: int = 20,
    depth: int = 5,
) -> FitResult:
    """Fit ``(B, scale)`` to a radial profile; ``B`` is in internal pixel units."""

    _check_grid(b0, b1, steps, depth)
    b, a, brackets = _search_radial(
        profile.t_rad, profile.s_rad, float(b0), float(b1), float(min_scale),
        int(steps), int(depth),
    )
    return FitResult(float(b), float(a), tuple(map(tuple, brackets.tolist())))


def search_spectral(
    obs: np.ndarray,
    pred: np.ndarray,
    weight: np.ndarray,
    b0: float,
    b1: float,
    min_scale: float,
    steps: int = 20,
    depth: int = 5,
) -> FitResult:
    """Fit ``(B, scale)`` directly on a pair of 2-D half-spectra."""

    _check_grid(b0, b1, steps, depth)
    obs = np.ascontiguousarray(obs, dtype=np.complex128)
    pred = np.ascontiguousarray(pred, dtype=np.complex128)
    weight = np.ascontiguousarray(weight, dtype=np.float64)
    b, a, brackets = _search_spectral(
        obs, pred, weight, radius_map(obs.shape[0]),
        float(b0), float(b1), float(min_scale), int(steps), int(depth),
    )
    return FitResult(float(b), float(a), tuple(map(tuple, brackets.tolist())))


def fit_particle_profiles(
    profiles: Sequence[RadialProfile],
    b0: float,
    b1: float,
    min_scale: float,
    steps: int = 20,
    depth: int = 5,
) -> list[FitResult]:
    """Run :func:`search_radial` on every profile, in parallel over particles."""

    _check_grid(b0, b1, steps, depth)
    if not profiles:
        return []
    t_rads = np.stack([p.t_rad for p in profiles])
    s_rads = np.stack([p.s_rad for p in profiles])
    out = _search_radial_many(
        t_rads, s_rads, float(b0), float(b1), float(min_scale), int(steps), int(depth)
    )
    return [FitResult(float(b), float(a)) for b, a in out]


def fit_particle_spectra(
    obs: np.ndarray,
    pred: np.ndarray,
    weight: np.ndarray,
    b0: float,
    b1: float,
    min_scale: float,
    steps: int = 20,
    depth: int = 5,
) -> list[FitResult]:
    """Run :func:`search_spectral` on a ``(pc, s, sh)`` stack, in parallel."""

    _check_grid(b0, b1, steps, depth)
    obs = np.ascontiguousarray(obs, dtype=np.complex128)
    pred = np.ascontiguousarray(pred, dtype=np.complex128)
    weight = np.ascontiguousarray(weight, dtype=np.float64)
    out = _search_spectral_many(
        obs, pred, weight, radius_map(obs.shape[1]),
        float(b0), float(b1), float(min_scale), int(steps), int(depth),
    )
    return [FitResult(float(b), float(a)) for b, a in out]


class BFactorRefiner:
    """Fit B-factors and scale factors for the particles of one micrograph."""

    def __init__(self, options: BFactorOptions | None = None):
        self.options = options or BFactorOptions()
        self.ready = False

    def init(
        self,
        s: int,
        reference: ReferenceProjector,
        obs_model: ObservationModel,
        *,
        n_threads: int = 1,
        output_dir: str | Path = "output",
        ctf_model: Optional[CtfModel] = None,
        diagnostics: bool = False,
        debug: bool = False,
    ) -> None:
        opts = self.options
        if opts.residual not in RESIDUAL_STRATEGIES:
            raise ConfigurationError(
                f"unknown residual {opts.residual!r}; expected one of {RESIDUAL_STRATEGIES}"
            )
        if opts.per_micrograph and opts.residual != "radial":
            raise ConfigurationError(
                "per-micrograph B-factors can only be fitted with the radial residual"
            )

        self.s = int(s)
        self.sh = self.s // 2 + 1
        self.n_threads = max(1, int(n_threads))
        self.output_dir = Path(output_dir)
        self.ctf_model = ctf_model
        self.diagnostics = diagnostics
        self.debug = debug

        self.angpix = float(obs_model.pixel_size(0))
        kmin_px = obs_model.ang_to_pix(opts.kmin, self.s)
        self.freq_weight = hollow_weight(self.s, kmin_px, reference.k_out)
        self.ready = True

    def _require_ready(self, what: str) -> None:
        if not self.ready:
            raise ConfigurationError(f"BFactorRefiner.{what}: BFactorRefiner not initialized.")

    @property
    def box_angstrom(self) -> float:
        return self.s * self.angpix

    def to_pixel_units(self, bfactor: float) -> float:
        return bfactor / self.box_angstrom ** 2

    def to_physical(self, fit: FitResult) -> FitResult:
        """Map an internal fit to a physical B-factor relative to ``min_B``."""
        return FitResult(self.box_angstrom ** 2 * fit.bfactor - self.options.min_B, fit.scale)

    def _ctf_weighted(self, table: pd.DataFrame, pred: np.ndarray) -> np.ndarray:
        pred = np.asarray(pred, dtype=np.complex128)
        if self.ctf_model is None:
            return pred
        ctf = np.stack([
            np.asarray(self.ctf_model.image(table, p, self.s, self.angpix), dtype=np.float64)
            for p in range(len(table))
        ])
        return ctf * pred

    def process_micrograph(
        self,
        table: pd.DataFrame,
        obs: np.ndarray,
        pred: np.ndarray,
    ) -> pd.DataFrame:
        """Fit every particle of ``table`` and return an annotated copy.

        ``obs`` and ``pred`` are ``(pc, s, sh)`` stacks aligned with the rows of
        ``table``.
        """

        self._require_ready("process_micrograph")

        opts = self.options
        pc = len(table)
        if len(obs) != pc or len(pred) != pc:
            raise ValueError(
                f"table has {pc} particles but {len(obs)} observations and "
                f"{len(pred)} predictions were given"
            )

        pred = self._ctf_weighted(table, pred)
        min_b_px = self.to_pixel_units(opts.min_B)
        max_b_px = self.to_pixel_units(opts.max_B)
        root = output_root(table, self.output_dir)
        result = table.copy()

        if opts.per_micrograph:
            profile = accumulate_profiles(obs, pred, self.freq_weight, self.n_threads)
            fit = search_radial(
                profile, min_b_px, max_b_px, opts.min_scale, opts.steps, opts.depth
            )
            physical = self.to_physical(fit)
            result[BFACTOR_COLUMN] = physical.bfactor
            result[SCALE_COLUMN] = physical.scale
            logger.debug("micrograph fit: B = %.4f, scale = %.4f", *physical)
            diagnostics.write_micrograph_fit_plot(
                f"{root}_bfactor_fit.png", profile, physical,
                min_B=opts.min_B, box_angstrom=self.box_angstrom,
            )
        else:
            if opts.residual == "radial":
                profiles = particle_profiles(obs, pred, self.freq_weight)
                fits = fit_particle_profiles(
                    profiles, min_b_px, max_b_px, opts.min_scale, opts.steps, opts.depth
                )
            else:
                profiles = None
                fits = fit_particle_spectra(
                    obs, pred, self.freq_weight,
                    min_b_px, max_b_px, opts.min_scale, opts.steps, opts.depth,
                )

            physical = [self.to_physical(fit) for fit in fits]
            result[BFACTOR_COLUMN] = [fit.bfactor for fit in physical]
            result[SCALE_COLUMN] = [fit.scale for fit in physical]

            if self.debug:
                for p, fit in enumerate(fits):
                    logger.debug(
                        "%d: %.6f \t %.6f", p, self.box_angstrom ** 2 * fit.bfactor, fit.scale
                    )

            diagnostics.write_particle_scatter_plot(
                f"{root}_bfactor_fit.png", result,
                min_B=opts.min_B, max_B=opts.max_B,
            )
            if self.diagnostics and profiles is not None:
                diagnostics.write_particle_diag_pdf(
                    f"{root}_bfactors_per-particle.pdf", profiles, fits
                )

        write_fit_table(result, f"{root}_bfactor_fit.csv")
        return result

    def is_finished(self, table: pd.DataFrame) -> bool:
        self._require_ready("is_finished")
        return Path(f"{output_root(table, self.output_dir)}_bfactor_fit.csv").exists()
