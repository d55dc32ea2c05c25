"""Memory-bounded cache of the data needed to re-align particles repeatedly.

Loading movies and computing correlation maps dominates the cost of a motion
estimate.  The cache does that once for a subset of micrographs and keeps
only what re-running the trajectory solver and scoring its tracks requires:
correlation maps cropped to the admissible displacement window, and observed
and predicted spectra reduced to ``complex64`` samples of the evaluation band.
"""

from __future__ import annotations

import gc
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from numba import njit, prange

from cryofit.motion.protocols import (
    MicrographData,
    ObservationModel,
    ReferenceProjector,
    TrajectorySolver,
)
from cryofit.types import MotionSigmas, ScoreSums
from cryofit.utils.filters import band_indices, band_limit, crop_corner_2d

logger = logging.getLogger(__name__)


@njit(parallel=True)
def _score_tracks(obs, pred, damage, coords, tracks, s):
    """Per-particle (cross, self1, self2) of the aligned frame sum against the prediction."""
    pc, fc, n = obs.shape
    out = np.zeros((pc, 3), dtype=np.float64)
    for p in prange(pc):
        for i in range(n):
            zr = 0.0
            zi = 0.0
            for f in range(fc):
                dotp = 2.0 * math.pi * (
                    coords[i, 0] * tracks[p, f, 0] + coords[i, 1] * tracks[p, f, 1]
                ) / s
                a = math.cos(dotp)
                b = math.sin(dotp)
                c = obs[p, f, i].real
                d = obs[p, f, i].imag
                dmg = damage[f, i]
                zr += dmg * (a * c - b * d)
                zi += dmg * (a * d + b * c)
            qr = pred[p, i].real
            qi = pred[p, i].imag
            out[p, 0] += qr * zr + qi * zi
            out[p, 1] += zr * zr + zi * zi
            out[p, 2] += qr * qr + qi * qi
    return out


@dataclass
class CachedMicrograph:
    """Reduced alignment data of one micrograph.

    ``initial_track`` is the baseline every trial starts from; ``track`` holds
    the result of the latest trial and is the only field rewritten after the
    cache has been built.
    """

    index: int
    table: pd.DataFrame
    positions: np.ndarray
    obs: np.ndarray
    pred: np.ndarray
    cc_maps: np.ndarray
    initial_track: np.ndarray
    track: np.ndarray
    global_motion: np.ndarray

    @property
    def particle_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def nbytes(self) -> int:
        return sum(
            arr.nbytes for arr in (
                self.positions, self.obs, self.pred, self.cc_maps,
                self.initial_track, self.track, self.global_motion,
            )
        )


class AlignmentCache:
    """Alignment data for a fixed list of micrographs.

    Parameters
    ----------
    s:
        Box size of the particle spectra.
    fc:
        Number of movie frames.
    k0, k1:
        Evaluation band ``k0 <= r < k1`` in pixels.
    max_range:
        Correlation maps are cropped to a ``2 * max_range`` window when
        positive.
    n_threads:
        Workers for the per-particle preparation.
    """

    def __init__(
        self,
        s: int,
        fc: int,
        k0: float,
        k1: float,
        max_range: int = 0,
        n_threads: int = 1,
    ):
        self.s = int(s)
        self.fc = int(fc)
        self.max_range = int(max_range)
        self.n_threads = max(1, int(n_threads))
        self.band, self.band_coords = band_indices(self.s, k0, k1)
        self.damage = np.zeros((self.fc, self.band.size), dtype=np.float32)
        self.entries: list[CachedMicrograph] = []
        self.skipped: list[tuple[int, str]] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def particle_count(self) -> int:
        return sum(entry.particle_count for entry in self.entries)

    @property
    def nbytes(self) -> int:
        return self.damage.nbytes + sum(entry.nbytes for entry in self.entries)

    def _pack(self, spectrum: np.ndarray) -> np.ndarray:
        return np.asarray(spectrum).ravel()[self.band]

    def _shape_mismatch(self, pc: int, data: MicrographData) -> Optional[str]:
        """Describe how ``data`` disagrees with a ``pc``-particle table, or ``None``."""

        movie_shape = np.shape(data.movie)[:2]
        cc_shape = np.shape(data.movie_cc)[:2]
        track_shape = np.shape(data.initial_track)
        expected = (pc, self.fc)
        if movie_shape != expected or cc_shape != expected or track_shape != (pc, self.fc, 2):
            return (
                f"expected data for {pc} particles and {self.fc} frames, got movie "
                f"{movie_shape}, correlation maps {cc_shape} and track {track_shape}"
            )
        if np.shape(data.positions) != (pc, 2):
            return f"expected {pc} particle positions, got {np.shape(data.positions)}"
        return None

    def _prepare_entry(
        self,
        g: int,
        table: pd.DataFrame,
        data: MicrographData,
        reference: ReferenceProjector,
        obs_model: ObservationModel,
    ) -> CachedMicrograph:
        movie = np.asarray(data.movie)
        movie_cc = np.asarray(data.movie_cc)
        pc = len(table)
        problem = self._shape_mismatch(pc, data)
        if problem:
            raise ValueError(f"micrograph {g}: {problem}")

        window = 2 * self.max_range
        if self.max_range > 0:
            cc_shape = crop_corner_2d(movie_cc[0, 0], window, window).shape
        else:
            cc_shape = movie_cc.shape[2:]

        obs = np.empty((pc, self.fc, self.band.size), dtype=np.complex64)
        pred = np.empty((pc, self.band.size), dtype=np.complex64)
        cc_maps = np.empty((pc, self.fc) + tuple(cc_shape), dtype=np.float32)

        def prepare(p: int) -> None:
            for f in range(self.fc):
                cc = movie_cc[p, f]
                if self.max_range > 0:
                    cc = crop_corner_2d(cc, window, window)
                cc_maps[p, f] = cc
                obs[p, f] = self._pack(movie[p, f])
            pred[p] = self._pack(reference.predict(table, p, obs_model, True))

        with ThreadPoolExecutor(max_workers=self.n_threads) as pool:
            list(pool.map(prepare, range(pc)))

        initial_track = np.array(data.initial_track, dtype=np.float64)
        return CachedMicrograph(
            index=g,
            table=table,
            positions=np.array(data.positions, dtype=np.float64),
            obs=obs,
            pred=pred,
            cc_maps=cc_maps,
            initial_track=initial_track,
            track=initial_track.copy(),
            global_motion=np.array(data.global_motion, dtype=np.float64),
        )

    def build(
        self,
        tables: Sequence[pd.DataFrame],
        solver: TrajectorySolver,
        reference: ReferenceProjector,
        obs_model: ObservationModel,
        k_cutoff: float,
        initial_sigmas: MotionSigmas,
    ) -> "AlignmentCache":
        """Load every micrograph once and compute baseline tracks.

        ``initial_sigmas`` are in solver units.  Micrographs the solver cannot
        load, or whose data does not match its table, are reported in
        ``skipped`` and left out.
        """

        logger.info(" + preparing alignment data... ")

        damage = [np.asarray(w, dtype=np.float64) for w in solver.damage_weights()]
        if len(damage) != self.fc:
            raise ValueError(f"expected {self.fc} damage weights, got {len(damage)}")
        self.damage = np.stack([self._pack(w) for w in damage]).astype(np.float32)
        align_filters = [band_limit(w, k_cutoff - 1.0, k_cutoff + 1.0) for w in damage]

        self.entries = []
        self.skipped = []
        gc_count = len(tables)
        pctot = 0

        for g, table in enumerate(tables):
            pc = len(table)
            if pc < 2:
                continue
            pctot += pc
            logger.info(
                "        micrograph %d / %d: %d particles [%d total]", g + 1, gc_count, pc, pctot
            )

            load = solver.load_micrograph(table, align_filters)
            if not load.ok:
                logger.warning("warning: unable to load micrograph #%d: %s", g + 1, load.reason)
                self.skipped.append((g, load.reason or "unknown"))
                continue

            problem = self._shape_mismatch(pc, load.data)
            if problem is None:
                try:
                    entry = self._prepare_entry(g, table, load.data, reference, obs_model)
                except ValueError as exc:
                    problem = str(exc)
            del load
            if problem is not None:
                logger.warning("warning: skipping micrograph #%d: %s", g + 1, problem)
                self.skipped.append((g, problem))
                gc.collect()
                continue

            tracks = solver.optimize(
                entry.cc_maps,
                entry.initial_track,
                initial_sigmas.s_vel,
                initial_sigmas.s_acc,
                initial_sigmas.s_div,
                entry.positions,
                entry.global_motion,
            )
            entry.initial_track = np.array(tracks, dtype=np.float64)
            entry.track = entry.initial_track.copy()
            self.entries.append(entry)

            # full-resolution movie frames can take tens of GB per micrograph
            gc.collect()

        gc.collect()
        logger.info("   done (%.1f MB cached)", self.nbytes / 2 ** 20)
        return self

    def run_trial(self, solver: TrajectorySolver, sigmas: MotionSigmas) -> list[np.ndarray]:
        """Re-align every cached micrograph with ``sigmas`` (solver units)."""

        tracks = []
        for entry in self.entries:
            entry.track = np.array(
                solver.optimize(
                    entry.cc_maps,
                    entry.initial_track,
                    sigmas.s_vel,
                    sigmas.s_acc,
                    sigmas.s_div,
                    entry.positions,
                    entry.global_motion,
                ),
                dtype=np.float64,
            )
            tracks.append(entry.track)
        return tracks

    def score_tracks(self, entry: CachedMicrograph, tracks: np.ndarray) -> ScoreSums:
        """Score sums of ``tracks`` for one cached micrograph."""

        tracks = np.ascontiguousarray(tracks, dtype=np.float64)
        if tracks.shape != (entry.particle_count, self.fc, 2):
            raise ValueError(
                f"tracks must have shape {(entry.particle_count, self.fc, 2)}, got {tracks.shape}"
            )
        per_particle = _score_tracks(
            entry.obs, entry.pred, self.damage, self.band_coords, tracks, float(self.s)
        )
        cross, self1, self2 = per_particle.sum(axis=0)
        return ScoreSums(float(cross), float(self1), float(self2))
