"""Reduction of complex half-spectra into per-radius weighted sums."""

from __future__ import annotations

import numba
import numpy as np
from numba import njit, prange

from cryofit.types import RadialProfile
from cryofit.utils.filters import radius_map


@njit(parallel=True)
def _particle_profiles(obs, pred, weight, radius):
    """Independent radial sums per particle, one ``prange`` iteration each."""
    pc, s, sh = obs.shape
    t_out = np.zeros((pc, sh), dtype=np.float64)
    s_out = np.zeros((pc, sh), dtype=np.float64)
    for p in prange(pc):
        for y in range(s):
            for x in range(sh):
                r = radius[y, x]
                if r < sh:
                    zp = pred[p, y, x]
                    zo = obs[p, y, x]
                    wp = weight[y, x]
                    t_out[p, r] += wp * (zp.real * zp.real + zp.imag * zp.imag)
                    s_out[p, r] += wp * (zp.real * zo.real + zp.imag * zo.imag)
    return t_out, s_out


@njit(parallel=True)
def _accumulate_arena(obs, pred, weight, radius, n_workers):
    """Micrograph-wide radial sums with one private arena row per worker.

    Worker ``w`` visits particles ``w, w + n_workers, ...`` and writes only
    to row ``w``; no two iterations share a row.
    """
    pc, s, sh = obs.shape
    t_arena = np.zeros((n_workers, sh), dtype=np.float64)
    s_arena = np.zeros((n_workers, sh), dtype=np.float64)
    for w in prange(n_workers):
        for p in range(w, pc, n_workers):
            for y in range(s):
                for x in range(sh):
                    r = radius[y, x]
                    if r < sh:
                        zp = pred[p, y, x]
                        zo = obs[p, y, x]
                        wp = weight[y, x]
                        t_arena[w, r] += wp * (zp.real * zp.real + zp.imag * zp.imag)
                        s_arena[w, r] += wp * (zp.real * zo.real + zp.imag * zo.imag)
    return t_arena, s_arena


def _prepare(obs, pred, weight):
    obs = np.ascontiguousarray(obs, dtype=np.complex128)
    pred = np.ascontiguousarray(pred, dtype=np.complex128)
    if obs.ndim == 2:
        obs = obs[None]
    if pred.ndim == 2:
        pred = pred[None]
    if obs.shape != pred.shape:
        raise ValueError(
            f"observed and predicted spectra differ in shape: {obs.shape} vs {pred.shape}"
        )
    _, s, sh = obs.shape
    if sh != s // 2 + 1:
        raise ValueError(f"expected half-spectra of shape (s, s//2+1), got {(s, sh)}")
    weight = np.ascontiguousarray(weight, dtype=np.float64)
    if weight.shape != (s, sh):
        raise ValueError(f"weight shape {weight.shape} does not match spectra {(s, sh)}")
    return obs, pred, weight, radius_map(s)


def particle_profiles(obs, pred, weight) -> list[RadialProfile]:
    """Return one :class:`RadialProfile` per particle of a ``(pc, s, sh)`` stack."""

    obs, pred, weight, radius = _prepare(obs, pred, weight)
    t_out, s_out = _particle_profiles(obs, pred, weight, radius)
    return [RadialProfile(t_out[p], s_out[p]) for p in range(t_out.shape[0])]


def radial_profile(obs, pred, weight) -> RadialProfile:
    """Radial sums of a single particle."""

    return particle_profiles(obs, pred, weight)[0]


def accumulate_profiles(obs, pred, weight, n_workers: int | None = None) -> RadialProfile:
    """Sum the radial profiles of all particles in a stack.

    Each worker accumulates into its own buffer; the buffers are folded in
    worker order after the parallel region, so the result does not depend on
    ``n_workers`` beyond floating-point rounding.
    """

    obs, pred, weight, radius = _prepare(obs, pred, weight)
    if n_workers is None:
        n_workers = numba.get_num_threads()
    n_workers = max(1, int(n_workers))
    t_arena, s_arena = _accumulate_arena(obs, pred, weight, radius, n_workers)
    return RadialProfile(t_arena.sum(axis=0), s_arena.sum(axis=0))
