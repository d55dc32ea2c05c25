"""Frequency-domain masks and crops on FFTW-style half-spectra.

A half-spectrum of box size ``s`` has shape ``(s, s // 2 + 1)``: rows hold the
full ``y`` frequency range with the origin at row 0 and negative frequencies
wrapped to the bottom half, columns hold the non-negative ``x`` frequencies.
"""

from __future__ import annotations

import numpy as np


def half_spectrum_coords(s: int) -> tuple[np.ndarray, np.ndarray]:
    """Return the centred ``(kx, ky)`` frequency coordinates of every sample."""

    sh = s // 2 + 1
    kx = np.arange(sh, dtype=np.float64)[None, :]
    ky = ((np.arange(s) + s // 2) % s - s // 2).astype(np.float64)[:, None]
    return np.broadcast_to(kx, (s, sh)), np.broadcast_to(ky, (s, sh))


def radius_map(s: int) -> np.ndarray:
    """Return the rounded integer radius of every half-spectrum sample."""

    kx, ky = half_spectrum_coords(s)
    return np.floor(np.sqrt(kx * kx + ky * ky) + 0.5).astype(np.int64)


def hollow_weight(s: int, k_in: float, k_out: float) -> np.ndarray:
    """Binary frequency weight that is 1 on ``k_in <= r < k_out`` and 0 elsewhere."""

    kx, ky = half_spectrum_coords(s)
    r = np.sqrt(kx * kx + ky * ky)
    return ((r >= k_in) & (r < k_out)).astype(np.float64)


def band_limit_envelope(s: int, k0: float, k1: float) -> np.ndarray:
    """Low-pass envelope: 1 below ``k0``, 0 above ``k1``, cosine taper between."""

    if k1 <= k0:
        raise ValueError("band_limit_envelope requires k1 > k0")
    kx, ky = half_spectrum_coords(s)
    r = np.sqrt(kx * kx + ky * ky)
    t = np.clip((r - k0) / (k1 - k0), 0.0, 1.0)
    return 0.5 * (1.0 + np.cos(np.pi * t))


def band_limit(weights: np.ndarray, k0: float, k1: float) -> np.ndarray:
    """Multiply a half-spectrum weight by :func:`band_limit_envelope`."""

    weights = np.asarray(weights, dtype=np.float64)
    return weights * band_limit_envelope(weights.shape[0], k0, k1)


def crop_corner_2d(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Crop a wrap-around map to ``(height, width)`` keeping its four corners.

    Correlation maps store zero displacement at ``[0, 0]``, so the kept window
    is made of the first ``height // 2`` rows plus the last rows, and likewise
    for columns.
    """

    image = np.asarray(image)
    ny, nx = image.shape
    if width >= nx and height >= ny:
        return image.copy()
    height = min(height, ny)
    width = min(width, nx)
    rows = np.r_[0:height // 2, ny - (height - height // 2):ny]
    cols = np.r_[0:width // 2, nx - (width - width // 2):nx]
    return image[np.ix_(rows, cols)]


def band_indices(s: int, k0: float, k1: float) -> tuple[np.ndarray, np.ndarray]:
    """Return flat sample indices and ``(n, 2)`` frequency coordinates of ``k0 <= r < k1``."""

    kx, ky = half_spectrum_coords(s)
    r = np.sqrt(kx * kx + ky * ky)
    flat = np.flatnonzero(((r >= k0) & (r < k1)).ravel())
    coords = np.stack([kx.ravel()[flat], ky.ravel()[flat]], axis=1)
    return flat, coords
