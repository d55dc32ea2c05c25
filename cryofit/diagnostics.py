"""Diagnostic plots of B-factor fits."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.backends.backend_pdf import PdfPages

from cryofit.io.data_loading import COORD_X_COLUMN, COORD_Y_COLUMN
from cryofit.types import FitResult, RadialProfile

TITLE = "CTF amplitude and B/k-factor fit"


def _uncertainty_shades(t_rad: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Radii with usable data and their grey level ``0.9 * (1 - t / t_max)``."""
    t_max = max(float(t_rad.max()), 0.0) if t_rad.size else 0.0
    radii = np.flatnonzero(t_rad > 1e-10)
    if t_max <= 0.0:
        return radii, np.zeros(radii.size)
    return radii, 0.9 * (1.0 - t_rad[radii] / t_max)


def _draw_profile_fit(ax, profile: RadialProfile, curve: np.ndarray) -> None:
    radii, shades = _uncertainty_shades(profile.t_rad)
    ratio = profile.s_rad[radii] / profile.t_rad[radii]
    ax.scatter(radii, ratio, c=np.repeat(shades, 3).reshape(-1, 3), s=10, zorder=2)
    ax.plot(np.arange(profile.sh), curve, color="black", zorder=3)
    ax.set_xlabel(TITLE)


def write_micrograph_fit_plot(
    path: str | Path,
    profile: RadialProfile,
    fit: FitResult,
    *,
    min_B: float,
    box_angstrom: float,
) -> Path:
    """Plot the per-micrograph ratio ``s_rad / t_rad`` with the fitted decay.

    ``fit`` holds the physical B-factor (offset by ``min_B``) and the scale.
    """

    ra = np.arange(profile.sh) / box_angstrom
    curve = fit.scale * np.exp(-(fit.bfactor + min_B) * ra * ra / 4.0)

    fig, ax = plt.subplots(figsize=(6, 6))
    _draw_profile_fit(ax, profile, curve)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path)
    plt.close(fig)
    return path


def write_particle_diag_pdf(
    path: str | Path,
    profiles: Sequence[RadialProfile],
    fits_px: Sequence[FitResult],
) -> Path:
    """One page per particle, B-factor in internal pixel units."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with PdfPages(path) as pdf:
        for p, (profile, fit) in enumerate(zip(profiles, fits_px)):
            r = np.arange(profile.sh, dtype=np.float64)
            curve = fit.scale * np.exp(-fit.bfactor * r * r / 4.0)
            fig, ax = plt.subplots(figsize=(6, 6))
            _draw_profile_fit(ax, profile, curve)
            ax.set_title(f"particle {p}")
            pdf.savefig(fig)
            plt.close(fig)
    return path


def write_particle_scatter_plot(
    path: str | Path,
    table: pd.DataFrame,
    *,
    min_B: float,
    max_B: float,
    bfactor_column: str = "rlnCtfBfactor",
    scale_column: str = "rlnCtfScalefactor",
) -> Path:
    """Particle positions; marker size from the B-factor, grey level from the scale."""

    b = table[bfactor_column].to_numpy(dtype=np.float64)
    a = table[scale_column].to_numpy(dtype=np.float64)
    grey = np.clip(1.0 - a / 2.0, 0.0, 1.0)
    span = max_B - min_B if max_B > min_B else 1.0
    size = np.clip(50.0 * (1.01 - (b - min_B) / span), 1.0, None)

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(
        table[COORD_X_COLUMN], table[COORD_Y_COLUMN],
        s=size, c=np.repeat(grey, 3).reshape(-1, 3),
    )
    ax.invert_yaxis()
    ax.set_xlabel("B-factor (size) and CTF-scale (intensity)")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path)
    plt.close(fig)
    return path
