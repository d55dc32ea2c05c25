import os
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Allow importing cryofit from repository root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Diagnostics tests render figures without a display
os.environ.setdefault("MPLBACKEND", "Agg")

from cryofit.config import clear_config_cache  # noqa: E402
from cryofit.motion.protocols import MicrographData, MicrographLoad  # noqa: E402


class FakeObsModel:
    """Single pixel size, frequency in pixels = box * angpix / resolution."""

    def __init__(self, angpix=1.0):
        self.angpix = angpix

    def pixel_size(self, optics_group=0):
        return self.angpix

    def ang_to_pix(self, a, s):
        return s * self.angpix / a

    def pix_to_ang(self, p, s):
        return s * self.angpix / p


class FakeReference:
    """Predictions drawn once per micrograph name and particle index."""

    def __init__(self, s, k_out, seed=7):
        self.s = s
        self.k_out = k_out
        self.seed = seed
        self.opposite_flags = []

    def spectrum(self, name, p):
        rng = np.random.default_rng([self.seed, sum(name.encode()), p])
        shape = (self.s, self.s // 2 + 1)
        return rng.standard_normal(shape) + 1j * rng.standard_normal(shape)

    def predict(self, table, particle, obs_model, opposite):
        self.opposite_flags.append(opposite)
        return self.spectrum(table["rlnMicrographName"].iloc[0], particle)


class FakeSolver:
    """Trajectory solver whose tracks are the initial track shifted by ``sig_vel``.

    Every frame of a loaded movie equals the reference prediction, so zero
    tracks score a perfect correlation.
    """

    def __init__(self, reference, fc=3, cc_size=16, failing=(), ready=True):
        self.reference = reference
        self.fc = fc
        self.cc_size = cc_size
        self.failing = set(failing)
        self.ready = ready
        self.loaded = []
        self.filters = None
        self.optimize_calls = []

    def is_ready(self):
        return self.ready

    def damage_weights(self):
        s = self.reference.s
        return [np.ones((s, s // 2 + 1)) for _ in range(self.fc)]

    def load_micrograph(self, table, filters):
        name = table["rlnMicrographName"].iloc[0]
        self.loaded.append(name)
        self.filters = filters
        if name in self.failing:
            return MicrographLoad.skipped(f"cannot read {name}")

        pc = len(table)
        movie = np.stack([
            np.stack([self.reference.spectrum(name, p)] * self.fc) for p in range(pc)
        ])
        cc = np.arange(self.cc_size * self.cc_size, dtype=np.float64)
        cc = cc.reshape(self.cc_size, self.cc_size)
        movie_cc = np.broadcast_to(cc, (pc, self.fc, self.cc_size, self.cc_size)).copy()
        return MicrographLoad.loaded(MicrographData(
            movie=movie,
            movie_cc=movie_cc,
            positions=np.column_stack([np.arange(pc), np.arange(pc)]).astype(float),
            initial_track=np.zeros((pc, self.fc, 2)),
            global_motion=np.zeros((self.fc, 2)),
        ))

    def optimize(self, cc_maps, initial_track, sig_vel, sig_acc, sig_div, positions, global_motion):
        self.optimize_calls.append((sig_vel, sig_div, sig_acc))
        return initial_track + sig_vel

    def normalize_sig_vel(self, sig_vel):
        return sig_vel

    def normalize_sig_div(self, sig_div):
        return sig_div

    def normalize_sig_acc(self, sig_acc):
        return sig_acc


def make_tables(counts, prefix="mic"):
    return [
        pd.DataFrame({
            "rlnMicrographName": [f"{prefix}{m:03d}.mrc"] * pc,
            "rlnCoordinateX": np.arange(pc, dtype=float),
            "rlnCoordinateY": np.arange(pc, dtype=float),
        })
        for m, pc in enumerate(counts)
    ]


@pytest.fixture
def obs_model():
    return FakeObsModel(1.0)


@pytest.fixture
def reference():
    return FakeReference(s=16, k_out=7.0)


@pytest.fixture
def solver(reference):
    return FakeSolver(reference)


@pytest.fixture(autouse=True)
def _reset_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()
