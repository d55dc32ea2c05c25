"""Typed containers for parsed configuration files."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from .validation import ensure_known_keys, ensure_mapping


def _from_mapping(cls, payload: Any, name: str):
    data = ensure_mapping(payload, name=name)
    ensure_known_keys(data, (f.name for f in fields(cls)), name=name)
    return cls(**data)


@dataclass(frozen=True)
class BFactorOptions:
    """Options of the B-factor/scale fit. B-factors are in A^2, ``kmin`` in A."""

    per_micrograph: bool = False
    min_B: float = -30.0
    max_B: float = 300.0
    min_scale: float = 0.2
    kmin: float = 30.0
    steps: int = 20
    depth: int = 5
    residual: str = "radial"

    @classmethod
    def from_mapping(cls, payload: Any) -> "BFactorOptions":
        return _from_mapping(cls, payload, "bfactor")


@dataclass(frozen=True)
class MotionParamOptions:
    """Options of the motion-prior hyperparameter search.

    Frequencies set to a negative value are treated as unset.
    """

    estimate_two: bool = False
    estimate_three: bool = False
    k_cutoff: float = -1.0
    k_cutoff_angst: float = -1.0
    k_eval: float = -1.0
    k_eval_angst: float = -1.0
    min_particles: int = 1000
    s_vel_0: float = 0.6
    s_div_0: float = 3000.0
    s_acc_0: float = 5.0
    initial_step: float = 100.0
    conv: float = 10.0
    max_iters: int = 50
    max_range: int = 50
    seed: int = 23

    @classmethod
    def from_mapping(cls, payload: Any) -> "MotionParamOptions":
        return _from_mapping(cls, payload, "motion_params")


@dataclass(frozen=True)
class RuntimeOptions:
    n_threads: int = 1
    verbosity: int = 1
    debug: bool = False
    diagnostics: bool = False
    output_dir: str = "output"

    @classmethod
    def from_mapping(cls, payload: Any) -> "RuntimeOptions":
        return _from_mapping(cls, payload, "runtime")


@dataclass(frozen=True)
class ConfigBundle:
    """In-memory representation of the project configuration."""

    config_dir: Path
    bfactor: BFactorOptions = field(default_factory=BFactorOptions)
    motion_params: MotionParamOptions = field(default_factory=MotionParamOptions)
    runtime: RuntimeOptions = field(default_factory=RuntimeOptions)

    def as_dict(self) -> dict[str, Any]:
        return {
            "bfactor": asdict(self.bfactor),
            "motion_params": asdict(self.motion_params),
            "runtime": asdict(self.runtime),
        }
