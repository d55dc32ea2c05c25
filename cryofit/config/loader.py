"""Load cryofit configuration files from disk."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from .models import BFactorOptions, ConfigBundle, MotionParamOptions, RuntimeOptions
from .validation import ensure_mapping

ENV_CONFIG_DIR = "CRYOFIT_CONFIG_DIR"
CONFIG_FILE = "cryofit.yaml"


def get_config_dir() -> Path:
    """Return ``$CRYOFIT_CONFIG_DIR`` if set, else the repository ``config/`` directory."""

    env_path = os.environ.get(ENV_CONFIG_DIR)
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path(__file__).resolve().parents[2] / "config"


def _read_config_file(path: Path) -> dict[str, Any]:
    """Parse *path* as YAML; a missing or empty file means "all defaults"."""

    if not path.is_file():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return ensure_mapping(data, name=str(path))


def bundle_from_mapping(data: dict[str, Any], config_dir: Path) -> ConfigBundle:
    data = ensure_mapping(data, name=CONFIG_FILE)
    return ConfigBundle(
        config_dir=config_dir,
        bfactor=BFactorOptions.from_mapping(data.get("bfactor")),
        motion_params=MotionParamOptions.from_mapping(data.get("motion_params")),
        runtime=RuntimeOptions.from_mapping(data.get("runtime")),
    )


_BUNDLE_CACHE: dict[Path, ConfigBundle] = {}


def clear_config_cache() -> None:
    """Forget parsed bundles so the next lookup re-reads the files."""

    _BUNDLE_CACHE.clear()


def get_config_bundle(config_dir: Path | None = None) -> ConfigBundle:
    """Return the cached bundle of *config_dir* (default: :func:`get_config_dir`)."""

    resolved_dir = Path(config_dir or get_config_dir()).resolve()
    bundle = _BUNDLE_CACHE.get(resolved_dir)
    if bundle is None:
        bundle = bundle_from_mapping(_read_config_file(resolved_dir / CONFIG_FILE), resolved_dir)
        _BUNDLE_CACHE[resolved_dir] = bundle
    return bundle
