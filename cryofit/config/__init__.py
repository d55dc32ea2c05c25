"""Config loading helpers for cryofit."""

from .loader import clear_config_cache, get_config_bundle, get_config_dir
from .models import BFactorOptions, ConfigBundle, MotionParamOptions, RuntimeOptions
from .validation import ConfigurationError

__all__ = [
    "BFactorOptions",
    "ConfigBundle",
    "ConfigurationError",
    "MotionParamOptions",
    "RuntimeOptions",
    "clear_config_cache",
    "get_config_bundle",
    "get_config_dir",
]
