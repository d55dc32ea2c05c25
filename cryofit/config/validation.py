"""Validation helpers for configuration payloads."""

from __future__ import annotations

from typing import Any, Iterable


class ConfigurationError(ValueError):
    """Missing prerequisite or inconsistent options; raised before any work starts."""


def ensure_mapping(value: Any, *, name: str) -> dict[str, Any]:
    """Return *value* as ``dict`` or raise a descriptive ``TypeError``."""

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def ensure_known_keys(value: dict[str, Any], allowed: Iterable[str], *, name: str) -> None:
    """Raise :class:`ConfigurationError` when *value* holds keys outside *allowed*."""

    unknown = sorted(set(value) - set(allowed))
    if unknown:
        raise ConfigurationError(f"{name}: unknown option(s) {', '.join(unknown)}")


def ensure_exclusive(pixels: float, angstrom: float, *, what: str, flags: str) -> None:
    """Reject a frequency given both in pixels and in Angstrom (unset values are negative)."""

    if pixels > 0.0 and angstrom > 0.0:
        raise ConfigurationError(
            f"{what} can only be provided in pixels or Angstrom ({flags}), not both."
        )
