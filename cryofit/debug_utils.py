"""Helper utilities for logging and debugging cryofit runs."""

import logging
import os


def is_debug_enabled() -> bool:
    """Return ``True`` if ``CRYOFIT_DEBUG`` is set to a truthy value."""
    val = os.environ.get("CRYOFIT_DEBUG", "")
    return bool(val) and val.lower() not in {"0", "false", "no"}


def configure_logging(verbosity: int = 1, debug: bool = False) -> None:
    """Attach a stream handler to the ``cryofit`` logger.

    ``verbosity`` 0 keeps warnings only, 1 reports progress, and debug mode
    (``debug=True`` or ``CRYOFIT_DEBUG``) adds per-particle and per-iteration
    dumps.
    """
    if debug or is_debug_enabled():
        level = logging.DEBUG
    elif verbosity > 0:
        level = logging.INFO
    else:
        level = logging.WARNING

    logger = logging.getLogger("cryofit")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)


def enable_numba_logging(default_level: str = "DEBUG") -> None:
    """Route ``numba`` compiler messages to stderr in debug mode.

    The level comes from ``NUMBA_LOG_LEVEL`` when set, else ``default_level``;
    unknown level names fall back to ``DEBUG``.
    """
    if not is_debug_enabled():
        return

    level_name = os.environ.setdefault("NUMBA_LOG_LEVEL", default_level.upper()).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.DEBUG

    numba_logger = logging.getLogger("numba")
    if not numba_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("numba %(levelname)s: %(message)s"))
        numba_logger.addHandler(handler)
    numba_logger.setLevel(level)
