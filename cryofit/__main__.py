"""Module entry to expose `python -m cryofit` CLI.

Delegates to `cryofit.cli.main`.
"""

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
