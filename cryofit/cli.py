"""Command line entry points for cryofit.

Usage examples:

- Fit per-particle B-factors of a spectra bundle:
    python -m cryofit bfactor spectra.npz --angpix 1.06 --out-dir fits/

- Fit one B-factor per micrograph and write diagnostic plots:
    python -m cryofit bfactor spectra.npz --angpix 1.06 --per-micrograph --diagnostics

- Show the resolved configuration:
    python -m cryofit show-config

Defaults come from ``cryofit.yaml`` in the directory named by
``CRYOFIT_CONFIG_DIR`` or the repository-local ``config/`` directory.
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import yaml

from cryofit.config import get_config_bundle
from cryofit.debug_utils import configure_logging, enable_numba_logging
from cryofit.fitting.bfactor import BFactorRefiner
from cryofit.io.data_loading import load_spectra_bundle, micrograph_groups, write_fit_table


class _PixelSizeModel:
    """Observation model of a dataset with a single pixel size."""

    def __init__(self, angpix: float):
        self.angpix = float(angpix)

    def pixel_size(self, optics_group: int = 0) -> float:
        return self.angpix

    def ang_to_pix(self, a: float, s: int) -> float:
        return s * self.angpix / a

    def pix_to_ang(self, p: float, s: int) -> float:
        return s * self.angpix / p


class _BandLimit:
    def __init__(self, k_out: float):
        self.k_out = float(k_out)


class _StackedCtf:
    """CTF model backed by a precomputed ``(pc, s, sh)`` stack."""

    def __init__(self, ctf: np.ndarray):
        self.ctf = ctf

    def image(self, table, particle, s, angpix):
        return self.ctf[particle]


def run_bfactor_fit(
    bundle_path: str | Path,
    *,
    angpix: float,
    out_dir: str | Path | None = None,
    k_out: float | None = None,
    per_micrograph: bool | None = None,
    diagnostics: bool | None = None,
    n_threads: int | None = None,
) -> pd.DataFrame:
    """Fit every micrograph of a spectra bundle and write the combined table.

    Arguments left as ``None`` fall back to the active configuration.
    """

    config = get_config_bundle()
    options = config.bfactor
    if per_micrograph is not None:
        options = dataclasses.replace(options, per_micrograph=per_micrograph)
    runtime = config.runtime
    out_dir = Path(out_dir if out_dir is not None else runtime.output_dir)

    bundle = load_spectra_bundle(bundle_path)
    s = bundle.box_size
    obs_model = _PixelSizeModel(angpix)
    reference = _BandLimit(k_out if k_out is not None else s // 2 + 1)

    results = []
    for name, rows in micrograph_groups(bundle.table):
        refiner = BFactorRefiner(options)
        refiner.init(
            s,
            reference,
            obs_model,
            n_threads=n_threads if n_threads is not None else runtime.n_threads,
            output_dir=out_dir,
            ctf_model=_StackedCtf(bundle.ctf[rows]) if bundle.ctf is not None else None,
            diagnostics=diagnostics if diagnostics is not None else runtime.diagnostics,
            debug=runtime.debug,
        )
        table = bundle.table.iloc[rows].reset_index(drop=True)
        results.append(refiner.process_micrograph(table, bundle.obs[rows], bundle.pred[rows]))

    combined = pd.concat(results, ignore_index=True)
    write_fit_table(combined, out_dir / "bfactor_fit.csv")
    return combined


def _cmd_bfactor(args: argparse.Namespace) -> None:
    table = run_bfactor_fit(
        args.bundle,
        angpix=args.angpix,
        out_dir=args.out_dir,
        k_out=args.k_out,
        per_micrograph=args.per_micrograph or None,
        diagnostics=args.diagnostics or None,
        n_threads=args.threads,
    )
    out_dir = args.out_dir or get_config_bundle().runtime.output_dir
    print(f"Fitted {len(table)} particles; results written to {out_dir}")


def _cmd_show_config(args: argparse.Namespace) -> None:
    config = get_config_bundle()
    print(f"# {config.config_dir}")
    print(yaml.safe_dump(config.as_dict(), sort_keys=False), end="")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Run cryofit tools.")
    ap.add_argument("-v", "--verbose", action="count", default=None, help="Increase verbosity")
    subparsers = ap.add_subparsers(dest="command")

    bfac_parser = subparsers.add_parser(
        "bfactor", help="Fit B-factors and scale factors to a spectra bundle."
    )
    bfac_parser.add_argument("bundle", help="NPZ file with 'obs' and 'pred' half-spectra")
    bfac_parser.add_argument("--angpix", type=float, required=True, help="Pixel size [A]")
    bfac_parser.add_argument("--out-dir", default=None, help="Output directory")
    bfac_parser.add_argument(
        "--k-out", type=float, default=None,
        help="Outer frequency limit [px] (default: Nyquist)",
    )
    bfac_parser.add_argument(
        "--per-micrograph", action="store_true",
        help="Estimate B-factors per micrograph, instead of per particle",
    )
    bfac_parser.add_argument("--diagnostics", action="store_true", help="Write per-particle diagnostic pages")
    bfac_parser.add_argument("--threads", type=int, default=None, help="Number of threads")
    bfac_parser.set_defaults(func=_cmd_bfactor)

    cfg_parser = subparsers.add_parser("show-config", help="Print the active configuration.")
    cfg_parser.set_defaults(func=_cmd_show_config)

    return ap


def main(argv: list[str] | None = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    ap = _build_parser()
    args = ap.parse_args(argv)

    runtime = get_config_bundle().runtime
    verbosity = args.verbose if args.verbose is not None else runtime.verbosity
    configure_logging(verbosity, runtime.debug)
    enable_numba_logging()

    handler = getattr(args, "func", None)
    if handler is None:
        ap.print_help()
        return

    handler(args)


if __name__ == "__main__":  # pragma: no cover
    main()
