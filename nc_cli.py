"""
Command-line front ends for nc_prime_meridian and nc_mask.

    nc-change-prime-meridian in.nc -o out.nc --prime-meridian left
    nc-mask in.nc -o mask.nc
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from nc_errors import NcToolsError
from nc_mask import nc_mask
from nc_prime_meridian import DEFAULT_MEM_LIMIT_MB, change_prime_meridian


def _margin(value: str) -> int | str:
    try:
        return int(value)
    except ValueError:
        return value


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def change_prime_meridian_main(argv: Sequence[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="nc-change-prime-meridian",
        description="Change the prime meridian of a variable in a NetCDF file.",
    )
    ap.add_argument("filename", help="Input NetCDF file.")
    ap.add_argument("-o", "--output", default=None,
                    help="Output file (required unless --overwrite).")
    ap.add_argument("--varid", default=None,
                    help="Variable to reproject (default: first data variable).")
    ap.add_argument("--margin", type=_margin, default=0,
                    help="Longitude dimension: 0-based position or name.")
    ap.add_argument("--prime-meridian", choices=("center", "left"), default="center",
                    help="'center' for [-180,180], 'left' for [0,360].")
    ap.add_argument("--overwrite", action="store_true",
                    help="Replace an existing output, or the input if no -o.")
    ap.add_argument("--compression", type=int, choices=range(1, 10), default=None,
                    metavar="{1..9}", help="zlib level for the output variable.")
    ap.add_argument("--mem-limit", type=float, default=DEFAULT_MEM_LIMIT_MB,
                    help="Memory per iteration in MB (default: %(default)s).")
    ap.add_argument("--ignore-case", action="store_true",
                    help="Match variable and dimension names case-insensitively.")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    _configure_logging(args.verbose)
    try:
        out = change_prime_meridian(
            args.filename,
            args.output,
            varid=args.varid,
            margin=args.margin,
            prime_meridian=args.prime_meridian,
            verbose=args.verbose,
            overwrite=args.overwrite,
            compression=args.compression,
            mem_limit=args.mem_limit,
            ignore_case=args.ignore_case,
        )
    except NcToolsError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(out)
    return 0


def nc_mask_main(argv: Sequence[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="nc-mask", description="Extract the valid-data mask of a NetCDF file."
    )
    ap.add_argument("filename", help="Input NetCDF file.")
    ap.add_argument("-o", "--output", default=None,
                    help="Mask file to write (default: print a summary).")
    args = ap.parse_args(argv)

    _configure_logging(False)
    try:
        result = nc_mask(args.filename, args.output)
    except NcToolsError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.output is not None:
        print(result)
    else:
        n_valid = int(result.sum())
        print(f"mask {dict(result.sizes)}: {n_valid:,} / {result.size} valid cells")
    return 0


if __name__ == "__main__":
    sys.exit(change_prime_meridian_main())
