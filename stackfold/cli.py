"""Command that collapses DTrace ``ustack()`` output into folded stacks."""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from stackfold.common import DEFAULT_NTHREADS
from stackfold.dtrace import Folder, Options

_EPILOG = """\
[1] This processes the result of the dtrace ustack() as run with:
        dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345 && arg1/ { @[ustack()] = count(); } tick-60s { exit(0); }'
    or including kernel time:
        dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345/ { @[ustack()] = count(); } tick-60s { exit(0); }'
"""


def _uint(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {text!r}")
    return value


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackfold-collapse-dtrace",
        description="Collapse DTrace ustack() output into folded stack lines.",
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--includeoffset", action="store_true", help="Include offsets")
    parser.add_argument("-q", "--quiet", action="store_true", help="Silence all log output")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Verbose logging mode (-v, -vv, -vvv)"
    )
    parser.add_argument(
        "-n",
        "--nthreads",
        type=_uint,
        default=DEFAULT_NTHREADS,
        metavar="UINT",
        help=f"Number of threads to use. [default: {DEFAULT_NTHREADS}]",
    )
    parser.add_argument(
        "infile",
        nargs="?",
        metavar="PATH",
        help="Dtrace script output file, or STDIN if not specified",
    )
    return parser


@contextmanager
def _silenced() -> Iterator[None]:
    package_logger = logging.getLogger("stackfold")
    previous = package_logger.level
    package_logger.setLevel(logging.CRITICAL + 1)
    try:
        yield
    finally:
        package_logger.setLevel(previous)


def _configure_logging(verbose: int) -> None:
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command; return the exit status."""
    args = _parser().parse_args(argv)
    folder = Folder(Options(includeoffset=args.includeoffset, nthreads=args.nthreads))

    if not args.quiet:
        _configure_logging(args.verbose)

    try:
        if args.quiet:
            with _silenced():
                folder.collapse_file_to_stdout(args.infile)
        else:
            folder.collapse_file_to_stdout(args.infile)
    except (OSError, ValueError) as error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())