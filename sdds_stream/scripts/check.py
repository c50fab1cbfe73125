"""sdds-check: read a whole SDDS file and report whether it is intact.

Prints one word to stdout:

    ok            every page was read up to the end of the file
    nonexistent   the file does not exist
    badHeader     the header could not be parsed
    corrupted     a page was truncated or unreadable

The exit status is 0 whenever a verdict was printed.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Sequence

from ..stream.dataset import END_OF_STREAM, Dataset

PROG = "sdds-check"

OK = "ok"
NONEXISTENT = "nonexistent"
BAD_HEADER = "badHeader"
CORRUPTED = "corrupted"


def check_file(path: str, *, print_errors: bool = False) -> str:
    """Verdict for one file (one of OK, NONEXISTENT, BAD_HEADER, CORRUPTED)."""
    if not Path(path).expanduser().is_file():
        return NONEXISTENT
    ds = Dataset()
    try:
        if not ds.initialize_input(path):
            if print_errors:
                ds.print_errors(sys.stderr, program=PROG)
            return BAD_HEADER
        while True:
            status = ds.read_page()
            if status <= 0:
                break
        if status == END_OF_STREAM:
            return OK
        if print_errors:
            ds.print_errors(sys.stderr, program=PROG)
        return CORRUPTED
    finally:
        ds.terminate()


def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    p = argparse.ArgumentParser(
        prog=PROG,
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=__doc__,
    )
    p.add_argument("filename", help="SDDS file to check")
    p.add_argument(
        "-printErrors", "--print-errors", dest="print_errors", action="store_true",
        help="Deliver error messages to stderr",
    )
    args = p.parse_args(list(argv) if argv is not None else None)
    print(check_file(args.filename, print_errors=args.print_errors))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
