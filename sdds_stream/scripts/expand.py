"""sdds-expand: turn every column into a parameter, one output page per input row.

Input parameters are carried over unchanged. When a parameter and a column
share a name, the column's value is used.

Examples
--------
    sdds-expand table.sdds rows.sdds
    sdds-expand table.sdds -pipe=output -majorOrder=column > rows.sdds
"""

from __future__ import annotations

import sys
from typing import List, Optional, Sequence

from ..models.config import default_config
from ..models.diagnostics import SddsError
from ..models.layout import PARAMETER, DataMode
from ..stream.dataset import Dataset
from .filenames import parse_pipe_argument, process_filenames

PROG = "sdds-expand"


def build_parser():
    import argparse

    p = argparse.ArgumentParser(
        prog=PROG,
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=__doc__,
    )
    p.add_argument("input", nargs="?", help="Input file (omit with -pipe=input)")
    p.add_argument("output", nargs="?", help="Output file (omit to rewrite the input in place)")
    p.add_argument("-majorOrder", "--major-order", dest="major_order", choices=("row", "column"), default=None)
    p.add_argument("-noWarnings", "--no-warnings", dest="no_warnings", action="store_true")
    p.add_argument("-pipe", "--pipe", dest="pipe", nargs="?", const="", default=None, help="[input][,output]")
    return p


def expand(src: Dataset, out: Dataset, *, no_warnings: bool = False) -> bool:
    """
    Define the expanded layout on `out` and write one page per row of every page of `src`.

    Both datasets must be open; `out` must not have written anything yet.
    """
    columns: List[str] = src.column_names
    for name in columns:
        if not out.define_parameter_like_column(src, name):
            return False
    carried: List[str] = []
    for name in src.parameter_names:
        if out.layout.has(PARAMETER, name):
            if not no_warnings:
                print(
                    f"warning ({PROG}): name {name} used for parameter and column in input file. Column data used.",
                    file=sys.stderr,
                )
            continue
        if not out.transfer_parameter_definition(src, name):
            return False
        if out.layout.get_definition(PARAMETER, name).fixed_value is None:
            carried.append(name)
    if not out.write_layout():
        return False

    while src.read_page() > 0:
        data = {name: src.get_internal_column(name) for name in columns}
        params = {name: src.get_parameter(name) for name in carried}
        for row in range(src.row_count()):
            values = dict(params)
            values.update((name, data[name][row]) for name in columns)
            if not (out.start_page(0) and out.set_parameters(values) and out.write_page()):
                return False
    return not src.errors.has_fatal


def main(argv: Optional[Sequence[str]] = None) -> int:
    ns = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        targets = process_filenames(PROG, ns.input, ns.output, parse_pipe_argument(ns.pipe), no_warnings=ns.no_warnings)
    except SddsError as exc:
        print(f"{PROG}: error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 1
    for w in targets.warnings:
        print(f"warning: {w}", file=sys.stderr)

    config = default_config()
    src = Dataset(config)
    if not src.initialize_input(targets.input):
        src.print_errors(program=PROG)
        src.terminate()
        return 1
    column_major = src.layout.data_mode.column_major if ns.major_order is None else ns.major_order == "column"
    out = Dataset(config)
    ok = out.initialize_output(
        targets.output,
        data_mode=DataMode(mode="binary", column_major=column_major),
        in_place=targets.in_place,
    ) and expand(src, out, no_warnings=ns.no_warnings)

    src.terminate()
    done = out.terminate(abort=not ok)
    src.print_errors(program=PROG, include_warnings=not ns.no_warnings)
    out.print_errors(program=PROG, include_warnings=not ns.no_warnings)
    return 0 if ok and done else 1


if __name__ == "__main__":
    raise SystemExit(main())
