"""sdds-query: summarize the header of one or more SDDS files.

Without list options a table per entity kind is printed (pandas formatting).
A list option prints only the names of that kind, one per line (or joined
by -delimiter), optionally followed by units.

Examples
--------
    sdds-query run.sdds
    sdds-query run.sdds -columnList -appendUnits
    cat run.sdds | sdds-query -pipe -readAll
"""

from __future__ import annotations

import sys
from typing import IO, List, Optional, Sequence

import pandas as pd

from ..models.diagnostics import SddsError
from ..models.layout import ARRAY, ASSOCIATE, COLUMN, PARAMETER, Layout
from ..models.types import type_name
from ..stream.dataset import END_OF_STREAM, Dataset
from .filenames import USE_STDIN, parse_pipe_argument

PROG = "sdds-query"

_TABLE_FIELDS = {
    PARAMETER: ("name", "type", "units", "symbol", "format_string", "description", "fixed_value"),
    COLUMN: ("name", "type", "units", "symbol", "format_string", "description", "field_length"),
    ARRAY: ("name", "type", "units", "symbol", "format_string", "group_name", "dimensions", "description"),
    ASSOCIATE: ("filename", "path", "sdds", "contents", "description"),
}


def layout_table(layout: Layout, kind: str) -> pd.DataFrame:
    """One row per definition of `kind`, in declaration order."""
    fields = _TABLE_FIELDS[kind]
    rows = []
    for d in layout.iter(kind):
        row = {}
        for f in fields:
            v = getattr(d, f)
            row[f] = type_name(v) if f == "type" else ("" if v is None else v)
        rows.append(row)
    return pd.DataFrame(rows, columns=list(fields))


def _names(layout: Layout, kind: str, append_units: Optional[str]) -> List[str]:
    out = []
    for d in layout.iter(kind):
        name = d.filename if kind == ASSOCIATE else d.name
        units = getattr(d, "units", None) or ""
        if append_units == "bare":
            name = f"{name} {units}".rstrip()
        elif append_units is not None:
            name = f"{name} ({units})" if units else name
        out.append(name)
    return out


def summarize(ds: Dataset, out: IO[str], *, read_all: bool = False) -> bool:
    layout = ds.layout
    mode = layout.data_mode
    out.write(f"file {ds.name} is in SDDS protocol version {ds.version}\n")
    out.write(f"description: {layout.description if layout.description is not None else 'N/A'}\n")
    out.write(f"contents: {layout.contents if layout.contents is not None else 'N/A'}\n")
    order = "column" if mode.column_major else "row"
    out.write(f"data is {mode.mode}, {order}-major")
    if mode.is_binary:
        out.write(f", {mode.endian}-endian")
    else:
        out.write(f", {mode.lines_per_row} line(s) per row")
    if mode.no_row_counts:
        out.write(", no row counts")
    out.write("\n")

    for kind, title in ((COLUMN, "columns"), (PARAMETER, "parameters"), (ARRAY, "arrays"), (ASSOCIATE, "associates")):
        n = layout.count(kind)
        if not n:
            continue
        out.write(f"\n{n} {title}:\n")
        out.write(layout_table(layout, kind).to_string(index=False))
        out.write("\n")

    if not read_all:
        return True
    pages = rows = 0
    while True:
        status = ds.read_page()
        if status <= 0:
            break
        pages += 1
        rows += ds.row_count()
    out.write(f"\n{pages} page(s), {rows} row(s)\n")
    return status == END_OF_STREAM


def build_parser():
    import argparse

    p = argparse.ArgumentParser(
        prog=PROG,
        allow_abbrev=False,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=__doc__,
    )
    p.add_argument("files", nargs="*", help="SDDS files to summarize")
    lists = p.add_mutually_exclusive_group()
    lists.add_argument("-columnList", "--column-list", dest="list_kind", action="store_const", const=COLUMN)
    lists.add_argument("-parameterList", "--parameter-list", dest="list_kind", action="store_const", const=PARAMETER)
    lists.add_argument("-arrayList", "--array-list", dest="list_kind", action="store_const", const=ARRAY)
    lists.add_argument("-associateList", "--associate-list", dest="list_kind", action="store_const", const=ASSOCIATE)
    p.add_argument("-delimiter", "--delimiter", dest="delimiter", default=None, help="Join listed names with this string")
    p.add_argument(
        "-appendUnits", "--append-units", dest="append_units", nargs="?", const="paren", default=None,
        help="Append units to listed names (-appendUnits=bare omits the parentheses)",
    )
    p.add_argument("-readAll", "--read-all", dest="read_all", action="store_true", help="Read every page and count rows")
    p.add_argument("-pipe", "--pipe", dest="pipe", nargs="?", const="", default=None, help="[input]")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        flags = parse_pipe_argument(args.pipe)
    except SddsError as exc:
        print(f"{PROG}: error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 1
    targets: List[Optional[str]] = list(args.files)
    if flags & USE_STDIN:
        if targets:
            print(f"{PROG}: error: filenames cannot be given with -pipe", file=sys.stderr)
            return 1
        targets = [None]
    if not targets:
        print(f"{PROG}: error: no input files", file=sys.stderr)
        return 1

    ok = True
    out = sys.stdout
    for i, target in enumerate(targets):
        ds = Dataset()
        if not ds.initialize_input(target):
            ds.print_errors(program=PROG)
            ds.terminate()
            ok = False
            continue
        if args.list_kind is not None:
            names = _names(ds.layout, args.list_kind, args.append_units)
            if args.delimiter is not None:
                out.write(args.delimiter.join(names) + "\n")
            else:
                out.writelines(n + "\n" for n in names)
        else:
            if i:
                out.write("\n")
            ok = summarize(ds, out, read_all=args.read_all) and ok
        ds.terminate()
        ds.print_errors(program=PROG)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
