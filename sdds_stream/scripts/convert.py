"""sdds-convert: rewrite an SDDS stream with another data mode, page selection or entity selection.

Examples
--------
    sdds-convert in.sdds out.sdds -ascii
    sdds-convert in.sdds -removePages=2,4                 (in-place, keeps in.sdds~)
    sdds-convert in.sdds out.sdds -delete=column,tmp* -rename=column,x=xFiltered
    cat in.sdds | sdds-convert -pipe -binary -majorOrder=column > out.sdds
"""

from __future__ import annotations

import fnmatch
import sys
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.config import NAME_POLICY_RELAXED, default_config
from ..models.diagnostics import SddsError, UsageError
from ..models.layout import ARRAY, ASSOCIATE, COLUMN, PARAMETER, DataMode
from ..stream.controller import PageFilter, parse_page_list
from ..stream.dataset import END_OF_STREAM, PAGE_TRUNCATED, Dataset
from .filenames import parse_pipe_argument, process_filenames

PROG = "sdds-convert"
_KINDS = {"column": COLUMN, "parameter": PARAMETER, "array": ARRAY}


def _kind_and_items(text: str, option: str) -> Tuple[str, List[str]]:
    parts = text.split(",")
    if len(parts) < 2:
        raise UsageError(f"-{option} needs <column|parameter|array>,<name>[,...]")
    key = parts[0].strip().lower()
    kinds = [k for k in _KINDS if key and k.startswith(key)]
    if len(kinds) != 1:
        raise UsageError(f"-{option}: unknown entity kind '{parts[0]}'")
    return _KINDS[kinds[0]], [p.strip() for p in parts[1:] if p.strip()]


class Selection:
    """Names to keep and renames per entity kind, from -delete/-retain/-rename."""

    def __init__(self) -> None:
        self.delete: Dict[str, List[str]] = {k: [] for k in _KINDS.values()}
        self.retain: Dict[str, List[str]] = {k: [] for k in _KINDS.values()}
        self.rename: Dict[str, Dict[str, str]] = {k: {} for k in _KINDS.values()}

    def add_delete(self, text: str) -> None:
        kind, items = _kind_and_items(text, "delete")
        self.delete[kind].extend(items)

    def add_retain(self, text: str) -> None:
        kind, items = _kind_and_items(text, "retain")
        self.retain[kind].extend(items)

    def add_rename(self, text: str) -> None:
        kind, items = _kind_and_items(text, "rename")
        for item in items:
            if "=" not in item:
                raise UsageError(f"-rename: expected old=new, got '{item}'")
            old, new = item.split("=", 1)
            self.rename[kind][old.strip()] = new.strip()

    def keeps(self, kind: str, name: str) -> bool:
        retain = self.retain[kind]
        if retain and not any(fnmatch.fnmatchcase(name, p) for p in retain):
            return False
        return not any(fnmatch.fnmatchcase(name, p) for p in self.delete[kind])

    def new_name(self, kind: str, name: str) -> str:
        return self.rename[kind].get(name, name)


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
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-binary", "--binary", dest="mode", action="store_const", const="binary", help="Write binary pages")
    mode.add_argument("-ascii", "--ascii", dest="mode", action="store_const", const="ascii", help="Write textual pages")
    p.add_argument("-fromPage", "--from-page", dest="from_page", type=int, default=None, help="First page to copy")
    p.add_argument("-toPage", "--to-page", dest="to_page", type=int, default=None, help="Last page to copy")
    sel = p.add_mutually_exclusive_group()
    sel.add_argument("-removePages", "--remove-pages", dest="remove_pages", default=None, help="Pages to drop, e.g. 2,4-6")
    sel.add_argument("-keepPages", "--keep-pages", dest="keep_pages", default=None, help="Pages to keep, e.g. 1,3")
    p.add_argument(
        "-recover", "--recover", dest="recover", nargs="?", const="recover", default=None,
        help="Keep the readable part of a truncated last page (-recover=clip drops it instead)",
    )
    p.add_argument("-rowlimit", "--row-limit", dest="row_limit", type=int, default=None, help="Keep at most this many rows per page")
    p.add_argument("-majorOrder", "--major-order", dest="major_order", choices=("row", "column"), default=None)
    p.add_argument("-linesperrow", "--lines-per-row", dest="lines_per_row", type=int, default=None)
    p.add_argument("-noRowCounts", "--no-row-counts", dest="no_row_counts", action="store_true")
    p.add_argument("-delete", "--delete", dest="delete", action="append", default=[], help="<kind>,<pattern>[,...]")
    p.add_argument("-retain", "--retain", dest="retain", action="append", default=[], help="<kind>,<pattern>[,...]")
    p.add_argument("-rename", "--rename", dest="rename", action="append", default=[], help="<kind>,<old>=<new>[,...]")
    p.add_argument("-description", "--description", dest="description", default=None, help="<text>[,<contents>]")
    p.add_argument("-acceptAllNames", "--accept-all-names", dest="accept_all_names", action="store_true")
    p.add_argument("-noWarnings", "--no-warnings", dest="no_warnings", action="store_true")
    p.add_argument("-pipe", "--pipe", dest="pipe", nargs="?", const="", default=None, help="[input][,output]")
    return p


def _output_mode(ns, source: DataMode) -> DataMode:
    mode = ns.mode or source.mode
    column_major = source.column_major if ns.major_order is None else ns.major_order == "column"
    lines_per_row = ns.lines_per_row if ns.lines_per_row is not None else (
        source.lines_per_row if mode == "ascii" else 1
    )
    try:
        return DataMode(
            mode=mode,
            lines_per_row=lines_per_row,
            no_row_counts=bool(ns.no_row_counts),
            column_major=column_major,
        )
    except ValueError as exc:
        raise UsageError(str(exc)) from exc


def _define_output(out: Dataset, src: Dataset, selection: Selection) -> bool:
    ok = True
    for kind, transfer in (
        (PARAMETER, out.transfer_parameter_definition),
        (ARRAY, out.transfer_array_definition),
        (COLUMN, out.transfer_column_definition),
    ):
        for name in src.layout.names(kind):
            if selection.keeps(kind, name):
                ok = transfer(src, name, selection.new_name(kind, name)) and ok
    for name in src.layout.names(ASSOCIATE):
        ok = out.transfer_associate_definition(src, name) and ok
    return ok


def _copy_renamed(out: Dataset, src: Dataset, selection: Selection) -> bool:
    """Values of renamed entities (copy_page only matches identical names)."""
    ok = True
    for old, new in selection.rename[PARAMETER].items():
        if out.layout.has(PARAMETER, new) and src.layout.has(PARAMETER, old):
            ok = out.set_parameter(new, src.get_parameter(old)) and ok
    for old, new in selection.rename[ARRAY].items():
        if out.layout.has(ARRAY, new) and src.layout.has(ARRAY, old):
            ok = out.set_array(new, src.get_array(old)) and ok
    for old, new in selection.rename[COLUMN].items():
        if out.layout.has(COLUMN, new) and src.layout.has(COLUMN, old):
            ok = out.set_column(new, src.get_internal_column(old)) and ok
    return ok


def convert(ns) -> int:
    flags = parse_pipe_argument(ns.pipe)
    targets = process_filenames(PROG, ns.input, ns.output, flags, no_warnings=ns.no_warnings)
    for w in targets.warnings:
        print(f"warning: {w}", file=sys.stderr)

    selection = Selection()
    for text in ns.delete:
        selection.add_delete(text)
    for text in ns.retain:
        selection.add_retain(text)
    for text in ns.rename:
        selection.add_rename(text)
    try:
        page_filter = PageFilter(
            from_page=ns.from_page,
            to_page=ns.to_page,
            keep_pages=parse_page_list(ns.keep_pages) if ns.keep_pages else (),
            remove_pages=parse_page_list(ns.remove_pages) if ns.remove_pages else (),
        )
    except ValueError as exc:
        raise UsageError(str(exc)) from exc

    config = default_config()
    if ns.accept_all_names:
        config = replace(config, name_policy=NAME_POLICY_RELAXED)
    if ns.row_limit is not None:
        config = replace(config, row_limit=ns.row_limit if ns.row_limit > 0 else None)

    src = Dataset(config)
    if not src.initialize_input(targets.input, page_filter=page_filter):
        src.print_errors(program=PROG)
        src.terminate()
        return 1

    description, contents = src.layout.description, src.layout.contents
    if ns.description is not None:
        text, _, rest = ns.description.partition(",")
        description, contents = text, (rest or None)

    out = Dataset(config)
    ok = out.initialize_output(
        targets.output,
        data_mode=_output_mode(ns, src.layout.data_mode),
        description=description,
        contents=contents,
        in_place=targets.in_place,
    ) and _define_output(out, src, selection)

    while ok:
        n = src.read_page()
        if n == END_OF_STREAM:
            break
        if n == PAGE_TRUNCATED:
            if ns.recover is not None and src.read_recovery_possible():
                src.clear_errors()
                if ns.recover != "clip":
                    ok = out.copy_page(src) and _copy_renamed(out, src, selection) and out.write_page()
                if not ns.no_warnings:
                    print(f"warning: {PROG}: truncated final page of {src.name} "
                          f"{'dropped' if ns.recover == 'clip' else 'recovered'}", file=sys.stderr)
            else:
                ok = False
            break
        if n < 0:
            ok = False
            break
        ok = out.copy_page(src) and _copy_renamed(out, src, selection) and out.write_page()

    src.terminate()
    done = out.terminate(abort=not ok)
    src.print_errors(program=PROG, include_warnings=not ns.no_warnings)
    out.print_errors(program=PROG, include_warnings=not ns.no_warnings)
    return 0 if ok and done else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    ns = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        return convert(ns)
    except SddsError as exc:
        print(f"{PROG}: error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
