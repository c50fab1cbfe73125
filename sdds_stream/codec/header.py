"""Header codec: ``&kind ... &end`` namelists <-> :class:`Layout`.

The reader consumes the header line by line from a binary byte source and
stops right after the line holding the ``&data`` clause, so that the data
codec starts exactly at the first page.

Accepted input
--------------
- version line ``SDDS1`` .. ``SDDS5`` (the writer always emits ``SDDS5``)
- meta commands ``!# little-endian``, ``!# big-endian``, ``!# fixed-rowcount``
- ``!`` comments (whole line or after the last unquoted field)
- clauses spanning several lines, keys in any order, ``,`` or blanks between fields

Everything else (unknown kinds including ``&include``, unknown keys, missing
``&end``, bad values) raises :class:`HeaderSyntaxError`.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import IO, Dict, List, Optional, Tuple

from ..models.config import NAME_POLICY_STRICT
from ..models.diagnostics import HeaderSyntaxError, SddsError
from ..models.layout import (
    ARRAY,
    ASSOCIATE,
    COLUMN,
    PARAMETER,
    DataMode,
    Layout,
)
from ..models.types import identify_type, type_name
from .tokens import quote, read_quoted, strip_comment, unescape

logger = logging.getLogger(__name__)

WRITE_VERSION = 5
_VERSION_LINE = re.compile(r"SDDS([1-5])\s*\Z")
_KEY = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

_KEYS: Dict[str, Tuple[str, ...]] = {
    "description": ("text", "contents"),
    PARAMETER: ("name", "symbol", "units", "description", "format_string", "type", "fixed_value"),
    COLUMN: ("name", "symbol", "units", "description", "format_string", "type", "field_length"),
    ARRAY: (
        "name", "symbol", "units", "description", "format_string", "type",
        "group_name", "field_length", "dimensions",
    ),
    ASSOCIATE: ("filename", "path", "description", "contents", "sdds"),
    "data": (
        "mode", "lines_per_row", "no_row_counts", "additional_header_lines",
        "column_major_order", "endian",
    ),
}


@dataclass
class HeaderResult:
    layout: Layout
    version: int
    # first non-header line of a textual file that has no &data clause
    pending_line: Optional[bytes] = None


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _scan_namelist(text: str) -> Optional[Tuple[str, List[Tuple[str, str]], str]]:
    """
    Parse one ``&kind key=value ... &end`` clause at the start of `text`.

    Returns (kind, [(key, value), ...], rest) or None when the clause is not
    complete yet (more lines needed).
    """
    i = 0
    n = len(text)
    m = re.match(r"\s*&([A-Za-z_]+)", text)
    if m is None:
        raise HeaderSyntaxError(f"expected '&kind', found {text.strip()[:40]!r}")
    kind = m.group(1).lower()
    if kind == "end":
        raise HeaderSyntaxError("'&end' without an open clause")
    i = m.end()
    pairs: List[Tuple[str, str]] = []
    while True:
        while i < n and (text[i].isspace() or text[i] == ","):
            i += 1
        if i >= n:
            return None
        if text[i:i + 4].lower() == "&end":
            return kind, pairs, text[i + 4:]
        if text[i] == "&":
            raise HeaderSyntaxError(f"&{kind} clause is missing '&end'")
        km = _KEY.match(text, i)
        if km is None:
            raise HeaderSyntaxError(f"bad field in &{kind}: {text[i:i + 40]!r}")
        key = km.group(0).lower()
        i = km.end()
        while i < n and text[i] in " \t":
            i += 1
        if i >= n:
            return None
        if text[i] != "=":
            raise HeaderSyntaxError(f"expected '=' after '{key}' in &{kind}")
        i += 1
        while i < n and text[i] in " \t":
            i += 1
        if i >= n:
            return None
        if text[i] == '"':
            value, i = read_quoted(text, i)
            if value is None:
                return None
        else:
            j = i
            while j < n and not text[j].isspace() and text[j] not in ",&":
                j += 1
            value = unescape(text[i:j])
            i = j
        pairs.append((key, value))


def _as_int(kind: str, key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise HeaderSyntaxError(f"&{kind} {key}={value!r} is not an integer") from None


def _as_flag(kind: str, key: str, value: str) -> bool:
    return _as_int(kind, key, value) != 0


def _apply_clause(
    layout: Layout,
    kind: str,
    pairs: List[Tuple[str, str]],
    data_fields: Dict[str, object],
) -> None:
    if kind not in _KEYS:
        raise HeaderSyntaxError(f"unknown header clause '&{kind}'")
    allowed = _KEYS[kind]
    fields: Dict[str, str] = {}
    for key, value in pairs:
        if key not in allowed:
            raise HeaderSyntaxError(f"unknown key '{key}' in &{kind}")
        if key in fields:
            raise HeaderSyntaxError(f"duplicate key '{key}' in &{kind}")
        fields[key] = value

    if kind == "description":
        layout.set_description(fields.get("text"), fields.get("contents"))
        return
    if kind == "data":
        data_fields.update(fields)
        return
    try:
        if kind == ASSOCIATE:
            if "filename" not in fields:
                raise HeaderSyntaxError("&associate needs 'filename'")
            layout.define_associate(
                fields["filename"],
                path=fields.get("path"),
                description=fields.get("description"),
                contents=fields.get("contents"),
                sdds=_as_flag(kind, "sdds", fields["sdds"]) if "sdds" in fields else False,
            )
            return
        for required in ("name", "type"):
            if required not in fields:
                raise HeaderSyntaxError(f"&{kind} needs '{required}'")
        t = identify_type(fields["type"])
        if t is None:
            raise HeaderSyntaxError(f"&{kind} '{fields['name']}' has unknown type '{fields['type']}'")
        common = dict(
            symbol=fields.get("symbol"),
            units=fields.get("units"),
            description=fields.get("description"),
            format_string=fields.get("format_string"),
        )
        if kind == PARAMETER:
            layout.define_parameter(fields["name"], t, fixed_value=fields.get("fixed_value"), **common)
        elif kind == COLUMN:
            layout.define_column(
                fields["name"], t,
                field_length=_as_int(kind, "field_length", fields.get("field_length", "0")),
                **common,
            )
        else:
            layout.define_array(
                fields["name"], t,
                group_name=fields.get("group_name"),
                field_length=_as_int(kind, "field_length", fields.get("field_length", "0")),
                dimensions=_as_int(kind, "dimensions", fields.get("dimensions", "1")),
                **common,
            )
    except HeaderSyntaxError:
        raise
    except SddsError as exc:
        raise HeaderSyntaxError(f"&{kind}: {exc.message}") from exc


def _data_mode(fields: Dict[str, object], endian: str) -> DataMode:
    mode = str(fields.get("mode", "ascii")).strip().lower()
    try:
        return DataMode(
            mode=mode,
            lines_per_row=_as_int("data", "lines_per_row", str(fields.get("lines_per_row", "1"))),
            no_row_counts=_as_flag("data", "no_row_counts", str(fields.get("no_row_counts", "0"))),
            additional_header_lines=_as_int(
                "data", "additional_header_lines", str(fields.get("additional_header_lines", "0"))
            ),
            column_major=_as_flag("data", "column_major_order", str(fields.get("column_major_order", "0"))),
            endian=str(fields.get("endian", endian)).strip().lower(),
        )
    except ValueError as exc:
        raise HeaderSyntaxError(f"&data: {exc}") from exc


def read_header(source: IO[bytes], *, name_policy: str = NAME_POLICY_STRICT) -> HeaderResult:
    """Read a header from a binary stream positioned at its start."""
    first = source.readline()
    if not first:
        raise HeaderSyntaxError("empty input: no SDDS header")
    vm = _VERSION_LINE.match(first.decode("latin-1").strip())
    if vm is None:
        raise HeaderSyntaxError(f"not an SDDS file (first line {first[:40]!r})")
    version = int(vm.group(1))

    layout = Layout(name_policy=name_policy)
    data_fields: Dict[str, object] = {}
    endian = "little"
    pending = ""
    while True:
        raw = source.readline()
        if not raw:
            if pending.strip():
                raise HeaderSyntaxError("header ends inside a clause (missing '&end')")
            logger.debug("header without &data clause; assuming textual row-major data")
            layout.set_data_mode(DataMode(endian=endian))
            return HeaderResult(layout, version)
        line = raw.decode("latin-1")
        stripped = line.strip()
        if not pending and stripped.startswith("!#"):
            meta = stripped[2:].strip().lower()
            if meta == "little-endian":
                endian = "little"
            elif meta == "big-endian":
                endian = "big"
            elif meta == "fixed-rowcount":
                logger.debug("fixed-rowcount meta command (row counts are read as usual)")
            else:
                raise HeaderSyntaxError(f"unknown meta command '{stripped}'")
            continue
        if not pending and (stripped == "" or stripped.startswith("!")):
            continue
        if not pending and not stripped.startswith("&"):
            # textual data begins without a &data clause
            layout.set_data_mode(DataMode(endian=endian))
            return HeaderResult(layout, version, pending_line=raw)

        pending += strip_comment(line.rstrip("\r\n")) + "\n"
        while pending.strip():
            scanned = _scan_namelist(pending)
            if scanned is None:
                break
            kind, pairs, rest = scanned
            _apply_clause(layout, kind, pairs, data_fields)
            pending = rest
            if kind == "data":
                if pending.strip():
                    raise HeaderSyntaxError("unexpected text after the &data clause")
                layout.set_data_mode(_data_mode(data_fields, endian))
                logger.debug("header read: %r", layout)
                return HeaderResult(layout, version)
        if not pending.strip():
            pending = ""


def parse_header(text: str, *, name_policy: str = NAME_POLICY_STRICT) -> Layout:
    """Parse header text (no data) into a layout."""
    return read_header(io.BytesIO(text.encode("latin-1")), name_policy=name_policy).layout


# ----------------------------------------------------------------------
# Emitting
# ----------------------------------------------------------------------


def _field(key: str, value: object) -> str:
    return f"{key}={quote(str(value))}, "


def _clause(kind: str, items: List[Tuple[str, object]]) -> str:
    body = "".join(_field(k, v) for k, v in items if v is not None)
    return f"&{kind} {body}&end\n"


def emit_header(layout: Layout) -> str:
    """Header text for `layout`, ending with the &data clause line."""
    dm = layout.data_mode
    out = [f"SDDS{WRITE_VERSION}\n", f"!# {dm.endian}-endian\n"]
    if layout.description is not None or layout.contents is not None:
        out.append(_clause("description", [("text", layout.description), ("contents", layout.contents)]))
    for p in layout.parameters:
        out.append(_clause(PARAMETER, [
            ("name", p.name),
            ("symbol", p.symbol),
            ("units", p.units),
            ("description", p.description),
            ("format_string", p.format_string),
            ("type", type_name(p.type)),
            ("fixed_value", p.fixed_value),
        ]))
    for a in layout.arrays:
        out.append(_clause(ARRAY, [
            ("name", a.name),
            ("symbol", a.symbol),
            ("units", a.units),
            ("description", a.description),
            ("format_string", a.format_string),
            ("group_name", a.group_name),
            ("type", type_name(a.type)),
            ("field_length", a.field_length or None),
            ("dimensions", a.dimensions),
        ]))
    for c in layout.columns:
        out.append(_clause(COLUMN, [
            ("name", c.name),
            ("symbol", c.symbol),
            ("units", c.units),
            ("description", c.description),
            ("format_string", c.format_string),
            ("type", type_name(c.type)),
            ("field_length", c.field_length or None),
        ]))
    for s in layout.associates:
        out.append(_clause(ASSOCIATE, [
            ("filename", s.filename),
            ("path", s.path),
            ("description", s.description),
            ("contents", s.contents),
            ("sdds", int(bool(s.sdds))),
        ]))
    out.append(_clause("data", [
        ("mode", dm.mode),
        ("lines_per_row", dm.lines_per_row if dm.lines_per_row != 1 else None),
        ("no_row_counts", 1 if dm.no_row_counts else None),
        ("additional_header_lines", dm.additional_header_lines or None),
        ("column_major_order", 1 if dm.column_major else None),
    ]))
    return "".join(out)


def write_header(layout: Layout) -> bytes:
    try:
        return emit_header(layout).encode("latin-1")
    except (UnicodeEncodeError, ValueError) as exc:
        raise HeaderSyntaxError(f"header cannot be encoded: {exc}") from exc
