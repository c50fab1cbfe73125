"""Textual page codec.

Each page is written as::

    ! page number N
    <one line per non-fixed parameter>
    <per array: a line of dimension sizes, then the elements, ten per line>
    <row count>                       (absent in no_row_counts mode)
    <rows>                            row-major: one row over lines_per_row lines
                                      column-major: one line per column
    <blank line>

Cells are separated by blanks; text values follow the quoting rule of
:mod:`sdds_stream.codec.tokens`.  In no_row_counts mode the blank line ends the
page; the ``! page number`` line also marks where a new page begins, so a
page with no parameters, arrays or rows survives the round trip.
"""

from __future__ import annotations

import logging
import math
from typing import IO, Any, List, Optional, Tuple

import numpy as np

from ..models.diagnostics import DataTruncatedError, SddsError, SddsIOError, TypeMismatchError
from ..models.layout import Layout
from ..models.page import PageData, empty_vector
from ..models.types import SddsType, cast_array, format_value, scan_value
from .tokens import quote, split_tokens

logger = logging.getLogger(__name__)

ARRAY_VALUES_PER_LINE = 10
PAGE_MARKER = "! page number"


class LineReader:
    """Line-oriented view of a binary byte source with single-line pushback."""

    def __init__(self, source: IO[bytes], pending: Optional[bytes] = None):
        self.source = source
        self._pending = pending

    def next_line(self) -> Optional[str]:
        if self._pending is not None:
            raw, self._pending = self._pending, None
        else:
            raw = self.source.readline()
        if not raw:
            return None
        return raw.decode("latin-1").rstrip("\r\n")

    def push_back(self, line: str) -> None:
        self._pending = (line + "\n").encode("latin-1")

    def next_content_line(self) -> Optional[str]:
        """Next line that is neither blank nor a ``!`` comment; None at end of input."""
        while True:
            line = self.next_line()
            if line is None:
                return None
            s = line.strip()
            if s and not s.startswith("!"):
                return line

    def next_page_start(self) -> Tuple[bool, Optional[str]]:
        """
        Advance to the start of the next page.

        Returns ``(True, None)`` after a page marker line, ``(False, line)``
        at the first content line of an unmarked page, and ``(False, None)``
        at end of input.  A marker with nothing after it counts as end of
        input.
        """
        while True:
            line = self.next_line()
            if line is None:
                return False, None
            s = line.strip()
            if s.startswith(PAGE_MARKER):
                following = self.next_line()
                if following is None:
                    return False, None
                self.push_back(following)
                return True, None
            if s and not s.startswith("!"):
                return False, line

    def skip(self, n: int) -> None:
        for _ in range(int(n)):
            if self.next_line() is None:
                return


class _EndOfInput(Exception):
    pass


class _TokenStream:
    """Tokens across lines, skipping comments; blank lines optionally end the stream."""

    def __init__(self, lines: LineReader):
        self.lines = lines
        self.buffer: List[str] = []

    def fill_line(self, *, stop_at_blank: bool) -> bool:
        """Append the tokens of the next content line; False at a blank line (if stopping) or EOF."""
        while True:
            line = self.lines.next_line()
            if line is None:
                raise _EndOfInput()
            s = line.strip()
            if not s:
                if stop_at_blank:
                    return False
                continue
            if s.startswith(PAGE_MARKER) and stop_at_blank:
                self.lines.push_back(line)
                return False
            if s.startswith("!"):
                continue
            self.buffer.extend(_split(line))
            return True

    def take(self, n: int, *, stop_at_blank: bool = False) -> Optional[List[str]]:
        """n tokens, or None when a blank line ends the page first."""
        while len(self.buffer) < n:
            if not self.fill_line(stop_at_blank=stop_at_blank):
                return None
        out, self.buffer = self.buffer[:n], self.buffer[n:]
        return out


def _split(line: str) -> List[str]:
    try:
        return split_tokens(line)
    except ValueError as exc:
        raise SddsIOError(f"corrupt page: {exc}") from exc


# ----------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------


def _cell(value: Any, tag: SddsType, format_string: Optional[str]) -> str:
    if tag in (SddsType.STRING, SddsType.CHARACTER):
        return quote(format_value(value, tag))
    return format_value(value, tag, format_string).strip()


def encode_page(layout: Layout, data: PageData, page_number: int) -> bytes:
    dm = layout.data_mode
    n = int(data.n_rows)
    lines: List[str] = [f"! page number {int(page_number)}"]

    for p, value in zip(layout.parameters, data.parameters):
        if p.fixed_value is None:
            lines.append(_cell(value, p.type, p.format_string))

    for a, block in zip(layout.arrays, data.arrays):
        block = np.asarray(block)
        dims = block.shape if block.ndim == a.dimensions else (0,) * a.dimensions
        lines.append(" ".join(str(int(d)) for d in dims))
        cells = [_cell(v, a.type, a.format_string) for v in block.reshape(-1).tolist()]
        for i in range(0, len(cells), ARRAY_VALUES_PER_LINE):
            lines.append(" ".join(cells[i:i + ARRAY_VALUES_PER_LINE]))

    cols = layout.columns
    if not dm.no_row_counts:
        lines.append(str(n))
    if cols and n:
        rendered = [
            [_cell(v, c.type, c.format_string) for v in np.asarray(values)[:n].tolist()]
            for c, values in zip(cols, data.columns)
        ]
        if dm.column_major:
            lines.extend(" ".join(cells) for cells in rendered)
        else:
            per_line = int(math.ceil(len(cols) / dm.lines_per_row))
            for r in range(n):
                row = [rendered[k][r] for k in range(len(cols))]
                for i in range(0, len(row), per_line):
                    lines.append(" ".join(row[i:i + per_line]))
    lines.append("")
    try:
        return ("\n".join(lines) + "\n").encode("latin-1")
    except UnicodeEncodeError as exc:
        raise TypeMismatchError(f"page text cannot be encoded as latin-1: {exc}") from exc


def encode_preamble(layout: Layout) -> bytes:
    """Placeholder lines declared by additional_header_lines."""
    return b"\n" * int(layout.data_mode.additional_header_lines)


# ----------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------


def _scan(text: str, tag: SddsType, what: str) -> Any:
    try:
        return scan_value(text, tag)
    except (SddsError, ValueError) as exc:
        raise SddsIOError(f"corrupt page: bad value for {what}: {exc}") from exc


def _parameter_value(line: str, tag: SddsType, name: str) -> Any:
    s = line.strip()
    if tag == SddsType.STRING and not s.startswith('"'):
        # unquoted text parameters take the whole line
        return s
    tokens = _split(line)
    if not tokens:
        raise SddsIOError(f"corrupt page: no value for parameter '{name}'")
    return _scan(tokens[0], tag, f"parameter '{name}'")


def _vector(tokens: List[str], tag: SddsType, what: str) -> np.ndarray:
    try:
        return cast_array(np.array(tokens, dtype=object), tag)
    except (SddsError, ValueError) as exc:
        raise SddsIOError(f"corrupt page: bad value in {what}: {exc}") from exc


def _rows_from_tokens(layout: Layout, rows: List[List[str]]) -> List[np.ndarray]:
    columns = []
    for k, c in enumerate(layout.columns):
        if rows:
            columns.append(_vector([r[k] for r in rows], c.type, f"column '{c.name}'"))
        else:
            columns.append(empty_vector(c.type, 0))
    return columns


def decode_page(lines: LineReader, layout: Layout, *, row_limit: Optional[int] = None) -> Optional[PageData]:
    """
    Read the next textual page.

    Returns None at a clean end of input.  Raises DataTruncatedError when the
    input ends inside a page (``partial`` set when parameters and arrays were
    complete) and SddsIOError on values that cannot be parsed.
    """
    dm = layout.data_mode
    marked, first = lines.next_page_start()
    if first is None and not marked:
        return None
    stream = _TokenStream(lines)
    pending: Optional[str] = first

    def content_line() -> str:
        nonlocal pending
        if pending is not None:
            line, pending = pending, None
            return line
        line = lines.next_content_line()
        if line is None:
            raise _EndOfInput()
        return line

    try:
        parameters = []
        for p in layout.parameters:
            if p.fixed_value is not None:
                parameters.append(scan_value(p.fixed_value, p.type))
            else:
                parameters.append(_parameter_value(content_line(), p.type, p.name))
        arrays = []
        for a in layout.arrays:
            dim_tokens = _split(content_line())
            if len(dim_tokens) != a.dimensions:
                raise SddsIOError(
                    f"corrupt page: array '{a.name}' expects {a.dimensions} dimension(s), got {dim_tokens}"
                )
            try:
                dims = tuple(int(t) for t in dim_tokens)
            except ValueError:
                raise SddsIOError(f"corrupt page: bad dimensions {dim_tokens} for array '{a.name}'") from None
            count = int(np.prod(dims))
            values = stream.take(count) if count else []
            arrays.append(_vector(values, a.type, f"array '{a.name}'").reshape(dims))
        n: Optional[int] = None
        if not dm.no_row_counts:
            if stream.buffer:
                raise SddsIOError("corrupt page: extra array values before the row count")
            count_tokens = _split(content_line())
            try:
                n = int(count_tokens[0])
            except (IndexError, ValueError):
                raise SddsIOError(f"corrupt page: bad row count line {count_tokens}") from None
            if n < 0:
                raise SddsIOError(f"corrupt page: negative row count {n}")
    except _EndOfInput:
        raise DataTruncatedError("input ends inside page parameters or arrays") from None

    if pending is not None:
        # the first content line was consumed by nothing: only possible with no parameters/arrays
        stream.buffer.extend(_split(pending))
        pending = None

    head = PageData(tuple(parameters), tuple(arrays), (), 0)
    cols = layout.columns
    rows: List[List[str]] = []
    complete = True
    try:
        if not cols:
            pass
        elif dm.column_major:
            rows = _read_column_major(stream, layout, n)
        else:
            while n is None or len(rows) < n:
                row = stream.take(len(cols), stop_at_blank=n is None)
                if row is None:
                    break
                rows.append(row)
    except _EndOfInput:
        complete = n is None and not stream.buffer and not dm.column_major

    keep = len(rows) if row_limit is None else min(len(rows), int(row_limit))
    data = PageData(
        parameters=head.parameters,
        arrays=head.arrays,
        columns=tuple(_rows_from_tokens(layout, rows[:keep])),
        n_rows=keep,
        rows_dropped=len(rows) - keep,
    )
    if not complete:
        logger.debug("textual page truncated after %d rows", len(rows))
        raise DataTruncatedError(
            f"page ends after {len(rows)} complete row(s)" + ("" if n is None else f" of {n}"),
            rows_read=keep,
            recoverable=True,
            partial=data,
        )
    return data


def _read_column_major(stream: _TokenStream, layout: Layout, n: Optional[int]) -> List[List[str]]:
    cols = layout.columns
    per_column: List[List[str]] = []
    for k, _c in enumerate(cols):
        if n is None:
            if k == 0:
                if not stream.buffer and not stream.fill_line(stop_at_blank=True):
                    return []
                n = len(stream.buffer)
            values = stream.take(n, stop_at_blank=True)
            if values is None:
                raise SddsIOError("corrupt page: blank line inside a column-major page")
        else:
            values = stream.take(n) if n else []
        per_column.append(values)
    return [[per_column[k][r] for k in range(len(cols))] for r in range(n or 0)]
