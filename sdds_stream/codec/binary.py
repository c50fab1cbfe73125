"""Binary page codec.

Page layout (byte order from the layout's data mode, little-endian by default):

    int32 row count          (INT32_MIN then int64 when the count exceeds int32,
                              -1 in row-major no_row_counts mode)
    non-fixed parameters     declaration order, one scalar each
    arrays                   declaration order: int32 size per dimension, then elements
    columns                  row-major: R x C scalars; column-major: C x R scalars

Strings are an int32 byte length followed by latin-1 bytes; characters are one
byte.  In row-major no_row_counts mode each row is preceded by a marker byte 1
and the page ends with a marker byte 0.
"""

from __future__ import annotations

import logging
import struct
from typing import IO, Any, List, Optional, Sequence, Tuple

import numpy as np

from ..models.diagnostics import DataTruncatedError, SddsIOError, TypeMismatchError
from ..models.layout import Layout
from ..models.page import PageData, empty_vector
from ..models.types import SddsType, numpy_dtype, scan_value, type_is_numeric

logger = logging.getLogger(__name__)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
NO_ROW_COUNT = -1
ROW_MARKER = b"\x01"
END_MARKER = b"\x00"
READ_CHUNK_BYTES = 1 << 24


class _Short(Exception):
    """Source ended before the requested number of bytes."""


def _read_upto(source: IO[bytes], n: int) -> bytes:
    """Up to `n` bytes, read in bounded chunks so a corrupt count cannot force one huge allocation."""
    parts: List[bytes] = []
    remaining = n
    while remaining > 0:
        data = source.read(min(remaining, READ_CHUNK_BYTES))
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def _read_exact(source: IO[bytes], n: int) -> bytes:
    if n == 0:
        return b""
    data = source.read(n) if n <= READ_CHUNK_BYTES else _read_upto(source, n)
    if data is None or len(data) < n:
        raise _Short()
    return data


def _encode_string(value: Any) -> bytes:
    try:
        return ("" if value is None else str(value)).encode("latin-1")
    except UnicodeEncodeError as exc:
        raise TypeMismatchError(f"string {str(value)[:30]!r} cannot be encoded as latin-1") from exc


# ----------------------------------------------------------------------
# Scalars
# ----------------------------------------------------------------------


def _pack_scalar(value: Any, tag: SddsType, bo: str) -> bytes:
    if tag == SddsType.STRING:
        raw = _encode_string(value)
        return struct.pack(bo + "i", len(raw)) + raw
    if tag == SddsType.CHARACTER:
        raw = _encode_string(value)[:1]
        return raw if raw else b"\x00"
    return np.asarray(value, dtype=numpy_dtype(tag, bo)).tobytes()


def _unpack_scalar(source: IO[bytes], tag: SddsType, bo: str) -> Any:
    if tag == SddsType.STRING:
        (length,) = struct.unpack(bo + "i", _read_exact(source, 4))
        if length < 0:
            raise SddsIOError(f"corrupt page: negative string length {length}")
        return _read_exact(source, length).decode("latin-1")
    if tag == SddsType.CHARACTER:
        return _read_exact(source, 1).decode("latin-1")
    dt = numpy_dtype(tag, bo)
    value = np.frombuffer(_read_exact(source, dt.itemsize), dtype=dt)[0]
    return value.astype(dt.newbyteorder("="))


def _pack_vector(values: np.ndarray, tag: SddsType, bo: str) -> bytes:
    if type_is_numeric(tag):
        return np.ascontiguousarray(values, dtype=numpy_dtype(tag, bo)).tobytes()
    return b"".join(_pack_scalar(v, tag, bo) for v in values.reshape(-1).tolist())


def _unpack_vector(source: IO[bytes], tag: SddsType, bo: str, n: int) -> Tuple[np.ndarray, bool]:
    """Read up to `n` values; returns (values, complete)."""
    if type_is_numeric(tag):
        dt = numpy_dtype(tag, bo)
        data = _read_upto(source, n * dt.itemsize)
        got = len(data) // dt.itemsize
        arr = np.frombuffer(data[: got * dt.itemsize], dtype=dt).astype(dt.newbyteorder("="))
        return arr, got == n
    # text cells are collected as read; n may come from a corrupt count
    cells: List[Any] = []
    complete = True
    while len(cells) < n:
        try:
            cells.append(_unpack_scalar(source, tag, bo))
        except _Short:
            complete = False
            break
    out = empty_vector(tag, len(cells))
    if cells:
        out[:] = cells
    return out, complete


# ----------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------


def _row_dtype(layout: Layout, bo: str) -> Optional[np.dtype]:
    """Packed record dtype for one row, or None if any column is textual."""
    cols = layout.columns
    if not cols or not all(type_is_numeric(c.type) for c in cols):
        return None
    return np.dtype([(f"c{i}", numpy_dtype(c.type, bo)) for i, c in enumerate(cols)])


def encode_page(layout: Layout, data: PageData) -> bytes:
    """Serialize one page; the caller appends the result to the sink in one write."""
    dm = layout.data_mode
    bo = dm.byteorder
    n = int(data.n_rows)
    parts: List[bytes] = []

    per_row_markers = dm.no_row_counts and not dm.column_major
    if per_row_markers:
        parts.append(struct.pack(bo + "i", NO_ROW_COUNT))
    elif n > INT32_MAX:
        parts.append(struct.pack(bo + "iq", INT32_MIN, n))
    else:
        parts.append(struct.pack(bo + "i", n))

    for p, value in zip(layout.parameters, data.parameters):
        if p.fixed_value is None:
            parts.append(_pack_scalar(value, p.type, bo))

    for a, block in zip(layout.arrays, data.arrays):
        block = np.asarray(block)
        dims = block.shape if block.ndim == a.dimensions else (0,) * a.dimensions
        parts.append(struct.pack(bo + "%di" % a.dimensions, *dims))
        if block.size:
            parts.append(_pack_vector(block, a.type, bo))

    cols = layout.columns
    if dm.column_major:
        for c, values in zip(cols, data.columns):
            parts.append(_pack_vector(np.asarray(values)[:n], c.type, bo))
    else:
        rec = _row_dtype(layout, bo)
        if rec is not None and not per_row_markers:
            table = np.empty(n, dtype=rec)
            for i, values in enumerate(data.columns):
                table[f"c{i}"] = np.asarray(values)[:n]
            parts.append(table.tobytes())
        elif cols:
            for r in range(n):
                if per_row_markers:
                    parts.append(ROW_MARKER)
                for c, values in zip(cols, data.columns):
                    parts.append(_pack_scalar(values[r], c.type, bo))
        if per_row_markers:
            parts.append(END_MARKER)
    return b"".join(parts)


# ----------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------


def _keep_rows(columns: Sequence[np.ndarray], keep: int) -> Tuple[np.ndarray, ...]:
    return tuple(np.asarray(c)[:keep] for c in columns)


def _read_rows_fixed(source: IO[bytes], layout: Layout, bo: str, n: int) -> Tuple[List[np.ndarray], int]:
    rec = _row_dtype(layout, bo)
    data = _read_upto(source, n * rec.itemsize)
    got = len(data) // rec.itemsize
    table = np.frombuffer(data[: got * rec.itemsize], dtype=rec)
    columns = [
        table[f"c{i}"].astype(numpy_dtype(c.type)) for i, c in enumerate(layout.columns)
    ]
    return columns, got


def _read_rows_mixed(
    source: IO[bytes], layout: Layout, bo: str, n: Optional[int]
) -> Tuple[List[np.ndarray], int, bool]:
    """
    Row-by-row read for layouts with string columns or row markers.

    n=None means marker mode.  Returns (columns, rows_read, complete).
    """
    cols = layout.columns
    values: List[List[Any]] = [[] for _ in cols]
    rows = 0
    complete = True
    while n is None or rows < n:
        if n is None:
            marker = source.read(1)
            if not marker:
                complete = False
                break
            if marker == END_MARKER:
                break
            if marker != ROW_MARKER:
                raise SddsIOError(f"corrupt page: bad row marker {marker!r}")
        row: List[Any] = []
        try:
            for c in cols:
                row.append(_unpack_scalar(source, c.type, bo))
        except _Short:
            complete = False
            break
        for i, v in enumerate(row):
            values[i].append(v)
        rows += 1
    columns = []
    for c, vals in zip(cols, values):
        arr = empty_vector(c.type, len(vals))
        if vals:
            arr[:] = vals
        columns.append(arr)
    return columns, rows, complete


def decode_page(source: IO[bytes], layout: Layout, *, row_limit: Optional[int] = None) -> Optional[PageData]:
    """
    Read the next page.

    Returns None at a clean end of stream.  Raises DataTruncatedError when the
    page ends early (``partial`` carries complete rows when recoverable) and
    SddsIOError on corrupt structure.
    """
    dm = layout.data_mode
    bo = dm.byteorder
    head = source.read(4)
    if not head:
        return None
    if len(head) < 4:
        raise DataTruncatedError("page ends inside its row count")
    (n,) = struct.unpack(bo + "i", head)
    marker_mode = False
    if n == INT32_MIN:
        try:
            (n,) = struct.unpack(bo + "q", _read_exact(source, 8))
        except _Short:
            raise DataTruncatedError("page ends inside its 64-bit row count") from None
    elif n == NO_ROW_COUNT and dm.no_row_counts and not dm.column_major:
        marker_mode = True
    if n < 0 and not marker_mode:
        raise SddsIOError(f"corrupt page: negative row count {n}")

    try:
        parameters = []
        for p in layout.parameters:
            if p.fixed_value is not None:
                parameters.append(scan_value(p.fixed_value, p.type))
            else:
                parameters.append(_unpack_scalar(source, p.type, bo))
        arrays = []
        for a in layout.arrays:
            dims = struct.unpack(bo + "%di" % a.dimensions, _read_exact(source, 4 * a.dimensions))
            if any(d < 0 for d in dims):
                raise SddsIOError(f"corrupt page: negative dimension in array '{a.name}'")
            count = int(np.prod(dims)) if dims else 0
            block, complete = _unpack_vector(source, a.type, bo, count)
            if not complete:
                raise _Short()
            arrays.append(block.reshape(dims))
    except _Short:
        raise DataTruncatedError("page ends inside its parameters or arrays") from None

    cols = layout.columns
    complete = True
    if marker_mode:
        columns, rows, complete = _read_rows_mixed(source, layout, bo, None)
    elif dm.column_major:
        columns = []
        rows = n
        for c in cols:
            values, ok = _unpack_vector(source, c.type, bo, n)
            columns.append(values)
            if not ok:
                complete = False
                rows = min(rows, len(values))
                break
        if not complete:
            # rows are only whole when every column reached them
            rows = 0 if len(columns) < len(cols) else rows
            columns = list(columns) + [empty_vector(c.type, 0) for c in cols[len(columns):]]
    elif not cols:
        columns, rows = [], n
    elif _row_dtype(layout, bo) is not None:
        columns, rows = _read_rows_fixed(source, layout, bo, n)
        complete = rows == n
    else:
        columns, rows, complete = _read_rows_mixed(source, layout, bo, n)

    keep = rows if row_limit is None else min(rows, int(row_limit))
    data = PageData(
        parameters=tuple(parameters),
        arrays=tuple(arrays),
        columns=_keep_rows(columns, keep),
        n_rows=keep,
        rows_dropped=rows - keep,
    )
    if not complete:
        logger.debug("binary page truncated after %d of %s rows", rows, "?" if marker_mode else n)
        raise DataTruncatedError(
            f"page ends after {rows} complete row(s)"
            + ("" if marker_mode else f" of {n}"),
            rows_read=keep,
            recoverable=True,
            partial=data,
        )
    return data
