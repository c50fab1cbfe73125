"""Dataset -- the uniform accessor surface every tool is built on.

A :class:`Dataset` is either a reader (``initialize_input``) or a writer
(``initialize_output`` / ``initialize_copy``).  It exclusively owns its layout,
page buffer and byte source/sink until :meth:`Dataset.terminate`.

Every public operation returns a success flag (or None / -1 for lookups) and
records what went wrong on :attr:`Dataset.errors`; internal
:class:`~sdds_stream.models.diagnostics.SddsError` exceptions never escape,
except from :meth:`Dataset.raise_if_errors` and the ``open_read`` /
``open_write`` conveniences.

Typical read loop::

    ds = Dataset.open_read("in.sdds")
    while ds.read_page() > 0:
        x = ds.get_column_in_doubles("x")
    ds.terminate()
"""

from __future__ import annotations

import fnmatch
import functools
import logging
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar, Union

import numpy as np
import pandas as pd

from ..codec import ascii as ascii_codec
from ..codec import binary as binary_codec
from ..codec.header import read_header, write_header
from ..models.config import StreamConfig, default_config
from ..models.diagnostics import (
    DataTruncatedError,
    DiagnosticQueue,
    ErrorKind,
    LayoutLockedError,
    NameUnknownError,
    SddsError,
    SddsIOError,
    TypeMismatchError,
    UsageError,
)
from ..models.layout import ARRAY, ASSOCIATE, COLUMN, KINDS, PARAMETER, DataMode, Layout
from ..models.page import PageBuffer, PageData, empty_vector
from ..models.types import (
    SddsType,
    TypeLike,
    cast_array,
    convert,
    default_format,
    format_value,
    type_from_dtype,
    type_is_numeric,
)
from .controller import ByteSink, ByteSource, PageFilter, Target, TempRewrite, open_sink, open_source

logger = logging.getLogger(__name__)

Key = Union[str, int]
_T = TypeVar("_T")

# read_page() results
PAGE_TRUNCATED = 0
END_OF_STREAM = -1
READ_ERROR = -2

_FILTER_LOGIC = ("and", "or", "replace")


def _reports(default: Any) -> Callable[[Callable[..., _T]], Callable[..., _T]]:
    """Turn SddsError raised by a public method into a queued diagnostic plus `default`."""

    def wrap(method: Callable[..., _T]) -> Callable[..., _T]:
        @functools.wraps(method)
        def inner(self: "Dataset", *args: Any, **kwargs: Any) -> Any:
            try:
                return method(self, *args, **kwargs)
            except SddsError as exc:
                self.errors.add_error(exc)
                return default

        return inner

    return wrap


def _as_data_mode(mode: Union[str, DataMode, None], fallback: Optional[DataMode] = None) -> DataMode:
    if isinstance(mode, DataMode):
        return mode
    if mode is None:
        return fallback if fallback is not None else DataMode(mode="binary")
    try:
        return DataMode(mode=str(mode).lower())
    except ValueError as exc:
        raise UsageError(str(exc)) from exc


class Dataset:
    """One SDDS stream, opened at most once for reading or writing and terminated exactly once."""

    def __init__(self, config: Optional[StreamConfig] = None):
        self.config = config if config is not None else default_config()
        self.errors = DiagnosticQueue()
        self.layout = Layout(name_policy=self.config.name_policy)
        self.page = PageBuffer(self.layout)
        self.mode: Optional[str] = None
        self.name: Optional[str] = None
        self.version: Optional[int] = None
        self.page_filter = PageFilter()

        self._auto_recover = bool(self.config.auto_recover)
        self._row_limit = self.config.row_limit or None
        self._source: Optional[ByteSource] = None
        self._lines: Optional[ascii_codec.LineReader] = None
        self._sink: Optional[ByteSink] = None
        self._rewrite: Optional[TempRewrite] = None
        self._ended = False
        self._recovery_possible = False
        self._pages_read = 0
        self._pages_written = 0
        self._written_layout: Optional[Layout] = None
        self._written_columns: List[int] = []
        self._write_failed = False
        self._terminated = False

    def __repr__(self) -> str:
        return f"Dataset(name={self.name!r}, mode={self.mode!r}, layout={self.layout!r})"

    # ------------------------------------------------------------------
    # Internal state checks
    # ------------------------------------------------------------------

    def _set_layout(self, layout: Layout) -> None:
        self.layout = layout
        self.page = PageBuffer(layout)

    def _require_mode(self, mode: str) -> None:
        if self.mode is None:
            raise UsageError("dataset is not open")
        if self._terminated:
            raise UsageError("dataset was terminated")
        if self.mode != mode:
            what = "reader" if mode == "r" else "writer"
            raise UsageError(f"operation needs a {what}; this dataset is opened for {'reading' if self.mode == 'r' else 'writing'}")

    def _require_definable(self) -> None:
        self._require_mode("w")
        if self.layout.locked:
            raise LayoutLockedError("layout cannot change after the first page was written")
        if self.page.active:
            raise UsageError("define entities before start_page()")

    def _require_page(self) -> None:
        if not self.page.active:
            raise UsageError("no current page")

    def _require_unopened(self) -> None:
        if self.mode is not None:
            raise UsageError("dataset is already open")

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    @_reports(False)
    def initialize_input(self, source: Target = None, *, page_filter: Optional[PageFilter] = None) -> bool:
        """Open `source` (path, None/'-' for stdin, or binary stream) and read its header."""
        self._require_unopened()
        self.mode = "r"
        self._source = open_source(source)
        self.name = self._source.name
        if page_filter is not None:
            self.page_filter = page_filter
        result = read_header(self._source, name_policy=self.config.name_policy)
        self.version = result.version
        self._set_layout(result.layout)
        if not self.layout.data_mode.is_binary:
            self._lines = ascii_codec.LineReader(self._source, result.pending_line)
            self._lines.skip(self.layout.data_mode.additional_header_lines)
        logger.debug("opened %s for reading: %r", self.name, self.layout)
        return True

    @_reports(False)
    def initialize_output(
        self,
        sink: Target = None,
        *,
        data_mode: Union[str, DataMode, None] = None,
        description: Optional[str] = None,
        contents: Optional[str] = None,
        in_place: bool = False,
    ) -> bool:
        """
        Open `sink` for writing with an empty layout.

        data_mode: "binary" (default), "ascii" or a :class:`DataMode`.
        in_place: write through a temporary file that replaces `sink` on terminate.
        """
        self._require_unopened()
        self.mode = "w"
        mode = _as_data_mode(data_mode)
        if in_place:
            if not isinstance(sink, (str, Path)) or str(sink) == "-":
                raise UsageError("in-place rewrite needs a file path")
            self._rewrite = TempRewrite(sink)
            self._sink = self._rewrite.open()
        else:
            self._sink = open_sink(sink)
        self.name = str(sink) if isinstance(sink, (str, Path)) else self._sink.name
        self._set_layout(Layout(description, contents, mode, name_policy=self.config.name_policy))
        return True

    @_reports(False)
    def initialize_copy(
        self,
        source: Dataset,
        sink: Target = None,
        mode: str = "w",
        *,
        data_mode: Union[str, DataMode, None] = None,
        in_place: bool = False,
    ) -> bool:
        """Open a writer whose layout equals `source`'s (data mode optionally overridden)."""
        if mode != "w":
            raise UsageError(f"unsupported copy mode {mode!r} (only 'w')")
        if source.mode is None:
            raise UsageError("source dataset is not open")
        dm = _as_data_mode(data_mode, source.layout.data_mode)
        if not self.initialize_output(
            sink,
            data_mode=dm,
            description=source.layout.description,
            contents=source.layout.contents,
            in_place=in_place,
        ):
            return False
        layout = source.layout.copy()
        layout.name_policy = self.config.name_policy
        layout.data_mode = dm
        self._set_layout(layout)
        return True

    @classmethod
    def open_read(
        cls,
        source: Target = None,
        *,
        config: Optional[StreamConfig] = None,
        page_filter: Optional[PageFilter] = None,
    ) -> Dataset:
        """Reader convenience: raises :class:`SddsError` instead of returning False."""
        ds = cls(config)
        if not ds.initialize_input(source, page_filter=page_filter):
            errors = ds.errors.drain()
            ds.terminate()
            _raise_first(errors)
        return ds

    @classmethod
    def open_write(
        cls,
        sink: Target = None,
        *,
        config: Optional[StreamConfig] = None,
        data_mode: Union[str, DataMode, None] = None,
        description: Optional[str] = None,
        contents: Optional[str] = None,
        in_place: bool = False,
    ) -> Dataset:
        """Writer convenience: raises :class:`SddsError` instead of returning False."""
        ds = cls(config)
        if not ds.initialize_output(
            sink, data_mode=data_mode, description=description, contents=contents, in_place=in_place
        ):
            errors = ds.errors.drain()
            ds.terminate(abort=True)
            _raise_first(errors)
        return ds

    def __enter__(self) -> Dataset:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.terminate(abort=exc_type is not None)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    @_reports(-1)
    def define_parameter(self, name: str, type: TypeLike, **meta: Any) -> int:
        """Returns the new parameter's index, or -1."""
        self._require_definable()
        return self.layout.define_parameter(name, type, **meta)

    @_reports(-1)
    def define_column(self, name: str, type: TypeLike, **meta: Any) -> int:
        self._require_definable()
        return self.layout.define_column(name, type, **meta)

    def define_simple_column(self, name: str, units: Optional[str], type: TypeLike) -> int:
        return self.define_column(name, type, units=units)

    def define_simple_parameter(self, name: str, units: Optional[str], type: TypeLike) -> int:
        return self.define_parameter(name, type, units=units)

    @_reports(-1)
    def define_array(self, name: str, type: TypeLike, **meta: Any) -> int:
        self._require_definable()
        return self.layout.define_array(name, type, **meta)

    @_reports(-1)
    def define_associate(self, filename: str, **meta: Any) -> int:
        self._require_definable()
        return self.layout.define_associate(filename, **meta)

    @_reports(False)
    def delete_parameter(self, name: str) -> bool:
        self._require_definable()
        self.layout.delete(PARAMETER, name)
        return True

    @_reports(False)
    def delete_column(self, name: str) -> bool:
        self._require_definable()
        self.layout.delete(COLUMN, name)
        return True

    @_reports(False)
    def delete_array(self, name: str) -> bool:
        self._require_definable()
        self.layout.delete(ARRAY, name)
        return True

    @_reports(False)
    def change_parameter_information(self, key: Key, **changes: Any) -> bool:
        self._require_definable()
        self.layout.change_information(PARAMETER, key, **changes)
        return True

    @_reports(False)
    def change_column_information(self, key: Key, **changes: Any) -> bool:
        self._require_definable()
        self.layout.change_information(COLUMN, key, **changes)
        return True

    @_reports(False)
    def change_array_information(self, key: Key, **changes: Any) -> bool:
        self._require_definable()
        self.layout.change_information(ARRAY, key, **changes)
        return True

    @_reports(False)
    def set_description(self, text: Optional[str], contents: Optional[str] = None) -> bool:
        self._require_definable()
        self.layout.set_description(text, contents)
        return True

    # ------------------------------------------------------------------
    # Transfer from another dataset
    # ------------------------------------------------------------------

    def _transfer(self, kind: str, source: Dataset, name: str, new_name: Optional[str]) -> bool:
        self._require_definable()
        self.layout.transfer_definition(kind, source.layout, name, new_name)
        return True

    @_reports(False)
    def transfer_parameter_definition(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._transfer(PARAMETER, source, name, new_name)

    @_reports(False)
    def transfer_column_definition(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._transfer(COLUMN, source, name, new_name)

    @_reports(False)
    def transfer_array_definition(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._transfer(ARRAY, source, name, new_name)

    @_reports(False)
    def transfer_associate_definition(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._transfer(ASSOCIATE, source, name, new_name)

    def _transfer_all(self, kind: str, source: Dataset, overwrite: bool) -> bool:
        self._require_definable()
        for name in source.layout.names(kind):
            if self.layout.has(kind, name):
                if not overwrite:
                    continue
                self.layout.delete(kind, name)
            self.layout.transfer_definition(kind, source.layout, name)
        return True

    @_reports(False)
    def transfer_all_parameter_definitions(self, source: Dataset, *, overwrite: bool = False) -> bool:
        """Copy every parameter definition of `source`; existing names are kept unless `overwrite`."""
        return self._transfer_all(PARAMETER, source, overwrite)

    @_reports(False)
    def transfer_all_column_definitions(self, source: Dataset, *, overwrite: bool = False) -> bool:
        return self._transfer_all(COLUMN, source, overwrite)

    @_reports(False)
    def transfer_all_array_definitions(self, source: Dataset, *, overwrite: bool = False) -> bool:
        return self._transfer_all(ARRAY, source, overwrite)

    def _define_like(self, method: Callable[..., Optional[str]], source: Dataset, name: str, new_name: Optional[str]) -> bool:
        self._require_definable()
        warning = method(source.layout, name, new_name)
        if warning:
            self.errors.warn(ErrorKind.DEFINITION_CONFLICT, warning)
        return True

    @_reports(False)
    def define_parameter_like_column(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        """
        Define a parameter from column `name` of `source`.

        An existing parameter of the same name wins; a non-fatal
        DEFINITION_CONFLICT warning is queued in that case.
        """
        return self._define_like(self.layout.define_parameter_like_column, source, name, new_name)

    @_reports(False)
    def define_parameter_like_array(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._define_like(self.layout.define_parameter_like_array, source, name, new_name)

    @_reports(False)
    def define_column_like_parameter(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._define_like(self.layout.define_column_like_parameter, source, name, new_name)

    @_reports(False)
    def define_column_like_array(self, source: Dataset, name: str, new_name: Optional[str] = None) -> bool:
        return self._define_like(self.layout.define_column_like_array, source, name, new_name)

    # ------------------------------------------------------------------
    # Layout queries
    # ------------------------------------------------------------------

    @property
    def parameter_names(self) -> List[str]:
        return self.layout.names(PARAMETER)

    @property
    def column_names(self) -> List[str]:
        return self.layout.names(COLUMN)

    @property
    def array_names(self) -> List[str]:
        return self.layout.names(ARRAY)

    def get_parameter_index(self, name: str) -> int:
        return self.layout.get_index(PARAMETER, name) if self.layout.has(PARAMETER, name) else -1

    def get_column_index(self, name: str) -> int:
        return self.layout.get_index(COLUMN, name) if self.layout.has(COLUMN, name) else -1

    def get_array_index(self, name: str) -> int:
        return self.layout.get_index(ARRAY, name) if self.layout.has(ARRAY, name) else -1

    def get_type(self, kind: str, key: Key) -> Optional[SddsType]:
        if kind not in KINDS or kind == ASSOCIATE:
            return None
        try:
            return self.layout.get_definition(kind, key).type
        except SddsError as exc:
            self.errors.add_error(exc)
            return None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @_reports(False)
    def set_page_filter(self, page_filter: PageFilter) -> bool:
        self._require_mode("r")
        if self._pages_read:
            raise UsageError("page filter must be set before the first read_page()")
        self.page_filter = page_filter
        return True

    def set_auto_read_recovery(self, enabled: bool = True) -> bool:
        """Hand out a truncated final page as a normal page (with a DATA_TRUNCATED warning)."""
        self._auto_recover = bool(enabled)
        return True

    def set_row_limit(self, limit: Optional[int]) -> Optional[int]:
        """Per-stream row limit (overrides the configuration); returns the previous value."""
        previous = self._row_limit
        self._row_limit = None if limit is None or int(limit) <= 0 else int(limit)
        return previous

    def read_recovery_possible(self) -> bool:
        """True after read_page() returned 0 for a page whose complete rows are available."""
        return self._recovery_possible

    def _decode(self) -> Optional[PageData]:
        if self.layout.data_mode.is_binary:
            return binary_codec.decode_page(self._source, self.layout, row_limit=self._row_limit)
        return ascii_codec.decode_page(self._lines, self.layout, row_limit=self._row_limit)

    def _install(self, number: int, data: PageData) -> None:
        self.page.load(number, data)
        if data.rows_dropped:
            self.errors.warn(
                ErrorKind.ROW_LIMIT_HIT,
                f"page {number} of {self.name}: kept {data.n_rows} of {data.n_rows + data.rows_dropped} rows "
                f"(row limit {self._row_limit})",
            )

    def read_page(self) -> int:
        """
        Advance to the next page.

        Returns the input page number (> 0), 0 for a truncated page (see
        :meth:`read_recovery_possible`), -1 at end of stream, -2 on error.
        """
        try:
            self._require_mode("r")
        except UsageError as exc:
            self.errors.add_error(exc)
            return READ_ERROR
        if self._ended:
            return END_OF_STREAM
        self._recovery_possible = False
        try:
            while True:
                self.page.clear()
                try:
                    data = self._decode()
                except DataTruncatedError as exc:
                    self._ended = True
                    self._pages_read += 1
                    number = self._pages_read
                    if not self.page_filter.accepts(number):
                        return END_OF_STREAM
                    if exc.recoverable and exc.partial is not None:
                        self._install(number, exc.partial)
                        if self._auto_recover:
                            self.errors.warn(ErrorKind.DATA_TRUNCATED, f"page {number} of {self.name}: {exc.message}")
                            return number
                        self._recovery_possible = True
                    self.errors.add(ErrorKind.DATA_TRUNCATED, f"page {number} of {self.name}: {exc.message}")
                    return PAGE_TRUNCATED
                except SddsError as exc:
                    self._ended = True
                    self.errors.add_error(exc)
                    return READ_ERROR
                if data is None:
                    self._ended = True
                    return END_OF_STREAM
                self._pages_read += 1
                number = self._pages_read
                if self.page_filter.past_end(number):
                    self._ended = True
                    return END_OF_STREAM
                if not self.page_filter.accepts(number):
                    continue
                self._install(number, data)
                return number
        except MemoryError:
            # a corrupt row count can claim more rows than memory holds
            self._ended = True
            self.page.clear()
            self.errors.add(ErrorKind.IO_ERROR, f"{self.name}: page too large to hold in memory")
            return READ_ERROR

    def pages(self) -> Iterable[int]:
        """Iterate page numbers until end of stream (truncated pages end the iteration)."""
        while True:
            n = self.read_page()
            if n <= 0:
                return
            yield n

    @property
    def page_number(self) -> int:
        return self.page.page_number

    def row_count(self) -> int:
        return self.page.n_rows if self.page.active else -1

    def count_rows_of_interest(self) -> int:
        return self.page.count_rows_of_interest() if self.page.active else -1

    def count_columns_of_interest(self) -> int:
        return self.page.count_columns_of_interest() if self.page.active else -1

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    @_reports(None)
    def get_parameter(self, key: Key) -> Any:
        self._require_page()
        return self.page.parameters[self.layout.resolve(PARAMETER, key)]

    @_reports(None)
    def get_parameter_as_double(self, key: Key) -> Optional[float]:
        self._require_page()
        idx = self.layout.resolve(PARAMETER, key)
        d = self.layout.get_definition(PARAMETER, idx)
        return float(convert(self.page.parameters[idx], d.type, SddsType.DOUBLE, allow_loss=True))

    @_reports(None)
    def get_parameter_as_string(self, key: Key) -> Optional[str]:
        """Printed with the declared format string, else the type's printf default."""
        self._require_page()
        idx = self.layout.resolve(PARAMETER, key)
        d = self.layout.get_definition(PARAMETER, idx)
        return format_value(self.page.parameters[idx], d.type, d.format_string or default_format(d.type)).strip()

    @_reports(None)
    def get_parameters(self) -> Dict[str, Any]:
        self._require_page()
        return dict(zip(self.layout.names(PARAMETER), self.page.parameters))

    def _rows(self, idx: int) -> np.ndarray:
        return self.page.columns[idx][: self.page.n_rows][self.page.rows_of_interest()]

    @_reports(None)
    def get_column(self, key: Key) -> Optional[np.ndarray]:
        """Copy of the rows of interest in the column's own type."""
        self._require_page()
        return np.array(self._rows(self.layout.resolve(COLUMN, key)))

    @_reports(None)
    def get_column_in_doubles(self, key: Key) -> Optional[np.ndarray]:
        """Rows of interest as float64 (precision loss of 64-bit integers is accepted)."""
        self._require_page()
        idx = self.layout.resolve(COLUMN, key)
        d = self.layout.get_definition(COLUMN, idx)
        if d.type == SddsType.STRING:
            raise TypeMismatchError(f"column '{d.name}' is a string column")
        return cast_array(self._rows(idx), SddsType.DOUBLE, allow_loss=True)

    @_reports(None)
    def get_column_in_strings(self, key: Key) -> Optional[np.ndarray]:
        self._require_page()
        idx = self.layout.resolve(COLUMN, key)
        d = self.layout.get_definition(COLUMN, idx)
        fmt = d.format_string or default_format(d.type)
        out = np.empty(self.page.count_rows_of_interest(), dtype=object)
        for i, v in enumerate(self._rows(idx).tolist()):
            out[i] = format_value(v, d.type, fmt).strip() if type_is_numeric(d.type) else format_value(v, d.type)
        return out

    @_reports(None)
    def get_internal_column(self, key: Key) -> Optional[np.ndarray]:
        """Read-only view of all rows, valid until the next page transition."""
        self._require_page()
        return self.page.column_view(self.layout.resolve(COLUMN, key))

    @_reports(None)
    def get_array(self, key: Key) -> Optional[np.ndarray]:
        self._require_page()
        return np.array(self.page.array_or_empty(self.layout.resolve(ARRAY, key)))

    @_reports(None)
    def get_array_in_doubles(self, key: Key) -> Optional[np.ndarray]:
        self._require_page()
        idx = self.layout.resolve(ARRAY, key)
        d = self.layout.get_definition(ARRAY, idx)
        if d.type == SddsType.STRING:
            raise TypeMismatchError(f"array '{d.name}' is a string array")
        return cast_array(self.page.array_or_empty(idx), SddsType.DOUBLE, allow_loss=True)

    @_reports(None)
    def get_row(self, row: int) -> Optional[Dict[str, Any]]:
        self._require_page()
        if not 0 <= int(row) < self.page.n_rows:
            raise UsageError(f"row {row} out of range (page has {self.page.n_rows} rows)")
        return {name: self.page.columns[i][int(row)] for i, name in enumerate(self.layout.names(COLUMN))}

    @_reports(None)
    def to_dataframe(self, *, rows_of_interest: bool = True) -> Optional[pd.DataFrame]:
        """
        Current page as a DataFrame (one column per layout column).

        Parameter values are attached as ``df.attrs["parameters"]``.
        """
        self._require_page()
        keep = self.page.rows_of_interest() if rows_of_interest else np.arange(self.page.n_rows)
        data = {
            name: self.page.columns[i][: self.page.n_rows][keep]
            for i, name in enumerate(self.layout.names(COLUMN))
        }
        df = pd.DataFrame(data, index=pd.RangeIndex(len(keep)))
        df.attrs["parameters"] = self.get_parameters() or {}
        df.attrs["page"] = self.page.page_number
        return df

    # ------------------------------------------------------------------
    # Page construction and setters
    # ------------------------------------------------------------------

    @_reports(False)
    def start_page(self, capacity: int = 0) -> bool:
        """Begin a new output page with room for `capacity` rows; all flags set."""
        self._require_mode("w")
        self.page.start(capacity)
        return True

    @_reports(False)
    def lengthen_table(self, capacity: int) -> bool:
        self.page.grow(capacity)
        return True

    @_reports(False)
    def set_parameter(self, key: Key, value: Any, *, allow_loss: bool = False) -> bool:
        self._require_page()
        idx = self.layout.resolve(PARAMETER, key)
        d = self.layout.get_definition(PARAMETER, idx)
        if d.fixed_value is not None:
            raise UsageError(f"parameter '{d.name}' has a fixed value")
        self.page.set_parameter(idx, value, allow_loss=allow_loss)
        return True

    @_reports(False)
    def set_parameters(self, values: Optional[Mapping[Key, Any]] = None, *, allow_loss: bool = False, **named: Any) -> bool:
        """Set several parameters from a mapping and/or keyword arguments."""
        self._require_page()
        items = dict(values or {})
        items.update(named)
        resolved = []
        for key, value in items.items():
            idx = self.layout.resolve(PARAMETER, key)
            d = self.layout.get_definition(PARAMETER, idx)
            if d.fixed_value is not None:
                raise UsageError(f"parameter '{d.name}' has a fixed value")
            resolved.append((idx, value))
        for idx, value in resolved:
            self.page.set_parameter(idx, value, allow_loss=allow_loss)
        return True

    @_reports(False)
    def set_column(self, key: Key, values: Any, *, allow_loss: bool = False) -> bool:
        self._require_page()
        self.page.set_column(self.layout.resolve(COLUMN, key), values, allow_loss=allow_loss)
        return True

    @_reports(False)
    def set_columns_from_dataframe(self, df: pd.DataFrame, *, allow_loss: bool = False, define: bool = False) -> bool:
        """
        Fill columns from DataFrame columns of the same name.

        define=True first defines missing columns (type inferred from the dtype);
        this is only possible before start_page().
        """
        self._require_mode("w")
        if define:
            for name in df.columns:
                if not self.layout.has(COLUMN, str(name)):
                    self._require_definable()
                    self.layout.define_column(str(name), type_from_dtype(df[name].dtype))
        if not self.page.active:
            self.page.start(len(df))
        elif len(df) > self.page.capacity:
            self.page.grow(len(df))
        for name in df.columns:
            idx = self.layout.resolve(COLUMN, str(name))
            self.page.set_column(idx, df[name].to_numpy(), allow_loss=allow_loss)
        return True

    @_reports(False)
    def set_array(self, key: Key, data: Any, dimensions: Optional[Sequence[int]] = None, *, allow_loss: bool = False) -> bool:
        self._require_page()
        self.page.set_array(self.layout.resolve(ARRAY, key), data, dimensions, allow_loss=allow_loss)
        return True

    @_reports(False)
    def set_row_values(self, row: int, values: Optional[Mapping[Key, Any]] = None, *, allow_loss: bool = False, **named: Any) -> bool:
        """Set cells of one row by column name or index."""
        self._require_page()
        items = dict(values or {})
        items.update(named)
        resolved = {self.layout.resolve(COLUMN, k): v for k, v in items.items()}
        self.page.set_row_values(row, resolved, allow_loss=allow_loss)
        return True

    # ------------------------------------------------------------------
    # Copy from another dataset
    # ------------------------------------------------------------------

    def _matching(self, kind: str, source: Dataset) -> List[tuple]:
        """(target index, source index, source type) for every name both layouts share."""
        out = []
        for i, name in enumerate(self.layout.names(kind)):
            if source.layout.has(kind, name):
                j = source.layout.get_index(kind, name)
                out.append((i, j, source.layout.get_definition(kind, j).type))
        return out

    @_reports(False)
    def copy_parameters(self, source: Dataset) -> bool:
        self._require_page()
        source._require_page()
        for i, j, src_type in self._matching(PARAMETER, source):
            d = self.layout.get_definition(PARAMETER, i)
            if d.fixed_value is not None:
                continue
            self.page.parameters[i] = convert(source.page.parameters[j], src_type, d.type)
        return True

    @_reports(False)
    def copy_arrays(self, source: Dataset) -> bool:
        self._require_page()
        source._require_page()
        for i, j, _src_type in self._matching(ARRAY, source):
            block = source.page.arrays[j]
            if block is not None:
                self.page.set_array(i, block)
        return True

    @_reports(False)
    def copy_columns(self, source: Dataset) -> bool:
        """Copy all rows of every shared column plus the source row flags."""
        self._require_page()
        source._require_page()
        n = source.page.n_rows
        if n > self.page.capacity:
            self.page.grow(n)
        for i, j, _src_type in self._matching(COLUMN, source):
            self.page.set_column(i, source.page.columns[j][:n])
        self.page.set_row_count(n)
        self.page.row_flags[:n] = source.page.row_flags[:n]
        return True

    @_reports(False)
    def copy_page(self, source: Dataset) -> bool:
        """Start a page sized for `source`'s rows and copy parameters, arrays and columns by name."""
        self._require_mode("w")
        source._require_page()
        self.page.start(source.page.n_rows)
        return self.copy_parameters(source) and self.copy_arrays(source) and self.copy_columns(source)

    # ------------------------------------------------------------------
    # Row / column selection
    # ------------------------------------------------------------------

    @_reports(False)
    def set_row_flags(self, value: bool = True) -> bool:
        self.page.set_row_flags(value)
        return True

    @_reports(False)
    def assert_row_flags(self, flags: Sequence[Any]) -> bool:
        self.page.assert_row_flags(flags)
        return True

    @_reports(False)
    def set_row_flag(self, row: int, value: bool) -> bool:
        self.page.set_row_flag(row, value)
        return True

    @_reports(None)
    def get_row_flags(self) -> Optional[np.ndarray]:
        self._require_page()
        return self.page.row_flags[: self.page.n_rows].copy()

    @_reports(False)
    def set_column_flags(self, value: bool = True) -> bool:
        self.page.set_column_flags(value)
        return True

    @_reports(False)
    def set_column_flag(self, key: Key, value: bool) -> bool:
        self.page.set_column_flag(self.layout.resolve(COLUMN, key), value)
        return True

    @_reports(False)
    def set_columns_of_interest(self, names: Iterable[str], *, replace: bool = True) -> bool:
        """Flag the named columns (glob patterns allowed); with `replace` every other column is cleared."""
        self._require_page()
        patterns = list(names)
        all_names = self.layout.names(COLUMN)
        selected = [n for n in all_names if any(fnmatch.fnmatchcase(n, p) for p in patterns)]
        missing = [p for p in patterns if not any(fnmatch.fnmatchcase(n, p) for n in all_names)]
        if missing:
            raise NameUnknownError(f"no column matches {', '.join(missing)}")
        if replace:
            self.page.set_column_flags(False)
        for name in selected:
            self.page.set_column_flag(self.layout.get_index(COLUMN, name), True)
        return True

    def _combine(self, hits: np.ndarray, logic: str, invert: bool) -> int:
        if logic not in _FILTER_LOGIC:
            raise UsageError(f"logic must be one of {_FILTER_LOGIC}, got {logic!r}")
        if invert:
            hits = ~hits
        n = self.page.n_rows
        flags = self.page.row_flags[:n]
        if logic == "and":
            flags &= hits
        elif logic == "or":
            flags |= hits
        else:
            flags[:] = hits
        return self.page.count_rows_of_interest()

    @_reports(-1)
    def filter_rows_of_interest(
        self,
        key: Key,
        lower: float,
        upper: float,
        *,
        logic: str = "and",
        invert: bool = False,
    ) -> int:
        """Combine row flags with ``lower <= column <= upper``; returns the new row-of-interest count."""
        self._require_page()
        idx = self.layout.resolve(COLUMN, key)
        d = self.layout.get_definition(COLUMN, idx)
        if not type_is_numeric(d.type):
            raise TypeMismatchError(f"column '{d.name}' is not numeric")
        values = self.page.columns[idx][: self.page.n_rows].astype(np.float64)
        return self._combine((values >= lower) & (values <= upper), logic, invert)

    @_reports(-1)
    def match_rows_of_interest(self, key: Key, pattern: str, *, logic: str = "and", invert: bool = False) -> int:
        """Combine row flags with a glob match on a string/character column."""
        self._require_page()
        idx = self.layout.resolve(COLUMN, key)
        d = self.layout.get_definition(COLUMN, idx)
        if type_is_numeric(d.type):
            raise TypeMismatchError(f"column '{d.name}' is not a string column")
        values = self.page.columns[idx][: self.page.n_rows]
        hits = np.array([fnmatch.fnmatchcase(str(v), pattern) for v in values.tolist()], dtype=bool)
        return self._combine(hits, logic, invert)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _emit_layout(self) -> None:
        # columns cleared at this point are left out of the written header
        keep = list(range(self.layout.count(COLUMN)))
        if self.page.active:
            keep = [i for i in keep if self.page.column_flags[i]]
        written = self.layout.copy()
        for i in reversed(range(self.layout.count(COLUMN))):
            if i not in keep:
                written.delete(COLUMN, self.layout.get_definition(COLUMN, i).name)
        header = write_header(written)
        if not written.data_mode.is_binary:
            header += ascii_codec.encode_preamble(written)
        self._sink.write(header)
        written.lock()
        self.layout.lock()
        self._written_layout = written
        self._written_columns = keep

    @_reports(False)
    def write_layout(self) -> bool:
        """Write the header now (otherwise done by the first write_page)."""
        self._require_mode("w")
        if self._written_layout is not None:
            raise UsageError("layout was already written")
        try:
            self._emit_layout()
        except SddsIOError:
            self._write_failed = True
            raise
        return True

    @_reports(False)
    def write_page(self) -> bool:
        """Append the current page (rows and columns of interest) in one write."""
        self._require_mode("w")
        self._require_page()
        try:
            if self._written_layout is None:
                self._emit_layout()
            snapshot = self.page.filtered()
            columns = []
            for i in self._written_columns:
                if self.page.column_flags[i]:
                    columns.append(snapshot.columns[i])
                else:
                    d = self.layout.get_definition(COLUMN, i)
                    self.errors.warn(
                        ErrorKind.DEFINITION_CONFLICT,
                        f"column '{d.name}' was cleared after the header was written; writing defaults",
                    )
                    columns.append(empty_vector(d.type, snapshot.n_rows))
            data = PageData(snapshot.parameters, snapshot.arrays, tuple(columns), snapshot.n_rows)
            number = self._pages_written + 1
            if self._written_layout.data_mode.is_binary:
                payload = binary_codec.encode_page(self._written_layout, data)
            else:
                payload = ascii_codec.encode_page(self._written_layout, data, number)
            self._sink.write(payload)
        except SddsIOError:
            self._write_failed = True
            raise
        self._pages_written = number
        self.page.page_number = number
        return True

    @property
    def pages_written(self) -> int:
        return self._pages_written

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, *, abort: bool = False) -> bool:
        """
        Close the stream and release its resources.

        A writer that never wrote a page still writes its header.  With an
        in-place rewrite, the target is replaced only if nothing failed and
        `abort` is False.
        """
        if self._terminated:
            return True
        self._terminated = True
        ok = True
        try:
            if self.mode == "w" and self._sink is not None and not abort and not self._write_failed:
                if self._written_layout is None:
                    self._emit_layout()
        except SddsError as exc:
            self.errors.add_error(exc)
            self._write_failed = True
            ok = False
        for end in (self._source, self._sink):
            if end is None:
                continue
            try:
                end.close()
            except (SddsError, OSError) as exc:
                self.errors.add(ErrorKind.IO_ERROR, f"closing {end.name}: {exc}")
                self._write_failed = self._write_failed or end is self._sink
                ok = False
        if self._rewrite is not None:
            if abort or self._write_failed:
                self._rewrite.abort()
            else:
                try:
                    self._rewrite.commit()
                except SddsError as exc:
                    self.errors.add_error(exc)
                    ok = False
        self._source = None
        self._sink = None
        self._lines = None
        self.page.clear()
        return ok

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def number_of_errors(self) -> int:
        return len(self.errors)

    def drain_errors(self) -> list:
        return self.errors.drain()

    def clear_errors(self) -> None:
        self.errors.clear()

    def print_errors(
        self,
        sink: Optional[IO[str]] = None,
        *,
        program: Optional[str] = None,
        include_warnings: bool = True,
    ) -> int:
        """Print and drain queued diagnostics to `sink` (default: the configured diagnostic sink)."""
        return self.errors.print(
            sink if sink is not None else self.config.sink,
            program=program,
            include_warnings=include_warnings,
        )

    def raise_if_errors(self) -> None:
        self.errors.raise_if_errors()


def _raise_first(errors: list) -> None:
    queue = DiagnosticQueue()
    for d in errors:
        queue.add(d.kind, d.message, fatal=True)
    queue.raise_if_errors()
    raise UsageError("open failed")
