from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .diagnostics import TypeMismatchError, UsageError
from .layout import Layout
from .types import SddsType, cast_array, default_value, make_value, numpy_dtype, scan_value


def empty_vector(tag: SddsType, n: int) -> np.ndarray:
    """Vector of `n` type defaults (0, "" or NUL character)."""
    dt = numpy_dtype(tag)
    if dt.kind != "O":
        return np.zeros(n, dtype=dt)
    out = np.empty(n, dtype=object)
    out[:] = default_value(tag)
    return out


@dataclass(frozen=True)
class PageData:
    """
    Snapshot of one page as handed to (or produced by) the data codec.

    columns holds exactly `n_rows` values per column, in layout order.
    arrays holds one N-D block per array (shape = per-page dimensions).
    rows_dropped counts rows a reader consumed but discarded (row limit).
    """
    parameters: Tuple[Any, ...]
    arrays: Tuple[np.ndarray, ...]
    columns: Tuple[np.ndarray, ...]
    n_rows: int
    rows_dropped: int = 0


class PageBuffer:
    """
    Values of the current page: one slot per parameter, a column table with a
    row capacity, one lazily allocated block per array, plus the row-of-interest
    and column-of-interest flag vectors.

    The buffer borrows its layout; the layout outlives every page.
    """

    def __init__(self, layout: Layout):
        self.layout = layout
        self.page_number = 0
        self.capacity = 0
        self.n_rows = 0
        self.parameters: List[Any] = []
        self.columns: List[np.ndarray] = []
        self.arrays: List[Optional[np.ndarray]] = []
        self.row_flags = np.zeros(0, dtype=bool)
        self.column_flags = np.ones(0, dtype=bool)
        self.active = False

    # ------------------------------------------------------------------
    # Page boundaries
    # ------------------------------------------------------------------

    def start(self, capacity: int, page_number: int = 0) -> None:
        """Allocate a fresh page with room for `capacity` rows; all flags set."""
        if int(capacity) < 0:
            raise UsageError(f"row capacity must be >= 0, got {capacity}")
        self.capacity = int(capacity)
        self.n_rows = 0
        self.page_number = int(page_number)
        self.parameters = [self._initial_parameter(i) for i in range(self.layout.count("parameter"))]
        self.columns = [empty_vector(c.type, self.capacity) for c in self.layout.columns]
        self.arrays = [None] * self.layout.count("array")
        self.row_flags = np.ones(self.capacity, dtype=bool)
        self.column_flags = np.ones(len(self.columns), dtype=bool)
        self.active = True

    def load(self, page_number: int, data: PageData) -> None:
        """Install a page materialized by a reader."""
        self.page_number = int(page_number)
        self.n_rows = int(data.n_rows)
        self.capacity = self.n_rows
        self.parameters = list(data.parameters)
        self.columns = [np.asarray(c) for c in data.columns]
        self.arrays = list(data.arrays)
        self.row_flags = np.ones(self.n_rows, dtype=bool)
        self.column_flags = np.ones(len(self.columns), dtype=bool)
        self.active = True

    def clear(self) -> None:
        self.page_number = 0
        self.capacity = 0
        self.n_rows = 0
        self.parameters = []
        self.columns = []
        self.arrays = []
        self.row_flags = np.zeros(0, dtype=bool)
        self.column_flags = np.ones(0, dtype=bool)
        self.active = False

    def _initial_parameter(self, index: int) -> Any:
        d = self.layout.get_definition("parameter", index)
        if d.fixed_value is not None:
            return scan_value(d.fixed_value, d.type)
        return default_value(d.type)

    def _require_active(self) -> None:
        if not self.active:
            raise UsageError("no current page; call start_page() first")

    def grow(self, capacity: int) -> None:
        """Extend the row capacity, keeping existing values and flags."""
        self._require_active()
        extra = int(capacity) - self.capacity
        if extra <= 0:
            return
        for i, c in enumerate(self.layout.columns):
            self.columns[i] = np.concatenate([self.columns[i], empty_vector(c.type, extra)])
        self.row_flags = np.concatenate([self.row_flags, np.ones(extra, dtype=bool)])
        self.capacity = int(capacity)

    # ------------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------------

    def set_parameter(self, index: int, value: Any, *, allow_loss: bool = False) -> None:
        self._require_active()
        d = self.layout.get_definition("parameter", index)
        self.parameters[index] = make_value(d.type, value, allow_loss=allow_loss)

    def set_column(self, index: int, values: Any, *, allow_loss: bool = False) -> None:
        """
        Fill a column from a 1-D sequence.

        The first column set on a fresh page defines the row count; later sets
        must supply the same number of rows.
        """
        self._require_active()
        d = self.layout.get_definition("column", index)
        arr = cast_array(values, d.type, allow_loss=allow_loss, format_string=d.format_string)
        if arr.ndim != 1:
            raise TypeMismatchError(f"column '{d.name}' needs a 1-D sequence, got shape {arr.shape}")
        n = len(arr)
        if n > self.capacity:
            raise UsageError(f"{n} rows for column '{d.name}' exceed the page capacity {self.capacity}")
        if self.n_rows and n != self.n_rows:
            raise UsageError(f"column '{d.name}' has {n} rows but the page has {self.n_rows}")
        self.columns[index][:n] = arr
        self.n_rows = n

    def set_row_values(self, row: int, values: Dict[int, Any], *, allow_loss: bool = False) -> None:
        """Set cells of one row; `values` maps column index -> value."""
        self._require_active()
        if not 0 <= int(row) < self.capacity:
            raise UsageError(f"row {row} out of range (capacity {self.capacity})")
        for index, value in values.items():
            d = self.layout.get_definition("column", index)
            self.columns[index][row] = make_value(d.type, value, allow_loss=allow_loss)
        self.n_rows = max(self.n_rows, int(row) + 1)

    def set_row_count(self, n: int) -> None:
        self._require_active()
        if not 0 <= int(n) <= self.capacity:
            raise UsageError(f"row count {n} out of range (capacity {self.capacity})")
        self.n_rows = int(n)

    def set_array(
        self,
        index: int,
        data: Any,
        dimensions: Optional[Sequence[int]] = None,
        *,
        allow_loss: bool = False,
    ) -> None:
        """Set an array block; `dimensions` reshapes flat data, else the data shape is used."""
        self._require_active()
        d = self.layout.get_definition("array", index)
        arr = cast_array(data, d.type, allow_loss=allow_loss)
        if dimensions is not None:
            dims = tuple(int(x) for x in dimensions)
            if int(np.prod(dims)) != arr.size:
                raise TypeMismatchError(f"array '{d.name}': {arr.size} elements do not fill dimensions {dims}")
            arr = arr.reshape(dims)
        if arr.ndim != d.dimensions:
            raise TypeMismatchError(f"array '{d.name}' is declared with {d.dimensions} dimension(s), got {arr.ndim}")
        self.arrays[index] = arr

    def array_or_empty(self, index: int) -> np.ndarray:
        arr = self.arrays[index]
        if arr is not None:
            return arr
        d = self.layout.get_definition("array", index)
        return empty_vector(d.type, 0).reshape((0,) * d.dimensions)

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def set_row_flags(self, value: bool) -> None:
        self._require_active()
        self.row_flags[:] = bool(value)

    def assert_row_flags(self, flags: Sequence[Any]) -> None:
        """Copy truthiness of `flags` onto the leading rows."""
        self._require_active()
        f = np.asarray(flags).astype(bool).reshape(-1)
        if len(f) > self.capacity:
            raise UsageError(f"{len(f)} row flags exceed the page capacity {self.capacity}")
        self.row_flags[: len(f)] = f

    def set_row_flag(self, row: int, value: bool) -> None:
        self._require_active()
        if not 0 <= int(row) < self.capacity:
            raise UsageError(f"row {row} out of range (capacity {self.capacity})")
        self.row_flags[int(row)] = bool(value)

    def count_rows_of_interest(self) -> int:
        return int(np.count_nonzero(self.row_flags[: self.n_rows]))

    def rows_of_interest(self) -> np.ndarray:
        return np.flatnonzero(self.row_flags[: self.n_rows])

    def set_column_flags(self, value: bool) -> None:
        self._require_active()
        self.column_flags[:] = bool(value)

    def set_column_flag(self, index: int, value: bool) -> None:
        self._require_active()
        self.column_flags[int(index)] = bool(value)

    def count_columns_of_interest(self) -> int:
        return int(np.count_nonzero(self.column_flags))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def column_view(self, index: int) -> np.ndarray:
        """Read-only borrow of the materialized rows of one column."""
        view = self.columns[index][: self.n_rows]
        view.flags.writeable = False
        return view

    def filtered(self) -> PageData:
        """Snapshot for a writer: rows of interest only, every column kept."""
        self._require_active()
        keep = self.rows_of_interest()
        return PageData(
            parameters=tuple(self.parameters),
            arrays=tuple(self.array_or_empty(i) for i in range(len(self.arrays))),
            columns=tuple(c[: self.n_rows][keep] for c in self.columns),
            n_rows=int(len(keep)),
        )
