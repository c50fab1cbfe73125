"""Accessor API: end-to-end write/read through files and in-memory streams."""

from __future__ import annotations

import io
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from sdds_stream import Dataset, StreamConfig
from sdds_stream.models.diagnostics import ErrorKind, NameUnknownError, SddsError
from sdds_stream.models.layout import DataMode
from sdds_stream.models.types import SddsType
from sdds_stream.stream.controller import PageFilter
from sdds_stream.stream.dataset import END_OF_STREAM, PAGE_TRUNCATED, READ_ERROR


def _write_minimal(target, mode="binary") -> None:
    """One parameter t and columns x, y over two pages."""
    ds = Dataset.open_write(target, data_mode=mode, description="minimal")
    assert ds.define_parameter("t", "double") == 0
    assert ds.define_column("x", "double") == 0
    assert ds.define_column("y", "double") == 1
    assert ds.start_page(2)
    assert ds.set_parameter("t", 0.0)
    assert ds.set_column("x", [1.0, 3.0])
    assert ds.set_column("y", [2.0, 4.0])
    assert ds.write_page()
    assert ds.start_page(1)
    assert ds.set_parameters(t=1.0)
    assert ds.set_row_values(0, x=5.0, y=6.0)
    assert ds.write_page()
    assert ds.terminate()


def _write_pages(path: Path, n_pages: int, *, mode="binary", rows: int = 3) -> None:
    ds = Dataset.open_write(path, data_mode=mode)
    ds.define_parameter("page", "long")
    ds.define_column("v", "double")
    ds.define_column("label", "string")
    for k in range(1, n_pages + 1):
        ds.start_page(rows)
        ds.set_parameter("page", k)
        ds.set_column("v", [k * 10.0 + r for r in range(rows)])
        ds.set_column("label", [f"p{k}r{r}" for r in range(rows)])
        ds.write_page()
    assert ds.terminate()


def _read_all(target, **kwargs):
    ds = Dataset.open_read(target, **kwargs)
    out = []
    while True:
        n = ds.read_page()
        if n <= 0:
            break
        out.append((n, ds.get_parameters(), {c: ds.get_column(c) for c in ds.column_names}))
    ds.terminate()
    return out


class TestMinimalRoundTrip(unittest.TestCase):
    def _check(self, mode):
        with tempfile.TemporaryDirectory() as d:
            p = Path(d) / "min.sdds"
            _write_minimal(p, mode)
            pages = _read_all(p)
        self.assertEqual([n for n, _, _ in pages], [1, 2])
        self.assertEqual(pages[0][1], {"t": 0.0})
        self.assertEqual(pages[1][1], {"t": 1.0})
        np.testing.assert_array_equal(pages[0][2]["x"], [1.0, 3.0])
        np.testing.assert_array_equal(pages[0][2]["y"], [2.0, 4.0])
        np.testing.assert_array_equal(pages[1][2]["x"], [5.0])
        np.testing.assert_array_equal(pages[1][2]["y"], [6.0])

    def test_binary(self):
        self._check("binary")

    def test_ascii(self):
        self._check("ascii")

    def test_layout_survives(self):
        buf = io.BytesIO()
        _write_minimal(buf)
        buf.seek(0)
        ds = Dataset.open_read(buf)
        self.assertEqual(ds.layout.description, "minimal")
        self.assertEqual(ds.parameter_names, ["t"])
        self.assertEqual(ds.get_type("column", "y"), SddsType.DOUBLE)
        self.assertTrue(ds.layout.data_mode.is_binary)
        ds.terminate()


def test_page_numbers_without_and_with_filter(tmp_path: Path) -> None:
    p = tmp_path / "five.sdds"
    _write_pages(p, 5)
    assert [n for n, _, _ in _read_all(p)] == [1, 2, 3, 4, 5]
    assert [n for n, _, _ in _read_all(p, page_filter=PageFilter(remove_pages=(2, 4)))] == [1, 3, 5]
    assert [n for n, _, _ in _read_all(p, page_filter=PageFilter(from_page=2, to_page=3))] == [2, 3]
    got = _read_all(p, page_filter=PageFilter(keep_pages=(4,)))
    assert [(n, params["page"]) for n, params, _ in got] == [(4, 4)]


def test_in_place_rewrite_with_filtering(tmp_path: Path) -> None:
    p = tmp_path / "pages.sdds"
    _write_pages(p, 5)
    original = p.read_bytes()

    src = Dataset()
    assert src.initialize_input(p, page_filter=PageFilter(remove_pages=(2, 4)))
    out = Dataset()
    assert out.initialize_copy(src, p, in_place=True)
    while src.read_page() > 0:
        assert out.copy_page(src)
        assert out.write_page()
    assert src.terminate()
    assert out.terminate()

    assert (tmp_path / "pages.sdds~").read_bytes() == original
    pages = _read_all(p)
    assert [n for n, _, _ in pages] == [1, 2, 3]
    assert [params["page"] for _, params, _ in pages] == [1, 3, 5]
    assert pages[2][2]["label"].tolist() == ["p5r0", "p5r1", "p5r2"]
    assert not [f for f in tmp_path.iterdir() if f.name.endswith(".tmp")]


def test_aborted_rewrite_leaves_original(tmp_path: Path) -> None:
    p = tmp_path / "keep.sdds"
    _write_pages(p, 2)
    original = p.read_bytes()
    src = Dataset.open_read(p)
    out = Dataset()
    assert out.initialize_copy(src, p, in_place=True)
    src.read_page()
    out.copy_page(src)
    out.write_page()
    src.terminate()
    out.terminate(abort=True)
    assert p.read_bytes() == original
    assert not (tmp_path / "keep.sdds~").exists()
    assert sorted(f.name for f in tmp_path.iterdir()) == ["keep.sdds"]


class TestTruncationRecovery(unittest.TestCase):
    def setUp(self):
        self._dir = tempfile.TemporaryDirectory()
        self.path = Path(self._dir.name) / "cut.sdds"
        ds = Dataset.open_write(self.path)
        ds.define_column("i", "long")
        ds.define_column("x", "double")
        for rows in (2, 5):
            ds.start_page(rows)
            ds.set_column("i", np.arange(rows))
            ds.set_column("x", np.arange(rows) * 0.5)
            ds.write_page()
        ds.terminate()
        raw = self.path.read_bytes()
        # 12 bytes per row: drop the last row and a half
        self.path.write_bytes(raw[:-18])

    def tearDown(self):
        self._dir.cleanup()

    def test_without_recovery(self):
        ds = Dataset.open_read(self.path)
        self.assertEqual(ds.read_page(), 1)
        self.assertEqual(ds.read_page(), PAGE_TRUNCATED)
        self.assertTrue(ds.read_recovery_possible())
        self.assertIn(ErrorKind.DATA_TRUNCATED, ds.errors.kinds())
        self.assertEqual(ds.read_page(), END_OF_STREAM)
        self.assertTrue(ds.terminate())

    def test_recovered_rows_equal_source(self):
        ds = Dataset.open_read(self.path)
        ds.set_auto_read_recovery(True)
        self.assertEqual(ds.read_page(), 1)
        self.assertEqual(ds.read_page(), 2)
        self.assertEqual(ds.row_count(), 3)
        np.testing.assert_array_equal(ds.get_column("i"), [0, 1, 2])
        np.testing.assert_array_equal(ds.get_column("x"), [0.0, 0.5, 1.0])
        self.assertFalse(ds.errors.has_fatal)
        self.assertEqual(ds.read_page(), END_OF_STREAM)
        ds.terminate()

    def test_partial_page_readable_after_soft_zero(self):
        ds = Dataset.open_read(self.path)
        ds.read_page()
        self.assertEqual(ds.read_page(), PAGE_TRUNCATED)
        np.testing.assert_array_equal(ds.get_column("i"), [0, 1, 2])
        ds.terminate()


@pytest.mark.parametrize(
    "column_type, major_order",
    [("string", "column"), ("string", "row"), ("double", "row"), ("double", "column")],
)
def test_corrupt_row_count_is_a_truncation(column_type: str, major_order: str) -> None:
    def build(pages: int) -> bytes:
        buf = io.BytesIO()
        ds = Dataset.open_write(buf, data_mode=DataMode(mode="binary", column_major=major_order == "column"))
        ds.define_column("v", column_type)
        for _ in range(pages):
            ds.start_page(1)
            ds.set_column("v", ["abc"] if column_type == "string" else [1.5])
            ds.write_page()
        assert ds.terminate()
        return buf.getvalue()

    raw = build(1)
    start = len(build(0))
    corrupt = raw[:start] + (2_000_000_000).to_bytes(4, "little") + raw[start + 4:]

    ds = Dataset.open_read(io.BytesIO(corrupt))
    assert ds.read_page() == PAGE_TRUNCATED
    assert ErrorKind.DATA_TRUNCATED in ds.errors.kinds()
    assert ds.read_page() == END_OF_STREAM
    ds.terminate()


def test_row_limit_hit(tmp_path: Path) -> None:
    p = tmp_path / "long.sdds"
    ds = Dataset.open_write(p)
    ds.define_column("k", "long")
    ds.start_page(250)
    ds.set_column("k", np.arange(250))
    ds.write_page()
    ds.start_page(1)
    ds.set_column("k", [7])
    ds.write_page()
    ds.terminate()

    rd = Dataset.open_read(p, config=StreamConfig(row_limit=100))
    assert rd.read_page() == 1
    assert rd.row_count() == 100
    np.testing.assert_array_equal(rd.get_column("k"), np.arange(100))
    assert ErrorKind.ROW_LIMIT_HIT in rd.errors.kinds()
    assert not rd.errors.has_fatal
    assert rd.read_page() == 2
    assert rd.get_column("k").tolist() == [7]
    rd.terminate()


def test_definition_transfer_with_rename() -> None:
    buf = io.BytesIO()
    w = Dataset.open_write(buf)
    w.define_column("x", "double", units="mm", description="position", format_string="%12.6e")
    w.define_column("tag", "string")
    w.terminate()
    buf.seek(0)

    src = Dataset.open_read(buf)
    out = Dataset.open_write(io.BytesIO())
    assert out.transfer_column_definition(src, "x", "xFiltered")
    got = out.layout.get_definition("column", "xFiltered")
    want = src.layout.get_definition("column", "x")
    assert (got.type, got.units, got.description, got.format_string) == (
        want.type, want.units, want.description, want.format_string,
    )
    assert not out.transfer_column_definition(src, "tag", "xFiltered")
    assert out.errors.kinds() == [ErrorKind.DEFINITION_CONFLICT]
    src.terminate()
    out.terminate()


def test_row_flags_control_written_rows() -> None:
    buf = io.BytesIO()
    ds = Dataset.open_write(buf)
    ds.define_column("v", "short")
    ds.start_page(6)
    ds.set_column("v", [1, 2, 3, 4, 5, 6])
    flags = [1, 0, 1, 1, 0, 0]
    assert ds.assert_row_flags(flags)
    assert ds.count_rows_of_interest() == sum(flags)
    assert ds.get_column("v").tolist() == [1, 3, 4]
    assert ds.get_internal_column("v").tolist() == [1, 2, 3, 4, 5, 6]
    ds.write_page()
    ds.terminate()
    buf.seek(0)
    pages = _read_all(buf)
    assert pages[0][2]["v"].tolist() == [1, 3, 4]


def test_filter_and_match_rows() -> None:
    ds = Dataset.open_write(io.BytesIO())
    ds.define_column("s", "double")
    ds.define_column("name", "string")
    ds.start_page(5)
    ds.set_column("s", [0.0, 1.0, 2.0, 3.0, 4.0])
    ds.set_column("name", ["Q1", "B1", "Q2", "S1", "Q3"])
    assert ds.filter_rows_of_interest("s", 1.0, 3.0) == 3
    assert ds.match_rows_of_interest("name", "Q*") == 1
    assert ds.get_column("s").tolist() == [2.0]
    assert ds.match_rows_of_interest("name", "S*", logic="or") == 2
    assert ds.filter_rows_of_interest("s", 0.0, 0.0, logic="replace", invert=True) == 4
    assert ds.filter_rows_of_interest("name", 0, 1) == -1
    assert ds.errors.kinds() == [ErrorKind.TYPE_MISMATCH]
    ds.terminate(abort=True)


def test_major_order_switch_preserves_values(tmp_path: Path) -> None:
    p = tmp_path / "rows.sdds"
    q = tmp_path / "cols.sdds"
    _write_pages(p, 3, rows=4)
    src = Dataset.open_read(p)
    out = Dataset()
    assert out.initialize_copy(src, q, data_mode=DataMode(mode="binary", column_major=True))
    for _ in src.pages():
        out.copy_page(src)
        out.write_page()
    src.terminate()
    out.terminate()

    a, b = _read_all(p), _read_all(q)
    check = Dataset.open_read(q)
    assert check.layout.data_mode.column_major
    check.terminate()
    assert len(a) == len(b) == 3
    for (na, pa, ca), (nb, pb, cb) in zip(a, b):
        assert na == nb and pa == pb
        for name in ca:
            assert ca[name].tolist() == cb[name].tolist()
    assert p.read_bytes() != q.read_bytes()


def test_name_validity_at_definition() -> None:
    strict = Dataset.open_write(io.BytesIO())
    assert strict.define_column("bad name", "double") == -1
    assert strict.errors.kinds() == [ErrorKind.DEFINITION_CONFLICT]
    relaxed = Dataset.open_write(io.BytesIO(), config=StreamConfig(name_policy="relaxed"))
    assert relaxed.define_column("bad name", "double") == 0
    strict.terminate()
    relaxed.terminate()


# ----------------------------------------------------------------------
# Accessors and modes of failure
# ----------------------------------------------------------------------


class TestAccessors(unittest.TestCase):
    def setUp(self):
        buf = io.BytesIO()
        ds = Dataset.open_write(buf, data_mode="ascii")
        ds.define_parameter("Energy", "double", units="GeV")
        ds.define_parameter("Step", "short", fixed_value=4)
        ds.define_parameter("Name", "string")
        ds.define_array("m", "long", dimensions=2)
        ds.define_column("x", "float", format_string="%6.2f")
        ds.define_column("n", "long64")
        ds.start_page(3)
        ds.set_parameters({"Energy": 6.5, "Name": "run one"})
        ds.set_array("m", [1, 2, 3, 4], dimensions=(2, 2))
        ds.set_column("x", np.array([0.5, 1.25, 2.0], dtype=np.float32))
        ds.set_column("n", [2**40, 0, -1])
        ds.write_page()
        ds.terminate()
        buf.seek(0)
        self.ds = Dataset.open_read(buf)
        self.assertEqual(self.ds.read_page(), 1)

    def tearDown(self):
        self.ds.terminate()

    def test_parameters(self):
        ds = self.ds
        self.assertEqual(ds.get_parameter("Step"), 4)
        self.assertEqual(ds.get_parameter_as_double("Step"), 4.0)
        self.assertEqual(ds.get_parameter("Name"), "run one")
        self.assertEqual(ds.get_parameter_as_string("Energy"), "6.500000000000000e+00")
        self.assertEqual(ds.get_parameter(0), 6.5)

    def test_columns_and_arrays(self):
        ds = self.ds
        self.assertEqual(ds.get_column("x").dtype, np.float32)
        np.testing.assert_array_equal(ds.get_column_in_doubles("n"), [2.0**40, 0.0, -1.0])
        self.assertEqual(ds.get_column_in_strings("x").tolist(), ["0.50", "1.25", "2.00"])
        np.testing.assert_array_equal(ds.get_array("m"), [[1, 2], [3, 4]])
        self.assertEqual(ds.get_array_in_doubles("m").dtype, np.float64)
        self.assertEqual(ds.get_row(1), {"x": np.float32(1.25), "n": 0})

    def test_dataframe(self):
        df = self.ds.to_dataframe()
        self.assertIsInstance(df, pd.DataFrame)
        self.assertEqual(list(df.columns), ["x", "n"])
        self.assertEqual(df.attrs["parameters"]["Energy"], 6.5)
        self.assertEqual(df["n"].tolist(), [2**40, 0, -1])

    def test_unknown_names_are_queued(self):
        ds = self.ds
        self.assertIsNone(ds.get_column("nope"))
        self.assertEqual(ds.get_column_index("nope"), -1)
        self.assertEqual(ds.errors.kinds(), [ErrorKind.NAME_UNKNOWN])
        with self.assertRaises(NameUnknownError):
            ds.raise_if_errors()
        sink = io.StringIO()
        self.assertEqual(ds.print_errors(sink), 1)
        self.assertIn("NAME_UNKNOWN", sink.getvalue())
        self.assertEqual(ds.number_of_errors(), 0)

    def test_reader_refuses_writes(self):
        self.assertFalse(self.ds.start_page(1))
        self.assertEqual(self.ds.define_column("z", "double"), -1)
        self.assertEqual(self.ds.errors.kinds(), [ErrorKind.USAGE, ErrorKind.USAGE])


def test_writer_usage_errors() -> None:
    ds = Dataset.open_write(io.BytesIO())
    ds.define_column("x", "short")
    ds.define_parameter("fixed", "long", fixed_value=1)
    assert not ds.set_column("x", [1])
    assert ds.read_page() == READ_ERROR
    ds.start_page(2)
    assert ds.define_column("late", "double") == -1
    assert not ds.set_column("x", [1, 2, 3])
    assert not ds.set_column("x", [1.5, 2.0])
    assert not ds.set_parameter("fixed", 2)
    assert not ds.set_parameters(fixed=2)
    assert ds.get_parameter("fixed") == 1
    assert ds.set_column("x", [1, 2])
    assert ds.write_page()
    assert ds.define_column("after", "double") == -1
    assert ds.errors.kinds() == [
        ErrorKind.USAGE,
        ErrorKind.USAGE,
        ErrorKind.USAGE,
        ErrorKind.USAGE,
        ErrorKind.NUMERIC_LOSS,
        ErrorKind.USAGE,
        ErrorKind.USAGE,
        ErrorKind.DEFINITION_CONFLICT,
    ]
    ds.terminate()


def test_header_only_output_and_empty_read() -> None:
    buf = io.BytesIO()
    ds = Dataset.open_write(buf)
    ds.define_column("x", "double")
    assert ds.terminate()
    assert buf.getvalue().startswith(b"SDDS5\n")
    buf.seek(0)
    rd = Dataset.open_read(buf)
    assert rd.read_page() == END_OF_STREAM
    rd.terminate()


def test_columns_of_interest_shape_the_written_header() -> None:
    buf = io.BytesIO()
    ds = Dataset.open_write(buf)
    for name in ("x", "y", "xp"):
        ds.define_column(name, "double")
    ds.start_page(1)
    ds.set_row_values(0, x=1.0, y=2.0, xp=3.0)
    assert ds.set_columns_of_interest(["x*"])
    assert ds.count_columns_of_interest() == 2
    ds.write_page()
    ds.start_page(1)
    ds.set_row_values(0, x=4.0, y=5.0, xp=6.0)
    ds.set_column_flag("xp", False)
    ds.write_page()
    ds.terminate()
    assert ds.errors.kinds() == [ErrorKind.DEFINITION_CONFLICT]
    buf.seek(0)
    pages = _read_all(buf)
    assert list(pages[0][2]) == ["x", "xp"]
    assert pages[1][2]["x"].tolist() == [4.0]
    assert pages[1][2]["xp"].tolist() == [0.0]


def test_dataframe_round_trip() -> None:
    df = pd.DataFrame({"a": np.arange(4, dtype=np.int32), "b": np.linspace(0, 1, 4), "c": list("wxyz")})
    buf = io.BytesIO()
    ds = Dataset.open_write(buf)
    assert ds.set_columns_from_dataframe(df, define=True)
    assert ds.get_type("column", "a") == SddsType.LONG
    ds.write_page()
    ds.terminate()
    buf.seek(0)
    rd = Dataset.open_read(buf)
    rd.read_page()
    back = rd.to_dataframe()
    rd.terminate()
    pd.testing.assert_frame_equal(back, df, check_dtype=False)


def test_open_read_raises_on_bad_header() -> None:
    with pytest.raises(SddsError):
        Dataset.open_read(io.BytesIO(b"not sdds\n"))


def test_context_manager_aborts_on_exception(tmp_path: Path) -> None:
    p = tmp_path / "ctx.sdds"
    _write_pages(p, 1)
    original = p.read_bytes()
    with pytest.raises(RuntimeError):
        with Dataset.open_write(p, in_place=True) as ds:
            ds.define_column("x", "double")
            raise RuntimeError("boom")
    assert p.read_bytes() == original
