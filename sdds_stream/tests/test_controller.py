from __future__ import annotations

import io
import tempfile
import unittest
from pathlib import Path

import pytest

from sdds_stream.models.diagnostics import SddsIOError, UsageError
from sdds_stream.scripts.filenames import (
    USE_STDIN,
    USE_STDOUT,
    parse_pipe_argument,
    process_filenames,
    process_pipe_option,
)
from sdds_stream.stream.controller import (
    PageFilter,
    TempRewrite,
    open_sink,
    open_source,
    parse_page_list,
    same_file,
)


# ----------------------------------------------------------------------
# Page selection
# ----------------------------------------------------------------------


def test_parse_page_list() -> None:
    assert parse_page_list("1,3,5-7") == (1, 3, 5, 6, 7)
    assert parse_page_list(" 4, 2,2 ,") == (2, 4)
    for bad in ("0", "5-3", "x", "1,-2"):
        with pytest.raises(ValueError):
            parse_page_list(bad)


class TestPageFilter(unittest.TestCase):
    def test_default_accepts_everything(self):
        f = PageFilter()
        self.assertTrue(f.is_trivial)
        self.assertTrue(all(f.accepts(n) for n in range(1, 50)))
        self.assertFalse(f.past_end(10**6))

    def test_bounds(self):
        f = PageFilter(from_page=2, to_page=4)
        self.assertEqual([n for n in range(1, 7) if f.accepts(n)], [2, 3, 4])
        self.assertFalse(f.past_end(4))
        self.assertTrue(f.past_end(5))

    def test_keep_and_remove(self):
        keep = PageFilter(keep_pages=(1, 3))
        self.assertEqual([n for n in range(1, 6) if keep.accepts(n)], [1, 3])
        self.assertTrue(keep.past_end(4))
        remove = PageFilter(remove_pages=(2, 4))
        self.assertEqual([n for n in range(1, 6) if remove.accepts(n)], [1, 3, 5])
        self.assertFalse(remove.past_end(100))

    def test_validation(self):
        with self.assertRaises(ValueError):
            PageFilter(from_page=0)
        with self.assertRaises(ValueError):
            PageFilter(from_page=5, to_page=2)
        with self.assertRaises(ValueError):
            PageFilter(keep_pages=(1,), remove_pages=(2,))


# ----------------------------------------------------------------------
# Byte sources and sinks
# ----------------------------------------------------------------------


def test_streams_are_wrapped_not_owned() -> None:
    buf = io.BytesIO(b"abc\ndef")
    src = open_source(buf)
    assert not src.owned
    assert src.readline() == b"abc\n"
    src.close()
    assert not buf.closed

    out = io.BytesIO()
    sink = open_sink(out)
    sink.write(b"xyz")
    sink.close()
    assert out.getvalue() == b"xyz"


def test_text_stream_buffer_is_used() -> None:
    wrapper = io.TextIOWrapper(io.BytesIO(b"SDDS5\n"))
    assert open_source(wrapper).read() == b"SDDS5\n"
    with pytest.raises(UsageError):
        open_source(io.StringIO("SDDS5\n"))
    with pytest.raises(UsageError):
        open_sink(42)


def test_missing_file_is_io_error(tmp_path: Path) -> None:
    with pytest.raises(SddsIOError):
        open_source(tmp_path / "absent.sdds")
    with pytest.raises(SddsIOError):
        open_sink(tmp_path / "no" / "such" / "dir.sdds")


def test_same_file(tmp_path: Path) -> None:
    a = tmp_path / "a.sdds"
    a.write_bytes(b"")
    assert same_file(a, str(tmp_path / "." / "a.sdds"))
    assert not same_file(a, tmp_path / "b.sdds")
    assert not same_file("-", "-")
    assert not same_file(io.BytesIO(), a)


# ----------------------------------------------------------------------
# In-place rewrite
# ----------------------------------------------------------------------


class TestTempRewrite(unittest.TestCase):
    def setUp(self):
        self._dir = tempfile.TemporaryDirectory()
        self.target = Path(self._dir.name) / "data.sdds"
        self.target.write_bytes(b"old")

    def tearDown(self):
        self._dir.cleanup()

    def _entries(self):
        return sorted(p.name for p in self.target.parent.iterdir())

    def test_commit_keeps_backup(self):
        rw = TempRewrite(self.target)
        sink = rw.open()
        self.assertEqual(Path(sink.name).parent, self.target.parent)
        sink.write(b"new")
        sink.close()
        self.assertEqual(self.target.read_bytes(), b"old")
        rw.commit()
        self.assertEqual(self.target.read_bytes(), b"new")
        self.assertEqual((self.target.parent / "data.sdds~").read_bytes(), b"old")
        self.assertEqual(self._entries(), ["data.sdds", "data.sdds~"])

    def test_abort_removes_temporary(self):
        rw = TempRewrite(self.target)
        sink = rw.open()
        sink.write(b"partial")
        sink.close()
        rw.abort()
        rw.abort()
        self.assertEqual(self.target.read_bytes(), b"old")
        self.assertEqual(self._entries(), ["data.sdds"])

    def test_commit_without_open(self):
        with self.assertRaises(UsageError):
            TempRewrite(self.target).commit()


# ----------------------------------------------------------------------
# Pipe option and filename pairing
# ----------------------------------------------------------------------


def test_pipe_option() -> None:
    assert process_pipe_option([]) == USE_STDIN | USE_STDOUT
    assert process_pipe_option(["in"]) == USE_STDIN
    assert process_pipe_option(["o"]) == USE_STDOUT
    assert process_pipe_option(["input", "output"]) == USE_STDIN | USE_STDOUT
    with pytest.raises(UsageError):
        process_pipe_option(["sideways"])
    assert parse_pipe_argument(None) == 0
    assert parse_pipe_argument("") == USE_STDIN | USE_STDOUT
    assert parse_pipe_argument("out") == USE_STDOUT


def test_single_name_is_rewritten_in_place() -> None:
    t = process_filenames("prog", "a.sdds", None, 0)
    assert (t.input, t.output, t.in_place) == ("a.sdds", "a.sdds", True)


def test_pipe_input_with_one_name_makes_it_the_output() -> None:
    t = process_filenames("prog", "out.sdds", None, USE_STDIN)
    assert (t.input, t.output, t.in_place) == (None, "out.sdds", False)


def test_pipe_both_ends() -> None:
    t = process_filenames("prog", None, None, USE_STDIN | USE_STDOUT)
    assert (t.input, t.output, t.in_place) == (None, None, False)
    t = process_filenames("prog", "in.sdds", None, USE_STDOUT)
    assert (t.input, t.output) == ("in.sdds", None)


@pytest.mark.parametrize(
    "names, flags",
    [
        (("a", "b"), USE_STDIN),
        (("a", "b"), USE_STDOUT),
        ((None, None), 0),
        ((None, None), USE_STDOUT),
    ],
)
def test_filename_errors(names, flags) -> None:
    with pytest.raises(UsageError):
        process_filenames("prog", names[0], names[1], flags)


def test_same_file_and_existing_output_warn(tmp_path: Path) -> None:
    a = tmp_path / "a.sdds"
    b = tmp_path / "b.sdds"
    a.write_bytes(b"")
    b.write_bytes(b"")
    t = process_filenames("prog", str(a), str(a), 0)
    assert t.in_place
    assert "same file" in t.warnings[0]
    t = process_filenames("prog", str(a), str(b), 0)
    assert not t.in_place
    assert "will be replaced" in t.warnings[0]
    t = process_filenames("prog", str(a), str(b), 0, no_warnings=True)
    assert t.warnings == ()
    t = process_filenames("prog", str(a), str(tmp_path / "new.sdds"), 0)
    assert t.warnings == ()
