"""Command-line tools driven through their main() entry points."""

from __future__ import annotations

import io
from pathlib import Path
from typing import List

import pytest

from sdds_stream import Dataset
from sdds_stream.scripts import check, convert, expand, query


def _write_sample(path: Path, *, pages: int = 3, mode: str = "binary") -> None:
    ds = Dataset.open_write(path, data_mode=mode, description="sample", contents="scan")
    ds.define_parameter("t", "double", units="s")
    ds.define_column("x", "double", units="m")
    ds.define_column("y", "long")
    for k in range(1, pages + 1):
        ds.start_page(2)
        ds.set_parameter("t", k / 10)
        ds.set_column("x", [k + 0.5, k + 0.25])
        ds.set_column("y", [k, -k])
        ds.write_page()
    assert ds.terminate()


def _pages(path) -> List[dict]:
    ds = Dataset.open_read(path)
    out = []
    for _ in ds.pages():
        page = {"params": ds.get_parameters()}
        page.update({c: ds.get_column(c).tolist() for c in ds.column_names})
        out.append(page)
    ds.terminate()
    return out


# ----------------------------------------------------------------------
# sdds-convert
# ----------------------------------------------------------------------


def test_convert_binary_to_ascii_and_back(tmp_path: Path) -> None:
    src, txt, back = tmp_path / "in.sdds", tmp_path / "in.txt", tmp_path / "back.sdds"
    _write_sample(src)
    assert convert.main([str(src), str(txt), "-ascii"]) == 0
    assert b"&data mode=ascii" in txt.read_bytes()
    assert convert.main([str(txt), str(back), "-binary", "-majorOrder=column"]) == 0
    assert _pages(back) == _pages(src)
    ds = Dataset.open_read(back)
    assert ds.layout.data_mode.column_major
    ds.terminate()


def test_convert_in_place_page_removal(tmp_path: Path) -> None:
    src = tmp_path / "five.sdds"
    _write_sample(src, pages=5)
    before = src.read_bytes()
    assert convert.main([str(src), "-removePages=2,4"]) == 0
    assert (tmp_path / "five.sdds~").read_bytes() == before
    assert [p["params"]["t"] for p in _pages(src)] == [0.1, 0.3, 0.5]


def test_convert_page_range(tmp_path: Path) -> None:
    src, dst = tmp_path / "in.sdds", tmp_path / "out.sdds"
    _write_sample(src, pages=4)
    assert convert.main([str(src), str(dst), "-fromPage=2", "-toPage=3"]) == 0
    assert [p["y"] for p in _pages(dst)] == [[2, -2], [3, -3]]


def test_convert_selection_and_rename(tmp_path: Path) -> None:
    src, dst = tmp_path / "in.sdds", tmp_path / "out.sdds"
    _write_sample(src, pages=2)
    rc = convert.main(
        [str(src), str(dst), "-delete=column,y", "-rename=column,x=xFiltered", "-rename=par,t=time"]
    )
    assert rc == 0
    ds = Dataset.open_read(dst)
    assert ds.column_names == ["xFiltered"]
    assert ds.parameter_names == ["time"]
    assert ds.layout.get_definition("column", "xFiltered").units == "m"
    ds.terminate()
    assert _pages(dst)[1] == {"params": {"time": 0.2}, "xFiltered": [2.5, 2.25]}


def test_convert_retain_and_description(tmp_path: Path) -> None:
    src, dst = tmp_path / "in.sdds", tmp_path / "out.sdds"
    _write_sample(src, pages=1)
    assert convert.main([str(src), str(dst), "-retain=column,y", "-description=new text,new contents"]) == 0
    ds = Dataset.open_read(dst)
    assert ds.column_names == ["y"]
    assert (ds.layout.description, ds.layout.contents) == ("new text", "new contents")
    ds.terminate()


def test_convert_row_limit(tmp_path: Path, capsys) -> None:
    src, dst = tmp_path / "in.sdds", tmp_path / "out.sdds"
    _write_sample(src, pages=2)
    assert convert.main([str(src), str(dst), "-rowlimit=1"]) == 0
    assert [p["x"] for p in _pages(dst)] == [[1.5], [2.5]]
    assert "ROW_LIMIT_HIT" in capsys.readouterr().err


def test_convert_truncated_input(tmp_path: Path, capsys) -> None:
    src = tmp_path / "cut.sdds"
    _write_sample(src, pages=2)
    src.write_bytes(src.read_bytes()[:-6])

    assert convert.main([str(src), str(tmp_path / "plain.sdds")]) == 1
    assert "DATA_TRUNCATED" in capsys.readouterr().err

    assert convert.main([str(src), str(tmp_path / "rec.sdds"), "-recover"]) == 0
    rec = _pages(tmp_path / "rec.sdds")
    assert [p["y"] for p in rec] == [[1, -1], [2]]
    assert "recovered" in capsys.readouterr().err

    assert convert.main([str(src), str(tmp_path / "clip.sdds"), "-recover=clip"]) == 0
    assert len(_pages(tmp_path / "clip.sdds")) == 1


def test_convert_usage_errors(tmp_path: Path, capsys) -> None:
    src = tmp_path / "in.sdds"
    _write_sample(src, pages=1)
    with pytest.raises(SystemExit):
        convert.main([str(src), "-keepPages=1", "-removePages=2"])
    assert convert.main([str(src), str(tmp_path / "o.sdds"), "-delete=widget,x"]) == 1
    assert convert.main([]) == 1
    err = capsys.readouterr().err
    assert "unknown entity kind" in err
    assert "too few filenames" in err


def test_convert_through_pipes(tmp_path: Path, monkeypatch) -> None:
    src = tmp_path / "in.sdds"
    _write_sample(src, pages=2)
    stdin = io.TextIOWrapper(io.BytesIO(src.read_bytes()))
    stdout = io.TextIOWrapper(io.BytesIO())
    monkeypatch.setattr("sys.stdin", stdin)
    monkeypatch.setattr("sys.stdout", stdout)
    assert convert.main(["-pipe", "-ascii"]) == 0
    text = stdout.buffer.getvalue()
    assert text.startswith(b"SDDS5\n")
    assert _pages(io.BytesIO(text)) == _pages(src)


# ----------------------------------------------------------------------
# sdds-expand
# ----------------------------------------------------------------------


def test_expand_one_page_per_row(tmp_path: Path, capsys) -> None:
    src, dst = tmp_path / "table.sdds", tmp_path / "rows.sdds"
    ds = Dataset.open_write(src)
    ds.define_parameter("run", "string")
    ds.define_parameter("a", "long")
    ds.define_parameter("mode", "short", fixed_value=2)
    ds.define_column("a", "double", units="mm")
    ds.define_column("b", "long")
    ds.start_page(4)
    ds.set_parameters(run="r1", a=99)
    ds.set_column("a", [0.5, 1.5, 2.5, 3.5])
    ds.set_column("b", [10, 20, 30, 40])
    ds.write_page()
    ds.start_page(1)
    ds.set_parameters(run="r2", a=98)
    ds.set_column("a", [9.0])
    ds.set_column("b", [90])
    ds.write_page()
    ds.terminate()

    assert expand.main([str(src), str(dst)]) == 0
    assert "name a used for parameter and column" in capsys.readouterr().err

    out = Dataset.open_read(dst)
    assert out.parameter_names == ["a", "b", "run", "mode"]
    assert out.column_names == []
    assert out.layout.get_definition("parameter", "a").units == "mm"
    got = []
    for n in out.pages():
        assert out.row_count() == 0
        got.append((n, out.get_parameter("a"), out.get_parameter("b"), out.get_parameter("run"), out.get_parameter("mode")))
    out.terminate()
    assert got == [
        (1, 0.5, 10, "r1", 2),
        (2, 1.5, 20, "r1", 2),
        (3, 2.5, 30, "r1", 2),
        (4, 3.5, 40, "r1", 2),
        (5, 9.0, 90, "r2", 2),
    ]


def test_expand_empty_table(tmp_path: Path) -> None:
    src, dst = tmp_path / "empty.sdds", tmp_path / "rows.sdds"
    ds = Dataset.open_write(src, data_mode="ascii")
    ds.define_column("s", "double")
    ds.start_page(0)
    ds.write_page()
    ds.terminate()
    assert expand.main([str(src), str(dst), "-majorOrder=column", "-noWarnings"]) == 0
    out = Dataset.open_read(dst)
    assert out.parameter_names == ["s"]
    assert out.layout.data_mode.is_binary and out.layout.data_mode.column_major
    assert out.read_page() == -1
    out.terminate()


# ----------------------------------------------------------------------
# sdds-check
# ----------------------------------------------------------------------


def test_check_verdicts(tmp_path: Path, capsys) -> None:
    good = tmp_path / "good.sdds"
    _write_sample(good)
    cut = tmp_path / "cut.sdds"
    cut.write_bytes(good.read_bytes()[:-3])
    bad = tmp_path / "bad.sdds"
    bad.write_text("hello\n")

    assert check.check_file(str(good)) == check.OK
    assert check.check_file(str(tmp_path / "missing.sdds")) == check.NONEXISTENT
    assert check.check_file(str(bad)) == check.BAD_HEADER
    assert check.check_file(str(cut)) == check.CORRUPTED

    for path, verdict in ((good, "ok"), (cut, "corrupted"), (bad, "badHeader")):
        assert check.main([str(path)]) == 0
        assert capsys.readouterr().out == verdict + "\n"
    assert check.main([str(cut), "-printErrors"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "corrupted\n"
    assert "DATA_TRUNCATED" in captured.err


# ----------------------------------------------------------------------
# sdds-query
# ----------------------------------------------------------------------


def test_query_summary(tmp_path: Path, capsys) -> None:
    path = tmp_path / "run.sdds"
    _write_sample(path)
    assert query.main([str(path), "-readAll"]) == 0
    out = capsys.readouterr().out
    assert "SDDS protocol version 5" in out
    assert "description: sample" in out
    assert "data is binary, row-major, little-endian" in out
    assert "2 columns:" in out and "1 parameters:" in out
    assert "3 page(s), 6 row(s)" in out


def test_query_lists(tmp_path: Path, capsys) -> None:
    path = tmp_path / "run.sdds"
    _write_sample(path)
    assert query.main([str(path), "-columnList", "-appendUnits"]) == 0
    assert capsys.readouterr().out == "x (m)\ny\n"
    assert query.main([str(path), "-columnList", "-delimiter=,"]) == 0
    assert capsys.readouterr().out == "x,y\n"
    assert query.main([str(path), "-parameterList", "-appendUnits=bare"]) == 0
    assert capsys.readouterr().out == "t s\n"


def test_query_layout_table() -> None:
    buf = io.BytesIO()
    _write_sample(buf)
    buf.seek(0)
    ds = Dataset.open_read(buf)
    table = query.layout_table(ds.layout, "column")
    ds.terminate()
    assert table["name"].tolist() == ["x", "y"]
    assert table["type"].tolist() == ["double", "long"]
    assert table["units"].tolist() == ["m", ""]


def test_query_errors(tmp_path: Path, capsys) -> None:
    assert query.main([]) == 1
    assert query.main([str(tmp_path / "missing.sdds")]) == 1
    assert query.main(["-pipe=input", str(tmp_path / "x.sdds")]) == 1
    assert "error" in capsys.readouterr().err
