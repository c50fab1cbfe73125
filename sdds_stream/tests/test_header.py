"""Header codec: emit/parse round-trips, tolerated input and syntax errors."""

from __future__ import annotations

import io

import pytest

from sdds_stream.codec.header import emit_header, parse_header, read_header
from sdds_stream.codec.tokens import needs_quotes, quote, split_tokens, strip_comment, unescape
from sdds_stream.models.config import NAME_POLICY_RELAXED
from sdds_stream.models.diagnostics import HeaderSyntaxError
from sdds_stream.models.layout import ARRAY, ASSOCIATE, COLUMN, PARAMETER, DataMode, Layout
from sdds_stream.models.types import SddsType


def _rich_layout(mode: DataMode) -> Layout:
    lay = Layout('Run "A", quad scan', "x\\y & co", mode)
    lay.define_parameter("Step", "long", description="step, index")
    lay.define_parameter("Energy", "double", units="GeV", format_string="%10.3f")
    lay.define_parameter("Label", "string", fixed_value="no data = ok")
    lay.define_array("grid", "float", dimensions=2, group_name="maps", field_length=8)
    lay.define_column("s", "double", units="m", symbol="s!")
    lay.define_column("tag", "character")
    lay.define_column("name", "string", description="")
    lay.define_associate("lattice.sdds", path="/tmp", contents="lattice", sdds=True)
    return lay


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------


def test_quoting_rule() -> None:
    assert not needs_quotes("GeV")
    assert not needs_quotes("%10.3f")
    for s in ("", "a b", 'say "hi"', "a,b", "&x", "!c", "k=v", "back\\slash", "nl\n"):
        assert needs_quotes(s), s
    assert quote("a b") == '"a b"'
    assert quote('q"') == '"q\\""'
    assert quote("\x01") == '"\\001"'
    assert unescape("\\101\\n") == "A\n"


def test_split_tokens_handles_quotes_and_comments() -> None:
    assert split_tokens('1 "two words" 3 ! trailing') == ["1", "two words", "3"]
    assert split_tokens('"" x') == ["", "x"]
    with pytest.raises(ValueError):
        split_tokens('"open')
    assert strip_comment('a="x!y" ! note') == 'a="x!y" '


# ----------------------------------------------------------------------
# Round-trip
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "mode",
    [
        DataMode(mode="binary"),
        DataMode(mode="binary", endian="big", column_major=True),
        DataMode(mode="ascii", lines_per_row=2, no_row_counts=True, additional_header_lines=1),
    ],
)
def test_emit_then_parse_gives_equal_layout(mode: DataMode) -> None:
    lay = _rich_layout(mode)
    back = parse_header(emit_header(lay))
    assert back == lay
    assert back.get_definition(PARAMETER, "Label").fixed_value == "no data = ok"
    assert back.get_definition(ASSOCIATE, "lattice.sdds").sdds is True


def test_relaxed_names_round_trip() -> None:
    lay = Layout(name_policy=NAME_POLICY_RELAXED)
    lay.define_column("x position [mm]", "double")
    back = parse_header(emit_header(lay), name_policy=NAME_POLICY_RELAXED)
    assert back.names(COLUMN) == ["x position [mm]"]


def test_emitted_header_starts_with_version_and_byte_order() -> None:
    text = emit_header(Layout(data_mode=DataMode(mode="binary")))
    assert text.splitlines()[:2] == ["SDDS5", "!# little-endian"]
    assert text.endswith("&data mode=binary, &end\n")


# ----------------------------------------------------------------------
# Tolerated input
# ----------------------------------------------------------------------


def test_free_form_header() -> None:
    text = (
        "SDDS1\n"
        "! a comment line\n"
        "&description text=\"demo\" &end\n"
        "&column\n"
        "   type = double, units=m   ! inline comment\n"
        "   name=x,\n"
        "&end\n"
        "&parameter name=n, type=short, &end &parameter name=p type=ulong64 &end\n"
        "&data mode=ascii, no_row_counts=1 &end\n"
    )
    lay = parse_header(text)
    assert lay.description == "demo"
    assert lay.names(COLUMN) == ["x"]
    assert lay.get_definition(COLUMN, "x").units == "m"
    assert lay.names(PARAMETER) == ["n", "p"]
    assert lay.get_definition(PARAMETER, "p").type is SddsType.ULONG64
    assert lay.data_mode.no_row_counts


def test_clause_keywords_ignore_case() -> None:
    text = (
        "SDDS1\n"
        "&COLUMN NAME=x, TYPE=double, &END\n"
        "&Parameter name=n, type=short &End\n"
        "&DATA mode=ascii &END\n"
    )
    lay = parse_header(text)
    assert lay.names(COLUMN) == ["x"]
    assert lay.names(PARAMETER) == ["n"]
    assert not lay.data_mode.is_binary


def test_header_reader_stops_at_data_clause() -> None:
    raw = b"SDDS5\n!# big-endian\n&column name=x, type=long, &end\n&data mode=binary, &end\n\x00\x00\x00\x01tail"
    src = io.BytesIO(raw)
    result = read_header(src)
    assert result.version == 5
    assert result.layout.data_mode.endian == "big"
    assert src.read() == b"\x00\x00\x00\x01tail"


def test_missing_data_clause_means_textual_data() -> None:
    src = io.BytesIO(b"SDDS1\n&column name=x, type=double &end\n2\n1.5\n2.5\n")
    result = read_header(src)
    assert result.layout.data_mode == DataMode()
    assert result.pending_line == b"2\n"
    assert parse_header("SDDS1\n&column name=x, type=double &end\n").data_mode.mode == "ascii"


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "text",
    [
        "",
        "SDDS9\n&data mode=ascii &end\n",
        "hello\n",
        "SDDS5\n&include filename=x &end\n&data mode=ascii &end\n",
        "SDDS5\n&column name=x, type=double, colour=red &end\n&data mode=ascii &end\n",
        "SDDS5\n&column name=x, type=quad &end\n&data mode=ascii &end\n",
        "SDDS5\n&column type=double &end\n&data mode=ascii &end\n",
        "SDDS5\n&column name=x, name=y, type=double &end\n&data mode=ascii &end\n",
        "SDDS5\n&column name=x, type=double\n",
        "SDDS5\n&column name=x, type=double &column name=y &end\n",
        "SDDS5\n&data mode=hex &end\n",
        "SDDS5\n&data mode=ascii, lines_per_row=two &end\n",
        "SDDS5\n!# middle-endian\n&data mode=ascii &end\n",
        "SDDS5\n&column name=x, type=double, format_string=%d &end\n&data mode=ascii &end\n",
        "SDDS5\n&column name=2x, type=double &end\n&data mode=ascii &end\n",
    ],
)
def test_header_syntax_errors(text: str) -> None:
    with pytest.raises(HeaderSyntaxError):
        parse_header(text)


def test_duplicate_entity_is_header_syntax() -> None:
    text = "SDDS5\n&array name=a, type=double &end\n&array name=a, type=double &end\n&data mode=binary &end\n"
    with pytest.raises(HeaderSyntaxError):
        parse_header(text)
    lay = parse_header(text.replace("name=a, type=double &end\n&data", "name=b, type=double &end\n&data"))
    assert lay.names(ARRAY) == ["a", "b"]
