"""Textual tokens shared by the header and the textual data codec.

Quoting rule
------------
A value is written bare when it is non-empty and contains none of: whitespace,
``"``, ``\\``, ``,``, ``&``, ``!``, ``=`` or a non-printable character.
Anything else is enclosed in double quotes; inside the quotes ``"`` and ``\\``
are backslash-escaped and non-printable characters are written as ``\\ooo``
(three octal digits).
"""

from __future__ import annotations

from typing import List, Optional, Tuple

_SPECIAL = set(' \t\r\n\v\f"\\,&!=')
_SIMPLE_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "a": "\a",
}


def _printable(c: str) -> bool:
    o = ord(c)
    return 32 <= o < 127 or 160 <= o <= 255


def needs_quotes(value: str) -> bool:
    if value == "":
        return True
    return any(c in _SPECIAL or not _printable(c) for c in value)


def escape(value: str) -> str:
    out = []
    for c in value:
        if c == "\\" or c == '"':
            out.append("\\" + c)
        elif _printable(c):
            out.append(c)
        else:
            o = ord(c)
            if o > 255:
                raise ValueError(f"character U+{o:04X} cannot be encoded in an SDDS text field")
            out.append("\\%03o" % o)
    return "".join(out)


def quote(value: str) -> str:
    """Render one value for a header field or a textual data cell."""
    value = "" if value is None else str(value)
    if not needs_quotes(value):
        return value
    return '"' + escape(value) + '"'


def read_escape(text: str, i: int) -> Tuple[str, int]:
    """Decode the escape sequence starting after the backslash at text[i-1]; returns (char, next index)."""
    if i >= len(text):
        return "\\", i
    c = text[i]
    if c in "01234567":
        j = i
        while j < len(text) and j < i + 3 and text[j] in "01234567":
            j += 1
        return chr(int(text[i:j], 8) & 0xFF), j
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    return c, i + 1


def unescape(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\":
            ch, i = read_escape(text, i + 1)
            out.append(ch)
        else:
            out.append(c)
            i += 1
    return "".join(out)


def read_quoted(text: str, i: int) -> Tuple[Optional[str], int]:
    """
    Read a quoted string whose opening quote is text[i].

    Returns (value, index after the closing quote), or (None, len(text)) if the
    closing quote is missing.
    """
    out = []
    j = i + 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            ch, j = read_escape(text, j + 1)
            out.append(ch)
        elif c == '"':
            return "".join(out), j + 1
        else:
            out.append(c)
            j += 1
    return None, len(text)


def strip_comment(line: str) -> str:
    """Drop an unquoted ``!`` and everything after it."""
    in_quotes = False
    i = 0
    while i < len(line):
        c = line[i]
        if c == "\\" and in_quotes:
            i += 2
            continue
        if c == '"':
            in_quotes = not in_quotes
        elif c == "!" and not in_quotes:
            return line[:i]
        i += 1
    return line


def split_tokens(line: str) -> List[str]:
    """
    Split a textual data line into unquoted/unescaped tokens.

    Comments start at an unquoted ``!``.  Raises ValueError on an unterminated quote.
    """
    tokens: List[str] = []
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        if c.isspace():
            i += 1
            continue
        if c == "!":
            break
        if c == '"':
            value, i = read_quoted(line, i)
            if value is None:
                raise ValueError(f"unterminated quoted string in line: {line.rstrip()!r}")
            tokens.append(value)
            continue
        j = i
        while j < n and not line[j].isspace() and line[j] != '"':
            j += 1
        tokens.append(unescape(line[i:j]))
        i = j
    return tokens
