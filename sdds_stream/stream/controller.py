from __future__ import annotations

import io
import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Tuple, Union

from ..models.diagnostics import SddsIOError, UsageError

logger = logging.getLogger(__name__)

Target = Union[str, Path, IO[bytes], None]

STDIO_NAME = "-"


def _is_stdio(target: Target) -> bool:
    return target is None or (isinstance(target, str) and target == STDIO_NAME)


def _binary_stream(obj: Any, purpose: str) -> IO[bytes]:
    """Accept a binary file object, or the buffer behind a text stream."""
    if isinstance(obj, io.TextIOBase):
        buffer = getattr(obj, "buffer", None)
        if buffer is None:
            raise UsageError(f"{purpose} must be a binary stream")
        return buffer
    return obj


class ByteSource:
    """Readable end of a stream: a file path, standard input, or an open pipe/file object."""

    def __init__(self, stream: IO[bytes], name: str, owned: bool):
        self.stream = stream
        self.name = name
        self.owned = owned

    def read(self, n: int = -1) -> bytes:
        try:
            return self.stream.read(n)
        except OSError as exc:
            raise SddsIOError(f"read failed on {self.name}: {exc}") from exc

    def readline(self) -> bytes:
        try:
            return self.stream.readline()
        except OSError as exc:
            raise SddsIOError(f"read failed on {self.name}: {exc}") from exc

    def close(self) -> None:
        if self.owned:
            self.stream.close()


class ByteSink:
    """Writable end of a stream.  Every :meth:`write` hands one complete chunk to the OS."""

    def __init__(self, stream: IO[bytes], name: str, owned: bool):
        self.stream = stream
        self.name = name
        self.owned = owned

    def write(self, data: bytes) -> None:
        try:
            self.stream.write(data)
            self.stream.flush()
        except OSError as exc:
            raise SddsIOError(f"write failed on {self.name}: {exc}") from exc

    def close(self) -> None:
        try:
            if self.owned:
                self.stream.close()
            else:
                self.stream.flush()
        except OSError as exc:
            raise SddsIOError(f"close failed on {self.name}: {exc}") from exc


def open_source(target: Target) -> ByteSource:
    """Open a path, standard input (None or '-') or wrap an open binary stream."""
    if _is_stdio(target):
        return ByteSource(_binary_stream(sys.stdin, "standard input"), "<stdin>", owned=False)
    if isinstance(target, (str, Path)):
        path = Path(target).expanduser()
        try:
            return ByteSource(open(path, "rb"), str(path), owned=True)
        except OSError as exc:
            raise SddsIOError(f"cannot open {path} for reading: {exc.strerror or exc}") from exc
    if not hasattr(target, "read"):
        raise UsageError(f"cannot read from {type(target).__name__}")
    return ByteSource(_binary_stream(target, "input"), getattr(target, "name", "<stream>"), owned=False)


def open_sink(target: Target) -> ByteSink:
    """Create/truncate a path, use standard output (None or '-') or wrap an open binary stream."""
    if _is_stdio(target):
        return ByteSink(_binary_stream(sys.stdout, "standard output"), "<stdout>", owned=False)
    if isinstance(target, (str, Path)):
        path = Path(target).expanduser()
        try:
            return ByteSink(open(path, "wb"), str(path), owned=True)
        except OSError as exc:
            raise SddsIOError(f"cannot open {path} for writing: {exc.strerror or exc}") from exc
    if not hasattr(target, "write"):
        raise UsageError(f"cannot write to {type(target).__name__}")
    return ByteSink(_binary_stream(target, "output"), getattr(target, "name", "<stream>"), owned=False)


# ----------------------------------------------------------------------
# Page selection
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class PageFilter:
    """
    Page inclusion/exclusion evaluated by readers before a page is handed out.

    from_page/to_page: inclusive bounds (1-based); pages past to_page end the stream.
    keep_pages: if non-empty, only these pages are delivered.
    remove_pages: these pages are skipped.
    """
    from_page: Optional[int] = None
    to_page: Optional[int] = None
    keep_pages: Tuple[int, ...] = ()
    remove_pages: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.from_page is not None and self.from_page < 1:
            raise ValueError(f"from_page must be >= 1, got {self.from_page}")
        if self.to_page is not None and self.from_page is not None and self.to_page < self.from_page:
            raise ValueError(f"to_page {self.to_page} precedes from_page {self.from_page}")
        if self.keep_pages and self.remove_pages:
            raise ValueError("keep_pages and remove_pages are mutually exclusive")

    @property
    def is_trivial(self) -> bool:
        return self == PageFilter()

    def accepts(self, page: int) -> bool:
        if self.from_page is not None and page < self.from_page:
            return False
        if self.to_page is not None and page > self.to_page:
            return False
        if self.keep_pages and page not in self.keep_pages:
            return False
        return page not in self.remove_pages

    def past_end(self, page: int) -> bool:
        """True once no later page can be accepted."""
        if self.to_page is not None and page > self.to_page:
            return True
        return bool(self.keep_pages) and page > max(self.keep_pages)


def parse_page_list(text: str) -> Tuple[int, ...]:
    """Parse '1,3,5-7' into (1, 3, 5, 6, 7)."""
    pages = []
    for item in str(text).split(","):
        item = item.strip()
        if not item:
            continue
        if "-" in item:
            lo, hi = item.split("-", 1)
            a, b = int(lo), int(hi)
            if b < a:
                raise ValueError(f"bad page range '{item}'")
            pages.extend(range(a, b + 1))
        else:
            pages.append(int(item))
    if any(p < 1 for p in pages):
        raise ValueError(f"page numbers must be >= 1: {text!r}")
    return tuple(sorted(set(pages)))


# ----------------------------------------------------------------------
# In-place rewrite
# ----------------------------------------------------------------------


class TempRewrite:
    """
    In-place rewrite of `target` through a temporary file in the same directory.

    commit(): the original is kept as ``<target>~`` and the temporary file
    atomically replaces `target`.  abort(): the temporary file is removed and
    `target` is left untouched.
    """

    def __init__(self, target: Union[str, Path]):
        self.target = Path(target).expanduser()
        self.backup = self.target.with_name(self.target.name + "~")
        self.temp_path: Optional[Path] = None

    def open(self) -> ByteSink:
        directory = self.target.parent if str(self.target.parent) else Path(".")
        try:
            fd, name = tempfile.mkstemp(prefix=f".{self.target.name}.", suffix=".tmp", dir=directory)
        except OSError as exc:
            raise SddsIOError(f"cannot create a temporary file next to {self.target}: {exc}") from exc
        self.temp_path = Path(name)
        logger.debug("in-place rewrite of %s through %s", self.target, self.temp_path)
        return ByteSink(os.fdopen(fd, "wb"), str(self.temp_path), owned=True)

    def commit(self) -> None:
        if self.temp_path is None:
            raise UsageError("temporary rewrite was never opened")
        try:
            if self.target.exists():
                shutil.copy2(self.target, self.backup)
            os.replace(self.temp_path, self.target)
        except OSError as exc:
            self.abort()
            raise SddsIOError(f"cannot replace {self.target}: {exc}") from exc
        self.temp_path = None

    def abort(self) -> None:
        if self.temp_path is not None:
            try:
                self.temp_path.unlink()
            except FileNotFoundError:
                pass
            self.temp_path = None


def same_file(a: Target, b: Target) -> bool:
    """True if two path targets name the same file (stdio and streams never match)."""
    if not isinstance(a, (str, Path)) or not isinstance(b, (str, Path)) or _is_stdio(a) or _is_stdio(b):
        return False
    pa, pb = Path(a).expanduser(), Path(b).expanduser()
    if pa.exists() and pb.exists():
        return os.path.samefile(pa, pb)
    return pa.resolve() == pb.resolve()
