"""Diagnostics: error kinds, the exception hierarchy, and the per-stream queue.

Internal code raises :class:`SddsError` subclasses.  The public accessor layer
(:class:`~sdds_stream.stream.dataset.Dataset`) catches them and turns them into
:class:`Diagnostic` records on a :class:`DiagnosticQueue`, so callers see a
boolean outcome plus a queue they can drain or print.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from typing import IO, Iterator, List, Optional


class ErrorKind(str, Enum):
    IO_ERROR = "IO_ERROR"
    HEADER_SYNTAX = "HEADER_SYNTAX"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    NAME_UNKNOWN = "NAME_UNKNOWN"
    DEFINITION_CONFLICT = "DEFINITION_CONFLICT"
    DATA_TRUNCATED = "DATA_TRUNCATED"
    ROW_LIMIT_HIT = "ROW_LIMIT_HIT"
    NUMERIC_LOSS = "NUMERIC_LOSS"
    USAGE = "USAGE"


class SddsError(Exception):
    """Base class for every error raised inside the stream engine."""

    kind: ErrorKind = ErrorKind.USAGE
    fatal: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SddsIOError(SddsError):
    kind = ErrorKind.IO_ERROR


class HeaderSyntaxError(SddsError):
    kind = ErrorKind.HEADER_SYNTAX


class TypeMismatchError(SddsError):
    kind = ErrorKind.TYPE_MISMATCH


class NameUnknownError(SddsError):
    kind = ErrorKind.NAME_UNKNOWN


class DefinitionConflictError(SddsError):
    kind = ErrorKind.DEFINITION_CONFLICT


class LayoutLockedError(DefinitionConflictError):
    """Raised when a layout is modified after its first page was emitted."""


class NumericLossError(SddsError):
    kind = ErrorKind.NUMERIC_LOSS


class UsageError(SddsError):
    kind = ErrorKind.USAGE


class DataTruncatedError(SddsError):
    """
    A page ended before all of its declared content was read.

    rows_read:
      number of complete rows materialized before the data ran out.
    recoverable:
      True when parameters and arrays were complete, so the partial page is
      usable (possibly with zero rows).
    partial:
      the usable part of the page (a PageData) when recoverable, else None.
    """

    kind = ErrorKind.DATA_TRUNCATED

    def __init__(self, message: str, *, rows_read: int = 0, recoverable: bool = False, partial: object = None):
        super().__init__(message)
        self.rows_read = int(rows_read)
        self.recoverable = bool(recoverable)
        self.partial = partial


@dataclass(frozen=True)
class Diagnostic:
    kind: ErrorKind
    message: str
    fatal: bool = True

    def render(self) -> str:
        level = "error" if self.fatal else "warning"
        return f"{level} ({self.kind.value}): {self.message}"


class DiagnosticQueue:
    """
    Ordered accumulator of diagnostics for one stream.

    Entries are kept until drained or cleared; printing drains the queue.
    """

    def __init__(self) -> None:
        self._entries: List[Diagnostic] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(list(self._entries))

    def add(self, kind: ErrorKind, message: str, *, fatal: bool = True) -> Diagnostic:
        d = Diagnostic(kind=kind, message=str(message), fatal=bool(fatal))
        self._entries.append(d)
        return d

    def add_error(self, err: SddsError) -> Diagnostic:
        return self.add(err.kind, err.message, fatal=err.fatal)

    def warn(self, kind: ErrorKind, message: str) -> Diagnostic:
        return self.add(kind, message, fatal=False)

    @property
    def has_fatal(self) -> bool:
        return any(d.fatal for d in self._entries)

    def kinds(self) -> List[ErrorKind]:
        return [d.kind for d in self._entries]

    def last(self) -> Optional[Diagnostic]:
        return self._entries[-1] if self._entries else None

    def drain(self) -> List[Diagnostic]:
        out = self._entries
        self._entries = []
        return out

    def clear(self) -> None:
        self._entries.clear()

    def print(
        self,
        sink: Optional[IO[str]] = None,
        *,
        program: Optional[str] = None,
        include_warnings: bool = True,
    ) -> int:
        """Write queued entries to `sink` (stderr by default) and drain. Returns the count written."""
        sink = sink if sink is not None else sys.stderr
        entries = [d for d in self.drain() if include_warnings or d.fatal]
        prefix = f"{program}: " if program else ""
        for d in entries:
            sink.write(prefix + d.render() + "\n")
        if entries:
            sink.flush()
        return len(entries)

    def raise_if_errors(self) -> None:
        """Raise the first fatal entry as an :class:`SddsError`; warnings are ignored."""
        fatal = [d for d in self._entries if d.fatal]
        if not fatal:
            return
        msg = "\n".join(f"- {d.render()}" for d in fatal)
        err = _ERROR_BY_KIND.get(fatal[0].kind, SddsError)(msg)
        raise err


_ERROR_BY_KIND = {
    ErrorKind.IO_ERROR: SddsIOError,
    ErrorKind.HEADER_SYNTAX: HeaderSyntaxError,
    ErrorKind.TYPE_MISMATCH: TypeMismatchError,
    ErrorKind.NAME_UNKNOWN: NameUnknownError,
    ErrorKind.DEFINITION_CONFLICT: DefinitionConflictError,
    ErrorKind.NUMERIC_LOSS: NumericLossError,
    ErrorKind.DATA_TRUNCATED: DataTruncatedError,
    ErrorKind.USAGE: UsageError,
}
