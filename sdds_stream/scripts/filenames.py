"""Pipe option and input/output filename pairing shared by the command-line tools.

``-pipe`` alone means both ends are pipes; ``-pipe=input`` / ``-pipe=output``
(or any prefix, e.g. ``-pipe=in,out``) select one end.

Pairing rules
-------------
- stdin in use and one filename given: that filename is the output
- stdout in use and an output filename given: error (too many filenames)
- no stdin and no input filename: error (too few filenames)
- no stdout and no output filename: the input is rewritten in place
- input and output naming the same file: in-place rewrite (with a warning)
- output naming an existing file: warning that it will be replaced
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

from ..models.diagnostics import UsageError
from ..stream.controller import same_file

USE_STDIN = 1
USE_STDOUT = 2


def process_pipe_option(items: Sequence[str]) -> int:
    """Flags for the qualifiers of ``-pipe``; no qualifiers means both ends."""
    items = [s.strip() for s in items if s and s.strip()]
    if not items:
        return USE_STDIN | USE_STDOUT
    flags = 0
    for item in items:
        key = item.lower()
        if "input".startswith(key):
            flags |= USE_STDIN
        elif "output".startswith(key):
            flags |= USE_STDOUT
        else:
            raise UsageError(f"invalid -pipe qualifier '{item}' (use input and/or output)")
    return flags


def parse_pipe_argument(value: Optional[str]) -> int:
    """argparse helper: ``-pipe`` gives None, ``-pipe=in,out`` gives 'in,out'."""
    if value is None:
        return 0
    if value == "":
        return USE_STDIN | USE_STDOUT
    return process_pipe_option(value.split(","))


@dataclass(frozen=True)
class FileTargets:
    """
    Resolved endpoints of a filter-style tool.

    input/output: file paths, or None for standard input/output.
    in_place: output replaces input through a temporary file.
    warnings: messages for the user (suppressed by -noWarnings).
    """
    input: Optional[str]
    output: Optional[str]
    in_place: bool = False
    warnings: Tuple[str, ...] = ()


def process_filenames(
    program: str,
    input: Optional[str],
    output: Optional[str],
    flags: int,
    *,
    no_warnings: bool = False,
) -> FileTargets:
    warnings = []
    if flags & USE_STDIN and input:
        if output:
            raise UsageError(f"{program}: too many filenames (input is read from the pipe)")
        output, input = input, None
    if flags & USE_STDOUT and output:
        raise UsageError(f"{program}: too many filenames (output is written to the pipe)")
    if not flags & USE_STDIN and not input:
        raise UsageError(f"{program}: too few filenames (no input given)")

    in_place = False
    if not flags & USE_STDOUT:
        if not output:
            output = input
            in_place = True
        elif input and same_file(input, output):
            in_place = True
            warnings.append(f"{program}: input and output are the same file; {input} will be replaced")
        elif Path(output).exists():
            warnings.append(f"{program}: existing file {output} will be replaced")
    return FileTargets(
        input=input or None,
        output=output or None,
        in_place=in_place,
        warnings=() if no_warnings else tuple(warnings),
    )
