"""SDDS Stream -- Python engine for the Self Describing Data Sets file format.

An SDDS file is a textual header (description, parameters, columns, arrays,
associates, data mode) followed by pages of data in textual or binary form.

This package provides tools for:
- Parsing and emitting the ``&kind ... &end`` header vocabulary
- Reading and writing pages in binary (little/big-endian) and textual modes,
  row-major or column-major
- Typed access to parameters, columns and arrays through one Dataset API
- Row/column selection, page filtering, row limits and truncation recovery
- In-place rewrites through a temporary file with a ``~`` backup
- Command-line tools (sdds-convert, sdds-expand, sdds-check, sdds-query)

Key principles:
- Every operation returns a success flag and queues diagnostics on its stream
- No silent numeric loss: narrowing conversions are errors unless permitted
- Pages are written whole: a failed write never leaves half a page behind

Main subpackages:
- models: Type & Value layer, Layout, Page buffer, configuration, diagnostics
- codec: Header codec and binary/textual data codecs
- stream: Byte sources/sinks, page filters and the Dataset accessor API
- scripts: Command-line tools
"""

from .models.config import (
    StreamConfig,
    default_config,
    set_diagnostic_sink,
    set_name_validity,
    set_row_limit,
    get_row_limit,
)
from .models.diagnostics import (
    DataTruncatedError,
    DefinitionConflictError,
    Diagnostic,
    ErrorKind,
    HeaderSyntaxError,
    NameUnknownError,
    NumericLossError,
    SddsError,
    SddsIOError,
    TypeMismatchError,
    UsageError,
)
from .models.layout import DataMode, Layout
from .models.types import SddsType
from .stream.controller import PageFilter
from .stream.dataset import Dataset

__all__ = [
    "DataMode",
    "DataTruncatedError",
    "Dataset",
    "DefinitionConflictError",
    "Diagnostic",
    "ErrorKind",
    "HeaderSyntaxError",
    "Layout",
    "NameUnknownError",
    "NumericLossError",
    "PageFilter",
    "SddsError",
    "SddsIOError",
    "SddsType",
    "StreamConfig",
    "TypeMismatchError",
    "UsageError",
    "default_config",
    "get_row_limit",
    "set_diagnostic_sink",
    "set_name_validity",
    "set_row_limit",
]
