from .config import StreamConfig, default_config
from .diagnostics import (
    DataTruncatedError,
    DefinitionConflictError,
    Diagnostic,
    DiagnosticQueue,
    ErrorKind,
    HeaderSyntaxError,
    LayoutLockedError,
    NameUnknownError,
    NumericLossError,
    SddsError,
    SddsIOError,
    TypeMismatchError,
    UsageError,
)
from .layout import (
    ArrayDefinition,
    AssociateDefinition,
    ColumnDefinition,
    DataMode,
    Layout,
    ParameterDefinition,
)
from .page import PageBuffer, PageData
from .types import SddsType

__all__ = [
    "ArrayDefinition",
    "AssociateDefinition",
    "ColumnDefinition",
    "DataMode",
    "DataTruncatedError",
    "DefinitionConflictError",
    "Diagnostic",
    "DiagnosticQueue",
    "ErrorKind",
    "HeaderSyntaxError",
    "Layout",
    "LayoutLockedError",
    "NameUnknownError",
    "NumericLossError",
    "PageBuffer",
    "PageData",
    "ParameterDefinition",
    "SddsError",
    "SddsIOError",
    "SddsType",
    "StreamConfig",
    "TypeMismatchError",
    "UsageError",
    "default_config",
]
