"""Type & Value layer: the closed set of SDDS scalar types and conversions among them.

Numeric values live in NumPy scalars/arrays of the matching fixed-width dtype.
Strings and characters live in Python ``str`` (``object`` arrays for vectors);
a character is a one-element string.

Conversion policy
-----------------
- integer -> narrower integer out of range: NumericLossError
- float -> integer with a fractional part, non-finite, or out of range: NumericLossError
- integer -> float that cannot represent it exactly: NumericLossError
- double -> float that changes the value: NumericLossError
- string -> numeric uses the scan rules of :func:`scan_value`
- numeric -> string uses the entity's printf-style format (or the exact default)

Every check is skipped when the caller passes ``allow_loss=True``; the value is
then converted the way C would (truncation toward zero, modular wrap).
"""

from __future__ import annotations

import math
import re
from enum import IntEnum
from typing import Any, Dict, Optional, Union

import numpy as np

from .diagnostics import NumericLossError, TypeMismatchError


class SddsType(IntEnum):
    DOUBLE = 2
    FLOAT = 3
    LONG64 = 4
    ULONG64 = 5
    LONG = 6
    ULONG = 7
    SHORT = 8
    USHORT = 9
    STRING = 10
    CHARACTER = 11


TypeLike = Union[SddsType, int, str]

_TYPE_NAMES: Dict[SddsType, str] = {
    SddsType.SHORT: "short",
    SddsType.USHORT: "ushort",
    SddsType.LONG: "long",
    SddsType.ULONG: "ulong",
    SddsType.LONG64: "long64",
    SddsType.ULONG64: "ulong64",
    SddsType.FLOAT: "float",
    SddsType.DOUBLE: "double",
    SddsType.CHARACTER: "character",
    SddsType.STRING: "string",
}
_TYPES_BY_NAME = {v: k for k, v in _TYPE_NAMES.items()}

_TYPE_SIZES: Dict[SddsType, Optional[int]] = {
    SddsType.SHORT: 2,
    SddsType.USHORT: 2,
    SddsType.LONG: 4,
    SddsType.ULONG: 4,
    SddsType.LONG64: 8,
    SddsType.ULONG64: 8,
    SddsType.FLOAT: 4,
    SddsType.DOUBLE: 8,
    SddsType.CHARACTER: 1,
    SddsType.STRING: None,
}

# NumPy type codes without byte-order prefix
_NUMPY_CODES: Dict[SddsType, str] = {
    SddsType.SHORT: "i2",
    SddsType.USHORT: "u2",
    SddsType.LONG: "i4",
    SddsType.ULONG: "u4",
    SddsType.LONG64: "i8",
    SddsType.ULONG64: "u8",
    SddsType.FLOAT: "f4",
    SddsType.DOUBLE: "f8",
}

# conventional SDDS printf defaults (used for display)
_DEFAULT_FORMATS: Dict[SddsType, str] = {
    SddsType.SHORT: "%hd",
    SddsType.USHORT: "%hu",
    SddsType.LONG: "%d",
    SddsType.ULONG: "%u",
    SddsType.LONG64: "%lld",
    SddsType.ULONG64: "%llu",
    SddsType.FLOAT: "%15.8e",
    SddsType.DOUBLE: "%22.15e",
    SddsType.CHARACTER: "%c",
    SddsType.STRING: "%s",
}

_MANTISSA_BITS = {SddsType.FLOAT: 24, SddsType.DOUBLE: 53}

_PRINTF_SPEC = re.compile(
    r"%(?P<flags>[-+ #0]*)(?P<width>\d+|\*)?(?:\.(?P<prec>\d+|\*))?"
    r"(?P<length>hh|h|ll|l|L|q|j|z|t)?(?P<conv>[diouxXeEfFgGcs])"
)
_CONVERSIONS_INTEGER = set("diouxXc")
_CONVERSIONS_FLOAT = set("eEfFgG")


# ----------------------------------------------------------------------
# Tag queries
# ----------------------------------------------------------------------


def as_type(tag: TypeLike) -> SddsType:
    """Coerce an enum member, its integer code, or its wire token to :class:`SddsType`."""
    if isinstance(tag, SddsType):
        return tag
    if isinstance(tag, str):
        t = identify_type(tag)
        if t is None:
            raise TypeMismatchError(f"unknown data type '{tag}'")
        return t
    try:
        return SddsType(int(tag))
    except ValueError:
        raise TypeMismatchError(f"unknown data type code {tag!r}") from None


def identify_type(token: str) -> Optional[SddsType]:
    return _TYPES_BY_NAME.get(str(token).strip().lower())


def type_name(tag: TypeLike) -> str:
    return _TYPE_NAMES[as_type(tag)]


def type_size(tag: TypeLike) -> Optional[int]:
    """Fixed byte size on the wire; ``None`` for variable-length strings."""
    return _TYPE_SIZES[as_type(tag)]


def type_is_numeric(tag: TypeLike) -> bool:
    return as_type(tag) in _NUMPY_CODES


def type_is_integer(tag: TypeLike) -> bool:
    t = as_type(tag)
    return t in _NUMPY_CODES and t not in _MANTISSA_BITS


def type_is_floating(tag: TypeLike) -> bool:
    return as_type(tag) in _MANTISSA_BITS


def numpy_dtype(tag: TypeLike, byteorder: str = "=") -> np.dtype:
    """
    NumPy dtype for values of `tag`.

    byteorder: '<', '>' or '=' (native). Strings and characters map to ``object``.
    """
    t = as_type(tag)
    code = _NUMPY_CODES.get(t)
    if code is None:
        return np.dtype(object)
    return np.dtype(byteorder + code)


def type_from_dtype(dtype: Any) -> SddsType:
    """Best SDDS type for a NumPy dtype (used when columns are set from arrays)."""
    dt = np.dtype(dtype)
    if dt.kind == "b":
        return SddsType.SHORT
    if dt.kind in "iuf":
        code = f"{dt.kind}{dt.itemsize}"
        for t, c in _NUMPY_CODES.items():
            if c == code:
                return t
        if dt.kind == "i":
            return SddsType.SHORT if dt.itemsize < 2 else SddsType.LONG64
        if dt.kind == "u":
            return SddsType.USHORT if dt.itemsize < 2 else SddsType.ULONG64
        return SddsType.DOUBLE
    return SddsType.STRING


def infer_type(value: Any) -> SddsType:
    """Type of a single Python/NumPy scalar."""
    if isinstance(value, np.generic):
        if isinstance(value, (np.str_, np.bytes_)):
            return SddsType.STRING
        return type_from_dtype(value.dtype)
    if isinstance(value, (bool, int)):
        v = int(value)
        if -(2**63) <= v < 2**63:
            return SddsType.LONG64
        if 0 <= v < 2**64:
            return SddsType.ULONG64
        raise NumericLossError(f"integer {v} does not fit any 64-bit type")
    if isinstance(value, float):
        return SddsType.DOUBLE
    if isinstance(value, (str, bytes)):
        return SddsType.STRING
    raise TypeMismatchError(f"unsupported value type {type(value).__name__}")


def default_value(tag: TypeLike) -> Any:
    t = as_type(tag)
    if t == SddsType.STRING:
        return ""
    if t == SddsType.CHARACTER:
        return "\0"
    return numpy_dtype(t).type(0)


def default_format(tag: TypeLike) -> str:
    return _DEFAULT_FORMATS[as_type(tag)]


def string_is_blank(s: Optional[str]) -> bool:
    return s is None or str(s).strip() == ""


def has_whitespace(s: Optional[str]) -> bool:
    return s is not None and any(c.isspace() for c in str(s))


# ----------------------------------------------------------------------
# printf formats
# ----------------------------------------------------------------------


def verify_printf_format(fmt: str, tag: TypeLike) -> bool:
    """True if `fmt` holds exactly one conversion compatible with `tag`."""
    t = as_type(tag)
    if not fmt:
        return False
    specs = list(_PRINTF_SPEC.finditer(fmt.replace("%%", "")))
    if len(specs) != 1:
        return False
    conv = specs[0].group("conv")
    if "*" in (specs[0].group("width") or "") + (specs[0].group("prec") or ""):
        return False
    if t == SddsType.STRING:
        return conv == "s"
    if t == SddsType.CHARACTER:
        return conv == "c"
    if type_is_integer(t):
        return conv in _CONVERSIONS_INTEGER - {"c"}
    return conv in _CONVERSIONS_FLOAT


def _python_format(fmt: str) -> str:
    # Python's % operator rejects C length modifiers like 'll'
    return _PRINTF_SPEC.sub(
        lambda m: "%" + (m.group("flags") or "") + (m.group("width") or "")
        + ("." + m.group("prec") if m.group("prec") is not None else "")
        + m.group("conv"),
        fmt,
    )


def format_value(value: Any, tag: TypeLike, format_string: Optional[str] = None) -> str:
    """
    Print a value as text.

    With a valid `format_string` the printf conversion is applied.  Without one,
    numbers are written in their shortest exact form so that a textual
    round-trip reproduces the value bit for bit.
    """
    t = as_type(tag)
    if t == SddsType.STRING:
        return "" if value is None else str(value)
    if t == SddsType.CHARACTER:
        s = "" if value is None else str(value)
        return s[:1] if s else "\0"
    if format_string and verify_printf_format(format_string, t):
        py = _python_format(format_string)
        if type_is_integer(t):
            return py % int(value)
        return py % float(value)
    if type_is_integer(t):
        return str(int(value))
    if t == SddsType.FLOAT:
        return np.format_float_scientific(np.float32(value), unique=True, trim="-")
    return repr(float(value))


def scan_value(text: str, tag: TypeLike) -> Any:
    """Parse text (already unquoted) into a typed value; TypeMismatchError on failure."""
    t = as_type(tag)
    if t == SddsType.STRING:
        return str(text)
    if t == SddsType.CHARACTER:
        return str(text)[:1] if text else "\0"
    s = str(text).strip()
    if type_is_integer(t):
        try:
            iv = int(s, 10)
        except ValueError:
            try:
                fv = float(s)
            except ValueError:
                raise TypeMismatchError(f"cannot scan '{text}' as {type_name(t)}") from None
            return convert(fv, SddsType.DOUBLE, t)
        return convert(iv, infer_type(iv), t)
    try:
        fv = float(s)
    except ValueError:
        raise TypeMismatchError(f"cannot scan '{text}' as {type_name(t)}") from None
    return convert(fv, SddsType.DOUBLE, t, allow_loss=True) if t == SddsType.FLOAT else np.float64(fv)


# ----------------------------------------------------------------------
# Scalar conversion
# ----------------------------------------------------------------------


def _wrap_integer(v: int, t: SddsType) -> int:
    info = np.iinfo(numpy_dtype(t))
    span = int(info.max) - int(info.min) + 1
    return (v - int(info.min)) % span + int(info.min)


def _convert_numeric(value: Any, src: SddsType, dst: SddsType, allow_loss: bool) -> Any:
    dtype = numpy_dtype(dst)
    if type_is_integer(dst):
        if type_is_floating(src):
            fv = float(value)
            if not math.isfinite(fv):
                if not allow_loss:
                    raise NumericLossError(f"non-finite value {fv} cannot become {type_name(dst)}")
                return dtype.type(0)
            if not fv.is_integer() and not allow_loss:
                raise NumericLossError(f"value {fv!r} has a fractional part; {type_name(dst)} would truncate it")
            iv = int(fv)
        else:
            iv = int(value)
        info = np.iinfo(dtype)
        if iv < int(info.min) or iv > int(info.max):
            if not allow_loss:
                raise NumericLossError(f"value {iv} out of range for {type_name(dst)} [{info.min}, {info.max}]")
            iv = _wrap_integer(iv, dst)
        return dtype.type(iv)

    # floating destination
    if type_is_integer(src):
        iv = int(value)
        with np.errstate(over="ignore"):
            out = dtype.type(iv)
        if not allow_loss and (not np.isfinite(out) or int(out) != iv):
            raise NumericLossError(f"integer {iv} is not exactly representable as {type_name(dst)}")
        return out
    fv = float(value)
    with np.errstate(over="ignore"):
        out = dtype.type(fv)
    if not allow_loss and math.isfinite(fv) and float(out) != fv:
        raise NumericLossError(f"value {fv!r} changes when stored as {type_name(dst)}")
    return out


def convert(
    value: Any,
    from_tag: TypeLike,
    to_tag: TypeLike,
    *,
    allow_loss: bool = False,
    format_string: Optional[str] = None,
) -> Any:
    """Convert one value between SDDS types (see module docstring for the loss policy)."""
    src = as_type(from_tag)
    dst = as_type(to_tag)

    if dst == SddsType.STRING:
        if src == SddsType.STRING:
            return "" if value is None else str(value)
        return format_value(value, src, format_string)
    if src == SddsType.STRING:
        if dst == SddsType.CHARACTER:
            s = "" if value is None else str(value)
            if len(s) > 1 and not allow_loss:
                raise NumericLossError(f"string '{s}' is longer than one character")
            return s[:1] if s else "\0"
        return scan_value(value, dst)
    if dst == SddsType.CHARACTER:
        if src == SddsType.CHARACTER:
            return str(value)[:1] if value else "\0"
        iv = _convert_numeric(value, src, SddsType.LONG64, allow_loss)
        if not 0 <= int(iv) <= 255:
            if not allow_loss:
                raise NumericLossError(f"value {int(iv)} is not a character code")
            iv = int(iv) % 256
        return chr(int(iv))
    if src == SddsType.CHARACTER:
        code = ord(str(value)[0]) if value else 0
        return _convert_numeric(code, SddsType.SHORT, dst, allow_loss)
    return _convert_numeric(value, src, dst, allow_loss)


def make_value(tag: TypeLike, raw: Any, *, allow_loss: bool = False) -> Any:
    """Typed constructor: coerce `raw` (Python/NumPy scalar, str or bytes) to `tag`."""
    t = as_type(tag)
    if raw is None:
        return default_value(t)
    if isinstance(raw, (bytes, np.bytes_)):
        raw = bytes(raw).decode("latin-1")
    if isinstance(raw, (str, np.str_)):
        raw = str(raw)
        if t == SddsType.CHARACTER:
            return convert(raw, SddsType.STRING, t, allow_loss=allow_loss)
        return scan_value(raw, t) if t != SddsType.STRING else raw
    return convert(raw, infer_type(raw), t, allow_loss=allow_loss)


# ----------------------------------------------------------------------
# Vector conversion
# ----------------------------------------------------------------------


def _check_array_loss(arr: np.ndarray, out: np.ndarray, dst: SddsType) -> None:
    src_kind = arr.dtype.kind
    if type_is_integer(dst):
        info = np.iinfo(out.dtype)
        if src_kind == "f":
            bad = ~np.isfinite(arr)
            if bad.any():
                raise NumericLossError(f"non-finite values cannot become {type_name(dst)}")
            if np.any(arr != np.trunc(arr)):
                raise NumericLossError(f"fractional values would be truncated to {type_name(dst)}")
            # info.max + 1 is a power of two, exact in float; info.max itself rounds up
            if arr.size and (arr.min() < float(info.min) or arr.max() >= float(int(info.max) + 1)):
                raise NumericLossError(f"values out of range for {type_name(dst)}")
        elif arr.size:
            lo, hi = int(arr.min()), int(arr.max())
            if lo < int(info.min) or hi > int(info.max):
                raise NumericLossError(
                    f"values in [{lo}, {hi}] out of range for {type_name(dst)} [{info.min}, {info.max}]"
                )
        return
    if src_kind in "iub":
        limit = 2.0 ** _MANTISSA_BITS[dst]
        big = np.abs(arr.astype(np.float64)) >= limit
        if big.any():
            for a, o in zip(arr[big].tolist(), out[big].tolist()):
                if not math.isfinite(o) or int(o) != int(a):
                    raise NumericLossError(f"integer {a} is not exactly representable as {type_name(dst)}")
        return
    finite = np.isfinite(arr)
    if np.any(out[finite].astype(arr.dtype) != arr[finite]):
        raise NumericLossError(f"values change when stored as {type_name(dst)}")


def cast_array(
    values: Any,
    to_tag: TypeLike,
    *,
    allow_loss: bool = False,
    format_string: Optional[str] = None,
) -> np.ndarray:
    """Return a new 1-D/N-D array holding `values` converted to `to_tag`."""
    dst = as_type(to_tag)
    arr = np.asarray(values)
    if arr.dtype.kind in "OUS" or dst in (SddsType.STRING, SddsType.CHARACTER):
        flat = arr.reshape(-1)
        out = np.empty(flat.shape, dtype=object if not type_is_numeric(dst) else numpy_dtype(dst))
        for i, v in enumerate(flat.tolist()):
            out[i] = make_value(dst, v, allow_loss=allow_loss) if dst != SddsType.STRING or isinstance(v, (str, bytes)) \
                else convert(v, infer_type(v), dst, format_string=format_string)
        return out.reshape(arr.shape)
    target = numpy_dtype(dst)
    if arr.dtype == target:
        return arr.copy()
    with np.errstate(invalid="ignore", over="ignore"):
        out = arr.astype(target)
    if not allow_loss:
        _check_array_loss(arr, out, dst)
    elif type_is_integer(dst) and arr.dtype.kind == "f":
        out[~np.isfinite(arr)] = 0
    return out
