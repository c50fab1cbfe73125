from __future__ import annotations

import copy as _copy
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .config import NAME_POLICY_RELAXED, NAME_POLICY_STRICT
from .diagnostics import (
    DefinitionConflictError,
    LayoutLockedError,
    NameUnknownError,
    TypeMismatchError,
    UsageError,
)
from .types import SddsType, TypeLike, as_type, format_value, type_name, verify_printf_format

PARAMETER = "parameter"
COLUMN = "column"
ARRAY = "array"
ASSOCIATE = "associate"
KINDS = (PARAMETER, COLUMN, ARRAY, ASSOCIATE)

_STRICT_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_.$:]*\Z")


def name_is_valid(name: Optional[str], policy: str = NAME_POLICY_STRICT) -> bool:
    """
    Name check applied when an entity is defined.

    strict: ``[A-Za-z_][A-Za-z0-9_.$:]*``
    relaxed: any non-empty name without control characters
    """
    if not name:
        return False
    if policy == NAME_POLICY_RELAXED:
        return not any(ord(ch) < 32 or ord(ch) == 127 for ch in name)
    return _STRICT_NAME.match(name) is not None


@dataclass(frozen=True)
class ParameterDefinition:
    """
    Scalar entity carrying at most one value per page.

    fixed_value: textual literal from the header; when set the parameter is not
    stored in page data and every page reports this value.
    """
    name: str
    type: SddsType
    symbol: Optional[str] = None
    units: Optional[str] = None
    description: Optional[str] = None
    format_string: Optional[str] = None
    fixed_value: Optional[str] = None


@dataclass(frozen=True)
class ColumnDefinition:
    """field_length is a hint for the textual codec only (0 = free format)."""
    name: str
    type: SddsType
    symbol: Optional[str] = None
    units: Optional[str] = None
    description: Optional[str] = None
    format_string: Optional[str] = None
    field_length: int = 0


@dataclass(frozen=True)
class ArrayDefinition:
    """dimensions is the number of axes; the size of each axis is set per page."""
    name: str
    type: SddsType
    symbol: Optional[str] = None
    units: Optional[str] = None
    description: Optional[str] = None
    format_string: Optional[str] = None
    group_name: Optional[str] = None
    field_length: int = 0
    dimensions: int = 1


@dataclass(frozen=True)
class AssociateDefinition:
    """Metadata pointing at a sibling file.  No data is read through it."""
    name: str
    filename: str
    path: Optional[str] = None
    description: Optional[str] = None
    contents: Optional[str] = None
    sdds: bool = False


Definition = Union[ParameterDefinition, ColumnDefinition, ArrayDefinition, AssociateDefinition]

_DEFINITION_CLASSES = {
    PARAMETER: ParameterDefinition,
    COLUMN: ColumnDefinition,
    ARRAY: ArrayDefinition,
    ASSOCIATE: AssociateDefinition,
}


def definition_fields(kind: str) -> Tuple[str, ...]:
    return tuple(f.name for f in fields(_DEFINITION_CLASSES[kind]))


@dataclass(frozen=True)
class DataMode:
    """
    Wire mode from the ``&data`` clause.

    mode: "ascii" or "binary"
    lines_per_row: textual rows are split over this many physical lines
    no_row_counts: page row count is not written
    additional_header_lines: textual lines skipped after ``&data``
    column_major: columns stored one after the other instead of row by row
    endian: byte order of binary pages ("little" or "big")
    """
    mode: str = "ascii"
    lines_per_row: int = 1
    no_row_counts: bool = False
    additional_header_lines: int = 0
    column_major: bool = False
    endian: str = "little"

    def __post_init__(self) -> None:
        if self.mode not in ("ascii", "binary"):
            raise ValueError(f"data mode must be 'ascii' or 'binary', got {self.mode!r}")
        if int(self.lines_per_row) < 1:
            raise ValueError(f"lines_per_row must be >= 1, got {self.lines_per_row}")
        if int(self.additional_header_lines) < 0:
            raise ValueError(f"additional_header_lines must be >= 0, got {self.additional_header_lines}")
        if self.endian not in ("little", "big"):
            raise ValueError(f"endian must be 'little' or 'big', got {self.endian!r}")

    @property
    def is_binary(self) -> bool:
        return self.mode == "binary"

    @property
    def byteorder(self) -> str:
        return "<" if self.endian == "little" else ">"


class Layout:
    """
    In-memory header of one stream: description, ordered entity lists, data mode.

    Names are unique within their kind.  After :meth:`lock` (first page emitted
    on an output) every mutation raises :class:`LayoutLockedError`.
    """

    def __init__(
        self,
        description: Optional[str] = None,
        contents: Optional[str] = None,
        data_mode: Optional[DataMode] = None,
        *,
        name_policy: str = NAME_POLICY_STRICT,
    ):
        self.description = description
        self.contents = contents
        self.data_mode = data_mode if data_mode is not None else DataMode()
        self.name_policy = name_policy
        self._entities: Dict[str, List[Definition]] = {k: [] for k in KINDS}
        self._index: Dict[str, Dict[str, int]] = {k: {} for k in KINDS}
        self._locked = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def _check_mutable(self) -> None:
        if self._locked:
            raise LayoutLockedError("layout cannot change after the first page was written")

    def set_description(self, text: Optional[str], contents: Optional[str] = None) -> None:
        self._check_mutable()
        self.description = text
        self.contents = contents

    def set_data_mode(self, data_mode: DataMode) -> None:
        self._check_mutable()
        self.data_mode = data_mode

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def parameters(self) -> List[ParameterDefinition]:
        return list(self._entities[PARAMETER])  # type: ignore[arg-type]

    @property
    def columns(self) -> List[ColumnDefinition]:
        return list(self._entities[COLUMN])  # type: ignore[arg-type]

    @property
    def arrays(self) -> List[ArrayDefinition]:
        return list(self._entities[ARRAY])  # type: ignore[arg-type]

    @property
    def associates(self) -> List[AssociateDefinition]:
        return list(self._entities[ASSOCIATE])  # type: ignore[arg-type]

    def names(self, kind: str) -> List[str]:
        return [d.name for d in self._entities[_kind(kind)]]

    def count(self, kind: str) -> int:
        return len(self._entities[_kind(kind)])

    def has(self, kind: str, name: str) -> bool:
        return name in self._index[_kind(kind)]

    def iter(self, kind: str) -> Iterator[Definition]:
        return iter(list(self._entities[_kind(kind)]))

    def get_index(self, kind: str, name: str) -> int:
        idx = self._index[_kind(kind)].get(name)
        if idx is None:
            raise NameUnknownError(f"{kind} '{name}' does not exist")
        return idx

    def get_definition(self, kind: str, key: Union[str, int]) -> Definition:
        kind = _kind(kind)
        if isinstance(key, str):
            return self._entities[kind][self.get_index(kind, key)]
        items = self._entities[kind]
        if not 0 <= int(key) < len(items):
            raise NameUnknownError(f"{kind} index {key} out of range (0..{len(items) - 1})")
        return items[int(key)]

    def resolve(self, kind: str, key: Union[str, int]) -> int:
        """Index of an entity given either its name or its index."""
        if isinstance(key, str):
            return self.get_index(kind, key)
        self.get_definition(kind, key)
        return int(key)

    # ------------------------------------------------------------------
    # Definition
    # ------------------------------------------------------------------

    def add_definition(self, kind: str, definition: Definition) -> int:
        """Append a ready-made definition; returns its index."""
        kind = _kind(kind)
        self._check_mutable()
        if not isinstance(definition, _DEFINITION_CLASSES[kind]):
            raise UsageError(f"expected a {kind} definition, got {type(definition).__name__}")
        name = definition.name
        if kind != ASSOCIATE and not name_is_valid(name, self.name_policy):
            raise DefinitionConflictError(f"invalid {kind} name '{name}' ({self.name_policy} naming)")
        if kind == ASSOCIATE and not name:
            raise DefinitionConflictError("associate needs a file name")
        if name in self._index[kind]:
            raise DefinitionConflictError(f"{kind} '{name}' already exists")
        _validate_definition(kind, definition)
        self._entities[kind].append(definition)
        self._index[kind][name] = len(self._entities[kind]) - 1
        return self._index[kind][name]

    def define_parameter(
        self,
        name: str,
        type: TypeLike,
        *,
        symbol: Optional[str] = None,
        units: Optional[str] = None,
        description: Optional[str] = None,
        format_string: Optional[str] = None,
        fixed_value: Any = None,
    ) -> int:
        t = as_type(type)
        if fixed_value is not None and not isinstance(fixed_value, str):
            fixed_value = format_value(fixed_value, t)
        return self.add_definition(
            PARAMETER,
            ParameterDefinition(name, t, symbol, units, description, format_string, fixed_value),
        )

    def define_column(
        self,
        name: str,
        type: TypeLike,
        *,
        symbol: Optional[str] = None,
        units: Optional[str] = None,
        description: Optional[str] = None,
        format_string: Optional[str] = None,
        field_length: int = 0,
    ) -> int:
        return self.add_definition(
            COLUMN,
            ColumnDefinition(name, as_type(type), symbol, units, description, format_string, int(field_length)),
        )

    def define_array(
        self,
        name: str,
        type: TypeLike,
        *,
        symbol: Optional[str] = None,
        units: Optional[str] = None,
        description: Optional[str] = None,
        format_string: Optional[str] = None,
        group_name: Optional[str] = None,
        field_length: int = 0,
        dimensions: int = 1,
    ) -> int:
        return self.add_definition(
            ARRAY,
            ArrayDefinition(
                name, as_type(type), symbol, units, description, format_string,
                group_name, int(field_length), int(dimensions),
            ),
        )

    def define_associate(
        self,
        filename: str,
        *,
        name: Optional[str] = None,
        path: Optional[str] = None,
        description: Optional[str] = None,
        contents: Optional[str] = None,
        sdds: bool = False,
    ) -> int:
        return self.add_definition(
            ASSOCIATE,
            AssociateDefinition(name or filename, filename, path, description, contents, bool(sdds)),
        )

    def delete(self, kind: str, name: str) -> None:
        kind = _kind(kind)
        self._check_mutable()
        idx = self.get_index(kind, name)
        del self._entities[kind][idx]
        self._reindex(kind)

    def change_information(self, kind: str, key: Union[str, int], **changes: Any) -> Definition:
        """
        Replace fields of one definition (e.g. ``units="m"``, ``type="float"``, ``name="x2"``).

        Unknown field names raise :class:`UsageError`.
        """
        kind = _kind(kind)
        self._check_mutable()
        idx = self.resolve(kind, key)
        old = self._entities[kind][idx]
        allowed = definition_fields(kind)
        unknown = sorted(set(changes) - set(allowed))
        if unknown:
            raise UsageError(f"unknown {kind} field(s): {', '.join(unknown)}")
        if "type" in changes:
            changes["type"] = as_type(changes["type"])
        new = replace(old, **changes)
        if new.name != old.name:
            if new.name in self._index[kind]:
                raise DefinitionConflictError(f"{kind} '{new.name}' already exists")
            if kind != ASSOCIATE and not name_is_valid(new.name, self.name_policy):
                raise DefinitionConflictError(f"invalid {kind} name '{new.name}' ({self.name_policy} naming)")
        _validate_definition(kind, new)
        self._entities[kind][idx] = new
        self._reindex(kind)
        return new

    def _reindex(self, kind: str) -> None:
        self._index[kind] = {d.name: i for i, d in enumerate(self._entities[kind])}

    # ------------------------------------------------------------------
    # Transfer between layouts
    # ------------------------------------------------------------------

    def transfer_definition(
        self,
        kind: str,
        source: Layout,
        name: str,
        new_name: Optional[str] = None,
    ) -> Definition:
        """
        Copy the definition `name` of `source` into this layout, optionally renamed.

        An existing entity of the same kind and target name is accepted when its
        type matches (the existing definition is kept); otherwise
        :class:`DefinitionConflictError`.
        """
        kind = _kind(kind)
        src = source.get_definition(kind, name)
        target = new_name or src.name
        if self.has(kind, target):
            existing = self.get_definition(kind, target)
            if kind != ASSOCIATE and existing.type != src.type:
                raise DefinitionConflictError(
                    f"cannot transfer {kind} '{name}' as '{target}': existing type "
                    f"{type_name(existing.type)} differs from {type_name(src.type)}"
                )
            return existing
        definition = replace(src, name=target)
        self.add_definition(kind, definition)
        return definition

    def _define_like(self, dst_kind: str, src_kind: str, source: Layout, name: str, new_name: Optional[str]) -> Optional[str]:
        src = source.get_definition(src_kind, name)
        target = new_name or src.name
        if self.has(dst_kind, target):
            return f"{dst_kind} '{target}' already exists; keeping the existing definition"
        base = dict(
            name=target,
            type=src.type,
            symbol=src.symbol,
            units=src.units,
            description=src.description,
            format_string=src.format_string,
        )
        if dst_kind != PARAMETER:
            base["field_length"] = getattr(src, "field_length", 0)
        self.add_definition(dst_kind, _DEFINITION_CLASSES[dst_kind](**base))
        return None

    def define_parameter_like_column(self, source: Layout, name: str, new_name: Optional[str] = None) -> Optional[str]:
        """
        Create a parameter from the metadata of column `name` in `source`.

        If a parameter with the target name already exists it wins; the return
        value is then a warning message for the caller, else None.
        """
        return self._define_like(PARAMETER, COLUMN, source, name, new_name)

    def define_parameter_like_array(self, source: Layout, name: str, new_name: Optional[str] = None) -> Optional[str]:
        return self._define_like(PARAMETER, ARRAY, source, name, new_name)

    def define_column_like_parameter(self, source: Layout, name: str, new_name: Optional[str] = None) -> Optional[str]:
        return self._define_like(COLUMN, PARAMETER, source, name, new_name)

    def define_column_like_array(self, source: Layout, name: str, new_name: Optional[str] = None) -> Optional[str]:
        return self._define_like(COLUMN, ARRAY, source, name, new_name)

    # ------------------------------------------------------------------
    # Copy / compare
    # ------------------------------------------------------------------

    def copy(self) -> Layout:
        """Unlocked deep copy."""
        out = Layout(self.description, self.contents, self.data_mode, name_policy=self.name_policy)
        out._entities = {k: list(v) for k, v in self._entities.items()}
        out._index = _copy.deepcopy(self._index)
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Layout):
            return NotImplemented
        return (
            self.description == other.description
            and self.contents == other.contents
            and self.data_mode == other.data_mode
            and self._entities == other._entities
        )

    def __repr__(self) -> str:
        return (
            f"Layout(parameters={self.names(PARAMETER)}, columns={self.names(COLUMN)}, "
            f"arrays={self.names(ARRAY)}, mode={self.data_mode.mode})"
        )


def _kind(kind: str) -> str:
    if kind not in KINDS:
        raise UsageError(f"unknown entity kind {kind!r}")
    return kind


def _validate_definition(kind: str, d: Definition) -> None:
    if kind == ASSOCIATE:
        return
    t = as_type(d.type)
    fmt = getattr(d, "format_string", None)
    if fmt and not verify_printf_format(fmt, t):
        raise TypeMismatchError(f"format_string '{fmt}' is invalid for {kind} '{d.name}' of type {type_name(t)}")
    if kind == ARRAY and int(d.dimensions) < 1:
        raise DefinitionConflictError(f"array '{d.name}' needs at least one dimension")
    if kind in (COLUMN, ARRAY) and int(d.field_length) < 0 and t != SddsType.STRING:
        raise DefinitionConflictError(f"negative field_length for {kind} '{d.name}'")
