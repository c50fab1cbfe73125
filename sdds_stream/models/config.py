"""Stream configuration -- the few knobs shared by every open stream.

A :class:`StreamConfig` is a frozen dataclass passed explicitly to
:class:`~sdds_stream.stream.dataset.Dataset`.  The process-wide setters below
only change the *default* used by subsequent opens; a stream keeps the
configuration it was opened with.

- Overridden field-by-field via ``dataclasses.replace()``
- Serialized to/from a dict for provenance
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, fields, replace
from typing import IO, Any, Dict, Optional

NAME_POLICY_STRICT = "strict"
NAME_POLICY_RELAXED = "relaxed"
_NAME_POLICIES = (NAME_POLICY_STRICT, NAME_POLICY_RELAXED)


@dataclass(frozen=True)
class StreamConfig:
    """Frozen per-stream configuration.

    row_limit : int or None
        Soft cap on rows per page applied by readers.  ``None`` means no cap.
    name_policy : str
        "strict" (identifier grammar) or "relaxed" (any non-empty name
        without control characters).
    diagnostic_sink : text stream or None
        Where ``print_errors`` writes.  ``None`` means standard error at print time.
    auto_recover : bool
        If True, readers hand out a truncated final page as a normal page.
    """

    row_limit: Optional[int] = None
    name_policy: str = NAME_POLICY_STRICT
    diagnostic_sink: Optional[IO[str]] = None
    auto_recover: bool = False

    def __post_init__(self) -> None:
        if self.row_limit is not None and int(self.row_limit) < 0:
            raise ValueError(f"row_limit must be >= 0 or None, got {self.row_limit}")
        if self.name_policy not in _NAME_POLICIES:
            raise ValueError(f"name_policy must be one of {_NAME_POLICIES}, got {self.name_policy!r}")

    @property
    def sink(self) -> IO[str]:
        return self.diagnostic_sink if self.diagnostic_sink is not None else sys.stderr

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dict (the diagnostic sink is not serializable and is dropped)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "diagnostic_sink"}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> StreamConfig:
        d = dict(d)
        if d.get("row_limit") is not None:
            d["row_limit"] = int(d["row_limit"])
        return cls(**d)


# ----------------------------------------------------------------------
# Process-wide defaults
# ----------------------------------------------------------------------

_default = StreamConfig()


def default_config() -> StreamConfig:
    """The configuration a new stream receives when none is passed."""
    return _default


def set_default_config(config: StreamConfig) -> StreamConfig:
    global _default
    previous = _default
    _default = config
    return previous


def set_row_limit(limit: Optional[int]) -> Optional[int]:
    """Set the default row limit for subsequent opens; returns the previous value."""
    global _default
    previous = _default.row_limit
    _default = replace(_default, row_limit=None if limit is None or int(limit) <= 0 else int(limit))
    return previous


def get_row_limit() -> Optional[int]:
    return _default.row_limit


def set_name_validity(relaxed: bool) -> str:
    """Switch the default name policy; returns the previous policy."""
    global _default
    previous = _default.name_policy
    _default = replace(_default, name_policy=NAME_POLICY_RELAXED if relaxed else NAME_POLICY_STRICT)
    return previous


def set_diagnostic_sink(sink: Optional[IO[str]]) -> Optional[IO[str]]:
    global _default
    previous = _default.diagnostic_sink
    _default = replace(_default, diagnostic_sink=sink)
    return previous


def set_auto_recover(enabled: bool) -> bool:
    global _default
    previous = _default.auto_recover
    _default = replace(_default, auto_recover=bool(enabled))
    return previous
