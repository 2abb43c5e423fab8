"""
Memory records and their canonical byte encoding.

Encoding: UTF-8 JSON, keys sorted, compact separators, NaN/Infinity rejected.
The same record always serializes to the same bytes, and
``deserialize_record(serialize_record(r)) == r`` for every valid record.

Metadata values are restricted to the JSON lattice:
    str | int | float (finite) | bool | None | list[value] | dict[str, value]
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from typing import Any, Union

from agentmesh.errors import FormatError

MetadataValue = Union[str, int, float, bool, None, "list[MetadataValue]", "dict[str, MetadataValue]"]

# Guard against pathological nesting in foreign blobs
_MAX_DEPTH = 64

_RECORD_FIELDS = frozenset({"type", "content", "timestamp", "metadata"})


def _validate_value(value: Any, path: str, depth: int = 0) -> None:
    """Check that ``value`` belongs to the metadata lattice."""
    if depth > _MAX_DEPTH:
        raise FormatError(f"Metadata nested too deeply at {path}")
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FormatError(f"Non-finite number at {path}")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _validate_value(item, f"{path}[{i}]", depth + 1)
        return
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise FormatError(f"Metadata key at {path} must be a string, got {k!r}")
            _validate_value(v, f"{path}.{k}", depth + 1)
        return
    raise FormatError(
        f"Unsupported metadata value at {path}: {type(value).__name__}"
    )


def validate_metadata(metadata: Any) -> None:
    """Validate a metadata map. Raises FormatError on anything outside the lattice."""
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise FormatError(f"metadata must be an object, got {type(metadata).__name__}")
    _validate_value(metadata, "metadata")


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class MemoryRecord:
    """A single agent memory, in plaintext form.

    Exists only before encryption and after decryption.
    """

    type: str
    content: str
    timestamp: int | float
    metadata: dict[str, MetadataValue] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, str):
            raise FormatError("type must be a string")
        if not isinstance(self.content, str):
            raise FormatError("content must be a string")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
            raise FormatError("timestamp must be a number")
        if isinstance(self.timestamp, float) and not math.isfinite(self.timestamp):
            raise FormatError("timestamp must be finite")
        validate_metadata(self.metadata)

    @classmethod
    def create(
        cls,
        type: str,
        content: str,
        metadata: dict[str, MetadataValue] | None = None,
    ) -> MemoryRecord:
        """Build a record stamped with the current time (ms)."""
        return cls(type=type, content=content, timestamp=now_ms(), metadata=metadata)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Any) -> MemoryRecord:
        """Build a record from a decoded JSON object. Raises FormatError."""
        if not isinstance(data, dict):
            raise FormatError("Record must be a JSON object")
        missing = {"type", "content", "timestamp"} - set(data)
        if missing:
            raise FormatError(f"Record missing fields: {', '.join(sorted(missing))}")
        unknown = set(data) - _RECORD_FIELDS
        if unknown:
            raise FormatError(f"Record has unknown fields: {', '.join(sorted(unknown))}")
        return cls(
            type=data["type"],
            content=data["content"],
            timestamp=data["timestamp"],
            metadata=data.get("metadata"),
        )


def serialize_record(record: MemoryRecord | dict[str, Any]) -> bytes:
    """Canonical UTF-8 JSON encoding of a record."""
    if not isinstance(record, MemoryRecord):
        record = MemoryRecord.from_dict(record)
    try:
        text = json.dumps(
            record.to_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise FormatError(f"Record is not serializable: {e}") from e
    return text.encode("utf-8")


def _reject_constant(name: str) -> Any:
    raise FormatError(f"Invalid JSON constant: {name}")


def deserialize_record(data: bytes) -> MemoryRecord:
    """Decode bytes produced by ``serialize_record``.

    Raises FormatError for invalid UTF-8, invalid JSON, or a JSON value that
    is not a well-formed record.
    """
    try:
        decoded = json.loads(bytes(data).decode("utf-8"), parse_constant=_reject_constant)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise FormatError(f"Invalid record encoding: {e}") from e
    return MemoryRecord.from_dict(decoded)
