"""
record.py — lifestream Event Record

The atomic unit of truth. One record is one line of a .jsonl log:

  {"data":{...},"id":"t-20260112-001","source":"manual","ts":"2026-01-12T09:00:00.000+01:00","type":"task.created"}

Wire keys are kept compatible with existing logs (ts/type/source/id/data);
the Python side uses timestamp/kind/source/entity_id/payload. ``id`` is only
written when the record belongs to a stateful entity.

Only structural shape is validated (jsonschema). Payload contents are open:
new kinds and new fields need no migration.
"""

from __future__ import annotations
import hashlib
import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from .errors import InvalidEventKindError, InvalidTimestampError, MalformedRecordError

# ---------------------------------------------------------------------------
# Structural schema
# ---------------------------------------------------------------------------

RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["ts", "type", "source", "data"],
    "properties": {
        "ts": {"type": "string", "minLength": 1},
        "type": {"type": "string", "pattern": r"^[^.\s]+(\.[^.\s]+)+$"},
        "source": {"type": "string"},
        "id": {"type": "string", "minLength": 1},
        "data": {"type": "object"},
    },
}

_VALIDATOR = Draft7Validator(RECORD_SCHEMA)

DEFAULT_SOURCE = "manual"


# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------

def canonical_dumps(obj: Any) -> str:
    """Sorted keys, no insignificant whitespace, UTF-8 kept as-is, no NaN."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON bytes."""
    return hashlib.sha256(canonical_dumps(obj).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 string (or pass a datetime through) as an aware instant.

    A trailing ``Z`` is accepted. Naive values are taken as local time.

    Raises:
        InvalidTimestampError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidTimestampError(f"ts={value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt


def format_timestamp(dt: datetime) -> str:
    """ISO 8601 with explicit offset and millisecond precision."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.isoformat(timespec="milliseconds")


def now_timestamp() -> str:
    """Current local time with its UTC offset."""
    return format_timestamp(datetime.now().astimezone())


def normalize_timestamp(value: str | datetime) -> str:
    """The stored form of a timestamp: the local offset, millisecond precision.

    Every writer goes through this so stored strings sort like the instants
    they name. The one exception is the repeated wall-clock hour when local
    time falls back at the end of DST; the reader sorts by parsed instant and
    is not affected.

    Raises:
        InvalidTimestampError: If the value cannot be parsed.
    """
    return format_timestamp(parse_timestamp(value).astimezone())


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

def is_valid_kind(kind: Any) -> bool:
    if not isinstance(kind, str):
        return False
    parts = kind.split(".")
    return len(parts) >= 2 and all(p and not any(c.isspace() for c in p) for p in parts)


def kind_matches_prefix(kind: str, prefix: str) -> bool:
    """Dotted-segment prefix match: ``task`` matches ``task.created``, not ``taskx.a``."""
    prefix = prefix.rstrip(".")
    if not prefix:
        return True
    return kind == prefix or kind.startswith(prefix + ".")


# ---------------------------------------------------------------------------
# Event record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventRecord:
    timestamp: str
    kind: str
    payload: Dict[str, Any]
    source: str = DEFAULT_SOURCE
    entity_id: Optional[str] = None
    at: datetime = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not is_valid_kind(self.kind):
            raise InvalidEventKindError(f"kind={self.kind!r}")
        if not isinstance(self.payload, Mapping):
            raise MalformedRecordError(f"payload must be an object, got {type(self.payload).__name__}")
        object.__setattr__(self, "payload", dict(self.payload))
        object.__setattr__(self, "at", parse_timestamp(self.timestamp))

    @property
    def period(self) -> str:
        """Calendar month of the record in its own offset, e.g. ``2026-01``."""
        return f"{self.at.year:04d}-{self.at.month:02d}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ts": self.timestamp,
            "type": self.kind,
            "source": self.source,
            "data": self.payload,
        }
        if self.entity_id is not None:
            out["id"] = self.entity_id
        return out

    def to_line(self) -> str:
        """One self-contained log line, without the trailing newline.

        Raises:
            MalformedRecordError: If the payload holds NaN or an infinity.
        """
        try:
            return canonical_dumps(self.to_dict())
        except ValueError as exc:
            raise MalformedRecordError(f"kind={self.kind}: {exc}") from exc

    @classmethod
    def from_dict(cls, data: Any) -> "EventRecord":
        """Build a record from its wire object.

        Raises:
            MalformedRecordError: If the object does not have the record shape.
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(f"expected an object, got {type(data).__name__}")
        error = best_match(_VALIDATOR.iter_errors(data))
        if error is not None:
            where = ".".join(str(p) for p in error.path) or "<record>"
            raise MalformedRecordError(f"{where}: {error.message}")
        try:
            return cls(
                timestamp=data["ts"],
                kind=data["type"],
                payload=data["data"],
                source=data["source"],
                entity_id=data.get("id"),
            )
        except InvalidEventKindError as exc:
            raise MalformedRecordError(exc.context) from exc


def _reject_constant(name: str) -> Any:
    raise MalformedRecordError(f"non-finite number {name} is not JSON")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise MalformedRecordError(f"number {text} overflows to {value}")
    return value


def parse_line(line: str) -> EventRecord:
    """Parse one log line.

    Raises:
        MalformedRecordError: On invalid JSON (including NaN and infinities),
            wrong shape, or bad timestamp.
    """
    try:
        obj = json.loads(line, parse_constant=_reject_constant, parse_float=_finite_float)
    except json.JSONDecodeError as exc:
        raise MalformedRecordError(f"invalid JSON: {exc.msg} at column {exc.colno}") from exc
    return EventRecord.from_dict(obj)
