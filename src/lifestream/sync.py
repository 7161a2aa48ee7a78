"""
sync.py — lifestream External Merge Layer

Folds records from external services (Strava, Fitbit, ...) into the log
without creating duplicates. Design principles:

  - Idempotent: merging the same external record any number of times stores
    it exactly once
  - Dedup key: a service-specific external id carried in the payload
    (e.g. ``strava_id``); opaque to the core, never used as an entity id
  - No atomic batch: a batch is repeated single merges, each durable on its
    own. Re-running a batch after a failure skips what was already stored
  - Watermark: the latest timestamp already merged for a service, used by
    fetchers to request only newer records

Merged records live under synced/<service>/YYYY-MM.jsonl and are read back by
the log reader like any other record.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .errors import MissingExternalIdError
from .event_log import append_record, build_record, read_events
from .layout import StreamLayout, validate_service_name
from .record import EventRecord, normalize_timestamp

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergeOutcome:
    """Decision for one candidate record."""
    record: EventRecord
    external_id: str
    written: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "written": self.written,
            "record": self.record.to_dict(),
        }


@dataclass
class MergeResult:
    """Result of merging a batch of external records into one service log."""
    service: str
    outcomes: List[MergeOutcome] = field(default_factory=list)

    @property
    def written(self) -> List[EventRecord]:
        return [o.record for o in self.outcomes if o.written]

    @property
    def written_count(self) -> int:
        return sum(1 for o in self.outcomes if o.written)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.written)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "candidate_count": len(self.outcomes),
            "written_count": self.written_count,
            "skipped_count": self.skipped_count,
            "written_external_ids": [o.external_id for o in self.outcomes if o.written],
        }


# ---------------------------------------------------------------------------
# Service log I/O
# ---------------------------------------------------------------------------

def create_synced_record(
    kind: str,
    payload: Mapping[str, Any],
    timestamp: Union[str, datetime],
    service: str,
) -> EventRecord:
    """Build a record for an external service. ``source`` is the service name."""
    return build_record(kind, payload, source=validate_service_name(service), timestamp=timestamp)


def read_synced_records(layout: StreamLayout, service: str) -> List[EventRecord]:
    """Every record already merged for ``service``, in time order."""
    return read_events([layout.service_dir(service)])


def _external_id(record: EventRecord, external_id_field: str) -> str:
    value = record.payload.get(external_id_field)
    if value is None or value == "":
        raise MissingExternalIdError(
            f"field={external_id_field!r} kind={record.kind} ts={record.timestamp}"
        )
    return str(value)


def record_exists(
    layout: StreamLayout,
    service: str,
    external_id_field: str,
    external_id: Any,
) -> bool:
    """
    Whether any merged record of ``service`` carries ``external_id``.

    Full linear scan of the service log. Ids are compared as strings so a
    provider's numeric id and its stored string form are the same key.
    """
    wanted = str(external_id)
    for record in read_synced_records(layout, service):
        value = record.payload.get(external_id_field)
        if value is not None and str(value) == wanted:
            return True
    return False


def write_synced_record(layout: StreamLayout, service: str, record: EventRecord) -> None:
    """Append ``record`` to the service log without any dedup check."""
    append_record(layout.service_dir(service), record)


def write_synced_records(layout: StreamLayout, service: str, records: Iterable[EventRecord]) -> int:
    count = 0
    for record in records:
        write_synced_record(layout, service, record)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _as_service_record(record: EventRecord, service: str) -> EventRecord:
    timestamp = normalize_timestamp(record.timestamp)
    if record.source == service and record.timestamp == timestamp:
        return record
    return EventRecord(
        timestamp=timestamp,
        kind=record.kind,
        payload=record.payload,
        source=service,
        entity_id=record.entity_id,
    )


def merge_record(
    layout: StreamLayout,
    service: str,
    record: EventRecord,
    external_id_field: str,
) -> MergeOutcome:
    """
    Append ``record`` to the service log unless its external id is already there.

    The stored record has ``source`` set to the service and its timestamp in
    the local offset.

    Raises:
        MissingExternalIdError: If the payload lacks ``external_id_field``.
        InvalidServiceNameError: If ``service`` is not a single path segment.
        OSError: If the service log cannot be written.
    """
    service = validate_service_name(service)
    record = _as_service_record(record, service)
    external_id = _external_id(record, external_id_field)

    if record_exists(layout, service, external_id_field, external_id):
        return MergeOutcome(record=record, external_id=external_id, written=False)

    write_synced_record(layout, service, record)
    return MergeOutcome(record=record, external_id=external_id, written=True)


def merge_records(
    layout: StreamLayout,
    service: str,
    records: Iterable[EventRecord],
    external_id_field: str,
) -> MergeResult:
    """
    Merge a batch, one record at a time.

    A failure part-way leaves earlier records stored; re-running the same
    batch skips them.
    """
    result = MergeResult(service=validate_service_name(service))
    for record in records:
        result.outcomes.append(merge_record(layout, service, record, external_id_field))

    logger.info(
        "Merged %s: %d written, %d already present",
        result.service, result.written_count, result.skipped_count,
    )
    return result


def merge_raw(layout: StreamLayout, converter: Any, raw_records: Iterable[Any]) -> MergeResult:
    """Convert raw provider records with ``converter`` and merge them."""
    converted = (converter.convert(raw) for raw in raw_records)
    return merge_records(layout, converter.service, converted, converter.external_id_field)


def latest_sync_timestamp(layout: StreamLayout, service: str) -> Optional[datetime]:
    """The watermark: latest instant among merged records of ``service``, or None."""
    records = read_synced_records(layout, service)
    if not records:
        return None
    return max(r.at for r in records)
