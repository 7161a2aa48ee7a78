"""
event_log.py — lifestream Append-Only Event Log

Reader and writer for the period-partitioned JSON-lines logs.

Reading:
  - every *.jsonl file under every root directory is scanned line by line
  - a line that fails to parse is skipped with a diagnostic; the scan goes on
  - filters are applied per record
  - the result is sorted by instant; no file is assumed to be sorted

Writing:
  - one record is one appended line in <dir>/YYYY-MM.jsonl
  - timestamps are stored with the local offset so that string order is time order
  - the file is opened in append mode only; nothing is read back or rewritten
  - OSError from directory or file creation propagates to the caller
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import MalformedRecordError
from .layout import LOG_SUFFIX, StreamLayout
from .record import (
    DEFAULT_SOURCE,
    EventRecord,
    kind_matches_prefix,
    normalize_timestamp,
    now_timestamp,
    parse_line,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

Roots = Union[StreamLayout, Iterable[Union[str, Path]]]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventFilter:
    """Per-record predicates. Every unset field matches everything."""
    kind_prefix: Optional[str] = None
    start: Optional[Union[str, datetime]] = None
    end: Optional[Union[str, datetime]] = None
    source: Optional[str] = None
    entity_id: Optional[str] = None

    def bounds(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        start = parse_timestamp(self.start) if self.start is not None else None
        end = parse_timestamp(self.end) if self.end is not None else None
        return start, end

    def matches(
        self,
        record: EventRecord,
        bounds: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None,
    ) -> bool:
        if self.kind_prefix and not kind_matches_prefix(record.kind, self.kind_prefix):
            return False
        start, end = bounds if bounds is not None else self.bounds()
        if start is not None and record.at < start:
            return False
        if end is not None and record.at > end:
            return False
        if self.source is not None and record.source != self.source:
            return False
        if self.entity_id is not None and record.entity_id != self.entity_id:
            return False
        return True


@dataclass(frozen=True)
class ParseDiagnostic:
    """A log line that was skipped."""
    path: Path
    line_number: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "line_number": self.line_number,
            "reason": self.reason,
        }


@dataclass
class LogScan:
    """Result of scanning one or more log roots."""
    records: List[EventRecord] = field(default_factory=list)
    diagnostics: List[ParseDiagnostic] = field(default_factory=list)
    files_scanned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_count": len(self.records),
            "files_scanned": self.files_scanned,
            "diagnostic_count": len(self.diagnostics),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _root_dirs(roots: Roots) -> List[Path]:
    if isinstance(roots, StreamLayout):
        return roots.read_roots()
    if isinstance(roots, (str, Path)):
        return [Path(roots)]
    return [Path(r) for r in roots]


def log_files(directory: Path) -> List[Path]:
    """All log files of one directory, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == LOG_SUFFIX)


def iter_log_file(
    path: Path,
    diagnostics: Optional[List[ParseDiagnostic]] = None,
) -> Iterator[EventRecord]:
    """
    Yield the records of one file in file order.

    Blank lines are skipped silently; malformed lines are skipped with a
    warning and, when ``diagnostics`` is given, a ParseDiagnostic.
    """
    with path.open("rb") as f:
        for line_num, raw in enumerate(f, 1):
            stripped = raw.strip()
            if not stripped:
                continue
            try:
                try:
                    text = stripped.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise MalformedRecordError(f"invalid UTF-8 at byte {exc.start}") from exc
                record = parse_line(text)
            except MalformedRecordError as exc:
                logger.warning("Skipping malformed line %s:%d: %s", path, line_num, exc)
                if diagnostics is not None:
                    diagnostics.append(ParseDiagnostic(path, line_num, str(exc)))
                continue
            yield record


def scan_events(roots: Roots, filters: Optional[EventFilter] = None) -> LogScan:
    """
    Scan every log file under every root and return matching records in time order.

    Args:
        roots: A StreamLayout or an iterable of log directories.
        filters: Optional per-record predicates.

    Returns:
        LogScan with the sorted records and the diagnostics of skipped lines.
    """
    scan = LogScan()
    bounds = filters.bounds() if filters is not None else None

    for directory in _root_dirs(roots):
        for path in log_files(directory):
            scan.files_scanned += 1
            for record in iter_log_file(path, scan.diagnostics):
                if filters is None or filters.matches(record, bounds):
                    scan.records.append(record)

    # Stable: equal instants keep scan order.
    scan.records.sort(key=lambda r: r.at)
    return scan


def read_events(roots: Roots, filters: Optional[EventFilter] = None) -> List[EventRecord]:
    """Time-ascending records under ``roots`` that pass ``filters``."""
    return scan_events(roots, filters).records


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def period_file(directory: Path, record: EventRecord) -> Path:
    return directory / f"{record.period}{LOG_SUFFIX}"


def append_record(directory: Path, record: EventRecord) -> Path:
    """
    Append ``record`` as one line to its monthly file under ``directory``.

    Returns:
        Path of the file written to.

    Raises:
        OSError: If the directory or file cannot be created or written.
    """
    path = period_file(directory, record)
    line = record.to_line() + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line)
    logger.debug("Appended %s (%s) to %s", record.kind, record.entity_id or "-", path)
    return path


def build_record(
    kind: str,
    payload: Mapping[str, Any],
    entity_id: Optional[str] = None,
    source: Optional[str] = None,
    timestamp: Optional[Union[str, datetime]] = None,
) -> EventRecord:
    """Construct a record, filling the default source and timestamp.

    Explicit timestamps are stored in the normalized local-offset form.
    """
    ts = now_timestamp() if timestamp is None else normalize_timestamp(timestamp)
    return EventRecord(
        timestamp=ts,
        kind=kind,
        payload=dict(payload) if isinstance(payload, Mapping) else payload,
        source=source or DEFAULT_SOURCE,
        entity_id=entity_id,
    )


def append_event(
    layout: StreamLayout,
    kind: str,
    payload: Mapping[str, Any],
    entity_id: Optional[str] = None,
    source: Optional[str] = None,
    timestamp: Optional[Union[str, datetime]] = None,
) -> EventRecord:
    """Append a new record to the primary log.

    Args:
        layout: Life directory layout.
        kind: Dotted ``domain.action`` kind.
        payload: Kind-specific fields.
        entity_id: Id of the stateful entity this record belongs to.
        source: Origin tag; defaults to ``manual``.
        timestamp: Defaults to now. Always stored with the local offset.

    Returns:
        EventRecord: The record exactly as stored.

    Raises:
        InvalidEventKindError: If ``kind`` is not dotted.
        MalformedRecordError: If ``payload`` is not a mapping, holds a non-finite
            number, or the timestamp is invalid.
        OSError: If the log file cannot be written.
    """
    record = build_record(kind, payload, entity_id=entity_id, source=source, timestamp=timestamp)
    append_record(layout.events_dir, record)
    return record
