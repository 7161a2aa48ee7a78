"""
identifiers.py — lifestream Entity Identifiers

Formats:
  t-YYYYMMDD-NNN   tasks      (day-scoped)
  m-YYYYMMDD-NNN   meetings   (day-scoped)
  g-YYYY-NNN       goals      (year-scoped)

The next sequence number is the count of distinct ids already in the log
for the current period, plus one. If that id is taken anyway (hand-written
ids can leave gaps), the next free number is used.

Generation counts prior writes, so it is NOT safe against concurrent
writers: two generations without a write in between return the same id.
"""

from __future__ import annotations
from datetime import datetime
from typing import Iterable, Optional, Set

from .errors import IdentifierOverflowError, InvalidIdPrefixError
from .event_log import EventFilter, Roots, read_events
from .record import EventRecord

TASK_PREFIX = "t"
MEETING_PREFIX = "m"
GOAL_PREFIX = "g"

DAY_SCOPED_PREFIXES = frozenset({TASK_PREFIX, MEETING_PREFIX})
MAX_SEQUENCE = 999


def period_prefix(prefix: str, now: Optional[datetime] = None) -> str:
    """The id prefix shared by every id of the current period, e.g. ``t-20260112-``."""
    now = now or datetime.now().astimezone()
    if prefix == GOAL_PREFIX:
        return f"{GOAL_PREFIX}-{now:%Y}-"
    if prefix in DAY_SCOPED_PREFIXES:
        return f"{prefix}-{now:%Y%m%d}-"
    raise InvalidIdPrefixError(f"prefix={prefix!r}")


def existing_ids(records: Iterable[EventRecord], id_prefix: str) -> Set[str]:
    return {
        r.entity_id for r in records
        if r.entity_id is not None and r.entity_id.startswith(id_prefix)
    }


def next_id_from(records: Iterable[EventRecord], prefix: str, now: Optional[datetime] = None) -> str:
    """Compute the next id from an explicit record sequence (no I/O)."""
    id_prefix = period_prefix(prefix, now)
    taken = existing_ids(records, id_prefix)
    seq = len(taken) + 1
    while f"{id_prefix}{seq:03d}" in taken:
        seq += 1
    if seq > MAX_SEQUENCE:
        raise IdentifierOverflowError(f"period={id_prefix.rstrip('-')} next={seq}")
    return f"{id_prefix}{seq:03d}"


def generate_id(roots: Roots, prefix: str, now: Optional[datetime] = None) -> str:
    """Next day-scoped (``t``/``m``) or year-scoped (``g``) identifier."""
    now = now or datetime.now().astimezone()
    period_prefix(prefix, now)
    filters = EventFilter(kind_prefix="goal") if prefix == GOAL_PREFIX else None
    return next_id_from(read_events(roots, filters), prefix, now)


def generate_goal_id(roots: Roots, now: Optional[datetime] = None) -> str:
    return generate_id(roots, GOAL_PREFIX, now)
