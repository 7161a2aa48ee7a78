#!/usr/bin/env python3
"""
lifestream — command line interface

Commands:
  log            Append a record to the primary log
  query          Print matching records as JSON lines
  add-task       Create a task with a generated id
  complete-task  Close a task
  set-goal       Create a goal with a generated id
  tasks          Open tasks
  goals          Active goals
  goal           Status of one goal
  summary        Weekly summary (trailing 7 days)
  state          Full replayed state with its state hash
  next-id        Next identifier for a prefix (t, m, g)
  merge          Merge a file of external records into synced/<service>/
  watermark      Latest merged timestamp of a service
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List

from . import LifeStream
from .converters import registry
from .errors import LifeStreamError
from .event_log import EventFilter
from .identifiers import GOAL_PREFIX, MEETING_PREFIX, TASK_PREFIX
from .layout import validate_service_name
from .record import EventRecord
from .sync import MergeResult, create_synced_record, merge_record


def _fail_with_error(err: LifeStreamError) -> None:
    """Print a structured error message from a ``LifeStreamError`` and exit."""
    context = f" Context: {err.context}." if err.context else ""
    print(
        f"ERROR: {err.code}. {err.message}{context} "
        f"Fix: correct the input and retry the command."
    )
    sys.exit(1)


def _cli_error(what: str, why: str, fix: str) -> None:
    """Print a teaching-style CLI error and exit."""
    print(f"ERROR: {what}. {why}. Fix: {fix}.")
    sys.exit(1)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _stream(args: argparse.Namespace) -> LifeStream:
    return LifeStream(args.root)


def _load_json_arg(raw: str) -> Any:
    """Parse a JSON argument; ``@path`` reads the JSON from a file."""
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    return json.loads(raw)


def _write_record(stream: LifeStream, kind: str, payload: Dict[str, Any], **options: Any) -> EventRecord:
    """Append a record; a storage failure names the record that was not stored."""
    try:
        return stream.log_event(kind, payload, **options)
    except OSError as exc:
        _cli_error(
            f"Record {kind} ({options.get('entity_id') or 'no id'}) was not stored",
            f"the log under {stream.layout.events_dir} could not be written: {exc}",
            "check permissions and free space, then re-issue the same command",
        )


def cmd_log(args: argparse.Namespace) -> None:
    stream = _stream(args)
    try:
        payload = _load_json_arg(args.data) if args.data else {}
    except (OSError, json.JSONDecodeError) as exc:
        _cli_error(
            "Event data could not be read",
            f"--data must be a JSON object or @file: {exc}",
            "pass valid JSON such as '{\"title\": \"Call dentist\"}'",
        )
    if not isinstance(payload, dict):
        _cli_error(
            "Event data is not a JSON object",
            f"got {type(payload).__name__}; the payload of a record is always an object",
            "wrap the values in {...}",
        )
    record = _write_record(
        stream, args.kind, payload,
        entity_id=args.id, source=args.source, timestamp=args.ts,
    )
    _print_json({"success": True, "event": record.to_dict()})


def cmd_query(args: argparse.Namespace) -> None:
    scan = _stream(args).scan(EventFilter(
        kind_prefix=args.type,
        start=args.start,
        end=args.end,
        source=args.source,
        entity_id=args.id,
    ))
    for record in scan.records:
        print(record.to_line())
    if scan.diagnostics:
        print(f"Skipped {len(scan.diagnostics)} malformed line(s).", file=sys.stderr)


def cmd_add_task(args: argparse.Namespace) -> None:
    stream = _stream(args)
    try:
        record = stream.add_task(
            args.title, area=args.area, due=args.due,
            priority=args.priority, source=args.source,
        )
    except OSError as exc:
        _cli_error(
            f"Task '{args.title}' was not stored",
            f"the log could not be written: {exc}",
            "check permissions and re-issue the command",
        )
    _print_json({
        "success": True,
        "task_id": record.entity_id,
        "message": f"Created task {record.entity_id}: {args.title}",
        "event": record.to_dict(),
    })


def cmd_complete_task(args: argparse.Namespace) -> None:
    payload = {"notes": args.notes} if args.notes else {}
    record = _write_record(_stream(args), "task.completed", payload, entity_id=args.task_id, source=args.source)
    _print_json({
        "success": True,
        "message": f"Task {args.task_id} marked as completed",
        "event": record.to_dict(),
    })


def cmd_set_goal(args: argparse.Namespace) -> None:
    stream = _stream(args)
    try:
        record = stream.set_goal(
            args.title,
            source=args.source,
            horizon=args.horizon,
            area=args.area,
            target_date=args.target_date,
            success_criteria=args.criteria,
        )
    except OSError as exc:
        _cli_error(
            f"Goal '{args.title}' was not stored",
            f"the log could not be written: {exc}",
            "check permissions and re-issue the command",
        )
    _print_json({"success": True, "goal_id": record.entity_id, "event": record.to_dict()})


def cmd_tasks(args: argparse.Namespace) -> None:
    tasks = _stream(args).open_tasks()
    _print_json({"count": len(tasks), "tasks": [t.to_dict() for t in tasks]})


def cmd_goals(args: argparse.Namespace) -> None:
    goals = _stream(args).active_goals()
    _print_json({"count": len(goals), "goals": [g.to_dict() for g in goals]})


def cmd_goal(args: argparse.Namespace) -> None:
    goal = _stream(args).goal_status(args.goal_id)
    if goal is None:
        _print_json({"found": False, "goal_id": args.goal_id})
        return
    _print_json({"found": True, "goal": goal.to_dict()})


def cmd_summary(args: argparse.Namespace) -> None:
    stream = _stream(args)
    summary = stream.weekly_summary()
    out = summary.to_dict()
    out["active_goals"] = len(stream.active_goals())
    if not args.details:
        out.pop("details")
    _print_json(out)


def cmd_state(args: argparse.Namespace) -> None:
    _print_json(_stream(args).replay_state())


def cmd_next_id(args: argparse.Namespace) -> None:
    print(_stream(args).next_id(args.prefix))


def _load_raw_records(path: Path) -> List[Any]:
    """A JSON array, or one JSON object per line."""
    text = path.read_text(encoding="utf-8")
    stripped = text.lstrip()
    if stripped.startswith("["):
        return json.loads(stripped)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _merge_batch(stream: LifeStream, service: str, records: Iterable[EventRecord], external_id_field: str) -> MergeResult:
    """Merge one record at a time; a storage failure names the record that was not stored."""
    result = MergeResult(service=validate_service_name(service))
    for record in records:
        try:
            result.outcomes.append(merge_record(stream.layout, service, record, external_id_field))
        except OSError as exc:
            external_id = record.payload.get(external_id_field)
            _cli_error(
                f"External record {external_id_field}={external_id!r} ({record.kind}) was not stored",
                f"the log under {stream.layout.service_dir(service)} could not be written: {exc}; "
                f"{result.written_count} earlier record(s) of this batch were stored",
                "check permissions and free space, then re-run the same merge; stored records are skipped",
            )
    return result


def cmd_merge(args: argparse.Namespace) -> None:
    stream = _stream(args)
    path = Path(args.file)
    try:
        raw_records = _load_raw_records(path)
    except (OSError, json.JSONDecodeError) as exc:
        _cli_error(
            f"External records in {path} could not be read",
            str(exc),
            "pass a JSON array or a JSON-lines file of provider records",
        )

    if args.converter:
        registry.discover_plugins()
        converter = registry.get(args.converter)
        if converter.service != args.service:
            _cli_error(
                f"Converter {converter.name} writes to service '{converter.service}'",
                f"it cannot merge into '{args.service}'",
                f"use `lifestream merge {converter.service} ...`",
            )
        records = (converter.convert(raw) for raw in raw_records)
        result = _merge_batch(stream, converter.service, records, converter.external_id_field)
    else:
        if not (args.kind and args.id_field):
            _cli_error(
                "No conversion rule given",
                "merge needs either --converter or both --kind and --id-field",
                f"choose one of {[c.name for c in registry.list_converters()]} or pass --kind/--id-field",
            )
        records = (
            build_record_from_raw(args.kind, raw, args.service, args.ts_field)
            for raw in raw_records
        )
        result = _merge_batch(stream, args.service, records, args.id_field)

    _print_json({"success": True, **result.to_dict()})


def build_record_from_raw(kind: str, raw: Dict[str, Any], service: str, ts_field: str) -> EventRecord:
    """Generic conversion: the raw object becomes the payload, ``ts_field`` the timestamp."""
    if not isinstance(raw, dict):
        _cli_error(
            "External record is not a JSON object",
            f"got {type(raw).__name__}",
            "pass one object per record",
        )
    payload = dict(raw)
    ts = payload.pop(ts_field, None)
    if ts is None:
        _cli_error(
            f"External record has no '{ts_field}' field",
            "every merged record needs a timestamp",
            "pass --ts-field naming the provider's timestamp field",
        )
    return create_synced_record(kind, payload, ts, service)


def cmd_watermark(args: argparse.Namespace) -> None:
    latest = _stream(args).latest_sync_timestamp(args.service)
    _print_json({
        "service": args.service,
        "latest": latest.isoformat() if latest else None,
    })


def main() -> None:
    parser = argparse.ArgumentParser(description="Event-sourced personal record keeper")
    parser.add_argument("--root", help="Life directory (defaults to $LIFE_DIR, then the current directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # log
    p_log = sub.add_parser("log", help="Append a record")
    p_log.add_argument("kind", help="Dotted kind, e.g. mental.checkin")
    p_log.add_argument("--data", help="JSON object for the payload, or @file")
    p_log.add_argument("--id", help="Entity id for stateful kinds")
    p_log.add_argument("--source", help="Origin tag (default: manual)")
    p_log.add_argument("--ts", help="ISO 8601 timestamp (default: now)")

    # query
    p_q = sub.add_parser("query", help="Print matching records")
    p_q.add_argument("--type", help="Kind prefix, e.g. task")
    p_q.add_argument("--start", help="Inclusive lower bound (ISO 8601)")
    p_q.add_argument("--end", help="Inclusive upper bound (ISO 8601)")
    p_q.add_argument("--source", help="Exact source")
    p_q.add_argument("--id", help="Exact entity id")

    # add-task
    p_at = sub.add_parser("add-task", help="Create a task")
    p_at.add_argument("title")
    p_at.add_argument("--area")
    p_at.add_argument("--due", help="ISO date")
    p_at.add_argument("--priority", choices=["low", "medium", "high", "urgent"])
    p_at.add_argument("--source")

    # complete-task
    p_ct = sub.add_parser("complete-task", help="Close a task")
    p_ct.add_argument("task_id")
    p_ct.add_argument("--notes")
    p_ct.add_argument("--source")

    # set-goal
    p_sg = sub.add_parser("set-goal", help="Create a goal")
    p_sg.add_argument("title")
    p_sg.add_argument("--horizon", choices=["week", "month", "quarter", "year", "ongoing"])
    p_sg.add_argument("--area")
    p_sg.add_argument("--target-date")
    p_sg.add_argument("--criteria", help="Success criteria")
    p_sg.add_argument("--source")

    # derived state
    sub.add_parser("tasks", help="Open tasks")
    sub.add_parser("goals", help="Active goals")
    p_g = sub.add_parser("goal", help="Status of one goal")
    p_g.add_argument("goal_id")
    p_sum = sub.add_parser("summary", help="Weekly summary")
    p_sum.add_argument("--details", action="store_true", help="Include the records of each bucket")
    sub.add_parser("state", help="Full replayed state")

    # next-id
    p_id = sub.add_parser("next-id", help="Next identifier")
    p_id.add_argument("prefix", choices=[TASK_PREFIX, MEETING_PREFIX, GOAL_PREFIX])

    # merge
    p_m = sub.add_parser("merge", help="Merge external records")
    p_m.add_argument("service", help="Service name, e.g. strava")
    p_m.add_argument("file", help="JSON array or JSON-lines file of raw records")
    p_m.add_argument("--converter", help="Registered converter, e.g. strava.activity")
    p_m.add_argument("--kind", help="Kind for generic conversion")
    p_m.add_argument("--id-field", help="Payload field holding the external id")
    p_m.add_argument("--ts-field", default="ts", help="Raw field holding the timestamp (generic conversion)")

    # watermark
    p_w = sub.add_parser("watermark", help="Latest merged timestamp")
    p_w.add_argument("service")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "log": cmd_log(args)
        elif args.command == "query": cmd_query(args)
        elif args.command == "add-task": cmd_add_task(args)
        elif args.command == "complete-task": cmd_complete_task(args)
        elif args.command == "set-goal": cmd_set_goal(args)
        elif args.command == "tasks": cmd_tasks(args)
        elif args.command == "goals": cmd_goals(args)
        elif args.command == "goal": cmd_goal(args)
        elif args.command == "summary": cmd_summary(args)
        elif args.command == "state": cmd_state(args)
        elif args.command == "next-id": cmd_next_id(args)
        elif args.command == "merge": cmd_merge(args)
        elif args.command == "watermark": cmd_watermark(args)
    except LifeStreamError as err:
        _fail_with_error(err)

if __name__ == "__main__":
    main()
