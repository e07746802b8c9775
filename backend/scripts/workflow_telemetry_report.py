#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

TELEMETRY_PATTERN = re.compile(r"(workflow_transition|notification_dispatch)=(\{.*\})")


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def parse_line(line: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    match = TELEMETRY_PATTERN.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(2))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return match.group(1), value


def build_report(records: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Any]:
    action_counts: Counter[str] = Counter()
    stage_counts: Counter[str] = Counter()
    category_counts: Counter[str] = Counter()
    channel_counts: Counter[str] = Counter()
    suppressed_counts: Counter[str] = Counter()

    transitions = 0
    created = 0
    reentries = 0
    dispatches = 0
    quiet_dispatches = 0
    outbox_entries = 0

    for kind, row in records:
        if kind == "workflow_transition":
            transitions += 1
            action_counts[str(row.get("action", "unknown"))] += 1
            stage_counts[str(row.get("to_stage", "unknown"))] += 1
            if row.get("created"):
                created += 1
            elif row.get("from_stage") == row.get("to_stage"):
                reentries += 1
            continue

        dispatches += 1
        category_counts[str(row.get("category", "unknown"))] += 1
        for channel, enabled in (row.get("channels") or {}).items():
            if enabled:
                channel_counts[str(channel)] += 1
        for channel in row.get("suppressed", []) or []:
            suppressed_counts[str(channel)] += 1
        if row.get("quiet_hours"):
            quiet_dispatches += 1
        try:
            outbox_entries += int(row.get("outbox_entries", 0))
        except (TypeError, ValueError):
            pass

    return {
        "transitions": {
            "total": transitions,
            "created": created,
            "same_stage_reentries": reentries,
            "action_counts": dict(action_counts),
            "stage_counts": dict(stage_counts),
        },
        "dispatches": {
            "total": dispatches,
            "category_counts": dict(category_counts),
            "channel_counts": dict(channel_counts),
            "suppressed_counts": dict(suppressed_counts),
            "quiet_hours_rate": round(quiet_dispatches / dispatches, 4) if dispatches else 0.0,
            "outbox_entries": outbox_entries,
        },
    }


def print_human(report: Dict[str, Any]) -> None:
    transitions = report["transitions"]
    dispatches = report["dispatches"]
    print(
        f"Transitions: {transitions['total']} (created={transitions['created']} "
        f"reentries={transitions['same_stage_reentries']})"
    )
    print("Actions:")
    for action, count in sorted(transitions["action_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {action}: {count}")
    print(f"Dispatches: {dispatches['total']} quiet_hours_rate={dispatches['quiet_hours_rate']:.2%}")
    print("Categories:")
    for category, count in sorted(dispatches["category_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {category}: {count}")
    print(f"Channels: {dispatches['channel_counts']} suppressed: {dispatches['suppressed_counts']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize workflow_transition and notification_dispatch logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    records = [parsed for parsed in (parse_line(line) for line in _iter_lines(args.log_files)) if parsed]
    report = build_report(records)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
