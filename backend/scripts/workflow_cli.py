#!/usr/bin/env python3
"""Run a workflow advance, a notification dispatch or an outbox drain from the shell.

    python scripts/workflow_cli.py advance '{"action": "quote_created", "quoteId": "q1"}'
    echo '{"type": "announcement", "userId": "u1", "title": "Hi"}' | python scripts/workflow_cli.py dispatch
"""
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from pydantic import ValidationError  # noqa: E402

from homebase.errors import HomeBaseError  # noqa: E402
from homebase.models import NotificationEvent, OutboxDrainRequest, WorkflowAdvanceRequest  # noqa: E402


def _load_body(raw: Optional[str]) -> Dict[str, Any]:
    text = raw if raw is not None else sys.stdin.read()
    if not text.strip():
        return {}
    body = json.loads(text)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def run_command(command: str, body: Dict[str, Any]) -> Dict[str, Any]:
    if command == "advance":
        from homebase.services.workflow_engine import workflow_state_machine

        request = WorkflowAdvanceRequest.model_validate(body)
        result = workflow_state_machine.advance(
            request.action,
            quote_id=request.quote_id,
            booking_id=request.booking_id,
            invoice_id=request.invoice_id,
            homeowner_id=request.homeowner_id,
            provider_org_id=request.provider_org_id,
            metadata=request.metadata,
        )
        return result.model_dump(include={"success", "workflow_id", "stage"})
    if command == "dispatch":
        from homebase.services.notification_dispatcher import notification_dispatcher

        return notification_dispatcher.dispatch(NotificationEvent.model_validate(body)).model_dump()
    if command == "drain":
        from homebase.services.outbox_worker import outbox_worker

        request = OutboxDrainRequest.model_validate(body)
        return outbox_worker.drain(notification_id=request.notification_id, immediate=request.immediate).model_dump()
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="HomeBase workflow and notification commands.")
    parser.add_argument("command", choices=["advance", "dispatch", "drain"])
    parser.add_argument("body", nargs="?", default=None, help="JSON request body. If omitted, read stdin.")
    args = parser.parse_args(argv)

    try:
        result = run_command(args.command, _load_body(args.body))
    except (HomeBaseError, ValidationError, ValueError) as exc:
        message = exc.message if isinstance(exc, HomeBaseError) else str(exc)
        print(json.dumps({"error": message}))
        return 1
    print(json.dumps(result, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
