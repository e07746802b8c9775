"""Canonical service-request lifecycle.

The order of ``WORKFLOW_STAGES`` is significant: a stage's index is the
numerator of the progress percentage and workflows only move forward in it.
"""

import math
from typing import Dict, List, Optional

from homebase.models import StageInfo, StageProgress

WORKFLOW_STAGES: List[str] = [
    "request_submitted",
    "ai_analyzing",
    "providers_matched",
    "quote_sent",
    "diagnostic_scheduled",
    "diagnostic_completed",
    "quote_approved",
    "job_scheduled",
    "job_in_progress",
    "job_completed",
    "invoice_sent",
    "payment_received",
    "review_requested",
    "workflow_complete",
]

STAGE_LABELS: Dict[str, str] = {
    "request_submitted": "Request Submitted",
    "ai_analyzing": "AI Analyzing",
    "providers_matched": "Providers Matched",
    "quote_sent": "Quote Sent",
    "diagnostic_scheduled": "Diagnostic Scheduled",
    "diagnostic_completed": "Diagnostic Completed",
    "quote_approved": "Quote Approved",
    "job_scheduled": "Job Scheduled",
    "job_in_progress": "Job In Progress",
    "job_completed": "Job Completed",
    "invoice_sent": "Invoice Sent",
    "payment_received": "Payment Received",
    "review_requested": "Review Requested",
    "workflow_complete": "Complete",
}

# Only these actions advance a workflow. Stages without an action here
# (ai_analyzing, providers_matched, diagnostic_*, quote_approved,
# review_requested, workflow_complete) are not reachable through advance().
ACTION_STAGE_MAP: Dict[str, str] = {
    "quote_created": "quote_sent",
    "quote_accepted": "job_scheduled",
    "booking_scheduled": "job_scheduled",
    "job_started": "job_in_progress",
    "job_completed": "job_completed",
    "invoice_generated": "invoice_sent",
    "invoice_sent": "invoice_sent",
    "payment_received": "payment_received",
}

# Stages whose state changes without a user action, so cached copies poll.
ACTIVE_STAGES = frozenset({"ai_analyzing", "diagnostic_scheduled", "job_in_progress"})

_STAGE_INDEX = {stage: index for index, stage in enumerate(WORKFLOW_STAGES)}


def stage_index(stage: Optional[str]) -> int:
    if not stage:
        return -1
    return _STAGE_INDEX.get(stage, -1)


def next_stage_for_action(action: str) -> Optional[str]:
    return ACTION_STAGE_MAP.get(action)


def stage_label(stage: str) -> str:
    return STAGE_LABELS.get(stage, stage)


def is_active_stage(stage: Optional[str]) -> bool:
    return stage in ACTIVE_STAGES


def stage_progress(stage: Optional[str]) -> StageProgress:
    total = len(WORKFLOW_STAGES)
    if stage is None:
        return StageProgress(current=0, total=total, percentage=0)
    current = stage_index(stage) + 1
    # Half-up rounding; round() would round half to even.
    percentage = int(math.floor(current / total * 100 + 0.5))
    return StageProgress(current=current, total=total, percentage=percentage)


def list_stages() -> List[StageInfo]:
    return [StageInfo(index=index, stage=stage, label=stage_label(stage)) for index, stage in enumerate(WORKFLOW_STAGES)]
