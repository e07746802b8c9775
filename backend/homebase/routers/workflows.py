import json
import queue
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from homebase.auth import require_service_role
from homebase.errors import NotFoundError
from homebase.models import (
    BookingReferenceCreate,
    OrganizationReferenceCreate,
    QuoteReferenceCreate,
    StageInfo,
    WorkflowAdvanceRequest,
    WorkflowAdvanceResult,
    WorkflowState,
    WorkflowView,
)
from homebase.services.change_feed import ChangeEvent, ChangeFeed, change_feed
from homebase.services.workflow_engine import workflow_state_machine
from homebase.services.workflow_stages import list_stages, stage_label, stage_progress
from homebase.services.workflow_store import WORKFLOW_TABLE, workflow_store

router = APIRouter(prefix="/workflows", tags=["workflows"])

HEARTBEAT_SECONDS = 15


def open_workflow_event_stream(
    service_request_id: str,
    feed: Optional[ChangeFeed] = None,
    max_events: Optional[int] = None,
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
) -> Iterator[str]:
    """Subscribe now and return an SSE generator; the subscription ends when the generator closes."""
    events: "queue.Queue[ChangeEvent]" = queue.Queue()
    subscription = (feed or change_feed).subscribe(
        WORKFLOW_TABLE,
        events.put,
        filters={"service_request_id": service_request_id},
    )

    def event_generator() -> Iterator[str]:
        sent = 0
        try:
            while max_events is None or sent < max_events:
                try:
                    event = events.get(timeout=heartbeat_seconds)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_payload())}\n\n"
                sent += 1
        finally:
            subscription.unsubscribe()

    return event_generator()


@router.post("/advance", response_model=WorkflowAdvanceResult, dependencies=[Depends(require_service_role)])
def advance_workflow(payload: WorkflowAdvanceRequest):
    return workflow_state_machine.advance(
        payload.action,
        quote_id=payload.quote_id,
        booking_id=payload.booking_id,
        invoice_id=payload.invoice_id,
        homeowner_id=payload.homeowner_id,
        provider_org_id=payload.provider_org_id,
        metadata=payload.metadata,
    )


@router.get("/stages", response_model=list[StageInfo])
def get_stages():
    return list_stages()


@router.get("", response_model=list[WorkflowState])
def get_workflows(
    homeowner_id: Optional[str] = Query(default=None),
    provider_org_id: Optional[str] = Query(default=None),
    stage: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
):
    return workflow_store.list_workflows(
        homeowner_id=homeowner_id,
        provider_org_id=provider_org_id,
        stage=stage,
        limit=limit,
    )


@router.get("/by-request/{service_request_id}", response_model=WorkflowView)
def get_workflow_for_request(service_request_id: str):
    workflow = workflow_store.find_by_service_request(service_request_id)
    if workflow is None:
        raise NotFoundError("Workflow not found")
    return WorkflowView(
        workflow=workflow,
        stage_label=stage_label(workflow.workflow_stage),
        progress=stage_progress(workflow.workflow_stage),
    )


@router.get("/by-request/{service_request_id}/events")
def stream_workflow_events(service_request_id: str):
    return StreamingResponse(open_workflow_event_stream(service_request_id), media_type="text/event-stream")


@router.post("/references/quotes", response_model=dict, dependencies=[Depends(require_service_role)])
def register_quote(payload: QuoteReferenceCreate):
    workflow_store.register_quote(
        quote_id=payload.id,
        service_request_id=payload.service_request_id,
        homeowner_id=payload.homeowner_id,
        provider_org_id=payload.provider_org_id,
    )
    return {"status": "ok"}


@router.post("/references/bookings", response_model=dict, dependencies=[Depends(require_service_role)])
def register_booking(payload: BookingReferenceCreate):
    workflow_store.register_booking(
        booking_id=payload.id,
        service_request_id=payload.service_request_id,
        quote_id=payload.quote_id,
        homeowner_id=payload.homeowner_id,
        provider_org_id=payload.provider_org_id,
    )
    return {"status": "ok"}


@router.post("/references/organizations", response_model=dict, dependencies=[Depends(require_service_role)])
def register_organization(payload: OrganizationReferenceCreate):
    workflow_store.register_organization(
        org_id=payload.id,
        owner_user_id=payload.owner_user_id,
        owner_profile_id=payload.owner_profile_id,
    )
    return {"status": "ok"}
