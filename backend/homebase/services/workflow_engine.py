import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from homebase import config
from homebase.errors import UnknownActionError
from homebase.models import ChannelOverrides, NotificationEvent, WorkflowAdvanceResult, WorkflowState
from homebase.services.invoice_generator import InvoiceGenerator, invoice_generator
from homebase.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from homebase.services.workflow_stages import ACTION_STAGE_MAP, next_stage_for_action
from homebase.services.workflow_store import TransitionOutcome, WorkflowStore, workflow_store

logger = logging.getLogger(__name__)

REVIEW_REQUEST_ACTION = "review_request"


class WorkflowStateMachine:
    """Advances a service request's workflow on domain actions and runs the action's automation.

    The stage write is the only part of ``advance`` that can fail the call.
    Notifications, invoice generation and follow-up scheduling run after the
    write and are logged on failure; the stage is never rolled back for them.
    """

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        invoices: Optional[InvoiceGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        follow_up_delay: timedelta = timedelta(hours=config.FOLLOW_UP_DELAY_HOURS),
        notify_dedup_window: timedelta = timedelta(minutes=config.NOTIFY_DEDUP_MINUTES),
    ) -> None:
        self.store = store or workflow_store
        self.dispatcher = dispatcher or notification_dispatcher
        self.invoices = invoices or invoice_generator
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.follow_up_delay = follow_up_delay
        self.notify_dedup_window = notify_dedup_window

    @staticmethod
    def supported_actions() -> Dict[str, str]:
        return dict(ACTION_STAGE_MAP)

    def advance(
        self,
        action: str,
        *,
        quote_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowAdvanceResult:
        next_stage = next_stage_for_action(action)
        if next_stage is None:
            raise UnknownActionError(action)

        now = self.clock()
        metadata = dict(metadata or {})
        resolved = self.store.resolve_service_request(quote_id=quote_id, booking_id=booking_id, invoice_id=invoice_id)
        homeowner_id = homeowner_id or resolved["homeowner_id"]
        provider_org_id = provider_org_id or resolved["provider_org_id"]

        outcome = self.store.apply_transition(
            service_request_id=str(resolved["service_request_id"]),
            next_stage=next_stage,
            action=action,
            homeowner_id=homeowner_id,
            provider_org_id=provider_org_id,
            refs={"quote_id": quote_id, "booking_id": booking_id, "invoice_id": invoice_id},
            metadata=metadata,
            complete=action == "payment_received",
            now=now,
        )
        workflow = outcome.workflow
        logger.info(
            "workflow_transition=%s",
            json.dumps(
                {
                    "workflow_id": workflow.id,
                    "service_request_id": workflow.service_request_id,
                    "action": action,
                    "from_stage": outcome.previous_stage,
                    "to_stage": workflow.workflow_stage,
                    "created": outcome.created,
                },
                sort_keys=True,
            ),
        )

        self._run_automation(
            action,
            outcome,
            homeowner_id=homeowner_id or workflow.homeowner_id,
            provider_org_id=provider_org_id or workflow.provider_org_id,
            quote_id=quote_id,
            booking_id=booking_id or workflow.booking_id,
            metadata=metadata,
            now=now,
        )
        return WorkflowAdvanceResult(workflow_id=workflow.id, stage=next_stage, created=outcome.created)

    def _run_automation(
        self,
        action: str,
        outcome: TransitionOutcome,
        *,
        homeowner_id: Optional[str],
        provider_org_id: Optional[str],
        quote_id: Optional[str],
        booking_id: Optional[str],
        metadata: Dict[str, Any],
        now: datetime,
    ) -> None:
        service_name = metadata.get("service_name") or "your service request"
        try:
            if action == "quote_created":
                self._notify_homeowner_of_quote(outcome, homeowner_id, quote_id, service_name, now)
            elif action == "quote_accepted":
                self._notify_provider_of_acceptance(outcome, provider_org_id, quote_id, service_name, now)
            elif action == "job_completed":
                self._generate_invoice(booking_id)
            elif action == "payment_received":
                self._schedule_review_request(homeowner_id, provider_org_id, booking_id, now)
        except Exception:
            logger.exception("Workflow automation for %s failed on workflow %s", action, outcome.workflow.id)

    def _notify_homeowner_of_quote(
        self,
        outcome: TransitionOutcome,
        homeowner_id: Optional[str],
        quote_id: Optional[str],
        service_name: str,
        now: datetime,
    ) -> None:
        if not homeowner_id:
            logger.warning("No homeowner to notify for workflow %s", outcome.workflow.id)
            return
        event = NotificationEvent(
            type="quote_received",
            user_id=homeowner_id,
            profile_id=homeowner_id,
            role="homeowner",
            title="New Quote Received",
            body=f"You have a new quote for {service_name}",
            action_url=f"/homeowner/quotes/{quote_id}" if quote_id else "/homeowner/quotes",
            metadata={"workflow_id": outcome.workflow.id, "quote_id": quote_id},
            force_channels=ChannelOverrides(inapp=True, email=True),
        )
        self._notify(outcome, "homeowner", event, now, artifact_id=quote_id)

    def _notify_provider_of_acceptance(
        self,
        outcome: TransitionOutcome,
        provider_org_id: Optional[str],
        quote_id: Optional[str],
        service_name: str,
        now: datetime,
    ) -> None:
        if not provider_org_id:
            logger.warning("No provider organization on workflow %s", outcome.workflow.id)
            return
        owner = self.store.get_organization_owner(provider_org_id)
        if owner is None:
            logger.warning("Organization %s has no owner to notify", provider_org_id)
            return
        event = NotificationEvent(
            type="quote_accepted",
            user_id=owner.user_id,
            profile_id=owner.profile_id,
            role="provider",
            title="Quote Accepted!",
            body=f"Your quote for {service_name} was accepted",
            action_url="/provider/jobs",
            metadata={"workflow_id": outcome.workflow.id, "provider_org_id": provider_org_id},
            force_channels=ChannelOverrides(inapp=True, push=True),
        )
        self._notify(outcome, "provider", event, now, artifact_id=quote_id)

    def _recently_notified(
        self,
        outcome: TransitionOutcome,
        audience: str,
        artifact_id: Optional[str],
        now: datetime,
    ) -> bool:
        """A repeat is the same stage, the same artifact and the same audience inside the dedup window."""
        workflow: WorkflowState = outcome.workflow
        if outcome.previous_stage != workflow.workflow_stage:
            return False
        notified_refs = workflow.metadata.get("notified_refs") or {}
        if audience not in notified_refs or notified_refs[audience] != artifact_id:
            return False
        last = workflow.homeowner_notified_at if audience == "homeowner" else workflow.provider_notified_at
        if not last:
            return False
        try:
            last_at = datetime.fromisoformat(last)
        except ValueError:
            return False
        return now - last_at < self.notify_dedup_window

    def _notify(
        self,
        outcome: TransitionOutcome,
        audience: str,
        event: NotificationEvent,
        now: datetime,
        artifact_id: Optional[str] = None,
    ) -> None:
        if self._recently_notified(outcome, audience, artifact_id, now):
            logger.info("Skipping repeat %s notification for workflow %s", audience, outcome.workflow.id)
            return
        result = self.dispatcher.dispatch(event)
        self.store.mark_notified(outcome.workflow.id, audience, now=now, artifact_id=artifact_id)
        logger.info("Notified %s for workflow %s (notification %s)", audience, outcome.workflow.id, result.notification_id)

    def _generate_invoice(self, booking_id: Optional[str]) -> None:
        if not booking_id:
            logger.warning("Job completed without a booking id; skipping invoice generation")
            return
        invoice_id = self.invoices.generate(booking_id)
        logger.info("Invoice %s ready for booking %s", invoice_id, booking_id)

    def _schedule_review_request(
        self,
        homeowner_id: Optional[str],
        provider_org_id: Optional[str],
        booking_id: Optional[str],
        now: datetime,
    ) -> None:
        follow_up = self.store.create_follow_up(
            action_type=REVIEW_REQUEST_ACTION,
            scheduled_for=now + self.follow_up_delay,
            homeowner_id=homeowner_id,
            provider_org_id=provider_org_id,
            booking_id=booking_id,
            now=now,
        )
        logger.info("Scheduled %s %s for %s", follow_up.action_type, follow_up.id, follow_up.scheduled_for)


workflow_state_machine = WorkflowStateMachine()
