import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from homebase.errors import ReferenceResolutionError, StageRegressionError, UnknownActionError
from homebase.services.invoice_generator import LocalInvoiceGenerator
from homebase.services.workflow_engine import WorkflowStateMachine
from homebase.services.workflow_stages import stage_index


@pytest.fixture
def references(wf_store):
    wf_store.register_quote("Q1", service_request_id="sr_1", homeowner_id="H1", provider_org_id="P1")
    wf_store.register_booking("B1", service_request_id="sr_1", quote_id="Q1", homeowner_id="H1", provider_org_id="P1")
    wf_store.register_organization("P1", owner_user_id="owner_1", owner_profile_id="profile_owner_1")
    return wf_store


def test_quote_created_creates_workflow_and_notifies_homeowner(machine, references, notif_store, triggered):
    result = machine.advance("quote_created", quote_id="Q1", homeowner_id="H1", provider_org_id="P1")

    assert result.success is True
    assert result.stage == "quote_sent"
    assert result.created is True
    workflow = references.get_workflow(result.workflow_id)
    assert workflow.service_request_id == "sr_1"
    assert workflow.quote_id == "Q1"
    assert workflow.workflow_stage == "quote_sent"
    assert workflow.homeowner_notified_at is not None

    notifications = notif_store.list_for_user("H1")
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.type == "quote_received"
    assert notification.channel_inapp is True
    assert notification.channel_email is True
    assert notification.action_url == "/homeowner/quotes/Q1"
    assert [entry.channel for entry in notif_store.list_outbox(notification.id)] == ["email"]
    assert triggered == [notification.id]


def test_quote_accepted_notifies_organization_owner(machine, references, notif_store):
    machine.advance("quote_created", quote_id="Q1")
    result = machine.advance("quote_accepted", quote_id="Q1", metadata={"service_name": "Roof repair"})

    assert result.stage == "job_scheduled"
    notifications = notif_store.list_for_user("owner_1")
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.role == "provider"
    assert notification.profile_id == "profile_owner_1"
    assert notification.body == "Your quote for Roof repair was accepted"
    assert notification.channel_push is True
    assert notification.action_url == "/provider/jobs"
    workflow = references.get_workflow(result.workflow_id)
    assert workflow.provider_notified_at is not None
    assert workflow.metadata["service_name"] == "Roof repair"
    assert workflow.metadata["last_action"] == "quote_accepted"


def test_quote_accepted_without_owner_still_advances(machine, wf_store, notif_store):
    wf_store.register_quote("Q9", service_request_id="sr_9", homeowner_id="H9", provider_org_id="P_missing")
    machine.advance("quote_created", quote_id="Q9")
    result = machine.advance("quote_accepted", quote_id="Q9")

    assert result.stage == "job_scheduled"
    assert wf_store.get_workflow(result.workflow_id).provider_notified_at is None


def test_payment_received_completes_and_schedules_review(machine, references, clock):
    machine.advance("job_completed", booking_id="B1")
    invoice = references.get_invoice_for_booking("B1")
    assert invoice is not None
    machine.advance("invoice_sent", invoice_id=invoice.id)

    result = machine.advance("payment_received", booking_id="B1")

    assert result.stage == "payment_received"
    workflow = references.get_workflow(result.workflow_id)
    assert workflow.workflow_stage == "payment_received"
    assert workflow.stage_completed_at == clock.now.isoformat()
    assert workflow.metadata["completed"] is True
    assert workflow.invoice_id == invoice.id
    follow_ups = references.list_follow_ups(booking_id="B1")
    assert len(follow_ups) == 1
    assert follow_ups[0].action_type == "review_request"
    assert follow_ups[0].status == "pending"
    assert follow_ups[0].homeowner_id == "H1"
    assert follow_ups[0].scheduled_for == (clock.now + timedelta(hours=24)).isoformat()


def test_unknown_action_changes_nothing(machine, references, notif_store):
    with pytest.raises(UnknownActionError) as excinfo:
        machine.advance("unknown_action", quote_id="Q1")

    assert excinfo.value.status_code == 400
    assert "unknown_action" in excinfo.value.message
    assert references.list_workflows() == []
    assert notif_store.list_for_user("H1") == []


def test_stage_never_decreases_in_business_order(machine, references, clock):
    sequence = [
        ("quote_created", {"quote_id": "Q1"}),
        ("quote_accepted", {"quote_id": "Q1"}),
        ("booking_scheduled", {"booking_id": "B1"}),
        ("job_started", {"booking_id": "B1"}),
        ("job_completed", {"booking_id": "B1"}),
        ("invoice_generated", {"booking_id": "B1"}),
        ("payment_received", {"booking_id": "B1"}),
    ]
    last_index = -1
    for action, refs in sequence:
        clock.advance(minutes=5)
        machine.advance(action, **refs)
        workflow = references.find_by_service_request("sr_1")
        assert stage_index(workflow.workflow_stage) >= last_index
        last_index = stage_index(workflow.workflow_stage)
    assert len(references.list_workflows()) == 1


def test_backward_transition_is_rejected(machine, references):
    machine.advance("job_started", booking_id="B1")
    before = references.find_by_service_request("sr_1")

    with pytest.raises(StageRegressionError):
        machine.advance("quote_created", quote_id="Q1")

    after = references.find_by_service_request("sr_1")
    assert after.workflow_stage == "job_in_progress"
    assert after.version == before.version


def test_same_stage_reentry_is_allowed(machine, references):
    first = machine.advance("quote_accepted", quote_id="Q1")
    second = machine.advance("booking_scheduled", booking_id="B1")

    assert first.workflow_id == second.workflow_id
    assert second.stage == "job_scheduled"
    assert second.created is False


def test_repeat_notification_is_suppressed_within_window(machine, references, notif_store, clock):
    machine.advance("quote_created", quote_id="Q1")
    clock.advance(minutes=10)
    machine.advance("quote_created", quote_id="Q1")
    assert len(notif_store.list_for_user("H1")) == 1

    clock.advance(minutes=61)
    machine.advance("quote_created", quote_id="Q1")
    assert len(notif_store.list_for_user("H1")) == 2


def test_second_quote_on_same_request_notifies_homeowner(machine, references, notif_store, clock):
    references.register_quote("Q2", service_request_id="sr_1", homeowner_id="H1", provider_org_id="P2")

    first = machine.advance("quote_created", quote_id="Q1")
    clock.advance(minutes=5)
    second = machine.advance("quote_created", quote_id="Q2")

    assert first.workflow_id == second.workflow_id
    urls = sorted(notification.action_url for notification in notif_store.list_for_user("H1"))
    assert urls == ["/homeowner/quotes/Q1", "/homeowner/quotes/Q2"]
    workflow = references.get_workflow(second.workflow_id)
    assert workflow.metadata["notified_refs"] == {"homeowner": "Q2"}


def test_invoice_generation_is_idempotent(machine, references):
    machine.advance("job_completed", booking_id="B1")
    machine.advance("job_completed", booking_id="B1")

    assert references.count_invoices("B1") == 1
    generator = LocalInvoiceGenerator(store=references)
    assert generator.generate("B1") == generator.generate("B1")
    assert references.count_invoices("B1") == 1


class _BrokenInvoices:
    def generate(self, booking_id):
        raise RuntimeError("invoice service down")


class _BrokenDispatcher:
    def dispatch(self, event):
        raise RuntimeError("dispatch failed")


def test_side_effect_failures_do_not_fail_advance(references, clock):
    machine = WorkflowStateMachine(
        store=references,
        dispatcher=_BrokenDispatcher(),
        invoices=_BrokenInvoices(),
        clock=clock,
    )

    created = machine.advance("quote_created", quote_id="Q1")
    completed = machine.advance("job_completed", booking_id="B1")

    assert created.success and completed.success
    workflow = references.get_workflow(completed.workflow_id)
    assert workflow.workflow_stage == "job_completed"
    assert workflow.homeowner_notified_at is None
    assert references.count_invoices("B1") == 0


def test_missing_references_fail_resolution(machine, references):
    with pytest.raises(ReferenceResolutionError):
        machine.advance("quote_created")
    with pytest.raises(ReferenceResolutionError):
        machine.advance("quote_created", quote_id="Q_unknown")
    with pytest.raises(ReferenceResolutionError):
        machine.advance("invoice_sent", invoice_id="inv_unknown")
    assert references.list_workflows() == []


def test_advance_publishes_change_events(machine, references, feed):
    seen = []
    with feed.subscribe("workflow_states", seen.append, filters={"service_request_id": "sr_1"}):
        machine.advance("quote_created", quote_id="Q1")

    assert seen[0].event_type == "INSERT"
    assert seen[0].new["workflow_stage"] == "quote_sent"
    # Stamping homeowner_notified_at is an update on the same row.
    assert any(event.event_type == "UPDATE" for event in seen[1:])
    assert feed.subscriber_count("workflow_states") == 0
