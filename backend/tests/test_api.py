import json
import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from homebase import config
from homebase.main import app
from homebase.routers.workflows import open_workflow_event_stream
from homebase.services.change_feed import ChangeFeed, ChangeEvent

client = TestClient(app)


def _ids():
    suffix = uuid4().hex[:8]
    return {
        "quote": f"Q_{suffix}",
        "booking": f"B_{suffix}",
        "request": f"sr_{suffix}",
        "homeowner": f"H_{suffix}",
        "org": f"P_{suffix}",
    }


def _register(ids):
    quote = client.post(
        "/workflows/references/quotes",
        json={
            "id": ids["quote"],
            "serviceRequestId": ids["request"],
            "homeownerId": ids["homeowner"],
            "providerOrgId": ids["org"],
        },
    )
    assert quote.status_code == 200
    booking = client.post(
        "/workflows/references/bookings",
        json={
            "id": ids["booking"],
            "service_request_id": ids["request"],
            "quote_id": ids["quote"],
            "homeowner_id": ids["homeowner"],
            "provider_org_id": ids["org"],
        },
    )
    assert booking.status_code == 200


def _login(user_id):
    response = client.post("/auth/login", json={"user_id": user_id, "password": config.AUTH_DEMO_PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_lists_actions():
    payload = client.get("/ready").json()
    assert payload["status"] == "ready"
    assert "quote_created" in payload["actions"]
    assert payload["push_configured"] is False


def test_auth_login_and_me():
    headers = _login("user_2")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json() == {"user_id": "user_2", "role": "homeowner", "unread_notifications": 0}


def test_provider_login_reports_role_and_unread_count():
    user_id = f"pro_{uuid4().hex[:6]}"
    login = client.post("/auth/login", json={"user_id": user_id, "password": config.AUTH_DEMO_PASSWORD, "role": "provider"})
    assert login.status_code == 200
    assert login.json()["role"] == "provider"

    prefs = client.get("/notifications/preferences", params={"user_id": user_id, "role": "provider"})
    assert prefs.json()["job_push"] is False

    client.post("/notifications/dispatch", json={"type": "job.requested", "userId": user_id, "role": "provider", "title": "New job"})
    client.post("/notifications/dispatch", json={"type": "announcement", "userId": user_id, "title": "Homeowner side"})

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {login.json()['access_token']}"})
    assert me.status_code == 200
    assert me.json() == {"user_id": user_id, "role": "provider", "unread_notifications": 1}


def test_me_requires_token():
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid or missing bearer token"}


def test_auth_rejects_bad_password():
    response = client.post("/auth/login", json={"user_id": "user_2", "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid credentials"}


def test_advance_and_read_back():
    ids = _ids()
    _register(ids)

    response = client.post("/workflows/advance", json={"action": "quote_created", "quoteId": ids["quote"]})
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["stage"] == "quote_sent"
    assert payload["workflow_id"].startswith("wf_")

    view = client.get(f"/workflows/by-request/{ids['request']}")
    assert view.status_code == 200
    body = view.json()
    assert body["workflow"]["id"] == payload["workflow_id"]
    assert body["stage_label"] == "Quote Sent"
    assert body["progress"] == {"current": 4, "total": 14, "percentage": 29}

    listed = client.get("/workflows", params={"homeowner_id": ids["homeowner"]})
    assert [row["id"] for row in listed.json()] == [payload["workflow_id"]]

    inbox = client.get("/notifications", params={"user_id": ids["homeowner"]})
    assert inbox.status_code == 200
    notifications = inbox.json()
    assert len(notifications) == 1
    assert notifications[0]["type"] == "quote_received"
    assert notifications[0]["channel_email"] is True


def test_unknown_action_returns_error_body():
    response = client.post("/workflows/advance", json={"action": "unknown_action", "quoteId": "Q1"})
    assert response.status_code == 400
    assert response.json() == {"error": "Unknown workflow action: unknown_action"}


def test_unresolvable_reference_is_not_found():
    response = client.post("/workflows/advance", json={"action": "quote_created", "quoteId": "Q_missing"})
    assert response.status_code == 404
    assert "Q_missing" in response.json()["error"]


def test_backward_advance_conflicts():
    ids = _ids()
    _register(ids)
    assert client.post("/workflows/advance", json={"action": "job_started", "bookingId": ids["booking"]}).status_code == 200

    response = client.post("/workflows/advance", json={"action": "quote_created", "quoteId": ids["quote"]})
    assert response.status_code == 409
    assert "cannot move backward" in response.json()["error"]


def test_missing_action_is_a_bad_request():
    response = client.post("/workflows/advance", json={"quoteId": "Q1"})
    assert response.status_code == 400
    assert "action" in response.json()["error"]


def test_missing_workflow_is_not_found():
    response = client.get("/workflows/by-request/sr_does_not_exist")
    assert response.status_code == 404
    assert response.json() == {"error": "Workflow not found"}


def test_stages_endpoint():
    stages = client.get("/workflows/stages").json()
    assert len(stages) == 14
    assert stages[0] == {"index": 0, "stage": "request_submitted", "label": "Request Submitted"}


def test_service_key_is_enforced(monkeypatch):
    monkeypatch.setattr(config, "SERVICE_ROLE_KEY", "service-secret")

    denied = client.post("/workflows/advance", json={"action": "quote_created", "quoteId": "Q1"})
    assert denied.status_code == 401
    assert denied.json() == {"error": "Invalid service key"}

    allowed = client.post(
        "/notifications/dispatch",
        json={"type": "announcement", "userId": "user_key", "title": "Hi"},
        headers={"X-Service-Key": "service-secret"},
    )
    assert allowed.status_code == 200


def test_dispatch_unknown_type_defaults():
    response = client.post(
        "/notifications/dispatch",
        json={"type": "random.event", "userId": f"user_{uuid4().hex[:6]}", "title": "Heads up"},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["category"] == "announce"
    assert payload["channels"] == {"inapp": True, "push": False, "email": False}
    assert payload["outbox_entries"] == 0


def test_preferences_round_trip_and_validation():
    user_id = f"user_{uuid4().hex[:6]}"
    created = client.get("/notifications/preferences", params={"user_id": user_id, "role": "provider"})
    assert created.status_code == 200
    assert created.json()["job_push"] is False

    updated = client.put(
        "/notifications/preferences",
        json={"userId": user_id, "role": "provider", "jobPush": True, "quietHoursStart": "21:30", "timezone": "UTC"},
    )
    assert updated.status_code == 200
    assert updated.json()["job_push"] is True
    assert updated.json()["quiet_hours_start"] == "21:30"
    assert updated.json()["job_inapp"] is True

    bad_time = client.put("/notifications/preferences", json={"userId": user_id, "quietHoursEnd": "25:00"})
    assert bad_time.status_code == 400
    assert bad_time.json() == {"error": "quiet_hours_end must be HH:MM"}

    bad_zone = client.put("/notifications/preferences", json={"userId": user_id, "timezone": "Mars/Olympus"})
    assert bad_zone.status_code == 400


def test_mark_read_and_token_mismatch():
    user_id = f"user_{uuid4().hex[:6]}"
    dispatched = client.post("/notifications/dispatch", json={"type": "announcement", "userId": user_id, "title": "Hi"})
    notification_id = dispatched.json()["notification_id"]

    forbidden = client.post(
        f"/notifications/{notification_id}/read",
        params={"user_id": user_id},
        headers=_login("someone_else"),
    )
    assert forbidden.status_code == 403
    assert forbidden.json() == {"error": "Token user does not match actor user"}

    read = client.post(f"/notifications/{notification_id}/read", params={"user_id": user_id}, headers=_login(user_id))
    assert read.status_code == 200
    assert read.json()["read_at"] is not None

    unread = client.get("/notifications", params={"user_id": user_id, "unread_only": True})
    assert unread.json() == []

    missing = client.post("/notifications/ntf_missing/read", params={"user_id": user_id})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Notification not found"}


def test_register_device_and_drain():
    user_id = f"user_{uuid4().hex[:6]}"
    registered = client.post("/notifications/register-device", json={"userId": user_id, "deviceToken": "tok_1"})
    assert registered.status_code == 200

    dispatched = client.post(
        "/notifications/dispatch",
        json={"type": "job.requested", "userId": user_id, "title": "New job", "forceChannels": {"push": True}},
    )
    notification_id = dispatched.json()["notification_id"]
    assert dispatched.json()["outbox_entries"] == 1

    # Push is not configured in tests, so the attempt fails and is rescheduled.
    drained = client.post("/notifications/outbox/drain", json={"notificationId": notification_id, "immediate": True})
    assert drained.status_code == 200
    assert drained.json() == {"processed": 1, "succeeded": 0, "failed": 1}


def test_notification_health_reports_degraded_delivery():
    response = client.get("/notifications/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["configuration"] == {"push_configured": False, "email_configured": False}
    assert set(payload["outbox"]) >= {"pending", "sent", "failed", "by_channel", "high_attempts"}
    assert "total" in payload["notifications_24h"]


def test_event_stream_forwards_matching_changes():
    feed = ChangeFeed()
    stream = open_workflow_event_stream("sr_stream", feed=feed, max_events=1)
    feed.publish(ChangeEvent(table="workflow_states", event_type="UPDATE", new={"service_request_id": "sr_other"}))
    feed.publish(
        ChangeEvent(
            table="workflow_states",
            event_type="UPDATE",
            new={"service_request_id": "sr_stream", "workflow_stage": "job_in_progress"},
        )
    )

    chunks = list(stream)

    assert len(chunks) == 1
    assert chunks[0].startswith("data: ")
    payload = json.loads(chunks[0][len("data: "):].strip())
    assert payload["new"]["workflow_stage"] == "job_in_progress"
    assert feed.subscriber_count() == 0
