from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from homebase.auth import assert_actor_authorized, require_service_role
from homebase.errors import ValidationFailure
from homebase.models import (
    DeviceTokenRegisterRequest,
    DispatchResult,
    NotificationEvent,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRecord,
    OutboxDrainRequest,
    OutboxDrainSummary,
    UserRole,
)
from homebase.services.email_sender import email_sender
from homebase.services.notification_dispatcher import notification_dispatcher, parse_hhmm
from homebase.services.notification_store import notification_store
from homebase.services.outbox_worker import outbox_worker
from homebase.services.push_sender import push_sender

router = APIRouter(prefix="/notifications", tags=["notifications"])

PENDING_WARNING_THRESHOLD = 100
HIGH_ATTEMPT_WARNING_THRESHOLD = 10


def _validate_preferences_update(payload: NotificationPreferencesUpdate) -> None:
    for field_name in ("quiet_hours_start", "quiet_hours_end"):
        value = getattr(payload, field_name)
        if value is not None and parse_hhmm(value) is None:
            raise ValidationFailure(f"{field_name} must be HH:MM")
    if payload.timezone is not None:
        try:
            ZoneInfo(payload.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationFailure(f"Unknown timezone: {payload.timezone}")


@router.post("/dispatch", response_model=DispatchResult, dependencies=[Depends(require_service_role)])
def dispatch_notification(payload: NotificationEvent):
    return notification_dispatcher.dispatch(payload)


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
):
    return notification_store.list_for_user(user_id=user_id, unread_only=unread_only)


@router.get("/preferences", response_model=NotificationPreferences)
def get_preferences(
    user_id: str = Query(...),
    role: UserRole = Query(default="homeowner"),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return notification_store.get_or_create_preferences(user_id=user_id, role=role)


@router.put("/preferences", response_model=NotificationPreferences)
def update_preferences(
    payload: NotificationPreferencesUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    _validate_preferences_update(payload)
    return notification_store.update_preferences(payload)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    notification_store.register_device_token(
        user_id=payload.user_id,
        device_token=payload.device_token,
        platform=payload.platform,
    )
    return {"status": "ok"}


@router.post("/outbox/drain", response_model=OutboxDrainSummary, dependencies=[Depends(require_service_role)])
def drain_outbox(payload: Optional[OutboxDrainRequest] = None):
    payload = payload or OutboxDrainRequest()
    return outbox_worker.drain(notification_id=payload.notification_id, immediate=payload.immediate)


@router.get("/health", response_model=dict)
def notification_health():
    outbox = notification_store.outbox_summary()
    deliveries = notification_store.delivery_summary(since=datetime.now(timezone.utc) - timedelta(hours=24))
    configuration = {
        "push_configured": push_sender.configured,
        "email_configured": email_sender.configured,
    }

    warnings = []
    if not configuration["push_configured"]:
        warnings.append("Push delivery is not configured (FIREBASE_CREDENTIALS_PATH)")
    if not configuration["email_configured"]:
        warnings.append("Email delivery is not configured (RESEND_API_KEY)")
    if outbox["pending"] > PENDING_WARNING_THRESHOLD:
        warnings.append(f"{outbox['pending']} outbox entries pending")
    if outbox["high_attempts"] > HIGH_ATTEMPT_WARNING_THRESHOLD:
        warnings.append(f"{outbox['high_attempts']} outbox entries with 3+ attempts")

    return {
        "status": "degraded" if warnings else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "outbox": outbox,
        "notifications_24h": deliveries,
        "configuration": configuration,
        "warnings": warnings,
    }


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    updated = notification_store.mark_read(user_id=user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
