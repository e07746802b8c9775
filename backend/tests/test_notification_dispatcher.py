import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from homebase import config
from homebase.errors import PersistenceError
from homebase.models import ChannelOverrides, NotificationEvent, NotificationPreferencesUpdate
from homebase.services.notification_dispatcher import (
    EVENT_CATEGORY_MAP,
    NotificationDispatcher,
    is_within_window,
    local_time_string,
    parse_hhmm,
    resolve_category,
)


def _event(**overrides):
    data = {"type": "announcement", "user_id": "user_1", "title": "Hello", "body": "World"}
    data.update(overrides)
    return NotificationEvent(**data)


def _enable_all_async(store, user_id="user_1", category="announce", **extra):
    store.update_preferences(
        NotificationPreferencesUpdate(
            user_id=user_id,
            role="homeowner",
            **{f"{category}_push": True, f"{category}_email": True},
            **extra,
        )
    )


def test_unknown_event_type_defaults_to_announce(dispatcher, notif_store):
    result = dispatcher.dispatch(_event(type="random.event"))

    assert result.category == "announce"
    assert result.channels.inapp is True
    assert result.channels.push is False
    assert result.channels.email is False
    assert result.outbox_entries == 0
    record = notif_store.get_notification(result.notification_id)
    assert record.delivered_inapp is True
    assert notif_store.list_outbox(result.notification_id) == []


@pytest.mark.parametrize(
    "event_type,category",
    [
        ("announcement", "announce"),
        ("message.received", "message"),
        ("payment.succeeded", "payment"),
        ("invoice.paid", "payment"),
        ("payout.failed", "payment"),
        ("job.status.updated", "job"),
        ("quote.ready", "quote"),
        ("quote_received", "quote"),
        ("quote_accepted", "quote"),
        ("review.received", "review"),
        ("booking.canceled", "booking"),
        ("something.else", "announce"),
        ("", "announce"),
    ],
)
def test_category_table(event_type, category):
    assert resolve_category(event_type) == category


def test_every_mapped_category_has_preference_columns(notif_store):
    prefs = notif_store.get_or_create_preferences("user_x", "homeowner")
    for category in set(EVENT_CATEGORY_MAP.values()):
        for channel in ("inapp", "push", "email"):
            assert prefs.channel_setting(category, channel) is not None


def test_dispatch_creates_preferences_on_first_use(dispatcher, notif_store):
    assert notif_store.get_preferences("user_new", "provider") is None
    dispatcher.dispatch(_event(user_id="user_new", role="provider"))
    prefs = notif_store.get_preferences("user_new", "provider")
    assert prefs is not None
    assert prefs.announce_inapp is True
    assert prefs.announce_push is False


def test_enabled_async_channels_create_pending_outbox(dispatcher, notif_store, triggered):
    _enable_all_async(notif_store)

    result = dispatcher.dispatch(_event())

    assert result.channels.push is True
    assert result.channels.email is True
    entries = notif_store.list_outbox(result.notification_id)
    assert sorted(entry.channel for entry in entries) == ["email", "push"]
    assert all(entry.status == "pending" and entry.attempts == 0 for entry in entries)
    assert triggered == [result.notification_id]


def test_forced_channels_override_preferences(dispatcher, notif_store):
    _enable_all_async(notif_store, category="quote")

    result = dispatcher.dispatch(
        _event(type="quote.ready", force_channels=ChannelOverrides(inapp=False, email=True, push=False))
    )

    assert result.channels.inapp is False
    assert result.channels.push is False
    assert result.channels.email is True
    record = notif_store.get_notification(result.notification_id)
    assert record.delivered_inapp is False
    assert [entry.channel for entry in notif_store.list_outbox(result.notification_id)] == ["email"]


def test_camel_case_force_channels_are_accepted():
    event = NotificationEvent.model_validate(
        {"type": "quote.ready", "userId": "u1", "title": "t", "forceChannels": {"email": True}}
    )
    assert event.user_id == "u1"
    assert event.force_channels.email is True
    assert event.force_channels.push is None


def test_quiet_hours_suppress_push_and_email(notif_store, triggered):
    _enable_all_async(notif_store, quiet_hours_start="22:00", quiet_hours_end="08:00", timezone="UTC")
    dispatcher = NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=lambda: datetime(2024, 3, 14, 23, 30, tzinfo=timezone.utc),
        immediate_delivery=True,
    )

    result = dispatcher.dispatch(_event(force_channels=ChannelOverrides(push=True)))

    assert result.quiet_hours is True
    assert result.channels.inapp is True
    assert result.channels.push is False
    assert result.channels.email is False
    assert sorted(result.suppressed) == ["email", "push"]
    assert notif_store.list_outbox(result.notification_id) == []
    assert triggered == []


def test_default_quiet_window_applies_without_user_times(notif_store, triggered, monkeypatch):
    monkeypatch.setattr(config, "QUIET_HOURS_DEFAULT_START", "22:00")
    monkeypatch.setattr(config, "QUIET_HOURS_DEFAULT_END", "08:00")
    _enable_all_async(notif_store, timezone="UTC")
    assert notif_store.get_preferences("user_1", "homeowner").quiet_hours_start is None
    dispatcher = NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=lambda: datetime(2024, 3, 14, 23, 0, tzinfo=timezone.utc),
    )

    result = dispatcher.dispatch(_event())

    assert result.quiet_hours is True
    assert result.channels.inapp is True
    assert result.channels.push is False
    assert result.channels.email is False
    assert sorted(result.suppressed) == ["email", "push"]
    assert result.outbox_entries == 0


def test_quiet_hours_keep_inapp_preference(notif_store, triggered):
    notif_store.update_preferences(
        NotificationPreferencesUpdate(
            user_id="user_1",
            announce_inapp=False,
            announce_push=True,
            quiet_hours_start="22:00",
            quiet_hours_end="08:00",
        )
    )
    dispatcher = NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=lambda: datetime(2024, 3, 14, 2, 0, tzinfo=timezone.utc),
    )

    result = dispatcher.dispatch(_event())

    assert result.channels.inapp is False
    assert result.channels.push is False
    assert result.suppressed == ["push"]


def test_quiet_hours_use_preference_timezone(notif_store, triggered):
    # 12:00 UTC is 23:00 in Sydney (AEDT) on this date.
    _enable_all_async(notif_store, quiet_hours_start="22:00", quiet_hours_end="07:00", timezone="Australia/Sydney")
    dispatcher = NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=lambda: datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc),
    )

    result = dispatcher.dispatch(_event())

    assert result.quiet_hours is True
    assert result.channels.push is False


def test_outside_quiet_hours_delivers_async(notif_store, triggered):
    _enable_all_async(notif_store, quiet_hours_start="22:00", quiet_hours_end="08:00", timezone="UTC")
    dispatcher = NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=lambda: datetime(2024, 3, 14, 8, 0, tzinfo=timezone.utc),
    )

    result = dispatcher.dispatch(_event())

    assert result.quiet_hours is False
    assert result.channels.push is True
    assert result.outbox_entries == 2


def test_retry_trigger_failure_does_not_fail_dispatch(notif_store, clock):
    _enable_all_async(notif_store)

    def broken_trigger(notification_id):
        raise RuntimeError("worker offline")

    dispatcher = NotificationDispatcher(store=notif_store, retry_trigger=broken_trigger, clock=clock)
    result = dispatcher.dispatch(_event())

    assert result.success is True
    assert len(notif_store.list_outbox(result.notification_id)) == 2


def test_outbox_write_failure_fails_dispatch(notif_store, clock, monkeypatch):
    _enable_all_async(notif_store)

    def failing_enqueue(notification_id, channels):
        raise PersistenceError("Outbox write failed: disk full")

    monkeypatch.setattr(notif_store, "enqueue_outbox", failing_enqueue)
    dispatcher = NotificationDispatcher(store=notif_store, retry_trigger=lambda _: None, clock=clock)

    with pytest.raises(PersistenceError):
        dispatcher.dispatch(_event())


def test_injected_preferences_provider_is_used(notif_store, clock):
    calls = []

    def provider(user_id, role):
        calls.append((user_id, role))
        return notif_store.get_or_create_preferences(user_id, role)

    dispatcher = NotificationDispatcher(store=notif_store, preferences_provider=provider, clock=clock)
    dispatcher.dispatch(_event(role="admin"))
    assert calls == [("user_1", "admin")]


@pytest.mark.parametrize(
    "current,start,end,expected",
    [
        ("23:00", "22:00", "08:00", True),
        ("22:00", "22:00", "08:00", True),
        ("07:59", "22:00", "08:00", True),
        ("08:00", "22:00", "08:00", False),
        ("12:00", "22:00", "08:00", False),
        ("13:00", "12:00", "14:00", True),
        ("14:00", "12:00", "14:00", False),
        ("11:59", "12:00", "14:00", False),
        ("10:00", "09:00", "09:00", False),
        ("10:00", "bad", "09:00", False),
    ],
)
def test_quiet_window(current, start, end, expected):
    assert is_within_window(current, start, end) is expected


def test_parse_hhmm():
    assert parse_hhmm("07:05") == 425
    assert parse_hhmm("7:05") == 425
    assert parse_hhmm("24:00") is None
    assert parse_hhmm("") is None
    assert parse_hhmm(None) is None


def test_local_time_string_falls_back_on_unknown_timezone():
    now = datetime(2024, 3, 14, 9, 45, tzinfo=timezone.utc)
    assert local_time_string(now, "Not/AZone") == "09:45"
    assert local_time_string(now, None) == "09:45"
