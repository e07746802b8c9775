import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from homebase import config
from homebase.models import (
    ChannelDecision,
    ChannelOverrides,
    DispatchResult,
    NotificationEvent,
    NotificationPreferences,
)
from homebase.services.notification_store import ASYNC_CHANNELS, CHANNELS, NotificationStore, notification_store
from homebase.services.outbox_worker import outbox_worker

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "announce"

# Any type missing here falls back to DEFAULT_CATEGORY.
EVENT_CATEGORY_MAP: Dict[str, str] = {
    "announcement": "announce",
    "message.received": "message",
    "payment.succeeded": "payment",
    "payment.failed": "payment",
    "invoice.generated": "payment",
    "invoice.paid": "payment",
    "payout.initiated": "payment",
    "payout.paid": "payment",
    "payout.failed": "payment",
    "payout.updated": "payment",
    "job.requested": "job",
    "job.status.updated": "job",
    "quote.ready": "quote",
    "quote.approved": "quote",
    "quote_received": "quote",
    "quote_accepted": "quote",
    "review.received": "review",
    "booking.confirmed": "booking",
    "booking.rescheduled": "booking",
    "booking.canceled": "booking",
}

CHANNEL_DEFAULTS: Dict[str, bool] = {"inapp": True, "push": False, "email": False}

_HHMM_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def resolve_category(event_type: str) -> str:
    return EVENT_CATEGORY_MAP.get(event_type, DEFAULT_CATEGORY)


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """Minutes since midnight for an ``HH:MM`` string, or None if it is not one."""
    if not value:
        return None
    match = _HHMM_PATTERN.match(value.strip())
    if not match:
        return None
    return int(match.group(1)) * 60 + int(match.group(2))


def is_within_window(current: str, start: str, end: str) -> bool:
    """Whether ``current`` falls in the half-open window [start, end), wrapping midnight when end < start."""
    now_minutes = parse_hhmm(current)
    start_minutes = parse_hhmm(start)
    end_minutes = parse_hhmm(end)
    if now_minutes is None or start_minutes is None or end_minutes is None:
        return False
    if start_minutes == end_minutes:
        return False
    if start_minutes < end_minutes:
        return start_minutes <= now_minutes < end_minutes
    return now_minutes >= start_minutes or now_minutes < end_minutes


def local_time_string(now: datetime, timezone_name: Optional[str]) -> str:
    name = timezone_name or config.DEFAULT_TIMEZONE
    try:
        zone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using UTC for quiet hours", name)
        zone = ZoneInfo("UTC")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone).strftime("%H:%M")


def resolve_channels(
    category: str,
    preferences: Optional[NotificationPreferences],
    overrides: Optional[ChannelOverrides],
) -> Dict[str, bool]:
    """Per channel: explicit override, else the stored preference, else the channel default."""
    resolved: Dict[str, bool] = {}
    for channel in CHANNELS:
        forced = getattr(overrides, channel, None) if overrides else None
        if forced is not None:
            resolved[channel] = bool(forced)
            continue
        stored = preferences.channel_setting(category, channel) if preferences else None
        resolved[channel] = stored if stored is not None else CHANNEL_DEFAULTS[channel]
    return resolved


class NotificationDispatcher:
    """Turns an event into a stored notification plus outbox rows for push/email."""

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        preferences_provider: Optional[Callable[[str, str], NotificationPreferences]] = None,
        retry_trigger: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        immediate_delivery: bool = config.OUTBOX_IMMEDIATE_DELIVERY,
    ) -> None:
        self.store = store or notification_store
        self.preferences_provider = preferences_provider or self.store.get_or_create_preferences
        self.retry_trigger = retry_trigger or outbox_worker.trigger_immediate
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.immediate_delivery = immediate_delivery

    def in_quiet_hours(self, preferences: Optional[NotificationPreferences], now: datetime) -> bool:
        start = (preferences.quiet_hours_start if preferences else None) or config.QUIET_HOURS_DEFAULT_START
        end = (preferences.quiet_hours_end if preferences else None) or config.QUIET_HOURS_DEFAULT_END
        current = local_time_string(now, preferences.timezone if preferences else None)
        return is_within_window(current, start, end)

    def dispatch(self, event: NotificationEvent) -> DispatchResult:
        now = self.clock()
        preferences = self.preferences_provider(event.user_id, event.role)
        category = resolve_category(event.type)
        channels = resolve_channels(category, preferences, event.force_channels)

        quiet = self.in_quiet_hours(preferences, now)
        suppressed: List[str] = []
        if quiet:
            for channel in ASYNC_CHANNELS:
                if channels[channel]:
                    suppressed.append(channel)
                channels[channel] = False

        decision = ChannelDecision(**channels)
        record = self.store.create_notification(event, decision, now=now)
        outbox = self.store.enqueue_outbox(record.id, [channel for channel in ASYNC_CHANNELS if channels[channel]])

        if outbox and self.immediate_delivery:
            try:
                self.retry_trigger(record.id)
            except Exception:
                logger.exception("Immediate delivery trigger failed for notification %s", record.id)

        logger.info(
            "notification_dispatch=%s",
            json.dumps(
                {
                    "notification_id": record.id,
                    "type": event.type,
                    "category": category,
                    "role": event.role,
                    "channels": channels,
                    "quiet_hours": quiet,
                    "suppressed": suppressed,
                    "outbox_entries": len(outbox),
                },
                sort_keys=True,
            ),
        )
        return DispatchResult(
            notification_id=record.id,
            category=category,
            channels=decision,
            quiet_hours=quiet,
            suppressed=suppressed,  # type: ignore[arg-type]
            outbox_entries=len(outbox),
        )


notification_dispatcher = NotificationDispatcher()
