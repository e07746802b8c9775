import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from homebase import config
from homebase.models import NotificationRecord, OutboxDrainSummary, OutboxEntry
from homebase.services.email_sender import EmailDeliveryError, EmailSender, email_sender
from homebase.services.notification_store import NotificationStore, notification_store
from homebase.services.push_sender import PushDeliveryError, PushSender, push_sender

logger = logging.getLogger(__name__)


class OutboxRetryWorker:
    """Delivers pending push/email outbox entries with exponential backoff.

    Each failed attempt schedules the next one ``base * 2**attempts`` minutes
    out (5, 10, 20, 40, 80 with the defaults); an entry that reaches
    ``max_attempts`` is marked ``failed`` and never retried.
    """

    def __init__(
        self,
        store: Optional[NotificationStore] = None,
        push: Optional[PushSender] = None,
        email: Optional[EmailSender] = None,
        max_attempts: int = config.OUTBOX_MAX_ATTEMPTS,
        base_backoff_minutes: int = config.OUTBOX_BASE_BACKOFF_MINUTES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or notification_store
        self.push = push or push_sender
        self.email = email or email_sender
        self.max_attempts = max_attempts
        self.base_backoff_minutes = base_backoff_minutes
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._executor: Optional[ThreadPoolExecutor] = None

    def drain(self, notification_id: Optional[str] = None, immediate: bool = False) -> OutboxDrainSummary:
        now = self.clock()
        items = self.store.pending_outbox(
            max_attempts=self.max_attempts,
            notification_id=notification_id,
            due_before=None if immediate else now.isoformat(),
        )
        summary = OutboxDrainSummary()
        if not items:
            logger.info("No pending outbox items")
            return summary

        logger.info("Processing %s outbox items", len(items))
        for entry, notification in items:
            summary.processed += 1
            try:
                self._deliver(entry, notification)
            except (PushDeliveryError, EmailDeliveryError) as exc:
                summary.failed += 1
                self._record_failure(entry, str(exc), now)
                continue
            self.store.mark_outbox_sent(entry, now=now)
            summary.succeeded += 1
            logger.info("Delivered %s for notification %s", entry.channel, notification.id)

        logger.info(
            "Outbox drain summary: %s processed, %s succeeded, %s failed",
            summary.processed,
            summary.succeeded,
            summary.failed,
        )
        return summary

    def _deliver(self, entry: OutboxEntry, notification: NotificationRecord) -> None:
        if entry.channel == "push":
            self._deliver_push(notification)
        elif entry.channel == "email":
            self._deliver_email(notification)
        else:
            raise PushDeliveryError(f"Unsupported outbox channel: {entry.channel}")

    def _deliver_push(self, notification: NotificationRecord) -> None:
        tokens = self.store.list_device_tokens(notification.user_id)
        if not tokens:
            raise PushDeliveryError("No registered push devices for user")
        result = self.push.send_notification(
            tokens=tokens,
            title=notification.title,
            body=notification.body,
            data={
                "notification_id": notification.id,
                "type": notification.type,
                "action_url": notification.action_url or "",
            },
        )
        if result.invalid_tokens:
            self.store.remove_device_tokens(notification.user_id, result.invalid_tokens)
        if result.sent == 0 and result.failed > 0:
            raise PushDeliveryError("All push notification attempts failed")

    def _deliver_email(self, notification: NotificationRecord) -> None:
        preferences = self.store.get_preferences(notification.user_id, notification.role)
        address = (preferences.contact_email if preferences else None) or notification.metadata.get("email")
        self.email.send_notification(
            to=str(address or ""),
            title=notification.title,
            body=notification.body,
            action_url=notification.action_url,
        )

    def _record_failure(self, entry: OutboxEntry, error: str, now: datetime) -> None:
        attempts = entry.attempts + 1
        exhausted = attempts >= self.max_attempts
        next_retry_at = None
        if not exhausted:
            delay = self.base_backoff_minutes * (2 ** entry.attempts)
            next_retry_at = (now + timedelta(minutes=delay)).isoformat()
        logger.warning(
            "Failed to send %s for notification %s (attempt %s/%s): %s",
            entry.channel,
            entry.notification_id,
            attempts,
            self.max_attempts,
            error,
        )
        self.store.record_outbox_failure(
            entry,
            error=error,
            attempts=attempts,
            status="failed" if exhausted else "pending",
            next_retry_at=next_retry_at,
            now=now,
        )

    def trigger_immediate(self, notification_id: str) -> Future:
        """Attempt delivery for one notification on a background thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="outbox")
        future = self._executor.submit(self.drain, notification_id=notification_id, immediate=True)
        future.add_done_callback(self._log_background_failure)
        return future

    @staticmethod
    def _log_background_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Background outbox delivery failed: %s", exc)


outbox_worker = OutboxRetryWorker()
