import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

ChangeType = Literal["INSERT", "UPDATE", "DELETE"]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: ChangeType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def matches(self, filters: Dict[str, Any]) -> bool:
        row = self.new if self.new is not None else (self.old or {})
        return all(row.get(key) == value for key, value in filters.items())

    def to_payload(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "new": self.new,
            "old": self.old,
            "commit_timestamp": self.commit_timestamp,
        }


class Subscription:
    """Handle for a change-feed listener. Release with ``unsubscribe`` or a ``with`` block."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        callback: Callable[[ChangeEvent], None],
        filters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.id = f"sub_{uuid4().hex[:10]}"
        self.table = table
        self.filters = dict(filters or {})
        self._callback = callback
        self._feed = feed
        self.active = True

    def deliver(self, event: ChangeEvent) -> None:
        if not self.active or event.table != self.table or not event.matches(self.filters):
            return
        self._callback(event)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class ChangeFeed:
    """In-process row-level change stream, published to by the stores after commit."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], None],
        filters: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        subscription = Subscription(self, table=table, callback=callback, filters=filters)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = [sub for sub in self._subscriptions if sub is not subscription]

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("Change feed subscriber %s failed on %s", subscription.id, event.table)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions if sub.table == table)


change_feed = ChangeFeed()
