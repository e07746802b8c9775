"""Client-side views of workflow state fed by the change feed.

``WorkflowObserver`` follows one service request; ``WorkflowCache`` backs list
views. Both must be closed (``unsubscribe``/``close`` or a ``with`` block) when
the owning view goes away.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from homebase import config
from homebase.errors import NotFoundError
from homebase.models import StageProgress, WorkflowState
from homebase.services.change_feed import ChangeEvent, ChangeFeed, Subscription, change_feed
from homebase.services.workflow_stages import is_active_stage, stage_label, stage_progress
from homebase.services.workflow_store import WORKFLOW_TABLE, WorkflowStore, workflow_store

logger = logging.getLogger(__name__)

DETAIL_STALE_SECONDS = 5 * 60
LIST_STALE_SECONDS = 2 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_state(row: Optional[Dict[str, Any]]) -> Optional[WorkflowState]:
    if not row:
        return None
    return WorkflowState.model_validate(row)


def _is_newer_or_equal(candidate: WorkflowState, current: Optional[WorkflowState]) -> bool:
    if current is None:
        return True
    return candidate.updated_at >= current.updated_at


class WorkflowObserver:
    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        feed: Optional[ChangeFeed] = None,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store or workflow_store
        self.feed = feed or change_feed
        self._notify = notify
        self.workflow_state: Optional[WorkflowState] = None
        self.loading = False
        self.error: Optional[str] = None
        self.notifications: List[str] = []
        self._service_request_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._lock = Lock()

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def load(self, service_request_id: str) -> Optional[WorkflowState]:
        self.loading = True
        self.error = None
        try:
            state = self.store.find_by_service_request(service_request_id)
            with self._lock:
                current = self.workflow_state
                # A change delivered while the read was in flight may be newer than the read.
                if (
                    state is not None
                    and current is not None
                    and current.service_request_id == service_request_id
                    and not _is_newer_or_equal(state, current)
                ):
                    return current
                self.workflow_state = state
            return state
        except Exception as exc:
            logger.exception("Error loading workflow state for %s", service_request_id)
            self.error = str(exc) or "Failed to load workflow state"
            return None
        finally:
            self.loading = False

    def subscribe(self, service_request_id: str) -> "WorkflowObserver":
        """Start following a service request.

        The feed subscription is opened before the initial read, so a write landing
        between the two is still delivered.
        """
        if self._subscription is not None:
            self.unsubscribe()
        if self._service_request_id != service_request_id:
            with self._lock:
                self.workflow_state = None
        self._service_request_id = service_request_id
        self._subscription = self.feed.subscribe(
            WORKFLOW_TABLE,
            self._on_change,
            filters={"service_request_id": service_request_id},
        )
        self.load(service_request_id)
        return self

    def unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def __enter__(self) -> "WorkflowObserver":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()

    def _on_change(self, event: ChangeEvent) -> None:
        if event.event_type not in {"INSERT", "UPDATE"}:
            return
        incoming = _row_to_state(event.new)
        if incoming is None:
            return
        with self._lock:
            current = self.workflow_state
            if not _is_newer_or_equal(incoming, current):
                return
            previous_stage = current.workflow_stage if current else None
            self.workflow_state = incoming
        if incoming.workflow_stage != previous_stage:
            self._announce(f"Workflow Updated: {stage_label(incoming.workflow_stage)}")

    def _announce(self, message: str) -> None:
        self.notifications.append(message)
        if self._notify is not None:
            self._notify(message)

    def get_stage_progress(self) -> StageProgress:
        state = self.workflow_state
        return stage_progress(state.workflow_stage if state else None)

    @staticmethod
    def get_stage_label(stage: str) -> str:
        return stage_label(stage)


@dataclass
class _CacheEntry:
    value: Optional[WorkflowState]
    fetched_at: datetime
    optimistic: bool = False


class WorkflowCache:
    """Shared workflow cache keyed by id, with list queries invalidated on any table change."""

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        feed: Optional[ChangeFeed] = None,
        clock: Optional[Callable[[], datetime]] = None,
        refetch_seconds: int = config.WORKFLOW_REFETCH_SECONDS,
    ) -> None:
        self.store = store or workflow_store
        self.feed = feed or change_feed
        self.clock = clock or _utcnow
        self.refetch_seconds = refetch_seconds
        self._lock = Lock()
        self._workflows: Dict[str, _CacheEntry] = {}
        self._lists: Dict[Tuple[Any, ...], Tuple[List[str], datetime]] = {}
        self._subscriptions: List[Subscription] = [self.feed.subscribe(WORKFLOW_TABLE, self._on_table_change)]

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def __enter__(self) -> "WorkflowCache":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Queries

    def get(self, workflow_id: str) -> Optional[WorkflowState]:
        now = self.clock()
        with self._lock:
            entry = self._workflows.get(workflow_id)
        if entry and (entry.optimistic or (now - entry.fetched_at).total_seconds() < DETAIL_STALE_SECONDS):
            return entry.value
        return self._fetch(workflow_id)

    def list(
        self,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowState]:
        key = (homeowner_id, provider_org_id, stage, limit)
        now = self.clock()
        with self._lock:
            cached = self._lists.get(key)
            if cached and (now - cached[1]).total_seconds() < LIST_STALE_SECONDS:
                entries = [self._workflows.get(workflow_id) for workflow_id in cached[0]]
                if all(entry is not None and entry.value is not None for entry in entries):
                    return [entry.value for entry in entries]  # type: ignore[union-attr,misc]
        rows = self.store.list_workflows(
            homeowner_id=homeowner_id,
            provider_org_id=provider_org_id,
            stage=stage,
            limit=limit,
        )
        with self._lock:
            for row in rows:
                self._workflows[row.id] = _CacheEntry(value=row, fetched_at=now)
            self._lists[key] = ([row.id for row in rows], now)
        return rows

    def _fetch(self, workflow_id: str) -> Optional[WorkflowState]:
        now = self.clock()
        try:
            value: Optional[WorkflowState] = self.store.get_workflow(workflow_id)
        except NotFoundError:
            value = None
        with self._lock:
            self._workflows[workflow_id] = _CacheEntry(value=value, fetched_at=now)
        return value

    # Refresh policy

    def refetch_interval(self, workflow_id: str) -> Optional[int]:
        """Seconds between background refetches, or None when the cached stage is settled."""
        with self._lock:
            entry = self._workflows.get(workflow_id)
        if entry is None or entry.value is None:
            return None
        return self.refetch_seconds if is_active_stage(entry.value.workflow_stage) else None

    def poll(self) -> List[str]:
        """Refetch every cached workflow whose active-stage interval has elapsed. Returns refreshed ids."""
        now = self.clock()
        with self._lock:
            due = [
                workflow_id
                for workflow_id, entry in self._workflows.items()
                if entry.value is not None
                and is_active_stage(entry.value.workflow_stage)
                and (now - entry.fetched_at).total_seconds() >= self.refetch_seconds
            ]
        for workflow_id in due:
            self._fetch(workflow_id)
        return due

    # Invalidation

    def invalidate(self, workflow_id: str) -> None:
        with self._lock:
            self._workflows.pop(workflow_id, None)

    def invalidate_lists(self) -> None:
        with self._lock:
            self._lists.clear()

    def _on_table_change(self, event: ChangeEvent) -> None:
        self.invalidate_lists()
        row = event.new if event.event_type != "DELETE" else event.old
        workflow_id = (row or {}).get("id")
        if not workflow_id:
            return
        now = self.clock()
        with self._lock:
            entry = self._workflows.get(workflow_id)
            if entry is None:
                return
            if event.event_type == "DELETE":
                self._workflows[workflow_id] = _CacheEntry(value=None, fetched_at=now)
                return
            incoming = _row_to_state(event.new)
            if incoming is None:
                return
            # Server rows always replace optimistic values; otherwise last write wins.
            if entry.optimistic or _is_newer_or_equal(incoming, entry.value):
                self._workflows[workflow_id] = _CacheEntry(value=incoming, fetched_at=now)

    # Optimistic writes

    def optimistic_update(self, workflow_id: str, updates: Dict[str, Any], commit: Callable[[], Any]) -> Any:
        """Show ``updates`` immediately, then run the authoritative ``commit``; refetch if it fails."""
        now = self.clock()
        with self._lock:
            entry = self._workflows.get(workflow_id)
            if entry is not None and entry.value is not None:
                merged = entry.value.model_copy(update={**updates, "updated_at": now.isoformat()})
                self._workflows[workflow_id] = _CacheEntry(value=merged, fetched_at=now, optimistic=True)
        try:
            result = commit()
        except Exception:
            self.invalidate(workflow_id)
            raise
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is not None and current.optimistic:
                self._workflows.pop(workflow_id, None)
        return result
