import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from homebase import config
from homebase.errors import (
    NotFoundError,
    PersistenceError,
    ReferenceResolutionError,
    StageRegressionError,
    WorkflowConflictError,
)
from homebase.models import FollowUpAction, Invoice, OrganizationOwner, WorkflowState
from homebase.services.change_feed import ChangeEvent, ChangeFeed, change_feed
from homebase.services.workflow_stages import stage_index

logger = logging.getLogger(__name__)

WORKFLOW_TABLE = "workflow_states"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransitionOutcome:
    workflow: WorkflowState
    created: bool
    previous_stage: Optional[str]


class WorkflowStore:
    """sqlite-backed workflow records plus the reference rows used to attribute them."""

    def __init__(self, db_path: str, feed: Optional[ChangeFeed] = None) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self.feed = feed if feed is not None else change_feed
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS workflow_states (
                        id TEXT PRIMARY KEY,
                        service_request_id TEXT,
                        service_call_id TEXT,
                        quote_id TEXT,
                        booking_id TEXT,
                        invoice_id TEXT,
                        payment_id TEXT,
                        homeowner_id TEXT NOT NULL,
                        provider_org_id TEXT,
                        workflow_stage TEXT NOT NULL,
                        stage_started_at TEXT NOT NULL,
                        stage_completed_at TEXT,
                        homeowner_notified_at TEXT,
                        provider_notified_at TEXT,
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_workflow_states_service_request
                    ON workflow_states (service_request_id)
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS follow_up_actions (
                        id TEXT PRIMARY KEY,
                        homeowner_id TEXT,
                        provider_org_id TEXT,
                        booking_id TEXT,
                        action_type TEXT NOT NULL,
                        scheduled_for TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS quotes (
                        id TEXT PRIMARY KEY,
                        service_request_id TEXT NOT NULL,
                        homeowner_id TEXT,
                        provider_org_id TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        service_request_id TEXT NOT NULL,
                        quote_id TEXT,
                        homeowner_id TEXT,
                        provider_org_id TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS organizations (
                        id TEXT PRIMARY KEY,
                        owner_user_id TEXT NOT NULL,
                        owner_profile_id TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS invoices (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL UNIQUE,
                        status TEXT NOT NULL DEFAULT 'draft',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                self._ensure_column(conn, "workflow_states", "version", "INTEGER NOT NULL DEFAULT 1")
                self._ensure_column(conn, "workflow_states", "metadata_json", "TEXT NOT NULL DEFAULT '{}'")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    @staticmethod
    def _safe_json_object(raw: Any) -> Dict[str, Any]:
        try:
            value = json.loads(raw or "{}")
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}

    def _row_to_workflow(self, row: sqlite3.Row) -> WorkflowState:
        return WorkflowState(
            id=row["id"],
            service_request_id=row["service_request_id"],
            service_call_id=row["service_call_id"],
            quote_id=row["quote_id"],
            booking_id=row["booking_id"],
            invoice_id=row["invoice_id"],
            payment_id=row["payment_id"],
            homeowner_id=row["homeowner_id"],
            provider_org_id=row["provider_org_id"],
            workflow_stage=row["workflow_stage"],
            stage_started_at=row["stage_started_at"],
            stage_completed_at=row["stage_completed_at"],
            homeowner_notified_at=row["homeowner_notified_at"],
            provider_notified_at=row["provider_notified_at"],
            metadata=self._safe_json_object(row["metadata_json"]),
            version=int(row["version"] or 1),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _publish(self, event_type: str, new: Optional[WorkflowState], old: Optional[WorkflowState]) -> None:
        self.feed.publish(
            ChangeEvent(
                table=WORKFLOW_TABLE,
                event_type=event_type,  # type: ignore[arg-type]
                new=new.model_dump() if new else None,
                old=old.model_dump() if old else None,
            )
        )

    # Reference directory

    def register_quote(
        self,
        quote_id: str,
        service_request_id: str,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
    ) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO quotes (id, service_request_id, homeowner_id, provider_org_id)
            VALUES (?, ?, ?, ?)
            """,
            (quote_id, service_request_id, homeowner_id, provider_org_id),
        )

    def register_booking(
        self,
        booking_id: str,
        service_request_id: str,
        quote_id: Optional[str] = None,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
    ) -> None:
        self._write(
            """
            INSERT OR REPLACE INTO bookings (id, service_request_id, quote_id, homeowner_id, provider_org_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (booking_id, service_request_id, quote_id, homeowner_id, provider_org_id),
        )

    def register_organization(self, org_id: str, owner_user_id: str, owner_profile_id: Optional[str] = None) -> None:
        self._write(
            "INSERT OR REPLACE INTO organizations (id, owner_user_id, owner_profile_id) VALUES (?, ?, ?)",
            (org_id, owner_user_id, owner_profile_id),
        )

    def _write(self, sql: str, params: Tuple[Any, ...]) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(sql, params)
                    conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Write failed: {exc}") from exc

    def get_organization_owner(self, org_id: str) -> Optional[OrganizationOwner]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM organizations WHERE id = ?", (org_id,)).fetchone()
        if not row:
            return None
        return OrganizationOwner(org_id=row["id"], user_id=row["owner_user_id"], profile_id=row["owner_profile_id"])

    def resolve_service_request(
        self,
        quote_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """Find the service request an artifact belongs to: quote first, then booking, then invoice."""
        if not (quote_id or booking_id or invoice_id):
            raise ReferenceResolutionError("A quote, booking or invoice id is required to attribute the workflow")

        with self._lock:
            with self._connect() as conn:
                row = None
                if quote_id:
                    row = conn.execute(
                        "SELECT service_request_id, homeowner_id, provider_org_id FROM quotes WHERE id = ?",
                        (quote_id,),
                    ).fetchone()
                elif booking_id:
                    row = conn.execute(
                        "SELECT service_request_id, homeowner_id, provider_org_id FROM bookings WHERE id = ?",
                        (booking_id,),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        SELECT b.service_request_id, b.homeowner_id, b.provider_org_id
                        FROM invoices i
                        JOIN bookings b ON b.id = i.booking_id
                        WHERE i.id = ?
                        """,
                        (invoice_id,),
                    ).fetchone()

        if not row or not row["service_request_id"]:
            label = "quote" if quote_id else "booking" if booking_id else "invoice"
            ref = quote_id or booking_id or invoice_id
            raise ReferenceResolutionError(f"No service request found for {label} {ref}")
        return {
            "service_request_id": row["service_request_id"],
            "homeowner_id": row["homeowner_id"],
            "provider_org_id": row["provider_org_id"],
        }

    # Workflow records

    def get_workflow(self, workflow_id: str) -> WorkflowState:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM workflow_states WHERE id = ?", (workflow_id,)).fetchone()
        if not row:
            raise NotFoundError("Workflow not found")
        return self._row_to_workflow(row)

    def find_by_service_request(self, service_request_id: str) -> Optional[WorkflowState]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT *
                    FROM workflow_states
                    WHERE service_request_id = ?
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (service_request_id,),
                ).fetchone()
        return self._row_to_workflow(row) if row else None

    def list_workflows(
        self,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowState]:
        clauses: List[str] = []
        params: List[Any] = []
        if homeowner_id:
            clauses.append("homeowner_id = ?")
            params.append(homeowner_id)
        if provider_org_id:
            clauses.append("provider_org_id = ?")
            params.append(provider_org_id)
        if stage:
            clauses.append("workflow_stage = ?")
            params.append(stage)
        sql = "SELECT * FROM workflow_states"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_workflow(row) for row in rows]

    def apply_transition(
        self,
        *,
        service_request_id: str,
        next_stage: str,
        action: str,
        homeowner_id: Optional[str],
        provider_org_id: Optional[str],
        refs: Dict[str, Optional[str]],
        metadata: Dict[str, Any],
        complete: bool = False,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Create the workflow for a service request, or move the existing one to ``next_stage``."""
        now_iso = (now or _utcnow()).isoformat()
        completed_at = now_iso if complete else None
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute(
                        "SELECT * FROM workflow_states WHERE service_request_id = ? ORDER BY created_at DESC LIMIT 1",
                        (service_request_id,),
                    ).fetchone()
                    if row is None:
                        if not homeowner_id:
                            raise ReferenceResolutionError("homeowner_id is required to create a workflow")
                        merged = {**metadata, "last_action": action}
                        if complete:
                            merged["completed"] = True
                        workflow_id = f"wf_{uuid4().hex[:12]}"
                        conn.execute(
                            """
                            INSERT INTO workflow_states (
                                id, service_request_id, quote_id, booking_id, invoice_id, homeowner_id,
                                provider_org_id, workflow_stage, stage_started_at, stage_completed_at,
                                metadata_json, version, created_at, updated_at
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                            """,
                            (
                                workflow_id,
                                service_request_id,
                                refs.get("quote_id"),
                                refs.get("booking_id"),
                                refs.get("invoice_id"),
                                homeowner_id,
                                provider_org_id,
                                next_stage,
                                now_iso,
                                completed_at,
                                json.dumps(merged),
                                now_iso,
                                now_iso,
                            ),
                        )
                        conn.commit()
                        created = conn.execute("SELECT * FROM workflow_states WHERE id = ?", (workflow_id,)).fetchone()
                        previous = None
                    else:
                        previous = self._row_to_workflow(row)
                        if stage_index(next_stage) < stage_index(previous.workflow_stage):
                            raise StageRegressionError(previous.workflow_stage, next_stage)
                        merged = {**previous.metadata, **metadata, "last_action": action}
                        if complete:
                            merged["completed"] = True
                        cursor = conn.execute(
                            """
                            UPDATE workflow_states
                            SET workflow_stage = ?,
                                stage_started_at = ?,
                                stage_completed_at = ?,
                                quote_id = COALESCE(?, quote_id),
                                booking_id = COALESCE(?, booking_id),
                                invoice_id = COALESCE(?, invoice_id),
                                provider_org_id = COALESCE(provider_org_id, ?),
                                metadata_json = ?,
                                version = version + 1,
                                updated_at = ?
                            WHERE id = ? AND version = ?
                            """,
                            (
                                next_stage,
                                now_iso,
                                completed_at,
                                refs.get("quote_id"),
                                refs.get("booking_id"),
                                refs.get("invoice_id"),
                                provider_org_id,
                                json.dumps(merged),
                                now_iso,
                                previous.id,
                                previous.version,
                            ),
                        )
                        if cursor.rowcount == 0:
                            raise WorkflowConflictError("Workflow was modified concurrently; retry the action")
                        conn.commit()
                        created = conn.execute("SELECT * FROM workflow_states WHERE id = ?", (previous.id,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise WorkflowConflictError(f"Workflow already exists for service request {service_request_id}") from exc
        except sqlite3.Error as exc:
            raise PersistenceError(f"Workflow write failed: {exc}") from exc

        workflow = self._row_to_workflow(created)
        self._publish("INSERT" if previous is None else "UPDATE", workflow, previous)
        return TransitionOutcome(
            workflow=workflow,
            created=previous is None,
            previous_stage=previous.workflow_stage if previous else None,
        )

    def mark_notified(
        self,
        workflow_id: str,
        audience: str,
        now: Optional[datetime] = None,
        artifact_id: Optional[str] = None,
    ) -> WorkflowState:
        """Stamp ``<audience>_notified_at`` and remember which artifact the audience was told about."""
        if audience not in {"homeowner", "provider"}:
            raise ValueError(f"Unknown audience: {audience}")
        column = f"{audience}_notified_at"
        now_iso = (now or _utcnow()).isoformat()
        try:
            with self._lock:
                with self._connect() as conn:
                    old_row = conn.execute("SELECT * FROM workflow_states WHERE id = ?", (workflow_id,)).fetchone()
                    if not old_row:
                        raise NotFoundError("Workflow not found")
                    metadata = self._safe_json_object(old_row["metadata_json"])
                    notified_refs = dict(metadata.get("notified_refs") or {})
                    notified_refs[audience] = artifact_id
                    metadata["notified_refs"] = notified_refs
                    conn.execute(
                        f"""
                        UPDATE workflow_states
                        SET {column} = ?, metadata_json = ?, version = version + 1, updated_at = ?
                        WHERE id = ?
                        """,
                        (now_iso, json.dumps(metadata), now_iso, workflow_id),
                    )
                    conn.commit()
                    new_row = conn.execute("SELECT * FROM workflow_states WHERE id = ?", (workflow_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Workflow write failed: {exc}") from exc
        workflow = self._row_to_workflow(new_row)
        self._publish("UPDATE", workflow, self._row_to_workflow(old_row))
        return workflow

    # Follow-up actions

    def create_follow_up(
        self,
        *,
        action_type: str,
        scheduled_for: datetime,
        homeowner_id: Optional[str] = None,
        provider_org_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FollowUpAction:
        action = FollowUpAction(
            id=f"fua_{uuid4().hex[:10]}",
            homeowner_id=homeowner_id,
            provider_org_id=provider_org_id,
            booking_id=booking_id,
            action_type=action_type,
            scheduled_for=scheduled_for.isoformat(),
            status="pending",
            created_at=(now or _utcnow()).isoformat(),
        )
        self._write(
            """
            INSERT INTO follow_up_actions (
                id, homeowner_id, provider_org_id, booking_id, action_type, scheduled_for, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action.id,
                action.homeowner_id,
                action.provider_org_id,
                action.booking_id,
                action.action_type,
                action.scheduled_for,
                action.status,
                action.created_at,
            ),
        )
        return action

    def list_follow_ups(self, booking_id: Optional[str] = None, status: Optional[str] = None) -> List[FollowUpAction]:
        clauses: List[str] = []
        params: List[Any] = []
        if booking_id:
            clauses.append("booking_id = ?")
            params.append(booking_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        sql = "SELECT * FROM follow_up_actions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY scheduled_for ASC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        return [
            FollowUpAction(
                id=row["id"],
                homeowner_id=row["homeowner_id"],
                provider_org_id=row["provider_org_id"],
                booking_id=row["booking_id"],
                action_type=row["action_type"],
                scheduled_for=row["scheduled_for"],
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Invoices

    def get_invoice_for_booking(self, booking_id: str) -> Optional[Invoice]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM invoices WHERE booking_id = ?", (booking_id,)).fetchone()
        if not row:
            return None
        return Invoice(id=row["id"], booking_id=row["booking_id"], status=row["status"], created_at=row["created_at"])

    def create_invoice_once(self, booking_id: str) -> Tuple[Invoice, bool]:
        """Return the booking's invoice, creating it if absent. The flag is True when created."""
        try:
            with self._lock:
                with self._connect() as conn:
                    row = conn.execute("SELECT * FROM invoices WHERE booking_id = ?", (booking_id,)).fetchone()
                    created = False
                    if not row:
                        conn.execute(
                            "INSERT INTO invoices (id, booking_id, status, created_at) VALUES (?, ?, 'draft', ?)",
                            (f"inv_{uuid4().hex[:10]}", booking_id, _utcnow().isoformat()),
                        )
                        conn.commit()
                        created = True
                        row = conn.execute("SELECT * FROM invoices WHERE booking_id = ?", (booking_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Invoice write failed: {exc}") from exc
        invoice = Invoice(id=row["id"], booking_id=row["booking_id"], status=row["status"], created_at=row["created_at"])
        return invoice, created

    def count_invoices(self, booking_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) AS total FROM invoices WHERE booking_id = ?", (booking_id,)).fetchone()
        return int(row["total"])


workflow_store = WorkflowStore(db_path=config.DB_PATH)
