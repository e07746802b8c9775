import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from homebase import config
from homebase.errors import NotFoundError, PersistenceError
from homebase.models import (
    ChannelDecision,
    NotificationEvent,
    NotificationPreferences,
    NotificationPreferencesUpdate,
    NotificationRecord,
    OutboxEntry,
)
from homebase.services.change_feed import ChangeEvent, ChangeFeed, change_feed

logger = logging.getLogger(__name__)

PREFERENCE_CATEGORIES = ("announce", "message", "payment", "job", "quote", "review", "booking")
CHANNELS = ("inapp", "push", "email")
ASYNC_CHANNELS = ("push", "email")

_PREFERENCE_FLAG_COLUMNS = [f"{category}_{channel}" for category in PREFERENCE_CATEGORIES for channel in CHANNELS]
_PREFERENCE_TEXT_COLUMNS = ["quiet_hours_start", "quiet_hours_end", "timezone", "contact_email"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _flag_default(column: str) -> int:
    return 1 if column.endswith("_inapp") else 0


class NotificationStore:
    """Notifications, per-role preferences, the delivery outbox and push device tokens."""

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
        flag_columns = ",\n".join(
            f"{column} INTEGER NOT NULL DEFAULT {_flag_default(column)}" for column in _PREFERENCE_FLAG_COLUMNS
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS notification_preferences (
                        user_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        {flag_columns},
                        quiet_hours_start TEXT,
                        quiet_hours_end TEXT,
                        timezone TEXT,
                        contact_email TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, role)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        profile_id TEXT,
                        role TEXT NOT NULL,
                        type TEXT NOT NULL,
                        title TEXT NOT NULL,
                        body TEXT NOT NULL,
                        action_url TEXT,
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        channel_inapp INTEGER NOT NULL DEFAULT 1,
                        channel_push INTEGER NOT NULL DEFAULT 0,
                        channel_email INTEGER NOT NULL DEFAULT 0,
                        delivered_inapp INTEGER NOT NULL DEFAULT 0,
                        delivered_push INTEGER NOT NULL DEFAULT 0,
                        delivered_email INTEGER NOT NULL DEFAULT 0,
                        read_at TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notification_outbox (
                        id TEXT PRIMARY KEY,
                        notification_id TEXT NOT NULL,
                        channel TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        attempts INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT,
                        last_attempt_at TEXT,
                        next_retry_at TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS device_tokens (
                        user_id TEXT NOT NULL,
                        device_token TEXT NOT NULL,
                        platform TEXT NOT NULL DEFAULT 'web',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, device_token)
                    )
                    """
                )
                for column in _PREFERENCE_TEXT_COLUMNS:
                    self._ensure_column(conn, "notification_preferences", column, "TEXT")
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

    def _row_to_preferences(self, row: sqlite3.Row) -> NotificationPreferences:
        values: Dict[str, Any] = {column: bool(row[column]) for column in _PREFERENCE_FLAG_COLUMNS}
        values.update({column: row[column] for column in _PREFERENCE_TEXT_COLUMNS})
        return NotificationPreferences(
            user_id=row["user_id"],
            role=row["role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **values,
        )

    def _row_to_notification(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            profile_id=row["profile_id"],
            role=row["role"],
            type=row["type"],
            title=row["title"],
            body=row["body"],
            action_url=row["action_url"],
            metadata=self._safe_json_object(row["metadata_json"]),
            channel_inapp=bool(row["channel_inapp"]),
            channel_push=bool(row["channel_push"]),
            channel_email=bool(row["channel_email"]),
            delivered_inapp=bool(row["delivered_inapp"]),
            delivered_push=bool(row["delivered_push"]),
            delivered_email=bool(row["delivered_email"]),
            read_at=row["read_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_outbox(row: sqlite3.Row) -> OutboxEntry:
        return OutboxEntry(
            id=row["id"],
            notification_id=row["notification_id"],
            channel=row["channel"],
            status=row["status"],
            attempts=int(row["attempts"]),
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            next_retry_at=row["next_retry_at"],
            created_at=row["created_at"],
        )

    # Preferences

    def get_preferences(self, user_id: str, role: str) -> Optional[NotificationPreferences]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM notification_preferences WHERE user_id = ? AND role = ?",
                    (user_id, role),
                ).fetchone()
        return self._row_to_preferences(row) if row else None

    def get_or_create_preferences(self, user_id: str, role: str) -> NotificationPreferences:
        """Return the (user, role) preference row, inserting the defaults on first use."""
        now_iso = _utcnow().isoformat()
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO notification_preferences (user_id, role, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (user_id, role, now_iso, now_iso),
                    )
                    conn.commit()
                    row = conn.execute(
                        "SELECT * FROM notification_preferences WHERE user_id = ? AND role = ?",
                        (user_id, role),
                    ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Preference write failed: {exc}") from exc
        return self._row_to_preferences(row)

    def update_preferences(self, update: NotificationPreferencesUpdate) -> NotificationPreferences:
        self.get_or_create_preferences(update.user_id, update.role)
        changes = update.model_dump(exclude_unset=True, exclude={"user_id", "role"})
        changes = {key: value for key, value in changes.items() if key in _PREFERENCE_FLAG_COLUMNS or key in _PREFERENCE_TEXT_COLUMNS}
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            params: List[Any] = [int(value) if isinstance(value, bool) else value for value in changes.values()]
            params.extend([_utcnow().isoformat(), update.user_id, update.role])
            try:
                with self._lock:
                    with self._connect() as conn:
                        conn.execute(
                            f"UPDATE notification_preferences SET {assignments}, updated_at = ? WHERE user_id = ? AND role = ?",
                            tuple(params),
                        )
                        conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Preference write failed: {exc}") from exc
        preferences = self.get_preferences(update.user_id, update.role)
        if preferences is None:
            raise PersistenceError(f"Preferences for {update.user_id} ({update.role}) were not saved")
        return preferences

    # Notifications

    def create_notification(
        self,
        event: NotificationEvent,
        channels: ChannelDecision,
        now: Optional[datetime] = None,
    ) -> NotificationRecord:
        """Persist a notification with its channel decision; in-app delivery is recorded immediately."""
        notification_id = f"ntf_{uuid4().hex[:12]}"
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO notifications (
                            id, user_id, profile_id, role, type, title, body, action_url, metadata_json,
                            channel_inapp, channel_push, channel_email,
                            delivered_inapp, delivered_push, delivered_email, read_at, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, NULL, ?)
                        """,
                        (
                            notification_id,
                            event.user_id,
                            event.profile_id,
                            event.role,
                            event.type,
                            event.title,
                            event.body,
                            event.action_url,
                            json.dumps(event.metadata or {}),
                            int(channels.inapp),
                            int(channels.push),
                            int(channels.email),
                            int(channels.inapp),
                            (now or _utcnow()).isoformat(),
                        ),
                    )
                    conn.commit()
                    row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Notification write failed: {exc}") from exc
        record = self._row_to_notification(row)
        self.feed.publish(ChangeEvent(table="notifications", event_type="INSERT", new=record.model_dump()))
        return record

    def get_notification(self, notification_id: str) -> NotificationRecord:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        if not row:
            raise NotFoundError("Notification not found")
        return self._row_to_notification(row)

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND read_at IS NULL"
        sql += " ORDER BY created_at DESC LIMIT 100"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, (user_id,)).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def count_unread(self, user_id: str, role: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS total FROM notifications WHERE user_id = ? AND read_at IS NULL"
        params: List[Any] = [user_id]
        if role:
            sql += " AND role = ?"
            params.append(role)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["total"])

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE notifications SET read_at = COALESCE(read_at, ?) WHERE id = ? AND user_id = ?",
                    (_utcnow().isoformat(), notification_id, user_id),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return self._row_to_notification(row)

    # Outbox

    def enqueue_outbox(self, notification_id: str, channels: List[str]) -> List[OutboxEntry]:
        now_iso = _utcnow().isoformat()
        entries = [
            OutboxEntry(
                id=f"obx_{uuid4().hex[:12]}",
                notification_id=notification_id,
                channel=channel,  # type: ignore[arg-type]
                status="pending",
                created_at=now_iso,
            )
            for channel in channels
            if channel in ASYNC_CHANNELS
        ]
        if not entries:
            return []
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.executemany(
                        """
                        INSERT INTO notification_outbox (id, notification_id, channel, status, attempts, created_at)
                        VALUES (?, ?, ?, 'pending', 0, ?)
                        """,
                        [(entry.id, entry.notification_id, entry.channel, entry.created_at) for entry in entries],
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Outbox write failed: {exc}") from exc
        return entries

    def list_outbox(self, notification_id: Optional[str] = None) -> List[OutboxEntry]:
        sql = "SELECT * FROM notification_outbox"
        params: Tuple[Any, ...] = ()
        if notification_id:
            sql += " WHERE notification_id = ?"
            params = (notification_id,)
        sql += " ORDER BY created_at ASC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [self._row_to_outbox(row) for row in rows]

    def pending_outbox(
        self,
        max_attempts: int,
        notification_id: Optional[str] = None,
        due_before: Optional[str] = None,
    ) -> List[Tuple[OutboxEntry, NotificationRecord]]:
        sql = """
            SELECT o.id AS outbox_id, o.notification_id, o.channel, o.status, o.attempts, o.last_error,
                   o.last_attempt_at, o.next_retry_at, o.created_at AS outbox_created_at, n.*
            FROM notification_outbox o
            JOIN notifications n ON n.id = o.notification_id
            WHERE o.status = 'pending' AND o.attempts < ?
        """
        params: List[Any] = [max_attempts]
        if notification_id:
            sql += " AND o.notification_id = ?"
            params.append(notification_id)
        if due_before:
            sql += " AND (o.next_retry_at IS NULL OR o.next_retry_at <= ?)"
            params.append(due_before)
        sql += " ORDER BY o.created_at ASC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        items: List[Tuple[OutboxEntry, NotificationRecord]] = []
        for row in rows:
            entry = OutboxEntry(
                id=row["outbox_id"],
                notification_id=row["notification_id"],
                channel=row["channel"],
                status=row["status"],
                attempts=int(row["attempts"]),
                last_error=row["last_error"],
                last_attempt_at=row["last_attempt_at"],
                next_retry_at=row["next_retry_at"],
                created_at=row["outbox_created_at"],
            )
            items.append((entry, self._row_to_notification(row)))
        return items

    def mark_outbox_sent(self, entry: OutboxEntry, now: Optional[datetime] = None) -> None:
        now_iso = (now or _utcnow()).isoformat()
        delivered_column = f"delivered_{entry.channel}"
        channel_column = f"channel_{entry.channel}"
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        "UPDATE notification_outbox SET status = 'sent', last_attempt_at = ? WHERE id = ?",
                        (now_iso, entry.id),
                    )
                    # Delivery is only recorded for channels that were enabled at dispatch.
                    conn.execute(
                        f"UPDATE notifications SET {delivered_column} = 1 WHERE id = ? AND {channel_column} = 1",
                        (entry.notification_id,),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Outbox write failed: {exc}") from exc

    def record_outbox_failure(
        self,
        entry: OutboxEntry,
        error: str,
        attempts: int,
        status: str,
        next_retry_at: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        try:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        UPDATE notification_outbox
                        SET attempts = ?, last_error = ?, last_attempt_at = ?, next_retry_at = ?, status = ?
                        WHERE id = ?
                        """,
                        (attempts, error[:500], (now or _utcnow()).isoformat(), next_retry_at, status, entry.id),
                    )
                    conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Outbox write failed: {exc}") from exc

    # Device tokens

    def register_device_token(self, user_id: str, device_token: str, platform: str = "web") -> None:
        token = device_token.strip()
        if not token:
            return
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO device_tokens (user_id, device_token, platform, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, token, platform, _utcnow().isoformat()),
                )
                conn.commit()

    def list_device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT device_token FROM device_tokens WHERE user_id = ? ORDER BY created_at ASC",
                    (user_id,),
                ).fetchall()
        return [str(row["device_token"]) for row in rows]

    def remove_device_tokens(self, user_id: str, tokens: List[str]) -> None:
        if not tokens:
            return
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM device_tokens WHERE user_id = ? AND device_token = ?",
                    [(user_id, token) for token in tokens],
                )
                conn.commit()

    # Health

    def outbox_summary(self, limit: int = 1000) -> Dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT status, channel, attempts FROM notification_outbox ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        summary: Dict[str, Any] = {
            "pending": 0,
            "sent": 0,
            "failed": 0,
            "by_channel": {channel: {"pending": 0, "sent": 0, "failed": 0} for channel in ASYNC_CHANNELS},
            "high_attempts": 0,
        }
        for row in rows:
            status = str(row["status"])
            channel = str(row["channel"])
            if status in {"pending", "sent", "failed"}:
                summary[status] += 1
                if channel in summary["by_channel"]:
                    summary["by_channel"][channel][status] += 1
            if int(row["attempts"]) >= 3:
                summary["high_attempts"] += 1
        return summary

    def delivery_summary(self, since: datetime) -> Dict[str, Any]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS total,
                           COALESCE(SUM(delivered_inapp), 0) AS inapp,
                           COALESCE(SUM(delivered_push), 0) AS push,
                           COALESCE(SUM(delivered_email), 0) AS email
                    FROM notifications
                    WHERE created_at >= ?
                    """,
                    (since.isoformat(),),
                ).fetchone()
        return {
            "total": int(row["total"]),
            "delivered": {"inapp": int(row["inapp"]), "push": int(row["push"]), "email": int(row["email"])},
        }


notification_store = NotificationStore(db_path=config.DB_PATH)
