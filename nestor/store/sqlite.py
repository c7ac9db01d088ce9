"""SQLite storage for groups, scheduled tasks, checkpoints and contacts."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from nestor.core.errors import StoreError
from nestor.core.secure_io import secure_mkdir
from nestor.core.types import AdditionalMount, Group
from nestor.scheduler.types import ScheduledTask, ScheduleKind, TaskStatus
from nestor.store.interface import ContactStatus, SessionCheckpoint

logger = logging.getLogger(__name__)

# Schema version for future migrations
SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS groups (
    group_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    folder TEXT NOT NULL UNIQUE,
    requires_trigger INTEGER NOT NULL DEFAULT 1,
    additional_mounts TEXT,
    added_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_kind TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    next_run TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_run TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    is_heartbeat INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS session_checkpoints (
    group_id TEXT PRIMARY KEY,
    cursor TEXT,
    continuity TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contacts (
    contact_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_due ON scheduled_tasks(status, next_run);
CREATE INDEX IF NOT EXISTS idx_tasks_group ON scheduled_tasks(group_id);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _task_from_row(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        group_id=row["group_id"],
        prompt=row["prompt"],
        schedule_kind=ScheduleKind(row["schedule_kind"]),
        schedule_value=row["schedule_value"],
        next_run=_parse_ts(row["next_run"]),
        status=TaskStatus(row["status"]),
        last_run=_parse_ts(row["last_run"]),
        last_error=row["last_error"],
        created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        is_heartbeat=bool(row["is_heartbeat"]),
    )


def _group_from_row(row: sqlite3.Row) -> Group:
    mounts_raw = json.loads(row["additional_mounts"]) if row["additional_mounts"] else []
    return Group(
        group_id=row["group_id"],
        name=row["name"],
        folder=row["folder"],
        requires_trigger=bool(row["requires_trigger"]),
        additional_mounts=tuple(AdditionalMount.from_dict(m) for m in mounts_raw),
        added_at=_parse_ts(row["added_at"]) or datetime.now(timezone.utc),
    )


class SqliteStore:
    """SQLite implementation of the Store protocol.

    The connection is shared across worker threads (asyncio.to_thread), so
    every operation runs under a lock.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize storage with database path.

        Creates the database and schema if they don't exist.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                secure_mkdir(self.db_path.parent)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _ensure_schema(self) -> None:
        """Create schema if needed."""
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                conn.executescript(SCHEMA)
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )
                conn.commit()
            else:
                cursor = conn.execute("SELECT version FROM schema_version")
                row = cursor.fetchone()
                if row and row[0] < SCHEMA_VERSION:
                    self._migrate(row[0], SCHEMA_VERSION)

    def _migrate(self, from_version: int, to_version: int) -> None:
        """Run migrations between versions."""
        conn = self._get_conn()

        if from_version < 2 <= to_version:
            # Migration 1 -> 2: heartbeat flag on tasks
            conn.execute(
                "ALTER TABLE scheduled_tasks ADD COLUMN is_heartbeat INTEGER NOT NULL DEFAULT 0"
            )
            conn.execute(
                "UPDATE scheduled_tasks SET is_heartbeat = 1 WHERE id LIKE 'heartbeat-%'"
            )
            conn.execute("UPDATE schema_version SET version = ?", (2,))
            conn.commit()
            logger.info("Migrated store %s to schema version 2", self.db_path)

    def _write(self, sql: str, params: tuple[object, ...]) -> None:
        with self._lock:
            try:
                conn = self._get_conn()
                conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Store write failed: {e}") from e

    def _read(self, sql: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._get_conn().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Store read failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # === Groups ===

    def upsert_group(self, group: Group) -> None:
        mounts = json.dumps([m.to_dict() for m in group.additional_mounts])
        self._write(
            """
            INSERT INTO groups (group_id, name, folder, requires_trigger, additional_mounts, added_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(group_id) DO UPDATE SET
                name = excluded.name,
                folder = excluded.folder,
                requires_trigger = excluded.requires_trigger,
                additional_mounts = excluded.additional_mounts
            """,
            (
                group.group_id,
                group.name,
                group.folder,
                int(group.requires_trigger),
                mounts,
                _ts(group.added_at),
            ),
        )

    def get_groups(self) -> list[Group]:
        rows = self._read("SELECT * FROM groups ORDER BY added_at")
        return [_group_from_row(row) for row in rows]

    # === Scheduled tasks ===

    def create_task(self, task: ScheduledTask) -> None:
        self._write(
            """
            INSERT INTO scheduled_tasks
            (id, group_id, prompt, schedule_kind, schedule_value, next_run, status,
             last_run, last_error, created_at, is_heartbeat)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.group_id,
                task.prompt,
                task.schedule_kind.value,
                task.schedule_value,
                _ts(task.next_run),
                task.status.value,
                _ts(task.last_run),
                task.last_error,
                _ts(task.created_at),
                int(task.is_heartbeat),
            ),
        )

    def get_task(self, task_id: str) -> ScheduledTask | None:
        rows = self._read("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
        return _task_from_row(rows[0]) if rows else None

    def list_tasks(self, group_id: str | None = None) -> list[ScheduledTask]:
        if group_id is None:
            rows = self._read("SELECT * FROM scheduled_tasks ORDER BY created_at")
        else:
            rows = self._read(
                "SELECT * FROM scheduled_tasks WHERE group_id = ? ORDER BY created_at",
                (group_id,),
            )
        return [_task_from_row(row) for row in rows]

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        # ISO-8601 UTC strings sort chronologically
        rows = self._read(
            """
            SELECT * FROM scheduled_tasks
            WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
            ORDER BY next_run
            """,
            (_ts(now),),
        )
        return [_task_from_row(row) for row in rows]

    def update_task(self, task: ScheduledTask) -> None:
        self._write(
            """
            UPDATE scheduled_tasks SET
                prompt = ?, schedule_kind = ?, schedule_value = ?, next_run = ?,
                status = ?, last_run = ?, last_error = ?
            WHERE id = ?
            """,
            (
                task.prompt,
                task.schedule_kind.value,
                task.schedule_value,
                _ts(task.next_run),
                task.status.value,
                _ts(task.last_run),
                task.last_error,
                task.id,
            ),
        )

    # === Session checkpoints ===

    def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        self._write(
            """
            INSERT INTO session_checkpoints (group_id, cursor, continuity, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(group_id) DO UPDATE SET
                cursor = COALESCE(excluded.cursor, session_checkpoints.cursor),
                continuity = COALESCE(excluded.continuity, session_checkpoints.continuity),
                updated_at = excluded.updated_at
            """,
            (
                checkpoint.group_id,
                checkpoint.cursor,
                checkpoint.continuity,
                _ts(checkpoint.updated_at),
            ),
        )

    def get_checkpoint(self, group_id: str) -> SessionCheckpoint | None:
        rows = self._read(
            "SELECT * FROM session_checkpoints WHERE group_id = ?", (group_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return SessionCheckpoint(
            group_id=row["group_id"],
            cursor=row["cursor"],
            continuity=row["continuity"],
            updated_at=_parse_ts(row["updated_at"]) or datetime.now(timezone.utc),
        )

    # === Contacts ===

    def set_contact_status(self, contact_id: str, status: ContactStatus) -> None:
        self._write(
            """
            INSERT INTO contacts (contact_id, status, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(contact_id) DO UPDATE SET
                status = excluded.status, updated_at = excluded.updated_at
            """,
            (contact_id, status.value, _ts(datetime.now(timezone.utc))),
        )

    def get_contact_status(self, contact_id: str) -> ContactStatus | None:
        rows = self._read("SELECT status FROM contacts WHERE contact_id = ?", (contact_id,))
        return ContactStatus(rows[0]["status"]) if rows else None
