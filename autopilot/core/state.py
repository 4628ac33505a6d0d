"""Durable SQLite task store.

Tasks are stored as JSON documents with an optimistic ``version``
column: every save must name the version it read, so two writers racing
on one task cannot silently overwrite each other. Status changes append
to ``task_events`` in the same transaction as the task update.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from autopilot.core.errors import ConcurrentModification, TaskNotFound
from autopilot.core.models import AuditLogEntry, Snapshot, Task, TaskStatus

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events in a task's history."""

    TASK_CREATED = "task_created"
    STATUS_CHANGED = "status_changed"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    ROLLED_BACK = "rolled_back"
    RECOVERED = "recovered"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Enum and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class TaskEvent(BaseModel):
    """Immutable entry in a task's history."""

    id: int | None = None
    task_id: str
    event_type: EventType
    from_status: TaskStatus | None = None
    to_status: TaskStatus | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite persistence for tasks, task events, audit entries and snapshots."""

    SCHEMA = """
    -- Task documents (optimistically versioned)
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        status TEXT NOT NULL,
        data JSON NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Task history (append-only)
    CREATE TABLE IF NOT EXISTS task_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL REFERENCES tasks(id),
        event_type TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Tool layer audit trail (append-only)
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TIMESTAMP NOT NULL,
        operation TEXT NOT NULL,
        details TEXT,
        success BOOLEAN NOT NULL
    );

    -- Pre-mutation file snapshots for rollback
    CREATE TABLE IF NOT EXISTS snapshots (
        id TEXT PRIMARY KEY,
        task_id TEXT,
        data JSON NOT NULL,
        created_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner);
    CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
    CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id);
    CREATE INDEX IF NOT EXISTS idx_snapshots_task ON snapshots(task_id);
    """

    def __init__(self, db_path: str | Path = ".autopilot/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Tasks ---

    def create_task(self, task: Task) -> Task:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (id, owner, status, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.owner,
                    task.status.value,
                    task.model_dump_json(),
                    task.version,
                    task.created_at.isoformat(),
                    task.updated_at.isoformat(),
                ),
            )
            self._insert_event(
                conn,
                TaskEvent(
                    task_id=task.id,
                    event_type=EventType.TASK_CREATED,
                    to_status=task.status,
                    payload={"owner": task.owner, "auto_approve": task.auto_approve},
                ),
            )
        return task

    def _update_task(self, conn: sqlite3.Connection, task: Task) -> Task:
        """Write ``task`` if its version is still current; returns the new revision.

        Raises:
            ConcurrentModification: Someone saved the task since it was read.
        """
        updated = task.model_copy(update={"version": task.version + 1, "updated_at": _utc_now()})
        cursor = conn.execute(
            """
            UPDATE tasks
            SET status = ?, data = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                updated.status.value,
                updated.model_dump_json(),
                updated.version,
                updated.updated_at.isoformat(),
                task.id,
                task.version,
            ),
        )
        if cursor.rowcount == 0:
            exists = conn.execute("SELECT version FROM tasks WHERE id = ?", (task.id,)).fetchone()
            if exists is None:
                raise TaskNotFound(f"Task not found: {task.id}")
            raise ConcurrentModification(
                f"Task {task.id} was modified concurrently "
                f"(expected version {task.version}, found {exists['version']})"
            )
        return updated

    def transition(
        self,
        task: Task,
        to_status: TaskStatus,
        event_type: EventType = EventType.STATUS_CHANGED,
        payload: dict[str, Any] | None = None,
        **updates: Any,
    ) -> Task:
        """Change status (plus any field ``updates``) and log the event atomically."""
        changed = task.model_copy(update={"status": to_status, **updates})
        with self._connect() as conn:
            saved = self._update_task(conn, changed)
            self._insert_event(
                conn,
                TaskEvent(
                    task_id=task.id,
                    event_type=event_type,
                    from_status=task.status,
                    to_status=to_status,
                    payload=payload or {},
                ),
            )
        logger.info(f"Task {task.id}: {task.status.value} -> {to_status.value}")
        return saved

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data, version FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        task = Task.model_validate_json(row["data"])
        task.version = row["version"]
        return task

    def list_tasks(
        self, owner: str | None = None, statuses: list[TaskStatus] | None = None
    ) -> list[Task]:
        query = "SELECT data, version FROM tasks"
        clauses, params = [], []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if statuses:
            clauses.append(f"status IN ({','.join('?' * len(statuses))})")
            params.extend(s.value for s in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        tasks = []
        for row in rows:
            task = Task.model_validate_json(row["data"])
            task.version = row["version"]
            tasks.append(task)
        return tasks

    # --- Events ---

    def _insert_event(self, conn: sqlite3.Connection, event: TaskEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO task_events (task_id, event_type, from_status, to_status, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.task_id,
                event.event_type.value,
                event.from_status.value if event.from_status else None,
                event.to_status.value if event.to_status else None,
                _safe_json_dumps(event.payload),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    def get_events(self, task_id: str) -> list[TaskEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_events WHERE task_id = ? ORDER BY id", (task_id,)
            ).fetchall()
        return [
            TaskEvent(
                id=row["id"],
                task_id=row["task_id"],
                event_type=EventType(row["event_type"]),
                from_status=TaskStatus(row["from_status"]) if row["from_status"] else None,
                to_status=TaskStatus(row["to_status"]) if row["to_status"] else None,
                payload=json.loads(row["payload"]) if row["payload"] else {},
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    # --- Audit ---

    def record_audit(self, entry: AuditLogEntry) -> None:
        """AuditLog sink: persist one entry."""
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_log (timestamp, operation, details, success) VALUES (?, ?, ?, ?)",
                (entry.timestamp.isoformat(), entry.operation, entry.details, entry.success),
            )

    def get_audit_log(self, limit: int = 100, operation: str | None = None) -> list[AuditLogEntry]:
        """Most recent entries, oldest first."""
        query = "SELECT * FROM audit_log"
        params: list[Any] = []
        if operation:
            query += " WHERE operation = ?"
            params.append(operation)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AuditLogEntry(
                timestamp=datetime.fromisoformat(row["timestamp"]),
                operation=row["operation"],
                details=row["details"] or "",
                success=bool(row["success"]),
            )
            for row in reversed(rows)
        ]

    # --- Snapshots ---

    def save_snapshot(self, snapshot: Snapshot) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO snapshots (id, task_id, data, created_at) VALUES (?, ?, ?, ?)",
                (
                    snapshot.id,
                    snapshot.task_id,
                    snapshot.model_dump_json(),
                    snapshot.created_at.isoformat(),
                ),
            )

    def load_snapshot(self, snapshot_id: str) -> Snapshot | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM snapshots WHERE id = ?", (snapshot_id,)).fetchone()
        if row is None:
            return None
        return Snapshot.model_validate_json(row["data"])

    def latest_snapshot_for_task(self, task_id: str) -> Snapshot | None:
        """Most recent snapshot recorded for ``task_id``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM snapshots WHERE task_id = ? ORDER BY created_at DESC LIMIT 1",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return Snapshot.model_validate_json(row["data"])
