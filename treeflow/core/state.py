"""Event-sourced persistence for workflows, steps and worktrees.

Every state change is appended to ``events`` and never rewritten. The
``workflows``, ``steps`` and ``worktrees`` tables are projections folded
from that log as each event arrives.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from treeflow.core.models import (
    StepStatus,
    Worktree,
    WorktreeStatus,
    WorkflowStatus,
    _utc_now,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of state change recorded in the log."""

    # Workflow events
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"

    # Step events
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRIED = "step_retried"
    STEP_SKIPPED = "step_skipped"
    STEP_CANCELLED = "step_cancelled"

    # Worktree lifecycle
    WORKTREE_CREATED = "worktree_created"
    WORKTREE_REMOVED = "worktree_removed"
    WORKTREE_STALE = "worktree_stale"

    # Integration
    MERGE_COMPLETED = "merge_completed"
    MERGE_CONFLICTS = "merge_conflicts"
    MERGE_ABORTED = "merge_aborted"


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """One appended state change. Never updated after insert."""

    id: int | None = None
    workflow_id: str | None = None
    event_type: EventType
    step_id: str | None = None
    worktree_path: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class WorkflowRecord(BaseModel):
    """Persisted view of a workflow (projection row)."""

    id: str
    name: str
    status: WorkflowStatus
    branch: str | None = None
    worktree_path: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


class StepRecord(BaseModel):
    """Persisted view of a step (projection row)."""

    workflow_id: str
    id: str
    status: StepStatus
    attempts: int = 0
    exit_code: int | None = None
    error: str | None = None
    output: str | None = None


class Database:
    """SQLite database with event sourcing for workflow and worktree state."""

    SCHEMA = """
    -- Append-only log
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workflow_id TEXT,
        event_type TEXT NOT NULL,
        step_id TEXT,
        worktree_path TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Projection: latest workflow state
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        branch TEXT,
        worktree_path TEXT,
        error TEXT,
        started_at TIMESTAMP,
        ended_at TIMESTAMP,
        updated_by_event_id INTEGER DEFAULT 0  -- Last event applied; older events are ignored
    );

    -- Projection: latest step state
    CREATE TABLE IF NOT EXISTS steps (
        workflow_id TEXT NOT NULL,
        id TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER DEFAULT 0,
        exit_code INTEGER,
        error TEXT,
        output TEXT,
        updated_by_event_id INTEGER DEFAULT 0,
        PRIMARY KEY (workflow_id, id),
        FOREIGN KEY (workflow_id) REFERENCES workflows(id)
    );

    -- Worktree registry (projection), read back on restart
    CREATE TABLE IF NOT EXISTS worktrees (
        path TEXT PRIMARY KEY,
        branch TEXT NOT NULL,
        base_ref TEXT NOT NULL,
        base_commit TEXT NOT NULL,
        target_branch TEXT,
        status TEXT NOT NULL,
        created_at TIMESTAMP,
        updated_by_event_id INTEGER DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_events_workflow ON events(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    CREATE INDEX IF NOT EXISTS idx_steps_workflow ON steps(workflow_id);
    """

    def __init__(self, db_path: str | Path = ".treeflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if missing. WAL lets readers run alongside the executor's writes."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection that commits on success and rolls back on error.

        Concurrent writers wait up to 30s for the lock before failing.
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
                    f"State database {self.db_path} still locked after 30s: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Event Sourcing ---

    def append_event(self, event: Event) -> int:
        """Store event, then fold it into the projections. Returns the event id.

        The event insert commits on its own so it is never lost when a
        projection update fails; projections carry updated_by_event_id and
        only accept updates from newer events.
        """
        payload_json = _safe_json_dumps(event.payload)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (workflow_id, event_type, step_id, worktree_path,
                                    status, payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.workflow_id,
                    event.event_type.value,
                    event.step_id,
                    event.worktree_path,
                    event.status,
                    payload_json,
                    event.timestamp.isoformat(),
                ),
            )
            event_id = cursor.lastrowid

        # Projections read the payload as stored, so models arrive as plain dicts
        stored = event.model_copy(update={"payload": json.loads(payload_json)})
        try:
            with self._connect() as conn:
                self._update_projections(conn, stored, event_id)
        except sqlite3.Error as e:
            logger.warning(
                f"Projection update failed for event {event_id} "
                f"({event.event_type.value}): {e}. Event is recorded."
            )

        return event_id  # type: ignore[return-value]

    def _update_projections(self, conn: sqlite3.Connection, event: Event, event_id: int) -> None:
        """Update read models based on event.

        Updates only apply if event_id > the row's current updated_by_event_id.
        """
        payload = event.payload
        ts = event.timestamp.isoformat()

        match event.event_type:
            case EventType.WORKFLOW_STARTED:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO workflows
                    (id, name, status, branch, worktree_path, started_at, updated_by_event_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.workflow_id,
                        payload.get("name", ""),
                        WorkflowStatus.RUNNING.value,
                        payload.get("branch"),
                        event.worktree_path,
                        ts,
                        event_id,
                    ),
                )
                conn.execute(
                    """
                    UPDATE workflows SET status = ?, worktree_path = ?, started_at = ?,
                        updated_by_event_id = ?
                    WHERE id = ? AND updated_by_event_id < ?
                    """,
                    (
                        WorkflowStatus.RUNNING.value,
                        event.worktree_path,
                        ts,
                        event_id,
                        event.workflow_id,
                        event_id,
                    ),
                )
                for step_id in payload.get("steps", []):
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO steps
                        (workflow_id, id, status, updated_by_event_id)
                        VALUES (?, ?, ?, ?)
                        """,
                        (event.workflow_id, step_id, StepStatus.PENDING.value, event_id),
                    )

            case (
                EventType.WORKFLOW_COMPLETED
                | EventType.WORKFLOW_FAILED
                | EventType.WORKFLOW_CANCELLED
            ):
                status = {
                    EventType.WORKFLOW_COMPLETED: WorkflowStatus.COMPLETED,
                    EventType.WORKFLOW_FAILED: WorkflowStatus.FAILED,
                    EventType.WORKFLOW_CANCELLED: WorkflowStatus.CANCELLED,
                }[event.event_type]
                conn.execute(
                    """
                    UPDATE workflows SET status = ?, error = ?, ended_at = ?,
                        updated_by_event_id = ?
                    WHERE id = ? AND updated_by_event_id < ?
                    """,
                    (
                        status.value,
                        payload.get("error"),
                        ts,
                        event_id,
                        event.workflow_id,
                        event_id,
                    ),
                )

            case EventType.STEP_STARTED:
                self._update_step(
                    conn,
                    event,
                    event_id,
                    StepStatus.RUNNING,
                    attempts=payload.get("attempt", 1),
                )

            case EventType.STEP_COMPLETED:
                self._update_step(
                    conn,
                    event,
                    event_id,
                    StepStatus.COMPLETED,
                    exit_code=payload.get("exit_code"),
                    output=payload.get("output"),
                    error=None,
                )

            case EventType.STEP_FAILED:
                self._update_step(
                    conn,
                    event,
                    event_id,
                    StepStatus.FAILED,
                    exit_code=payload.get("exit_code"),
                    output=payload.get("output"),
                    error=payload.get("error"),
                )

            case EventType.STEP_SKIPPED:
                self._update_step(
                    conn, event, event_id, StepStatus.SKIPPED, error=payload.get("error")
                )

            case EventType.STEP_CANCELLED:
                self._update_step(
                    conn, event, event_id, StepStatus.CANCELLED, error=payload.get("error")
                )

            case EventType.WORKTREE_CREATED:
                wt = payload["worktree"]
                conn.execute(
                    """
                    INSERT INTO worktrees
                    (path, branch, base_ref, base_commit, target_branch, status,
                     created_at, updated_by_event_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        branch = excluded.branch,
                        base_ref = excluded.base_ref,
                        base_commit = excluded.base_commit,
                        target_branch = excluded.target_branch,
                        status = excluded.status,
                        created_at = excluded.created_at,
                        updated_by_event_id = excluded.updated_by_event_id
                    WHERE worktrees.updated_by_event_id < excluded.updated_by_event_id
                    """,
                    (
                        wt["path"],
                        wt["branch"],
                        wt["base_ref"],
                        wt["base_commit"],
                        wt.get("target_branch"),
                        WorktreeStatus.ACTIVE.value,
                        wt.get("created_at"),
                        event_id,
                    ),
                )

            case EventType.WORKTREE_REMOVED | EventType.WORKTREE_STALE:
                status = (
                    WorktreeStatus.REMOVED
                    if event.event_type == EventType.WORKTREE_REMOVED
                    else WorktreeStatus.STALE
                )
                conn.execute(
                    """
                    UPDATE worktrees SET status = ?, updated_by_event_id = ?
                    WHERE path = ? AND updated_by_event_id < ?
                    """,
                    (status.value, event_id, event.worktree_path, event_id),
                )

            case _:
                # Retry and merge events live only in the log
                pass

    def _update_step(
        self,
        conn: sqlite3.Connection,
        event: Event,
        event_id: int,
        status: StepStatus,
        **fields: Any,
    ) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO steps (workflow_id, id, status, updated_by_event_id)
            VALUES (?, ?, ?, 0)
            """,
            (event.workflow_id, event.step_id, status.value),
        )
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = list(fields.values())
        sql = "UPDATE steps SET status = ?, updated_by_event_id = ?"
        if assignments:
            sql += f", {assignments}"
        sql += " WHERE workflow_id = ? AND id = ? AND updated_by_event_id < ?"
        conn.execute(
            sql,
            [status.value, event_id, *values, event.workflow_id, event.step_id, event_id],
        )

    # --- Query Methods ---

    def get_events(
        self, workflow_id: str, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Events of one workflow in append order, optionally only the given types."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE workflow_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [workflow_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE workflow_id = ? ORDER BY id",
                    (workflow_id,),
                ).fetchall()

            return [self._row_to_event(row) for row in rows]

    def get_worktree_events(self, path: str) -> list[Event]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE worktree_path = ? ORDER BY id", (path,)
            ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            workflow_id=row["workflow_id"],
            event_type=EventType(row["event_type"]),
            step_id=row["step_id"],
            worktree_path=row["worktree_path"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_workflow(row)

    def list_workflows(self, limit: int = 50) -> list[WorkflowRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflows ORDER BY started_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_workflow(row) for row in rows]

    def _row_to_workflow(self, row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            id=row["id"],
            name=row["name"],
            status=WorkflowStatus(row["status"]),
            branch=row["branch"],
            worktree_path=row["worktree_path"],
            error=row["error"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
        )

    def get_steps(self, workflow_id: str) -> list[StepRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM steps WHERE workflow_id = ? ORDER BY rowid",
                (workflow_id,),
            ).fetchall()
            return [
                StepRecord(
                    workflow_id=row["workflow_id"],
                    id=row["id"],
                    status=StepStatus(row["status"]),
                    attempts=row["attempts"] or 0,
                    exit_code=row["exit_code"],
                    error=row["error"],
                    output=row["output"],
                )
                for row in rows
            ]

    def load_worktrees(self, include_removed: bool = False) -> list[Worktree]:
        """Worktrees known to the registry projection, oldest first."""
        with self._connect() as conn:
            if include_removed:
                rows = conn.execute("SELECT * FROM worktrees ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM worktrees WHERE status != ? ORDER BY created_at",
                    (WorktreeStatus.REMOVED.value,),
                ).fetchall()
            return [
                Worktree(
                    path=Path(row["path"]),
                    branch=row["branch"],
                    base_ref=row["base_ref"],
                    base_commit=row["base_commit"],
                    target_branch=row["target_branch"],
                    status=WorktreeStatus(row["status"]),
                    created_at=row["created_at"] or _utc_now(),
                )
                for row in rows
            ]
