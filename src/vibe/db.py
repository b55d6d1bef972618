from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from vibe.config import get_config
from vibe.models import Task, TaskStatus

SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'backlog',
    linear_issue_id TEXT,
    pr_url TEXT,
    pr_status TEXT,
    pr_is_draft INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
"""

_UPDATABLE = {
    "title",
    "description",
    "status",
    "linear_issue_id",
    "pr_url",
    "pr_status",
    "pr_is_draft",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_task(row: sqlite3.Row) -> Task:
    pr_is_draft = row["pr_is_draft"]
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=TaskStatus(row["status"]),
        linear_issue_id=row["linear_issue_id"],
        pr_url=row["pr_url"],
        pr_status=row["pr_status"],
        pr_is_draft=None if pr_is_draft is None else bool(pr_is_draft),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@contextmanager
def connection(
    db_path: Path | None = None,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager that opens and closes a DB connection."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    if db_path is None:
        config = get_config()
        config.base_dir.mkdir(parents=True, exist_ok=True)
        db_path = config.base_dir / "vibe.db"

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    _ensure_schema(conn)
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT version FROM schema_version").fetchone()
    if row is None:
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        conn.commit()


# -- Task CRUD --


def create_task(
    conn: sqlite3.Connection,
    title: str,
    status: TaskStatus = TaskStatus.BACKLOG,
    description: str | None = None,
    linear_issue_id: str | None = None,
) -> Task:
    if not title.strip():
        raise ValueError("Task title must not be empty.")

    now = _now()
    cursor = conn.execute(
        """INSERT INTO tasks (title, description, status, linear_issue_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (title, description, str(status), linear_issue_id, now, now),
    )
    conn.commit()
    assert cursor.lastrowid is not None
    task = get_task(conn, cursor.lastrowid)
    assert task is not None
    return task


def get_task(conn: sqlite3.Connection, task_id: int) -> Task | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    return _row_to_task(row)


def list_tasks(
    conn: sqlite3.Connection, status: TaskStatus | None = None
) -> list[Task]:
    query = "SELECT * FROM tasks"
    params: list[str] = []
    if status is not None:
        query += " WHERE status = ?"
        params.append(str(status))
    query += " ORDER BY id"
    return [_row_to_task(row) for row in conn.execute(query, params).fetchall()]


def update_task(conn: sqlite3.Connection, task_id: int, **fields: object) -> Task | None:
    if not fields:
        return get_task(conn, task_id)

    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Unknown task field(s): {', '.join(sorted(unknown))}")
    if "status" in fields:
        fields["status"] = str(TaskStatus(fields["status"]))

    fields["updated_at"] = _now()
    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = list(fields.values()) + [task_id]

    conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", values)
    conn.commit()
    return get_task(conn, task_id)


def delete_task(conn: sqlite3.Connection, task_id: int) -> bool:
    cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    conn.commit()
    return cursor.rowcount > 0
