"""Database helpers for the novelpack service.

The service stores download jobs, their state transitions and the
shared unit cache in an SQLite database. Each helper function opens
its own connection on demand using the standard ``sqlite3`` module and
closes it before returning, so helpers are safe to call from any
coroutine without sharing connection state. Writes are short single
statements; SQLite serialises them.

The schema is defined in ``init_db()``:

* ``jobs`` - one row per (user, work, format) download attempt. Job ids
  are UUID strings. ``status`` is one of ``pending``, ``downloading``,
  ``completed`` or ``failed``.
* ``job_events`` - an append-only log of every status transition, so a
  job's history survives later updates to its row.
* ``unit_cache`` - fetched unit bodies keyed by ``(work_id, unit_id)``,
  shared by every job and user.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config

JOB_FIELDS = [
    "id",
    "user_id",
    "work_id",
    "platform",
    "format",
    "status",
    "progress",
    "total_units",
    "title",
    "author",
    "error",
]


def get_connection() -> sqlite3.Connection:
    """Return a new SQLite connection with row_factory set to dict-like.

    The database file's directory is created when missing. ``:memory:``
    is accepted but every connection then sees its own empty database,
    so tests point ``config.DB_PATH`` at a temporary file instead.
    """
    db_path = config.DB_PATH
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the tables and indices if they do not exist yet.

    Idempotent: it can be called on every start-up without touching
    existing data.
    """
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            work_id TEXT NOT NULL,
            platform TEXT NOT NULL DEFAULT 'po18',
            format TEXT NOT NULL DEFAULT 'txt',
            status TEXT NOT NULL DEFAULT 'pending',
            progress INTEGER DEFAULT 0,
            total_units INTEGER DEFAULT 0,
            title TEXT,
            author TEXT,
            file_path TEXT,
            file_size INTEGER,
            duration REAL,
            sink_path TEXT,
            error TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            started_at TEXT,
            completed_at TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_id ON jobs(user_id)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS job_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT NOT NULL,
            message TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(job_id) REFERENCES jobs(id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job_id ON job_events(job_id)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS unit_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            work_id TEXT NOT NULL,
            unit_id TEXT NOT NULL,
            title TEXT,
            markup TEXT,
            text TEXT,
            unit_order INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(work_id, unit_id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_unit_cache_work_id ON unit_cache(work_id)")
    conn.commit()
    conn.close()


# -- jobs --------------------------------------------------------------

def insert_job(job: Dict[str, Any]) -> None:
    """Insert a new job row.

    The ``job`` dict must contain ``id``, ``user_id`` and ``work_id``;
    missing optional keys default to ``None``. The initial status is
    also recorded in ``job_events``.
    """
    values = [job.get(f) for f in JOB_FIELDS]
    placeholders = ", ".join("?" for _ in JOB_FIELDS)
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        f"INSERT INTO jobs({', '.join(JOB_FIELDS)}) VALUES ({placeholders})",
        values,
    )
    cur.execute(
        "INSERT INTO job_events(job_id, from_status, to_status, message) VALUES (?, NULL, ?, ?)",
        (job["id"], job.get("status"), "submitted"),
    )
    conn.commit()
    conn.close()


def update_job(job_id: str, *, status: Optional[str] = None, progress: Optional[int] = None,
               total_units: Optional[int] = None, title: Optional[str] = None,
               author: Optional[str] = None, file_path: Optional[str] = None,
               file_size: Optional[int] = None, duration: Optional[float] = None,
               sink_path: Optional[str] = None, error: Optional[str] = None) -> None:
    """Update selected fields on a job.

    Only provided arguments are written. Moving to ``downloading``
    stamps ``started_at``; moving to ``completed`` or ``failed`` stamps
    ``completed_at``. Status changes should go through
    ``transition_job`` so they are logged.
    """
    parts: List[str] = []
    params: List[Any] = []
    for name, value in (
        ("status", status),
        ("progress", progress),
        ("total_units", total_units),
        ("title", title),
        ("author", author),
        ("file_path", file_path),
        ("file_size", file_size),
        ("duration", duration),
        ("sink_path", sink_path),
        ("error", error),
    ):
        if value is not None:
            parts.append(f"{name} = ?")
            params.append(value)
    if status == "downloading":
        parts.append("started_at = CURRENT_TIMESTAMP")
    if status in ("completed", "failed"):
        parts.append("completed_at = CURRENT_TIMESTAMP")
    if not parts:
        return
    params.append(job_id)
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        f"UPDATE jobs SET {', '.join(parts)}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        params,
    )
    conn.commit()
    conn.close()


def transition_job(job_id: str, from_status: Optional[str], to_status: str,
                   message: Optional[str] = None, **fields: Any) -> None:
    """Change a job's status, update ``fields`` and log the transition."""
    update_job(job_id, status=to_status, **fields)
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO job_events(job_id, from_status, to_status, message) VALUES (?, ?, ?, ?)",
        (job_id, from_status, to_status, message),
    )
    conn.commit()
    conn.close()


def reset_job(job_id: str) -> None:
    """Clear progress, result and error fields so a job can run again."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE jobs SET status = 'pending', progress = 0, file_path = NULL, file_size = NULL,
                        duration = NULL, sink_path = NULL, error = NULL, started_at = NULL,
                        completed_at = NULL, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (job_id,),
    )
    conn.commit()
    conn.close()


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    """Return a job record as a dict."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
    row = cur.fetchone()
    conn.close()
    return dict(row) if row else None


def get_jobs_for_user(user_id: str) -> List[Dict[str, Any]]:
    """Return a user's jobs, newest first."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
        (user_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def get_job_events(job_id: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT * FROM job_events WHERE job_id = ? ORDER BY id ASC", (job_id,))
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def delete_finished_jobs(user_id: str) -> int:
    """Delete a user's completed and failed jobs; return how many went."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "DELETE FROM job_events WHERE job_id IN "
        "(SELECT id FROM jobs WHERE user_id = ? AND status IN ('completed', 'failed'))",
        (user_id,),
    )
    cur.execute(
        "DELETE FROM jobs WHERE user_id = ? AND status IN ('completed', 'failed')",
        (user_id,),
    )
    deleted = cur.rowcount
    conn.commit()
    conn.close()
    return deleted


# -- unit cache --------------------------------------------------------

def get_cached_unit(work_id: str, unit_id: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM unit_cache WHERE work_id = ? AND unit_id = ?",
        (work_id, unit_id),
    )
    row = cur.fetchone()
    conn.close()
    return dict(row) if row else None


def save_cached_unit(unit: Dict[str, Any]) -> None:
    """Insert or replace the cached body of one unit (last write wins)."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO unit_cache(work_id, unit_id, title, markup, text, unit_order)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(work_id, unit_id) DO UPDATE SET
            title = excluded.title,
            markup = excluded.markup,
            text = excluded.text,
            unit_order = excluded.unit_order,
            updated_at = CURRENT_TIMESTAMP
        """,
        (
            unit["work_id"],
            unit["unit_id"],
            unit.get("title"),
            unit.get("markup"),
            unit.get("text"),
            unit.get("unit_order", 0),
        ),
    )
    conn.commit()
    conn.close()


def cached_unit_exists(work_id: str, unit_id: str) -> bool:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM unit_cache WHERE work_id = ? AND unit_id = ? LIMIT 1",
        (work_id, unit_id),
    )
    found = cur.fetchone() is not None
    conn.close()
    return found


def get_cached_units(work_id: str) -> List[Dict[str, Any]]:
    """Return all cached units of a work in reading order."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM unit_cache WHERE work_id = ?
        ORDER BY unit_order ASC, CAST(unit_id AS INTEGER) ASC
        """,
        (work_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def count_cached_units(work_id: str) -> int:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM unit_cache WHERE work_id = ?", (work_id,))
    count = cur.fetchone()[0]
    conn.close()
    return count


def delete_cached_units(work_id: str) -> int:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("DELETE FROM unit_cache WHERE work_id = ?", (work_id,))
    deleted = cur.rowcount
    conn.commit()
    conn.close()
    return deleted
