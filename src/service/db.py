"""SQLite helpers for SeamLoop job history."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from .config import DATA_DIR, ensure_dirs

DB_PATH = DATA_DIR / "seamloop.db"


def init_db() -> None:
    ensure_dirs()
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                created_at TEXT NOT NULL,
                finished_at TEXT,
                video_path TEXT,
                candidates INTEGER,
                report_path TEXT,
                output_path TEXT,
                mime_type TEXT,
                status TEXT NOT NULL,
                error TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_jobs_created_at
            ON jobs (created_at DESC)
            """
        )
        for column_def in (
            "ALTER TABLE jobs ADD COLUMN report_path TEXT",
            "ALTER TABLE jobs ADD COLUMN mime_type TEXT",
        ):
            try:
                conn.execute(column_def)
            except sqlite3.OperationalError:
                # Column already present.
                continue


@contextmanager
def _connect():
    ensure_dirs()
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def insert_job(job: Dict[str, Any]) -> None:
    columns = ", ".join(job.keys())
    placeholders = ", ".join([":" + key for key in job.keys()])
    query = f"INSERT INTO jobs ({columns}) VALUES ({placeholders})"
    with _connect() as conn:
        conn.execute(query, job)


def update_job(job_id: str, **fields: Any) -> None:
    if not fields:
        return
    assignments = ", ".join([f"{key} = :{key}" for key in fields.keys()])
    params = dict(fields)
    params["id"] = job_id
    query = f"UPDATE jobs SET {assignments} WHERE id = :id"
    with _connect() as conn:
        conn.execute(query, params)


def get_job(job_id: str) -> Optional[Dict[str, Any]]:
    with _connect() as conn:
        cursor = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = cursor.fetchone()
    return dict(row) if row else None


def list_jobs(limit: int = 50, offset: int = 0, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    query = (
        "SELECT id, kind, created_at, finished_at, status, video_path, candidates, output_path, error "
        "FROM jobs"
    )
    params: List[Any] = []
    if kind:
        query += " WHERE kind = ?"
        params.append(kind)
    query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with _connect() as conn:
        cursor = conn.execute(query, params)
        rows = cursor.fetchall()
    return [dict(row) for row in rows]


__all__ = ["DB_PATH", "init_db", "insert_job", "update_job", "get_job", "list_jobs"]
