from __future__ import annotations

import sqlite3
from typing import Any

from .profile_store import get_db_path

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,
    feedback_subject TEXT NOT NULL,
    feedback_desc TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_feedback_user
ON feedback (user_id, created_at DESC, id DESC);
"""


def _connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_TABLE_SQL)
    conn.execute(CREATE_INDEX_SQL)


def create_feedback(*, user_id: str, email: str, subject: str, description: str) -> dict[str, Any]:
    with _connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            INSERT INTO feedback (user_id, email, feedback_subject, feedback_desc)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, email, subject.strip(), description.strip()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM feedback WHERE id = ? LIMIT 1", (int(cursor.lastrowid),)).fetchone()

    if row is None:
        raise RuntimeError("feedback insert lost")
    return dict(row)


def list_feedback(*, user_id: str | None = None) -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        if user_id is None:
            rows = conn.execute("SELECT * FROM feedback ORDER BY created_at DESC, id DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM feedback WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
    return [dict(row) for row in rows]


def delete_feedback(feedback_id: int) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute("DELETE FROM feedback WHERE id = ?", (int(feedback_id),)).rowcount
        conn.commit()
    return bool(affected)


def count_feedback() -> int:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT COUNT(*) AS total FROM feedback").fetchone()
    return int(row["total"]) if row is not None else 0
