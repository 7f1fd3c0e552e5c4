from __future__ import annotations

import sqlite3
from typing import Any

from .profile_store import get_db_path

CREATE_TABLE_SQLS = [
    """
    CREATE TABLE IF NOT EXISTS project_ideas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        submitted_by TEXT NOT NULL DEFAULT '',
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS fields (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS interview_questions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        question TEXT NOT NULL,
        answer TEXT NOT NULL DEFAULT '',
        leetcode_link TEXT,
        field_id INTEGER,
        submitted_by TEXT NOT NULL DEFAULT '',
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS work_opportunities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('job', 'internship')),
        salary_range TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        apply_link TEXT NOT NULL,
        submitted_by TEXT NOT NULL DEFAULT '',
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    );
    """,
]

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_interview_questions_field
    ON interview_questions (field_id, created_at DESC);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_work_opportunities_type
    ON work_opportunities (type, created_at DESC);
    """,
]

OPPORTUNITY_TYPES = {"job", "internship"}

# Tables whose rows an admin may list and delete from the moderation view.
MODERATED_TABLES: dict[str, tuple[str, ...]] = {
    "project_ideas": ("title", "description"),
    "interview_questions": ("question", "answer"),
    "work_opportunities": ("title", "description"),
}


def _connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    for sql in CREATE_TABLE_SQLS:
        conn.execute(sql)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _insert_and_fetch(conn: sqlite3.Connection, table: str, values: dict[str, Any]) -> dict[str, Any]:
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    cursor = conn.execute(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
        tuple(values.values()),
    )
    conn.commit()
    row = conn.execute(f"SELECT * FROM {table} WHERE id = ? LIMIT 1", (int(cursor.lastrowid),)).fetchone()
    if row is None:
        raise RuntimeError(f"{table} insert lost")
    return dict(row)


def create_project_idea(*, title: str, description: str, submitted_by: str, owner_id: str) -> dict[str, Any]:
    with _connect() as conn:
        _ensure_schema(conn)
        return _insert_and_fetch(
            conn,
            "project_ideas",
            {
                "title": title.strip(),
                "description": description.strip(),
                "submitted_by": submitted_by.strip(),
                "owner_id": owner_id,
            },
        )


def list_project_ideas() -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute("SELECT * FROM project_ideas ORDER BY title ASC, id ASC").fetchall()
    return [dict(row) for row in rows]


def fetch_project_idea(project_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM project_ideas WHERE id = ? LIMIT 1", (int(project_id),)).fetchone()
    return dict(row) if row is not None else None


def create_field(*, name: str, description: str = "") -> dict[str, Any]:
    with _connect() as conn:
        _ensure_schema(conn)
        try:
            return _insert_and_fetch(conn, "fields", {"name": name.strip(), "description": description.strip()})
        except sqlite3.IntegrityError as exc:
            raise ValueError("field already exists") from exc


def list_fields() -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute("SELECT * FROM fields ORDER BY name ASC").fetchall()
    return [dict(row) for row in rows]


def fetch_field(field_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT * FROM fields WHERE id = ? LIMIT 1", (int(field_id),)).fetchone()
    return dict(row) if row is not None else None


def create_interview_question(
    *,
    question: str,
    answer: str,
    leetcode_link: str | None,
    field_id: int | None,
    submitted_by: str,
    owner_id: str,
) -> dict[str, Any]:
    with _connect() as conn:
        _ensure_schema(conn)
        return _insert_and_fetch(
            conn,
            "interview_questions",
            {
                "question": question.strip(),
                "answer": answer.strip(),
                "leetcode_link": leetcode_link,
                "field_id": field_id,
                "submitted_by": submitted_by.strip(),
                "owner_id": owner_id,
            },
        )


def list_interview_questions(*, field_id: int | None = None) -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        sql = """
            SELECT q.*, f.name AS field_name
            FROM interview_questions q
            LEFT JOIN fields f ON f.id = q.field_id
        """
        if field_id is None:
            rows = conn.execute(f"{sql} ORDER BY q.created_at DESC, q.id DESC").fetchall()
        else:
            rows = conn.execute(
                f"{sql} WHERE q.field_id = ? ORDER BY q.created_at DESC, q.id DESC",
                (int(field_id),),
            ).fetchall()
    return [dict(row) for row in rows]


def create_work_opportunity(
    *,
    title: str,
    opportunity_type: str,
    salary_range: str,
    description: str,
    apply_link: str,
    submitted_by: str,
    owner_id: str,
) -> dict[str, Any]:
    safe_type = opportunity_type.strip().lower()
    if safe_type not in OPPORTUNITY_TYPES:
        raise ValueError(f"unsupported opportunity type: {opportunity_type}")

    with _connect() as conn:
        _ensure_schema(conn)
        return _insert_and_fetch(
            conn,
            "work_opportunities",
            {
                "title": title.strip(),
                "type": safe_type,
                "salary_range": salary_range.strip(),
                "description": description.strip(),
                "apply_link": apply_link.strip(),
                "submitted_by": submitted_by.strip(),
                "owner_id": owner_id,
            },
        )


def list_work_opportunities(*, opportunity_type: str | None = None) -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        if opportunity_type is None:
            rows = conn.execute("SELECT * FROM work_opportunities ORDER BY created_at DESC, id DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM work_opportunities WHERE type = ? ORDER BY created_at DESC, id DESC",
                (opportunity_type.strip().lower(),),
            ).fetchall()
    return [dict(row) for row in rows]


def fetch_work_opportunity(opportunity_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT * FROM work_opportunities WHERE id = ? LIMIT 1",
            (int(opportunity_id),),
        ).fetchone()
    return dict(row) if row is not None else None


def list_uploads(table: str) -> list[dict[str, Any]]:
    if table not in MODERATED_TABLES:
        raise ValueError(f"unsupported table: {table}")
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(f"SELECT * FROM {table} ORDER BY created_at DESC, id DESC").fetchall()
    return [dict(row) for row in rows]


def delete_upload(table: str, item_id: int) -> bool:
    if table not in MODERATED_TABLES:
        raise ValueError(f"unsupported table: {table}")
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(f"DELETE FROM {table} WHERE id = ?", (int(item_id),)).rowcount
        conn.commit()
    return bool(affected)


def count_rows(table: str) -> int:
    if table not in MODERATED_TABLES and table != "fields":
        raise ValueError(f"unsupported table: {table}")
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()
    return int(row["total"]) if row is not None else 0
