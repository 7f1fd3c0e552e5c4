from __future__ import annotations

import os
import sqlite3
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "data" / "career_compass.sqlite3"

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    username TEXT UNIQUE,
    role TEXT NOT NULL DEFAULT 'unverified',
    verification_status TEXT NOT NULL DEFAULT 'none',
    grad_year INTEGER,
    organization TEXT NOT NULL DEFAULT '',
    bio TEXT NOT NULL DEFAULT '',
    skills TEXT NOT NULL DEFAULT '',
    document_data TEXT,
    document_name TEXT,
    document_submitted_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_profiles_role_grad_year
    ON profiles (role, grad_year);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_profiles_verification_status
    ON profiles (verification_status);
    """,
]

EDITABLE_FIELDS: tuple[str, ...] = ("username", "organization", "bio", "skills", "grad_year")

PROFILE_COLUMNS = """
    id,
    email,
    username,
    role,
    verification_status,
    grad_year,
    organization,
    bio,
    skills,
    document_name,
    document_submitted_at,
    document_data IS NOT NULL AS has_document,
    created_at,
    updated_at
"""


def get_db_path() -> Path:
    configured_path = os.getenv("CAREER_COMPASS_DB_PATH", "").strip()
    if configured_path:
        path = Path(configured_path)
        if not path.is_absolute():
            path = (Path(__file__).resolve().parents[1] / path).resolve()
        return path
    return DEFAULT_DB_PATH


def _connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _row_to_profile(row: sqlite3.Row) -> dict[str, Any]:
    grad_year = row["grad_year"]
    return {
        "id": str(row["id"]),
        "email": str(row["email"]),
        "username": row["username"],
        "role": str(row["role"]),
        "verification_status": str(row["verification_status"]),
        "grad_year": int(grad_year) if grad_year is not None else None,
        "organization": str(row["organization"]),
        "bio": str(row["bio"]),
        "skills": str(row["skills"]),
        "document_name": row["document_name"],
        "document_submitted_at": row["document_submitted_at"],
        "has_document": bool(row["has_document"]),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def _fetch_profile_row(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row | None:
    return conn.execute(
        f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ? LIMIT 1",
        (user_id,),
    ).fetchone()


def upsert_profile(
    *,
    user_id: str,
    email: str,
    role: str = "unverified",
    verification_status: str = "none",
    grad_year: int | None = None,
    username: str | None = None,
) -> dict[str, Any]:
    safe_id = user_id.strip()
    safe_email = email.strip().lower()
    if not safe_id:
        raise ValueError("user_id is required")
    if not safe_email:
        raise ValueError("email is required")

    with _connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO profiles (id, email, username, role, verification_status, grad_year)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                username = COALESCE(excluded.username, profiles.username),
                role = excluded.role,
                verification_status = excluded.verification_status,
                grad_year = excluded.grad_year,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            """,
            (safe_id, safe_email, username, role, verification_status, grad_year),
        )
        conn.commit()
        row = _fetch_profile_row(conn, safe_id)

    if row is None:
        raise RuntimeError("profile upsert lost")
    return _row_to_profile(row)


def fetch_profile(user_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = _fetch_profile_row(conn, user_id)
    return _row_to_profile(row) if row is not None else None


def fetch_profiles(user_ids: list[str]) -> list[dict[str, Any]]:
    if not user_ids:
        return []
    placeholders = ", ".join("?" for _ in user_ids)
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id IN ({placeholders})",
            tuple(user_ids),
        ).fetchall()
    by_id = {str(row["id"]): _row_to_profile(row) for row in rows}
    return [by_id[user_id] for user_id in user_ids if user_id in by_id]


def list_profiles(*, role: str | None = None, verification_status: str | None = None) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if role:
        clauses.append("role = ?")
        params.append(role)
    if verification_status:
        clauses.append("verification_status = ?")
        params.append(verification_status)
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            f"SELECT {PROFILE_COLUMNS} FROM profiles {where_sql} ORDER BY created_at ASC, id ASC",
            tuple(params),
        ).fetchall()
    return [_row_to_profile(row) for row in rows]


def username_exists(username: str, *, exclude_user_id: str | None = None) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        if exclude_user_id:
            row = conn.execute(
                "SELECT id FROM profiles WHERE username = ? AND id != ? LIMIT 1",
                (username, exclude_user_id),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT id FROM profiles WHERE username = ? LIMIT 1",
                (username,),
            ).fetchone()
    return row is not None


def update_profile_fields(user_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
    safe_updates = {key: value for key, value in updates.items() if key in EDITABLE_FIELDS}

    with _connect() as conn:
        _ensure_schema(conn)
        if safe_updates:
            assignments = ", ".join(f"{column} = ?" for column in safe_updates)
            try:
                conn.execute(
                    f"""
                    UPDATE profiles
                    SET {assignments},
                        updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                    WHERE id = ?
                    """,
                    (*safe_updates.values(), user_id),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("username already taken") from exc
            conn.commit()
        row = _fetch_profile_row(conn, user_id)

    return _row_to_profile(row) if row is not None else None


def upgrade_student_to_alumni(*, user_id: str, current_year: int) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE profiles
            SET role = 'alumni',
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
              AND role = 'student'
              AND grad_year IS NOT NULL
              AND grad_year < ?
            """,
            (user_id, int(current_year)),
        ).rowcount
        conn.commit()
    return bool(affected)


def list_upgrade_candidates(*, current_year: int) -> list[str]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT id FROM profiles
            WHERE role = 'student'
              AND grad_year IS NOT NULL
              AND grad_year < ?
            ORDER BY id ASC
            """,
            (int(current_year),),
        ).fetchall()
    return [str(row["id"]) for row in rows]


def submit_verification_document(
    *,
    user_id: str,
    document_data: str,
    document_name: str,
    allowed_statuses: tuple[str, ...],
) -> bool:
    placeholders = ", ".join("?" for _ in allowed_statuses)
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            f"""
            UPDATE profiles
            SET verification_status = 'pending_review',
                document_data = ?,
                document_name = ?,
                document_submitted_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now'),
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ? AND verification_status IN ({placeholders})
            """,
            (document_data, document_name, user_id, *allowed_statuses),
        ).rowcount
        conn.commit()
    return bool(affected)


def decide_verification(*, user_id: str, status: str, role: str | None = None) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        if role is None:
            affected = conn.execute(
                """
                UPDATE profiles
                SET verification_status = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE id = ? AND verification_status = 'pending_review'
                """,
                (status, user_id),
            ).rowcount
        else:
            affected = conn.execute(
                """
                UPDATE profiles
                SET verification_status = ?,
                    role = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE id = ? AND verification_status = 'pending_review'
                """,
                (status, role, user_id),
            ).rowcount
        conn.commit()
    return bool(affected)


def fetch_verification_document(user_id: str) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT id, document_data, document_name, document_submitted_at, verification_status
            FROM profiles
            WHERE id = ?
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()

    if row is None or row["document_data"] is None:
        return None

    return {
        "user_id": str(row["id"]),
        "document_data": str(row["document_data"]),
        "document_name": row["document_name"],
        "submitted_at": row["document_submitted_at"],
        "verification_status": str(row["verification_status"]),
    }


def count_profiles_by_role() -> dict[str, int]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute("SELECT role, COUNT(*) AS total FROM profiles GROUP BY role").fetchall()
    return {str(row["role"]): int(row["total"]) for row in rows}


def count_profiles_created_since(since_iso: str) -> int:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM profiles WHERE created_at >= ?",
            (since_iso,),
        ).fetchone()
    return int(row["total"]) if row is not None else 0
