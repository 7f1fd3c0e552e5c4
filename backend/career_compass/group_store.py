from __future__ import annotations

import sqlite3
from typing import Any

from .profile_store import get_db_path

CREATE_GROUPS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS study_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    introduction TEXT NOT NULL DEFAULT '',
    project_id INTEGER,
    owner_id TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

# One row per (group, user): a user is either requested or member, never both.
CREATE_MEMBERSHIPS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS group_memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    state TEXT NOT NULL CHECK (state IN ('requested', 'member')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(group_id, user_id),
    FOREIGN KEY(group_id) REFERENCES study_groups(id)
);
"""

CREATE_PROGRESS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS group_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    progress TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE(group_id, user_id)
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_study_groups_project
    ON study_groups (project_id, name);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_group_memberships_group_state
    ON group_memberships (group_id, state, id);
    """,
]

MEMBERSHIP_MEMBER = "member"
MEMBERSHIP_REQUESTED = "requested"

JOIN_RESULT_REQUESTED = "REQUESTED"
JOIN_RESULT_ALREADY_REQUESTED = "ALREADY_REQUESTED"
JOIN_RESULT_ALREADY_MEMBER = "ALREADY_MEMBER"
JOIN_RESULT_GROUP_NOT_FOUND = "GROUP_NOT_FOUND"


def _connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Writers take the reserved lock up front so concurrent joins wait on the
    # busy timeout instead of failing a shared -> reserved upgrade.
    conn = sqlite3.connect(db_path, timeout=10.0, isolation_level="IMMEDIATE")
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_GROUPS_TABLE_SQL)
    conn.execute(CREATE_MEMBERSHIPS_TABLE_SQL)
    conn.execute(CREATE_PROGRESS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _user_ids_in_state(conn: sqlite3.Connection, group_id: int, state: str) -> list[str]:
    rows = conn.execute(
        """
        SELECT user_id FROM group_memberships
        WHERE group_id = ? AND state = ?
        ORDER BY id ASC
        """,
        (group_id, state),
    ).fetchall()
    return [str(row["user_id"]) for row in rows]


def _row_to_group(conn: sqlite3.Connection, row: sqlite3.Row) -> dict[str, Any]:
    group_id = int(row["id"])
    project_id = row["project_id"]
    return {
        "id": group_id,
        "name": str(row["name"]),
        "introduction": str(row["introduction"]),
        "project_id": int(project_id) if project_id is not None else None,
        "owner_id": str(row["owner_id"]),
        "members": _user_ids_in_state(conn, group_id, MEMBERSHIP_MEMBER),
        "pending_requests": _user_ids_in_state(conn, group_id, MEMBERSHIP_REQUESTED),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def _fetch_group_row(conn: sqlite3.Connection, group_id: int) -> sqlite3.Row | None:
    return conn.execute(
        """
        SELECT id, name, introduction, project_id, owner_id, created_at, updated_at
        FROM study_groups
        WHERE id = ?
        LIMIT 1
        """,
        (group_id,),
    ).fetchone()


def create_group(*, name: str, introduction: str, owner_id: str, project_id: int | None = None) -> dict[str, Any]:
    safe_name = name.strip()
    if not safe_name:
        raise ValueError("group name is required")

    with _connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            INSERT INTO study_groups (name, introduction, project_id, owner_id)
            VALUES (?, ?, ?, ?)
            """,
            (safe_name, introduction.strip(), project_id, owner_id),
        )
        group_id = int(cursor.lastrowid)
        conn.execute(
            """
            INSERT INTO group_memberships (group_id, user_id, state)
            VALUES (?, ?, 'member')
            """,
            (group_id, owner_id),
        )
        conn.commit()
        row = _fetch_group_row(conn, group_id)
        if row is None:
            raise RuntimeError("group insert lost")
        return _row_to_group(conn, row)


def fetch_group(group_id: int) -> dict[str, Any] | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = _fetch_group_row(conn, int(group_id))
        if row is None:
            return None
        return _row_to_group(conn, row)


def list_groups(*, project_id: int | None = None) -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        if project_id is None:
            rows = conn.execute(
                """
                SELECT id, name, introduction, project_id, owner_id, created_at, updated_at
                FROM study_groups
                ORDER BY name ASC, id ASC
                """
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT id, name, introduction, project_id, owner_id, created_at, updated_at
                FROM study_groups
                WHERE project_id = ?
                ORDER BY name ASC, id ASC
                """,
                (int(project_id),),
            ).fetchall()
        return [_row_to_group(conn, row) for row in rows]


def fetch_membership_state(*, group_id: int, user_id: str) -> str | None:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT state FROM group_memberships
            WHERE group_id = ? AND user_id = ?
            LIMIT 1
            """,
            (int(group_id), user_id),
        ).fetchone()
    return str(row["state"]) if row is not None else None


def add_join_request(*, group_id: int, user_id: str) -> str:
    with _connect() as conn:
        _ensure_schema(conn)
        inserted = conn.execute(
            """
            INSERT OR IGNORE INTO group_memberships (group_id, user_id, state)
            SELECT id, ?, 'requested' FROM study_groups WHERE id = ?
            """,
            (user_id, int(group_id)),
        ).rowcount
        if inserted:
            conn.commit()
            return JOIN_RESULT_REQUESTED

        # Read under the same write lock as the insert.
        group_row = _fetch_group_row(conn, int(group_id))
        state_row = conn.execute(
            "SELECT state FROM group_memberships WHERE group_id = ? AND user_id = ? LIMIT 1",
            (int(group_id), user_id),
        ).fetchone()
        conn.commit()

    if group_row is None:
        return JOIN_RESULT_GROUP_NOT_FOUND
    if state_row is None or str(state_row["state"]) == MEMBERSHIP_REQUESTED:
        return JOIN_RESULT_ALREADY_REQUESTED
    return JOIN_RESULT_ALREADY_MEMBER


def approve_join_request(*, group_id: int, user_id: str) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE group_memberships
            SET state = 'member',
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE group_id = ? AND user_id = ? AND state = 'requested'
            """,
            (int(group_id), user_id),
        ).rowcount
        if affected:
            conn.execute(
                "UPDATE study_groups SET updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') WHERE id = ?",
                (int(group_id),),
            )
        conn.commit()
    return bool(affected)


def remove_join_request(*, group_id: int, user_id: str) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            DELETE FROM group_memberships
            WHERE group_id = ? AND user_id = ? AND state = 'requested'
            """,
            (int(group_id), user_id),
        ).rowcount
        conn.commit()
    return bool(affected)


def upsert_progress(*, group_id: int, user_id: str, progress: str) -> dict[str, Any]:
    with _connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO group_progress (group_id, user_id, progress)
            VALUES (?, ?, ?)
            ON CONFLICT(group_id, user_id) DO UPDATE SET
                progress = excluded.progress,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            """,
            (int(group_id), user_id, progress),
        )
        conn.commit()
        row = conn.execute(
            """
            SELECT group_id, user_id, progress, updated_at
            FROM group_progress
            WHERE group_id = ? AND user_id = ?
            LIMIT 1
            """,
            (int(group_id), user_id),
        ).fetchone()

    if row is None:
        raise RuntimeError("group progress upsert lost")
    return dict(row)


def list_progress(group_id: int) -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT group_id, user_id, progress, updated_at
            FROM group_progress
            WHERE group_id = ?
            ORDER BY updated_at DESC, id DESC
            """,
            (int(group_id),),
        ).fetchall()
    return [dict(row) for row in rows]


def delete_group(group_id: int) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        conn.execute("DELETE FROM group_memberships WHERE group_id = ?", (int(group_id),))
        conn.execute("DELETE FROM group_progress WHERE group_id = ?", (int(group_id),))
        affected = conn.execute("DELETE FROM study_groups WHERE id = ?", (int(group_id),)).rowcount
        conn.commit()
    return bool(affected)


def count_groups() -> int:
    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute("SELECT COUNT(*) AS total FROM study_groups").fetchone()
    return int(row["total"]) if row is not None else 0


def list_group_uploads() -> list[dict[str, Any]]:
    with _connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT id, name, introduction, owner_id, created_at
            FROM study_groups
            ORDER BY created_at DESC, id DESC
            """
        ).fetchall()
    return [dict(row) for row in rows]
