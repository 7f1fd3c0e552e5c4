from __future__ import annotations

import hashlib
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .profile_store import get_db_path

CREATE_ACCOUNTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS local_accounts (
    user_id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_AUTH_SESSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS auth_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    is_revoked INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY(user_id) REFERENCES local_accounts(user_id)
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_auth_sessions_user
    ON auth_sessions (user_id, created_at DESC, id DESC);
    """,
]

VERIFY_REASON_NOT_FOUND = "NOT_FOUND"
VERIFY_REASON_ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
VERIFY_REASON_INVALID_PASSWORD = "INVALID_PASSWORD"

MIN_PASSWORD_LENGTH = 6


def _connect() -> sqlite3.Connection:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_ACCOUNTS_TABLE_SQL)
    conn.execute(CREATE_AUTH_SESSIONS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_utc(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        if raw.endswith("Z"):
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _hash_password(*, password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120_000,
    )
    return digest.hex()


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_local_account(*, email: str, password: str) -> dict[str, Any]:
    safe_email = normalize_email(email)
    if not safe_email or "@" not in safe_email:
        raise ValueError("a valid email is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError("password too short")

    user_id = str(uuid.uuid4())
    salt = secrets.token_hex(16)
    password_hash = _hash_password(password=password, salt=salt)

    with _connect() as conn:
        _ensure_schema(conn)
        try:
            conn.execute(
                """
                INSERT INTO local_accounts (user_id, email, password_hash, password_salt, is_active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (user_id, safe_email, password_hash, salt),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError("email already registered") from exc
        conn.commit()

    return {"id": user_id, "email": safe_email}


def verify_local_account_with_reason(*, email: str, password: str) -> tuple[dict[str, Any] | None, str | None]:
    safe_email = normalize_email(email)
    if not safe_email or not password:
        return None, VERIFY_REASON_NOT_FOUND

    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT user_id, email, password_hash, password_salt, is_active
            FROM local_accounts
            WHERE email = ?
            LIMIT 1
            """,
            (safe_email,),
        ).fetchone()

    if row is None:
        return None, VERIFY_REASON_NOT_FOUND

    if int(row["is_active"]) != 1:
        return None, VERIFY_REASON_ACCOUNT_INACTIVE

    expected_hash = str(row["password_hash"])
    actual_hash = _hash_password(password=password, salt=str(row["password_salt"]))
    if not secrets.compare_digest(expected_hash, actual_hash):
        return None, VERIFY_REASON_INVALID_PASSWORD

    return {"id": str(row["user_id"]), "email": str(row["email"])}, None


def set_account_active(*, user_id: str, is_active: bool) -> bool:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE local_accounts
            SET is_active = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE user_id = ?
            """,
            (1 if is_active else 0, user_id),
        ).rowcount
        conn.commit()
    return bool(affected)


def create_auth_session(*, user_id: str, ttl_seconds: int = 7 * 24 * 3600) -> dict[str, Any]:
    safe_ttl = max(300, int(ttl_seconds))
    expires_at = _utc_now() + timedelta(seconds=safe_ttl)

    raw_token = secrets.token_urlsafe(48)
    token_hash = _hash_token(raw_token)

    with _connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO auth_sessions (user_id, token_hash, is_revoked, expires_at)
            VALUES (?, ?, 0, ?)
            """,
            (user_id, token_hash, _format_utc(expires_at)),
        )
        conn.commit()

    return {
        "token": raw_token,
        "expires_at": _format_utc(expires_at),
        "ttl_seconds": safe_ttl,
    }


def validate_auth_session(*, token: str) -> dict[str, Any] | None:
    safe_token = token.strip()
    if not safe_token:
        return None

    with _connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT
                s.id,
                s.user_id,
                s.is_revoked,
                s.expires_at,
                u.email,
                u.is_active
            FROM auth_sessions s
            JOIN local_accounts u ON u.user_id = s.user_id
            WHERE s.token_hash = ?
            LIMIT 1
            """,
            (_hash_token(safe_token),),
        ).fetchone()

    if row is None:
        return None

    if int(row["is_revoked"]) == 1 or int(row["is_active"]) != 1:
        return None

    expires_at_raw = str(row["expires_at"])
    expires_at = _parse_utc(expires_at_raw)
    if expires_at is None or expires_at <= _utc_now():
        return None

    return {
        "id": int(row["id"]),
        "user_id": str(row["user_id"]),
        "email": str(row["email"]),
        "expires_at": expires_at_raw,
    }


def revoke_auth_session(*, token: str) -> bool:
    safe_token = token.strip()
    if not safe_token:
        return False

    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE auth_sessions
            SET is_revoked = 1,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE token_hash = ? AND is_revoked = 0
            """,
            (_hash_token(safe_token),),
        ).rowcount
        conn.commit()

    return bool(affected)


def revoke_user_sessions(*, user_id: str) -> int:
    with _connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE auth_sessions
            SET is_revoked = 1,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE user_id = ? AND is_revoked = 0
            """,
            (user_id,),
        ).rowcount
        conn.commit()

    return int(affected or 0)
