from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import APP_DB_PATH
from .logging_utils import get_logger

log = get_logger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path = APP_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
              conversation_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              title TEXT,
              profile_json TEXT NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversation_messages (
              message_id TEXT PRIMARY KEY,
              conversation_id TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('system','user','assistant')),
              content TEXT NOT NULL,
              hidden INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value_json TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
              user_id TEXT PRIMARY KEY,
              username TEXT NOT NULL UNIQUE,
              email TEXT,
              password_hash TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('free_user','pro_user','admin')),
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS auth_sessions (
              token_hash TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              last_seen_at TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_messages_created
              ON conversation_messages(conversation_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_conversations_owner_created
              ON conversations(owner_id, created_at);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email
              ON users(email) WHERE email IS NOT NULL;
            """
        )
        conn.commit()
    finally:
        conn.close()


def create_conversation(*, owner_id: str, profile: dict[str, Any], title: str | None = None) -> dict[str, Any]:
    conversation_id = str(uuid.uuid4())
    created_at = _utc_now()
    profile_json = json.dumps(profile, ensure_ascii=False)

    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO conversations(conversation_id, owner_id, title, profile_json, created_at)
            VALUES (?,?,?,?,?)
            """,
            (conversation_id, owner_id, title, profile_json, created_at),
        )
        conn.commit()
    finally:
        conn.close()

    return {
        "conversation_id": conversation_id,
        "owner_id": owner_id,
        "title": title,
        "profile": profile,
        "created_at": created_at,
    }


def get_conversation(conversation_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT conversation_id, owner_id, title, profile_json, created_at
            FROM conversations
            WHERE conversation_id = ?
            """,
            (conversation_id,),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    out = dict(row)
    out["profile"] = json.loads(out.pop("profile_json") or "{}")
    return out


def insert_message(conversation_id: str, role: str, content: str, *, hidden: bool = False) -> dict[str, Any]:
    message_id = str(uuid.uuid4())
    created_at = _utc_now()

    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO conversation_messages(message_id, conversation_id, role, content, hidden, created_at)
            VALUES (?,?,?,?,?,?)
            """,
            (message_id, conversation_id, role, content, 1 if hidden else 0, created_at),
        )
        conn.commit()
    finally:
        conn.close()

    return {
        "message_id": message_id,
        "conversation_id": conversation_id,
        "role": role,
        "content": content,
        "hidden": hidden,
        "created_at": created_at,
    }


def list_messages(conversation_id: str, *, limit: int = 500) -> list[dict[str, Any]]:
    """The newest ``limit`` messages of a conversation, oldest first."""
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT message_id, conversation_id, role, content, hidden, created_at
            FROM conversation_messages
            WHERE conversation_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        ).fetchall()
    finally:
        conn.close()
    out = []
    for r in reversed(rows):
        item = dict(r)
        item["hidden"] = bool(item.get("hidden"))
        out.append(item)
    return out


def list_settings() -> dict[str, Any]:
    conn = _connect()
    try:
        rows = conn.execute("SELECT key, value_json FROM settings ORDER BY key ASC").fetchall()
    finally:
        conn.close()
    out: dict[str, Any] = {}
    for r in rows:
        try:
            out[r["key"]] = json.loads(r["value_json"])
        except json.JSONDecodeError:
            out[r["key"]] = r["value_json"]
    return out


def set_settings(values: dict[str, Any]) -> None:
    now = _utc_now()
    rows = [(k, json.dumps(v, ensure_ascii=False), now, now) for k, v in values.items()]
    conn = _connect()
    try:
        conn.executemany(
            """
            INSERT INTO settings(key, value_json, created_at, updated_at)
            VALUES (?,?,?,?)
            ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at
            """,
            rows,
        )
        conn.commit()
    finally:
        conn.close()


def count_users() -> int:
    conn = _connect()
    try:
        row = conn.execute("SELECT COUNT(1) AS c FROM users").fetchone()
        return int(row["c"] or 0) if row else 0
    finally:
        conn.close()


def create_user(*, username: str, password_hash: str, role: str, email: str | None = None) -> dict[str, Any]:
    user_id = str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO users(user_id, username, email, password_hash, role, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (user_id, username, email, password_hash, role, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    log.info("Created user %s (role=%s)", username, role)
    return {
        "user_id": user_id,
        "username": username,
        "email": email,
        "role": role,
        "created_at": now,
        "updated_at": now,
    }


def _get_user_where(column: str, value: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"""
            SELECT user_id, username, email, password_hash, role, created_at, updated_at
            FROM users
            WHERE {column} = ?
            """,
            (value,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def get_user(user_id: str) -> dict[str, Any] | None:
    return _get_user_where("user_id", user_id)


def get_user_by_username(username: str) -> dict[str, Any] | None:
    return _get_user_where("username", username)


def get_user_by_email(email: str) -> dict[str, Any] | None:
    return _get_user_where("email", email)


def update_user(*, user_id: str, role: str | None = None, password_hash: str | None = None) -> dict[str, Any] | None:
    updates: list[str] = []
    params: list[Any] = []
    if role is not None:
        updates.append("role = ?")
        params.append(role)
    if password_hash is not None:
        updates.append("password_hash = ?")
        params.append(password_hash)
    if not updates:
        return get_user(user_id)

    updates.append("updated_at = ?")
    params.append(_utc_now())
    params.append(user_id)

    conn = _connect()
    try:
        conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE user_id = ?", params)
        conn.commit()
    finally:
        conn.close()
    return get_user(user_id)


def create_auth_session(*, token_hash: str, user_id: str, expires_at: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO auth_sessions(token_hash, user_id, created_at, expires_at, last_seen_at)
            VALUES (?,?,?,?,?)
            """,
            (token_hash, user_id, now, expires_at, now),
        )
        conn.commit()
    finally:
        conn.close()


def get_auth_session(token_hash: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT s.token_hash, s.user_id, s.created_at, s.expires_at, s.last_seen_at,
                   u.username, u.email, u.role
            FROM auth_sessions s
            JOIN users u ON u.user_id = s.user_id
            WHERE s.token_hash = ?
            """,
            (token_hash,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def touch_auth_session(token_hash: str) -> None:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute("UPDATE auth_sessions SET last_seen_at = ? WHERE token_hash = ?", (now, token_hash))
        conn.commit()
    finally:
        conn.close()


def delete_auth_session(token_hash: str) -> None:
    conn = _connect()
    try:
        conn.execute("DELETE FROM auth_sessions WHERE token_hash = ?", (token_hash,))
        conn.commit()
    finally:
        conn.close()


def delete_expired_auth_sessions(now_iso: str) -> int:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM auth_sessions WHERE expires_at < ?", (now_iso,))
        conn.commit()
        return int(cur.rowcount or 0)
    finally:
        conn.close()
