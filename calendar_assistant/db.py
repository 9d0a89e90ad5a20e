"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from calendar_assistant.models import Message, Role, ToolCallRequest, tool_calls_from_json, tool_calls_to_json

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the schema or verify its version."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                email TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(user_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                sequence_number INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT,
                tool_calls_json TEXT,
                tool_call_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(conversation_id, sequence_number),
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE TABLE IF NOT EXISTS user_preferences (
                user_id TEXT PRIMARY KEY,
                preferences_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(user_id)
            );

            CREATE TABLE IF NOT EXISTS event_metadata (
                user_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                priority TEXT,
                tags_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(user_id, event_id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    def upsert_user(self, user_id: str, email: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, email, created_at)
                VALUES(?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email=COALESCE(excluded.email, users.email)
                """,
                (user_id, email, _utc_now_iso()),
            )

    def create_conversation(self, user_id: str, title: str | None = None) -> int:
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO conversations(user_id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (user_id, title, now, now),
            )
            return int(cur.lastrowid)

    def get_latest_conversation(self, user_id: str) -> int | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM conversations WHERE user_id = ? ORDER BY updated_at DESC, id DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        return int(row["id"]) if row else None

    def append_message(
        self,
        conversation_id: int,
        role: Role | str,
        content: str | None,
        tool_calls: list[ToolCallRequest] | None = None,
        tool_call_id: str | None = None,
    ) -> int:
        """Append a message and return its sequence number within the conversation."""

        now = _utc_now_iso()
        role_value = role.value if isinstance(role, Role) else str(role)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence_number), 0) AS last FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            sequence_number = int(row["last"]) + 1
            conn.execute(
                """
                INSERT INTO messages(
                    conversation_id, sequence_number, role, content, tool_calls_json, tool_call_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    sequence_number,
                    role_value,
                    content,
                    tool_calls_to_json(tool_calls),
                    tool_call_id,
                    now,
                ),
            )
            conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
        return sequence_number

    def get_recent_messages(self, conversation_id: int, limit: int) -> list[Message]:
        """Return the last ``limit`` messages ordered by sequence number."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT sequence_number, role, content, tool_calls_json, tool_call_id
                FROM messages
                WHERE conversation_id = ?
                ORDER BY sequence_number DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [
            Message(
                role=Role(row["role"]),
                content=row["content"],
                tool_calls=tool_calls_from_json(row["tool_calls_json"]),
                tool_call_id=row["tool_call_id"],
                sequence_number=int(row["sequence_number"]),
            )
            for row in reversed(rows)
        ]

    def save_preference(
        self,
        user_id: str,
        category: str,
        key: str,
        value: Any,
        context: str | None = None,
    ) -> dict[str, Any]:
        """Merge one preference into the user's document and return the result.

        Preferences are grouped by category; an optional context note is kept
        under ``{category}_context`` with the same key.
        """

        preferences = self.get_preferences(user_id)
        section = preferences.get(category)
        if not isinstance(section, dict):
            section = preferences[category] = {}
        section[key] = value
        if context is not None:
            notes = preferences.get(f"{category}_context")
            if not isinstance(notes, dict):
                notes = preferences[f"{category}_context"] = {}
            notes[key] = context
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_preferences(user_id, preferences_json, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    preferences_json=excluded.preferences_json,
                    updated_at=excluded.updated_at
                """,
                (user_id, json.dumps(preferences), _utc_now_iso()),
            )
        return preferences

    def get_preferences(self, user_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT preferences_json FROM user_preferences WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return {}
        try:
            data = json.loads(row["preferences_json"])
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def upsert_event_metadata(
        self,
        user_id: str,
        event_id: str,
        priority: str | None = None,
        tags: list[str] | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO event_metadata(user_id, event_id, priority, tags_json, updated_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(user_id, event_id) DO UPDATE SET
                    priority=excluded.priority,
                    tags_json=excluded.tags_json,
                    updated_at=excluded.updated_at
                """,
                (user_id, event_id, priority, json.dumps(tags or []), _utc_now_iso()),
            )

    def update_event_metadata(self, user_id: str, event_id: str, fields: dict[str, Any]) -> None:
        """Overwrite only the given priority/tags fields, keeping the rest of the stored row."""
        current = self.get_event_metadata(user_id, [event_id]).get(event_id, {"priority": None, "tags": []})
        merged = {**current, **{k: v for k, v in fields.items() if k in ("priority", "tags")}}
        self.upsert_event_metadata(user_id, event_id, priority=merged["priority"], tags=merged["tags"])

    def get_event_metadata(self, user_id: str, event_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not event_ids:
            return {}
        placeholders = ", ".join("?" for _ in event_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT event_id, priority, tags_json
                FROM event_metadata
                WHERE user_id = ? AND event_id IN ({placeholders})
                """,
                (user_id, *event_ids),
            ).fetchall()
        return {
            row["event_id"]: {"priority": row["priority"], "tags": json.loads(row["tags_json"])}
            for row in rows
        }

    def delete_event_metadata(self, user_id: str, event_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM event_metadata WHERE user_id = ? AND event_id = ?",
                (user_id, event_id),
            )

    def log_tool_execution(
        self,
        user_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(user_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_name, input_json, output_json, succeeded, created_at
                FROM tool_executions
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
