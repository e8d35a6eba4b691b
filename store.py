"""SQLite persistence for messages, scheduled tasks and runtime settings.

One database file for the whole daemon. Messages are an append-only log per
group, read back in insertion order. All sqlite failures surface as
PersistenceError.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from channels import InboundMessage

log = logging.getLogger(__name__)

CONTEXT_WINDOW_SIZE = 50

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL,
    group_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    channel TEXT NOT NULL,
    is_from_me INTEGER NOT NULL DEFAULT 0,
    is_trigger INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_messages_group ON messages(group_id, seq);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL,
    schedule TEXT NOT NULL,
    prompt TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    last_run INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class PersistenceError(Exception):
    """The message/task store could not complete an operation."""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StoredMessage:
    id: str
    group_id: str
    sender: str
    content: str
    timestamp: int
    channel: str
    is_from_me: bool = False
    is_trigger: bool = False

    @classmethod
    def from_inbound(cls, msg: InboundMessage, is_trigger: bool) -> StoredMessage:
        return cls(
            id=msg.id,
            group_id=msg.group_id,
            sender=msg.sender,
            content=msg.content,
            timestamp=msg.timestamp,
            channel=msg.channel,
            is_from_me=False,
            is_trigger=is_trigger,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Task:
    group_id: str
    schedule: str
    prompt: str
    enabled: bool = True
    last_run: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Wire form used by the task-created event and the HTTP API."""
        return {
            "id": self.id,
            "groupId": self.group_id,
            "schedule": self.schedule,
            "prompt": self.prompt,
            "enabled": self.enabled,
            "lastRun": self.last_run,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            group_id=data["groupId"],
            schedule=data["schedule"],
            prompt=data["prompt"],
            enabled=bool(data.get("enabled", True)),
            last_run=data.get("lastRun"),
            created_at=data.get("createdAt") or now_ms(),
        )


@dataclass(frozen=True)
class ConversationMessage:
    role: Literal["user", "assistant"]
    content: str

    def to_internal(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content} if self.role == "user" \
            else {"role": "assistant", "text": self.content}


def build_conversation(messages: list[StoredMessage]) -> list[ConversationMessage]:
    """Project stored history onto provider turns.

    Consecutive same-role messages merge into one turn. A history that
    opens with an assistant turn (e.g. after compaction) gets a short
    user turn in front so every provider sees a user-first exchange.
    """
    turns: list[ConversationMessage] = []
    for m in messages:
        role = "assistant" if m.is_from_me else "user"
        content = m.content if m.is_from_me else _with_sender(m)
        if turns and turns[-1].role == role:
            turns[-1] = ConversationMessage(role, turns[-1].content + "\n" + content)
        else:
            turns.append(ConversationMessage(role, content))
    if turns and turns[0].role == "assistant":
        turns.insert(0, ConversationMessage("user", "(conversation resumed)"))
    return turns


def _with_sender(m: StoredMessage) -> str:
    if m.channel == "local" or m.sender in ("", "You"):
        return m.content
    return f"{m.sender}: {m.content}"


class Store:
    """Thin sqlite wrapper. Not thread-safe; used from the event loop only."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.path)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open store {self.path}: {e}") from e

    @contextmanager
    def _tx(self, what: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as e:
            log.error("Store %s failed: %s", what, e)
            raise PersistenceError(f"{what} failed: {e}") from e

    def close(self) -> None:
        self._conn.close()

    # --- Messages ---

    def add_message(self, msg: StoredMessage) -> None:
        with self._tx("add_message") as conn:
            conn.execute(
                "INSERT INTO messages (id, group_id, sender, content, timestamp, channel,"
                " is_from_me, is_trigger) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (msg.id, msg.group_id, msg.sender, msg.content, msg.timestamp,
                 msg.channel, int(msg.is_from_me), int(msg.is_trigger)),
            )

    def get_messages(self, group_id: str, limit: int | None = None) -> list[StoredMessage]:
        """Return the group's messages oldest-first; ``limit`` keeps the newest N."""
        sql = "SELECT * FROM messages WHERE group_id = ? ORDER BY seq DESC"
        params: tuple = (group_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (group_id, limit)
        with self._tx("get_messages") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_recent_messages(self, group_id: str) -> list[StoredMessage]:
        return self.get_messages(group_id, limit=CONTEXT_WINDOW_SIZE)

    def clear_messages(self, group_id: str) -> int:
        with self._tx("clear_messages") as conn:
            cur = conn.execute("DELETE FROM messages WHERE group_id = ?", (group_id,))
        return cur.rowcount

    def list_groups(self) -> list[str]:
        with self._tx("list_groups") as conn:
            rows = conn.execute(
                "SELECT group_id FROM messages GROUP BY group_id ORDER BY MAX(seq) DESC"
            ).fetchall()
        return [r["group_id"] for r in rows]

    # --- Tasks ---

    def save_task(self, task: Task) -> None:
        with self._tx("save_task") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO tasks (id, group_id, schedule, prompt, enabled,"
                " last_run, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (task.id, task.group_id, task.schedule, task.prompt,
                 int(task.enabled), task.last_run, task.created_at),
            )

    def get_task(self, task_id: str) -> Task | None:
        with self._tx("get_task") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self, group_id: str | None = None) -> list[Task]:
        with self._tx("list_tasks") as conn:
            if group_id is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE group_id = ? ORDER BY created_at", (group_id,),
                ).fetchall()
        return [_row_to_task(r) for r in rows]

    def delete_task(self, task_id: str) -> bool:
        with self._tx("delete_task") as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cur.rowcount > 0

    # --- Settings ---

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with self._tx("get_setting") as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._tx("set_setting") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value),
            )

    def all_settings(self) -> dict[str, str]:
        with self._tx("all_settings") as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
        return {r["key"]: r["value"] for r in rows}


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        group_id=row["group_id"],
        sender=row["sender"],
        content=row["content"],
        timestamp=row["timestamp"],
        channel=row["channel"],
        is_from_me=bool(row["is_from_me"]),
        is_trigger=bool(row["is_trigger"]),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        group_id=row["group_id"],
        schedule=row["schedule"],
        prompt=row["prompt"],
        enabled=bool(row["enabled"]),
        last_run=row["last_run"],
        created_at=row["created_at"],
    )
