"""
SQLite-backed chat memory store.

Table chat_memory: (namespace, memory_id, messages, updated_at), one row per
conversation. `messages` is the JSON list of serialized ChatMessage objects.
Memory ids are stored as their JSON encoding so 1 and "1" stay distinct.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, List

from aiservice.memory import ChatMemoryStore
from aiservice.models import ChatMessage
from aiservice.storage.db import connect, ensure_sqlite_dir

logger = logging.getLogger("ai-services")


def _key(memory_id: Any) -> str:
    return json.dumps(memory_id, sort_keys=True, default=str)


class SqliteChatMemoryStore(ChatMemoryStore):
    def __init__(self, db_path: str, namespace: str = "default"):
        self.db_path = db_path
        self.namespace = namespace
        self.init_db()

    def init_db(self) -> None:
        ensure_sqlite_dir(self.db_path)
        with connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=3000")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_memory (
                    namespace TEXT NOT NULL,
                    memory_id TEXT NOT NULL,
                    messages TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, memory_id)
                )
                """
            )

    def get_messages(self, memory_id: Any) -> List[ChatMessage]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT messages FROM chat_memory WHERE namespace = ? AND memory_id = ?",
                (self.namespace, _key(memory_id)),
            ).fetchone()
        if row is None:
            return []
        try:
            raw = json.loads(row["messages"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding unreadable memory for %s/%s", self.namespace, memory_id)
            return []
        return [ChatMessage.model_validate(item) for item in raw]

    def update_messages(self, memory_id: Any, messages: List[ChatMessage]) -> None:
        payload = json.dumps([m.model_dump() for m in messages])
        updated_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO chat_memory (namespace, memory_id, messages, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (namespace, memory_id)
                DO UPDATE SET messages = excluded.messages, updated_at = excluded.updated_at
                """,
                (self.namespace, _key(memory_id), payload, updated_at),
            )

    def delete_messages(self, memory_id: Any) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM chat_memory WHERE namespace = ? AND memory_id = ?",
                (self.namespace, _key(memory_id)),
            )
