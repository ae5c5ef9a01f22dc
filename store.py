"""
Read-only message store adapters.

The engine never writes to the message store. `list_messages` always returns
messages newest-first; records that fail validation are logged and skipped.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from logging_config import get_logger
from models import Chat, MessageRecord

logger = get_logger(__name__)


class MessageStore(Protocol):
    def list_chats(self) -> list[Chat]: ...

    def get_chat(self, chat_id: str) -> Chat | None: ...

    def list_messages(self, chat_id: str | None = None) -> list[MessageRecord]: ...


def _newest_first(messages: Iterable[MessageRecord]) -> list[MessageRecord]:
    return sorted(messages, key=lambda m: (m.timestamp, m.message_id), reverse=True)


class InMemoryMessageStore:
    """Dictionary-backed store, used for embedding the engine and for tests."""

    def __init__(self) -> None:
        self._chats: dict[str, Chat] = {}
        self._messages: dict[str, dict[str, MessageRecord]] = {}

    def add_chat(self, chat_id: str, title: str) -> Chat:
        chat = Chat(chat_id=chat_id, title=title)
        self._chats[chat.chat_id] = chat
        self._messages.setdefault(chat.chat_id, {})
        return chat

    def add_message(self, message: MessageRecord | dict[str, Any]) -> MessageRecord:
        if isinstance(message, dict):
            message = MessageRecord.model_validate(message)
        if message.chat_id not in self._chats:
            self.add_chat(message.chat_id, message.chat_title or message.chat_id)
        self._messages[message.chat_id][message.message_id] = message
        return message

    def list_chats(self) -> list[Chat]:
        return list(self._chats.values())

    def get_chat(self, chat_id: str) -> Chat | None:
        return self._chats.get(chat_id)

    def list_messages(self, chat_id: str | None = None) -> list[MessageRecord]:
        if chat_id is not None:
            return _newest_first(self._messages.get(chat_id, {}).values())
        return _newest_first(m for msgs in self._messages.values() for m in msgs.values())


class SQLiteMessageStore:
    """Read-only view over `telegram_chats` / `telegram_messages` tables."""

    def __init__(
        self,
        db_path: Path,
        chats_table: str = "telegram_chats",
        messages_table: str = "telegram_messages",
    ) -> None:
        self.db_path = Path(db_path)
        self.chats_table = chats_table
        self.messages_table = messages_table
        # Read-only URI; the ingestion side owns the file.
        self.conn = sqlite3.connect(
            f"file:{self.db_path}?mode=ro", uri=True, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def list_chats(self) -> list[Chat]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT chat_id, title FROM {self.chats_table} ORDER BY chat_id"
            ).fetchall()
        return [Chat(chat_id=row["chat_id"], title=row["title"] or "") for row in rows]

    def get_chat(self, chat_id: str) -> Chat | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT chat_id, title FROM {self.chats_table} WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return Chat(chat_id=row["chat_id"], title=row["title"] or "") if row else None

    def list_messages(self, chat_id: str | None = None) -> list[MessageRecord]:
        query = (
            f"SELECT m.chat_id, m.message_id, m.sender_name, m.text, m.timestamp, c.title "
            f"FROM {self.messages_table} m "
            f"LEFT JOIN {self.chats_table} c ON c.chat_id = m.chat_id"
        )
        params: tuple[Any, ...] = ()
        if chat_id is not None:
            query += " WHERE m.chat_id = ?"
            params = (chat_id,)
        query += " ORDER BY m.timestamp DESC"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        messages = []
        for row in rows:
            try:
                messages.append(
                    MessageRecord(
                        chat_id=row["chat_id"],
                        message_id=row["message_id"],
                        sender_name=row["sender_name"],
                        text=row["text"],
                        timestamp=_parse_timestamp(row["timestamp"]),
                        chat_title=row["title"] or row["chat_id"],
                    )
                )
            except (ValidationError, ValueError) as e:
                logger.warning("Skipping invalid message row %s: %s", row["message_id"], e)
        return _newest_first(messages)


def _parse_timestamp(value: Any) -> datetime:
    """SQLite timestamps arrive as epoch seconds or ISO strings."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"Unsupported timestamp: {value!r}")
