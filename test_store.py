"""Tests for the read-only message store adapters.

Run with: pytest test_store.py -v
"""

import sqlite3
from datetime import datetime, timezone

import pytest

from conftest import make_message
from store import InMemoryMessageStore, SQLiteMessageStore


@pytest.fixture
def sqlite_path(tmp_path):
    path = tmp_path / "messages.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE telegram_chats (chat_id TEXT PRIMARY KEY, title TEXT);
        CREATE TABLE telegram_messages (
            chat_id TEXT, message_id TEXT, sender_name TEXT, text TEXT, timestamp
        );
        """
    )
    conn.executemany(
        "INSERT INTO telegram_chats VALUES (?, ?)",
        [("100", "Work"), ("200", None)],
    )
    conn.executemany(
        "INSERT INTO telegram_messages VALUES (?, ?, ?, ?, ?)",
        [
            ("100", "1", "Alice", "Project deadline is Friday", "2025-03-01T09:00:00Z"),
            ("100", "2", None, "Invoice sent to the client", "2025-03-01T10:30:00+00:00"),
            ("100", "3", "Bob", None, 1740834000),
            ("200", "7", "Carol", "Family dinner this weekend", "2025-02-01T08:00:00"),
            ("200", "", "Dave", "row without an id", "2025-02-01T09:00:00"),
        ],
    )
    conn.commit()
    conn.close()
    return path


class TestSQLiteMessageStore:
    def test_list_chats(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        chats = store.list_chats()
        assert [(c.chat_id, c.title) for c in chats] == [("100", "Work"), ("200", "")]

    def test_get_chat(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        assert store.get_chat("100").title == "Work"
        assert store.get_chat("999") is None

    def test_messages_newest_first(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        messages = store.list_messages("100")
        assert [m.message_id for m in messages] == ["3", "2", "1"]
        assert all(m.chat_title == "Work" for m in messages)

    def test_timestamps_normalized_to_utc(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        by_id = {m.message_id: m for m in store.list_messages("100")}
        assert by_id["1"].timestamp == datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert by_id["3"].timestamp == datetime.fromtimestamp(1740834000, tz=timezone.utc)

    def test_null_text_becomes_empty(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        by_id = {m.message_id: m for m in store.list_messages("100")}
        assert by_id["3"].text == ""
        assert by_id["2"].sender_name is None

    def test_invalid_rows_are_skipped(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        messages = store.list_messages("200")
        assert [m.message_id for m in messages] == ["7"]
        assert messages[0].chat_title == "200"

    def test_all_messages(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        assert len(store.list_messages()) == 4

    def test_store_is_read_only(self, sqlite_path):
        store = SQLiteMessageStore(sqlite_path)
        with pytest.raises(sqlite3.OperationalError):
            store.conn.execute("DELETE FROM telegram_messages")
        store.close()


class TestInMemoryMessageStore:
    def test_add_message_creates_chat(self):
        store = InMemoryMessageStore()
        store.add_message(make_message("C9", "1", "Hello there friend", title="Friends"))
        assert store.get_chat("C9").title == "Friends"

    def test_add_message_from_dict(self):
        store = InMemoryMessageStore()
        message = store.add_message(
            {"chat_id": 42, "message_id": 7, "text": None, "timestamp": "2025-03-01T09:00:00"}
        )
        assert message.chat_id == "42"
        assert message.message_id == "7"
        assert message.text == ""
        assert message.timestamp.tzinfo is not None

    def test_newest_first(self, store):
        assert [m.message_id for m in store.list_messages("C1")] == ["m3", "m2", "m1"]

    def test_unknown_chat(self, store):
        assert store.list_messages("nope") == []
        assert store.get_chat("nope") is None

    def test_same_key_replaces(self, store):
        store.add_message(make_message("C1", "m1", "Edited hello there", minutes=0, title="Chat One"))
        assert len(store.list_messages("C1")) == 3
