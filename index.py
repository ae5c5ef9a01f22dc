"""
Embedding index over chat messages.

Owns the `message_embeddings` LanceDB table: one row per (chat_id, message_id),
never mutated, cleared only by a full rebuild. Ranking is exact cosine
similarity computed with numpy over the candidate rows, ordered by
similarity desc, then timestamp desc, then id desc.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Sequence
from typing import Any

import lancedb
import numpy as np
import pyarrow as pa
import pyarrow.compute as pc

from config import Config
from db import connect, open_or_create_table, recreate_table, vector_dimension
from logging_config import get_logger
from models import (
    EmbeddedMessage,
    MessageRecord,
    RebuildReport,
    SearchHit,
    embedded_message_schema,
    message_key,
)
from providers import EmbeddingGateway
from store import MessageStore
from utils import cosine_similarities, escape_filter_value, now_iso, to_iso

logger = get_logger(__name__)

# Row columns without the vector, for reads that only need message metadata
MESSAGE_COLUMNS = ["id", "chat_id", "message_id", "text", "sender_name", "timestamp", "chat_title"]


class IndexInconsistencyError(ValueError):
    """A vector's width does not match the index dimensionality."""


class EmbeddingIndex:
    """Searchable vector index of chat messages."""

    def __init__(
        self,
        config: Config,
        embedder: EmbeddingGateway,
        store: MessageStore,
        db: lancedb.DBConnection | None = None,
    ):
        self.config = config
        self.embedder = embedder
        self.store = store
        self.db = db if db is not None else connect(config.db_path)
        self.dimension = config.embedding_dim
        self.is_initialized = False
        self._write_lock = threading.RLock()
        self._rebuild_task: asyncio.Task | None = None
        self._table = self._open_table()

    def _open_table(self) -> lancedb.table.Table:
        name = self.config.messages_table
        table = open_or_create_table(self.db, name, embedded_message_schema(self.dimension))
        existing = vector_dimension(table)
        if existing is None or existing == self.dimension:
            return table
        if table.count_rows() == 0:
            logger.warning(
                "Empty index %s has %d-dim vectors, recreating with %d", name, existing, self.dimension
            )
            return recreate_table(self.db, name, embedded_message_schema(self.dimension))
        logger.warning(
            "Index %s holds %d-dim vectors but EMBEDDING_DIM=%d; keeping %d until a rebuild "
            "with matching configuration",
            name,
            existing,
            self.dimension,
            existing,
        )
        self.dimension = existing
        return table

    # =========================================================================
    # Text preparation
    # =========================================================================

    def is_indexable(self, text: str | None) -> bool:
        """Short texts carry no retrievable signal and are never embedded."""
        return bool(text) and len(text.strip()) > self.config.min_text_length

    @staticmethod
    def prepare_text(message: MessageRecord) -> str:
        """Text sent to the embedding provider, with chat and sender context."""
        return (
            f"Chat: {message.chat_title or message.chat_id}\n"
            f"Sender: {message.sender_name or 'Unknown'}\n"
            f"Message: {message.text.strip()}"
        )

    def _with_title(self, message: MessageRecord) -> MessageRecord:
        if message.chat_title:
            return message
        chat = self.store.get_chat(message.chat_id)
        return message.model_copy(update={"chat_title": chat.title if chat else message.chat_id})

    # =========================================================================
    # Writes
    # =========================================================================

    def _exists(self, key: str) -> bool:
        return self._table.count_rows(f"id = '{escape_filter_value(key)}'") > 0

    def contains(self, chat_id: str, message_id: str) -> bool:
        return self._exists(message_key(chat_id, message_id))

    def _insert(self, message: MessageRecord, vector: Sequence[float]) -> bool:
        """Store one row; False if the key is already present."""
        if len(vector) != self.dimension:
            raise IndexInconsistencyError(
                f"Vector has {len(vector)} dims, index expects {self.dimension}"
            )
        schema = embedded_message_schema(self.dimension)
        row = schema(
            id=message.key,
            chat_id=message.chat_id,
            message_id=message.message_id,
            text=message.text,
            sender_name=message.sender_name,
            timestamp=to_iso(message.timestamp),
            chat_title=message.chat_title,
            vector=list(vector),
            indexed_at=now_iso(),
        )
        with self._write_lock:
            # Re-check under the lock: another upsert may have won the race
            if self._exists(message.key):
                return False
            self._table.add([row.model_dump()])
        return True

    async def upsert_message(self, message: MessageRecord | dict[str, Any]) -> bool:
        """Embed and store one message.

        No-op (returns False) for short texts and for keys already indexed;
        messages are immutable so re-embedding would be wasted work.

        Raises:
            EmbeddingUnavailable: no provider could embed the message.
            IndexInconsistencyError: provider returned a vector of the wrong width.
        """
        if isinstance(message, dict):
            message = MessageRecord.model_validate(message)
        if not self.is_indexable(message.text):
            logger.debug("Skipping short message %s in chat %s", message.message_id, message.chat_id)
            return False
        if self._exists(message.key):
            return False

        message = self._with_title(message)
        vector = await self.embedder.embed(self.prepare_text(message))
        inserted = self._insert(message, vector)
        if inserted:
            logger.debug("Indexed message %s in chat %s", message.message_id, message.chat_title)
        return inserted

    def clear(self) -> None:
        with self._write_lock:
            self._table.delete("id IS NOT NULL")

    def _reset_table(self) -> None:
        """Empty the index, recreating it at the configured width if that changed."""
        with self._write_lock:
            if self.dimension == self.config.embedding_dim:
                self._table.delete("id IS NOT NULL")
                return
            logger.info(
                "Recreating index %s: %d -> %d dims",
                self.config.messages_table,
                self.dimension,
                self.config.embedding_dim,
            )
            self._table = recreate_table(
                self.db, self.config.messages_table, embedded_message_schema(self.config.embedding_dim)
            )
            self.dimension = self.config.embedding_dim

    # =========================================================================
    # Rebuild
    # =========================================================================

    async def rebuild_all(self) -> RebuildReport:
        """Clear the index and re-embed every chat's history.

        Single-flight: a call made while a rebuild is running joins it.
        """
        if self._rebuild_task is not None and not self._rebuild_task.done():
            logger.info("Rebuild already in progress, waiting for it")
            return await asyncio.shield(self._rebuild_task)
        self._rebuild_task = asyncio.create_task(self._rebuild())
        return await asyncio.shield(self._rebuild_task)

    async def _rebuild(self) -> RebuildReport:
        started = time.monotonic()
        self.is_initialized = False
        self._reset_table()
        logger.info("Rebuilding embedding index")

        workers_count = max(1, self.config.embed_workers)
        queue: asyncio.Queue[MessageRecord | None] = asyncio.Queue(maxsize=max(1, self.config.queue_size))
        counts = {"indexed": 0, "skipped": 0, "failed": 0}

        async def produce() -> None:
            chats = await asyncio.to_thread(self.store.list_chats)
            for chat in chats:
                messages = await asyncio.to_thread(self.store.list_messages, chat.chat_id)
                logger.info("Processing chat: %s (%s, %d messages)", chat.title, chat.chat_id, len(messages))
                for message in messages:
                    if not self.is_indexable(message.text):
                        counts["skipped"] += 1
                        continue
                    if not message.chat_title:
                        message = message.model_copy(update={"chat_title": chat.title})
                    await queue.put(message)  # blocks while workers are behind
            for _ in range(workers_count):
                await queue.put(None)

        async def work() -> None:
            while True:
                message = await queue.get()
                try:
                    if message is None:
                        return
                    vector = await self.embedder.embed(self.prepare_text(message))
                    if self._insert(message, vector):
                        counts["indexed"] += 1
                    else:
                        counts["skipped"] += 1
                except Exception as e:  # one bad message must not abort the rebuild
                    counts["failed"] += 1
                    logger.warning(
                        "Failed to index message %s in chat %s: %s", message.message_id, message.chat_id, e
                    )
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(work()) for _ in range(workers_count)]
        try:
            await produce()
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            raise

        self.is_initialized = True
        report = RebuildReport(duration_seconds=round(time.monotonic() - started, 3), **counts)
        logger.info(
            "Index rebuilt: %d indexed, %d skipped, %d failed in %.1fs",
            report.indexed,
            report.skipped,
            report.failed,
            report.duration_seconds,
        )
        return report

    # =========================================================================
    # Reads
    # =========================================================================

    def _rows(self, chat_ids: Sequence[str] | None = None) -> pa.Table:
        table = self._table.to_arrow()
        if chat_ids:
            mask = pc.is_in(table["chat_id"], value_set=pa.array(list(chat_ids), type=pa.string()))
            table = table.filter(mask)
        return table

    async def search(
        self,
        query: str,
        chat_ids: Sequence[str] | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchHit]:
        """Rank indexed messages by cosine similarity to `query`.

        An empty or missing `chat_ids` searches every chat. Returns [] for an
        empty index; provider failures raise EmbeddingUnavailable.
        """
        if not query or not query.strip():
            raise ValueError("Query must not be empty")
        limit = self.config.default_limit if limit is None else limit
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        if timeout is not None:
            return await asyncio.wait_for(self._search(query, chat_ids, limit), timeout=timeout)
        return await self._search(query, chat_ids, limit)

    async def _search(self, query: str, chat_ids: Sequence[str] | None, limit: int) -> list[SearchHit]:
        query_vector = await self.embedder.embed(query, query=True)
        if len(query_vector) != self.dimension:
            raise IndexInconsistencyError(
                f"Query vector has {len(query_vector)} dims, index expects {self.dimension}"
            )

        candidates = self._rows(chat_ids)
        if candidates.num_rows == 0:
            return []

        matrix = np.asarray(candidates.column("vector").to_pylist(), dtype=np.float64)
        sims = cosine_similarities(matrix, np.asarray(query_vector, dtype=np.float64))
        timestamps = candidates.column("timestamp").to_pylist()
        ids = candidates.column("id").to_pylist()
        order = sorted(
            range(candidates.num_rows),
            key=lambda i: (float(sims[i]), timestamps[i], ids[i]),
            reverse=True,
        )[:limit]

        rows = candidates.take(pa.array(order, type=pa.int64())).to_pylist()
        return [
            SearchHit(message=EmbeddedMessage.from_row(row), similarity=float(sims[i]))
            for row, i in zip(rows, order)
        ]

    def messages_for_chat(self, chat_id: str, limit: int | None = None) -> list[EmbeddedMessage]:
        """Indexed messages of one chat, newest-first. Vectors are not loaded."""
        total = self.count_messages(chat_id)
        if total == 0:
            return []
        rows = (
            self._table.search()
            .where(f"chat_id = '{escape_filter_value(chat_id)}'")
            .select(MESSAGE_COLUMNS)
            .limit(total)
            .to_list()
        )
        rows.sort(key=lambda r: (r["timestamp"], r["message_id"]), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [EmbeddedMessage.from_row(row) for row in rows]

    def count_messages(self, chat_id: str | None = None) -> int:
        if chat_id is None:
            return self._table.count_rows()
        return self._table.count_rows(f"chat_id = '{escape_filter_value(chat_id)}'")

    def chat_ids(self) -> list[str]:
        column = self._table.to_arrow().column("chat_id")
        return sorted(pc.unique(column).to_pylist())

    def count_chats(self) -> int:
        return len(self.chat_ids())
