"""
Per-chat conversation contexts (summary, key topics, relationship).

A context is always re-derived from the most recent window of indexed
messages and upserted whole. Refreshes of one chat are serialized; different
chats refresh independently.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

import lancedb

from classifiers import Classifier, OwnSenderClassifier, speaker_label
from config import Config
from db import open_or_create_table
from index import EmbeddingIndex
from logging_config import get_logger
from models import (
    UNKNOWN_RELATIONSHIP,
    ConversationContext,
    ConversationContextRow,
    EmbeddedMessage,
    normalize_relationship,
)
from providers import (
    ChatMessage,
    CompletionGateway,
    CompletionOptions,
    CompletionUnavailable,
    MalformedStructuredResponse,
)
from utils import escape_filter_value

logger = get_logger(__name__)

ANALYSIS_PROMPT = """You are a conversation analyst. Analyze the conversation and respond with JSON only:
{
  "summary": "Brief summary of what the conversation is about",
  "keyTopics": ["topic1", "topic2", "topic3"],
  "relationship": "one of: business, personal, family, friendly, support, unknown"
}"""

ANALYSIS_OPTIONS = CompletionOptions(temperature=0.3, max_tokens=500, expect_json=True)


def fallback_context(chat_id: str, chat_title: str, message_count: int) -> ConversationContext:
    """Deterministic context used when the completion chain cannot answer."""
    return ConversationContext(
        chat_id=chat_id,
        chat_title=chat_title,
        summary=f"Conversation in {chat_title}",
        key_topics=(),
        relationship=UNKNOWN_RELATIONSHIP,
        message_count=message_count,
        last_updated=datetime.now(timezone.utc),
    )


def normalize_topics(value: Any, limit: int) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    topics: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        topic = item.strip()
        if topic and topic.casefold() not in {t.casefold() for t in topics}:
            topics.append(topic)
    return tuple(topics[:limit])


class ContextBuilder:
    """Derives and refreshes ConversationContext rows from the index."""

    def __init__(
        self,
        config: Config,
        index: EmbeddingIndex,
        completer: CompletionGateway,
        classifier: Classifier | None = None,
        db: lancedb.DBConnection | None = None,
    ):
        self.config = config
        self.index = index
        self.completer = completer
        self.classifier = classifier or OwnSenderClassifier(config.own_sender_names)
        self.db = db if db is not None else index.db
        self._table = open_or_create_table(self.db, config.contexts_table, ConversationContextRow)
        self._write_lock = threading.RLock()
        self._chat_locks: dict[str, asyncio.Lock] = {}
        self._queued: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        return self._chat_locks.setdefault(chat_id, asyncio.Lock())

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh_context(self, chat_id: str) -> ConversationContext | None:
        """Re-derive and upsert the context of one chat.

        Returns None (and writes nothing) when the chat has no indexed messages.
        Completion failures degrade to `fallback_context`.
        """
        async with self._lock_for(chat_id):
            return await self._refresh(chat_id)

    async def on_message_indexed(self, chat_id: str) -> ConversationContext | None:
        """Hook for the ingestion path, called after a successful upsert."""
        return await self.refresh_context(chat_id)

    async def _refresh(self, chat_id: str) -> ConversationContext | None:
        message_count = self.index.count_messages(chat_id)
        if message_count == 0:
            logger.debug("No indexed messages for chat %s, skipping context", chat_id)
            return None

        window = self.index.messages_for_chat(chat_id, limit=self.config.context_window)
        title = window[0].chat_title or chat_id

        try:
            analysis = await self.completer.complete_json(self._prompt(title, window), ANALYSIS_OPTIONS)
            context = self._from_analysis(chat_id, title, message_count, analysis)
        except (CompletionUnavailable, MalformedStructuredResponse) as e:
            logger.warning("Context analysis failed for chat %s, using fallback: %s", title, e)
            context = fallback_context(chat_id, title, message_count)

        self._upsert(context)
        logger.info("Built context for chat: %s (%d messages)", title, message_count)
        return context

    def _prompt(self, title: str, window: Sequence[EmbeddedMessage]) -> list[ChatMessage]:
        # window is newest-first; the transcript reads oldest-first
        transcript = "\n".join(
            f"{speaker_label(m.sender_name, self.classifier, self.config.own_speaker_label)}: {m.text}"
            for m in reversed(window)
        )
        return [
            {"role": "system", "content": ANALYSIS_PROMPT},
            {"role": "user", "content": f"Chat: {title}\n\nRecent messages:\n{transcript}"},
        ]

    def _from_analysis(
        self, chat_id: str, title: str, message_count: int, analysis: dict[str, Any]
    ) -> ConversationContext:
        summary = analysis.get("summary")
        summary = summary.strip() if isinstance(summary, str) else ""
        topics = analysis.get("keyTopics", analysis.get("key_topics"))
        return ConversationContext(
            chat_id=chat_id,
            chat_title=title,
            summary=summary or f"Conversation in {title}",
            key_topics=normalize_topics(topics, self.config.max_topics),
            relationship=normalize_relationship(analysis.get("relationship")),
            message_count=message_count,
            last_updated=datetime.now(timezone.utc),
        )

    def _upsert(self, context: ConversationContext) -> None:
        with self._write_lock:
            (
                self._table.merge_insert("chat_id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute([context.to_row()])
            )

    async def refresh_all(self, chat_ids: Iterable[str]) -> int:
        """Refresh many chats with bounded parallelism; returns contexts written."""
        semaphore = asyncio.Semaphore(max(1, self.config.refresh_concurrency))

        async def one(chat_id: str) -> bool:
            async with semaphore:
                return await self.refresh_context(chat_id) is not None

        results = await asyncio.gather(*(one(chat_id) for chat_id in chat_ids))
        return sum(results)

    # =========================================================================
    # Background refresh
    # =========================================================================

    def schedule_refresh(self, chat_id: str) -> asyncio.Task | None:
        """Fire-and-forget refresh. A chat already waiting for a refresh is not queued twice."""
        if chat_id in self._queued:
            return None
        self._queued.add(chat_id)
        task = asyncio.create_task(self._scheduled_refresh(chat_id))
        self._tasks.add(task)
        task.add_done_callback(self._on_refresh_done)
        return task

    async def _scheduled_refresh(self, chat_id: str) -> ConversationContext | None:
        started = False
        try:
            async with self._lock_for(chat_id):
                # From here on, new messages need a new refresh
                self._queued.discard(chat_id)
                started = True
                return await self._refresh(chat_id)
        finally:
            if not started:
                self._queued.discard(chat_id)

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background context refresh failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for all scheduled refreshes to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_context(self, chat_id: str) -> ConversationContext | None:
        rows = (
            self._table.search()
            .where(f"chat_id = '{escape_filter_value(chat_id)}'")
            .limit(1)
            .to_list()
        )
        return ConversationContext.from_row(rows[0]) if rows else None

    def list_contexts(self) -> list[ConversationContext]:
        rows = self._table.to_arrow().to_pylist()
        return sorted((ConversationContext.from_row(r) for r in rows), key=lambda c: c.chat_id)

    def count_contexts(self) -> int:
        return self._table.count_rows()

    def clear(self) -> None:
        with self._write_lock:
            self._table.delete("chat_id IS NOT NULL")
