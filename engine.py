"""
ChatContextEngine: the retrieval-augmented context engine as one object.

Wires the provider gateways, embedding index, context builder and assembler
together. Everything is constructed explicitly, so tests can inject stub
gateways and an in-memory message store.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any

import lancedb

from classifiers import Classifier, OwnSenderClassifier
from config import Config
from contexts import ContextBuilder
from db import connect
from index import EmbeddingIndex
from logging_config import get_logger
from models import ConversationContext, IndexStats, MessageRecord, RebuildReport, SearchHit
from providers import (
    CompletionGateway,
    EmbeddingGateway,
    build_completion_gateway,
    build_embedding_gateway,
)
from retriever import ContextAssembler
from store import MessageStore

logger = get_logger(__name__)


class ChatContextEngine:
    def __init__(
        self,
        config: Config,
        store: MessageStore,
        embedder: EmbeddingGateway,
        completer: CompletionGateway,
        classifier: Classifier | None = None,
        db: lancedb.DBConnection | None = None,
    ):
        self.config = config
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.db = db if db is not None else connect(config.db_path)
        classifier = classifier or OwnSenderClassifier(config.own_sender_names)
        self.index = EmbeddingIndex(config, embedder, store, db=self.db)
        self.contexts = ContextBuilder(config, self.index, completer, classifier, db=self.db)
        self.assembler = ContextAssembler(config, self.index, self.contexts, classifier)

    @property
    def is_initialized(self) -> bool:
        return self.index.is_initialized

    async def initialize(self) -> RebuildReport:
        """Rebuild the index from scratch, then rebuild every chat context."""
        started = time.monotonic()
        report = await self.index.rebuild_all()
        self.contexts.clear()
        built = await self.contexts.refresh_all(self.index.chat_ids())
        logger.info(
            "Engine initialized with %d message embeddings and %d contexts in %.1fs",
            self.index.count_messages(),
            built,
            time.monotonic() - started,
        )
        return report

    async def rebuild_all(self) -> RebuildReport:
        """Rebuild the index and drop stored contexts; `initialize` also rebuilds them."""
        report = await self.index.rebuild_all()
        self.contexts.clear()
        return report

    async def ingest(self, message: MessageRecord | dict[str, Any]) -> bool:
        """Index one new message and schedule a context refresh for its chat."""
        if isinstance(message, dict):
            message = MessageRecord.model_validate(message)
        inserted = await self.index.upsert_message(message)
        if inserted:
            self.contexts.schedule_refresh(message.chat_id)
        return inserted

    async def search(
        self,
        query: str,
        chat_ids: Sequence[str] | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchHit]:
        return await self.index.search(query, chat_ids=chat_ids, limit=limit, timeout=timeout)

    async def get_relevant_context(
        self,
        query: str,
        chat_ids: Sequence[str] | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> str:
        return await self.assembler.get_relevant_context(
            query, chat_ids=chat_ids, max_tokens=max_tokens, timeout=timeout
        )

    async def refresh_context(self, chat_id: str) -> ConversationContext | None:
        return await self.contexts.refresh_context(chat_id)

    def get_stats(self) -> IndexStats:
        return IndexStats(
            total_messages=self.index.count_messages(),
            total_chats=self.index.count_chats(),
            total_contexts=self.contexts.count_contexts(),
        )

    async def health(self) -> dict[str, Any]:
        return {
            "embedding": await self.embedder.health(),
            "completion": await self.completer.health(),
            "initialized": self.is_initialized,
            "index_dimension": self.index.dimension,
        }

    async def close(self) -> None:
        await self.contexts.drain()


def build_engine(config: Config, store: MessageStore) -> ChatContextEngine:
    """Build an engine with provider chains taken from config."""
    return ChatContextEngine(
        config,
        store,
        embedder=build_embedding_gateway(config),
        completer=build_completion_gateway(config),
    )
