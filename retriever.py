"""
Context assembly for downstream LLM analysis.

Greedy, budget-bounded: excerpts are appended in rank order until the next
one would push the token estimate past `max_tokens`. The header is free. If
the best excerpt alone is over budget, the result is the header only (no
"at least one excerpt" guarantee).
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from classifiers import Classifier, OwnSenderClassifier, speaker_label
from config import Config
from contexts import ContextBuilder
from index import EmbeddingIndex
from models import ConversationContext, SearchHit
from utils import estimate_tokens

CONTEXTS_HEADER = "\nCurrent conversation contexts:\n\n"


def context_header(query: str) -> str:
    return f'Relevant conversation context for: "{query}"\n\n'


class ContextAssembler:
    """Merges index search hits with conversation contexts under a token budget."""

    def __init__(
        self,
        config: Config,
        index: EmbeddingIndex,
        contexts: ContextBuilder,
        classifier: Classifier | None = None,
    ):
        self.config = config
        self.index = index
        self.contexts = contexts
        self.classifier = classifier or OwnSenderClassifier(config.own_sender_names)

    def format_excerpt(self, hit: SearchHit) -> str:
        m = hit.message
        sender = speaker_label(m.sender_name, self.classifier, self.config.own_speaker_label)
        return f"[{m.chat_title}] {sender}: {m.text}\n"

    @staticmethod
    def format_context(context: ConversationContext) -> str:
        return (
            f"[{context.chat_title}]\n"
            f"Relationship: {context.relationship}\n"
            f"Key topics: {', '.join(context.key_topics)}\n"
            f"Summary: {context.summary}\n\n"
        )

    async def get_relevant_context(
        self,
        query: str,
        chat_ids: Sequence[str] | None = None,
        max_tokens: int | None = None,
        include_contexts: bool = True,
        timeout: float | None = None,
    ) -> str:
        """Assemble excerpts (and chat contexts when `chat_ids` is given) for `query`.

        Never raises for "no results"; provider failures propagate.
        """
        max_tokens = self.config.default_max_tokens if max_tokens is None else max_tokens
        if max_tokens < 0:
            raise ValueError(f"max_tokens must not be negative, got {max_tokens}")
        coro = self._assemble(query, chat_ids, max_tokens, include_contexts)
        if timeout is not None:
            return await asyncio.wait_for(coro, timeout=timeout)
        return await coro

    async def _assemble(
        self,
        query: str,
        chat_ids: Sequence[str] | None,
        max_tokens: int,
        include_contexts: bool,
    ) -> str:
        hits = await self.index.search(query, chat_ids=chat_ids, limit=self.config.search_fetch_limit)

        parts = [context_header(query)]
        used = 0
        budget_exhausted = False
        for hit in hits:
            entry = self.format_excerpt(hit)
            cost = estimate_tokens(entry)
            if used + cost > max_tokens:
                budget_exhausted = True
                break
            parts.append(entry)
            used += cost

        if include_contexts and chat_ids and not budget_exhausted:
            blocks = []
            for chat_id in dict.fromkeys(chat_ids):
                context = self.contexts.get_context(chat_id)
                if context is None:
                    continue
                block = self.format_context(context)
                cost = estimate_tokens(block)
                if used + cost > max_tokens:
                    break
                blocks.append(block)
                used += cost
            if blocks:
                parts.append(CONTEXTS_HEADER)
                parts.extend(blocks)

        return "".join(parts)
