"""Tests for budget-bounded context assembly.

Run with: pytest test_retriever.py -v
"""

import asyncio

import pytest

from conftest import SlowEmbedder, VocabEmbedder, make_message
from engine import ChatContextEngine
from providers import CompletionGateway, EmbeddingGateway
from retriever import CONTEXTS_HEADER, context_header
from store import InMemoryMessageStore
from utils import estimate_tokens


def excerpt_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.startswith("[") and "] " in line]


async def excerpt_costs(engine, query, chat_ids=None) -> list[int]:
    hits = await engine.index.search(query, chat_ids=chat_ids, limit=engine.config.search_fetch_limit)
    return [estimate_tokens(engine.assembler.format_excerpt(h)) for h in hits]


class TestGetRelevantContext:
    async def test_no_results_is_header_only(self, engine):
        result = await engine.get_relevant_context("budget")
        assert result == context_header("budget")

    async def test_single_oversized_excerpt_yields_header_only(self, config, completer):
        """One matching excerpt of 200 chars (~50 tokens) does not fit a 40-token budget."""
        prefix = "[Finance] A: "
        text = ("Budget review " * 20)[: 200 - len(prefix) - 1]
        store = InMemoryMessageStore()
        store.add_chat("F1", "Finance")
        store.add_message(make_message("F1", "b1", text, "A", 0, "Finance"))
        engine = ChatContextEngine(
            config,
            store,
            embedder=EmbeddingGateway([VocabEmbedder()]),
            completer=CompletionGateway([completer]),
        )
        await engine.rebuild_all()
        hits = await engine.search("budget")
        assert len(engine.assembler.format_excerpt(hits[0])) == 200

        result = await engine.get_relevant_context("budget", max_tokens=40)
        assert result == context_header("budget")
        assert excerpt_lines(result) == []

        roomy = await engine.get_relevant_context("budget", max_tokens=50)
        assert len(excerpt_lines(roomy)) == 1

    async def test_zero_budget(self, engine):
        await engine.rebuild_all()
        result = await engine.get_relevant_context("meeting", max_tokens=0)
        assert result == context_header("meeting")

    async def test_negative_budget_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.get_relevant_context("meeting", max_tokens=-1)

    async def test_greedy_stops_at_first_overflow(self, engine, store):
        for i in range(5):
            store.add_message(make_message("C2", f"b{i}", f"Budget line {i} for the project", "B", i, "Chat Two"))
        await engine.rebuild_all()
        costs = await excerpt_costs(engine, "budget project")
        budget = costs[0] + costs[1]

        result = await engine.get_relevant_context("budget project", max_tokens=budget)

        lines = excerpt_lines(result)
        assert len(lines) == 2
        body = "".join(line + "\n" for line in lines)
        assert estimate_tokens(body) <= budget

    async def test_excerpts_follow_rank_order(self, engine):
        await engine.rebuild_all()
        result = await engine.get_relevant_context("meeting time")
        lines = excerpt_lines(result)
        assert lines[0] == "[Chat One] A: Let's meet Friday at 3pm"
        assert lines[1] == "[Chat One] A: Hello there friend"

    async def test_own_messages_use_me_label(self, engine, store):
        store.add_message(make_message("C1", "m5", "Budget report is ready", "Racho Petrov", 5))
        await engine.rebuild_all()
        result = await engine.get_relevant_context("budget report")
        assert "[Chat One] Me: Budget report is ready" in result

    async def test_contexts_appended_for_requested_chats(self, engine):
        await engine.initialize()
        result = await engine.get_relevant_context("meeting", chat_ids=["C1"])
        assert CONTEXTS_HEADER in result
        assert (
            "[Chat One]\nRelationship: business\nKey topics: meeting, schedule\n"
            "Summary: Planning a Friday meeting\n"
        ) in result
        assert result.index(CONTEXTS_HEADER) > result.index("Let's meet Friday")

    async def test_no_contexts_without_chat_ids(self, engine):
        await engine.initialize()
        result = await engine.get_relevant_context("meeting")
        assert CONTEXTS_HEADER not in result

    async def test_no_contexts_when_excerpts_exhaust_budget(self, engine):
        await engine.initialize()
        costs = await excerpt_costs(engine, "meeting", ["C1"])
        result = await engine.get_relevant_context("meeting", chat_ids=["C1"], max_tokens=costs[0])
        assert len(excerpt_lines(result)) == 1
        assert CONTEXTS_HEADER not in result

    async def test_context_block_must_fit_budget(self, engine):
        await engine.initialize()
        costs = await excerpt_costs(engine, "meeting", ["C1"])
        result = await engine.get_relevant_context("meeting", chat_ids=["C1"], max_tokens=sum(costs))
        assert len(excerpt_lines(result)) == 2
        assert CONTEXTS_HEADER not in result

    async def test_chat_without_context_is_skipped(self, engine):
        await engine.rebuild_all()
        result = await engine.get_relevant_context("meeting", chat_ids=["C1"])
        assert CONTEXTS_HEADER not in result
        assert len(excerpt_lines(result)) == 2

    async def test_timeout(self, config, store, completer):
        engine = ChatContextEngine(
            config,
            store,
            embedder=EmbeddingGateway([SlowEmbedder(delay=0.5)]),
            completer=CompletionGateway([completer]),
        )
        with pytest.raises(asyncio.TimeoutError):
            await engine.get_relevant_context("meeting", timeout=0.05)
