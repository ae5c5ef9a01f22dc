#!/usr/bin/env python3
"""
Chat RAG MCP Server - semantic search and conversation context over chat history

Provides:
- FastMCP tools over stdio
- LanceDB message embedding index with exact cosine ranking
- Ollama local embeddings/completions with OpenAI-compatible and Google Gemini fallback
- Per-chat rolling conversation contexts (summary, topics, relationship)
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from config import CONFIG
from engine import ChatContextEngine, build_engine
from index import IndexInconsistencyError
from logging_config import get_logger, setup_logging
from providers import EmbeddingUnavailable
from store import InMemoryMessageStore, MessageStore, SQLiteMessageStore
from utils import from_iso

logger = get_logger(__name__)

# =============================================================================
# Engine (Lazy Singleton)
# =============================================================================

_lock = threading.RLock()
_engine: ChatContextEngine | None = None
_startup_task: asyncio.Task | None = None


def _build_store() -> MessageStore:
    if CONFIG.message_db_path is not None:
        return SQLiteMessageStore(CONFIG.message_db_path)
    logger.info("CHAT_RAG_MESSAGE_DB not set, using an in-memory message store")
    return InMemoryMessageStore()


def get_engine() -> ChatContextEngine:
    """Get or create the engine singleton (thread-safe)."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:  # Double-check after acquiring lock
                _engine = build_engine(CONFIG, _build_store())
    return _engine


def _clamp_limit(limit: int) -> str | None:
    if limit <= 0:
        return f"Error: limit must be positive, got {limit}"
    if limit > CONFIG.max_limit:
        return f"Error: limit cannot exceed {CONFIG.max_limit}, got {limit}"
    return None


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "chat-rag",
    instructions="Semantic search and conversation context over indexed chat history",
)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_search(query: str, chat_ids: list[str] | None = None, limit: int = 10) -> str:
    """Semantic search over indexed chat messages, ranked by cosine similarity.

    Args:
        query: Natural language query
        chat_ids: Optional list of chat IDs to restrict the search to
        limit: Max results (default 10, max 50)
    """
    if not query.strip():
        return "Error: query is required"
    error = _clamp_limit(limit)
    if error:
        return error

    engine = get_engine()
    try:
        hits = await engine.search(query, chat_ids=chat_ids, limit=limit)
    except EmbeddingUnavailable as e:
        return f"Error: Semantic search unavailable: {e}"
    except IndexInconsistencyError as e:
        return f"Error: Index configuration mismatch: {e}"

    if not hits:
        scope = f"chats {', '.join(chat_ids)}" if chat_ids else "all chats"
        note = "" if engine.is_initialized else " (index not initialized yet)"
        return f"No messages found for '{query}' in {scope}{note}"

    lines = [f"Found {len(hits)} messages:\n"]
    for i, hit in enumerate(hits, 1):
        m = hit.message
        lines.append(f"[{i}] {m.chat_title} (chat {m.chat_id}, message {m.message_id})")
        lines.append(f"    {m.sender_name or 'Unknown'}: {m.text}")
        lines.append(f"    {m.timestamp.isoformat()[:19]} | Similarity: {hit.similarity:.0%}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_context(query: str, chat_ids: list[str] | None = None, max_tokens: int = 4000) -> str:
    """Assemble the most relevant history excerpts for a query within a token budget.

    Args:
        query: What the context is needed for
        chat_ids: Optional chats to restrict to; their conversation summaries are appended
        max_tokens: Approximate token budget (characters / 4)
    """
    if not query.strip():
        return "Error: query is required"
    if max_tokens < 0:
        return f"Error: max_tokens must not be negative, got {max_tokens}"
    try:
        return await get_engine().get_relevant_context(query, chat_ids=chat_ids, max_tokens=max_tokens)
    except EmbeddingUnavailable as e:
        return f"Error: Context retrieval unavailable: {e}"
    except IndexInconsistencyError as e:
        return f"Error: Index configuration mismatch: {e}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_index_message(
    chat_id: str,
    message_id: str,
    text: str,
    sender_name: str | None = None,
    timestamp: str | None = None,
    chat_title: str = "",
) -> str:
    """Index a newly received message and refresh its chat context in the background.

    Args:
        chat_id: Chat identifier
        message_id: Message identifier, unique within the chat
        text: Message text (texts of 10 characters or fewer are not indexed)
        sender_name: Optional sender display name
        timestamp: ISO 8601 timestamp (defaults to now, UTC)
        chat_title: Chat display title
    """
    engine = get_engine()
    try:
        sent_at = from_iso(timestamp) if timestamp else datetime.now(timezone.utc)
        payload = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "sender_name": sender_name,
            "timestamp": sent_at,
            "chat_title": chat_title,
        }
        if isinstance(engine.store, InMemoryMessageStore):
            engine.store.add_message(payload)
        inserted = await engine.ingest(payload)
    except (ValidationError, ValueError) as e:
        return f"Error: Invalid message: {e}"
    except EmbeddingUnavailable as e:
        return f"Error: Failed to generate embedding: {e}"

    if inserted:
        return f"Indexed message {message_id} in chat {chat_id}"
    return f"Skipped message {message_id} (too short or already indexed)"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_refresh_context(chat_id: str) -> str:
    """Re-derive the conversation context (summary, topics, relationship) of one chat.

    Args:
        chat_id: Chat identifier
    """
    context = await get_engine().refresh_context(chat_id)
    if context is None:
        return f"No indexed messages for chat {chat_id}"
    topics = ", ".join(context.key_topics) or "-"
    return "\n".join(
        [
            f"Context for {context.chat_title} ({context.message_count} messages)",
            f"Relationship: {context.relationship}",
            f"Key topics: {topics}",
            f"Summary: {context.summary}",
        ]
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def chat_rebuild() -> str:
    """Rebuild the whole embedding index and every conversation context from the message store."""
    report = await get_engine().initialize()
    return (
        f"Rebuilt index: {report.indexed} indexed, {report.skipped} skipped, "
        f"{report.failed} failed in {report.duration_seconds:.1f}s"
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_stats() -> str:
    """Get index statistics - messages, chats, contexts."""
    engine = get_engine()
    stats = engine.get_stats()
    lines = [
        "=== Chat RAG Statistics ===",
        f"Messages: {stats.total_messages}",
        f"Chats: {stats.total_chats}",
        f"Contexts: {stats.total_contexts}",
        f"Initialized: {'Yes' if engine.is_initialized else 'No'}",
    ]
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def chat_health() -> str:
    """Get provider and index health status."""
    engine = get_engine()
    status = await engine.health()

    def mark(ok: bool) -> str:
        return "✓" if ok else "✗"

    lines = ["=== Chat RAG Health Status ==="]
    lines.append("\nEmbedding providers:")
    for name, ok in status["embedding"].items():
        lines.append(f"  {mark(ok)} {name}")
    lines.append("Completion providers:")
    for name, ok in status["completion"].items():
        lines.append(f"  {mark(ok)} {name}")
    lines.append(f"Index dimension: {status['index_dimension']}")
    lines.append(f"Initialized: {'Yes' if status['initialized'] else 'No'}")

    if _startup_task is not None and not _startup_task.done():
        lines.append("Startup rebuild: running")
    return "\n".join(lines)


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server; build the index in the background if it is empty."""
    global _startup_task
    engine = get_engine()
    if engine.index.count_messages() == 0:
        logger.info("Empty index, starting initial rebuild")
        _startup_task = asyncio.create_task(engine.initialize())
    else:
        engine.index.is_initialized = True
        logger.info("Opened index with %d message embeddings", engine.index.count_messages())
    try:
        await mcp.run_stdio_async()
    finally:
        await engine.close()


def main():
    """Entry point."""
    setup_logging()
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
