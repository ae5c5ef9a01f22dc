"""Configuration for chat-rag-mcp."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True, slots=True)
class Config:
    """Engine configuration with sensible defaults."""

    db_path: Path = Path(os.environ.get("CHAT_RAG_DB_PATH", Path.home() / ".chat-rag" / "lancedb"))
    message_db_path: Path | None = (
        Path(os.environ["CHAT_RAG_MESSAGE_DB"]) if os.environ.get("CHAT_RAG_MESSAGE_DB") else None
    )
    messages_table: str = "message_embeddings"
    contexts_table: str = "conversation_contexts"

    # Embedding chain: first entry is the primary (local) provider
    embedding_providers: tuple[str, ...] = _env_list("EMBEDDING_PROVIDERS", "ollama,google")
    embedding_fallback: bool = _env_bool("EMBEDDING_FALLBACK", True)
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1024"))
    google_embedding_model: str = os.environ.get("GOOGLE_EMBEDDING_MODEL", "gemini-embedding-001")
    openai_embedding_model: str = os.environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")

    # Completion chain
    completion_providers: tuple[str, ...] = _env_list("COMPLETION_PROVIDERS", "ollama,google")
    completion_fallback: bool = _env_bool("COMPLETION_FALLBACK", True)
    completion_model: str = os.environ.get("COMPLETION_MODEL", "qwen2.5:7b")
    google_llm_model: str = os.environ.get("GOOGLE_LLM_MODEL", "gemini-2.5-flash")
    openai_llm_model: str = os.environ.get("OPENAI_LLM_MODEL", "gpt-4o-mini")

    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    openai_base_url: str = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
    provider_timeout: float = float(os.environ.get("PROVIDER_TIMEOUT", "30"))

    own_sender_names: tuple[str, ...] = tuple(
        n.strip() for n in os.environ.get("OWN_SENDER_NAMES", "").split(",") if n.strip()
    )
    own_speaker_label: str = "Me"

    min_text_length: int = 10  # texts must be strictly longer than this
    max_embed_chars: int = 8000
    context_window: int = 50
    max_topics: int = 10
    search_fetch_limit: int = 20
    default_max_tokens: int = 4000
    default_limit: int = 10
    max_limit: int = 50
    embed_workers: int = 4
    queue_size: int = 64
    refresh_concurrency: int = 4

    log_level: str = os.environ.get("LOG_LEVEL", "INFO")


CONFIG = Config()
