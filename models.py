"""Shared data models for chat-rag-mcp."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, field_validator

from utils import from_iso, to_iso, to_utc

UNKNOWN_RELATIONSHIP = "unknown"
VALID_RELATIONSHIPS = frozenset(
    {"business", "personal", "family", "friendly", "support", UNKNOWN_RELATIONSHIP}
)


# =============================================================================
# Ingestion boundary
# =============================================================================


class Chat(BaseModel):
    """A conversation thread as seen by the message store."""

    model_config = ConfigDict(frozen=True)

    chat_id: str
    title: str

    @field_validator("chat_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("chat_id must not be empty")
        return value


class MessageRecord(BaseModel):
    """A persisted chat message. Read-only input to the engine."""

    model_config = ConfigDict(frozen=True)

    chat_id: str
    message_id: str
    sender_name: str | None = None
    text: str = ""
    timestamp: datetime
    chat_title: str = ""

    @field_validator("chat_id", "message_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str:
        if value is None:
            raise ValueError("identifier is required")
        value = str(value).strip()
        if not value:
            raise ValueError("identifier must not be empty")
        return value

    @field_validator("text", mode="before")
    @classmethod
    def _none_text(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def key(self) -> str:
        return message_key(self.chat_id, self.message_id)


def message_key(chat_id: str, message_id: str) -> str:
    """Composite natural key for an embedded message."""
    return f"{chat_id}:{message_id}"


# =============================================================================
# LanceDB Schemas
# =============================================================================


@lru_cache(maxsize=None)
def embedded_message_schema(dim: int) -> type[LanceModel]:
    """LanceDB schema for message embeddings of a given dimensionality.

    The vector width is fixed per table, so changing it requires a rebuild.
    """

    class EmbeddedMessageRow(LanceModel):
        id: str  # "<chat_id>:<message_id>"
        chat_id: str
        message_id: str
        text: str
        sender_name: str | None = None
        timestamp: str  # UTC ISO, sortable
        chat_title: str
        vector: Vector(dim)  # type: ignore[valid-type]
        indexed_at: str

    return EmbeddedMessageRow


class ConversationContextRow(LanceModel):
    """LanceDB schema for per-chat conversation contexts."""

    chat_id: str
    chat_title: str
    summary: str
    key_topics: str  # JSON array as string
    relationship: str
    message_count: int
    last_updated: str


# =============================================================================
# Domain values
# =============================================================================


@dataclass(frozen=True, slots=True)
class EmbeddedMessage:
    chat_id: str
    message_id: str
    text: str
    sender_name: str | None
    timestamp: datetime
    chat_title: str
    vector: tuple[float, ...] = field(repr=False)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EmbeddedMessage":
        return cls(
            chat_id=row["chat_id"],
            message_id=row["message_id"],
            text=row["text"],
            sender_name=row.get("sender_name"),
            timestamp=from_iso(row["timestamp"]),
            chat_title=row["chat_title"],
            vector=tuple(float(v) for v in row.get("vector") or ()),
        )


@dataclass(frozen=True, slots=True)
class SearchHit:
    message: EmbeddedMessage
    similarity: float


@dataclass(frozen=True, slots=True)
class ConversationContext:
    chat_id: str
    chat_title: str
    summary: str
    key_topics: tuple[str, ...]
    relationship: str
    message_count: int
    last_updated: datetime

    def to_row(self) -> dict[str, Any]:
        return ConversationContextRow(
            chat_id=self.chat_id,
            chat_title=self.chat_title,
            summary=self.summary,
            key_topics=json.dumps(list(self.key_topics), ensure_ascii=False),
            relationship=self.relationship,
            message_count=self.message_count,
            last_updated=to_iso(self.last_updated),
        ).model_dump()

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationContext":
        topics = json.loads(row["key_topics"]) if row.get("key_topics") else []
        return cls(
            chat_id=row["chat_id"],
            chat_title=row["chat_title"],
            summary=row["summary"],
            key_topics=tuple(topics),
            relationship=row["relationship"],
            message_count=int(row["message_count"]),
            last_updated=from_iso(row["last_updated"]),
        )


@dataclass(frozen=True, slots=True)
class IndexStats:
    total_messages: int
    total_chats: int
    total_contexts: int


@dataclass(frozen=True, slots=True)
class RebuildReport:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0


def normalize_relationship(value: Any) -> str:
    """Map a free-form relationship label onto VALID_RELATIONSHIPS."""
    if not isinstance(value, str):
        return UNKNOWN_RELATIONSHIP
    normalized = value.strip().lower()
    if normalized in VALID_RELATIONSHIPS:
        return normalized
    for candidate in sorted(VALID_RELATIONSHIPS):
        if candidate != UNKNOWN_RELATIONSHIP and candidate in normalized:
            return candidate
    return UNKNOWN_RELATIONSHIP
