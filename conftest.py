"""Shared fixtures: deterministic stub providers, temp LanceDB, in-memory store."""

import json
import re
import time
import zlib
from datetime import datetime, timedelta, timezone

import pytest

from config import Config
from engine import ChatContextEngine
from models import MessageRecord
from providers import CompletionGateway, EmbeddingGateway, ProviderError
from store import InMemoryMessageStore

DIM = 32
VOCAB = [
    "hello", "there", "friend", "meet", "friday", "3pm", "time", "budget",
    "project", "deadline", "invoice", "report", "dinner", "family", "weekend",
]
VOCAB_INDEX = {word: i for i, word in enumerate(VOCAB)}
BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def tokens(text: str) -> list[str]:
    words = re.findall(r"[a-z0-9]+", text.lower())
    return [w[:-3] if len(w) > 5 and w.endswith("ing") else w for w in words]


class VocabEmbedder:
    """Bag-of-words vectors: known words get their own axis, others hash into the tail."""

    name = "stub"

    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.calls: list[str] = []

    def embed(self, text: str, query: bool = False) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.dim
        tail = self.dim - len(VOCAB)
        for tok in tokens(text):
            if tok in VOCAB_INDEX:
                vector[VOCAB_INDEX[tok]] += 1.0
            else:
                vector[len(VOCAB) + zlib.crc32(tok.encode()) % tail] += 1.0
        return vector


class FailingEmbedder:
    name = "broken"

    def __init__(self):
        self.calls = 0

    def embed(self, text: str, query: bool = False) -> list[float]:
        self.calls += 1
        raise ProviderError("backend down")


class SlowEmbedder:
    name = "slow"

    def __init__(self, delay: float = 1.0, dim: int = DIM):
        self.delay = delay
        self.dim = dim

    def embed(self, text: str, query: bool = False) -> list[float]:
        time.sleep(self.delay)
        return [1.0] * self.dim


class FixedEmbedder:
    """Returns the same vector for every text."""

    def __init__(self, vector: list[float], name: str = "fixed"):
        self.vector = vector
        self.name = name

    def embed(self, text: str, query: bool = False) -> list[float]:
        return list(self.vector)


DEFAULT_ANALYSIS = {
    "summary": "Planning a Friday meeting",
    "keyTopics": ["meeting", "schedule"],
    "relationship": "business",
}


class ScriptedCompleter:
    """Answers with queued responses (last one repeats) or fails on demand."""

    name = "scripted"

    def __init__(self, responses: list[str] | None = None, fail: bool = False):
        self.responses = list(responses or [json.dumps(DEFAULT_ANALYSIS)])
        self.fail = fail
        self.calls: list[tuple[list[dict], object]] = []

    def complete(self, messages, options) -> str:
        self.calls.append((list(messages), options))
        if self.fail:
            raise ProviderError("scripted failure")
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_message(
    chat_id: str,
    message_id: str,
    text: str,
    sender: str | None = "A",
    minutes: int = 0,
    title: str = "",
) -> MessageRecord:
    return MessageRecord(
        chat_id=chat_id,
        message_id=message_id,
        sender_name=sender,
        text=text,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        chat_title=title,
    )


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        db_path=tmp_path / "lancedb",
        embedding_dim=DIM,
        embedding_providers=("stub",),
        completion_providers=("scripted",),
        provider_timeout=5,
        own_sender_names=("Racho",),
        embed_workers=2,
        queue_size=4,
    )


@pytest.fixture
def store() -> InMemoryMessageStore:
    """Chat C1: two indexable messages and one too short to embed."""
    store = InMemoryMessageStore()
    store.add_chat("C1", "Chat One")
    store.add_message(make_message("C1", "m1", "Hello there friend", "A", 0, "Chat One"))
    store.add_message(make_message("C1", "m2", "short", "B", 1, "Chat One"))
    store.add_message(make_message("C1", "m3", "Let's meet Friday at 3pm", "A", 2, "Chat One"))
    return store


@pytest.fixture
def embedder() -> VocabEmbedder:
    return VocabEmbedder()


@pytest.fixture
def completer() -> ScriptedCompleter:
    return ScriptedCompleter()


@pytest.fixture
def engine(config, store, embedder, completer) -> ChatContextEngine:
    return ChatContextEngine(
        config,
        store,
        embedder=EmbeddingGateway([embedder], timeout=5),
        completer=CompletionGateway([completer], timeout=5),
    )
