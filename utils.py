"""Shared utility functions for chat-rag-mcp."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime, timezone

import numpy as np

# Status phrases some local models prepend to a JSON answer
NON_JSON_PREFIXES = (
    "Готовлю результат",
    "Обрабатываю",
    "Анализирую",
    "Готово",
    "Результат",
    "Ответ:",
    "Preparing result",
    "Processing",
    "Analyzing",
    "Done",
    "Result:",
    "Answer:",
    "JSON:",
)


def clean_json_response(response: str) -> str | None:
    """Extract the `{...}` span from an LLM answer.

    Strips code fences and known status prefixes, then slices from the first
    `{` to the last `}`. Returns None when no such span exists.
    """
    text = response.strip()
    if text.startswith("```"):
        text = text[3:].removeprefix("json").strip()
    if text.endswith("```"):
        text = text[:-3].strip()
    for prefix in NON_JSON_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):].strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or start >= end:
        return None
    return text[start : end + 1]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} != {vb.shape[0]}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity of `matrix` against `query` (zero rows score 0)."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)
    return sims


def is_well_formed_vector(vector: object) -> bool:
    """Non-empty sequence of finite numbers."""
    if not isinstance(vector, (list, tuple)) or not vector:
        return False
    try:
        return all(math.isfinite(float(v)) for v in vector)
    except (TypeError, ValueError):
        return False


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string, so lexical order matches time order."""
    return to_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse an ISO 8601 string, accepting a trailing `Z` for UTC."""
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return to_iso(datetime.now(timezone.utc))


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")
