"""Speaker classification behind a narrow `classify(text) -> category` interface."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

SELF = "self"
OTHER = "other"


class Classifier(Protocol):
    def classify(self, text: str) -> str: ...


class OwnSenderClassifier:
    """Rule-based: a sender is "self" when its name contains one of the owner's names."""

    def __init__(self, own_names: Iterable[str] = ()):
        self.own_names = tuple(n.casefold() for n in own_names if n.strip())

    def classify(self, text: str) -> str:
        if not text or not self.own_names:
            return OTHER
        folded = text.casefold()
        return SELF if any(name in folded for name in self.own_names) else OTHER


def speaker_label(
    sender_name: str | None, classifier: Classifier, own_label: str = "Me"
) -> str:
    """Display label for a sender in transcripts and excerpts."""
    if sender_name and classifier.classify(sender_name) == SELF:
        return own_label
    return sender_name or "Unknown"
