"""Unified token estimation.

Single source of truth for the character-weighted heuristic used to
decide when a conversation needs compression. No model call is made.

ASCII characters count 0.25 tokens, everything else 1.3 tokens. This
overcounts non-English text and serialization punctuation; overcounting
only triggers compression slightly early.
"""

from __future__ import annotations

import json
from collections.abc import Iterable

from realm.models.base import ConversationEntry

ASCII_TOKENS_PER_CHAR = 0.25
NON_ASCII_TOKENS_PER_CHAR = 1.3

# Weights in hundredths of a token, so sums stay exact integers.
_ASCII_WEIGHT = 25
_NON_ASCII_WEIGHT = 130


def serialize_entry(entry: ConversationEntry) -> str:
    """Canonical text form of one conversation entry."""
    return json.dumps(entry.to_dict(), ensure_ascii=False, separators=(",", ":"))


def _weight(text: str) -> int:
    ascii_chars = sum(1 for char in text if ord(char) <= 127)
    return ascii_chars * _ASCII_WEIGHT + (len(text) - ascii_chars) * _NON_ASCII_WEIGHT


def _ceil_hundredths(value: int) -> int:
    return -(-value // 100)


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens for a bare string. Empty text is 0."""
    if not text:
        return 0
    return _ceil_hundredths(_weight(text))


def estimate_tokens(conversation: Iterable[ConversationEntry]) -> int:
    """Estimate the token cost of a conversation."""
    total = 0
    for entry in conversation:
        total += _weight(serialize_entry(entry))
    return _ceil_hundredths(total)
