"""Lexical relevance scoring shared by the gatherer and verifier."""

from __future__ import annotations

import re

STOPWORDS = frozenset(
    {
        "a", "about", "an", "and", "are", "as", "at", "be", "been", "but", "by",
        "can", "could", "did", "do", "does", "for", "from", "had", "has", "have",
        "hello", "hi", "how", "i", "in", "is", "it", "its", "me", "my", "of",
        "on", "or", "our", "please", "should", "so", "thank", "thanks", "that",
        "the", "their", "then", "there", "these", "they", "this", "those", "to",
        "us", "was", "we", "were", "what", "when", "where", "which", "who", "why",
        "will", "with", "would", "you", "your",
    }
)

_WORD_PATTERN = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercased alphanumeric terms of length >= 3, stopwords removed."""
    return [
        token
        for token in _WORD_PATTERN.findall(text.lower())
        if len(token) >= 3 and token not in STOPWORDS
    ]


def keywords(text: str) -> set[str]:
    return set(tokenize(text))


def overlap_score(query_terms: set[str], text: str) -> int:
    """Number of distinct query terms present in `text`."""
    if not query_terms:
        return 0
    return len(query_terms & keywords(text))


def find_excerpt(content: str, terms: set[str], *, before: int = 150, after: int = 250) -> str:
    """Window of `content` around the earliest query-term hit."""

    lowered = content.lower()
    hits = [index for index in (lowered.find(term) for term in terms) if index != -1]
    if not hits:
        return content if len(content) <= 300 else f"{content[:300]}…"

    first = min(hits)
    start = max(0, first - before)
    end = min(len(content), first + after)
    excerpt = content[start:end]
    return ("…" if start > 0 else "") + excerpt + ("…" if end < len(content) else "")


def clip(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}…"
