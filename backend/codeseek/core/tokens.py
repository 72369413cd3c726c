"""Identifier-aware tokenization shared by the hashing embedder and keyword ranking."""

from __future__ import annotations

import re
from typing import List

_WORD_RE = re.compile(r"[A-Za-z0-9_]+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "can", "this", "that",
    "these", "those", "it", "its", "my", "your", "his", "her", "our",
    "their", "what", "which", "who", "whom", "where", "when", "why", "how",
    "all", "each", "every", "both", "few", "more", "most", "other", "some",
    "such", "no", "not", "only", "same", "so", "than", "too", "very",
    "just", "also", "now", "here", "there", "then", "if", "else",
})


def split_identifier(word: str) -> List[str]:
    """'parseConfig' -> ['parse', 'config'], 'load_file' -> ['load', 'file']."""
    parts: List[str] = []
    for piece in word.split("_"):
        if piece:
            parts.extend(m.lower() for m in _CAMEL_RE.findall(piece))
    return parts


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens with compound identifiers also split into parts."""
    tokens: List[str] = []
    for word in _WORD_RE.findall(text):
        lowered = word.lower()
        parts = split_identifier(word)
        if len(parts) > 1 or (parts and parts[0] != lowered):
            tokens.append(lowered.strip("_"))
            tokens.extend(parts)
        else:
            tokens.append(lowered)
    return [t for t in tokens if t]


def extract_keywords(query: str) -> List[str]:
    """Distinct query keywords without stop words or one-letter noise, in order."""
    seen = set()
    keywords = []
    for token in tokenize(query):
        if len(token) < 2 or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords
