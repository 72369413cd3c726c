"""Search functionality for codeseek."""

from .searcher import Searcher, highlight, keyword_boost

__all__ = [
    "Searcher",
    "highlight",
    "keyword_boost",
]
