"""
Word-overlap similarity shared by contradiction detection, deduplication and MMR.
"""

from typing import Set


def tokenize(text: str) -> Set[str]:
    """Lower-cased whitespace token set."""
    return set((text or '').lower().split())


def jaccard(a: str, b: str) -> float:
    """Jaccard similarity of the word sets of two strings, in [0, 1]."""
    words_a, words_b = tokenize(a), tokenize(b)
    if not words_a and not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)
