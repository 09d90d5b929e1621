"""
Similarity Filter

Suppresses near-duplicate analysis responses so the same finding is not
re-announced every polling interval.

Two texts are similar if their alphanumeric-only lowercased forms match, or
if the overlap of their word sets (words longer than 3 characters) divided by
the larger set's size exceeds the threshold.
"""

import re
from typing import Optional, Set

DEFAULT_THRESHOLD = 0.70
MIN_WORD_LENGTH = 4

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_WORD_RE = re.compile(r"[a-z0-9]+")


def normalize(text: str) -> str:
    return _NON_ALNUM_RE.sub("", (text or "").lower())


def word_set(text: str) -> Set[str]:
    return {w for w in _WORD_RE.findall((text or "").lower()) if len(w) >= MIN_WORD_LENGTH}


def overlap_ratio(a: str, b: str) -> float:
    words_a = word_set(a)
    words_b = word_set(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def is_similar(text: str, previous: Optional[str], threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when ``text`` repeats ``previous`` closely enough to be suppressed."""
    if previous is None:
        return False
    if normalize(text) == normalize(previous):
        return True
    return overlap_ratio(text, previous) > threshold
