"""
Query normalization for exact-match cache keys.

NFKC -> trim -> lowercase -> collapse whitespace -> strip punctuation
-> collapse whitespace again. Optional stop-word compression is off by default.
"""

import re
import unicodedata
from typing import Iterable, Optional

_WHITESPACE = re.compile(r"\s+")

DEFAULT_STOPWORDS: frozenset[str] = frozenset({
    "please", "tell", "me", "what", "is", "are", "the", "a", "an", "of", "about",
})


def normalize_query(
    text,
    strip_stopwords: bool = False,
    stopwords: Optional[Iterable[str]] = None,
) -> str:
    """
    Canonicalize query text so it is safe to hash.

    Letters and digits are kept in every script (Unicode categories L* and N*);
    everything else except spaces is dropped. Non-string input yields "".

    Args:
        text: Raw user query
        strip_stopwords: Drop common filler words after normalization
        stopwords: Override for DEFAULT_STOPWORDS

    Returns:
        Normalized query
    """
    if not isinstance(text, str):
        return ""

    s = unicodedata.normalize("NFKC", text)
    s = s.strip().lower()
    s = _WHITESPACE.sub(" ", s)
    s = "".join(ch for ch in s if ch.isalnum() or ch == " ")
    s = _WHITESPACE.sub(" ", s).strip()

    if strip_stopwords:
        words_to_drop = frozenset(stopwords) if stopwords is not None else DEFAULT_STOPWORDS
        s = " ".join(w for w in s.split(" ") if w and w not in words_to_drop)

    return s


class QueryNormalizer:
    """
    Configured normalizer.

    Usage:
        normalizer = QueryNormalizer()
        normalizer.normalize("  What is the LOAN cap?? ")  # "what is the loan cap"
    """

    def __init__(
        self,
        strip_stopwords: bool = False,
        stopwords: Optional[Iterable[str]] = None,
    ):
        self.strip_stopwords = strip_stopwords
        self.stopwords = frozenset(stopwords) if stopwords is not None else DEFAULT_STOPWORDS

    def normalize(self, text) -> str:
        return normalize_query(
            text,
            strip_stopwords=self.strip_stopwords,
            stopwords=self.stopwords,
        )

    def __call__(self, text) -> str:
        return self.normalize(text)
