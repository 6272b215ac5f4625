# backend/konarae/core/search/keyword_service.py
"""
Keyword extraction for the lexical half of hybrid search.

Text is lowercased, stripped of punctuation (Hangul and word characters are
kept), split on whitespace, and filtered against a Korean/English stop-word
list. Single-character tokens carry no signal and are dropped.
"""

import re
from typing import Iterable, Set

STOP_WORDS = frozenset({
    # English
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "be", "as", "it", "this", "that",
    # Korean particles and fillers
    "이", "그", "저", "것", "등", "및", "와", "과", "의", "을", "를", "은", "는",
    "에", "에서", "으로", "로", "또는", "위한", "통한", "관련", "대한",
})

MAX_KEYWORDS = 50

_PUNCTUATION = re.compile(r"[^\w\sㄱ-ㅎ가-힣]")


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> Set[str]:
    """
    Distinct search keywords of ``text``.

    Keeps at most ``limit`` keywords, in order of first appearance.
    """
    keywords: dict = {}
    cleaned = _PUNCTUATION.sub("", (text or "").lower()).replace("_", " ")
    for token in cleaned.split():
        if len(token) <= 1 or token in STOP_WORDS or token in keywords:
            continue
        keywords[token] = None
        if len(keywords) >= limit:
            break
    return set(keywords)


def keyword_score(query_keywords: Iterable[str], chunk_keywords: Iterable[str]) -> float:
    """Fraction of query keywords present in the chunk (0 when the query has none)."""
    query = set(query_keywords)
    if not query:
        return 0.0
    return len(query & set(chunk_keywords)) / len(query)
