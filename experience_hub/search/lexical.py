"""
Experience Hub Lexical Matching

Keyword and free-text relevance scoring that works without embeddings.
Used on every query, and on its own when the embedding provider is down.

Functions:
    tokenize      — Lower-case word tokens without stop words
    score         — Lexical score of one record in [0, 1]
    rank_lexical  — Score and order a list of records

Rules:
    - Pure functions: no I/O, no logging of record contents
    - Deterministic ordering: score desc, created_at desc, id asc
"""

import re
from typing import Any, Iterable, Optional, Sequence

from experience_hub.config import settings
from experience_hub.db.models import EMBEDDED_CONTENT_FIELDS

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "do",
    "does", "for", "from", "has", "have", "how", "i", "if", "in", "into",
    "is", "it", "its", "my", "no", "not", "of", "on", "or", "so", "that",
    "the", "their", "then", "there", "this", "to", "was", "we", "what",
    "when", "where", "which", "why", "will", "with", "you",
})


def tokenize(text: Optional[str]) -> list[str]:
    """Split text into lower-case word tokens, dropping stop words and 1-char tokens."""
    if not text:
        return []
    tokens = []
    for token in _TOKEN_RE.findall(text.lower()):
        if len(token) < 2 or token in STOP_WORDS:
            continue
        tokens.append(token)
    return tokens


def created_at_key(record: dict[str, Any]) -> float:
    """Sort key for newest-first ordering; records without a timestamp sort last."""
    created_at = record.get("created_at")
    return created_at.timestamp() if created_at is not None else float("-inf")


def _lower(value: Any) -> str:
    return str(value).lower() if value else ""


def _keyword_part(record: dict[str, Any], keywords: Sequence[str]) -> float:
    record_keywords = {_lower(k) for k in record.get("keywords") or []}
    content = [_lower(record.get(field)) for field in EMBEDDED_CONTENT_FIELDS]

    matched = 0
    for keyword in keywords:
        needle = keyword.lower()
        if needle in record_keywords or any(needle in text for text in content):
            matched += 1
    return matched / len(keywords)


def _free_text_part(
    record: dict[str, Any],
    tokens: Sequence[str],
    title_weight: float,
    body_weight: float,
) -> float:
    title = _lower(record.get("title"))
    body = _lower(record.get("problem_description")) + "\n" + _lower(record.get("solution"))

    total = 0.0
    for token in tokens:
        if token in title:
            total += title_weight
        elif token in body:
            total += body_weight
    return total / len(tokens)


def score(
    record: dict[str, Any],
    keywords: Optional[Sequence[str]] = None,
    free_text: Optional[str] = None,
    *,
    title_weight: Optional[float] = None,
    body_weight: Optional[float] = None,
) -> float:
    """
    Lexical relevance of one record.

    The keyword part is the fraction of query keywords found in the record's
    keyword list or inside any content field. The free-text part is the mean
    per-token weight (title hit beats a problem/solution hit). With both
    inputs the two parts are averaged.

    Returns:
        A float in [0, 1]; 0.0 when neither keywords nor free text is given.
    """
    if title_weight is None:
        title_weight = settings.LEXICAL_TITLE_WEIGHT
    if body_weight is None:
        body_weight = settings.LEXICAL_BODY_WEIGHT

    cleaned_keywords = [k.strip() for k in keywords or [] if k and k.strip()]
    tokens = tokenize(free_text)

    parts = []
    if cleaned_keywords:
        parts.append(_keyword_part(record, cleaned_keywords))
    if tokens:
        parts.append(_free_text_part(record, tokens, title_weight, body_weight))
    if not parts:
        return 0.0

    value = sum(parts) / len(parts)
    return min(max(value, 0.0), 1.0)


def rank_lexical(
    records: Iterable[dict[str, Any]],
    keywords: Optional[Sequence[str]] = None,
    free_text: Optional[str] = None,
) -> list[tuple[str, float]]:
    """
    Score every record and keep those with a positive lexical score.

    Returns:
        ``[(experience_id, score)]`` sorted by score descending, then
        created_at descending, then id ascending.
    """
    scored = []
    for record in records:
        value = score(record, keywords, free_text)
        if value > 0.0:
            scored.append((record, value))

    # Stable sorts, least significant key first.
    scored.sort(key=lambda item: str(item[0]["id"]))
    scored.sort(key=lambda item: created_at_key(item[0]), reverse=True)
    scored.sort(key=lambda item: item[1], reverse=True)
    return [(str(record["id"]), value) for record, value in scored]
