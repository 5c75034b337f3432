"""Description normalization shared by the parser, matcher and pattern engine."""

import re
from typing import List, Set

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""
    if not text:
        return ""
    cleaned = _PUNCTUATION.sub("", str(text).casefold())
    return _WHITESPACE.sub(" ", cleaned).strip()


def tokenize(text: str) -> List[str]:
    normalized = normalize_text(text)
    return normalized.split(" ") if normalized else []


def token_overlap(left: str, right: str) -> float:
    """
    Jaccard similarity of the normalized token sets of two descriptions.

    Returns:
        A value in [0, 1]; 0.0 when both descriptions are empty.
    """
    left_tokens: Set[str] = set(tokenize(left))
    right_tokens: Set[str] = set(tokenize(right))
    union = left_tokens | right_tokens
    if not union:
        return 0.0
    return len(left_tokens & right_tokens) / len(union)
