"""Lexical similarity used by the semantic check and conflict detection.

The default scorers compare term-frequency vectors of lower-cased alphanumeric tokens.
Callers that have embeddings inject their own ``SimilarityScorer`` / ``DistanceScorer``.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Protocol, runtime_checkable

_TOKEN = re.compile(r"[a-z0-9]+")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


@runtime_checkable
class SimilarityScorer(Protocol):
    def score(self, text_a: str, text_b: str) -> float: ...


@runtime_checkable
class DistanceScorer(Protocol):
    def distance(self, text_a: str, text_b: str) -> float: ...


def tokenize(text: str) -> list[str]:
    spaced = _CAMEL_BOUNDARY.sub(r"\1 \2", text)
    return [token for token in _TOKEN.findall(spaced.lower()) if len(token) > 1]


def cosine_similarity(text_a: str, text_b: str) -> float:
    left = Counter(tokenize(text_a))
    right = Counter(tokenize(text_b))
    if not left or not right:
        return 0.0
    dot = sum(count * right[token] for token, count in left.items())
    norm = math.sqrt(sum(v * v for v in left.values())) * math.sqrt(
        sum(v * v for v in right.values())
    )
    if norm == 0:
        return 0.0
    return dot / norm


def semantic_distance(text_a: str, text_b: str) -> float:
    return min(1.0, max(0.0, 1.0 - cosine_similarity(text_a, text_b)))


class TokenOverlapScorer:
    def score(self, text_a: str, text_b: str) -> float:
        return cosine_similarity(text_a, text_b)


class TokenDistanceScorer:
    def distance(self, text_a: str, text_b: str) -> float:
        return semantic_distance(text_a, text_b)


__all__ = [
    "DistanceScorer",
    "SimilarityScorer",
    "TokenDistanceScorer",
    "TokenOverlapScorer",
    "cosine_similarity",
    "semantic_distance",
    "tokenize",
]
