"""
Relevance scoring for clustered search results.

combined = 0.6 * centroid similarity + 0.3 * keyword boost + 0.1 * diversity
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
import numpy as np

CENTROID_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.3
DIVERSITY_WEIGHT = 0.1

# Members less similar than this to the query get squared (down-weighted) centroid weight
CENTROID_SIMILARITY_FLOOR = 0.1

# Penalty applied to the standard deviation of member similarities
DIVERSITY_STD_PENALTY = 0.1


def cosine_similarity(a, b) -> float:
    """Cosine similarity; 0.0 when either vector has zero magnitude."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:  # Handle zero vectors to prevent division by zero
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def member_similarities(vectors: np.ndarray, query) -> np.ndarray:
    """Cosine similarity of each row against the query."""
    return np.array([cosine_similarity(v, query) for v in vectors], dtype=np.float64)


def weighted_centroid(vectors: np.ndarray, query, similarities: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Similarity-weighted average of member vectors.

    Members at or above the similarity floor weigh their similarity; members
    below it weigh the square of their (non-negative) similarity.
    """
    vectors = np.asarray(vectors, dtype=np.float64)
    if similarities is None:
        similarities = member_similarities(vectors, query)

    weights = np.where(
        similarities >= CENTROID_SIMILARITY_FLOOR,
        similarities,
        np.square(np.clip(similarities, 0.0, None)),
    )

    total = weights.sum()
    if total <= 0:
        return vectors.mean(axis=0)

    return (vectors * weights[:, None]).sum(axis=0) / total


def keyword_boost(keywords: Optional[Iterable[str]], content: str) -> float:
    """Fraction of keywords contained in content (case-insensitive substring match)."""
    keywords = [k for k in (keywords or []) if k]
    if not keywords:
        return 0.0

    haystack = content.lower()
    found = sum(1 for keyword in keywords if keyword.lower() in haystack)
    return found / len(keywords)


def diversity_score(similarities: Sequence[float]) -> float:
    """Rewards large, consistently relevant clusters: (mean - 0.1*std) * ln(1 + size)."""
    values = np.asarray(similarities, dtype=np.float64)
    if values.size == 0:
        return 0.0

    mean = float(values.mean())
    std = float(values.std())
    return (mean - DIVERSITY_STD_PENALTY * std) * math.log1p(values.size)


@dataclass
class ScoreBreakdown:
    """Components of a cluster's combined relevance."""

    centroid_similarity: float
    keyword_boost: float
    diversity: float

    @property
    def combined(self) -> float:
        return (
            CENTROID_WEIGHT * self.centroid_similarity
            + KEYWORD_WEIGHT * self.keyword_boost
            + DIVERSITY_WEIGHT * self.diversity
        )


def score_cluster(vectors: np.ndarray, query, content: str, keywords: Optional[Iterable[str]] = None):
    """
    Score a cluster of member vectors against the query.

    Args:
        vectors: Member vectors, one row per label
        query: Query vector
        content: Materialized passage text (for keyword matching)
        keywords: Optional query keywords

    Returns:
        Tuple of (centroid, ScoreBreakdown)
    """
    similarities = member_similarities(vectors, query)
    centroid = weighted_centroid(vectors, query, similarities)

    breakdown = ScoreBreakdown(
        centroid_similarity=cosine_similarity(centroid, query),
        keyword_boost=keyword_boost(keywords, content),
        diversity=diversity_score(similarities),
    )
    return centroid, breakdown
