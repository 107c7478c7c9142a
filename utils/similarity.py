# utils/similarity.py
"""Vector similarity helpers backed by numpy."""

from collections.abc import Sequence
from typing import TypeVar

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def batch_cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Rows (or a query) with zero norm score 0.0.
    """
    q = np.asarray(query, dtype=np.float32).flatten()
    m = np.asarray(matrix, dtype=np.float32)
    if m.ndim != 2 or m.shape[0] == 0:
        return np.zeros(0, dtype=np.float32)
    if m.shape[1] != q.shape[0]:
        raise ValueError(
            f"Embedding dimension mismatch: query {q.shape[0]} vs rows {m.shape[1]}"
        )
    q_norm = np.linalg.norm(q)
    if q_norm == 0.0:
        logger.debug("Cosine similarity: zero-norm query. All scores 0.0.")
    row_norms = np.linalg.norm(m, axis=1)
    denom = row_norms * q_norm
    scores = np.zeros(m.shape[0], dtype=np.float32)
    nonzero = denom > 0
    scores[nonzero] = (m[nonzero] @ q) / denom[nonzero]
    return np.clip(scores, -1.0, 1.0)


def cosine_similarity(vec1: np.ndarray | None, vec2: np.ndarray | None) -> float:
    """Cosine similarity of two vectors; 0.0 for missing, empty or mismatched input."""
    if vec1 is None or vec2 is None:
        return 0.0
    v2 = np.asarray(vec2, dtype=np.float32).flatten()
    if v2.size == 0:
        return 0.0
    try:
        scores = batch_cosine_similarity(vec1, v2.reshape(1, -1))
    except ValueError as e:
        logger.warning("Cosine similarity: %s. Returning 0.0.", e)
        return 0.0
    return float(scores[0])


def rank_by_similarity(
    query: np.ndarray,
    items: Sequence[T],
    vectors: Sequence[Sequence[float]],
    tie_keys: Sequence[float],
    limit: int,
) -> list[tuple[T, float]]:
    """Top ``limit`` items by descending similarity, ties by descending ``tie_keys``."""
    if limit <= 0 or not items:
        return []
    scores = batch_cosine_similarity(query, np.asarray(vectors, dtype=np.float32))
    # lexsort uses the last key as primary
    order = np.lexsort(
        (-np.asarray(tie_keys, dtype=np.float64), -scores.astype(np.float64))
    )
    return [(items[int(i)], float(scores[int(i)])) for i in order[:limit]]
