"""Cosine similarity and the in-memory similarity index."""

from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from .errors import DimensionMismatchError
from .models import CorpusSnapshot, CorpusSource, RecordKind

logger = logging.getLogger(__name__)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors, clamped to [-1, 1].

    A zero-norm vector on either side yields 0.0.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    a = np.asarray(vec_a, dtype=np.float64).reshape(-1)
    b = np.asarray(vec_b, dtype=np.float64).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])
    denominator = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denominator, -1.0, 1.0))


class SimilarityIndex:
    """Row matrix over one snapshot's vectors plus its position indices.

    The snapshot is treated as read-only; the index is rebuilt whenever a new
    snapshot is loaded rather than updated in place.
    """

    def __init__(self, snapshot: CorpusSnapshot) -> None:
        self.snapshot = snapshot
        self.dimension = snapshot.dimension
        if snapshot.records:
            self._matrix = np.asarray([r.vector for r in snapshot.records], dtype=np.float64)
        else:
            self._matrix = np.zeros((0, self.dimension), dtype=np.float64)
        self._norms = np.linalg.norm(self._matrix, axis=1) if len(snapshot.records) else np.zeros(0)
        logger.debug(f"Built similarity index over {len(snapshot.records)} records (dim={self.dimension})")

    def __len__(self) -> int:
        return len(self.snapshot.records)

    def positions_for_kind(self, kind: RecordKind) -> List[int]:
        return self.snapshot.positions("by_kind", RecordKind(kind).value)

    def positions_for_category(self, category: str) -> List[int]:
        return self.snapshot.positions("by_category", category)

    def positions_for_source(self, source: CorpusSource) -> List[int]:
        return self.snapshot.positions("by_source", CorpusSource(source).value)

    def all_positions(self) -> List[int]:
        return list(range(len(self.snapshot.records)))

    def similarities(self, query: Sequence[float], positions: Sequence[int]) -> List[float]:
        """Scores for `positions`, in the same order."""
        if not positions:
            return []
        q = np.asarray(query, dtype=np.float64).reshape(-1)
        if q.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, q.shape[0], context="query vector")
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0.0:
            return [0.0] * len(positions)

        idx = np.asarray(positions, dtype=np.intp)
        rows = self._matrix[idx]
        denominators = self._norms[idx] * q_norm
        dots = rows @ q
        scores = np.zeros(len(idx), dtype=np.float64)
        nonzero = denominators > 0.0
        scores[nonzero] = dots[nonzero] / denominators[nonzero]
        return np.clip(scores, -1.0, 1.0).tolist()
