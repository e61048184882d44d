"""Top-K selection over scored candidates."""

from __future__ import annotations

import heapq
from typing import List, Optional, Sequence, Tuple

from ..core.similarity import SimilarityIndex

Scored = Tuple[int, float]

DEFAULT_SMALL_THRESHOLD = 256


def _qualifying(scored: Sequence[Scored], min_score: Optional[float]):
    for order, (position, score) in enumerate(scored):
        if min_score is None or score >= min_score:
            yield order, position, score


def select_by_sort(scored: Sequence[Scored], k: int, min_score: Optional[float] = None) -> List[Scored]:
    """Score-everything-then-sort. Ties keep input order."""
    if k <= 0:
        return []
    ranked = sorted(_qualifying(scored, min_score), key=lambda item: (-item[2], item[0]))
    return [(position, score) for _, position, score in ranked[:k]]


def select_bounded(scored: Sequence[Scored], k: int, min_score: Optional[float] = None) -> List[Scored]:
    """Bounded min-heap of size k; same output as `select_by_sort`.

    Heap keys are (score, -order): the root is the worst kept candidate, and
    among equal scores the later one is worse.
    """
    if k <= 0:
        return []
    heap: List[Tuple[float, int, int]] = []
    for order, position, score in _qualifying(scored, min_score):
        key = (score, -order, position)
        if len(heap) < k:
            heapq.heappush(heap, key)
        elif key[:2] > heap[0][:2]:
            heapq.heapreplace(heap, key)
    heap.sort(key=lambda item: (-item[0], -item[1]))
    return [(position, score) for score, _, position in heap]


class TopKSelector:
    """Scores candidates through a SimilarityIndex and picks the K best."""

    def __init__(self, small_threshold: int = DEFAULT_SMALL_THRESHOLD) -> None:
        self.small_threshold = small_threshold

    def use_full_sort(self, n: int, k: int) -> bool:
        return n <= self.small_threshold or k * 4 >= n

    def select(
        self,
        index: SimilarityIndex,
        query: Sequence[float],
        positions: Sequence[int],
        k: int,
        min_score: Optional[float] = None,
    ) -> List[Scored]:
        if k <= 0 or not positions:
            return []
        scored = list(zip(positions, index.similarities(query, positions)))
        if self.use_full_sort(len(scored), k):
            return select_by_sort(scored, k, min_score)
        return select_bounded(scored, k, min_score)
