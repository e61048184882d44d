"""Retention strategies for the interaction-history corpus."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import logging
import math
from typing import List, Optional, Sequence, Tuple

from ..core.models import EmbeddingRecord, RetentionPolicy, RetentionStrategy
from ..utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

STATUS_WEIGHTS = {"success": 1.0, "partial": 0.6}
FAILED_WEIGHT = 0.2
RETRIEVAL_WEIGHT = 0.15
RECENCY_WEIGHT = 0.5
RECENCY_DECAY_DAYS = 30.0
HIGH_VALUE_BONUS = 0.25

HIGH_VALUE_CATEGORIES = frozenset({"implementation", "issue", "structure", "planning"})


@dataclasses.dataclass(frozen=True)
class CleanupStats:
    before: int
    after: int

    @property
    def removed(self) -> int:
        return self.before - self.after


def age_days(record: EmbeddingRecord, now: _dt.datetime) -> float:
    return (now - record.created_at).total_seconds() / 86400.0


def importance_score(record: EmbeddingRecord, now: _dt.datetime) -> float:
    """Outcome weight + log retrieval boost + decaying recency bonus + category bonus."""
    attrs = record.attributes
    status = attrs.get("status") or "success"
    score = STATUS_WEIGHTS.get(status, FAILED_WEIGHT)
    retrievals = attrs.get("retrieval_count") or 0
    score += RETRIEVAL_WEIGHT * math.log1p(max(0, int(retrievals)))
    score += RECENCY_WEIGHT * math.exp(-max(0.0, age_days(record, now)) / RECENCY_DECAY_DAYS)
    if attrs.category in HIGH_VALUE_CATEGORIES:
        score += HIGH_VALUE_BONUS
    return score


def _keep_in_order(records: Sequence[EmbeddingRecord], ranked: List[int], limit: int) -> List[EmbeddingRecord]:
    keep = set(ranked[:limit])
    return [r for i, r in enumerate(records) if i in keep]


class RetentionManager:
    """Applies a RetentionPolicy. Deterministic for a fixed input and clock."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()

    def prune(
        self,
        records: Sequence[EmbeddingRecord],
        policy: RetentionPolicy,
        now: Optional[_dt.datetime] = None,
    ) -> List[EmbeddingRecord]:
        now = now or self.clock.now()
        strategy = policy.strategy
        if strategy is RetentionStrategy.COUNT:
            return self.by_count(records, policy.max_count)
        if strategy is RetentionStrategy.TIME:
            return self.by_time(records, policy.max_age_days, now)
        if strategy is RetentionStrategy.IMPORTANCE:
            return self.by_importance(records, policy.max_count, now)

        kept = self.by_time(records, policy.max_age_days, now)
        if len(kept) > policy.max_count:
            kept = self.by_importance(kept, policy.max_count, now)
        return kept

    def prune_with_stats(
        self,
        records: Sequence[EmbeddingRecord],
        policy: RetentionPolicy,
        now: Optional[_dt.datetime] = None,
    ) -> Tuple[List[EmbeddingRecord], CleanupStats]:
        kept = self.prune(records, policy, now=now)
        stats = CleanupStats(before=len(records), after=len(kept))
        if stats.removed:
            logger.info(
                f"Retention ({policy.strategy.value}) removed {stats.removed} of {stats.before} records"
            )
        return kept, stats

    @staticmethod
    def by_count(records: Sequence[EmbeddingRecord], max_count: int) -> List[EmbeddingRecord]:
        if max_count <= 0:
            return []
        if len(records) <= max_count:
            return list(records)
        # newest first; equal timestamps by id
        by_id = sorted(range(len(records)), key=lambda i: records[i].id)
        ranked = sorted(by_id, key=lambda i: records[i].created_at, reverse=True)
        return _keep_in_order(records, ranked, max_count)

    @staticmethod
    def by_time(records: Sequence[EmbeddingRecord], max_age_days: float, now: _dt.datetime) -> List[EmbeddingRecord]:
        cutoff = now - _dt.timedelta(days=max_age_days)
        return [r for r in records if r.created_at >= cutoff]

    @staticmethod
    def by_importance(
        records: Sequence[EmbeddingRecord], max_count: int, now: _dt.datetime
    ) -> List[EmbeddingRecord]:
        if max_count <= 0:
            return []
        if len(records) <= max_count:
            return list(records)
        scores = [importance_score(r, now) for r in records]
        by_id = sorted(range(len(records)), key=lambda i: records[i].id)
        by_age = sorted(by_id, key=lambda i: records[i].created_at, reverse=True)
        ranked = sorted(by_age, key=lambda i: scores[i], reverse=True)
        return _keep_in_order(records, ranked, max_count)
