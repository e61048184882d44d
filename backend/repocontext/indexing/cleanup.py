"""Snapshot cleanup steps run by the merge pipeline.

1. Retention on history-source records
2. Age cutoff for commit records
3. Removal of file chunks whose file no longer exists
4. Capacity limit by estimated compressed size, priority based
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..core.models import CorpusSnapshot, CorpusSource, EmbeddingRecord, RecordKind, RetentionPolicy
from ..storage.codec import encode_snapshot
from ..utils.clock import parse_timestamp
from .retention import CleanupStats, RetentionManager

logger = logging.getLogger(__name__)

SOURCE_FILE_RE = re.compile(r"\.(ts|tsx|js|jsx|py|java|go|rs|c|cpp|h|hpp)$", re.IGNORECASE)

# Keep-ratio headroom below the size limit
CAPACITY_SAFETY = 0.95


@dataclasses.dataclass
class CleanupReport:
    history: CleanupStats
    age: CleanupStats
    deleted_files: CleanupStats
    capacity: CleanupStats

    @property
    def removed(self) -> int:
        return sum(s.removed for s in (self.history, self.age, self.deleted_files, self.capacity))

    def as_dict(self) -> Dict[str, int]:
        return {
            "history": self.history.removed,
            "age": self.age.removed,
            "deleted_files": self.deleted_files.removed,
            "capacity": self.capacity.removed,
        }


def prune_history(
    records: Sequence[EmbeddingRecord],
    policy: RetentionPolicy,
    manager: RetentionManager,
    now: Optional[_dt.datetime] = None,
) -> Tuple[List[EmbeddingRecord], CleanupStats]:
    """Apply retention to history-source records only; other records pass through."""
    history = [r for r in records if r.source is CorpusSource.HISTORY]
    kept, _ = manager.prune_with_stats(history, policy, now=now)
    kept_ids = {id(r) for r in kept}
    out = [r for r in records if r.source is not CorpusSource.HISTORY or id(r) in kept_ids]
    return out, CleanupStats(len(records), len(out))


def _origin_date(record: EmbeddingRecord) -> Optional[_dt.datetime]:
    if record.kind is RecordKind.COMMIT:
        return parse_timestamp(record.attributes.get("date")) or record.created_at
    if record.kind is RecordKind.FILE_CHUNK:
        return parse_timestamp(record.attributes.get("commit_date"))
    return None


def prune_by_age(
    records: Sequence[EmbeddingRecord], max_age_days: float, now: _dt.datetime
) -> Tuple[List[EmbeddingRecord], CleanupStats]:
    """Drop code records whose origin date is older than the cutoff. Undated records are kept."""
    cutoff = now - _dt.timedelta(days=max_age_days)
    out = []
    for record in records:
        if record.source is CorpusSource.CODE:
            origin = _origin_date(record)
            if origin is not None and origin < cutoff:
                continue
        out.append(record)
    stats = CleanupStats(len(records), len(out))
    logger.info(f"Age cleanup (cutoff {cutoff.date().isoformat()}): removed {stats.removed}")
    return out, stats


def prune_deleted_files(
    records: Sequence[EmbeddingRecord], exists: Callable[[str], bool]
) -> Tuple[List[EmbeddingRecord], CleanupStats]:
    """Drop file chunks whose path `exists` reports missing."""
    known: Dict[str, bool] = {}
    out = []
    for record in records:
        if record.kind is RecordKind.FILE_CHUNK:
            path = record.attributes.get("path")
            if path:
                if path not in known:
                    known[path] = exists(path)
                if not known[path]:
                    continue
        out.append(record)
    stats = CleanupStats(len(records), len(out))
    logger.info(f"Deleted files cleanup: removed {stats.removed}")
    return out, stats


def checkout_exists(repo_root: Path) -> Callable[[str], bool]:
    root = Path(repo_root)
    return lambda path: (root / path).is_file()


def pruning_score(record: EmbeddingRecord, now: _dt.datetime) -> int:
    """Capacity priority: recent commits and Q&A first, source files over others, first chunks over later ones."""
    attrs = record.attributes
    if record.kind is RecordKind.COMMIT:
        date = parse_timestamp(attrs.get("date"))
        if date is None:
            return 50
        return 100 if (now - date).days < 90 else 50
    if record.kind is RecordKind.FILE_CHUNK:
        score = 40
        if SOURCE_FILE_RE.search(attrs.get("path") or ""):
            score += 40
        if (attrs.get("chunk_index") or 0) > 0:
            score -= 30
        return score
    asked = parse_timestamp(attrs.get("asked_at"))
    if asked is None:
        return 30
    return 90 if (now - asked).days < 30 else 30


def estimate_size_mb(records: Sequence[EmbeddingRecord]) -> float:
    return len(encode_snapshot(CorpusSnapshot.build(records))) / (1024 * 1024)


def enforce_capacity(
    records: Sequence[EmbeddingRecord], max_size_mb: float, now: _dt.datetime
) -> Tuple[List[EmbeddingRecord], CleanupStats]:
    """Cut the record list to fit `max_size_mb` compressed, keeping the highest priority records."""
    size_mb = estimate_size_mb(records) if records else 0.0
    if size_mb <= max_size_mb:
        logger.info(f"Capacity check: {size_mb:.2f} MB within {max_size_mb} MB")
        return list(records), CleanupStats(len(records), len(records))

    target = int(len(records) * (max_size_mb / size_mb) * CAPACITY_SAFETY)
    ranked = sorted(range(len(records)), key=lambda i: pruning_score(records[i], now), reverse=True)
    keep = set(ranked[:target])
    out = [r for i, r in enumerate(records) if i in keep]
    stats = CleanupStats(len(records), len(out))
    logger.warning(f"Capacity limit: {size_mb:.2f} MB exceeds {max_size_mb} MB, kept {target} of {len(records)}")
    return out, stats


def _unchanged(records: Sequence[EmbeddingRecord]) -> Tuple[List[EmbeddingRecord], CleanupStats]:
    return list(records), CleanupStats(len(records), len(records))


def run_cleanup(
    records: Sequence[EmbeddingRecord],
    cfg: Dict,
    policy: RetentionPolicy,
    manager: RetentionManager,
    now: _dt.datetime,
    exists: Optional[Callable[[str], bool]] = None,
) -> Tuple[List[EmbeddingRecord], CleanupReport]:
    """Run every configured cleanup step in order."""
    cleanup = cfg.get("cleanup", {})

    cleaned, history_stats = prune_history(records, policy, manager, now=now)

    if cleanup.get("code_max_age_days"):
        cleaned, age_stats = prune_by_age(cleaned, float(cleanup["code_max_age_days"]), now)
    else:
        cleaned, age_stats = _unchanged(cleaned)

    if exists is not None and cleanup.get("prune_deleted_files", True):
        cleaned, deleted_stats = prune_deleted_files(cleaned, exists)
    else:
        cleaned, deleted_stats = _unchanged(cleaned)

    if cleanup.get("max_size_mb"):
        cleaned, capacity_stats = enforce_capacity(cleaned, float(cleanup["max_size_mb"]), now)
    else:
        cleaned, capacity_stats = _unchanged(cleaned)

    report = CleanupReport(history_stats, age_stats, deleted_stats, capacity_stats)
    logger.info(f"Cleanup summary: {report.as_dict()} ({len(records)} -> {len(cleaned)})")
    return cleaned, report
