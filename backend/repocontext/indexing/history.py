"""Appends completed interactions to the history snapshot."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from ..core import Embedder
from ..core.models import CorpusSnapshot, QAAttributes, RetentionPolicy
from ..storage import CorpusLoader, export_snapshot, read_snapshot
from ..utils.clock import Clock, SystemClock
from .pipeline import embed_items, merge_records
from .retention import RetentionManager
from .sources import interaction_items

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Writes question/answer records for each finished interaction.

    Retention runs on every append, so the history file stays bounded
    between pipeline runs. The loader serving the history corpus, if given,
    is invalidated after each write.
    """

    def __init__(
        self,
        path: Union[str, Path],
        embedder: Embedder,
        policy: RetentionPolicy,
        clock: Optional[Clock] = None,
        loader: Optional[CorpusLoader] = None,
    ) -> None:
        self.path = Path(path)
        self.embedder = embedder
        self.policy = policy
        self.clock = clock or SystemClock()
        self.retention = RetentionManager(self.clock)
        self.loader = loader

    def _previous(self) -> CorpusSnapshot:
        snapshot = read_snapshot(self.path)
        return snapshot if snapshot is not None else CorpusSnapshot.empty(created_at=self.clock.now())

    def _write(self, records) -> CorpusSnapshot:
        snapshot = CorpusSnapshot.build(records, created_at=self.clock.now())
        export_snapshot(snapshot, self.path)
        if self.loader is not None:
            self.loader.invalidate()
        return snapshot

    def record(self, interaction: Dict[str, Any]) -> CorpusSnapshot:
        """Embed and append one interaction, then prune.

        `interaction` carries `question`, `answer`, `session_id`, `category`,
        `status`, `asked_at` and optional metrics.
        """
        items = interaction_items(interaction)
        records = embed_items(items, self.embedder, batch_size=len(items), clock=self.clock)
        if not records:
            logger.warning(f"Interaction {items[0].id} produced no records, history unchanged")
            return self._previous()

        merged = merge_records(self._previous().records, records)
        kept, stats = self.retention.prune_with_stats(merged, self.policy)
        logger.info(f"History: +{len(records)} records, {stats.after} kept ({stats.removed} pruned)")
        return self._write(kept)

    def record_retrievals(self, ids: Iterable[str]) -> int:
        """Bump `retrieval_count` of the given history records; returns how many changed."""
        wanted = set(ids)
        if not wanted:
            return 0
        previous = self._previous()
        changed = 0
        records = []
        for record in previous.records:
            attrs = record.attributes
            if record.id in wanted and isinstance(attrs, QAAttributes):
                attrs = dataclasses.replace(attrs, retrieval_count=attrs.retrieval_count + 1)
                record = dataclasses.replace(record, attributes=attrs)
                changed += 1
            records.append(record)
        if changed:
            self._write(records)
        return changed
