"""Incremental merge pipeline: collect, embed, merge, clean, export."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import retention_policy
from ..core import Embedder, EmbeddingRecord, make_embedder
from ..core.errors import SourceError
from ..core.models import CorpusSnapshot, CorpusSource, RecordKind, RetentionPolicy, attributes_for
from ..storage import export_snapshot, history_location_for, read_snapshot
from ..storage.loader import is_remote
from ..utils.clock import Clock, SystemClock
from .base import RawItem, UpstreamSource
from .cleanup import CleanupReport, run_cleanup
from .retention import RetentionManager
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)

# Failures of one embedding call that skip the item instead of aborting the run
EMBED_ERRORS = (RuntimeError, ValueError, TypeError)


def merge_records(
    previous: Iterable[EmbeddingRecord], collected: Iterable[EmbeddingRecord]
) -> List[EmbeddingRecord]:
    """Dedup by id; collected records win.

    Previous order is kept with replacements in place, then new ids follow in
    collection order.
    """
    merged: Dict[str, EmbeddingRecord] = {}
    for record in previous:
        merged[record.id] = record
    for record in collected:
        merged[record.id] = record
    return list(merged.values())


def to_record(item: RawItem, vector: Sequence[float], clock: Clock) -> EmbeddingRecord:
    return EmbeddingRecord(
        id=item.id,
        kind=item.kind,
        text=item.text,
        vector=vector,
        attributes=attributes_for(item.kind).from_dict(item.attributes),
        created_at=item.created_at or clock.now(),
    )


def embed_items(
    items: Sequence[RawItem],
    embedder: Embedder,
    batch_size: int = 32,
    clock: Optional[Clock] = None,
    skipped: Optional[List[str]] = None,
) -> List[EmbeddingRecord]:
    """Embed items in batches; a failed batch is retried item by item and failing items are skipped.

    Ids of skipped items are appended to `skipped` when it is given.
    """
    clock = clock or SystemClock()
    records: List[EmbeddingRecord] = []
    failed: List[str] = []
    for start in range(0, len(items), max(1, batch_size)):
        batch = items[start:start + max(1, batch_size)]
        try:
            vectors = embedder.embed([item.text for item in batch])
            if len(vectors) != len(batch):
                raise ValueError(f"got {len(vectors)} vectors for {len(batch)} texts")
        except EMBED_ERRORS as e:
            logger.warning(f"Batch of {len(batch)} failed ({e}), embedding one by one")
            vectors = []
            for item in batch:
                try:
                    vectors.append(embedder.embed_one(item.text))
                except EMBED_ERRORS as item_error:
                    logger.warning(f"Skipping {item.id}: embedding failed: {item_error}")
                    vectors.append(None)

        for item, vector in zip(batch, vectors):
            if vector is None:
                failed.append(item.id)
                continue
            try:
                records.append(to_record(item, vector, clock))
            except (TypeError, ValueError) as e:
                failed.append(item.id)
                logger.warning(f"Skipping {item.id}: invalid record: {e}")

        logger.debug(f"Embedded {min(start + len(batch), len(items))}/{len(items)} items")

    if failed:
        logger.warning(f"Skipped {len(failed)} of {len(items)} items")
        if skipped is not None:
            skipped.extend(failed)
    return records


def drop_stale_chunks(records: Sequence[EmbeddingRecord], collected: Sequence[EmbeddingRecord]) -> List[EmbeddingRecord]:
    """Remove previous chunks of re-chunked files that the new chunking no longer produces."""
    refreshed = {r.attributes.get("path") for r in collected if r.kind is RecordKind.FILE_CHUNK}
    if not refreshed:
        return list(records)
    emitted = {r.id for r in collected}
    return [
        r for r in records
        if not (r.kind is RecordKind.FILE_CHUNK and r.attributes.get("path") in refreshed and r.id not in emitted)
    ]


@dataclasses.dataclass
class PipelineResult:
    collected: int
    written: Dict[str, bool]
    snapshots: Dict[str, CorpusSnapshot]
    reports: Dict[str, CleanupReport]
    watermarks: Dict[str, Optional[str]]


class MergePipeline:
    """Merges freshly collected records into the previous snapshot and exports it.

    Code-source records go to the code snapshot, history-source records to
    the history snapshot next to it.
    """

    def __init__(
        self,
        cfg: Dict,
        embedder: Optional[Embedder] = None,
        clock: Optional[Clock] = None,
        exists: Optional[Callable[[str], bool]] = None,
        state: Optional[WatermarkStore] = None,
    ) -> None:
        self.cfg = cfg
        self._embedder = embedder
        self.clock = clock or SystemClock()
        self.retention = RetentionManager(self.clock)
        self.exists = exists
        self.state = state or WatermarkStore(cfg.get("pipeline", {}).get("state_path", "output/commit-state.json"), self.clock)

        corpus = cfg.get("corpus", {})
        location = cfg.get("pipeline", {}).get("output_path") or corpus.get("location")
        if not location or is_remote(location):
            raise ValueError(f"Pipeline output must be a local path, got {location!r}")
        self.outputs = {
            CorpusSource.CODE: Path(location),
            CorpusSource.HISTORY: Path(corpus.get("history_location") or history_location_for(location)),
        }

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = make_embedder(self.cfg)
        return self._embedder

    def run(
        self,
        collected: Sequence[EmbeddingRecord],
        previous: CorpusSnapshot,
        policy: RetentionPolicy,
        skip_cleanup: bool = False,
    ) -> CorpusSnapshot:
        snapshot, _ = self._merge(collected, previous, policy, skip_cleanup)
        return snapshot

    def _merge(
        self,
        collected: Sequence[EmbeddingRecord],
        previous: CorpusSnapshot,
        policy: RetentionPolicy,
        skip_cleanup: bool = False,
    ):
        now = self.clock.now()
        merged = merge_records(previous.records, collected)
        report = None
        if self.cfg.get("cleanup", {}).get("enabled", True) and not skip_cleanup:
            merged, report = run_cleanup(merged, self.cfg, policy, self.retention, now, exists=self.exists)
        logger.info(f"Merged {len(collected)} collected into {len(previous.records)} previous -> {len(merged)} records")
        return CorpusSnapshot.build(merged, created_at=now), report

    def execute(
        self,
        sources: Sequence[UpstreamSource],
        reset: bool = False,
        skip_cleanup: bool = False,
    ) -> PipelineResult:
        policy = retention_policy(self.cfg)
        if reset:
            self.state.reset()

        previous: Dict[CorpusSource, CorpusSnapshot] = {}
        for source, path in self.outputs.items():
            loaded = None if reset else read_snapshot(path)
            previous[source] = loaded if loaded is not None else CorpusSnapshot.empty(created_at=self.clock.now())

        items: List[RawItem] = []
        marks: Dict[str, Optional[str]] = {}
        fetched_by: Dict[str, Tuple[UpstreamSource, Optional[str], List[RawItem]]] = {}
        for upstream in sources:
            upstream.observe(previous[CorpusSource.CODE])
            since = self.state.get(upstream.name)
            try:
                fetched, mark = upstream.fetch(since)
            except SourceError as e:
                logger.error(f"Source {upstream.name} failed, keeping its watermark: {e}")
                continue
            logger.info(f"Source {upstream.name}: {len(fetched)} new items")
            items.extend(fetched)
            marks[upstream.name] = mark
            fetched_by[upstream.name] = (upstream, since, fetched)

        batch_size = int(self.cfg.get("embedding", {}).get("batch_size", 32))
        skipped: List[str] = []
        collected = embed_items(items, self.embedder, batch_size, self.clock, skipped=skipped) if items else []
        if skipped:
            failed = set(skipped)
            for name, (upstream, since, fetched) in fetched_by.items():
                if any(item.id in failed for item in fetched):
                    marks[name] = upstream.retry_mark(since, marks[name], fetched, failed)
                    logger.warning(f"Source {name} has items that failed to embed, watermark held at {marks[name]}")

        result = PipelineResult(collected=len(collected), written={}, snapshots={}, reports={}, watermarks=marks)
        for source, path in self.outputs.items():
            part = [r for r in collected if r.source is source]
            if not part and path.exists() and not reset:
                logger.info(f"No new {source.value} records, leaving {path} untouched")
                result.written[source.value] = False
                result.snapshots[source.value] = previous[source]
                continue
            base = previous[source]
            if source is CorpusSource.CODE:
                base = CorpusSnapshot.build(drop_stale_chunks(base.records, part), created_at=base.created_at)
            snapshot, report = self._merge(part, base, policy, skip_cleanup)
            export_snapshot(snapshot, path)
            result.written[source.value] = True
            result.snapshots[source.value] = snapshot
            if report is not None:
                result.reports[source.value] = report

        for name, mark in marks.items():
            self.state.advance(name, mark)
        return result
