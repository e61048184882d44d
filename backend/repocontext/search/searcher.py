"""Mode-aware retrieval over the code and history corpora."""

from __future__ import annotations

import enum
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from ..core import Embedder, RankedResult, SimilarityIndex
from ..core.models import CorpusSnapshot, CorpusSource, RecordKind
from ..storage import CorpusLoader, create_loaders
from ..utils.clock import Clock
from .topk import TopKSelector

logger = logging.getLogger(__name__)


class RetrievalMode(str, enum.Enum):
    CODE = "code"
    HISTORY = "history"
    MIXED = "mixed"
    ALL = "all"


# Question category -> corpus mix
CATEGORY_MODES: Dict[str, RetrievalMode] = {
    "implementation": RetrievalMode.CODE,
    "structure": RetrievalMode.CODE,
    "techStack": RetrievalMode.CODE,
    "data": RetrievalMode.CODE,
    "testing": RetrievalMode.CODE,
    "issue": RetrievalMode.CODE,
    "cs": RetrievalMode.HISTORY,
    "etc": RetrievalMode.HISTORY,
    "planning": RetrievalMode.MIXED,
    "status": RetrievalMode.MIXED,
    "summary": RetrievalMode.MIXED,
    "history": RetrievalMode.MIXED,
}


def mode_for_category(category: Optional[str], default: str = RetrievalMode.ALL.value) -> RetrievalMode:
    if category and category in CATEGORY_MODES:
        return CATEGORY_MODES[category]
    return RetrievalMode(default)


def _matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return actual in expected
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return actual == expected


class RetrievalEngine:
    """Composes the corpus loaders, one SimilarityIndex per loaded snapshot and TopKSelector."""

    def __init__(
        self,
        code_loader: CorpusLoader,
        history_loader: Optional[CorpusLoader] = None,
        top_k: int = 5,
        default_mode: str = RetrievalMode.ALL.value,
        min_score: Optional[float] = None,
        selector: Optional[TopKSelector] = None,
    ) -> None:
        self.code_loader = code_loader
        self.history_loader = history_loader
        self.top_k = top_k
        self.default_mode = RetrievalMode(default_mode).value
        self.min_score = min_score
        self.selector = selector or TopKSelector()
        self._indices: Dict[int, Tuple[CorpusSnapshot, SimilarityIndex]] = {}

    def retrieve(
        self,
        query_vector: Sequence[float],
        k: Optional[int] = None,
        mode: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> List[RankedResult]:
        """Top-k results for `query_vector`, best first.

        Args:
            query_vector: Embedded query; must match the corpus dimension.
            k: Result budget, defaults to the configured top_k.
            mode: code, history, mixed or all. Derived from `category` when omitted.
            filters: Attribute equality constraints applied before scoring.
                `kind` and `category` resolve through the snapshot indices.
            category: Question category hint used only to pick the mode.
            min_score: Similarity floor.
        """
        k = self.top_k if k is None else k
        if k <= 0:
            return []
        resolved = RetrievalMode(mode) if mode else mode_for_category(category, self.default_mode)
        floor = self.min_score if min_score is None else min_score

        results: List[RankedResult] = []
        for loader, source, budget in self._plan(resolved, k):
            results.extend(self._search(loader, query_vector, source, budget, filters or {}, floor))

        merged = self._merge(results, k)
        logger.debug(f"Retrieved {len(merged)} results (mode={resolved.value}, k={k})")
        return merged

    def retrieve_text(self, question: str, embedder: Embedder, **kwargs: Any) -> List[RankedResult]:
        return self.retrieve(embedder.embed_one(question), **kwargs)

    def invalidate(self) -> None:
        self.code_loader.invalidate()
        if self.history_loader is not None:
            self.history_loader.invalidate()

    # -------------------------------------------------------------------------

    def _plan(self, mode: RetrievalMode, k: int) -> List[Tuple[CorpusLoader, Optional[CorpusSource], int]]:
        history = self.history_loader
        if mode is RetrievalMode.CODE:
            return [(self.code_loader, CorpusSource.CODE, k)]
        if mode is RetrievalMode.HISTORY:
            if history is None:
                return [(self.code_loader, CorpusSource.HISTORY, k)]
            return [(history, None, k)]
        if mode is RetrievalMode.MIXED:
            code_budget = math.ceil(k / 2)
            history_budget = k - code_budget
            if history is None:
                return [
                    (self.code_loader, CorpusSource.CODE, code_budget),
                    (self.code_loader, CorpusSource.HISTORY, history_budget),
                ]
            return [(self.code_loader, CorpusSource.CODE, code_budget), (history, None, history_budget)]
        plan = [(self.code_loader, None, k)]
        if history is not None:
            plan.append((history, None, k))
        return plan

    def _index_for(self, loader: CorpusLoader) -> SimilarityIndex:
        snapshot = loader.load()
        cached = self._indices.get(id(loader))
        if cached is not None and cached[0] is snapshot:
            return cached[1]
        index = SimilarityIndex(snapshot)
        self._indices[id(loader)] = (snapshot, index)
        return index

    def _search(
        self,
        loader: CorpusLoader,
        query_vector: Sequence[float],
        source: Optional[CorpusSource],
        budget: int,
        filters: Dict[str, Any],
        min_score: Optional[float],
    ) -> List[RankedResult]:
        if budget <= 0:
            return []
        index = self._index_for(loader)
        positions = self._eligible(index, source, filters)
        picked = self.selector.select(index, query_vector, positions, budget, min_score)
        records = index.snapshot.records
        return [RankedResult.from_record(records[pos], score) for pos, score in picked]

    @staticmethod
    def _eligible(index: SimilarityIndex, source: Optional[CorpusSource], filters: Dict[str, Any]) -> List[int]:
        positions = index.positions_for_source(source) if source is not None else index.all_positions()

        if "kind" in filters:
            kinds = filters["kind"]
            kinds = kinds if isinstance(kinds, (list, tuple, set, frozenset)) else [kinds]
            allowed = set()
            for kind in kinds:
                allowed.update(index.positions_for_kind(RecordKind(kind)))
            positions = [p for p in positions if p in allowed]

        if "category" in filters:
            categories = filters["category"]
            categories = categories if isinstance(categories, (list, tuple, set, frozenset)) else [categories]
            allowed = set()
            for category in categories:
                allowed.update(index.positions_for_category(category))
            positions = [p for p in positions if p in allowed]

        remaining = {key: value for key, value in filters.items() if key not in ("kind", "category")}
        if remaining:
            records = index.snapshot.records
            positions = [
                p for p in positions
                if all(_matches(records[p].attributes.get(key), value) for key, value in remaining.items())
            ]
        return positions

    @staticmethod
    def _merge(results: List[RankedResult], k: int) -> List[RankedResult]:
        best: Dict[str, int] = {}
        unique: List[RankedResult] = []
        for result in results:
            at = best.get(result.id)
            if at is None:
                best[result.id] = len(unique)
                unique.append(result)
            elif result.score > unique[at].score:
                unique[at] = result
        unique.sort(key=lambda r: -r.score)
        return unique[:k]


def build_engine(
    cfg: Dict,
    clock: Optional[Clock] = None,
    session: Optional[requests.Session] = None,
) -> RetrievalEngine:
    """Build a RetrievalEngine from config."""
    code_loader, history_loader = create_loaders(cfg, clock=clock, session=session)
    retrieval = cfg.get("retrieval", {})
    return RetrievalEngine(
        code_loader,
        history_loader,
        top_k=int(retrieval.get("top_k", 5)),
        default_mode=retrieval.get("default_mode", RetrievalMode.ALL.value),
        min_score=retrieval.get("min_score"),
        selector=TopKSelector(int(retrieval.get("small_candidate_threshold", 256))),
    )


def format_hit(result: RankedResult, max_chars: int = 1200) -> str:
    snippet = result.text
    if len(snippet) > max_chars:
        snippet = snippet[:max_chars] + "\n…(truncated)…\n"
    attrs = result.attributes
    if result.kind == RecordKind.FILE_CHUNK.value:
        where = f"{attrs.get('path', '?')}:{attrs.get('start_line', '?')}-{attrs.get('end_line', '?')}"
    elif result.kind == RecordKind.COMMIT.value:
        where = f"commit {str(attrs.get('sha', ''))[:7]} by {attrs.get('author', 'unknown')}"
    else:
        where = f"{result.kind} [{attrs.get('category') or '-'}] session {attrs.get('session_id') or '-'}"
    header = f"{result.score:0.4f}  {where}"
    return header + "\n" + snippet.rstrip() + "\n"
