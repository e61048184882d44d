"""
Tests for the retrieval engine.
"""

import pytest

from repocontext.core import DimensionMismatchError
from repocontext.core.models import CorpusSnapshot, RecordKind
from repocontext.search import RetrievalEngine, RetrievalMode, format_hit, mode_for_category

from helpers import HashEmbedder, StaticLoader, make_qa, make_record, snapshot_of


def _ids(results):
    return [r.id for r in results]


def _code_corpus():
    return snapshot_of(
        make_record("c1", (1.0, 0.0), sha="aaaaaaa1", author="ann"),
        make_record("c2", (0.9, 0.1), sha="aaaaaaa2", author="bob"),
        make_record("c3", (0.8, 0.2), sha="aaaaaaa3", author="ann"),
        make_record("f1", (0.95, 0.05), kind=RecordKind.FILE_CHUNK, path="src/a.py", start_line=1, end_line=20),
        make_record("f2", (0.7, 0.3), kind=RecordKind.FILE_CHUNK, path="src/b.py"),
    )


def _history_corpus():
    return snapshot_of(
        make_qa("h1", vector=(0.99, 0.01), category="cs"),
        make_qa("h2", vector=(0.85, 0.15), category="issue"),
        make_qa("h3", vector=(0.6, 0.4), category="cs"),
    )


@pytest.fixture
def engine():
    return RetrievalEngine(StaticLoader(_code_corpus(), "code"), StaticLoader(_history_corpus(), "history"))


class TestBasicRetrieval:
    def test_two_vector_corpus(self):
        loader = StaticLoader(snapshot_of(make_record("A", (1.0, 0.0)), make_record("B", (0.0, 1.0))))
        results = RetrievalEngine(loader).retrieve([1.0, 0.0], k=1)
        assert _ids(results) == ["A"]
        assert results[0].score == pytest.approx(1.0)

    def test_results_sorted_and_bounded(self, engine):
        results = engine.retrieve([1.0, 0.0], k=4, mode="all")
        scores = [r.score for r in results]
        assert len(results) == 4
        assert scores == sorted(scores, reverse=True)
        assert _ids(results) == ["c1", "h1", "f1", "c2"]

    def test_default_k(self, engine):
        assert len(engine.retrieve([1.0, 0.0])) == 5

    def test_non_positive_k(self, engine):
        assert engine.retrieve([1.0, 0.0], k=0) == []

    def test_min_score(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, mode="code", min_score=0.98)
        assert all(r.score >= 0.98 for r in results)
        assert _ids(results) == ["c1", "f1", "c2"]

    def test_dimension_mismatch(self, engine):
        with pytest.raises(DimensionMismatchError):
            engine.retrieve([1.0, 0.0, 0.0], k=3)

    def test_empty_corpora(self):
        empty = CorpusSnapshot.empty()
        engine = RetrievalEngine(StaticLoader(empty), StaticLoader(empty))
        assert engine.retrieve([1.0, 0.0], k=5) == []


class TestModes:
    def test_code_mode_skips_history(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, mode="code")
        assert set(_ids(results)) == {"c1", "c2", "c3", "f1", "f2"}

    def test_history_mode(self, engine):
        assert _ids(engine.retrieve([1.0, 0.0], k=10, mode="history")) == ["h1", "h2", "h3"]

    def test_mixed_splits_budget(self, engine):
        results = engine.retrieve([1.0, 0.0], k=5, mode="mixed")
        ids = _ids(results)
        assert sum(1 for i in ids if i.startswith("h")) == 2
        assert sum(1 for i in ids if not i.startswith("h")) == 3
        assert ids == ["c1", "h1", "f1", "c2", "h2"]

    def test_history_without_history_loader_uses_source(self):
        records = _code_corpus().records + _history_corpus().records
        engine = RetrievalEngine(StaticLoader(snapshot_of(*records)))
        assert _ids(engine.retrieve([1.0, 0.0], k=10, mode="history")) == ["h1", "h2", "h3"]
        assert all(not i.startswith("h") for i in _ids(engine.retrieve([1.0, 0.0], k=10, mode="code")))

    def test_category_picks_mode(self, engine):
        assert all(r.kind == "qa-question" for r in engine.retrieve([1.0, 0.0], k=5, category="cs"))
        assert all(r.kind != "qa-question" for r in engine.retrieve([1.0, 0.0], k=5, category="implementation"))

    def test_explicit_mode_wins_over_category(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, mode="code", category="cs")
        assert all(r.kind != "qa-question" for r in results)

    def test_category_mapping(self):
        assert mode_for_category("techStack") is RetrievalMode.CODE
        assert mode_for_category("etc") is RetrievalMode.HISTORY
        assert mode_for_category("planning") is RetrievalMode.MIXED
        assert mode_for_category("unknown") is RetrievalMode.ALL
        assert mode_for_category(None, default="code") is RetrievalMode.CODE

    def test_unknown_mode(self, engine):
        with pytest.raises(ValueError):
            engine.retrieve([1.0, 0.0], mode="sideways")


class TestFilters:
    def test_kind_filter(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, filters={"kind": "file-chunk"})
        assert _ids(results) == ["f1", "f2"]

    def test_kind_filter_list(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, filters={"kind": ["file-chunk", "qa-question"]})
        assert set(_ids(results)) == {"f1", "f2", "h1", "h2", "h3"}

    def test_category_filter(self, engine):
        assert _ids(engine.retrieve([1.0, 0.0], k=10, filters={"category": "issue"})) == ["h2"]

    def test_attribute_filter(self, engine):
        results = engine.retrieve([1.0, 0.0], k=10, filters={"author": "ann"})
        assert _ids(results) == ["c1", "c3"]

    def test_filter_matches_nothing(self, engine):
        assert engine.retrieve([1.0, 0.0], k=10, filters={"path": "nope.py"}) == []


class TestMergeAndCaching:
    def test_duplicates_keep_best_score(self):
        code = StaticLoader(snapshot_of(make_record("dup", (0.5, 0.5)), make_record("x", (0.0, 1.0))))
        history = StaticLoader(snapshot_of(make_record("dup", (1.0, 0.0))))
        results = RetrievalEngine(code, history).retrieve([1.0, 0.0], k=5)
        assert _ids(results) == ["dup", "x"]
        assert results[0].score == pytest.approx(1.0)

    def test_index_rebuilt_only_for_new_snapshot(self, engine):
        engine.retrieve([1.0, 0.0], k=2)
        first = engine._indices[id(engine.code_loader)][1]
        engine.retrieve([0.0, 1.0], k=2)
        assert engine._indices[id(engine.code_loader)][1] is first

        engine.code_loader.snapshot = snapshot_of(make_record("new", (1.0, 0.0)))
        assert _ids(engine.retrieve([1.0, 0.0], k=1, mode="code")) == ["new"]
        assert engine._indices[id(engine.code_loader)][1] is not first

    def test_retrieve_text(self):
        embedder = HashEmbedder()
        target = make_record("t", tuple(HashEmbedder.vector_for("where is auth?")))
        other = make_record("o", (0.0, 0.0, 0.0, 1.0))
        engine = RetrievalEngine(StaticLoader(snapshot_of(target, other)))
        results = engine.retrieve_text("where is auth?", embedder, k=1)
        assert _ids(results) == ["t"]
        assert results[0].score == pytest.approx(1.0)


class TestFormatting:
    def test_file_chunk_header(self, engine):
        hit = engine.retrieve([1.0, 0.0], k=10, filters={"path": "src/a.py"})[0]
        assert format_hit(hit).splitlines()[0].endswith("src/a.py:1-20")

    def test_commit_header_and_truncation(self):
        record = make_record("c", text="x" * 50, sha="abcdef123456", author="ann")
        engine = RetrievalEngine(StaticLoader(snapshot_of(record)))
        text = format_hit(engine.retrieve([1.0, 0.0], k=1)[0], max_chars=10)
        assert "commit abcdef1 by ann" in text
        assert "(truncated)" in text
