"""
Tests for the incremental merge pipeline.
"""

import datetime as dt
import json

import pytest

from repocontext.config import load_config, retention_policy
from repocontext.core import SemanticChunker, SourceError
from repocontext.core.models import CorpusSource, RecordKind
from repocontext.indexing import (
    InteractionLogSource,
    LocalRepositorySource,
    MergePipeline,
    RawItem,
    UpstreamSource,
    WatermarkStore,
    embed_items,
    merge_records,
)
from repocontext.indexing.pipeline import drop_stale_chunks
from repocontext.storage import read_snapshot

from helpers import NOW, HashEmbedder, make_qa, make_record, snapshot_of


class ListSource(UpstreamSource):
    """Serves a fixed batch once per watermark."""

    def __init__(self, name, items, mark):
        self.name = name
        self.items = items
        self.mark = mark
        self.seen = []

    def fetch(self, since):
        self.seen.append(since)
        if since == self.mark:
            return [], self.mark
        return list(self.items), self.mark


class BrokenSource(UpstreamSource):
    name = "broken"

    def fetch(self, since):
        raise SourceError("upstream is down")


def _commit_item(sha, message="fix", days_old=1):
    return RawItem(
        id=f"commit-{sha}",
        kind=RecordKind.COMMIT,
        text=f"{message} | Author: ann",
        attributes={"sha": sha, "author": "ann", "message": message},
        created_at=NOW - dt.timedelta(days=days_old),
    )


def _qa_item(qid, question="how does auth work?"):
    return RawItem(
        id=f"qa-{qid}-question",
        kind=RecordKind.QA_QUESTION,
        text=question,
        attributes={"session_id": "s1", "category": "issue", "asked_at": "2026-02-28T10:00:00Z"},
        created_at=NOW - dt.timedelta(days=1),
    )


@pytest.fixture
def cfg(tmp_path):
    return load_config(tmp_path, env={})


@pytest.fixture
def pipeline(cfg, clock):
    return MergePipeline(cfg, embedder=HashEmbedder(), clock=clock)


class TestMergeRecords:
    def test_collected_replaces_previous(self, pipeline):
        previous = snapshot_of(make_record("x", text="old"), make_record("y", text="keep"))
        collected = [make_record("x", text="new")]
        result = pipeline.run(collected, previous, retention_policy(pipeline.cfg))

        by_id = {r.id: r for r in result.records}
        assert len(result.records) == 2
        assert by_id["x"].text == "new"
        assert by_id["y"] is previous.records[1]

    def test_idempotent(self, pipeline):
        previous = snapshot_of(make_record("a"), make_record("b", (0.0, 1.0)))
        collected = [make_record("b", (0.5, 0.5), text="b2"), make_record("c")]
        policy = retention_policy(pipeline.cfg)
        once = pipeline.run(collected, previous, policy)
        twice = pipeline.run(collected, once, policy)
        assert [(r.id, r.text, r.vector) for r in once.records] == [(r.id, r.text, r.vector) for r in twice.records]

    def test_last_writer_wins_within_collected(self):
        merged = merge_records([], [make_record("x", text="first"), make_record("x", text="second")])
        assert [r.text for r in merged] == ["second"]

    def test_order_previous_then_new(self):
        merged = merge_records(
            [make_record("a"), make_record("b")],
            [make_record("c"), make_record("a", text="a2")],
        )
        assert [r.id for r in merged] == ["a", "b", "c"]
        assert merged[0].text == "a2"

    def test_history_retention_applied(self, pipeline):
        previous = snapshot_of(*[make_qa(f"q{i}", days_old=i) for i in range(5)])
        policy = retention_policy({"retention": {"strategy": "count", "max_count": 2}})
        result = pipeline.run([], previous, policy)
        assert [r.id for r in result.records] == ["q0", "q1"]

    def test_skip_cleanup(self, pipeline):
        previous = snapshot_of(*[make_qa(f"q{i}", days_old=i) for i in range(5)])
        policy = retention_policy({"retention": {"strategy": "count", "max_count": 2}})
        assert len(pipeline.run([], previous, policy, skip_cleanup=True)) == 5


class TestEmbedItems:
    def test_failing_item_is_skipped(self, clock):
        items = [_commit_item("a1"), _commit_item("b2", message="BOOM"), _commit_item("c3")]
        embedder = HashEmbedder()
        records = embed_items(items, embedder, batch_size=8, clock=clock)
        assert [r.id for r in records] == ["commit-a1", "commit-c3"]
        # one failed batch, then one call per item
        assert len(embedder.calls) == 4

    def test_skipped_ids_reported(self, clock):
        items = [_commit_item("a1", message="BOOM"), _commit_item("b2"), _commit_item("c3", message="BOOM")]
        skipped = []
        records = embed_items(items, HashEmbedder(), batch_size=2, clock=clock, skipped=skipped)
        assert [r.id for r in records] == ["commit-b2"]
        assert skipped == ["commit-a1", "commit-c3"]

    def test_batches(self, clock):
        items = [_commit_item(f"s{i}") for i in range(5)]
        embedder = HashEmbedder()
        records = embed_items(items, embedder, batch_size=2, clock=clock)
        assert len(records) == 5
        assert [len(c) for c in embedder.calls] == [2, 2, 1]

    def test_record_fields(self, clock):
        record = embed_items([_qa_item("q1")], HashEmbedder(), clock=clock)[0]
        assert record.kind is RecordKind.QA_QUESTION
        assert record.source is CorpusSource.HISTORY
        assert record.attributes.category == "issue"
        assert record.vector == tuple(HashEmbedder.vector_for("how does auth work?"))


class TestStaleChunks:
    def test_rechunked_file_drops_old_chunks(self):
        previous = [
            make_record("file-a.py#0", kind=RecordKind.FILE_CHUNK, path="a.py"),
            make_record("file-a.py#1", kind=RecordKind.FILE_CHUNK, path="a.py"),
            make_record("file-b.py#0", kind=RecordKind.FILE_CHUNK, path="b.py"),
            make_record("commit-1"),
        ]
        collected = [make_record("file-a.py#0", kind=RecordKind.FILE_CHUNK, path="a.py", text="new")]
        kept = drop_stale_chunks(previous, collected)
        assert [r.id for r in kept] == ["file-a.py#0", "file-b.py#0", "commit-1"]


class TestExecute:
    def test_routes_records_to_both_outputs(self, pipeline):
        sources = [
            ListSource("commits", [_commit_item("a1"), _commit_item("b2")], "b2"),
            ListSource("interactions", [_qa_item("q1")], "2026-02-28T10:00:00Z"),
        ]
        result = pipeline.execute(sources)

        assert result.collected == 3
        assert result.written == {"code": True, "history": True}
        code = read_snapshot(pipeline.outputs[CorpusSource.CODE])
        history = read_snapshot(pipeline.outputs[CorpusSource.HISTORY])
        assert [r.id for r in code.records] == ["commit-a1", "commit-b2"]
        assert [r.id for r in history.records] == ["qa-q1-question"]
        assert pipeline.outputs[CorpusSource.HISTORY].name == "history-embeddings.json.gz"
        assert pipeline.state.as_dict() == {"commits": "b2", "interactions": "2026-02-28T10:00:00Z"}

    def test_second_run_is_noop(self, pipeline):
        sources = [ListSource("commits", [_commit_item("a1")], "a1")]
        pipeline.execute(sources)
        code_path = pipeline.outputs[CorpusSource.CODE]
        before = code_path.stat().st_mtime_ns

        result = pipeline.execute(sources)
        assert result.collected == 0
        assert result.written == {"code": False, "history": False}
        assert code_path.stat().st_mtime_ns == before
        assert sources[0].seen == [None, "a1"]

    def test_incremental_run_appends(self, pipeline):
        pipeline.execute([ListSource("commits", [_commit_item("a1")], "a1")])
        pipeline.execute([ListSource("commits", [_commit_item("b2")], "b2")])
        code = read_snapshot(pipeline.outputs[CorpusSource.CODE])
        assert [r.id for r in code.records] == ["commit-a1", "commit-b2"]

    def test_reset_rebuilds_from_scratch(self, pipeline):
        pipeline.execute([ListSource("commits", [_commit_item("a1")], "a1")])
        result = pipeline.execute([ListSource("commits", [_commit_item("b2")], "b2")], reset=True)
        assert [r.id for r in result.snapshots["code"].records] == ["commit-b2"]

    def test_failing_source_keeps_watermark(self, pipeline):
        pipeline.state.advance("broken", "old-mark")
        result = pipeline.execute([BrokenSource(), ListSource("commits", [_commit_item("a1")], "a1")])
        assert result.collected == 1
        assert pipeline.state.get("broken") == "old-mark"

    def test_failed_interaction_retried_next_run(self, cfg, clock, tmp_path):
        log = tmp_path / "interactions.jsonl"
        entries = [
            {"id": "q1", "question": "BOOM why does it fail?", "asked_at": "2026-02-01T10:00:00Z"},
            {"id": "q2", "question": "how is auth done?", "asked_at": "2026-02-02T10:00:00Z"},
        ]
        log.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")
        source = InteractionLogSource(log)

        first = MergePipeline(cfg, embedder=HashEmbedder(), clock=clock)
        first.execute([source])
        assert first.state.get("interactions") is None

        second = MergePipeline(cfg, embedder=HashEmbedder(failing=False), clock=clock)
        second.execute([source])
        history = read_snapshot(second.outputs[CorpusSource.HISTORY])
        assert sorted(r.id for r in history.records) == ["qa-q1-question", "qa-q2-question"]
        assert second.state.get("interactions") == "2026-02-02T10:00:00Z"

    def test_failed_file_chunk_retried_next_run(self, cfg, clock, tmp_path):
        repo = tmp_path / "repo"
        (repo / "src").mkdir(parents=True)
        (repo / "src" / "good.py").write_text("def good():\n    return 1\n", encoding="utf-8")
        (repo / "src" / "bad.py").write_text("def bad():\n    return 'BOOM'\n", encoding="utf-8")
        source = LocalRepositorySource(repo, cfg, chunker=SemanticChunker())

        first = MergePipeline(cfg, embedder=HashEmbedder(), clock=clock)
        first.execute([source])
        code = read_snapshot(first.outputs[CorpusSource.CODE])
        assert [r.id for r in code.records] == ["file-src/good.py#0"]
        assert first.state.get("files").endswith(":incomplete")

        embedder = HashEmbedder(failing=False)
        second = MergePipeline(cfg, embedder=embedder, clock=clock)
        second.execute([source])
        code = read_snapshot(second.outputs[CorpusSource.CODE])
        assert sorted(r.id for r in code.records) == ["file-src/bad.py#0", "file-src/good.py#0"]
        # only the file that failed is embedded again
        assert [t.split(":", 1)[0] for batch in embedder.calls for t in batch] == ["src/bad.py"]
        assert not second.state.get("files").endswith(":incomplete")

        assert second.execute([source]).collected == 0

    def test_state_file_location(self, pipeline, cfg):
        assert isinstance(pipeline.state, WatermarkStore)
        assert str(pipeline.state.path) == cfg["pipeline"]["state_path"]

    def test_remote_output_rejected(self, clock):
        cfg = {"corpus": {"location": "https://example.com/embeddings.json.gz"}}
        with pytest.raises(ValueError):
            MergePipeline(cfg, embedder=HashEmbedder(), clock=clock)

    def test_explicit_output_path(self, tmp_path, clock):
        cfg = {
            "corpus": {"location": "https://example.com/embeddings.json.gz"},
            "pipeline": {"output_path": str(tmp_path / "out.json.gz"), "state_path": str(tmp_path / "state.json")},
        }
        pipeline = MergePipeline(cfg, embedder=HashEmbedder(), clock=clock)
        assert pipeline.outputs[CorpusSource.HISTORY] == tmp_path / "history-out.json.gz"
