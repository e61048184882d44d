"""Command line entry point.

Usage:
    repocontext index [--repo PATH] [--reset] [--skip-cleanup]
    repocontext query "how is the cache invalidated?" [--mode mixed] [--top-k 5]
    repocontext stats
    repocontext record --question ... --answer ... [--category ...]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import load_config, retention_policy
from .core import CorpusError, DimensionMismatchError, make_embedder
from .core.models import CorpusSource, RecordKind, default_source
from .indexing import GitLogSource, HistoryRecorder, InteractionLogSource, LocalRepositorySource, MergePipeline
from .indexing.cleanup import checkout_exists
from .search import RetrievalMode, build_engine, format_hit
from .storage.loader import is_remote
from .utils import SystemClock, format_timestamp, repo_root

logger = logging.getLogger(__name__)


def _parse_filters(pairs: List[str]) -> Dict[str, str]:
    filters = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise SystemExit(f"Invalid --filter {pair!r}, expected key=value")
        filters[key.strip()] = value.strip()
    return filters


def cmd_index(args, cfg: Dict) -> int:
    repo = Path(cfg["repo_root"])
    pipeline_cfg = cfg["pipeline"]
    sources = [
        LocalRepositorySource(repo, cfg),
        GitLogSource(
            repo,
            max_commits=int(pipeline_cfg.get("max_commits", 100)),
            owner=pipeline_cfg.get("owner", ""),
            repo_name=pipeline_cfg.get("repo", ""),
        ),
        InteractionLogSource(Path(pipeline_cfg["interaction_log"])),
    ]
    exists = checkout_exists(repo) if cfg["cleanup"].get("prune_deleted_files", True) else None
    pipeline = MergePipeline(cfg, exists=exists)
    result = pipeline.execute(sources, reset=args.reset, skip_cleanup=args.skip_cleanup)

    print(f"Collected {result.collected} records")
    for name, written in result.written.items():
        snapshot = result.snapshots[name]
        state = "written" if written else "unchanged"
        print(f"  {name}: {len(snapshot)} records ({state})")
    return 0


def _record_history_hits(engine, embedder, cfg: Dict, results) -> None:
    """Count returned question/answer records as retrieved; they feed the importance score."""
    ids = [r.id for r in results if default_source(RecordKind(r.kind)) is CorpusSource.HISTORY]
    location = engine.history_loader.location
    if not ids or not location or is_remote(location):
        return
    recorder = HistoryRecorder(location, embedder, retention_policy(cfg), loader=engine.history_loader)
    changed = recorder.record_retrievals(ids)
    logger.debug(f"Recorded {changed} history retrievals")


def cmd_query(args, cfg: Dict) -> int:
    engine = build_engine(cfg)
    embedder = make_embedder(cfg)
    results = engine.retrieve_text(
        args.question,
        embedder,
        k=args.top_k,
        mode=args.mode,
        category=args.category,
        filters=_parse_filters(args.filter),
        min_score=args.min_score,
    )
    if cfg["retrieval"].get("record_retrievals", True):
        _record_history_hits(engine, embedder, cfg, results)
    if args.json:
        print(json.dumps([r.model_dump() for r in results], ensure_ascii=False, indent=2))
        return 0
    if not results:
        print("No results.")
        return 0
    for result in results:
        print(format_hit(result))
    return 0


def cmd_stats(args, cfg: Dict) -> int:
    engine = build_engine(cfg)
    loaders = [engine.code_loader, engine.history_loader]
    out = {}
    for loader in loaders:
        snapshot = loader.load()
        out[loader.name] = {
            "location": loader.location,
            "createdAt": format_timestamp(snapshot.created_at),
            **snapshot.stats,
        }
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0


def cmd_record(args, cfg: Dict) -> int:
    engine = build_engine(cfg)
    location = engine.history_loader.location
    if not location or is_remote(location):
        raise SystemExit(f"History location must be a local path to record into, got {location!r}")
    recorder = HistoryRecorder(
        location,
        make_embedder(cfg),
        retention_policy(cfg),
        loader=engine.history_loader,
    )
    snapshot = recorder.record({
        "question": args.question,
        "answer": args.answer,
        "category": args.category,
        "session_id": args.session_id or "",
        "status": args.status,
        "asked_at": format_timestamp(SystemClock().now()),
    })
    print(f"History now holds {len(snapshot)} records")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="repocontext", description="Repository knowledge retrieval")
    parser.add_argument("--repo", type=Path, default=None, help="Repository root (default: enclosing git repo)")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Collect, embed and merge into the snapshot")
    p_index.add_argument("--reset", action="store_true", help="Ignore watermarks and the previous snapshot")
    p_index.add_argument("--skip-cleanup", action="store_true")
    p_index.set_defaults(func=cmd_index)

    p_query = sub.add_parser("query", help="Retrieve ranked records for a question")
    p_query.add_argument("question")
    p_query.add_argument("--mode", choices=[m.value for m in RetrievalMode], default=None)
    p_query.add_argument("--category", default=None, help="Question category used to pick the mode")
    p_query.add_argument("--top-k", type=int, default=None)
    p_query.add_argument("--min-score", type=float, default=None)
    p_query.add_argument("--filter", action="append", default=[], metavar="KEY=VALUE")
    p_query.add_argument("--json", action="store_true")
    p_query.set_defaults(func=cmd_query)

    p_stats = sub.add_parser("stats", help="Print snapshot statistics")
    p_stats.set_defaults(func=cmd_stats)

    p_record = sub.add_parser("record", help="Append a finished interaction to the history corpus")
    p_record.add_argument("--question", required=True)
    p_record.add_argument("--answer", required=True)
    p_record.add_argument("--category", default=None)
    p_record.add_argument("--session-id", default=None)
    p_record.add_argument("--status", default="success", choices=["success", "partial", "failed"])
    p_record.set_defaults(func=cmd_record)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo = args.repo.resolve() if args.repo else repo_root(Path.cwd())
    cfg = load_config(repo)
    try:
        return args.func(args, cfg)
    except (CorpusError, DimensionMismatchError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
