"""Upstream sources: repository checkout, git history and the interaction log."""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config import DEFAULT_EXCLUDE_PATTERNS, DEFAULT_INCLUDE_PATTERNS, chunking_fingerprint
from ..config.manager import _expand_patterns
from ..core import SemanticChunker
from ..core.errors import SourceError
from ..core.models import CorpusSnapshot, RecordKind
from ..utils import file_sha256, is_binary_file
from ..utils.clock import Clock, SystemClock, format_timestamp, parse_timestamp
from .base import RawItem, UpstreamSource

logger = logging.getLogger(__name__)

# Answer text kept in the embedded qa-answer text
ANSWER_SUMMARY_CHARS = 500

# Tree fingerprint stored while some file chunks still wait for their embedding
INCOMPLETE_TREE = "incomplete"


def _match_any(path: str, globs: List[str]) -> bool:
    return any(fnmatch.fnmatch(path, g) for g in globs)


def iter_files(repo: Path, cfg: Dict) -> Iterable[Path]:
    include_globs = cfg.get("include_globs", _expand_patterns(DEFAULT_INCLUDE_PATTERNS))
    exclude_globs = cfg.get("exclude_globs", _expand_patterns(DEFAULT_EXCLUDE_PATTERNS))
    max_kb = int(cfg.get("max_file_size_kb", 500))

    for p in repo.rglob("*"):
        if not p.is_file():
            continue
        rel = p.relative_to(repo).as_posix()
        if _match_any(rel, exclude_globs):
            continue
        if not _match_any(rel, include_globs):
            continue
        try:
            if (p.stat().st_size / 1024.0) > max_kb:
                continue
        except OSError:
            continue
        if is_binary_file(p):
            continue
        yield p


def file_chunk_id(path: str, chunk_index: int) -> str:
    return f"file-{path}#{chunk_index}"


class LocalRepositorySource(UpstreamSource):
    """Chunks the files of a checkout.

    The watermark is `<chunking fingerprint>:<tree fingerprint>`. An unchanged
    tree yields nothing; otherwise only files whose hash differs from the
    previous snapshot are re-chunked, unless the chunking settings changed.
    """

    name = "files"

    def __init__(
        self,
        repo: Path,
        cfg: Dict,
        chunker: Optional[SemanticChunker] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repo = Path(repo)
        self.cfg = cfg
        chunking = cfg.get("chunking", {})
        self.chunker = chunker or SemanticChunker(
            max_chunk_size=int(chunking.get("max_chunk_size", 4000)),
            min_chunk_size=int(chunking.get("min_chunk_size", 200)),
            overlap_percent=float(chunking.get("overlap_percent", 0.08)),
            count_tokens=bool(chunking.get("count_tokens", False)),
        )
        self.clock = clock or SystemClock()
        pipeline = cfg.get("pipeline", {})
        self.owner = pipeline.get("owner", "")
        self.repo_name = pipeline.get("repo", "")
        self._known_hashes: Dict[str, str] = {}

    def observe(self, previous: CorpusSnapshot) -> None:
        """Remember the hash of every file whose chunks are all in `previous`.

        A file with missing chunks, or chunks from different versions, is not
        known and gets re-chunked on the next changed-tree fetch.
        """
        chunks: Dict[str, List[Any]] = {}
        for record in previous.records:
            if record.kind is RecordKind.FILE_CHUNK:
                path = record.attributes.get("path")
                if path:
                    chunks.setdefault(path, []).append(record.attributes)
        self._known_hashes = {}
        for path, attrs in chunks.items():
            hashes = {a.get("file_hash") for a in attrs}
            indexes = {a.get("chunk_index") for a in attrs}
            if len(hashes) == 1 and len(indexes) >= max(a.get("chunk_count") or 1 for a in attrs):
                self._known_hashes[path] = hashes.pop()

    def retry_mark(self, since, mark, fetched, failed):
        # Keep the chunking part so complete files are reused; the tree part never matches
        if mark is None:
            return since
        return f"{mark.split(':', 1)[0]}:{INCOMPLETE_TREE}"

    def fetch(self, since: Optional[str]) -> Tuple[List[RawItem], Optional[str]]:
        if not self.repo.is_dir():
            raise SourceError(f"Repository path {self.repo} is not a directory")

        files = sorted((fp.relative_to(self.repo).as_posix(), fp) for fp in iter_files(self.repo, self.cfg))
        hashes = {rel: file_sha256(fp) for rel, fp in files}

        cfg_fp = chunking_fingerprint(self.cfg)[:16]
        tree = hashlib.sha256()
        for rel, _ in files:
            tree.update(f"{rel}:{hashes[rel]}\n".encode("utf-8"))
        watermark = f"{cfg_fp}:{tree.hexdigest()}"

        if since == watermark:
            logger.info(f"Checkout {self.repo} unchanged ({len(files)} files)")
            return [], watermark

        reuse = since is not None and since.split(":", 1)[0] == cfg_fp
        now = self.clock.now()
        items: List[RawItem] = []
        changed = 0
        for rel, fp in files:
            fhash = hashes[rel]
            if reuse and self._known_hashes.get(rel) == fhash:
                continue
            try:
                text = fp.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning(f"Skipping unreadable file {rel}: {e}")
                continue
            changed += 1
            for chunk in self.chunker.chunk(text, file_path=rel):
                items.append(
                    RawItem(
                        id=file_chunk_id(rel, chunk.chunk_index),
                        kind=RecordKind.FILE_CHUNK,
                        text=f"{rel}: {chunk.content}",
                        attributes={
                            "path": rel,
                            "chunk_index": chunk.chunk_index,
                            "chunk_count": chunk.chunk_count,
                            "start_line": chunk.start_line,
                            "end_line": chunk.end_line,
                            "unit_type": chunk.unit_type.value,
                            "unit_name": chunk.unit_name,
                            "file_hash": fhash,
                            "token_count": chunk.token_count,
                            "owner": self.owner,
                            "repo": self.repo_name,
                        },
                        created_at=now,
                    )
                )

        logger.info(f"Chunked {changed} changed files of {len(files)} into {len(items)} chunks")
        return items, watermark


Runner = Callable[..., subprocess.CompletedProcess]

# Record / field / file-list separators for `git log --format`
_RS, _FS, _GS = "\x1e", "\x1f", "\x1d"
GIT_LOG_FORMAT = f"{_RS}%H{_FS}%an{_FS}%aI{_FS}%B{_GS}"


class GitLogSource(UpstreamSource):
    """Commits since the last processed sha, oldest first.

    The first run takes the newest `max_commits` commits. Later runs take the
    oldest `max_commits` commits after the watermark, so a backlog is worked
    off over several runs without gaps.
    """

    name = "commits"

    def __init__(
        self,
        repo: Path,
        max_commits: int = 100,
        owner: str = "",
        repo_name: str = "",
        runner: Optional[Runner] = None,
    ) -> None:
        self.repo = Path(repo)
        self.max_commits = max_commits
        self.owner = owner
        self.repo_name = repo_name
        self.runner = runner or subprocess.run

    def _git_log(self, since: Optional[str]) -> List[Dict[str, Any]]:
        """Commits oldest first."""
        cmd = ["git", "-C", str(self.repo), "log", "--name-only", f"--format={GIT_LOG_FORMAT}"]
        if since:
            # --max-count is applied before --reverse, so the range is read whole
            cmd += ["--reverse", f"{since}..HEAD"]
        else:
            cmd.insert(4, f"--max-count={self.max_commits}")
        try:
            result = self.runner(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise SourceError("git executable not found") from e
        except subprocess.CalledProcessError as e:
            if since:
                logger.warning(f"git log from {since[:7]} failed ({(e.stderr or '').strip()}), reading full history")
                return self._git_log(None)
            raise SourceError(f"git log failed in {self.repo}: {(e.stderr or '').strip()}") from e

        commits = self.parse_log(result.stdout)
        if since:
            return commits[:self.max_commits]
        # git log lists newest first
        return list(reversed(commits))

    @staticmethod
    def parse_log(output: str) -> List[Dict[str, Any]]:
        commits = []
        for block in output.split(_RS):
            if not block.strip():
                continue
            header, _, files = block.partition(_GS)
            fields = header.split(_FS, 3)
            if len(fields) < 4:
                logger.warning(f"Skipping malformed git log entry: {header[:80]!r}")
                continue
            sha, author, date, message = fields
            commits.append({
                "sha": sha.strip(),
                "author": author.strip() or "unknown",
                "date": date.strip(),
                "message": message.strip(),
                "affected_files": [line.strip() for line in files.splitlines() if line.strip()],
            })
        return commits

    def fetch(self, since: Optional[str]) -> Tuple[List[RawItem], Optional[str]]:
        commits = self._git_log(since)
        if not commits:
            return [], since
        items = []
        for commit in commits:
            items.append(
                RawItem(
                    id=f"commit-{commit['sha']}",
                    kind=RecordKind.COMMIT,
                    text=f"{commit['message']} | Author: {commit['author']}",
                    attributes={**commit, "owner": self.owner, "repo": self.repo_name},
                    created_at=parse_timestamp(commit["date"]),
                )
            )
        logger.info(f"Collected {len(items)} commits from {self.repo}")
        return items, commits[-1]["sha"]

    def retry_mark(self, since, mark, fetched, failed):
        """The sha just before the first commit that failed to embed."""
        previous = since
        for item in fetched:
            if item.id in failed:
                return previous
            previous = item.attributes["sha"]
        return mark


def interaction_id(entry: Dict[str, Any]) -> str:
    if entry.get("id"):
        return str(entry["id"])
    key = f"{entry.get('session_id', '')}|{entry.get('asked_at', '')}|{entry.get('question', '')}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def interaction_items(entry: Dict[str, Any]) -> List[RawItem]:
    """Question and answer items for one completed interaction."""
    question = str(entry.get("question") or "").strip()
    if not question:
        raise ValueError("interaction has no question")
    answer = str(entry.get("answer") or "").strip()
    qid = interaction_id(entry)
    asked_at = parse_timestamp(entry.get("asked_at"))
    attributes = {
        "session_id": entry.get("session_id", ""),
        "category": entry.get("category"),
        "status": entry.get("status", "success"),
        "asked_at": format_timestamp(asked_at) if asked_at else "",
        "answered_at": entry.get("answered_at", ""),
        "response_time_ms": entry.get("response_time_ms"),
        "token_usage": entry.get("token_usage"),
        "owner": entry.get("owner", ""),
        "repo": entry.get("repo", ""),
    }
    items = [RawItem(f"qa-{qid}-question", RecordKind.QA_QUESTION, question, dict(attributes), asked_at)]
    if answer:
        summary = answer[:ANSWER_SUMMARY_CHARS]
        items.append(
            RawItem(f"qa-{qid}-answer", RecordKind.QA_ANSWER, f"{question} | {summary}", dict(attributes), asked_at)
        )
    return items


class InteractionLogSource(UpstreamSource):
    """JSON-lines interaction log; watermark is the newest `asked_at` seen."""

    name = "interactions"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def fetch(self, since: Optional[str]) -> Tuple[List[RawItem], Optional[str]]:
        if not self.path.exists():
            logger.info(f"No interaction log at {self.path}")
            return [], since
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise SourceError(f"Could not read interaction log {self.path}: {e}") from e

        cutoff = parse_timestamp(since)
        newest = cutoff
        items: List[RawItem] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                asked_at = parse_timestamp(entry.get("asked_at"))
                if asked_at is None:
                    raise ValueError("missing asked_at")
                if cutoff is not None and asked_at <= cutoff:
                    continue
                items.extend(interaction_items(entry))
            except (ValueError, AttributeError) as e:
                logger.warning(f"Skipping interaction log line {lineno}: {e}")
                continue
            if newest is None or asked_at > newest:
                newest = asked_at

        logger.info(f"Collected {len(items)} interaction records from {self.path}")
        return items, format_timestamp(newest) if newest else since

    def retry_mark(self, since, mark, fetched, failed):
        """The newest `asked_at` strictly older than every interaction that failed to embed."""
        earliest = min(item.created_at for item in fetched if item.id in failed)
        done = [item.created_at for item in fetched if item.created_at < earliest]
        return format_timestamp(max(done)) if done else since
