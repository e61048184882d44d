"""Corpus snapshot loading with TTL and entity-tag based caching."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import logging
from pathlib import Path
from typing import Optional

import requests

from ..core.errors import TransportError
from ..core.models import CorpusSnapshot
from ..utils.clock import Clock, SystemClock
from .codec import decode_snapshot

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CacheEntry:
    snapshot: CorpusSnapshot
    # None marks the entry stale regardless of TTL
    loaded_at: Optional[_dt.datetime]
    tag: Optional[str] = None
    # Location the tag belongs to
    origin: Optional[str] = None
    # Empty stand-in served because the very first fetch failed
    degraded: bool = False

    def tag_for(self, location: str) -> Optional[str]:
        return self.tag if self.origin == location else None


class SnapshotCache:
    """Holds the last loaded snapshot, when it was loaded and its entity tag.

    The entry is replaced as a whole, so a reader sees either the previous
    snapshot or the new one, never a mix.
    """

    def __init__(self) -> None:
        self.entry: Optional[CacheEntry] = None

    @property
    def snapshot(self) -> Optional[CorpusSnapshot]:
        return self.entry.snapshot if self.entry else None

    def store(
        self,
        snapshot: CorpusSnapshot,
        loaded_at: _dt.datetime,
        tag: Optional[str] = None,
        origin: Optional[str] = None,
        degraded: bool = False,
    ) -> None:
        self.entry = CacheEntry(snapshot, loaded_at, tag, origin, degraded)

    def touch(self, loaded_at: _dt.datetime) -> None:
        if self.entry is not None:
            self.entry = dataclasses.replace(self.entry, loaded_at=loaded_at)

    def invalidate(self) -> None:
        if self.entry is not None:
            self.entry = dataclasses.replace(self.entry, loaded_at=None)

    def is_fresh(self, now: _dt.datetime, ttl_seconds: float) -> bool:
        entry = self.entry
        if entry is None or entry.loaded_at is None:
            return False
        return (now - entry.loaded_at).total_seconds() < ttl_seconds


def is_remote(location: Optional[str]) -> bool:
    return bool(location) and location.lower().startswith(("http://", "https://"))


def history_location_for(location: Optional[str]) -> Optional[str]:
    """Sibling location of the history corpus: `.../embeddings.json.gz` -> `.../history-embeddings.json.gz`."""
    if not location:
        return None
    head, sep, tail = location.rpartition("/")
    return f"{head}{sep}history-{tail}"


class CorpusLoader:
    """Loads one corpus snapshot from a URL or local path.

    Transport failures before any snapshot has been served degrade to an empty
    snapshot, cached for the TTL like a real one. Once a snapshot has been
    served, or during `refresh()`, they raise `TransportError`. Schema errors
    always raise.
    """

    def __init__(
        self,
        location: Optional[str],
        cache: Optional[SnapshotCache] = None,
        clock: Optional[Clock] = None,
        ttl_seconds: float = 300,
        timeout: float = 10,
        fallback_path: Optional[str] = None,
        session: Optional[requests.Session] = None,
        name: str = "corpus",
    ) -> None:
        self.location = location
        self.cache = cache if cache is not None else SnapshotCache()
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.fallback_path = fallback_path
        self.session = session or requests.Session()
        self.name = name

    def load(self, strict: bool = False) -> CorpusSnapshot:
        now = self.clock.now()
        if self.cache.is_fresh(now, self.ttl_seconds):
            return self.cache.entry.snapshot

        previous = self.cache.entry
        try:
            return self._fetch(now)
        except TransportError as e:
            if (previous is None or previous.degraded) and not strict:
                logger.error(f"[{self.name}] No snapshot loaded yet and fetch failed, serving empty corpus: {e}")
                snapshot = CorpusSnapshot.empty(created_at=now)
                self.cache.store(snapshot, now, degraded=True)
                return snapshot
            raise

    def invalidate(self) -> None:
        """Force the next `load()` to go past the TTL."""
        self.cache.invalidate()

    def refresh(self) -> CorpusSnapshot:
        self.invalidate()
        return self.load(strict=True)

    # -------------------------------------------------------------------------

    def _fetch(self, now: _dt.datetime) -> CorpusSnapshot:
        if not self.location:
            return self._load_fallback_or_empty(now, "no location configured")
        if is_remote(self.location):
            return self._fetch_remote(self.location, now)
        return self._load_local(self.location, now)

    def _fetch_remote(self, url: str, now: _dt.datetime) -> CorpusSnapshot:
        entry = self.cache.entry
        headers = {}
        tag = entry.tag_for(url) if entry is not None else None
        if tag:
            headers["If-None-Match"] = tag

        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportError(f"Timed out after {self.timeout}s fetching {url}") from e
        except requests.RequestException as e:
            raise TransportError(f"Failed to fetch {url}: {e}") from e

        status = response.status_code
        if status == 304:
            if not tag:
                raise TransportError(f"{url} answered 304 without a cached snapshot")
            logger.debug(f"[{self.name}] {url} not modified, reusing cached snapshot")
            self.cache.touch(now)
            return entry.snapshot
        if status == 404:
            return self._load_fallback_or_empty(now, f"{url} not found")
        if status != 200:
            raise TransportError(f"Fetching {url} failed with HTTP {status}")

        snapshot = decode_snapshot(response.content)
        self.cache.store(snapshot, now, response.headers.get("ETag"), origin=url)
        logger.info(f"[{self.name}] Loaded {len(snapshot.records)} records from {url}")
        return snapshot

    def _load_local(self, path: str, now: _dt.datetime, allow_fallback: bool = True) -> CorpusSnapshot:
        p = Path(path)
        try:
            stat = p.stat()
        except FileNotFoundError:
            if allow_fallback:
                return self._load_fallback_or_empty(now, f"{p} does not exist")
            raise TransportError(f"Snapshot file {p} does not exist")
        except OSError as e:
            raise TransportError(f"Could not stat {p}: {e}") from e

        tag = f'"{stat.st_mtime_ns:x}-{stat.st_size:x}"'
        entry = self.cache.entry
        if entry is not None and entry.tag_for(str(p)) == tag:
            self.cache.touch(now)
            return entry.snapshot

        try:
            data = p.read_bytes()
        except OSError as e:
            raise TransportError(f"Could not read snapshot {p}: {e}") from e
        snapshot = decode_snapshot(data)
        self.cache.store(snapshot, now, tag, origin=str(p))
        logger.info(f"[{self.name}] Loaded {len(snapshot.records)} records from {p}")
        return snapshot

    def _load_fallback_or_empty(self, now: _dt.datetime, reason: str) -> CorpusSnapshot:
        fallback = self.fallback_path
        if fallback and fallback != self.location and Path(fallback).exists():
            logger.info(f"[{self.name}] {reason}, using local fallback {fallback}")
            return self._load_local(fallback, now, allow_fallback=False)
        logger.info(f"[{self.name}] {reason}, serving empty corpus")
        snapshot = CorpusSnapshot.empty(created_at=now)
        self.cache.store(snapshot, now, None)
        return snapshot
