"""Factory for creating corpus loaders from config."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import requests

from ..utils.clock import Clock
from .loader import CorpusLoader, SnapshotCache, history_location_for


def create_loaders(
    cfg: Dict,
    clock: Optional[Clock] = None,
    session: Optional[requests.Session] = None,
) -> Tuple[CorpusLoader, CorpusLoader]:
    """Build the (code, history) loader pair, each with its own cache."""
    corpus_cfg = cfg.get("corpus", {})
    location = corpus_cfg.get("location")
    history_location = corpus_cfg.get("history_location") or history_location_for(location)
    fallback = corpus_cfg.get("fallback_path")
    ttl = float(corpus_cfg.get("cache_ttl_seconds", 300))
    timeout = float(corpus_cfg.get("fetch_timeout_seconds", 10))
    session = session or requests.Session()

    code = CorpusLoader(
        location,
        cache=SnapshotCache(),
        clock=clock,
        ttl_seconds=ttl,
        timeout=timeout,
        fallback_path=fallback,
        session=session,
        name="code",
    )
    history = CorpusLoader(
        history_location,
        cache=SnapshotCache(),
        clock=clock,
        ttl_seconds=ttl,
        timeout=timeout,
        fallback_path=history_location_for(fallback) if fallback else None,
        session=session,
        name="history",
    )
    return code, history
