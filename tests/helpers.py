"""Builders and fakes shared by the test modules."""

import datetime as dt
import hashlib
from typing import List, Optional

from repocontext.core import EmbeddingError
from repocontext.core.embeddings import Embedder
from repocontext.core.models import CorpusSnapshot, EmbeddingRecord, RecordKind, attributes_for

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def make_record(
    id: str,
    vector=(1.0, 0.0),
    kind: RecordKind = RecordKind.COMMIT,
    text: Optional[str] = None,
    created_at: Optional[dt.datetime] = None,
    source=None,
    **attributes,
) -> EmbeddingRecord:
    return EmbeddingRecord(
        id=id,
        kind=kind,
        text=text if text is not None else f"text of {id}",
        vector=vector,
        attributes=attributes_for(kind).from_dict(attributes),
        created_at=created_at or NOW,
        source=source,
    )


def make_qa(id: str, days_old: float = 0.0, vector=(1.0, 0.0), **attributes) -> EmbeddingRecord:
    return make_record(
        id,
        vector=vector,
        kind=RecordKind.QA_QUESTION,
        created_at=NOW - dt.timedelta(days=days_old),
        **attributes,
    )


def snapshot_of(*records: EmbeddingRecord) -> CorpusSnapshot:
    return CorpusSnapshot.build(records, created_at=NOW)


class StaticLoader:
    """Loader stand-in serving a fixed snapshot."""

    def __init__(self, snapshot: CorpusSnapshot, name: str = "static") -> None:
        self.snapshot = snapshot
        self.name = name
        self.location = None
        self.loads = 0

    def load(self, strict: bool = False) -> CorpusSnapshot:
        self.loads += 1
        return self.snapshot

    def invalidate(self) -> None:
        pass


class HashEmbedder(Embedder):
    """Deterministic 4-d vectors; texts containing BOOM fail unless `failing` is off."""

    name = "hash"

    def __init__(self, failing: bool = True) -> None:
        self.failing = failing
        self.calls: List[List[str]] = []

    @staticmethod
    def vector_for(text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 + 0.01 for b in digest[:4]]

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failing and any("BOOM" in t for t in texts):
            raise EmbeddingError("cannot embed BOOM")
        return [self.vector_for(t) for t in texts]


class StubResponse:
    def __init__(self, status_code: int, content: bytes = b"", headers=None) -> None:
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}


class StubSession:
    """Replays queued responses (or raises queued exceptions) for `get`."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {}), "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
