"""Data models for repocontext."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

from pydantic import BaseModel, Field

from ..utils.clock import SystemClock, format_timestamp, parse_timestamp
from .errors import DimensionMismatchError

SCHEMA_VERSION = 2


class RecordKind(str, enum.Enum):
    COMMIT = "commit"
    FILE_CHUNK = "file-chunk"
    QA_QUESTION = "qa-question"
    QA_ANSWER = "qa-answer"


class CorpusSource(str, enum.Enum):
    """Logical partition a record is searched in."""

    CODE = "code"
    HISTORY = "history"


class UnitType(str, enum.Enum):
    CLASS = "class"
    FUNCTION = "function"
    METHOD = "method"
    BLOCK = "block"
    FULL = "full"


def default_source(kind: RecordKind) -> CorpusSource:
    if kind in (RecordKind.QA_QUESTION, RecordKind.QA_ANSWER):
        return CorpusSource.HISTORY
    return CorpusSource.CODE


# -----------------------------------------------------------------------------
# Attribute variants
# -----------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class _Attributes:
    owner: str = ""
    repo: str = ""
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in dataclasses.fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        extra = {k: v for k, v in data.items() if k not in known and k != "extra"}
        extra.update(data.get("extra") or {})
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for f in dataclasses.fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.name] = list(value) if isinstance(value, tuple) else value
        return out

    def get(self, key: str, default: Any = None) -> Any:
        if key != "extra" and key in {f.name for f in dataclasses.fields(self)}:
            return getattr(self, key)
        return self.extra.get(key, default)

    @property
    def category(self) -> Optional[str]:
        return None


@dataclasses.dataclass(frozen=True)
class CommitAttributes(_Attributes):
    sha: str = ""
    author: str = "unknown"
    date: str = ""
    message: str = ""
    affected_files: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "affected_files", tuple(self.affected_files or ()))


@dataclasses.dataclass(frozen=True)
class FileChunkAttributes(_Attributes):
    path: str = ""
    chunk_index: int = 0
    chunk_count: int = 1
    start_line: int = 1
    end_line: int = 1
    unit_type: str = UnitType.FULL.value
    unit_name: Optional[str] = None
    file_hash: str = ""
    token_count: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class QAAttributes(_Attributes):
    session_id: str = ""
    qa_category: Optional[str] = None
    status: str = "success"
    asked_at: str = ""
    answered_at: str = ""
    response_time_ms: Optional[int] = None
    token_usage: Optional[int] = None
    retrieval_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        data = dict(data)
        if "category" in data and "qa_category" not in data:
            data["qa_category"] = data.pop("category")
        return super().from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if "qa_category" in out:
            out["category"] = out.pop("qa_category")
        return out

    def get(self, key: str, default: Any = None) -> Any:
        if key == "category":
            return self.qa_category
        return super().get(key, default)

    @property
    def category(self) -> Optional[str]:
        return self.qa_category


RecordAttributes = Union[CommitAttributes, FileChunkAttributes, QAAttributes]

ATTRIBUTE_TYPES: Dict[RecordKind, Type[_Attributes]] = {
    RecordKind.COMMIT: CommitAttributes,
    RecordKind.FILE_CHUNK: FileChunkAttributes,
    RecordKind.QA_QUESTION: QAAttributes,
    RecordKind.QA_ANSWER: QAAttributes,
}


def attributes_for(kind: Union[RecordKind, str]) -> Type[_Attributes]:
    return ATTRIBUTE_TYPES[RecordKind(kind)]


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class EmbeddingRecord:
    """One embedded unit of repository knowledge."""

    id: str
    kind: RecordKind
    text: str
    vector: Tuple[float, ...]
    attributes: RecordAttributes
    created_at: _dt.datetime
    source: Optional[CorpusSource] = None

    def __post_init__(self) -> None:
        kind = RecordKind(self.kind)
        object.__setattr__(self, "kind", kind)
        expected = ATTRIBUTE_TYPES[kind]
        if not isinstance(self.attributes, expected):
            raise TypeError(
                f"Record {self.id!r} of kind {kind.value} needs {expected.__name__}, "
                f"got {type(self.attributes).__name__}"
            )
        object.__setattr__(self, "vector", tuple(float(x) for x in self.vector))
        created_at = parse_timestamp(self.created_at)
        if created_at is None:
            raise ValueError(f"Record {self.id!r} has no valid createdAt: {self.created_at!r}")
        object.__setattr__(self, "created_at", created_at)
        source = default_source(kind) if self.source is None else CorpusSource(self.source)
        object.__setattr__(self, "source", source)

    @property
    def dimension(self) -> int:
        return len(self.vector)

    def with_source(self, source: CorpusSource) -> "EmbeddingRecord":
        return dataclasses.replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source.value,
            "text": self.text,
            "vector": list(self.vector),
            "attributes": self.attributes.to_dict(),
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingRecord":
        kind = RecordKind(data["kind"])
        return cls(
            id=str(data["id"]),
            kind=kind,
            text=data.get("text", ""),
            vector=data["vector"],
            attributes=attributes_for(kind).from_dict(data.get("attributes") or {}),
            created_at=data["createdAt"],
            source=data.get("source"),
        )


@dataclasses.dataclass
class ChunkDescriptor:
    """A bounded slice of a source file, 1-based inclusive line range."""

    content: str
    start_line: int
    end_line: int
    unit_type: UnitType = UnitType.BLOCK
    unit_name: Optional[str] = None
    chunk_index: int = 0
    chunk_count: int = 0
    token_count: Optional[int] = None


# -----------------------------------------------------------------------------
# Snapshot
# -----------------------------------------------------------------------------

def build_indices(records: Sequence[EmbeddingRecord]) -> Dict[str, Dict[str, List[int]]]:
    """Derive kind/category/source position maps from the record list."""
    by_kind: Dict[str, List[int]] = {}
    by_category: Dict[str, List[int]] = {}
    by_source: Dict[str, List[int]] = {}
    for pos, record in enumerate(records):
        by_kind.setdefault(record.kind.value, []).append(pos)
        by_source.setdefault(record.source.value, []).append(pos)
        category = record.attributes.category
        if category:
            by_category.setdefault(category, []).append(pos)
    return {"by_kind": by_kind, "by_category": by_category, "by_source": by_source}


def compute_stats(records: Sequence[EmbeddingRecord]) -> Dict[str, Any]:
    by_kind = {kind.value: 0 for kind in RecordKind}
    by_source = {source.value: 0 for source in CorpusSource}
    text_bytes = 0
    for record in records:
        by_kind[record.kind.value] += 1
        by_source[record.source.value] += 1
        text_bytes += len(record.text.encode("utf-8"))
    dimension = records[0].dimension if records else 0
    return {
        "total": len(records),
        "by_kind": by_kind,
        "by_source": by_source,
        "dimension": dimension,
        "text_bytes": text_bytes,
        "vector_bytes": len(records) * dimension * 8,
    }


def check_dimensions(records: Iterable[EmbeddingRecord]) -> int:
    dimension: Optional[int] = None
    for record in records:
        if dimension is None:
            dimension = record.dimension
        elif record.dimension != dimension:
            raise DimensionMismatchError(dimension, record.dimension, context=f"record {record.id!r}")
    return dimension or 0


@dataclasses.dataclass(frozen=True)
class CorpusSnapshot:
    """Immutable set of records plus derived stats and indices."""

    schema_version: int
    created_at: _dt.datetime
    stats: Dict[str, Any]
    indices: Dict[str, Dict[str, List[int]]]
    records: Tuple[EmbeddingRecord, ...]

    @classmethod
    def build(cls, records: Iterable[EmbeddingRecord], created_at: Optional[_dt.datetime] = None) -> "CorpusSnapshot":
        items = tuple(records)
        check_dimensions(items)
        return cls(
            schema_version=SCHEMA_VERSION,
            created_at=created_at or SystemClock().now(),
            stats=compute_stats(items),
            indices=build_indices(items),
            records=items,
        )

    @classmethod
    def empty(cls, created_at: Optional[_dt.datetime] = None) -> "CorpusSnapshot":
        return cls.build((), created_at=created_at)

    @property
    def dimension(self) -> int:
        return int(self.stats.get("dimension", 0))

    def __len__(self) -> int:
        return len(self.records)

    def positions(self, index: str, key: str) -> List[int]:
        return self.indices.get(index, {}).get(key, [])


# -----------------------------------------------------------------------------
# Policies and results
# -----------------------------------------------------------------------------

class RetentionStrategy(str, enum.Enum):
    COUNT = "count"
    TIME = "time"
    IMPORTANCE = "importance"
    HYBRID = "hybrid"


@dataclasses.dataclass(frozen=True)
class RetentionPolicy:
    strategy: RetentionStrategy = RetentionStrategy.HYBRID
    max_count: int = 1000
    max_age_days: float = 180

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", RetentionStrategy(self.strategy))


class RankedResult(BaseModel):
    id: str
    kind: str
    text: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    score: float

    @classmethod
    def from_record(cls, record: EmbeddingRecord, score: float) -> "RankedResult":
        return cls(
            id=record.id,
            kind=record.kind.value,
            text=record.text,
            attributes=record.attributes.to_dict(),
            score=score,
        )
