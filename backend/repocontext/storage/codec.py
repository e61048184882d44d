"""Compressed snapshot codec: gzip + JSON, with upgrade of older payload shapes."""

from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import SchemaError, TransportError
from ..core.models import (
    SCHEMA_VERSION,
    CorpusSnapshot,
    CorpusSource,
    EmbeddingRecord,
    RecordKind,
    attributes_for,
)
from ..utils.clock import EPOCH, format_timestamp, parse_timestamp
from ..utils.file_utils import atomic_write_bytes

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


# -----------------------------------------------------------------------------
# Wire documents
# -----------------------------------------------------------------------------

class RecordDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Union[str, int]
    kind: str
    text: str = ""
    vector: List[float]
    attributes: Dict[str, Any] = Field(default_factory=dict)
    createdAt: str
    source: Optional[str] = None


class SnapshotDocument(BaseModel):
    """Current shape. `stats` and `indices` are optional: older writers omit them."""

    model_config = ConfigDict(extra="ignore")

    schemaVersion: int = 1
    createdAt: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    indices: Optional[Dict[str, Any]] = None
    records: List[RecordDocument]


class LegacyVectorDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Union[str, int]
    type: Optional[str] = None
    content: str = ""
    embedding: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LegacyVectorFile(BaseModel):
    """Export shape written before records carried a kind and snapshot indices."""

    model_config = ConfigDict(extra="ignore")

    version: Optional[str] = None
    generatedAt: Optional[str] = None
    createdAt: Optional[str] = None
    vectors: List[LegacyVectorDocument]


LEGACY_KINDS = {
    "commit": RecordKind.COMMIT,
    "diff": RecordKind.COMMIT,
    "file": RecordKind.FILE_CHUNK,
    "qa": RecordKind.QA_QUESTION,
    "question": RecordKind.QA_QUESTION,
    "answer": RecordKind.QA_ANSWER,
}

LEGACY_ATTRIBUTE_KEYS = {
    "chunkIndex": "chunk_index",
    "totalChunks": "chunk_count",
    "startLine": "start_line",
    "endLine": "end_line",
    "filePath": "path",
    "affectedFiles": "affected_files",
    "sessionId": "session_id",
    "timestamp": "asked_at",
    "responseTimeMs": "response_time_ms",
    "tokenUsage": "token_usage",
    "fileHash": "file_hash",
}

LEGACY_DATE_KEYS = ("date", "timestamp", "commitDate", "createdAt", "created_at")


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------

def _load_json(data: bytes) -> Any:
    try:
        if data[:2] == GZIP_MAGIC:
            data = gzip.decompress(data)
        return json.loads(data.decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TransportError(f"Snapshot payload could not be decoded: {e}") from e


def decode_snapshot(data: bytes) -> CorpusSnapshot:
    """Decompress and parse a snapshot, upgrading older shapes.

    Raises:
        TransportError: If the payload is not valid gzip/JSON.
        SchemaError: If the payload shape is unrecognized or invalid.
    """
    payload = _load_json(data)
    return snapshot_from_payload(payload)


def snapshot_from_payload(payload: Any) -> CorpusSnapshot:
    if not isinstance(payload, dict):
        raise SchemaError(f"Snapshot payload must be an object, got {type(payload).__name__}")

    if "records" in payload:
        try:
            doc = SnapshotDocument.model_validate(payload)
        except ValidationError as e:
            raise SchemaError(f"Invalid snapshot document: {e}") from e
        if doc.schemaVersion > SCHEMA_VERSION:
            raise SchemaError(
                f"Snapshot schema version {doc.schemaVersion} is newer than supported {SCHEMA_VERSION}"
            )
        if doc.stats is None or doc.indices is None:
            return _upgrade_records_shape(doc)
        created_at = parse_timestamp(doc.createdAt, default=EPOCH)
        return CorpusSnapshot.build([_record_from_document(r) for r in doc.records], created_at=created_at)

    if "vectors" in payload:
        try:
            legacy = LegacyVectorFile.model_validate(payload)
        except ValidationError as e:
            raise SchemaError(f"Invalid legacy vector file: {e}") from e
        return _upgrade_legacy_file(legacy)

    raise SchemaError(f"Unrecognized snapshot shape (keys: {sorted(payload)[:10]})")


def _record_from_document(doc: RecordDocument, source: Optional[CorpusSource] = None) -> EmbeddingRecord:
    try:
        kind = RecordKind(doc.kind)
    except ValueError as e:
        raise SchemaError(f"Record {doc.id!r} has unknown kind {doc.kind!r}") from e
    try:
        return EmbeddingRecord(
            id=str(doc.id),
            kind=kind,
            text=doc.text,
            vector=doc.vector,
            attributes=attributes_for(kind).from_dict(doc.attributes),
            created_at=doc.createdAt,
            source=source or doc.source,
        )
    except (TypeError, ValueError) as e:
        raise SchemaError(f"Invalid record {doc.id!r}: {e}") from e


def _upgrade_records_shape(doc: SnapshotDocument) -> CorpusSnapshot:
    logger.info(f"Upgrading schema {doc.schemaVersion} snapshot ({len(doc.records)} records) to {SCHEMA_VERSION}")
    created_at = parse_timestamp(doc.createdAt, default=EPOCH)
    records = [_record_from_document(r, source=CorpusSource.CODE) for r in doc.records]
    return CorpusSnapshot.build(records, created_at=created_at)


def _legacy_kind(doc: LegacyVectorDocument) -> RecordKind:
    label = doc.type or doc.metadata.get("type")
    if not label:
        label = str(doc.id).split("-", 1)[0]
    try:
        return LEGACY_KINDS[str(label).lower()]
    except KeyError:
        raise SchemaError(f"Legacy vector {doc.id!r} has unknown type {label!r}") from None


def _legacy_attributes(metadata: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key == "type":
            continue
        out[LEGACY_ATTRIBUTE_KEYS.get(key, key)] = value
    affected = out.get("affected_files")
    if isinstance(affected, str):
        try:
            out["affected_files"] = json.loads(affected)
        except json.JSONDecodeError:
            out["affected_files"] = [affected]
    return out


def _upgrade_legacy_file(legacy: LegacyVectorFile) -> CorpusSnapshot:
    logger.info(f"Upgrading legacy vector file v{legacy.version or '?'} ({len(legacy.vectors)} vectors)")
    file_created = parse_timestamp(legacy.generatedAt or legacy.createdAt, default=EPOCH)
    records: List[EmbeddingRecord] = []
    for doc in legacy.vectors:
        kind = _legacy_kind(doc)
        created_at = file_created
        for key in LEGACY_DATE_KEYS:
            parsed = parse_timestamp(doc.metadata.get(key))
            if parsed is not None:
                created_at = parsed
                break
        try:
            records.append(
                EmbeddingRecord(
                    id=str(doc.id),
                    kind=kind,
                    text=doc.content,
                    vector=doc.embedding,
                    attributes=attributes_for(kind).from_dict(_legacy_attributes(doc.metadata)),
                    created_at=created_at,
                    source=CorpusSource.CODE,
                )
            )
        except (TypeError, ValueError) as e:
            raise SchemaError(f"Invalid legacy vector {doc.id!r}: {e}") from e
    return CorpusSnapshot.build(records, created_at=file_created)


# -----------------------------------------------------------------------------
# Encoding
# -----------------------------------------------------------------------------

def snapshot_to_payload(snapshot: CorpusSnapshot) -> Dict[str, Any]:
    return {
        "schemaVersion": snapshot.schema_version,
        "createdAt": format_timestamp(snapshot.created_at),
        "stats": snapshot.stats,
        "indices": snapshot.indices,
        "records": [r.to_dict() for r in snapshot.records],
    }


def encode_snapshot(snapshot: CorpusSnapshot) -> bytes:
    payload = json.dumps(snapshot_to_payload(snapshot), ensure_ascii=False, separators=(",", ":"))
    return gzip.compress(payload.encode("utf-8"))


def read_snapshot(path: Union[str, Path]) -> Optional[CorpusSnapshot]:
    """Read a local snapshot file; None if it does not exist."""
    p = Path(path)
    if not p.exists():
        return None
    try:
        data = p.read_bytes()
    except OSError as e:
        raise TransportError(f"Could not read snapshot {p}: {e}") from e
    return decode_snapshot(data)


def export_snapshot(snapshot: CorpusSnapshot, path: Union[str, Path]) -> int:
    """Write the full compressed snapshot in one replace; returns bytes written.

    The payload is built and compressed in memory first, written to a temp
    file in the target directory and moved into place with `os.replace`, so
    readers see either the old file or the new one.
    """
    target = Path(path)
    data = encode_snapshot(snapshot)
    atomic_write_bytes(target, data)
    logger.info(f"Snapshot saved: {target} ({len(snapshot.records)} records, {len(data) / 1024 / 1024:.2f} MB)")
    return len(data)
