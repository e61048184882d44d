"""Snapshot storage: codec, cached loader and loader factory."""

from .codec import decode_snapshot, encode_snapshot, export_snapshot, read_snapshot
from .factory import create_loaders
from .loader import CorpusLoader, SnapshotCache, history_location_for

__all__ = [
    "CorpusLoader",
    "SnapshotCache",
    "create_loaders",
    "decode_snapshot",
    "encode_snapshot",
    "export_snapshot",
    "history_location_for",
    "read_snapshot",
]
