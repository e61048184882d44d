"""Error types raised by the corpus, search and pipeline layers."""

from __future__ import annotations


class CorpusError(Exception):
    """Base class for failures while loading or reading a corpus snapshot."""


class TransportError(CorpusError):
    """Snapshot could not be fetched or its payload could not be decoded."""


class SchemaError(CorpusError, ValueError):
    """Snapshot payload has a shape that cannot be upgraded to the current one."""


class DimensionMismatchError(ValueError):
    """Two vectors that must be compared have different lengths."""

    def __init__(self, expected: int, actual: int, context: str = "") -> None:
        self.expected = expected
        self.actual = actual
        where = f" ({context})" if context else ""
        super().__init__(f"Vector dimension mismatch{where}: expected {expected}, got {actual}")


class EmbeddingError(RuntimeError):
    """Embedding backend failed to produce vectors."""


class SourceError(RuntimeError):
    """An upstream source (checkout, git log, interaction log) could not be read."""
