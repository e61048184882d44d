"""Core functionality for repocontext."""

from .models import (
    ChunkDescriptor,
    CommitAttributes,
    CorpusSnapshot,
    CorpusSource,
    EmbeddingRecord,
    FileChunkAttributes,
    QAAttributes,
    RankedResult,
    RecordKind,
    RetentionPolicy,
    RetentionStrategy,
    UnitType,
)
from .errors import CorpusError, DimensionMismatchError, EmbeddingError, SchemaError, SourceError, TransportError
from .chunking import SemanticChunker, chunk_source
from .similarity import SimilarityIndex, cosine_similarity
from .embeddings import Embedder, FallbackEmbedder, SentenceTransformersEmbedder, make_embedder

__all__ = [
    "ChunkDescriptor",
    "CommitAttributes",
    "CorpusSnapshot",
    "CorpusSource",
    "EmbeddingRecord",
    "FileChunkAttributes",
    "QAAttributes",
    "RankedResult",
    "RecordKind",
    "RetentionPolicy",
    "RetentionStrategy",
    "UnitType",
    "CorpusError",
    "DimensionMismatchError",
    "EmbeddingError",
    "SchemaError",
    "SourceError",
    "TransportError",
    "SemanticChunker",
    "chunk_source",
    "SimilarityIndex",
    "cosine_similarity",
    "Embedder",
    "FallbackEmbedder",
    "SentenceTransformersEmbedder",
    "make_embedder",
]
