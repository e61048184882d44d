"""Embedding models for records and queries."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from .errors import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder:
    """Abstract base class for embedding models."""

    name = "embedder"

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts into vectors."""
        raise NotImplementedError

    def embed_one(self, text: str) -> List[float]:
        """Embed a single text into a vector."""
        return self.embed([text])[0]


class SentenceTransformersEmbedder(Embedder):
    """Embedder using SentenceTransformers library."""

    def __init__(self, model_name: str) -> None:
        from sentence_transformers import SentenceTransformer  # type: ignore
        self.name = model_name
        self.model = SentenceTransformer(model_name)

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts using SentenceTransformers model."""
        arr = self.model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [row.tolist() for row in arr]


class FallbackEmbedder(Embedder):
    """Tries an ordered list of embedders; the first success wins.

    Each embedder gets `attempts` tries before the next one is used. All
    embedders in a chain must produce vectors of the same dimension.
    """

    def __init__(self, embedders: Sequence[Embedder], attempts: int = 1) -> None:
        if not embedders:
            raise ValueError("FallbackEmbedder needs at least one embedder")
        self.embedders = list(embedders)
        self.attempts = max(1, attempts)
        self.name = "+".join(getattr(e, "name", type(e).__name__) for e in self.embedders)

    def embed(self, texts: List[str]) -> List[List[float]]:
        last_error: Exception | None = None
        for embedder in self.embedders:
            label = getattr(embedder, "name", type(embedder).__name__)
            for attempt in range(1, self.attempts + 1):
                try:
                    vectors = embedder.embed(texts)
                except Exception as e:
                    last_error = e
                    logger.warning(f"Embedder {label} failed (attempt {attempt}/{self.attempts}): {e}")
                    continue
                if len(vectors) != len(texts):
                    last_error = EmbeddingError(
                        f"{label} returned {len(vectors)} vectors for {len(texts)} texts"
                    )
                    logger.warning(str(last_error))
                    continue
                return vectors
        raise EmbeddingError(f"All embedders failed for {len(texts)} texts") from last_error


def make_embedder(cfg: Dict) -> Embedder:
    """Create embedder from config.

    `embedding.sentence_transformers_model` may be a single model name or a
    list of names tried in order.

    Raises:
        SystemExit: If backend is invalid or dependencies are missing
    """
    emb_cfg = cfg.get("embedding", {})
    backend = str(emb_cfg.get("backend", "sentence_transformers")).strip().lower()
    if backend != "sentence_transformers":
        raise SystemExit(f"Invalid embedding.backend: {backend!r}")

    models = emb_cfg.get("sentence_transformers_model", "sentence-transformers/all-MiniLM-L6-v2")
    if isinstance(models, str):
        models = [models]
    try:
        embedders: List[Embedder] = [SentenceTransformersEmbedder(m) for m in models]
    except Exception as e:
        raise SystemExit(
            "Could not load sentence-transformers. "
            "Run: pip install -U sentence-transformers"
        ) from e

    attempts = int(emb_cfg.get("attempts", 2))
    if len(embedders) == 1 and attempts <= 1:
        return embedders[0]
    return FallbackEmbedder(embedders, attempts=attempts)
