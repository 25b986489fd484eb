"""
Text embedding.

``SentenceTransformerEmbedder`` is the default semantic model; ``HashEmbedder``
is a deterministic feature-hashing pseudo-embedding that needs no model
download. Both return unit-normalized vectors of a fixed dimensionality.
"""

from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, wait
from typing import List, Optional, Sequence
import hashlib
import logging
import re
import threading

import numpy as np

from .config import (
    EMBEDDER_KIND,
    EMBEDDING_MODEL,
    EMBEDDING_MODEL_CONFIG,
    EMBEDDING_BATCH_WORKERS,
    EMBEDDING_CACHE_SIZE,
    HASH_EMBEDDING_DIMENSIONS,
)
from .errors import EmbeddingError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero-norm or mismatched vectors."""
    a = np.asarray(v1, dtype=np.float64)
    b = np.asarray(v2, dtype=np.float64)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def _normalize(vector: np.ndarray) -> List[float]:
    norm = np.linalg.norm(vector)
    if norm == 0.0:
        return vector.tolist()
    return (vector / norm).tolist()


class Embedder:
    """Common behaviour: batching, similarity and the query variant."""

    dimensions: int = 0

    def __init__(self, max_workers: int = EMBEDDING_BATCH_WORKERS):
        self.max_workers = max(1, max_workers)

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text)

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed ``texts`` in parallel on a bounded pool, preserving order.

        Waits for every item. If any item failed the whole batch raises
        EmbeddingError; partial results are never returned.
        """
        texts = list(texts)
        if not texts:
            return []
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(texts)),
            thread_name_prefix="embed",
        ) as pool:
            futures = [pool.submit(self.embed, text) for text in texts]
            wait(futures)

        vectors = []
        for index, future in enumerate(futures):
            exc = future.exception()
            if exc is not None:
                logger.error("Batch embedding failed at item %d: %s", index, exc)
                raise EmbeddingError(
                    f"Embedding failed for batch item {index}: {exc}"
                ) from exc
            vectors.append(future.result())
        return vectors

    def similarity(self, v1: Sequence[float], v2: Sequence[float]) -> float:
        return cosine_similarity(v1, v2)

    def is_ready(self) -> bool:
        return True


class HashEmbedder(Embedder):
    """
    Deterministic pseudo-embedding via signed feature hashing of word tokens.

    Texts sharing words land close together, which is enough for structural
    ranking but carries no semantic understanding.
    """

    def __init__(self, dimensions: int = HASH_EMBEDDING_DIMENSIONS, **kwargs):
        super().__init__(**kwargs)
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimensions, dtype=np.float64)
        tokens = _TOKEN_RE.findall((text or "").lower())
        if not tokens and text:
            tokens = [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        return _normalize(vector)


class SentenceTransformerEmbedder(Embedder):
    """Semantic embeddings from the configured sentence-transformers preset."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        query_prefix: Optional[str] = None,
        dimensions: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        # Imported here so the hash embedder works without loading torch
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name or EMBEDDING_MODEL_CONFIG["model_name"]
        prefix = (
            query_prefix
            if query_prefix is not None
            else EMBEDDING_MODEL_CONFIG.get("query_prefix", "")
        )
        self._query_prefix = prefix.strip()
        self.dimensions = dimensions or EMBEDDING_MODEL_CONFIG["dimensions"]
        self._model = None
        try:
            self._model = SentenceTransformer(self.model_name)
            logger.info(
                "Embedding model '%s' (preset: %s, dims: %d) loaded successfully",
                self.model_name,
                EMBEDDING_MODEL,
                self.dimensions,
            )
        except Exception as e:
            logger.error("Failed to load embedding model: %s", e)
            raise EmbeddingError(f"Could not load {self.model_name}: {e}") from e

    def embed(self, text: str) -> List[float]:
        if self._model is None:
            raise EmbeddingError("Embedding model is not loaded")
        return self._model.encode(text, normalize_embeddings=True).tolist()

    def embed_query(self, text: str) -> List[float]:
        query_text = f"{self._query_prefix} {text}" if self._query_prefix else text
        return self.embed(query_text)

    def is_ready(self) -> bool:
        return self._model is not None


class CachingEmbedder(Embedder):
    """Bounded LRU cache in front of another embedder, keyed by text hash."""

    def __init__(self, inner: Embedder, max_entries: int = EMBEDDING_CACHE_SIZE):
        super().__init__(max_workers=inner.max_workers)
        self.inner = inner
        self.dimensions = inner.dimensions
        self.max_entries = max_entries
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _cached(self, key: str, compute) -> List[float]:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self.hits += 1
                return list(self._cache[key])
        vector = compute()
        with self._lock:
            self.misses += 1
            self._cache[key] = vector
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return list(vector)

    def embed(self, text: str) -> List[float]:
        key = "d:" + hashlib.sha256((text or "").encode("utf-8")).hexdigest()
        return self._cached(key, lambda: self.inner.embed(text))

    def embed_query(self, text: str) -> List[float]:
        key = "q:" + hashlib.sha256((text or "").encode("utf-8")).hexdigest()
        return self._cached(key, lambda: self.inner.embed_query(text))

    def is_ready(self) -> bool:
        return self.inner.is_ready()

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def build_embedder(kind: str = EMBEDDER_KIND) -> Embedder:
    """Create the configured embedder wrapped in the cache."""
    if kind == "hash":
        inner = HashEmbedder()
    else:
        inner = SentenceTransformerEmbedder()
    return CachingEmbedder(inner)
