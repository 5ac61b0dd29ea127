"""Embedding backends.

- ``HashingEmbedder``: deterministic feature hashing, no network, no model
- ``RemoteEmbedder``: OpenAI-compatible ``/embeddings`` endpoint over httpx,
  falling back to hashing when the endpoint is unavailable
- ``CachingEmbedder``: wraps either, keyed on unit content hash
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Iterable

import httpx
import numpy as np

from .content_hash import VectorCache
from .errors import EmbeddingError
from .retry import call_with_retry
from .types import EmbeddingResult, SourceUnit

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[A-Za-z_$][\w$]*|\d+")
# camelCase / PascalCase / ACRONYMCase pieces
_CAMEL_PART = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

BIGRAM_WEIGHT = 0.5


def tokenize(text: str) -> list[str]:
    """Identifier-aware tokens: ``useCartStore`` -> use, cart, store."""
    tokens: list[str] = []
    for word in _WORD.findall(text):
        for piece in word.split("_"):
            parts = _CAMEL_PART.findall(piece.replace("$", ""))
            tokens.extend(p.lower() for p in parts if p)
    return tokens


def normalize(vector: np.ndarray) -> np.ndarray:
    """L2-normalise to float32; a zero vector stays zero."""
    vector = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.astype(np.float32)


class Embedder(ABC):
    """Maps text to fixed-dimension float32 vectors."""

    variant: str = "abstract"

    @abstractmethod
    def embed_texts(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed texts in order. Results carry an empty ``unit_id``."""

    def embed_text(self, text: str) -> EmbeddingResult:
        return self.embed_texts([text])[0]

    def embed(self, unit: SourceUnit) -> EmbeddingResult:
        return self.embed_many([unit])[0]

    def embed_many(self, units: list[SourceUnit]) -> list[EmbeddingResult]:
        results = self.embed_texts([u.to_document() for u in units])
        return [replace(r, unit_id=u.id) for u, r in zip(units, results)]

    def close(self) -> None:
        pass


class HashingEmbedder(Embedder):
    """Deterministic signed feature hashing over unigrams and bigrams.

    Example:
        embedder = HashingEmbedder(dim=256)
        a = embedder.embed_text("add to cart button")
        b = embedder.embed_text("add to cart button")
        assert (a.vector == b.vector).all()
    """

    def __init__(self, dim: int = 256):
        if dim < 8:
            raise ValueError(f"dim must be at least 8, got {dim}")
        self.dim = dim
        self.variant = f"hashing-v1-{dim}"

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        h = int.from_bytes(digest, "little")
        sign = 1.0 if (h >> 63) == 0 else -1.0
        return h % self.dim, sign

    def vectorize(self, text: str) -> np.ndarray:
        acc = np.zeros(self.dim, dtype=np.float64)
        tokens = tokenize(text)
        for token in tokens:
            idx, sign = self._bucket(token)
            acc[idx] += sign
        for left, right in zip(tokens, tokens[1:]):
            idx, sign = self._bucket(f"{left} {right}")
            acc[idx] += sign * BIGRAM_WEIGHT
        # Sublinear term frequency
        acc = np.sign(acc) * np.log1p(np.abs(acc))
        return normalize(acc)

    def embed_texts(self, texts: list[str]) -> list[EmbeddingResult]:
        return [EmbeddingResult("", self.vectorize(t), self.variant) for t in texts]


class RemoteEmbedder(Embedder):
    """OpenAI-compatible embeddings endpoint with retry and fallback.

    Each batch is retried with exponential backoff on transient errors. When
    retries run out, or the error is not retryable, the batch is embedded by
    ``fallback`` and the results are marked ``fallback=True``.
    """

    def __init__(
        self,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout_ms: int = 10_000,
        retry_count: int = 3,
        retry_base_delay: float = 0.5,
        fallback: Embedder | None = None,
        batch_size: int = 64,
        cancel_event: threading.Event | None = None,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout_ms = timeout_ms
        self.retry_count = retry_count
        self.retry_base_delay = retry_base_delay
        self.fallback = fallback or HashingEmbedder()
        self.batch_size = batch_size
        self.cancel_event = cancel_event or threading.Event()
        self.variant = f"remote:{model}"
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_ms / 1000.0))
        self._owns_client = client is None

        if not api_key:
            logger.warning("No API key for remote embeddings at %s", url)

    def __repr__(self) -> str:
        key_status = "***" if self.api_key else "not set"
        return f"RemoteEmbedder(url={self.url!r}, model={self.model!r}, api_key={key_status})"

    def _post(self, batch: list[str]) -> list[np.ndarray]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = self._client.post(
            self.url,
            headers=headers,
            json={"model": self.model, "input": batch},
            timeout=self.timeout_ms / 1000.0,
        )
        response.raise_for_status()

        try:
            data = response.json()
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [np.asarray(item["embedding"], dtype=np.float32) for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Invalid embeddings response: {e}") from e

        if len(vectors) != len(batch):
            raise EmbeddingError(f"Invalid embeddings response: expected {len(batch)} vectors, got {len(vectors)}")
        return vectors

    def embed_texts(self, texts: list[str]) -> list[EmbeddingResult]:
        results: list[EmbeddingResult] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            try:
                vectors = call_with_retry(
                    self._post,
                    batch,
                    max_retries=self.retry_count,
                    base_delay=self.retry_base_delay,
                    cancel_event=self.cancel_event,
                )
            except (httpx.HTTPError, EmbeddingError, OSError) as e:
                logger.warning(
                    "Remote embedding failed for %d texts, using %s: %s",
                    len(batch), self.fallback.variant, str(e)[:200],
                )
                results.extend(replace(r, fallback=True) for r in self.fallback.embed_texts(batch))
                continue
            results.extend(EmbeddingResult("", normalize(v), self.variant) for v in vectors)
        return results

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class CachingEmbedder(Embedder):
    """Content-hash keyed cache in front of another embedder.

    Identical content is embedded once; ``embed_calls`` counts how many
    unit texts actually reached the inner embedder.
    """

    def __init__(self, inner: Embedder, cache: VectorCache | None = None):
        self.inner = inner
        self.cache = cache if cache is not None else VectorCache()
        self.variant = inner.variant
        self._lock = threading.Lock()
        self._in_flight: dict[str, threading.Event] = {}
        self.embed_calls = 0

    def embed_texts(self, texts: list[str]) -> list[EmbeddingResult]:
        # Free text (queries) is not content-addressed
        return self.inner.embed_texts(texts)

    def embed_many(self, units: list[SourceUnit]) -> list[EmbeddingResult]:
        found: dict[str, EmbeddingResult] = {}
        claimed: dict[str, SourceUnit] = {}
        waiting: dict[str, tuple[threading.Event, SourceUnit]] = {}
        with self._lock:
            for unit in units:
                h = unit.content_hash
                if h in found or h in claimed or h in waiting:
                    continue
                cached = self.cache.get(h)
                if cached is not None:
                    found[h] = cached
                elif h in self._in_flight:
                    # Another worker is embedding the same content
                    waiting[h] = (self._in_flight[h], unit)
                else:
                    claimed[h] = unit
                    self._in_flight[h] = threading.Event()

        if claimed:
            try:
                fresh = self.inner.embed_many(list(claimed.values()))
                with self._lock:
                    self.embed_calls += len(fresh)
                for h, result in zip(claimed, fresh):
                    found[h] = self.cache.put(h, result)
            finally:
                with self._lock:
                    for h in claimed:
                        self._in_flight.pop(h).set()

        retry: list[SourceUnit] = []
        for h, (event, unit) in waiting.items():
            event.wait()
            cached = self.cache.get(h)
            if cached is None:
                retry.append(unit)
            else:
                found[h] = cached
        if retry:
            for unit, result in zip(retry, self.embed_many(retry)):
                found[unit.content_hash] = result

        return [replace(found[u.content_hash], unit_id=u.id) for u in units]

    def prime(self, entries: Iterable[tuple[str, EmbeddingResult]]) -> int:
        """Seed the cache with vectors of the same variant."""
        return self.cache.prime((h, r) for h, r in entries if r.model_variant == self.variant or r.fallback)

    def reset_stats(self) -> None:
        with self._lock:
            self.embed_calls = 0

    def stats(self) -> dict[str, Any]:
        return {"variant": self.variant, "embed_calls": self.embed_calls, "cache": self.cache.stats()}

    def close(self) -> None:
        self.inner.close()


def get_embedder(config, cancel_event: threading.Event | None = None) -> CachingEmbedder:
    """Build the configured embedder stack from an EngineConfig."""
    hashing = HashingEmbedder(dim=config.embedding_dim)

    if config.embedder_variant == "remote":
        inner: Embedder = RemoteEmbedder(
            url=config.remote_url,
            model=config.remote_model,
            api_key=config.remote_api_key,
            timeout_ms=config.remote_timeout_ms,
            retry_count=config.retry_count,
            retry_base_delay=config.retry_base_delay,
            fallback=hashing,
            batch_size=config.batch_size,
            cancel_event=cancel_event,
        )
        logger.info("Using remote embedding model: %s", config.remote_model)
    else:
        inner = hashing

    return CachingEmbedder(inner)


__all__ = [
    "Embedder",
    "HashingEmbedder",
    "RemoteEmbedder",
    "CachingEmbedder",
    "get_embedder",
    "normalize",
    "tokenize",
]
