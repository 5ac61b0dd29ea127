"""Content hashing and the hash-keyed vector cache.

Identical content always maps to the same hash, and the cache guarantees
that a hash is embedded at most once per embedder:
- unchanged content never re-embeds
- duplicate files share one vector
- a cache primed from a loaded index survives process restarts
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable

from .types import EmbeddingResult

logger = logging.getLogger(__name__)


def content_hash(content: str | bytes, algorithm: str = "sha256", length: int = 32) -> str:
    """Compute a truncated hash of content.

    Args:
        content: Content to hash (string or bytes)
        algorithm: Hash algorithm (sha256, md5, etc.)
        length: Number of hex characters to return

    Returns:
        Truncated hex digest
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    h = hashlib.new(algorithm)
    h.update(content)
    return h.hexdigest()[:length]


@dataclass
class VectorCache:
    """Content-addressed vector storage.

    Example:
        cache = VectorCache()
        cache.put(unit.content_hash, EmbeddingResult(unit.id, vector, "hashing"))

        # Another unit with the same content shares the entry
        assert cache.get(other.content_hash) is not None

        print(cache.stats())  # {"entries": 1, "hits": 1, ...}
    """

    _entries: dict[str, EmbeddingResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    _hits: int = 0
    _misses: int = 0

    def get(self, h: str) -> EmbeddingResult | None:
        """Look up a vector by content hash."""
        with self._lock:
            entry = self._entries.get(h)
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            return entry

    def put(self, h: str, value: EmbeddingResult) -> EmbeddingResult:
        """Store a vector unless one is already cached for the hash.

        Returns the entry that is now cached, so concurrent writers of the
        same hash all end up using the first vector.
        """
        with self._lock:
            existing = self._entries.get(h)
            if existing is not None:
                return existing
            self._entries[h] = value
            return value

    def prime(self, items: Iterable[tuple[str, EmbeddingResult]]) -> int:
        """Seed the cache, typically from a freshly loaded index."""
        count = 0
        with self._lock:
            for h, value in items:
                if h not in self._entries:
                    self._entries[h] = value
                    count += 1
        logger.debug("Primed vector cache with %d entries", count)
        return count

    def discard(self, h: str) -> bool:
        with self._lock:
            return self._entries.pop(h, None) is not None

    def clear(self) -> None:
        """Clear all entries."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, h: str) -> bool:
        return h in self._entries

    @property
    def hit_rate(self) -> float:
        """Cache hit rate (0-1)."""
        total = self._hits + self._misses
        if total == 0:
            return 0.0
        return self._hits / total

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self.hit_rate * 100, 1),
        }


__all__ = [
    "content_hash",
    "VectorCache",
]
