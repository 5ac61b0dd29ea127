"""In-memory vector index over SourceUnits.

Single writer, many readers. Every mutation builds a new immutable
``Generation`` and swaps it in; a reader captures the current generation
once per query and never sees a half-applied batch.

Similarity is exact cosine: stored vectors are L2-normalised float32 and the
dot product is taken in float64. Equal scores are ordered by (path, unit id).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from functools import cached_property
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import numpy as np

from .embeddings import normalize
from .types import EmbeddingResult, IndexEntry, QueryFilters, SearchHit, SourceUnit

logger = logging.getLogger(__name__)


class Generation:
    """An immutable view of the index at one point in time."""

    def __init__(self, number: int, entries: dict[str, IndexEntry]):
        self.number = number
        self._entries = entries
        self.entries: Mapping[str, IndexEntry] = MappingProxyType(entries)

    @cached_property
    def tombstones(self) -> int:
        return sum(1 for e in self._entries.values() if e.tombstoned)

    @cached_property
    def live_count(self) -> int:
        return len(self._entries) - self.tombstones

    @cached_property
    def by_path(self) -> Mapping[str, tuple[str, ...]]:
        """Live unit ids per file path, sorted."""
        paths: dict[str, list[str]] = {}
        for entry in self._entries.values():
            if not entry.tombstoned:
                paths.setdefault(entry.unit.path, []).append(entry.unit_id)
        return MappingProxyType({p: tuple(sorted(ids)) for p, ids in paths.items()})

    @cached_property
    def _matrices(self) -> dict[int, tuple[list[IndexEntry], np.ndarray]]:
        """Live entries grouped by vector dimension, presorted by (path, id)."""
        groups: dict[int, list[IndexEntry]] = {}
        for entry in self._entries.values():
            if not entry.tombstoned:
                groups.setdefault(int(entry.vector.shape[0]), []).append(entry)

        result = {}
        for dim, entries in groups.items():
            entries.sort(key=lambda e: (e.unit.path, e.unit_id))
            matrix = np.vstack([e.vector for e in entries]).astype(np.float64)
            result[dim] = (entries, matrix)
        return result

    def search(self, vector: np.ndarray, k: int, filters: QueryFilters | None = None) -> list[SearchHit]:
        if k <= 0:
            return []
        query = np.asarray(vector, dtype=np.float64).ravel()
        group = self._matrices.get(int(query.shape[0]))
        if group is None:
            return []

        entries, matrix = group
        norm = np.linalg.norm(query)
        if norm > 0:
            query = query / norm
        scores = matrix @ query

        candidates = np.arange(len(entries))
        if filters is not None:
            match = filters.matcher()
            keep = np.fromiter((match(e.unit) for e in entries), dtype=bool, count=len(entries))
            candidates = candidates[keep]
            if candidates.size == 0:
                return []

        # Stable sort keeps the (path, id) presort for equal scores
        order = candidates[np.argsort(-scores[candidates], kind="stable")][:k]
        return [SearchHit(entries[i].unit_id, float(scores[i]), entries[i].unit) for i in order]


class Index:
    """unit id -> (vector, metadata) with tombstones and generations.

    Example:
        index = Index()
        index.upsert(unit, embedder.embed(unit))
        hits = index.query(embedder.embed_text("cart button").vector, k=5)
    """

    def __init__(self, entries: Iterable[IndexEntry] = (), generation: int = 0):
        self._write_lock = threading.Lock()
        self._current = Generation(generation, {e.unit_id: e for e in entries})

    @property
    def generation(self) -> int:
        return self._current.number

    def snapshot(self) -> Generation:
        """The current generation; safe to read without locks."""
        return self._current

    def __len__(self) -> int:
        return self._current.live_count

    def __contains__(self, unit_id: str) -> bool:
        return self.get(unit_id) is not None

    def get(self, unit_id: str) -> IndexEntry | None:
        """Live entry for a unit id, or None if missing or tombstoned."""
        entry = self._current.entries.get(unit_id)
        if entry is None or entry.tombstoned:
            return None
        return entry

    def units_for_path(self, path: str) -> list[str]:
        return list(self._current.by_path.get(path, ()))

    def paths(self) -> list[str]:
        return sorted(self._current.by_path)

    @staticmethod
    def make_entry(unit: SourceUnit, embedding: EmbeddingResult) -> IndexEntry:
        vector = np.asarray(embedding.vector, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise ValueError(f"Embedding for {unit.id} must be a non-empty 1-D vector")
        return IndexEntry(
            unit=unit,
            vector=normalize(vector),
            model_variant=embedding.model_variant,
            fallback=embedding.fallback,
        )

    def apply(
        self,
        upserts: Iterable[tuple[SourceUnit, EmbeddingResult]] = (),
        deletes: Iterable[str] = (),
    ) -> Generation:
        """Apply one batch atomically and publish it as a single generation.

        Deletes are applied before upserts, so a unit both deleted and
        upserted in one batch ends up live.
        """
        new_entries = [self.make_entry(u, e) for u, e in upserts]
        deletes = list(deletes)

        with self._write_lock:
            current = self._current
            entries = dict(current._entries)
            for unit_id in deletes:
                entry = entries.get(unit_id)
                if entry is not None and not entry.tombstoned:
                    entries[unit_id] = replace(entry, tombstoned=True)
            for entry in new_entries:
                entries[entry.unit_id] = entry

            self._current = Generation(current.number + 1, entries)
            logger.debug(
                "Published generation %d: +%d upserts, %d deletes",
                self._current.number, len(new_entries), len(deletes),
            )
            return self._current

    def upsert(self, unit: SourceUnit, embedding: EmbeddingResult) -> None:
        """Insert or replace the entry for ``unit.id``."""
        self.apply(upserts=[(unit, embedding)])

    def upsert_many(self, pairs: Iterable[tuple[SourceUnit, EmbeddingResult]]) -> None:
        self.apply(upserts=pairs)

    def delete(self, unit_id: str) -> bool:
        """Tombstone a unit. Returns False if it was not live."""
        if self.get(unit_id) is None:
            return False
        self.apply(deletes=[unit_id])
        return True

    def compact(self) -> int:
        """Purge tombstoned entries. Returns how many were removed."""
        with self._write_lock:
            current = self._current
            if current.tombstones == 0:
                return 0
            entries = {k: e for k, e in current._entries.items() if not e.tombstoned}
            removed = len(current._entries) - len(entries)
            self._current = Generation(current.number + 1, entries)
        logger.info("Compacted index: purged %d tombstones", removed)
        return removed

    def query(self, vector: np.ndarray, k: int, filters: QueryFilters | None = None) -> list[SearchHit]:
        """Top-k live entries by cosine similarity, scores non-increasing.

        Only entries whose dimension matches ``vector`` are considered.
        """
        return self._current.search(vector, k, filters)

    def replace_all(self, entries: Iterable[IndexEntry]) -> Generation:
        """Swap in a fresh set of entries (full rebuild) as one generation."""
        with self._write_lock:
            current = self._current
            self._current = Generation(current.number + 1, {e.unit_id: e for e in entries})
            return self._current

    def cached_vectors(self) -> list[tuple[str, EmbeddingResult]]:
        """(content hash, embedding) pairs of live entries, for cache priming."""
        return [
            (e.unit.content_hash, EmbeddingResult(e.unit_id, e.vector, e.model_variant, e.fallback))
            for e in self._current.entries.values()
            if not e.tombstoned
        ]

    def stats(self) -> dict[str, Any]:
        gen = self._current
        variants: dict[str, int] = {}
        fallbacks = 0
        for e in gen.entries.values():
            if e.tombstoned:
                continue
            variants[e.model_variant] = variants.get(e.model_variant, 0) + 1
            fallbacks += int(e.fallback)
        total = len(gen.entries)
        return {
            "generation": gen.number,
            "units": gen.live_count,
            "files": len(gen.by_path),
            "tombstones": gen.tombstones,
            "tombstone_ratio": round(gen.tombstones / total, 4) if total else 0.0,
            "variants": variants,
            "fallback_units": fallbacks,
        }


__all__ = ["Index", "Generation"]
