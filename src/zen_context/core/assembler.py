"""Context assembly - ranked, deduplicated, size-bounded bundles."""

from __future__ import annotations

import logging

from .embeddings import Embedder
from .types import BundleEntry, ContextBundle, Query, SearchHit
from .vector_index import Index

logger = logging.getLogger(__name__)


def truncate_excerpt(text: str, max_bytes: int, min_bytes: int = 0) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes.

    Cuts at the last line break when that keeps at least half of the
    allowance and at least ``min_bytes``, otherwise at a character boundary.
    """
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    if max_bytes <= 0:
        return ""

    cut = data[:max_bytes].decode("utf-8", errors="ignore")
    newline = cut.rfind("\n")
    if newline > 0 and len(cut[:newline].encode("utf-8")) >= max(max_bytes // 2, min_bytes):
        return cut[:newline]
    return cut


class ContextAssembler:
    """Turn a task description into a ContextBundle.

    Example:
        assembler = ContextAssembler(index, embedder, k=20, budget=4000)
        bundle = assembler.assemble("add a product card component")
        for entry in bundle:
            print(entry.score, entry.unit.path, entry.truncated)
    """

    def __init__(
        self,
        index: Index,
        embedder: Embedder,
        k: int = 20,
        budget: int = 8_000,
        min_truncation_bytes: int = 120,
    ):
        self.index = index
        self.embedder = embedder
        self.k = k
        self.budget = budget
        self.min_truncation_bytes = min_truncation_bytes

    def retrieve(self, query: Query, k: int | None = None) -> tuple[int, list[SearchHit]]:
        """Top-k hits for the query, with the generation they came from."""
        vector = self.embedder.embed_text(query.task_description).vector
        generation = self.index.snapshot()
        hits = generation.search(vector, self.k if k is None else k, query.filters)
        return generation.number, hits

    def assemble(self, query: Query | str, budget: int | None = None) -> ContextBundle:
        """Build a bundle whose total excerpt size never exceeds the budget.

        Candidates are taken in score order; one that does not fit is
        truncated to the remaining space, or skipped when less than
        ``min_truncation_bytes`` remain.
        """
        if isinstance(query, str):
            query = Query(task_description=query)

        if budget is None:
            budget = query.budget if query.budget is not None else self.budget
        if budget < 0:
            raise ValueError(f"budget must not be negative, got {budget}")

        generation, hits = self.retrieve(query)
        bundle = ContextBundle(entries=[], budget=budget, generation=generation)

        seen: set[tuple[str, str]] = set()
        remaining = budget
        for hit in hits:
            unit = hit.unit
            key = (unit.symbol_name, unit.kind)
            if key in seen:
                bundle.skipped.append((hit.unit_id, "duplicate"))
                continue
            seen.add(key)

            size = unit.size
            if size <= remaining:
                bundle.entries.append(BundleEntry(unit, hit.score, unit.excerpt))
                remaining -= size
                continue

            if remaining <= 0 or remaining < self.min_truncation_bytes:
                bundle.skipped.append((hit.unit_id, "budget"))
                continue

            excerpt = truncate_excerpt(unit.excerpt, remaining, self.min_truncation_bytes)
            if len(excerpt.encode("utf-8")) < max(self.min_truncation_bytes, 1):
                bundle.skipped.append((hit.unit_id, "budget"))
                continue
            entry = BundleEntry(unit, hit.score, excerpt, truncated=True)
            bundle.entries.append(entry)
            remaining -= entry.size

        logger.debug(
            "Assembled %d entries (%d/%d bytes) from %d candidates",
            len(bundle.entries), bundle.size, budget, len(hits),
        )
        return bundle


__all__ = ["ContextAssembler", "truncate_excerpt"]
