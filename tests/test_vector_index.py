"""Tests for the in-memory vector index."""

import warnings

import numpy as np
import pytest

from conftest import make_unit
from zen_context.core.embeddings import HashingEmbedder
from zen_context.core.types import EmbeddingResult, QueryFilters
from zen_context.core.vector_index import Index


def emb(values, variant: str = "test", fallback: bool = False) -> EmbeddingResult:
    return EmbeddingResult("", np.asarray(values, dtype=np.float32), variant, fallback)


@pytest.fixture
def embedder():
    return HashingEmbedder(dim=64)


@pytest.fixture
def populated(embedder):
    index = Index()
    units = [
        make_unit("src/components/Button.tsx", "Button", "component"),
        make_unit("src/hooks/useCart.ts", "useCart", "hook"),
        make_unit("src/store/cartStore.ts", "useCartStore", "store"),
        make_unit("src/utils/format.ts", "formatPrice"),
    ]
    index.upsert_many((u, embedder.embed(u)) for u in units)
    return index, units


class TestIndexBasics:
    """Upsert, get, delete."""

    def test_upsert_and_get(self, populated):
        index, units = populated
        assert len(index) == 4
        assert index.get(units[0].id).unit == units[0]
        assert units[1].id in index

    def test_upsert_replaces(self, populated, embedder):
        index, units = populated
        changed = make_unit(units[0].path, "Button", "component", excerpt="export function Button() { return <b />; }")
        index.upsert(changed, embedder.embed(changed))

        assert len(index) == 4
        assert index.get(changed.id).unit.excerpt == changed.excerpt

    def test_vectors_stored_normalised(self):
        index = Index()
        unit = make_unit("a.ts", "a")
        index.upsert(unit, emb([3.0, 4.0]))
        assert np.allclose(index.get(unit.id).vector, [0.6, 0.8])

    def test_rejects_bad_vector(self):
        with pytest.raises(ValueError):
            Index().upsert(make_unit("a.ts", "a"), emb([]))

    def test_delete_tombstones(self, populated):
        index, units = populated
        assert index.delete(units[0].id)

        assert index.get(units[0].id) is None
        assert units[0].id not in index
        assert len(index) == 3
        assert index.stats()["tombstones"] == 1
        assert not index.delete(units[0].id)

    def test_units_for_path_and_paths(self, populated):
        index, units = populated
        assert index.units_for_path("src/hooks/useCart.ts") == [units[1].id]
        assert index.units_for_path("missing.ts") == []
        assert index.paths() == sorted(u.path for u in units)

    def test_compact_purges_tombstones(self, populated):
        index, units = populated
        index.delete(units[0].id)
        index.delete(units[1].id)

        assert index.compact() == 2
        assert index.stats()["tombstones"] == 0
        assert len(index.snapshot().entries) == 2
        assert index.compact() == 0


class TestGenerations:
    """Atomic batches and reader isolation."""

    def test_each_batch_is_one_generation(self, embedder):
        index = Index()
        units = [make_unit(f"f{i}.ts", f"f{i}") for i in range(5)]
        start = index.generation

        index.apply(upserts=[(u, embedder.embed(u)) for u in units])

        assert index.generation == start + 1
        assert len(index) == 5

    def test_snapshot_is_isolated(self, populated, embedder):
        """A captured generation never sees later writes."""
        index, units = populated
        before = index.snapshot()

        extra = make_unit("src/new.ts", "fresh")
        index.upsert(extra, embedder.embed(extra))
        index.delete(units[0].id)

        assert extra.id not in before.entries
        assert not before.entries[units[0].id].tombstoned
        assert before.live_count == 4

    def test_delete_then_upsert_in_one_batch(self, populated, embedder):
        """Deletes apply before upserts, so the unit stays live."""
        index, units = populated
        unit = units[2]
        index.apply(upserts=[(unit, embedder.embed(unit))], deletes=[unit.id])
        assert unit.id in index

    def test_stats(self, populated):
        index, units = populated
        index.delete(units[3].id)
        stats = index.stats()
        assert stats["units"] == 3
        assert stats["files"] == 3
        assert stats["tombstone_ratio"] == 0.25
        assert stats["variants"] == {"hashing-v1-64": 3}


class TestQuery:
    """Exact cosine search."""

    def test_exact_match_ranks_first(self, populated, embedder):
        index, units = populated
        hits = index.query(embedder.embed_text(units[2].to_document()).vector, k=4)

        assert hits[0].unit_id == units[2].id
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_scores_non_increasing(self, populated, embedder):
        index, _ = populated
        hits = index.query(embedder.embed_text("cart store hook").vector, k=10)
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)
        assert len(hits) == 4

    def test_k_limits_results(self, populated, embedder):
        index, _ = populated
        assert len(index.query(embedder.embed_text("cart").vector, k=2)) == 2
        assert index.query(embedder.embed_text("cart").vector, k=0) == []

    def test_tombstoned_never_returned(self, populated, embedder):
        index, units = populated
        index.delete(units[2].id)
        hits = index.query(embedder.embed_text(units[2].to_document()).vector, k=10)
        assert units[2].id not in {h.unit_id for h in hits}

    def test_ties_break_by_path_then_id(self):
        index = Index()
        same = [1.0, 0.0, 0.0]
        for path, name in [("b.ts", "x"), ("a.ts", "z"), ("a.ts", "y")]:
            index.upsert(make_unit(path, name), emb(same))

        hits = index.query(np.array(same), k=3)
        assert [h.unit_id for h in hits] == ["a.ts::y", "a.ts::z", "b.ts::x"]

    def test_dimension_mismatch_ignored(self, populated):
        index, _ = populated
        assert index.query(np.ones(8), k=5) == []

    def test_empty_index(self):
        assert Index().query(np.ones(4), k=5) == []

    def test_kind_filter(self, populated, embedder):
        index, _ = populated
        hits = index.query(embedder.embed_text("cart").vector, k=10, filters=QueryFilters(kinds={"hook", "store"}))
        assert {h.unit.kind for h in hits} == {"hook", "store"}

    def test_path_filter(self, populated, embedder):
        index, _ = populated
        filters = QueryFilters(path_patterns=("src/components/**",))
        hits = index.query(embedder.embed_text("cart").vector, k=10, filters=filters)
        assert [h.unit.path for h in hits] == ["src/components/Button.tsx"]

    def test_path_filter_compiles_without_warnings(self):
        unit = make_unit("src/components/Button.tsx", "Button", "component")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            match = QueryFilters(path_patterns=("src/components/**", "!**/*.test.tsx")).matcher()
        assert match(unit)
        assert not match(make_unit("src/components/Button.test.tsx", "Button", "component"))

    def test_filter_with_no_matches(self, populated, embedder):
        index, _ = populated
        hits = index.query(embedder.embed_text("cart").vector, k=10, filters=QueryFilters(kinds={"raw"}))
        assert hits == []

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            QueryFilters(kinds={"widget"})

    def test_cached_vectors_cover_live_entries(self, populated):
        index, units = populated
        index.delete(units[0].id)
        cached = dict(index.cached_vectors())
        assert set(cached) == {u.content_hash for u in units[1:]}
