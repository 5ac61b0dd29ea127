"""Tests for embedding backends."""

import json
import threading

import httpx
import numpy as np
import pytest

from conftest import make_unit
from zen_context.core.config import EngineConfig
from zen_context.core.content_hash import VectorCache
from zen_context.core.embeddings import (
    CachingEmbedder,
    HashingEmbedder,
    RemoteEmbedder,
    get_embedder,
    normalize,
    tokenize,
)
from zen_context.core.types import EmbeddingResult


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a.astype(np.float64), b.astype(np.float64)))


def mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def ok_handler(calls: list):
    """Endpoint returning [1, index, 0] per input, in reverse order."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(request)
        data = [{"index": i, "embedding": [1.0, float(i), 0.0]} for i in range(len(body["input"]))]
        return httpx.Response(200, json={"object": "list", "data": list(reversed(data))})

    return handler


def status_handler(calls: list, status: int):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json={"error": {"message": "nope"}})

    return handler


class TestTokenize:
    """Tests for identifier-aware tokenization."""

    def test_camel_case(self):
        assert tokenize("useCartStore") == ["use", "cart", "store"]

    def test_acronyms_and_snake_case(self):
        assert tokenize("HTTPServer_v2") == ["http", "server", "v", "2"]

    def test_punctuation_dropped(self):
        assert tokenize("add-to-cart: Button!") == ["add", "to", "cart", "button"]


class TestHashingEmbedder:
    """Tests for the deterministic embedder."""

    def test_deterministic(self):
        a = HashingEmbedder(dim=64).embed_text("add a product card")
        b = HashingEmbedder(dim=64).embed_text("add a product card")
        assert np.array_equal(a.vector, b.vector)

    def test_unit_norm_float32(self):
        r = HashingEmbedder(dim=64).embed_text("cart button")
        assert r.vector.dtype == np.float32
        assert r.dim == 64
        assert np.linalg.norm(r.vector) == pytest.approx(1.0, abs=1e-5)

    def test_empty_text_is_zero_vector(self):
        r = HashingEmbedder(dim=32).embed_text("")
        assert not r.vector.any()

    def test_related_text_scores_higher(self):
        embedder = HashingEmbedder()
        query = embedder.embed_text("cart store items").vector
        related = embedder.embed_text("export const useCartStore = create(() => ({ items: [] }))").vector
        unrelated = embedder.embed_text("def load_products(path): return json.load(f)").vector
        assert cosine(query, related) > cosine(query, unrelated)

    def test_variant_names_dimension(self):
        assert HashingEmbedder(dim=128).variant == "hashing-v1-128"

    def test_rejects_tiny_dimension(self):
        with pytest.raises(ValueError):
            HashingEmbedder(dim=2)

    def test_embed_many_sets_unit_ids(self):
        units = [make_unit("a.ts", "a"), make_unit("b.ts", "b")]
        results = HashingEmbedder().embed_many(units)
        assert [r.unit_id for r in results] == ["a.ts::a", "b.ts::b"]


class TestRemoteEmbedder:
    """Tests for the HTTP embedder, using httpx.MockTransport."""

    def test_parses_response_in_index_order(self):
        calls = []
        embedder = RemoteEmbedder(
            "https://embed.test/v1/embeddings", "test-model", api_key="sk-test",
            client=mock_client(ok_handler(calls)),
        )
        results = embedder.embed_texts(["first", "second"])

        assert [r.model_variant for r in results] == ["remote:test-model"] * 2
        assert not any(r.fallback for r in results)
        # Normalised [1, 0, 0] and [1, 1, 0]
        assert np.allclose(results[0].vector, [1.0, 0.0, 0.0])
        assert np.allclose(results[1].vector, [0.70710677, 0.70710677, 0.0])

        request = calls[0]
        assert request.headers["authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {"model": "test-model", "input": ["first", "second"]}

    def test_batches_requests(self):
        calls = []
        embedder = RemoteEmbedder("https://embed.test", "m", client=mock_client(ok_handler(calls)), batch_size=2)
        results = embedder.embed_texts(["a", "b", "c", "d", "e"])
        assert len(results) == 5
        assert [len(json.loads(c.content)["input"]) for c in calls] == [2, 2, 1]

    def test_falls_back_after_retries(self):
        """Persistent 5xx exhausts retries, then the hashing fallback is used."""
        calls = []
        fallback = HashingEmbedder(dim=16)
        embedder = RemoteEmbedder(
            "https://embed.test", "m",
            retry_count=1, retry_base_delay=0.0,
            fallback=fallback,
            client=mock_client(status_handler(calls, 503)),
        )
        [r] = embedder.embed_texts(["cart"])

        assert len(calls) == 2
        assert r.fallback
        assert r.model_variant == fallback.variant
        assert np.array_equal(r.vector, fallback.embed_text("cart").vector)

    def test_auth_error_not_retried(self):
        calls = []
        embedder = RemoteEmbedder(
            "https://embed.test", "m", retry_count=3, retry_base_delay=0.0,
            client=mock_client(status_handler(calls, 401)),
        )
        [r] = embedder.embed_texts(["cart"])
        assert len(calls) == 1
        assert r.fallback

    def test_malformed_response_falls_back(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": True})

        embedder = RemoteEmbedder("https://embed.test", "m", retry_base_delay=0.0, client=mock_client(handler))
        [r] = embedder.embed_texts(["cart"])
        assert r.fallback

    def test_connection_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        embedder = RemoteEmbedder(
            "https://embed.test", "m", retry_count=0, client=mock_client(handler),
        )
        [r] = embedder.embed_texts(["cart"])
        assert r.fallback

    def test_repr_masks_key(self):
        embedder = RemoteEmbedder("https://embed.test", "m", api_key="sk-secret", client=mock_client(ok_handler([])))
        assert "sk-secret" not in repr(embedder)


class TestCachingEmbedder:
    """Tests for the content-hash cache in front of an embedder."""

    def test_duplicate_content_embedded_once(self):
        excerpt = "export function same() {}"
        a = make_unit("a.ts", "same", excerpt=excerpt)
        b = make_unit("b.ts", "same", excerpt=excerpt)
        embedder = CachingEmbedder(HashingEmbedder())

        results = embedder.embed_many([a, b])

        assert embedder.embed_calls == 1
        assert [r.unit_id for r in results] == ["a.ts::same", "b.ts::same"]
        assert np.array_equal(results[0].vector, results[1].vector)

    def test_second_pass_is_cached(self):
        units = [make_unit("a.ts", "a"), make_unit("b.ts", "b")]
        embedder = CachingEmbedder(HashingEmbedder())
        embedder.embed_many(units)
        embedder.reset_stats()

        embedder.embed_many(units)

        assert embedder.embed_calls == 0
        assert embedder.stats()["cache"]["hits"] >= 2

    def test_concurrent_workers_embed_shared_content_once(self):
        started = threading.Event()
        release = threading.Event()

        class SlowEmbedder(HashingEmbedder):
            calls = 0

            def embed_many(self, units):
                SlowEmbedder.calls += 1
                started.set()
                release.wait(5)
                return super().embed_many(units)

        embedder = CachingEmbedder(SlowEmbedder(dim=32))
        a = make_unit("a.ts", "same", excerpt="export function same() {}")
        b = make_unit("b.ts", "same", excerpt="export function same() {}")
        results = {}

        first = threading.Thread(target=lambda: results.update(a=embedder.embed_many([a])))
        first.start()
        started.wait(5)
        second = threading.Thread(target=lambda: results.update(b=embedder.embed_many([b])))
        second.start()
        threading.Timer(0.2, release.set).start()
        first.join(5)
        second.join(5)

        assert SlowEmbedder.calls == 1
        assert embedder.embed_calls == 1
        assert results["b"][0].unit_id == "b.ts::same"
        assert np.array_equal(results["a"][0].vector, results["b"][0].vector)

    def test_failed_worker_leaves_content_unclaimed(self):
        class FailingOnce(HashingEmbedder):
            failed = False

            def embed_many(self, units):
                if not FailingOnce.failed:
                    FailingOnce.failed = True
                    raise RuntimeError("backend down")
                return super().embed_many(units)

        embedder = CachingEmbedder(FailingOnce(dim=32))
        unit = make_unit("a.ts", "a")
        with pytest.raises(RuntimeError):
            embedder.embed_many([unit])

        [result] = embedder.embed_many([unit])
        assert result.unit_id == "a.ts::a"
        assert embedder.embed_calls == 1

    def test_queries_bypass_cache(self):
        embedder = CachingEmbedder(HashingEmbedder())
        embedder.embed_text("free text")
        assert len(embedder.cache) == 0

    def test_prime_filters_variant(self):
        embedder = CachingEmbedder(HashingEmbedder(dim=16), VectorCache())
        vector = np.ones(16, dtype=np.float32)
        added = embedder.prime([
            ("same", EmbeddingResult("x", vector, "hashing-v1-16")),
            ("other", EmbeddingResult("y", vector, "remote:m")),
            ("fallback", EmbeddingResult("z", vector, "hashing-v1-16", fallback=True)),
        ])
        assert added == 2
        assert "other" not in embedder.cache


class TestGetEmbedder:
    """Tests for building the embedder from config."""

    def test_deterministic(self):
        embedder = get_embedder(EngineConfig(embedding_dim=64))
        assert isinstance(embedder, CachingEmbedder)
        assert embedder.variant == "hashing-v1-64"

    def test_remote(self):
        config = EngineConfig(embedder_variant="remote", remote_model="text-embedding-3-small", remote_api_key="k")
        embedder = get_embedder(config)
        try:
            assert isinstance(embedder.inner, RemoteEmbedder)
            assert embedder.variant == "remote:text-embedding-3-small"
            assert embedder.inner.fallback.variant == "hashing-v1-256"
        finally:
            embedder.close()


class TestNormalize:
    def test_zero_vector_stays_zero(self):
        assert not normalize(np.zeros(4)).any()

    def test_unit_length(self):
        assert np.allclose(normalize(np.array([3.0, 4.0])), [0.6, 0.8])
