"""Tests for mnemos.search.vector — in-memory vector index."""

import pytest

from mnemos.core.errors import EmbeddingUnavailable, ValidationError
from mnemos.core.types import Memory
from mnemos.search.embeddings import CallableBackend
from mnemos.search.vector import VectorIndex, cosine_similarity

from conftest import DIM, hashed_embedding, unit


class TestCosine:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_length_mismatch(self):
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0


class TestMutation:
    def test_upsert_and_get(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        assert "a" in index
        assert len(index) == 1
        assert index.get("a")[0] == pytest.approx(1.0)

    def test_upsert_replaces(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        index.upsert("a", unit(0.0, 1.0))
        assert len(index) == 1
        assert index.get("a")[1] == pytest.approx(1.0)

    def test_wrong_dimension(self):
        index = VectorIndex(DIM)
        with pytest.raises(ValidationError):
            index.upsert("a", [1.0, 0.0])

    def test_remove_keeps_others_addressable(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        index.upsert("b", unit(0.0, 1.0))
        index.upsert("c", unit(0.0, 0.0, 1.0))
        assert index.remove("a") is True
        assert index.remove("a") is False
        assert sorted(index.ids()) == ["b", "c"]
        assert index.get("c")[2] == pytest.approx(1.0)
        assert index.get("b")[1] == pytest.approx(1.0)

    def test_clear(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        index.clear()
        assert len(index) == 0


class TestSearch:
    def test_threshold_and_order(self):
        index = VectorIndex(DIM)
        index.upsert("close", unit(1.0, 0.1))
        index.upsert("far", unit(0.0, 1.0))
        index.upsert("exact", unit(1.0))
        hits = index.search(unit(1.0), k=5, min_similarity=0.5)
        assert [h[0] for h in hits] == ["exact", "close"]
        assert hits[0][1] == pytest.approx(1.0)

    def test_ties_broken_by_confidence_then_id(self):
        index = VectorIndex(DIM)
        for mid in ("b", "a", "c"):
            index.upsert(mid, unit(1.0))
        conf = {"a": 0.2, "b": 0.9, "c": 0.2}
        hits = index.search(unit(1.0), k=3, confidence_of=conf.get)
        assert [h[0] for h in hits] == ["b", "a", "c"]

    def test_restrict_to(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        index.upsert("b", unit(1.0))
        hits = index.search(unit(1.0), k=5, restrict_to=["b"])
        assert [h[0] for h in hits] == ["b"]

    def test_empty_and_degenerate(self):
        index = VectorIndex(DIM)
        assert index.search(unit(1.0)) == []
        index.upsert("a", unit(1.0))
        assert index.search(unit(0.0)) == []
        assert index.search([1.0]) == []
        assert index.search(unit(1.0), k=0) == []

    def test_similarity_between_ids(self):
        index = VectorIndex(DIM)
        index.upsert("a", unit(1.0))
        index.upsert("b", unit(1.0))
        assert index.similarity("a", "b") == pytest.approx(1.0)
        assert index.similarity("a", "zzz") == 0.0


class TestEmbedAndRebuild:
    @pytest.mark.asyncio
    async def test_embed_without_backend(self):
        with pytest.raises(EmbeddingUnavailable):
            await VectorIndex(DIM).embed("hello")

    @pytest.mark.asyncio
    async def test_embed_wrong_size(self):
        index = VectorIndex(DIM, CallableBackend(lambda text: [1.0, 0.0]))
        with pytest.raises(EmbeddingUnavailable):
            await index.embed("hello")

    @pytest.mark.asyncio
    async def test_embed(self):
        index = VectorIndex(DIM, CallableBackend(hashed_embedding, DIM))
        assert index.available
        vec = await index.embed("install dependencies")
        assert len(vec) == DIM

    @pytest.mark.asyncio
    async def test_rebuild_from_store(self, store):
        good = await store.create(Memory(content="with vector", embedding=unit(1.0)))
        await store.create(Memory(content="wrong size", embedding=[1.0, 0.0]))
        await store.create(Memory(content="no vector"))
        index = VectorIndex(DIM)
        index.upsert("stale", unit(1.0))
        assert await index.rebuild(store) == 1
        assert index.ids() == [good]
