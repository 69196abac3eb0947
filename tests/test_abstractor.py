"""Tests for mnemos.consolidation.abstractor — clustering and synthesis."""

import math

import pytest

from mnemos.consolidation.abstractor import (
    Abstractor,
    detect_patterns,
    merge_content,
    shared_tags,
)
from mnemos.core.errors import ValidationError
from mnemos.core.events import EventBus
from mnemos.core.types import Confidence, Memory, MemorySource, MemoryType
from mnemos.search.vector import VectorIndex
from mnemos.signal.confidence import create_confidence

from conftest import DIM, unit

NEAR = unit(0.95, math.sqrt(1 - 0.95 ** 2))


@pytest.fixture
def index():
    return VectorIndex(DIM)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def abstractor(store, index, graph, config, bus):
    return Abstractor(store, index, graph, config, bus=bus)


async def _add(store, index, content, vector, conf=0.6, type="episodic", **kw):
    mid = await store.create(
        Memory(
            content=content,
            type=type,
            confidence=create_confidence(conf),
            embedding=vector,
            **kw,
        )
    )
    index.upsert(mid, vector)
    return mid


class TestMergeRule:
    def _m(self, content, reinforcements=0, current=0.5, created="2026-01-01T00:00:00Z", tags=()):
        return Memory(
            content=content,
            confidence=Confidence(current=current, reinforcements=reinforcements),
            created_at=created,
            tags=list(tags),
        )

    def test_representative_first(self):
        a = self._m("used npm", reinforcements=1)
        b = self._m("used bun", reinforcements=4)
        c = self._m("used pnpm", reinforcements=1, current=0.9)
        assert merge_content([a, b, c]) == "used bun\n- used pnpm\n- used npm"

    def test_order_independent(self):
        a = self._m("alpha", created="2026-01-01T00:00:00Z")
        b = self._m("beta", created="2026-01-02T00:00:00Z")
        assert merge_content([a, b]) == merge_content([b, a]) == "alpha\n- beta"

    def test_duplicates_collapsed(self):
        a = self._m("Use bun.", reinforcements=2)
        b = self._m("use bun")
        assert merge_content([a, b]) == "Use bun."

    def test_shared_tags_half_rounded_up(self):
        members = [
            self._m("a", tags=["x", "y"]),
            self._m("b", tags=["x"]),
            self._m("c", tags=["x", "z", "abstracted"]),
        ]
        assert shared_tags(members) == ["x"]
        assert shared_tags(members[:2]) == ["x", "y"]


class TestClustering:
    @pytest.mark.asyncio
    async def test_near_pair_forms_one_cluster(self, abstractor, store, index):
        a = await _add(store, index, "Ran npm install in web/", unit(1.0))
        b = await _add(store, index, "Ran npm install in api/", NEAR)
        await _add(store, index, "Deployed to staging", unit(0.0, 0.0, 1.0))
        clusters = await abstractor.find_clusters("episodic", 0.9)
        assert len(clusters) == 1
        assert sorted(clusters[0]) == sorted([a, b])

    @pytest.mark.asyncio
    async def test_below_threshold(self, abstractor, store, index):
        await _add(store, index, "one", unit(1.0))
        await _add(store, index, "two", NEAR)
        assert await abstractor.find_clusters("episodic", 0.99) == []

    @pytest.mark.asyncio
    async def test_type_filter_and_unindexed(self, abstractor, store, index):
        await _add(store, index, "one", unit(1.0))
        await _add(store, index, "two", unit(1.0), type="semantic")
        await store.create(Memory(content="three", type="episodic"))
        assert await abstractor.find_clusters("episodic", 0.5) == []

    @pytest.mark.asyncio
    async def test_superseded_excluded(self, abstractor, store, index, graph):
        a = await _add(store, index, "one", unit(1.0))
        b = await _add(store, index, "two", unit(1.0))
        newer = await _add(store, index, "three", unit(0.0, 1.0), type="semantic")
        await graph.add_edge(newer, b, "supersedes")
        ids = [m.id for m in await abstractor.candidates("episodic")]
        assert ids == [a]


class TestAbstract:
    @pytest.mark.asyncio
    async def test_creates_semantic_abstraction(self, abstractor, store, index, graph, bus):
        seen = []
        bus.subscribe(seen.append)
        a = await _add(store, index, "Ran npm install in web/", unit(1.0), conf=0.4, tags=["npm", "web"])
        b = await _add(store, index, "Ran npm install in api/", NEAR, conf=0.8, tags=["npm"])

        results = await abstractor.run("episodic", 0.9)
        assert len(results) == 1
        result = results[0]
        abstraction = result.abstraction
        assert result.created
        assert abstraction.type is MemoryType.SEMANTIC
        assert abstraction.source is MemorySource.ABSTRACTION
        assert abstraction.confidence.current == pytest.approx(0.6)
        assert abstraction.title == "Pattern: Ran npm install in api/"
        assert abstraction.content == "Ran npm install in api/\n- Ran npm install in web/"
        assert abstraction.tags == ["npm", "web", "abstracted"]
        assert abstraction.metadata["member_ids"] == [b, a]

        for member in (a, b):
            assert graph.has_edge(member, abstraction.id, "extends")
            # Members survive
            assert member in store
        assert [e.kind for e in seen] == ["abstraction_created"]

    @pytest.mark.asyncio
    async def test_members_not_reclustered(self, abstractor, store, index):
        await _add(store, index, "one", unit(1.0))
        await _add(store, index, "two", NEAR)
        assert len(await abstractor.run("episodic", 0.9)) == 1
        assert await abstractor.run("episodic", 0.9) == []
        assert await abstractor.candidates("episodic") == []

    @pytest.mark.asyncio
    async def test_identical_abstraction_reused(self, abstractor, store, index, graph):
        a = await _add(store, index, "one", unit(1.0))
        b = await _add(store, index, "two", NEAR)
        first = await abstractor.abstract([a, b])
        second = await abstractor.abstract([b, a])
        assert second.abstraction.id == first.abstraction.id
        assert not second.created
        assert len(graph.edges()) == 2

    @pytest.mark.asyncio
    async def test_needs_two_members(self, abstractor, store, index):
        a = await _add(store, index, "one", unit(1.0))
        with pytest.raises(ValidationError):
            await abstractor.abstract([a, a])


class TestPatterns:
    def test_detect_patterns(self):
        memories = [
            Memory(content=f"m{i}", tags=["deploy"] + (["docker"] if i % 2 else []))
            for i in range(4)
        ]
        patterns = detect_patterns(memories, min_frequency=2)
        assert [(p.pattern, p.frequency) for p in patterns] == [("deploy", 4), ("docker", 2)]
        assert detect_patterns(memories, min_frequency=5) == []
