"""Tests for mnemos.signal.extract — rule-based extraction and dedup."""

import pytest

from mnemos.core.types import LaneType, Memory, MemorySource, MemoryType
from mnemos.signal.confidence import create_confidence
from mnemos.signal.extract import (
    SURPRISE_BASE_CONFIDENCE,
    ExtractionContext,
    Extractor,
    extract_from_text,
    extract_surprise,
    extract_tags,
    store_or_reinforce,
)


class TestTags:
    def test_tech_names(self):
        assert extract_tags("We moved from Node to Bun and use Postgres") == [
            "node", "bun", "postgres",
        ]

    def test_empty(self):
        assert extract_tags("") == []


class TestExtractFromText:
    def test_preference(self):
        cands = extract_from_text("I prefer bun over npm.", "user")
        assert [c.content for c in cands] == ["User prefers: bun over npm"]
        assert cands[0].type is MemoryType.SEMANTIC
        assert cands[0].confidence == 0.7

    def test_anti_preference(self):
        cands = extract_from_text("Please don't use semicolons.", "user")
        assert "User does NOT want: semicolons" in [c.content for c in cands]

    def test_stack_knowledge(self):
        cands = extract_from_text("We use pytest for testing.", "user")
        assert [c.content for c in cands] == ["pytest is used for testing"]
        assert cands[0].tags == ["knowledge", "stack"]

    def test_correction_needs_previous_turn(self):
        assert extract_from_text("Actually, use bun install", "user") == []
        cands = extract_from_text("Actually, use bun install", "user", previous="Run npm install")
        assert [c.content for c in cands] == ["Correction: use bun install"]

    def test_confirmation(self):
        cands = extract_from_text("Exactly", "user", previous="Use tabs for Makefiles")
        assert cands[0].content == "Confirmed: Use tabs for Makefiles"
        assert cands[0].source is MemorySource.INFERRED

    def test_assistant_code(self):
        cands = extract_from_text("Here:\n```python\nprint(1)\n```", "assistant")
        assert cands[0].content == "Generated python code pattern"
        assert cands[0].type is MemoryType.PROCEDURAL

    def test_assistant_preferences_ignored(self):
        assert extract_from_text("I prefer bun.", "assistant") == []

    def test_blank(self):
        assert extract_from_text("   ", "user") == []


class TestSurprise:
    def test_insight(self):
        cands = extract_surprise("Turns out that the cache was stale.", "user")
        assert len(cands) == 1
        cand = cands[0]
        assert cand.lane is LaneType.INSIGHT
        assert cand.type is MemoryType.SEMANTIC
        assert cand.confidence == pytest.approx(SURPRISE_BASE_CONFIDENCE + 0.15)
        assert cand.tags[:2] == ["surprise", "insight"]

    def test_role_filter(self):
        assert extract_surprise("that's not right", "assistant") == []
        user = extract_surprise("that's not right", "user")
        assert [c.lane for c in user] == [LaneType.CORRECTION]

    def test_one_candidate_per_lane(self):
        cands = extract_surprise("That worked! Problem solved, finally works.", "assistant")
        assert [c.lane for c in cands] == [LaneType.LEARNING]

    def test_context_window(self):
        text = "x" * 300 + " turns out it was DNS " + "y" * 300
        cand = extract_surprise(text, "user")[0]
        assert len(cand.source_chunk) <= 100 + len("turns out ") + 200
        assert len(cand.title) <= 103


class TestStoreOrReinforce:
    @pytest.mark.asyncio
    async def test_creates_then_reinforces(self, store):
        mem = Memory(content="Use bun", type="semantic", confidence=create_confidence(0.5), tags=["a"])
        first, created = await store_or_reinforce(store, mem, 0.3)
        assert created

        again = Memory(content="use bun.", type="semantic", tags=["b"])
        second, created = await store_or_reinforce(store, again, 0.3)
        assert not created
        assert second.id == first.id
        assert second.confidence.current == pytest.approx(0.65)
        assert second.observation_count == 1
        assert second.last_observed is not None
        assert second.tags == ["a", "b"]
        assert await store.count() == 1


class TestExtractor:
    @pytest.mark.asyncio
    async def test_extract_stores(self, store, config):
        extractor = Extractor(store, config)
        turns = [
            {"role": "user", "content": "I prefer bun over npm."},
            {"role": "assistant", "content": "Noted."},
        ]
        memories = await extractor.extract(turns, ExtractionContext(session_id="s1"))
        assert len(memories) == 1
        mem = memories[0]
        assert mem.content == "User prefers: bun over npm"
        assert mem.session_id == "s1"
        assert "bun" in mem.tags
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_repeated_fact_reinforced_not_duplicated(self, store, config):
        extractor = Extractor(store, config)
        turns = [
            {"role": "user", "content": "We use pytest for testing."},
            {"role": "user", "content": "We use pytest for testing."},
        ]
        memories = await extractor.extract(turns)
        assert len(memories) == 1
        assert memories[0].confidence.reinforcements == 1
        assert await store.count() == 1

        again = await extractor.extract(turns[:1])
        assert again[0].id == memories[0].id
        assert again[0].confidence.reinforcements == 2

    @pytest.mark.asyncio
    async def test_hook_sees_created_flag(self, store, config):
        calls = []

        async def hook(memory, created):
            calls.append(created)

        extractor = Extractor(store, config, on_stored=hook)
        turn = [{"role": "user", "content": "I prefer tabs."}]
        await extractor.extract(turn)
        await extractor.extract(turn)
        assert calls == [True, False]

    @pytest.mark.asyncio
    async def test_accepts_turn_objects_and_rejects_garbage(self, store, config):
        extractor = Extractor(store, config)
        with pytest.raises(TypeError):
            await extractor.extract([42])

    @pytest.mark.asyncio
    async def test_explicit(self, store, config):
        extractor = Extractor(store, config)
        mem = await extractor.extract_explicit(
            "  Deploy with docker on Fridays  ",
            ExtractionContext(agent_type="planner"),
            tags=["ops"],
        )
        assert mem.source is MemorySource.EXPLICIT
        assert mem.confidence.current == pytest.approx(0.9)
        assert mem.content == "Deploy with docker on Fridays"
        assert mem.tags == ["explicit", "ops", "docker"]
        assert mem.agent_type == "planner"
