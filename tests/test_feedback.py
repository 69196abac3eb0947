"""Tests for mnemos.signal.feedback — explicit feedback and active learning."""

from datetime import timedelta

import pytest

from mnemos.core.errors import NotFound, ValidationError
from mnemos.core.events import EventBus
from mnemos.core.types import FeedbackOutcome, LaneType, Memory, MemorySource, utcnow
from mnemos.signal.confidence import create_confidence
from mnemos.signal.feedback import ActiveLearning, LearningTrigger, reinforce_memory


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def learning(store, graph, config, bus):
    return ActiveLearning(store, graph, config, bus=bus)


async def _create(store, content, conf=0.5, **kw):
    kw.setdefault("type", "semantic")
    return await store.create(
        Memory(content=content, confidence=create_confidence(conf), **kw)
    )


class TestSharedWrites:
    @pytest.mark.asyncio
    async def test_reinforce_memory_observed(self, store):
        mid = await _create(store, "observed fact")
        updated = await reinforce_memory(store, mid, 0.3, observed=True)
        assert updated.confidence.current == pytest.approx(0.65)
        assert updated.observation_count == 1
        assert updated.last_observed is not None

    @pytest.mark.asyncio
    async def test_missing(self, store):
        with pytest.raises(NotFound):
            await reinforce_memory(store, "ghost", 0.3)


class TestFeedback:
    @pytest.mark.asyncio
    async def test_positive(self, learning, store):
        mid = await _create(store, "Use bun install for dependencies")
        result = await learning.feedback(mid, "positive")
        assert result.outcome is FeedbackOutcome.POSITIVE
        assert result.memory.confidence.current == pytest.approx(0.65)
        assert result.memory.metadata["feedback"] == {"positive": 1}
        assert result.correction is None

    @pytest.mark.asyncio
    async def test_negative(self, learning, store):
        mid = await _create(store, "Deploy on Fridays", conf=0.8)
        result = await learning.feedback(mid, FeedbackOutcome.NEGATIVE)
        assert result.memory.confidence.current == pytest.approx(0.5)
        assert result.memory.confidence.contradictions == 1

    @pytest.mark.asyncio
    async def test_repeated_feedback_tallied(self, learning, store):
        mid = await _create(store, "tally me")
        await learning.feedback(mid, "positive")
        await learning.feedback(mid, "positive")
        result = await learning.feedback(mid, "negative")
        assert result.memory.metadata["feedback"] == {"positive": 2, "negative": 1}

    @pytest.mark.asyncio
    async def test_correction_supersedes_original(self, learning, store, graph):
        mid = await _create(
            store, "Run npm install", conf=0.7, tags=["tooling"], lane=LaneType.DECISION
        )
        result = await learning.feedback(mid, "correction", content="Run bun install")
        assert result.memory.confidence.current == pytest.approx(0.4)

        fix = result.correction
        assert fix is not None
        assert fix.source is MemorySource.FEEDBACK
        assert fix.confidence.current == pytest.approx(0.85)
        assert fix.tags == ["tooling", "corrected"]
        assert fix.lane is LaneType.DECISION
        assert graph.has_edge(fix.id, mid, "supersedes")
        assert graph.is_superseded(mid)

    @pytest.mark.asyncio
    async def test_repeated_correction_reuses_memory(self, learning, store, graph):
        mid = await _create(store, "Run npm install")
        first = await learning.feedback(mid, "correction", content="Run bun install")
        second = await learning.feedback(mid, "correction", content="run bun install.")
        assert second.correction.id == first.correction.id
        assert second.correction.confidence.reinforcements == 1
        assert len(graph.edges()) == 1

    @pytest.mark.asyncio
    async def test_correction_needs_content(self, learning, store):
        mid = await _create(store, "x y z")
        with pytest.raises(ValidationError):
            await learning.feedback(mid, "correction", content="  ")

    @pytest.mark.asyncio
    async def test_bad_outcome(self, learning, store):
        mid = await _create(store, "x y z")
        with pytest.raises(ValidationError):
            await learning.feedback(mid, "meh")

    @pytest.mark.asyncio
    async def test_unknown_memory(self, learning):
        with pytest.raises(NotFound):
            await learning.feedback("ghost", "positive")

    @pytest.mark.asyncio
    async def test_events(self, learning, store, bus):
        seen = []
        bus.subscribe(seen.append)
        mid = await _create(store, "evented")
        await learning.feedback(mid, "negative")
        assert [e.kind for e in seen] == ["memory_penalized", "feedback_received"]
        assert seen[1].data["outcome"] == "negative"


class TestTriggers:
    @pytest.mark.asyncio
    async def test_low_confidence(self, learning, store):
        mid = await _create(store, "The staging database is MySQL", conf=0.3)
        triggers = await learning.check_triggers("s1", "staging database")
        assert triggers[0].type == "low_confidence"
        assert triggers[0].memory_id == mid
        assert len(triggers[0].options) == 3

    @pytest.mark.asyncio
    async def test_contradiction(self, learning, store, graph):
        a = await _create(store, "cache ttl is 5 minutes", conf=0.9)
        b = await _create(store, "cache ttl is 10 minutes", conf=0.9)
        await graph.add_edge(a, b, "contradicts")
        triggers = await learning.check_triggers("s1", "cache ttl")
        contradiction = [t for t in triggers if t.type == "contradiction"]
        assert len(contradiction) == 1
        assert {contradiction[0].memory_id, contradiction[0].related_id} == {a, b}

    @pytest.mark.asyncio
    async def test_new_pattern(self, learning, store):
        await _create(store, "format with black", conf=0.9)
        await _create(store, "format imports with isort", conf=0.9)
        triggers = await learning.check_triggers("s1", "format")
        assert [t.type for t in triggers] == ["new_pattern"]

    @pytest.mark.asyncio
    async def test_nothing_relevant(self, learning, store):
        await _create(store, "unrelated", conf=0.2)
        assert await learning.check_triggers("s1", "kubernetes") == []
        assert await learning.check_triggers("s1", "") == []

    @pytest.mark.asyncio
    async def test_session_cap_and_cooldown(self, learning, store, config):
        await _create(store, "The staging database is MySQL", conf=0.3)
        trigger = (await learning.check_triggers("s1", "staging database"))[0]
        for _ in range(config.max_questions_per_session):
            await learning.handle_response(trigger, 2, "s1")

        assert await learning.check_triggers("s1", "staging database") == []
        assert learning.session_stats("s1")["questions_asked"] == 3
        assert learning.session_stats("s1")["can_ask_more"] is False

        later = utcnow() + timedelta(minutes=config.question_cooldown_minutes + 1)
        assert await learning.check_triggers("s1", "staging database", now=later) != []

        # Other sessions are unaffected; reset clears the cap
        assert await learning.check_triggers("s2", "staging database") != []
        learning.reset_session("s1")
        assert learning.session_stats("s1")["questions_asked"] == 0

    @pytest.mark.asyncio
    async def test_unsolicited_feedback_leaves_quota(self, learning, store, config):
        await _create(store, "The staging database is MySQL", conf=0.3)
        other = await _create(store, "Tabs in Makefiles")
        for _ in range(config.max_questions_per_session + 1):
            await learning.feedback(other, "positive", session_id="s1")

        assert learning.session_stats("s1")["questions_asked"] == 0
        assert await learning.check_triggers("s1", "staging database") != []


class TestHandleResponse:
    @pytest.mark.asyncio
    async def test_confirm_low_confidence(self, learning, store):
        mid = await _create(store, "fact", conf=0.3)
        trigger = LearningTrigger(type="low_confidence", question="?", options=[], memory_id=mid)
        await learning.handle_response(trigger, 0, "s1")
        assert (await store.get(mid)).confidence.current > 0.3

    @pytest.mark.asyncio
    async def test_outdated_low_confidence(self, learning, store):
        mid = await _create(store, "fact", conf=0.5)
        trigger = LearningTrigger(type="low_confidence", question="?", options=[], memory_id=mid)
        await learning.handle_response(trigger, 1, "s1")
        assert (await store.get(mid)).confidence.current == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_pick_contradiction_side(self, learning, store, graph):
        a = await _create(store, "ttl five", conf=0.5)
        b = await _create(store, "ttl ten", conf=0.5)
        await graph.add_edge(a, b, "contradicts")
        trigger = LearningTrigger(
            type="contradiction", question="?", options=[], memory_id=a, related_id=b
        )
        await learning.handle_response(trigger, 1, "s1")
        assert (await store.get(a)).confidence.current == pytest.approx(0.2)
        assert (await store.get(b)).confidence.current == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_contradiction_with_deleted_side(self, learning, store, graph):
        a = await _create(store, "ttl five", conf=0.5)
        trigger = LearningTrigger(
            type="contradiction", question="?", options=[], memory_id=a, related_id="gone"
        )
        await learning.handle_response(trigger, 0, "s1")
        assert (await store.get(a)).confidence.current == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_confirm_new_pattern(self, learning, store):
        mid = await _create(store, "format with black", conf=0.5)
        trigger = LearningTrigger(
            type="new_pattern", question="?", options=[], context="format with black"
        )
        await learning.handle_response(trigger, 0, "s1")
        assert (await store.get(mid)).confidence.reinforcements == 1
