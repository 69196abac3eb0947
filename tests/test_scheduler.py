"""Tests for mnemos.consolidation.scheduler — decay, prune and abstraction sweeps."""

import asyncio
import math
from datetime import timedelta

import pytest

from mnemos.consolidation.abstractor import Abstractor
from mnemos.consolidation.scheduler import SweepReport, TemporalScheduler, lifecycle_stage
from mnemos.core.events import EventBus
from mnemos.core.types import Confidence, Memory, to_iso, utcnow
from mnemos.search.vector import VectorIndex
from mnemos.signal.confidence import create_confidence, reinforce

from conftest import DIM, unit


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def index():
    return VectorIndex(DIM)


@pytest.fixture
def scheduler(store, index, graph, config, bus):
    abstractor = Abstractor(store, index, graph, config, bus=bus)
    return TemporalScheduler(store, abstractor, config, bus=bus)


async def _aged(store, content, conf, days_ago, **kw):
    past = utcnow() - timedelta(days=days_ago)
    return await store.create(
        Memory(content=content, confidence=create_confidence(conf, now=past), **kw)
    )


class TestSweep:
    @pytest.mark.asyncio
    async def test_decay(self, scheduler, store):
        mid = await _aged(store, "month old fact", 0.8, 30)
        report = await scheduler.sweep()
        assert report.decayed == 1
        assert (await store.get(mid)).confidence.current == pytest.approx(0.4, rel=1e-3)

    @pytest.mark.asyncio
    async def test_repeated_sweep_same_instant_is_stable(self, scheduler, store):
        mid = await _aged(store, "month old fact", 0.8, 30)
        now = utcnow()
        await scheduler.sweep(now)
        once = (await store.get(mid)).confidence.current
        await scheduler.sweep(now)
        assert (await store.get(mid)).confidence.current == pytest.approx(once)

    @pytest.mark.asyncio
    async def test_prune(self, scheduler, store, bus):
        seen = []
        bus.subscribe(seen.append)
        stale = await _aged(store, "forgotten detail", 0.01, 30)
        recent = await _aged(store, "fresh but weak", 0.01, 1)
        keeper = await _aged(store, "solid fact", 0.9, 30)

        report = await scheduler.sweep()
        assert report.pruned == [stale]
        assert stale not in store
        assert recent in store
        assert keeper in store
        kinds = [e.kind for e in seen]
        assert "memory_pruned" in kinds
        assert kinds[-1] == "sweep_completed"

    @pytest.mark.asyncio
    async def test_prune_uses_live_record(self, scheduler, store, bus):
        first = await _aged(store, "stale one", 0.01, 30)
        second = await _aged(store, "stale two", 0.01, 30)

        async def rescue(event):
            if event.kind == "memory_pruned" and event.memory_id == first:
                await store.update(
                    second,
                    lambda m: {"confidence": reinforce(m.confidence, signal_strength=0.9)},
                )

        bus.subscribe(rescue)
        report = await scheduler.sweep()
        assert report.pruned == [first]
        assert second in store
        assert (await store.get(second)).confidence.current > 0.8

    @pytest.mark.asyncio
    async def test_failure_isolated(self, scheduler, store, monkeypatch):
        bad = await _aged(store, "cursed", 0.8, 10)
        good = await _aged(store, "fine", 0.8, 10)
        real_update = store.update

        async def flaky_update(memory_id, patch):
            if memory_id == bad:
                raise OSError("disk full")
            return await real_update(memory_id, patch)

        monkeypatch.setattr(store, "update", flaky_update)
        report = await scheduler.sweep()
        assert report.failures == 1
        assert report.decayed == 1
        assert (await store.get(good)).confidence.current < 0.8

    @pytest.mark.asyncio
    async def test_overlapping_sweep_skipped(self, scheduler, store):
        await _aged(store, "x y", 0.5, 1)
        first, second = await asyncio.gather(scheduler.sweep(), scheduler.sweep())
        assert not first.skipped
        assert second.skipped
        assert not scheduler.sweeping

    @pytest.mark.asyncio
    async def test_adaptive_half_life(self, scheduler, store, config):
        config.adaptive_half_life = True
        past = utcnow() - timedelta(days=30)
        conf = Confidence(
            current=0.8,
            reinforcements=6,
            last_accessed=to_iso(past),
            decay_rate=math.log(2) / 30,
        )
        mid = await store.create(Memory(content="well corroborated", confidence=conf))
        await scheduler.sweep()
        got = (await store.get(mid)).confidence
        assert math.log(2) / got.decay_rate == pytest.approx(180.0)
        assert got.current == pytest.approx(0.8 * 0.5 ** (30 / 180), rel=1e-3)

    @pytest.mark.asyncio
    async def test_abstraction_needs_enough_candidates(self, scheduler, store, index, config):
        for content, vec in (("ran tests in web", unit(1.0)), ("ran tests in api", unit(1.0, 0.05))):
            mid = await store.create(
                Memory(content=content, confidence=create_confidence(0.7), embedding=vec)
            )
            index.upsert(mid, vec)

        assert (await scheduler.sweep()).abstractions == []

        config.abstraction_min_candidates = 2
        report = await scheduler.sweep()
        assert len(report.abstractions) == 1
        assert report.to_dict()["abstractions"][0]["member_ids"]


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, bus):
        done = asyncio.Event()

        def on_event(event):
            if event.kind == "sweep_completed":
                done.set()

        bus.subscribe(on_event)
        scheduler.start(interval=0.01)
        assert scheduler.running
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await scheduler.stop()
        assert not scheduler.running
        assert isinstance(scheduler.last_report, SweepReport)

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()
        assert not scheduler.running


class TestLifecycle:
    def _mem(self, current, created_days, accessed_days, reinforcements=0):
        now = utcnow()
        return Memory(
            content="x y",
            created_at=to_iso(now - timedelta(days=created_days)),
            confidence=Confidence(
                current=current,
                reinforcements=reinforcements,
                last_accessed=to_iso(now - timedelta(days=accessed_days)),
            ),
        )

    def test_stages(self):
        assert lifecycle_stage(self._mem(0.5, 0.1, 0.1)) == "new"
        assert lifecycle_stage(self._mem(0.8, 10, 2)) == "active"
        assert lifecycle_stage(self._mem(0.6, 10, 20, reinforcements=3)) == "stable"
        assert lifecycle_stage(self._mem(0.2, 10, 20)) == "expired"
        assert lifecycle_stage(self._mem(0.45, 10, 20)) == "fading"
