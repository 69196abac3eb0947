"""
mnemos.consolidation.scheduler — Periodic decay, pruning and abstraction.

One sweep:
  1. decay every memory's confidence (optionally adapting its half-life
     to its feedback history first)
  2. delete memories below the prune threshold whose grace period has
     passed
  3. for each memory type with enough clusterable candidates, run the
     Abstractor

A failure on one memory is logged and counted; it never stops the
sweep.  Sweeps never overlap: a sweep requested while another is
running returns a report with ``skipped=True``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from mnemos.core.config import Config
from mnemos.core.errors import NotFound
from mnemos.core.events import EventBus
from mnemos.core.logging import memory_fields
from mnemos.core.types import Memory, MemoryType, parse_iso, utcnow
from mnemos.signal.confidence import adjust_decay_rate, decay, should_prune

log = logging.getLogger(__name__)


@dataclass
class SweepReport:
    decayed: int = 0
    pruned: List[str] = field(default_factory=list)
    abstractions: List[Any] = field(default_factory=list)
    failures: int = 0
    skipped: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decayed": self.decayed,
            "pruned": list(self.pruned),
            "abstractions": [a.to_dict() for a in self.abstractions],
            "failures": self.failures,
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 1),
        }


def lifecycle_stage(memory: Memory, now: Optional[datetime] = None) -> str:
    """``new``, ``active``, ``stable``, ``fading`` or ``expired``."""
    now = now or utcnow()
    age_days = (now - parse_iso(memory.created_at)).total_seconds() / 86400.0
    idle_days = (now - parse_iso(memory.confidence.last_accessed)).total_seconds() / 86400.0
    current = memory.confidence.current

    if age_days < 1:
        return "new"
    if current >= 0.7 and idle_days < 7:
        return "active"
    if current >= 0.5 and memory.confidence.reinforcements > 2:
        return "stable"
    if current < 0.3:
        return "expired"
    return "fading"


class TemporalScheduler:
    """
    Runs sweeps on demand or on a fixed interval.

    Parameters
    ----------
    store:
        The ``MemoryStore``; deletions cascade through its listeners.
    abstractor:
        ``Abstractor`` run at the end of each sweep (None disables).
    config:
        Prune threshold, grace period, abstraction limits, interval.
    bus:
        Optional ``EventBus`` for ``memory_pruned`` / ``sweep_completed``.
    """

    def __init__(
        self,
        store: Any,
        abstractor: Any,
        config: Config,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.abstractor = abstractor
        self.config = config
        self.bus = bus
        self._sweeping = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    # -- sweep -------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        if self._sweeping:
            log.info("Sweep already in progress; skipping")
            return SweepReport(skipped=True)

        self._sweeping = True
        start = time.monotonic()
        report = SweepReport()
        try:
            now = now or utcnow()
            await self._decay_all(now, report)
            await self._prune(now, report)
            await self._abstract(report)
        finally:
            self._sweeping = False

        report.duration_ms = (time.monotonic() - start) * 1000.0
        self.last_report = report
        log.info(
            "Sweep done: %d decayed, %d pruned, %d abstractions, %d failures (%.0fms)",
            report.decayed,
            len(report.pruned),
            len(report.abstractions),
            report.failures,
            report.duration_ms,
        )
        if self.bus is not None:
            await self.bus.emit("sweep_completed", None, **report.to_dict())
        return report

    async def _decay_all(self, now: datetime, report: SweepReport) -> None:
        adaptive = self.config.adaptive_half_life

        def patch(current: Memory) -> Dict[str, Any]:
            conf = current.confidence
            if adaptive:
                conf = adjust_decay_rate(conf, default_days=self.config.decay_half_life_days)
            return {"confidence": decay(conf, now)}

        for memory in await self.store.all():
            try:
                await self.store.update(memory.id, patch)
                report.decayed += 1
            except NotFound:
                continue
            except Exception as exc:
                report.failures += 1
                log.warning("Decay failed for %s: %s", memory.id, exc, extra=memory_fields(memory.id))

    async def _prune(self, now: datetime, report: SweepReport) -> None:
        grace = timedelta(days=self.config.prune_grace_days)
        threshold = self.config.prune_threshold

        def expired(latest: Memory) -> bool:
            return should_prune(latest.confidence, now, threshold, grace)

        for candidate in await self.store.all():
            try:
                # Judged on the live record: it may have been reinforced
                # while earlier deletions were awaiting.
                memory = await self.store.delete_if(candidate.id, expired)
                if memory is None:
                    continue
            except NotFound:
                continue
            except Exception as exc:
                report.failures += 1
                log.warning(
                    "Prune failed for %s: %s", candidate.id, exc, extra=memory_fields(candidate.id)
                )
                continue
            report.pruned.append(memory.id)
            log.debug(
                "Pruned %s (confidence %.3f)", memory.id, memory.confidence.current,
                extra=memory_fields(memory.id, event="memory_pruned"),
            )
            if self.bus is not None:
                await self.bus.emit(
                    "memory_pruned", memory.id, confidence=memory.confidence.current
                )

    async def _abstract(self, report: SweepReport) -> None:
        if self.abstractor is None:
            return
        for memory_type in MemoryType:
            try:
                candidates = await self.abstractor.candidates(memory_type)
                if len(candidates) < self.config.abstraction_min_candidates:
                    continue
                report.abstractions.extend(await self.abstractor.run(memory_type))
            except Exception as exc:
                report.failures += 1
                log.warning("Abstraction failed for %s memories: %s", memory_type.value, exc)

    # -- background loop ---------------------------------------------------

    def start(self, interval: Optional[float] = None) -> None:
        """Start the periodic sweep loop in the running event loop."""
        if self.running:
            return
        period = interval if interval is not None else self.config.scheduler_interval_seconds
        self._task = asyncio.create_task(self._loop(period), name="mnemos-scheduler")
        log.info("Scheduler started (every %.0fs)", period)

    async def _loop(self, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Scheduled sweep failed")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Scheduler stopped")
