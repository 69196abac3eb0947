"""
mnemos.signal.feedback — Explicit feedback and active-learning questions.

Feedback moves a memory's confidence directly:

  - positive    reinforce (signal 0.3 by default)
  - negative    penalize (amount 0.3 by default)
  - correction  penalize the original, store the corrected fact as a
                new ``feedback`` memory, and tombstone the original
                with a ``supersedes`` edge

Active learning decides when it is worth asking the user to confirm a
memory (low confidence, contradictions, fresh unconfirmed patterns),
capped per session so the user is not pestered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from mnemos.core.config import Config
from mnemos.core.errors import NotFound, ValidationError
from mnemos.core.events import EventBus
from mnemos.core.logging import memory_fields
from mnemos.core.types import (
    FeedbackOutcome,
    Memory,
    MemorySource,
    RelationKind,
    parse_iso,
    to_iso,
    utcnow,
)
from mnemos.signal.confidence import create_confidence, needs_validation, penalize, reinforce
from mnemos.signal.extract import MemoryHook, store_or_reinforce

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared confidence writes
# ---------------------------------------------------------------------------


async def reinforce_memory(
    store: Any,
    memory_id: str,
    signal: float,
    factor: float = 1.0,
    now: Optional[datetime] = None,
    observed: bool = False,
    extra: Optional[Any] = None,
) -> Memory:
    """Serialised read-modify-write reinforcement of one memory."""
    stamp = now or utcnow()

    def patch(current: Memory) -> Dict[str, Any]:
        changes: Dict[str, Any] = {
            "confidence": reinforce(current.confidence, stamp, signal, factor)
        }
        if observed:
            changes["observation_count"] = current.observation_count + 1
            changes["last_observed"] = to_iso(stamp)
        if extra:
            changes.update(extra(current) if callable(extra) else extra)
        return changes

    return await store.update(memory_id, patch)


async def penalize_memory(
    store: Any,
    memory_id: str,
    amount: float,
    now: Optional[datetime] = None,
    extra: Optional[Any] = None,
) -> Memory:
    stamp = now or utcnow()

    def patch(current: Memory) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"confidence": penalize(current.confidence, stamp, amount)}
        if extra:
            changes.update(extra(current) if callable(extra) else extra)
        return changes

    return await store.update(memory_id, patch)


def _tally(outcome: FeedbackOutcome):
    def extra(current: Memory) -> Dict[str, Any]:
        metadata = dict(current.metadata)
        counts = dict(metadata.get("feedback") or {})
        counts[outcome.value] = int(counts.get(outcome.value, 0)) + 1
        metadata["feedback"] = counts
        return {"metadata": metadata}

    return extra


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class FeedbackResult:
    memory_id: str
    outcome: FeedbackOutcome
    memory: Memory
    correction: Optional[Memory] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "outcome": self.outcome.value,
            "confidence": self.memory.confidence.current,
            "correction_id": self.correction.id if self.correction else None,
        }


@dataclass
class LearningTrigger:
    """A question worth asking the user."""

    type: str  # "low_confidence" | "contradiction" | "new_pattern"
    question: str
    options: List[str]
    context: str = ""
    memory_id: Optional[str] = None
    related_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "question": self.question,
            "options": list(self.options),
            "context": self.context,
            "memory_id": self.memory_id,
            "related_id": self.related_id,
        }


@dataclass
class _SessionState:
    count: int = 0
    last_asked: Optional[datetime] = None


# ---------------------------------------------------------------------------
# ActiveLearning
# ---------------------------------------------------------------------------


class ActiveLearning:
    """
    Feedback handling and question triggers.

    Parameters
    ----------
    store, graph:
        ``MemoryStore`` and ``RelationshipGraph`` to act on.
    config:
        Signal strengths and per-session question limits.
    bus:
        Optional ``EventBus`` receiving feedback events.
    on_stored:
        Optional async hook for memories created by corrections.
    """

    def __init__(
        self,
        store: Any,
        graph: Any,
        config: Config,
        bus: Optional[EventBus] = None,
        on_stored: Optional[MemoryHook] = None,
    ) -> None:
        self.store = store
        self.graph = graph
        self.config = config
        self.bus = bus
        self.on_stored = on_stored
        self._sessions: Dict[str, _SessionState] = {}

    async def _emit(self, kind: str, memory_id: Optional[str] = None, **data: Any) -> None:
        if self.bus is not None:
            await self.bus.emit(kind, memory_id, **data)

    async def _reinforce(self, memory_id: str, extra: Any = None) -> Memory:
        memory = await reinforce_memory(
            self.store,
            memory_id,
            self.config.positive_feedback_signal,
            self.config.reinforcement_factor,
            extra=extra,
        )
        await self._emit("memory_reinforced", memory_id, confidence=memory.confidence.current)
        return memory

    async def _penalize(self, memory_id: str, extra: Any = None) -> Memory:
        memory = await penalize_memory(
            self.store, memory_id, self.config.negative_feedback_penalty, extra=extra
        )
        await self._emit("memory_penalized", memory_id, confidence=memory.confidence.current)
        return memory

    # -- feedback ----------------------------------------------------------

    async def feedback(
        self,
        memory_id: str,
        outcome: Union[FeedbackOutcome, str],
        content: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> FeedbackResult:
        """Apply user feedback to a memory.  Unknown id raises ``NotFound``."""
        try:
            outcome = FeedbackOutcome(outcome)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if outcome is FeedbackOutcome.CORRECTION and not (content or "").strip():
            raise ValidationError("a correction needs the corrected content")

        log.info(
            "Processing %s feedback for %s", outcome.value, memory_id,
            extra=memory_fields(memory_id, event="feedback_received", session_id=session_id),
        )
        correction: Optional[Memory] = None

        if outcome is FeedbackOutcome.POSITIVE:
            memory = await self._reinforce(memory_id, _tally(outcome))
        elif outcome is FeedbackOutcome.NEGATIVE:
            memory = await self._penalize(memory_id, _tally(outcome))
        else:
            memory = await self._penalize(memory_id, _tally(outcome))
            correction = await self._store_correction(memory, content or "", session_id)

        await self._emit(
            "feedback_received",
            memory_id,
            outcome=outcome.value,
            correction_id=correction.id if correction else None,
        )
        return FeedbackResult(memory_id, outcome, memory, correction)

    async def _store_correction(
        self, original: Memory, content: str, session_id: Optional[str]
    ) -> Memory:
        candidate = Memory(
            content=content.strip(),
            type=original.type,
            source=MemorySource.FEEDBACK,
            tags=list(original.tags) + ["corrected"],
            confidence=create_confidence(0.85, self.config.decay_rate),
            session_id=session_id or original.session_id,
            agent_type=original.agent_type,
            lane=original.lane,
            reasoning=f"Correction of {original.id}",
        )
        record, created = await store_or_reinforce(
            self.store,
            candidate,
            self.config.extraction_signal,
            self.config.reinforcement_factor,
        )
        if self.on_stored is not None:
            await self.on_stored(record, created)

        if record.id == original.id:
            log.warning(
                "Correction for %s repeats the original content", original.id,
                extra=memory_fields(original.id, session_id=session_id),
            )
        elif not self.graph.has_edge(record.id, original.id, RelationKind.SUPERSEDES):
            await self.graph.add_edge(record.id, original.id, RelationKind.SUPERSEDES, 1.0)
        return record

    # -- session limits ----------------------------------------------------

    def _count_question(self, session_id: str, now: Optional[datetime] = None) -> None:
        state = self._sessions.setdefault(session_id, _SessionState())
        state.count += 1
        state.last_asked = now or utcnow()

    def _can_ask(self, session_id: str, now: datetime) -> bool:
        state = self._sessions.get(session_id)
        if state is None or state.last_asked is None:
            return True
        cooldown = timedelta(minutes=self.config.question_cooldown_minutes)
        return (
            state.count < self.config.max_questions_per_session
            or now - state.last_asked >= cooldown
        )

    def session_stats(self, session_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        state = self._sessions.get(session_id)
        return {
            "questions_asked": state.count if state else 0,
            "last_asked": state.last_asked.isoformat() if state and state.last_asked else None,
            "can_ask_more": self._can_ask(session_id, now or utcnow()),
        }

    def reset_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    # -- triggers ----------------------------------------------------------

    async def check_triggers(
        self, session_id: str, context: str, now: Optional[datetime] = None
    ) -> List[LearningTrigger]:
        """Questions worth asking about memories relevant to *context*."""
        now = now or utcnow()
        if not context or not self._can_ask(session_id, now):
            return []

        relevant = await self.store.search_text(context, 10)
        triggers: List[LearningTrigger] = []

        for memory in relevant:
            if needs_validation(memory.confidence, now):
                triggers.append(
                    LearningTrigger(
                        type="low_confidence",
                        memory_id=memory.id,
                        question=(
                            f'I remember that "{memory.content[:100]}..." '
                            "- is this still accurate?"
                        ),
                        options=["Yes, that's correct", "No, that's outdated", "Partially correct"],
                        context=memory.content,
                    )
                )
                break

        for memory in relevant:
            others = [i for i in self.graph.contradictions(memory.id) if i in self.store]
            if not others:
                continue
            other = await self.store.get(others[0])
            triggers.append(
                LearningTrigger(
                    type="contradiction",
                    memory_id=memory.id,
                    related_id=other.id,
                    question=(
                        f'I have conflicting information: "{memory.content[:80]}..." '
                        f'vs "{other.content[:80]}..." - which is correct?'
                    ),
                    options=[
                        "First one",
                        "Second one",
                        "Both are valid in different contexts",
                        "Neither",
                    ],
                    context=f"{memory.content}\n---\n{other.content}",
                )
            )
            break

        fresh = [
            m
            for m in relevant[:5]
            if m.confidence.reinforcements == 0
            and (now - parse_iso(m.created_at)) < timedelta(hours=24)
        ]
        if len(fresh) >= 2:
            triggers.append(
                LearningTrigger(
                    type="new_pattern",
                    question=(
                        "I've noticed a new pattern in your requests. "
                        "Should I remember this preference going forward?"
                    ),
                    options=["Yes, remember this", "No, it was just for now", "Ask me again later"],
                    context="\n".join(m.content for m in fresh),
                )
            )

        return triggers

    async def handle_response(
        self, trigger: LearningTrigger, response_index: int, session_id: str
    ) -> None:
        """Apply the user's answer (index into ``trigger.options``)."""
        log.info(
            "Handling %s response %d", trigger.type, response_index,
            extra=memory_fields(trigger.memory_id, session_id=session_id),
        )

        if trigger.type == "low_confidence" and trigger.memory_id:
            if response_index == 0:
                await self._reinforce(trigger.memory_id)
            elif response_index == 1:
                await self._penalize(trigger.memory_id)

        elif trigger.type == "contradiction" and trigger.memory_id:
            other = trigger.related_id
            if other is None:
                found = self.graph.contradictions(trigger.memory_id)
                other = found[0] if found else None
            if other is not None:
                try:
                    if response_index == 0:
                        await self._reinforce(trigger.memory_id)
                        await self._penalize(other)
                    elif response_index == 1:
                        await self._penalize(trigger.memory_id)
                        await self._reinforce(other)
                    elif response_index == 3:
                        await self._penalize(trigger.memory_id)
                        await self._penalize(other)
                except NotFound as exc:
                    log.info("Contradiction answer skipped: %s", exc)

        elif trigger.type == "new_pattern" and response_index == 0:
            for memory in await self.store.search_text(trigger.context, 3):
                await self._reinforce(memory.id)

        self._count_question(session_id)
