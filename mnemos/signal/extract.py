"""
mnemos.signal.extract — Pattern-based memory extraction from conversations.

Scans conversation turns for things worth remembering and turns them
into candidate memories:

  - preferences / anti-preferences stated by the user
  - project knowledge ("the project uses X", "we use X for Y")
  - feedback on the previous turn (confirmation, correction)
  - code generated by the assistant
  - "surprise" moments: recoveries, corrections, enthusiasm, decisions,
    commitments, insights, gaps, workflow notes

Candidates are deduplicated on ``(type, normalised content)``: a fact
already in the store is reinforced instead of stored twice.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from mnemos.core.config import Config
from mnemos.core.errors import DuplicateError, NotFound
from mnemos.core.logging import memory_fields
from mnemos.core.types import (
    ConversationTurn,
    LaneType,
    Memory,
    MemorySource,
    MemoryType,
    now_iso,
    utcnow,
)
from mnemos.signal.confidence import create_confidence, reinforce

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Candidate
# ---------------------------------------------------------------------------


@dataclass
class ExtractionCandidate:
    """A memory the extractor wants to store, before dedup."""

    content: str
    type: MemoryType
    confidence: float
    tags: List[str] = field(default_factory=list)
    reason: str = ""
    source: MemorySource = MemorySource.INTERACTION
    lane: Optional[LaneType] = None
    title: str = ""
    source_chunk: str = ""


@dataclass
class ExtractionContext:
    session_id: str = ""
    agent_type: str = ""


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_I = re.IGNORECASE

PREFERENCE_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"(?:\bi\s+)?\bprefer\s+(.+?)(?:\.|$)", _I | re.M), "preference"),
    (re.compile(r"(?:\bi\s+)?\blike\s+(?:to\s+)?(.+?)(?:\.|$)", _I | re.M), "preference"),
    (re.compile(r"\b(?:don't|do\s+not)\s+(?:use|like)\s+(.+?)(?:\.|$)", _I | re.M), "anti-preference"),
    (re.compile(r"\balways\s+(?:use|do)\s+(.+?)(?:\.|$)", _I | re.M), "preference"),
    (re.compile(r"\bnever\s+(?:use|do)\s+(.+?)(?:\.|$)", _I | re.M), "anti-preference"),
]

KNOWLEDGE_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"(?:\bthe\s+)?\bproject\s+(?:uses?|has)\s+(.+?)(?:\.|$)", _I | re.M), "project"),
    (re.compile(r"\b(?:we|i)\s+use\s+(.+?)\s+for\s+(.+?)(?:\.|$)", _I | re.M), "stack"),
    (re.compile(r"(?:\bthe\s+)?\b(?:database|db)\s+is\s+(.+?)(?:\.|$)", _I | re.M), "infrastructure"),
    (re.compile(r"\b(?:deploy|run)\s+(?:on|to)\s+(.+?)(?:\.|$)", _I | re.M), "infrastructure"),
]

FEEDBACK_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"(?:that's\s+)?\b(?:correct|right|exactly)\b", _I), "positive"),
    (re.compile(r"(?:no,?\s+)?(?:that's\s+)?\b(?:wrong|incorrect)\b", _I), "negative"),
    (re.compile(r"\b(?:actually|instead),?\s+(.+)", _I), "correction"),
]

_CODE_BLOCK = re.compile(r"```(\w+)?\n([\s\S]*?)```")

_TECH_PATTERNS = [
    re.compile(r"\b(typescript|javascript|python|rust|go)\b", _I),
    re.compile(r"\b(react|vue|angular|svelte)\b", _I),
    re.compile(r"\b(node|bun|deno)\b", _I),
    re.compile(r"\b(postgres|mysql|mongodb|redis)\b", _I),
    re.compile(r"\b(docker|kubernetes|aws|gcp|azure)\b", _I),
]


@dataclass(frozen=True)
class SurprisePattern:
    name: str
    patterns: Tuple[Pattern, ...]
    memory_type: MemoryType
    lane: LaneType
    confidence_boost: float
    role: str  # "user" | "assistant" | "both"


def _rx(*sources: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(s, _I) for s in sources)


SURPRISE_PATTERNS: Tuple[SurprisePattern, ...] = (
    SurprisePattern(
        "recovery",
        _rx(
            r"(?:I|we)\s+fixed\s+(?:the|this)\s+issue",
            r"that\s+worked",
            r"problem\s+solved",
            r"now\s+it(?:'s)?\s+working",
            r"finally\s+(?:got\s+it|works)",
        ),
        MemoryType.EPISODIC, LaneType.LEARNING, 0.2, "both",
    ),
    SurprisePattern(
        "user_correction",
        _rx(
            r"no,?\s*(?:instead|actually|use|don't)",
            r"that's\s+not\s+(?:what|how|right)",
            r"don't\s+(?:do\s+)?that",
            r"(?:please\s+)?(?:change|modify|fix)\s+(?:it|this|that)\s+to",
            r"wrong[,.]?\s+(?:it\s+should|use)",
        ),
        MemoryType.SEMANTIC, LaneType.CORRECTION, 0.3, "user",
    ),
    SurprisePattern(
        "enthusiasm",
        _rx(
            r"(?:that's\s+)?(?:perfect|exactly\s+what\s+I\s+(?:wanted|needed))",
            r"(?:this\s+is\s+)?\b(?:great|awesome|excellent)\b",
            r"\b(?:love|like)\s+(?:it|this|that)\b",
            r"(?:yes|yeah)[!,]\s*(?:that's|this\s+is)",
        ),
        MemoryType.EPISODIC, LaneType.CONFIDENCE, 0.15, "user",
    ),
    SurprisePattern(
        "negative_reaction",
        _rx(
            r"(?:this\s+is\s+)?\b(?:wrong|broken|not\s+working)\b",
            r"(?:don't|never)\s+do\s+(?:this|that)\s+again",
            r"(?:that's\s+)?\b(?:terrible|awful|bad)\b",
            r"(?:please\s+)?stop\s+doing",
        ),
        MemoryType.SEMANTIC, LaneType.CORRECTION, 0.25, "user",
    ),
    SurprisePattern(
        "decision",
        _rx(
            r"\b(?:I|we)\s+(?:decided|chose|picked)\s+(?:to\s+)?",
            r"(?:let's|we'll)\s+(?:go\s+with|use)\s+",
            r"(?:the\s+)?decision\s+(?:is|was)\s+(?:to\s+)?",
            r"\b(?:I|we)\s+(?:will|want\s+to)\s+(?:use|go\s+with)",
        ),
        MemoryType.SEMANTIC, LaneType.DECISION, 0.2, "both",
    ),
    SurprisePattern(
        "commitment",
        _rx(
            r"\b(?:always|usually)\s+(?:use|do|prefer)",
            r"\b(?:my|our)\s+(?:standard|default|preferred)\s+(?:is|approach)",
            r"\b(?:I|we)\s+(?:always|never)\s+",
            r"(?:from\s+now\s+on|going\s+forward),?\s+(?:we|I)\s+(?:will|should)",
        ),
        MemoryType.SEMANTIC, LaneType.COMMITMENT, 0.2, "user",
    ),
    SurprisePattern(
        "insight",
        _rx(
            r"\b(?:I|we)\s+(?:realized|discovered|found\s+out)",
            r"(?:it\s+)?turns\s+out\s+(?:that\s+)?",
            r"(?:the\s+)?\b(?:key|trick|secret)\s+(?:is|was)",
            r"\b(?:interesting|surprisingly),?\s+",
        ),
        MemoryType.SEMANTIC, LaneType.INSIGHT, 0.15, "both",
    ),
    SurprisePattern(
        "gap",
        _rx(
            r"(?:we\s+)?\b(?:need|should\s+add|missing)\s+",
            r"(?:there's\s+)?\bno\s+(?:way\s+to|support\s+for)",
            r"(?:it\s+)?\b(?:doesn't|can't)\s+(?:handle|support)",
            r"\b(?:TODO|FIXME|HACK):",
        ),
        MemoryType.SEMANTIC, LaneType.GAP, 0.1, "both",
    ),
    SurprisePattern(
        "workflow",
        _rx(
            r"(?:the\s+)?\b(?:process|workflow|procedure)\s+(?:is|should\s+be)",
            r"\b(?:step\s+\d+|first|then|finally)[,:]\s+",
            r"\b(?:when|before|after)\s+(?:doing|running|executing)",
        ),
        MemoryType.PROCEDURAL, LaneType.WORKFLOW_NOTE, 0.1, "both",
    ),
)

SURPRISE_BASE_CONFIDENCE = 0.6


# ---------------------------------------------------------------------------
# Pure extraction
# ---------------------------------------------------------------------------


def extract_tags(text: str) -> List[str]:
    """Technology names mentioned in *text*, lower-cased, first-seen order."""
    tags: List[str] = []
    for pattern in _TECH_PATTERNS:
        for match in pattern.finditer(text or ""):
            tag = match.group(1).lower()
            if tag not in tags:
                tags.append(tag)
    return tags


def _window(text: str, start: int, end: int, before: int, after: int) -> str:
    return text[max(0, start - before): min(len(text), end + after)]


def extract_surprise(text: str, role: str) -> List[ExtractionCandidate]:
    """At most one candidate per surprise lane (first matching pattern wins)."""
    out: List[ExtractionCandidate] = []
    for surprise in SURPRISE_PATTERNS:
        if surprise.role != "both" and surprise.role != role:
            continue
        for pattern in surprise.patterns:
            match = pattern.search(text)
            if not match:
                continue
            chunk = _window(text, match.start(), match.end(), 100, 200)
            title = _window(text, match.start(), match.end(), 20, 50).strip()
            if len(title) > 100:
                title = title[:100] + "..."
            out.append(
                ExtractionCandidate(
                    content=chunk.strip(),
                    type=surprise.memory_type,
                    confidence=SURPRISE_BASE_CONFIDENCE + surprise.confidence_boost,
                    tags=["surprise", surprise.name, surprise.lane.value],
                    reason=f"Surprise trigger: {surprise.name} (pattern: {pattern.pattern[:30]}...)",
                    source=MemorySource.INFERRED,
                    lane=surprise.lane,
                    title=title,
                    source_chunk=chunk,
                )
            )
            break
    return out


def extract_from_text(
    text: str, role: str, previous: Optional[str] = None
) -> List[ExtractionCandidate]:
    """Rule-based candidates for one turn.

    Parameters
    ----------
    text:
        The turn's content.
    role:
        ``"user"`` or ``"assistant"``.
    previous:
        Content of the preceding turn, for feedback detection.
    """
    out: List[ExtractionCandidate] = []
    if not text or not text.strip():
        return out

    if role == "user":
        for pattern, kind in PREFERENCE_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1).strip():
                subject = match.group(1).strip()
                content = (
                    f"User does NOT want: {subject}"
                    if kind == "anti-preference"
                    else f"User prefers: {subject}"
                )
                out.append(
                    ExtractionCandidate(
                        content=content,
                        type=MemoryType.SEMANTIC,
                        confidence=0.7,
                        tags=["preference", kind],
                        reason=f"Matched preference pattern: {pattern.pattern[:30]}...",
                    )
                )

        for pattern, kind in KNOWLEDGE_PATTERNS:
            match = pattern.search(text)
            if not match or not match.group(1).strip():
                continue
            groups = match.groups()
            if len(groups) > 1 and groups[1]:
                content = f"{groups[0].strip()} is used for {groups[1].strip()}"
            else:
                content = f"Project uses {groups[0].strip()}"
            out.append(
                ExtractionCandidate(
                    content=content,
                    type=MemoryType.SEMANTIC,
                    confidence=0.8,
                    tags=["knowledge", kind],
                    reason=f"Matched knowledge pattern: {pattern.pattern[:30]}...",
                )
            )

        if previous:
            for pattern, kind in FEEDBACK_PATTERNS:
                match = pattern.search(text)
                if not match:
                    continue
                if kind == "positive":
                    out.append(
                        ExtractionCandidate(
                            content=f"Confirmed: {previous[:200]}",
                            type=MemoryType.EPISODIC,
                            confidence=0.9,
                            tags=["feedback", "confirmation"],
                            reason="User confirmed previous response",
                            source=MemorySource.INFERRED,
                        )
                    )
                elif kind == "correction" and match.group(1).strip():
                    out.append(
                        ExtractionCandidate(
                            content=f"Correction: {match.group(1).strip()}",
                            type=MemoryType.SEMANTIC,
                            confidence=0.85,
                            tags=["feedback", "correction"],
                            reason="User provided correction",
                        )
                    )

    elif role == "assistant":
        if _CODE_BLOCK.search(text):
            lang_match = re.search(r"```(\w+)", text)
            language = lang_match.group(1).lower() if lang_match else "code"
            out.append(
                ExtractionCandidate(
                    content=f"Generated {language} code pattern",
                    type=MemoryType.PROCEDURAL,
                    confidence=0.5,
                    tags=["code", language],
                    reason="Detected code generation",
                )
            )

    out.extend(extract_surprise(text, role))
    return out


# ---------------------------------------------------------------------------
# Store-or-reinforce
# ---------------------------------------------------------------------------


async def store_or_reinforce(
    store: Any,
    memory: Memory,
    signal: float,
    factor: float = 1.0,
    now: Optional[datetime] = None,
) -> Tuple[Memory, bool]:
    """Create *memory*, or reinforce its existing duplicate.

    Returns ``(record, created)``.  A ``DuplicateError`` raised by a
    racing insert is handled the same way as a duplicate found up front.
    """
    existing = await store.find_duplicate(memory.type, memory.content)
    if existing is None:
        try:
            new_id = await store.create(memory)
            return await store.get(new_id), True
        except DuplicateError as exc:
            existing_id = exc.existing_id
    else:
        existing_id = existing.id

    stamp = now or utcnow()

    def bump(current: Memory) -> Dict[str, Any]:
        return {
            "confidence": reinforce(current.confidence, stamp, signal, factor),
            "observation_count": current.observation_count + 1,
            "last_observed": now_iso(),
            "tags": list(dict.fromkeys(current.tags + memory.tags)),
        }

    updated = await store.update(existing_id, bump)
    return updated, False


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


MemoryHook = Callable[[Memory, bool], Any]


class Extractor:
    """
    Turns conversation turns into stored memories.

    Parameters
    ----------
    store:
        The ``MemoryStore`` receiving candidates.
    config:
        Supplies the decay rate and the duplicate reinforcement signal.
    on_stored:
        Optional async ``(memory, created)`` hook run after every stored
        or reinforced memory (the engine schedules embedding and emits
        events from it).
    """

    def __init__(
        self,
        store: Any,
        config: Config,
        on_stored: Optional[MemoryHook] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.on_stored = on_stored

    def candidates(self, turns: Sequence[Any]) -> List[ExtractionCandidate]:
        parsed = [ConversationTurn.coerce(t) for t in turns]
        out: List[ExtractionCandidate] = []
        for i, turn in enumerate(parsed):
            previous = parsed[i - 1].content if i > 0 else None
            out.extend(extract_from_text(turn.content, turn.role, previous))
        return out

    def _to_memory(self, cand: ExtractionCandidate, context: ExtractionContext) -> Memory:
        tags = list(cand.tags)
        for tag in extract_tags(f"{cand.content}\n{cand.source_chunk}"):
            if tag not in tags:
                tags.append(tag)
        return Memory(
            content=cand.content,
            type=cand.type,
            source=cand.source,
            title=cand.title,
            tags=tags,
            confidence=create_confidence(cand.confidence, self.config.decay_rate),
            session_id=context.session_id,
            agent_type=context.agent_type,
            lane=cand.lane,
            reasoning=cand.reason,
            source_chunk=cand.source_chunk,
        )

    async def _persist(self, memory: Memory) -> Tuple[Memory, bool]:
        record, created = await store_or_reinforce(
            self.store,
            memory,
            self.config.extraction_signal,
            self.config.reinforcement_factor,
        )
        if self.on_stored is not None:
            await self.on_stored(record, created)
        return record, created

    async def extract(
        self,
        turns: Sequence[Any],
        context: Optional[ExtractionContext] = None,
    ) -> List[Memory]:
        """Extract, dedup, and store memories from *turns*.

        Returns created and reinforced memories, each once, in first-seen
        order; later entries for the same memory carry its latest state.
        """
        context = context or ExtractionContext()
        results: Dict[str, Memory] = {}
        created_count = 0

        for cand in self.candidates(turns):
            memory = self._to_memory(cand, context)
            try:
                record, created = await self._persist(memory)
            except NotFound:
                # Duplicate deleted between lookup and reinforce.
                log.debug("Duplicate vanished during extraction: %r", cand.content[:60])
                continue
            if created:
                created_count += 1
            results[record.id] = record

        log.info(
            "Extraction complete: %d memories (%d new) from %d turns",
            len(results),
            created_count,
            len(turns),
        )
        return list(results.values())

    async def extract_explicit(
        self,
        instruction: str,
        context: Optional[ExtractionContext] = None,
        memory_type: MemoryType = MemoryType.SEMANTIC,
        tags: Optional[List[str]] = None,
        title: str = "",
    ) -> Memory:
        """Store a user's explicit "remember this" as a high-confidence memory."""
        context = context or ExtractionContext()
        all_tags = ["explicit"] + list(tags or [])
        for tag in extract_tags(instruction):
            if tag not in all_tags:
                all_tags.append(tag)
        memory = Memory(
            content=instruction.strip(),
            type=memory_type,
            source=MemorySource.EXPLICIT,
            title=title,
            tags=all_tags,
            confidence=create_confidence(0.9, self.config.decay_rate),
            session_id=context.session_id,
            agent_type=context.agent_type,
            reasoning="Explicit user instruction",
        )
        record, created = await self._persist(memory)
        log.info(
            "%s explicit memory %s", "Created" if created else "Reinforced", record.id,
            extra=memory_fields(record.id, session_id=context.session_id),
        )
        return record
