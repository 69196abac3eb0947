"""
mnemos.core.types — Data types for the mnemos memory engine.

Every structure here is a plain dataclass: no ORM, no magic,
serialisable to dict/JSON in one call.  Deserialisation ignores
unknown keys and defaults missing ones so older and newer record
files stay readable.
"""

from __future__ import annotations

import hashlib
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from mnemos.core.errors import ValidationError

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class MemoryType(str, Enum):
    EPISODIC = "episodic"  # a specific event
    SEMANTIC = "semantic"  # a generalised fact or pattern
    PROCEDURAL = "procedural"  # a how-to rule


class MemorySource(str, Enum):
    """Where a memory came from.

    ``FEEDBACK`` extends the five conversational sources: it marks a
    memory written from a user correction, so corrected knowledge can be
    told apart from extracted knowledge.
    """

    INTERACTION = "interaction"
    EXPLICIT = "explicit"
    INFERRED = "inferred"
    AGENT = "agent"
    ABSTRACTION = "abstraction"
    FEEDBACK = "feedback"  # created from a user correction


class RelationKind(str, Enum):
    REINFORCES = "reinforces"
    CONTRADICTS = "contradicts"
    EXTENDS = "extends"
    SUPERSEDES = "supersedes"


class FeedbackOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    CORRECTION = "correction"


class LaneType(str, Enum):
    """Why a memory was captured (surfaced in the injected context header)."""

    CORRECTION = "correction"
    DECISION = "decision"
    COMMITMENT = "commitment"
    INSIGHT = "insight"
    LEARNING = "learning"
    CONFIDENCE = "confidence"
    PATTERN_SEED = "pattern_seed"
    CROSS_AGENT = "cross_agent"
    WORKFLOW_NOTE = "workflow_note"
    GAP = "gap"


LANE_WEIGHTS: Dict[LaneType, float] = {
    LaneType.CORRECTION: 1.3,
    LaneType.DECISION: 1.2,
    LaneType.COMMITMENT: 1.2,
    LaneType.INSIGHT: 1.1,
    LaneType.LEARNING: 1.1,
    LaneType.CONFIDENCE: 1.0,
    LaneType.PATTERN_SEED: 0.9,
    LaneType.CROSS_AGENT: 0.9,
    LaneType.WORKFLOW_NOTE: 0.8,
    LaneType.GAP: 0.8,
}

#: Default half-life of an unused memory, in days.
DEFAULT_HALF_LIFE_DAYS = 30.0
DEFAULT_DECAY_RATE = math.log(2) / DEFAULT_HALF_LIFE_DAYS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """12-hex-char unique identifier."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Timezone-aware datetime -> ISO-8601 with Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def now_iso() -> str:
    """Current UTC timestamp in ISO-8601 with Z suffix."""
    return to_iso(utcnow())


def parse_iso(ts: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.  Raises ``ValueError`` on
    garbage.
    """
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_WS = re.compile(r"\s+")
_TRAILING_PUNCT = re.compile(r"[\s.!?;:,]+$")


def normalize_content(text: str) -> str:
    """Canonical form used for duplicate detection."""
    text = _WS.sub(" ", (text or "").strip().lower())
    return _TRAILING_PUNCT.sub("", text)


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def derive_title(content: str, max_len: int = 80) -> str:
    """First line / sentence of *content*, trimmed to *max_len* chars."""
    first = (content or "").strip().splitlines()[0] if content and content.strip() else ""
    sentence = re.split(r"(?<=[.!?])\s", first, maxsplit=1)[0]
    if len(sentence) > max_len:
        return sentence[: max_len - 3].rstrip() + "..."
    return sentence


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


# ---------------------------------------------------------------------------
# Confidence: a decaying, reinforceable score
# ---------------------------------------------------------------------------


@dataclass
class Confidence:
    """Score sub-record of a memory.

    Treated as immutable: the functions in ``mnemos.signal.confidence``
    return new instances instead of mutating this one.
    """

    current: float = 0.5
    initial: Optional[float] = None
    reinforcements: int = 0
    contradictions: int = 0
    last_accessed: str = field(default_factory=now_iso)
    decay_rate: float = DEFAULT_DECAY_RATE  # per day
    decayed_at: Optional[str] = None

    def __post_init__(self) -> None:
        self.current = max(0.0, min(1.0, float(self.current)))
        if self.initial is None:
            self.initial = self.current
        self.initial = max(0.0, min(1.0, float(self.initial)))
        self.reinforcements = max(0, int(self.reinforcements))
        self.contradictions = max(0, int(self.contradictions))
        if not self.decay_rate or self.decay_rate <= 0:
            raise ValidationError(f"decay_rate must be > 0, got {self.decay_rate!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "initial": self.initial,
            "reinforcements": self.reinforcements,
            "contradictions": self.contradictions,
            "last_accessed": self.last_accessed,
            "decay_rate": self.decay_rate,
            "decayed_at": self.decayed_at,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "Confidence":
        d = d or {}
        return cls(
            current=d.get("current", 0.5),
            initial=d.get("initial"),
            reinforcements=d.get("reinforcements", 0),
            contradictions=d.get("contradictions", 0),
            last_accessed=d.get("last_accessed") or now_iso(),
            decay_rate=d.get("decay_rate") or DEFAULT_DECAY_RATE,
            decayed_at=d.get("decayed_at"),
        )


# ---------------------------------------------------------------------------
# Memory: the atomic knowledge unit
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """
    Atomic knowledge unit.

    ``type`` and ``source`` are fixed at creation.  Abstractions are
    always ``semantic`` memories with source ``abstraction``.
    """

    content: str
    type: MemoryType = MemoryType.EPISODIC
    source: MemorySource = MemorySource.INTERACTION
    title: str = ""
    tags: List[str] = field(default_factory=list)
    confidence: Confidence = field(default_factory=Confidence)
    embedding: Optional[List[float]] = None

    # provenance
    session_id: str = ""
    agent_type: str = ""
    lane: Optional[LaneType] = None
    reasoning: str = ""
    source_chunk: str = ""

    # usage
    observation_count: int = 0
    last_observed: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    # auto-populated
    id: str = field(default_factory=generate_id)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        try:
            self.type = MemoryType(self.type)
            self.source = MemorySource(self.source)
            if self.lane is not None:
                self.lane = LaneType(self.lane)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if self.source is MemorySource.ABSTRACTION and self.type is not MemoryType.SEMANTIC:
            raise ValidationError("abstraction memories must be semantic")
        if not (self.content or "").strip():
            raise ValidationError("memory content must not be empty")

        self.tags = _dedupe([str(t) for t in self.tags])
        if not self.title:
            self.title = derive_title(self.content)
        if self.embedding is not None:
            self.embedding = [float(x) for x in self.embedding]

    # -- derived -----------------------------------------------------------

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    @property
    def tag_set(self) -> frozenset:
        return frozenset(self.tags)

    @property
    def is_abstraction(self) -> bool:
        return self.source is MemorySource.ABSTRACTION

    # -- serialisation -----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "source": self.source.value,
            "title": self.title,
            "content": self.content,
            "embedding": list(self.embedding) if self.embedding is not None else None,
            "confidence": self.confidence.to_dict(),
            "tags": list(self.tags),
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "lane": self.lane.value if self.lane else None,
            "reasoning": self.reasoning,
            "source_chunk": self.source_chunk,
            "observation_count": self.observation_count,
            "last_observed": self.last_observed,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Memory":
        created = d.get("created_at") or now_iso()
        return cls(
            id=d["id"],
            content=d["content"],
            type=d.get("type", MemoryType.EPISODIC.value),
            source=d.get("source", MemorySource.INTERACTION.value),
            title=d.get("title", ""),
            embedding=d.get("embedding"),
            confidence=Confidence.from_dict(d.get("confidence")),
            tags=d.get("tags") or [],
            session_id=d.get("session_id") or "",
            agent_type=d.get("agent_type") or "",
            lane=d.get("lane"),
            reasoning=d.get("reasoning") or "",
            source_chunk=d.get("source_chunk") or "",
            observation_count=d.get("observation_count", 0),
            last_observed=d.get("last_observed"),
            metadata=d.get("metadata") or {},
            created_at=created,
            updated_at=d.get("updated_at") or created,
        )

    def index_entry(self) -> Dict[str, Any]:
        """Lightweight metadata kept in the store's index file."""
        return {
            "type": self.type.value,
            "source": self.source.value,
            "title": self.title,
            "content_hash": self.content_hash,
            "current": self.confidence.current,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Relationship: a typed, directed edge
# ---------------------------------------------------------------------------


@dataclass
class Relationship:
    from_id: str
    to_id: str
    kind: RelationKind
    strength: float = 1.0
    created_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        try:
            self.kind = RelationKind(self.kind)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        self.strength = max(0.0, min(1.0, float(self.strength)))

    @property
    def key(self) -> tuple:
        return (self.from_id, self.to_id, self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_id": self.from_id,
            "to_id": self.to_id,
            "kind": self.kind.value,
            "strength": self.strength,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Relationship":
        return cls(
            from_id=d["from_id"],
            to_id=d["to_id"],
            kind=d["kind"],
            strength=d.get("strength", 1.0),
            created_at=d.get("created_at") or now_iso(),
        )


# ---------------------------------------------------------------------------
# Conversation input / retrieval output
# ---------------------------------------------------------------------------


@dataclass
class ConversationTurn:
    """One turn of a conversation handed to the extractor."""

    role: str  # "user" | "assistant"
    content: str
    timestamp: Optional[str] = None

    @classmethod
    def coerce(cls, turn: Any) -> "ConversationTurn":
        if isinstance(turn, ConversationTurn):
            return turn
        if isinstance(turn, dict):
            return cls(
                role=str(turn.get("role", "user")),
                content=str(turn.get("content", "")),
                timestamp=turn.get("timestamp"),
            )
        raise TypeError(f"Cannot interpret {type(turn).__name__} as a conversation turn")


@dataclass
class ScoredMemory:
    """A retrieval hit."""

    memory: Memory
    similarity: float
    score: float
    via: str = "vector"  # "vector" | "text" | "graph"

    def to_dict(self) -> Dict[str, Any]:
        d = self.memory.to_dict()
        d.pop("embedding", None)
        return {
            "memory": d,
            "similarity": round(self.similarity, 4),
            "score": round(self.score, 4),
            "via": self.via,
        }


@dataclass
class InjectionResult:
    """Context block handed back to the orchestrator."""

    context: str = ""
    memories: List[ScoredMemory] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "memories": [m.to_dict() for m in self.memories],
            "metadata": dict(self.metadata),
        }
