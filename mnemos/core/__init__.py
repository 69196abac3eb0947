"""mnemos.core — Configuration, type definitions, errors, and utilities."""

from mnemos.core.config import Config
from mnemos.core.errors import (
    DuplicateError,
    EmbeddingUnavailable,
    MnemosError,
    NotFound,
    ValidationError,
)
from mnemos.core.events import EventBus, MemoryEvent
from mnemos.core.tokens import estimate_tokens
from mnemos.core.types import (
    Confidence,
    ConversationTurn,
    FeedbackOutcome,
    InjectionResult,
    LaneType,
    Memory,
    MemorySource,
    MemoryType,
    RelationKind,
    Relationship,
    ScoredMemory,
    generate_id,
    now_iso,
)

__all__ = [
    "Config",
    "Confidence",
    "ConversationTurn",
    "DuplicateError",
    "EmbeddingUnavailable",
    "EventBus",
    "FeedbackOutcome",
    "InjectionResult",
    "LaneType",
    "Memory",
    "MemoryEvent",
    "MemorySource",
    "MemoryType",
    "MnemosError",
    "NotFound",
    "RelationKind",
    "Relationship",
    "ScoredMemory",
    "ValidationError",
    "estimate_tokens",
    "generate_id",
    "now_iso",
]
