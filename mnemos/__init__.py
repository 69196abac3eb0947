"""
mnemos -- Semantic memory engine for agent conversations.

    from mnemos import MemoryEngine

    async with MemoryEngine(data_dir="./data") as engine:
        await engine.extract_memories_from_conversation(turns, session_id="s1")
        result = await engine.inject_memories("how do I install dependencies?")
"""

from mnemos.core.config import Config
from mnemos.core.errors import (
    DuplicateError,
    EmbeddingUnavailable,
    MnemosError,
    NotFound,
    ValidationError,
)
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
)
from mnemos.system import MemoryEngine

__version__ = "0.1.0"

__all__ = [
    "MemoryEngine",
    "Config",
    "Confidence",
    "ConversationTurn",
    "FeedbackOutcome",
    "InjectionResult",
    "LaneType",
    "Memory",
    "MemorySource",
    "MemoryType",
    "RelationKind",
    "Relationship",
    "ScoredMemory",
    "MnemosError",
    "NotFound",
    "DuplicateError",
    "ValidationError",
    "EmbeddingUnavailable",
]
