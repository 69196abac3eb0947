"""mnemos.store — Persistent memory records and the relationship graph."""

from mnemos.store.graph import RelationshipGraph
from mnemos.store.memory import MemoryStore

__all__ = ["MemoryStore", "RelationshipGraph"]
