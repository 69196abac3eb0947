"""mnemos.consolidation — Abstraction, periodic sweeps and agent-scoped knowledge."""

from mnemos.consolidation.abstractor import AbstractionResult, Abstractor, MemoryPattern
from mnemos.consolidation.agents import AgentKnowledge
from mnemos.consolidation.scheduler import SweepReport, TemporalScheduler, lifecycle_stage

__all__ = [
    "AbstractionResult",
    "Abstractor",
    "AgentKnowledge",
    "MemoryPattern",
    "SweepReport",
    "TemporalScheduler",
    "lifecycle_stage",
]
