"""
mnemos.consolidation.agents — Per-agent views over the shared store.

Every memory carries an ``agent_type`` (empty for memories no agent
reported).  An agent's *space* is the memories it owns plus those
synced to it from another agent, which are listed by agent name in
``metadata["synced_to"]``.  Nothing is copied: content is unique per
memory type, so sharing is recorded on the original record.

Promotion marks a memory as shared knowledge (``lane=cross_agent``,
``metadata["shared"]``).  A promoted memory whose terms overlap an
existing shared one by more than ``SHARED_SIMILARITY`` is folded into
it instead: the existing record gains a use and a source agent, and
the promoted memory gets a ``reinforces`` edge to it.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Set

from mnemos.consolidation.abstractor import MemoryPattern, detect_patterns
from mnemos.core.errors import ValidationError
from mnemos.core.events import EventBus
from mnemos.core.logging import memory_fields
from mnemos.core.types import LaneType, Memory, RelationKind, ScoredMemory
from mnemos.search.tokenizer import term_set

log = logging.getLogger(__name__)

SHARED_SIMILARITY = 0.7
RECENT_ACTIVITY = 5


def jaccard(a: str, b: str) -> float:
    """Term-set Jaccard similarity of two texts."""
    left, right = term_set(a), term_set(b)
    union = left | right
    return len(left & right) / len(union) if union else 0.0


def is_shared(memory: Memory) -> bool:
    return bool(memory.metadata.get("shared"))


def synced_to(memory: Memory) -> List[str]:
    return list(memory.metadata.get("synced_to") or [])


class AgentKnowledge:
    """Agent-scoped search, patterns, transfer, promotion and sync.

    Parameters
    ----------
    store:
        The ``MemoryStore``; every change goes through ``store.update``.
    graph:
        ``RelationshipGraph`` for the edges written on promotion.
    bus:
        Optional ``EventBus``; promotions emit ``memory_reinforced`` on
        the shared record they fold into.
    """

    def __init__(self, store: Any, graph: Any, bus: Optional[EventBus] = None) -> None:
        self.store = store
        self.graph = graph
        self.bus = bus

    # -- views -------------------------------------------------------------

    async def owned(self, agent_type: str) -> List[Memory]:
        return [m for m in await self.store.all() if m.agent_type == agent_type]

    async def space(self, agent_type: str) -> List[Memory]:
        """Owned memories plus those synced to *agent_type*."""
        return [
            m
            for m in await self.store.all()
            if m.agent_type == agent_type or agent_type in synced_to(m)
        ]

    async def agents(self) -> List[str]:
        return sorted({m.agent_type for m in await self.store.all() if m.agent_type})

    # -- search ------------------------------------------------------------

    async def search(
        self,
        agent_type: str,
        query: str,
        k: int = 5,
        min_confidence: float = 0.0,
    ) -> List[ScoredMemory]:
        """Text search restricted to the agent's space.

        Score is the text match times ``confidence.current``.
        """
        if k <= 0:
            return []
        hits = []
        for memory in await self.space(agent_type):
            if memory.confidence.current < min_confidence:
                continue
            similarity = self.store.text_score(query, memory)
            if similarity <= 0.0:
                continue
            hits.append(
                ScoredMemory(
                    memory=memory,
                    similarity=similarity,
                    score=similarity * memory.confidence.current,
                    via="text",
                )
            )
        hits.sort(key=lambda h: (-h.score, h.memory.id))
        return hits[:k]

    # -- patterns and insights -----------------------------------------------

    async def patterns(self, agent_type: str, min_frequency: int = 1) -> List[MemoryPattern]:
        """Tags recurring in the memories *agent_type* owns."""
        return detect_patterns(await self.owned(agent_type), min_frequency)

    async def insights(self, agent_type: str) -> Dict[str, Any]:
        memories = await self.owned(agent_type)
        total = len(memories)
        recent = sorted(memories, key=lambda m: (m.updated_at, m.id), reverse=True)
        return {
            "agent_type": agent_type,
            "total": total,
            "average_confidence": (
                round(sum(m.confidence.current for m in memories) / total, 4) if total else 0.0
            ),
            "top_patterns": [
                {"pattern": p.pattern, "count": p.frequency}
                for p in detect_patterns(memories, min_frequency=1)
            ],
            "recent": [m.id for m in recent[:RECENT_ACTIVITY]],
            "shared": sum(1 for m in memories if is_shared(m)),
        }

    async def cross_agent_patterns(self, min_agents: int = 2) -> List[MemoryPattern]:
        """Tags that recur across at least *min_agents* different agents.

        Frequency sums the per-agent counts; confidence is
        ``min(1, frequency / 10)``.
        """
        merged: Dict[str, MemoryPattern] = {}
        seen_by: Dict[str, Set[str]] = {}
        for agent_type in await self.agents():
            for pattern in await self.patterns(agent_type):
                entry = merged.get(pattern.pattern)
                if entry is None:
                    entry = merged[pattern.pattern] = MemoryPattern(pattern.pattern, 0)
                entry.frequency += pattern.frequency
                entry.memory_ids.extend(pattern.memory_ids)
                seen_by.setdefault(pattern.pattern, set()).add(agent_type)

        found = []
        for tag, entry in merged.items():
            if len(seen_by[tag]) < min_agents:
                continue
            entry.confidence = min(1.0, entry.frequency / 10.0)
            found.append(entry)
        found.sort(key=lambda p: (-p.frequency, p.pattern))
        log.info("Detected %d cross-agent patterns", len(found))
        return found

    # -- moving knowledge ----------------------------------------------------

    async def transfer(self, memory_id: str, to_agent: str) -> Memory:
        """Hand ownership of a memory to *to_agent*."""
        if not to_agent:
            raise ValidationError("transfer needs a target agent")
        previous: List[str] = []

        def patch(current: Memory) -> Dict[str, Any]:
            previous.append(current.agent_type)
            metadata = dict(current.metadata)
            remaining = [a for a in synced_to(current) if a != to_agent]
            if remaining:
                metadata["synced_to"] = remaining
            else:
                metadata.pop("synced_to", None)
            return {"agent_type": to_agent, "metadata": metadata}

        updated = await self.store.update(memory_id, patch)
        log.info(
            "Transferred %s from %s to %s", memory_id, previous[0] or "-", to_agent,
            extra=memory_fields(memory_id, agent_type=to_agent),
        )
        return updated

    async def promote(self, memory_id: str) -> Memory:
        """Make a memory shared knowledge; returns the shared record."""
        memory = await self.store.get(memory_id)
        if is_shared(memory):
            return memory

        similar = await self._similar_shared(memory)
        if similar is not None:
            def bump(current: Memory) -> Dict[str, Any]:
                metadata = dict(current.metadata)
                metadata["usage_count"] = int(metadata.get("usage_count", 1)) + 1
                sources = list(metadata.get("source_agents") or [])
                if memory.agent_type and memory.agent_type not in sources:
                    sources.append(memory.agent_type)
                metadata["source_agents"] = sources
                return {"metadata": metadata}

            shared = await self.store.update(similar.id, bump)
            if not self.graph.has_edge(memory.id, shared.id, RelationKind.REINFORCES):
                await self.graph.add_edge(memory.id, shared.id, RelationKind.REINFORCES)
            log.info(
                "Promotion of %s folded into shared %s", memory.id, shared.id,
                extra=memory_fields(shared.id, agent_type=memory.agent_type),
            )
            if self.bus is not None:
                await self.bus.emit("memory_reinforced", shared.id, promoted=memory.id)
            return shared

        def mark(current: Memory) -> Dict[str, Any]:
            metadata = dict(current.metadata)
            metadata["shared"] = True
            metadata["usage_count"] = 1
            metadata["source_agents"] = [current.agent_type] if current.agent_type else []
            return {"lane": LaneType.CROSS_AGENT, "metadata": metadata}

        shared = await self.store.update(memory.id, mark)
        log.info(
            "Promoted %s to shared knowledge", memory.id,
            extra=memory_fields(memory.id, agent_type=memory.agent_type),
        )
        return shared

    async def _similar_shared(self, memory: Memory) -> Optional[Memory]:
        best, best_score = None, SHARED_SIMILARITY
        for other in await self.store.all():
            if other.id == memory.id or not is_shared(other):
                continue
            score = jaccard(memory.content, other.content)
            if score > best_score:
                best, best_score = other, score
        return best

    async def shared(self) -> List[Memory]:
        return [m for m in await self.store.all() if is_shared(m)]

    async def sync(
        self,
        source_agent: str,
        target_agent: str,
        min_confidence: float = 0.6,
        limit: int = 10,
    ) -> List[Memory]:
        """Share *source_agent*'s most confident memories with *target_agent*.

        Returns the memories newly synced; ones already visible to the
        target are skipped.
        """
        if source_agent == target_agent:
            raise ValidationError("cannot sync an agent with itself")
        candidates = [
            m for m in await self.owned(source_agent) if m.confidence.current >= min_confidence
        ]
        candidates.sort(key=lambda m: (-m.confidence.current, m.id))

        synced = []
        for memory in candidates[:limit]:
            if target_agent in synced_to(memory):
                continue

            def add_target(current: Memory) -> Dict[str, Any]:
                metadata = dict(current.metadata)
                targets = synced_to(current)
                if target_agent not in targets:
                    targets.append(target_agent)
                metadata["synced_to"] = targets
                return {"metadata": metadata}

            synced.append(await self.store.update(memory.id, add_target))

        log.info(
            "Synced %d memories from %s to %s", len(synced), source_agent, target_agent,
            extra=memory_fields(agent_type=target_agent),
        )
        return synced

    async def stats(self) -> Dict[str, Any]:
        shared = await self.shared()
        sources = Counter(a for m in shared for a in m.metadata.get("source_agents") or [])
        return {
            "shared": len(shared),
            "average_confidence": (
                round(sum(m.confidence.current for m in shared) / len(shared), 4)
                if shared
                else 0.0
            ),
            "top_agents": [{"agent": a, "count": c} for a, c in sources.most_common()],
        }
