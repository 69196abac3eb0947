"""
mnemos.consolidation.abstractor — Collapse near-duplicate memories into abstractions.

Clusters memories of one type by embedding similarity and synthesises
each cluster into a single ``semantic`` memory with source
``abstraction``.  Members are never deleted: each gets an ``extends``
edge to the abstraction and stops being a clustering candidate.

Merge rule (deterministic, independent of clustering order):
  1. Order members by reinforcements desc, confidence desc, creation
     time asc, id asc.  The first is the representative.
  2. Content is the representative's content, followed by every other
     member's distinct content as a bullet, in the same order.
  3. Title is ``"Pattern: "`` + the representative's title.
  4. Tags are those carried by at least half the members, plus
     ``abstracted``.
  5. Initial confidence is the members' mean ``confidence.current``.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from mnemos.core.config import Config
from mnemos.core.errors import ValidationError
from mnemos.core.events import EventBus
from mnemos.core.types import (
    Memory,
    MemorySource,
    MemoryType,
    RelationKind,
    normalize_content,
)
from mnemos.signal.confidence import create_confidence
from mnemos.signal.extract import MemoryHook, store_or_reinforce

log = logging.getLogger(__name__)


@dataclass
class AbstractionResult:
    abstraction: Memory
    member_ids: List[str]
    created: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "abstraction_id": self.abstraction.id,
            "title": self.abstraction.title,
            "member_ids": list(self.member_ids),
            "confidence": self.abstraction.confidence.current,
            "created": self.created,
        }


@dataclass
class MemoryPattern:
    """A tag shared by many memories."""

    pattern: str
    frequency: int
    memory_ids: List[str] = field(default_factory=list)
    confidence: float = 0.0


def _merge_order_key(memory: Memory) -> tuple:
    return (
        -memory.confidence.reinforcements,
        -memory.confidence.current,
        memory.created_at,
        memory.id,
    )


def merge_content(members: Sequence[Memory]) -> str:
    """Representative content plus each other distinct fact as a bullet."""
    ordered = sorted(members, key=_merge_order_key)
    seen = {normalize_content(ordered[0].content)}
    lines = [ordered[0].content.strip()]
    for member in ordered[1:]:
        norm = normalize_content(member.content)
        if norm in seen:
            continue
        seen.add(norm)
        lines.append(f"- {member.content.strip()}")
    return "\n".join(lines)


def shared_tags(members: Sequence[Memory]) -> List[str]:
    """Tags present on at least half of *members*, sorted."""
    counts = Counter(tag for m in members for tag in m.tag_set)
    threshold = math.ceil(len(members) * 0.5)
    return sorted(tag for tag, n in counts.items() if n >= threshold and tag != "abstracted")


class Abstractor:
    """
    Online clustering and abstraction over the vector index.

    Parameters
    ----------
    store, index, graph:
        ``MemoryStore``, ``VectorIndex`` and ``RelationshipGraph``.
    config:
        Threshold and minimum cluster size defaults.
    bus:
        Optional ``EventBus`` for ``abstraction_created`` events.
    on_stored:
        Optional async hook run for every new or reused abstraction.
    """

    def __init__(
        self,
        store: Any,
        index: Any,
        graph: Any,
        config: Config,
        bus: Optional[EventBus] = None,
        on_stored: Optional[MemoryHook] = None,
    ) -> None:
        self.store = store
        self.index = index
        self.graph = graph
        self.config = config
        self.bus = bus
        self.on_stored = on_stored

    # -- candidates --------------------------------------------------------

    def _already_abstracted(self, memory_id: str) -> bool:
        for target in self.graph.extends_targets(memory_id):
            other = self.store.peek(target)
            if other is not None and other.is_abstraction:
                return True
        return False

    async def candidates(self, candidate_type: Union[MemoryType, str]) -> List[Memory]:
        """Clusterable memories of *candidate_type*, in clustering order."""
        candidate_type = MemoryType(candidate_type)
        out = [
            m
            for m in await self.store.all()
            if m.type is candidate_type
            and m.id in self.index
            and not m.is_abstraction
            and not self.graph.is_superseded(m.id)
            and not self._already_abstracted(m.id)
        ]
        out.sort(key=lambda m: (-m.confidence.current, m.id))
        return out

    # -- clustering --------------------------------------------------------

    async def find_clusters(
        self,
        candidate_type: Union[MemoryType, str] = MemoryType.EPISODIC,
        similarity_threshold: Optional[float] = None,
        min_cluster_size: Optional[int] = None,
    ) -> List[List[str]]:
        """Greedy clustering: each seed pulls in every unclustered candidate
        at or above the threshold.
        """
        threshold = (
            self.config.abstraction_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        min_size = max(2, min_cluster_size or self.config.abstraction_min_cluster_size)

        ordered = [m.id for m in await self.candidates(candidate_type)]
        remaining = set(ordered)
        clusters: List[List[str]] = []

        for seed in ordered:
            if seed not in remaining:
                continue
            remaining.discard(seed)
            vector = self.index.get(seed)
            if vector is None:
                continue
            hits = self.index.search(
                vector,
                k=len(remaining),
                min_similarity=threshold,
                confidence_of=self._confidence_of,
                restrict_to=remaining,
            )
            cluster = [seed] + [mid for mid, _ in hits]
            remaining.difference_update(cluster)
            if len(cluster) >= min_size:
                clusters.append(cluster)

        log.debug(
            "Found %d clusters among %d %s candidates (threshold %.2f)",
            len(clusters),
            len(ordered),
            MemoryType(candidate_type).value,
            threshold,
        )
        return clusters

    def _confidence_of(self, memory_id: str) -> float:
        memory = self.store.peek(memory_id)
        return memory.confidence.current if memory is not None else 0.0

    # -- synthesis ---------------------------------------------------------

    async def abstract(self, cluster: Sequence[str]) -> AbstractionResult:
        """Synthesise one abstraction from *cluster* (member ids)."""
        member_ids = list(dict.fromkeys(cluster))
        if len(member_ids) < 2:
            raise ValidationError("an abstraction needs at least two members")
        members = [await self.store.get(mid) for mid in member_ids]

        ordered = sorted(members, key=_merge_order_key)
        representative = ordered[0]
        mean_conf = sum(m.confidence.current for m in members) / len(members)

        candidate = Memory(
            content=merge_content(members),
            type=MemoryType.SEMANTIC,
            source=MemorySource.ABSTRACTION,
            title=f"Pattern: {representative.title}",
            tags=shared_tags(members) + ["abstracted"],
            confidence=create_confidence(mean_conf, self.config.decay_rate),
            reasoning=f"Abstraction of {len(members)} similar memories",
            metadata={"member_ids": [m.id for m in ordered]},
        )

        record, created = await store_or_reinforce(
            self.store,
            candidate,
            self.config.extraction_signal,
            self.config.reinforcement_factor,
        )
        if self.on_stored is not None:
            await self.on_stored(record, created)

        for member in ordered:
            if member.id == record.id:
                continue
            if not self.graph.has_edge(member.id, record.id, RelationKind.EXTENDS):
                await self.graph.add_edge(member.id, record.id, RelationKind.EXTENDS, 1.0)

        if self.bus is not None:
            await self.bus.emit(
                "abstraction_created",
                record.id,
                member_ids=[m.id for m in ordered],
                created=created,
            )
        log.info(
            "%s abstraction %s from %d memories",
            "Created" if created else "Reused",
            record.id,
            len(members),
        )
        return AbstractionResult(record, [m.id for m in ordered], created)

    async def run(
        self,
        candidate_type: Union[MemoryType, str] = MemoryType.EPISODIC,
        similarity_threshold: Optional[float] = None,
    ) -> List[AbstractionResult]:
        clusters = await self.find_clusters(candidate_type, similarity_threshold)
        results = [await self.abstract(cluster) for cluster in clusters]
        if results:
            log.info(
                "Abstraction run (%s): %d clusters, %d abstractions",
                MemoryType(candidate_type).value,
                len(clusters),
                len(results),
            )
        return results


def detect_patterns(memories: Sequence[Memory], min_frequency: int = 3) -> List[MemoryPattern]:
    """Tags shared by at least *min_frequency* memories, most frequent first."""
    groups: Dict[str, List[Memory]] = {}
    for memory in memories:
        for tag in memory.tags:
            groups.setdefault(tag, []).append(memory)

    patterns = [
        MemoryPattern(
            pattern=tag,
            frequency=len(group),
            memory_ids=[m.id for m in group],
            confidence=sum(m.confidence.current for m in group) / len(group),
        )
        for tag, group in groups.items()
        if len(group) >= min_frequency
    ]
    patterns.sort(key=lambda p: (-p.frequency, p.pattern))
    return patterns
