"""
mnemos.search.retrieval — Ranked memory retrieval.

Pipeline for one query:
  1. similarity candidates from the vector index (``k * multiplier``),
     or from plain-text search when embeddings are unavailable
  2. one-hop expansion over ``extends`` / ``reinforces`` edges
  3. drop memories tombstoned by a ``supersedes`` edge
  4. score = similarity * confidence.current, best first
  5. weakly reinforce every returned memory

Stored confidence is read as is: decay is the scheduler's job, never
applied synchronously here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mnemos.core.config import Config
from mnemos.core.errors import EmbeddingUnavailable, NotFound
from mnemos.core.events import EventBus
from mnemos.core.types import MemoryType, RelationKind, ScoredMemory, utcnow
from mnemos.search.vector import cosine_similarity
from mnemos.signal.feedback import reinforce_memory

log = logging.getLogger(__name__)

EXPANSION_KINDS = (RelationKind.EXTENDS, RelationKind.REINFORCES)


@dataclass
class RetrievalOutcome:
    hits: List[ScoredMemory] = field(default_factory=list)
    considered: int = 0
    embeddings_available: bool = False


def rank_key(hit: ScoredMemory) -> tuple:
    """Score desc, semantic first, confidence desc, id."""
    memory = hit.memory
    return (
        -round(hit.score, 9),
        0 if memory.type is MemoryType.SEMANTIC else 1,
        -memory.confidence.current,
        memory.id,
    )


class Retriever:
    """
    Composes the vector index, text search and relationship graph.

    Parameters
    ----------
    store, index, graph:
        ``MemoryStore``, ``VectorIndex`` and ``RelationshipGraph``.
    config:
        Similarity floor, fallback weight, expansion depth, signals.
    bus:
        Optional ``EventBus``; retrieval reinforcements are published.
    """

    def __init__(
        self,
        store: Any,
        index: Any,
        graph: Any,
        config: Config,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.index = index
        self.graph = graph
        self.config = config
        self.bus = bus

    def _confidence_of(self, memory_id: str) -> float:
        memory = self.store.peek(memory_id)
        return memory.confidence.current if memory is not None else 0.0

    async def _vector_candidates(
        self, query: str, limit: int, min_similarity: float
    ) -> Tuple[Optional[List[float]], Dict[str, float]]:
        if not self.index.available or len(self.index) == 0:
            return None, {}
        try:
            query_vec = await self.index.embed(query)
        except EmbeddingUnavailable as exc:
            log.debug("Embedding unavailable, using text search: %s", exc)
            return None, {}
        hits = self.index.search(
            query_vec, limit, min_similarity, confidence_of=self._confidence_of
        )
        return query_vec, dict(hits)

    async def rank(
        self,
        query: str,
        k: int = 5,
        min_similarity: Optional[float] = None,
    ) -> RetrievalOutcome:
        """Ranked hits for *query* without side effects."""
        outcome = RetrievalOutcome()
        if k <= 0 or not (query or "").strip():
            return outcome

        floor = self.config.min_similarity if min_similarity is None else min_similarity
        limit = k * max(1, self.config.candidate_multiplier)
        text_weight = self.config.text_fallback_weight

        query_vec, vector_hits = await self._vector_candidates(query, limit, floor)
        outcome.embeddings_available = query_vec is not None

        candidates: Dict[str, Tuple[float, str]] = {
            mid: (sim, "vector") for mid, sim in vector_hits.items()
        }
        if not candidates:
            for memory in await self.store.search_text(query, limit):
                candidates[memory.id] = (text_weight, "text")

        expanded = self.graph.expand(
            candidates, max_hops=self.config.expand_hops, kinds=EXPANSION_KINDS
        )
        for mid in sorted(expanded - set(candidates)):
            vec = self.index.get(mid) if query_vec is not None else None
            if vec is not None:
                sim = max(0.0, cosine_similarity(query_vec, vec))
            else:
                strength = max(
                    (self.graph.edge_strength(mid, other, EXPANSION_KINDS) for other in expanded),
                    default=0.0,
                )
                sim = text_weight * strength
            candidates[mid] = (sim, "graph")

        hits: List[ScoredMemory] = []
        for mid, (sim, via) in candidates.items():
            memory = self.store.peek(mid)
            if memory is None or self.graph.is_superseded(mid):
                continue
            hits.append(
                ScoredMemory(
                    memory=memory,
                    similarity=sim,
                    score=sim * memory.confidence.current,
                    via=via,
                )
            )

        hits.sort(key=rank_key)
        outcome.considered = len(hits)
        outcome.hits = hits[:k]
        return outcome

    async def retrieve(
        self,
        query: str,
        k: int = 5,
        min_similarity: Optional[float] = None,
        reinforce: bool = True,
        now: Optional[datetime] = None,
    ) -> List[ScoredMemory]:
        """Top-*k* memories for *query*.

        Returned records are the pre-reinforcement snapshots.
        """
        outcome = await self.rank(query, k, min_similarity)
        if reinforce:
            await self.reinforce_hits(outcome.hits, now)
        return outcome.hits

    async def reinforce_hits(
        self, hits: List[ScoredMemory], now: Optional[datetime] = None
    ) -> None:
        stamp = now or utcnow()
        for hit in hits:
            try:
                updated = await reinforce_memory(
                    self.store,
                    hit.memory.id,
                    self.config.retrieval_signal,
                    self.config.reinforcement_factor,
                    now=stamp,
                    observed=True,
                )
            except NotFound:
                continue
            if self.bus is not None:
                await self.bus.emit(
                    "memory_reinforced",
                    updated.id,
                    confidence=updated.confidence.current,
                    reason="retrieval",
                )
