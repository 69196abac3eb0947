"""
mnemos.system -- MemoryEngine: the public API for mnemos.

    from mnemos import MemoryEngine

    async with MemoryEngine(data_dir="./data") as engine:
        await engine.extract_memories_from_conversation(turns, session_id="s1")
        result = await engine.inject_memories("how do I install dependencies?")
        prompt = result.context + "\n\n" + user_prompt

Everything is wired up here: store, vector index, relationship graph,
extractor, abstractor, scheduler, active learning and retrieval.  The
engine is constructed once by the application entry point and passed
around by reference; there is no module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from mnemos.consolidation.abstractor import AbstractionResult, Abstractor, MemoryPattern
from mnemos.consolidation.agents import AgentKnowledge
from mnemos.consolidation.scheduler import SweepReport, TemporalScheduler
from mnemos.core.config import Config
from mnemos.core.errors import EmbeddingUnavailable, NotFound
from mnemos.core.events import EventBus, Listener
from mnemos.core.logging import configure_logging, memory_fields
from mnemos.core.types import (
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
from mnemos.pipeline.inject import inject_memories as _inject_pipeline
from mnemos.search.embeddings import CallableBackend, EmbeddingBackend, build_embedding_backend
from mnemos.search.retrieval import Retriever
from mnemos.search.vector import VectorIndex
from mnemos.signal.confidence import create_confidence
from mnemos.signal.extract import ExtractionContext, Extractor, store_or_reinforce
from mnemos.signal.feedback import ActiveLearning, FeedbackResult, LearningTrigger
from mnemos.store.graph import RelationshipGraph
from mnemos.store.memory import MemoryStore

log = logging.getLogger("mnemos.system")

# Sentinel: "build the backend from config" vs an explicit None.
_FROM_CONFIG = object()


class MemoryEngine:
    """Top-level API: owns every component and their lifecycle.

    Parameters
    ----------
    config:
        Full ``Config`` object.  If not given, ``data_dir`` and
        ``**kwargs`` are forwarded to ``Config``.
    data_dir:
        Shortcut -- if you just want to point at a directory and go.
    embedding_backend:
        An ``EmbeddingBackend``, or None for text-only operation.  When
        omitted the backend named in the config is built.
    embedding_func:
        Convenience alternative: a ``(text) -> list[float]`` function
        (sync or async) wrapped in a ``CallableBackend``.
    start_scheduler:
        Start the periodic sweep loop on ``init()``.
    **kwargs:
        Extra keyword args forwarded to ``Config()``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        data_dir: Optional[Union[str, Path]] = None,
        embedding_backend: Any = _FROM_CONFIG,
        embedding_func: Optional[Callable[..., Any]] = None,
        start_scheduler: bool = False,
        **kwargs: Any,
    ) -> None:
        # -- Resolve config ------------------------------------------------
        if config is not None:
            self.config = config
        elif data_dir is not None:
            self.config = Config.from_data_dir(data_dir, **kwargs)
        else:
            self.config = Config(**kwargs)

        if self.config.structured_logging:
            configure_logging(structured=True)

        # -- Embedding backend ---------------------------------------------
        if embedding_func is not None:
            backend: Optional[EmbeddingBackend] = CallableBackend(
                embedding_func, self.config.embedding_dimension
            )
        elif embedding_backend is _FROM_CONFIG:
            backend = build_embedding_backend(self.config)
        else:
            backend = embedding_backend
        self.backend = backend

        # -- Components ----------------------------------------------------
        self.bus = EventBus()
        self.store = MemoryStore(self.config)
        self.index = VectorIndex(self.config.embedding_dimension, backend)
        self.graph = RelationshipGraph(self.config.relationships_path, self.store.__contains__)
        self.extractor = Extractor(self.store, self.config, on_stored=self._on_stored)
        self.abstractor = Abstractor(
            self.store, self.index, self.graph, self.config,
            bus=self.bus, on_stored=self._on_stored,
        )
        self.scheduler = TemporalScheduler(self.store, self.abstractor, self.config, bus=self.bus)
        self.learning = ActiveLearning(
            self.store, self.graph, self.config,
            bus=self.bus, on_stored=self._on_stored,
        )
        self.retriever = Retriever(self.store, self.index, self.graph, self.config, bus=self.bus)
        self.agents = AgentKnowledge(self.store, self.graph, bus=self.bus)

        self.store.add_delete_listener(self._on_deleted)

        self._start_scheduler = start_scheduler
        self._pending: Set[asyncio.Task] = set()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def init(self) -> "MemoryEngine":
        if self._initialized:
            return self
        async with self._init_lock:
            if self._initialized:
                return self
            self.config.ensure_directories()
            await self.store.init()
            await self.graph.init()
            await self.index.rebuild(self.store)
            if self._start_scheduler:
                self.scheduler.start()
            self._initialized = True
            log.info(
                "MemoryEngine ready at %s (embeddings: %s)",
                self.config.data_dir,
                self.backend.name if self.backend else "none",
            )
        return self

    async def close(self) -> None:
        if not self._initialized:
            return
        await self.scheduler.stop()
        await self.flush()
        if self.backend is not None:
            await self.backend.close()
        await self.graph.close()
        await self.store.close()
        self._initialized = False
        log.info("MemoryEngine closed")

    async def __aenter__(self) -> "MemoryEngine":
        return await self.init()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -----------------------------------------------------------------------
    # Internal hooks
    # -----------------------------------------------------------------------

    async def _on_stored(self, memory: Memory, created: bool) -> None:
        if created:
            await self.bus.emit(
                "memory_created", memory.id,
                type=memory.type.value, source=memory.source.value,
            )
            self._schedule_embedding(memory)
        else:
            await self.bus.emit(
                "memory_reinforced", memory.id,
                confidence=memory.confidence.current, reason="duplicate",
            )

    async def _on_deleted(self, memory_id: str) -> None:
        self.index.remove(memory_id)
        await self.graph.remove_node(memory_id)
        await self.bus.emit("memory_deleted", memory_id)

    def _schedule_embedding(self, memory: Memory) -> None:
        if memory.embedding is not None:
            self.index.upsert(memory.id, memory.embedding)
            return
        if not self.index.available:
            return
        task = asyncio.create_task(self._embed(memory.id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _embed(self, memory_id: str) -> bool:
        memory = self.store.peek(memory_id)
        if memory is None:
            return False
        try:
            vector = await self.index.embed(memory.content)
        except EmbeddingUnavailable as exc:
            log.debug("No embedding for %s: %s", memory_id, exc, extra=memory_fields(memory_id))
            return False
        try:
            await self.store.update(memory_id, {"embedding": vector})
        except NotFound:
            return False
        self.index.upsert(memory_id, vector)
        return True

    async def flush(self) -> None:
        """Wait for every pending background embedding."""
        while True:
            pending = [t for t in self._pending if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()

    # -----------------------------------------------------------------------
    # Orchestrator-facing API
    # -----------------------------------------------------------------------

    async def inject_memories(
        self, prompt: str, session_id: Optional[str] = None, max_memories: Optional[int] = None
    ) -> InjectionResult:
        """Context block of memories relevant to *prompt* (never raises
        for a missing embedding backend or a slow lookup)."""
        return await _inject_pipeline(
            self.retriever, prompt, self.config, session_id=session_id, max_memories=max_memories
        )

    async def extract_memories_from_conversation(
        self,
        turns: Sequence[Any],
        session_id: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> List[Memory]:
        if not self.config.auto_extract:
            return []
        context = ExtractionContext(session_id=session_id or "", agent_type=agent_type or "")
        return await self.extractor.extract(turns, context)

    async def feedback(
        self,
        memory_id: str,
        outcome: Union[FeedbackOutcome, str],
        content: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> FeedbackResult:
        return await self.learning.feedback(memory_id, outcome, content, session_id)

    async def check_triggers(self, session_id: str, context: str) -> List[LearningTrigger]:
        return await self.learning.check_triggers(session_id, context)

    async def handle_response(
        self, trigger: LearningTrigger, response_index: int, session_id: str
    ) -> None:
        await self.learning.handle_response(trigger, response_index, session_id)

    # -----------------------------------------------------------------------
    # Direct API
    # -----------------------------------------------------------------------

    async def retrieve(self, query: str, k: int = 5) -> List[ScoredMemory]:
        return await self.retriever.retrieve(query, k)

    async def remember(
        self,
        content: str,
        type: Union[MemoryType, str] = MemoryType.SEMANTIC,
        tags: Optional[List[str]] = None,
        title: str = "",
        session_id: Optional[str] = None,
    ) -> Memory:
        """Store an explicit memory; an identical one is reinforced instead."""
        return await self.extractor.extract_explicit(
            content,
            ExtractionContext(session_id=session_id or ""),
            memory_type=MemoryType(type),
            tags=tags,
            title=title,
        )

    async def record_agent_outcome(
        self,
        agent_type: str,
        content: str,
        success: bool = True,
        session_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Memory:
        """Remember what an agent did and whether it worked."""
        memory = Memory(
            content=content,
            type=MemoryType.EPISODIC,
            source=MemorySource.AGENT,
            tags=["agent", agent_type, "success" if success else "failure"] + list(tags or []),
            confidence=create_confidence(0.7 if success else 0.5, self.config.decay_rate),
            session_id=session_id or "",
            agent_type=agent_type,
            lane=LaneType.CROSS_AGENT,
            reasoning=f"Outcome reported by {agent_type}",
        )
        record, created = await store_or_reinforce(
            self.store, memory, self.config.extraction_signal, self.config.reinforcement_factor
        )
        await self._on_stored(record, created)
        return record

    # -----------------------------------------------------------------------
    # Agent-scoped knowledge
    # -----------------------------------------------------------------------

    async def search_agent_memories(
        self, agent_type: str, query: str, k: int = 5, min_confidence: float = 0.0
    ) -> List[ScoredMemory]:
        return await self.agents.search(agent_type, query, k, min_confidence)

    async def agent_patterns(self, agent_type: str, min_frequency: int = 1) -> List[MemoryPattern]:
        return await self.agents.patterns(agent_type, min_frequency)

    async def agent_insights(self, agent_type: str) -> Dict[str, Any]:
        return await self.agents.insights(agent_type)

    async def transfer_memory(self, memory_id: str, to_agent: str) -> Memory:
        return await self.agents.transfer(memory_id, to_agent)

    async def promote_to_shared(self, memory_id: str) -> Memory:
        return await self.agents.promote(memory_id)

    async def detect_cross_agent_patterns(self, min_agents: int = 2) -> List[MemoryPattern]:
        return await self.agents.cross_agent_patterns(min_agents)

    async def sync_agent_knowledge(
        self,
        source_agent: str,
        target_agent: str,
        min_confidence: float = 0.6,
        limit: int = 10,
    ) -> List[Memory]:
        return await self.agents.sync(source_agent, target_agent, min_confidence, limit)

    async def get(self, memory_id: str) -> Memory:
        return await self.store.get(memory_id)

    async def forget(self, memory_id: str) -> None:
        """Delete a memory and every edge touching it (``NotFound`` if absent)."""
        await self.store.delete(memory_id)

    async def relate(
        self,
        from_id: str,
        to_id: str,
        kind: Union[RelationKind, str],
        strength: float = 1.0,
    ) -> Relationship:
        return await self.graph.add_edge(from_id, to_id, kind, strength)

    async def sweep(self) -> SweepReport:
        return await self.scheduler.sweep()

    async def abstract(
        self,
        candidate_type: Union[MemoryType, str] = MemoryType.EPISODIC,
        threshold: Optional[float] = None,
    ) -> List[AbstractionResult]:
        return await self.abstractor.run(candidate_type, threshold)

    async def embed_pending(self) -> int:
        """Embed every memory still lacking a vector; returns how many succeeded."""
        await self.flush()
        if not self.index.available:
            return 0
        done = 0
        for memory in await self.store.all():
            if memory.embedding is None and await self._embed(memory.id):
                done += 1
        return done

    async def reindex(self) -> int:
        """Rebuild the vector index from the store, then embed what is missing."""
        await self.index.rebuild(self.store)
        await self.embed_pending()
        return len(self.index)

    async def stats(self) -> Dict[str, Any]:
        out = await self.store.stats()
        out["graph"] = self.graph.stats()
        out["vectors"] = len(self.index)
        out["pending_embeddings"] = len(self._pending)
        out["embedding_backend"] = self.backend.name if self.backend else None
        out["last_sweep"] = (
            self.scheduler.last_report.to_dict() if self.scheduler.last_report else None
        )
        return out

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def events(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        return self.bus.channel(maxsize or self.config.event_channel_size)
