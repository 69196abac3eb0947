"""
Relationship graph — typed, directed edges between memories.

Backed by a networkx ``MultiDiGraph`` whose edge keys are relation
kinds, so ``(from, to, kind)`` is unique by construction.  Persisted as
a versioned JSON list of edge records in ``relationships.json``.

Edge kinds:
  - reinforces   A corroborates B
  - contradicts  A conflicts with B
  - extends      A is generalised by (or elaborated in) B
  - supersedes   A replaces B; B is tombstoned for ranking
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

import networkx as nx

from mnemos.core.errors import NotFound, ValidationError
from mnemos.core.filelock import FileLock, atomic_write_json, read_json
from mnemos.core.types import RelationKind, Relationship

log = logging.getLogger(__name__)

GRAPH_VERSION = 1

Kind = Union[RelationKind, str]


def _kinds(kinds: Optional[Iterable[Kind]]) -> Optional[Set[RelationKind]]:
    if kinds is None:
        return None
    try:
        return {RelationKind(k) for k in kinds}
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


class RelationshipGraph:
    """
    Edge store over memory ids.

    Parameters
    ----------
    path:
        Location of ``relationships.json``.
    exists:
        Predicate telling whether a memory id is live.  Edges may only
        join live memories.
    """

    def __init__(self, path: Path, exists: Callable[[str], bool]) -> None:
        self.path = Path(path)
        self._exists = exists
        self.graph = nx.MultiDiGraph()
        self._lock = asyncio.Lock()
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def init(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            edges = await asyncio.to_thread(self._load)
            dropped = 0
            for rel in edges:
                if rel.from_id == rel.to_id or not (
                    self._exists(rel.from_id) and self._exists(rel.to_id)
                ):
                    dropped += 1
                    continue
                self._insert(rel)
            if dropped:
                log.warning("Dropped %d edges with missing endpoints", dropped)
                await asyncio.to_thread(self._save_sync, self._records())
            self._initialized = True
            log.info(
                "Relationship graph ready: %d edges",
                self.graph.number_of_edges(),
            )

    async def close(self) -> None:
        self.graph = nx.MultiDiGraph()
        self._initialized = False

    def _load(self) -> List[Relationship]:
        if not self.path.exists():
            return []
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as exc:
            log.warning("Relationship file unreadable (%s); starting empty", exc)
            return []
        raw = data.get("edges", []) if isinstance(data, dict) else data
        out: List[Relationship] = []
        for item in raw or []:
            try:
                out.append(Relationship.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Skipping malformed edge %r: %s", item, exc)
        return out

    def _records(self) -> List[Dict[str, Any]]:
        return [rel.to_dict() for rel in self.edges()]

    def _save_sync(self, records: List[Dict[str, Any]]) -> None:
        payload = {"version": GRAPH_VERSION, "edges": records}
        with FileLock(self.path):
            atomic_write_json(self.path, payload)

    async def _save(self) -> None:
        await asyncio.to_thread(self._save_sync, self._records())

    def _insert(self, rel: Relationship) -> None:
        self.graph.add_edge(
            rel.from_id,
            rel.to_id,
            key=rel.kind,
            strength=rel.strength,
            created_at=rel.created_at,
        )

    # ── Mutation ──────────────────────────────────────────────

    async def add_edge(
        self,
        from_id: str,
        to_id: str,
        kind: Kind,
        strength: float = 1.0,
    ) -> Relationship:
        """Add a typed edge.  Never silently drops: every rejection raises."""
        rel = Relationship(from_id=from_id, to_id=to_id, kind=kind, strength=strength)
        if from_id == to_id:
            raise ValidationError(f"Self-loop rejected on {from_id}")
        for endpoint in (from_id, to_id):
            if not self._exists(endpoint):
                raise ValidationError(f"Edge endpoint does not exist: {endpoint}")
        async with self._lock:
            if self.graph.has_edge(from_id, to_id, key=rel.kind):
                raise ValidationError(
                    f"Duplicate edge {from_id} -[{rel.kind.value}]-> {to_id}"
                )
            self._insert(rel)
            await self._save()
        log.debug("Edge %s -[%s]-> %s", from_id, rel.kind.value, to_id)
        return rel

    async def remove_edge(self, from_id: str, to_id: str, kind: Kind) -> None:
        kind = RelationKind(kind)
        async with self._lock:
            if not self.graph.has_edge(from_id, to_id, key=kind):
                raise NotFound("edge", f"{from_id} -[{kind.value}]-> {to_id}")
            self.graph.remove_edge(from_id, to_id, key=kind)
            for node in (from_id, to_id):
                if node in self.graph and self.graph.degree(node) == 0:
                    self.graph.remove_node(node)
            await self._save()

    async def remove_node(self, memory_id: str) -> int:
        """Drop every edge touching *memory_id*; returns how many were removed."""
        async with self._lock:
            if memory_id not in self.graph:
                return 0
            removed = self.graph.degree(memory_id)
            self.graph.remove_node(memory_id)
            await self._save()
        log.debug("Cascaded %d edges for deleted memory %s", removed, memory_id)
        return removed

    # ── Queries ───────────────────────────────────────────────

    def has_edge(self, from_id: str, to_id: str, kind: Kind) -> bool:
        return self.graph.has_edge(from_id, to_id, key=RelationKind(kind))

    def edge(self, from_id: str, to_id: str, kind: Kind) -> Relationship:
        kind = RelationKind(kind)
        data = self.graph.get_edge_data(from_id, to_id, key=kind)
        if data is None:
            raise NotFound("edge", f"{from_id} -[{kind.value}]-> {to_id}")
        return Relationship(from_id, to_id, kind, data["strength"], data["created_at"])

    def neighbors(
        self, memory_id: str, kinds: Optional[Iterable[Kind]] = None
    ) -> List[Tuple[str, RelationKind, float]]:
        """Related ids in both directions, strongest first.

        Raises ``NotFound`` when *memory_id* is not a live memory.
        """
        if not self._exists(memory_id):
            raise NotFound("memory", memory_id)
        if memory_id not in self.graph:
            return []
        wanted = _kinds(kinds)
        out: List[Tuple[str, RelationKind, float]] = []
        for _, other, kind, data in self.graph.out_edges(memory_id, keys=True, data=True):
            if wanted is None or kind in wanted:
                out.append((other, kind, data["strength"]))
        for other, _, kind, data in self.graph.in_edges(memory_id, keys=True, data=True):
            if wanted is None or kind in wanted:
                out.append((other, kind, data["strength"]))
        out.sort(key=lambda n: (-n[2], n[0], n[1].value))
        return out

    def expand(
        self,
        seed_ids: Iterable[str],
        max_hops: int = 1,
        kinds: Optional[Iterable[Kind]] = None,
    ) -> Set[str]:
        """Breadth-first expansion from *seed_ids* over both edge directions.

        The result includes the seeds.  Missing seeds are kept but not
        expanded.
        """
        wanted = _kinds(kinds)
        visited: Set[str] = set(seed_ids)
        frontier = deque((sid, 0) for sid in visited)
        while frontier:
            node, depth = frontier.popleft()
            if depth >= max_hops or node not in self.graph:
                continue
            steps = [
                (other, kind)
                for _, other, kind in self.graph.out_edges(node, keys=True)
            ] + [
                (other, kind)
                for other, _, kind in self.graph.in_edges(node, keys=True)
            ]
            for other, kind in steps:
                if wanted is not None and kind not in wanted:
                    continue
                if other not in visited:
                    visited.add(other)
                    frontier.append((other, depth + 1))
        return visited

    def edge_strength(self, a: str, b: str, kinds: Optional[Iterable[Kind]] = None) -> float:
        """Strongest edge joining *a* and *b* in either direction (0 if none)."""
        wanted = _kinds(kinds)
        best = 0.0
        for src, dst in ((a, b), (b, a)):
            for kind, data in (self.graph.get_edge_data(src, dst) or {}).items():
                if wanted is None or kind in wanted:
                    best = max(best, data["strength"])
        return best

    def active_supersessors(self, memory_id: str) -> List[str]:
        """Sources of ``supersedes`` edges pointing at *memory_id*."""
        if memory_id not in self.graph:
            return []
        return sorted(
            src
            for src, _, kind in self.graph.in_edges(memory_id, keys=True)
            if kind is RelationKind.SUPERSEDES
        )

    def is_superseded(self, memory_id: str) -> bool:
        return bool(self.active_supersessors(memory_id))

    def _related(self, memory_id: str, kind: RelationKind) -> List[str]:
        if memory_id not in self.graph:
            return []
        out = {dst for _, dst, k in self.graph.out_edges(memory_id, keys=True) if k is kind}
        out |= {src for src, _, k in self.graph.in_edges(memory_id, keys=True) if k is kind}
        return sorted(out)

    def contradictions(self, memory_id: str) -> List[str]:
        return self._related(memory_id, RelationKind.CONTRADICTS)

    def reinforcements(self, memory_id: str) -> List[str]:
        return self._related(memory_id, RelationKind.REINFORCES)

    def extends_targets(self, memory_id: str) -> List[str]:
        """Ids that *memory_id* has an outgoing ``extends`` edge to."""
        if memory_id not in self.graph:
            return []
        return sorted(
            dst
            for _, dst, kind in self.graph.out_edges(memory_id, keys=True)
            if kind is RelationKind.EXTENDS
        )

    def edges(self) -> List[Relationship]:
        out = [
            Relationship(src, dst, kind, data["strength"], data["created_at"])
            for src, dst, kind, data in self.graph.edges(keys=True, data=True)
        ]
        out.sort(key=lambda r: (r.from_id, r.to_id, r.kind.value))
        return out

    def clusters(self, min_size: int = 2) -> List[List[str]]:
        """Weakly connected components with at least *min_size* members."""
        comps = [
            sorted(c)
            for c in nx.weakly_connected_components(self.graph)
            if len(c) >= min_size
        ]
        comps.sort(key=lambda c: (-len(c), c[0]))
        return comps

    def stats(self) -> Dict[str, Any]:
        nodes = self.graph.number_of_nodes()
        edges = self.graph.number_of_edges()
        by_kind = Counter(k.value for _, _, k in self.graph.edges(keys=True))
        return {
            "nodes": nodes,
            "edges": edges,
            "average_degree": round(2.0 * edges / nodes, 3) if nodes else 0.0,
            "by_kind": dict(by_kind),
        }
