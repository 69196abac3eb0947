"""
mnemos.search.vector — In-memory vector index over memory embeddings.

The Memory Store is the source of truth for embeddings; this index is
a numpy-backed cache rebuilt from it on start (``rebuild``) and kept in
sync by the engine on every embed and delete.

Search is brute-force cosine similarity, fine for the thousands of
memories a single engine holds.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from mnemos.core.errors import EmbeddingUnavailable, ValidationError
from mnemos.search.embeddings import EmbeddingBackend

log = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| |b|)``; 0 for zero vectors or a length mismatch."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class VectorIndex:
    """
    Id → vector map with cosine search.

    Parameters
    ----------
    dimension:
        Required length of every stored vector.
    backend:
        Embedding backend used by ``embed``.  None means vectors can be
        upserted directly but text cannot be embedded.
    """

    def __init__(self, dimension: int, backend: Optional[EmbeddingBackend] = None) -> None:
        self.dimension = int(dimension)
        self.backend = backend
        self._ids: List[str] = []
        self._pos: Dict[str, int] = {}
        self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        self._norms = np.zeros((0,), dtype=np.float32)

    # -- embedding ---------------------------------------------------------

    @property
    def available(self) -> bool:
        return self.backend is not None

    async def embed(self, text: str) -> List[float]:
        if self.backend is None:
            raise EmbeddingUnavailable()
        vector = await self.backend.embed(text)
        if len(vector) != self.dimension:
            raise EmbeddingUnavailable(
                f"backend returned {len(vector)}d vector, index is {self.dimension}d"
            )
        return vector

    # -- mutation ----------------------------------------------------------

    def upsert(self, memory_id: str, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding for {memory_id} has {len(vector)} dimensions, "
                f"expected {self.dimension}"
            )
        row = np.asarray(vector, dtype=np.float32)
        norm = np.float32(np.linalg.norm(row))
        pos = self._pos.get(memory_id)
        if pos is not None:
            self._matrix[pos] = row
            self._norms[pos] = norm
            return
        self._pos[memory_id] = len(self._ids)
        self._ids.append(memory_id)
        self._matrix = np.vstack([self._matrix, row[np.newaxis, :]])
        self._norms = np.append(self._norms, norm)

    def remove(self, memory_id: str) -> bool:
        pos = self._pos.pop(memory_id, None)
        if pos is None:
            return False
        last = len(self._ids) - 1
        if pos != last:
            # Move the last row into the hole.
            moved = self._ids[last]
            self._ids[pos] = moved
            self._pos[moved] = pos
            self._matrix[pos] = self._matrix[last]
            self._norms[pos] = self._norms[last]
        self._ids.pop()
        self._matrix = self._matrix[:last]
        self._norms = self._norms[:last]
        return True

    def clear(self) -> None:
        self._ids = []
        self._pos = {}
        self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        self._norms = np.zeros((0,), dtype=np.float32)

    # -- lookup ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._pos

    def ids(self) -> List[str]:
        return list(self._ids)

    def get(self, memory_id: str) -> Optional[List[float]]:
        pos = self._pos.get(memory_id)
        if pos is None:
            return None
        return self._matrix[pos].tolist()

    def similarity(self, id_a: str, id_b: str) -> float:
        a, b = self.get(id_a), self.get(id_b)
        if a is None or b is None:
            return 0.0
        return cosine_similarity(a, b)

    def search(
        self,
        query_vector: Sequence[float],
        k: int = 10,
        min_similarity: float = 0.0,
        confidence_of: Optional[Callable[[str], float]] = None,
        restrict_to: Optional[Iterable[str]] = None,
    ) -> List[Tuple[str, float]]:
        """Top-*k* ``(id, similarity)`` pairs with similarity ≥ *min_similarity*.

        Sorted by similarity desc, then confidence desc (via
        *confidence_of*), then id.  *restrict_to* limits the candidates.
        """
        if k <= 0 or not self._ids or len(query_vector) != self.dimension:
            return []
        q = np.asarray(query_vector, dtype=np.float32)
        qn = float(np.linalg.norm(q))
        if qn == 0.0:
            return []

        denom = self._norms * qn
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(denom > 0, (self._matrix @ q) / denom, 0.0)

        allowed = set(restrict_to) if restrict_to is not None else None
        hits: List[Tuple[str, float]] = []
        for pos, memory_id in enumerate(self._ids):
            if allowed is not None and memory_id not in allowed:
                continue
            sim = float(sims[pos])
            if sim >= min_similarity:
                hits.append((memory_id, sim))

        def key(hit: Tuple[str, float]) -> tuple:
            conf = confidence_of(hit[0]) if confidence_of is not None else 0.0
            return (-round(hit[1], 6), -conf, hit[0])

        hits.sort(key=key)
        return hits[:k]

    # -- lifecycle ---------------------------------------------------------

    async def rebuild(self, store) -> int:
        """Reload every stored embedding of the right size from *store*."""
        self.clear()
        skipped = 0
        for memory in await store.all():
            if memory.embedding is None:
                continue
            if len(memory.embedding) != self.dimension:
                skipped += 1
                continue
            self.upsert(memory.id, memory.embedding)
        if skipped:
            log.warning(
                "Skipped %d stored embeddings with a dimension other than %d",
                skipped,
                self.dimension,
            )
        log.debug("Vector index rebuilt with %d vectors", len(self))
        return len(self)
