"""
Memory store — one JSON file per memory plus a rebuildable index.

Layout under ``data_dir``::

    memories/<id>.json     full record (atomic replace on every write)
    memories/index.json    id -> {type, source, title, content_hash,
                           current, updated_at}, with a version field

The record files are the source of truth.  The index is rebuilt on
``init`` whenever it is missing, unreadable, of another version, or
any entry disagrees with its record (a different id set, or an entry
left behind by a crash between the record write and the index write).

Records are never mutated in place: ``update`` builds a new ``Memory``
and swaps it in, so a caller holding an old reference sees a
consistent snapshot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from mnemos.core.config import Config
from mnemos.core.errors import DuplicateError, NotFound, ValidationError
from mnemos.core.filelock import FileLock, atomic_write_json, read_json
from mnemos.core.logging import memory_fields
from mnemos.core.types import (
    Confidence,
    Memory,
    MemoryType,
    content_hash,
    now_iso,
)
from mnemos.search.tokenizer import overlap_score, query_terms, term_set

log = logging.getLogger(__name__)

INDEX_VERSION = 1

IMMUTABLE_FIELDS = frozenset({"id", "type", "source", "created_at"})
_MEMORY_FIELDS = frozenset(f.name for f in fields(Memory))

Patch = Union[Dict[str, Any], Callable[[Memory], Dict[str, Any]]]
DeleteListener = Callable[[str], Union[None, Awaitable[None]]]


class MemoryStore:
    """File-backed, async memory store with (type, content) dedup."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.memories_dir = config.memories_dir
        self.index_path = config.index_path

        self._records: Dict[str, Memory] = {}
        self._by_hash: Dict[Tuple[str, str], str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._index_lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._delete_listeners: List[DeleteListener] = []
        self._initialized = False
        self.index_rebuilt = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def init(self) -> None:
        """Load every record from disk.  Idempotent; concurrent calls coalesce."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            records, rebuilt = await asyncio.to_thread(self._load_from_disk)
            self._records = records
            self._by_hash = {
                (m.type.value, m.content_hash): m.id for m in records.values()
            }
            self.index_rebuilt = rebuilt
            self._initialized = True
            log.info(
                "Memory store ready: %d memories in %s%s",
                len(records),
                self.memories_dir,
                " (index rebuilt)" if rebuilt else "",
            )

    async def close(self) -> None:
        self._initialized = False
        self._records = {}
        self._by_hash = {}
        self._locks = {}

    def _load_from_disk(self) -> Tuple[Dict[str, Memory], bool]:
        self.memories_dir.mkdir(parents=True, exist_ok=True)

        records: Dict[str, Memory] = {}
        for path in sorted(self.memories_dir.glob("*.json")):
            if path.name == self.index_path.name:
                continue
            try:
                memory = Memory.from_dict(read_json(path))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log.warning("Skipping unreadable memory record %s: %s", path.name, exc)
                continue
            if memory.id != path.stem:
                log.warning("Skipping record %s: id field is %r", path.name, memory.id)
                continue
            records[memory.id] = memory

        rebuilt = False
        if not self._index_is_current(records):
            self._write_index_sync(records)
            rebuilt = True
        return records, rebuilt

    def _index_is_current(self, records: Dict[str, Memory]) -> bool:
        if not self.index_path.exists():
            log.info("Memory index missing, rebuilding")
            return False
        try:
            data = read_json(self.index_path)
        except (OSError, ValueError) as exc:
            log.warning("Memory index unreadable (%s), rebuilding", exc)
            return False
        if not isinstance(data, dict) or data.get("version") != INDEX_VERSION:
            log.info("Memory index version mismatch, rebuilding")
            return False
        entries = data.get("memories")
        if not isinstance(entries, dict) or set(entries) != set(records):
            log.info("Memory index stale, rebuilding")
            return False
        for memory_id, memory in records.items():
            if entries[memory_id] != memory.index_entry():
                log.info("Memory index entry %s out of date, rebuilding", memory_id)
                return False
        return True

    def _write_index_sync(self, records: Dict[str, Memory]) -> None:
        payload = {
            "version": INDEX_VERSION,
            "updated_at": now_iso(),
            "memories": {mid: m.index_entry() for mid, m in sorted(records.items())},
        }
        with FileLock(self.index_path):
            atomic_write_json(self.index_path, payload)

    async def _write_index(self) -> None:
        async with self._index_lock:
            snapshot = dict(self._records)
            await asyncio.to_thread(self._write_index_sync, snapshot)

    def _record_path(self, memory_id: str) -> Path:
        return self.memories_dir / f"{memory_id}.json"

    def _lock_for(self, memory_id: str) -> asyncio.Lock:
        lock = self._locks.get(memory_id)
        if lock is None:
            lock = self._locks[memory_id] = asyncio.Lock()
        return lock

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("MemoryStore.init() has not been awaited")

    # ── Writes ────────────────────────────────────────────────

    async def create(self, memory: Memory) -> str:
        """Persist a new memory; raises ``DuplicateError`` on a (type, content) clash."""
        self._require_init()
        key = (memory.type.value, memory.content_hash)
        async with self._index_lock:
            existing = self._by_hash.get(key)
            if existing is not None:
                raise DuplicateError(existing, key[1])
            if memory.id in self._records:
                raise ValidationError(f"Memory id already in use: {memory.id}")
            stored = replace(memory, updated_at=now_iso())
            await asyncio.to_thread(atomic_write_json, self._record_path(stored.id), stored.to_dict())
            self._records[stored.id] = stored
            self._by_hash[key] = stored.id
            snapshot = dict(self._records)
            await asyncio.to_thread(self._write_index_sync, snapshot)
        log.debug(
            "Created memory %s (%s/%s)", stored.id, stored.type.value, stored.source.value,
            extra=memory_fields(stored.id),
        )
        return stored.id

    async def update(self, memory_id: str, patch: Patch) -> Memory:
        """Apply *patch* (a dict, or a callable returning one) copy-on-write.

        Writes to the same id are serialised, so a callable patch sees
        the latest record: read-modify-write updates are never lost.
        """
        self._require_init()
        async with self._lock_for(memory_id):
            current = self._records.get(memory_id)
            if current is None:
                raise NotFound("memory", memory_id)

            changes = patch(current) if callable(patch) else patch
            if inspect.isawaitable(changes):
                changes = await changes
            changes = dict(changes or {})

            bad = IMMUTABLE_FIELDS.intersection(changes)
            if bad:
                raise ValidationError(f"Cannot change immutable field(s): {sorted(bad)}")
            unknown = set(changes) - _MEMORY_FIELDS
            if unknown:
                raise ValidationError(f"Unknown memory field(s): {sorted(unknown)}")
            if isinstance(changes.get("confidence"), dict):
                changes["confidence"] = Confidence.from_dict(changes["confidence"])
            changes.setdefault("updated_at", now_iso())

            updated = replace(current, **changes)

            old_key = (current.type.value, current.content_hash)
            new_key = (updated.type.value, updated.content_hash)
            if new_key != old_key:
                owner = self._by_hash.get(new_key)
                if owner is not None and owner != memory_id:
                    raise DuplicateError(owner, new_key[1])

            await asyncio.to_thread(atomic_write_json, self._record_path(memory_id), updated.to_dict())
            self._records[memory_id] = updated
            if new_key != old_key:
                self._by_hash.pop(old_key, None)
                self._by_hash[new_key] = memory_id

        await self._write_index()
        return updated

    async def delete(self, memory_id: str) -> None:
        """Remove a memory and notify delete listeners (graph, vector index)."""
        await self.delete_if(memory_id, lambda memory: True)

    async def delete_if(
        self, memory_id: str, predicate: Callable[[Memory], bool]
    ) -> Optional[Memory]:
        """Delete *memory_id* only if ``predicate(latest record)`` holds.

        The predicate runs under the id's write lock, so it sees every
        update that finished before the delete.  Returns the deleted
        record, or None when the predicate declined.
        """
        self._require_init()
        async with self._lock_for(memory_id):
            memory = self._records.get(memory_id)
            if memory is None:
                raise NotFound("memory", memory_id)
            if not predicate(memory):
                return None
            del self._records[memory_id]
            self._by_hash.pop((memory.type.value, memory.content_hash), None)
            await asyncio.to_thread(self._unlink, memory_id)
        self._locks.pop(memory_id, None)
        await self._write_index()
        log.debug("Deleted memory %s", memory_id, extra=memory_fields(memory_id))

        for listener in list(self._delete_listeners):
            result = listener(memory_id)
            if inspect.isawaitable(result):
                await result
        return memory

    def _unlink(self, memory_id: str) -> None:
        try:
            self._record_path(memory_id).unlink()
        except FileNotFoundError:
            pass

    def add_delete_listener(self, listener: DeleteListener) -> None:
        self._delete_listeners.append(listener)

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, memory_id: str) -> Memory:
        self._require_init()
        memory = self._records.get(memory_id)
        if memory is None:
            raise NotFound("memory", memory_id)
        return memory

    def peek(self, memory_id: str) -> Optional[Memory]:
        """Synchronous lookup; None when absent."""
        return self._records.get(memory_id)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._records

    async def find_duplicate(
        self, memory_type: Union[MemoryType, str], content: str
    ) -> Optional[Memory]:
        self._require_init()
        key = (MemoryType(memory_type).value, content_hash(content))
        existing = self._by_hash.get(key)
        return self._records.get(existing) if existing else None

    async def all(self) -> List[Memory]:
        self._require_init()
        return sorted(self._records.values(), key=lambda m: (m.created_at, m.id))

    async def ids(self) -> List[str]:
        self._require_init()
        return sorted(self._records)

    async def count(self) -> int:
        self._require_init()
        return len(self._records)

    # ── Text search ───────────────────────────────────────────

    @staticmethod
    def text_score(query: str, memory: Memory) -> float:
        """Fraction of query terms found in the memory's title + content.

        A case-insensitive substring match of the whole query scores 1.
        """
        q = (query or "").strip().lower()
        if not q:
            return 0.0
        haystack = f"{memory.title}\n{memory.content}"
        if q in haystack.lower():
            return 1.0
        return overlap_score(query_terms(q), term_set(haystack))

    async def search_text(self, query: str, limit: int = 10) -> List[Memory]:
        """Memories matching *query* by substring or shared terms.

        Ordered by match score, then ``confidence.current`` desc, then
        ``updated_at`` desc.
        """
        self._require_init()
        if limit <= 0:
            return []
        scored = []
        for memory in self._records.values():
            score = self.text_score(query, memory)
            if score > 0.0:
                scored.append((score, memory))
        scored.sort(key=lambda sm: sm[1].id)
        scored.sort(key=lambda sm: sm[1].updated_at, reverse=True)
        scored.sort(key=lambda sm: (sm[0], sm[1].confidence.current), reverse=True)
        return [m for _, m in scored[:limit]]

    # ── Stats ─────────────────────────────────────────────────

    async def stats(self) -> Dict[str, Any]:
        self._require_init()
        memories = list(self._records.values())
        total = len(memories)
        return {
            "total": total,
            "by_type": dict(Counter(m.type.value for m in memories)),
            "by_source": dict(Counter(m.source.value for m in memories)),
            "with_embedding": sum(1 for m in memories if m.embedding is not None),
            "average_confidence": (
                round(sum(m.confidence.current for m in memories) / total, 4) if total else 0.0
            ),
        }
