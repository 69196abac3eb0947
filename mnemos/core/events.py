"""
mnemos.core.events — Outbound notifications for learning events.

Components publish ``MemoryEvent``s to an ``EventBus``.  Listeners
either register a callback with ``subscribe()`` or pull from a bounded
queue obtained with ``channel()``.  A slow or failing listener never
blocks or breaks the publisher: callback errors are logged and a full
channel drops its oldest event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from mnemos.core.logging import memory_fields
from mnemos.core.types import now_iso

log = logging.getLogger(__name__)

EVENT_KINDS = frozenset(
    {
        "memory_created",
        "memory_reinforced",
        "memory_penalized",
        "memory_deleted",
        "memory_pruned",
        "abstraction_created",
        "feedback_received",
        "sweep_completed",
    }
)


@dataclass
class MemoryEvent:
    kind: str
    memory_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {self.kind!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "memory_id": self.memory_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }


Listener = Callable[[MemoryEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fan-out of ``MemoryEvent``s to callbacks and bounded queues."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._channels: List[asyncio.Queue] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def channel(self, maxsize: int = 256) -> asyncio.Queue:
        """A bounded queue receiving every subsequent event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._channels.append(queue)
        return queue

    def close_channel(self, queue: asyncio.Queue) -> None:
        if queue in self._channels:
            self._channels.remove(queue)

    async def publish(self, event: MemoryEvent) -> None:
        for queue in list(self._channels):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.warning(
                    "Event listener failed on %s: %s", event.kind, exc,
                    extra=memory_fields(event.memory_id, event=event.kind),
                )

    async def emit(self, kind: str, memory_id: Optional[str] = None, **data: Any) -> None:
        await self.publish(MemoryEvent(kind=kind, memory_id=memory_id, data=data))
