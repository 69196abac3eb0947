"""
mnemos.pipeline.inject — Relevant-memory context for an outgoing prompt.

Produces a ``<relevant-memories>`` block listing the best memories for
a prompt, each as::

    [LANE-OR-TYPE] (NN% match, NN% confidence)
    Title
    Content (truncated to 500 characters)

bounded by a token budget.  Never raises for a missing embedding
backend or a slow retrieval: the caller always gets an
``InjectionResult``, possibly empty.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Optional

from mnemos.core.config import Config
from mnemos.core.tokens import TokenBudget
from mnemos.core.types import InjectionResult, ScoredMemory

log = logging.getLogger(__name__)

MIN_PROMPT_CHARS = 3
MAX_CONTENT_CHARS = 500
OPEN_TAG = "<relevant-memories>"
CLOSE_TAG = "</relevant-memories>"
# Reserved for the closing tag and separators.
_FRAME_RESERVE = 30


def format_memory(hit: ScoredMemory) -> str:
    memory = hit.memory
    label = (memory.lane.value if memory.lane else memory.type.value).upper()
    header = (
        f"[{label}] ({round(hit.similarity * 100)}% match, "
        f"{round(memory.confidence.current * 100)}% confidence)"
    )
    if memory.title:
        header += f"\n{memory.title}"
    content = memory.content
    if len(content) > MAX_CONTENT_CHARS:
        content = content[:MAX_CONTENT_CHARS] + "..."
    return f"{header}\n{content}"


def build_context(hits: List[ScoredMemory], max_tokens: int) -> tuple:
    """Return ``(context, included_hits)`` within *max_tokens*.

    Entries are added best first until the next one would overflow.
    """
    if not hits:
        return "", []

    budget = TokenBudget(max_tokens, reserve=_FRAME_RESERVE)
    budget.spend(OPEN_TAG)
    lines = [OPEN_TAG]
    included: List[ScoredMemory] = []
    for hit in hits:
        entry = format_memory(hit)
        if not budget.fits(entry):
            break
        budget.spend(entry, overhead=2)
        lines.append("")
        lines.append(entry)
        included.append(hit)

    if not included:
        return "", []
    lines.append("")
    lines.append(CLOSE_TAG)
    return "\n".join(lines), included


async def inject_memories(
    retriever: Any,
    prompt: str,
    config: Config,
    session_id: Optional[str] = None,
    max_memories: Optional[int] = None,
) -> InjectionResult:
    """Retrieve and format memories relevant to *prompt*."""
    start = time.monotonic()
    limit = max_memories or config.inject_max_memories
    result = InjectionResult(
        metadata={
            "query_time_ms": 0.0,
            "memories_considered": 0,
            "memories_injected": 0,
            "embeddings_available": False,
            "session_id": session_id,
        }
    )

    def finish() -> InjectionResult:
        result.metadata["query_time_ms"] = round((time.monotonic() - start) * 1000.0, 2)
        return result

    if not prompt or len(prompt.strip()) < MIN_PROMPT_CHARS:
        return finish()

    try:
        outcome = await asyncio.wait_for(
            retriever.rank(prompt, limit), timeout=config.inject_timeout_seconds
        )
    except asyncio.TimeoutError:
        log.warning(
            "Memory injection timed out after %.1fs: %r",
            config.inject_timeout_seconds,
            prompt[:50],
        )
        return finish()

    result.metadata["memories_considered"] = outcome.considered
    result.metadata["embeddings_available"] = outcome.embeddings_available

    context, included = build_context(outcome.hits, config.inject_max_tokens)
    if included:
        await retriever.reinforce_hits(included)
    result.context = context
    result.memories = included
    result.metadata["memories_injected"] = len(included)

    finish()
    log.info(
        "Injected %d of %d memories in %.1fms",
        len(included),
        outcome.considered,
        result.metadata["query_time_ms"],
    )
    return result
