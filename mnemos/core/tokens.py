"""
mnemos.core.tokens — Token accounting for the injected context block.

Injected memories share the prompt with the user's own text, so the
block is held under ``Config.inject_max_tokens``.  Counts come from a
regex over likely BPE boundaries (contractions, words, digit runs and
single symbols).  It is an estimate, good enough for a ceiling.
"""

from __future__ import annotations

import re

_PIECES = re.compile(r"'(?:s|t|re|ve|m|ll|d)|[A-Za-z]+|\d+|\S")


def estimate_tokens(text: str) -> int:
    """Approximate token count of *text*; never less than 1."""
    return max(1, len(_PIECES.findall(text or "")))


class TokenBudget:
    """Running token total against a ceiling.

    ``reserve`` tokens are held back for framing written after the last
    entry (closing tag, separators).
    """

    def __init__(self, limit: int, reserve: int = 0) -> None:
        self.limit = limit
        self.reserve = reserve
        self.used = 0

    def fits(self, text: str) -> bool:
        return self.used + estimate_tokens(text) <= self.limit - self.reserve

    def spend(self, text: str, overhead: int = 0) -> int:
        tokens = estimate_tokens(text) + overhead
        self.used += tokens
        return tokens
