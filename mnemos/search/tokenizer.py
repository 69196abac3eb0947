"""
mnemos.search.tokenizer — Tokenizer for plain-text memory search.

Splits text into lowercase terms, expanding compound identifiers
(camelCase, snake_case, PascalCase, dot.paths) into their parts so a
query for ``"user id"`` finds content mentioning ``getUserById``.

Examples:
    "getUserById"     → ["getuserbyid", "get", "user", "by", "id"]
    "snake_case_name" → ["snake_case_name", "snake", "case", "name"]
    "os.path.join"    → ["os.path.join", "os", "path", "join"]

Used in two places:
  1. ``MemoryStore.search_text`` scoring title + content
  2. The extractor's common-phrase detection
"""

from __future__ import annotations

import re
from typing import Iterable, List, Set

# ---------------------------------------------------------------------------
# Splitting patterns
# ---------------------------------------------------------------------------

# camelCase / PascalCase boundary: lowercase followed by uppercase
_CAMEL_SPLIT = re.compile(r"(?<=[a-z])(?=[A-Z])")

# Acronym boundary: "HTTPResponse" → "HTTP" + "Response"
_ACRONYM_SPLIT = re.compile(r"(?<=[A-Z])(?=[A-Z][a-z])")

_SEPARATOR_SPLIT = re.compile(r"[_\-]+")
_DOT_SPLIT = re.compile(r"\.")

# Word-like tokens, optionally joined by dots, underscores, hyphens
_TOKEN_RE = re.compile(r"[a-zA-Z0-9_][a-zA-Z0-9_./-]*[a-zA-Z0-9]|[a-zA-Z0-9]+")

_MIN_PART_LEN = 2

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "do", "for", "from",
        "how", "i", "in", "is", "it", "me", "my", "of", "on", "or", "should",
        "that", "the", "this", "to", "was", "we", "what", "when", "where",
        "which", "who", "why", "will", "with", "you", "your",
    }
)


def split_identifier(identifier: str) -> List[str]:
    """
    Split a compound identifier into its lowercase component words.

    >>> split_identifier("getUserById")
    ['get', 'user', 'by', 'id']
    >>> split_identifier("HTTPResponse")
    ['http', 'response']
    """
    if not identifier or len(identifier) < _MIN_PART_LEN:
        return []

    parts: List[str] = []
    for segment in _DOT_SPLIT.split(identifier):
        for part in _SEPARATOR_SPLIT.split(segment):
            for cp in _CAMEL_SPLIT.split(part):
                for ap in _ACRONYM_SPLIT.split(cp):
                    if ap and len(ap) >= _MIN_PART_LEN:
                        parts.append(ap.lower())
    return parts


def is_compound_identifier(token: str) -> bool:
    if not token or len(token) < 3:
        return False
    return (
        "_" in token
        or "." in token
        or "-" in token
        or bool(_CAMEL_SPLIT.search(token))
        or bool(_ACRONYM_SPLIT.search(token))
    )


def stem(term: str) -> str:
    """Very light plural folding: ``dependencies`` → ``dependency``."""
    if len(term) > 4 and term.endswith("ies"):
        return term[:-3] + "y"
    if len(term) > 3 and term.endswith("s") and not term.endswith("ss"):
        return term[:-1]
    return term


def tokenize(text: str) -> List[str]:
    """All lowercase terms of *text*, compound identifiers expanded."""
    if not text:
        return []
    out: List[str] = []
    for match in _TOKEN_RE.finditer(text):
        token = match.group(0)
        out.append(token.lower())
        if is_compound_identifier(token):
            parts = split_identifier(token)
            if len(parts) > 1:
                out.extend(parts)
    return out


def term_set(text: str) -> Set[str]:
    """Stemmed term set of *text* (stopwords kept; used as the haystack)."""
    return {stem(t) for t in tokenize(text)}


def query_terms(query: str) -> List[str]:
    """Distinct stemmed query terms with stopwords removed.

    Falls back to the full term list if every term is a stopword.
    """
    terms = tokenize(query)
    content = [stem(t) for t in terms if t not in STOPWORDS]
    chosen = content or [stem(t) for t in terms]
    seen: Set[str] = set()
    return [t for t in chosen if not (t in seen or seen.add(t))]


def overlap_score(terms: Iterable[str], haystack: Set[str]) -> float:
    """Fraction of *terms* present in *haystack* (0 when no terms)."""
    terms = list(terms)
    if not terms:
        return 0.0
    hits = sum(1 for t in terms if t in haystack)
    return hits / len(terms)
