"""
mnemos.signal.confidence — Decay and reinforcement of memory confidence.

Pure functions over a ``Confidence`` record.  Nothing here touches
storage: callers persist the returned record.

Decay (time since last access, in days):
    current' = current * exp(-decay_rate * Δt)

Reinforcement (diminishing return as confidence approaches 1):
    current' = current + (1 - current) * signal * factor

Penalty (explicit negative feedback, stronger than passive decay):
    current' = current - amount

Every result is clamped to [0, 1].
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Union

from mnemos.core.types import (
    DEFAULT_DECAY_RATE,
    DEFAULT_HALF_LIFE_DAYS,
    Confidence,
    parse_iso,
    to_iso,
    utcnow,
)

_SECONDS_PER_DAY = 86400.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _now(now: Optional[datetime]) -> datetime:
    return now if now is not None else utcnow()


def _days_between(earlier: str, now: datetime) -> float:
    try:
        then = parse_iso(earlier)
    except (ValueError, TypeError, AttributeError):
        # Unparseable timestamp: treat as just accessed.
        return 0.0
    if now.tzinfo is None:
        now = now.replace(tzinfo=then.tzinfo)
    return max(0.0, (now - then).total_seconds() / _SECONDS_PER_DAY)


def create_confidence(
    initial: float = 0.5,
    decay_rate: float = DEFAULT_DECAY_RATE,
    now: Optional[datetime] = None,
) -> Confidence:
    """Fresh confidence record for a new memory."""
    value = _clamp(initial)
    return Confidence(
        current=value,
        initial=value,
        decay_rate=decay_rate,
        last_accessed=to_iso(_now(now)),
    )


# ---------------------------------------------------------------------------
# Core operations
# ---------------------------------------------------------------------------


def decay(confidence: Confidence, now: Optional[datetime] = None) -> Confidence:
    """Exponential decay since the later of last access and last decay.

    ``last_accessed`` is left untouched; ``decayed_at`` moves to *now*
    so applying decay twice at the same instant equals applying it once.
    """
    now = _now(now)
    since = confidence.last_accessed
    if confidence.decayed_at:
        try:
            if parse_iso(confidence.decayed_at) > parse_iso(confidence.last_accessed):
                since = confidence.decayed_at
        except (ValueError, TypeError, AttributeError):
            pass

    days = _days_between(since, now)
    current = _clamp(confidence.current * math.exp(-confidence.decay_rate * days))
    return replace(confidence, current=current, decayed_at=to_iso(now))


def reinforce(
    confidence: Confidence,
    now: Optional[datetime] = None,
    signal_strength: float = 0.1,
    factor: float = 1.0,
) -> Confidence:
    """Move confidence toward 1 by a share of the remaining headroom."""
    signal = _clamp(signal_strength)
    gain = (1.0 - confidence.current) * signal * max(0.0, factor)
    return replace(
        confidence,
        current=_clamp(confidence.current + gain),
        reinforcements=confidence.reinforcements + 1,
        last_accessed=to_iso(_now(now)),
    )


def penalize(
    confidence: Confidence,
    now: Optional[datetime] = None,
    amount: float = 0.3,
) -> Confidence:
    """Subtract *amount* (floored at 0) and count a contradiction."""
    return replace(
        confidence,
        current=_clamp(confidence.current - max(0.0, amount)),
        contradictions=confidence.contradictions + 1,
        last_accessed=to_iso(_now(now)),
    )


def touch(confidence: Confidence, now: Optional[datetime] = None) -> Confidence:
    """Record an access without changing the score."""
    return replace(confidence, last_accessed=to_iso(_now(now)))


def should_prune(
    confidence: Confidence,
    now: Optional[datetime] = None,
    prune_threshold: float = 0.05,
    grace: Union[timedelta, float] = timedelta(days=7),
) -> bool:
    """True when the score is below threshold *and* the grace period has passed.

    *grace* is a ``timedelta`` or a number of seconds.
    """
    if confidence.current >= prune_threshold:
        return False
    grace_days = (
        grace.total_seconds() if isinstance(grace, timedelta) else float(grace)
    ) / _SECONDS_PER_DAY
    return _days_between(confidence.last_accessed, _now(now)) > grace_days


# ---------------------------------------------------------------------------
# Derived scores
# ---------------------------------------------------------------------------


def reliability_score(confidence: Confidence) -> float:
    """Blend the score with the reinforcement/contradiction ratio.

    The more feedback a memory has received, the more the ratio
    dominates (full weight after 10 interactions).
    """
    total = confidence.reinforcements + confidence.contradictions
    if total == 0:
        return confidence.current
    ratio = confidence.reinforcements / total
    weight = min(1.0, total / 10.0)
    return _clamp(confidence.current * (1.0 - weight) + ratio * weight)


def confidence_level(value: float) -> str:
    if value >= 0.7:
        return "high"
    if value >= 0.4:
        return "medium"
    return "low"


def needs_validation(confidence: Confidence, now: Optional[datetime] = None) -> bool:
    """Should the user be asked whether this memory still holds?"""
    decayed = decay(confidence, now).current
    if decayed < 0.4:
        return True
    return confidence.contradictions > 0 and decayed < 0.6


def merge_confidence(a: Confidence, b: Confidence, now: Optional[datetime] = None) -> Confidence:
    return Confidence(
        current=(a.current + b.current) / 2.0,
        initial=max(a.initial or 0.0, b.initial or 0.0),
        reinforcements=a.reinforcements + b.reinforcements,
        contradictions=a.contradictions + b.contradictions,
        decay_rate=min(a.decay_rate, b.decay_rate),
        last_accessed=to_iso(_now(now)),
    )


# ---------------------------------------------------------------------------
# Adaptive half-life
# ---------------------------------------------------------------------------


def half_life_days(confidence: Confidence) -> float:
    return math.log(2) / confidence.decay_rate


def optimal_half_life(
    confidence: Confidence, default_days: float = DEFAULT_HALF_LIFE_DAYS
) -> float:
    """Well-corroborated memories fade slowly, disputed ones quickly."""
    r, c = confidence.reinforcements, confidence.contradictions
    if r > 5 and c == 0:
        return 180.0
    if r > c * 2:
        return 90.0
    if c > r:
        return 14.0
    return default_days


def adjust_decay_rate(
    confidence: Confidence,
    min_days: float = 7.0,
    max_days: float = 365.0,
    default_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> Confidence:
    days = max(min_days, min(max_days, optimal_half_life(confidence, default_days)))
    return replace(confidence, decay_rate=math.log(2) / days)
