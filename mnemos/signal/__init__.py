"""
mnemos.signal — Confidence dynamics, extraction and feedback.

Public API:
  decay() / reinforce() / penalize() — confidence transitions
  should_prune()                     — prune eligibility after grace period
  Extractor                          — conversation turns → memories
  extract_tags()                     — technology tags in free text
  ActiveLearning                     — feedback and clarifying questions
"""

from mnemos.signal.confidence import (
    create_confidence,
    decay,
    penalize,
    reinforce,
    should_prune,
    touch,
)
from mnemos.signal.extract import ExtractionContext, Extractor, extract_tags
from mnemos.signal.feedback import ActiveLearning, FeedbackResult, LearningTrigger

__all__ = [
    "ActiveLearning",
    "ExtractionContext",
    "Extractor",
    "FeedbackResult",
    "LearningTrigger",
    "create_confidence",
    "decay",
    "extract_tags",
    "penalize",
    "reinforce",
    "should_prune",
    "touch",
]
