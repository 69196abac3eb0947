"""
mnemos.core.config — Configuration for the mnemos memory engine.

Supports loading from YAML, environment variables, and programmatic
construction.  Embedding backends are built lazily so heavy optional
dependencies (sentence-transformers, torch) are only imported when an
embedding is first requested.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class Config:
    """
    Central configuration object.

    Construct directly, via ``Config.from_yaml(path)``, or via
    ``Config.from_data_dir(path)`` for quick bootstrap.
    """

    # -- storage ------------------------------------------------------------
    data_dir: Path = field(default_factory=lambda: Path("./mnemos_data"))

    # -- embedding backend --------------------------------------------------
    # "sentence-transformers" | "ollama" | "none"
    embedding_backend: str = field(
        default_factory=lambda: os.environ.get(
            "MNEMOS_EMBEDDING_BACKEND", "sentence-transformers"
        )
    )
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimension: int = 384
    embedding_device: str = ""  # "" = auto (cuda if available, else cpu)
    ollama_base_url: str = "http://localhost:11434"

    # -- confidence model ---------------------------------------------------
    decay_half_life_days: float = 30.0
    reinforcement_factor: float = 1.0
    retrieval_signal: float = 0.05  # weak reinforcement per retrieval hit
    extraction_signal: float = 0.1  # same fact observed again
    positive_feedback_signal: float = 0.3
    negative_feedback_penalty: float = 0.3
    prune_threshold: float = 0.05
    prune_grace_days: float = 7.0
    adaptive_half_life: bool = False

    # -- retrieval ----------------------------------------------------------
    min_similarity: float = 0.3
    text_fallback_weight: float = 0.5
    expand_hops: int = 1
    candidate_multiplier: int = 3

    # -- abstraction --------------------------------------------------------
    abstraction_threshold: float = 0.9
    abstraction_min_candidates: int = 10
    abstraction_min_cluster_size: int = 2

    # -- scheduler ----------------------------------------------------------
    scheduler_interval_seconds: float = 3600.0

    # -- injection ----------------------------------------------------------
    inject_max_memories: int = 5
    inject_max_tokens: int = 2000
    inject_timeout_seconds: float = 15.0
    auto_extract: bool = True

    # -- active learning ----------------------------------------------------
    max_questions_per_session: int = 3
    question_cooldown_minutes: float = 30.0

    # -- observability ------------------------------------------------------
    structured_logging: bool = False
    event_channel_size: int = 256

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------

    @property
    def memories_dir(self) -> Path:
        return self.data_dir / "memories"

    @property
    def index_path(self) -> Path:
        return self.memories_dir / "index.json"

    @property
    def relationships_path(self) -> Path:
        return self.data_dir / "relationships.json"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "mnemos.yaml"

    @property
    def decay_rate(self) -> float:
        """Per-day decay rate derived from the half-life."""
        return math.log(2) / max(self.decay_half_life_days, 1e-6)

    @property
    def prune_grace_seconds(self) -> float:
        return self.prune_grace_days * 86400.0

    # -----------------------------------------------------------------------
    # Construction helpers
    # -----------------------------------------------------------------------

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).resolve()
        self.embedding_backend = (self.embedding_backend or "none").lower()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file.

        Any key that matches a Config field is applied; unknown keys
        are ignored so the file can carry application-level settings.
        A top-level ``mnemos:`` section is used when present.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}

        data = raw.get("mnemos", raw) or {}

        if "data_dir" in data:
            data["data_dir"] = Path(data["data_dir"])

        known = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    @classmethod
    def from_data_dir(cls, data_dir: str | Path, **overrides: Any) -> "Config":
        """Quick constructor: point at a data directory.

        If the directory holds a ``mnemos.yaml`` it is loaded first;
        *overrides* win over file values.
        """
        data_dir = Path(data_dir)
        config_file = data_dir / "mnemos.yaml"
        if config_file.exists():
            cfg = cls.from_yaml(config_file)
            cfg.data_dir = data_dir.resolve()
            for key, value in overrides.items():
                setattr(cfg, key, value)
            cfg.__post_init__()
            return cfg
        return cls(data_dir=data_dir, **overrides)

    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (self.data_dir, self.memories_dir):
            d.mkdir(parents=True, exist_ok=True)

    # -----------------------------------------------------------------------
    # Serialisation
    # -----------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a plain dict (YAML/JSON-safe)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = str(value) if isinstance(value, Path) else value
        return out

    def to_yaml(self) -> str:
        return yaml.safe_dump({"mnemos": self.to_dict()}, sort_keys=False)
