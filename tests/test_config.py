"""Tests for mnemos.core.config."""

import math

import pytest

from mnemos.core.config import Config


class TestConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("MNEMOS_EMBEDDING_BACKEND", raising=False)
        c = Config()
        assert c.embedding_backend == "sentence-transformers"
        assert c.decay_half_life_days == 30.0
        assert c.reinforcement_factor == 1.0
        assert c.prune_threshold == 0.05
        assert c.inject_max_memories == 5
        assert c.max_questions_per_session == 3

    def test_env_selects_backend(self, monkeypatch):
        monkeypatch.setenv("MNEMOS_EMBEDDING_BACKEND", "None")
        assert Config().embedding_backend == "none"

    def test_from_data_dir(self, tmp_path):
        c = Config.from_data_dir(tmp_path)
        assert c.data_dir == tmp_path.resolve()

    def test_derived_paths(self, tmp_path):
        c = Config.from_data_dir(tmp_path)
        assert c.memories_dir == tmp_path.resolve() / "memories"
        assert c.index_path == tmp_path.resolve() / "memories" / "index.json"
        assert c.relationships_path == tmp_path.resolve() / "relationships.json"
        assert c.config_path == tmp_path.resolve() / "mnemos.yaml"

    def test_decay_rate_from_half_life(self):
        c = Config(decay_half_life_days=10.0)
        assert c.decay_rate == pytest.approx(math.log(2) / 10.0)

    def test_ensure_directories(self, tmp_path):
        c = Config.from_data_dir(tmp_path / "nested")
        c.ensure_directories()
        assert c.memories_dir.is_dir()

    def test_from_yaml(self, tmp_path):
        yaml_path = tmp_path / "test.yaml"
        yaml_path.write_text(
            f"mnemos:\n"
            f"  data_dir: {tmp_path}\n"
            f"  min_similarity: 0.5\n"
            f"  inject_max_tokens: 800\n"
            f"  unrelated_key: ignored\n",
            encoding="utf-8",
        )
        c = Config.from_yaml(yaml_path)
        assert c.min_similarity == 0.5
        assert c.inject_max_tokens == 800

    def test_from_yaml_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nonexistent.yaml")

    def test_data_dir_yaml_with_overrides(self, tmp_path):
        (tmp_path / "mnemos.yaml").write_text(
            "mnemos:\n  min_similarity: 0.7\n  embedding_backend: ollama\n",
            encoding="utf-8",
        )
        c = Config.from_data_dir(tmp_path, embedding_backend="none")
        assert c.min_similarity == 0.7
        assert c.embedding_backend == "none"
        assert c.data_dir == tmp_path.resolve()

    def test_yaml_round_trip(self, tmp_path):
        original = Config.from_data_dir(tmp_path, embedding_backend="none", expand_hops=2)
        original.ensure_directories()
        original.config_path.write_text(original.to_yaml(), encoding="utf-8")
        loaded = Config.from_yaml(original.config_path)
        assert loaded.to_dict() == original.to_dict()
