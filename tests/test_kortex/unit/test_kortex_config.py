"""Tests for Hydra-based configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from kortex.config import (
    ContextSettings,
    EmbeddingSettings,
    KortexConfig,
    OllamaEmbeddingSettings,
    OpenAIEmbeddingSettings,
    StorageSettings,
    create_default_config,
    load_config,
)


class TestSettingsModels:
    def test_defaults(self):
        config = KortexConfig()

        assert config.embedding.provider == "auto"
        assert config.embedding.local.model == "sentence-transformers/all-MiniLM-L6-v2"
        assert config.embedding.ollama.model == "nomic-embed-text"
        assert config.embedding.openai.dimensions == 512
        assert config.search.rrf_k == 60
        assert config.context.max_tokens == 4000
        assert config.context.max_items == 10
        assert config.context.min_relevance == 0.15
        assert config.context.related_score == 0.5

    @pytest.mark.parametrize(
        ("alias", "expected"),
        [
            ("daemon", "ollama"),
            ("remote", "openai"),
            ("transformers", "local"),
            (" OpenAI ", "openai"),
        ],
    )
    def test_provider_aliases(self, alias, expected):
        assert EmbeddingSettings(provider=alias).provider == expected

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            EmbeddingSettings(provider="cohere")

    def test_ollama_concurrency_bounds(self):
        with pytest.raises(ValidationError):
            OllamaEmbeddingSettings(concurrency=0)
        with pytest.raises(ValidationError):
            OllamaEmbeddingSettings(concurrency=33)

    def test_openai_dimension_bounds(self):
        with pytest.raises(ValidationError):
            OpenAIEmbeddingSettings(dimensions=32)

    def test_related_score_bounds(self):
        with pytest.raises(ValidationError):
            ContextSettings(related_score=1.5)

    def test_api_key_resolution(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert OpenAIEmbeddingSettings().resolved_api_key() is None

        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert OpenAIEmbeddingSettings().resolved_api_key() == "sk-env"
        assert OpenAIEmbeddingSettings(api_key="sk-explicit").resolved_api_key() == "sk-explicit"

    def test_database_path_expands_home(self):
        settings = StorageSettings(database_path="~/kb.db")
        assert "~" not in str(settings.database_path)
        assert settings.database_path == Path.home() / "kb.db"


class TestLoadConfig:
    """Tests for load_config() against the shipped and temporary YAML files."""

    def test_load_shipped_default(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("KORTEX_DATABASE", raising=False)

        config = load_config("default")

        assert config.embedding.provider == "auto"
        assert config.embedding.openai.api_key is None
        assert config.storage.database_path == Path.home() / ".kortex" / "kortex.db"

    def test_environment_interpolation(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        monkeypatch.setenv("KORTEX_DATABASE", str(tmp_path / "kb.db"))

        config = load_config("default")

        assert config.embedding.openai.api_key == "sk-from-env"
        assert config.storage.database_path == tmp_path / "kb.db"

    def test_overrides(self):
        config = load_config(
            "default",
            overrides=["embedding.provider=daemon", "context.max_tokens=2000"],
        )

        assert config.embedding.provider == "ollama"
        assert config.context.max_tokens == 2000

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            load_config("default", config_path=tmp_path / "nope")

    def test_partial_file_uses_defaults(self, tmp_path):
        (tmp_path / "minimal.yaml").write_text("search:\n  rrf_k: 30\n")

        config = load_config("minimal", config_path=tmp_path)

        assert config.search.rrf_k == 30
        assert config.context.max_tokens == 4000
        assert config.embedding.provider == "auto"

    def test_invalid_value_rejected(self, tmp_path):
        (tmp_path / "bad.yaml").write_text("context:\n  max_items: 0\n")

        with pytest.raises(ValidationError):
            load_config("bad", config_path=tmp_path)

    def test_bootstrap_dictionary_round_trips(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("KORTEX_DATABASE", raising=False)

        (tmp_path / "boot.yaml").write_text(yaml.safe_dump(create_default_config()))

        config = load_config("boot", config_path=tmp_path)

        assert config == load_config("default")
