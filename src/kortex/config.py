"""Configuration management for kortex using Hydra.

All configuration is loaded from YAML files in conf/kortex/. Every field has a
default, so a partial file (or a missing section) falls back to documented
values instead of failing.
"""

import os
from pathlib import Path
from typing import Literal

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field, field_validator

ProviderName = Literal["auto", "local", "ollama", "openai"]

PROVIDER_ALIASES = {
    "daemon": "ollama",
    "remote": "openai",
    "transformers": "local",
}


class LocalEmbeddingSettings(BaseModel):
    """Settings for the in-process sentence-transformers model.

    Attributes:
        model: Hugging Face model identifier
        batch_size: Texts encoded per forward pass
    """

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    batch_size: int = Field(default=32, ge=1, le=512)


class OllamaEmbeddingSettings(BaseModel):
    """Settings for an Ollama daemon.

    Attributes:
        host: Base URL of the daemon
        model: Embedding model name (must be pulled)
        concurrency: Maximum in-flight requests during batch embedding
        timeout_seconds: Per-request timeout
    """

    host: str = "http://localhost:11434"
    model: str = "nomic-embed-text"
    concurrency: int = Field(default=8, ge=1, le=32)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)


class OpenAIEmbeddingSettings(BaseModel):
    """Settings for the OpenAI embeddings API.

    Attributes:
        api_key: API key (falls back to OPENAI_API_KEY)
        model: Model identifier
        dimensions: Requested embedding dimensionality
        batch_size: Texts per API call
        max_retries: Maximum attempts for transient failures
        timeout_seconds: API request timeout
    """

    api_key: str | None = None
    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=512, ge=64, le=3072)
    batch_size: int = Field(default=100, ge=1, le=2048)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    def resolved_api_key(self) -> str | None:
        return self.api_key or os.environ.get("OPENAI_API_KEY") or None


class EmbeddingSettings(BaseModel):
    """Embedding provider selection.

    Attributes:
        provider: ``auto`` or an explicit provider name
        probe_timeout_seconds: Timeout for availability probes
    """

    provider: ProviderName = "auto"
    probe_timeout_seconds: float = Field(default=5.0, ge=0.5, le=60.0)
    local: LocalEmbeddingSettings = Field(default_factory=LocalEmbeddingSettings)
    ollama: OllamaEmbeddingSettings = Field(default_factory=OllamaEmbeddingSettings)
    openai: OpenAIEmbeddingSettings = Field(default_factory=OpenAIEmbeddingSettings)

    @field_validator("provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        """Map transport-style aliases onto provider names."""
        if isinstance(v, str):
            v = v.strip().lower()
            return PROVIDER_ALIASES.get(v, v)
        return v


class SearchSettings(BaseModel):
    default_limit: int = Field(default=10, ge=1, le=1000)
    rrf_k: int = Field(default=60, ge=1)


class ContextSettings(BaseModel):
    """Defaults for context assembly.

    Attributes:
        max_tokens: Token budget of the assembled document
        max_items: Maximum number of items
        min_relevance: Semantic floor applied to context candidates
        related_score: Relevance assigned to related (graph) entries
    """

    max_tokens: int = Field(default=4000, ge=1)
    max_items: int = Field(default=10, ge=1)
    min_relevance: float = Field(default=0.15, ge=0.0, le=1.0)
    related_score: float = Field(default=0.5, ge=0.0, le=1.0)


class StorageSettings(BaseModel):
    database_path: Path = Path("~/.kortex/kortex.db")

    @field_validator("database_path", mode="after")
    @classmethod
    def expand_home(cls, v: Path) -> Path:
        return v.expanduser()


class KortexConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        embedding: Embedding provider configuration
        search: Search engine configuration
        context: Context retriever configuration
        storage: Record store location
    """

    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> KortexConfig:
    """Load kortex configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/kortex/)
        overrides: List of config overrides (e.g., ["embedding.provider=ollama"])

    Returns:
        Validated configuration object

    Example:
        >>> config = load_config("default", overrides=["context.max_tokens=2000"])
        >>> config.context.max_tokens
        2000
    """
    if config_path is None:
        repo_root = Path(__file__).parent.parent.parent
        config_path = repo_root / "conf" / "kortex"

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(config_dir=str(config_path), version_base=None, job_name="kortex"):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    config_dict = OmegaConf.to_container(cfg, resolve=True) or {}
    return KortexConfig.model_validate(config_dict)


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Example:
        >>> import yaml
        >>> with open("conf/kortex/default.yaml", "w") as f:
        ...     yaml.dump(create_default_config(), f)
    """
    return {
        "embedding": {
            "provider": "auto",
            "probe_timeout_seconds": 5.0,
            "local": {"model": "sentence-transformers/all-MiniLM-L6-v2", "batch_size": 32},
            "ollama": {
                "host": "http://localhost:11434",
                "model": "nomic-embed-text",
                "concurrency": 8,
                "timeout_seconds": 30.0,
            },
            "openai": {
                "api_key": "${oc.env:OPENAI_API_KEY,null}",
                "model": "text-embedding-3-small",
                "dimensions": 512,
                "batch_size": 100,
                "max_retries": 3,
                "timeout_seconds": 30.0,
            },
        },
        "search": {"default_limit": 10, "rrf_k": 60},
        "context": {
            "max_tokens": 4000,
            "max_items": 10,
            "min_relevance": 0.15,
            "related_score": 0.5,
        },
        "storage": {"database_path": "${oc.env:KORTEX_DATABASE,'~/.kortex/kortex.db'}"},
    }
