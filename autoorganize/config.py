"""
AutoOrganize settings.

One pydantic-settings model per component section. Values come from, in
decreasing priority, AUTOORGANIZE_* environment variables, a .env file, the
YAML settings file and the defaults below.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Literal
import os

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class StorageConfig(BaseSettings):
    """Graph store configuration."""

    database: str = "data/autoorganize.db"
    enable_wal: bool = True

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_STORAGE_")


class ExtractionConfig(BaseSettings):
    """Entity extraction defaults."""

    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context_window: int = Field(default=50, ge=0)  # characters on each side
    merge_overlapping: bool = True
    extract_concepts: bool = True
    language: str = "en"

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_EXTRACTION_")


class RelationshipConfig(BaseSettings):
    """Relationship building defaults."""

    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    max_distance: int = Field(default=100, ge=0)  # characters
    context_window: int = Field(default=200, ge=0)
    use_semantic_similarity: bool = True
    similarity_query_chars: int = 500
    # Caps for the quadratic proximity and cross-document passes; None = unbounded
    max_entities_per_document: Optional[int] = None
    max_documents_per_cross_link: Optional[int] = None

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_RELATIONSHIPS_")


class EmbeddingConfig(BaseSettings):
    """Embedding engine configuration."""

    backend: Literal["transformers", "ollama", "hash"] = "transformers"
    model: str = "sentence-transformers-all-MiniLM-L6-v2"
    allow_fallback: bool = False  # Use the hashing backend when the model cannot load
    chunk_size: int = 500  # words
    chunk_overlap: int = 50  # words
    max_cache_size: int = 10000
    ollama_base_url: str = "http://localhost:11434"
    timeout: float = 60.0
    device: str = "cpu"

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_EMBEDDING_")

    @model_validator(mode="after")
    def _check_chunking(self) -> "EmbeddingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class GraphConfig(BaseSettings):
    """Graph query defaults."""

    default_depth: int = 2
    default_max_nodes: int = 100
    max_path_depth: int = 6
    community_seed: int = 42

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_GRAPH_")


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    json_format: bool = False
    file: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="AUTOORGANIZE_LOG_")

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value


class Settings(BaseSettings):
    """All sections. Nested env vars use a double underscore: AUTOORGANIZE_GRAPH__DEFAULT_DEPTH."""

    app_name: str = "AutoOrganize"
    version: str = "0.1.0"
    environment: Literal["development", "production", "test"] = "development"

    storage: StorageConfig = Field(default_factory=StorageConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    relationships: RelationshipConfig = Field(default_factory=RelationshipConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AUTOORGANIZE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        """Settings with values from a YAML mapping; missing files give defaults."""
        if not path.is_file():
            return cls()
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")
        return cls(**data)


def find_config_file() -> Optional[Path]:
    """
    Locate the settings file.

    ``AUTOORGANIZE_CONFIG_PATH`` wins; otherwise ``config/<environment>.yaml``
    and then ``config/default.yaml`` relative to the working directory.
    """
    explicit = os.environ.get("AUTOORGANIZE_CONFIG_PATH")
    if explicit:
        return Path(explicit)

    environment = os.environ.get("AUTOORGANIZE_ENVIRONMENT", "development")
    candidates = [Path("config") / f"{environment}.yaml", Path("config") / "default.yaml"]
    return next((p for p in candidates if p.is_file()), None)


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Build settings from the YAML file, the environment and defaults.

    Args:
        config_path: YAML file to read. Located with find_config_file() when omitted.
    """
    path = Path(config_path) if config_path else find_config_file()
    return Settings.from_yaml(path) if path else Settings()


# ==================== Cached Access ====================

# section name -> field overrides, applied on top of the loaded settings
_overrides: dict[str, dict] = {}


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings.

    Loaded once; apply_runtime_overrides() and clear_settings_cache()
    force the next call to rebuild.
    """
    settings = load_config()
    sections = {
        name: getattr(settings, name).model_copy(update=values)
        for name, values in _overrides.items()
        if isinstance(getattr(settings, name, None), BaseSettings)
    }
    return settings.model_copy(update=sections) if sections else settings


def apply_runtime_overrides(section: str, updates: dict) -> None:
    """
    Change fields of one settings section for the rest of the process.

    Args:
        section: Section attribute, e.g. ``"embedding"``. Unknown sections are ignored.
        updates: Field name to value
    """
    _overrides.setdefault(section, {}).update(updates)
    get_settings.cache_clear()


def clear_settings_cache() -> None:
    """Forget runtime overrides and the cached settings."""
    _overrides.clear()
    get_settings.cache_clear()
