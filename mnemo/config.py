"""Configuration models for Mnemo."""

import os
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigurationError


@dataclass
class MnemoConfig:
    """Configuration for the Mnemo engine."""

    # Embedding settings
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: Optional[int] = None  # probed from the provider when None
    embedding_base_url: Optional[str] = None  # OpenAI-compatible embedding server

    # Generation settings
    generation_provider: str = "openai"
    generation_model: str = "gpt-4o-mini"
    generation_base_url: Optional[str] = None  # required by 'custom_openai'
    temperature: float = 0.5
    context_window: int = 8192

    # Token counting ('tiktoken' or 'chars')
    token_counter: str = "tiktoken"
    token_encoding: str = "cl100k_base"

    # Retrieval settings
    similarity_threshold: float = 0.5
    num_docs_to_retrieve: int = 20

    # Indexing settings
    batch_size: int = 10
    indexing_mode: str = "full"  # 'full' or 'by_file'

    # USearch HNSW parameters
    metric: str = "cos"
    dtype: str = "f32"          # keep f32 so snapshots reproduce exact scores
    connectivity: int = 16
    expansion_add: int = 128
    expansion_search: int = 64
    exact_search: bool = False  # brute-force search instead of HNSW

    # Reduction settings
    max_reduce_passes: int = 8

    # Storage paths (ledger database and corpus snapshot)
    db_path: str = "mnemo.db"
    snapshot_path: Optional[str] = "mnemo.snapshot"

    log_level: str = "INFO"

    def validate(self) -> "MnemoConfig":
        """Raise ConfigurationError for values that would fail later at runtime."""
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError(
                f"similarity_threshold must be within [0, 1], got {self.similarity_threshold}"
            )
        if self.num_docs_to_retrieve <= 0:
            raise ConfigurationError(
                f"num_docs_to_retrieve must be positive, got {self.num_docs_to_retrieve}"
            )
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.indexing_mode not in ("full", "by_file"):
            raise ConfigurationError(
                f"indexing_mode must be 'full' or 'by_file', got {self.indexing_mode!r}"
            )
        if self.context_window <= 0:
            raise ConfigurationError(f"context_window must be positive, got {self.context_window}")
        if self.max_reduce_passes <= 0:
            raise ConfigurationError(
                f"max_reduce_passes must be positive, got {self.max_reduce_passes}"
            )
        if self.embedding_dim is not None and self.embedding_dim <= 0:
            raise ConfigurationError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.embedding_base_url and self.embedding_provider.lower() not in ("openai", "openai-embedding"):
            raise ConfigurationError(
                f"embedding_base_url only applies to the openai provider, "
                f"not {self.embedding_provider!r}"
            )
        if self.generation_provider.lower() == "custom_openai" and not self.generation_base_url:
            raise ConfigurationError("generation_provider 'custom_openai' requires generation_base_url")
        return self

    @classmethod
    def from_env(cls, prefix: str = "MNEMO_", **overrides) -> "MnemoConfig":
        """
        Build a config from environment variables.

        Every field can be set as ``MNEMO_<FIELD_NAME>`` (upper case), e.g.
        ``MNEMO_SIMILARITY_THRESHOLD=0.7``. Keyword overrides win over env.
        """
        values = {}
        for f in fields(cls):
            raw = os.environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        values.update(overrides)
        return cls(**values)


def _coerce(name: str, raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if name == "embedding_dim":
            return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}", cause=e) from e
    return raw
