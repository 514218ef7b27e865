"""
Configuration for the graph consistency engine.

Each stage has its own dataclass with validated defaults and a from_env()
constructor. GraphkeeperConfig.from_env() loads a .env file first, so the
sub-configs see the same environment.

Environment variables:
    DATABASE_URL                 PostgreSQL DSN for PostgresGraphStore
    GK_DB_POOL_MIN / GK_DB_POOL_MAX / GK_DB_COMMAND_TIMEOUT
    GK_LLM_MODEL                 Model for arbitration + summarization
    GK_LLM_MAX_TOKENS / GK_LLM_TEMPERATURE / GK_LLM_MAX_RETRIES
    GK_EMBEDDING_MODEL / GK_EMBEDDING_DIM / GK_EMBEDDING_BATCH_SIZE
    GK_IDENTITY_SEARCH_LIMIT / GK_IDENTITY_SIMILARITY_THRESHOLD
    GK_IDENTITY_CONTEXT_WINDOW_HOURS
    GK_FACT_SEARCH_LIMIT
    GK_CLUSTER_MAX_ITERATIONS / GK_CLUSTER_MIN_SIZE / GK_CLUSTER_MAX_CONCURRENT
    SEMAPHORE_LIMIT              Max concurrent LLM calls per stage
    GK_LOG_LEVEL / GK_LOG_FILE
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got '{raw}'", details={"variable": name}, cause=e
        ) from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got '{raw}'", details={"variable": name}, cause=e
        ) from e


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings (graph schema, pgvector)."""

    dsn: Optional[str] = None
    schema: str = "graph"
    pool_min_size: int = 2
    pool_max_size: int = 10
    command_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.pool_min_size < 0:
            raise ValueError(f"pool_min_size must be >= 0, got {self.pool_min_size}")
        if self.pool_max_size < max(1, self.pool_min_size):
            raise ValueError(
                f"pool_max_size must be >= max(1, pool_min_size), got {self.pool_max_size}"
            )
        if self.command_timeout <= 0:
            raise ValueError(f"command_timeout must be > 0, got {self.command_timeout}")
        if not self.schema.isidentifier():
            raise ValueError(f"schema must be a plain identifier, got '{self.schema}'")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load database config from environment variables."""
        return cls(
            dsn=os.getenv("DATABASE_URL") or None,
            schema=os.getenv("GK_DB_SCHEMA", "graph"),
            pool_min_size=_env_int("GK_DB_POOL_MIN", 2),
            pool_max_size=_env_int("GK_DB_POOL_MAX", 10),
            command_timeout=_env_float("GK_DB_COMMAND_TIMEOUT", 30.0),
        )


@dataclass
class LLMConfig:
    """LLM settings shared by the arbiter and the summarizer."""

    model: str = "claude-haiku-4-5"
    max_tokens: int = 1024
    temperature: float = 0.0  # Deterministic verdicts
    max_retries: int = 3
    retry_base_delay: float = 2.0

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")
        if not (0.0 <= self.temperature <= 1.0):
            raise ValueError(f"temperature must be in [0.0, 1.0], got {self.temperature}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            raise ValueError(f"retry_base_delay must be >= 0, got {self.retry_base_delay}")

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load LLM config from environment variables."""
        return cls(
            model=os.getenv("GK_LLM_MODEL", "claude-haiku-4-5"),
            max_tokens=_env_int("GK_LLM_MAX_TOKENS", 1024),
            temperature=_env_float("GK_LLM_TEMPERATURE", 0.0),
            max_retries=_env_int("GK_LLM_MAX_RETRIES", 3),
        )


@dataclass
class EmbeddingConfig:
    """Sentence-transformers model used for names and facts."""

    model_name: str = "intfloat/multilingual-e5-small"
    dimension: int = 384
    batch_size: int = 256

    def __post_init__(self) -> None:
        if self.dimension < 1:
            raise ValueError(f"dimension must be >= 1, got {self.dimension}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        """Load embedding config from environment variables."""
        return cls(
            model_name=os.getenv("GK_EMBEDDING_MODEL", "intfloat/multilingual-e5-small"),
            dimension=_env_int("GK_EMBEDDING_DIM", 384),
            batch_size=_env_int("GK_EMBEDDING_BATCH_SIZE", 256),
        )


@dataclass
class IdentityResolutionConfig:
    """
    Entity deduplication settings.

    Blocking bounds each candidate's comparison set before arbitration:
    - storage search by name/embedding (search_limit results)
    - in-batch peers with equal normalized name or cosine >= similarity_threshold
    """

    search_limit: int = 50
    similarity_threshold: float = 0.90
    max_peers: int = 20  # In-batch peers shown to the arbiter per candidate
    context_window_hours: int = 168  # Previous-episode context (7 days)

    def __post_init__(self) -> None:
        if self.search_limit < 1:
            raise ValueError(f"search_limit must be >= 1, got {self.search_limit}")
        if not (0.0 <= self.similarity_threshold <= 1.0):
            raise ValueError(
                f"similarity_threshold must be in [0.0, 1.0], got {self.similarity_threshold}"
            )
        if self.max_peers < 0:
            raise ValueError(f"max_peers must be >= 0, got {self.max_peers}")
        if self.context_window_hours < 0:
            raise ValueError(
                f"context_window_hours must be >= 0, got {self.context_window_hours}"
            )

    @classmethod
    def from_env(cls) -> "IdentityResolutionConfig":
        """Load identity resolution config from environment variables."""
        return cls(
            search_limit=_env_int("GK_IDENTITY_SEARCH_LIMIT", 50),
            similarity_threshold=_env_float("GK_IDENTITY_SIMILARITY_THRESHOLD", 0.90),
            context_window_hours=_env_int("GK_IDENTITY_CONTEXT_WINDOW_HOURS", 168),
        )


@dataclass
class FactResolutionConfig:
    """Relationship resolution settings."""

    search_limit: int = 50

    def __post_init__(self) -> None:
        if self.search_limit < 1:
            raise ValueError(f"search_limit must be >= 1, got {self.search_limit}")

    @classmethod
    def from_env(cls) -> "FactResolutionConfig":
        """Load fact resolution config from environment variables."""
        return cls(search_limit=_env_int("GK_FACT_SEARCH_LIMIT", 50))


@dataclass
class ClusterConfig:
    """Community detection settings (label propagation + summarization)."""

    max_iterations: int = 100
    min_cluster_size: int = 2  # Singletons carry no relationship structure
    max_concurrent_clusters: int = 10
    max_name_length: int = 100

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.min_cluster_size < 2:
            raise ValueError(f"min_cluster_size must be >= 2, got {self.min_cluster_size}")
        if self.max_concurrent_clusters < 1:
            raise ValueError(
                f"max_concurrent_clusters must be >= 1, got {self.max_concurrent_clusters}"
            )

    @classmethod
    def from_env(cls) -> "ClusterConfig":
        """Load cluster config from environment variables."""
        return cls(
            max_iterations=_env_int("GK_CLUSTER_MAX_ITERATIONS", 100),
            min_cluster_size=_env_int("GK_CLUSTER_MIN_SIZE", 2),
            max_concurrent_clusters=_env_int("GK_CLUSTER_MAX_CONCURRENT", 10),
        )


@dataclass
class ConcurrencyConfig:
    """Caps on concurrent collaborator calls."""

    semaphore_limit: int = 20

    def __post_init__(self) -> None:
        if self.semaphore_limit < 1:
            raise ValueError(f"semaphore_limit must be >= 1, got {self.semaphore_limit}")

    @classmethod
    def from_env(cls) -> "ConcurrencyConfig":
        """Load concurrency config (SEMAPHORE_LIMIT, default 20)."""
        return cls(semaphore_limit=_env_int("SEMAPHORE_LIMIT", 20))


@dataclass
class GraphkeeperConfig:
    """
    Complete configuration for the consistency engine.

    Usage:
        config = GraphkeeperConfig()                 # defaults
        config = GraphkeeperConfig.from_env()        # .env + environment
        config = GraphkeeperConfig(cluster=ClusterConfig(max_iterations=50))
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    identity: IdentityResolutionConfig = field(default_factory=IdentityResolutionConfig)
    fact: FactResolutionConfig = field(default_factory=FactResolutionConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "GraphkeeperConfig":
        """
        Load configuration from a .env file and environment variables.

        Raises:
            ConfigurationError: If a variable cannot be parsed or a value is out of range
        """
        load_dotenv(dotenv_path)
        try:
            return cls(
                database=DatabaseConfig.from_env(),
                llm=LLMConfig.from_env(),
                embedding=EmbeddingConfig.from_env(),
                identity=IdentityResolutionConfig.from_env(),
                fact=FactResolutionConfig.from_env(),
                cluster=ClusterConfig.from_env(),
                concurrency=ConcurrencyConfig.from_env(),
                log_level=os.getenv("GK_LOG_LEVEL", "INFO"),
                log_file=os.getenv("GK_LOG_FILE") or None,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}", cause=e) from e
