"""Service configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..services.cache import DEFAULT_CACHE_CAPACITY
from ..services.pruning import DEFAULT_IMPORTANCE_FLOOR, DEFAULT_RETENTION_DAYS

DEFAULT_CONFIG_PATH = "~/.companion-memory/config.yaml"

EMBEDDING_PROVIDERS = ("fastembed", "openai", "none")
DATABASE_PROVIDERS = ("lancedb", "sqlite", "memory")


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration.

    Default: FastEmbed (local, zero cloud, zero cost).

    For OpenAI embeddings:
        provider: openai
        model: text-embedding-3-small
        dimensions: 300
        api_key: <your-api-key>

    ``provider: none`` stores every memory with the zero vector; tag
    search and lookup by id still work.
    """
    provider: str = "fastembed"
    model: str = "BAAI/bge-small-en-v1.5"
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    dimensions: int = 384

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.environ.get("OPENAI_API_KEY")
        if self.api_base is None:
            self.api_base = os.environ.get("COMPANION_MEMORY_EMBEDDING_API_BASE")
        if self.dimensions < 1:
            raise ValueError("dimensions must be >= 1")


@dataclass
class DatabaseConfig:
    """Persistent backend configuration."""
    provider: str = "lancedb"
    path: str = "~/.companion-memory/db"
    uri: Optional[str] = None  # For LanceDB Cloud

    def __post_init__(self):
        if self.path != ":memory:":
            self.path = str(Path(self.path).expanduser())


@dataclass
class CacheConfig:
    """In-process LRU cache configuration."""
    capacity: int = DEFAULT_CACHE_CAPACITY

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("cache capacity must be >= 1")


@dataclass
class PruningConfig:
    """Maintenance pruning configuration.

    The server runs a prune pass every ``interval_hours`` removing memories
    older than ``retention_days`` whose importance is below ``importance_floor``.
    """
    enabled: bool = True
    importance_floor: float = DEFAULT_IMPORTANCE_FLOOR
    retention_days: int = DEFAULT_RETENTION_DAYS
    interval_hours: float = 24.0
    deadline_seconds: Optional[float] = None

    def __post_init__(self):
        if not 0.0 <= self.importance_floor <= 1.0:
            raise ValueError("importance_floor must be within [0, 1]")
        if self.retention_days < 0:
            raise ValueError("retention_days must be non-negative")
        if self.interval_hours <= 0:
            raise ValueError("interval_hours must be positive")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "127.0.0.1"
    port: int = 18791


@dataclass
class CompanionMemoryConfig:
    """Full service configuration."""
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "CompanionMemoryConfig":
        """Load configuration from YAML file."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "CompanionMemoryConfig":
        """Create configuration from dictionary."""
        db_data = data.get("db", {})
        embedding_data = data.get("embedding", {})
        cache_data = data.get("cache", {})
        pruning_data = data.get("pruning", {})
        server_data = data.get("server", {})

        return cls(
            db=DatabaseConfig(**db_data) if db_data else DatabaseConfig(),
            embedding=EmbeddingConfig(**embedding_data) if embedding_data else EmbeddingConfig(),
            cache=CacheConfig(**cache_data) if cache_data else CacheConfig(),
            pruning=PruningConfig(**pruning_data) if pruning_data else PruningConfig(),
            server=ServerConfig(**server_data) if server_data else ServerConfig(),
        )

    @classmethod
    def from_env(cls) -> "CompanionMemoryConfig":
        """Create configuration from environment variables."""
        config_path = os.environ.get("COMPANION_MEMORY_CONFIG", DEFAULT_CONFIG_PATH)
        return cls.from_file(config_path)

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.embedding.provider not in EMBEDDING_PROVIDERS:
            errors.append(
                f"embedding.provider must be one of {', '.join(EMBEDDING_PROVIDERS)}"
            )
        elif self.embedding.provider == "openai":
            api_base = (self.embedding.api_base or "").strip()
            is_local = api_base != "" and "api.openai.com" not in api_base.lower()
            if not self.embedding.api_key and not is_local:
                errors.append("embedding.api_key is required (or set OPENAI_API_KEY)")

        if self.db.provider not in DATABASE_PROVIDERS:
            errors.append(f"db.provider must be one of {', '.join(DATABASE_PROVIDERS)}")
        elif self.db.provider != "memory" and not (self.db.path or self.db.uri):
            errors.append("db.path or db.uri is required")

        return errors
