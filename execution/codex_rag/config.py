"""
Configuration for the CodexAI RAG core

One RAGConfig is built at process start (usually via RAGConfig.from_env())
and passed to the factories that build the embedding service, chunk store
and pipeline. Nothing reads the environment again after that.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


# Default model and dimensionality for each embedding provider
PROVIDER_DEFAULTS = {
    "voyage": {"model": "voyage-law-2", "dimensions": 1024},
    "cohere": {"model": "embed-multilingual-v3.0", "dimensions": 1024},
    "openai": {"model": "text-embedding-3-small", "dimensions": 1536},
    "local": {"model": "BAAI/bge-m3", "dimensions": 1024},
}

SUPPORTED_STORES = frozenset({"memory", "postgres"})


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RAGConfig:
    """Process-wide settings for chunking, embedding, storage and search."""
    # Chunking (unit: whitespace-delimited words)
    chunk_size: int = 500
    chunk_overlap: int = 100

    # Embedding provider, chosen once at startup
    embedding_provider: str = "voyage"
    embedding_model: Optional[str] = None
    embedding_dimensions: Optional[int] = None
    embedding_base_url: Optional[str] = None
    embedding_cache_dir: Optional[str] = None

    # Search defaults
    search_limit: int = 5
    search_threshold: float = 0.5
    use_vector_index: bool = True
    candidate_multiplier: int = 4

    # Timeouts (seconds)
    ingest_timeout_seconds: float = 300.0
    search_timeout_seconds: float = 30.0

    # Storage
    store: str = "memory"
    connection_string: Optional[str] = None

    def __post_init__(self):
        provider_defaults = PROVIDER_DEFAULTS.get(self.embedding_provider)
        if provider_defaults is not None:
            if self.embedding_model is None:
                self.embedding_model = provider_defaults["model"]
            if self.embedding_dimensions is None:
                self.embedding_dimensions = provider_defaults["dimensions"]

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "RAGConfig":
        """
        Build a configuration from environment variables (and a .env file).

        Unset variables fall back to the dataclass defaults.
        """
        load_dotenv(dotenv_path)

        dims = os.getenv("EMBEDDING_DIMENSIONS")
        return cls(
            chunk_size=int(os.getenv("RAG_CHUNK_SIZE", "500")),
            chunk_overlap=int(os.getenv("RAG_CHUNK_OVERLAP", "100")),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "voyage").strip().lower(),
            embedding_model=os.getenv("EMBEDDING_MODEL") or None,
            embedding_dimensions=int(dims) if dims else None,
            embedding_base_url=os.getenv("EMBEDDING_BASE_URL") or None,
            embedding_cache_dir=os.getenv("EMBEDDING_CACHE_DIR") or None,
            search_limit=int(os.getenv("RAG_SEARCH_LIMIT", "5")),
            search_threshold=float(os.getenv("RAG_SEARCH_THRESHOLD", "0.5")),
            use_vector_index=_env_bool("RAG_USE_VECTOR_INDEX", True),
            candidate_multiplier=int(os.getenv("RAG_CANDIDATE_MULTIPLIER", "4")),
            ingest_timeout_seconds=float(os.getenv("RAG_INGEST_TIMEOUT", "300")),
            search_timeout_seconds=float(os.getenv("RAG_SEARCH_TIMEOUT", "30")),
            store=os.getenv("RAG_STORE", "memory").strip().lower(),
            connection_string=(
                os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL") or None
            ),
        )

    def validate_store(self) -> bool:
        """Check that the configured store backend is supported."""
        return self.store in SUPPORTED_STORES
