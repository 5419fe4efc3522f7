"""
CodexAI RAG core - retrieval for a French legal assistant

This module provides:
- Word-window chunking of statutes, decisions and vault documents
- Pluggable embedding providers (Voyage AI, Cohere, OpenAI-compatible, local)
- A tenant-scoped chunk store (in-memory or PostgreSQL + pgvector)
- Cosine ranking, French legal citations and prompt context assembly
"""

__version__ = "0.1.0"

from .models import SourceType, Chunk, SearchResult, IngestionStatus, IngestionRecord
from .exceptions import (
    RAGError,
    ValidationError,
    EmbeddingServiceError,
    AccessError,
    DimensionMismatchError,
    RAGTimeoutError,
)
from .config import RAGConfig
from .chunker import TextChunker, chunk_text
from .embeddings import get_embedding_service
from .chunk_store import ChunkStore, InMemoryChunkStore, PostgresChunkStore
from .ranker import SimilarityRanker, cosine_similarity
from .citation import LegalCitationFormatter, format_citation
from .context import ContextAssembler, RAGContext, build_system_prompt
from .pipeline import RAGPipeline, build_pipeline

__all__ = [
    "SourceType",
    "Chunk",
    "SearchResult",
    "IngestionStatus",
    "IngestionRecord",
    "RAGError",
    "ValidationError",
    "EmbeddingServiceError",
    "AccessError",
    "DimensionMismatchError",
    "RAGTimeoutError",
    "RAGConfig",
    "TextChunker",
    "chunk_text",
    "get_embedding_service",
    "ChunkStore",
    "InMemoryChunkStore",
    "PostgresChunkStore",
    "SimilarityRanker",
    "cosine_similarity",
    "LegalCitationFormatter",
    "format_citation",
    "ContextAssembler",
    "RAGContext",
    "build_system_prompt",
    "RAGPipeline",
    "build_pipeline",
]
