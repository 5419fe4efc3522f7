"""
Pydantic models for the CodexAI RAG FastAPI backend.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field

from .models import SourceType


class IngestRequest(BaseModel):
    """Request body for text ingestion."""
    document_id: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1)
    source_type: SourceType
    metadata: dict[str, Any] = {}


class IngestResponse(BaseModel):
    """Response body for ingestion and upload."""
    document_id: str
    status: str
    chunks: int


class SearchRequest(BaseModel):
    """Request body for the search endpoint."""
    query: str = Field(..., min_length=1, max_length=2000)
    source_type: Optional[SourceType] = None
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class CitationInfo(BaseModel):
    """One retrieved chunk with its citation."""
    citation: str
    similarity: float
    chunk_id: str
    document_id: Optional[str] = None
    source_type: str
    text: str
    metadata: dict[str, Any] = {}


class SearchResponse(BaseModel):
    """Response body for the search endpoint."""
    context: str
    citations: list[CitationInfo]
    latency_ms: float


class DeleteResponse(BaseModel):
    """Response body for document deletion."""
    status: str
    document_id: str
    chunks_deleted: int


class StatusResponse(BaseModel):
    """Ingestion status of one document."""
    document_id: str
    status: str
    chunk_count: int
    updated_at: str


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    store: str
    embedding_provider: str
