"""
FastAPI Backend for the CodexAI RAG core

Exposes ingestion and retrieval to the assistant, knowledge and vault
screens. The tenant is taken from the X-Tenant-ID header; authenticating
that header is the job of the gateway in front of this service.

Run with: uvicorn execution.codex_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import uuid
import asyncio
import logging
import tempfile
from typing import Optional
from pathlib import Path
from collections import defaultdict

from fastapi import FastAPI, HTTPException, UploadFile, File, Depends, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    IngestRequest, IngestResponse,
    SearchRequest, SearchResponse, CitationInfo,
    DeleteResponse, StatusResponse,
    HealthResponse,
)
from .document_loader import MIME_TYPES, load_document
from .exceptions import (
    AccessError, EmbeddingServiceError, RAGError, RAGTimeoutError, ValidationError,
)
from .metrics import get_metrics_collector
from .models import SourceType
from .pipeline import RAGPipeline, build_pipeline

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)


app = FastAPI(
    title="CodexAI RAG API",
    description="Retrieval over French statutes, case law and private vault documents",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error mapping
# =============================================================================

_STATUS_BY_ERROR = (
    (ValidationError, 422),
    (AccessError, 403),
    (EmbeddingServiceError, 503),
    (RAGTimeoutError, 504),
)


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError):
    """Translate core errors into HTTP responses."""
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error(f"Unhandled RAG error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window

        self._requests[key] = [t for t in self._requests[key] if t > window_start]

        if len(self._requests[key]) >= self._max_requests:
            return False

        self._requests[key].append(now)
        return True


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "60")),
    window_seconds=60,
)


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per tenant."""
    key = request.headers.get("x-tenant-id") or (request.client.host if request.client else "anonymous")
    if not _rate_limiter.is_allowed(key):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Holds the process-wide pipeline, built on first use."""

    def __init__(self):
        self._pipeline: Optional[RAGPipeline] = None
        self._lock = asyncio.Lock()

    async def get_pipeline(self) -> RAGPipeline:
        if self._pipeline is None:
            async with self._lock:
                if self._pipeline is None:
                    self._pipeline = await build_pipeline()
                    logger.info(
                        f"Pipeline ready (store={self._pipeline.config.store}, "
                        f"provider={self._pipeline.config.embedding_provider})"
                    )
        return self._pipeline

    async def close(self):
        if self._pipeline is not None:
            await self._pipeline.close()
            self._pipeline = None


_container = ServiceContainer()


async def get_pipeline() -> RAGPipeline:
    """FastAPI dependency returning the shared pipeline."""
    return await _container.get_pipeline()


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller's tenant from the X-Tenant-ID header (None for public-only access)."""
    if x_tenant_id is None:
        return None
    return x_tenant_id.strip() or None


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check(pipeline: RAGPipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=__version__,
        store=pipeline.config.store,
        embedding_provider=pipeline.config.embedding_provider,
    )


@app.get("/api/v1/metrics")
async def get_metrics():
    """Search, ingestion and access-control counters."""
    collector = get_metrics_collector()
    return {
        **collector.get_metrics_dict(),
        "tenants": collector.get_tenant_summary(),
        "uptime_seconds": int(collector.get_uptime().total_seconds()),
    }


@app.post("/api/v1/documents", response_model=IngestResponse, dependencies=[Depends(check_rate_limit)])
async def ingest_document(
    body: IngestRequest,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Ingest already-extracted text (statute, decision or vault document)."""
    record = await pipeline.ingest(
        document_id=body.document_id,
        text=body.text,
        source_type=body.source_type,
        metadata=body.metadata,
        tenant_id=tenant_id,
    )
    return IngestResponse(
        document_id=record.document_id,
        status=record.status.value,
        chunks=record.chunk_count,
    )


@app.post("/api/v1/documents/upload", response_model=IngestResponse, dependencies=[Depends(check_rate_limit)])
async def upload_document(
    file: UploadFile = File(...),
    tenant_id: Optional[str] = Depends(get_tenant_id),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Upload a PDF, text or markdown file into the tenant's private vault."""
    if not tenant_id:
        raise HTTPException(status_code=422, detail="X-Tenant-ID header is required for vault uploads")

    filename = file.filename or ""
    suffix = Path(filename).suffix.lower()
    if suffix not in MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file format. Allowed: {', '.join(sorted(MIME_TYPES))}",
        )

    # Save to temp file
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        tmp.write(await file.read())
        tmp_path = tmp.name

    try:
        document = await asyncio.to_thread(load_document, tmp_path)
        # The temp name is meaningless to users
        document.metadata["fileName"] = Path(filename).name

        record = await pipeline.ingest(
            document_id=str(uuid.uuid4()),
            text=document.text,
            source_type=SourceType.PRIVATE_VAULT,
            metadata=document.metadata,
            tenant_id=tenant_id,
        )
    finally:
        os.unlink(tmp_path)

    return IngestResponse(
        document_id=record.document_id,
        status=record.status.value,
        chunks=record.chunk_count,
    )


@app.delete("/api/v1/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(
    document_id: str,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Delete a document and all its chunks (tenant-isolated)."""
    removed = await pipeline.delete_document(document_id, tenant_id=tenant_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Document not found")
    return DeleteResponse(status="deleted", document_id=document_id, chunks_deleted=removed)


@app.get("/api/v1/documents/{document_id}/status", response_model=StatusResponse)
async def document_status(
    document_id: str,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Ingestion status of a document."""
    record = await pipeline.get_ingestion_status(document_id, tenant_id=tenant_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return StatusResponse(
        document_id=record.document_id,
        status=record.status.value,
        chunk_count=record.chunk_count,
        updated_at=record.updated_at.isoformat(),
    )


@app.post("/api/v1/search", response_model=SearchResponse, dependencies=[Depends(check_rate_limit)])
async def search(
    body: SearchRequest,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Retrieve the context block and citations for a question."""
    start_time = time.time()

    context = await pipeline.search(
        body.query,
        source_type=body.source_type,
        tenant_id=tenant_id,
        limit=body.limit,
        threshold=body.threshold,
    )

    citations = [
        CitationInfo(
            citation=result.citation,
            similarity=result.similarity,
            chunk_id=result.chunk.id,
            document_id=result.chunk.document_id,
            source_type=result.chunk.source_type.value,
            text=result.chunk.text,
            metadata=result.chunk.metadata,
        )
        for result in context.citations
    ]

    return SearchResponse(
        context=context.context,
        citations=citations,
        latency_ms=(time.time() - start_time) * 1000,
    )
