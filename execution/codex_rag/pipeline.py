"""
RAG Pipeline for CodexAI

The in-process entry point used by request handlers:

    ingest(document_id, text, source_type, metadata, tenant_id)
        chunk -> embed (batched, source order) -> store

    search(query, source_type, tenant_id, limit, threshold)
        embed query -> scoped candidates (index or scan) -> rank -> assemble

Ingestion is serialised per document through the store's document lock and
tracked with a pending/complete/failed marker, so an aborted run is detected
and its partial chunks removed by the next attempt.
"""

import time
import asyncio
import logging
from typing import Any, Mapping, Optional

from .chunker import ChunkConfig, TextChunker
from .chunk_store import ChunkStore, get_chunk_store, PostgresChunkStore
from .config import RAGConfig
from .context import ContextAssembler, RAGContext
from .embeddings import BaseEmbeddingService, get_embedding_service
from .exceptions import AccessError, EmbeddingServiceError, RAGTimeoutError, ValidationError
from .metrics import get_metrics_collector
from .models import Chunk, IngestionRecord, IngestionStatus, SourceType
from .ranker import SimilarityRanker

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("codex_rag.security")


class RAGPipeline:
    """
    Ingestion and retrieval over one embedding service and one chunk store.

    All collaborators are injected; nothing here reads the environment.
    """

    def __init__(
        self,
        embedding_service: BaseEmbeddingService,
        store: ChunkStore,
        config: Optional[RAGConfig] = None,
        chunker: Optional[TextChunker] = None,
        ranker: Optional[SimilarityRanker] = None,
        assembler: Optional[ContextAssembler] = None,
    ):
        self.config = config or RAGConfig()
        self.embeddings = embedding_service
        self.store = store
        self.chunker = chunker or TextChunker(ChunkConfig(
            chunk_size=self.config.chunk_size,
            overlap=self.config.chunk_overlap,
        ))
        self.ranker = ranker or SimilarityRanker()
        self.assembler = assembler or ContextAssembler()
        self._metrics = get_metrics_collector()

        if embedding_service.dimensions != store.dimensions:
            raise ValidationError(
                f"Embedding service produces {embedding_service.dimensions}-dimensional "
                f"vectors but the store expects {store.dimensions}"
            )

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest(
        self,
        document_id: str,
        text: str,
        source_type,
        metadata: Optional[Mapping[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> IngestionRecord:
        """
        Chunk, embed and store a document, replacing any previous chunk set.

        Args:
            document_id: Owning document identifier
            text: Extracted document text
            source_type: SourceType (or string value / alias)
            metadata: Source metadata copied onto every chunk
            tenant_id: Owner; required for private-vault documents

        Returns:
            The document's final ingestion record (status complete)

        Raises:
            ValidationError: bad input, or a chunk rejected by the store
            EmbeddingServiceError: embedding provider failure (caller retries)
            AccessError: document owned by another tenant (or public) or
                         recorded under another source type
            RAGTimeoutError: ingestion exceeded ingest_timeout_seconds
        """
        resolved = self._validate_ingest(document_id, text, source_type, metadata, tenant_id)
        timeout = self.config.ingest_timeout_seconds

        try:
            return await asyncio.wait_for(
                self._ingest(document_id, text, resolved, dict(metadata or {}), tenant_id),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Ingestion of document {document_id} timed out after {timeout}s")
            self._metrics.record_ingestion_failure(RAGTimeoutError.__name__)
            raise RAGTimeoutError("ingest", timeout) from e

    def _validate_ingest(self, document_id, text, source_type, metadata, tenant_id) -> SourceType:
        if not document_id or not str(document_id).strip():
            raise ValidationError("document_id is required")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(f"Document {document_id} has no text to ingest")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be a mapping")

        resolved = SourceType.parse(source_type)
        if resolved is None:
            raise ValidationError(f"Unknown source type: {source_type!r}")
        if resolved is SourceType.PRIVATE_VAULT and not tenant_id:
            raise ValidationError("tenant_id is required for private-vault documents")
        return resolved

    async def _ingest(
        self,
        document_id: str,
        text: str,
        source_type: SourceType,
        metadata: dict,
        tenant_id: Optional[str],
    ) -> IngestionRecord:
        start_time = time.time()

        async with self.store.document_lock(document_id):
            previous = await self.store.get_ingestion_status(document_id)
            if previous is not None:
                self._check_owner(previous, tenant_id, "replace", source_type)

            # Retry cleanup for pending/failed runs, replacement for complete ones
            removed = await self.store.delete_document(document_id)
            if removed:
                state = previous.status.value if previous else "untracked"
                logger.info(f"Removed {removed} chunks from {state} ingestion of {document_id}")

            await self.store.set_ingestion_status(IngestionRecord(
                document_id=document_id,
                status=IngestionStatus.PENDING,
                tenant_id=tenant_id,
                source_type=source_type,
            ))

            try:
                count = await self._store_chunks(document_id, text, source_type, metadata, tenant_id)
            except Exception as e:
                logger.error(f"Ingestion of document {document_id} failed: {e}")
                self._metrics.record_ingestion_failure(type(e).__name__)
                try:
                    await self.store.set_ingestion_status(IngestionRecord(
                        document_id=document_id,
                        status=IngestionStatus.FAILED,
                        tenant_id=tenant_id,
                        source_type=source_type,
                    ))
                except Exception as status_error:
                    # The pending marker stays; the next attempt still cleans up
                    logger.error(f"Could not mark document {document_id} as failed: {status_error}")
                raise e

            record = IngestionRecord(
                document_id=document_id,
                status=IngestionStatus.COMPLETE,
                tenant_id=tenant_id,
                chunk_count=count,
                source_type=source_type,
            )
            await self.store.set_ingestion_status(record)

        duration_ms = (time.time() - start_time) * 1000
        self._metrics.record_ingestion(tenant_id, document_id, count, duration_ms)
        logger.info(f"Ingested document {document_id}: {count} chunks in {duration_ms:.0f}ms")
        return record

    async def _store_chunks(
        self,
        document_id: str,
        text: str,
        source_type: SourceType,
        metadata: dict,
        tenant_id: Optional[str],
    ) -> int:
        texts = self.chunker.chunk(text)
        vectors = await self.embeddings.embed_documents(texts)

        for index, (chunk_text, vector) in enumerate(zip(texts, vectors)):
            chunk = Chunk.create(
                document_id=document_id,
                source_type=source_type,
                text=chunk_text,
                embedding=vector,
                metadata={**metadata, "chunkIndex": index},
                tenant_id=tenant_id,
            )
            await self.store.put(chunk)

        return len(texts)

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search(
        self,
        query: str,
        source_type=None,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> RAGContext:
        """
        Retrieve the context block for a question.

        Args:
            query: User question
            source_type: Optional source type filter
            tenant_id: Caller's tenant (mandatory for private-vault)
            limit: Maximum citations (defaults to config.search_limit)
            threshold: Minimum similarity (defaults to config.search_threshold)

        Returns:
            RAGContext; empty when nothing qualifies or the embedding
            service is unavailable

        Raises:
            AccessError: private-vault search without tenant_id
            ValidationError: unknown source type
            RAGTimeoutError: search exceeded search_timeout_seconds
        """
        limit = self.config.search_limit if limit is None else limit
        threshold = self.config.search_threshold if threshold is None else threshold
        timeout = self.config.search_timeout_seconds

        with self._metrics.track_search(tenant_id, query or "") as tracker:
            scope = self.store.check_scope(source_type, tenant_id)

            if not query or not query.strip() or limit <= 0:
                tracker.set_results(0)
                return RAGContext()

            try:
                return await asyncio.wait_for(
                    self._search(query, scope, tenant_id, limit, threshold, tracker),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error(f"Search timed out after {timeout}s: {query[:50]}...")
                raise RAGTimeoutError("search", timeout) from e

    async def _search(self, query, scope, tenant_id, limit, threshold, tracker) -> RAGContext:
        logger.info(f"Searching ({scope.value if scope else 'all sources'}): {query[:50]}...")

        try:
            query_vector = await self.embeddings.embed_query(query)
        except EmbeddingServiceError as e:
            logger.warning(f"Embedding unavailable, returning empty context: {e}")
            tracker.set_results(0, degraded=True)
            return RAGContext()

        candidates = None
        if self.config.use_vector_index:
            candidates = await self.store.nearest(
                query_vector, scope, tenant_id, limit * self.config.candidate_multiplier
            )
        used_index = candidates is not None
        if candidates is None:
            candidates = await self.store.query_by_scope(scope, tenant_id)

        results = self.ranker.rank(query_vector, candidates, limit, threshold)
        tracker.set_results(len(results), candidates=len(candidates), used_index=used_index)

        logger.info(f"Found {len(results)} results from {len(candidates)} candidates")
        return self.assembler.assemble(results)

    # =========================================================================
    # Document management
    # =========================================================================

    async def delete_document(self, document_id: str, tenant_id: Optional[str] = None) -> int:
        """
        Remove every chunk of a document and its ingestion record.

        Returns:
            Number of chunks deleted (0 for an unknown document)

        Raises:
            AccessError: caller is not the document's recorded owner
        """
        async with self.store.document_lock(document_id):
            record = await self.store.get_ingestion_status(document_id)
            if record is not None:
                self._check_owner(record, tenant_id, "delete")

            removed = await self.store.delete_document(document_id, tenant_id)
            await self.store.clear_ingestion_status(document_id)

        logger.info(f"Deleted document {document_id} ({removed} chunks)")
        return removed

    async def get_ingestion_status(
        self,
        document_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[IngestionRecord]:
        """Ingestion record of a document; another tenant's document reads as missing."""
        record = await self.store.get_ingestion_status(document_id)
        if record is None:
            return None
        if record.tenant_id and record.tenant_id != tenant_id:
            return None
        return record

    async def close(self) -> None:
        await self.store.close()

    def _check_owner(
        self,
        record: IngestionRecord,
        tenant_id: Optional[str],
        action: str,
        source_type: Optional[SourceType] = None,
    ) -> None:
        """
        Only the recorded owner may replace or delete a document.

        A public document has no owner tenant, so a tenant cannot claim it and
        an untenanted caller cannot touch a vault document. Replacement must
        also keep the recorded source type.
        """
        if record.tenant_id != tenant_id:
            self._deny(
                f"Tenant {tenant_id!r} tried to {action} document {record.document_id} "
                f"owned by {record.tenant_id or 'public'!r}"
            )
        if source_type is not None and record.source_type is not None and record.source_type is not source_type:
            self._deny(
                f"Tenant {tenant_id!r} tried to {action} {record.source_type.value} document "
                f"{record.document_id} as {source_type.value}"
            )

    def _deny(self, message: str) -> None:
        security_logger.warning(message)
        self._metrics.record_access_denied()
        raise AccessError(message)


async def build_pipeline(config: Optional[RAGConfig] = None) -> RAGPipeline:
    """
    Build a pipeline from configuration (RAGConfig.from_env() by default).

    Connects the Postgres store when one is configured.
    """
    config = config or RAGConfig.from_env()
    if not config.validate_store():
        raise ValueError(f"Unknown chunk store '{config.store}'. Expected 'memory' or 'postgres'")

    embedding_service = get_embedding_service(config)
    # A local model reports its own dimensionality once loaded
    config.embedding_dimensions = embedding_service.dimensions

    store = get_chunk_store(config)
    if isinstance(store, PostgresChunkStore):
        await store.connect()

    return RAGPipeline(embedding_service, store, config)


# CLI for testing
if __name__ == "__main__":
    import sys

    from .document_loader import load_document

    logging.basicConfig(level=logging.INFO)

    async def _main(path: str, question: str):
        pipeline = await build_pipeline()
        try:
            document = load_document(path)
            record = await pipeline.ingest(
                document_id=document.metadata["fileName"],
                text=document.text,
                source_type=SourceType.PRIVATE_VAULT,
                metadata=document.metadata,
                tenant_id="cli",
            )
            print(f"Ingested {record.chunk_count} chunks")

            context = await pipeline.search(question, tenant_id="cli")
            if context.is_empty:
                print("Aucune source pertinente.")
            for result in context.citations:
                print(f"[{result.citation}] ({result.similarity:.3f}) {result.chunk.text[:120]}...")
        finally:
            await pipeline.close()

    if len(sys.argv) < 3:
        print("Usage: python -m execution.codex_rag.pipeline <file> <question>")
        sys.exit(1)
    asyncio.run(_main(sys.argv[1], " ".join(sys.argv[2:])))
