"""
Chunk Store

Owns the lifecycle of indexed chunks: insert at ingestion, scoped reads at
query time, delete on document removal. Every read goes through the tenant
scope check in ChunkStore.query_by_scope / ChunkStore.nearest:

- private-vault reads require a tenant_id and only see that tenant's chunks
  (omitting it is an AccessError, never a union over tenants)
- public reads see every chunk of the requested public source type
- unscoped reads see all public chunks plus the caller's own vault chunks

Backends:
    InMemoryChunkStore  -- dict-backed, for tests and single-process use
    PostgresChunkStore  -- PostgreSQL + pgvector with an HNSW cosine index
"""

import abc
import json
import math
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Sequence

from .exceptions import AccessError, ValidationError
from .metrics import get_metrics_collector
from .models import Chunk, IngestionRecord, IngestionStatus, SourceType

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("codex_rag.security")


def resolve_source_type(source_type) -> Optional[SourceType]:
    """Parse an optional source type filter, rejecting unknown values."""
    if source_type is None:
        return None
    resolved = SourceType.parse(source_type)
    if resolved is None:
        raise ValidationError(f"Unknown source type: {source_type!r}")
    return resolved


def is_visible(chunk: Chunk, source_type: Optional[SourceType], tenant_id: Optional[str]) -> bool:
    """Whether a chunk falls inside an already-validated scope."""
    if source_type is SourceType.PRIVATE_VAULT:
        return chunk.source_type is SourceType.PRIVATE_VAULT and chunk.tenant_id == tenant_id
    if source_type is not None:
        return chunk.source_type is source_type
    if chunk.source_type.is_public:
        return True
    return tenant_id is not None and chunk.tenant_id == tenant_id


class ChunkStore(abc.ABC):
    """
    Async chunk storage contract.

    Subclasses implement the underscore-prefixed hooks; the public methods
    do validation and scope enforcement so no backend can skip them.
    """

    def __init__(self, dimensions: int):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.dimensions = dimensions

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def put(self, chunk: Chunk) -> None:
        """
        Insert a new chunk.

        Raises:
            ValidationError: wrong embedding dimension, non-finite values,
                             empty text, or a vault chunk without tenant_id
        """
        self.validate_chunk(chunk)
        await self._insert(chunk)

    async def query_by_scope(
        self,
        source_type=None,
        tenant_id: Optional[str] = None,
    ) -> list[Chunk]:
        """
        Return the chunks visible to a scope, oldest first.

        Args:
            source_type: Optional SourceType (or string value) filter
            tenant_id: Caller's tenant; mandatory for private-vault

        Raises:
            AccessError: private-vault requested without tenant_id
            ValidationError: unknown source type
        """
        resolved = self.check_scope(source_type, tenant_id)
        return await self._select(resolved, tenant_id)

    async def nearest(
        self,
        query_vector: Sequence[float],
        source_type=None,
        tenant_id: Optional[str] = None,
        limit: int = 20,
    ) -> Optional[list[Chunk]]:
        """
        Approximate nearest neighbours within a scope.

        Returns None when the backend has no vector index; callers then
        fall back to query_by_scope. Scope rules are the same.
        """
        resolved = self.check_scope(source_type, tenant_id)
        return await self._nearest(query_vector, resolved, tenant_id, limit)

    @abc.abstractmethod
    async def delete(self, chunk_id: str) -> bool:
        """Remove a chunk. Deleting an unknown id is not an error (returns False)."""

    @abc.abstractmethod
    async def delete_document(self, document_id: str, tenant_id: Optional[str] = None) -> int:
        """Remove every chunk of a document (only the tenant's, when given). Returns count."""

    @abc.abstractmethod
    async def set_ingestion_status(self, record: IngestionRecord) -> None:
        """Create or replace a document's ingestion record."""

    @abc.abstractmethod
    async def get_ingestion_status(self, document_id: str) -> Optional[IngestionRecord]:
        """Fetch a document's ingestion record, if any."""

    @abc.abstractmethod
    async def clear_ingestion_status(self, document_id: str) -> None:
        """Forget a document's ingestion record."""

    @abc.abstractmethod
    def document_lock(self, document_id: str):
        """Async context manager serialising ingestion of one document."""

    async def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_chunk(self, chunk: Chunk) -> None:
        if not isinstance(chunk.source_type, SourceType):
            raise ValidationError(f"Unknown source type: {chunk.source_type!r}")
        if not chunk.text or not chunk.text.strip():
            raise ValidationError(f"Chunk {chunk.id} has empty text")
        if len(chunk.embedding) != self.dimensions:
            raise ValidationError(
                f"Chunk {chunk.id} embedding has {len(chunk.embedding)} dimensions, "
                f"store expects {self.dimensions}"
            )
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in chunk.embedding):
            raise ValidationError(f"Chunk {chunk.id} embedding contains non-finite values")
        if chunk.source_type is SourceType.PRIVATE_VAULT and not chunk.tenant_id:
            raise ValidationError(f"Private-vault chunk {chunk.id} has no tenant_id")
        if chunk.created_at.tzinfo is None:
            raise ValidationError(f"Chunk {chunk.id} created_at has no timezone")

    def check_scope(self, source_type, tenant_id: Optional[str]) -> Optional[SourceType]:
        resolved = resolve_source_type(source_type)
        if resolved is SourceType.PRIVATE_VAULT and not tenant_id:
            security_logger.warning(
                "Rejected private-vault query without tenant_id"
            )
            get_metrics_collector().record_access_denied()
            raise AccessError(
                "tenant_id is required to query private-vault chunks",
                source_type=resolved.value,
                tenant_id=tenant_id,
            )
        return resolved

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def _insert(self, chunk: Chunk) -> None:
        ...

    @abc.abstractmethod
    async def _select(self, source_type: Optional[SourceType], tenant_id: Optional[str]) -> list[Chunk]:
        ...

    async def _nearest(
        self,
        query_vector: Sequence[float],
        source_type: Optional[SourceType],
        tenant_id: Optional[str],
        limit: int,
    ) -> Optional[list[Chunk]]:
        return None


class InMemoryChunkStore(ChunkStore):
    """
    Dict-backed chunk store.

    All state lives in one event loop; each public call completes without
    awaiting, so individual operations are atomic with respect to each other.
    """

    def __init__(self, dimensions: int):
        super().__init__(dimensions)
        self._chunks: dict[str, Chunk] = {}
        self._ingestions: dict[str, IngestionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _insert(self, chunk: Chunk) -> None:
        if chunk.id in self._chunks:
            raise ValidationError(f"Chunk {chunk.id} already exists")
        self._chunks[chunk.id] = chunk

    async def _select(self, source_type: Optional[SourceType], tenant_id: Optional[str]) -> list[Chunk]:
        visible = [c for c in self._chunks.values() if is_visible(c, source_type, tenant_id)]
        visible.sort(key=lambda c: c.created_at)
        return visible

    async def delete(self, chunk_id: str) -> bool:
        return self._chunks.pop(chunk_id, None) is not None

    async def delete_document(self, document_id: str, tenant_id: Optional[str] = None) -> int:
        doomed = [
            cid for cid, c in self._chunks.items()
            if c.document_id == document_id and (tenant_id is None or c.tenant_id == tenant_id)
        ]
        for cid in doomed:
            del self._chunks[cid]
        if doomed:
            logger.info(f"Deleted {len(doomed)} chunks of document {document_id}")
        return len(doomed)

    async def set_ingestion_status(self, record: IngestionRecord) -> None:
        self._ingestions[record.document_id] = record

    async def get_ingestion_status(self, document_id: str) -> Optional[IngestionRecord]:
        return self._ingestions.get(document_id)

    async def clear_ingestion_status(self, document_id: str) -> None:
        self._ingestions.pop(document_id, None)

    @asynccontextmanager
    async def document_lock(self, document_id: str):
        async with self._locks[document_id]:
            yield

    def __len__(self) -> int:
        return len(self._chunks)


@dataclass
class PostgresStoreConfig:
    """Configuration for the PostgreSQL chunk store."""
    connection_string: Optional[str] = None
    table_name: str = "rag_chunks"
    ingestion_table_name: str = "rag_ingestions"
    embedding_dimensions: int = 1024
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    hnsw_ef_search: int = 40


class PostgresChunkStore(ChunkStore):
    """
    PostgreSQL + pgvector chunk store.

    psycopg2 is blocking, so every database call runs in a worker thread via
    asyncio.to_thread. nearest() uses the HNSW cosine index; results are
    re-scored by the ranker so ordering matches a full scan.
    """

    _COLUMNS = "id, document_id, source_type, text, embedding::float4[] AS embedding, metadata, tenant_id, created_at"

    def __init__(self, config: Optional[PostgresStoreConfig] = None):
        self.config = config or PostgresStoreConfig()
        super().__init__(self.config.embedding_dimensions)
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            "postgresql://localhost:5432/codexai"
        )
        self._local_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect_sync(self) -> None:
        if psycopg2 is None:
            raise ImportError("psycopg2 not installed. Run: pip install psycopg2-binary")
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=self.config.pool_min_connections,
            maxconn=self.config.pool_max_connections,
            dsn=self._connection_string,
            cursor_factory=psycopg2.extras.RealDictCursor,
        )
        logger.info(
            f"Connection pool initialized (min={self.config.pool_min_connections}, "
            f"max={self.config.pool_max_connections})"
        )

    async def connect(self) -> None:
        """Open the connection pool and create the schema if needed."""
        await asyncio.to_thread(self._connect_sync)
        await self.initialize_schema()

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on a stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
        """
        if self._pool is None:
            self._connect_sync()

        for attempt in range(2):
            conn = self._pool.getconn()
            try:
                result = operation(conn)
                conn.commit()
                self._pool.putconn(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, retrying: {e}")
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._pool.putconn(conn)
                raise

    async def _run(self, operation, label: str):
        return await asyncio.to_thread(self._execute_with_retry, operation, label)

    async def close(self) -> None:
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    async def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        t = self.config.table_name
        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS {t} (
            id UUID PRIMARY KEY,
            document_id TEXT,
            source_type VARCHAR(20) NOT NULL
                CHECK (source_type IN ('private-vault', 'public-statute', 'public-caselaw')),
            text TEXT NOT NULL,
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{{}}',
            tenant_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT {t}_vault_tenant CHECK (source_type <> 'private-vault' OR tenant_id IS NOT NULL)
        );

        CREATE INDEX IF NOT EXISTS idx_{t}_document ON {t}(document_id);
        CREATE INDEX IF NOT EXISTS idx_{t}_scope ON {t}(source_type, tenant_id);
        CREATE INDEX IF NOT EXISTS idx_{t}_embedding_hnsw ON {t}
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {self.config.hnsw_m}, ef_construction = {self.config.hnsw_ef_construction});

        CREATE TABLE IF NOT EXISTS {self.config.ingestion_table_name} (
            document_id TEXT PRIMARY KEY,
            status VARCHAR(16) NOT NULL,
            source_type VARCHAR(20),
            tenant_id TEXT,
            chunk_count INT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        ALTER TABLE {self.config.ingestion_table_name} ADD COLUMN IF NOT EXISTS source_type VARCHAR(20);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            logger.info("Schema initialized successfully")

        await self._run(_op, "initialize_schema")

    # ------------------------------------------------------------------
    # Row mapping and scope SQL
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_chunk(row) -> Chunk:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Chunk(
            id=str(row["id"]),
            document_id=row["document_id"],
            source_type=SourceType(row["source_type"]),
            text=row["text"],
            embedding=[float(v) for v in row["embedding"]],
            metadata=metadata or {},
            tenant_id=row["tenant_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _scope_clause(source_type: Optional[SourceType], tenant_id: Optional[str]) -> tuple[str, list]:
        """SQL predicate equivalent to is_visible()."""
        if source_type is SourceType.PRIVATE_VAULT:
            return "source_type = %s AND tenant_id = %s", [source_type.value, tenant_id]
        if source_type is not None:
            return "source_type = %s", [source_type.value]
        if tenant_id is not None:
            return (
                "(source_type <> %s OR tenant_id = %s)",
                [SourceType.PRIVATE_VAULT.value, tenant_id],
            )
        return "source_type <> %s", [SourceType.PRIVATE_VAULT.value]

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _insert(self, chunk: Chunk) -> None:
        sql = f"""
        INSERT INTO {self.config.table_name}
            (id, document_id, source_type, text, embedding, metadata, tenant_id, created_at)
        VALUES (%s::uuid, %s, %s, %s, %s::vector, %s::jsonb, %s, %s)
        """
        params = (
            chunk.id,
            chunk.document_id,
            chunk.source_type.value,
            chunk.text,
            list(chunk.embedding),
            json.dumps(chunk.metadata, default=str),
            chunk.tenant_id,
            chunk.created_at,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)

        await self._run(_op, "insert_chunk")

    async def _select(self, source_type: Optional[SourceType], tenant_id: Optional[str]) -> list[Chunk]:
        where, params = self._scope_clause(source_type, tenant_id)
        sql = f"""
        SELECT {self._COLUMNS}
        FROM {self.config.table_name}
        WHERE {where}
        ORDER BY created_at ASC
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [self._row_to_chunk(row) for row in cur.fetchall()]

        return await self._run(_op, "query_by_scope")

    async def _nearest(
        self,
        query_vector: Sequence[float],
        source_type: Optional[SourceType],
        tenant_id: Optional[str],
        limit: int,
    ) -> Optional[list[Chunk]]:
        if len(query_vector) != self.dimensions:
            # The index cannot compare vectors of another size
            return None

        where, scope_params = self._scope_clause(source_type, tenant_id)
        sql = f"""
        SELECT {self._COLUMNS}
        FROM {self.config.table_name}
        WHERE {where}
        ORDER BY embedding <=> %s::vector, created_at ASC
        LIMIT %s
        """
        params = scope_params + [list(query_vector), limit]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SET LOCAL hnsw.ef_search = %s", (self.config.hnsw_ef_search,))
                cur.execute(sql, params)
                return [self._row_to_chunk(row) for row in cur.fetchall()]

        return await self._run(_op, "nearest")

    async def delete(self, chunk_id: str) -> bool:
        sql = f"DELETE FROM {self.config.table_name} WHERE id::text = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (chunk_id,))
                return cur.rowcount > 0

        return await self._run(_op, "delete_chunk")

    async def delete_document(self, document_id: str, tenant_id: Optional[str] = None) -> int:
        if tenant_id is not None:
            sql = f"DELETE FROM {self.config.table_name} WHERE document_id = %s AND tenant_id = %s"
            params = (document_id, tenant_id)
        else:
            sql = f"DELETE FROM {self.config.table_name} WHERE document_id = %s"
            params = (document_id,)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                deleted = cur.rowcount
            if deleted:
                logger.info(f"Deleted {deleted} chunks of document {document_id}")
            return deleted

        return await self._run(_op, "delete_document")

    async def set_ingestion_status(self, record: IngestionRecord) -> None:
        sql = f"""
        INSERT INTO {self.config.ingestion_table_name}
            (document_id, status, source_type, tenant_id, chunk_count, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT (document_id) DO UPDATE SET
            status = EXCLUDED.status,
            source_type = EXCLUDED.source_type,
            tenant_id = EXCLUDED.tenant_id,
            chunk_count = EXCLUDED.chunk_count,
            updated_at = EXCLUDED.updated_at
        """
        params = (
            record.document_id,
            record.status.value,
            record.source_type.value if record.source_type else None,
            record.tenant_id,
            record.chunk_count,
            record.updated_at,
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)

        await self._run(_op, "set_ingestion_status")

    async def get_ingestion_status(self, document_id: str) -> Optional[IngestionRecord]:
        sql = f"""
        SELECT document_id, status, source_type, tenant_id, chunk_count, updated_at
        FROM {self.config.ingestion_table_name}
        WHERE document_id = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return IngestionRecord(
                document_id=row["document_id"],
                status=IngestionStatus(row["status"]),
                tenant_id=row["tenant_id"],
                chunk_count=row["chunk_count"],
                updated_at=row["updated_at"],
                source_type=SourceType(row["source_type"]) if row["source_type"] else None,
            )

        return await self._run(_op, "get_ingestion_status")

    async def clear_ingestion_status(self, document_id: str) -> None:
        sql = f"DELETE FROM {self.config.ingestion_table_name} WHERE document_id = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))

        await self._run(_op, "clear_ingestion_status")

    @asynccontextmanager
    async def document_lock(self, document_id: str):
        """
        Serialise ingestion of one document across processes.

        Holds a session-level pg_advisory_lock on a dedicated connection,
        behind an in-process lock so one process never queues on itself.
        """
        async with self._local_locks[document_id]:
            conn = await asyncio.to_thread(psycopg2.connect, self._connection_string)
            try:
                conn.autocommit = True
                await asyncio.to_thread(self._advisory, conn, "pg_advisory_lock", document_id)
                try:
                    yield
                finally:
                    await asyncio.to_thread(self._advisory, conn, "pg_advisory_unlock", document_id)
            finally:
                await asyncio.to_thread(conn.close)

    @staticmethod
    def _advisory(conn, function: str, document_id: str) -> None:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {function}(hashtext(%s))", (document_id,))


def get_chunk_store(config) -> ChunkStore:
    """
    Build the chunk store named by a RAGConfig ("memory" or "postgres").

    A PostgresChunkStore still needs `await store.connect()` before use.
    """
    if config.store == "postgres":
        return PostgresChunkStore(PostgresStoreConfig(
            connection_string=config.connection_string,
            embedding_dimensions=config.embedding_dimensions,
        ))
    if config.store == "memory":
        return InMemoryChunkStore(dimensions=config.embedding_dimensions)
    raise ValueError(f"Unknown chunk store '{config.store}'. Expected 'memory' or 'postgres'")
