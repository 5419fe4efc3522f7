"""
Tests for execution/codex_rag/chunk_store.py

Covers: put() validation, tenant scope rules (including a randomized
        multi-tenant isolation check), ordering, deletes, ingestion records,
        document locks, the Postgres scope SQL, and the store factory.
"""

import random
import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from tests.conftest import FAKE_DIMENSIONS


def _vec(*head):
    return list(head) + [0.0] * (FAKE_DIMENSIONS - len(head))


# ---------------------------------------------------------------------------
# put() validation
# ---------------------------------------------------------------------------

class TestPutValidation:

    @pytest.mark.asyncio
    async def test_put_and_read_back(self, memory_store, make_chunk):
        chunk = make_chunk()
        await memory_store.put(chunk)
        assert await memory_store.query_by_scope() == [chunk]
        assert len(memory_store) == 1

    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected(self, memory_store, make_chunk):
        from execution.codex_rag.exceptions import ValidationError

        with pytest.raises(ValidationError, match="dimensions"):
            await memory_store.put(make_chunk(embedding=[1.0, 2.0]))
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_non_finite_rejected(self, memory_store, make_chunk):
        from execution.codex_rag.exceptions import ValidationError

        with pytest.raises(ValidationError, match="non-finite"):
            await memory_store.put(make_chunk(embedding=_vec(float("nan"))))

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, memory_store, make_chunk):
        from execution.codex_rag.exceptions import ValidationError

        with pytest.raises(ValidationError, match="empty text"):
            await memory_store.put(make_chunk(text="   "))

    @pytest.mark.asyncio
    async def test_vault_chunk_requires_tenant(self, memory_store, make_chunk):
        from execution.codex_rag.exceptions import ValidationError
        from execution.codex_rag.models import SourceType

        with pytest.raises(ValidationError, match="tenant_id"):
            await memory_store.put(make_chunk(source_type=SourceType.PRIVATE_VAULT, tenant_id=None))

    @pytest.mark.asyncio
    async def test_naive_created_at_rejected(self, memory_store, make_chunk):
        import dataclasses
        from datetime import datetime
        from execution.codex_rag.exceptions import ValidationError

        chunk = dataclasses.replace(make_chunk(), created_at=datetime(2024, 1, 1))
        with pytest.raises(ValidationError, match="timezone"):
            await memory_store.put(chunk)

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, memory_store, make_chunk):
        from execution.codex_rag.exceptions import ValidationError

        chunk = make_chunk()
        await memory_store.put(chunk)
        with pytest.raises(ValidationError, match="already exists"):
            await memory_store.put(chunk)

    def test_non_positive_dimensions(self):
        from execution.codex_rag.chunk_store import InMemoryChunkStore
        with pytest.raises(ValueError):
            InMemoryChunkStore(dimensions=0)


# ---------------------------------------------------------------------------
# Scope rules
# ---------------------------------------------------------------------------

class TestScope:

    @pytest.fixture
    def populated(self, memory_store, make_chunk):
        """One chunk per scope; validated the same way put() does."""
        from execution.codex_rag.models import SourceType

        chunks = [
            make_chunk(source_type=SourceType.PUBLIC_STATUTE, text="statute", minutes=1),
            make_chunk(source_type=SourceType.PUBLIC_CASELAW, text="caselaw", minutes=2),
            make_chunk(source_type=SourceType.PRIVATE_VAULT, tenant_id="A", text="vault_a", minutes=3),
            make_chunk(source_type=SourceType.PRIVATE_VAULT, tenant_id="B", text="vault_b", minutes=4),
        ]
        for chunk in chunks:
            memory_store.validate_chunk(chunk)
            memory_store._chunks[chunk.id] = chunk
        return memory_store

    @pytest.mark.asyncio
    async def test_private_vault_without_tenant_is_access_error(self, populated, caplog):
        from execution.codex_rag.exceptions import AccessError
        from execution.codex_rag.metrics import get_metrics_collector

        with caplog.at_level(logging.WARNING, logger="codex_rag.security"):
            with pytest.raises(AccessError):
                await populated.query_by_scope("private-vault")

        assert any(r.name == "codex_rag.security" for r in caplog.records)
        assert get_metrics_collector().get_metrics().access_denials == 1

    @pytest.mark.asyncio
    async def test_private_vault_restricted_to_tenant(self, populated):
        chunks = await populated.query_by_scope("private-vault", tenant_id="A")
        assert [c.text for c in chunks] == ["vault_a"]

    @pytest.mark.asyncio
    async def test_public_type_ignores_tenant(self, populated):
        from execution.codex_rag.models import SourceType

        assert [c.text for c in await populated.query_by_scope(SourceType.PUBLIC_STATUTE)] == ["statute"]
        assert [c.text for c in await populated.query_by_scope("public-caselaw", tenant_id="B")] == ["caselaw"]

    @pytest.mark.asyncio
    async def test_unscoped_without_tenant_is_public_only(self, populated):
        chunks = await populated.query_by_scope()
        assert [c.text for c in chunks] == ["statute", "caselaw"]

    @pytest.mark.asyncio
    async def test_unscoped_with_tenant_adds_own_vault(self, populated):
        chunks = await populated.query_by_scope(tenant_id="B")
        assert [c.text for c in chunks] == ["statute", "caselaw", "vault_b"]

    @pytest.mark.asyncio
    async def test_alias_accepted(self, populated):
        chunks = await populated.query_by_scope("vault", tenant_id="A")
        assert [c.text for c in chunks] == ["vault_a"]

    @pytest.mark.asyncio
    async def test_unknown_source_type(self, populated):
        from execution.codex_rag.exceptions import ValidationError

        with pytest.raises(ValidationError):
            await populated.query_by_scope("blog")

    @pytest.mark.asyncio
    async def test_results_ordered_by_created_at(self, memory_store, make_chunk):
        for minutes in (30, 10, 20):
            await memory_store.put(make_chunk(text=f"t{minutes}", minutes=minutes))
        assert [c.text for c in await memory_store.query_by_scope()] == ["t10", "t20", "t30"]

    @pytest.mark.asyncio
    async def test_in_memory_store_has_no_index(self, populated):
        assert await populated.nearest(_vec(1.0), tenant_id="A") is None

    @pytest.mark.asyncio
    async def test_nearest_enforces_scope_before_backend(self, populated):
        from execution.codex_rag.exceptions import AccessError

        with pytest.raises(AccessError):
            await populated.nearest(_vec(1.0), source_type="private-vault")


class TestTenantIsolationProperty:
    """A query on behalf of tenant A never sees another tenant's vault chunk."""

    @pytest.mark.asyncio
    async def test_randomized_multi_tenant(self, make_chunk):
        from execution.codex_rag.chunk_store import InMemoryChunkStore
        from execution.codex_rag.models import SourceType

        rng = random.Random(1234)
        tenants = [f"tenant-{i}" for i in range(6)]

        for trial in range(10):
            store = InMemoryChunkStore(dimensions=FAKE_DIMENSIONS)
            for i in range(80):
                source_type = rng.choice(list(SourceType))
                tenant = rng.choice(tenants) if source_type is SourceType.PRIVATE_VAULT else None
                await store.put(make_chunk(
                    source_type=source_type,
                    tenant_id=tenant,
                    embedding=[rng.uniform(-1, 1) for _ in range(FAKE_DIMENSIONS)],
                    minutes=i,
                ))

            for tenant in tenants:
                for scope in (None, SourceType.PRIVATE_VAULT, SourceType.PUBLIC_STATUTE):
                    for chunk in await store.query_by_scope(scope, tenant_id=tenant):
                        if chunk.source_type is SourceType.PRIVATE_VAULT:
                            assert chunk.tenant_id == tenant


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------

class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, memory_store, make_chunk):
        chunk = make_chunk()
        await memory_store.put(chunk)

        assert await memory_store.delete(chunk.id) is True
        assert await memory_store.delete(chunk.id) is False
        assert await memory_store.delete("never-existed") is False
        assert await memory_store.query_by_scope() == []

    @pytest.mark.asyncio
    async def test_delete_document(self, memory_store, make_chunk):
        for i in range(3):
            await memory_store.put(make_chunk(document_id="doc-1", minutes=i))
        await memory_store.put(make_chunk(document_id="doc-2"))

        assert await memory_store.delete_document("doc-1") == 3
        assert [c.document_id for c in await memory_store.query_by_scope()] == ["doc-2"]

    @pytest.mark.asyncio
    async def test_delete_document_tenant_filtered(self, memory_store, make_chunk):
        from execution.codex_rag.models import SourceType

        await memory_store.put(make_chunk(source_type=SourceType.PRIVATE_VAULT, tenant_id="A", document_id="d"))
        assert await memory_store.delete_document("d", tenant_id="B") == 0
        assert await memory_store.delete_document("d", tenant_id="A") == 1


# ---------------------------------------------------------------------------
# Ingestion records and locks
# ---------------------------------------------------------------------------

class TestIngestionState:

    @pytest.mark.asyncio
    async def test_status_roundtrip_and_clear(self, memory_store):
        from execution.codex_rag.models import IngestionRecord, IngestionStatus

        assert await memory_store.get_ingestion_status("doc") is None
        await memory_store.set_ingestion_status(IngestionRecord("doc", IngestionStatus.PENDING))
        await memory_store.set_ingestion_status(IngestionRecord("doc", IngestionStatus.COMPLETE, chunk_count=4))

        record = await memory_store.get_ingestion_status("doc")
        assert record.status is IngestionStatus.COMPLETE
        assert record.chunk_count == 4

        await memory_store.clear_ingestion_status("doc")
        assert await memory_store.get_ingestion_status("doc") is None

    @pytest.mark.asyncio
    async def test_document_lock_serialises(self, memory_store):
        events = []

        async def worker(name):
            async with memory_store.document_lock("doc"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_documents_do_not_block(self, memory_store):
        async with memory_store.document_lock("doc-1"):
            await asyncio.wait_for(self._enter(memory_store, "doc-2"), timeout=1)

    @staticmethod
    async def _enter(store, document_id):
        async with store.document_lock(document_id):
            return True


# ---------------------------------------------------------------------------
# PostgresChunkStore (no database: SQL generation and row mapping)
# ---------------------------------------------------------------------------

class TestPostgresChunkStore:

    def test_scope_clause_private(self):
        from execution.codex_rag.chunk_store import PostgresChunkStore
        from execution.codex_rag.models import SourceType

        where, params = PostgresChunkStore._scope_clause(SourceType.PRIVATE_VAULT, "A")
        assert where == "source_type = %s AND tenant_id = %s"
        assert params == ["private-vault", "A"]

    def test_scope_clause_unscoped_without_tenant_excludes_vault(self):
        from execution.codex_rag.chunk_store import PostgresChunkStore

        where, params = PostgresChunkStore._scope_clause(None, None)
        assert where == "source_type <> %s"
        assert params == ["private-vault"]

    def test_scope_clause_unscoped_with_tenant(self):
        from execution.codex_rag.chunk_store import PostgresChunkStore

        where, params = PostgresChunkStore._scope_clause(None, "A")
        assert "tenant_id = %s" in where
        assert params == ["private-vault", "A"]

    def test_row_to_chunk(self):
        from datetime import datetime, timezone
        from execution.codex_rag.chunk_store import PostgresChunkStore
        from execution.codex_rag.models import SourceType

        row = {
            "id": "2b1f0c4e-0000-4000-8000-000000000000",
            "document_id": "doc",
            "source_type": "public-caselaw",
            "text": "Attendu que",
            "embedding": [0.5, 0.25],
            "metadata": '{"jurisdiction": "Cour de cassation"}',
            "tenant_id": None,
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        chunk = PostgresChunkStore._row_to_chunk(row)
        assert chunk.source_type is SourceType.PUBLIC_CASELAW
        assert chunk.embedding == [0.5, 0.25]
        assert chunk.metadata == {"jurisdiction": "Cour de cassation"}

    @pytest.mark.asyncio
    async def test_private_query_rejected_before_database(self):
        from execution.codex_rag.chunk_store import PostgresChunkStore, PostgresStoreConfig
        from execution.codex_rag.exceptions import AccessError

        store = PostgresChunkStore(PostgresStoreConfig(embedding_dimensions=FAKE_DIMENSIONS))
        store._pool = MagicMock()

        with pytest.raises(AccessError):
            await store.query_by_scope("private-vault")
        store._pool.getconn.assert_not_called()

    @pytest.mark.asyncio
    async def test_select_uses_pool_and_maps_rows(self):
        from datetime import datetime, timezone
        from execution.codex_rag.chunk_store import PostgresChunkStore, PostgresStoreConfig

        cursor = MagicMock()
        cursor.fetchall.return_value = [{
            "id": "id-1",
            "document_id": "doc",
            "source_type": "public-statute",
            "text": "Article",
            "embedding": [1.0] * FAKE_DIMENSIONS,
            "metadata": {"article": "1134"},
            "tenant_id": None,
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }]
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor

        store = PostgresChunkStore(PostgresStoreConfig(embedding_dimensions=FAKE_DIMENSIONS))
        store._pool = MagicMock()
        store._pool.getconn.return_value = conn

        chunks = await store.query_by_scope("public-statute")

        assert [c.id for c in chunks] == ["id-1"]
        sql, params = cursor.execute.call_args[0]
        assert "ORDER BY created_at ASC" in sql
        assert params == ["public-statute"]
        conn.commit.assert_called_once()
        store._pool.putconn.assert_called_once_with(conn)

    @pytest.mark.asyncio
    async def test_ingestion_record_keeps_source_type(self):
        from datetime import datetime, timezone
        from execution.codex_rag.chunk_store import PostgresChunkStore, PostgresStoreConfig
        from execution.codex_rag.models import IngestionRecord, IngestionStatus, SourceType

        cursor = MagicMock()
        cursor.fetchone.return_value = {
            "document_id": "vault-doc",
            "status": "complete",
            "source_type": "private-vault",
            "tenant_id": "A",
            "chunk_count": 3,
            "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor

        store = PostgresChunkStore(PostgresStoreConfig(embedding_dimensions=FAKE_DIMENSIONS))
        store._pool = MagicMock()
        store._pool.getconn.return_value = conn

        await store.set_ingestion_status(IngestionRecord(
            "vault-doc", IngestionStatus.COMPLETE, tenant_id="A", chunk_count=3,
            source_type=SourceType.PRIVATE_VAULT,
        ))
        _, params = cursor.execute.call_args[0]
        assert params[:4] == ("vault-doc", "complete", "private-vault", "A")

        record = await store.get_ingestion_status("vault-doc")
        assert record.source_type is SourceType.PRIVATE_VAULT
        assert record.tenant_id == "A"

    @pytest.mark.asyncio
    async def test_nearest_skips_index_on_dimension_mismatch(self):
        from execution.codex_rag.chunk_store import PostgresChunkStore, PostgresStoreConfig

        store = PostgresChunkStore(PostgresStoreConfig(embedding_dimensions=FAKE_DIMENSIONS))
        store._pool = MagicMock()
        assert await store.nearest([1.0, 2.0], tenant_id="A") is None


class TestGetChunkStore:

    def test_memory(self):
        from execution.codex_rag.chunk_store import get_chunk_store, InMemoryChunkStore
        from execution.codex_rag.config import RAGConfig

        store = get_chunk_store(RAGConfig(store="memory", embedding_dimensions=16))
        assert isinstance(store, InMemoryChunkStore)
        assert store.dimensions == 16

    def test_postgres(self):
        from execution.codex_rag.chunk_store import get_chunk_store, PostgresChunkStore
        from execution.codex_rag.config import RAGConfig

        store = get_chunk_store(RAGConfig(store="postgres", connection_string="postgresql://db/x"))
        assert isinstance(store, PostgresChunkStore)
        assert store.dimensions == 1024

    def test_unknown(self):
        from execution.codex_rag.chunk_store import get_chunk_store
        from execution.codex_rag.config import RAGConfig

        with pytest.raises(ValueError):
            get_chunk_store(RAGConfig(store="sqlite"))
