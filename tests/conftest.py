"""
Shared fixtures and test utilities for the CodexAI RAG tests.

Provides a deterministic fake embedding service, an in-memory chunk store,
a chunk factory and sample French legal texts, so every test runs without
API keys, databases or network access.
"""

import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from execution.codex_rag.config import RAGConfig  # noqa: E402
from execution.codex_rag.embeddings import BaseEmbeddingService, EmbeddingConfig  # noqa: E402
from execution.codex_rag.chunk_store import InMemoryChunkStore  # noqa: E402
from execution.codex_rag.metrics import get_metrics_collector  # noqa: E402
from execution.codex_rag.models import Chunk, SourceType  # noqa: E402
from execution.codex_rag.pipeline import RAGPipeline  # noqa: E402

# ---------------------------------------------------------------------------
# Sample legal texts
# ---------------------------------------------------------------------------
ARTICLE_1134 = (
    "Les conventions légalement formées tiennent lieu de loi à ceux qui les ont faites. "
    "Elles ne peuvent être révoquées que de leur consentement mutuel, ou pour les causes "
    "que la loi autorise. Elles doivent être exécutées de bonne foi. Le contrat oblige les "
    "parties et le contrat ne peut être modifié unilatéralement."
)

CASSATION_DECISION = (
    "Attendu que le bailleur a délivré congé au preneur ; que le bail commercial prévoyait "
    "un loyer révisable ; que la cour d'appel a retenu que le loyer devait être fixé à la "
    "valeur locative ; rejette le pourvoi formé contre l'arrêt rendu en matière de bail."
)

VAULT_CONTRACT = (
    "Contrat de travail à durée indéterminée entre la société Dupont et Madame Martin. "
    "La salariée est engagée en qualité de juriste. Le présent contrat de travail prend "
    "effet au premier janvier. La période d'essai du travail est de trois mois."
)

# ---------------------------------------------------------------------------
# Fake embedding service
# ---------------------------------------------------------------------------
# One dimension per keyword: similar topics give similar vectors, unrelated
# text gives the zero vector (similarity 0).
FAKE_KEYWORDS = ("contrat", "bail", "loyer", "travail", "pourvoi", "conventions", "responsabilité", "vente")
FAKE_DIMENSIONS = len(FAKE_KEYWORDS)


def keyword_vector(text: str) -> list[float]:
    lowered = text.lower()
    return [float(lowered.count(keyword)) for keyword in FAKE_KEYWORDS]


class FakeEmbeddingService(BaseEmbeddingService):
    """Keyword-count embeddings with call tracking."""

    _provider_name = "Fake"

    def __init__(self, config=None):
        self.calls: list[tuple[list[str], str]] = []
        super().__init__(config or EmbeddingConfig(
            provider="fake",
            model="fake-keywords",
            dimensions=FAKE_DIMENSIONS,
            use_cache=False,
        ))

    def _init_client(self):
        self._client = object()

    async def _request_embeddings(self, texts, input_type):
        self.calls.append((list(texts), input_type))
        return [keyword_vector(text) for text in texts]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts with empty process-wide metrics."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def memory_store():
    return InMemoryChunkStore(dimensions=FAKE_DIMENSIONS)


@pytest.fixture
def rag_config():
    return RAGConfig(
        chunk_size=20,
        chunk_overlap=5,
        embedding_dimensions=FAKE_DIMENSIONS,
        search_limit=5,
        search_threshold=0.1,
        ingest_timeout_seconds=5.0,
        search_timeout_seconds=5.0,
    )


@pytest.fixture
def pipeline(fake_embeddings, memory_store, rag_config):
    return RAGPipeline(fake_embeddings, memory_store, rag_config)


@pytest.fixture
def make_chunk():
    """Factory for chunks with controllable embedding and creation time."""
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _make(
        source_type=SourceType.PUBLIC_STATUTE,
        embedding=None,
        tenant_id=None,
        text="Texte de l'article.",
        metadata=None,
        document_id="doc-1",
        minutes=0,
    ):
        return Chunk.create(
            document_id=document_id,
            source_type=source_type,
            text=text,
            embedding=embedding if embedding is not None else [1.0] + [0.0] * (FAKE_DIMENSIONS - 1),
            metadata=metadata or {},
            tenant_id=tenant_id,
            created_at=base_time + timedelta(minutes=minutes),
        )

    return _make
