"""
Embedding Service for the CodexAI RAG core

Maps text to fixed-length vectors through an external embedding model.
The provider is chosen once at startup by get_embedding_service() and
injected into the pipeline.

Architecture:
    BaseEmbeddingService  -- shared caching, batching, output validation
        VoyageEmbeddingService   -- Voyage AI (voyage-law-2)
        CohereEmbeddingService   -- Cohere embed v3
        OpenAIEmbeddingService   -- OpenAI or any OpenAI-compatible endpoint (Ollama, vLLM, ...)
        LocalEmbeddingService    -- local sentence-transformers model

Every upstream failure, and every malformed response, surfaces as
EmbeddingServiceError. A failed call never yields a placeholder vector.
Vectors are returned as produced by the model; no normalization here.
"""

import os
import json
import math
import asyncio
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass
from pathlib import Path

from .config import RAGConfig, PROVIDER_DEFAULTS
from .exceptions import EmbeddingServiceError

logger = logging.getLogger(__name__)

# Output size of OpenAI models that accept a `dimensions` argument
OPENAI_NATIVE_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


@dataclass
class EmbeddingConfig:
    """Configuration for an embedding service."""
    provider: str = "voyage"
    model: str = "voyage-law-2"
    dimensions: int = 1024
    batch_size: int = 128
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0  # rough estimate for French legal text
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for embedding services.

    Provides shared functionality:
    - Batched embedding respecting item-count and token budgets
    - Memory and file-based caching
    - Validation of provider output (count, dimensionality, finite values)
    - Document vs query input type distinction

    Subclasses implement:
    - _init_client(): create the provider client (leave it None if unusable)
    - _request_embeddings(texts, input_type): one provider call

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable holding the API key
    - _doc_input_type / _query_input_type: provider input type strings
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache: dict[str, list[float]] = {}

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    async def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Call the provider for one batch. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _request_embeddings()")

    @property
    def provider_name(self) -> str:
        return self._provider_name

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions

    def _require_client(self) -> None:
        if self._client is None:
            hint = f" Check {self._env_var_name}." if self._env_var_name else ""
            raise EmbeddingServiceError(
                f"{self._provider_name} client not initialized.{hint}",
                provider=self._provider_name,
            )

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0.0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0.0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single chunk of document text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of length self.dimensions

        Raises:
            EmbeddingServiceError: service unreachable or malformed output
        """
        vectors = await self._embed_batch([text], input_type=self._doc_input_type)
        return vectors[0]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks, preserving input order.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors
        """
        if not texts:
            return []

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} documents in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(await self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    async def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Uses the provider's query input type for better query-document matching.
        """
        vectors = await self._embed_batch([query], input_type=self._query_input_type)
        return vectors[0]

    async def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Embed a batch of texts, serving what it can from cache."""
        results: list[Optional[list[float]]] = [None] * len(texts)
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results[i] = cached
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            self._require_client()
            try:
                vectors = await asyncio.wait_for(
                    self._request_embeddings(uncached_texts, input_type),
                    timeout=self.config.timeout_seconds,
                )
            except EmbeddingServiceError:
                raise
            except asyncio.TimeoutError as e:
                logger.error(f"{self._provider_name} embedding timed out after {self.config.timeout_seconds}s")
                raise EmbeddingServiceError(
                    f"{self._provider_name} embedding timed out", provider=self._provider_name
                ) from e
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise EmbeddingServiceError(
                    f"{self._provider_name} embedding failed: {e}", provider=self._provider_name
                ) from e

            vectors = self._validate_vectors(vectors, expected_count=len(uncached_texts))

            for idx, vector in zip(uncached_indices, vectors):
                self._set_cached(self._get_cache_key(texts[idx], input_type), vector)
                results[idx] = vector

        return results

    def _validate_vectors(self, vectors, expected_count: int) -> list[list[float]]:
        """Check count, dimensionality and finiteness of provider output."""
        if vectors is None or len(vectors) != expected_count:
            got = "none" if vectors is None else len(vectors)
            raise EmbeddingServiceError(
                f"{self._provider_name} returned {got} embeddings for {expected_count} inputs",
                provider=self._provider_name,
            )

        validated = []
        for vector in vectors:
            try:
                values = [float(v) for v in vector]
            except (TypeError, ValueError) as e:
                raise EmbeddingServiceError(
                    f"{self._provider_name} returned a non-numeric embedding",
                    provider=self._provider_name,
                ) from e
            if len(values) != self.config.dimensions:
                raise EmbeddingServiceError(
                    f"{self._provider_name} returned {len(values)}-dimensional embedding, "
                    f"expected {self.config.dimensions}",
                    provider=self._provider_name,
                )
            if not all(math.isfinite(v) for v in values):
                raise EmbeddingServiceError(
                    f"{self._provider_name} returned non-finite embedding values",
                    provider=self._provider_name,
                )
            validated.append(values)
        return validated

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                    self._cache[key] = embedding
                    return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI.

    voyage-law-2 is tuned for legal retrieval and returns 1024-dimensional
    vectors, with distinct document and query input types.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        """Initialize the async Voyage AI client."""
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get an API key at https://dash.voyageai.com/"
            )
            return

        import voyageai
        self._client = voyageai.AsyncClient(api_key=api_key)
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    async def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = await self._client.embed(
            texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


class CohereEmbeddingService(BaseEmbeddingService):
    """
    Generates embeddings using Cohere's embed v3 models.

    embed-multilingual-v3.0 handles French legal text and returns
    1024-dimensional vectors.
    """

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _init_client(self):
        """Initialize the async Cohere client."""
        api_key = os.getenv("COHERE_API_KEY")

        if not api_key:
            logger.warning(
                "COHERE_API_KEY not found. Embeddings will fail. "
                "Set the environment variable or use a different provider."
            )
            return

        import cohere
        self._client = cohere.AsyncClient(api_key)
        logger.info(f"Cohere client initialized with model {self.config.model}")

    async def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = await self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embedding service for the OpenAI embeddings API.

    base_url points the same client at Ollama (http://localhost:11434/v1)
    or any other OpenAI-compatible server. These APIs have no
    document/query distinction, so both input types send the same request.
    """

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        """Initialize the async OpenAI client."""
        api_key = os.getenv("OPENAI_API_KEY")

        # Local OpenAI-compatible servers accept any key
        if not api_key and self.config.base_url:
            api_key = "not-needed"

        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Embeddings will fail. "
                "Set the key or EMBEDDING_BASE_URL for a local server."
            )
            return

        from openai import AsyncOpenAI
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
        )
        logger.info(
            f"OpenAI embeddings client initialized with model {self.config.model}"
            f" ({self.config.base_url or 'api.openai.com'})"
        )

    async def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        kwargs = {}
        # text-embedding-3 models can shorten their output on request
        native = OPENAI_NATIVE_DIMENSIONS.get(self.config.model)
        if native is not None and native != self.config.dimensions:
            kwargs["dimensions"] = self.config.dimensions

        response = await self._client.embeddings.create(
            model=self.config.model,
            input=texts,
            **kwargs,
        )
        data = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in data]


class LocalEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using a local sentence-transformers model.

    Cost-free; good for development or high-volume batch processing.
    Encoding runs in a worker thread so the event loop is never blocked.
    """

    _provider_name = "Local"

    def _init_client(self):
        """Load the local model and take its dimensionality."""
        from sentence_transformers import SentenceTransformer

        self._client = SentenceTransformer(self.config.model)
        self.config.dimensions = self._client.get_sentence_embedding_dimension()
        logger.info(f"Local embedding model loaded: {self.config.model} ({self.config.dimensions} dims)")

    async def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        embeddings = await asyncio.to_thread(self._client.encode, texts, show_progress_bar=False)
        return embeddings.tolist()


EMBEDDING_SERVICES = {
    "voyage": VoyageEmbeddingService,
    "cohere": CohereEmbeddingService,
    "openai": OpenAIEmbeddingService,
    "local": LocalEmbeddingService,
}


def get_embedding_service(config: Optional[RAGConfig] = None) -> BaseEmbeddingService:
    """
    Factory function to build the embedding service for this process.

    Args:
        config: RAG configuration. Uses RAGConfig() defaults (Voyage) if not provided.

    Returns:
        Configured embedding service

    Raises:
        ValueError: unknown provider name
    """
    config = config or RAGConfig()
    provider = config.embedding_provider

    service_cls = EMBEDDING_SERVICES.get(provider)
    if service_cls is None:
        raise ValueError(
            f"Unknown embedding provider '{provider}'. "
            f"Expected one of: {', '.join(sorted(EMBEDDING_SERVICES))}"
        )

    defaults = PROVIDER_DEFAULTS[provider]
    embedding_config = EmbeddingConfig(
        provider=provider,
        model=config.embedding_model or defaults["model"],
        dimensions=config.embedding_dimensions or defaults["dimensions"],
        batch_size=96 if provider == "cohere" else 128,
        base_url=config.embedding_base_url,
        cache_dir=config.embedding_cache_dir,
    )
    logger.info(f"Embedding provider selected: {provider} ({embedding_config.model})")
    return service_cls(embedding_config)


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service(RAGConfig.from_env())
    query = " ".join(sys.argv[1:]) or "Quelles sont les conditions de validité d'un contrat ?"

    print(f"Query: {query}")
    embedding = asyncio.run(service.embed_query(query))
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
