"""Resilient decorators for the four backend contracts.

Each decorator routes every call through one ResiliencePolicy and maps
failures to the error kind callers expect for that backend.
BackendUnavailableError always passes through unchanged.
"""
import functools
import inspect
from typing import Any, Dict, List, Optional, Sequence

import structlog

from docgraph import config
from docgraph.errors import (
    BackendUnavailableError,
    EmbeddingFailedError,
    IndexingFailedError,
    SearchFailedError,
    SynthesisFailedError,
)
from docgraph.protocols import (
    EmbeddingService,
    GraphRepository,
    TextGenerator,
    VectorSearchResult,
    VectorStore,
)
from docgraph.resilience.cache import EmbeddingCache
from docgraph.resilience.policy import ResilienceOptions, ResiliencePolicy

logger = structlog.get_logger()


def _reraise_as(error: Exception, kind: type, reason: str, backend: str) -> None:
    if isinstance(error, (BackendUnavailableError, kind)):
        raise error
    logger.error(
        "backend_error",
        backend=backend,
        error=str(error),
        error_type=type(error).__name__,
    )
    raise kind(reason) from error


class ResilientEmbeddingService:
    """Embedding service with a content-addressed cache in front of the policy."""

    def __init__(
        self,
        inner: EmbeddingService,
        cache: Optional[EmbeddingCache] = None,
        policy: Optional[ResiliencePolicy] = None,
    ):
        self.inner = inner
        self.cache = cache if cache is not None else EmbeddingCache()
        self.policy = policy or ResiliencePolicy(
            "embedding", ResilienceOptions(timeout=config.EMBEDDING_TIMEOUT)
        )

    async def _compute(self, text: str) -> List[float]:
        vector = await self.policy.call(lambda: self.inner.embed(text), "embed")
        if not vector:
            raise EmbeddingFailedError("Embedding service returned an empty vector")
        return vector

    async def embed(self, text: str) -> List[float]:
        try:
            return await self.cache.get_or_compute(text, self._compute)
        except Exception as e:
            _reraise_as(e, EmbeddingFailedError, "Failed to generate embedding", "embedding")


class ResilientVectorStore:
    def __init__(self, inner: VectorStore, policy: Optional[ResiliencePolicy] = None):
        self.inner = inner
        self.policy = policy or ResiliencePolicy("vector_store")

    async def search(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        try:
            return await self.policy.call(
                lambda: self.inner.search(vector, k, filters), "search"
            )
        except Exception as e:
            _reraise_as(e, SearchFailedError, "Vector search failed", "vector_store")

    async def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        try:
            await self.policy.call(
                lambda: self.inner.upsert(chunk_id, vector, metadata), "upsert"
            )
        except Exception as e:
            _reraise_as(e, IndexingFailedError, "Failed to store vector", "vector_store")

    async def delete(self, chunk_id: str) -> None:
        try:
            await self.policy.call(lambda: self.inner.delete(chunk_id), "delete")
        except Exception as e:
            _reraise_as(e, IndexingFailedError, "Failed to delete vector", "vector_store")

    async def delete_document(self, document_id: str) -> int:
        try:
            return await self.policy.call(
                lambda: self.inner.delete_document(document_id), "delete_document"
            )
        except Exception as e:
            _reraise_as(e, IndexingFailedError, "Failed to delete vectors", "vector_store")


class ResilientTextGenerator:
    def __init__(self, inner: TextGenerator, policy: Optional[ResiliencePolicy] = None):
        self.inner = inner
        self.policy = policy or ResiliencePolicy(
            "text_generation", ResilienceOptions(timeout=config.GENERATION_TIMEOUT)
        )

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        try:
            return await self.policy.call(
                lambda: self.inner.generate(prompt, system=system), "generate"
            )
        except Exception as e:
            _reraise_as(e, SynthesisFailedError, "Failed to synthesize an answer", "text_generation")


class ResilientGraphRepository:
    """Proxies every coroutine method of a graph repository through one policy.

    Errors other than our own kinds propagate unchanged so callers decide
    whether a graph failure is fatal (indexing) or degradable (enrichment).
    """

    BATCHED_LOOKUPS = frozenset({"get_chunks_by_ids", "get_concepts_by_chunk_ids"})

    def __init__(self, inner: GraphRepository, policy: Optional[ResiliencePolicy] = None):
        self.inner = inner
        self.policy = policy or ResiliencePolicy(
            "graph", ResilienceOptions(timeout=config.DATABASE_TIMEOUT)
        )

    def __getattr__(self, name: str):
        attr = getattr(self.inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        @functools.wraps(attr)
        async def wrapper(*args, **kwargs):
            if name in self.BATCHED_LOOKUPS:
                ids = args[0] if args else next(iter(kwargs.values()), None)
                if ids is not None and not ids:
                    return []
            return await self.policy.call(lambda: attr(*args, **kwargs), name)

        return wrapper
