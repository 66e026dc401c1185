"""Tests for the resilient backend decorators."""
import httpx
import pytest

from conftest import FakeEmbedder, FakeGenerator, FakeVectorStore, fast_policy
from docgraph.errors import (
    BackendUnavailableError,
    CircuitOpenError,
    EmbeddingFailedError,
    IndexingFailedError,
    SearchFailedError,
    SynthesisFailedError,
)
from docgraph.resilience.cache import EmbeddingCache
from docgraph.resilience.services import (
    ResilientEmbeddingService,
    ResilientGraphRepository,
    ResilientTextGenerator,
    ResilientVectorStore,
)


def _embedding_service(inner):
    return ResilientEmbeddingService(
        inner,
        cache=EmbeddingCache(max_items=10, ttl_seconds=60, enabled=True),
        policy=fast_policy("embedding"),
    )


async def test_embedding_is_cached():
    inner = FakeEmbedder()
    service = _embedding_service(inner)

    first = await service.embed("retry the graph")
    second = await service.embed("retry the graph")

    assert first == second
    assert inner.calls == ["retry the graph"]


async def test_empty_vector_is_an_embedding_failure():
    class EmptyEmbedder:
        async def embed(self, text):
            return []

    with pytest.raises(EmbeddingFailedError):
        await _embedding_service(EmptyEmbedder()).embed("text")


async def test_embedding_errors_are_mapped():
    service = _embedding_service(FakeEmbedder(fail=ValueError("bad model")))

    with pytest.raises(EmbeddingFailedError) as exc_info:
        await service.embed("text")

    assert isinstance(exc_info.value.__cause__, ValueError)


async def test_unreachable_embedding_backend_is_unavailable():
    inner = FakeEmbedder(fail=httpx.ConnectError("refused"))

    with pytest.raises(BackendUnavailableError):
        await _embedding_service(inner).embed("text")

    assert len(inner.calls) == 2


async def test_vector_store_errors_are_mapped():
    store = ResilientVectorStore(FakeVectorStore(fail=KeyError("index")), policy=fast_policy("vectors"))

    with pytest.raises(SearchFailedError):
        await store.search([1.0], 5)
    with pytest.raises(IndexingFailedError):
        await store.upsert("c1", [1.0], {})


async def test_vector_store_passes_calls_through():
    inner = FakeVectorStore()
    store = ResilientVectorStore(inner, policy=fast_policy("vectors"))

    await store.upsert("c1", [1.0, 0.0], {"document_id": "d1"})
    assert await store.delete_document("d1") == 1
    assert inner.vectors == {}


async def test_generation_errors_are_mapped():
    generator = ResilientTextGenerator(
        FakeGenerator(fail=RuntimeError("model crashed")), policy=fast_policy("generation")
    )

    with pytest.raises(SynthesisFailedError):
        await generator.generate("prompt")


async def test_graph_proxy_wraps_coroutines_only(graph_store):
    graph = ResilientGraphRepository(graph_store, policy=fast_policy("graph"))

    assert graph.db_path == graph_store.db_path
    assert await graph.get_document("missing") is None
    assert await graph.get_chunks_by_ids([]) == []


async def test_empty_batched_lookups_skip_an_open_circuit(graph_store):
    graph = ResilientGraphRepository(graph_store, policy=fast_policy("graph", failure_threshold=1))
    graph.policy.breaker.record_failure()

    assert await graph.get_chunks_by_ids([]) == []
    assert await graph.get_concepts_by_chunk_ids(chunk_ids=[]) == []
    with pytest.raises(CircuitOpenError):
        await graph.get_chunks_by_ids(["docs:guide.md:chunk-0"])


async def test_graph_proxy_propagates_non_transient_errors():
    class BrokenGraph:
        async def get_document(self, document_id):
            raise LookupError("corrupt row")

    graph = ResilientGraphRepository(BrokenGraph(), policy=fast_policy("graph"))

    with pytest.raises(LookupError):
        await graph.get_document("doc")
