"""Shared fixtures and in-memory backends for the test suite."""
import os
import tempfile

# Keep config's data directory out of the source tree
os.environ.setdefault("DOCGRAPH_DATA_DIR", tempfile.mkdtemp(prefix="docgraph-tests-"))

from typing import Any, Dict, List, Optional, Sequence

import pytest

from docgraph.graph.models import Chunk, Concept
from docgraph.graph.store_sqlite import SQLiteGraphRepository
from docgraph.protocols import VectorSearchResult
from docgraph.rag.store_faiss import FAISSVectorStore
from docgraph.resilience.policy import ResilienceOptions, ResiliencePolicy

VOCABULARY = ("graph", "cache", "retry", "chunk", "deploy", "python")


class FakeEmbedder:
    """Bag-of-keywords embedder: one dimension per vocabulary word, plus a bias."""

    def __init__(self, fail: Optional[Exception] = None):
        self.calls: List[str] = []
        self.fail = fail

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail is not None:
            raise self.fail
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]


class FakeVectorStore:
    """Returns preset hits; keeps upserted vectors in a dict."""

    def __init__(self, hits: Sequence[VectorSearchResult] = (), fail: Optional[Exception] = None):
        self.hits = list(hits)
        self.fail = fail
        self.searches: List[Dict[str, Any]] = []
        self.vectors: Dict[str, Dict[str, Any]] = {}

    async def search(self, vector, k, filters=None):
        self.searches.append({"vector": list(vector), "k": k, "filters": filters})
        if self.fail is not None:
            raise self.fail
        return self.hits[:k]

    async def upsert(self, chunk_id, vector, metadata):
        if self.fail is not None:
            raise self.fail
        self.vectors[chunk_id] = {"vector": list(vector), "metadata": dict(metadata)}

    async def delete(self, chunk_id):
        self.vectors.pop(chunk_id, None)

    async def delete_document(self, document_id):
        doomed = [
            cid for cid, entry in self.vectors.items()
            if entry["metadata"].get("document_id") == document_id
        ]
        for cid in doomed:
            del self.vectors[cid]
        return len(doomed)


class FakeGenerator:
    """Returns a fixed reply and records every prompt."""

    def __init__(self, reply: str = "Generated answer.", fail: Optional[Exception] = None):
        self.reply = reply
        self.fail = fail
        self.prompts: List[Dict[str, Optional[str]]] = []

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        self.prompts.append({"prompt": prompt, "system": system})
        if self.fail is not None:
            raise self.fail
        return self.reply


class StubGraph:
    """Enrichment lookups served from dicts; any method named in ``fail`` raises."""

    def __init__(
        self,
        chunks: Sequence[Chunk] = (),
        mentions: Optional[Dict[str, List[Concept]]] = None,
        related: Optional[Dict[str, List[Concept]]] = None,
        fail: Sequence[str] = (),
    ):
        self.chunks = {c.id: c for c in chunks}
        self.mentions = mentions or {}
        self.related = related or {}
        self.fail = set(fail)

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    async def get_chunks_by_ids(self, chunk_ids):
        self._check("get_chunks_by_ids")
        return [self.chunks[cid] for cid in chunk_ids if cid in self.chunks]

    async def get_concepts_by_chunk_ids(self, chunk_ids):
        self._check("get_concepts_by_chunk_ids")
        found = {}
        for cid in chunk_ids:
            for concept in self.mentions.get(cid, []):
                found.setdefault(concept.id, concept)
        return list(found.values())

    async def get_related_concepts(self, concept_id, hops=2):
        self._check("get_related_concepts")
        return list(self.related.get(concept_id, []))


def hit(chunk_id: str, score: float, document_id: str, promotion: str = "standard", **metadata) -> VectorSearchResult:
    metadata.setdefault("file_path", f"{document_id}.md")
    metadata.setdefault("content", f"content of {chunk_id}")
    return VectorSearchResult(
        chunk_id=chunk_id,
        score=score,
        metadata={"document_id": document_id, "promotion_level": promotion, **metadata},
    )


def fast_policy(name: str, max_attempts: int = 2, failure_threshold: int = 5) -> ResiliencePolicy:
    """Policy with no backoff delay so retries don't slow the suite down."""
    return ResiliencePolicy(
        name,
        ResilienceOptions(
            timeout=1.0,
            max_attempts=max_attempts,
            initial_delay=0,
            max_delay=0,
            jitter=False,
            failure_threshold=failure_threshold,
            reset_timeout=30.0,
        ),
    )


@pytest.fixture
def graph_store(tmp_path):
    return SQLiteGraphRepository(db_path=tmp_path / "graph.sqlite")


@pytest.fixture
def vector_store(tmp_path):
    return FAISSVectorStore(index_dir=tmp_path / "vectors")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()
