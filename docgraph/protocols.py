"""Contracts for the external backends consumed by indexing and retrieval.

Each backend is replaceable independently: the embedding model, the vector
index, the graph store and the text-generation engine.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from docgraph.graph.models import (
    Chunk,
    CodeExample,
    Concept,
    Document,
    Section,
    SyncState,
)


@dataclass
class VectorSearchResult:
    """A single vector hit; ``score`` is a similarity, higher is better."""

    chunk_id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class EmbeddingService(Protocol):
    """Turns text into a vector. Must be deterministic for identical input."""

    async def embed(self, text: str) -> List[float]:
        ...


@runtime_checkable
class VectorStore(Protocol):
    async def search(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        """Return up to k hits ordered by descending score."""
        ...

    async def upsert(
        self, chunk_id: str, vector: Sequence[float], metadata: Dict[str, Any]
    ) -> None:
        ...

    async def delete(self, chunk_id: str) -> None:
        ...

    async def delete_document(self, document_id: str) -> int:
        """Remove every vector whose metadata belongs to the document."""
        ...


@runtime_checkable
class TextGenerator(Protocol):
    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        ...


@runtime_checkable
class GraphRepository(Protocol):
    """Upsert and query contract over any graph backend.

    Upserts are idempotent by id. Relationships are idempotent per
    (type, source, target). Batched lookups return an empty list for an
    empty id list without touching the backend.
    """

    async def upsert_document(self, document: Document) -> None: ...

    async def upsert_section(self, section: Section) -> None: ...

    async def upsert_chunk(self, chunk: Chunk) -> None: ...

    async def upsert_concept(self, concept: Concept) -> None: ...

    async def upsert_code_example(self, example: CodeExample) -> None: ...

    async def create_relationship(
        self,
        rel_type: str,
        source_id: str,
        target_id: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def delete_document_cascade(self, document_id: str) -> bool: ...

    async def get_document(self, document_id: str) -> Optional[Document]: ...

    async def list_documents(self, repository: Optional[str] = None) -> List[Document]: ...

    async def get_chunks_by_ids(self, chunk_ids: Sequence[str]) -> List[Chunk]: ...

    async def get_concepts_by_chunk_ids(self, chunk_ids: Sequence[str]) -> List[Concept]: ...

    async def get_related_concepts(self, concept_id: str, hops: int = 2) -> List[Concept]: ...

    async def get_linked_documents(self, document_id: str) -> List[Document]: ...

    async def find_concepts_by_name(self, name: str) -> List[Concept]: ...

    async def get_chunks_by_concept(self, concept_id: str) -> List[Chunk]: ...

    async def get_sync_state(self, source: str) -> Optional[SyncState]: ...

    async def set_sync_state(self, source: str, content_version: str) -> SyncState: ...
