"""Builds the backends and wraps each one in its resilience policy."""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from docgraph import config
from docgraph.graph.store_sqlite import SQLiteGraphRepository
from docgraph.llm_client import OllamaClient, OllamaEmbedder, OllamaGenerator
from docgraph.rag.entities import EntityExtractor
from docgraph.rag.ingest import DocumentIndexer
from docgraph.rag.retriever import GraphRagPipeline
from docgraph.rag.store_faiss import FAISSVectorStore
from docgraph.resilience.cache import EmbeddingCache
from docgraph.resilience.services import (
    ResilientEmbeddingService,
    ResilientGraphRepository,
    ResilientTextGenerator,
    ResilientVectorStore,
)

logger = structlog.get_logger()


@dataclass
class Services:
    ollama: Optional[OllamaClient]
    graph_store: SQLiteGraphRepository
    vector_store: FAISSVectorStore
    cache: EmbeddingCache
    pipeline: GraphRagPipeline
    indexer: DocumentIndexer

    def save(self) -> None:
        """Persist the vector index if anything was indexed."""
        if self.vector_store.index is not None:
            self.vector_store.save_index()


def build_services(
    data_dir: Path = None,
    ollama: OllamaClient = None,
    extract_concepts: bool = None,
) -> Services:
    """Wire Ollama, SQLite and FAISS backends behind resilient decorators.

    Args:
        data_dir: Where the graph database and vector index live (default from config)
        ollama: Ollama client (default from config)
        extract_concepts: Run LLM concept extraction while indexing (default from config)
    """
    if extract_concepts is None:
        extract_concepts = config.EXTRACT_CONCEPTS

    ollama = ollama or OllamaClient()
    graph_store = SQLiteGraphRepository(
        db_path=(data_dir / "graph.sqlite") if data_dir else None
    )
    vector_store = FAISSVectorStore(index_dir=data_dir)
    vector_store.init_or_load()
    cache = EmbeddingCache()

    embedder = ResilientEmbeddingService(OllamaEmbedder(ollama), cache=cache)
    generator = ResilientTextGenerator(OllamaGenerator(ollama))
    vectors = ResilientVectorStore(vector_store)
    graph = ResilientGraphRepository(graph_store)

    pipeline = GraphRagPipeline(embedder, vectors, graph, generator)
    indexer = DocumentIndexer(
        graph,
        vectors,
        embedder,
        extractor=EntityExtractor(generator) if extract_concepts else None,
        concurrency=config.INDEX_CONCURRENCY,
    )

    logger.info(
        "services_initialized",
        graph_db=str(graph_store.db_path),
        index_dir=str(vector_store.index_dir),
        extract_concepts=extract_concepts,
    )

    return Services(
        ollama=ollama,
        graph_store=graph_store,
        vector_store=vector_store,
        cache=cache,
        pipeline=pipeline,
        indexer=indexer,
    )
