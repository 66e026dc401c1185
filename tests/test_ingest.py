"""Tests for document indexing."""
import pytest

from conftest import FakeGenerator, FakeVectorStore
from docgraph.errors import IndexingFailedError
from docgraph.graph.models import PromotionLevel, document_id_for, normalize_concept_id
from docgraph.rag.entities import EntityExtractor
from docgraph.rag.ingest import DocumentIndexer, content_digest, resolve_relative_link
from docgraph.rag.md_parser import MarkdownParser

GUIDE = """---
title: Caching Guide
doc_type: guide
promotion_level: promoted
---
# Caching

Intro about the graph cache.

## Setup

Configure the cache. See [retries](./retry.md) and [home](../index.md#top).

```python
cache = EmbeddingCache()
```

## Usage

Call get_or_compute.
"""

GUIDE_ID = "docs:guides/cache.md"


@pytest.fixture
def vectors():
    return FakeVectorStore()


@pytest.fixture
def indexer(graph_store, vectors, embedder):
    return DocumentIndexer(graph_store, vectors, embedder)


@pytest.mark.parametrize(
    "source, target, expected",
    [
        ("guides/a.md", "./b.md", "guides/b.md"),
        ("guides/a.md", "../c.md#install", "c.md"),
        ("guides/a.md", "/root.md", "root.md"),
        ("a.md", "b.md?plain=1", "b.md"),
        ("a.md", "../../outside.md", None),
        ("a.md", "#fragment", None),
    ],
)
def test_resolve_relative_link(source, target, expected):
    assert resolve_relative_link(source, target) == expected


async def test_index_document_builds_graph_and_vectors(indexer, graph_store, vectors):
    result = await indexer.index_document("docs", "guides/cache.md", GUIDE)

    assert result.status == "indexed"
    assert (result.sections, result.chunks, result.code_examples, result.links) == (3, 3, 1, 2)
    assert result.failed_chunks == 0

    doc = await graph_store.get_document(GUIDE_ID)
    assert doc.title == "Caching Guide"
    assert doc.doc_type == "guide"
    assert doc.promotion_level is PromotionLevel.PROMOTED
    assert doc.content_version == content_digest(GUIDE)

    stats = await graph_store.get_stats()
    assert stats["sections"] == 3
    assert stats["chunks"] == 3
    assert stats["code_examples"] == 1

    assert len(vectors.vectors) == 3
    setup = vectors.vectors[f"{GUIDE_ID}:chunk-1"]["metadata"]
    assert setup["header_path"] == "# Caching > ## Setup"
    assert setup["promotion_level"] == "promoted"
    assert setup["repository"] == "docs"
    assert setup["section_id"] == f"{GUIDE_ID}:section-1"
    assert "Configure the cache." in setup["content"]


async def test_links_point_at_resolved_documents(indexer, graph_store):
    await indexer.index_document("docs", "guides/cache.md", GUIDE)
    await indexer.index_document("docs", "guides/retry.md", "# Retries\n\nBack off.\n")
    await indexer.index_document("docs", "index.md", "# Home\n")

    linked = await graph_store.get_linked_documents(GUIDE_ID)

    assert sorted(d.id for d in linked) == ["docs:guides/retry.md", "docs:index.md"]


async def test_unchanged_document_is_skipped(indexer, embedder):
    await indexer.index_document("docs", "guides/cache.md", GUIDE)
    calls = len(embedder.calls)

    result = await indexer.index_document("docs", "guides/cache.md", GUIDE)

    assert result.status == "unchanged"
    assert len(embedder.calls) == calls


async def test_force_reindexes_unchanged_document(indexer, embedder):
    await indexer.index_document("docs", "guides/cache.md", GUIDE)
    calls = len(embedder.calls)

    result = await indexer.index_document("docs", "guides/cache.md", GUIDE, force=True)

    assert result.status == "indexed"
    assert len(embedder.calls) == calls + 3


async def test_changed_document_replaces_old_nodes(indexer, graph_store, vectors):
    await indexer.index_document("docs", "guides/cache.md", GUIDE)
    shorter = GUIDE.split("## Usage")[0]

    result = await indexer.index_document("docs", "guides/cache.md", shorter)

    assert result.chunks == 2
    stats = await graph_store.get_stats()
    assert stats["chunks"] == 2
    assert stats["sections"] == 2
    assert len(vectors.vectors) == 2


async def test_vector_failures_leave_document_for_retry(graph_store, embedder):
    indexer = DocumentIndexer(graph_store, FakeVectorStore(fail=RuntimeError("index down")), embedder)

    result = await indexer.index_document("docs", "guides/cache.md", GUIDE)

    assert result.status == "partial"
    assert result.failed_chunks == 3
    assert (await graph_store.get_document(GUIDE_ID)).content_version == ""

    indexer.vectors = FakeVectorStore()
    retry = await indexer.index_document("docs", "guides/cache.md", GUIDE)
    assert retry.status == "indexed"


async def test_concepts_are_extracted_and_related(graph_store, vectors, embedder):
    generator = FakeGenerator(
        reply='[{"name": "Embedding Cache", "type": "Pattern", "related": ["LRU"]}, {"name": "LRU"}]'
    )
    indexer = DocumentIndexer(graph_store, vectors, embedder, extractor=EntityExtractor(generator))

    result = await indexer.index_document("docs", "guides/cache.md", GUIDE)

    assert result.concepts == 6
    [concept] = await graph_store.find_concepts_by_name("embedding cache")
    assert concept.id == "concept:embedding-cache"
    assert concept.category == "Pattern"
    related = await graph_store.get_related_concepts(concept.id, 1)
    assert [c.name for c in related] == ["LRU"]
    chunks = await graph_store.get_chunks_by_concept("concept:lru")
    assert len(chunks) == 3


async def test_extraction_failure_does_not_fail_document(graph_store, vectors, embedder):
    indexer = DocumentIndexer(
        graph_store, vectors, embedder, extractor=EntityExtractor(FakeGenerator(fail=RuntimeError("down")))
    )

    result = await indexer.index_document("docs", "guides/cache.md", GUIDE)

    assert result.status == "indexed"
    assert result.concepts == 0


async def test_unparseable_document_raises(graph_store, vectors, embedder, monkeypatch):
    parser = MarkdownParser()

    def explode(body):
        raise RuntimeError("bad markdown")

    monkeypatch.setattr(parser, "_scan_body", explode)
    indexer = DocumentIndexer(graph_store, vectors, embedder, parser=parser)

    with pytest.raises(IndexingFailedError):
        await indexer.index_document("docs", "broken.md", "# Broken\n")


def _write_tree(root):
    (root / "sub").mkdir(parents=True)
    (root / "a.md").write_text("# A\n\nSee [b](sub/b.md).\n", encoding="utf-8")
    (root / "sub" / "b.md").write_text("# B\n\nBody of b.\n", encoding="utf-8")
    (root / "notes.txt").write_text("not markdown", encoding="utf-8")


async def test_index_directory_and_sync_state(indexer, graph_store, tmp_path):
    root = tmp_path / "docs"
    _write_tree(root)
    progress = []

    stats = await indexer.index_directory(
        root, "docs", progress_callback=lambda current, total, path: progress.append((current, total))
    )

    assert stats["files_processed"] == 2
    assert stats["files_failed"] == 0
    assert stats["skipped"] is False
    assert sorted(progress) == [(1, 2), (2, 2)]
    state = await graph_store.get_sync_state("docs")
    assert state.content_version == stats["content_version"]

    again = await indexer.index_directory(root, "docs")
    assert again["skipped"] is True


async def test_index_directory_removes_stale_documents(indexer, graph_store, tmp_path):
    root = tmp_path / "docs"
    _write_tree(root)
    await indexer.index_directory(root, "docs")

    (root / "sub" / "b.md").unlink()
    (root / "a.md").write_text("# A\n\nChanged.\n", encoding="utf-8")
    stats = await indexer.index_directory(root, "docs")

    assert stats["documents_deleted"] == 1
    assert stats["files_processed"] == 1
    assert [d.id for d in await graph_store.list_documents("docs")] == ["docs:a.md"]


async def test_explicit_version_controls_skipping(indexer, tmp_path):
    root = tmp_path / "docs"
    _write_tree(root)
    await indexer.index_directory(root, "docs", version="commit-1")

    assert (await indexer.index_directory(root, "docs", version="commit-1"))["skipped"] is True

    stats = await indexer.index_directory(root, "docs", version="commit-2")
    assert stats["skipped"] is False
    assert stats["files_unchanged"] == 2


async def test_failed_file_blocks_sync_state(indexer, graph_store, tmp_path, monkeypatch):
    root = tmp_path / "docs"
    _write_tree(root)
    original = indexer.index_document

    async def flaky(repository, file_path, raw, **kwargs):
        if file_path == "sub/b.md":
            raise RuntimeError("disk error")
        return await original(repository, file_path, raw, **kwargs)

    monkeypatch.setattr(indexer, "index_document", flaky)

    stats = await indexer.index_directory(root, "docs")

    assert stats["files_failed"] == 1
    assert stats["files_processed"] == 1
    assert await graph_store.get_sync_state("docs") is None


async def test_missing_directory(indexer, tmp_path):
    with pytest.raises(FileNotFoundError):
        await indexer.index_directory(tmp_path / "nope", "docs")


def test_concept_ids_keep_distinct_names_apart():
    names = ["C", "C#", "C++", "缓存", "日志", "Кэш", "★"]

    ids = [normalize_concept_id(name) for name in names]

    assert len(set(ids)) == len(names)
    assert all(i != "concept:" for i in ids)
    assert normalize_concept_id("C#") == "concept:c-sharp"
    assert normalize_concept_id("Кэш") == "concept:кэш"
    assert normalize_concept_id(" Embedding  Cache ") == "concept:embedding-cache"
    assert normalize_concept_id("★") == normalize_concept_id(" ★ ")


async def test_non_latin_concepts_get_their_own_nodes(graph_store, vectors, embedder):
    generator = FakeGenerator(reply='[{"name": "缓存"}, {"name": "日志"}, {"name": "C#"}, {"name": "C"}]')
    indexer = DocumentIndexer(graph_store, vectors, embedder, extractor=EntityExtractor(generator))

    await indexer.index_document("docs", "guides/cache.md", GUIDE)

    for name in ("缓存", "日志", "C#", "C"):
        [concept] = await graph_store.find_concepts_by_name(name)
        assert concept.name == name
        assert concept.id == normalize_concept_id(name)


async def test_paths_differing_only_in_case_are_separate_documents(indexer, graph_store):
    await indexer.index_document("docs", "Guide.md", "# Upper\n\nFirst file.\n")
    await indexer.index_document("docs", "guide.md", "# Lower\n\nSecond file.\n")

    documents = await graph_store.list_documents("docs")

    assert sorted((d.file_path, d.title) for d in documents) == [("Guide.md", "Upper"), ("guide.md", "Lower")]
    assert document_id_for("docs", "Guide.md") != document_id_for("docs", "guide.md")
