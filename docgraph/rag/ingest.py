"""Indexer: turns markdown documents into graph nodes, edges and vectors.

Orchestrates:
- Markdown parsing and section splitting (one section per H2)
- Chunking within sections
- Embedding and vector storage
- Code example and concept extraction
- Document links
- Per-repository sync state for incremental re-indexing
"""
import asyncio
import hashlib
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from docgraph.errors import IndexingFailedError
from docgraph.graph.models import (
    Chunk,
    CodeExample,
    Concept,
    Document,
    PromotionLevel,
    RelationshipType,
    Section,
    document_id_for,
    estimate_tokens,
    normalize_concept_id,
)
from docgraph.protocols import EmbeddingService, GraphRepository, VectorStore
from docgraph.rag.chunker import MarkdownChunker
from docgraph.rag.entities import EntityExtractor
from docgraph.rag.md_parser import MarkdownParser, ParsedDocument, get_parser

logger = structlog.get_logger()

MARKDOWN_SUFFIXES = (".md", ".markdown")


@dataclass
class IndexResult:
    document_id: str
    status: str  # "indexed", "partial" or "unchanged"
    sections: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    code_examples: int = 0
    concepts: int = 0
    links: int = 0


@dataclass
class _SectionSpan:
    section: Section
    start: int
    end: int


def content_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def resolve_relative_link(source_path: str, target: str) -> Optional[str]:
    """Resolve a relative link against the directory of ``source_path``.

    The fragment and query are dropped and ``./``/``../`` segments are
    normalized. Returns None for pure fragments or links escaping the root.
    """
    target = target.split("#", 1)[0].split("?", 1)[0].strip()
    if not target:
        return None

    if target.startswith("/"):
        joined = target.lstrip("/")
    else:
        base = posixpath.dirname(source_path.replace("\\", "/"))
        joined = posixpath.join(base, target)

    resolved = posixpath.normpath(joined)
    if resolved in (".", "") or resolved.startswith(".."):
        return None
    return resolved


def _empty_stats() -> Dict[str, Any]:
    return {
        "files_processed": 0,
        "files_unchanged": 0,
        "files_failed": 0,
        "documents_deleted": 0,
        "chunks_created": 0,
        "chunks_failed": 0,
        "embeddings_generated": 0,
        "skipped": False,
        "content_version": None,
    }


class DocumentIndexer:
    """Indexes documents into the knowledge graph and the vector store."""

    def __init__(
        self,
        graph: GraphRepository,
        vectors: VectorStore,
        embedder: EmbeddingService,
        extractor: Optional[EntityExtractor] = None,
        chunker: Optional[MarkdownChunker] = None,
        parser: Optional[MarkdownParser] = None,
        concurrency: int = 4,
    ):
        """Initialize the indexer.

        Args:
            graph: Graph repository
            vectors: Vector store
            embedder: Embedding service
            extractor: Optional concept extractor; concepts are skipped without one
            chunker: Chunker (default options from config)
            parser: Markdown parser
            concurrency: Documents indexed in parallel by index_directory
        """
        self.graph = graph
        self.vectors = vectors
        self.embedder = embedder
        self.extractor = extractor
        self.chunker = chunker or MarkdownChunker()
        self.parser = parser or get_parser()
        self.concurrency = max(1, concurrency)

        self.stats = _empty_stats()

    async def index_document(
        self,
        repository: str,
        file_path: str,
        raw: str,
        content_version: Optional[str] = None,
        force: bool = False,
    ) -> IndexResult:
        """Index (or fully re-index) one document.

        Args:
            repository: Source the document belongs to
            file_path: Path relative to the repository root
            raw: Full document text
            content_version: Version marker (default: digest of ``raw``)
            force: Re-index even if the stored version matches

        Returns:
            IndexResult

        Raises:
            IndexingFailedError: If the document can't be parsed
        """
        file_path = file_path.replace("\\", "/")
        document_id = document_id_for(repository, file_path)
        version = content_version or content_digest(raw)

        parsed = self.parser.parse(raw)
        if not parsed.success:
            logger.error("document_parse_failed", document_id=document_id, error=parsed.error)
            raise IndexingFailedError(f"Could not parse {file_path}")

        existing = await self.graph.get_document(document_id)
        if existing is not None:
            if existing.content_version == version and not force:
                logger.debug("document_unchanged", document_id=document_id)
                return IndexResult(document_id=document_id, status="unchanged")
            await self.delete_document(document_id)

        document = self._build_document(document_id, repository, file_path, parsed)
        # Stored without a version until every chunk made it in
        await self.graph.upsert_document(document)

        result = IndexResult(document_id=document_id, status="indexed")
        line_offsets = self._line_offsets(parsed.body)
        code_starts = [
            (line_offsets[min(block.start_line, len(line_offsets) - 1)], block)
            for block in parsed.code_blocks
        ]
        assigned_code = set()
        chunk_number = 0

        for span in self._split_sections(document_id, parsed):
            await self.graph.upsert_section(span.section)
            await self.graph.create_relationship(
                RelationshipType.HAS_SECTION,
                document_id,
                span.section.id,
                {"order": span.section.order},
            )
            result.sections += 1

            for text_chunk in self.chunker.chunk(parsed.body[span.start:span.end]):
                if not text_chunk.content.strip():
                    continue

                start = span.start + text_chunk.start_offset
                end = span.start + text_chunk.end_offset
                chunk = Chunk(
                    id=f"{document_id}:chunk-{chunk_number}",
                    section_id=span.section.id,
                    document_id=document_id,
                    order=text_chunk.index,
                    content=text_chunk.content,
                    token_count=estimate_tokens(text_chunk.content),
                    start_offset=start,
                    end_offset=end,
                )
                chunk_number += 1

                header_path = self.parser.get_heading_context(parsed.headers, start)
                await self.graph.upsert_chunk(chunk)
                await self.graph.create_relationship(
                    RelationshipType.HAS_CHUNK, span.section.id, chunk.id, {"order": chunk.order}
                )
                result.chunks += 1
                self.stats["chunks_created"] += 1

                if not await self._index_vector(document, chunk, header_path):
                    result.failed_chunks += 1

                blocks = [
                    block
                    for offset, block in code_starts
                    if start <= offset < end and id(block) not in assigned_code
                ]
                for i, block in enumerate(blocks):
                    assigned_code.add(id(block))
                    await self._index_code_example(chunk, i, block, header_path)
                    result.code_examples += 1

                result.concepts += await self._index_concepts(chunk)

        result.links = await self._index_links(document, parsed)

        if result.failed_chunks:
            result.status = "partial"
        else:
            document.content_version = version
            await self.graph.upsert_document(document)

        logger.info(
            "document_indexed",
            document_id=document_id,
            status=result.status,
            sections=result.sections,
            chunks=result.chunks,
            failed_chunks=result.failed_chunks,
            code_examples=result.code_examples,
            concepts=result.concepts,
            links=result.links,
        )

        return result

    def _build_document(
        self, document_id: str, repository: str, file_path: str, parsed: ParsedDocument
    ) -> Document:
        frontmatter = parsed.frontmatter
        doc_type = frontmatter.get("doc_type") or frontmatter.get("type") or ""
        promotion = frontmatter.get("promotion_level") or frontmatter.get("promotion")

        return Document(
            id=document_id,
            file_path=file_path,
            title=parsed.title or Path(file_path).stem,
            repository=repository,
            doc_type=str(doc_type),
            promotion_level=PromotionLevel.from_value(promotion),
            content_version="",
            metadata=frontmatter,
        )

    def _split_sections(self, document_id: str, parsed: ParsedDocument) -> List[_SectionSpan]:
        """One section per H2 heading, plus "Introduction" for leading content."""
        body = parsed.body
        h2s = [h for h in parsed.headers if h.level == 2]
        spans: List[_SectionSpan] = []

        intro_end = h2s[0].offset if h2s else len(body)
        if body[:intro_end].strip():
            spans.append(
                _SectionSpan(
                    section=Section(
                        id=f"{document_id}:introduction",
                        document_id=document_id,
                        title="Introduction",
                        order=0,
                        heading_level=2,
                    ),
                    start=0,
                    end=intro_end,
                )
            )

        for i, header in enumerate(h2s):
            end = h2s[i + 1].offset if i + 1 < len(h2s) else len(body)
            order = len(spans)
            spans.append(
                _SectionSpan(
                    section=Section(
                        id=f"{document_id}:section-{order}",
                        document_id=document_id,
                        title=header.text,
                        order=order,
                        heading_level=header.level,
                    ),
                    start=header.offset,
                    end=end,
                )
            )

        return spans

    def _line_offsets(self, body: str) -> List[int]:
        offsets = [0]
        for line in body.splitlines(keepends=True):
            offsets.append(offsets[-1] + len(line))
        return offsets

    async def _index_vector(self, document: Document, chunk: Chunk, header_path: str) -> bool:
        try:
            vector = await self.embedder.embed(chunk.content)
            self.stats["embeddings_generated"] += 1
            await self.vectors.upsert(
                chunk.id,
                vector,
                {
                    "document_id": document.id,
                    "section_id": chunk.section_id,
                    "chunk_id": chunk.id,
                    "file_path": document.file_path,
                    "repository": document.repository,
                    "title": document.title,
                    "doc_type": document.doc_type,
                    "promotion_level": document.promotion_level.value,
                    "header_path": header_path,
                    "content": chunk.content,
                },
            )
            return True
        except Exception as e:
            self.stats["chunks_failed"] += 1
            logger.warning(
                "chunk_vector_failed",
                chunk_id=chunk.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def _index_code_example(self, chunk: Chunk, i: int, block, header_path: str) -> None:
        example = CodeExample(
            id=f"{chunk.id}:code-{i}",
            chunk_id=chunk.id,
            code=block.code,
            language=block.language,
            description=header_path,
        )
        await self.graph.upsert_code_example(example)
        await self.graph.create_relationship(
            RelationshipType.HAS_CODE_EXAMPLE, chunk.id, example.id
        )

    async def _index_concepts(self, chunk: Chunk) -> int:
        if self.extractor is None:
            return 0

        try:
            entities = await self.extractor.extract(chunk.content)
        except Exception as e:
            logger.warning(
                "concept_extraction_failed",
                chunk_id=chunk.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0

        ids = {}
        for entity in entities:
            concept = Concept(
                id=normalize_concept_id(entity.name),
                name=entity.name,
                description=entity.description,
                category=entity.type,
                aliases=entity.aliases,
            )
            await self.graph.upsert_concept(concept)
            await self.graph.create_relationship(RelationshipType.MENTIONS, chunk.id, concept.id)
            ids[entity.name.lower()] = concept.id

        for entity in entities:
            source_id = ids[entity.name.lower()]
            for name in entity.related:
                target_id = ids.get(name.lower())
                if target_id and target_id != source_id:
                    await self.graph.create_relationship(
                        RelationshipType.RELATES_TO, source_id, target_id
                    )

        return len(entities)

    async def _index_links(self, document: Document, parsed: ParsedDocument) -> int:
        targets = {}
        for link in parsed.links:
            resolved = resolve_relative_link(document.file_path, link.target)
            if resolved is None or not resolved.lower().endswith(MARKDOWN_SUFFIXES):
                continue
            target_id = document_id_for(document.repository, resolved)
            if target_id != document.id:
                targets.setdefault(target_id, link.text)

        for target_id, text in targets.items():
            await self.graph.create_relationship(
                RelationshipType.LINKS_TO, document.id, target_id, {"text": text}
            )
        return len(targets)

    async def delete_document(self, document_id: str) -> bool:
        """Remove a document's graph nodes and vectors. Concepts are kept."""
        deleted = await self.graph.delete_document_cascade(document_id)
        await self.vectors.delete_document(document_id)
        return deleted

    async def index_file(
        self, repository: str, root: Path, path: Path, force: bool = False
    ) -> IndexResult:
        raw = path.read_text(encoding="utf-8")
        return await self.index_document(
            repository, path.relative_to(root).as_posix(), raw, force=force
        )

    def discover_markdown_files(self, root: Path) -> List[Path]:
        """Find all markdown files under ``root``.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        if not root.exists():
            raise FileNotFoundError(f"Docs directory not found: {root}")

        files = sorted(
            p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in MARKDOWN_SUFFIXES
        )
        logger.info("markdown_files_discovered", count=len(files), root=str(root))
        return files

    async def index_directory(
        self,
        root: Path,
        repository: str,
        version: Optional[str] = None,
        force: bool = False,
        progress_callback: Optional[Callable[[int, int, Path], None]] = None,
    ) -> Dict[str, Any]:
        """Index every markdown file under ``root`` as one repository.

        Skipped entirely when the repository's sync state already records
        this version. Documents whose files disappeared are deleted.

        Args:
            root: Repository root directory
            repository: Repository name
            version: Content version (e.g. commit hash); default is a digest of all files
            force: Ignore sync state and stored document versions
            progress_callback: Optional callback(current, total, file_path)

        Returns:
            Dictionary with indexing statistics
        """
        root = Path(root)
        files = self.discover_markdown_files(root)
        sources: List[Tuple[Path, str, str]] = []
        for path in files:
            raw = path.read_text(encoding="utf-8")
            sources.append((path, path.relative_to(root).as_posix(), raw))

        if version is None:
            version = content_digest(
                "\n".join(f"{rel}:{content_digest(raw)}" for _, rel, raw in sources)
            )

        self.stats = _empty_stats()
        self.stats["content_version"] = version

        state = await self.graph.get_sync_state(repository)
        if state is not None and state.content_version == version and not force:
            logger.info("repository_unchanged", repository=repository, content_version=version)
            self.stats["skipped"] = True
            return self.stats

        logger.info("starting_index_directory", repository=repository, files=len(sources), force=force)

        semaphore = asyncio.Semaphore(self.concurrency)
        completed = 0
        partial = 0

        async def run(path: Path, rel: str, raw: str) -> None:
            nonlocal completed, partial
            async with semaphore:
                try:
                    result = await self.index_document(repository, rel, raw, force=force)
                    if result.status == "unchanged":
                        self.stats["files_unchanged"] += 1
                    else:
                        self.stats["files_processed"] += 1
                        if result.status == "partial":
                            partial += 1
                except Exception as e:
                    logger.error(
                        "file_indexing_failed",
                        path=rel,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    self.stats["files_failed"] += 1
                    # Continue with next file instead of failing entirely
                finally:
                    completed += 1
                    if progress_callback:
                        progress_callback(completed, len(sources), path)

        await asyncio.gather(*(run(path, rel, raw) for path, rel, raw in sources))

        current = {document_id_for(repository, rel) for _, rel, _ in sources}
        for document in await self.graph.list_documents(repository):
            if document.id not in current:
                await self.delete_document(document.id)
                self.stats["documents_deleted"] += 1
                logger.info("stale_document_removed", document_id=document.id)

        if self.stats["files_failed"] == 0 and partial == 0:
            await self.graph.set_sync_state(repository, version)
        else:
            logger.warning(
                "sync_state_not_recorded",
                repository=repository,
                files_failed=self.stats["files_failed"],
                partial_files=partial,
            )

        logger.info("index_directory_completed", repository=repository, stats=self.stats)

        return self.stats
