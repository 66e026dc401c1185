"""GraphRAG retrieval pipeline.

Handles:
- Query embedding (cached)
- Over-fetching vector search
- Grouping by document with promotion boosts
- Best-effort graph enrichment (chunk text, mentioned and related concepts)
- Answer synthesis with source attribution and a confidence score
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from docgraph import config
from docgraph.errors import (
    DocGraphError,
    EmbeddingFailedError,
    EmptyInputError,
    OperationCancelledError,
    SearchFailedError,
    SynthesisFailedError,
    UnexpectedError,
)
from docgraph.graph.models import Concept, PromotionLevel
from docgraph.protocols import (
    EmbeddingService,
    GraphRepository,
    TextGenerator,
    VectorSearchResult,
    VectorStore,
)

logger = structlog.get_logger()

NO_RESULTS_ANSWER = "No relevant documents found for your query."

SYSTEM_PROMPT = """You are a knowledgeable documentation assistant.
Answer the user's question using the provided context.

Guidelines:
- Base your answer ONLY on the provided context
- If the context doesn't contain enough information, say so clearly
- Cite the source file paths you relied on
- Be concise and precise
- Use code examples from the context when relevant"""


@dataclass
class QueryOptions:
    """Per-request retrieval options."""

    max_results: int = config.DEFAULT_MAX_RESULTS
    repository: Optional[str] = None
    doc_type: Optional[str] = None
    min_relevance: float = config.MIN_RELEVANCE_SCORE
    include_related: bool = True
    request_id: Optional[str] = None


@dataclass
class Source:
    document_id: str
    chunk_id: str
    file_path: str
    repository: str
    title: str
    relevance_score: float  # raw similarity, before promotion boost


@dataclass
class RelatedConcept:
    id: str
    name: str
    description: str = ""
    category: str = ""


@dataclass
class GraphRagResult:
    answer: str
    sources: List[Source] = field(default_factory=list)
    related_concepts: List[RelatedConcept] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [vars(s) for s in self.sources],
            "related_concepts": [vars(c) for c in self.related_concepts],
            "confidence": self.confidence,
        }


@dataclass
class RankedHit:
    """Representative chunk of one document after boosting."""

    hit: VectorSearchResult
    boost: float
    content: str = ""

    @property
    def raw_score(self) -> float:
        return self.hit.score

    @property
    def boosted_score(self) -> float:
        return self.hit.score * self.boost

    @property
    def document_id(self) -> str:
        return self.hit.metadata.get("document_id") or self.hit.chunk_id

    @property
    def file_path(self) -> str:
        return self.hit.metadata.get("file_path", "")


def promotion_boost(value: Any) -> float:
    level = PromotionLevel.from_value(value)
    return config.PROMOTION_BOOSTS.get(level.value, 1.0)


def clamp_max_results(value: Optional[int]) -> int:
    if value is None:
        return config.DEFAULT_MAX_RESULTS
    return max(1, min(config.MAX_RESULTS_LIMIT, int(value)))


def group_by_document(hits: List[VectorSearchResult], max_results: int) -> List[RankedHit]:
    """Keep the best boosted chunk per document, ordered by boosted score.

    Ties keep search order, so with equal raw scores a pinned document
    still ranks above a standard one through its larger boost.
    """
    best: Dict[str, RankedHit] = {}
    for hit in hits:
        ranked = RankedHit(
            hit=hit,
            boost=promotion_boost(hit.metadata.get("promotion_level")),
            content=hit.metadata.get("content", ""),
        )
        current = best.get(ranked.document_id)
        if current is None or ranked.boosted_score > current.boosted_score:
            best[ranked.document_id] = ranked

    ordered = sorted(best.values(), key=lambda r: r.boosted_score, reverse=True)
    return ordered[:max_results]


def compute_confidence(scores: List[float]) -> float:
    if not scores:
        return 0.0
    average = sum(scores) / len(scores)
    return max(0.0, min(1.0, average * config.CONFIDENCE_SCALE))


class GraphRagPipeline:
    """Answers questions from the vector index and the knowledge graph."""

    def __init__(
        self,
        embedder: EmbeddingService,
        vectors: VectorStore,
        graph: GraphRepository,
        generator: TextGenerator,
        max_context_chars: int = None,
        related_hops: int = None,
    ):
        self.embedder = embedder
        self.vectors = vectors
        self.graph = graph
        self.generator = generator
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.related_hops = related_hops or config.RELATED_CONCEPT_HOPS

    async def query(self, text: str, options: QueryOptions = None) -> GraphRagResult:
        """Answer a question.

        Args:
            text: Question text
            options: Per-request options (defaults from config)

        Returns:
            GraphRagResult with answer, sources, related concepts and confidence

        Raises:
            EmptyInputError: Blank query, before any backend call
            EmbeddingFailedError: Query embedding failed
            SearchFailedError: Vector search failed
            SynthesisFailedError: Answer generation failed
            BackendUnavailableError: A backend's circuit is open or retries ran out
            OperationCancelledError: A backend call was cancelled
            UnexpectedError: Anything else
        """
        if not text or not text.strip():
            raise EmptyInputError("Query text must not be empty")

        options = options or QueryOptions()
        log = logger.bind(request_id=options.request_id)

        try:
            return await self._run(text.strip(), options, log)
        except asyncio.CancelledError:
            log.warning("query_cancelled")
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise OperationCancelledError() from None
        except DocGraphError:
            raise
        except Exception as e:
            log.error("query_failed", error=str(e), error_type=type(e).__name__)
            raise UnexpectedError() from e

    async def _run(self, text: str, options: QueryOptions, log) -> GraphRagResult:
        max_results = clamp_max_results(options.max_results)
        log.info("query_started", query_length=len(text), max_results=max_results)

        try:
            query_vector = await self.embedder.embed(text)
        except DocGraphError:
            raise
        except Exception as e:
            raise EmbeddingFailedError() from e

        try:
            hits = await self.vectors.search(
                query_vector,
                max_results * config.OVERFETCH_FACTOR,
                {"repository": options.repository, "doc_type": options.doc_type},
            )
        except DocGraphError:
            raise
        except Exception as e:
            raise SearchFailedError() from e

        hits = [h for h in hits if h.score >= options.min_relevance]
        if not hits:
            log.info("query_no_results")
            return GraphRagResult(answer=NO_RESULTS_ANSWER, confidence=0.0)

        ranked = group_by_document(hits, max_results)
        chunk_ids = [r.hit.chunk_id for r in ranked]

        chunks, concepts = await asyncio.gather(
            self._best_effort("chunk_refresh", lambda: self.graph.get_chunks_by_ids(chunk_ids), [], log),
            self._best_effort("concept_lookup", lambda: self.graph.get_concepts_by_chunk_ids(chunk_ids), [], log),
        )

        contents = {c.id: c.content for c in chunks}
        for r in ranked:
            r.content = contents.get(r.hit.chunk_id, r.content)

        related: List[Concept] = []
        if options.include_related and concepts:
            related = await self._related_concepts(concepts, log)

        all_concepts = self._merge_concepts(concepts, related)
        context = self.build_context(ranked, all_concepts)

        try:
            answer = await self.generator.generate(
                f"Question: {text}\n\n{context}", system=SYSTEM_PROMPT
            )
        except DocGraphError:
            raise
        except Exception as e:
            raise SynthesisFailedError() from e

        result = GraphRagResult(
            answer=answer.strip(),
            sources=[
                Source(
                    document_id=r.document_id,
                    chunk_id=r.hit.chunk_id,
                    file_path=r.file_path,
                    repository=r.hit.metadata.get("repository", ""),
                    title=r.hit.metadata.get("title", ""),
                    relevance_score=r.raw_score,
                )
                for r in ranked
            ],
            related_concepts=[
                RelatedConcept(id=c.id, name=c.name, description=c.description, category=c.category)
                for c in all_concepts
            ],
            confidence=compute_confidence([r.raw_score for r in ranked]),
        )

        log.info(
            "query_completed",
            sources=len(result.sources),
            related_concepts=len(result.related_concepts),
            confidence=round(result.confidence, 3),
        )

        return result

    async def _best_effort(
        self, step: str, call: Callable[[], Awaitable[Any]], default: Any, log
    ) -> Any:
        """Run an enrichment call; on failure log it and return ``default``."""
        try:
            return await call()
        except Exception as e:
            log.warning(
                "enrichment_step_failed",
                step=step,
                error=str(e),
                error_type=type(e).__name__,
            )
            return default

    async def _related_concepts(self, concepts: List[Concept], log) -> List[Concept]:
        results = await asyncio.gather(
            *(
                self._best_effort(
                    "related_concepts",
                    lambda c=c: self.graph.get_related_concepts(c.id, self.related_hops),
                    [],
                    log,
                )
                for c in concepts
            )
        )
        return [concept for group in results for concept in group]

    def _merge_concepts(self, mentioned: List[Concept], related: List[Concept]) -> List[Concept]:
        merged: Dict[str, Concept] = {}
        for concept in list(mentioned) + list(related):
            merged.setdefault(concept.id, concept)
        return list(merged.values())

    def build_context(self, ranked: List[RankedHit], concepts: List[Concept]) -> str:
        """Format selected chunks, best first, plus concept notes for the prompt."""
        parts = ["## Context", ""]
        total = 0

        for r in ranked:
            block = (
                f"### Source: {r.file_path} (relevance: {r.raw_score:.2f})\n"
                f"{r.content.strip()}\n"
            )
            if total + len(block) > self.max_context_chars:
                remaining = self.max_context_chars - total
                if remaining > 200:
                    parts.append(block[:remaining] + "...\n")
                break
            parts.append(block)
            total += len(block)

        if concepts:
            parts.append("## Related Concepts")
            for concept in concepts:
                line = f"- {concept.name}"
                if concept.description:
                    line += f": {concept.description}"
                parts.append(line)

        return "\n".join(parts)
