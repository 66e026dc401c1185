"""SQLite-backed knowledge graph repository.

Nodes live in one table per entity kind; relationships live in a single
edge table keyed by (type, source_id, target_id). Every operation opens its
own connection and runs in a worker thread so the event loop never blocks.
"""
import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from docgraph import config
from docgraph.graph.models import (
    Chunk,
    CodeExample,
    Concept,
    Document,
    PromotionLevel,
    RelationshipType,
    Section,
    SyncState,
    utcnow,
)

logger = structlog.get_logger()

# Upper bound on bound parameters per IN (...) clause
BATCH_SIZE = 500

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        file_path TEXT NOT NULL,
        title TEXT,
        repository TEXT NOT NULL DEFAULT '',
        doc_type TEXT,
        promotion_level TEXT,
        last_updated TEXT,
        content_version TEXT,
        metadata_json TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_repo_path
    ON documents(repository, file_path)
    """,
    """
    CREATE TABLE IF NOT EXISTS sections (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        title TEXT,
        ord INTEGER NOT NULL,
        heading_level INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sections_document ON sections(document_id)",
    """
    CREATE TABLE IF NOT EXISTS chunks (
        id TEXT PRIMARY KEY,
        section_id TEXT NOT NULL,
        document_id TEXT NOT NULL,
        ord INTEGER NOT NULL,
        content TEXT NOT NULL,
        token_count INTEGER,
        start_offset INTEGER,
        end_offset INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id)",
    """
    CREATE TABLE IF NOT EXISTS concepts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        category TEXT,
        aliases_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS code_examples (
        id TEXT PRIMARY KEY,
        chunk_id TEXT NOT NULL,
        language TEXT,
        code TEXT NOT NULL,
        description TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_code_examples_chunk ON code_examples(chunk_id)",
    """
    CREATE TABLE IF NOT EXISTS relationships (
        type TEXT NOT NULL,
        source_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        properties_json TEXT,
        PRIMARY KEY (type, source_id, target_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        source TEXT PRIMARY KEY,
        content_version TEXT NOT NULL,
        synced_at TEXT NOT NULL
    )
    """,
]


def _batches(items: Sequence[str], size: int = BATCH_SIZE) -> Iterable[List[str]]:
    items = list(dict.fromkeys(items))
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        file_path=row["file_path"],
        title=row["title"] or "",
        repository=row["repository"] or "",
        doc_type=row["doc_type"] or "",
        promotion_level=PromotionLevel.from_value(row["promotion_level"]),
        last_updated=_parse_datetime(row["last_updated"]),
        content_version=row["content_version"] or "",
        metadata=_load_json(row["metadata_json"], {}),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        section_id=row["section_id"],
        document_id=row["document_id"],
        order=row["ord"],
        content=row["content"],
        token_count=row["token_count"] or 0,
        start_offset=row["start_offset"] or 0,
        end_offset=row["end_offset"] or 0,
    )


def _row_to_concept(row: sqlite3.Row) -> Concept:
    return Concept(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        category=row["category"] or "",
        aliases=_load_json(row["aliases_json"], []),
    )


class SQLiteGraphRepository:
    """Graph repository over a local SQLite database file."""

    def __init__(self, db_path: Path = None, timeout: float = None):
        """Initialize the repository and create the schema if needed.

        Args:
            db_path: Database file (default from config)
            timeout: Seconds to wait on a locked database (default from config)
        """
        self.db_path = Path(db_path or config.GRAPH_DB_PATH)
        self.timeout = timeout or config.DATABASE_TIMEOUT
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()

        try:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
            logger.info("graph_schema_initialized", db_path=str(self.db_path))

        except Exception as e:
            conn.rollback()
            logger.error("graph_schema_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    def _write(self, event: str, sql: str, params: Sequence[Any]) -> None:
        conn = self._connect()

        try:
            conn.execute(sql, params)
            conn.commit()

        except Exception as e:
            conn.rollback()
            logger.error(event, error=str(e))
            raise
        finally:
            conn.close()

    def _query(self, event: str, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        conn = self._connect()

        try:
            return conn.execute(sql, params).fetchall()

        except Exception as e:
            logger.error(event, error=str(e))
            raise
        finally:
            conn.close()

    def _query_batched(self, event: str, sql_template: str, ids: Sequence[str]) -> List[sqlite3.Row]:
        """Run ``sql_template`` (with one ``{ids}`` slot) over bounded id batches."""
        rows: List[sqlite3.Row] = []
        for batch in _batches(ids):
            sql = sql_template.format(ids=_placeholders(len(batch)))
            rows.extend(self._query(event, sql, batch))
        return rows

    # Upserts

    async def upsert_document(self, document: Document) -> None:
        await asyncio.to_thread(
            self._write,
            "document_upsert_failed",
            """
            INSERT INTO documents (
                id, file_path, title, repository, doc_type,
                promotion_level, last_updated, content_version, metadata_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                file_path = excluded.file_path,
                title = excluded.title,
                repository = excluded.repository,
                doc_type = excluded.doc_type,
                promotion_level = excluded.promotion_level,
                last_updated = excluded.last_updated,
                content_version = excluded.content_version,
                metadata_json = excluded.metadata_json
            """,
            (
                document.id,
                document.file_path,
                document.title,
                document.repository,
                document.doc_type,
                PromotionLevel.from_value(document.promotion_level).value,
                document.last_updated.isoformat() if document.last_updated else None,
                document.content_version,
                json.dumps(document.metadata, default=str) if document.metadata else None,
            ),
        )

    async def upsert_section(self, section: Section) -> None:
        await asyncio.to_thread(
            self._write,
            "section_upsert_failed",
            """
            INSERT INTO sections (id, document_id, title, ord, heading_level)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                document_id = excluded.document_id,
                title = excluded.title,
                ord = excluded.ord,
                heading_level = excluded.heading_level
            """,
            (section.id, section.document_id, section.title, section.order, section.heading_level),
        )

    async def upsert_chunk(self, chunk: Chunk) -> None:
        await asyncio.to_thread(
            self._write,
            "chunk_upsert_failed",
            """
            INSERT INTO chunks (
                id, section_id, document_id, ord, content,
                token_count, start_offset, end_offset
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                section_id = excluded.section_id,
                document_id = excluded.document_id,
                ord = excluded.ord,
                content = excluded.content,
                token_count = excluded.token_count,
                start_offset = excluded.start_offset,
                end_offset = excluded.end_offset
            """,
            (
                chunk.id,
                chunk.section_id,
                chunk.document_id,
                chunk.order,
                chunk.content,
                chunk.token_count,
                chunk.start_offset,
                chunk.end_offset,
            ),
        )

    async def upsert_concept(self, concept: Concept) -> None:
        # Keep existing text when a later mention carries less detail
        await asyncio.to_thread(
            self._write,
            "concept_upsert_failed",
            """
            INSERT INTO concepts (id, name, description, category, aliases_json)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = COALESCE(NULLIF(excluded.description, ''), concepts.description),
                category = COALESCE(NULLIF(excluded.category, ''), concepts.category),
                aliases_json = COALESCE(excluded.aliases_json, concepts.aliases_json)
            """,
            (
                concept.id,
                concept.name,
                concept.description,
                concept.category,
                json.dumps(concept.aliases) if concept.aliases else None,
            ),
        )

    async def upsert_code_example(self, example: CodeExample) -> None:
        await asyncio.to_thread(
            self._write,
            "code_example_upsert_failed",
            """
            INSERT INTO code_examples (id, chunk_id, language, code, description)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                chunk_id = excluded.chunk_id,
                language = excluded.language,
                code = excluded.code,
                description = excluded.description
            """,
            (example.id, example.chunk_id, example.language, example.code, example.description),
        )

    async def create_relationship(
        self,
        rel_type: str,
        source_id: str,
        target_id: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        await asyncio.to_thread(
            self._write,
            "relationship_create_failed",
            """
            INSERT INTO relationships (type, source_id, target_id, properties_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(type, source_id, target_id) DO UPDATE SET
                properties_json = excluded.properties_json
            """,
            (
                rel_type,
                source_id,
                target_id,
                json.dumps(properties, default=str) if properties else None,
            ),
        )

    # Deletion

    def _delete_document_cascade(self, document_id: str) -> bool:
        conn = self._connect()

        try:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if not exists:
                return False

            section_ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM sections WHERE document_id = ?", (document_id,)
                )
            ]
            chunk_ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM chunks WHERE document_id = ?", (document_id,)
                )
            ]
            code_ids = []
            for batch in _batches(chunk_ids):
                code_ids.extend(
                    r["id"]
                    for r in conn.execute(
                        f"SELECT id FROM code_examples WHERE chunk_id IN ({_placeholders(len(batch))})",
                        batch,
                    )
                )

            # Edges out of any owned node, and edges into owned child nodes.
            # Incoming LINKS_TO edges to the document itself survive re-indexing.
            children = section_ids + chunk_ids + code_ids
            for batch in _batches([document_id] + children):
                conn.execute(
                    f"DELETE FROM relationships WHERE source_id IN ({_placeholders(len(batch))})",
                    batch,
                )
            for batch in _batches(children):
                conn.execute(
                    f"DELETE FROM relationships WHERE target_id IN ({_placeholders(len(batch))})",
                    batch,
                )
            for batch in _batches(code_ids):
                conn.execute(
                    f"DELETE FROM code_examples WHERE id IN ({_placeholders(len(batch))})",
                    batch,
                )

            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM sections WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()

            logger.info(
                "document_cascade_deleted",
                document_id=document_id,
                sections=len(section_ids),
                chunks=len(chunk_ids),
                code_examples=len(code_ids),
            )
            return True

        except Exception as e:
            conn.rollback()
            logger.error("document_cascade_delete_failed", document_id=document_id, error=str(e))
            raise
        finally:
            conn.close()

    async def delete_document_cascade(self, document_id: str) -> bool:
        """Delete a document with its sections, chunks and code examples.

        Concepts are never deleted, even when nothing mentions them anymore.

        Returns:
            True if the document existed
        """
        return await asyncio.to_thread(self._delete_document_cascade, document_id)

    # Queries

    async def get_document(self, document_id: str) -> Optional[Document]:
        rows = await asyncio.to_thread(
            self._query,
            "document_retrieval_failed",
            "SELECT * FROM documents WHERE id = ?",
            (document_id,),
        )
        return _row_to_document(rows[0]) if rows else None

    async def list_documents(self, repository: Optional[str] = None) -> List[Document]:
        if repository is None:
            sql, params = "SELECT * FROM documents ORDER BY file_path", ()
        else:
            sql = "SELECT * FROM documents WHERE repository = ? ORDER BY file_path"
            params = (repository,)
        rows = await asyncio.to_thread(self._query, "documents_list_failed", sql, params)
        return [_row_to_document(r) for r in rows]

    async def get_chunks_by_ids(self, chunk_ids: Sequence[str]) -> List[Chunk]:
        if not chunk_ids:
            return []
        rows = await asyncio.to_thread(
            self._query_batched,
            "chunks_retrieval_failed",
            "SELECT * FROM chunks WHERE id IN ({ids})",
            chunk_ids,
        )
        by_id = {r["id"]: _row_to_chunk(r) for r in rows}
        # Preserve caller order
        return [by_id[cid] for cid in dict.fromkeys(chunk_ids) if cid in by_id]

    async def get_concepts_by_chunk_ids(self, chunk_ids: Sequence[str]) -> List[Concept]:
        """Distinct concepts mentioned by any of the given chunks."""
        if not chunk_ids:
            return []
        rows = await asyncio.to_thread(
            self._query_batched,
            "concepts_by_chunks_failed",
            f"""
            SELECT DISTINCT c.* FROM concepts c
            JOIN relationships r ON r.target_id = c.id
            WHERE r.type = '{RelationshipType.MENTIONS}' AND r.source_id IN ({{ids}})
            """,
            chunk_ids,
        )
        concepts: Dict[str, Concept] = {}
        for row in rows:
            concepts.setdefault(row["id"], _row_to_concept(row))
        return sorted(concepts.values(), key=lambda c: c.name.lower())

    async def get_related_concepts(self, concept_id: str, hops: int = 2) -> List[Concept]:
        """Concepts reachable over RELATES_TO edges (either direction) within ``hops``."""
        if not concept_id or hops < 1:
            return []
        rows = await asyncio.to_thread(
            self._query,
            "related_concepts_failed",
            f"""
            WITH RECURSIVE walk(id, depth) AS (
                SELECT ?, 0
                UNION
                SELECT
                    CASE WHEN r.source_id = walk.id THEN r.target_id ELSE r.source_id END,
                    walk.depth + 1
                FROM relationships r
                JOIN walk ON r.source_id = walk.id OR r.target_id = walk.id
                WHERE r.type = '{RelationshipType.RELATES_TO}' AND walk.depth < ?
            )
            SELECT c.* FROM concepts c
            WHERE c.id IN (SELECT id FROM walk) AND c.id != ?
            ORDER BY c.name
            """,
            (concept_id, hops, concept_id),
        )
        return [_row_to_concept(r) for r in rows]

    async def get_linked_documents(self, document_id: str) -> List[Document]:
        rows = await asyncio.to_thread(
            self._query,
            "linked_documents_failed",
            f"""
            SELECT DISTINCT d.* FROM relationships r
            JOIN documents d ON d.id = r.target_id
            WHERE r.type = '{RelationshipType.LINKS_TO}' AND r.source_id = ?
            ORDER BY d.file_path
            """,
            (document_id,),
        )
        return [_row_to_document(r) for r in rows]

    async def find_concepts_by_name(self, name: str) -> List[Concept]:
        """Case-insensitive match on concept name or any alias."""
        if not name or not name.strip():
            return []
        term = name.strip()
        rows = await asyncio.to_thread(
            self._query,
            "concept_search_failed",
            """
            SELECT * FROM concepts c
            WHERE lower(c.name) = lower(?)
               OR EXISTS (
                   SELECT 1 FROM json_each(COALESCE(c.aliases_json, '[]'))
                   WHERE lower(json_each.value) = lower(?)
               )
            ORDER BY c.name
            """,
            (term, term),
        )
        return [_row_to_concept(r) for r in rows]

    async def get_chunks_by_concept(self, concept_id: str) -> List[Chunk]:
        rows = await asyncio.to_thread(
            self._query,
            "chunks_by_concept_failed",
            f"""
            SELECT ch.* FROM chunks ch
            JOIN relationships r ON r.source_id = ch.id
            WHERE r.type = '{RelationshipType.MENTIONS}' AND r.target_id = ?
            ORDER BY ch.document_id, ch.ord
            """,
            (concept_id,),
        )
        return [_row_to_chunk(r) for r in rows]

    # Sync state

    async def get_sync_state(self, source: str) -> Optional[SyncState]:
        rows = await asyncio.to_thread(
            self._query,
            "sync_state_retrieval_failed",
            "SELECT * FROM sync_state WHERE source = ?",
            (source,),
        )
        if not rows:
            return None
        row = rows[0]
        return SyncState(
            source=row["source"],
            content_version=row["content_version"],
            synced_at=_parse_datetime(row["synced_at"]) or utcnow(),
        )

    async def set_sync_state(self, source: str, content_version: str) -> SyncState:
        state = SyncState(source=source, content_version=content_version)
        await asyncio.to_thread(
            self._write,
            "sync_state_update_failed",
            """
            INSERT INTO sync_state (source, content_version, synced_at)
            VALUES (?, ?, ?)
            ON CONFLICT(source) DO UPDATE SET
                content_version = excluded.content_version,
                synced_at = excluded.synced_at
            """,
            (state.source, state.content_version, state.synced_at.isoformat()),
        )
        logger.info("sync_state_updated", source=source, content_version=content_version)
        return state

    async def get_stats(self) -> Dict[str, int]:
        """Node and edge counts."""

        def count() -> Dict[str, int]:
            stats = {}
            for table in ("documents", "sections", "chunks", "concepts", "code_examples", "relationships"):
                rows = self._query("graph_stats_failed", f"SELECT COUNT(*) FROM {table}")
                stats[table] = rows[0][0]
            return stats

        return await asyncio.to_thread(count)
