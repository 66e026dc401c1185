"""FAISS vector store for semantic search over chunks.

Handles:
- Lazy index creation from the first vector's dimension
- Cosine similarity via inner product on L2-normalized vectors
- String chunk ids mapped onto FAISS int64 ids
- Metadata persistence and metadata filters on search
"""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from docgraph import config
from docgraph.protocols import VectorSearchResult

logger = structlog.get_logger()

INDEX_TYPE = "IndexIDMap2(IndexFlatIP)"


def _normalize(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32).reshape(1, -1)
    norm = np.linalg.norm(array)
    if norm > 0:
        array = array / norm
    return array


class FAISSVectorStore:
    """FAISS-based vector store keyed by chunk id, with per-chunk metadata."""

    def __init__(self, index_dir: Path = None, dimension: Optional[int] = None):
        """Initialize the FAISS vector store.

        Args:
            index_dir: Directory to store index and metadata (default from config)
            dimension: Embedding dimension; detected from the first upsert if omitted
        """
        self.index_dir = Path(index_dir or config.VECTOR_INDEX_DIR)
        self.index_path = self.index_dir / "vectors.index"
        self.metadata_path = self.index_dir / "metadata.json"

        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = dimension

        self._entries: Dict[str, Dict[str, Any]] = {}  # chunk_id -> {vector_id, metadata}
        self._chunk_ids: Dict[int, str] = {}  # vector_id -> chunk_id
        self._next_id = 0

        if dimension is not None:
            self.init_new_index(dimension)

    def init_new_index(self, dimension: int) -> None:
        """Create an empty index for vectors of ``dimension``."""
        self.dimension = dimension
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        self._entries = {}
        self._chunk_ids = {}
        self._next_id = 0

        logger.info("faiss_index_initialized", dimension=dimension, index_type=INDEX_TYPE)

    def load_index(self) -> None:
        """Load index and metadata from disk.

        Raises:
            FileNotFoundError: If index files don't exist
            ValueError: If stored dimension and index disagree
            RuntimeError: If loading fails
        """
        if not self.index_path.exists():
            raise FileNotFoundError(f"Index not found: {self.index_path}")
        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata not found: {self.metadata_path}")

        try:
            with open(self.metadata_path, "r") as f:
                stored = json.load(f)
        except Exception as e:
            raise RuntimeError(f"Failed to load metadata: {e}") from e

        try:
            index = faiss.read_index(str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to load FAISS index: {e}") from e

        stored_dim = stored.get("dimension")
        if stored_dim != index.d:
            raise ValueError(
                f"Dimension mismatch: metadata says {stored_dim}, index has {index.d}. "
                "Please rebuild the index."
            )

        self.index = index
        self.dimension = index.d
        self._entries = stored.get("chunks", {})
        self._chunk_ids = {entry["vector_id"]: cid for cid, entry in self._entries.items()}
        self._next_id = stored.get("next_id", len(self._entries))

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
        )

    def save_index(self) -> None:
        """Save index and metadata to disk.

        Raises:
            RuntimeError: If there is no index or saving fails
        """
        if self.index is None:
            raise RuntimeError("No index to save. Upsert vectors or load an index first.")

        self.index_dir.mkdir(parents=True, exist_ok=True)

        try:
            faiss.write_index(self.index, str(self.index_path))
        except Exception as e:
            raise RuntimeError(f"Failed to save FAISS index: {e}") from e

        try:
            with open(self.metadata_path, "w") as f:
                json.dump(
                    {
                        "index_type": INDEX_TYPE,
                        "dimension": self.dimension,
                        "vector_count": self.index.ntotal,
                        "next_id": self._next_id,
                        "chunks": self._entries,
                    },
                    f,
                    indent=2,
                    default=str,
                )
        except Exception as e:
            raise RuntimeError(f"Failed to save metadata: {e}") from e

        logger.info(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=self.index.ntotal,
        )

    def init_or_load(self) -> None:
        """Load the index if it exists on disk; otherwise wait for the first upsert."""
        if self.index_path.exists() and self.metadata_path.exists():
            logger.info("existing_index_detected", path=str(self.index_path))
            self.load_index()
        else:
            logger.info("no_index_found", index_dir=str(self.index_dir))

    async def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        """Insert or replace the vector for ``chunk_id``.

        Raises:
            ValueError: On empty vector or dimension mismatch
        """
        array = _normalize(vector)
        if array.shape[1] == 0:
            raise ValueError("Cannot index an empty vector")

        if self.index is None:
            self.init_new_index(array.shape[1])
        elif array.shape[1] != self.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, "
                f"got {array.shape[1]}"
            )

        self._remove(chunk_id)

        vector_id = self._next_id
        self._next_id += 1
        self.index.add_with_ids(array, np.array([vector_id], dtype=np.int64))
        self._entries[chunk_id] = {"vector_id": vector_id, "metadata": dict(metadata)}
        self._chunk_ids[vector_id] = chunk_id

    def _remove(self, chunk_id: str) -> bool:
        entry = self._entries.pop(chunk_id, None)
        if entry is None:
            return False
        vector_id = entry["vector_id"]
        self._chunk_ids.pop(vector_id, None)
        if self.index is not None:
            self.index.remove_ids(np.array([vector_id], dtype=np.int64))
        return True

    async def delete(self, chunk_id: str) -> None:
        self._remove(chunk_id)

    async def delete_document(self, document_id: str) -> int:
        """Remove all vectors whose metadata belongs to ``document_id``."""
        doomed = [
            cid
            for cid, entry in self._entries.items()
            if entry["metadata"].get("document_id") == document_id
        ]
        for chunk_id in doomed:
            self._remove(chunk_id)

        if doomed:
            logger.info("document_vectors_deleted", document_id=document_id, count=len(doomed))
        return len(doomed)

    async def search(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        """Search for the most similar chunks.

        Args:
            vector: Query embedding
            k: Maximum number of results
            filters: Exact-match constraints on chunk metadata; None values are ignored

        Returns:
            Results ordered by descending cosine similarity

        Raises:
            ValueError: If query dimension doesn't match the index
        """
        if self.index is None or self.index.ntotal == 0 or k <= 0:
            return []

        query = _normalize(vector)
        if query.shape[1] != self.dimension:
            raise ValueError(
                f"Query dimension mismatch: expected {self.dimension}, "
                f"got {query.shape[1]}"
            )

        active_filters = {key: value for key, value in (filters or {}).items() if value is not None}
        # Filtering happens after the FAISS search, so scan everything when filtering
        top_k = self.index.ntotal if active_filters else min(k, self.index.ntotal)

        scores, ids = self.index.search(query, top_k)

        results = []
        for score, vector_id in zip(scores[0].tolist(), ids[0].tolist()):
            if vector_id == -1:
                continue
            chunk_id = self._chunk_ids.get(vector_id)
            if chunk_id is None:
                continue
            metadata = self._entries[chunk_id]["metadata"]
            if any(metadata.get(key) != value for key, value in active_filters.items()):
                continue
            results.append(VectorSearchResult(chunk_id=chunk_id, score=float(score), metadata=metadata))
            if len(results) >= k:
                break

        logger.debug("vector_search_completed", top_k=k, results_found=len(results))

        return results

    def get_stats(self) -> Dict[str, Any]:
        if self.index is None:
            return {"initialized": False, "vector_count": 0, "dimension": None}

        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "index_type": INDEX_TYPE,
            "index_exists_on_disk": self.index_path.exists(),
        }
