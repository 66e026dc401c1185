"""Knowledge graph entities and relationship types.

Nodes reference each other only by stable string ids. Relationships live in
a separate edge collection, so cycles between concepts or between linked
documents need no special handling.
"""
import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class PromotionLevel(str, Enum):
    """Editorial weight used to boost a document in retrieval."""

    STANDARD = "standard"
    PROMOTED = "promoted"
    PINNED = "pinned"

    @classmethod
    def from_value(cls, value: Any) -> "PromotionLevel":
        """Map a stored or user-supplied value to a level.

        Missing, legacy ("draft") and unknown values fall back to STANDARD.
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.STANDARD
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.STANDARD


class RelationshipType:
    HAS_SECTION = "HAS_SECTION"
    HAS_CHUNK = "HAS_CHUNK"
    MENTIONS = "MENTIONS"
    RELATES_TO = "RELATES_TO"
    HAS_CODE_EXAMPLE = "HAS_CODE_EXAMPLE"
    LINKS_TO = "LINKS_TO"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """A source document; owns its sections, chunks and code examples."""

    id: str
    file_path: str
    title: str = ""
    repository: str = ""
    doc_type: str = ""
    promotion_level: PromotionLevel = PromotionLevel.STANDARD
    last_updated: Optional[datetime] = field(default_factory=utcnow)
    content_version: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Section:
    id: str
    document_id: str
    title: str
    order: int
    heading_level: int = 2


@dataclass
class Chunk:
    id: str
    section_id: str
    document_id: str
    order: int
    content: str
    token_count: int = 0
    start_offset: int = 0
    end_offset: int = 0


@dataclass
class Concept:
    """A named entity shared across documents. Never owned by one."""

    id: str
    name: str
    description: str = ""
    category: str = ""
    aliases: List[str] = field(default_factory=list)


@dataclass
class CodeExample:
    id: str
    chunk_id: str
    code: str
    language: Optional[str] = None
    description: str = ""


@dataclass
class SyncState:
    """Last indexed content version of one source (repository)."""

    source: str
    content_version: str
    synced_at: datetime = field(default_factory=utcnow)


_SLUG_PATTERN = re.compile(r"[^\w]+")
_SLUG_SYMBOLS = {"#": " sharp ", "+": " plus "}


def slugify(value: str) -> str:
    """Casefolded slug with runs of non-word characters collapsed to '-'.

    Word characters are Unicode-aware, and '#' and '+' are spelled out so
    that "C", "C#" and "C++" stay distinct.
    """
    text = value.strip().casefold()
    for symbol, word in _SLUG_SYMBOLS.items():
        text = text.replace(symbol, word)
    return _SLUG_PATTERN.sub("-", text).strip("-")


def normalize_concept_id(name: str) -> str:
    slug = slugify(name)
    if not slug:
        digest = hashlib.sha256(name.strip().casefold().encode("utf-8")).hexdigest()
        slug = digest[:16]
    return f"concept:{slug}"


def document_id_for(repository: str, file_path: str) -> str:
    """Stable document id derived from its repository and relative path.

    The path keeps its case, matching the (repository, file_path) key.
    """
    path = file_path.replace("\\", "/").lstrip("/")
    return f"{repository}:{path}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    if not text:
        return 0
    return max(1, len(text) // 4)
