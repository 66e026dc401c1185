"""LLM-based concept extraction from chunk text."""
import json
import re
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from docgraph.protocols import TextGenerator

logger = structlog.get_logger()

ENTITY_TYPES = (
    "Concept",
    "Technology",
    "Pattern",
    "API",
    "Library",
    "Framework",
    "Service",
    "Protocol",
)

EXTRACTION_SYSTEM_PROMPT = """You extract technical entities from documentation.
Respond with a JSON array only. Each item has the form:
{"name": "...", "type": "...", "description": "...", "aliases": ["..."], "related": ["..."]}
"type" is one of: """ + ", ".join(ENTITY_TYPES) + """.
"related" lists names of other extracted entities this one is closely related to.
Return [] when there is nothing worth extracting."""

MAX_TEXT_CHARS = 6000


class ExtractedEntity(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = "Concept"
    description: str = ""
    aliases: List[str] = Field(default_factory=list)
    related: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def known_type(cls, value: Any) -> str:
        for entity_type in ENTITY_TYPES:
            if str(value or "").strip().lower() == entity_type.lower():
                return entity_type
        return "Concept"

    @field_validator("description", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("aliases", "related", mode="before")
    @classmethod
    def clean_names(cls, value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v).strip() for v in value if str(v).strip()]


def extract_json_array(text: str) -> Optional[list]:
    """Find and decode the first JSON array in a model response.

    Handles markdown code blocks (```json ... ```).
    """
    code_block_match = re.search(r"```(?:json)?\s*(\[.*?\])\s*```", text, re.DOTALL)
    if code_block_match:
        text = code_block_match.group(1).strip()

    start_idx = text.find("[")
    if start_idx == -1:
        return None

    # Match brackets from the start, ignoring brackets inside strings
    depth = 0
    in_string = False
    escaped = False
    end_idx = None
    for i in range(start_idx, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                end_idx = i + 1
                break

    if end_idx is None:
        return None

    try:
        value = json.loads(text[start_idx:end_idx])
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning("entity_json_decode_failed", error=str(e), text_preview=text[:100])
        return None

    return value if isinstance(value, list) else None


class EntityExtractor:
    """Asks a text generator for entities and validates what comes back."""

    def __init__(self, generator: TextGenerator):
        self.generator = generator

    async def extract(self, text: str) -> List[ExtractedEntity]:
        """Extract entities from ``text``.

        Generation errors propagate; unparseable output yields an empty list.
        """
        if not text or not text.strip():
            return []

        prompt = f"Extract the entities from this documentation excerpt:\n\n{text[:MAX_TEXT_CHARS]}"
        response = await self.generator.generate(prompt, system=EXTRACTION_SYSTEM_PROMPT)

        items = extract_json_array(response)
        if items is None:
            logger.warning("entity_extraction_unparseable", response_preview=response[:100])
            return []

        entities: List[ExtractedEntity] = []
        seen = set()
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                entity = ExtractedEntity.model_validate(item)
            except ValidationError as e:
                logger.debug("entity_item_invalid", error=str(e))
                continue
            key = entity.name.lower()
            if key in seen:
                continue
            seen.add(key)
            entities.append(entity)

        logger.debug("entities_extracted", count=len(entities))
        return entities
