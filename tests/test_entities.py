"""Tests for LLM concept extraction."""
import pytest

from conftest import FakeGenerator
from docgraph.rag.entities import EXTRACTION_SYSTEM_PROMPT, EntityExtractor, extract_json_array


def test_extract_json_array_from_code_fence():
    text = 'Sure!\n```json\n[{"name": "FAISS"}]\n```\nDone.'

    assert extract_json_array(text) == [{"name": "FAISS"}]


def test_extract_json_array_ignores_brackets_in_strings():
    text = 'Here: [{"name": "a]b", "aliases": ["[x]"]}] trailing ]'

    assert extract_json_array(text) == [{"name": "a]b", "aliases": ["[x]"]}]


@pytest.mark.parametrize("text", ["no json here", "[unterminated", '{"name": "x"}', "[not json]"])
def test_extract_json_array_rejects_garbage(text):
    assert extract_json_array(text) is None


async def test_entities_are_validated_and_deduplicated():
    generator = FakeGenerator(
        reply="""[
            {"name": " FAISS ", "type": "library", "description": "Vector index", "related": ["NumPy"]},
            {"name": "numpy", "type": "Gizmo", "aliases": "np"},
            {"name": "faiss"},
            {"name": "   "},
            "not an object"
        ]"""
    )

    entities = await EntityExtractor(generator).extract("FAISS builds on NumPy arrays.")

    assert [(e.name, e.type) for e in entities] == [("FAISS", "Library"), ("numpy", "Concept")]
    assert entities[0].related == ["NumPy"]
    assert entities[1].aliases == ["np"]
    assert generator.prompts[0]["system"] == EXTRACTION_SYSTEM_PROMPT


async def test_unparseable_reply_yields_nothing():
    entities = await EntityExtractor(FakeGenerator(reply="I could not find any.")).extract("text")

    assert entities == []


async def test_blank_text_skips_generation():
    generator = FakeGenerator()

    assert await EntityExtractor(generator).extract("  ") == []
    assert generator.prompts == []


async def test_generation_errors_propagate():
    with pytest.raises(RuntimeError):
        await EntityExtractor(FakeGenerator(fail=RuntimeError("down"))).extract("text")
