"""
Tests for memory extraction (rules and LLM JSON mode)
"""

import json

import pytest

from agentic_ai.schemas import MemoryType
from agentic_ai.services.llm_service import LLMService
from agentic_ai.services.memory_extractor import MemoryExtractor

from tests.conftest import make_settings


def test_rules_extract_decisions_and_preferences():
    extractor = MemoryExtractor()
    memories = extractor.extract_memories(
        "We decided to use PostgreSQL for the main database. I prefer short answers with bullet points.",
        "Sounds good.",
    )
    by_type = {m.memory_type: m for m in memories}

    assert MemoryType.DECISION in by_type
    assert "PostgreSQL" in by_type[MemoryType.DECISION].content
    assert MemoryType.PREFERENCE in by_type
    assert all(m.metadata == {"extracted_by": "rules"} for m in memories)


def test_rules_preferences_only_from_user():
    extractor = MemoryExtractor()
    memories = extractor.extract_memories(
        "Can you help me with the launch",
        "I prefer to start with a short checklist for launches.",
    )
    assert MemoryType.PREFERENCE not in {m.memory_type for m in memories}


def test_rules_skip_fragments_and_questions():
    extractor = MemoryExtractor()
    assert extractor.extract_memories("I like it.", "ok") == []
    assert not MemoryExtractor._is_quality_content("should we?")
    assert not MemoryExtractor._is_quality_content("thanks")
    assert MemoryExtractor._is_quality_content("ship the beta on Friday")


def test_rules_deduplicate_and_cap():
    extractor = MemoryExtractor()
    text = "We decided to ship weekly. We decided to ship weekly. I need to update the roadmap."
    memories = extractor.extract_memories(text, "", max_memories=10)
    contents = [m.content.lower() for m in memories]
    assert len(contents) == len(set(contents))

    assert len(extractor.extract_memories(text, "", max_memories=1)) == 1


def test_string_to_memory_type_aliases():
    assert MemoryExtractor._string_to_memory_type("task") == MemoryType.ACTION_ITEM
    assert MemoryExtractor._string_to_memory_type("Action Item") == MemoryType.ACTION_ITEM
    assert MemoryExtractor._string_to_memory_type("finding") == MemoryType.RESEARCH
    assert MemoryExtractor._string_to_memory_type("nonsense") == MemoryType.FACT


class TestLLMExtraction:

    @pytest.mark.asyncio
    async def test_parses_json_and_filters(self, llm):
        llm.script("extraction", json.dumps({"memories": [
            {"content": "The user is launching a bakery in Lyon next spring", "type": "fact",
             "importance": 0.8, "confidence": 0.9, "context": "bakery"},
            {"content": "Too short", "type": "fact"},
            {"content": "Should we open on Sundays as well?", "type": "decision"},
            {"content": "Follow up with the supplier about flour prices", "type": "task"},
        ]}))
        extractor = MemoryExtractor(LLMService(llm, make_settings()))

        memories = await extractor.extract_memories_with_llm(
            "I'm launching a bakery in Lyon next spring", "Congratulations!"
        )

        assert [m.memory_type for m in memories] == [MemoryType.FACT, MemoryType.ACTION_ITEM]
        assert memories[0].importance == 0.8
        assert memories[0].metadata == {"extracted_by": "llm"}

        request = llm.calls_for("extraction")[0]
        assert request["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_tolerates_code_fences(self, llm):
        llm.script("extraction", '```json\n{"memories": [{"content": "The project deadline is the end of March", "type": "fact"}]}\n```')
        extractor = MemoryExtractor(LLMService(llm, make_settings()))

        memories = await extractor.extract_memories_with_llm("When is the deadline?", "End of March.")
        assert len(memories) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_rules(self, llm):
        llm.script("extraction", RuntimeError("model down"))
        extractor = MemoryExtractor(LLMService(llm, make_settings()))

        memories = await extractor.extract_memories_with_llm(
            "We decided to use PostgreSQL for the main database.", "Noted."
        )
        assert [m.memory_type for m in memories] == [MemoryType.DECISION]
        assert memories[0].metadata == {"extracted_by": "rules"}

    @pytest.mark.asyncio
    async def test_without_llm_uses_rules(self):
        memories = await MemoryExtractor().extract_memories_with_llm(
            "We decided to use PostgreSQL for the main database.", "Noted."
        )
        assert memories[0].memory_type == MemoryType.DECISION
