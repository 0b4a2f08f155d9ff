"""
Tests for the memory subsystem: create, list, semantic search
"""

import pytest

from agentic_ai.errors import NotFoundError, ProviderError
from agentic_ai.schemas import MemoryType
from agentic_ai.services.embedding_service import EmbeddingService


@pytest.mark.asyncio
async def test_create_memory_stores_embedding(service, thread):
    memory = await service.create_memory(
        thread.id, "u1", "general", MemoryType.DECISION,
        "We chose PostgreSQL for the architecture",
        context="architecture review",
        importance=0.9,
    )

    assert memory.type == MemoryType.DECISION
    assert memory.importance == 0.9
    assert memory.confidence == 0.7  # default
    assert memory.context == "architecture review"

    found = await service.search_memories("PostgreSQL architecture", user_id="u1")
    assert [m.id for m in found] == [memory.id]


@pytest.mark.asyncio
async def test_create_memory_clamps_scores(service, thread):
    memory = await service.create_memory(
        thread.id, "u1", "general", MemoryType.FACT, "The team has five engineers",
        importance=1.7, confidence=-0.2,
    )
    assert memory.importance == 1.0
    assert memory.confidence == 0.0


@pytest.mark.asyncio
async def test_create_memory_unknown_thread(service):
    with pytest.raises(NotFoundError):
        await service.create_memory("missing", "u1", "general", MemoryType.FACT, "Something worth keeping")


@pytest.mark.asyncio
async def test_embedding_failure_still_stores(service, thread, deps):
    deps.fail_embed = True
    memory = await service.create_memory(
        thread.id, "u1", "general", MemoryType.FACT, "The office is in Berlin"
    )
    deps.fail_embed = False

    listed = await service.list_memories(user_id="u1")
    assert [m.id for m in listed] == [memory.id]
    # No vector, so semantic search cannot see it
    assert await service.search_memories("office Berlin", user_id="u1") == []


class TestListMemories:

    @pytest.mark.asyncio
    async def test_importance_then_recency(self, service, thread):
        low = await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "low importance", importance=0.2)
        old_high = await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "older high", importance=0.8)
        new_high = await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "newer high", importance=0.8)

        listed = await service.list_memories(thread_id=thread.id)
        assert [m.id for m in listed] == [new_high.id, old_high.id, low.id]

    @pytest.mark.asyncio
    async def test_filters_are_conjunctive(self, service, thread):
        other = await service.create_thread("u2", "developer")
        wanted = await service.create_memory(thread.id, "u1", "general", MemoryType.DECISION, "Ship on Friday")
        await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "Team of five")
        await service.create_memory(other.id, "u2", "developer", MemoryType.DECISION, "Use FastAPI")

        listed = await service.list_memories(user_id="u1", types=[MemoryType.DECISION])
        assert [m.id for m in listed] == [wanted.id]

        assert await service.list_memories(user_id="u1", agent_slug="developer") == []
        assert len(await service.list_memories(agent_slug="developer")) == 1

    @pytest.mark.asyncio
    async def test_limit(self, service, thread):
        for i in range(5):
            await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, f"fact number {i}")
        assert len(await service.list_memories(user_id="u1", limit=2)) == 2


class TestSearchMemories:

    @pytest.mark.asyncio
    async def test_architecture_decision_search(self, service, thread):
        other = await service.create_thread("u2", "general")
        contents = [
            "Architecture decision: use an event bus between services",
            "Decision: keep the monolith architecture for now",
            "The architecture review is on Monday",
            "User prefers dark mode",
            "Decision to hire a designer",
            "Marketing budget is ten thousand euros",
            "Architecture decision record template lives in the wiki",
        ]
        for content in contents:
            await service.create_memory(thread.id, "u1", "general", MemoryType.DECISION, content)
        for content in ("Architecture decision for u2", "Another architecture decision"):
            await service.create_memory(other.id, "u2", "general", MemoryType.DECISION, content)

        results = await service.search_memories("architecture decision", user_id="u1", limit=5)

        assert 0 < len(results) <= 5
        assert all(m.user_id == "u1" for m in results)
        scores = [m.similarity_score for m in results]
        assert scores == sorted(scores, reverse=True)
        assert "architecture" in results[0].content.lower()

    @pytest.mark.asyncio
    async def test_filters_by_type(self, service, thread):
        await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "deploys run on Fridays")
        decision = await service.create_memory(thread.id, "u1", "general", MemoryType.DECISION, "stop deploys on Fridays")

        results = await service.search_memories("deploys Fridays", user_id="u1", types=[MemoryType.DECISION])
        assert [m.id for m in results] == [decision.id]

    @pytest.mark.asyncio
    async def test_embed_failure_raises_provider_error(self, service, deps):
        deps.fail_embed = True
        with pytest.raises(ProviderError) as exc:
            await service.search_memories("anything", user_id="u1")
        assert exc.value.provider == "rag"


class TestEmbeddingService:

    def test_cosine_similarity(self):
        assert EmbeddingService.cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert EmbeddingService.cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert EmbeddingService.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert EmbeddingService.cosine_similarity([1.0], [1.0, 0.0]) == 0.0

    def test_search_similar_ranks_and_truncates(self, deps):
        service = EmbeddingService(deps)
        ranked = service.search_similar(
            [1.0, 0.0],
            [("a", [0.0, 1.0]), ("b", [1.0, 0.1]), ("c", [1.0, 1.0])],
            top_k=2,
        )
        assert [item_id for item_id, _ in ranked] == ["b", "c"]
