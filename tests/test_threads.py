"""
Tests for the thread store: create/list/get/delete, history and turn appends
"""

import pytest
from sqlalchemy import func, select

from agentic_ai.db.models import Approval as ApprovalRow, Checkpoint as CheckpointRow
from agentic_ai.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    NotFoundError,
    NotInitializedError,
)
from agentic_ai.schemas import MemoryType, MessageRole, ThreadScope
from agentic_ai.service import AgenticAIService


class TestCreateThread:

    @pytest.mark.asyncio
    async def test_create_then_get(self, service):
        created = await service.create_thread("u1", "researcher")
        fetched = await service.get_thread(created.id)

        assert fetched is not None
        assert fetched.user_id == "u1"
        assert fetched.agent_slug == "researcher"
        assert fetched.scope == ThreadScope.GLOBAL
        assert fetched.message_count == 0
        assert fetched.created_at == fetched.updated_at
        assert await service.get_thread_history(created.id) == []

    @pytest.mark.asyncio
    async def test_unknown_agent_rejected(self, service):
        with pytest.raises(NotFoundError) as exc:
            await service.create_thread("u1", "astrologer")
        assert exc.value.entity_type == "agent"

    @pytest.mark.asyncio
    async def test_project_scope_requires_project(self, service):
        with pytest.raises(InvalidStateError):
            await service.create_thread("u1", "general", scope=ThreadScope.PROJECT)

        thread = await service.create_thread("u1", "general", scope=ThreadScope.PROJECT, project_id="p1")
        assert thread.project_id == "p1"

    @pytest.mark.asyncio
    async def test_metadata_round_trips(self, service):
        thread = await service.create_thread("u1", "general", metadata={"source": "web"})
        fetched = await service.get_thread(thread.id)
        assert fetched.metadata == {"source": "web"}

    @pytest.mark.asyncio
    async def test_get_missing_thread_is_none(self, service):
        assert await service.get_thread("missing") is None

    @pytest.mark.asyncio
    async def test_requires_initialize(self, deps, settings):
        service = AgenticAIService(deps, settings)
        with pytest.raises(NotInitializedError):
            await service.create_thread("u1", "general")

        await service.initialize()
        assert service.is_initialized
        assert (await service.create_thread("u1", "general")).user_id == "u1"


class TestListThreads:

    @pytest.mark.asyncio
    async def test_most_recently_updated_first(self, service):
        first = await service.create_thread("u1", "general", title="first")
        second = await service.create_thread("u1", "general", title="second")

        await service.send_message(first.id, "Hello again", "u1")

        threads = await service.list_threads("u1")
        assert [t.id for t in threads] == [first.id, second.id]
        assert threads[0].message_count == 2

    @pytest.mark.asyncio
    async def test_only_own_threads(self, service):
        await service.create_thread("u1", "general")
        await service.create_thread("u2", "general")

        threads = await service.list_threads("u2")
        assert len(threads) == 1
        assert threads[0].user_id == "u2"

    @pytest.mark.asyncio
    async def test_filters_by_scope_and_project(self, service):
        await service.create_thread("u1", "general")
        p1 = await service.create_thread("u1", "general", scope=ThreadScope.PROJECT, project_id="p1")
        await service.create_thread("u1", "general", scope=ThreadScope.PROJECT, project_id="p2")

        project_threads = await service.list_threads("u1", scope=ThreadScope.PROJECT)
        assert len(project_threads) == 2

        only_p1 = await service.list_threads("u1", project_id="p1")
        assert [t.id for t in only_p1] == [p1.id]

    @pytest.mark.asyncio
    async def test_limit(self, service):
        for _ in range(4):
            await service.create_thread("u1", "general")
        assert len(await service.list_threads("u1", limit=3)) == 3


class TestHistory:

    @pytest.mark.asyncio
    async def test_missing_thread(self, service):
        with pytest.raises(NotFoundError):
            await service.get_thread_history("missing")

    @pytest.mark.asyncio
    async def test_limit_keeps_most_recent_in_order(self, service, thread):
        for i in range(3):
            await service.send_message(thread.id, f"message {i}", "u1")

        recent = await service.get_thread_history(thread.id, limit=3)
        assert [m.role for m in recent] == [MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT]
        assert recent[1].content == "message 2"

    @pytest.mark.asyncio
    async def test_append_turn_rejects_stale_version(self, service, thread, session_maker):
        threads = service.threads
        version = await threads.thread_version(thread.id)

        async with session_maker.begin() as session:
            await threads.append_turn(
                session, thread.id, [(MessageRole.USER, "first writer", None)], expected_version=version
            )

        with pytest.raises(ConcurrentModificationError):
            async with session_maker.begin() as session:
                await threads.append_turn(
                    session, thread.id, [(MessageRole.USER, "second writer", None)], expected_version=version
                )

        history = await service.get_thread_history(thread.id)
        assert [m.content for m in history] == ["first writer"]
        assert await threads.thread_version(thread.id) == version + 1


class TestDeleteThread:

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, service, thread, deps, session_maker):
        await service.send_message(thread.id, "What is 2+2?", "u1")
        await service.create_memory(thread.id, "u1", "general", MemoryType.FACT, "The user runs a bakery in Lyon")
        pending = await service.execute_tool(thread.id, "execute_workflow", {"flow_id": "flow-1"})
        assert pending.requires_approval

        other = await service.create_thread("u1", "general")
        await service.send_message(other.id, "Keep me", "u1")

        await service.delete_thread(thread.id)

        assert await service.get_thread(thread.id) is None
        with pytest.raises(NotFoundError):
            await service.get_thread_history(thread.id)
        assert await service.list_memories(thread_id=thread.id) == []
        assert await service.get_approval(pending.approval_id) is None
        assert await service.list_pending_approvals("u1") == []

        async with session_maker() as session:
            for model in (ApprovalRow, CheckpointRow):
                count = await session.scalar(
                    select(func.count()).select_from(model).where(model.thread_id == thread.id)
                )
                assert count == 0

        assert len(await service.get_thread_history(other.id)) == 2
        assert "thread.deleted" in deps.audit_actions()

    @pytest.mark.asyncio
    async def test_delete_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_thread("missing")
