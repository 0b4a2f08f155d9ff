"""
AgenticAIService — the in-process entry point a host talks to.

Wires the thread store, memory subsystem, approval gate and orchestrator
around one injected dependency bundle. Nothing here reaches for module-level
services: two instances with different bundles never share state.

Usage:
    service = await create_agentic_ai_service(deps)
    thread = await service.create_thread("u1", "general")
    response = await service.send_message(thread.id, "What is 2+2?", "u1")
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from agentic_ai.agent.agents import AgentConfig, AgentRegistry
from agentic_ai.agent.orchestrator import Orchestrator
from agentic_ai.agent.router import DelegationPlanner
from agentic_ai.agent.tool_definitions import get_agent_tools
from agentic_ai.agent.tool_executor import ToolExecutor
from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.db.database import init_db
from agentic_ai.errors import NotInitializedError
from agentic_ai.ports import resolve_logger
from agentic_ai.schemas import (
    Approval,
    ApprovalReviewResult,
    Memory,
    MemoryType,
    MemoryWithScore,
    Message,
    MessageResponse,
    StreamChunk,
    Thread,
    ThreadScope,
    ToolDefinition,
    ToolExecutionResult,
)
from agentic_ai.services.approval_service import ApprovalService
from agentic_ai.services.llm_service import LLMService
from agentic_ai.services.memory_extractor import MemoryExtractor
from agentic_ai.services.memory_service import MemoryService
from agentic_ai.services.thread_service import ThreadService
from agentic_ai.structured_logging import Subsystem, configure_logging


class AgenticAIService:
    """Facade over the orchestration core. Call ``initialize()`` before use."""

    def __init__(
        self,
        deps: Any,
        settings: Optional[Settings] = None,
        registry: Optional[AgentRegistry] = None,
    ):
        self.deps = deps
        self.settings = settings or default_settings
        self.registry = registry or AgentRegistry()
        self.logger = resolve_logger(deps, Subsystem.AGENT)

        self.llm = LLMService(deps.llm_client, self.settings)
        self.threads = ThreadService(deps, self.settings)
        self.memories = MemoryService(deps, self.settings)
        self.approvals = ApprovalService(deps, self.threads, self.settings)
        self.executor = ToolExecutor(deps, self.memories, self.approvals, self.settings)
        self.orchestrator = Orchestrator(
            deps,
            threads=self.threads,
            memories=self.memories,
            approvals=self.approvals,
            executor=self.executor,
            registry=self.registry,
            planner=DelegationPlanner(self.registry, self.llm, self.settings),
            llm=self.llm,
            extractor=MemoryExtractor(self.llm),
            settings=self.settings,
        )
        self._initialized = False

    async def initialize(self, create_tables: bool = True) -> None:
        """
        Create missing tables (unless the host migrates with Alembic), settle
        checkpoints a previous process left behind, and mark ready.
        """
        if self._initialized:
            return
        configure_logging(self.settings)
        if create_tables:
            engine = getattr(self.deps.db, "kw", {}).get("bind")
            await init_db(engine)
        try:
            await self.orchestrator.recover_checkpoints()
        except Exception as e:
            self.logger.warning(f"[AGENT] Checkpoint recovery failed at startup (non-fatal): {e}")
        self._initialized = True
        self.logger.info(f"[AGENT] Service ready ({len(self.registry.list())} agents)")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("AgenticAIService.initialize() has not completed")

    # ── Threads ──────────────────────────────────────────────

    async def create_thread(
        self,
        user_id: str,
        agent_slug: str,
        scope: ThreadScope = ThreadScope.GLOBAL,
        project_id: Optional[str] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Thread:
        self.ensure_initialized()
        self.registry.require(agent_slug)
        return await self.threads.create_thread(user_id, agent_slug, scope, project_id, title, metadata)

    async def list_threads(
        self,
        user_id: str,
        limit: Optional[int] = None,
        scope: Optional[ThreadScope] = None,
        project_id: Optional[str] = None,
    ) -> List[Thread]:
        self.ensure_initialized()
        return await self.threads.list_threads(user_id, limit, scope, project_id)

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        self.ensure_initialized()
        return await self.threads.get_thread(thread_id)

    async def delete_thread(self, thread_id: str) -> None:
        self.ensure_initialized()
        await self.threads.delete_thread(thread_id)

    async def get_thread_history(self, thread_id: str, limit: Optional[int] = None) -> List[Message]:
        self.ensure_initialized()
        return await self.threads.get_thread_history(thread_id, limit)

    # ── Messages ─────────────────────────────────────────────

    async def send_message(
        self,
        thread_id: str,
        message: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageResponse:
        self.ensure_initialized()
        return await self.orchestrator.send_message(thread_id, message, user_id, metadata)

    async def stream_message(
        self,
        thread_id: str,
        message: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        self.ensure_initialized()
        async with aclosing(self.orchestrator.stream_message(thread_id, message, user_id, metadata)) as stream:
            async for chunk in stream:
                yield chunk

    # ── Memory ───────────────────────────────────────────────

    async def list_memories(
        self,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        agent_slug: Optional[str] = None,
        types: Optional[List[MemoryType]] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        self.ensure_initialized()
        return await self.memories.list_memories(
            thread_id=thread_id, user_id=user_id, agent_slug=agent_slug, types=types, limit=limit
        )

    async def search_memories(
        self,
        query: str,
        user_id: Optional[str] = None,
        agent_slug: Optional[str] = None,
        types: Optional[List[MemoryType]] = None,
        limit: Optional[int] = None,
        thread_id: Optional[str] = None,
    ) -> List[MemoryWithScore]:
        self.ensure_initialized()
        return await self.memories.search_memories(
            query=query,
            user_id=user_id,
            agent_slug=agent_slug,
            types=types,
            thread_id=thread_id,
            limit=limit,
        )

    async def create_memory(
        self,
        thread_id: str,
        user_id: str,
        agent_slug: str,
        type: MemoryType,
        content: str,
        context: Optional[str] = None,
        confidence: Optional[float] = None,
        importance: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        self.ensure_initialized()
        return await self.memories.create_memory(
            thread_id=thread_id,
            user_id=user_id,
            agent_slug=agent_slug,
            type=type,
            content=content,
            context=context,
            confidence=confidence,
            importance=importance,
            metadata=metadata,
        )

    # ── Approvals ────────────────────────────────────────────

    async def list_pending_approvals(self, user_id: str) -> List[Approval]:
        self.ensure_initialized()
        return await self.approvals.list_pending_approvals(user_id)

    async def get_approval(self, approval_id: str) -> Optional[Approval]:
        self.ensure_initialized()
        return await self.approvals.get_approval(approval_id)

    async def review_approval(
        self,
        approval_id: str,
        approved: bool,
        reviewed_by: str,
        notes: Optional[str] = None,
    ) -> ApprovalReviewResult:
        self.ensure_initialized()
        return await self.orchestrator.review_approval(approval_id, approved, reviewed_by, notes)

    async def expire_stale_approvals(self) -> List[Approval]:
        self.ensure_initialized()
        return await self.approvals.expire_stale_approvals()

    async def recover_checkpoints(self) -> int:
        """Resume or close approvals whose follow-up was interrupted."""
        self.ensure_initialized()
        return await self.orchestrator.recover_checkpoints()

    # ── Tools & agents ───────────────────────────────────────

    def list_available_tools(self) -> List[ToolDefinition]:
        self.ensure_initialized()
        return get_agent_tools()

    def list_agents(self) -> List[AgentConfig]:
        self.ensure_initialized()
        return self.registry.list()

    async def execute_tool(
        self,
        thread_id: str,
        tool_name: str,
        parameters: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> ToolExecutionResult:
        self.ensure_initialized()
        return await self.orchestrator.execute_tool(thread_id, tool_name, parameters, user_id)

    # ── Lifecycle ────────────────────────────────────────────

    async def wait_for_background_tasks(self) -> None:
        await self.orchestrator.wait_for_background_tasks()

    async def close(self) -> None:
        await self.wait_for_background_tasks()
        self._initialized = False


async def create_agentic_ai_service(
    deps: Any,
    settings: Optional[Settings] = None,
    create_tables: bool = True,
) -> AgenticAIService:
    """Build and initialize a service around ``deps``."""
    service = AgenticAIService(deps, settings)
    await service.initialize(create_tables=create_tables)
    return service
