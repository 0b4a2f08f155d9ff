"""
Orchestrator — the supervisor that turns one user message into one answer.

Per-turn state machine:

    planning → delegating → aggregating → responding
                    │
                    └─▶ awaiting_approval   (a gated tool call parked the agent)

Any stage may end in ``failed``. A turn holds the thread's lock from planning
until the user and assistant messages are committed, so turns on the same
thread never interleave.

Approvals do not keep anything in memory: the agent's message list and the
pending tool call live in a checkpoint row, and a review re-enters the
delegating stage from that row. The approval and its checkpoint are written
in the same transaction as the turn that asked for them, so a turn that fails
leaves no approval behind.

Checkpoint lifecycle:

    suspended → resuming → resumed | failed
    suspended → discarded   (rejected or expired)

``recover_checkpoints`` picks up decided approvals whose checkpoint was never
claimed, and fails ``resuming`` rows left behind by a dead process.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from agentic_ai.agent.agents import AgentConfig, AgentRegistry
from agentic_ai.agent.router import DelegationPlanner
from agentic_ai.agent.thread_locks import ThreadLockRegistry
from agentic_ai.agent.tool_definitions import get_tool, get_tools_for_agent
from agentic_ai.agent.tool_executor import ApprovalHold, ToolContext, ToolExecutor
from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.errors import (
    AgenticAIError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
    ProviderError,
)
from agentic_ai.ports import audit_safely
from agentic_ai.schemas import (
    AgentResponse,
    Approval,
    ApprovalReviewResult,
    ApprovalStatus,
    DelegationPlan,
    Memory,
    MessageResponse,
    MessageRole,
    OrchestratedResponse,
    RAGOptions,
    RAGResult,
    StreamChunk,
    Thread,
    ToolExecutionResult,
)
from agentic_ai.services.approval_service import ApprovalService
from agentic_ai.services.llm_service import LLMService
from agentic_ai.services.memory_extractor import MemoryExtractor
from agentic_ai.services.memory_service import MemoryService
from agentic_ai.services.thread_service import ThreadService, TurnMessage
from agentic_ai.structured_logging import (
    Subsystem,
    generate_request_id,
    get_subsystem_logger,
    request_context,
)

logger = get_subsystem_logger(Subsystem.ORCHESTRATOR)

CHAT_PERMISSION = "agent.chat"


class OrchestrationStage(str, Enum):
    PLANNING = "planning"
    DELEGATING = "delegating"
    AWAITING_APPROVAL = "awaiting_approval"
    AGGREGATING = "aggregating"
    RESPONDING = "responding"
    FAILED = "failed"


SYNTHESIS_PROMPT = """You combine answers from several specialist agents into one reply to the user.

Keep every concrete recommendation, resolve contradictions explicitly, drop repetition,
and write in a single voice. Do not mention the agents by name unless attribution matters."""


@dataclass
class TurnState:
    """Everything one turn accumulates on its way through the stages."""
    thread: Thread
    user_id: str
    message: str
    metadata: Dict[str, Any]
    version: int
    request_id: str
    stage: OrchestrationStage = OrchestrationStage.PLANNING
    stages: List[str] = field(default_factory=lambda: [OrchestrationStage.PLANNING.value])
    plan: Optional[DelegationPlan] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[RAGResult] = field(default_factory=list)
    memories: List[Memory] = field(default_factory=list)
    responses: List[AgentResponse] = field(default_factory=list)
    failed_agents: Dict[str, str] = field(default_factory=dict)
    holds: List[ApprovalHold] = field(default_factory=list)

    def advance(self, stage: OrchestrationStage) -> None:
        logger.debug(f"[ORCH] {self.thread.id}: {self.stage.value} → {stage.value}")
        self.stage = stage
        self.stages.append(stage.value)

    @property
    def pending_approvals(self) -> List[str]:
        return [r.pending_approval_id for r in self.responses if r.pending_approval_id]


class Orchestrator:
    """Plans, delegates, aggregates and persists a conversation turn."""

    def __init__(
        self,
        deps: Any,
        threads: ThreadService,
        memories: MemoryService,
        approvals: ApprovalService,
        executor: ToolExecutor,
        registry: AgentRegistry,
        planner: DelegationPlanner,
        llm: LLMService,
        extractor: MemoryExtractor,
        settings: Optional[Settings] = None,
    ):
        self.deps = deps
        self.db = deps.db
        self.threads = threads
        self.memories = memories
        self.approvals = approvals
        self.executor = executor
        self.registry = registry
        self.planner = planner
        self.llm = llm
        self.extractor = extractor
        self.settings = settings or default_settings
        self.locks = ThreadLockRegistry()
        self._background: set = set()

        self.approvals.on_expired = self.handle_expired_approval

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def send_message(
        self,
        thread_id: str,
        message: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageResponse:
        request_id = generate_request_id()
        with request_context(request_id=request_id, user_id=user_id, thread_id=thread_id):
            async with self.locks.hold(thread_id):
                turn = await self._begin_turn(thread_id, message, user_id, metadata, request_id)
                try:
                    await self._plan_and_delegate(turn)
                    answer, orchestrated = await self._aggregate(turn)
                    return await self._respond(turn, answer, orchestrated)
                except BaseException:
                    self._fail(turn)
                    raise

    async def stream_message(
        self,
        thread_id: str,
        message: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Same contract as ``send_message``, yielded incrementally.

        Content chunks come first; the turn is committed, then exactly one
        ``StreamChunk(done=True)`` carrying the response metadata ends the
        stream. Closing the iterator early commits nothing.
        """
        request_id = generate_request_id()
        with request_context(request_id=request_id, user_id=user_id, thread_id=thread_id):
            async with self.locks.hold(thread_id):
                turn = await self._begin_turn(thread_id, message, user_id, metadata, request_id)
                try:
                    await self._plan_and_delegate(turn)
                    turn.advance(OrchestrationStage.AGGREGATING)
                    successes = self._successes(turn)

                    parts: List[str] = []
                    if len(successes) > 1:
                        try:
                            async for delta in self.llm.stream(
                                self._synthesis_messages(turn, successes),
                                model=self.settings.synthesis_model,
                            ):
                                if delta.content:
                                    parts.append(delta.content)
                                    yield StreamChunk(content=delta.content)
                            reasoning = self._synthesis_reasoning(turn, successes, synthesized=True)
                        except ProviderError as e:
                            if parts:
                                raise
                            logger.warning(f"[ORCH] Streaming synthesis failed, concatenating: {e}")
                            reasoning = self._synthesis_reasoning(turn, successes, synthesized=False)
                        answer = "".join(parts) if parts else self._concatenate(successes)
                    else:
                        answer = successes[0].response
                        reasoning = self._synthesis_reasoning(turn, successes, synthesized=False)

                    if not parts:
                        size = max(1, self.settings.stream_chunk_chars)
                        for start in range(0, len(answer), size):
                            yield StreamChunk(content=answer[start:start + size])

                    orchestrated = self._orchestrated(turn, answer, reasoning)
                    response = await self._respond(turn, answer, orchestrated)
                except BaseException:
                    self._fail(turn)
                    raise

            yield StreamChunk(content="", done=True, metadata=response.metadata)

    async def execute_tool(
        self,
        thread_id: str,
        tool_name: str,
        parameters: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> ToolExecutionResult:
        """Run a tool directly on a thread, acting as the thread's owner and agent."""
        with request_context(request_id=generate_request_id(), user_id=user_id or "", thread_id=thread_id):
            thread = await self.threads.require_thread(thread_id)
            if user_id is not None and thread.user_id != user_id:
                raise ForbiddenError(f"Thread '{thread_id}' does not belong to this user")
            self.executor.require_tool(tool_name)

            ctx = ToolContext(
                thread_id=thread.id,
                user_id=thread.user_id,
                agent_slug=thread.agent_slug,
                project_id=thread.project_id,
            )
            return await self.executor.execute(tool_name, parameters, ctx)

    async def review_approval(
        self,
        approval_id: str,
        approved: bool,
        reviewed_by: str,
        notes: Optional[str] = None,
    ) -> ApprovalReviewResult:
        """Record the decision, then resume or wind down the suspended step."""
        request_id = generate_request_id()
        with request_context(request_id=request_id, user_id=reviewed_by):
            approval = await self.approvals.review(approval_id, approved, reviewed_by, notes)
        return await self._settle(approval, notes, request_id)

    async def handle_expired_approval(self, approval: Approval) -> None:
        await self._settle(approval, None)

    async def recover_checkpoints(self, now: Optional[datetime] = None) -> int:
        """
        Finish what a dead process left behind.

        Decided approvals whose checkpoint is still ``suspended`` are resumed
        or closed as if just reviewed. Checkpoints stuck in ``resuming`` for
        longer than ``checkpoint_stale_minutes`` may or may not have run their
        tool, so they are marked ``failed`` with a note instead of re-run.

        Returns the number of checkpoints brought to a final status.
        """
        now = now or datetime.utcnow()
        settled = 0

        for approval_id in await self.threads.list_unclaimed_decided_checkpoints():
            approval = await self.approvals.get_approval(approval_id)
            if approval is None:
                continue
            try:
                await self._settle(approval, approval.review_notes)
                settled += 1
            except Exception as e:
                logger.warning(f"[ORCH] Recovery of approval {approval_id} failed: {e}")

        cutoff = now - timedelta(minutes=self.settings.checkpoint_stale_minutes)
        for approval_id, state in await self.threads.fail_stale_checkpoints(cutoff):
            settled += 1
            approval = await self.approvals.get_approval(approval_id) if approval_id else None
            if approval is None or state.get("kind") != "conversation":
                continue
            try:
                await self._append_note(
                    approval,
                    f"The approved `{state.get('tool_name')}` call was interrupted and may not have finished. "
                    f"Check its result before asking again.",
                )
            except Exception as e:
                logger.warning(f"[ORCH] Could not post interruption note for approval {approval_id}: {e}")

        if settled:
            logger.info(f"[ORCH] Recovered {settled} checkpoint(s)")
        return settled

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending memory extraction tasks to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Planning & delegation
    # ------------------------------------------------------------------

    async def _begin_turn(
        self,
        thread_id: str,
        message: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]],
        request_id: str,
    ) -> TurnState:
        thread = await self.threads.require_thread(thread_id)
        await self._authorize(thread, user_id)
        version = await self.threads.thread_version(thread_id)
        logger.info(f"[ORCH] Turn {request_id} on thread {thread_id} (agent={thread.agent_slug})")
        return TurnState(
            thread=thread,
            user_id=user_id,
            message=message,
            metadata=dict(metadata or {}),
            version=version,
            request_id=request_id,
        )

    async def _authorize(self, thread: Thread, user_id: str) -> None:
        try:
            user = await self.deps.get_user_by_id(user_id)
            allowed = user is not None and await self.deps.check_permission(user_id, CHAT_PERMISSION)
        except Exception as e:
            raise ProviderError("auth", "User lookup failed", e) from e

        if user is None:
            raise ForbiddenError(f"Unknown user '{user_id}'")
        if thread.user_id != user_id:
            raise ForbiddenError(f"Thread '{thread.id}' does not belong to this user")
        if not allowed:
            raise ForbiddenError(f"User '{user_id}' may not use agents", details={"permission": CHAT_PERMISSION})

    async def _plan_and_delegate(self, turn: TurnState) -> None:
        turn.plan = await self.planner.plan(turn.message, turn.thread.agent_slug)

        history = await self.threads.get_thread_history(turn.thread.id, limit=self.settings.max_history_messages)
        turn.history = [{"role": m.role.value, "content": m.content} for m in history]
        turn.sources = await self._gather_sources(turn)
        turn.memories = await self._recall_memories(turn)

        turn.advance(OrchestrationStage.DELEGATING)
        agents = [a for a in (self.registry.get(slug) for slug in turn.plan.agents) if a is not None]
        if not agents:
            raise NotFoundError("agent", turn.thread.agent_slug)

        if turn.plan.parallel:
            results = await asyncio.gather(
                *[self._run_agent(turn, agent) for agent in agents],
                return_exceptions=True,
            )
        else:
            results = []
            for agent in agents:
                try:
                    results.append(await self._run_agent(turn, agent))
                except Exception as e:
                    results.append(e)

        for agent, result in zip(agents, results):
            if isinstance(result, Exception):
                logger.warning(f"[ORCH] Agent {agent.slug} failed: {type(result).__name__}: {result}")
                turn.failed_agents[agent.slug] = str(result) or type(result).__name__
            elif isinstance(result, BaseException):
                raise result
            else:
                turn.responses.append(result)

        if turn.pending_approvals:
            turn.advance(OrchestrationStage.AWAITING_APPROVAL)

    async def _gather_sources(self, turn: TurnState) -> List[RAGResult]:
        try:
            return await self.deps.rag_search(turn.message, RAGOptions(
                limit=self.settings.rag_result_limit,
                min_score=self.settings.rag_min_score,
                project_id=turn.thread.project_id,
                agent_slug=turn.thread.agent_slug,
            ))
        except Exception as e:
            logger.warning(f"[ORCH] RAG context unavailable (non-fatal): {e}")
            return []

    async def _recall_memories(self, turn: TurnState) -> List[Memory]:
        if self.settings.memory_recall_limit <= 0:
            return []
        try:
            return await self.memories.search_memories(
                query=turn.message,
                user_id=turn.user_id,
                limit=self.settings.memory_recall_limit,
            )
        except Exception as e:
            logger.warning(f"[ORCH] Memory recall failed (non-fatal): {e}")
            return []

    def _system_prompt(self, agent: AgentConfig, turn: TurnState) -> str:
        sections = [agent.system_prompt]

        others = [slug for slug in turn.plan.agents if slug != agent.slug] if turn.plan else []
        if others:
            sections.append(
                f"Other specialists ({', '.join(others)}) are answering in parallel. "
                f"Focus on your own expertise: {', '.join(agent.capabilities)}."
            )
        if turn.sources:
            lines = [
                f"[{i}] ({s.source}) {s.content}"
                for i, s in enumerate(turn.sources, start=1)
            ]
            sections.append("## Relevant knowledge\n" + "\n".join(lines))
        if turn.memories:
            lines = [f"- ({m.type.value}) {m.content}" for m in turn.memories]
            sections.append("## What you remember about this user\n" + "\n".join(lines))
        return "\n\n".join(sections)

    async def _run_agent(self, turn: TurnState, agent: AgentConfig) -> AgentResponse:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self._system_prompt(agent, turn)}]
        messages.extend(turn.history)
        messages.append({"role": "user", "content": turn.message})

        ctx = ToolContext(
            thread_id=turn.thread.id,
            user_id=turn.user_id,
            agent_slug=agent.slug,
            project_id=turn.thread.project_id,
        )
        return await self._agent_loop(agent, messages, ctx, turn.holds, turn.sources)

    async def _agent_loop(
        self,
        agent: AgentConfig,
        messages: List[Dict[str, Any]],
        ctx: ToolContext,
        holds: List[ApprovalHold],
        sources: Sequence[RAGResult] = (),
    ) -> AgentResponse:
        """
        Call the agent's model, running its tool calls, until it answers.

        A gated tool call stops the loop: the message list so far goes into
        an approval hold (appended to ``holds``) so the loop can pick up from
        the same point later. The hold is only written when the turn commits.
        """
        tools = [t.to_openai_tool() for t in get_tools_for_agent(agent.tools)]
        tools_used: List[str] = []
        credits = 0.0

        for _ in range(max(1, self.settings.agent_max_tool_iterations)):
            response = await self.llm.complete(
                messages,
                model=agent.model,
                temperature=agent.temperature,
                max_tokens=agent.max_tokens,
                tools=tools or None,
            )
            if not response.tool_calls:
                return self._agent_response(agent, response.content, sources, tools_used, credits)

            messages.append({
                "role": "assistant",
                "content": response.content or None,
                "tool_calls": [call.to_message() for call in response.tool_calls],
            })

            # Ungated calls first so at most one approval parks the agent
            calls = sorted(
                response.tool_calls,
                key=lambda c: bool(get_tool(c.name) and get_tool(c.name).requires_approval),
            )
            for index, call in enumerate(calls):
                tool = get_tool(call.name)
                if tool is None or call.name not in agent.tools:
                    messages.append(self._tool_message(call.id, {"error": f"Tool '{call.name}' is not available"}))
                    continue

                if tool.requires_approval:
                    state = {
                        "kind": "conversation",
                        "agent_slug": agent.slug,
                        "project_id": ctx.project_id,
                        "tool_name": call.name,
                        "parameters": call.arguments,
                        "tool_call_id": call.id,
                        "deferred_tool_call_ids": [c.id for c in calls[index + 1:]],
                        "messages": list(messages),
                        "tools_used": list(tools_used),
                        "sources": [s.model_dump() for s in sources],
                    }
                    hold = await self.executor.hold(call.name, call.arguments, ctx, checkpoint_state=state)
                    holds.append(hold)
                    tools_used.append(call.name)
                    note = (
                        f"I need your approval before running `{call.name}` "
                        f"(approval {hold.approval_id}). I'll continue as soon as it is reviewed."
                    )
                    text = f"{response.content}\n\n{note}" if response.content else note
                    agent_response = self._agent_response(agent, text, sources, tools_used, credits)
                    agent_response.pending_approval_id = hold.approval_id
                    return agent_response

                result = await self.executor.execute(call.name, call.arguments, ctx, charge=False)
                tools_used.append(call.name)
                if result.success:
                    credits += result.credits_used or 0.0
                messages.append(self._tool_message(call.id, result.model_dump()))

        # Out of tool rounds: force a final answer without tools
        response = await self.llm.complete(
            messages,
            model=agent.model,
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
        )
        return self._agent_response(agent, response.content, sources, tools_used, credits)

    @staticmethod
    def _tool_message(tool_call_id: str, payload: Any) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": tool_call_id, "content": json.dumps(payload, default=str)}

    @staticmethod
    def _agent_response(
        agent: AgentConfig,
        text: str,
        sources: Sequence[RAGResult],
        tools_used: List[str],
        credits: float,
    ) -> AgentResponse:
        confidence = 0.6 + (0.2 if sources else 0.0) + (0.1 if tools_used else 0.0)
        return AgentResponse(
            agent_slug=agent.slug,
            response=text,
            confidence=round(min(confidence, 0.9), 2),
            sources=list(sources),
            tools_used=list(tools_used),
            credits_used=credits,
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _successes(self, turn: TurnState) -> List[AgentResponse]:
        successes = [r for r in turn.responses if r.response.strip()]
        if not successes:
            if turn.failed_agents:
                raise ProviderError("llm", f"All delegated agents failed: {', '.join(sorted(turn.failed_agents))}")
            raise ProviderError("llm", "No delegated agent produced an answer")
        return successes

    async def _aggregate(self, turn: TurnState) -> Tuple[str, OrchestratedResponse]:
        turn.advance(OrchestrationStage.AGGREGATING)
        successes = self._successes(turn)

        if len(successes) == 1:
            answer = successes[0].response
            reasoning = self._synthesis_reasoning(turn, successes, synthesized=False)
        else:
            try:
                response = await self.llm.complete(
                    self._synthesis_messages(turn, successes),
                    model=self.settings.synthesis_model,
                )
                answer = response.content.strip() or self._concatenate(successes)
                reasoning = self._synthesis_reasoning(turn, successes, synthesized=True)
            except ProviderError as e:
                logger.warning(f"[ORCH] Synthesis failed, concatenating: {e}")
                answer = self._concatenate(successes)
                reasoning = self._synthesis_reasoning(turn, successes, synthesized=False)

        return answer, self._orchestrated(turn, answer, reasoning)

    def _synthesis_messages(self, turn: TurnState, successes: List[AgentResponse]) -> List[Dict[str, Any]]:
        sections = "\n\n".join(
            f"### {self._agent_name(r.agent_slug)} (confidence {r.confidence})\n{r.response}"
            for r in successes
        )
        return [
            {"role": "system", "content": SYNTHESIS_PROMPT},
            {"role": "user", "content": f"User question:\n{turn.message}\n\nSpecialist answers:\n\n{sections}"},
        ]

    def _concatenate(self, successes: List[AgentResponse]) -> str:
        return "\n\n".join(f"**{self._agent_name(r.agent_slug)}**\n{r.response}" for r in successes)

    def _agent_name(self, slug: str) -> str:
        agent = self.registry.get(slug)
        return agent.name if agent else slug

    @staticmethod
    def _synthesis_reasoning(turn: TurnState, successes: List[AgentResponse], synthesized: bool) -> str:
        used = ", ".join(r.agent_slug for r in successes)
        if len(successes) == 1:
            reasoning = f"Single response from {used}"
        elif synthesized:
            reasoning = f"Synthesized responses from {used}"
        else:
            reasoning = f"Combined responses from {used} without synthesis"
        if turn.failed_agents:
            failed = "; ".join(f"{slug}: {err}" for slug, err in sorted(turn.failed_agents.items()))
            reasoning += f". Unavailable agents ({failed})"
        return reasoning

    @staticmethod
    def _orchestrated(turn: TurnState, answer: str, reasoning: str) -> OrchestratedResponse:
        return OrchestratedResponse(
            answer=answer,
            responses=turn.responses,
            delegation_plan=turn.plan,
            synthesis_reasoning=reasoning,
            failed_agents=sorted(turn.failed_agents),
        )

    # ------------------------------------------------------------------
    # Responding
    # ------------------------------------------------------------------

    def _turn_cost(self, turn: TurnState) -> float:
        cost = 0.0
        for response in turn.responses:
            agent = self.registry.get(response.agent_slug)
            per_message = agent.credits_per_message if agent and agent.credits_per_message is not None \
                else self.settings.credits_per_message
            cost += per_message + response.credits_used
        return cost

    async def _respond(self, turn: TurnState, answer: str, orchestrated: OrchestratedResponse) -> MessageResponse:
        turn.advance(OrchestrationStage.RESPONDING)
        cost = self._turn_cost(turn)
        pending = turn.pending_approvals

        assistant_metadata = {
            "agents": [r.agent_slug for r in turn.responses],
            "failed_agents": orchestrated.failed_agents,
            "pending_approvals": pending,
            "credits_used": cost,
            "request_id": turn.request_id,
        }
        saved = await self._commit_messages(
            turn.thread.id,
            turn.user_id,
            [
                (MessageRole.USER, turn.message, turn.metadata or None),
                (MessageRole.ASSISTANT, answer, assistant_metadata),
            ],
            cost,
            reason=f"Agent message ({', '.join(assistant_metadata['agents'])})",
            expected_version=turn.version,
            thread_metadata={"last_agents": turn.plan.agents},
            holds=turn.holds,
        )

        if self.settings.auto_extract_memories:
            self._spawn(self._extract_memories(turn.thread, turn.user_id, turn.thread.agent_slug, turn.message, answer))

        logger.info(
            f"[ORCH] Turn {turn.request_id} done: agents={assistant_metadata['agents']} "
            f"failed={orchestrated.failed_agents} pending={pending} credits={cost}"
        )
        return MessageResponse(
            success=True,
            answer=answer,
            sources=turn.sources or None,
            memories=turn.memories or None,
            metadata={
                "thread_id": turn.thread.id,
                "request_id": turn.request_id,
                "user_message_id": saved[0].id,
                "assistant_message_id": saved[1].id,
                "stage": turn.stage.value,
                "stages": list(turn.stages),
                "delegation_plan": turn.plan.model_dump(),
                "agents": assistant_metadata["agents"],
                "responses": [
                    {
                        "agent_slug": r.agent_slug,
                        "confidence": r.confidence,
                        "tools_used": r.tools_used,
                        "pending_approval_id": r.pending_approval_id,
                    }
                    for r in orchestrated.responses
                ],
                "synthesis_reasoning": orchestrated.synthesis_reasoning,
                "failed_agents": orchestrated.failed_agents,
                "pending_approvals": pending,
                "credits_used": cost,
            },
        )

    async def _commit_messages(
        self,
        thread_id: str,
        user_id: str,
        messages: Sequence[TurnMessage],
        cost: float,
        reason: str,
        expected_version: Optional[int] = None,
        thread_metadata: Optional[Dict[str, Any]] = None,
        holds: Sequence[ApprovalHold] = (),
    ):
        """
        Append ``messages``, write approval ``holds`` and charge ``cost`` as one unit.

        The charge runs inside the open transaction, just before commit. If the
        commit then fails, a compensating audit event records the orphaned
        charge. The whole unit is shielded from caller cancellation.
        """
        if cost > 0:
            try:
                balance = await self.deps.get_credits_balance(user_id)
            except Exception as e:
                raise ProviderError("credits", "Could not read credit balance", e) from e
            if balance < cost:
                raise InsufficientCreditsError(cost, balance)

        async def _commit():
            charged = False
            try:
                async with self.db.begin() as session:
                    saved = await self.threads.append_turn(
                        session, thread_id, messages,
                        expected_version=expected_version,
                        metadata=thread_metadata,
                    )
                    for hold in holds:
                        await self.executor.persist_hold(hold, session)
                    if cost > 0:
                        try:
                            await self.deps.charge_credits(user_id, cost, reason)
                        except InsufficientCreditsError:
                            raise
                        except Exception as e:
                            raise ProviderError("credits", "Credit charge failed", e) from e
                        charged = True
                return saved
            except Exception as e:
                if charged:
                    logger.error(f"[ORCH] Charged {cost} credits but could not persist turn on {thread_id}: {e}")
                    await audit_safely(self.deps, user_id, "credits.charge_unpersisted", f"thread:{thread_id}", {
                        "amount": cost,
                        "reason": reason,
                        "error": str(e),
                    })
                if isinstance(e, AgenticAIError):
                    raise
                raise ProviderError("database", "Failed to persist messages", e) from e

        saved = await asyncio.shield(_commit())
        for hold in holds:
            await self.executor.audit_hold(hold)
        return saved

    def _fail(self, turn: TurnState) -> None:
        if turn.stage != OrchestrationStage.FAILED:
            turn.advance(OrchestrationStage.FAILED)
        logger.warning(f"[ORCH] Turn {turn.request_id} failed after {turn.stages[:-1]}")

    # ------------------------------------------------------------------
    # Memory extraction (background, best-effort)
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _extract_memories(
        self,
        thread: Thread,
        user_id: str,
        agent_slug: str,
        user_message: str,
        answer: str,
    ) -> None:
        try:
            extracted = await self.extractor.extract_memories_with_llm(
                user_message,
                answer,
                agent_slug=agent_slug,
                max_memories=self.settings.max_memories_per_exchange,
            )
            for item in extracted:
                await self.memories.create_memory(
                    thread_id=thread.id,
                    user_id=user_id,
                    agent_slug=agent_slug,
                    type=item.memory_type,
                    content=item.content,
                    context=item.context,
                    confidence=item.confidence,
                    importance=item.importance,
                    metadata=item.metadata,
                )
            if extracted:
                logger.info(f"[MEMORY] Extracted {len(extracted)} memories from thread {thread.id}")
        except Exception as e:
            logger.warning(f"[MEMORY] Extraction failed for thread {thread.id} (non-fatal): {e}")
            await audit_safely(self.deps, user_id, "memory.extraction_failed", f"thread:{thread.id}", {
                "error": str(e),
            })

    # ------------------------------------------------------------------
    # Approval resumption
    # ------------------------------------------------------------------

    async def _settle(
        self,
        approval: Approval,
        notes: Optional[str],
        request_id: Optional[str] = None,
    ) -> ApprovalReviewResult:
        with request_context(
            request_id=request_id or generate_request_id(),
            user_id=approval.user_id,
            thread_id=approval.thread_id,
        ):
            if approval.status == ApprovalStatus.APPROVED:
                return await self._resume_approved(approval)
            return await self._close_unapproved(approval, notes)

    async def _resume_approved(self, approval: Approval) -> ApprovalReviewResult:
        found = await self.threads.get_checkpoint_for_approval(approval.id)
        if found is None:
            logger.warning(f"[ORCH] Approval {approval.id} has no checkpoint to resume")
            return ApprovalReviewResult(approval=approval, resumed=False)
        checkpoint, state = found

        async with self.locks.hold(approval.thread_id):
            if not await self.threads.claim_checkpoint(checkpoint.id):
                logger.warning(f"[ORCH] Checkpoint {checkpoint.id} already resumed")
                return ApprovalReviewResult(approval=approval, resumed=False)

            ctx = ToolContext(
                thread_id=approval.thread_id,
                user_id=approval.user_id,
                agent_slug=state.get("agent_slug") or approval.agent_slug,
                project_id=state.get("project_id"),
            )
            try:
                result = await self.executor.execute(
                    state["tool_name"], state.get("parameters") or {}, ctx, bypass_approval=True
                )
            except Exception as e:
                await self._mark_checkpoint(checkpoint.id, "failed", {**state, "error": str(e)})
                if state.get("kind") == "conversation":
                    await self._append_note(
                        approval,
                        f"The approved `{state['tool_name']}` call could not be run: {e}",
                    )
                raise

            # The tool has run; from here the checkpoint must not go back to suspended
            answer = None
            try:
                if state.get("kind") == "conversation":
                    answer = await self._continue_conversation(approval, state, ctx, result)
            except Exception as e:
                await self._mark_checkpoint(checkpoint.id, "failed", {
                    **state, "result": result.model_dump(), "error": str(e),
                })
                raise

            await self._mark_checkpoint(checkpoint.id, "resumed", {**state, "result": result.model_dump()})

        logger.info(f"[ORCH] Resumed approval {approval.id} (tool ok={result.success})")
        return ApprovalReviewResult(approval=approval, resumed=True, tool_result=result, answer=answer)

    async def _continue_conversation(
        self,
        approval: Approval,
        state: Dict[str, Any],
        ctx: ToolContext,
        result: ToolExecutionResult,
    ) -> str:
        """Re-enter the delegating stage with the approved tool's result."""
        agent = self.registry.get(ctx.agent_slug)
        messages = list(state.get("messages") or [])
        messages.append(self._tool_message(state["tool_call_id"], result.model_dump()))
        for deferred_id in state.get("deferred_tool_call_ids") or []:
            messages.append(self._tool_message(deferred_id, {"error": "Not run while waiting for approval"}))

        sources = [RAGResult(**s) for s in state.get("sources") or []]
        holds: List[ApprovalHold] = []
        cost = 0.0
        try:
            if agent is None:
                raise NotFoundError("agent", ctx.agent_slug)
            response = await self._agent_loop(agent, messages, ctx, holds, sources)
            answer = response.response
            cost = response.credits_used
        except Exception as e:
            logger.warning(f"[ORCH] Agent continuation failed after approval {approval.id}: {e}")
            answer = self._result_summary(state["tool_name"], result)
            holds = []
            cost = 0.0

        await self._commit_messages(
            approval.thread_id,
            approval.user_id,
            [(MessageRole.ASSISTANT, answer, {
                "agents": [ctx.agent_slug],
                "approval_id": approval.id,
                "tool_result": result.model_dump(),
                "pending_approvals": [h.approval_id for h in holds],
                "credits_used": cost,
            })],
            cost,
            reason=f"Agent continuation after approval {approval.id}",
            holds=holds,
        )
        return answer

    @staticmethod
    def _result_summary(tool_name: str, result: ToolExecutionResult) -> str:
        if result.success:
            return f"`{tool_name}` ran successfully:\n\n{json.dumps(result.result, default=str, indent=2)}"
        return f"`{tool_name}` failed: {result.error}"

    async def _close_unapproved(self, approval: Approval, notes: Optional[str]) -> ApprovalReviewResult:
        """Rejected or expired: discard the checkpoint and tell the user why nothing ran."""
        found = await self.threads.get_checkpoint_for_approval(approval.id)
        if found is None:
            return ApprovalReviewResult(approval=approval, resumed=False)
        checkpoint, state = found
        tool_name = state.get("tool_name") or "the requested action"

        if approval.status == ApprovalStatus.EXPIRED:
            note = f"The approval request for `{tool_name}` expired before it was reviewed, so it was not run."
        else:
            note = f"The request to run `{tool_name}` was rejected, so it was not run."
            if notes:
                note += f" Reviewer notes: {notes}"

        async with self.locks.hold(approval.thread_id):
            if not await self.threads.claim_checkpoint(checkpoint.id):
                return ApprovalReviewResult(approval=approval, resumed=False)
            if state.get("kind") == "conversation":
                await self._append_note(approval, note)
            await self._mark_checkpoint(checkpoint.id, "discarded", {**state, "outcome": approval.status.value})

        logger.info(f"[ORCH] Approval {approval.id} {approval.status.value}; checkpoint discarded")
        return ApprovalReviewResult(approval=approval, resumed=False, answer=note)

    async def _append_note(self, approval: Approval, note: str) -> None:
        await self._commit_messages(
            approval.thread_id,
            approval.user_id,
            [(MessageRole.ASSISTANT, note, {
                "approval_id": approval.id,
                "approval_status": approval.status.value,
            })],
            0.0,
            reason="",
        )

    async def _mark_checkpoint(self, checkpoint_id: str, status: str, state: Dict[str, Any]) -> None:
        async with self.db.begin() as session:
            await self.threads.mark_checkpoint(session, checkpoint_id, status, state)
