"""
Tool executor — dispatches tool calls to the host ports.

Routing order:
  0. Unknown tool → NotFoundError
  1. Tool flagged ``requires_approval`` → create an Approval (+ checkpoint)
     and return without running anything
  2. Built-in handler ``_tool_<name>``

Every call is audited, whatever the outcome.

Inside a conversation turn the approval is not written right away: ``hold``
reserves its id, and the orchestrator persists the hold in the same
transaction as the turn's messages.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from agentic_ai.agent.tool_definitions import get_tool
from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.errors import InsufficientCreditsError, NotFoundError, ProviderError
from agentic_ai.ports import audit_safely, has_cost_estimator
from agentic_ai.schemas import Approval, MemoryType, RAGOptions, ToolDefinition, ToolExecutionResult
from agentic_ai.services.approval_service import ApprovalService
from agentic_ai.services.memory_service import MemoryService
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger

logger = get_subsystem_logger(Subsystem.TOOL)


@dataclass
class ToolContext:
    """Who is calling a tool, and from where."""
    thread_id: str
    user_id: str
    agent_slug: str
    project_id: Optional[str] = None


@dataclass
class ApprovalHold:
    """A gated call with a reserved approval id, not yet persisted."""
    tool_name: str
    parameters: Dict[str, Any]
    ctx: ToolContext
    request: Dict[str, Any] = field(default_factory=dict)

    @property
    def approval_id(self) -> str:
        return self.request["approval_id"]


class ToolExecutor:
    """Runs tools against the dependency ports on behalf of an agent."""

    def __init__(
        self,
        deps: Any,
        memories: MemoryService,
        approvals: ApprovalService,
        settings: Optional[Settings] = None,
    ):
        self.deps = deps
        self.memories = memories
        self.approvals = approvals
        self.settings = settings or default_settings

    def require_tool(self, tool_name: str) -> ToolDefinition:
        tool = get_tool(tool_name)
        if tool is None:
            raise NotFoundError("tool", tool_name)
        return tool

    async def estimate_credits(self, tool: ToolDefinition, parameters: Dict[str, Any]) -> float:
        """Credits a run will cost: the workflow estimate when available, else the static price."""
        credits = float(tool.credits_required or 0.0)
        if tool.name == "execute_workflow" and has_cost_estimator(self.deps) and parameters.get("flow_id"):
            try:
                credits = float(await self.deps.estimate_workflow_cost(parameters["flow_id"]))
            except Exception as e:
                logger.warning(f"[TOOL] Cost estimate failed for {parameters['flow_id']}, using {credits}: {e}")
        return credits

    async def execute(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        ctx: ToolContext,
        bypass_approval: bool = False,
        charge: bool = True,
    ) -> ToolExecutionResult:
        """
        Execute one tool call.

        Args:
            tool_name: Registry name of the tool
            parameters: Arguments matching the tool's JSON Schema
            ctx: Calling thread/user/agent
            bypass_approval: Run a gated tool (used once its approval was granted)
            charge: Charge the tool's credits now; otherwise the caller bills them

        Raises:
            NotFoundError: unknown tool
            InsufficientCreditsError: balance below the tool's cost
            ProviderError: the credit charge failed after the tool ran
        """
        tool = self.require_tool(tool_name)
        resource = f"tool:{tool_name}"

        if tool.requires_approval and not bypass_approval:
            hold = await self.hold(tool_name, parameters, ctx)
            approval = await self.persist_hold(hold)
            await self.audit_hold(hold)
            return ToolExecutionResult(
                success=False,
                requires_approval=True,
                approval_id=approval.id,
            )

        credits = await self.estimate_credits(tool, parameters)
        if charge and credits > 0:
            balance = await self.deps.get_credits_balance(ctx.user_id)
            if balance < credits:
                raise InsufficientCreditsError(credits, balance)

        handler = getattr(self, f"_tool_{tool_name}", None)
        if handler is None:
            raise NotFoundError("tool", tool_name)

        try:
            result, used = await handler(parameters, ctx)
        except Exception as exc:
            logger.warning(f"[TOOL] {tool_name} failed: {type(exc).__name__}: {exc}")
            await audit_safely(self.deps, ctx.user_id, "tool.failed", resource, {
                "thread_id": ctx.thread_id,
                "agent_slug": ctx.agent_slug,
                "parameters": parameters,
                "error": str(exc),
            })
            return ToolExecutionResult(success=False, error=f"{type(exc).__name__}: {exc}")

        if used is not None:
            credits = float(used)

        if charge and credits > 0:
            try:
                await self.deps.charge_credits(ctx.user_id, credits, f"Tool: {tool_name}")
            except InsufficientCreditsError:
                raise
            except Exception as e:
                await audit_safely(self.deps, ctx.user_id, "credits.charge_failed", resource, {
                    "thread_id": ctx.thread_id,
                    "amount": credits,
                    "error": str(e),
                })
                raise ProviderError("credits", f"Charging {credits} credits for {tool_name} failed", e) from e

        logger.info(f"[TOOL] {tool_name} ok for thread {ctx.thread_id} ({credits} credits)")
        await audit_safely(self.deps, ctx.user_id, "tool.executed", resource, {
            "thread_id": ctx.thread_id,
            "agent_slug": ctx.agent_slug,
            "parameters": parameters,
            "credits_used": credits,
        })
        return ToolExecutionResult(success=True, result=result, credits_used=credits)

    async def hold(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        ctx: ToolContext,
        checkpoint_state: Optional[Dict[str, Any]] = None,
    ) -> ApprovalHold:
        """Reserve an approval for a gated call without writing anything."""
        tool = self.require_tool(tool_name)
        credits = await self.estimate_credits(tool, parameters)
        state = checkpoint_state or {
            "kind": "tool",
            "agent_slug": ctx.agent_slug,
            "project_id": ctx.project_id,
            "tool_name": tool_name,
            "parameters": parameters,
        }
        return ApprovalHold(tool_name, parameters, ctx, request={
            "approval_id": str(uuid.uuid4()),
            "thread_id": ctx.thread_id,
            "user_id": ctx.user_id,
            "agent_slug": ctx.agent_slug,
            "action_type": tool.action_type,
            "risk_level": tool.risk_level,
            "description": self._describe(tool, parameters, credits),
            "details": {"tool_name": tool_name, "parameters": parameters, "credits_required": credits},
            "checkpoint_state": state,
        })

    async def persist_hold(self, hold: ApprovalHold, session: Optional[AsyncSession] = None) -> Approval:
        """Write the approval and its checkpoint, inside ``session`` when given."""
        approval = await self.approvals.request_approval(**hold.request, session=session)
        logger.info(f"[TOOL] {hold.tool_name} held for approval {approval.id}")
        return approval

    async def audit_hold(self, hold: ApprovalHold) -> None:
        await audit_safely(self.deps, hold.ctx.user_id, "tool.approval_requested", f"tool:{hold.tool_name}", {
            "thread_id": hold.ctx.thread_id,
            "agent_slug": hold.ctx.agent_slug,
            "approval_id": hold.approval_id,
            "parameters": hold.parameters,
        })

    @staticmethod
    def _describe(tool: ToolDefinition, parameters: Dict[str, Any], credits: float) -> str:
        if tool.name == "execute_workflow":
            return f"Run workflow '{parameters.get('flow_id')}' (about {credits:g} credits)"
        return f"Run tool '{tool.name}' (about {credits:g} credits)"

    # ------------------------------------------------------------------
    # Handlers return (result payload, credits actually used or None)
    # ------------------------------------------------------------------

    async def _tool_search_knowledge(self, inp: Dict[str, Any], ctx: ToolContext):
        results = await self.deps.rag_search(inp["query"], RAGOptions(
            collection=inp.get("collection"),
            limit=inp.get("limit") or self.settings.rag_result_limit,
            min_score=self.settings.rag_min_score,
            project_id=ctx.project_id,
            agent_slug=ctx.agent_slug,
        ))
        return [r.model_dump() for r in results], None

    async def _tool_search_memories(self, inp: Dict[str, Any], ctx: ToolContext):
        types = [MemoryType(t) for t in inp.get("types") or []]
        found = await self.memories.search_memories(
            query=inp["query"],
            user_id=ctx.user_id,
            types=types or None,
            limit=inp.get("limit") or self.settings.memory_recall_limit,
        )
        return [
            {
                "content": m.content,
                "type": m.type.value,
                "importance": m.importance,
                "similarity": round(m.similarity_score, 4),
                "created_at": m.created_at.isoformat(),
            }
            for m in found
        ], None

    async def _tool_validate_workflow(self, inp: Dict[str, Any], ctx: ToolContext):
        valid = await self.deps.validate_workflow(inp["flow_id"])
        return {"flow_id": inp["flow_id"], "valid": bool(valid)}, None

    async def _tool_estimate_workflow_cost(self, inp: Dict[str, Any], ctx: ToolContext):
        tool = self.require_tool("execute_workflow")
        credits = await self.estimate_credits(tool, inp)
        return {
            "flow_id": inp["flow_id"],
            "credits": credits,
            "estimated": has_cost_estimator(self.deps),
        }, None

    async def _tool_execute_workflow(self, inp: Dict[str, Any], ctx: ToolContext):
        result = await self.deps.execute_workflow(inp["flow_id"], inp.get("input") or {})
        if not result.success:
            raise ProviderError("workflow", result.error or f"Workflow '{inp['flow_id']}' failed")
        return result.model_dump(), result.credits_used
