"""
HTTP routes over AgenticAIService.

The core does no authentication: the host passes ``get_current_user_id``, a
FastAPI dependency returning the caller's user id, and every route acts as
that user.

    app = FastAPI()
    install_exception_handlers(app)
    app.include_router(create_router(service, get_current_user_id))

Streaming uses Server-Sent Events. Event types:
- "content": a chunk of the answer
- "done": the turn is committed; carries the response metadata
- "error": the turn failed; nothing was committed
"""

import json
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from agentic_ai.errors import AgenticAIError, ForbiddenError, NotFoundError
from agentic_ai.schemas import (
    Approval,
    ApprovalReviewResult,
    CreateThreadRequest,
    ExecuteToolRequest,
    Memory,
    MemorySearchRequest,
    MemoryType,
    MemoryWithScore,
    Message,
    MessageResponse,
    ReviewApprovalRequest,
    SendMessageRequest,
    Thread,
    ThreadScope,
    ToolDefinition,
    ToolExecutionResult,
)
from agentic_ai.service import AgenticAIService
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger

logger = get_subsystem_logger(Subsystem.API)


async def agentic_error_handler(request: Request, exc: AgenticAIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def install_exception_handlers(app: FastAPI) -> None:
    """Map every AgenticAIError to a JSON body with its status code."""
    app.add_exception_handler(AgenticAIError, agentic_error_handler)


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def create_router(
    service: AgenticAIService,
    get_current_user_id: Callable[..., Any],
    prefix: str = "/agentic",
) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["Agentic AI"])

    async def _owned_thread(thread_id: str, user_id: str) -> Thread:
        thread = await service.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("thread", thread_id)
        if thread.user_id != user_id:
            raise ForbiddenError(f"Thread '{thread_id}' does not belong to this user")
        return thread

    async def _owned_approval(approval_id: str, user_id: str) -> Approval:
        approval = await service.get_approval(approval_id)
        if approval is None:
            raise NotFoundError("approval", approval_id)
        if approval.user_id != user_id:
            raise ForbiddenError(f"Approval '{approval_id}' does not belong to this user")
        return approval

    # ── Threads ──────────────────────────────────────────────

    @router.post("/threads", response_model=Thread, status_code=status.HTTP_201_CREATED)
    async def create_thread(body: CreateThreadRequest, user_id: str = Depends(get_current_user_id)):
        return await service.create_thread(
            user_id,
            body.agent_slug,
            scope=body.scope,
            project_id=body.project_id,
            title=body.title,
            metadata=body.metadata,
        )

    @router.get("/threads", response_model=List[Thread])
    async def list_threads(
        limit: Optional[int] = Query(None, ge=1, le=200),
        scope: Optional[ThreadScope] = None,
        project_id: Optional[str] = None,
        user_id: str = Depends(get_current_user_id),
    ):
        return await service.list_threads(user_id, limit=limit, scope=scope, project_id=project_id)

    @router.get("/threads/{thread_id}", response_model=Thread)
    async def get_thread(thread_id: str, user_id: str = Depends(get_current_user_id)):
        return await _owned_thread(thread_id, user_id)

    @router.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_thread(thread_id: str, user_id: str = Depends(get_current_user_id)):
        await _owned_thread(thread_id, user_id)
        await service.delete_thread(thread_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/threads/{thread_id}/messages", response_model=List[Message])
    async def get_thread_history(
        thread_id: str,
        limit: Optional[int] = Query(None, ge=1, le=1000),
        user_id: str = Depends(get_current_user_id),
    ):
        await _owned_thread(thread_id, user_id)
        return await service.get_thread_history(thread_id, limit)

    # ── Messages ─────────────────────────────────────────────

    @router.post("/threads/{thread_id}/messages", response_model=MessageResponse)
    async def send_message(thread_id: str, body: SendMessageRequest, user_id: str = Depends(get_current_user_id)):
        return await service.send_message(thread_id, body.message, user_id, body.metadata)

    @router.post("/threads/{thread_id}/messages/stream")
    async def stream_message(thread_id: str, body: SendMessageRequest, user_id: str = Depends(get_current_user_id)):
        # Fail before the stream opens so ownership errors keep their status code
        await _owned_thread(thread_id, user_id)

        async def generate():
            try:
                async for chunk in service.stream_message(thread_id, body.message, user_id, body.metadata):
                    if chunk.done:
                        yield _sse({"type": "done", "data": chunk.metadata or {}})
                    else:
                        yield _sse({"type": "content", "content": chunk.content})
            except AgenticAIError as e:
                logger.warning(f"[API] Stream on {thread_id} failed: {e.code}: {e.message}")
                yield _sse({"type": "error", **e.to_dict()})
            except Exception as e:
                logger.error(f"[API] Stream on {thread_id} failed: {e}")
                yield _sse({"type": "error", "error": "internal_error", "message": str(e)})

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # ── Memory ───────────────────────────────────────────────

    @router.get("/memories", response_model=List[Memory])
    async def list_memories(
        thread_id: Optional[str] = None,
        agent_slug: Optional[str] = None,
        types: Optional[List[MemoryType]] = Query(None),
        limit: Optional[int] = Query(None, ge=1, le=200),
        user_id: str = Depends(get_current_user_id),
    ):
        return await service.list_memories(
            thread_id=thread_id, user_id=user_id, agent_slug=agent_slug, types=types, limit=limit
        )

    @router.post("/memories/search", response_model=List[MemoryWithScore])
    async def search_memories(body: MemorySearchRequest, user_id: str = Depends(get_current_user_id)):
        return await service.search_memories(
            body.query,
            user_id=user_id,
            agent_slug=body.agent_slug,
            types=body.types,
            limit=body.limit,
            thread_id=body.thread_id,
        )

    # ── Approvals ────────────────────────────────────────────

    @router.get("/approvals", response_model=List[Approval])
    async def list_pending_approvals(user_id: str = Depends(get_current_user_id)):
        return await service.list_pending_approvals(user_id)

    @router.get("/approvals/{approval_id}", response_model=Approval)
    async def get_approval(approval_id: str, user_id: str = Depends(get_current_user_id)):
        return await _owned_approval(approval_id, user_id)

    @router.post("/approvals/{approval_id}/review", response_model=ApprovalReviewResult)
    async def review_approval(
        approval_id: str,
        body: ReviewApprovalRequest,
        user_id: str = Depends(get_current_user_id),
    ):
        await _owned_approval(approval_id, user_id)
        return await service.review_approval(approval_id, body.approved, reviewed_by=user_id, notes=body.notes)

    # ── Tools & agents ───────────────────────────────────────

    @router.get("/tools", response_model=List[ToolDefinition])
    async def list_tools():
        return service.list_available_tools()

    @router.get("/agents")
    async def list_agents():
        return [agent.to_dict() for agent in service.list_agents()]

    @router.post("/threads/{thread_id}/tools/{tool_name}", response_model=ToolExecutionResult)
    async def execute_tool(
        thread_id: str,
        tool_name: str,
        body: ExecuteToolRequest,
        user_id: str = Depends(get_current_user_id),
    ):
        return await service.execute_tool(thread_id, tool_name, body.parameters, user_id=user_id)

    return router
