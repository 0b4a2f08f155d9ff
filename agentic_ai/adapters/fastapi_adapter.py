"""
FastAPI adapter — builds the dependency bundle from a host's services.

    deps = create_fastapi_adapter(app, FastAPIAdapterServices(
        agent_service=agent_service,
        context_service=context_service,
        credits_service=credits_service,
        llm_client=AsyncOpenAI(),
    ))
    service = await create_agentic_ai_service(deps)

Optional host services degrade to safe no-ops:
  - no credits service  → charges are skipped (logged), balance is unlimited
  - no workflow service → execute raises ProviderError, validate is False
  - no audit service    → events go to the debug log
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.db.database import create_engine_for_url, create_session_maker
from agentic_ai.errors import ProviderError
from agentic_ai.schemas import AuditEvent, RAGOptions, RAGResult, User, WorkflowResult
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger


@dataclass
class FastAPIAdapterServices:
    """Host services the adapter delegates to. Only the first two are required."""
    agent_service: Any    # get_user_by_id(user_id), check_permission(user_id, action)
    context_service: Any  # search_context(query, options), optional embed(text)
    credits_service: Any = None   # charge_credits(user_id, amount, reason), get_balance(user_id)
    workflow_service: Any = None  # execute_workflow(flow_id, input), validate_workflow(flow_id)
    audit_service: Any = None     # log_event(event)
    llm_client: Any = None
    logger: Any = None


def _resolve_session_maker(host: Any) -> async_sessionmaker:
    """Accept a session maker, a FastAPI app, or an ``app.state``."""
    if isinstance(host, async_sessionmaker):
        return host
    state = getattr(host, "state", host)
    session_maker = getattr(state, "session_maker", None)
    if session_maker is None:
        raise ValueError("Host exposes no 'session_maker'; pass an async_sessionmaker instead")
    return session_maker


class FastAPIAdapter:
    """``AgenticAIDependencies`` implemented over a FastAPI host's services."""

    def __init__(
        self,
        db: async_sessionmaker[AsyncSession],
        services: FastAPIAdapterServices,
        settings: Optional[Settings] = None,
    ):
        if services.llm_client is None:
            raise ValueError("llm_client is required")
        self.db = db
        self.services = services
        self.settings = settings or default_settings
        self.llm_client = services.llm_client
        self.logger = services.logger or get_subsystem_logger(Subsystem.API)

    # User & auth

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        user = await self.services.agent_service.get_user_by_id(user_id)
        if user is None or isinstance(user, User):
            return user
        if isinstance(user, dict):
            return User(**user)
        return User.model_validate(user, from_attributes=True)

    async def check_permission(self, user_id: str, action: str) -> bool:
        return bool(await self.services.agent_service.check_permission(user_id, action))

    # Credits

    async def charge_credits(self, user_id: str, amount: float, reason: str) -> None:
        if self.services.credits_service is None:
            self.logger.warning(
                f"[CREDITS] Credits service not available, skipping charge of {amount} "
                f"for user={user_id} ({reason})"
            )
            return
        await self.services.credits_service.charge_credits(user_id, amount, reason)

    async def get_credits_balance(self, user_id: str) -> float:
        if self.services.credits_service is None:
            self.logger.warning("[CREDITS] Credits service not available, returning unlimited balance")
            return math.inf
        return float(await self.services.credits_service.get_balance(user_id))

    # RAG

    async def rag_search(self, query: str, options: RAGOptions) -> List[RAGResult]:
        results = await self.services.context_service.search_context(query, options)
        return [r if isinstance(r, RAGResult) else RAGResult(**r) for r in results]

    async def embed(self, text: str) -> List[float]:
        embed = getattr(self.services.context_service, "embed", None)
        if callable(embed):
            return list(await embed(text))
        response = await self.llm_client.embeddings.create(model=self.settings.embedding_model, input=text)
        return list(response.data[0].embedding)

    # Workflow

    async def execute_workflow(self, flow_id: str, input: Dict[str, Any]) -> WorkflowResult:
        if self.services.workflow_service is None:
            raise ProviderError("workflow", "Workflow service not available")
        result = await self.services.workflow_service.execute_workflow(flow_id, input)
        return result if isinstance(result, WorkflowResult) else WorkflowResult(**result)

    async def validate_workflow(self, flow_id: str) -> bool:
        if self.services.workflow_service is None:
            return False
        return bool(await self.services.workflow_service.validate_workflow(flow_id))

    # Audit

    async def log_audit_event(self, event: AuditEvent) -> None:
        if self.services.audit_service is None:
            self.logger.debug(f"[AUDIT] {event.action} {event.resource} user={event.user_id}")
            return
        await self.services.audit_service.log_event(event)


def create_fastapi_adapter(
    host: Any,
    services: FastAPIAdapterServices,
    settings: Optional[Settings] = None,
) -> FastAPIAdapter:
    """Build the dependency bundle from a FastAPI app (or its session maker) and host services."""
    adapter = FastAPIAdapter(_resolve_session_maker(host), services, settings)

    # Workflow cost estimates are optional; expose the port only when the host has one
    estimator = getattr(services.workflow_service, "estimate_workflow_cost", None)
    if callable(estimator):
        adapter.estimate_workflow_cost = estimator
    return adapter


def create_adapter_from_env(
    services: FastAPIAdapterServices,
    settings: Optional[Settings] = None,
) -> FastAPIAdapter:
    """Like ``create_fastapi_adapter``, with the LLM client and database built from settings."""
    settings = settings or default_settings
    if services.llm_client is None:
        services.llm_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )
    engine = create_engine_for_url(settings.database_url, echo=settings.debug)
    return create_fastapi_adapter(create_session_maker(engine), services, settings)
