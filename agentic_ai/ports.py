"""
Dependency Ports — the seam between the orchestration core and its host.

The core never talks to a database engine, LLM vendor SDK, billing system or
web framework directly. A host hands in one object satisfying
``AgenticAIDependencies``; tests hand in fakes.

Only ``logger`` and ``estimate_workflow_cost`` may be missing. Every other
port must exist; a host without e.g. billing provides a safe no-op (see
``agentic_ai.adapters.fastapi_adapter``).
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentic_ai.schemas import AuditEvent, RAGOptions, RAGResult, User, WorkflowResult
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger


@runtime_checkable
class Logger(Protocol):
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


class AuthPort(Protocol):
    async def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    async def check_permission(self, user_id: str, action: str) -> bool: ...


class CreditsPort(Protocol):
    async def charge_credits(self, user_id: str, amount: float, reason: str) -> None: ...

    async def get_credits_balance(self, user_id: str) -> float: ...


class RAGPort(Protocol):
    async def rag_search(self, query: str, options: RAGOptions) -> List[RAGResult]: ...

    async def embed(self, text: str) -> List[float]: ...


class WorkflowPort(Protocol):
    async def execute_workflow(self, flow_id: str, input: Dict[str, Any]) -> WorkflowResult: ...

    async def validate_workflow(self, flow_id: str) -> bool: ...

    # Optional: ``async def estimate_workflow_cost(self, flow_id: str) -> float``


class AuditPort(Protocol):
    async def log_audit_event(self, event: AuditEvent) -> None: ...


class LLMClient(Protocol):
    """Anything shaped like ``openai.AsyncOpenAI``: ``await client.chat.completions.create(**params)``."""

    chat: Any


class AgenticAIDependencies(AuthPort, CreditsPort, RAGPort, WorkflowPort, AuditPort, Protocol):
    """Aggregate of every capability the core requires from its host."""

    db: async_sessionmaker[AsyncSession]
    llm_client: LLMClient


def resolve_logger(deps: Any, subsystem: Subsystem = Subsystem.AGENT) -> Logger:
    """Return the host logger, or the subsystem logger when none was injected."""
    logger = getattr(deps, "logger", None)
    if logger is None:
        return get_subsystem_logger(subsystem)
    return logger


def has_cost_estimator(deps: Any) -> bool:
    return callable(getattr(deps, "estimate_workflow_cost", None))


async def audit_safely(
    deps: Any,
    user_id: str,
    action: str,
    resource: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Send an audit event; a failing sink is logged and never raised."""
    try:
        await deps.log_audit_event(AuditEvent(
            user_id=user_id,
            action=action,
            resource=resource,
            metadata=metadata,
        ))
    except Exception as e:
        resolve_logger(deps).warning(f"[AUDIT] Failed to record {action} on {resource}: {e}")
