"""Agentic AI orchestration core: threads, memory, approvals and multi-agent delegation."""

from agentic_ai.errors import (
    AgenticAIError,
    AlreadyReviewedError,
    ConcurrentModificationError,
    ForbiddenError,
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    NotInitializedError,
    ProviderError,
)
from agentic_ai.ports import AgenticAIDependencies
from agentic_ai.service import AgenticAIService, create_agentic_ai_service

__version__ = "0.1.0"

__all__ = [
    "AgenticAIService",
    "create_agentic_ai_service",
    "AgenticAIDependencies",
    # Errors
    "AgenticAIError",
    "AlreadyReviewedError",
    "ConcurrentModificationError",
    "ForbiddenError",
    "InsufficientCreditsError",
    "InvalidStateError",
    "NotFoundError",
    "NotInitializedError",
    "ProviderError",
]
