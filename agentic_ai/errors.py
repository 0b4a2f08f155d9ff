"""
Error taxonomy for the orchestration core.

Every error carries a stable ``code`` and an HTTP-ish ``status_code`` so a
host can map failures to its transport without inspecting messages.

Hierarchy:
    AgenticAIError (base)
    ├── NotFoundError               - thread / approval / tool does not exist
    ├── ForbiddenError              - ownership or permission check failed
    ├── InvalidStateError           - transition not allowed in current state
    │   ├── AlreadyReviewedError    - approval already left ``pending``
    │   └── ConcurrentModificationError - thread version changed under us
    ├── InsufficientCreditsError    - billing port refused the charge
    ├── ProviderError               - LLM / RAG / workflow / billing port failed
    └── NotInitializedError         - service used before ``initialize()``
"""

from typing import Any, Dict, Optional


class AgenticAIError(Exception):
    """Base class for all orchestration core errors."""

    code: str = "agentic_ai_error"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(AgenticAIError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity_type: str, entity_id: str, message: Optional[str] = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity_type} '{entity_id}' not found",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )


class ForbiddenError(AgenticAIError):
    code = "forbidden"
    status_code = 403


class InvalidStateError(AgenticAIError):
    code = "invalid_state"
    status_code = 409


class AlreadyReviewedError(InvalidStateError):
    code = "already_reviewed"

    def __init__(self, approval_id: str, status: str) -> None:
        self.approval_id = approval_id
        self.status = status
        super().__init__(
            f"Approval '{approval_id}' was already reviewed (status={status})",
            details={"approval_id": approval_id, "status": status},
        )


class ConcurrentModificationError(InvalidStateError):
    code = "concurrent_modification"


class InsufficientCreditsError(AgenticAIError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, required: float, available: Optional[float] = None, message: Optional[str] = None) -> None:
        self.required = required
        self.available = available
        super().__init__(
            message or f"Insufficient credits: {required} required, {available} available",
            details={"required": required, "available": available},
        )


class ProviderError(AgenticAIError):
    code = "provider_error"
    status_code = 502

    def __init__(self, provider: str, message: str, original_error: Optional[BaseException] = None) -> None:
        self.provider = provider
        self.original_error = original_error
        details: Dict[str, Any] = {"provider": provider}
        if original_error is not None:
            details["cause"] = f"{type(original_error).__name__}: {original_error}"
        super().__init__(message, details=details)


class NotInitializedError(AgenticAIError):
    code = "not_initialized"
    status_code = 503
