from agentic_ai.adapters.fastapi_adapter import (
    FastAPIAdapter,
    FastAPIAdapterServices,
    create_adapter_from_env,
    create_fastapi_adapter,
)

__all__ = [
    "FastAPIAdapter",
    "FastAPIAdapterServices",
    "create_adapter_from_env",
    "create_fastapi_adapter",
]
