from agentic_ai.api.routes import create_router, install_exception_handlers, agentic_error_handler

__all__ = [
    "create_router",
    "install_exception_handlers",
    "agentic_error_handler",
]
