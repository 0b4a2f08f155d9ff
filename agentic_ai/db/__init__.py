from agentic_ai.db.models import (
    Base, Thread, Message, Memory, Approval, Checkpoint,
)
from agentic_ai.db.database import (
    get_db, init_db, drop_db, async_session_maker, engine,
    create_engine_for_url, create_session_maker,
)

__all__ = [
    "Base",
    "Thread",
    "Message",
    "Memory",
    "Approval",
    "Checkpoint",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "create_engine_for_url",
    "create_session_maker",
]
