"""
Structured Logging — Per-subsystem structured logging with JSON output.

Provides contextual logging with subsystem tags, request correlation IDs,
and an optional JSON formatter. The orchestration core falls back to these
loggers when the host does not inject one.
"""

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any, Dict, Iterator

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")
thread_id_var: ContextVar[str] = ContextVar("thread_id", default="")


class Subsystem(str, Enum):
    AGENT = "agent"
    ORCHESTRATOR = "orchestrator"
    THREAD = "thread"
    MEMORY = "memory"
    APPROVAL = "approval"
    TOOL = "tool"
    LLM = "llm"
    API = "api"
    SCHEDULER = "scheduler"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", "general"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        usr_id = user_id_var.get("")
        if usr_id:
            log_entry["user_id"] = usr_id
        thr_id = thread_id_var.get("")
        if thr_id:
            log_entry["thread_id"] = thr_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class SubsystemLogger:
    """Logger wrapper that adds subsystem context."""

    def __init__(self, subsystem: Subsystem, logger: logging.Logger):
        self._subsystem = subsystem
        self._logger = logger

    def _log(self, level: int, msg: str, extra_data: Any = None, **kwargs):
        extra = {"subsystem": self._subsystem.value}
        if extra_data:
            extra["extra_data"] = extra_data
        self._logger.log(level, msg, extra=extra, **kwargs)

    def debug(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.DEBUG, msg, data, **kwargs)

    def info(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.INFO, msg, data, **kwargs)

    def warning(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.WARNING, msg, data, **kwargs)

    def error(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.ERROR, msg, data, **kwargs)


# ── Logger Registry ──
_loggers: Dict[str, SubsystemLogger] = {}
_structured_enabled = False


def get_subsystem_logger(subsystem: Subsystem) -> SubsystemLogger:
    """Get a structured logger for a subsystem."""
    key = subsystem.value
    if key not in _loggers:
        logger = logging.getLogger(f"agentic_ai.{key}")
        _loggers[key] = SubsystemLogger(subsystem, logger)
    return _loggers[key]


def enable_structured_logging(level: int = logging.INFO):
    """Enable JSON structured logging for the ``agentic_ai`` logger tree."""
    global _structured_enabled
    root = logging.getLogger("agentic_ai")
    root.setLevel(level)
    if _structured_enabled:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    _structured_enabled = True


def configure_logging(settings: Any) -> None:
    """Apply ``settings.log_level``, plus JSON output when ``settings.structured_logging`` is set."""
    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.structured_logging:
        enable_structured_logging(level)
    else:
        logging.getLogger("agentic_ai").setLevel(level)


@contextmanager
def request_context(request_id: str = "", user_id: str = "", thread_id: str = "") -> Iterator[None]:
    """
    Correlation ids for the duration of a block.

    Ids not given are cleared rather than inherited. The previous values are
    restored by value on exit, so the block may end in a different context.
    """
    previous = (request_id_var.get(), user_id_var.get(), thread_id_var.get())
    request_id_var.set(request_id)
    user_id_var.set(user_id)
    thread_id_var.set(thread_id)
    try:
        yield
    finally:
        request_id_var.set(previous[0])
        user_id_var.set(previous[1])
        thread_id_var.set(previous[2])


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:12]
