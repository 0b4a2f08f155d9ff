"""
Tests for subsystem loggers, JSON output and request correlation
"""

import json
import logging

import pytest

from agentic_ai import structured_logging
from agentic_ai.structured_logging import (
    StructuredFormatter,
    Subsystem,
    configure_logging,
    get_subsystem_logger,
    request_context,
    request_id_var,
    thread_id_var,
    user_id_var,
)

from tests.conftest import make_settings


@pytest.fixture
def package_logger():
    root = logging.getLogger("agentic_ai")
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestConfigureLogging:

    def test_level_from_settings(self, package_logger):
        configure_logging(make_settings(log_level="debug"))
        assert package_logger.level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, package_logger):
        configure_logging(make_settings(log_level="chatty"))
        assert package_logger.level == logging.INFO

    def test_structured_output_from_settings(self, package_logger, monkeypatch):
        monkeypatch.setattr(structured_logging, "_structured_enabled", False)
        before = list(package_logger.handlers)

        configure_logging(make_settings(structured_logging=True, log_level="WARNING"))

        added = [h for h in package_logger.handlers if h not in before]
        assert len(added) == 1
        assert isinstance(added[0].formatter, StructuredFormatter)
        assert package_logger.level == logging.WARNING

    @pytest.mark.asyncio
    async def test_service_initialize_applies_settings(self, package_logger, make_service):
        await make_service(log_level="ERROR")
        assert package_logger.level == logging.ERROR


class TestStructuredOutput:

    def test_subsystem_tag_on_records(self, caplog):
        caplog.set_level(logging.INFO, logger="agentic_ai.tool")
        get_subsystem_logger(Subsystem.TOOL).info("[TOOL] search_knowledge ok", {"results": 2})

        record = caplog.records[-1]
        assert record.name == "agentic_ai.tool"
        assert record.subsystem == "tool"
        assert record.extra_data == {"results": 2}

    def test_json_line_carries_request_ids(self):
        record = logging.LogRecord("agentic_ai.orchestrator", logging.INFO, __file__, 1, "[ORCH] done", None, None)
        record.subsystem = "orchestrator"

        with request_context(request_id="req-1", user_id="u1", thread_id="t-1"):
            entry = json.loads(StructuredFormatter().format(record))

        assert entry["subsystem"] == "orchestrator"
        assert entry["message"] == "[ORCH] done"
        assert (entry["request_id"], entry["user_id"], entry["thread_id"]) == ("req-1", "u1", "t-1")


class TestRequestContext:

    def test_nested_blocks_restore_outer_ids(self):
        with request_context(request_id="outer", user_id="u1", thread_id="t-1"):
            with request_context(request_id="inner", user_id="u2"):
                assert thread_id_var.get() == ""
                assert user_id_var.get() == "u2"
            assert (request_id_var.get(), user_id_var.get(), thread_id_var.get()) == ("outer", "u1", "t-1")

        assert request_id_var.get() == ""

    def test_ids_restored_after_error(self):
        with pytest.raises(RuntimeError):
            with request_context(request_id="req-2"):
                raise RuntimeError("boom")
        assert request_id_var.get() == ""
