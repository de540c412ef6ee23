"""Tests for structured logging configuration."""

import logging

import pytest
import structlog

from agent_context_desk.core.logging import (
    HANDLER_NAME,
    ServiceContext,
    bind_request_id,
    clear_request_id,
    configure_logging,
)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def desk_handlers(root):
    return [h for h in root.handlers if h.get_name() == HANDLER_NAME]


class TestServiceContext:
    def test_stamps_service_and_environment(self):
        event = ServiceContext("agent-context-desk", "staging")(None, "info", {"event": "x"})

        assert event == {"event": "x", "service": "agent-context-desk", "environment": "staging"}

    def test_keeps_explicit_values(self):
        event = ServiceContext("agent-context-desk", None)(None, "info", {"service": "worker"})

        assert event == {"service": "worker"}


class TestConfigureLogging:
    def test_reconfiguring_never_stacks_handlers(self, restore_logging):
        configure_logging(level="DEBUG", json_output=True)
        configure_logging(level="WARNING", json_output=False)

        assert len(desk_handlers(restore_logging)) == 1
        assert restore_logging.level == logging.WARNING

    def test_json_lines_carry_context(self, restore_logging):
        configure_logging(level="INFO", json_output=True, environment="test")
        handler = desk_handlers(restore_logging)[0]

        bind_request_id("req-7")
        try:
            record = logging.LogRecord("desk", logging.INFO, __file__, 1, "hello", None, None)
            line = handler.format(record)
        finally:
            clear_request_id()

        assert '"service": "agent-context-desk"' in line
        assert '"environment": "test"' in line
        assert '"request_id": "req-7"' in line

    def test_unknown_level_falls_back_to_info(self, restore_logging):
        configure_logging(level="chatty")

        assert restore_logging.level == logging.INFO
