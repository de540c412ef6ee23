"""
Structured logging for Agent Context Desk.

Call ``configure_logging()`` once at process startup. Every event then carries
the service name and environment, plus the ``request_id`` of the HTTP request
that produced it. Bundle code binds its identity on top::

    import structlog
    logger = structlog.get_logger()

    log = logger.bind(repo_full_name="org/repo", ticket_pk="t1", role="qa-agent")
    log.info("bundle_state", state="CHECKSUMMED", content_checksum="ab12...")
"""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, Optional

import structlog

SERVICE_NAME = "agent-context-desk"

# Name of the root handler this module installs; reconfiguring replaces its formatter
HANDLER_NAME = "agent_context_desk"

REQUEST_ID_HEADER = "X-Request-ID"

# Libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class ServiceContext:
    """Processor stamping ``service`` and ``environment`` on every event."""

    def __init__(self, service: str, environment: Optional[str]):
        self.service = service
        self.environment = environment

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", self.service)
        if self.environment:
            event_dict.setdefault("environment", self.environment)
        return event_dict


def _shared_processors(
    service: str, environment: Optional[str]
) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        ServiceContext(service, environment),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _desk_handler(root: logging.Logger) -> logging.Handler:
    for handler in root.handlers:
        if handler.get_name() == HANDLER_NAME:
            return handler
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    root.addHandler(handler)
    return handler


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = True,
    service: str = SERVICE_NAME,
    environment: Optional[str] = None,
) -> None:
    """Route structlog and stdlib logging through one processor pipeline.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Emit sorted-key JSON lines when True, console output otherwise.
        service: Value of the ``service`` field on every event.
        environment: Value of the ``environment`` field, omitted when None.

    Calling it again swaps the renderer and level in place.
    """
    shared = _shared_processors(service, environment)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    _desk_handler(root).setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
            foreign_pre_chain=shared,
        )
    )
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_id(request_id: str) -> None:
    """Attach ``request_id`` to every event logged in the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")
