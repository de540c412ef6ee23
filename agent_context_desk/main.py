"""ASGI entry point: ``uvicorn agent_context_desk.main:app`` or ``python -m agent_context_desk.main``."""

import uvicorn

from .api import app
from .config import get_settings

__all__ = ["app", "run"]


def run() -> None:
    settings = get_settings()
    # uvicorn ignores workers when reload is on
    uvicorn.run(
        "agent_context_desk.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=None if settings.debug else settings.api_workers,
        log_config=None,
    )


if __name__ == "__main__":
    run()
