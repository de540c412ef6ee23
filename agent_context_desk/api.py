"""
FastAPI application for Agent Context Desk.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bundles.errors import BundleError
from .bundles.primitives import generate_ulid
from .bundles.routes import bundle_error_handler
from .bundles.routes import router as bundles_router
from .config import get_settings
from .core.logging import REQUEST_ID_HEADER, bind_request_id, clear_request_id, configure_logging
from .db.base import init_database

logger = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_format == "json",
        environment=settings.environment,
    )
    logger.info("app_starting", app=settings.app_name)

    try:
        await init_database()
    except Exception:
        logger.exception("app_start_failed")
        raise

    yield

    logger.info("app_stopped")


app = FastAPI(
    title="Agent Context Desk",
    description="Versioned, checksummed context bundles for supervised AI agents",
    version=importlib.metadata.version("agent-context-desk"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Tag every log event of a request with its request id and echo the id back."""
    request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip()[:128] or generate_ulid()
    bind_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_id()
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(bundles_router)
app.add_exception_handler(BundleError, bundle_error_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "INVALID_REQUEST",
                "message": "Request failed validation",
                # Offending input is not echoed back
                "details": {
                    "errors": jsonable_encoder(
                        [
                            {"loc": error["loc"], "msg": error["msg"], "type": error["type"]}
                            for error in exc.errors()
                        ]
                    )
                },
            },
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
        },
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("agent-context-desk")}
