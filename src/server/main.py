"""ASGI app exposing the Creatio MCP server and dashboard API.

This module is a thin orchestrator that:
1. Manages FastAPI app lifecycle (config validation, logging, registry sweeper)
2. Includes routers for all endpoints
3. Sets up middleware

Endpoint logic lives in src/server/routers/.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.conf.config import settings, validate_required_settings
from src.core.errors import ServiceError
from src.core.logging import setup_logging
from src.server.dependencies import get_dashboard_contexts, get_session_registry
from src.server.exceptions import APIError
from src.server.middleware import setup_middleware
from src.server.routers import creatio_router, health_router, mcp_router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        service_name=settings.MCP_SERVER_NAME,
    )

    try:
        validate_required_settings()
    except ServiceError as e:
        logger.critical("[VALIDATION] %s [%s]: %s", e.component, e.error_code, e.message)
        logger.critical(
            "[VALIDATION] Recommendations:\n%s",
            "\n".join(f"  - {r}" for r in e.recommendations),
        )
        raise

    if settings.default_connection_configured:
        logger.info("Default Creatio connection configured for %s", settings.CREATIO_BASE_URL)
    else:
        logger.info("No default Creatio connection; use test_creatio_connection to connect")

    registry = get_session_registry()
    await registry.start_sweeper(settings.MCP_SWEEP_INTERVAL_SECONDS)
    contexts = get_dashboard_contexts()
    await contexts.start_sweeper(
        settings.MCP_SWEEP_INTERVAL_SECONDS, settings.DASHBOARD_CONTEXT_TTL_SECONDS
    )

    logger.info("Starting %s %s", settings.MCP_SERVER_NAME, settings.MCP_SERVER_VERSION)
    logger.info("MCP SSE routes registered at /mcp/sse and /mcp/messages")

    yield

    logger.info("Shutting down %s", settings.MCP_SERVER_NAME)
    await registry.stop_sweeper()
    await contexts.stop_sweeper()
    registry.close_all()
    try:
        await contexts.close_all()
    except Exception as e:
        logger.warning("Failed to close dashboard clients: %s", e)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Creatio MCP Connect",
    description="MCP server and dashboard API for Creatio CRM accounts",
    version=settings.MCP_SERVER_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle custom API exceptions."""
    retry_after = getattr(exc, "retry_after", None)
    content = {"success": False, "error": exc.message}
    if exc.detail != exc.message:
        content["detail"] = exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"Retry-After": str(retry_after)} if retry_after else None,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report body validation failures as 400 in the dashboard error shape."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"{location}: {message}" if location else message},
    )


# Setup middleware (rate limiting, request logging)
setup_middleware(
    app,
    enable_rate_limit=settings.RATE_LIMIT_ENABLED,
    enable_logging=True,
    requests_per_minute=settings.RATE_LIMIT_PER_MINUTE,
)

# =============================================================================
# Include Routers
# =============================================================================

app.include_router(health_router)
app.include_router(mcp_router)
app.include_router(creatio_router)
