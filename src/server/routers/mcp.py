"""MCP SSE transport router.

``GET /mcp/sse`` opens a session stream, ``POST /mcp/messages`` routes one
JSON-RPC message to the session named by ``sessionId``. Responses travel on
the stream; the POST only acknowledges receipt.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

import mcp.types as types
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from src.core.logging import safe_preview
from src.mcp import create_session
from src.mcp.protocol import InvalidMessageError, jsonrpc_error
from src.server.dependencies import ClientFactoryDep, SessionRegistryDep, SettingsDep


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mcp", tags=["mcp"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "X-Accel-Buffering": "no",
}


@router.get("/sse")
async def open_stream(
    request: Request,
    settings: SettingsDep,
    registry: SessionRegistryDep,
    client_factory: ClientFactoryDep,
) -> StreamingResponse:
    """Open a long-lived event stream bound to a fresh MCP session."""
    session = create_session(settings, client_factory=client_factory)
    registry.register(session)
    session.start()
    logger.info("[MCP_SSE] New connection established: %s", session.session_id)

    async def event_stream():
        try:
            async for chunk in session.stream(
                keepalive=settings.MCP_KEEPALIVE_SECONDS,
                is_disconnected=request.is_disconnected,
            ):
                yield chunk
        finally:
            # Must stay synchronous: the stream may be cancelled mid-await
            registry.unregister(session.session_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/messages")
async def post_message(
    request: Request,
    registry: SessionRegistryDep,
    sessionId: str | None = None,  # noqa: N803
) -> JSONResponse:
    """Deliver one protocol message to an open session."""
    if not sessionId:
        return JSONResponse(status_code=400, content={"error": "Session ID required"})

    session = registry.get(sessionId)
    if session is None:
        logger.info("[MCP_SSE] Message for unknown session: %s", sessionId)
        return JSONResponse(status_code=404, content={"error": "Session not found"})

    body = await request.body()
    try:
        message: Any = json.loads(body)
    except ValueError:
        logger.warning(
            "[MCP_SSE] Unparseable message for %s: %s", sessionId, safe_preview(body.decode("utf-8", "replace"))
        )
        session.send(jsonrpc_error(None, types.PARSE_ERROR, "Parse error"))
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    try:
        await session.handle(message)
    except InvalidMessageError as e:
        logger.warning("[MCP_SSE] %s (session=%s)", e, sessionId)
        request_id = message.get("id") if isinstance(message, dict) else None
        session.send(jsonrpc_error(request_id, types.INVALID_REQUEST, "Invalid Request"))
        return JSONResponse(status_code=400, content={"error": "Invalid JSON-RPC message"})
    except Exception as e:
        logger.exception(
            "[MCP_SSE] Error handling MCP message: %s", e, extra={"session_id": sessionId}
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return JSONResponse(status_code=202, content={"status": "accepted"})


@router.get("/health")
async def mcp_health(registry: SessionRegistryDep) -> dict[str, Any]:
    """Report the number of open MCP sessions."""
    return {
        "status": "healthy",
        "activeSessions": registry.active_count,
        "timestamp": datetime.now(UTC).isoformat(),
    }
