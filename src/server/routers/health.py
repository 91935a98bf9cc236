"""Health check router."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from src.server.dependencies import DashboardContextsDep, SessionRegistryDep, SettingsDep


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(registry: SessionRegistryDep) -> dict[str, Any]:
    """Liveness check."""
    return {"status": "ok", "activeSessions": registry.active_count}


@router.get("/api/health")
async def api_health(settings: SettingsDep, contexts: DashboardContextsDep) -> dict[str, Any]:
    """Dashboard status: whether any browser session holds a Creatio connection."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "creatioConnected": contexts.any_connected(),
        "version": settings.MCP_SERVER_VERSION,
    }
