"""Routers package for the Creatio connector server."""

from src.server.routers.creatio import router as creatio_router
from src.server.routers.health import router as health_router
from src.server.routers.mcp import router as mcp_router

__all__ = [
    "creatio_router",
    "health_router",
    "mcp_router",
]
