"""Request models for the Creatio connector server."""

from src.server.models.requests import (
    AccountQueryRequest,
    AccountWriteRequest,
    ConnectRequest,
    ExecuteToolRequest,
)

__all__ = [
    "AccountQueryRequest",
    "AccountWriteRequest",
    "ConnectRequest",
    "ExecuteToolRequest",
]
