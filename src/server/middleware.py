"""FastAPI middleware for rate limiting and request logging.

Rate limiting is in-memory and per client IP. The MCP transport and health
paths are excluded: an SSE stream is one long request and message posts
belong to an already admitted session.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import FastAPI, Request, Response
    from starlette.types import ASGIApp


logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    requests_per_minute: int = 120
    enabled: bool = True

    # Exact paths excluded from rate limiting
    excluded_paths: list[str] = field(
        default_factory=lambda: ["/health", "/api/health", "/docs", "/openapi.json"]
    )
    # Path prefixes excluded from rate limiting
    excluded_prefixes: list[str] = field(default_factory=lambda: ["/mcp/"])

    def is_excluded(self, path: str) -> bool:
        return path in self.excluded_paths or any(path.startswith(p) for p in self.excluded_prefixes)


@dataclass
class ClientState:
    """Track request state for a single client."""

    minute_requests: int = 0
    minute_start: float = 0.0
    last_request: float = 0.0


def client_key(request: Request) -> str:
    """Extract client identifier from request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


class InMemoryRateLimiter:
    """Fixed one-minute window limiter keyed by client IP."""

    def __init__(self, config: RateLimitConfig):
        self.config = config
        self._clients: dict[str, ClientState] = defaultdict(ClientState)

    def check(self, key: str, path: str, now: float | None = None) -> tuple[bool, int | None]:
        """Count one request.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        if not self.config.enabled or self.config.is_excluded(path):
            return True, None

        now = time.time() if now is None else now
        state = self._clients[key]
        if now - state.minute_start >= 60:
            state.minute_requests = 0
            state.minute_start = now

        if state.minute_requests >= self.config.requests_per_minute:
            retry_after = int(60 - (now - state.minute_start)) + 1
            logger.warning(
                "Rate limit exceeded for %s: %d requests/minute", key, state.minute_requests
            )
            return False, retry_after

        state.minute_requests += 1
        state.last_request = now
        return True, None

    def cleanup_old_clients(self, max_age_seconds: float = 3600, now: float | None = None) -> int:
        """Remove stale client entries to prevent memory leaks."""
        now = time.time() if now is None else now
        stale = [k for k, s in self._clients.items() if now - s.last_request > max_age_seconds]
        for key in stale:
            del self._clients[key]
        if stale:
            logger.debug("Cleaned up %d stale rate limit entries", len(stale))
        return len(stale)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the in-memory rate limiter to incoming requests."""

    def __init__(self, app: ASGIApp, config: RateLimitConfig | None = None):
        super().__init__(app)
        self.config = config or RateLimitConfig()
        self.limiter = InMemoryRateLimiter(self.config)
        self._last_cleanup = time.time()
        self._cleanup_interval = 3600

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        now = time.time()
        if now - self._last_cleanup > self._cleanup_interval:
            self.limiter.cleanup_old_clients()
            self._last_cleanup = now

        allowed, retry_after = self.limiter.check(client_key(request), request.url.path, now)
        if not allowed:
            response = JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": "Rate limit exceeded. Please slow down.",
                    "retry_after": retry_after,
                },
            )
            if retry_after:
                response.headers["Retry-After"] = str(retry_after)
            return response

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging incoming requests and responses.

    The SSE stream is logged when its response starts, not when it ends.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"

        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            "%s %s %d %.2fms client=%s",
            method,
            path,
            response.status_code,
            duration_ms,
            client_ip,
            extra={"status_code": response.status_code, "duration_ms": round(duration_ms, 2)},
        )
        return response


def setup_middleware(
    app: FastAPI,
    *,
    enable_rate_limit: bool = True,
    enable_logging: bool = True,
    requests_per_minute: int = 120,
) -> None:
    """Configure all middleware for the FastAPI application."""
    if enable_logging:
        app.add_middleware(RequestLoggingMiddleware)

    if enable_rate_limit:
        app.add_middleware(
            RateLimitMiddleware,
            config=RateLimitConfig(requests_per_minute=requests_per_minute),
        )
        logger.info("Rate limiting enabled (in-memory, %d/min)", requests_per_minute)
