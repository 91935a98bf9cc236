"""FastAPI dependency injection module.

Lazy-initialized, process-wide dependencies: settings, the MCP session
registry, the dashboard context store and the Creatio client factory. Tests
swap any of them through ``app.dependency_overrides`` or reset them with
``reset_dependencies``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Request

from src.conf.config import Settings, get_settings
from src.integrations.crm.creatio import create_creatio_client
from src.mcp import new_client_context
from src.mcp.dispatcher import ClientContext, ClientFactory
from src.mcp.transport import SessionRegistry


logger = logging.getLogger(__name__)

DASHBOARD_COOKIE = "creatio_session"


class DashboardContexts:
    """Client contexts of dashboard browser sessions, keyed by cookie value.

    A browser gets its own context only after a successful connection test.
    Until then it shares one context seeded from the default connection,
    when one is configured. Idle contexts are swept after a TTL.
    """

    def __init__(self) -> None:
        self._contexts: dict[str, ClientContext] = {}
        self._last_used: dict[str, float] = {}
        self._shared: ClientContext | None = None
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._contexts)

    @staticmethod
    def new_key() -> str:
        return uuid.uuid4().hex

    def get(self, key: str | None, now: float | None = None) -> ClientContext | None:
        if not key:
            return None
        with self._lock:
            context = self._contexts.get(key)
            if context is not None:
                self._last_used[key] = time.time() if now is None else now
            return context

    def add(self, key: str, context: ClientContext, now: float | None = None) -> None:
        with self._lock:
            self._contexts[key] = context
            self._last_used[key] = time.time() if now is None else now

    def shared(self, factory: Callable[[], ClientContext]) -> ClientContext:
        """Return the shared default-connection context, creating it on first use."""
        with self._lock:
            if self._shared is None:
                self._shared = factory()
            return self._shared

    async def remove(self, key: str | None) -> bool:
        if not key:
            return False
        with self._lock:
            context = self._contexts.pop(key, None)
            self._last_used.pop(key, None)
        if context is None:
            return False
        await context.aclose()
        return True

    async def sweep(self, max_idle_seconds: float, now: float | None = None) -> int:
        """Drop and close contexts idle longer than ``max_idle_seconds``."""
        now = time.time() if now is None else now
        with self._lock:
            idle = [k for k, used in self._last_used.items() if now - used > max_idle_seconds]
            contexts = [self._contexts.pop(k) for k in idle]
            for key in idle:
                del self._last_used[key]
        for context in contexts:
            await context.aclose()
        if idle:
            logger.info("[DASHBOARD] Swept %d idle browser sessions", len(idle))
        return len(idle)

    async def close_all(self) -> None:
        with self._lock:
            contexts = list(self._contexts.values())
            if self._shared is not None:
                contexts.append(self._shared)
            self._contexts.clear()
            self._last_used.clear()
            self._shared = None
        for context in contexts:
            await context.aclose()

    def any_connected(self) -> bool:
        with self._lock:
            contexts = list(self._contexts.values())
            if self._shared is not None:
                contexts.append(self._shared)
        return any(c.connected for c in contexts)

    async def start_sweeper(self, interval: float, max_idle_seconds: float) -> None:
        """Start the periodic idle-context sweep (no-op when interval <= 0)."""
        if interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval, max_idle_seconds))
        logger.info("[DASHBOARD] Context sweeper started (interval: %ss, ttl: %ss)", interval, max_idle_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self, interval: float, max_idle_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep(max_idle_seconds)
            except Exception as e:
                logger.error("[DASHBOARD] Sweep error: %s", e)


@lru_cache(maxsize=1)
def get_session_registry() -> SessionRegistry:
    """Get or create the MCP session registry."""
    return SessionRegistry()


@lru_cache(maxsize=1)
def get_dashboard_contexts() -> DashboardContexts:
    """Get or create the dashboard context store."""
    return DashboardContexts()


def get_client_factory() -> ClientFactory:
    """Factory used to build Creatio clients for connection tests."""
    return create_creatio_client


# Type aliases for endpoint injection
SettingsDep = Annotated[Settings, Depends(get_settings)]
SessionRegistryDep = Annotated[SessionRegistry, Depends(get_session_registry)]
DashboardContextsDep = Annotated[DashboardContexts, Depends(get_dashboard_contexts)]
ClientFactoryDep = Annotated[ClientFactory, Depends(get_client_factory)]


def reset_dependencies() -> None:
    """Reset all cached dependencies (useful for testing)."""
    get_session_registry.cache_clear()
    get_dashboard_contexts.cache_clear()


def get_caller_context(
    request: Request,
    contexts: DashboardContextsDep,
    settings: SettingsDep,
    client_factory: ClientFactoryDep,
) -> ClientContext | None:
    """The caller's own context, else the shared default-connection context.

    None when the browser has no context and no default connection is configured.
    """
    context = contexts.get(request.cookies.get(DASHBOARD_COOKIE))
    if context is None and settings.default_connection_configured:
        context = contexts.shared(lambda: new_client_context(settings, client_factory))
    return context


CallerContextDep = Annotated[ClientContext | None, Depends(get_caller_context)]
