"""Session-routed SSE transport for MCP.

Each ``GET /mcp/sse`` connection becomes an ``SseSession`` with its own
MCP SDK server and outbound queue. Messages posted to
``/mcp/messages?sessionId=...`` are looked up in the ``SessionRegistry`` and
handled by that session; responses go out on the session's stream, never on
the POST response.

Connection lifecycle: Accepted -> Registered -> Streaming -> Closed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

from src.mcp.protocol import McpProtocolServer


logger = logging.getLogger(__name__)

MESSAGES_PATH = "/mcp/messages"


class SessionState(str, Enum):
    ACCEPTED = "accepted"
    REGISTERED = "registered"
    STREAMING = "streaming"
    CLOSED = "closed"


def format_sse(data: Any, *, event: str | None = None) -> str:
    """Encode one server-sent event. Non-string data is JSON encoded."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in payload.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


def new_session_id() -> str:
    return uuid.uuid4().hex


class SseSession:
    """One open SSE connection and its bound protocol server."""

    def __init__(self, session_id: str, server: McpProtocolServer):
        self.session_id = session_id
        self.server = server
        self.state = SessionState.ACCEPTED
        self.created_at = time.time()
        self.last_activity = self.created_at
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        # Serializes message handling so responses keep delivery order
        self._handle_lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def alive(self) -> bool:
        return self.state is not SessionState.CLOSED

    @property
    def endpoint(self) -> str:
        return f"{MESSAGES_PATH}?sessionId={self.session_id}"

    def start(self) -> None:
        """Start the protocol server; its output goes onto this session's stream.

        The session closes when the protocol server stops on its own.
        """
        self.server.start(self.send, on_stopped=self.close)

    async def handle(self, message: Any) -> None:
        """Hand one inbound message to the protocol server.

        Returns once the response (if any) is queued on the stream.
        """
        async with self._handle_lock:
            self.last_activity = time.time()
            await self.server.handle_message(message)

    def send(self, payload: Any, *, event: str = "message") -> None:
        if not self.alive:
            logger.debug("[MCP_SSE] Dropping message for closed session %s", self.session_id)
            return
        self._queue.put_nowait(format_sse(payload, event=event))

    async def stream(
        self,
        *,
        keepalive: float = 15.0,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield SSE chunks until the session is closed or the client goes away.

        The first event carries the session handle, the second the message
        endpoint for clients that follow the MCP SSE convention.
        """
        self.state = SessionState.STREAMING
        yield format_sse({"sessionId": self.session_id})
        yield format_sse(self.endpoint, event="endpoint")

        while self.alive:
            try:
                chunk = await asyncio.wait_for(self._queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("[MCP_SSE] Client went away: %s", self.session_id)
                    break
                yield ": keepalive\n\n"
                continue
            if chunk is None:
                break
            yield chunk

    def close(self) -> None:
        """Mark closed, wake the stream and release the protocol server.

        Synchronous so it can run from a cancelled stream's cleanup.
        """
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._queue.put_nowait(None)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._release())

    async def _release(self) -> None:
        try:
            await self.server.close()
        except Exception as e:
            logger.warning("[MCP_SSE] Failed to release session %s: %s", self.session_id, e)


class SessionRegistry:
    """Maps session handles to live SSE sessions.

    Insert happens once at register and removal once at close; both run
    under a lock so a concurrent lookup never sees a half-updated mapping.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SseSession] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def register(self, session: SseSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session already registered: {session.session_id}")
            self._sessions[session.session_id] = session
        session.state = SessionState.REGISTERED
        logger.info(
            "[MCP_SSE] Session registered: %s (active=%d)",
            session.session_id,
            len(self),
            extra={"session_id": session.session_id},
        )

    def get(self, session_id: str) -> SseSession | None:
        """Return the live session for a handle; closed sessions count as unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or not session.alive:
            return None
        return session

    def unregister(self, session_id: str) -> SseSession | None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
            logger.info(
                "[MCP_SSE] Session closed: %s (active=%d)",
                session_id,
                len(self),
                extra={"session_id": session_id},
            )
        return session

    def sweep(self) -> int:
        """Drop entries whose session is no longer alive. Returns how many were removed."""
        with self._lock:
            dead = [sid for sid, session in self._sessions.items() if not session.alive]
            for sid in dead:
                del self._sessions[sid]
        if dead:
            logger.warning("[MCP_SSE] Swept %d stale sessions", len(dead))
        return len(dead)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    async def start_sweeper(self, interval: float) -> None:
        """Start the periodic stale-session sweep (no-op when interval <= 0)."""
        if interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        logger.info("[MCP_SSE] Registry sweeper started (interval: %ss)", interval)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("[MCP_SSE] Registry sweeper stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("[MCP_SSE] Sweep error: %s", e)
