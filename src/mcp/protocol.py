"""Per-session MCP protocol server.

Wraps the MCP SDK's low-level ``Server`` so one instance runs per SSE
connection. The SDK owns JSON-RPC decoding, the initialize handshake, ping
and error codes; this module registers the tool handlers and pumps
messages between the SDK's memory streams and the session's event queue.

Only the read-only tool registry is shared between instances.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import anyio
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from src.mcp.dispatcher import ToolDispatcher
from src.mcp.tools import list_tools


logger = logging.getLogger(__name__)

# Inbound/outbound memory stream capacity per session
STREAM_BUFFER = 32


class InvalidMessageError(ValueError):
    """Decoded JSON that is not a JSON-RPC 2.0 message."""


class ToolCallFailed(Exception):
    """Carries an ``isError`` tool result through the SDK's call_tool handler."""


def jsonrpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Error envelope for failures the SDK server never sees (e.g. unparseable bodies)."""
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def build_server(dispatcher: ToolDispatcher, *, name: str, version: str) -> Server:
    """Create an SDK server whose tools come from the registry and run through ``dispatcher``."""
    server = Server(name, version=version)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return [types.Tool.model_validate(tool) for tool in list_tools()]

    # Argument checks live in the dispatcher so both surfaces report the same errors
    @server.call_tool(validate_input=False)
    async def handle_call_tool(name: str, arguments: dict[str, Any] | None) -> list[types.TextContent]:
        result = await dispatcher.execute(name, arguments or {})
        if result.is_error:
            raise ToolCallFailed(result.first_text)
        return [types.TextContent(type="text", text=block["text"]) for block in result.content]

    return server


class McpProtocolServer:
    """SDK server bound to a single session."""

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        *,
        name: str = "creatio-connect",
        version: str = "1.0.0",
        session_id: str | None = None,
    ):
        self.dispatcher = dispatcher
        self.session_id = session_id
        self.server = build_server(dispatcher, name=name, version=version)
        self.closed = False
        self._stopped = False
        self._inbound: Any = None
        self._tasks: list[asyncio.Task[None]] = []
        self._pending: dict[types.RequestId, asyncio.Future[None]] = {}

    @property
    def running(self) -> bool:
        return self._inbound is not None and not self._stopped

    def start(
        self,
        emit: Callable[[dict[str, Any]], None],
        on_stopped: Callable[[], None] | None = None,
    ) -> None:
        """Run the SDK server in the background.

        ``emit`` receives every outbound message as a JSON-ready dict;
        ``on_stopped`` fires once the server has finished for any reason.
        """
        if self._inbound is not None:
            raise RuntimeError(f"Protocol server already started (session={self.session_id})")

        inbound_send, inbound_recv = anyio.create_memory_object_stream(STREAM_BUFFER)
        outbound_send, outbound_recv = anyio.create_memory_object_stream(STREAM_BUFFER)
        self._inbound = inbound_send
        self._tasks = [
            asyncio.create_task(self._serve(inbound_recv, outbound_send)),
            asyncio.create_task(self._forward(outbound_recv, emit, on_stopped)),
        ]

    async def handle_message(self, raw: Any) -> None:
        """Feed one decoded message to the SDK server.

        A request returns only after its response has been emitted, so a
        caller that serializes calls also serializes responses.

        Raises:
            InvalidMessageError: ``raw`` is not a JSON-RPC message.
            RuntimeError: the server is not running.
        """
        try:
            message = types.JSONRPCMessage.model_validate(raw)
        except ValidationError as e:
            raise InvalidMessageError(f"Invalid JSON-RPC message: {e.errors()[0]['msg']}") from e

        if not self.running:
            raise RuntimeError(f"Protocol server not running (session={self.session_id})")

        request = message.root if isinstance(message.root, types.JSONRPCRequest) else None
        waiter: asyncio.Future[None] | None = None
        if request is not None:
            waiter = asyncio.get_running_loop().create_future()
            self._pending[request.id] = waiter
        try:
            await self._inbound.send(SessionMessage(message))
            if waiter is not None:
                await waiter
        finally:
            if request is not None:
                self._pending.pop(request.id, None)

    async def _serve(self, inbound, outbound) -> None:
        try:
            await self.server.run(inbound, outbound, self.server.create_initialization_options())
        except Exception as e:
            logger.error("[MCP_SSE] Protocol server failed (session=%s): %s", self.session_id, e)
        finally:
            outbound.close()

    async def _forward(self, outbound, emit, on_stopped) -> None:
        try:
            async with outbound:
                async for session_message in outbound:
                    root = session_message.message.root
                    emit(session_message.message.model_dump(by_alias=True, mode="json", exclude_none=True))
                    if isinstance(root, types.JSONRPCResponse | types.JSONRPCError):
                        waiter = self._pending.get(root.id)
                        if waiter is not None and not waiter.done():
                            waiter.set_result(None)
        finally:
            self._stopped = True
            for waiter in self._pending.values():
                if not waiter.done():
                    waiter.set_exception(RuntimeError("Protocol server stopped"))
            if on_stopped is not None:
                on_stopped()

    async def close(self) -> None:
        """Stop the SDK server and release the session's Creatio client."""
        if self.closed:
            return
        self.closed = True
        self._stopped = True
        if self._inbound is not None:
            self._inbound.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.dispatcher.context.aclose()
