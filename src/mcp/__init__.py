"""MCP server for Creatio: tool registry, dispatch, protocol and SSE transport."""

from __future__ import annotations

from src.conf.config import Settings, get_settings
from src.integrations.crm.creatio import create_creatio_client
from src.mcp.dispatcher import ClientContext, ClientFactory, ToolDispatcher, ToolResult
from src.mcp.protocol import InvalidMessageError, McpProtocolServer
from src.mcp.tools import TOOL_REGISTRY, get_tool, list_tools
from src.mcp.transport import SessionRegistry, SseSession, format_sse, new_session_id


def new_client_context(
    settings: Settings | None = None, client_factory: ClientFactory = create_creatio_client
) -> ClientContext:
    """Create a client context, seeded with the default connection when one is configured.

    The seeded client is not yet authenticated; its first call logs in lazily.
    """
    settings = settings or get_settings()
    default = settings.default_connection
    return ClientContext(client_factory(default) if default is not None else None)


def build_dispatcher(settings: Settings | None = None, **kwargs) -> ToolDispatcher:
    """Create a dispatcher with its own (possibly seeded) client context."""
    settings = settings or get_settings()
    factory = kwargs.pop("client_factory", create_creatio_client)
    return ToolDispatcher(
        new_client_context(settings, factory),
        client_factory=factory,
        default_top=settings.CREATIO_DEFAULT_TOP,
        default_orderby=settings.CREATIO_DEFAULT_ORDERBY,
        **kwargs,
    )


def create_session(settings: Settings | None = None, *, client_factory=None) -> SseSession:
    """Build a fresh SSE session with a protocol server bound to it.

    The caller starts it with ``SseSession.start`` once it is registered.
    """
    settings = settings or get_settings()
    session_id = new_session_id()
    kwargs = {"client_factory": client_factory} if client_factory is not None else {}
    server = McpProtocolServer(
        build_dispatcher(settings, **kwargs),
        name=settings.MCP_SERVER_NAME,
        version=settings.MCP_SERVER_VERSION,
        session_id=session_id,
    )
    return SseSession(session_id, server)


__all__ = [
    "TOOL_REGISTRY",
    "ClientContext",
    "InvalidMessageError",
    "McpProtocolServer",
    "SessionRegistry",
    "SseSession",
    "ToolDispatcher",
    "ToolResult",
    "build_dispatcher",
    "create_session",
    "format_sse",
    "get_tool",
    "list_tools",
    "new_client_context",
]
