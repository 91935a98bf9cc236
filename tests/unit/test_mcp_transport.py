"""
Unit tests for the MCP protocol server, SSE session and session registry.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from mcp.types import INVALID_PARAMS, LATEST_PROTOCOL_VERSION, METHOD_NOT_FOUND

from src.mcp.dispatcher import ClientContext, ToolDispatcher
from src.mcp.protocol import InvalidMessageError, McpProtocolServer
from src.mcp.tools import list_tools
from src.mcp.transport import SessionRegistry, SessionState, SseSession, format_sse


def _server(client=None, session_id="s1") -> McpProtocolServer:
    return McpProtocolServer(ToolDispatcher(ClientContext(client)), session_id=session_id)


def _request(method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _initialize_params(protocol_version="2024-11-05"):
    return {
        "protocolVersion": protocol_version,
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "0"},
    }


def _event_data(chunk: str):
    data = "\n".join(line[len("data: "):] for line in chunk.splitlines() if line.startswith("data: "))
    return json.loads(data)


@pytest_asyncio.fixture
async def started_sessions():
    """Open, started sessions; closed again after the test."""
    sessions = []

    async def _open(client=None, session_id="s1"):
        session = SseSession(session_id, _server(client, session_id))
        session.start()
        sessions.append(session)
        stream = session.stream(keepalive=5)
        await anext(stream)
        await anext(stream)
        return session, stream

    yield _open
    for session in sessions:
        session.close()
        await session.server.close()


async def _call(session, stream, message):
    await session.handle(message)
    return _event_data(await anext(stream))


async def _handshake(session, stream):
    response = await _call(session, stream, _request("initialize", _initialize_params(), request_id=0))
    await session.handle({"jsonrpc": "2.0", "method": "notifications/initialized"})
    return response


# =============================================================================
# Protocol server
# =============================================================================


class TestProtocolServer:
    """Tests for MCP methods served through the SDK server."""

    @pytest.mark.asyncio
    async def test_initialize(self, started_sessions):
        session, stream = await started_sessions()

        response = await _handshake(session, stream)

        result = response["result"]
        assert response["id"] == 0
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == "creatio-connect"
        assert result["serverInfo"]["version"] == "1.0.0"
        assert "tools" in result["capabilities"]

    @pytest.mark.asyncio
    async def test_unsupported_protocol_version_gets_latest(self, started_sessions):
        session, stream = await started_sessions()

        response = await _call(
            session, stream, _request("initialize", _initialize_params("1999-01-01"))
        )

        assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_ping(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        assert (await _call(session, stream, _request("ping")))["result"] == {}

    @pytest.mark.asyncio
    async def test_tools_list_comes_from_registry(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        tools = (await _call(session, stream, _request("tools/list")))["result"]["tools"]

        assert [t["name"] for t in tools] == [t["name"] for t in list_tools()]
        assert tools[1]["inputSchema"] == list_tools()[1]["inputSchema"]

    @pytest.mark.asyncio
    async def test_tools_call_success(self, started_sessions, creatio_client):
        session, stream = await started_sessions(creatio_client)
        await _handshake(session, stream)

        response = await _call(
            session,
            stream,
            _request("tools/call", {"name": "query_creatio_accounts", "arguments": {"top": 2}}),
        )

        result = response["result"]
        assert result["isError"] is False
        assert json.loads(result["content"][0]["text"])["count"] == 2

    @pytest.mark.asyncio
    async def test_tools_call_error_result(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        response = await _call(
            session, stream, _request("tools/call", {"name": "query_creatio_accounts", "arguments": {}})
        )

        result = response["result"]
        assert result["isError"] is True
        assert result["content"][0]["text"] == "Not connected. Use test_creatio_connection first."

    @pytest.mark.asyncio
    async def test_tools_call_without_name(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        response = await _call(session, stream, _request("tools/call", {"arguments": {}}))

        assert response["error"]["code"] == INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_unserved_method(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        response = await _call(session, stream, _request("resources/list"))

        assert response["error"]["code"] == METHOD_NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [{"id": 3, "method": "ping"}, {"jsonrpc": "2.0", "id": 3}, "ping", [_request("ping")]],
    )
    async def test_invalid_message(self, message):
        server = _server()

        with pytest.raises(InvalidMessageError):
            await server.handle_message(message)

    @pytest.mark.asyncio
    async def test_handle_before_start(self):
        with pytest.raises(RuntimeError):
            await _server().handle_message(_request("ping"))

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        class Client:
            closed = False

            async def aclose(self):
                self.closed = True

        client = Client()
        server = _server(client)
        server.start(lambda payload: None)

        await server.close()

        assert server.closed
        assert not server.running
        assert client.closed
        assert not server.dispatcher.context.connected


# =============================================================================
# SSE session
# =============================================================================


class TestSseSession:
    def test_format_sse(self):
        assert format_sse({"a": 1}) == 'data: {"a": 1}\n\n'
        assert format_sse("/mcp/messages?sessionId=x", event="endpoint") == (
            "event: endpoint\ndata: /mcp/messages?sessionId=x\n\n"
        )

    @pytest.mark.asyncio
    async def test_stream_announces_session_then_endpoint(self):
        session = SseSession("abc", _server())
        stream = session.stream(keepalive=5)

        first = await anext(stream)
        second = await anext(stream)

        assert _event_data(first) == {"sessionId": "abc"}
        assert second == "event: endpoint\ndata: /mcp/messages?sessionId=abc\n\n"
        assert session.state is SessionState.STREAMING
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_responses_arrive_in_order(self, started_sessions):
        session, stream = await started_sessions()
        await _handshake(session, stream)

        await asyncio.gather(*(session.handle(_request("ping", request_id=i)) for i in range(5)))

        ids = []
        for _ in range(5):
            chunk = await anext(stream)
            assert chunk.startswith("event: message\n")
            ids.append(_event_data(chunk)["id"])
        assert ids == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_keepalive_and_disconnect(self):
        session = SseSession("abc", _server())
        disconnected = False

        async def is_disconnected():
            return disconnected

        stream = session.stream(keepalive=0.01, is_disconnected=is_disconnected)
        await anext(stream)
        await anext(stream)

        assert await anext(stream) == ": keepalive\n\n"

        disconnected = True
        with pytest.raises(StopAsyncIteration):
            await anext(stream)

    @pytest.mark.asyncio
    async def test_close_ends_stream_and_drops_later_messages(self, started_sessions):
        session, stream = await started_sessions()

        session.close()
        session.send({"late": True})

        with pytest.raises(StopAsyncIteration):
            await anext(stream)
        assert not session.alive

    @pytest.mark.asyncio
    async def test_close_stops_protocol_server(self, started_sessions):
        session, _ = await started_sessions()

        session.close()
        await asyncio.sleep(0.05)

        assert session.server.closed
        assert not session.server.running


# =============================================================================
# Registry
# =============================================================================


class TestSessionRegistry:
    """Tests for register / lookup / close / sweep."""

    @pytest.mark.asyncio
    async def test_register_and_lookup(self):
        registry = SessionRegistry()
        session = SseSession("abc", _server())

        registry.register(session)

        assert registry.get("abc") is session
        assert session.state is SessionState.REGISTERED
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_duplicate_handle_rejected(self):
        registry = SessionRegistry()
        registry.register(SseSession("abc", _server()))

        with pytest.raises(ValueError):
            registry.register(SseSession("abc", _server()))

    @pytest.mark.asyncio
    async def test_closed_session_is_not_found(self):
        registry = SessionRegistry()
        session = SseSession("abc", _server())
        registry.register(session)

        registry.unregister("abc")

        assert registry.get("abc") is None
        assert len(registry) == 0
        assert not session.alive

    @pytest.mark.asyncio
    async def test_close_racing_lookup_counts_as_unknown(self):
        """A session closed but not yet removed is already unknown to lookups."""
        registry = SessionRegistry()
        session = SseSession("abc", _server())
        registry.register(session)

        session.close()

        assert registry.get("abc") is None
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_dead_sessions(self):
        registry = SessionRegistry()
        live = SseSession("live", _server())
        dead = SseSession("dead", _server())
        registry.register(live)
        registry.register(dead)
        dead.close()

        assert registry.sweep() == 1
        assert registry.get("live") is live
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_unregister_unknown_is_noop(self):
        assert SessionRegistry().unregister("ghost") is None

    @pytest.mark.asyncio
    async def test_sweeper_lifecycle(self):
        registry = SessionRegistry()
        dead = SseSession("dead", _server())
        registry.register(dead)
        dead.close()

        await registry.start_sweeper(0.01)
        await asyncio.sleep(0.05)
        await registry.stop_sweeper()

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = SessionRegistry()
        sessions = [SseSession(str(i), _server()) for i in range(3)]
        for session in sessions:
            registry.register(session)

        registry.close_all()

        assert len(registry) == 0
        assert not any(s.alive for s in sessions)
