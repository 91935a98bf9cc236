"""Tool dispatch for the Creatio MCP tools.

Maps a tool name and argument bag to a Creatio client call and wraps the
outcome in a ``ToolResult``. Dispatch never raises: unknown tools, missing
connections and upstream failures all come back as ``isError`` results.

The connected client lives in a ``ClientContext`` owned by exactly one MCP
session (or one dashboard browser session). A successful connection test
replaces the client in that context only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from src.integrations.crm.base import CreatioError, NotConnectedError
from src.integrations.crm.creatio import CreatioClient, create_creatio_client
from src.integrations.crm.models import (
    ConnectionConfig,
    CreatioAccount,
    QueryParams,
    account_fields_from_args,
)
from src.mcp.tools import (
    CREATE_ACCOUNT,
    DELETE_ACCOUNT,
    GET_ACCOUNT,
    QUERY_ACCOUNTS,
    TEST_CONNECTION,
    UPDATE_ACCOUNT,
    ToolArgumentError,
    get_tool,
)


logger = logging.getLogger(__name__)

ClientFactory = Callable[[ConnectionConfig], CreatioClient]


@dataclass
class ToolResult:
    """Uniform tool-call envelope: text content blocks plus an error flag."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str, *, is_error: bool = False) -> ToolResult:
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    @classmethod
    def json(cls, payload: Any, *, is_error: bool = False) -> ToolResult:
        return cls.text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), is_error=is_error)

    @property
    def first_text(self) -> str:
        return self.content[0]["text"] if self.content else ""


class ClientContext:
    """Holds the Creatio client of one session.

    Replacing the client closes the previous one. Readers only ever see a
    fully constructed client or None.
    """

    def __init__(self, client: CreatioClient | None = None):
        self._client = client

    @property
    def client(self) -> CreatioClient | None:
        return self._client

    @property
    def connected(self) -> bool:
        return self._client is not None

    def require_client(self) -> CreatioClient:
        if self._client is None:
            raise NotConnectedError()
        return self._client

    async def set_client(self, client: CreatioClient) -> None:
        previous, self._client = self._client, client
        if previous is not None and previous is not client:
            await previous.aclose()

    async def clear(self) -> None:
        previous, self._client = self._client, None
        if previous is not None:
            await previous.aclose()

    aclose = clear


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


class ToolDispatcher:
    """Executes registry tools against the client held in a ``ClientContext``."""

    def __init__(
        self,
        context: ClientContext,
        *,
        client_factory: ClientFactory = create_creatio_client,
        default_top: int = 25,
        default_orderby: str = "Name asc",
    ):
        self.context = context
        self._client_factory = client_factory
        self.default_top = default_top
        self.default_orderby = default_orderby
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[ToolResult]]] = {
            TEST_CONNECTION.name: self._test_connection,
            QUERY_ACCOUNTS.name: self._query_accounts,
            GET_ACCOUNT.name: self._get_account,
            CREATE_ACCOUNT.name: self._create_account,
            UPDATE_ACCOUNT.name: self._update_account,
            DELETE_ACCOUNT.name: self._delete_account,
        }

    async def execute(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Run one tool call. Never raises."""
        descriptor = get_tool(name)
        handler = self._handlers.get(name)
        if descriptor is None or handler is None:
            logger.info("[MCP_TOOL] Unknown tool requested: %s", name)
            return ToolResult.text(f"Unknown tool: {name}", is_error=True)

        started = time.perf_counter()
        try:
            args = descriptor.validate_arguments(arguments)
            result = await handler(args)
        except NotConnectedError as e:
            return ToolResult.text(e.message, is_error=True)
        except (CreatioError, ToolArgumentError) as e:
            logger.warning("[MCP_TOOL] %s failed: %s", name, e, extra={"tool": name})
            return ToolResult.text(f"Error executing {name}: {e}", is_error=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[MCP_TOOL] %s crashed: %s", name, e, extra={"tool": name})
            return ToolResult.text(f"Error executing {name}: {e}", is_error=True)

        logger.info(
            "[MCP_TOOL] %s -> %s",
            name,
            "error" if result.is_error else "ok",
            extra={"tool": name, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _test_connection(self, args: dict[str, Any]) -> ToolResult:
        try:
            config = ConnectionConfig(
                base_url=args["baseUrl"], username=args["username"], password=args["password"]
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ToolArgumentError(f"Invalid configuration provided ({problems})") from e

        client = self._client_factory(config)
        result = await client.test_connection()

        if result.success:
            await self.context.set_client(client)
        else:
            await client.aclose()

        return ToolResult.json(
            {"success": result.success, "message": result.message, "timestamp": _timestamp()},
            is_error=not result.success,
        )

    async def _query_accounts(self, args: dict[str, Any]) -> ToolResult:
        client = self.context.require_client()
        try:
            params = QueryParams(
                filter=args.get("filter"),
                select=args.get("select"),
                top=args.get("top", self.default_top),
                skip=args.get("skip"),
                orderby=args.get("orderby") or self.default_orderby,
                expand=args.get("expand"),
            )
        except ValidationError as e:
            raise ToolArgumentError(f"Invalid query parameters: {e.errors()[0]['msg']}") from e

        records = await client.query(params)
        accounts = [CreatioAccount.model_validate(r).summary() for r in records]
        return ToolResult.json({"count": len(accounts), "accounts": accounts})

    async def _get_account(self, args: dict[str, Any]) -> ToolResult:
        client = self.context.require_client()
        account = await client.get_by_id(args["id"])
        if account is None:
            return ToolResult.text(f"Account not found: {args['id']}", is_error=True)
        return ToolResult.json(account)

    async def _create_account(self, args: dict[str, Any]) -> ToolResult:
        client = self.context.require_client()
        created = await client.create(account_fields_from_args(args))
        return ToolResult.json(
            {"success": True, "message": "Account created successfully", "account": created}
        )

    async def _update_account(self, args: dict[str, Any]) -> ToolResult:
        client = self.context.require_client()
        record_id = args["id"]
        await client.update(record_id, account_fields_from_args(args))
        return ToolResult.json(
            {"success": True, "message": f"Account {record_id} updated successfully"}
        )

    async def _delete_account(self, args: dict[str, Any]) -> ToolResult:
        client = self.context.require_client()
        record_id = args["id"]
        await client.delete(record_id)
        return ToolResult.json(
            {"success": True, "message": f"Account {record_id} deleted successfully"}
        )
