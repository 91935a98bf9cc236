"""Dashboard REST surface for Creatio.

Plain request/response endpoints for the same six operations the MCP tools
expose, plus tool listing and execution. A browser gets its own client
context, identified by the ``creatio_session`` cookie, once a connection
test succeeds; before that it shares the default-connection context, if any.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, Response, status
from pydantic import ValidationError as PydanticValidationError

from src.integrations.crm.base import CreatioError
from src.integrations.crm.creatio import CreatioClient
from src.integrations.crm.models import ConnectionConfig, QueryParams
from src.mcp.dispatcher import ClientContext, ToolDispatcher
from src.mcp.tools import TEST_CONNECTION, list_tools
from src.server.dependencies import (
    DASHBOARD_COOKIE,
    CallerContextDep,
    ClientFactoryDep,
    DashboardContexts,
    DashboardContextsDep,
    SettingsDep,
)
from src.server.exceptions import (
    ExternalServiceError,
    NotConnectedAPIError,
    NotFoundError,
    ValidationError,
)
from src.server.models.requests import (
    AccountQueryRequest,
    AccountWriteRequest,
    ConnectRequest,
    ExecuteToolRequest,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["creatio"])


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def _connected_client(context: ClientContext | None) -> CreatioClient:
    if context is None or context.client is None:
        raise NotConnectedAPIError()
    return context.client


def _bind(request: Request, response: Response, contexts: DashboardContexts, context: ClientContext) -> None:
    """Store ``context`` as the caller's own, issuing the session cookie if needed."""
    key = request.cookies.get(DASHBOARD_COOKIE)
    if not key:
        key = contexts.new_key()
        response.set_cookie(DASHBOARD_COOKIE, key, httponly=True, samesite="lax")
    contexts.add(key, context)


def _upstream(e: CreatioError) -> ExternalServiceError:
    logger.warning("[CREATIO_API] Upstream failure: %s", e)
    return ExternalServiceError("Creatio", e.message)


# =============================================================================
# Connection
# =============================================================================


@router.post("/creatio/connect")
async def connect(
    body: ConnectRequest,
    request: Request,
    response: Response,
    contexts: DashboardContextsDep,
    client_factory: ClientFactoryDep,
) -> dict[str, Any]:
    """Test the given credentials and bind the client to this browser session."""
    try:
        config = ConnectionConfig(
            base_url=body.base_url, username=body.username, password=body.password
        )
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid configuration provided", detail=e.errors()[0]["msg"]
        ) from e

    client = client_factory(config)
    result = await client.test_connection()

    if result.success:
        own = contexts.get(request.cookies.get(DASHBOARD_COOKIE))
        if own is not None:
            await own.set_client(client)
        else:
            _bind(request, response, contexts, ClientContext(client))
        logger.info("[CREATIO_API] Dashboard connected to %s", config.base_url)
    else:
        await client.aclose()

    return {"success": result.success, "message": result.message, "timestamp": _timestamp()}


@router.post("/creatio/disconnect")
async def disconnect(request: Request, contexts: DashboardContextsDep) -> dict[str, Any]:
    await contexts.remove(request.cookies.get(DASHBOARD_COOKIE))
    return {"success": True, "message": "Disconnected from Creatio"}


# =============================================================================
# Accounts
# =============================================================================


@router.post("/creatio/accounts/query")
async def query_accounts(
    body: AccountQueryRequest,
    context: CallerContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    client = _connected_client(context)
    params = QueryParams(
        filter=body.filter,
        select=body.select,
        top=body.top if body.top is not None else settings.CREATIO_DEFAULT_TOP,
        skip=body.skip,
        orderby=body.orderby or settings.CREATIO_DEFAULT_ORDERBY,
        expand=body.expand,
    )

    started = time.perf_counter()
    try:
        accounts = await client.query(params)
    except CreatioError as e:
        raise _upstream(e) from e
    query_time = round((time.perf_counter() - started) * 1000)

    return {"success": True, "data": accounts, "count": len(accounts), "queryTime": query_time}


@router.get("/creatio/accounts/{account_id}")
async def get_account(account_id: str, context: CallerContextDep) -> dict[str, Any]:
    client = _connected_client(context)
    try:
        account = await client.get_by_id(account_id)
    except CreatioError as e:
        raise _upstream(e) from e
    if account is None:
        raise NotFoundError("Account not found")
    return {"success": True, "data": account}


@router.post("/creatio/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(body: AccountWriteRequest, context: CallerContextDep) -> dict[str, Any]:
    client = _connected_client(context)
    if not body.Name:
        raise ValidationError("Account name is required")
    try:
        account = await client.create(body.supplied())
    except CreatioError as e:
        raise _upstream(e) from e
    return {"success": True, "data": account}


@router.patch("/creatio/accounts/{account_id}")
async def update_account(
    account_id: str, body: AccountWriteRequest, context: CallerContextDep
) -> dict[str, Any]:
    client = _connected_client(context)
    try:
        await client.update(account_id, body.supplied())
    except CreatioError as e:
        raise _upstream(e) from e
    return {"success": True, "message": "Account updated successfully"}


@router.delete("/creatio/accounts/{account_id}")
async def delete_account(account_id: str, context: CallerContextDep) -> dict[str, Any]:
    client = _connected_client(context)
    try:
        await client.delete(account_id)
    except CreatioError as e:
        raise _upstream(e) from e
    return {"success": True, "message": "Account deleted successfully"}


# =============================================================================
# MCP tools over plain HTTP
# =============================================================================


@router.get("/mcp/tools")
async def tools() -> dict[str, Any]:
    return {"success": True, "tools": list_tools()}


@router.post("/mcp/execute")
async def execute_tool(
    body: ExecuteToolRequest,
    request: Request,
    response: Response,
    context: CallerContextDep,
    contexts: DashboardContextsDep,
    settings: SettingsDep,
    client_factory: ClientFactoryDep,
) -> dict[str, Any]:
    """Run a registry tool against this browser session's client context.

    A browser without a context of its own runs on a scratch context (or the
    shared default one). It is given its own context only when a connection
    test through this endpoint succeeds.
    """
    if not body.tool:
        raise ValidationError("Tool name is required")

    own = contexts.get(request.cookies.get(DASHBOARD_COOKIE))
    if own is not None:
        target = own
    elif context is None or body.tool == TEST_CONNECTION.name:
        # Connection tests never replace the shared default client
        target = ClientContext()
    else:
        target = context

    dispatcher = ToolDispatcher(
        target,
        client_factory=client_factory,
        default_top=settings.CREATIO_DEFAULT_TOP,
        default_orderby=settings.CREATIO_DEFAULT_ORDERBY,
    )
    result = await dispatcher.execute(body.tool, body.args)

    if own is None and target is not context and target.connected:
        _bind(request, response, contexts, target)

    return {"success": not result.is_error, "result": result.content, "isError": result.is_error}
