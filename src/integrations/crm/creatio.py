"""Creatio CRM client implementation.

Creatio OData v4 integration for record management (Accounts by default).
Every call is a pass-through to Creatio; nothing is cached locally apart from
the auth session.

Usage:
    async with CreatioClient(ConnectionConfig(base_url=..., username=..., password=...)) as client:
        accounts = await client.query(QueryParams(filter="contains(Name,'Tech')", top=5))
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from src.core.logging import safe_preview
from src.integrations.crm.auth import DEFAULT_SESSION_TTL, AuthSession, AuthSessionManager
from src.integrations.crm.base import (
    CreatioError,
    MalformedResponse,
    NotAuthenticatedError,
    PermissionOrAuthError,
    RequestFailure,
    UnexpectedContentType,
)
from src.integrations.crm.models import ConnectionConfig, ConnectionTestResult, QueryParams


logger = logging.getLogger(__name__)

ODATA_ROOT = "/0/odata"
DEFAULT_ENTITY = "Account"

_TITLE = re.compile(r"<title>([^<]+)</title>", re.IGNORECASE)
# Characters encodeURIComponent leaves alone
_QUERY_SAFE = "-_.!~*'()"


def _html_title(text: str, default: str) -> str:
    match = _TITLE.search(text)
    return match.group(1).strip() if match else default


def _is_html(response: httpx.Response) -> bool:
    return "text/html" in response.headers.get("content-type", "").lower()


def build_query_string(params: QueryParams) -> str:
    """Build the OData query string from the options that are present.

    String options are percent-encoded, numeric ones are emitted as-is.
    Returns an empty string when no option is set.
    """
    parts: list[str] = []
    if params.filter:
        parts.append(f"$filter={quote(params.filter, safe=_QUERY_SAFE)}")
    if params.select:
        parts.append(f"$select={quote(params.select, safe=_QUERY_SAFE)}")
    if params.top:
        parts.append(f"$top={params.top}")
    if params.skip:
        parts.append(f"$skip={params.skip}")
    if params.orderby:
        parts.append(f"$orderby={quote(params.orderby, safe=_QUERY_SAFE)}")
    if params.expand:
        parts.append(f"$expand={quote(params.expand, safe=_QUERY_SAFE)}")
    return f"?{'&'.join(parts)}" if parts else ""


class CreatioClient:
    """Creatio OData client with transparent forms-auth session handling.

    The client authenticates lazily on the first operation (or explicitly via
    ``test_connection``) and logs in again whenever the held session expired.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        timeout: float = 30.0,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        transport: httpx.AsyncBaseTransport | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        """Initialize Creatio client.

        Args:
            config: Creatio connection settings (base URL already normalized)
            timeout: Deadline in seconds for every upstream HTTP call
            session_ttl: Lifetime of an auth session before re-login
            transport: Optional httpx transport (used by tests to fake Creatio)
            now: Optional clock for session expiry
        """
        self.config = config
        self.timeout = timeout
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)
        auth_kwargs: dict[str, Any] = {"ttl": session_ttl}
        if now is not None:
            auth_kwargs["now"] = now
        self._auth = AuthSessionManager(config, self._http, **auth_kwargs)

    async def __aenter__(self) -> CreatioClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def session(self) -> AuthSession | None:
        return self._auth.session

    @property
    def auth(self) -> AuthSessionManager:
        return self._auth

    # ------------------------------------------------------------------
    # Plumbing shared by every data operation
    # ------------------------------------------------------------------

    @staticmethod
    def _headers(session: AuthSession | None) -> dict[str, str]:
        if session is None:
            raise NotAuthenticatedError()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8; IEEE754Compatible=true",
            "ForceUseSession": "true",
            "BPMCSRF": session.csrf_token,
            "Cookie": session.cookies,
        }

    def _entity_url(self, entity: str, record_id: str | None = None) -> str:
        url = f"{self.base_url}{ODATA_ROOT}/{entity}"
        if record_id is not None:
            url += f"({quote(str(record_id), safe='-')})"
        return url

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Any = None,
    ) -> httpx.Response:
        session = await self._auth.ensure_authenticated()
        headers = self._headers(session)

        try:
            response = await self._http.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as e:
            logger.error("[CREATIO] %s timed out after %.1fs: %s", operation, self.timeout, e)
            raise RequestFailure(
                f"{operation} failed: request timed out after {self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            logger.error("[CREATIO] %s transport error: %s", operation, e)
            raise RequestFailure(f"{operation} failed: {e}") from e

        if response.status_code == 401:
            # Session was dropped upstream; the next call logs in again
            logger.warning("[CREATIO] %s got 401, discarding session", operation)
            self._auth.invalidate()
        return response

    @staticmethod
    def _failure(operation: str, response: httpx.Response) -> RequestFailure:
        text = response.text
        return RequestFailure(
            f"{operation} failed: {response.status_code} {response.reason_phrase} - "
            f"{safe_preview(text, 500)}",
            status_code=response.status_code,
            body=text,
        )

    @staticmethod
    def _parse_json(response: httpx.Response) -> Any:
        text = response.text
        if _is_html(response):
            raise UnexpectedContentType(
                _html_title(text, "Unknown Error"), status_code=response.status_code, body=text
            )
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(
                "Invalid response from Creatio. Expected JSON but received: "
                f"{text[:200]}...",
                status_code=response.status_code,
                body=text,
            ) from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        """Force a fresh login and report the outcome instead of raising."""
        try:
            await self._auth.login()
        except CreatioError as e:
            return ConnectionTestResult(success=False, message=e.message)
        return ConnectionTestResult(
            success=True, message="Successfully connected to Creatio instance"
        )

    async def query(
        self,
        params: QueryParams | None = None,
        *,
        entity: str = DEFAULT_ENTITY,
    ) -> list[dict[str, Any]]:
        """List records matching the OData options.

        Returns:
            The records under ``value`` (empty list if the field is absent)

        Raises:
            PermissionOrAuthError: error status with an HTML error page
            RequestFailure: any other error status
            UnexpectedContentType: success status but HTML body
            MalformedResponse: body is not JSON
        """
        params = params or QueryParams()
        url = f"{self._entity_url(entity)}{build_query_string(params)}"
        response = await self._request("Query", "GET", url)

        if not response.is_success:
            if _is_html(response):
                text = response.text
                title = _html_title(text, "Access Denied")
                logger.warning("[CREATIO] Query on %s returned error page: %s", entity, title)
                raise PermissionOrAuthError(title, status_code=response.status_code, body=text)
            raise self._failure("Query", response)

        data = self._parse_json(response)
        records = data.get("value") if isinstance(data, dict) else None
        logger.debug("[CREATIO] Query on %s returned %d records", entity, len(records or []))
        return list(records or [])

    async def get_by_id(self, record_id: str, *, entity: str = DEFAULT_ENTITY) -> dict[str, Any] | None:
        """Fetch one record. Returns None when Creatio answers 404."""
        operation = f"Get {entity.lower()}"
        response = await self._request(operation, "GET", self._entity_url(entity, record_id))

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise self._failure(operation, response)
        return self._parse_json(response)

    async def create(self, fields: dict[str, Any], *, entity: str = DEFAULT_ENTITY) -> dict[str, Any]:
        """Create a record. Required fields (e.g. Name) are validated by the caller."""
        operation = f"Create {entity.lower()}"
        response = await self._request(operation, "POST", self._entity_url(entity), json=fields)

        if not response.is_success:
            raise self._failure(operation, response)
        if not response.content:
            return dict(fields)
        created = self._parse_json(response)
        logger.info("[CREATIO] Created %s %s", entity, (created or {}).get("Id", ""))
        return created

    async def update(
        self,
        record_id: str,
        fields: dict[str, Any],
        *,
        entity: str = DEFAULT_ENTITY,
    ) -> None:
        """PATCH only the supplied fields; everything else is left untouched."""
        operation = f"Update {entity.lower()}"
        response = await self._request(
            operation, "PATCH", self._entity_url(entity, record_id), json=fields
        )
        if not response.is_success:
            raise self._failure(operation, response)
        logger.info("[CREATIO] Updated %s %s (%s)", entity, record_id, ", ".join(fields) or "no fields")

    async def delete(self, record_id: str, *, entity: str = DEFAULT_ENTITY) -> None:
        """Delete a record. Any 2xx (including 204) counts as success."""
        operation = f"Delete {entity.lower()}"
        response = await self._request(operation, "DELETE", self._entity_url(entity, record_id))
        if not response.is_success and response.status_code != 204:
            raise self._failure(operation, response)
        logger.info("[CREATIO] Deleted %s %s", entity, record_id)


def create_creatio_client(config: ConnectionConfig, **overrides: Any) -> CreatioClient:
    """Build a client tuned from settings (timeout, session lifetime).

    Keyword overrides are passed straight to ``CreatioClient``.
    """
    from src.conf.config import get_settings

    settings = get_settings()
    kwargs: dict[str, Any] = {
        "timeout": settings.CREATIO_REQUEST_TIMEOUT,
        "session_ttl": timedelta(seconds=settings.CREATIO_SESSION_TTL_SECONDS),
    }
    kwargs.update(overrides)
    return CreatioClient(config, **kwargs)
