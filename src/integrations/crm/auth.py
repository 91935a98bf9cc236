"""Creatio forms authentication.

Logs into ``/ServiceModel/AuthService.svc/Login``, extracts the auth cookies
and the BPMCSRF anti-forgery token from the response, and keeps the
resulting session until it expires.

Two Set-Cookie encodings are supported:
- a multi-value header accessor (``httpx.Headers.get_list``), one cookie per value
- a single combined header where cookies are joined by commas; commas also
  appear inside attributes such as ``expires=Thu, 01 Jan 2026 ...``, so the
  split only happens on commas followed by a ``name=`` pattern
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from src.core.errors import mask_sensitive_data
from src.core.logging import safe_preview
from src.integrations.crm.base import AuthError, AuthFailureReason
from src.integrations.crm.models import ConnectionConfig


logger = logging.getLogger(__name__)

LOGIN_PATH = "/ServiceModel/AuthService.svc/Login"
DEFAULT_SESSION_TTL = timedelta(minutes=30)

CSRF_COOKIE = "BPMCSRF"
# Cookies Creatio needs on every authenticated request
AUTH_COOKIE_NAMES = (CSRF_COOKIE, ".ASPXAUTH", "BPMLOADER", "UserName")

_COMBINED_SPLIT = re.compile(r",(?=\s*[A-Za-z_.][A-Za-z0-9_.-]*=)")
_NAME_VALUE = re.compile(r"^\s*([^=;]+)=([^;]*)")
_CSRF_IN_COOKIES = re.compile(r"(?:^|;\s*)BPMCSRF=([^;]+)")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class AuthSession:
    """An authenticated Creatio session. Replaced, never mutated, on re-login."""

    cookies: str
    csrf_token: str
    expires_at: datetime
    diagnostics: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return bool(self.cookies and self.csrf_token)


def is_session_valid(session: AuthSession | None, now: datetime | None = None) -> bool:
    """Return True while ``now`` is strictly before the session expiry."""
    if session is None:
        return False
    return (now or _utcnow()) < session.expires_at


def cookies_from_multi_value(values: Iterable[str]) -> list[str]:
    """Set-Cookie values from a multi-value accessor, one cookie each."""
    return [value for value in values if value and value.strip()]


def cookies_from_combined_header(raw: str | None) -> list[str]:
    """Split a comma-joined Set-Cookie header into individual cookies."""
    if not raw:
        return []
    return [part.strip() for part in _COMBINED_SPLIT.split(raw) if part.strip()]


def extract_set_cookie_headers(headers: Any) -> list[str]:
    """Collect Set-Cookie headers, preferring the multi-value accessor when available."""
    get_list = getattr(headers, "get_list", None)
    if callable(get_list):
        return cookies_from_multi_value(get_list("set-cookie"))
    return cookies_from_combined_header(headers.get("set-cookie"))


def assemble_auth_cookies(set_cookie_headers: Iterable[str]) -> tuple[str, str]:
    """Keep the known auth cookies in discovery order.

    Returns:
        Tuple of (Cookie header string, anti-forgery token). Either may be empty.
    """
    parts: list[str] = []
    csrf_token = ""

    for header in set_cookie_headers:
        match = _NAME_VALUE.match(header)
        if not match:
            continue
        name = match.group(1).strip()
        value = match.group(2).strip()

        if name == CSRF_COOKIE:
            csrf_token = value
        if name in AUTH_COOKIE_NAMES:
            parts.append(f"{name}={value}")

    cookies = "; ".join(parts)

    if not csrf_token and cookies:
        fallback = _CSRF_IN_COOKIES.search(cookies)
        if fallback:
            csrf_token = fallback.group(1)

    return cookies, csrf_token


async def authenticate(
    http: httpx.AsyncClient,
    config: ConnectionConfig,
    *,
    ttl: timedelta = DEFAULT_SESSION_TTL,
    now: Callable[[], datetime] = _utcnow,
) -> AuthSession:
    """Log into Creatio and build a fresh ``AuthSession``.

    Raises:
        AuthError: transport failure / non-success HTTP status, or Code != 0.
    """
    login_url = f"{config.base_url}{LOGIN_PATH}"

    try:
        response = await http.post(
            login_url,
            json={"UserName": config.username, "UserPassword": config.password},
            headers={"Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.error("[CREATIO_AUTH] Login request to %s failed: %s", config.base_url, e)
        raise AuthError(AuthFailureReason.TRANSPORT, f"Authentication failed: {e}") from e

    if not response.is_success:
        logger.warning(
            "[CREATIO_AUTH] Login HTTP %d for %s", response.status_code, config.base_url
        )
        raise AuthError(
            AuthFailureReason.TRANSPORT,
            f"Authentication failed: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            body=safe_preview(response.text, 200),
        )

    try:
        result = response.json()
    except ValueError as e:
        raise AuthError(
            AuthFailureReason.TRANSPORT,
            "Authentication failed: login response is not JSON: "
            f"{safe_preview(response.text, 200)}",
            status_code=response.status_code,
        ) from e

    code = result.get("Code") if isinstance(result, dict) else None
    if code != 0:
        message = (result.get("Message") if isinstance(result, dict) else None) or "Authentication failed"
        logger.warning("[CREATIO_AUTH] Login rejected for %s: %s", config.username, message)
        raise AuthError(
            AuthFailureReason.REJECTED,
            message,
            status_code=response.status_code,
        )

    cookies, csrf_token = assemble_auth_cookies(extract_set_cookie_headers(response.headers))

    diagnostics: list[str] = []
    if not cookies:
        diagnostics.append("No authentication cookies found in login response")
    if not csrf_token:
        diagnostics.append("BPMCSRF token not found in login response")
    if diagnostics:
        # Later calls fail with an explicit upstream error instead
        logger.warning(
            "[CREATIO_AUTH] Could not extract all authentication cookies: %s (cookies=%r)",
            "; ".join(diagnostics),
            mask_sensitive_data(cookies),
        )

    logger.info("[CREATIO_AUTH] Authenticated %s at %s", config.username, config.base_url)
    return AuthSession(
        cookies=cookies,
        csrf_token=csrf_token,
        expires_at=now() + ttl,
        diagnostics=tuple(diagnostics),
    )


class AuthSessionManager:
    """Owns the single auth session of one Creatio client.

    Re-authentication is serialized by a lock so concurrent callers never
    interleave two logins or observe a half-replaced session.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        http: httpx.AsyncClient,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._http = http
        self._ttl = ttl
        self._now = now
        self._session: AuthSession | None = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> AuthSession | None:
        return self._session

    def is_valid(self) -> bool:
        return is_session_valid(self._session, self._now())

    async def login(self) -> AuthSession:
        """Force a fresh login, replacing any held session.

        On failure the previous session is dropped, so the manager holds none.
        """
        async with self._lock:
            self._session = None
            self._session = await authenticate(self._http, self.config, ttl=self._ttl, now=self._now)
            return self._session

    async def ensure_authenticated(self) -> AuthSession:
        """Return a valid session, logging in again if absent or expired."""
        session = self._session
        if is_session_valid(session, self._now()):
            return session  # type: ignore[return-value]

        async with self._lock:
            # Another caller may have re-authenticated while we waited
            session = self._session
            if is_session_valid(session, self._now()):
                return session  # type: ignore[return-value]

            self._session = None
            self._session = await authenticate(self._http, self.config, ttl=self._ttl, now=self._now)
            return self._session

    def invalidate(self) -> None:
        self._session = None
