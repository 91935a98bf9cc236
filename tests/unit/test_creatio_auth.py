"""
Unit tests for Creatio forms authentication.

Tests cover:
1. Set-Cookie extraction strategies (multi-value and combined header)
2. Session validity against the clock
3. Login outcomes and the session manager's re-authentication
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from src.integrations.crm.auth import (
    AUTH_COOKIE_NAMES,
    AuthSession,
    AuthSessionManager,
    assemble_auth_cookies,
    authenticate,
    cookies_from_combined_header,
    cookies_from_multi_value,
    extract_set_cookie_headers,
    is_session_valid,
)
from src.integrations.crm.base import AuthError, AuthFailureReason, CRMErrorType
from tests.fakes import LOGIN_SET_COOKIES


class FixedClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# =============================================================================
# Cookie extraction
# =============================================================================


class TestCookieExtraction:
    """Tests for the two Set-Cookie strategies and cookie assembly."""

    def test_multi_value_keeps_known_names_in_order(self):
        """Only the four auth cookies survive, in the order they were sent."""
        cookies, token = assemble_auth_cookies(cookies_from_multi_value(LOGIN_SET_COOKIES))

        names = [part.split("=", 1)[0] for part in cookies.split("; ")]
        assert names == list(AUTH_COOKIE_NAMES)
        assert "BPMSESSIONID" not in cookies
        assert token == "csrf-token-123"

    def test_combined_header_splits_on_cookie_boundaries_only(self):
        """Commas inside expires dates do not split a cookie."""
        raw = (
            "BPMCSRF=tok; expires=Thu, 01 Jan 2026 00:00:00 GMT; path=/, "
            ".ASPXAUTH=auth; path=/; HttpOnly, "
            "BPMLOADER=ldr; expires=Fri, 02 Jan 2026 00:00:00 GMT, "
            "UserName=83|117"
        )

        parts = cookies_from_combined_header(raw)

        assert len(parts) == 4
        assert parts[0].startswith("BPMCSRF=tok; expires=Thu, 01 Jan 2026")
        assert parts[1].startswith(".ASPXAUTH=auth")

    def test_combined_header_feeds_same_assembly(self):
        raw = ", ".join(LOGIN_SET_COOKIES)

        cookies, token = assemble_auth_cookies(cookies_from_combined_header(raw))

        assert cookies == "BPMCSRF=csrf-token-123; .ASPXAUTH=auth-abc; BPMLOADER=loader-xyz; UserName=83|117|112"
        assert token == "csrf-token-123"

    def test_combined_header_empty(self):
        assert cookies_from_combined_header(None) == []
        assert cookies_from_combined_header("") == []

    def test_multi_value_skips_blank_values(self):
        assert cookies_from_multi_value(["", "  ", "A=1"]) == ["A=1"]

    def test_prefers_multi_value_accessor(self):
        """httpx.Headers exposes get_list, so each header stays separate."""
        headers = httpx.Headers([("set-cookie", c) for c in LOGIN_SET_COOKIES])

        assert extract_set_cookie_headers(headers) == LOGIN_SET_COOKIES

    def test_falls_back_to_combined_header(self):
        """Plain mappings only offer the joined header value."""
        headers = {"set-cookie": ", ".join(LOGIN_SET_COOKIES)}

        assert extract_set_cookie_headers(headers) == LOGIN_SET_COOKIES

    def test_token_found_via_cookie_string_fallback(self):
        """A blanked repeat of BPMCSRF does not lose the value sent earlier."""
        cookies, token = assemble_auth_cookies(["BPMCSRF=from-string; path=/", ".ASPXAUTH=a", "BPMCSRF=; path=/"])

        assert token == "from-string"
        assert cookies.startswith("BPMCSRF=from-string")

    def test_no_known_cookies(self):
        cookies, token = assemble_auth_cookies(["Other=1; path=/"])

        assert cookies == ""
        assert token == ""


# =============================================================================
# Session validity
# =============================================================================


class TestSessionValidity:
    """Tests for is_session_valid."""

    NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def _session(self, expires_at: datetime) -> AuthSession:
        return AuthSession(cookies="BPMCSRF=t", csrf_token="t", expires_at=expires_at)

    @pytest.mark.parametrize("offset", [timedelta(seconds=1), timedelta(minutes=30), timedelta(days=3)])
    def test_future_expiry_is_valid(self, offset):
        assert is_session_valid(self._session(self.NOW + offset), self.NOW)

    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=1), timedelta(hours=5)])
    def test_past_or_current_expiry_is_invalid(self, offset):
        assert not is_session_valid(self._session(self.NOW - offset), self.NOW)

    def test_missing_session_is_invalid(self):
        assert not is_session_valid(None, self.NOW)


# =============================================================================
# Login
# =============================================================================


class TestAuthenticate:
    """Tests for the login call."""

    @pytest.mark.asyncio
    async def test_success_builds_session(self, fake_creatio, connection_config):
        clock = FixedClock(datetime(2026, 1, 1, tzinfo=UTC))
        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            session = await authenticate(http, connection_config, now=clock)

        assert session.csrf_token == "csrf-token-123"
        assert session.expires_at == clock.current + timedelta(minutes=30)
        assert session.complete
        assert session.diagnostics == ()

        login = fake_creatio.requests[0]
        assert str(login.url) == "https://acme.creatio.com/ServiceModel/AuthService.svc/Login"

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, fake_creatio, connection_config):
        fake_creatio.login_code = 1
        fake_creatio.login_message = "Invalid username or password"

        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            with pytest.raises(AuthError) as exc_info:
                await authenticate(http, connection_config)

        assert exc_info.value.reason is AuthFailureReason.REJECTED
        assert exc_info.value.error_type is CRMErrorType.AUTH_REJECTED
        assert str(exc_info.value) == "Invalid username or password"

    @pytest.mark.asyncio
    async def test_http_failure(self, fake_creatio, connection_config):
        fake_creatio.login_status = 503

        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            with pytest.raises(AuthError) as exc_info:
                await authenticate(http, connection_config)

        assert exc_info.value.reason is AuthFailureReason.TRANSPORT
        assert "503" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_cookies_is_a_warning(self, fake_creatio, connection_config):
        """Login still succeeds; the gap is recorded on the session."""
        fake_creatio.set_cookies = ["Other=1; path=/"]

        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            session = await authenticate(http, connection_config)

        assert not session.complete
        assert len(session.diagnostics) == 2


class TestAuthSessionManager:
    """Tests for login/re-authentication bookkeeping."""

    @pytest.mark.asyncio
    async def test_failed_login_leaves_no_session(self, fake_creatio, connection_config):
        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            manager = AuthSessionManager(connection_config, http)
            await manager.login()
            assert manager.session is not None

            fake_creatio.login_code = 1
            with pytest.raises(AuthError):
                await manager.login()

        assert manager.session is None
        assert not manager.is_valid()

    @pytest.mark.asyncio
    async def test_reauthenticates_after_expiry(self, fake_creatio, connection_config):
        clock = FixedClock(datetime(2026, 1, 1, tzinfo=UTC))
        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            manager = AuthSessionManager(connection_config, http, ttl=timedelta(minutes=30), now=clock)

            first = await manager.ensure_authenticated()
            assert await manager.ensure_authenticated() is first
            assert fake_creatio.login_count == 1

            clock.advance(minutes=31)
            second = await manager.ensure_authenticated()

        assert second is not first
        assert fake_creatio.login_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(self, fake_creatio, connection_config):
        async with httpx.AsyncClient(transport=fake_creatio.transport()) as http:
            manager = AuthSessionManager(connection_config, http)
            sessions = await asyncio.gather(*(manager.ensure_authenticated() for _ in range(5)))

        assert fake_creatio.login_count == 1
        assert all(s is sessions[0] for s in sessions)
