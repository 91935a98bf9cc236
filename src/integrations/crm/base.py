"""Creatio CRM error taxonomy.

Every upstream fault surfaced by the Creatio client is a ``CreatioError``
carrying the failure class, the HTTP status and a snippet of the offending
body where available, so a caller can decide whether to retry,
re-authenticate or fix permissions.
"""

from __future__ import annotations

from enum import Enum


class CRMErrorType(str, Enum):
    """Types of Creatio CRM errors."""

    AUTH_REJECTED = "auth_rejected"
    TRANSPORT_FAILURE = "transport_failure"
    PERMISSION = "permission"
    UNEXPECTED_CONTENT_TYPE = "unexpected_content_type"
    MALFORMED_RESPONSE = "malformed_response"
    NOT_FOUND = "not_found"
    NOT_CONNECTED = "not_connected"
    NOT_AUTHENTICATED = "not_authenticated"


class AuthFailureReason(str, Enum):
    """Why a login attempt failed."""

    REJECTED = "rejected"
    TRANSPORT = "transport"


class CreatioError(Exception):
    """Base exception for Creatio client failures."""

    error_type: CRMErrorType = CRMErrorType.TRANSPORT_FAILURE

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        return self.message


class AuthError(CreatioError):
    """Login failed: upstream rejected the credentials or the call itself failed."""

    def __init__(
        self,
        reason: AuthFailureReason,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message, status_code=status_code, body=body)
        self.reason = reason
        self.error_type = (
            CRMErrorType.AUTH_REJECTED
            if reason is AuthFailureReason.REJECTED
            else CRMErrorType.TRANSPORT_FAILURE
        )


class RequestFailure(CreatioError):
    """Non-success HTTP status (or network failure) on a data call."""

    error_type = CRMErrorType.TRANSPORT_FAILURE


class PermissionOrAuthError(CreatioError):
    """HTML error page returned for a data call, usually a missing CRM permission."""

    error_type = CRMErrorType.PERMISSION

    def __init__(self, title: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(
            f"Creatio returned an error page: {title}. "
            "Your API user may need the 'CanUseODataService' permission.",
            status_code=status_code,
            body=body,
        )
        self.title = title


class UnexpectedContentType(CreatioError):
    """Success status but an HTML page instead of JSON (login or error page)."""

    error_type = CRMErrorType.UNEXPECTED_CONTENT_TYPE

    def __init__(self, title: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(
            f"Creatio returned HTML instead of JSON: {title}. "
            "Check that your user has OData API access permissions.",
            status_code=status_code,
            body=body,
        )
        self.title = title


class MalformedResponse(CreatioError):
    """Body was not valid JSON where JSON was expected."""

    error_type = CRMErrorType.MALFORMED_RESPONSE


class NotConnectedError(CreatioError):
    """An operation needing a Creatio client ran before any successful connection test."""

    error_type = CRMErrorType.NOT_CONNECTED

    def __init__(self, message: str = "Not connected. Use test_creatio_connection first."):
        super().__init__(message)


class NotAuthenticatedError(CreatioError):
    """Request headers were built without an auth session (a caller bug, never retried)."""

    error_type = CRMErrorType.NOT_AUTHENTICATED

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)
