from __future__ import annotations

from typing import Optional


class OAuthError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and the ``error_code`` that is
    rendered as ``{"error": ..., "error_description": ...}``:
    - invalid_request (400)
    - invalid_client (400 at /authorize, 401 at /token)
    - unsupported_response_type (400)
    - unsupported_grant_type (400)
    - invalid_grant (400 at /token, 401 at /refresh)
    - unauthorized (401)
    - invalid_token (401)
    - access_denied (403)
    - user_not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class InvalidRequestError(OAuthError):
    """Missing or malformed request parameter (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidClientError(OAuthError):
    """Unknown client or bad client credentials (400)."""
    status_code = 400
    error_code = "invalid_client"


class UnsupportedResponseTypeError(OAuthError):
    status_code = 400
    error_code = "unsupported_response_type"


class UnsupportedGrantTypeError(OAuthError):
    status_code = 400
    error_code = "unsupported_grant_type"


class InvalidGrantError(OAuthError):
    """Code or refresh token is unknown, expired, used, revoked or fails PKCE (400)."""
    status_code = 400
    error_code = "invalid_grant"


class UnauthorizedError(OAuthError):
    """Credential missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(OAuthError):
    """Bearer token failed introspection (401)."""
    status_code = 401
    error_code = "invalid_token"


class AccessDeniedError(OAuthError):
    """Credential present but not sufficient (403)."""
    status_code = 403
    error_code = "access_denied"


class UserNotFoundError(OAuthError):
    """Authenticated caller has no identity record (404)."""
    status_code = 404
    error_code = "user_not_found"


class ServerError(OAuthError):
    """Configuration or infrastructure failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "OAuthError",
    "InvalidRequestError",
    "InvalidClientError",
    "UnsupportedResponseTypeError",
    "UnsupportedGrantTypeError",
    "InvalidGrantError",
    "UnauthorizedError",
    "InvalidTokenError",
    "AccessDeniedError",
    "UserNotFoundError",
    "ServerError",
]
