from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code: unauthorized (401), not_found (404) or server_error (500).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A presented token was rejected.

    ``reason`` is a diagnostic code for server-side logs only; it must never
    reach a caller.
    """

    reason: str = "invalid"

    def __init__(self, message: str = "invalid token", *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class SignatureError(InvalidTokenError):
    """Token is malformed or its signature does not verify."""
    reason = "bad_signature"


class ExpiryError(InvalidTokenError):
    reason = "expired"


class TypeMismatchError(InvalidTokenError):
    """Access token presented where a refresh token is expected, or vice versa."""
    reason = "type_mismatch"


class RevokedError(InvalidTokenError):
    reason = "revoked"


class TokenNotFoundError(InvalidTokenError):
    """No active ledger row backs the token (absent or revoked)."""
    reason = "not_active"


class NotFoundError(ServiceError):
    """Target missing or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Startup configuration is unusable; the process must not serve."""


class TokenIssuanceError(ServerError):
    """A token pair could not be fully persisted."""


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "SignatureError",
    "ExpiryError",
    "TypeMismatchError",
    "RevokedError",
    "TokenNotFoundError",
    "NotFoundError",
    "ServerError",
    "ConfigurationError",
    "TokenIssuanceError",
]
