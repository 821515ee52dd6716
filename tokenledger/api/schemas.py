from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes exposed to clients
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
}

# Device descriptors are free-form but bounded
MAX_DEVICE_INFO_KEYS = 32


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_device_info(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if len(value) > MAX_DEVICE_INFO_KEYS:
        raise ValueError(f"device_info may hold at most {MAX_DEVICE_INFO_KEYS} keys")
    for key, item in value.items():
        if isinstance(item, (dict, list)):
            raise ValueError(f"device_info[{key!r}] must be a scalar value")
    return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    device_info: Optional[Dict[str, Any]] = None

    @field_validator("device_info")
    @classmethod
    def _check_device_info(cls, value):
        return _validate_device_info(value)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class RevokeOtherSessionsRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=64)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    revoked: int


class SessionResponse(BaseModel):
    id: str
    issued_at: datetime
    expires_at: datetime
    device_info: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None


class SessionsResponse(BaseModel):
    active_sessions: int
    sessions: List[SessionResponse]
