from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class TokenRecord:
    """One row of the revocation ledger, for a single access or refresh token."""

    id: str
    user_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    device_info: Dict | None = None
    ip_address: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def __post_init__(self) -> None:
        self.token_type = TokenType(self.token_type)
        self.user_id = str(self.user_id)
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and now < self.expires_at


@dataclass
class SessionInfo:
    """A live refresh token viewed as a signed-in device."""

    id: str
    issued_at: datetime
    expires_at: datetime
    device_info: Dict | None = None
    ip_address: Optional[str] = None

    @classmethod
    def from_record(cls, record: TokenRecord) -> "SessionInfo":
        return cls(
            id=record.id,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            device_info=record.device_info,
            ip_address=record.ip_address,
        )
