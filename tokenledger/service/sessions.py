from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from tokenledger.storage.models import SessionInfo, TokenRecord, TokenType


class SessionLedger(Protocol):
    def count_active_tokens(
        self, user_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> int: ...

    def list_user_tokens(
        self,
        user_id: str,
        token_type: Optional[TokenType] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[TokenRecord]: ...


class SessionAccountant:
    """Read model deriving signed-in devices from the ledger.

    Each live refresh token is one session: rotation replaces it, logout
    revokes it, and it lapses with its expiry.
    """

    def __init__(self, store: SessionLedger) -> None:
        self.store = store

    def active_session_count(self, user_id: str, now: datetime) -> int:
        return self.store.count_active_tokens(str(user_id), TokenType.REFRESH, now)

    def list_sessions(self, user_id: str, now: datetime) -> List[SessionInfo]:
        records = self.store.list_user_tokens(str(user_id), TokenType.REFRESH, now=now)
        return [SessionInfo.from_record(record) for record in records]
