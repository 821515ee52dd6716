from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from tokenledger.logging import get_logger
from tokenledger.storage.errors import ConstraintViolation
from tokenledger.storage.models import TokenRecord, TokenType


class MemoryStore:
    """In-process token ledger for tests and single-node development.

    When ``fs_root`` is given the ledger is snapshotted to
    ``<fs_root>/state/token_ledger.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, TokenRecord] = {}
        # RLock so bulk helpers can call single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self.state_path: Optional[Path] = None
        if self.fs_root is not None:
            state_dir = self.fs_root / "state"
            state_dir.mkdir(parents=True, exist_ok=True)
            self.state_path = state_dir / "token_ledger.json"
            self._load_state(self.state_path)

    @staticmethod
    def _copy(record: TokenRecord) -> TokenRecord:
        # Callers never get a handle on stored rows
        device_info = dict(record.device_info) if record.device_info else record.device_info
        return replace(record, device_info=device_info)

    # ledger writes
    def insert_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.id in self.tokens:
                raise ConstraintViolation("token id already exists", {"token_id": record.id})
            self.tokens[record.id] = self._copy(record)
            try:
                self._persist_state()
            except Exception:
                # The row only counts once it is durable
                self.tokens.pop(record.id, None)
                raise
            return self._copy(record)

    def revoke_token(
        self,
        token_id: str,
        revoked_by: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool:
        """Revoke one live row; ``user_id``/``token_type`` further scope the match."""
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record or record.is_revoked:
                return False
            if user_id is not None and record.user_id != str(user_id):
                return False
            if token_type is not None and record.token_type != TokenType(token_type):
                return False
            self._mark_revoked(record, datetime.now(timezone.utc), revoked_by)
            self._persist_state()
            return True

    def revoke_user_tokens(
        self,
        user_id: str,
        revoked_by: Optional[str] = None,
        *,
        token_type: Optional[TokenType] = None,
        exclude_token_id: Optional[str] = None,
    ) -> int:
        user_id = str(user_id)
        with self._data_lock:
            now = datetime.now(timezone.utc)
            targets = [
                rec for rec in self.tokens.values()
                if rec.user_id == user_id
                and not rec.is_revoked
                and (token_type is None or rec.token_type == TokenType(token_type))
                and rec.id != exclude_token_id
            ]
            for record in targets:
                self._mark_revoked(record, now, revoked_by)
            if targets:
                self._persist_state()
            return len(targets)

    def revoke_expired_tokens(self, now: datetime, revoked_by: Optional[str] = None) -> int:
        with self._data_lock:
            targets = [
                rec for rec in self.tokens.values()
                if rec.expires_at < now and not rec.is_revoked
            ]
            for record in targets:
                self._mark_revoked(record, now, revoked_by)
            if targets:
                self._persist_state()
            return len(targets)

    def purge_revoked_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id for token_id, rec in self.tokens.items()
                if rec.is_revoked and rec.expires_at < before
            ]
            for token_id in stale:
                self.tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    @staticmethod
    def _mark_revoked(record: TokenRecord, when: datetime, revoked_by: Optional[str]) -> None:
        record.is_revoked = True
        record.revoked_at = when
        record.revoked_by = revoked_by

    # ledger reads
    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            return self._copy(record) if record else None

    def get_active_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record or record.is_revoked:
                return None
            return self._copy(record)

    def count_active_tokens(
        self, user_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> int:
        user_id = str(user_id)
        token_type = TokenType(token_type)
        with self._data_lock:
            return sum(
                1
                for rec in self.tokens.values()
                if rec.user_id == user_id
                and rec.token_type == token_type
                and not rec.is_revoked
                and (now is None or rec.expires_at > now)
            )

    def list_user_tokens(
        self,
        user_id: str,
        token_type: Optional[TokenType] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[TokenRecord]:
        user_id = str(user_id)
        with self._data_lock:
            records = [
                self._copy(rec)
                for rec in self.tokens.values()
                if rec.user_id == user_id
                and not rec.is_revoked
                and (token_type is None or rec.token_type == TokenType(token_type))
                and (now is None or rec.expires_at > now)
            ]
        records.sort(key=lambda rec: rec.issued_at, reverse=True)
        return records

    # snapshot persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_type": record.token_type.value,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "device_info": record.device_info,
            "ip_address": record.ip_address,
            "is_revoked": record.is_revoked,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "revoked_by": record.revoked_by,
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_type=TokenType(data["token_type"]),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            is_revoked=bool(data.get("is_revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_by=data.get("revoked_by"),
        )

    def _persist_state(self) -> None:
        path = self.state_path
        if path is None:
            return
        state = {"tokens": [self._serialize_token(rec) for rec in self.tokens.values()]}
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist token ledger: {exc}") from exc

    def _load_state(self, path: Path) -> bool:
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tokens = {
            entry["id"]: self._deserialize_token(entry) for entry in data.get("tokens", [])
        }
        self.logger.info("token_ledger_loaded", path=str(path), count=len(self.tokens))
        return True
