from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from tokenledger.logging import get_logger
from tokenledger.storage.errors import ConstraintViolation
from tokenledger.storage.models import TokenRecord, TokenType

_TOKEN_COLUMNS = (
    "id, user_id, token_type, issued_at, expires_at, device_info, ip_address, "
    "is_revoked, revoked_at, revoked_by"
)


class PostgresStore:
    """Postgres-backed revocation ledger over the ``jwt_tokens`` table.

    Bulk revocations are single UPDATE statements so they stay correct while
    other requests insert new tokens concurrently.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the ledger table exists before serving requests."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.jwt_tokens",)
            ).fetchone()
        if not row or not row.get("oid"):
            raise RuntimeError(
                "Missing required Postgres table: jwt_tokens. Apply scripts/schema.sql first."
            )

    @staticmethod
    def _row_to_record(row: dict[str, Any]) -> TokenRecord:
        device_info = row.get("device_info")
        if isinstance(device_info, str):
            try:
                device_info = json.loads(device_info)
            except ValueError:
                device_info = None
        return TokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_type=TokenType(row["token_type"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            device_info=device_info,
            ip_address=row.get("ip_address"),
            is_revoked=bool(row.get("is_revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
        )

    # ledger writes
    def insert_token(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO jwt_tokens ({_TOKEN_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_type.value,
                        record.issued_at,
                        record.expires_at,
                        Jsonb(record.device_info) if record.device_info is not None else None,
                        record.ip_address,
                        record.is_revoked,
                        record.revoked_at,
                        record.revoked_by,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token id already exists", {"token_id": record.id})
        return record

    def revoke_token(
        self,
        token_id: str,
        revoked_by: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool:
        query = """
            UPDATE jwt_tokens
            SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
            WHERE id = %s AND is_revoked = FALSE
        """
        params: list[Any] = [datetime.now(timezone.utc), revoked_by, token_id]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(str(user_id))
        if token_type is not None:
            query += " AND token_type = %s"
            params.append(TokenType(token_type).value)
        with self._connect() as conn:
            result = conn.execute(query, tuple(params))
            return result.rowcount > 0

    def revoke_user_tokens(
        self,
        user_id: str,
        revoked_by: Optional[str] = None,
        *,
        token_type: Optional[TokenType] = None,
        exclude_token_id: Optional[str] = None,
    ) -> int:
        query = """
            UPDATE jwt_tokens
            SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
            WHERE user_id = %s AND is_revoked = FALSE
        """
        params: list[Any] = [datetime.now(timezone.utc), revoked_by, str(user_id)]
        if token_type is not None:
            query += " AND token_type = %s"
            params.append(TokenType(token_type).value)
        if exclude_token_id is not None:
            query += " AND id <> %s"
            params.append(exclude_token_id)
        with self._connect() as conn:
            result = conn.execute(query, tuple(params))
            return result.rowcount

    def revoke_expired_tokens(self, now: datetime, revoked_by: Optional[str] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE jwt_tokens
                SET is_revoked = TRUE, revoked_at = %s, revoked_by = %s
                WHERE expires_at < %s AND is_revoked = FALSE
                """,
                (now, revoked_by, now),
            )
            return result.rowcount

    def purge_revoked_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM jwt_tokens WHERE is_revoked = TRUE AND expires_at < %s",
                (before,),
            )
            return result.rowcount

    # ledger reads
    def get_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM jwt_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_active_token(self, token_id: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM jwt_tokens WHERE id = %s AND is_revoked = FALSE",
                (token_id,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count_active_tokens(
        self, user_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> int:
        query = """
            SELECT COUNT(*) AS active FROM jwt_tokens
            WHERE user_id = %s AND token_type = %s AND is_revoked = FALSE
        """
        params: list[Any] = [str(user_id), TokenType(token_type).value]
        if now is not None:
            query += " AND expires_at > %s"
            params.append(now)
        with self._connect() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        return int(row["active"]) if row else 0

    def list_user_tokens(
        self,
        user_id: str,
        token_type: Optional[TokenType] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[TokenRecord]:
        query = f"SELECT {_TOKEN_COLUMNS} FROM jwt_tokens WHERE user_id = %s AND is_revoked = FALSE"
        params: list[Any] = [str(user_id)]
        if token_type is not None:
            query += " AND token_type = %s"
            params.append(TokenType(token_type).value)
        if now is not None:
            query += " AND expires_at > %s"
            params.append(now)
        query += " ORDER BY issued_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_record(row) for row in rows]
