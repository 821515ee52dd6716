from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Union

from tokenledger.config import Settings
from tokenledger.logging import get_logger
from tokenledger.service.errors import (
    ExpiryError,
    InvalidTokenError,
    NotFoundError,
    RevokedError,
    TokenIssuanceError,
    TokenNotFoundError,
    TypeMismatchError,
)
from tokenledger.service.sessions import SessionAccountant
from tokenledger.service.signer import TokenClaims, TokenSigner
from tokenledger.storage.models import SessionInfo, TokenRecord, TokenType

logger = get_logger(__name__)

# revoked_by markers written by the service itself
REVOKED_BY_ROTATION = "system:rotation"
REVOKED_BY_EXPIRY = "system:expired"
REVOKED_BY_ROLLBACK = "system:issuance_rollback"
REVOKED_BY_REUSE = "system:refresh_reuse"

DEFAULT_ROLE = "free"
_BEARER_PREFIX = "Bearer "


class TokenStore(Protocol):
    def insert_token(self, record: TokenRecord) -> TokenRecord: ...

    def get_token(self, token_id: str) -> Optional[TokenRecord]: ...

    def get_active_token(self, token_id: str) -> Optional[TokenRecord]: ...

    def revoke_token(
        self,
        token_id: str,
        revoked_by: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        token_type: Optional[TokenType] = None,
    ) -> bool: ...

    def revoke_user_tokens(
        self,
        user_id: str,
        revoked_by: Optional[str] = None,
        *,
        token_type: Optional[TokenType] = None,
        exclude_token_id: Optional[str] = None,
    ) -> int: ...

    def revoke_expired_tokens(self, now: datetime, revoked_by: Optional[str] = None) -> int: ...

    def purge_revoked_tokens(self, before: datetime) -> int: ...

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


@dataclass
class TokenIdentity:
    """A caller-verified user the service may mint tokens for."""

    id: Union[str, int]
    email: str
    role: str = DEFAULT_ROLE


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a token check.

    ``reason`` is set on failure and is for logs only. ``claims`` may be set on
    failure when the signature verified, so internal callers can inspect the
    ledger row; public methods drop it.
    """

    claims: Optional[TokenClaims] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None and self.claims is not None


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Return the raw token from an ``Authorization: Bearer <token>`` value."""

    if not header_value or not header_value.startswith(_BEARER_PREFIX):
        return None
    token = header_value[len(_BEARER_PREFIX):].strip()
    return token or None


class TokenService:
    """Issue, validate, rotate and revoke paired access/refresh tokens.

    Holds only immutable configuration (the signer's keys and lifetimes);
    every piece of mutable state lives in the store.
    """

    def __init__(
        self,
        store: TokenStore,
        signer: TokenSigner,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        retention: timedelta = timedelta(days=30),
        revoke_family_on_refresh_reuse: bool = False,
    ) -> None:
        self.store = store
        self.signer = signer
        self.sessions = SessionAccountant(store)
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.retention = retention
        self.revoke_family_on_refresh_reuse = revoke_family_on_refresh_reuse
        self.logger = logger

    @classmethod
    def from_settings(cls, store: TokenStore, settings: Settings) -> "TokenService":
        return cls(
            store,
            TokenSigner.from_settings(settings),
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            retention=timedelta(days=settings.token_retention_days),
            revoke_family_on_refresh_reuse=settings.revoke_family_on_refresh_reuse,
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def _call(self, fn, *args, **kwargs):
        # Stores are synchronous; keep blocking I/O off the event loop
        return await asyncio.to_thread(fn, *args, **kwargs)

    # issuance
    async def generate_tokens(
        self,
        identity: TokenIdentity,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        iat = int(self._now().timestamp())
        issued_at = datetime.fromtimestamp(iat, timezone.utc)
        sub = str(identity.id)
        role = identity.role or DEFAULT_ROLE

        claim_sets = [
            TokenClaims(
                sub=sub,
                email=identity.email,
                role=role,
                iat=iat,
                exp=iat + int(ttl.total_seconds()),
                jti=self.signer.new_token_id(),
                type=token_type,
            )
            for token_type, ttl in (
                (TokenType.ACCESS, self.access_ttl),
                (TokenType.REFRESH, self.refresh_ttl),
            )
        ]
        access_claims, refresh_claims = claim_sets
        access_token = self.signer.sign(access_claims)
        refresh_token = self.signer.sign(refresh_claims)

        records = [
            TokenRecord(
                id=claims.jti,
                user_id=sub,
                token_type=claims.type,
                issued_at=issued_at,
                expires_at=datetime.fromtimestamp(claims.exp, timezone.utc),
                device_info=dict(device_info) if device_info else None,
                ip_address=ip_address,
            )
            for claims in claim_sets
        ]
        # The two rows have distinct keys, so the writes can run side by side
        results = await asyncio.gather(
            *(self._call(self.store.insert_token, record) for record in records),
            return_exceptions=True,
        )
        failures = [res for res in results if isinstance(res, BaseException)]
        if failures:
            written = [
                record
                for record, res in zip(records, results)
                if not isinstance(res, BaseException)
            ]
            await self._rollback_issuance(written)
            self.logger.error(
                "token_issuance_failed",
                user_id=sub,
                error_type=type(failures[0]).__name__,
                error=str(failures[0]),
                rolled_back=len(written),
            )
            raise TokenIssuanceError(
                "failed to persist token pair", detail={"user_id": sub}
            ) from failures[0]

        self.logger.info(
            "token_pair_issued",
            user_id=sub,
            access_jti=access_claims.jti,
            refresh_jti=refresh_claims.jti,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    async def _rollback_issuance(self, written: List[TokenRecord]) -> None:
        """Revoke the half of a pair that did reach the store."""

        for record in written:
            try:
                await self._call(self.store.revoke_token, record.id, REVOKED_BY_ROLLBACK)
            except Exception as exc:
                self.logger.error(
                    "token_issuance_rollback_failed",
                    token_id=record.id,
                    error=str(exc),
                )

    # validation
    async def _ledger_call(self, fn, *args):
        """Run a store call during validation; an unreachable ledger fails closed."""

        try:
            return await self._call(fn, *args)
        except Exception as exc:
            self.logger.error(
                "token_validation_store_error",
                operation=fn.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InvalidTokenError(reason="store_error") from exc

    async def check_token(
        self, token: str, expected_type: TokenType = TokenType.ACCESS
    ) -> ValidationResult:
        expected_type = TokenType(expected_type)
        now = self._now()
        claims: Optional[TokenClaims] = None
        try:
            claims = self.signer.verify(token, expected_type, now=now.timestamp())
            if claims.type != expected_type:
                raise TypeMismatchError()
            record = await self._ledger_call(self.store.get_active_token, claims.jti)
            if record is None:
                # Both outcomes collapse to the same public result
                stale = await self._ledger_call(self.store.get_token, claims.jti)
                raise RevokedError() if stale is not None else TokenNotFoundError()
            if record.token_type != claims.type or record.user_id != claims.sub:
                raise InvalidTokenError(reason="record_mismatch")
            if now.timestamp() >= claims.exp or now >= record.expires_at:
                # Inside the leeway window: retire the row now
                await self._ledger_call(self.store.revoke_token, claims.jti, REVOKED_BY_EXPIRY)
                raise ExpiryError()
        except InvalidTokenError as exc:
            return ValidationResult(claims=claims, reason=exc.reason)
        return ValidationResult(claims=claims)

    async def validate_token(
        self, token: str, expected_type: TokenType = TokenType.ACCESS
    ) -> Optional[TokenClaims]:
        """Return the token's claims, or None however validation failed."""

        result = await self.check_token(token, expected_type)
        if not result.ok:
            self.logger.info(
                "token_validation_failed",
                reason=result.reason,
                expected_type=TokenType(expected_type).value,
                jti=result.claims.jti if result.claims else None,
            )
            return None
        return result.claims

    # rotation
    async def refresh_token(
        self,
        refresh_token: str,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[TokenPair]:
        """Consume a refresh token and issue a brand new pair.

        Refresh tokens are single use: a second presentation of the same
        token always fails.
        """
        result = await self.check_token(refresh_token, TokenType.REFRESH)
        if not result.ok:
            self.logger.info("token_refresh_rejected", reason=result.reason)
            if result.reason == RevokedError.reason and result.claims:
                await self._handle_refresh_reuse(result.claims)
            return None

        claims = result.claims
        # Conditional revoke acts as compare-and-set between racing refreshes
        consumed = await self._call(self.store.revoke_token, claims.jti, REVOKED_BY_ROTATION)
        if not consumed:
            self.logger.warning(
                "token_refresh_race_lost", jti=claims.jti, user_id=claims.sub
            )
            return None

        identity = TokenIdentity(id=claims.sub, email=claims.email, role=claims.role)
        return await self.generate_tokens(identity, device_info, ip_address)

    async def _handle_refresh_reuse(self, claims: TokenClaims) -> None:
        record = await self._call(self.store.get_token, claims.jti)
        if not record or record.revoked_by != REVOKED_BY_ROTATION:
            return
        self.logger.warning(
            "refresh_token_reuse_detected",
            jti=claims.jti,
            user_id=record.user_id,
            revoked_at=record.revoked_at.isoformat() if record.revoked_at else None,
        )
        if self.revoke_family_on_refresh_reuse:
            await self.revoke_all_for_user(record.user_id, REVOKED_BY_REUSE)

    # revocation
    async def revoke(self, jti: str, revoked_by: Optional[str] = None) -> bool:
        """Revoke one token by id; revoking twice is a no-op."""

        revoked = await self._call(self.store.revoke_token, jti, revoked_by)
        if revoked:
            self.logger.info("token_revoked", jti=jti, revoked_by=revoked_by)
        return revoked

    async def revoke_presented_token(
        self,
        token: str,
        expected_type: TokenType,
        revoked_by: Optional[str] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> bool:
        """Revoke a token the caller holds, e.g. on logout.

        The signature must verify against the class secret (expiry is
        ignored); when ``owner_id`` is given the token must belong to it.
        """
        expected_type = TokenType(expected_type)
        try:
            claims = self.signer.verify(
                token, expected_type, now=self._now().timestamp(), verify_expiry=False
            )
        except InvalidTokenError as exc:
            self.logger.info("revoke_presented_token_rejected", reason=exc.reason)
            return False
        if claims.type != expected_type:
            return False
        if owner_id is not None and claims.sub != str(owner_id):
            self.logger.warning(
                "revoke_presented_token_foreign", jti=claims.jti, owner_id=str(owner_id)
            )
            return False
        return await self.revoke(claims.jti, revoked_by)

    async def revoke_all_for_user(
        self, user_id: Union[str, int], revoked_by: Optional[str] = None
    ) -> int:
        """Revoke every live token of a user (logout everywhere, password change)."""

        count = await self._call(self.store.revoke_user_tokens, str(user_id), revoked_by)
        self.logger.info(
            "tokens_revoked_for_user", user_id=str(user_id), count=count, revoked_by=revoked_by
        )
        return count

    async def revoke_session(
        self,
        user_id: Union[str, int],
        session_id: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        """Sign out one device by its session (refresh token) id.

        Unknown, already revoked and foreign ids all raise the same
        ``NotFoundError``.
        """
        revoked = await self._call(
            self.store.revoke_token,
            session_id,
            revoked_by,
            user_id=str(user_id),
            token_type=TokenType.REFRESH,
        )
        if not revoked:
            raise NotFoundError("session not found")
        self.logger.info(
            "session_revoked", user_id=str(user_id), session_id=session_id, revoked_by=revoked_by
        )

    async def revoke_other_sessions(
        self,
        user_id: Union[str, int],
        keep_session_id: str,
        revoked_by: Optional[str] = None,
    ) -> int:
        """Sign out every device of a user except ``keep_session_id``."""

        keep = await self._call(self.store.get_active_token, keep_session_id)
        if (
            keep is None
            or keep.user_id != str(user_id)
            or keep.token_type != TokenType.REFRESH
            or not keep.is_active(self._now())
        ):
            raise NotFoundError("session not found")
        count = await self._call(
            self.store.revoke_user_tokens,
            str(user_id),
            revoked_by,
            token_type=TokenType.REFRESH,
            exclude_token_id=keep_session_id,
        )
        self.logger.info(
            "other_sessions_revoked",
            user_id=str(user_id),
            kept_session_id=keep_session_id,
            count=count,
        )
        return count

    # maintenance
    async def cleanup_expired_tokens(self) -> int:
        count = await self._call(
            self.store.revoke_expired_tokens, self._now(), REVOKED_BY_EXPIRY
        )
        self.logger.info("expired_tokens_swept", count=count)
        return count

    async def purge_revoked_tokens(self, retention_days: Optional[int] = None) -> int:
        """Delete revoked rows whose expiry is older than the retention window."""

        retention = (
            timedelta(days=retention_days) if retention_days is not None else self.retention
        )
        cutoff = self._now() - retention
        count = await self._call(self.store.purge_revoked_tokens, cutoff)
        self.logger.info("revoked_tokens_purged", count=count, cutoff=cutoff.isoformat())
        return count

    # session accounting
    async def active_session_count(self, user_id: Union[str, int]) -> int:
        return await self._call(self.sessions.active_session_count, str(user_id), self._now())

    async def list_sessions(self, user_id: Union[str, int]) -> List[SessionInfo]:
        return await self._call(self.sessions.list_sessions, str(user_id), self._now())
