"""Compact HS256 token signing and the per-class signing keys.

Tokens use the three-segment ``header.payload.signature`` format with
base64url segments, so tokens minted by any standard JWT library with the
same secret verify here and vice versa.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from tokenledger.config import Settings
from tokenledger.logging import get_logger
from tokenledger.service.errors import ConfigurationError, ExpiryError, SignatureError
from tokenledger.storage.models import TokenType

logger = get_logger(__name__)

ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32
TOKEN_ID_BYTES = 16

_HEADER = {"alg": ALGORITHM, "typ": "JWT"}
_REQUIRED_CLAIMS = ("sub", "email", "role", "iat", "exp", "jti", "type")


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    email: str
    role: str
    iat: int
    exp: int
    jti: str
    type: TokenType

    def to_dict(self) -> dict[str, Any]:
        # Field order is the wire order
        return {
            "sub": self.sub,
            "email": self.email,
            "role": self.role,
            "iat": self.iat,
            "exp": self.exp,
            "jti": self.jti,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TokenClaims":
        missing = [name for name in _REQUIRED_CLAIMS if name not in payload]
        if missing:
            raise SignatureError("token claims incomplete", reason="malformed")
        try:
            token_type = TokenType(payload["type"])
            iat = int(payload["iat"])
            exp = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise SignatureError("token claims invalid", reason="malformed") from exc
        if not isinstance(payload["jti"], str) or not payload["jti"]:
            raise SignatureError("token jti invalid", reason="malformed")
        return cls(
            sub=str(payload["sub"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
            iat=iat,
            exp=exp,
            jti=payload["jti"],
            type=token_type,
        )


def new_token_id() -> str:
    """Return a 128-bit random identifier as 32 hex characters."""

    return secrets.token_hex(TOKEN_ID_BYTES)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _signature(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def sign_claims(claims: dict[str, Any], secret: str) -> str:
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_signature(signing_input, secret)}"


def verify_signed_token(
    token: str,
    secret: str,
    *,
    now: float,
    leeway_seconds: int = 0,
    verify_expiry: bool = True,
) -> dict[str, Any]:
    """Check signature and expiry and return the decoded payload.

    Raises:
        SignatureError: token is malformed (``reason="malformed"``) or the
            signature or algorithm does not match (``reason="bad_signature"``)
        ExpiryError: ``now`` is at or past ``exp`` plus the leeway
    """
    if not isinstance(token, str):
        raise SignatureError("token must be a string", reason="malformed")
    if not token.isascii():
        raise SignatureError("token must be ASCII", reason="malformed")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise SignatureError("token must have three segments", reason="malformed")
    header_b64, payload_b64, sig_b64 = parts

    try:
        header = json.loads(_decode_segment(header_b64))
    except ValueError as exc:
        raise SignatureError("token header undecodable", reason="malformed") from exc
    if not isinstance(header, dict):
        raise SignatureError("token header not an object", reason="malformed")
    # Reject alg=none and friends before touching the signature
    if header.get("alg") != ALGORITHM:
        raise SignatureError("unexpected token algorithm", reason="bad_signature")

    expected_sig = _signature(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        raise SignatureError("token signature mismatch", reason="bad_signature")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except ValueError as exc:
        raise SignatureError("token payload undecodable", reason="malformed") from exc
    if not isinstance(payload, dict):
        raise SignatureError("token payload not an object", reason="malformed")

    if verify_expiry:
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise SignatureError("token exp missing", reason="malformed")
        if now >= exp + leeway_seconds:
            raise ExpiryError("token expired")
    return payload


@dataclass(frozen=True)
class SigningKeys:
    access: str
    refresh: str

    def secret_for(self, token_type: TokenType) -> str:
        return self.access if TokenType(token_type) == TokenType.ACCESS else self.refresh

    def __repr__(self) -> str:
        return "SigningKeys(access=***, refresh=***)"


def _resolve_secret(value: Optional[str], env_var: str, settings: Settings) -> str:
    if not value:
        if settings.is_production:
            raise ConfigurationError(f"{env_var} environment variable is required in production")
        logger.warning(
            "jwt_secret_generated_ephemeral",
            env_var=env_var,
            environment=settings.environment.value,
            message="signing key is process-local; tokens die with this process",
        )
        return secrets.token_hex(64)
    if len(value) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"{env_var} must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return value


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Build the two class secrets from settings, failing fast on bad config."""

    return SigningKeys(
        access=_resolve_secret(settings.jwt_access_secret, "JWT_ACCESS_SECRET", settings),
        refresh=_resolve_secret(settings.jwt_refresh_secret, "JWT_REFRESH_SECRET", settings),
    )


class TokenSigner:
    """Signs and verifies claim sets with the secret of their token class."""

    def __init__(self, keys: SigningKeys, *, leeway_seconds: int = 0) -> None:
        self._keys = keys
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(load_signing_keys(settings), leeway_seconds=settings.token_leeway_seconds)

    @staticmethod
    def new_token_id() -> str:
        return new_token_id()

    def sign(self, claims: TokenClaims) -> str:
        return sign_claims(claims.to_dict(), self._keys.secret_for(claims.type))

    def verify(
        self,
        token: str,
        expected_type: TokenType,
        *,
        now: float,
        verify_expiry: bool = True,
    ) -> TokenClaims:
        payload = verify_signed_token(
            token,
            self._keys.secret_for(expected_type),
            now=now,
            leeway_seconds=self.leeway_seconds,
            verify_expiry=verify_expiry,
        )
        return TokenClaims.from_dict(payload)
