from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from tokenledger.api.schemas import (
    Envelope,
    LogoutRequest,
    LogoutResponse,
    RevokeOtherSessionsRequest,
    SessionResponse,
    SessionsResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from tokenledger.logging import get_logger
from tokenledger.service.runtime import get_runtime
from tokenledger.service.signer import TokenClaims
from tokenledger.service.tokens import extract_bearer_token
from tokenledger.storage.models import TokenType

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_info(request: Request, provided: Optional[dict] = None) -> Optional[dict]:
    info = dict(provided or {})
    user_agent = request.headers.get("User-Agent")
    if user_agent and "user_agent" not in info:
        info["user_agent"] = user_agent[:512]
    return info or None


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    """Resolve the bearer access token into its claims or fail with 401."""

    token = extract_bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "invalid or missing token", status_code=401)
    runtime = get_runtime()
    claims = await runtime.tokens.validate_token(token, TokenType.ACCESS)
    if not claims:
        raise _http_error("unauthorized", "invalid or missing token", status_code=401)
    return claims


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.tokens.refresh_token(
        body.refresh_token,
        device_info=_device_info(request, body.device_info),
        ip_address=_client_ip(request),
    )
    if not pair:
        raise _http_error("unauthorized", "invalid refresh token", status_code=401)
    return Envelope(status="ok", data=TokenPairResponse(**pair.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    revoked = 0
    if await runtime.tokens.revoke(principal.jti, principal.sub):
        revoked += 1
    if body and body.refresh_token:
        # Only the caller's own refresh token may be retired here
        if await runtime.tokens.revoke_presented_token(
            body.refresh_token,
            TokenType.REFRESH,
            principal.sub,
            owner_id=principal.sub,
        ):
            revoked += 1
    logger.info("logout_completed", user_id=principal.sub, revoked=revoked)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.tokens.revoke_all_for_user(principal.sub, principal.sub)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.tokens.list_sessions(principal.sub)
    active = await runtime.tokens.active_session_count(principal.sub)
    return Envelope(
        status="ok",
        data=SessionsResponse(
            active_sessions=active,
            sessions=[
                SessionResponse(
                    id=session.id,
                    issued_at=session.issued_at,
                    expires_at=session.expires_at,
                    device_info=session.device_info,
                    ip_address=session.ip_address,
                )
                for session in sessions
            ],
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., min_length=1, max_length=64),
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.tokens.revoke_session(principal.sub, session_id, principal.sub)
    return Envelope(status="ok", data=LogoutResponse(revoked=1))


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(
    body: RevokeOtherSessionsRequest,
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    revoked = await runtime.tokens.revoke_other_sessions(
        principal.sub, body.session_id, principal.sub
    )
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))
