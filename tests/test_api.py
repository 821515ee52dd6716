import asyncio

import pytest
from fastapi.testclient import TestClient

from tokenledger.app import app
from tokenledger.service.runtime import get_runtime
from tokenledger.service.tokens import TokenIdentity
from tokenledger.storage.models import TokenType


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _issue(user_id=42, email="user42@example.com"):
    runtime = get_runtime()
    return asyncio.run(runtime.tokens.generate_tokens(TokenIdentity(id=user_id, email=email)))


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _assert_unauthorized(response):
    assert response.status_code == 401
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    return body


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_refresh_returns_new_pair(client):
    pair = _issue()

    response = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": pair.refresh_token},
        headers={"User-Agent": "pytest-client"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900
    assert data["refresh_token"] != pair.refresh_token

    sessions = client.get("/v1/auth/sessions", headers=_auth(data["access_token"])).json()["data"]
    assert sessions["active_sessions"] == 1
    assert sessions["sessions"][0]["device_info"] == {"user_agent": "pytest-client"}


def test_refresh_replay_is_unauthorized(client):
    pair = _issue()
    assert client.post("/v1/auth/refresh", json={"refresh_token": pair.refresh_token}).status_code == 200

    body = _assert_unauthorized(
        client.post("/v1/auth/refresh", json={"refresh_token": pair.refresh_token})
    )
    assert "revoked" not in body["error"]["message"]


def test_refresh_with_access_token_is_unauthorized(client):
    pair = _issue()
    _assert_unauthorized(client.post("/v1/auth/refresh", json={"refresh_token": pair.access_token}))


def test_refresh_requires_body(client):
    response = client.post("/v1/auth/refresh", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Token abc"},
        {"Authorization": "Bearer "},
        {"Authorization": "Bearer not.a.token"},
    ],
)
def test_protected_routes_reject_missing_or_bad_tokens(client, headers):
    bodies = [
        _assert_unauthorized(client.get("/v1/auth/sessions", headers=headers)),
        _assert_unauthorized(client.post("/v1/auth/logout-all", headers=headers)),
    ]
    assert {body["error"]["message"] for body in bodies} == {"invalid or missing token"}


def test_refresh_token_is_not_a_bearer_credential(client):
    pair = _issue()
    _assert_unauthorized(client.get("/v1/auth/sessions", headers=_auth(pair.refresh_token)))


def test_logout_revokes_access_and_refresh(client):
    pair = _issue()

    response = client.post(
        "/v1/auth/logout",
        json={"refresh_token": pair.refresh_token},
        headers=_auth(pair.access_token),
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 2}
    _assert_unauthorized(client.get("/v1/auth/sessions", headers=_auth(pair.access_token)))
    _assert_unauthorized(client.post("/v1/auth/refresh", json={"refresh_token": pair.refresh_token}))


def test_logout_without_body_revokes_access_only(client):
    pair = _issue()

    response = client.post("/v1/auth/logout", headers=_auth(pair.access_token))

    assert response.json()["data"] == {"revoked": 1}
    assert client.post("/v1/auth/refresh", json={"refresh_token": pair.refresh_token}).status_code == 200


def test_logout_cannot_revoke_another_users_refresh_token(client):
    mine = _issue()
    theirs = _issue(user_id=7, email="u7@example.com")

    response = client.post(
        "/v1/auth/logout",
        json={"refresh_token": theirs.refresh_token},
        headers=_auth(mine.access_token),
    )

    assert response.json()["data"] == {"revoked": 1}
    assert client.post("/v1/auth/refresh", json={"refresh_token": theirs.refresh_token}).status_code == 200


def test_logout_all_revokes_every_session(client):
    first = _issue()
    second = _issue()
    other = _issue(user_id=7, email="u7@example.com")

    response = client.post("/v1/auth/logout-all", headers=_auth(first.access_token))

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 4}
    _assert_unauthorized(client.get("/v1/auth/sessions", headers=_auth(second.access_token)))
    assert client.get("/v1/auth/sessions", headers=_auth(other.access_token)).status_code == 200


def test_sessions_lists_only_callers_refresh_tokens(client):
    first = _issue()
    _issue()
    _issue(user_id=7, email="u7@example.com")

    response = client.get("/v1/auth/sessions", headers=_auth(first.access_token))

    data = response.json()["data"]
    assert data["active_sessions"] == 2
    runtime = get_runtime()
    ids = {session["id"] for session in data["sessions"]}
    for session_id in ids:
        record = runtime.store.get_token(session_id)
        assert record.user_id == "42"
        assert record.token_type == TokenType.REFRESH


def test_logout_ignores_non_ascii_refresh_token(client):
    pair = _issue()
    header, payload, _ = pair.refresh_token.split(".")

    response = client.post(
        "/v1/auth/logout",
        json={"refresh_token": f"{header}.{payload}.é"},
        headers=_auth(pair.access_token),
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 1}


def _session_id(token):
    runtime = get_runtime()
    return runtime.tokens.signer.verify(token, TokenType.REFRESH, now=0, verify_expiry=False).jti


def test_delete_session_signs_out_that_device(client):
    current = _issue()
    other = _issue()

    response = client.delete(
        f"/v1/auth/sessions/{_session_id(other.refresh_token)}",
        headers=_auth(current.access_token),
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 1}
    _assert_unauthorized(client.post("/v1/auth/refresh", json={"refresh_token": other.refresh_token}))
    assert client.post("/v1/auth/refresh", json={"refresh_token": current.refresh_token}).status_code == 200


def test_delete_foreign_session_is_not_found(client):
    mine = _issue()
    theirs = _issue(user_id=7, email="u7@example.com")

    response = client.delete(
        f"/v1/auth/sessions/{_session_id(theirs.refresh_token)}",
        headers=_auth(mine.access_token),
    )

    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "not_found"
    assert body["error"]["message"] == "session not found"
    assert client.post("/v1/auth/refresh", json={"refresh_token": theirs.refresh_token}).status_code == 200


def test_revoke_other_sessions_keeps_named_session(client):
    current = _issue()
    others = [_issue(), _issue()]
    bystander = _issue(user_id=7, email="u7@example.com")

    response = client.post(
        "/v1/auth/sessions/revoke-others",
        json={"session_id": _session_id(current.refresh_token)},
        headers=_auth(current.access_token),
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 2}
    for pair in others:
        _assert_unauthorized(client.post("/v1/auth/refresh", json={"refresh_token": pair.refresh_token}))
    sessions = client.get("/v1/auth/sessions", headers=_auth(current.access_token)).json()["data"]
    assert sessions["active_sessions"] == 1
    assert client.post("/v1/auth/refresh", json={"refresh_token": bystander.refresh_token}).status_code == 200


def test_revoke_other_sessions_rejects_foreign_session(client):
    mine = _issue()
    theirs = _issue(user_id=7, email="u7@example.com")

    response = client.post(
        "/v1/auth/sessions/revoke-others",
        json={"session_id": _session_id(theirs.refresh_token)},
        headers=_auth(mine.access_token),
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
