import base64
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from authengine.app import app
from authengine.service.runtime import get_runtime
from authengine.storage.models import utcnow

PASSWORD = "CorrectHorse42"


@pytest.fixture
def outbox(monkeypatch, fake_email):
    runtime = get_runtime()
    email = fake_email
    monkeypatch.setattr(runtime.auth, "email", email)
    # Deliver inline so tests can read tokens straight after the response
    monkeypatch.setattr(runtime.auth, "_notify", lambda send, *args: send(*args))
    return email


@pytest.fixture
def client(outbox):
    with TestClient(app) as test_client:
        yield test_client


def _register(client, email, password=PASSWORD):
    return client.post("/v1/auth/register", json={"email": email, "password": password})


def _register_and_verify(client, outbox, email):
    assert _register(client, email).status_code == 201
    (token,) = outbox.last("verification")
    resp = client.post("/v1/auth/verify-email", json={"email": email, "token": token})
    assert resp.status_code == 200
    return resp.json()["data"]


def _login(client, email, password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_register_verify_login_me(client, outbox):
    resp = _register(client, "Flow@Example.com")
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["email"] == "flow@example.com"
    assert body["data"]["is_verified"] is False
    assert body["data"]["status"] == "INACTIVE"

    blocked = _login(client, "flow@example.com")
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "account_not_verified"

    (token,) = outbox.last("verification")
    verified = client.post("/v1/auth/verify-email", json={"email": "flow@example.com", "token": token})
    assert verified.json()["data"]["status"] == "ACTIVE"

    login = _login(client, "flow@example.com", device_name="laptop")
    assert login.status_code == 200
    data = login.json()["data"]
    assert data["is_first_login"] is True
    assert data["tokens"]["token_type"] == "bearer"

    me = client.get("/v1/auth/me", headers=_bearer(data["tokens"]))
    assert me.status_code == 200
    assert me.json()["data"]["session_id"] == data["session_id"]


def test_verification_token_is_single_use(client, outbox):
    _register(client, "once@example.com")
    (token,) = outbox.last("verification")
    payload = {"email": "once@example.com", "token": token}
    assert client.post("/v1/auth/verify-email", json=payload).status_code == 200
    replay = client.post("/v1/auth/verify-email", json=payload)
    assert replay.status_code == 400
    assert replay.json()["error"]["code"] == "invalid_or_expired_artifact"


def test_error_envelope_and_request_id(client):
    resp = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 401
    assert resp.headers["X-Request-ID"] == "req-123"
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    assert body["request_id"] == "req-123"


def test_validation_error_shape(client):
    resp = client.post("/v1/auth/register", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert isinstance(body["error"]["details"], list)


def test_register_rate_limit_sets_retry_after(client):
    for i in range(3):
        resp = _register(client, f"user{i}@example.com")
        assert resp.status_code == 201
        assert resp.headers["X-RateLimit-Limit"] == "3"
    refused = _register(client, "user3@example.com")
    assert refused.status_code == 429
    assert refused.json()["error"]["code"] == "rate_limited"
    assert int(refused.headers["Retry-After"]) > 0
    assert refused.json()["error"]["details"]["retry_after_seconds"] == int(refused.headers["Retry-After"])
    assert refused.headers["X-RateLimit-Limit"] == "3"
    assert refused.headers["X-RateLimit-Remaining"] == "0"


def test_login_failures_are_generic_then_rate_limited(client, outbox):
    _register_and_verify(client, outbox, "limit@example.com")
    unknown = _login(client, "nobody@example.com")
    wrong = _login(client, "limit@example.com", password="WrongHorse42")
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    for _ in range(4):
        _login(client, "limit@example.com", password="WrongHorse42")
    refused = _login(client, "limit@example.com")
    assert refused.status_code == 429


def test_second_factor_attempts_spend_login_budget(client, outbox):
    _register_and_verify(client, outbox, "otp-spray@example.com")
    for _ in range(5):
        resp = _login(client, "otp-spray@example.com", password="WrongHorse42", two_factor_code="000000")
        assert resp.status_code == 401
    refused = _login(client, "otp-spray@example.com", password="WrongHorse42", two_factor_code="000000")
    assert refused.status_code == 429
    assert refused.json()["error"]["code"] == "rate_limited"


def test_locked_email_returns_423(client, outbox):
    _register_and_verify(client, outbox, "locked@example.com")
    store = get_runtime().store
    now = utcnow()
    for _ in range(5):
        store.record_failed_login(
            "locked@example.com", "9.9.9.9", now=now, max_attempts=5, lockout=timedelta(minutes=15)
        )
    resp = _login(client, "locked@example.com")
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"
    assert 0 < int(resp.headers["Retry-After"]) <= 900


def test_refresh_rotation_and_reuse(client, outbox):
    _register_and_verify(client, outbox, "rotate@example.com")
    tokens = _login(client, "rotate@example.com").json()["data"]["tokens"]

    rotated = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    new_tokens = rotated.json()["data"]

    reused = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reused.status_code == 401
    # Reuse revokes the whole session, so the rotated pair is dead too
    assert client.get("/v1/auth/me", headers=_bearer(new_tokens)).status_code == 401


def test_refresh_rejects_non_ascii_signature(client):
    header = base64.urlsafe_b64encode(b'{"alg":"HS256","typ":"JWT"}').decode().rstrip("=")
    payload = base64.urlsafe_b64encode(b'{"token_type":"refresh"}').decode().rstrip("=")
    resp = client.post("/v1/auth/refresh", json={"refresh_token": f"{header}.{payload}.\u00e9"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_refresh_token"


def test_sessions_listing_and_revocation(client, outbox):
    _register_and_verify(client, outbox, "multi@example.com")
    first = _login(client, "multi@example.com").json()["data"]
    second = _login(client, "multi@example.com").json()["data"]

    listing = client.get("/v1/auth/sessions", headers=_bearer(first["tokens"]))
    items = listing.json()["data"]["items"]
    assert len(items) == 2
    assert [s["current"] for s in items if s["id"] == first["session_id"]] == [True]

    revoked = client.delete("/v1/auth/sessions", headers=_bearer(first["tokens"]))
    assert revoked.json()["data"]["revoked"] == 1
    assert client.get("/v1/auth/me", headers=_bearer(second["tokens"])).status_code == 401
    assert client.get("/v1/auth/me", headers=_bearer(first["tokens"])).status_code == 200


def test_logout_invalidates_access_token(client, outbox):
    _register_and_verify(client, outbox, "bye@example.com")
    tokens = _login(client, "bye@example.com").json()["data"]["tokens"]
    assert client.post("/v1/auth/logout", headers=_bearer(tokens)).status_code == 200
    assert client.get("/v1/auth/me", headers=_bearer(tokens)).status_code == 401


def test_password_reset_flow(client, outbox):
    _register_and_verify(client, outbox, "forgot@example.com")
    tokens = _login(client, "forgot@example.com").json()["data"]["tokens"]

    assert client.post("/v1/auth/forgot-password", json={"email": "forgot@example.com"}).status_code == 200
    # Unknown addresses get the same answer
    assert client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"}).status_code == 200

    (code,) = outbox.last("password_reset")
    reset = client.post(
        "/v1/auth/reset-password",
        json={"email": "forgot@example.com", "code": code, "new_password": "BrandNewPass99"},
    )
    assert reset.status_code == 200
    assert client.get("/v1/auth/me", headers=_bearer(tokens)).status_code == 401
    assert _login(client, "forgot@example.com", password="BrandNewPass99").status_code == 200


def test_admin_audit_requires_capability(client, outbox):
    target = _register_and_verify(client, outbox, "target@example.com")
    _register_and_verify(client, outbox, "ops@example.com")
    tokens = _login(client, "ops@example.com").json()["data"]["tokens"]
    url = f"/v1/admin/accounts/{target['account_id']}/security-audit"

    denied = client.get(url, headers=_bearer(tokens))
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "forbidden"

    runtime = get_runtime()
    ops = runtime.store.get_account_by_email("ops@example.com")
    runtime.store.update_account_role(ops.id, "admin")
    allowed = client.get(url, headers=_bearer(tokens))
    assert allowed.status_code == 200
    assert allowed.json()["data"]["two_factor_enabled"] is False


def test_own_security_audit(client, outbox):
    _register_and_verify(client, outbox, "audit@example.com")
    tokens = _login(client, "audit@example.com").json()["data"]["tokens"]
    resp = client.get("/v1/account/security-audit", headers=_bearer(tokens))
    data = resp.json()["data"]
    assert len(data["recent_logins"]) == 1
    assert data["active_sessions"][0]["current"] is True


def test_security_headers(client):
    resp = client.get("/healthz")
    assert resp.headers["Cache-Control"].startswith("no-store")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_healthz_reports_components(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["version"] == "0.1.0"
