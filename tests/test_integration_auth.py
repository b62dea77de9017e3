"""End-to-end auth flows through the HTTP API."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

import linesauth.app as app_module
from linesauth.api.error_handling import register_exception_handlers
from linesauth.api.routes import get_optional_user, require_roles
from linesauth.storage.models import Role
from linesauth.service.runtime import get_runtime

PASSWORD = "Val1d!Password"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _pending_otp(email):
    return get_runtime().store.get_pending_registration(email).otp


def _reset_otp(email):
    return get_runtime().store.get_password_reset(email).otp


def _register(client, email="reader@example.com", password=PASSWORD, role=None):
    resp = client.post(
        "/v1/auth/otp/request",
        json={"email": email, "fullName": "Test Reader", "password": password},
    )
    assert resp.status_code == 200, resp.text
    body = {"email": email, "otp": _pending_otp(email)}
    if role:
        body["role"] = role
    resp = client.post("/v1/auth/register/confirm", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _auth(access_token):
    return {"Authorization": f"Bearer {access_token}"}


def test_signup_flow_returns_camel_case_payload(client):
    resp = client.post(
        "/v1/auth/otp/request",
        json={"email": "New.Reader@Example.com", "fullName": "  New Reader ", "password": PASSWORD},
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["status"] == "ok"
    assert payload["data"] == {"email": "new.reader@example.com", "expiresIn": 600}

    resp = client.post(
        "/v1/auth/register/confirm",
        json={"email": "new.reader@example.com", "otp": _pending_otp("new.reader@example.com")},
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["accessToken"] and data["refreshToken"]
    user = data["user"]
    assert user["email"] == "new.reader@example.com"
    assert user["fullName"] == "New Reader"
    assert user["role"] == "USER"
    assert user["isActive"] is True
    assert user["emailVerified"] is True
    assert "password" not in str(user).lower()


def test_signup_with_role(client):
    data = _register(client, role="editor")
    assert data["user"]["role"] == "EDITOR"


def test_duplicate_signup_conflict(client):
    _register(client)
    resp = client.post(
        "/v1/auth/otp/request",
        json={"email": "reader@example.com", "fullName": "Again", "password": PASSWORD},
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "duplicate_user"


def test_wrong_otp_reports_attempts_left(client):
    client.post(
        "/v1/auth/otp/request",
        json={"email": "reader@example.com", "fullName": "Test Reader", "password": PASSWORD},
    )
    code = _pending_otp("reader@example.com")
    wrong = "000000" if code != "000000" else "111111"
    resp = client.post("/v1/auth/register/confirm", json={"email": "reader@example.com", "otp": wrong})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "otp_invalid"
    assert error["details"] == {"attemptsLeft": 4}

    for _ in range(3):
        client.post("/v1/auth/register/confirm", json={"email": "reader@example.com", "otp": wrong})
    resp = client.post("/v1/auth/register/confirm", json={"email": "reader@example.com", "otp": wrong})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "attempts_exceeded"


def test_resend_unknown_email(client):
    resp = client.post("/v1/auth/otp/resend", json={"email": "nobody@example.com"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_pending_registration"


def test_resend_issues_new_code(client):
    client.post(
        "/v1/auth/otp/request",
        json={"email": "reader@example.com", "fullName": "Test Reader", "password": PASSWORD},
    )
    resp = client.post("/v1/auth/otp/resend", json={"email": "reader@example.com"})
    assert resp.status_code == 200
    assert resp.json()["data"]["expiresIn"] == 600


def test_login_refresh_me_logout(client):
    _register(client)
    resp = client.post("/v1/auth/login", json={"email": "READER@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    tokens = resp.json()["data"]
    assert tokens["user"]["lastLogin"] is not None

    me = client.get("/v1/auth/me", headers=_auth(tokens["accessToken"]))
    assert me.status_code == 200
    assert me.json()["data"]["user"]["email"] == "reader@example.com"

    refreshed = client.post("/v1/auth/token/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert refreshed.status_code == 200
    new_tokens = refreshed.json()["data"]
    assert new_tokens["refreshToken"] != tokens["refreshToken"]

    replay = client.post("/v1/auth/token/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "token_invalid"

    out = client.post(
        "/v1/auth/logout",
        json={"refreshToken": new_tokens["refreshToken"]},
        headers=_auth(new_tokens["accessToken"]),
    )
    assert out.status_code == 200
    assert out.json()["data"] == {"success": True, "message": "Logged out successfully"}
    after = client.post("/v1/auth/token/refresh", json={"refreshToken": new_tokens["refreshToken"]})
    assert after.status_code == 401


def test_logout_without_body_revokes_everything(client):
    data = _register(client)
    second = client.post("/v1/auth/login", json={"email": "reader@example.com", "password": PASSWORD}).json()["data"]
    resp = client.post("/v1/auth/logout", headers=_auth(data["accessToken"]))
    assert resp.status_code == 200
    for token in (data["refreshToken"], second["refreshToken"]):
        assert client.post("/v1/auth/token/refresh", json={"refreshToken": token}).status_code == 401


def test_logout_all(client):
    data = _register(client)
    resp = client.post("/v1/auth/logout-all", headers=_auth(data["accessToken"]))
    assert resp.status_code == 200
    assert resp.json()["data"]["message"] == "Logged out from all devices successfully"
    assert get_runtime().store.list_user_refresh_tokens(data["user"]["id"]) == []


def test_login_failures(client):
    _register(client)
    resp = client.post("/v1/auth/login", json={"email": "reader@example.com", "password": "Wr0ng!Pass"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_credentials"

    unknown = client.post("/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert unknown.status_code == 401
    assert unknown.json()["error"]["message"] == resp.json()["error"]["message"]


def test_deactivated_account(client):
    data = _register(client)
    get_runtime().store.set_user_active(data["user"]["id"], False)

    login = client.post("/v1/auth/login", json={"email": "reader@example.com", "password": PASSWORD})
    assert login.status_code == 403
    assert login.json()["error"]["code"] == "account_inactive"

    me = client.get("/v1/auth/me", headers=_auth(data["accessToken"]))
    assert me.status_code == 401


def test_change_password(client):
    data = _register(client)
    headers = _auth(data["accessToken"])
    bad = client.post(
        "/v1/auth/password/change",
        json={"currentPassword": "Wr0ng!Pass", "newPassword": "Chang3d!Pass"},
        headers=headers,
    )
    assert bad.status_code == 401
    assert bad.json()["error"]["message"] == "Current password is incorrect"

    ok = client.post(
        "/v1/auth/password/change",
        json={"currentPassword": PASSWORD, "newPassword": "Chang3d!Pass"},
        headers=headers,
    )
    assert ok.status_code == 200
    assert ok.json()["data"]["message"] == "Password changed successfully. Please login again."
    refresh = client.post("/v1/auth/token/refresh", json={"refreshToken": data["refreshToken"]})
    assert refresh.status_code == 401
    login = client.post("/v1/auth/login", json={"email": "reader@example.com", "password": "Chang3d!Pass"})
    assert login.status_code == 200


def test_password_reset_flow(client):
    data = _register(client)
    resp = client.post("/v1/auth/password/reset/request", json={"email": "reader@example.com"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"email": "reader@example.com", "expiresIn": 600}

    early = client.post(
        "/v1/auth/password/reset",
        json={"email": "reader@example.com", "newPassword": "Res3t!Password"},
    )
    assert early.status_code == 400
    assert early.json()["error"]["code"] == "not_verified"

    verify = client.post(
        "/v1/auth/password/reset/verify",
        json={"email": "reader@example.com", "otp": _reset_otp("reader@example.com")},
    )
    assert verify.status_code == 200
    assert verify.json()["data"]["message"] == "OTP verified. You can now reset your password."

    reset = client.post(
        "/v1/auth/password/reset",
        json={"email": "reader@example.com", "newPassword": "Res3t!Password"},
    )
    assert reset.status_code == 200
    assert client.post("/v1/auth/token/refresh", json={"refreshToken": data["refreshToken"]}).status_code == 401
    login = client.post("/v1/auth/login", json={"email": "reader@example.com", "password": "Res3t!Password"})
    assert login.status_code == 200


def test_reset_request_for_unknown_email_looks_normal(client):
    resp = client.post("/v1/auth/password/reset/request", json={"email": "ghost@example.com"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"email": "ghost@example.com", "expiresIn": 600}


def test_protected_routes_require_bearer(client):
    resp = client.get("/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "No token provided or invalid format"
    resp = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})
    assert resp.status_code == 401
    resp = client.post("/v1/auth/logout-all", headers=_auth("not.a.jwt"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_invalid"


def test_health(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["filesystem"]["status"] == "healthy"


def test_refresh_with_non_ascii_signature_is_unauthorized(client):
    data = _register(client)
    header, payload, _sig = data["refreshToken"].split(".")
    resp = client.post("/v1/auth/token/refresh", json={"refreshToken": f"{header}.{payload}.éé"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_invalid"


@pytest.fixture
def guarded_client():
    guarded = FastAPI()
    register_exception_handlers(guarded)

    @guarded.get("/admin-only")
    async def admin_only(principal=Depends(require_roles("ADMIN"))):
        return {"userId": principal.user_id}

    @guarded.get("/staff")
    async def staff(principal=Depends(require_roles("editor", "ad-manager"))):
        return {"role": principal.role}

    @guarded.get("/whoami")
    async def whoami(principal=Depends(get_optional_user)):
        return {"email": principal.email if principal else None}

    with TestClient(guarded) as test_client:
        yield test_client


def test_require_roles_gates_by_role(client, guarded_client):
    data = _register(client)
    headers = _auth(data["accessToken"])

    resp = guarded_client.get("/admin-only", headers=headers)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "forbidden"
    assert error["message"] == "Insufficient permissions"

    # role is read per request, so a promotion applies to the same token
    get_runtime().store.update_user_role(data["user"]["id"], Role.ADMIN.value)
    resp = guarded_client.get("/admin-only", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"userId": data["user"]["id"]}


def test_require_roles_accepts_any_listed_role(client, guarded_client):
    data = _register(client, email="staff@example.com", role="ad-manager")
    resp = guarded_client.get("/staff", headers=_auth(data["accessToken"]))
    assert resp.status_code == 200
    assert resp.json() == {"role": "AD_MANAGER"}


def test_require_roles_still_needs_a_token(guarded_client):
    resp = guarded_client.get("/admin-only")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_invalid"


def test_require_roles_rejects_unknown_role_names():
    with pytest.raises(ValueError):
        require_roles("wizard")


def test_optional_user(client, guarded_client):
    data = _register(client)
    assert guarded_client.get("/whoami").json() == {"email": None}
    resp = guarded_client.get("/whoami", headers=_auth(data["accessToken"]))
    assert resp.json() == {"email": "reader@example.com"}
    resp = guarded_client.get("/whoami", headers=_auth("not.a.jwt"))
    assert resp.status_code == 200
    assert resp.json() == {"email": None}
