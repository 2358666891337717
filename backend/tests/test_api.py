from datetime import datetime

import pyotp
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from pathary.config import settings
from pathary.core.database import get_db
from pathary.core.session import session_store
from pathary.main import app
from pathary.models.audit import SecurityAuditEvent
from pathary.models.security import AuthToken, TrustedDevice

from conftest import FIREFOX_UA, create_user

PASSWORD = "Secret123!"
LOGIN_URL = "/api/v1/auth/login"
SECURITY_URL = "/api/v1/profile/security"


@pytest.fixture
def client(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app, headers={"User-Agent": FIREFOX_UA})
    finally:
        app.dependency_overrides.clear()


def _login(client, **payload):
    payload.setdefault("email", "a@example.com")
    payload.setdefault("password", PASSWORD)
    response = client.post(LOGIN_URL, json=payload)
    if response.status_code == 200 and response.json()["csrf_token"]:
        client.headers[settings.CSRF_HEADER_NAME] = response.json()["csrf_token"]
    return response


def test_login_sets_auth_and_session_cookies(client, db):
    create_user(db)

    response = _login(client)

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["email"] == "a@example.com"
    assert body["user"]["has_totp"] is False
    assert response.cookies.get(settings.AUTH_COOKIE_NAME) == body["token"]
    assert response.cookies.get(settings.SESSION_COOKIE_NAME)

    me = client.get("/api/v1/auth/me")
    assert me.status_code == 200
    assert me.json()["email"] == "a@example.com"


def test_login_failure_uses_error_envelope(client, db):
    create_user(db)

    response = _login(client, password="wrong")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Unknown email/password. Please try again."
    assert body["path"] == LOGIN_URL


def test_second_factor_required_is_reported(client, db):
    create_user(db, totp_secret=pyotp.random_base32())

    response = _login(client)

    assert response.status_code == 401
    assert response.json()["details"] == {"second_factor_required": True}


def test_login_is_rate_limited_per_ip(client, db):
    create_user(db)

    for _ in range(settings.RATE_LIMIT_LOGIN_MAX):
        assert _login(client, password="wrong").status_code == 401

    response = _login(client)

    assert response.status_code == 429
    assert 0 < int(response.headers["Retry-After"]) <= settings.RATE_LIMIT_LOGIN_WINDOW
    assert response.json()["error"].startswith(
        "Rate limit exceeded. You can make 10 requests per 1 minute. Please try again in "
    )


def test_forwarded_for_address_is_audited_behind_trusted_proxy(client, db):
    create_user(db)
    proxied = TestClient(
        ProxyHeadersMiddleware(app, trusted_hosts=["testclient", "10.0.0.0/8"]),
        headers={"User-Agent": FIREFOX_UA},
    )

    proxied.post(
        LOGIN_URL,
        json={"email": "a@example.com", "password": "wrong"},
        headers={"X-Forwarded-For": "198.51.100.23, 10.0.0.1"},
    )

    event = db.query(SecurityAuditEvent).one()
    assert event.ip_address == "198.51.100.23"
    assert event.user_agent == FIREFOX_UA


def test_api_token_header_authenticates(client, db):
    create_user(db, api_token="integration-token")

    response = client.get("/api/v1/auth/me", headers={settings.API_TOKEN_HEADER: "integration-token"})

    assert response.status_code == 200


def test_unauthenticated_request_is_rejected(client):
    response = client.get(f"{SECURITY_URL}/trusted-devices")

    assert response.status_code == 401
    assert response.json()["error"] == "Could not find a current user"


def test_logout_clears_auth_cookie(client, db):
    create_user(db)
    token = _login(client).json()["token"]

    response = client.post("/api/v1/auth/logout")

    assert response.status_code == 200
    client.cookies.clear()
    assert client.get("/api/v1/auth/me", headers={settings.API_TOKEN_HEADER: token}).status_code == 401


def test_totp_enrollment_and_trusted_device_flow(client, db):
    create_user(db)
    _login(client)

    setup = client.post(f"{SECURITY_URL}/totp/enable")
    assert setup.status_code == 200
    totp = pyotp.TOTP(setup.json()["secret"])

    wrong = client.post(f"{SECURITY_URL}/totp/verify", json={"code": (int(totp.now()) + 500000) % 1000000})
    assert wrong.status_code == 400

    verified = client.post(f"{SECURITY_URL}/totp/verify", json={"code": int(totp.now())})
    assert verified.status_code == 200
    assert len(verified.json()["recovery_codes"]) == 10
    assert client.get(f"{SECURITY_URL}/recovery-codes/count").json() == {"remaining": 10}

    client.post("/api/v1/auth/logout")
    assert _login(client).status_code == 401

    trusted = _login(client, totp_code=int(totp.now()), trust_device=True)
    assert trusted.status_code == 200
    assert trusted.cookies.get(settings.TRUSTED_DEVICE_COOKIE_NAME)

    devices = client.get(f"{SECURITY_URL}/trusted-devices").json()
    assert len(devices) == 1
    assert devices[0]["device_name"] == "Firefox on Linux"
    assert devices[0]["is_current_device"] is True

    # trusted browser logs in again without a code
    client.post("/api/v1/auth/logout")
    assert _login(client).status_code == 200

    revoked = client.delete(f"{SECURITY_URL}/trusted-devices/{devices[0]['id']}")
    assert revoked.json() == {"success": True, "is_current_device": True}
    assert db.query(TrustedDevice).count() == 0

    labels = [event["event_label"] for event in client.get(f"{SECURITY_URL}/events").json()["events"]]
    assert labels[0] == "Trusted Device Removed"
    assert "2FA Enabled" in labels


def test_disable_totp_requires_password(client, db):
    secret = pyotp.random_base32()
    create_user(db, totp_secret=secret)
    _login(client, totp_code=int(pyotp.TOTP(secret).now()), trust_device=True)

    assert client.post(f"{SECURITY_URL}/totp/disable", json={"password": "wrong"}).status_code == 400

    response = client.post(f"{SECURITY_URL}/totp/disable", json={"password": PASSWORD})

    assert response.status_code == 200
    assert db.query(TrustedDevice).count() == 0
    assert client.get("/api/v1/auth/me").json()["has_totp"] is False


def test_change_password_enforces_policy_and_revokes_devices(client, db):
    secret = pyotp.random_base32()
    create_user(db, totp_secret=secret)
    _login(client, totp_code=int(pyotp.TOTP(secret).now()), trust_device=True)

    weak = client.post(
        f"{SECURITY_URL}/password", json={"current_password": PASSWORD, "new_password": "short"}
    )
    assert weak.status_code == 400
    assert weak.json()["error"] == "Password must be at least 10 characters long."

    wrong_current = client.post(
        f"{SECURITY_URL}/password", json={"current_password": "nope", "new_password": "N3w-Secret!!"}
    )
    assert wrong_current.status_code == 400

    changed = client.post(
        f"{SECURITY_URL}/password", json={"current_password": PASSWORD, "new_password": "N3w-Secret!!"}
    )
    assert changed.status_code == 200
    assert changed.json()["trusted_devices_revoked"] == 1
    assert db.query(SecurityAuditEvent).filter(SecurityAuditEvent.event_type == "password_changed").count() == 1


def test_password_change_rate_limit_is_audited(client, db):
    user = create_user(db)
    _login(client)

    for _ in range(settings.RATE_LIMIT_PASSWORD_CHANGE_MAX):
        client.post(f"{SECURITY_URL}/password", json={"current_password": "nope", "new_password": "x"})

    response = client.post(f"{SECURITY_URL}/password", json={"current_password": "nope", "new_password": "x"})

    assert response.status_code == 429
    assert "Retry-After" in response.headers
    event = (
        db.query(SecurityAuditEvent)
        .filter(SecurityAuditEvent.event_type == "rate_limit_exceeded")
        .one()
    )
    assert event.user_id == user.id
    assert '"limit_type": "user"' in event.metadata_json


def test_locked_account_cannot_change_security_settings(client, db):
    create_user(db, core_account_changes_disabled=True)
    _login(client)

    assert client.post(f"{SECURITY_URL}/totp/enable").status_code == 403


def test_admin_can_create_users(client, db):
    create_user(db, is_admin=True)
    _login(client)

    response = client.post(
        "/api/v1/users/",
        json={"email": "New@Example.com", "name": "newbie", "password": "Another-Secret1"},
    )

    assert response.status_code == 201
    assert response.json()["email"] == "new@example.com"
    assert client.post(
        "/api/v1/users/",
        json={"email": "new@example.com", "name": "other", "password": "Another-Secret1"},
    ).status_code == 409


def test_forwarded_headers_from_untrusted_peer_are_ignored(client, db):
    create_user(db)

    for i in range(settings.RATE_LIMIT_LOGIN_MAX):
        response = client.post(
            LOGIN_URL,
            json={"email": "a@example.com", "password": "wrong"},
            headers={"X-Forwarded-For": f"198.51.100.{i}"},
        )
        assert response.status_code == 401

    response = client.post(
        LOGIN_URL,
        json={"email": "a@example.com", "password": PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.250", "X-Forwarded-Proto": "https"},
    )

    assert response.status_code == 429
    assert {event.ip_address for event in db.query(SecurityAuditEvent).all()} == {"testclient"}


def test_forwarded_proto_from_trusted_proxy_marks_cookies_secure(client, db):
    create_user(db)
    proxied = TestClient(ProxyHeadersMiddleware(app, trusted_hosts=["testclient"]))

    response = proxied.post(
        LOGIN_URL,
        json={"email": "a@example.com", "password": PASSWORD},
        headers={"X-Forwarded-Proto": "https"},
    )

    set_cookies = response.headers.get_list("set-cookie")
    auth_cookie = next(c for c in set_cookies if c.startswith(f"{settings.AUTH_COOKIE_NAME}="))
    assert "secure" in auth_cookie.lower()


def test_oversized_user_agent_is_clipped_before_storage(client, db):
    create_user(db)
    user_agent = "Mozilla/5.0 " + "x" * 600

    response = client.post(
        LOGIN_URL,
        json={"email": "a@example.com", "password": PASSWORD},
        headers={"User-Agent": user_agent},
    )

    assert response.status_code == 200
    assert db.query(SecurityAuditEvent).one().user_agent == user_agent[:512]
    assert db.query(AuthToken).one().user_agent == user_agent[:512]


def test_session_cookie_alone_stops_working_when_token_expires(client, db):
    create_user(db)
    assert _login(client).status_code == 200
    assert client.get("/api/v1/auth/me").status_code == 200

    db.query(AuthToken).update({AuthToken.expiration_date: datetime(2000, 1, 1)})
    db.commit()
    client.cookies.delete(settings.AUTH_COOKIE_NAME)

    assert client.get("/api/v1/auth/me").status_code == 401
    assert db.query(AuthToken).count() == 0


def test_logout_with_session_cookie_only_revokes_token(client, db):
    create_user(db)
    token = _login(client).json()["token"]
    client.cookies.delete(settings.AUTH_COOKIE_NAME)

    assert client.post("/api/v1/auth/logout").status_code == 200

    client.cookies.clear()
    assert client.get("/api/v1/auth/me", headers={settings.API_TOKEN_HEADER: token}).status_code == 401


def test_cookie_only_requests_do_not_grow_the_session_store(client, db):
    create_user(db)
    _login(client)
    client.cookies.delete(settings.SESSION_COOKIE_NAME)
    sessions_before = len(session_store)

    for _ in range(50):
        response = client.get(f"{SECURITY_URL}/trusted-devices")
        assert response.status_code == 200
        assert settings.SESSION_COOKIE_NAME not in response.cookies

    assert len(session_store) == sessions_before


def test_state_changing_request_without_csrf_token_is_rejected(client, db):
    create_user(db)
    _login(client)
    csrf_token = client.headers.pop(settings.CSRF_HEADER_NAME)

    missing = client.post(f"{SECURITY_URL}/totp/enable")
    forged = client.post(f"{SECURITY_URL}/totp/enable", headers={settings.CSRF_HEADER_NAME: "0" * 64})
    accepted = client.post(f"{SECURITY_URL}/totp/enable", headers={settings.CSRF_HEADER_NAME: csrf_token})

    assert missing.status_code == 403
    assert missing.json()["error"] == "CSRF token validation failed"
    assert forged.status_code == 403
    assert accepted.status_code == 200


def test_logout_requires_csrf_token(client, db):
    create_user(db)
    _login(client)
    del client.headers[settings.CSRF_HEADER_NAME]

    assert client.post("/api/v1/auth/logout").status_code == 403
    assert client.get("/api/v1/auth/me").status_code == 200


def test_api_token_requests_are_exempt_from_csrf(client, db):
    create_user(db, api_token="integration-token")

    response = client.post(f"{SECURITY_URL}/totp/enable", headers={settings.API_TOKEN_HEADER: "integration-token"})

    assert response.status_code == 200


def test_csrf_token_endpoint_returns_session_token(client, db):
    first = client.get("/api/v1/auth/csrf-token")
    second = client.get("/api/v1/auth/csrf-token")

    assert first.status_code == 200
    assert first.cookies.get(settings.SESSION_COOKIE_NAME)
    assert first.json()["csrf_token"] == second.json()["csrf_token"]
    assert len(first.json()["csrf_token"]) == 64


def test_login_rotates_csrf_token(client, db):
    create_user(db)
    anonymous_token = client.get("/api/v1/auth/csrf-token").json()["csrf_token"]

    logged_in_token = _login(client).json()["csrf_token"]

    assert logged_in_token and logged_in_token != anonymous_token
    rejected = client.post(f"{SECURITY_URL}/totp/enable", headers={settings.CSRF_HEADER_NAME: anonymous_token})
    assert rejected.status_code == 403


def test_user_name_longer_than_column_is_rejected(client, db):
    create_user(db, is_admin=True)
    _login(client)

    response = client.post(
        "/api/v1/users/",
        json={"email": "long@example.com", "name": "n" * 51, "password": "Another-Secret1"},
    )

    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == "body.name"


def test_user_management_is_audited_for_admins(client, db):
    admin = create_user(db, is_admin=True)
    _login(client)

    created = client.post(
        "/api/v1/users/",
        json={"email": "new@example.com", "name": "newbie", "password": "Another-Secret1"},
    ).json()
    updated = client.put(
        f"/api/v1/users/{created['id']}",
        json={"email": "new@example.com", "name": "renamed", "is_admin": True, "password": "Third-Secret22"},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "renamed"
    assert client.delete(f"/api/v1/users/{created['id']}").status_code == 200

    listing = client.get("/api/v1/admin/events", params={"user_id": admin.id, "limit": 10}).json()
    assert [e["event_type"] for e in listing["events"]] == [
        "user_deleted",
        "user_password_changed_by_admin",
        "user_updated",
        "user_created",
        "login_success",
    ]
    assert listing["total"] == 5
    assert (listing["limit"], listing["offset"]) == (10, 0)
    assert listing["events"][0]["user_name"] == admin.name
    assert listing["events"][0]["metadata"]["target_name"] == "renamed"
    update_meta = listing["events"][2]["metadata"]
    assert update_meta["changed_fields"] == ["name", "is_admin", "password"]
    assert update_meta["admin_status_change"] == {"from": False, "to": True}
    assert listing["events"][3]["event_label"] == "User Created"

    # the admin's own profile trail only shows their own account activity
    own = client.get(f"{SECURITY_URL}/events").json()["events"]
    assert [e["event_type"] for e in own] == ["login_success"]


def test_admin_event_search_and_lookup(client, db):
    create_user(db, is_admin=True)
    create_user(db, email="b@example.com")
    client.post(LOGIN_URL, json={"email": "b@example.com", "password": "wrong"})
    client.post(LOGIN_URL, json={"email": "nobody@example.com", "password": "wrong"})
    _login(client)

    failed = client.get("/api/v1/admin/events", params={"event_type": "login_failed_password"}).json()
    assert failed["total"] == 2
    assert {e["user_name"] for e in failed["events"]} == {"b", None}

    searched = client.get("/api/v1/admin/events", params={"search": "success"}).json()
    assert [e["event_type"] for e in searched["events"]] == ["login_success"]

    paged = client.get("/api/v1/admin/events", params={"limit": 1, "offset": 1}).json()
    assert len(paged["events"]) == 1
    assert paged["total"] == 3

    event_id = searched["events"][0]["id"]
    assert client.get(f"/api/v1/admin/events/{event_id}").json()["event_type"] == "login_success"
    assert client.get("/api/v1/admin/events/9999").status_code == 404
    assert client.get("/api/v1/admin/events/types").json() == ["login_failed_password", "login_success"]
    assert client.get("/api/v1/admin/events", params={"limit": 101}).status_code == 422


def test_admin_events_require_admin(client, db):
    create_user(db)
    _login(client)

    assert client.get("/api/v1/admin/events").status_code == 403
