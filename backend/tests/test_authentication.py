import pyotp
import pytest

from pathary.config import settings
from pathary.core.exceptions import (
    InvalidCredentialsError,
    InvalidTotpCodeError,
    MissingTotpCodeError,
    NotAuthenticatedError,
)
from pathary.core.request_context import ResponseEffects
from pathary.core.security import hash_token
from pathary.core.session import session_store
from pathary.models.security import AuthToken, TrustedDevice
from pathary.services import audit_service as audit_module
from pathary.services.authentication import (
    AuthFailure,
    AuthFailureReason,
    AuthMethod,
    AuthState,
    AuthSuccess,
    SESSION_AUTH_TOKEN_KEY,
    SESSION_USER_ID_KEY,
    authentication,
)
from pathary.services.csrf_token_service import csrf_token_service
from pathary.services.recovery_code_service import recovery_code_service
from pathary.services.token_service import token_service
from pathary.services.trusted_device_service import trusted_device_service

from conftest import audit_events, create_user, current_totp_code, make_context, wrong_totp_code

PASSWORD = "Secret123!"
WEB = settings.WEB_CLIENT_NAME


@pytest.fixture
def totp_secret():
    return pyotp.random_base32()


def _login(db, ctx, email="a@example.com", password=PASSWORD, **kwargs):
    kwargs.setdefault("remember_me", False)
    kwargs.setdefault("device_name", WEB)
    kwargs.setdefault("user_agent", ctx.user_agent)
    return authentication.login(db, ctx, email, password, **kwargs)


# --- verify_credentials ---

def test_password_only_account_authenticates(db):
    user = create_user(db)

    result = authentication.verify_credentials(db, make_context(), "a@example.com", PASSWORD)

    assert isinstance(result, AuthSuccess)
    assert result.user.id == user.id
    assert result.method == AuthMethod.PASSWORD
    assert result.state == AuthState.AUTHENTICATED
    events = audit_events(db)
    assert [(e.event_type, e.user_id) for e in events] == [("login_success", user.id)]


def test_email_lookup_ignores_case(db):
    create_user(db)

    result = authentication.verify_credentials(db, make_context(), "  A@Example.com ", PASSWORD)

    assert isinstance(result, AuthSuccess)


def test_wrong_password_is_rejected(db):
    user = create_user(db)

    result = authentication.verify_credentials(db, make_context(), "a@example.com", "wrong")

    assert isinstance(result, AuthFailure)
    assert result.reason == AuthFailureReason.INVALID_CREDENTIALS
    assert result.rejected_in == AuthState.AWAITING_CREDENTIALS
    assert [(e.event_type, e.user_id) for e in audit_events(db)] == [("login_failed_password", user.id)]


def test_unknown_email_is_indistinguishable_from_wrong_password(db):
    create_user(db)

    with pytest.raises(InvalidCredentialsError) as unknown:
        _login(db, make_context(), email="nobody@example.com")
    with pytest.raises(InvalidCredentialsError) as wrong:
        _login(db, make_context(), password="wrong")

    assert unknown.value.message == wrong.value.message == "Unknown email/password. Please try again."
    assert unknown.value.status_code == wrong.value.status_code == 401
    unknown_event = audit_events(db, "login_failed_password")[0]
    assert unknown_event.user_id is None
    assert unknown_event.ip_address == "203.0.113.7"


def test_missing_second_factor_writes_no_audit_event(db, totp_secret):
    create_user(db, totp_secret=totp_secret)

    result = authentication.verify_credentials(db, make_context(), "a@example.com", PASSWORD)

    assert isinstance(result, AuthFailure)
    assert result.reason == AuthFailureReason.MISSING_TOTP_CODE
    assert result.rejected_in == AuthState.AWAITING_SECOND_FACTOR
    assert audit_events(db) == []
    with pytest.raises(MissingTotpCodeError):
        _login(db, make_context())


def test_valid_totp_code_authenticates(db, totp_secret):
    user = create_user(db, totp_secret=totp_secret)

    result = authentication.verify_credentials(
        db, make_context(), "a@example.com", PASSWORD, totp_code=current_totp_code(totp_secret)
    )

    assert isinstance(result, AuthSuccess)
    assert result.method == AuthMethod.TOTP
    assert [(e.event_type, e.user_id) for e in audit_events(db)] == [("login_success", user.id)]


def test_wrong_totp_code_is_rejected(db, totp_secret):
    create_user(db, totp_secret=totp_secret)

    with pytest.raises(InvalidTotpCodeError):
        _login(db, make_context(), totp_code=wrong_totp_code(totp_secret))

    assert [e.event_type for e in audit_events(db)] == ["login_failed_totp"]
    assert db.query(AuthToken).count() == 0


def test_recovery_code_authenticates_once(db, totp_secret):
    user = create_user(db, totp_secret=totp_secret)
    code = recovery_code_service.generate_recovery_codes(db, user.id)[0]

    first = authentication.verify_credentials(db, make_context(), "a@example.com", PASSWORD, recovery_code=code)
    second = authentication.verify_credentials(db, make_context(), "a@example.com", PASSWORD, recovery_code=code)

    assert isinstance(first, AuthSuccess)
    assert first.method == AuthMethod.RECOVERY_CODE
    assert isinstance(second, AuthFailure)
    assert second.reason == AuthFailureReason.INVALID_TOTP_CODE
    assert [e.event_type for e in audit_events(db)] == ["recovery_code_used", "login_failed_recovery_code"]


def test_bad_recovery_code_falls_through_to_totp(db, totp_secret):
    create_user(db, totp_secret=totp_secret)

    result = authentication.verify_credentials(
        db,
        make_context(),
        "a@example.com",
        PASSWORD,
        totp_code=current_totp_code(totp_secret),
        recovery_code="ZZZZ-ZZZZ-ZZ",
    )

    assert isinstance(result, AuthSuccess)
    assert result.method == AuthMethod.TOTP
    assert [e.event_type for e in audit_events(db)] == ["login_failed_recovery_code", "login_success"]


def test_trusted_device_skips_second_factor(db, totp_secret):
    user = create_user(db, totp_secret=totp_secret)
    device_token = trusted_device_service.create_trusted_device(db, user.id)

    result = authentication.verify_credentials(
        db, make_context(), "a@example.com", PASSWORD, trusted_device_token=device_token
    )

    assert isinstance(result, AuthSuccess)
    assert result.method == AuthMethod.TRUSTED_DEVICE
    assert result.trusted_device is not None
    event = audit_events(db)[0]
    assert event.event_type == "login_success"
    assert event.metadata_json == '{"trusted_device": true}'


def test_trusted_device_of_other_user_does_not_skip_second_factor(db, totp_secret):
    create_user(db, totp_secret=totp_secret)
    bob = create_user(db, email="b@example.com", totp_secret=totp_secret)
    bobs_token = trusted_device_service.create_trusted_device(db, bob.id)

    result = authentication.verify_credentials(
        db, make_context(), "a@example.com", PASSWORD, trusted_device_token=bobs_token
    )

    assert isinstance(result, AuthFailure)
    assert result.reason == AuthFailureReason.MISSING_TOTP_CODE


def test_trusted_device_needs_correct_password(db, totp_secret):
    user = create_user(db, totp_secret=totp_secret)
    device_token = trusted_device_service.create_trusted_device(db, user.id)

    result = authentication.verify_credentials(
        db, make_context(), "a@example.com", "wrong", trusted_device_token=device_token
    )

    assert isinstance(result, AuthFailure)
    assert result.reason == AuthFailureReason.INVALID_CREDENTIALS


def test_expired_trusted_device_requires_second_factor(db, totp_secret, frozen_clock):
    user = create_user(db, totp_secret=totp_secret)
    device_token = trusted_device_service.create_trusted_device(db, user.id)
    frozen_clock.advance(days=31)

    ctx = make_context(cookies={settings.TRUSTED_DEVICE_COOKIE_NAME: device_token})
    with pytest.raises(MissingTotpCodeError):
        _login(db, ctx)

    assert db.query(TrustedDevice).count() == 0


# --- login / logout ---

def test_web_login_sets_cookie_and_new_session(db, frozen_clock):
    user = create_user(db)
    ctx = make_context()

    result = _login(db, ctx)

    cookie = result.effects.cookie(settings.AUTH_COOKIE_NAME)
    assert cookie.value == result.token
    assert cookie.httponly is True
    assert cookie.samesite == "lax"
    assert cookie.secure is False
    assert cookie.expires == frozen_clock.now.replace(day=2)
    assert ctx.session.find(SESSION_USER_ID_KEY) == user.id
    assert ctx.session.id_changed is True
    assert token_service.is_valid_auth_token(db, result.token) is True


def test_remember_me_extends_token_lifetime(db, frozen_clock):
    create_user(db)

    result = _login(db, make_context(is_https=True), remember_me=True)

    assert (result.expires_at - frozen_clock.now).days == 3650
    assert result.effects.cookie(settings.AUTH_COOKIE_NAME).secure is True


def test_api_client_login_gets_token_without_cookie(db):
    create_user(db)
    ctx = make_context()

    result = _login(db, ctx, device_name="Pathary CLI")

    assert result.effects.cookies == []
    assert ctx.session.find(SESSION_USER_ID_KEY) is None
    stored = db.query(AuthToken).one()
    assert stored.device_name == "Pathary CLI"
    assert stored.token_hash != result.token


def test_login_can_trust_device_when_totp_enabled(db, totp_secret):
    user = create_user(db, totp_secret=totp_secret)

    result = _login(db, make_context(), totp_code=current_totp_code(totp_secret), trust_device=True)

    cookie = result.effects.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME)
    assert cookie is not None
    assert cookie.value == result.trusted_device_token
    assert trusted_device_service.verify_trusted_device(db, cookie.value, user.id) is not None
    assert [e.event_type for e in audit_events(db)] == ["login_success", "trusted_device_added"]

    # the next login from this browser skips the second factor
    next_ctx = make_context(cookies={settings.TRUSTED_DEVICE_COOKIE_NAME: cookie.value})
    assert _login(db, next_ctx).method == AuthMethod.TRUSTED_DEVICE


def test_trust_device_ignored_without_totp(db):
    create_user(db)

    result = _login(db, make_context(), trust_device=True)

    assert result.effects.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME) is None
    assert db.query(TrustedDevice).count() == 0


def test_login_survives_audit_storage_failure(db, monkeypatch):
    create_user(db)

    def broken(_metadata):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(audit_module, "_encode_metadata", broken)

    result = _login(db, make_context())

    assert token_service.is_valid_auth_token(db, result.token)


def test_logout_revokes_token_but_keeps_device_trust(db):
    user = create_user(db)
    login_ctx = make_context()
    result = _login(db, login_ctx)

    ctx = make_context(
        cookies={settings.AUTH_COOKIE_NAME: result.token, settings.TRUSTED_DEVICE_COOKIE_NAME: "device-token"},
        session_id=login_ctx.session.session_id,
    )
    effects = authentication.logout(db, ctx)

    assert token_service.is_valid_auth_token(db, result.token) is False
    assert effects.cookie(settings.AUTH_COOKIE_NAME).is_deletion
    assert effects.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME) is None
    assert ctx.session.find(SESSION_USER_ID_KEY) is None
    assert [(e.event_type, e.user_id) for e in audit_events(db, "logout")] == [("logout", user.id)]


# --- current user / tokens ---

def test_current_user_resolved_from_cookie_without_creating_a_session(db):
    user = create_user(db)
    token = _login(db, make_context()).token
    sessions_before = len(session_store)

    ctx = make_context(cookies={settings.AUTH_COOKIE_NAME: token})

    assert authentication.get_current_user_id(db, ctx) == user.id
    assert ctx.session.is_started is False
    assert ctx.session.id_changed is False
    assert len(session_store) == sessions_before
    assert authentication.get_current_user(db, ctx).email == "a@example.com"


def test_cookie_rebinds_an_existing_empty_session(db):
    user = create_user(db)
    token = _login(db, make_context()).token
    anonymous = make_context()
    anonymous.session.start()

    ctx = make_context(cookies={settings.AUTH_COOKIE_NAME: token}, session_id=anonymous.session.session_id)

    assert authentication.get_current_user_id(db, ctx) == user.id
    assert ctx.session.find(SESSION_USER_ID_KEY) == user.id
    assert ctx.session.find(SESSION_AUTH_TOKEN_KEY) == hash_token(token)


def test_session_stops_authenticating_once_its_token_expires(db, frozen_clock):
    create_user(db)
    login_ctx = make_context()
    _login(db, login_ctx)
    frozen_clock.advance(days=2)

    # session cookie replayed without the auth cookie
    ctx = make_context(session_id=login_ctx.session.session_id)

    with pytest.raises(NotAuthenticatedError):
        authentication.get_current_user_id(db, ctx)
    assert ctx.session.find(SESSION_USER_ID_KEY) is None
    assert db.query(AuthToken).count() == 0


def test_session_stops_authenticating_once_its_token_is_revoked(db):
    create_user(db)
    login_ctx = make_context()
    result = _login(db, login_ctx)
    token_service.delete_auth_token(db, result.token)

    ctx = make_context(session_id=login_ctx.session.session_id)

    with pytest.raises(NotAuthenticatedError):
        authentication.get_current_user_id(db, ctx)


def test_logout_without_auth_cookie_revokes_the_session_token(db):
    user = create_user(db)
    login_ctx = make_context()
    result = _login(db, login_ctx)

    ctx = make_context(session_id=login_ctx.session.session_id)
    authentication.logout(db, ctx)

    assert token_service.is_valid_auth_token(db, result.token) is False
    assert ctx.session.is_started is False
    assert [(e.event_type, e.user_id) for e in audit_events(db, "logout")] == [("logout", user.id)]


def test_web_login_issues_fresh_csrf_token(db):
    create_user(db)
    ctx = make_context()

    result = _login(db, ctx)

    assert result.csrf_token
    assert csrf_token_service.validate_token(ctx.session, result.csrf_token) is True
    assert _login(db, make_context(), device_name="Pathary CLI").csrf_token is None


def test_no_session_and_no_cookie_is_not_authenticated(db):
    with pytest.raises(NotAuthenticatedError):
        authentication.get_current_user_id(db, make_context())


def test_expired_token_is_purged_on_use(db, frozen_clock):
    create_user(db)
    token = _login(db, make_context()).token
    frozen_clock.advance(days=1)

    ctx = make_context(cookies={settings.AUTH_COOKIE_NAME: token})

    assert authentication.is_user_authenticated_with_cookie(db, ctx) is False
    assert db.query(AuthToken).count() == 0
    with pytest.raises(NotAuthenticatedError):
        authentication.get_current_user_id(db, ctx)


def test_stale_cookie_is_cleared(db):
    effects = ResponseEffects()
    ctx = make_context(cookies={settings.AUTH_COOKIE_NAME: "stale"})

    assert authentication.is_user_authenticated_with_cookie(db, ctx, effects) is False
    assert effects.cookie(settings.AUTH_COOKIE_NAME).is_deletion


def test_api_token_is_valid_without_expiry(db, frozen_clock):
    user = create_user(db, api_token="static-api-token")
    frozen_clock.advance(days=5000)

    ctx = make_context(headers={settings.API_TOKEN_HEADER: "static-api-token"})

    assert authentication.is_valid_token(db, "static-api-token") is True
    assert authentication.get_user_id_by_token(db, ctx) == user.id
    assert authentication.is_valid_token(db, "unknown") is False


def test_header_token_used_when_no_cookie(db):
    user = create_user(db)
    token = _login(db, make_context(), device_name="Pathary CLI").token

    ctx = make_context(headers={"x-pathary-token": token})

    assert authentication.get_token(ctx) == token
    assert authentication.get_user_id_by_token(db, ctx) == user.id


def test_page_visibility_by_privacy_level(db):
    public = create_user(db, email="pub@example.com", privacy_level=2)
    members = create_user(db, email="mem@example.com", privacy_level=1)
    private = create_user(db, email="priv@example.com", privacy_level=0)

    assert authentication.is_user_page_visible(public, None) is True
    assert authentication.is_user_page_visible(members, None) is False
    assert authentication.is_user_page_visible(members, public.id) is True
    assert authentication.is_user_page_visible(private, public.id) is False
    assert authentication.is_user_page_visible(private, private.id) is True


def test_tokens_are_listed_per_device_and_can_be_deleted(db):
    user = create_user(db)
    web_token = _login(db, make_context()).token
    _login(db, make_context(), device_name="Pathary CLI")

    tokens = token_service.get_auth_tokens(db, user.id)
    assert sorted(t.device_name for t in tokens) == ["Pathary CLI", WEB]

    authentication.delete_token(db, web_token)

    assert [t.device_name for t in token_service.get_auth_tokens(db, user.id)] == ["Pathary CLI"]
    assert authentication.is_valid_token(db, web_token) is False
