"""Authentication - credential verification state machine, login and logout.

A login attempt moves through::

    AWAITING_CREDENTIALS -> PASSWORD_VERIFIED -> NO_SECOND_FACTOR ------> AUTHENTICATED
                                              -> AWAITING_SECOND_FACTOR -> AUTHENTICATED

and can end in REJECTED from any state. ``verify_credentials`` returns a
tagged result; ``login`` turns a rejection into the matching exception.
Every decided branch writes exactly one audit event; a missing second factor
writes none because no factor was attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from sqlalchemy.orm import Session

from pathary.config import settings
from pathary.core import clock
from pathary.core.exceptions import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidTotpCodeError,
    MissingTotpCodeError,
    NotAuthenticatedError,
)
from pathary.core.request_context import RequestContext, ResponseEffects
from pathary.core.security import burn_password_check, hash_token
from pathary.models.user import User
from pathary.schemas.security import TrustedDeviceRecord
from pathary.services.audit_service import SYSTEM_USER_ID, SecurityEventType, security_audit_service
from pathary.services.csrf_token_service import csrf_token_service
from pathary.services.recovery_code_service import recovery_code_service
from pathary.services.token_service import token_service
from pathary.services.totp_service import totp_service
from pathary.services.trusted_device_service import trusted_device_service
from pathary.services.user_service import user_service

logger = logging.getLogger(__name__)

SESSION_USER_ID_KEY = "userId"
# Digest of the auth token the session was opened with
SESSION_AUTH_TOKEN_KEY = "authTokenHash"

# Public profile visibility
PRIVACY_PRIVATE = 0
PRIVACY_USERS_ONLY = 1
PRIVACY_PUBLIC = 2


class AuthState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    PASSWORD_VERIFIED = "password_verified"
    NO_SECOND_FACTOR = "no_second_factor"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


class AuthMethod(str, Enum):
    PASSWORD = "password"
    TRUSTED_DEVICE = "trusted_device"
    RECOVERY_CODE = "recovery_code"
    TOTP = "totp"


class AuthFailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    MISSING_TOTP_CODE = "missing_totp_code"
    INVALID_TOTP_CODE = "invalid_totp_code"


_FAILURE_EXCEPTIONS = {
    AuthFailureReason.INVALID_CREDENTIALS: InvalidCredentialsError,
    AuthFailureReason.MISSING_TOTP_CODE: MissingTotpCodeError,
    AuthFailureReason.INVALID_TOTP_CODE: InvalidTotpCodeError,
}


@dataclass(frozen=True)
class AuthSuccess:
    user: User
    method: AuthMethod
    trusted_device: Optional[TrustedDeviceRecord] = None
    state: AuthState = AuthState.AUTHENTICATED


@dataclass(frozen=True)
class AuthFailure:
    reason: AuthFailureReason
    rejected_in: AuthState
    state: AuthState = AuthState.REJECTED

    def to_exception(self) -> AuthenticationError:
        return _FAILURE_EXCEPTIONS[self.reason]()


AuthResult = Union[AuthSuccess, AuthFailure]


@dataclass
class LoginResult:
    user: User
    token: str
    expires_at: datetime
    method: AuthMethod
    effects: ResponseEffects = field(default_factory=ResponseEffects)
    trusted_device_token: Optional[str] = None
    csrf_token: Optional[str] = None


class _Attempt:
    """Tracks one attempt's position in the state machine for logging."""

    def __init__(self, email: str) -> None:
        self.state = AuthState.AWAITING_CREDENTIALS
        self._email = email

    def advance(self, state: AuthState) -> None:
        logger.debug("Login attempt for %s: %s -> %s", self._email, self.state.value, state.value)
        self.state = state

    def reject(self, reason: AuthFailureReason) -> AuthFailure:
        failure = AuthFailure(reason=reason, rejected_in=self.state)
        self.advance(AuthState.REJECTED)
        return failure

    def succeed(self, user: User, method: AuthMethod, device: Optional[TrustedDeviceRecord] = None) -> AuthSuccess:
        self.advance(AuthState.AUTHENTICATED)
        return AuthSuccess(user=user, method=method, trusted_device=device)


class Authentication:
    """Decides login attempts and manages the resulting session"""

    # --- credential verification ---

    @staticmethod
    def verify_credentials(
        db: Session,
        ctx: RequestContext,
        email: str,
        password: str,
        totp_code: Optional[int] = None,
        recovery_code: Optional[str] = None,
        trusted_device_token: Optional[str] = None,
    ) -> AuthResult:
        """
        Run the password and second-factor checks for one login attempt

        Args:
            db: Database session
            ctx: Request metadata used for auditing
            email: Login email
            password: Plain text password
            totp_code: Numeric TOTP code, if entered
            recovery_code: Recovery code, if entered (dashes optional)
            trusted_device_token: Trusted-device cookie value, if present

        Returns:
            AuthSuccess or AuthFailure; never raises for a rejected login
        """
        ip, user_agent = ctx.ip_address, ctx.user_agent
        attempt = _Attempt(email)
        recovery_code = recovery_code or None

        user = user_service.find_user_by_email(db, email)
        if user is None:
            burn_password_check(password)
            security_audit_service.log(db, SYSTEM_USER_ID, SecurityEventType.LOGIN_FAILED_PASSWORD, ip, user_agent)
            return attempt.reject(AuthFailureReason.INVALID_CREDENTIALS)

        if not user_service.is_valid_password(db, user.id, password):
            security_audit_service.log(db, user.id, SecurityEventType.LOGIN_FAILED_PASSWORD, ip, user_agent)
            return attempt.reject(AuthFailureReason.INVALID_CREDENTIALS)

        attempt.advance(AuthState.PASSWORD_VERIFIED)

        totp_uri = user_service.find_totp_uri(db, user.id)
        if totp_uri is None:
            attempt.advance(AuthState.NO_SECOND_FACTOR)
            security_audit_service.log(db, user.id, SecurityEventType.LOGIN_SUCCESS, ip, user_agent)
            return attempt.succeed(user, AuthMethod.PASSWORD)

        attempt.advance(AuthState.AWAITING_SECOND_FACTOR)

        if trusted_device_token:
            device = trusted_device_service.verify_trusted_device(db, trusted_device_token, user.id)
            if device is not None:
                security_audit_service.log(
                    db, user.id, SecurityEventType.LOGIN_SUCCESS, ip, user_agent, {"trusted_device": True}
                )
                return attempt.succeed(user, AuthMethod.TRUSTED_DEVICE, device)

        if totp_code is None and recovery_code is None:
            return attempt.reject(AuthFailureReason.MISSING_TOTP_CODE)

        if recovery_code is not None:
            if recovery_code_service.verify_recovery_code(db, user.id, recovery_code):
                security_audit_service.log(db, user.id, SecurityEventType.RECOVERY_CODE_USED, ip, user_agent)
                return attempt.succeed(user, AuthMethod.RECOVERY_CODE)
            security_audit_service.log(db, user.id, SecurityEventType.LOGIN_FAILED_RECOVERY_CODE, ip, user_agent)

        if totp_code is not None:
            if totp_service.verify_totp_uri(db, user.id, totp_code, totp_uri):
                security_audit_service.log(db, user.id, SecurityEventType.LOGIN_SUCCESS, ip, user_agent)
                return attempt.succeed(user, AuthMethod.TOTP)
            security_audit_service.log(db, user.id, SecurityEventType.LOGIN_FAILED_TOTP, ip, user_agent)

        return attempt.reject(AuthFailureReason.INVALID_TOTP_CODE)

    # --- login / logout ---

    @staticmethod
    def login(
        db: Session,
        ctx: RequestContext,
        email: str,
        password: str,
        remember_me: bool,
        device_name: str,
        user_agent: Optional[str],
        totp_code: Optional[int] = None,
        recovery_code: Optional[str] = None,
        trust_device: bool = False,
    ) -> LoginResult:
        """
        Authenticate and issue an auth token

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            MissingTotpCodeError: Second factor required but not supplied
            InvalidTotpCodeError: Second factor supplied but wrong
        """
        trusted_device_service.cleanup_expired_devices(db)
        token_service.delete_expired_tokens(db)

        result = Authentication.verify_credentials(
            db,
            ctx,
            email,
            password,
            totp_code=totp_code,
            recovery_code=recovery_code,
            trusted_device_token=ctx.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME),
        )
        if isinstance(result, AuthFailure):
            raise result.to_exception()

        user = result.user
        expiration_days = settings.REMEMBER_ME_EXPIRE_DAYS if remember_me else settings.AUTH_TOKEN_EXPIRE_DAYS
        expires_at = token_service.create_expiration_date(expiration_days)

        token = token_service.create_auth_token(
            db,
            user_id=user.id,
            device_name=device_name,
            user_agent=user_agent,
            expiration_date=expires_at,
        )

        login_result = LoginResult(user=user, token=token, expires_at=expires_at, method=result.method)

        if device_name == settings.WEB_CLIENT_NAME:
            Authentication.set_authentication_cookie_and_new_session(ctx, login_result.effects, user.id, token, expires_at)
            login_result.csrf_token = csrf_token_service.regenerate_token(ctx.session)

            if trust_device and user_service.find_totp_uri(db, user.id) is not None:
                device_token = trusted_device_service.create_trusted_device(
                    db, user.id, None, user_agent, ctx.ip_address
                )
                login_result.trusted_device_token = device_token
                login_result.effects.set_cookie(
                    settings.TRUSTED_DEVICE_COOKIE_NAME,
                    device_token,
                    clock.utcnow() + timedelta(days=settings.TRUSTED_DEVICE_EXPIRE_DAYS),
                    ctx.is_https,
                )
                security_audit_service.log(
                    db, user.id, SecurityEventType.TRUSTED_DEVICE_ADDED, ctx.ip_address, user_agent
                )

        logger.info(f"User {user.id} logged in via {result.method.value} ({device_name})")
        return login_result

    @staticmethod
    def set_authentication_cookie_and_new_session(
        ctx: RequestContext,
        effects: ResponseEffects,
        user_id: int,
        token: str,
        expires_at: datetime,
    ) -> None:
        ctx.session.destroy()
        ctx.session.start()
        ctx.session.regenerate_id()

        effects.set_cookie(settings.AUTH_COOKIE_NAME, token, expires_at, ctx.is_https)
        Authentication._bind_session(ctx, user_id, hash_token(token))

    @staticmethod
    def _bind_session(ctx: RequestContext, user_id: int, token_hash: str) -> None:
        ctx.session.set(SESSION_USER_ID_KEY, user_id)
        ctx.session.set(SESSION_AUTH_TOKEN_KEY, token_hash)

    @staticmethod
    def _unbind_session(ctx: RequestContext) -> None:
        ctx.session.unset(SESSION_USER_ID_KEY)
        ctx.session.unset(SESSION_AUTH_TOKEN_KEY)

    @staticmethod
    def logout(db: Session, ctx: RequestContext) -> ResponseEffects:
        """
        End the session and revoke the presented auth token

        The token the session was opened with is revoked too, so a session
        cookie kept after the auth cookie is gone cannot be replayed. The
        trusted-device cookie is left alone; device trust outlives sessions.
        """
        effects = ResponseEffects()
        session_token_hash = ctx.session.find(SESSION_AUTH_TOKEN_KEY)

        user_id: Optional[int] = None
        try:
            user_id = Authentication.get_current_user_id(db, ctx)
        except NotAuthenticatedError:
            pass

        if session_token_hash:
            token_service.delete_auth_token_by_hash(db, session_token_hash)

        token = ctx.cookie(settings.AUTH_COOKIE_NAME)
        if token:
            token_service.delete_auth_token(db, token)
            effects.clear_cookie(settings.AUTH_COOKIE_NAME, ctx.is_https)

        if user_id is not None:
            security_audit_service.log(db, user_id, SecurityEventType.LOGOUT, ctx.ip_address, ctx.user_agent)

        ctx.session.destroy()
        return effects

    # --- current user ---

    @staticmethod
    def get_current_user_id(db: Session, ctx: RequestContext) -> int:
        """
        Resolve the user from the session, falling back to the auth cookie

        A session only vouches for its user while the auth token it was
        opened with is still live. The cookie fallback refreshes an existing
        session but never starts one.

        Raises:
            NotAuthenticatedError: If neither the session nor the auth cookie
                identifies a user
        """
        user_id = ctx.session.find(SESSION_USER_ID_KEY)
        if user_id is not None:
            token_hash = ctx.session.find(SESSION_AUTH_TOKEN_KEY)
            owner = token_service.find_user_id_by_token_hash(db, token_hash) if token_hash else None
            if owner is not None and owner == int(user_id):
                return owner
            logger.info(f"Session for user {user_id} no longer backed by a live auth token")
            Authentication._unbind_session(ctx)
            user_id = None

        token = ctx.cookie(settings.AUTH_COOKIE_NAME)
        if token:
            user_id = token_service.find_user_id_by_auth_token(db, token)
            if user_id is not None and ctx.session.is_started:
                Authentication._bind_session(ctx, user_id, hash_token(token))

        if user_id is None:
            raise NotAuthenticatedError()

        return int(user_id)

    @staticmethod
    def get_current_user(db: Session, ctx: RequestContext) -> User:
        return user_service.fetch_user(db, Authentication.get_current_user_id(db, ctx))

    @staticmethod
    def is_user_authenticated_with_cookie(
        db: Session,
        ctx: RequestContext,
        effects: Optional[ResponseEffects] = None,
    ) -> bool:
        """True if the auth cookie holds a live token; a stale cookie is cleared."""
        token = ctx.cookie(settings.AUTH_COOKIE_NAME)

        if token and token_service.is_valid_auth_token(db, token):
            return True

        if token and effects is not None:
            effects.clear_cookie(settings.AUTH_COOKIE_NAME, ctx.is_https)

        return False

    # --- bearer tokens ---

    @staticmethod
    def get_token(ctx: RequestContext) -> Optional[str]:
        return ctx.cookie(settings.AUTH_COOKIE_NAME) or ctx.header(settings.API_TOKEN_HEADER)

    @staticmethod
    def is_valid_token(db: Session, token: str) -> bool:
        """API tokens never expire; session tokens are checked and lazily purged."""
        if not token:
            return False
        if user_service.find_user_id_by_api_token(db, token) is not None:
            return True
        return token_service.is_valid_auth_token(db, token)

    @staticmethod
    def get_user_id_by_token(db: Session, ctx: RequestContext) -> Optional[int]:
        token = Authentication.get_token(ctx)
        if token is None:
            return None

        user_id = user_service.find_user_id_by_api_token(db, token)
        if user_id is not None:
            return user_id
        return token_service.find_user_id_by_auth_token(db, token)

    @staticmethod
    def delete_token(db: Session, token: str) -> None:
        token_service.delete_auth_token(db, token)

    @staticmethod
    def is_user_page_visible(target_user: User, request_user_id: Optional[int]) -> bool:
        if target_user.privacy_level == PRIVACY_PUBLIC:
            return True
        if target_user.privacy_level == PRIVACY_USERS_ONLY and request_user_id is not None:
            return True
        return target_user.id == request_user_id


authentication = Authentication()
