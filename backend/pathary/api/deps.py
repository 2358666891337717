"""API dependencies - request context, authentication and rate limiting"""

from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from pathary.config import settings
from pathary.core.database import get_db
from pathary.core.exceptions import AuthorizationError, NotAuthenticatedError
from pathary.core.request_context import (
    IP_ADDRESS_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    RequestContext,
    ResponseEffects,
    clip,
)
from pathary.core.session import SessionWrapper, session_store
from pathary.models.user import User
from pathary.services.authentication import authentication
from pathary.services.csrf_token_service import csrf_token_service
from pathary.services.rate_limit_policy import enforce_rate_limit, get_policy
from pathary.services.user_service import user_service

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def get_client_ip(request: Request) -> Optional[str]:
    """
    Socket peer of the request

    Forwarded headers are only honoured through ``ProxyHeadersMiddleware``,
    which rewrites the peer when the connection comes from a trusted proxy.
    """
    return request.client.host if request.client else None


def is_https_request(request: Request) -> bool:
    return request.url.scheme == "https"


def _http_date(value: datetime) -> str:
    # Naive datetimes are UTC throughout the app
    return value.strftime("%a, %d %b %Y %H:%M:%S GMT")


def get_request_context(request: Request) -> RequestContext:
    """
    Build the transport-independent view of the current request

    FastAPI caches dependencies per request, so every dependency and the
    route share one context and one session.
    """
    return RequestContext(
        ip_address=clip(get_client_ip(request), IP_ADDRESS_MAX_LENGTH),
        user_agent=clip(request.headers.get("User-Agent"), USER_AGENT_MAX_LENGTH),
        is_https=is_https_request(request),
        session=SessionWrapper(session_store, request.cookies.get(settings.SESSION_COOKIE_NAME)),
        path=request.url.path,
        cookies=dict(request.cookies),
        headers=dict(request.headers),
    )


def require_csrf(request: Request, ctx: RequestContext = Depends(get_request_context)) -> None:
    """
    Reject state-changing browser requests without the session's CSRF token

    Requests authenticated only by the API token header carry no ambient
    credentials and are exempt, as are requests with neither an auth cookie
    nor a session.

    Raises:
        AuthorizationError: If the CSRF header is missing or wrong
    """
    if request.method in SAFE_METHODS:
        return
    if ctx.header(settings.API_TOKEN_HEADER) and not ctx.cookie(settings.AUTH_COOKIE_NAME):
        return
    if not ctx.cookie(settings.AUTH_COOKIE_NAME) and not ctx.session.is_started:
        return
    if not csrf_token_service.validate_token(ctx.session, ctx.header(settings.CSRF_HEADER_NAME)):
        raise AuthorizationError("CSRF token validation failed")


def apply_effects(response: Response, ctx: RequestContext, effects: Optional[ResponseEffects] = None) -> None:
    """
    Write cookie instructions and the session cookie onto ``response``

    Args:
        response: Response being built by FastAPI
        ctx: Request context whose session may have changed
        effects: Cookies requested by the services, if any
    """
    for instruction in (effects.cookies if effects else []):
        if instruction.is_deletion:
            response.delete_cookie(
                instruction.name,
                path=instruction.path,
                secure=instruction.secure,
                httponly=instruction.httponly,
                samesite=instruction.samesite,
            )
            continue
        response.set_cookie(
            instruction.name,
            instruction.value,
            expires=_http_date(instruction.expires) if instruction.expires else None,
            path=instruction.path,
            secure=instruction.secure,
            httponly=instruction.httponly,
            samesite=instruction.samesite,
        )

    if effects:
        for name, value in effects.headers.items():
            response.headers[name] = value

    if ctx.session.id_changed:
        if ctx.session.session_id:
            response.set_cookie(
                settings.SESSION_COOKIE_NAME,
                ctx.session.session_id,
                path="/",
                secure=ctx.is_https,
                httponly=True,
                samesite="lax",
            )
        else:
            response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")


def get_current_user_id(
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> int:
    """
    Resolve the user from the session, the auth cookie or the API token header

    Raises:
        NotAuthenticatedError: If nothing identifies a user
    """
    try:
        return authentication.get_current_user_id(db, ctx)
    except NotAuthenticatedError:
        user_id = authentication.get_user_id_by_token(db, ctx)
        if user_id is None:
            raise
        return user_id


def get_current_user(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> User:
    return user_service.fetch_user(db, user_id)


def get_current_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Raises:
        AuthorizationError: If user is not admin
    """
    if not current_user.is_admin:
        raise AuthorizationError("Admin access required")
    return current_user


def get_optional_current_user_id(
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> Optional[int]:
    try:
        return get_current_user_id(ctx, db)
    except NotAuthenticatedError:
        return None


def rate_limited(policy_name: str) -> Callable[..., None]:
    """Dependency factory applying the named rate-limit policy to a route"""
    policy = get_policy(policy_name)

    def _check(
        ctx: RequestContext = Depends(get_request_context),
        user_id: Optional[int] = Depends(get_optional_current_user_id),
        db: Session = Depends(get_db),
    ) -> None:
        enforce_rate_limit(db, policy, ctx, user_id)

    return _check
