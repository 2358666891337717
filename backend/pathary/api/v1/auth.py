"""Authentication routes"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from pathary.api.deps import apply_effects, get_current_user, get_request_context, rate_limited, require_csrf
from pathary.config import settings
from pathary.core.database import get_db
from pathary.core.request_context import RequestContext
from pathary.models.user import User
from pathary.schemas.user import CsrfTokenResponse, LoginRequest, TokenResponse, UserResponse
from pathary.services.authentication import authentication
from pathary.services.csrf_token_service import csrf_token_service

router = APIRouter()


@router.post(
    "/login",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(rate_limited("login"))],
)
def login(
    credentials: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """
    Login endpoint - verify password and second factor, issue an auth token

    Web clients (device name omitted or equal to the web client name) also get
    the ``id`` cookie, a fresh session and, on request, a trusted-device cookie.

    Args:
        credentials: Email, password and optional second factor
        db: Database session

    Returns:
        Auth token, its expiry and the user
    """
    result = authentication.login(
        db,
        ctx,
        email=credentials.email,
        password=credentials.password,
        remember_me=credentials.remember_me,
        device_name=credentials.device_name or settings.WEB_CLIENT_NAME,
        user_agent=ctx.user_agent,
        totp_code=credentials.totp_code,
        recovery_code=credentials.recovery_code,
        trust_device=credentials.trust_device,
    )
    apply_effects(response, ctx, result.effects)

    return TokenResponse(
        token=result.token,
        expires_at=result.expires_at,
        user=UserResponse.model_validate(result.user),
        csrf_token=result.csrf_token,
    )


@router.post("/logout", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def logout(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """
    Logout endpoint - revoke the auth token and reset the session

    The trusted-device cookie survives logout.
    """
    effects = authentication.logout(db, ctx)
    apply_effects(response, ctx, effects)

    return {"success": True, "message": "Logged out successfully"}


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
):
    """Get current user information"""
    apply_effects(response, ctx)
    return UserResponse.model_validate(current_user)


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def get_csrf_token(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    CSRF token of the session, starting one if needed

    Browsers send it back in the CSRF header on state-changing requests.
    """
    token = csrf_token_service.generate_token(ctx.session)
    apply_effects(response, ctx)
    return CsrfTokenResponse(csrf_token=token)
