"""Profile security routes - TOTP, recovery codes, trusted devices, password"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from pathary.api.deps import apply_effects, get_current_user, get_request_context, rate_limited, require_csrf
from pathary.config import settings
from pathary.core.database import get_db
from pathary.core.exceptions import AuthorizationError, BusinessLogicError, ResourceNotFoundError
from pathary.core.request_context import RequestContext, ResponseEffects
from pathary.models.user import User
from pathary.schemas.audit import SecurityEventListResponse, SecurityEventResponse
from pathary.schemas.security import RecoveryCodeCountResponse, RecoveryCodesResponse, TrustedDeviceResponse
from pathary.schemas.user import ChangePasswordRequest, DisableTotpRequest, TotpSetupResponse, TotpVerifyRequest
from pathary.services.audit_service import USER_MANAGEMENT_EVENTS, SecurityEventType, security_audit_service
from pathary.services.recovery_code_service import recovery_code_service
from pathary.services.totp_service import totp_service
from pathary.services.trusted_device_service import trusted_device_service
from pathary.services.user_service import user_service

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_csrf)])

PENDING_TOTP_SESSION_KEY = "pendingTotpUri"


def _ensure_account_changes_allowed(user: User) -> None:
    if user.core_account_changes_disabled:
        raise AuthorizationError("Account changes are disabled for this user")


def _clear_trusted_device_cookie(ctx: RequestContext) -> ResponseEffects:
    effects = ResponseEffects()
    if ctx.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME):
        effects.clear_cookie(settings.TRUSTED_DEVICE_COOKIE_NAME, ctx.is_https)
    return effects


# --- TOTP ---

@router.post("/totp/enable", response_model=TotpSetupResponse)
def enable_totp(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
):
    """
    Start TOTP enrollment

    The provisioning URI is kept in the session until a code proves the
    authenticator app was set up.
    """
    _ensure_account_changes_allowed(current_user)

    pending = totp_service.create_totp(current_user.name)
    ctx.session.set(PENDING_TOTP_SESSION_KEY, pending.provisioning_uri)
    apply_effects(response, ctx)

    return TotpSetupResponse(totp_uri=pending.provisioning_uri, secret=pending.secret)


@router.post("/totp/verify", response_model=RecoveryCodesResponse)
def verify_and_save_totp(
    body: TotpVerifyRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Finish TOTP enrollment and hand out the first set of recovery codes

    Returns:
        Recovery codes; shown once, never retrievable again
    """
    _ensure_account_changes_allowed(current_user)

    pending_uri = ctx.session.find(PENDING_TOTP_SESSION_KEY)
    if not pending_uri:
        raise BusinessLogicError("No two-factor authentication setup in progress")

    if not totp_service.verify_totp_uri(db, current_user.id, body.code, pending_uri):
        raise BusinessLogicError("Invalid two-factor authentication code.")

    user_service.update_totp_uri(db, current_user.id, pending_uri)
    ctx.session.unset(PENDING_TOTP_SESSION_KEY)

    codes = recovery_code_service.generate_recovery_codes(db, current_user.id)
    security_audit_service.log(db, current_user.id, SecurityEventType.TOTP_ENABLED, ctx.ip_address, ctx.user_agent)
    apply_effects(response, ctx)

    logger.info(f"TOTP enabled for user {current_user.id}")
    return RecoveryCodesResponse(recovery_codes=codes)


@router.post("/totp/disable", status_code=status.HTTP_200_OK)
def disable_totp(
    body: DisableTotpRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Remove the second factor along with its recovery codes and trusted devices"""
    _ensure_account_changes_allowed(current_user)

    if not user_service.is_valid_password(db, current_user.id, body.password):
        raise BusinessLogicError("Incorrect password.")

    user_service.delete_totp(db, current_user.id)
    recovery_code_service.delete_all_recovery_codes(db, current_user.id)
    trusted_device_service.revoke_all_trusted_devices(db, current_user.id)
    security_audit_service.log(db, current_user.id, SecurityEventType.TOTP_DISABLED, ctx.ip_address, ctx.user_agent)

    apply_effects(response, ctx, _clear_trusted_device_cookie(ctx))

    logger.info(f"TOTP disabled for user {current_user.id}")
    return {"success": True, "message": "Two-factor authentication disabled"}


# --- recovery codes ---

@router.post("/recovery-codes", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Replace every recovery code of the user with a fresh set"""
    if user_service.find_totp_uri(db, current_user.id) is None:
        raise BusinessLogicError("Two-factor authentication is not enabled")

    codes = recovery_code_service.generate_recovery_codes(db, current_user.id)
    security_audit_service.log(
        db, current_user.id, SecurityEventType.RECOVERY_CODES_GENERATED, ctx.ip_address, ctx.user_agent
    )
    return RecoveryCodesResponse(recovery_codes=codes)


@router.get("/recovery-codes/count", response_model=RecoveryCodeCountResponse)
def get_recovery_code_count(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return RecoveryCodeCountResponse(remaining=recovery_code_service.get_remaining_code_count(db, current_user.id))


# --- trusted devices ---

@router.get("/trusted-devices", response_model=List[TrustedDeviceResponse])
def list_trusted_devices(
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Unexpired trusted devices, newest first; the calling device is flagged"""
    current_token = ctx.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME)
    return [
        TrustedDeviceResponse(
            id=device.id,
            device_name=device.device_name,
            device_fingerprint=device.device_fingerprint,
            ip_address=device.ip_address,
            created_at=device.created_at,
            expires_at=device.expires_at,
            last_used_at=device.last_used_at,
            is_current_device=trusted_device_service.matches_token(device, current_token),
        )
        for device in trusted_device_service.get_trusted_devices(db, current_user.id)
    ]


@router.delete("/trusted-devices/{device_id}", status_code=status.HTTP_200_OK)
def revoke_trusted_device(
    device_id: int,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Revoke one trusted device

    Raises:
        ResourceNotFoundError: If the device does not belong to the user
    """
    device = trusted_device_service.find_device_for_user(db, current_user.id, device_id)
    if device is None:
        raise ResourceNotFoundError("Trusted device")

    is_current_device = trusted_device_service.matches_token(
        device, ctx.cookie(settings.TRUSTED_DEVICE_COOKIE_NAME)
    )
    trusted_device_service.revoke_trusted_device(db, device.id)
    security_audit_service.log(
        db,
        current_user.id,
        SecurityEventType.TRUSTED_DEVICE_REMOVED,
        ctx.ip_address,
        ctx.user_agent,
        {"device_id": device.id, "is_current_device": is_current_device},
    )

    if is_current_device:
        apply_effects(response, ctx, _clear_trusted_device_cookie(ctx))

    return {"success": True, "is_current_device": is_current_device}


@router.delete("/trusted-devices", status_code=status.HTTP_200_OK)
def revoke_all_trusted_devices(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    count = trusted_device_service.revoke_all_trusted_devices(db, current_user.id)
    security_audit_service.log(
        db,
        current_user.id,
        SecurityEventType.ALL_TRUSTED_DEVICES_REMOVED,
        ctx.ip_address,
        ctx.user_agent,
        {"count": count},
    )
    apply_effects(response, ctx, _clear_trusted_device_cookie(ctx))

    return {"success": True, "revoked": count}


# --- password ---

@router.post(
    "/password",
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(rate_limited("password_change"))],
)
def change_password(
    body: ChangePasswordRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Change the password and revoke every trusted device

    Raises:
        AuthorizationError: If account changes are disabled
        BusinessLogicError: If the current password is wrong
        PasswordPolicyViolationError: If the new password is too weak
    """
    _ensure_account_changes_allowed(current_user)

    if not user_service.is_valid_password(db, current_user.id, body.current_password):
        raise BusinessLogicError("Current password is incorrect.")

    user_service.ensure_password_is_valid(body.new_password)
    user_service.update_password(db, current_user.id, body.new_password)

    revoked = trusted_device_service.revoke_all_trusted_devices(db, current_user.id)
    security_audit_service.log(
        db, current_user.id, SecurityEventType.PASSWORD_CHANGED, ctx.ip_address, ctx.user_agent
    )
    apply_effects(response, ctx, _clear_trusted_device_cookie(ctx))

    return {"success": True, "message": "Password changed", "trusted_devices_revoked": revoked}


# --- audit trail ---

@router.get("/events", response_model=SecurityEventListResponse)
def list_security_events(
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """The user's own security events; user-management events stay on the admin view"""
    limit = max(1, min(limit, 100))
    events = security_audit_service.get_recent_events(
        db, current_user.id, limit, exclude_event_types=USER_MANAGEMENT_EVENTS
    )
    return SecurityEventListResponse(
        events=[
            SecurityEventResponse(
                id=event.id,
                event_type=event.event_type,
                event_label=security_audit_service.get_event_type_label(event.event_type),
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                metadata=event.metadata,
                created_at=event.created_at,
            )
            for event in events
        ]
    )
