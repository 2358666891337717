"""User management routes"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from pathary.api.deps import get_current_admin_user, get_request_context, rate_limited, require_csrf
from pathary.core.database import get_db
from pathary.core.request_context import RequestContext
from pathary.models.user import User
from pathary.schemas.user import UserCreateRequest, UserResponse, UserUpdateRequest
from pathary.services.audit_service import SecurityEventType, security_audit_service
from pathary.services.user_service import user_service

router = APIRouter(dependencies=[Depends(require_csrf)])


@router.post(
    "/",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited("user_create"))],
)
def create_user(
    user_data: UserCreateRequest,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Create new user (admin only)

    Args:
        user_data: User creation data
        current_user: Current admin user
        db: Database session

    Returns:
        Created user
    """
    user_service.ensure_password_is_valid(user_data.password)
    user = user_service.create_user(
        db,
        email=user_data.email,
        name=user_data.name,
        password=user_data.password,
        is_admin=user_data.is_admin,
        privacy_level=user_data.privacy_level,
    )
    security_audit_service.log(
        db,
        current_user.id,
        SecurityEventType.USER_CREATED,
        ctx.ip_address,
        ctx.user_agent,
        {
            "target_user_id": user.id,
            "target_email": user.email,
            "target_name": user.name,
            "is_admin": user.is_admin,
        },
    )
    return UserResponse.model_validate(user)


@router.put("/{user_id}", response_model=UserResponse)
def update_user(
    user_id: int,
    user_data: UserUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Update a user (admin only)

    A password change made here is audited separately unless the admin
    changed their own password.
    """
    target = user_service.fetch_user(db, user_id)
    was_admin = target.is_admin

    if user_data.password:
        user_service.ensure_password_is_valid(user_data.password)

    changed_fields = user_service.update_user(
        db,
        user_id,
        email=user_data.email,
        name=user_data.name,
        is_admin=user_data.is_admin,
        privacy_level=user_data.privacy_level,
    )

    if user_data.password:
        user_service.update_password(db, user_id, user_data.password)
        changed_fields.append("password")

    metadata = {
        "target_user_id": user_id,
        "target_email": target.email,
        "changed_fields": changed_fields,
    }
    if was_admin != target.is_admin:
        metadata["admin_status_change"] = {"from": was_admin, "to": target.is_admin}
    security_audit_service.log(
        db, current_user.id, SecurityEventType.USER_UPDATED, ctx.ip_address, ctx.user_agent, metadata
    )

    if user_data.password and user_id != current_user.id:
        security_audit_service.log(
            db,
            current_user.id,
            SecurityEventType.USER_PASSWORD_CHANGED_BY_ADMIN,
            ctx.ip_address,
            ctx.user_agent,
            {"target_user_id": user_id, "target_email": target.email},
        )

    return UserResponse.model_validate(target)


@router.delete("/{user_id}", status_code=status.HTTP_200_OK)
def delete_user(
    user_id: int,
    ctx: RequestContext = Depends(get_request_context),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Delete user (admin only); the user's tokens, codes, devices and audit
    events are removed with it
    """
    target = user_service.fetch_user(db, user_id)
    # logged first so the target's details survive the delete
    security_audit_service.log(
        db,
        current_user.id,
        SecurityEventType.USER_DELETED,
        ctx.ip_address,
        ctx.user_agent,
        {
            "target_user_id": target.id,
            "target_email": target.email,
            "target_name": target.name,
            "was_admin": target.is_admin,
        },
    )
    user_service.delete_user(db, user_id)
    return {"success": True, "message": "User deleted successfully"}
