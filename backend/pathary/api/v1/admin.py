"""Admin security event routes"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pathary.api.deps import get_current_admin_user, require_csrf
from pathary.core.database import get_db
from pathary.core.exceptions import ResourceNotFoundError
from pathary.models.user import User
from pathary.schemas.audit import AdminSecurityEventListResponse, AdminSecurityEventResponse, SecurityAuditEventRecord
from pathary.services.audit_service import SecurityEventFilter, security_audit_service

router = APIRouter(dependencies=[Depends(require_csrf), Depends(get_current_admin_user)])


def _to_response(event: SecurityAuditEventRecord) -> AdminSecurityEventResponse:
    return AdminSecurityEventResponse(
        id=event.id,
        user_id=event.user_id,
        user_name=event.user_name,
        event_type=event.event_type,
        event_label=security_audit_service.get_event_type_label(event.event_type),
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        metadata=event.metadata,
        created_at=event.created_at,
    )


@router.get("/events", response_model=AdminSecurityEventListResponse)
def list_events(
    event_type: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """
    Security events of every user, newest first

    Args:
        event_type: Exact event type
        search: Substring of the type, IP address, user agent or metadata
        date_from: First day included
        date_to: Last day included
        user_id: Owning user
        ip_address: Exact client address
        limit: Page size, 1 to 100
        offset: Rows to skip

    Returns:
        One page of events and the total matching count
    """
    filters = SecurityEventFilter(
        event_type=event_type or None,
        search=search or None,
        date_from=date_from,
        date_to=date_to,
        user_id=user_id,
        ip_address=ip_address or None,
    )
    events = security_audit_service.find_events(db, filters, limit=limit, offset=offset)
    return AdminSecurityEventListResponse(
        events=[_to_response(event) for event in events],
        total=security_audit_service.count_events(db, filters),
        limit=limit,
        offset=offset,
    )


@router.get("/events/types", response_model=List[str])
def list_event_types(db: Session = Depends(get_db)):
    """Event types present in the log, for the filter dropdown"""
    return security_audit_service.find_distinct_event_types(db)


@router.get("/events/{event_id}", response_model=AdminSecurityEventResponse)
def get_event(event_id: int, db: Session = Depends(get_db)):
    event = security_audit_service.find_event_by_id(db, event_id)
    if event is None:
        raise ResourceNotFoundError("Security event")
    return _to_response(event)
