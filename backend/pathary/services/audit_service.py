"""Security audit log for authentication and account events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from prometheus_client import Counter
from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from pathary.config import settings
from pathary.core import clock
from pathary.core.request_context import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH, clip
from pathary.models.audit import SecurityAuditEvent
from pathary.models.user import User
from pathary.schemas.audit import SecurityAuditEventRecord

logger = logging.getLogger(__name__)

# Events not attributable to a known account are stored with a NULL user.
SYSTEM_USER_ID: Optional[int] = None

SECURITY_EVENTS_TOTAL = Counter(
    "pathary_security_events_total",
    "Security audit events written",
    ["event_type"],
)


class SecurityEventType(str, Enum):
    """Closed set of audited event types"""
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED_PASSWORD = "login_failed_password"
    LOGIN_FAILED_TOTP = "login_failed_totp"
    LOGIN_FAILED_RECOVERY_CODE = "login_failed_recovery_code"
    TOTP_ENABLED = "totp_enabled"
    TOTP_DISABLED = "totp_disabled"
    RECOVERY_CODES_GENERATED = "recovery_codes_generated"
    RECOVERY_CODE_USED = "recovery_code_used"
    TRUSTED_DEVICE_ADDED = "trusted_device_added"
    TRUSTED_DEVICE_REMOVED = "trusted_device_removed"
    ALL_TRUSTED_DEVICES_REMOVED = "all_trusted_devices_removed"
    PASSWORD_CHANGED = "password_changed"
    LOGOUT = "logout"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    USER_PASSWORD_CHANGED_BY_ADMIN = "user_password_changed_by_admin"


_EVENT_LABELS = {
    SecurityEventType.LOGIN_SUCCESS: "Login Success",
    SecurityEventType.LOGIN_FAILED_PASSWORD: "Login Failed (Password)",
    SecurityEventType.LOGIN_FAILED_TOTP: "Login Failed (2FA)",
    SecurityEventType.LOGIN_FAILED_RECOVERY_CODE: "Login Failed (Recovery Code)",
    SecurityEventType.TOTP_ENABLED: "2FA Enabled",
    SecurityEventType.TOTP_DISABLED: "2FA Disabled",
    SecurityEventType.RECOVERY_CODES_GENERATED: "Recovery Codes Generated",
    SecurityEventType.RECOVERY_CODE_USED: "Recovery Code Used",
    SecurityEventType.TRUSTED_DEVICE_ADDED: "Trusted Device Added",
    SecurityEventType.TRUSTED_DEVICE_REMOVED: "Trusted Device Removed",
    SecurityEventType.ALL_TRUSTED_DEVICES_REMOVED: "All Trusted Devices Removed",
    SecurityEventType.PASSWORD_CHANGED: "Password Changed",
    SecurityEventType.LOGOUT: "Logout",
    SecurityEventType.RATE_LIMIT_EXCEEDED: "Rate Limit Exceeded",
    SecurityEventType.USER_CREATED: "User Created",
    SecurityEventType.USER_UPDATED: "User Updated",
    SecurityEventType.USER_DELETED: "User Deleted",
    SecurityEventType.USER_PASSWORD_CHANGED_BY_ADMIN: "Password Changed by Admin",
}

# Written under the acting admin's id; kept off the admin's own profile trail
USER_MANAGEMENT_EVENTS = frozenset({
    SecurityEventType.USER_CREATED,
    SecurityEventType.USER_UPDATED,
    SecurityEventType.USER_DELETED,
    SecurityEventType.USER_PASSWORD_CHANGED_BY_ADMIN,
})


@dataclass(frozen=True)
class SecurityEventFilter:
    """Admin search criteria; unset fields do not filter"""
    event_type: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    user_id: Optional[int] = None
    ip_address: Optional[str] = None


def _encode_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    try:
        return json.dumps(metadata, ensure_ascii=False)
    except (TypeError, ValueError):
        logger.warning("Audit metadata is not serializable; storing event without metadata")
        return None


def _decode_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def _to_record(event: SecurityAuditEvent, user_name: Optional[str] = None) -> SecurityAuditEventRecord:
    return SecurityAuditEventRecord(
        id=event.id,
        user_id=event.user_id,
        user_name=user_name,
        event_type=event.event_type,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        metadata=_decode_metadata(event.metadata_json),
        created_at=event.created_at,
    )


class SecurityAuditService:
    """Persist immutable security audit trail entries."""

    @staticmethod
    def log(
        db: Session,
        user_id: Optional[int],
        event_type: SecurityEventType,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityAuditEventRecord]:
        """
        Append an audit event

        Never raises: a failed write is rolled back and reported to the
        operational log so the audited operation can still complete.

        Returns:
            The stored event, or None if it could not be written
        """
        event_type = SecurityEventType(event_type)
        try:
            event = SecurityAuditEvent(
                user_id=user_id,
                event_type=event_type.value,
                ip_address=clip(ip_address, IP_ADDRESS_MAX_LENGTH),
                user_agent=clip(user_agent, USER_AGENT_MAX_LENGTH),
                metadata_json=_encode_metadata(metadata),
            )
            db.add(event)
            db.commit()
            db.refresh(event)
        except Exception:
            logger.exception(
                "Failed to write security audit event %s for user %s", event_type.value, user_id
            )
            try:
                db.rollback()
            except Exception:
                logger.exception("Rollback after failed audit write also failed")
            return None

        SECURITY_EVENTS_TOTAL.labels(event_type.value).inc()
        return _to_record(event)

    @staticmethod
    def get_recent_events(
        db: Session,
        user_id: int,
        limit: int = 20,
        exclude_event_types: Iterable[str] = (),
    ) -> List[SecurityAuditEventRecord]:
        query = db.query(SecurityAuditEvent).filter(SecurityAuditEvent.user_id == user_id)
        excluded = [SecurityEventType(event_type).value for event_type in exclude_event_types]
        if excluded:
            query = query.filter(SecurityAuditEvent.event_type.notin_(excluded))
        events = (
            query.order_by(SecurityAuditEvent.created_at.desc(), SecurityAuditEvent.id.desc())
            .limit(limit)
            .all()
        )
        return [_to_record(event) for event in events]

    # --- admin queries ---

    @staticmethod
    def _filtered(db: Session, filters: SecurityEventFilter) -> Query:
        query = db.query(SecurityAuditEvent, User.name).outerjoin(User, SecurityAuditEvent.user_id == User.id)

        if filters.event_type:
            query = query.filter(SecurityAuditEvent.event_type == filters.event_type)
        if filters.user_id is not None:
            query = query.filter(SecurityAuditEvent.user_id == filters.user_id)
        if filters.ip_address:
            query = query.filter(SecurityAuditEvent.ip_address == filters.ip_address)
        if filters.date_from is not None:
            query = query.filter(SecurityAuditEvent.created_at >= datetime.combine(filters.date_from, time.min))
        if filters.date_to is not None:
            # whole days; the end date is inclusive
            end = datetime.combine(filters.date_to + timedelta(days=1), time.min)
            query = query.filter(SecurityAuditEvent.created_at < end)
        if filters.search:
            term = filters.search.strip()
            query = query.filter(
                or_(
                    SecurityAuditEvent.event_type.icontains(term, autoescape=True),
                    SecurityAuditEvent.ip_address.icontains(term, autoescape=True),
                    SecurityAuditEvent.user_agent.icontains(term, autoescape=True),
                    SecurityAuditEvent.metadata_json.icontains(term, autoescape=True),
                )
            )
        return query

    @staticmethod
    def find_events(
        db: Session,
        filters: SecurityEventFilter,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SecurityAuditEventRecord]:
        """
        Events of every user matching ``filters``, newest first

        Args:
            db: Database session
            filters: Search criteria
            limit: Page size
            offset: Rows to skip

        Returns:
            Records carrying the owning user's name, None for system events
        """
        rows = (
            SecurityAuditService._filtered(db, filters)
            .order_by(SecurityAuditEvent.created_at.desc(), SecurityAuditEvent.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )
        return [_to_record(event, user_name) for event, user_name in rows]

    @staticmethod
    def count_events(db: Session, filters: SecurityEventFilter) -> int:
        return SecurityAuditService._filtered(db, filters).count()

    @staticmethod
    def find_event_by_id(db: Session, event_id: int) -> Optional[SecurityAuditEventRecord]:
        row = (
            db.query(SecurityAuditEvent, User.name)
            .outerjoin(User, SecurityAuditEvent.user_id == User.id)
            .filter(SecurityAuditEvent.id == event_id)
            .first()
        )
        if row is None:
            return None
        event, user_name = row
        return _to_record(event, user_name)

    @staticmethod
    def find_distinct_event_types(db: Session) -> List[str]:
        rows = db.query(SecurityAuditEvent.event_type).distinct().order_by(SecurityAuditEvent.event_type).all()
        return [event_type for (event_type,) in rows]

    @staticmethod
    def delete_all_events(db: Session, user_id: int) -> int:
        count = (
            db.query(SecurityAuditEvent)
            .filter(SecurityAuditEvent.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        return count

    @staticmethod
    def cleanup_old_events(db: Session, days_to_keep: Optional[int] = None) -> int:
        """Retention sweep; deletes events older than ``days_to_keep`` days."""
        if days_to_keep is None:
            days_to_keep = settings.SECURITY_AUDIT_RETENTION_DAYS
        older_than = clock.utcnow() - timedelta(days=days_to_keep)
        count = (
            db.query(SecurityAuditEvent)
            .filter(SecurityAuditEvent.created_at < older_than)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info(f"Security audit retention removed {count} events older than {days_to_keep} days")
        return count

    @staticmethod
    def get_event_type_label(event_type: str) -> str:
        try:
            return _EVENT_LABELS[SecurityEventType(event_type)]
        except ValueError:
            return event_type


security_audit_service = SecurityAuditService()
