"""Trusted devices - long-lived credentials that let a device skip the second factor"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from pathary.config import settings
from pathary.core import clock
from pathary.core.request_context import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH, clip
from pathary.core.security import device_fingerprint, generate_token, hash_token, tokens_match
from pathary.models.security import TrustedDevice
from pathary.schemas.security import TrustedDeviceRecord
from pathary.utils.device_name import parse_device_name

logger = logging.getLogger(__name__)


class TrustedDeviceService:
    """Issue, verify and expire trusted-device tokens"""

    @staticmethod
    def cleanup_expired_devices(db: Session) -> int:
        """Delete every expired device. Safe to call before each login."""
        count = (
            db.query(TrustedDevice)
            .filter(TrustedDevice.expires_at <= clock.utcnow())
            .delete(synchronize_session=False)
        )
        db.commit()
        if count:
            logger.info(f"Removed {count} expired trusted devices")
        return count

    @staticmethod
    def create_trusted_device(
        db: Session,
        user_id: int,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """
        Trust the calling device for the configured lifetime

        Args:
            db: Database session
            user_id: Owner of the device
            device_name: Label; parsed from the user agent when omitted
            user_agent: Request user agent
            ip_address: Request IP address

        Returns:
            The raw device token; only its digest is stored
        """
        token = generate_token()
        now = clock.utcnow()

        if not device_name:
            device_name = parse_device_name(user_agent)

        device = TrustedDevice(
            user_id=user_id,
            token_hash=hash_token(token),
            device_name=device_name,
            device_fingerprint=device_fingerprint(user_agent, ip_address),
            user_agent=clip(user_agent, USER_AGENT_MAX_LENGTH),
            ip_address=clip(ip_address, IP_ADDRESS_MAX_LENGTH),
            expires_at=now + timedelta(days=settings.TRUSTED_DEVICE_EXPIRE_DAYS),
            created_at=now,
        )
        db.add(device)
        db.commit()
        db.refresh(device)

        TrustedDeviceService._enforce_device_limit(db, user_id)

        logger.info(f"Trusted device {device.id} ({device_name}) created for user {user_id}")
        return token

    @staticmethod
    def _enforce_device_limit(db: Session, user_id: int) -> None:
        devices = (
            db.query(TrustedDevice.id)
            .filter(TrustedDevice.user_id == user_id)
            .order_by(TrustedDevice.created_at.desc(), TrustedDevice.id.desc())
            .all()
        )
        stale_ids = [row.id for row in devices[settings.MAX_TRUSTED_DEVICES_PER_USER:]]
        if not stale_ids:
            return

        db.query(TrustedDevice).filter(TrustedDevice.id.in_(stale_ids)).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Trimmed {len(stale_ids)} trusted devices over the limit for user {user_id}")

    @staticmethod
    def verify_trusted_device(
        db: Session,
        token: str,
        user_id: Optional[int] = None,
    ) -> Optional[TrustedDeviceRecord]:
        """
        Resolve a device token

        Unknown and expired tokens both return None. An expired device is
        deleted; the last-used timestamp of a valid one is refreshed.
        """
        if not token:
            return None

        query = db.query(TrustedDevice).filter(TrustedDevice.token_hash == hash_token(token))
        if user_id is not None:
            query = query.filter(TrustedDevice.user_id == user_id)
        device = query.first()

        if device is None:
            return None

        now = clock.utcnow()
        if device.expires_at <= now:
            db.query(TrustedDevice).filter(
                TrustedDevice.id == device.id,
                TrustedDevice.expires_at <= now,
            ).delete(synchronize_session=False)
            db.commit()
            logger.info(f"Rejected and removed expired trusted device {device.id}")
            return None

        device.last_used_at = now
        db.commit()
        db.refresh(device)
        return TrustedDeviceRecord.model_validate(device)

    @staticmethod
    def get_trusted_devices(db: Session, user_id: int) -> List[TrustedDeviceRecord]:
        devices = (
            db.query(TrustedDevice)
            .filter(TrustedDevice.user_id == user_id, TrustedDevice.expires_at > clock.utcnow())
            .order_by(TrustedDevice.created_at.desc(), TrustedDevice.id.desc())
            .all()
        )
        return [TrustedDeviceRecord.model_validate(device) for device in devices]

    @staticmethod
    def find_device_for_user(db: Session, user_id: int, device_id: int) -> Optional[TrustedDeviceRecord]:
        device = (
            db.query(TrustedDevice)
            .filter(TrustedDevice.id == device_id, TrustedDevice.user_id == user_id)
            .first()
        )
        return TrustedDeviceRecord.model_validate(device) if device else None

    @staticmethod
    def matches_token(device: TrustedDeviceRecord, token: Optional[str]) -> bool:
        return bool(token) and tokens_match(token, device.token_hash)

    @staticmethod
    def revoke_trusted_device(db: Session, device_id: int) -> bool:
        count = db.query(TrustedDevice).filter(TrustedDevice.id == device_id).delete(synchronize_session=False)
        db.commit()
        return count > 0

    @staticmethod
    def revoke_all_trusted_devices(db: Session, user_id: int) -> int:
        count = db.query(TrustedDevice).filter(TrustedDevice.user_id == user_id).delete(synchronize_session=False)
        db.commit()
        return count


trusted_device_service = TrustedDeviceService()
