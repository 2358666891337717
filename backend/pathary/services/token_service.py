"""Auth token issuance, validation and revocation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from pathary.core import clock
from pathary.core.request_context import USER_AGENT_MAX_LENGTH, clip
from pathary.core.security import generate_token, hash_token
from pathary.models.security import AuthToken
from pathary.schemas.security import AuthTokenRecord

logger = logging.getLogger(__name__)


class TokenService:
    """Manage session auth-token lifecycle."""

    @staticmethod
    def create_expiration_date(days: int = 1) -> datetime:
        return clock.utcnow() + timedelta(days=days)

    @staticmethod
    def create_auth_token(
        db: Session,
        *,
        user_id: int,
        device_name: str,
        user_agent: Optional[str],
        expiration_date: datetime,
    ) -> str:
        token = generate_token()
        record = AuthToken(
            user_id=user_id,
            token_hash=hash_token(token),
            device_name=device_name,
            user_agent=clip(user_agent, USER_AGENT_MAX_LENGTH),
            expiration_date=clock.naive_utc(expiration_date),
        )
        db.add(record)
        db.commit()
        return token

    @staticmethod
    def _find(db: Session, token_hash: str) -> Optional[AuthToken]:
        if not token_hash:
            return None
        return db.query(AuthToken).filter(AuthToken.token_hash == token_hash).first()

    @staticmethod
    def _find_valid(db: Session, token_hash: str) -> Optional[AuthToken]:
        """Token row if unexpired; an expired row is deleted on sight."""
        record = TokenService._find(db, token_hash)
        if record is None:
            return None

        now = clock.utcnow()
        if record.expiration_date <= now:
            db.query(AuthToken).filter(AuthToken.id == record.id).delete(synchronize_session=False)
            db.commit()
            logger.info(f"Deleted expired auth token {record.id} for user {record.user_id}")
            return None

        record.last_used_at = now
        db.commit()
        return record

    @staticmethod
    def is_valid_auth_token(db: Session, token: str) -> bool:
        if not token:
            return False
        return TokenService._find_valid(db, hash_token(token)) is not None

    @staticmethod
    def find_user_id_by_auth_token(db: Session, token: str) -> Optional[int]:
        if not token:
            return None
        return TokenService.find_user_id_by_token_hash(db, hash_token(token))

    @staticmethod
    def find_user_id_by_token_hash(db: Session, token_hash: str) -> Optional[int]:
        """Owner of a live token known only by its digest, as sessions keep it"""
        record = TokenService._find_valid(db, token_hash)
        return record.user_id if record else None

    @staticmethod
    def delete_auth_token(db: Session, token: str) -> bool:
        if not token:
            return False
        return TokenService.delete_auth_token_by_hash(db, hash_token(token))

    @staticmethod
    def delete_auth_token_by_hash(db: Session, token_hash: str) -> bool:
        count = (
            db.query(AuthToken)
            .filter(AuthToken.token_hash == token_hash)
            .delete(synchronize_session=False)
        )
        db.commit()
        return count > 0

    @staticmethod
    def delete_expired_tokens(db: Session) -> int:
        count = (
            db.query(AuthToken)
            .filter(AuthToken.expiration_date <= clock.utcnow())
            .delete(synchronize_session=False)
        )
        db.commit()
        return count

    @staticmethod
    def get_auth_tokens(db: Session, user_id: int) -> List[AuthTokenRecord]:
        rows = (
            db.query(AuthToken)
            .filter(AuthToken.user_id == user_id)
            .order_by(AuthToken.created_at.desc())
            .all()
        )
        return [AuthTokenRecord.model_validate(row) for row in rows]


token_service = TokenService()
