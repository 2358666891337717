"""Recovery codes - single-use backup credentials for the second factor"""

from __future__ import annotations

import logging
import secrets
from typing import List

from sqlalchemy.orm import Session

from pathary.config import settings
from pathary.core import clock
from pathary.core.security import get_password_hash, verify_password
from pathary.models.security import RecoveryCode
from pathary.schemas.security import RecoveryCodeRecord

logger = logging.getLogger(__name__)

# No 0/O or 1/I
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def normalize_code(code: str) -> str:
    """Trim, strip dashes and spaces, upper-case."""
    return code.strip().replace("-", "").replace(" ", "").upper()


def legacy_format(normalized: str) -> str:
    """Dashed ``XXXX-XXXX-XX`` form used by codes hashed before normalization."""
    return f"{normalized[0:4]}-{normalized[4:8]}-{normalized[8:10]}"


class RecoveryCodeService:
    """Generate and consume recovery codes"""

    @staticmethod
    def _generate_random_code() -> str:
        """Random code formatted for display, e.g. ``XN3J-8MLH-5C``."""
        code = ""
        for i in range(settings.RECOVERY_CODE_LENGTH):
            if i > 0 and i % 4 == 0:
                code += "-"
            code += secrets.choice(RECOVERY_CODE_ALPHABET)
        return code

    @staticmethod
    def generate_recovery_codes(db: Session, user_id: int) -> List[str]:
        """
        Replace all of a user's recovery codes with a fresh batch

        Args:
            db: Database session
            user_id: Owner of the codes

        Returns:
            Display-formatted plaintext codes; they cannot be retrieved again
        """
        db.query(RecoveryCode).filter(RecoveryCode.user_id == user_id).delete(synchronize_session=False)

        codes = []
        now = clock.utcnow()
        for _ in range(settings.RECOVERY_CODE_COUNT):
            code = RecoveryCodeService._generate_random_code()
            db.add(RecoveryCode(
                user_id=user_id,
                code_hash=get_password_hash(normalize_code(code)),
                created_at=now,
            ))
            codes.append(code)

        db.commit()
        logger.info(f"Generated {len(codes)} recovery codes for user {user_id}")
        return codes

    @staticmethod
    def _mark_used(db: Session, code_id: int) -> bool:
        """Consume a code; False if another request consumed it first."""
        updated = (
            db.query(RecoveryCode)
            .filter(RecoveryCode.id == code_id, RecoveryCode.used_at.is_(None))
            .update({RecoveryCode.used_at: clock.utcnow()}, synchronize_session=False)
        )
        db.commit()
        return updated == 1

    @staticmethod
    def verify_recovery_code(db: Session, user_id: int, code: str) -> bool:
        """
        Verify and consume a recovery code

        Only unused codes are candidates. The first hash match is consumed
        with a conditional update, so a code authorizes at most one login.

        Returns:
            True if a code was consumed by this call
        """
        normalized = normalize_code(code)
        if not normalized:
            return False

        unused = (
            db.query(RecoveryCode)
            .filter(RecoveryCode.user_id == user_id, RecoveryCode.used_at.is_(None))
            .order_by(RecoveryCode.created_at.desc(), RecoveryCode.id.desc())
            .all()
        )

        for recovery_code in unused:
            matched = verify_password(normalized, recovery_code.code_hash)
            if not matched and len(normalized) == 10:
                matched = verify_password(legacy_format(normalized), recovery_code.code_hash)
            if not matched:
                continue

            if RecoveryCodeService._mark_used(db, recovery_code.id):
                logger.info(f"Recovery code {recovery_code.id} consumed for user {user_id}")
                return True

            # Lost the race for this code; it is now dead.
            logger.warning(f"Recovery code {recovery_code.id} for user {user_id} was consumed concurrently")

        return False

    @staticmethod
    def get_remaining_code_count(db: Session, user_id: int) -> int:
        return (
            db.query(RecoveryCode)
            .filter(RecoveryCode.user_id == user_id, RecoveryCode.used_at.is_(None))
            .count()
        )

    @staticmethod
    def has_recovery_codes(db: Session, user_id: int) -> bool:
        return RecoveryCodeService.get_remaining_code_count(db, user_id) > 0

    @staticmethod
    def get_recovery_codes(db: Session, user_id: int) -> List[RecoveryCodeRecord]:
        rows = (
            db.query(RecoveryCode)
            .filter(RecoveryCode.user_id == user_id)
            .order_by(RecoveryCode.created_at.desc(), RecoveryCode.id.desc())
            .all()
        )
        return [RecoveryCodeRecord.model_validate(row) for row in rows]

    @staticmethod
    def delete_all_recovery_codes(db: Session, user_id: int) -> int:
        count = db.query(RecoveryCode).filter(RecoveryCode.user_id == user_id).delete(synchronize_session=False)
        db.commit()
        return count


recovery_code_service = RecoveryCodeService()
