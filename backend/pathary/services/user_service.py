"""User service - the account lookups and password/TOTP storage the auth core relies on"""

import logging
import re
from typing import List, Optional

from sqlalchemy.orm import Session

from pathary.core.exceptions import PasswordPolicyViolationError, ResourceAlreadyExistsError, ResourceNotFoundError
from pathary.core.security import get_password_hash, verify_password
from pathary.models.user import User

logger = logging.getLogger(__name__)


class UserService:
    """Service for user management"""

    PASSWORD_MIN_LENGTH = 10

    @staticmethod
    def create_user(
        db: Session,
        email: str,
        name: str,
        password: str,
        is_admin: bool = False,
        privacy_level: int = 1,
    ) -> User:
        """
        Create new user

        Args:
            db: Database session
            email: Login email
            name: Display name
            password: Plain text password

        Returns:
            Created user
        """
        if UserService.find_user_by_email(db, email) is not None:
            raise ResourceAlreadyExistsError("Email")
        if UserService.find_user_by_name(db, name) is not None:
            raise ResourceAlreadyExistsError("Name")

        user = User(
            email=email.strip().lower(),
            name=name,
            password_hash=get_password_hash(password),
            is_admin=is_admin,
            privacy_level=privacy_level,
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user: {user.name} (admin: {user.is_admin})")
        return user

    @staticmethod
    def find_user_by_email(db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == email.strip().lower()).first()

    @staticmethod
    def find_user_by_name(db: Session, name: str) -> Optional[User]:
        return db.query(User).filter(User.name == name).first()

    @staticmethod
    def update_user(
        db: Session,
        user_id: int,
        email: str,
        name: str,
        is_admin: bool,
        privacy_level: Optional[int] = None,
    ) -> List[str]:
        """
        Update account fields from the admin user form

        Raises:
            ResourceNotFoundError: If the user does not exist
            ResourceAlreadyExistsError: If the email or name belongs to another user

        Returns:
            Names of the fields whose value changed
        """
        user = UserService.fetch_user(db, user_id)
        email = email.strip().lower()

        other = UserService.find_user_by_email(db, email)
        if other is not None and other.id != user.id:
            raise ResourceAlreadyExistsError("Email")
        other = UserService.find_user_by_name(db, name)
        if other is not None and other.id != user.id:
            raise ResourceAlreadyExistsError("Name")

        changes = {"email": email, "name": name, "is_admin": is_admin}
        if privacy_level is not None:
            changes["privacy_level"] = privacy_level

        changed_fields = [field for field, value in changes.items() if getattr(user, field) != value]
        for field in changed_fields:
            setattr(user, field, changes[field])
        db.commit()

        logger.info(f"Updated user {user_id}: {changed_fields}")
        return changed_fields

    @staticmethod
    def find_user_by_id(db: Session, user_id: int) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def fetch_user(db: Session, user_id: int) -> User:
        user = UserService.find_user_by_id(db, user_id)
        if user is None:
            raise ResourceNotFoundError("User")
        return user

    @staticmethod
    def is_valid_password(db: Session, user_id: int, password: str) -> bool:
        user = UserService.find_user_by_id(db, user_id)
        if user is None:
            return False
        return verify_password(password, user.password_hash)

    @staticmethod
    def update_password(db: Session, user_id: int, password: str) -> None:
        user = UserService.fetch_user(db, user_id)
        user.password_hash = get_password_hash(password)
        db.commit()
        logger.info(f"Password updated for user {user_id}")

    @staticmethod
    def find_totp_uri(db: Session, user_id: int) -> Optional[str]:
        user = UserService.find_user_by_id(db, user_id)
        return user.totp_uri if user else None

    @staticmethod
    def update_totp_uri(db: Session, user_id: int, totp_uri: str) -> None:
        user = UserService.fetch_user(db, user_id)
        user.totp_uri = totp_uri
        db.commit()

    @staticmethod
    def delete_totp(db: Session, user_id: int) -> None:
        user = UserService.fetch_user(db, user_id)
        user.totp_uri = None
        db.commit()

    @staticmethod
    def find_user_id_by_api_token(db: Session, api_token: str) -> Optional[int]:
        if not api_token:
            return None
        user = db.query(User).filter(User.api_token == api_token).first()
        return user.id if user else None

    @staticmethod
    def delete_user(db: Session, user_id: int) -> bool:
        """
        Delete user; tokens, recovery codes, trusted devices and audit
        events go with it through ON DELETE CASCADE

        Returns:
            True if deleted
        """
        user = UserService.fetch_user(db, user_id)
        db.delete(user)
        db.commit()

        logger.info(f"Deleted user: {user.name}")
        return True

    @staticmethod
    def ensure_password_is_valid(password: str) -> None:
        """
        Enforce the password policy

        Raises:
            PasswordPolicyViolationError: If the password is too short or misses
                an uppercase letter, lowercase letter, number or special character
        """
        if len(password) < UserService.PASSWORD_MIN_LENGTH:
            raise PasswordPolicyViolationError.too_short(UserService.PASSWORD_MIN_LENGTH)

        violations = []
        if not re.search(r"[A-Z]", password):
            violations.append("missing uppercase letter")
        if not re.search(r"[a-z]", password):
            violations.append("missing lowercase letter")
        if not re.search(r"[0-9]", password):
            violations.append("missing number")
        if not re.search(r"[^a-zA-Z0-9]", password):
            violations.append("missing special character")

        if violations:
            raise PasswordPolicyViolationError.from_violations(violations)


# Singleton instance
user_service = UserService()
