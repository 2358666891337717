"""User model"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Index
from sqlalchemy.orm import relationship
from pathary.core import clock
from pathary.core.database import Base


class User(Base):
    """User account; the auth core reads the password hash and TOTP URI"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(50), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    totp_uri = Column(Text, nullable=True)
    api_token = Column(String(255), unique=True, nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    privacy_level = Column(Integer, default=1, nullable=False)
    core_account_changes_disabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=lambda: clock.utcnow(), nullable=False)

    # Relationships
    auth_tokens = relationship("AuthToken", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    recovery_codes = relationship("RecoveryCode", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    trusted_devices = relationship("TrustedDevice", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    security_events = relationship("SecurityAuditEvent", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index('idx_users_api_token', 'api_token'),
    )

    @property
    def has_totp(self) -> bool:
        return self.totp_uri is not None

    def __repr__(self):
        return f"<User(id={self.id}, name='{self.name}', is_admin={self.is_admin})>"
