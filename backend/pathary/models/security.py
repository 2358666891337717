"""Security-related persistence models."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from pathary.core import clock
from pathary.core.database import Base
from pathary.core.request_context import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH


class AuthToken(Base):
    """Session bearer token; only its SHA-256 digest is stored."""

    __tablename__ = "user_auth_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    device_name = Column(String(256), nullable=False)
    user_agent = Column(String(USER_AGENT_MAX_LENGTH), nullable=True)
    expiration_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=lambda: clock.utcnow(), nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="auth_tokens")

    __table_args__ = (
        Index("idx_user_auth_tokens_token_hash", "token_hash"),
    )


class RecoveryCode(Base):
    """One-time backup code; ``used_at`` is never cleared once set."""

    __tablename__ = "user_recovery_codes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(255), nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: clock.utcnow(), nullable=False)

    user = relationship("User", back_populates="recovery_codes")

    __table_args__ = (
        Index("idx_user_recovery_codes_user_unused", "user_id", "used_at"),
    )


class TrustedDevice(Base):
    """Device allowed to skip the second factor until ``expires_at``."""

    __tablename__ = "user_trusted_devices"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    device_name = Column(String(256), nullable=False)
    device_fingerprint = Column(String(64), nullable=False)
    user_agent = Column(String(USER_AGENT_MAX_LENGTH), nullable=True)
    ip_address = Column(String(IP_ADDRESS_MAX_LENGTH), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=lambda: clock.utcnow(), nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="trusted_devices")

    __table_args__ = (
        Index("idx_user_trusted_devices_token_hash", "token_hash"),
        Index("idx_user_trusted_devices_expires_at", "expires_at"),
    )
