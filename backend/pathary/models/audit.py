"""Security audit log model."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from pathary.core import clock
from pathary.core.database import Base
from pathary.core.request_context import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH


class SecurityAuditEvent(Base):
    """Append-only security event. ``user_id`` NULL marks a system event."""

    __tablename__ = "user_security_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(IP_ADDRESS_MAX_LENGTH), nullable=True)
    user_agent = Column(String(USER_AGENT_MAX_LENGTH), nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(DateTime, default=lambda: clock.utcnow(), nullable=False)

    user = relationship("User", back_populates="security_events")

    __table_args__ = (
        Index("idx_user_security_audit_log_created_at", "created_at"),
    )
