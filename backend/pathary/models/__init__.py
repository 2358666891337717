"""Database models"""

from pathary.models.user import User
from pathary.models.security import AuthToken, RecoveryCode, TrustedDevice
from pathary.models.audit import SecurityAuditEvent

__all__ = ["User", "AuthToken", "RecoveryCode", "TrustedDevice", "SecurityAuditEvent"]
