"""Pydantic schemas for API validation"""

from pathary.schemas.user import (
    LoginRequest,
    UserResponse,
    TokenResponse,
    ChangePasswordRequest,
    DisableTotpRequest,
    TotpSetupResponse,
    TotpVerifyRequest,
    UserCreateRequest,
    UserUpdateRequest,
    CsrfTokenResponse,
)
from pathary.schemas.security import (
    AuthTokenRecord,
    RecoveryCodeRecord,
    TrustedDeviceRecord,
    TrustedDeviceResponse,
    RecoveryCodesResponse,
    RecoveryCodeCountResponse,
)
from pathary.schemas.audit import (
    SecurityAuditEventRecord,
    SecurityEventResponse,
    SecurityEventListResponse,
    AdminSecurityEventResponse,
    AdminSecurityEventListResponse,
)

__all__ = [
    "LoginRequest", "UserResponse", "TokenResponse", "ChangePasswordRequest",
    "DisableTotpRequest", "TotpSetupResponse", "TotpVerifyRequest", "UserCreateRequest",
    "UserUpdateRequest", "CsrfTokenResponse",
    "AuthTokenRecord", "RecoveryCodeRecord", "TrustedDeviceRecord",
    "TrustedDeviceResponse", "RecoveryCodesResponse", "RecoveryCodeCountResponse",
    "SecurityAuditEventRecord", "SecurityEventResponse", "SecurityEventListResponse",
    "AdminSecurityEventResponse", "AdminSecurityEventListResponse",
]
