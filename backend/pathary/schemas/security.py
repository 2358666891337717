"""Immutable records returned by the security services"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class AuthTokenRecord(_Record):
    id: int
    user_id: int
    device_name: str
    user_agent: Optional[str] = None
    expiration_date: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None


class RecoveryCodeRecord(_Record):
    id: int
    user_id: int
    code_hash: str = Field(..., min_length=1)
    created_at: datetime
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None


class TrustedDeviceRecord(_Record):
    id: int
    user_id: int
    token_hash: str = Field(..., min_length=1)
    device_name: str
    device_fingerprint: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TrustedDeviceResponse(BaseModel):
    """Trusted device as shown on the security tab; no token material"""
    id: int
    device_name: str
    device_fingerprint: str
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime]
    is_current_device: bool = False


class RecoveryCodesResponse(BaseModel):
    success: bool = True
    recovery_codes: list[str]


class RecoveryCodeCountResponse(BaseModel):
    remaining: int
