"""User and authentication schemas"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class LoginRequest(BaseModel):
    """Login form / API payload"""
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    remember_me: bool = False
    totp_code: Optional[int] = Field(default=None, ge=0, le=99999999)
    recovery_code: Optional[str] = Field(default=None, max_length=32)
    trust_device: bool = False
    device_name: Optional[str] = Field(default=None, max_length=256)


class UserResponse(BaseModel):
    """User response schema"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    is_admin: bool
    privacy_level: int
    has_totp: bool
    created_at: Optional[datetime]


class TokenResponse(BaseModel):
    """Auth token response; web logins also get the session's CSRF token"""
    token: str
    expires_at: datetime
    user: UserResponse
    csrf_token: Optional[str] = None


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class DisableTotpRequest(BaseModel):
    password: str


class TotpSetupResponse(BaseModel):
    totp_uri: str
    secret: str


class TotpVerifyRequest(BaseModel):
    code: int = Field(..., ge=0, le=99999999)


class UserCreateRequest(BaseModel):
    """Admin user creation payload"""
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=50)
    password: str
    is_admin: bool = False
    privacy_level: int = Field(default=1, ge=0, le=2)


class UserUpdateRequest(BaseModel):
    """Admin user update payload; a password is only changed when given"""
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=50)
    is_admin: bool = False
    privacy_level: Optional[int] = Field(default=None, ge=0, le=2)
    password: Optional[str] = None
