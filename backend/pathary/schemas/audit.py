"""Security audit event schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict


class SecurityAuditEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    event_type: str
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class SecurityEventResponse(BaseModel):
    id: int
    event_type: str
    event_label: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class SecurityEventListResponse(BaseModel):
    events: List[SecurityEventResponse]


class AdminSecurityEventResponse(SecurityEventResponse):
    user_id: Optional[int]
    user_name: Optional[str] = None


class AdminSecurityEventListResponse(BaseModel):
    events: List[AdminSecurityEventResponse]
    total: int
    limit: int
    offset: int
